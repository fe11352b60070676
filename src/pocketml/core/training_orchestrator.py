# /pocket-ml/src/pocketml/core/training_orchestrator.py

"""
TrainingOrchestrator: Budgeted Hyperparameter Search over Training Attempts

Runs repeated training attempts on one encoded dataset, keeps the best
model seen so far, and adapts the hyperparameters between attempts from
an overfitting signal. Stops when the iteration/time budget is spent or
a stop is requested, then scores the best model on every split.

Key Features:
- State machine-based cycle execution with validated transitions
- Single-owner best-model slot; every other model is released at once
- Cooperative execution: control is yielded after every iteration
- Background execution with a one-worker executor and advisory stop()
- Any error inside an attempt aborts the cycle and finishes with the best so far

Cycle Lifecycle:
    IDLE ─► RUNNING ─► (STOPPING) ─► FINISHED
"""

import math
import time
import logging
import threading
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field

import torch

from ..config.training_config import (
    HyperparameterConfig,
    SearchConfig,
    TrainingConfig,
    ConfigurationError,
    MAX_HIDDEN_DIM,
)
from ..utils.metrics import TrainingMetrics
from ..utils.resource_manager import (
    ResourceUsage,
    SystemResourceMonitor,
    TensorBundle,
    SPLIT_NAMES,
    configure_threads,
    select_device,
)
from .dataset import RowsLike, ValidationResult, rows_to_frame, validate_dataset
from .feature_encoder import EncodedDataset, FeatureEncoder, SplitRatios
from .metrics_engine import (
    SUPPORTED_METRICS,
    MetricsEngine,
    is_improvement,
    is_lower_better,
    sort_key,
)
from .trainer import Trainer, TrainedModel


# Adaptation heuristic constants
UNDERTRAINED_EPOCH_FRACTION = 0.4
THRESHOLD_COEFFICIENT = 0.25
THRESHOLD_EXPONENT = 0.2
HIGHER_IS_BETTER_MARGIN = 0.01
DROPOUT_STEP = 0.1
MAX_DROPOUT = 0.5
DROPOUT_L1_TRIGGER = 0.3
L1_GROWTH = 3.0
INITIAL_L1 = 0.001

ProgressCallback = Callable[[int, int], None]
IterationCallback = Callable[[List["TrainedAttempt"], Optional[int]], None]


class CycleState(Enum):
    """Training cycle states."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    FINISHED = "finished"


class CycleStateMachine:
    """
    State machine for validating cycle transitions.
    """

    VALID_TRANSITIONS = {
        CycleState.IDLE: [CycleState.RUNNING],
        CycleState.RUNNING: [CycleState.STOPPING, CycleState.FINISHED],
        CycleState.STOPPING: [CycleState.FINISHED],
        CycleState.FINISHED: []  # Terminal state
    }

    @classmethod
    def validate_transition(cls, current_state: CycleState, new_state: CycleState) -> bool:
        return new_state in cls.VALID_TRANSITIONS.get(current_state, [])


@dataclass
class TrainingBudget:
    """
    Iteration/time budget of one cycle plus its cancellation flag.
    """
    min_iterations: int
    max_training_time_seconds: float
    start_time: float = field(default_factory=time.monotonic)
    cancellation: threading.Event = field(default_factory=threading.Event)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    @property
    def cancellation_requested(self) -> bool:
        return self.cancellation.is_set()

    def request_cancellation(self) -> None:
        self.cancellation.set()

    def should_continue(self, iterations: int) -> bool:
        """(iterations < minimum OR time remains) AND no cancellation."""
        within_budget = (iterations < self.min_iterations
                         or self.elapsed < self.max_training_time_seconds)
        return within_budget and not self.cancellation_requested


@dataclass
class TrainedAttempt:
    """
    Record of one completed training attempt.
    """
    iteration: int
    hyperparameters: HyperparameterConfig
    train_score: float
    validation_score: float
    epochs_trained: int
    architecture: str
    hidden_dims: List[int]
    duration: float
    stopped_early: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iteration': self.iteration,
            'hyperparameters': self.hyperparameters.to_dict(),
            'train_score': self.train_score,
            'validation_score': self.validation_score,
            'epochs_trained': self.epochs_trained,
            'architecture': self.architecture,
            'hidden_dims': self.hidden_dims,
            'duration': self.duration,
            'stopped_early': self.stopped_early
        }


class BestState:
    """
    Single-owner slot for the best model of a cycle.

    ``offer`` takes ownership of the model it is given: it either keeps it
    (releasing the previous best) or releases it immediately.
    """

    def __init__(self, metric: str):
        self.metric = metric
        self.model: Optional[TrainedModel] = None
        self.score: Optional[float] = None
        self.iteration: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.model is None

    def offer(self, model: TrainedModel, score: float, iteration: int) -> bool:
        """
        Returns:
            True if the model became the new best
        """
        if self.model is not None and not is_improvement(self.metric, score, self.score):
            model.release()
            return False

        previous = self.model
        self.model, self.score, self.iteration = model, score, iteration
        if previous is not None:
            previous.release()
        return True

    def take(self) -> Optional[TrainedModel]:
        """Hand the best model to a new owner and empty the slot."""
        model, self.model = self.model, None
        return model

    def release(self) -> None:
        if self.model is not None:
            self.model.release()
            self.model = None


class HyperparameterAdapter:
    """
    Greedy local adaptation of hyperparameters between attempts.

    Monotone: dropout, L1 and width never decrease; the learning rate
    never increases.
    """

    @staticmethod
    def threshold_factor(validation_size: int) -> float:
        return 1.0 - THRESHOLD_COEFFICIENT / validation_size ** THRESHOLD_EXPONENT

    @classmethod
    def is_overfitting(cls, metric: str, train_score: float, validation_score: float,
                       validation_size: int) -> bool:
        if validation_size <= 0:
            return False
        if math.isnan(train_score) or math.isnan(validation_score):
            return False

        factor = cls.threshold_factor(validation_size)
        if is_lower_better(metric):
            return validation_score > train_score / factor
        return validation_score < train_score * factor - HIGHER_IS_BETTER_MARGIN

    @classmethod
    def adapt(cls, hyperparameters: HyperparameterConfig, epochs_trained: int,
              train_score: float, validation_score: float, metric: str,
              validation_size: int, current_width: int) -> HyperparameterConfig:
        """
        Derive the next attempt's hyperparameters.

        Args:
            hyperparameters: Configuration of the attempt just trained
            epochs_trained: Epochs the attempt actually ran
            train_score: Primary metric on train
            validation_score: Primary metric on validation
            metric: Primary metric name
            validation_size: Rows in the validation split
            current_width: First hidden width the attempt used

        Returns:
            New HyperparameterConfig
        """
        changes: Dict[str, Any] = {}

        if epochs_trained < UNDERTRAINED_EPOCH_FRACTION * hyperparameters.epochs:
            changes['learning_rate'] = hyperparameters.learning_rate / 2

        if cls.is_overfitting(metric, train_score, validation_score, validation_size):
            dropout = min(round(hyperparameters.dropout_rate + DROPOUT_STEP, 10), MAX_DROPOUT)
            changes['dropout_rate'] = dropout
            if dropout >= DROPOUT_L1_TRIGGER:
                l1 = hyperparameters.l1_penalty
                changes['l1_penalty'] = l1 * L1_GROWTH if l1 > 0 else INITIAL_L1
        else:
            changes['hidden_dim_mode'] = "manual"
            changes['hidden_dim_value'] = min(current_width * 2, MAX_HIDDEN_DIM)

        return hyperparameters.evolve(**changes)


@dataclass
class CycleResult:
    """
    Outcome of a finished training cycle.

    ``best_model`` belongs to the caller, who releases it when done.
    """
    best_model: TrainedModel
    history: List[TrainedAttempt]
    final_metrics: Dict[str, Dict[str, float]]
    best_iteration_index: int
    primary_metric: str
    target_type: str
    duration: float = 0.0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def iterations(self) -> int:
        return len(self.history)

    @property
    def best_attempt(self) -> TrainedAttempt:
        return self.history[self.best_iteration_index - 1]

    def ranked_history(self) -> List[TrainedAttempt]:
        """Attempts sorted by validation score, best first."""
        return sorted(
            self.history,
            key=lambda attempt: sort_key(self.primary_metric, attempt.validation_score)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'primary_metric': self.primary_metric,
            'target_type': self.target_type,
            'best_iteration_index': self.best_iteration_index,
            'iterations': self.iterations,
            'duration': self.duration,
            'architecture': self.best_model.architecture.to_dict(),
            'best_hyperparameters': self.best_attempt.hyperparameters.to_dict(),
            'final_metrics': self.final_metrics,
            'history': [attempt.to_dict() for attempt in self.ranked_history()],
            'errors': self.errors
        }


class TrainingOrchestrator:
    """
    Runs one training cycle: repeated attempts under a budget, best-model
    tracking, hyperparameter adaptation, and final scoring.

    An orchestrator runs a single cycle; create a new one per cycle.
    """

    def __init__(self, search_config: Optional[SearchConfig] = None,
                 trainer: Optional[Trainer] = None,
                 metrics_engine: Optional[MetricsEngine] = None,
                 telemetry: Optional[TrainingMetrics] = None,
                 device: Optional[torch.device] = None):
        self.search_config = search_config or SearchConfig()
        self.device = device or torch.device("cpu")
        self.trainer = trainer or Trainer(self.device)
        self.metrics_engine = metrics_engine or MetricsEngine()
        self.telemetry = telemetry
        self.logger = logging.getLogger(__name__)

        self.state = CycleState.IDLE
        self._state_lock = threading.RLock()
        self._budget: Optional[TrainingBudget] = None
        self._executor: Optional[ThreadPoolExecutor] = None

        # Per-cycle state
        self._tensors: Optional[TensorBundle] = None
        self._best: Optional[BestState] = None
        self._history: List[TrainedAttempt] = []
        self._errors: List[Dict[str, Any]] = []
        self._target_type: Optional[str] = None
        self._primary_metric: Optional[str] = None
        self._result: Optional[CycleResult] = None

    @property
    def history(self) -> List[TrainedAttempt]:
        return list(self._history)

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return list(self._errors)

    @property
    def cancellation_requested(self) -> bool:
        return self._budget is not None and self._budget.cancellation_requested

    def _transition(self, new_state: CycleState) -> None:
        with self._state_lock:
            if not CycleStateMachine.validate_transition(self.state, new_state):
                raise CycleStateError(
                    f"Invalid cycle transition: {self.state.value} -> {new_state.value}"
                )
            self.logger.debug("cycle.state_transition", extra={
                "from_state": self.state.value,
                "to_state": new_state.value
            })
            self.state = new_state

    def start_cycle(self, encoded: EncodedDataset, target_type: str, num_classes: int,
                    hyperparameters: HyperparameterConfig,
                    on_progress: Optional[ProgressCallback] = None,
                    on_iteration_complete: Optional[IterationCallback] = None) -> Optional[CycleResult]:
        """
        Run a full training cycle.

        Args:
            encoded: Output of FeatureEncoder.encode
            target_type: 'regression', 'binary' or 'multiclass'
            num_classes: Number of training classes
            hyperparameters: Starting hyperparameters
            on_progress: Called with (epoch, total_epochs) during training
            on_iteration_complete: Called with (history, best_iteration_index)
                after every iteration

        Returns:
            CycleResult, or None if no attempt succeeded
        """
        self._begin(target_type)
        return self._run(encoded, target_type, num_classes, hyperparameters,
                         on_progress, on_iteration_complete)

    def start_cycle_async(self, encoded: EncodedDataset, target_type: str, num_classes: int,
                          hyperparameters: HyperparameterConfig,
                          on_progress: Optional[ProgressCallback] = None,
                          on_iteration_complete: Optional[IterationCallback] = None) -> "Future[Optional[CycleResult]]":
        """
        Run the cycle on a background worker.

        The cycle is RUNNING when this returns, so an immediate ``stop()``
        applies to it.
        """
        self._begin(target_type)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pocketml-cycle")
        future = self._executor.submit(
            self._run, encoded, target_type, num_classes, hyperparameters,
            on_progress, on_iteration_complete
        )
        self._executor.shutdown(wait=False)
        return future

    def stop(self) -> None:
        """Request cancellation; the in-flight iteration completes first."""
        with self._state_lock:
            if self._budget is None or self.state is not CycleState.RUNNING:
                return
            self._budget.request_cancellation()
            self._transition(CycleState.STOPPING)

        self.logger.info("cycle.stop_requested", extra={
            "iterations_completed": len(self._history)
        })

    def _begin(self, target_type: str) -> None:
        primary_metric = self.search_config.resolve_primary_metric(target_type)
        supported = SUPPORTED_METRICS.get(target_type, ())
        if primary_metric not in supported:
            raise ConfigurationError(
                f"Primary metric '{primary_metric}' does not apply to {target_type} targets; "
                f"choose one of {list(supported)}"
            )

        with self._state_lock:
            self._transition(CycleState.RUNNING)
            self._budget = TrainingBudget(
                min_iterations=self.search_config.min_iterations,
                max_training_time_seconds=self.search_config.max_training_time_seconds
            )
        self._target_type = target_type
        self._primary_metric = primary_metric
        self._best = BestState(self._primary_metric)

    def _run(self, encoded: EncodedDataset, target_type: str, num_classes: int,
             hyperparameters: HyperparameterConfig,
             on_progress: Optional[ProgressCallback],
             on_iteration_complete: Optional[IterationCallback]) -> Optional[CycleResult]:
        try:
            self._tensors = TensorBundle.from_dataset(encoded, self.device)
        except Exception:
            self.finish()
            raise

        budget = self._budget
        current = hyperparameters

        self.logger.info("cycle.started", extra={
            "target_type": target_type,
            "primary_metric": self._primary_metric,
            "min_iterations": budget.min_iterations,
            "max_training_time_seconds": budget.max_training_time_seconds,
            "split_sizes": self._tensors.split_sizes()
        })

        # The first iteration always runs; cancellation applies from the second on
        iterations = 0
        while iterations == 0 or budget.should_continue(iterations):
            iteration = iterations + 1
            try:
                current = self._run_iteration(iteration, target_type, num_classes,
                                              current, on_progress)
                iterations = iteration
                if on_iteration_complete is not None:
                    on_iteration_complete(self.history, self._best.iteration)
            except Exception as e:
                # A failed attempt ends the search
                self._record_error(iteration, e)
                break

            # Yield between iterations
            time.sleep(0)

        return self.finish()

    def _run_iteration(self, iteration: int, target_type: str, num_classes: int,
                       hyperparameters: HyperparameterConfig,
                       on_progress: Optional[ProgressCallback]) -> HyperparameterConfig:
        """Train, score and adapt once. Returns the next iteration's hyperparameters."""
        iteration_start = time.time()
        tensors = self._tensors
        metric = self._primary_metric

        outcome = self.trainer.fit(tensors, target_type, num_classes, hyperparameters, on_progress)
        model = outcome.model

        try:
            train_score = self._score(model, "train", [metric]).get(metric, float('nan'))
            validation_score = self._score(model, "validation", [metric]).get(metric, float('nan'))

            attempt = TrainedAttempt(
                iteration=iteration,
                hyperparameters=hyperparameters,
                train_score=train_score,
                validation_score=validation_score,
                epochs_trained=outcome.epochs_trained,
                architecture=model.architecture.render(),
                hidden_dims=list(model.architecture.hidden_dims),
                duration=time.time() - iteration_start,
                stopped_early=outcome.stopped_early
            )
            current_width = model.architecture.hidden_dims[0]
        except Exception:
            model.release()
            raise

        self._history.append(attempt)
        improved = self._best.offer(model, validation_score, iteration)

        next_hyperparameters = HyperparameterAdapter.adapt(
            hyperparameters,
            epochs_trained=outcome.epochs_trained,
            train_score=train_score,
            validation_score=validation_score,
            metric=metric,
            validation_size=len(tensors.validation),
            current_width=current_width
        )

        self.logger.info("cycle.iteration_completed", extra={
            "iteration": iteration,
            "architecture": attempt.architecture,
            "train_score": train_score,
            "validation_score": validation_score,
            "epochs_trained": outcome.epochs_trained,
            "improved": improved,
            "best_iteration": self._best.iteration,
            "elapsed": self._budget.elapsed
        })

        if self.telemetry is not None:
            self.telemetry.record_iteration(
                iteration, metric, train_score, validation_score,
                outcome.epochs_trained, attempt.duration, improved
            )

        return next_hyperparameters

    def _score(self, model: TrainedModel, split: str, metric_names: List[str]) -> Dict[str, float]:
        tensors = self._tensors.split(split)
        predictions = model.predict(tensors.features)
        labels = tensors.targets.cpu().numpy()
        return self.metrics_engine.score(predictions, labels, self._target_type, metric_names)

    def _record_error(self, iteration: int, error: Exception) -> None:
        self._errors.append({
            'iteration': iteration,
            'error_type': type(error).__name__,
            'error_message': str(error),
            'traceback': traceback.format_exc(),
            'timestamp': datetime.now().isoformat()
        })
        self.logger.error("cycle.iteration_failed", extra={
            "iteration": iteration,
            "error": str(error),
            "completed_iterations": len(self._history)
        }, exc_info=True)
        if self.telemetry is not None:
            self.telemetry.record_error("trainer", type(error).__name__)

    def finish(self) -> Optional[CycleResult]:
        """
        Score the best model on every split and end the cycle.

        Releases the cycle's tensors exactly once. Calling it again returns
        the same result.

        Returns:
            CycleResult, or None if no attempt succeeded
        """
        with self._state_lock:
            if self.state is CycleState.FINISHED:
                return self._result
            if self.state is CycleState.IDLE:
                raise CycleStateError("Cannot finish a cycle that was never started")

        best = self._best
        result = None

        try:
            if not best.is_empty:
                metric_names = [self._primary_metric] + self.search_config.resolve_secondary_metrics(
                    self._target_type
                )
                final_metrics = {
                    split: self._score(best.model, split, metric_names) for split in SPLIT_NAMES
                }
                result = CycleResult(
                    best_model=best.take(),
                    history=self.history,
                    final_metrics=final_metrics,
                    best_iteration_index=best.iteration,
                    primary_metric=self._primary_metric,
                    target_type=self._target_type,
                    duration=self._budget.elapsed,
                    errors=self.errors
                )
        finally:
            best.release()
            if self._tensors is not None:
                self._tensors.release()
            self._transition(CycleState.FINISHED)

        self._result = result

        self.logger.info("cycle.finished", extra={
            "iterations": len(self._history),
            "best_iteration": result.best_iteration_index if result else None,
            "failed": bool(self._errors),
            "duration": self._budget.elapsed,
            "final_metrics": result.final_metrics if result else None
        })

        if self.telemetry is not None:
            self.telemetry.record_cycle(
                len(self._history), self._budget.elapsed,
                result.best_iteration_index if result else None,
                succeeded=result is not None
            )

        return result


@dataclass
class PipelineRun:
    """Everything one end-to-end run produced."""
    encoded: EncodedDataset
    result: Optional[CycleResult]
    validation: ValidationResult
    resource_usage: Optional[ResourceUsage] = None
    memory_warnings: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.result is not None


class TrainingPipeline:
    """
    High-level interface: validate, encode, search.

    Holds the configuration; each ``run`` uses a fresh orchestrator.
    """

    def __init__(self, config: Optional[TrainingConfig] = None,
                 telemetry: Optional[TrainingMetrics] = None):
        self.config = config or TrainingConfig()
        self.telemetry = telemetry
        self.encoder = FeatureEncoder(self.config.data)
        self.device = select_device(self.config.resources.device)
        configure_threads(self.config.resources.num_threads)
        self.resource_monitor = SystemResourceMonitor(self.config.resources.max_memory_gb)
        self.logger = logging.getLogger(__name__)
        self._active: Optional[TrainingOrchestrator] = None

    def create_orchestrator(self) -> TrainingOrchestrator:
        return TrainingOrchestrator(
            search_config=self.config.search,
            telemetry=self.telemetry,
            device=self.device
        )

    def run(self, rows: RowsLike, target_column: str, target_type: Optional[str] = None,
            on_progress: Optional[ProgressCallback] = None,
            on_iteration_complete: Optional[IterationCallback] = None) -> PipelineRun:
        """
        Train on a raw dataset.

        Args:
            rows: Raw rows or DataFrame
            target_column: Column to predict
            target_type: Declared target type (suggested from the data if omitted)

        Returns:
            PipelineRun with the encoded dataset and the cycle result

        Raises:
            DatasetValidationError: If the dataset cannot be trained on
        """
        frame = rows_to_frame(rows)
        validation = validate_dataset(frame, target_column, target_type)
        validation.raise_if_invalid()
        for warning in validation.warnings:
            self.logger.warning("pipeline.dataset_warning", extra={"warning": warning})

        if target_type is None:
            target_type = validation.metrics['suggested_target_type']
            self.logger.info("pipeline.target_type_suggested", extra={
                "target_column": target_column,
                "target_type": target_type
            })

        encoded = self.encoder.encode(
            frame, target_column, target_type,
            SplitRatios.from_config(self.config.data), self.config.data.seed
        )

        # Memory pressure is reported, not enforced
        resource_usage = self.resource_monitor.get_current_usage()
        _, memory_warnings = self.resource_monitor.check_memory()
        self.logger.info("pipeline.resources", extra=resource_usage.to_dict())

        self._active = self.create_orchestrator()
        result = self._active.start_cycle(
            encoded, target_type, encoded.num_classes,
            self.config.initial_hyperparameters(),
            on_progress=on_progress,
            on_iteration_complete=on_iteration_complete
        )

        return PipelineRun(encoded=encoded, result=result, validation=validation,
                           resource_usage=resource_usage, memory_warnings=memory_warnings)

    @property
    def is_running(self) -> bool:
        """True while a cycle is running and has not been asked to stop."""
        return self._active is not None and self._active.state is CycleState.RUNNING

    def stop(self) -> None:
        if self._active is not None:
            self._active.stop()


# Custom exceptions
class CycleStateError(Exception):
    """Raised on an invalid cycle state transition."""
    pass
