# /pocket-ml/src/pocketml/utils/metrics.py

"""
Training Telemetry

Operational metrics for training cycles: per-iteration scores and timings,
cycle outcomes and failures. Distinct from the task metrics computed by the
MetricsEngine; these describe how the search ran, not how good a model is.

Key Features:
- Pluggable backends (JSON-lines file, in-memory)
- Buffered collector with summary statistics per metric name
- Domain-specific recording helpers for iterations and cycles
"""

import time
import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, field
from pathlib import Path
import json
import logging

import numpy as np


@dataclass
class Metric:
    """
    Individual metric with metadata and context.
    """
    name: str
    value: Union[int, float]
    timestamp: Optional[datetime] = None
    tags: Dict[str, str] = field(default_factory=dict)
    metric_type: str = "gauge"  # gauge, counter, timer
    unit: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'value': self.value,
            'timestamp': self.timestamp.isoformat(),
            'tags': self.tags,
            'type': self.metric_type,
            'unit': self.unit
        }


@dataclass
class MetricSummary:
    """
    Statistical summary of the values recorded under one name.
    """
    name: str
    count: int
    min: float
    max: float
    mean: float
    std: float
    last: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'count': self.count,
            'min': self.min,
            'max': self.max,
            'mean': self.mean,
            'std': self.std,
            'last': self.last
        }


class MetricsBackend(ABC):
    """
    Abstract base class for metrics backends.
    """

    @abstractmethod
    def emit_batch(self, metrics: List[Metric]) -> None:
        """Emit a batch of metrics."""
        pass

    def close(self) -> None:
        """Close backend and release resources."""
        pass


class FileBackend(MetricsBackend):
    """
    Appends metrics to a JSON-lines file.
    """

    def __init__(self, file_path: Union[str, Path]):
        self.file_path = Path(file_path)
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()

        self.logger.debug("file_backend.initialized", extra={
            'file_path': str(self.file_path)
        })

    def emit_batch(self, metrics: List[Metric]) -> None:
        with self._lock:
            try:
                with open(self.file_path, 'a') as f:
                    for metric in metrics:
                        f.write(json.dumps(metric.to_dict()) + '\n')
            except OSError as e:
                self.logger.error("file_backend.batch_emit_failed", extra={
                    'metrics_count': len(metrics),
                    'error': str(e)
                })


class InMemoryBackend(MetricsBackend):
    """
    Keeps emitted metrics in a list; used in tests and notebooks.
    """

    def __init__(self):
        self.metrics: List[Metric] = []
        self._lock = threading.Lock()

    def emit_batch(self, metrics: List[Metric]) -> None:
        with self._lock:
            self.metrics.extend(metrics)

    def named(self, name: str) -> List[Metric]:
        with self._lock:
            return [m for m in self.metrics if m.name == name]


class MetricsCollector:
    """
    Buffers metrics for a backend and keeps recent values for summaries.
    """

    def __init__(self, backend: MetricsBackend, buffer_size: int = 100,
                 history_size: int = 1000):
        self.backend = backend
        self.buffer_size = buffer_size
        self.logger = logging.getLogger(__name__)

        self.buffer: List[Metric] = []
        self.buffer_lock = threading.Lock()

        self.aggregators: Dict[str, deque] = defaultdict(lambda: deque(maxlen=history_size))
        self.aggregation_lock = threading.Lock()

    def emit(self, name: str, value: Union[int, float],
             tags: Optional[Dict[str, str]] = None,
             metric_type: str = "gauge",
             unit: Optional[str] = None) -> None:
        metric = Metric(name=name, value=value, tags=tags or {},
                        metric_type=metric_type, unit=unit)

        with self.buffer_lock:
            self.buffer.append(metric)
            if len(self.buffer) >= self.buffer_size:
                self._flush_buffer()

        with self.aggregation_lock:
            self.aggregators[name].append((value, time.time()))

    def flush(self) -> None:
        with self.buffer_lock:
            self._flush_buffer()

    def _flush_buffer(self) -> None:
        if not self.buffer:
            return

        batch = self.buffer.copy()
        self.buffer.clear()
        self.backend.emit_batch(batch)

        self.logger.debug("metrics.batch_flushed", extra={
            'batch_size': len(batch)
        })

    def get_metric_summary(self, metric_name: str) -> Optional[MetricSummary]:
        """
        Summarise the values recorded for a metric.

        Returns:
            MetricSummary if data available, None otherwise
        """
        with self.aggregation_lock:
            values = [value for value, _ in self.aggregators.get(metric_name, ())]

        finite = np.array([v for v in values if v is not None and np.isfinite(v)], dtype=float)
        if finite.size == 0:
            return None

        return MetricSummary(
            name=metric_name,
            count=int(finite.size),
            min=float(np.min(finite)),
            max=float(np.max(finite)),
            mean=float(np.mean(finite)),
            std=float(np.std(finite)),
            last=float(finite[-1])
        )

    def metric_names(self) -> List[str]:
        with self.aggregation_lock:
            return sorted(self.aggregators)

    def close(self) -> None:
        self.flush()
        self.backend.close()


class TrainingMetrics:
    """
    Training-cycle telemetry with domain-specific recording helpers.
    """

    def __init__(self, collector: MetricsCollector):
        self.collector = collector
        self.default_tags: Dict[str, str] = {}

    def set_default_tags(self, **tags) -> None:
        self.default_tags.update({k: str(v) for k, v in tags.items()})

    def _emit(self, name: str, value: Union[int, float],
              tags: Optional[Dict[str, Any]] = None, **kwargs) -> None:
        combined_tags = self.default_tags.copy()
        if tags:
            combined_tags.update({k: str(v) for k, v in tags.items()})
        self.collector.emit(name, value, tags=combined_tags, **kwargs)

    def record_iteration(self, iteration: int, primary_metric: str,
                         train_score: float, validation_score: float,
                         epochs_trained: int, duration: float,
                         improved: bool) -> None:
        """Record one search iteration."""
        tags = {'iteration': iteration, 'metric': primary_metric}
        self._emit("pocketml.iteration.train_score", train_score, tags=tags)
        self._emit("pocketml.iteration.validation_score", validation_score, tags=tags)
        self._emit("pocketml.iteration.epochs_trained", epochs_trained, tags=tags)
        self._emit("pocketml.iteration.duration", duration, tags=tags,
                   metric_type="timer", unit="seconds")
        if improved:
            self._emit("pocketml.iteration.improvements", 1, tags=tags, metric_type="counter")

    def record_cycle(self, iterations: int, duration: float,
                     best_iteration: Optional[int], succeeded: bool) -> None:
        """Record the outcome of a finished cycle."""
        tags = {'succeeded': succeeded}
        self._emit("pocketml.cycle.iterations", iterations, tags=tags)
        self._emit("pocketml.cycle.duration", duration, tags=tags,
                   metric_type="timer", unit="seconds")
        if best_iteration is not None:
            self._emit("pocketml.cycle.best_iteration", best_iteration, tags=tags)
        self.collector.flush()

    def record_error(self, component: str, error_type: str) -> None:
        self._emit("pocketml.errors", 1, tags={'component': component, 'error_type': error_type},
                   metric_type="counter")

    def summary(self) -> Dict[str, Dict[str, Any]]:
        """Summary statistics for every metric recorded so far."""
        summaries = {}
        for name in self.collector.metric_names():
            metric_summary = self.collector.get_metric_summary(name)
            if metric_summary is not None:
                summaries[name] = metric_summary.to_dict()
        return summaries

    def close(self) -> None:
        self.collector.close()


def create_training_metrics(backend_type: str = "memory",
                            file_path: Union[str, Path] = "logs/training/metrics.jsonl",
                            buffer_size: int = 100) -> TrainingMetrics:
    """
    Factory for TrainingMetrics with the given backend.

    Args:
        backend_type: "memory" or "file"
        file_path: Target file for the file backend
        buffer_size: Metrics buffered before a write
    """
    if backend_type == "file":
        backend = FileBackend(file_path)
    elif backend_type == "memory":
        backend = InMemoryBackend()
    else:
        raise ValueError(f"Unknown backend type: {backend_type}")

    return TrainingMetrics(MetricsCollector(backend, buffer_size=buffer_size))
