# /pocket-ml/src/pocketml/core/trainer.py

"""
Trainer: Single-Configuration Network Training

Trains one ResidualMLP for one HyperparameterConfig and hands back an
opaque model handle. Task metrics are not computed here; the orchestrator
asks the MetricsEngine for those.

Key Features:
- Loss per target type (MSE, BCE-with-logits, cross-entropy)
- Rows labelled with the unseen-class sentinel are ignored by the loss
- Seeded mini-batch shuffling and weight initialisation
- Early stopping on validation loss
- Per-epoch progress callback
"""

import time
import logging
from typing import Any, Callable, Dict, List, Optional, Union
from dataclasses import dataclass, field

import numpy as np
import torch
import torch.nn.functional as F

from ..config.training_config import HyperparameterConfig
from ..utils.resource_manager import ResourceHandle, SplitTensors, TensorBundle
from .architecture import ArchitectureBuilder, ArchitectureError, ArchitectureSummary, ResidualMLP


EARLY_STOPPING_PATIENCE = 3

EpochCallback = Callable[[int, int], None]


class TrainedModel(ResourceHandle):
    """
    Handle to a trained network.

    The owner releases it exactly once; prediction after release raises
    ResourceReleasedError.
    """

    def __init__(self, network: ResidualMLP, hyperparameters: HyperparameterConfig,
                 resource_id: str = "model"):
        super().__init__(resource_id)
        self._network = network
        self.hyperparameters = hyperparameters
        self._summary = network.describe()
        self.target_type = network.target_type

    @property
    def architecture(self) -> ArchitectureSummary:
        return self._summary

    @property
    def network(self) -> ResidualMLP:
        self.ensure_active()
        return self._network

    def predict(self, features: Union[torch.Tensor, np.ndarray]) -> np.ndarray:
        """
        Predict for a feature matrix.

        Returns:
            Values (regression), P(positive) (binary) or class
            probabilities of shape (n, k) (multiclass)
        """
        network = self.network
        device = next(network.parameters()).device
        x = torch.as_tensor(features, dtype=torch.float32, device=device)
        if x.shape[0] == 0:
            if self.target_type == "multiclass":
                return np.empty((0, network.output_dim), dtype=np.float32)
            return np.empty(0, dtype=np.float32)
        return network.predict(x).cpu().numpy()

    def state_dict(self) -> Dict[str, Any]:
        return {k: v.detach().cpu() for k, v in self.network.state_dict().items()}

    def cleanup(self) -> None:
        self._network = None


@dataclass
class TrainingOutcome:
    """Result of one training attempt."""
    model: TrainedModel
    epochs_trained: int
    history: List[Dict[str, float]] = field(default_factory=list)
    stopped_early: bool = False
    training_time: float = 0.0


class Trainer:
    """
    Trains a freshly built network for one hyperparameter configuration.
    """

    def __init__(self, device: Optional[torch.device] = None,
                 patience: int = EARLY_STOPPING_PATIENCE):
        self.device = device or torch.device("cpu")
        self.patience = patience
        self.logger = logging.getLogger(__name__)

    def fit(self, tensors: TensorBundle, target_type: str, num_classes: int,
            hyperparameters: HyperparameterConfig,
            on_epoch: Optional[EpochCallback] = None) -> TrainingOutcome:
        """
        Train one network.

        Args:
            tensors: Split tensors of the cycle
            target_type: 'regression', 'binary' or 'multiclass'
            num_classes: Number of training classes
            hyperparameters: Configuration for this attempt
            on_epoch: Called with (epoch, total_epochs) after each epoch

        Returns:
            TrainingOutcome with the trained model handle

        Raises:
            TrainingError: If the network cannot be built or trained
        """
        start_time = time.time()
        train = tensors.train
        validation = tensors.validation

        if len(train) == 0:
            raise TrainingError("Training split is empty")

        try:
            torch.manual_seed(hyperparameters.seed)
            network = ArchitectureBuilder.build(
                n_features=tensors.n_features,
                n_train_rows=len(train),
                target_type=target_type,
                num_classes=num_classes,
                hyperparameters=hyperparameters
            ).to(self.device)
        except ArchitectureError as e:
            raise TrainingError(f"Failed to build network: {e}") from e

        optimizer = torch.optim.Adam(network.parameters(), lr=hyperparameters.learning_rate)
        generator = torch.Generator().manual_seed(hyperparameters.seed)

        history: List[Dict[str, float]] = []
        best_val_loss = float('inf')
        epochs_without_improvement = 0
        stopped_early = False
        epochs_trained = 0
        total_epochs = hyperparameters.epochs

        try:
            for epoch in range(1, total_epochs + 1):
                train_loss = self._train_epoch(
                    network, optimizer, train, target_type, hyperparameters.batch_size, generator
                )
                val_loss = self._evaluate_loss(network, validation, target_type)
                epochs_trained = epoch
                history.append({'epoch': epoch, 'train_loss': train_loss, 'val_loss': val_loss})

                if on_epoch is not None:
                    on_epoch(epoch, total_epochs)

                if not hyperparameters.early_stopping_enabled or np.isnan(val_loss):
                    continue

                if val_loss < best_val_loss:
                    best_val_loss = val_loss
                    epochs_without_improvement = 0
                else:
                    epochs_without_improvement += 1
                    if epochs_without_improvement >= self.patience:
                        stopped_early = True
                        break
        except RuntimeError as e:
            raise TrainingError(f"Training failed at epoch {epochs_trained + 1}: {e}") from e

        training_time = time.time() - start_time
        model = TrainedModel(network, hyperparameters)

        self.logger.info("trainer.fit_completed", extra={
            "target_type": target_type,
            "architecture": model.architecture.render(),
            "epochs_trained": epochs_trained,
            "epochs_allotted": total_epochs,
            "stopped_early": stopped_early,
            "final_train_loss": history[-1]['train_loss'] if history else None,
            "final_val_loss": history[-1]['val_loss'] if history else None,
            "training_time": training_time
        })

        return TrainingOutcome(
            model=model,
            epochs_trained=epochs_trained,
            history=history,
            stopped_early=stopped_early,
            training_time=training_time
        )

    def _train_epoch(self, network: ResidualMLP, optimizer: torch.optim.Optimizer,
                     train: SplitTensors, target_type: str, batch_size: int,
                     generator: torch.Generator) -> float:
        network.train()
        n_rows = len(train)
        permutation = torch.randperm(n_rows, generator=generator).to(train.features.device)

        total_loss = 0.0
        total_rows = 0
        for start in range(0, n_rows, batch_size):
            batch = permutation[start:start + batch_size]
            outputs = network(train.features[batch])
            task_loss, counted = compute_task_loss(outputs, train.targets[batch], target_type)
            if counted == 0:
                continue

            loss = task_loss + network.regularization_loss()
            optimizer.zero_grad()
            loss.backward()
            optimizer.step()

            total_loss += task_loss.item() * counted
            total_rows += counted

        return total_loss / total_rows if total_rows else float('nan')

    @torch.no_grad()
    def _evaluate_loss(self, network: ResidualMLP, split: SplitTensors, target_type: str) -> float:
        if len(split) == 0:
            return float('nan')
        network.eval()
        outputs = network(split.features)
        loss, counted = compute_task_loss(outputs, split.targets, target_type)
        return loss.item() if counted else float('nan')


def compute_task_loss(outputs: torch.Tensor, targets: torch.Tensor, target_type: str):
    """
    Mean task loss over the rows with a known label.

    Returns:
        Tuple of (loss tensor, number of rows counted)
    """
    if target_type == "regression":
        return F.mse_loss(outputs, targets.float()), int(targets.shape[0])

    known = targets >= 0
    counted = int(known.sum().item())
    if counted == 0:
        return outputs.sum() * 0.0, 0

    if target_type == "binary":
        loss = F.binary_cross_entropy_with_logits(outputs[known], targets[known].float())
    else:
        loss = F.cross_entropy(outputs[known], targets[known].long())
    return loss, counted


# Custom exceptions
class TrainingError(Exception):
    """Raised when a training attempt fails."""
    pass
