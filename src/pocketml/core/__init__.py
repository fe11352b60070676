# /pocket-ml/src/pocketml/core/__init__.py

"""
Core Training Components

The fundamental components of the training search engine:
- FeatureEncoder: leakage-free tabular preprocessing
- ArchitectureBuilder: residual MLP sized from the data's shape
- Trainer: single-configuration training with early stopping
- MetricsEngine: task metrics and metric directions
- TrainingOrchestrator: budgeted search with hyperparameter adaptation
- ModelStore: named persistence of trained models
"""

from .dataset import ValidationResult, validate_dataset, suggest_target_type, load_rows_from_csv
from .feature_encoder import FeatureEncoder, EncodedDataset, EncodingState, SplitRatios, ClassMapping
from .architecture import ArchitectureBuilder, ArchitectureSummary, ResidualMLP
from .trainer import Trainer, TrainedModel, TrainingOutcome, TrainingError
from .metrics_engine import MetricsEngine, MetricDirection, METRIC_DIRECTIONS
from .training_orchestrator import (
    TrainingOrchestrator,
    TrainingPipeline,
    CycleResult,
    CycleState,
    HyperparameterAdapter,
)
from .model_store import ModelStore

__all__ = [
    "ValidationResult",
    "validate_dataset",
    "suggest_target_type",
    "load_rows_from_csv",
    "FeatureEncoder",
    "EncodedDataset",
    "EncodingState",
    "SplitRatios",
    "ClassMapping",
    "ArchitectureBuilder",
    "ArchitectureSummary",
    "ResidualMLP",
    "Trainer",
    "TrainedModel",
    "TrainingOutcome",
    "TrainingError",
    "MetricsEngine",
    "MetricDirection",
    "METRIC_DIRECTIONS",
    "TrainingOrchestrator",
    "TrainingPipeline",
    "CycleResult",
    "CycleState",
    "HyperparameterAdapter",
    "ModelStore"
]
