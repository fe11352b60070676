# /pocket-ml/src/pocketml/__init__.py

"""
Pocket ML: Automated Tabular Training Search

Given a tabular dataset and a target column, produces a trained
feed-forward predictor and an honest held-out performance estimate with
no manual tuning.

Core Components:
- FeatureEncoder: raw rows to clean numeric train/validation/test frames
- ArchitectureBuilder: residual MLP sized from the data's shape
- Trainer: one network for one hyperparameter configuration
- MetricsEngine: task metrics with a single direction table
- TrainingOrchestrator: budgeted search adapting from an overfitting signal

Architecture:
- Every encoding parameter is fitted on the training split only
- Tensors and models are resource handles released exactly once
- The search yields between iterations and can be stopped at any time
"""

from .core.dataset import ValidationResult, validate_dataset, suggest_target_type, load_rows_from_csv
from .core.feature_encoder import FeatureEncoder, EncodedDataset, SplitRatios
from .core.architecture import ArchitectureBuilder, ResidualMLP
from .core.trainer import Trainer, TrainedModel
from .core.metrics_engine import MetricsEngine, MetricDirection
from .core.training_orchestrator import TrainingOrchestrator, TrainingPipeline, CycleResult
from .core.model_store import ModelStore

from .config.training_config import (
    TrainingConfig,
    DataConfig,
    SearchConfig,
    HyperparameterConfig,
    ResourceConfig,
    MonitoringConfig,
    load_training_config
)

from .utils.logging import TrainingLogger, setup_training_logging
from .utils.metrics import TrainingMetrics, create_training_metrics

__version__ = "0.1.0"

__all__ = [
    # Core components
    "ValidationResult",
    "validate_dataset",
    "suggest_target_type",
    "load_rows_from_csv",
    "FeatureEncoder",
    "EncodedDataset",
    "SplitRatios",
    "ArchitectureBuilder",
    "ResidualMLP",
    "Trainer",
    "TrainedModel",
    "MetricsEngine",
    "MetricDirection",
    "TrainingOrchestrator",
    "TrainingPipeline",
    "CycleResult",
    "ModelStore",

    # Configuration
    "TrainingConfig",
    "DataConfig",
    "SearchConfig",
    "HyperparameterConfig",
    "ResourceConfig",
    "MonitoringConfig",
    "load_training_config",

    # Utilities
    "TrainingLogger",
    "setup_training_logging",
    "TrainingMetrics",
    "create_training_metrics"
]


def create_training_pipeline(config_path: str = None, environment: str = "development") -> TrainingPipeline:
    """
    Factory function to create a fully configured training pipeline.

    Args:
        config_path: Path to custom configuration file
        environment: Environment name (development, testing, staging, production)

    Returns:
        Configured TrainingPipeline ready for execution

    Examples:
        pipeline = create_training_pipeline()
        run = pipeline.run(rows, target_column="price", target_type="regression")
    """
    config = load_training_config(config_path, environment)

    telemetry = None
    if config.monitoring.enable_metrics:
        telemetry = create_training_metrics("file", config.monitoring.metrics_file)

    return TrainingPipeline(config, telemetry=telemetry)
