# /pocket-ml/src/pocketml/utils/__init__.py

"""
Training Utilities

Supporting infrastructure for the training search engine including
logging, telemetry, and resource management.
"""

from .logging import TrainingLogger, setup_training_logging, stage_logging
from .metrics import TrainingMetrics, create_training_metrics
from .resource_manager import ResourceHandle, TensorBundle, select_device

__all__ = [
    "TrainingLogger",
    "setup_training_logging",
    "stage_logging",
    "TrainingMetrics",
    "create_training_metrics",
    "ResourceHandle",
    "TensorBundle",
    "select_device"
]
