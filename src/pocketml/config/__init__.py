# /pocket-ml/src/pocketml/config/__init__.py

"""
Configuration management for the training search engine.
"""

from .training_config import (
    TrainingConfig,
    DataConfig,
    SearchConfig,
    HyperparameterConfig,
    ResourceConfig,
    MonitoringConfig,
    ConfigurationError,
    load_training_config,
    TARGET_TYPES,
    DEFAULT_PRIMARY_METRICS,
    MAX_HIDDEN_DIM,
)

__all__ = [
    "TrainingConfig",
    "DataConfig",
    "SearchConfig",
    "HyperparameterConfig",
    "ResourceConfig",
    "MonitoringConfig",
    "ConfigurationError",
    "load_training_config",
    "TARGET_TYPES",
    "DEFAULT_PRIMARY_METRICS",
    "MAX_HIDDEN_DIM",
]
