# /pocket-ml/src/pocketml/config/training_config.py

"""
Training Configuration Management

Hierarchical configuration for the automated preprocessing-and-training
search engine, with environment-aware defaults and validation.

Key Features:
- YAML-based configuration with environment-specific overrides
- Environment variable overrides for the most common knobs
- Type-safe frozen configuration objects with defaults
- Validation with descriptive error messages

Architecture:
- One frozen dataclass per concern (data, search, hyperparameters,
  resources, monitoring) combined in TrainingConfig
- Hierarchical merging: YAML base -> environment defaults -> env vars
- HyperparameterConfig is the per-iteration value object the orchestrator
  derives new instances of between iterations
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field, replace, asdict


TARGET_TYPES = ("regression", "binary", "multiclass")

DEFAULT_PRIMARY_METRICS = {
    "regression": "rmse",
    "binary": "roc_auc",
    "multiclass": "accuracy",
}

DEFAULT_SECONDARY_METRICS = {
    "regression": ["mse", "mae", "mape", "r2"],
    "binary": ["accuracy", "precision", "recall", "f1", "pr_auc"],
    "multiclass": [],
}

MAX_HIDDEN_DIM = 512


@dataclass(frozen=True)
class HyperparameterConfig:
    """
    Hyperparameters for a single training attempt.

    Frozen so an attempt can never observe a mid-iteration change; the
    orchestrator derives the next iteration's config with ``evolve``.
    """
    learning_rate: float = 0.001
    l1_penalty: float = 0.0
    dropout_rate: float = 0.0
    batch_size: int = 32
    epochs: int = 50
    early_stopping_enabled: bool = True
    hidden_dim_mode: str = "auto"  # auto, manual
    hidden_dim_value: Optional[int] = None
    seed: int = 42

    @property
    def auto_hidden_dim(self) -> bool:
        return self.hidden_dim_mode == "auto"

    def evolve(self, **changes: Any) -> "HyperparameterConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> List[str]:
        """Validate hyperparameter values."""
        errors = []

        if self.learning_rate <= 0:
            errors.append(f"Learning rate must be positive: {self.learning_rate}")

        if self.l1_penalty < 0:
            errors.append(f"L1 penalty must be non-negative: {self.l1_penalty}")

        if not 0 <= self.dropout_rate < 1:
            errors.append(f"Dropout rate must be in [0, 1): {self.dropout_rate}")

        if self.batch_size <= 0:
            errors.append(f"Batch size must be positive: {self.batch_size}")

        if self.epochs <= 0:
            errors.append(f"Epochs must be positive: {self.epochs}")

        if self.hidden_dim_mode not in ("auto", "manual"):
            errors.append(f"Invalid hidden dim mode: {self.hidden_dim_mode}")

        if self.hidden_dim_mode == "manual":
            if self.hidden_dim_value is None or not 1 <= self.hidden_dim_value <= MAX_HIDDEN_DIM:
                errors.append(
                    f"Manual hidden dim must be between 1 and {MAX_HIDDEN_DIM}: {self.hidden_dim_value}"
                )

        return errors


@dataclass(frozen=True)
class DataConfig:
    """
    Configuration for the feature-encoding pipeline.
    """
    # Split parameters
    train_split: float = 0.7
    validation_split: float = 0.2
    test_split: float = 0.1
    seed: int = 42

    # Categorical handling
    granularity_threshold: float = 0.1
    one_hot_margin: int = 5
    regression_class_proxy: int = 2
    unknown_category: str = "Unknown"

    # Stratification
    regression_bins: int = 10

    def validate(self) -> List[str]:
        """Validate data configuration parameters."""
        errors = []

        for name, value in (("train", self.train_split),
                            ("validation", self.validation_split),
                            ("test", self.test_split)):
            if not 0 <= value <= 1:
                errors.append(f"{name.capitalize()} split must be between 0 and 1: {value}")

        total = self.train_split + self.validation_split + self.test_split
        if abs(total - 1.0) > 1e-6:
            errors.append(f"Split ratios must sum to 1.0: {total}")

        if self.train_split <= 0:
            errors.append("Train split must be positive")

        if not 0 < self.granularity_threshold < 1:
            errors.append(f"Granularity threshold must be between 0 and 1: {self.granularity_threshold}")

        if self.one_hot_margin < 0:
            errors.append(f"One-hot margin must be non-negative: {self.one_hot_margin}")

        if self.regression_bins < 1:
            errors.append(f"Regression bins must be positive: {self.regression_bins}")

        return errors


@dataclass(frozen=True)
class SearchConfig:
    """
    Configuration for the iterative hyperparameter search.
    """
    min_iterations: int = 10
    max_training_time_seconds: float = 1800.0  # 30 minutes

    # Metric selection (None -> per target type default)
    primary_metric: Optional[str] = None
    secondary_metrics: Optional[List[str]] = None

    def validate(self) -> List[str]:
        """Validate search configuration parameters."""
        errors = []

        if self.min_iterations <= 0:
            errors.append(f"Minimum iterations must be positive: {self.min_iterations}")

        if self.max_training_time_seconds < 0:
            errors.append(f"Max training time must be non-negative: {self.max_training_time_seconds}")

        return errors

    def resolve_primary_metric(self, target_type: str) -> str:
        return (self.primary_metric or DEFAULT_PRIMARY_METRICS[target_type]).lower()

    def resolve_secondary_metrics(self, target_type: str) -> List[str]:
        if self.secondary_metrics is not None:
            metrics = [m.lower() for m in self.secondary_metrics]
        else:
            metrics = list(DEFAULT_SECONDARY_METRICS[target_type])
        primary = self.resolve_primary_metric(target_type)
        return [m for m in metrics if m != primary]


@dataclass(frozen=True)
class ResourceConfig:
    """
    Configuration for compute resources.
    """
    device: str = "cpu"  # cpu, cuda, auto
    num_threads: Optional[int] = None
    max_memory_gb: float = 8.0

    def validate(self) -> List[str]:
        """Validate resource configuration parameters."""
        errors = []

        if self.device.lower() not in ("cpu", "cuda", "auto"):
            errors.append(f"Invalid device: {self.device}")

        if self.num_threads is not None and self.num_threads <= 0:
            errors.append(f"Thread count must be positive: {self.num_threads}")

        if self.max_memory_gb <= 0:
            errors.append(f"Max memory must be positive: {self.max_memory_gb}")

        return errors


@dataclass(frozen=True)
class MonitoringConfig:
    """
    Configuration for monitoring and logging.
    """
    # Logging configuration
    log_level: str = "INFO"
    log_dir: str = "logs/training"
    log_file_prefix: str = "training"
    log_rotation_size_mb: int = 100
    log_format: str = "text"  # json, text
    enable_console: bool = True
    enable_file: bool = False

    # Telemetry
    enable_metrics: bool = False
    metrics_file: str = "logs/training/metrics.jsonl"

    # Progress monitoring
    enable_progress_bars: bool = True

    def validate(self) -> List[str]:
        """Validate monitoring configuration parameters."""
        errors = []

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            errors.append(f"Invalid log level: {self.log_level}")

        if self.log_rotation_size_mb <= 0:
            errors.append(f"Log rotation size must be positive: {self.log_rotation_size_mb}")

        if self.log_format.lower() not in ("json", "text"):
            errors.append(f"Invalid log format: {self.log_format}")

        return errors

    def to_logging_config(self) -> Dict[str, Any]:
        return {
            'log_level': self.log_level.upper(),
            'log_format': self.log_format.lower(),
            'log_dir': self.log_dir,
            'log_file_prefix': self.log_file_prefix,
            'log_rotation_size_mb': self.log_rotation_size_mb,
            'enable_console': self.enable_console,
            'enable_file': self.enable_file,
        }


@dataclass(frozen=True)
class TrainingConfig:
    """
    Master training configuration combining all component configurations.
    """
    data: DataConfig = field(default_factory=DataConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    hyperparameters: HyperparameterConfig = field(default_factory=HyperparameterConfig)
    resources: ResourceConfig = field(default_factory=ResourceConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    environment: str = "development"
    model_store_dir: str = "models/saved"

    def validate(self) -> List[str]:
        """Validate complete training configuration."""
        errors = []

        errors.extend(self.data.validate())
        errors.extend(self.search.validate())
        errors.extend(self.hyperparameters.validate())
        errors.extend(self.resources.validate())
        errors.extend(self.monitoring.validate())

        return errors

    def is_production_environment(self) -> bool:
        return self.environment.lower() == "production"

    def initial_hyperparameters(self) -> HyperparameterConfig:
        return self.hyperparameters


def load_training_config(config_path: Optional[str] = None,
                         environment: str = "development") -> TrainingConfig:
    """
    Load training configuration with environment-specific overrides.

    Args:
        config_path: Path to custom YAML configuration file
        environment: Environment name (development, testing, staging, production)

    Returns:
        Validated TrainingConfig object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    logger = logging.getLogger(__name__)

    try:
        base_config = _load_base_config(config_path)
        env_config = _apply_environment_overrides(base_config, environment)
        config = _create_config_object(env_config, environment)

        errors = config.validate()
        if errors:
            raise ConfigurationError(f"Configuration validation failed: {errors}")

        logger.info("training_config.loaded", extra={
            "environment": environment,
            "config_path": config_path,
            "min_iterations": config.search.min_iterations
        })

        return config

    except ConfigurationError:
        raise
    except Exception as e:
        logger.error("training_config.load_failed", extra={
            "environment": environment,
            "config_path": config_path,
            "error": str(e)
        })
        raise ConfigurationError(f"Failed to load training configuration: {e}") from e


def _load_base_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load base configuration from YAML file."""
    if config_path is None:
        for path in ("config/training.yaml", "pocketml.yaml"):
            if Path(path).exists():
                config_path = path
                break
        else:
            return {}

    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_file, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML configuration: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

    return config


def _apply_environment_overrides(base_config: Dict[str, Any],
                                 environment: str) -> Dict[str, Any]:
    """Apply environment-specific configuration overrides."""
    env_defaults = {
        "development": {
            "monitoring": {"log_level": "DEBUG"}
        },
        "testing": {
            "search": {"min_iterations": 1, "max_training_time_seconds": 0},
            "hyperparameters": {"epochs": 5},
            "monitoring": {"log_level": "WARNING", "enable_progress_bars": False}
        },
        "staging": {
            "monitoring": {"log_level": "INFO", "enable_progress_bars": False}
        },
        "production": {
            "monitoring": {
                "log_level": "WARNING",
                "log_format": "json",
                "enable_file": True,
                "enable_metrics": True,
                "enable_progress_bars": False
            }
        }
    }

    # Environment defaults sit underneath the file so explicit YAML wins
    config = _deep_merge_dicts(env_defaults.get(environment.lower(), {}), base_config)
    return _apply_environment_variables(config)


def _deep_merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value

    return result


_ENV_MAPPING: Dict[str, Tuple[str, str, type]] = {
    "POCKETML_LOG_LEVEL": ("monitoring", "log_level", str),
    "POCKETML_MIN_ITERATIONS": ("search", "min_iterations", int),
    "POCKETML_MAX_TRAINING_TIME": ("search", "max_training_time_seconds", float),
    "POCKETML_PRIMARY_METRIC": ("search", "primary_metric", str),
    "POCKETML_SEED": ("data", "seed", int),
    "POCKETML_DEVICE": ("resources", "device", str),
    "POCKETML_EPOCHS": ("hyperparameters", "epochs", int),
}


def _apply_environment_variables(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides."""
    config = {key: dict(value) if isinstance(value, dict) else value
              for key, value in config.items()}

    for env_var, (section, key, cast) in _ENV_MAPPING.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        try:
            config.setdefault(section, {})[key] = cast(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {env_var}: {value!r}") from e

    # A single seed drives both splitting and weight initialisation
    data_seed = config.get("data", {}).get("seed")
    if data_seed is not None and "seed" not in config.get("hyperparameters", {}):
        config.setdefault("hyperparameters", {})["seed"] = data_seed

    return config


def _create_config_object(config_dict: Dict[str, Any], environment: str) -> TrainingConfig:
    """Create TrainingConfig object from dictionary."""
    try:
        return TrainingConfig(
            data=DataConfig(**config_dict.get("data", {})),
            search=SearchConfig(**config_dict.get("search", {})),
            hyperparameters=HyperparameterConfig(**config_dict.get("hyperparameters", {})),
            resources=ResourceConfig(**config_dict.get("resources", {})),
            monitoring=MonitoringConfig(**config_dict.get("monitoring", {})),
            environment=environment,
            **config_dict.get("pipeline", {})
        )
    except TypeError as e:
        raise ConfigurationError(f"Unknown configuration key: {e}") from e


# Custom exceptions
class ConfigurationError(Exception):
    """Base exception for configuration errors."""
    pass
