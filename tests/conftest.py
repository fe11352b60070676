"""
Shared pytest fixtures for the training search engine tests.

Provides small synthetic tabular datasets for each target type plus fast
search and hyperparameter configurations so full cycles run in seconds.
"""

import sys
import shutil
import logging
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))

from pocketml.config.training_config import HyperparameterConfig, SearchConfig


@pytest.fixture
def temp_dir():
    """Create temporary directory for test artifacts."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def binary_frame():
    """200 rows: a separable numeric signal, a 3-level colour and noise."""
    rng = np.random.RandomState(42)
    n_samples = 200
    signal = rng.normal(0, 1, n_samples)
    return pd.DataFrame({
        'signal': signal,
        'noise': rng.normal(0, 1, n_samples),
        'colour': rng.choice(['red', 'green', 'blue'], n_samples),
        'churned': np.where(signal + rng.normal(0, 0.3, n_samples) > 0, 'yes', 'no'),
    })


@pytest.fixture
def regression_frame():
    """200 rows with a linear target."""
    rng = np.random.RandomState(7)
    n_samples = 200
    x1 = rng.uniform(0, 10, n_samples)
    x2 = rng.uniform(-5, 5, n_samples)
    return pd.DataFrame({
        'rooms': x1,
        'slope': x2,
        'district': rng.choice(['north', 'south'], n_samples),
        'price': 3.0 * x1 - 2.0 * x2 + rng.normal(0, 0.5, n_samples),
    })


@pytest.fixture
def multiclass_frame():
    """240 rows, three classes separated along one axis."""
    rng = np.random.RandomState(3)
    labels = np.repeat(['setosa', 'versicolor', 'virginica'], 80)
    centres = {'setosa': -3.0, 'versicolor': 0.0, 'virginica': 3.0}
    return pd.DataFrame({
        'length': [centres[label] + rng.normal(0, 0.5) for label in labels],
        'width': rng.normal(0, 1, len(labels)),
        'species': labels,
    })


@pytest.fixture
def fast_hyperparameters():
    """Few epochs, small batches."""
    return HyperparameterConfig(learning_rate=0.01, batch_size=16, epochs=3, seed=7)


@pytest.fixture
def quick_search():
    """Three iterations, no extra time budget."""
    return SearchConfig(min_iterations=3, max_training_time_seconds=0)


@pytest.fixture(autouse=True)
def reset_package_logging():
    """Drop handlers a test installed on the package logger."""
    yield
    package_logger = logging.getLogger("pocketml")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)
