# /pocket-ml/src/pocketml/core/metrics_engine.py

"""
MetricsEngine: Task Metrics for Trained Models

Computes named evaluation metrics from predictions and encoded labels and
owns the single table that says which direction of each metric is better.
All comparisons between metric values (best-model selection, overfitting
detection, history ranking) go through ``is_improvement`` and ``sort_key``.

Predictions are what ``TrainedModel.predict`` returns:
- regression: predicted values, shape (n,)
- binary: positive-class probabilities, shape (n,)
- multiclass: class probabilities, shape (n, k)
"""

import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional

import numpy as np
from sklearn.metrics import (
    f1_score,
    mean_absolute_error,
    mean_absolute_percentage_error,
    mean_squared_error,
    precision_score,
    r2_score,
    recall_score,
)


class MetricDirection(Enum):
    HIGHER_IS_BETTER = "higher_is_better"
    LOWER_IS_BETTER = "lower_is_better"


METRIC_DIRECTIONS: Dict[str, MetricDirection] = {
    'mse': MetricDirection.LOWER_IS_BETTER,
    'rmse': MetricDirection.LOWER_IS_BETTER,
    'mae': MetricDirection.LOWER_IS_BETTER,
    'mape': MetricDirection.LOWER_IS_BETTER,
    'r2': MetricDirection.HIGHER_IS_BETTER,
    'accuracy': MetricDirection.HIGHER_IS_BETTER,
    'precision': MetricDirection.HIGHER_IS_BETTER,
    'recall': MetricDirection.HIGHER_IS_BETTER,
    'f1': MetricDirection.HIGHER_IS_BETTER,
    'roc_auc': MetricDirection.HIGHER_IS_BETTER,
    'pr_auc': MetricDirection.HIGHER_IS_BETTER,
}

REGRESSION_METRICS = ('mse', 'rmse', 'mae', 'mape', 'r2')
BINARY_METRICS = ('accuracy', 'precision', 'recall', 'f1', 'roc_auc', 'pr_auc')
MULTICLASS_METRICS = ('accuracy',)

SUPPORTED_METRICS = {
    'regression': REGRESSION_METRICS,
    'binary': BINARY_METRICS,
    'multiclass': MULTICLASS_METRICS,
}

DECISION_THRESHOLD = 0.5
AUC_THRESHOLD_COUNT = 100


def metric_direction(metric: str) -> MetricDirection:
    """Direction of a metric; names outside the table count as higher-is-better."""
    return METRIC_DIRECTIONS.get(metric.lower(), MetricDirection.HIGHER_IS_BETTER)


def is_lower_better(metric: str) -> bool:
    return metric_direction(metric) is MetricDirection.LOWER_IS_BETTER


def is_improvement(metric: str, candidate: float, incumbent: Optional[float]) -> bool:
    """True if ``candidate`` is strictly better than ``incumbent`` for ``metric``."""
    if candidate is None or np.isnan(candidate):
        return False
    if incumbent is None or np.isnan(incumbent):
        return True
    if is_lower_better(metric):
        return candidate < incumbent
    return candidate > incumbent


def sort_key(metric: str, value: Optional[float]) -> float:
    """Ascending sort key that puts the best value first and NaN/None last."""
    if value is None or np.isnan(value):
        return float('inf')
    return value if is_lower_better(metric) else -value


class MetricsEngine:
    """
    Stateless metric calculator.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def score(self, predictions: np.ndarray, labels: np.ndarray, target_type: str,
              metric_names: Iterable[str]) -> Dict[str, float]:
        """
        Compute the requested metrics.

        Classification rows whose label is the unseen-class sentinel (-1)
        are excluded. Names that are unknown or do not apply to the target
        type are skipped with a warning.

        Args:
            predictions: Model output (see module docstring)
            labels: Encoded targets
            target_type: 'regression', 'binary' or 'multiclass'
            metric_names: Metrics to compute

        Returns:
            Mapping of metric name to value
        """
        predictions = np.asarray(predictions, dtype=float)
        labels = np.asarray(labels)

        if target_type != "regression":
            known = labels >= 0
            predictions, labels = predictions[known], labels[known].astype(int)
        else:
            labels = labels.astype(float)

        supported = SUPPORTED_METRICS.get(target_type, ())
        results: Dict[str, float] = {}

        for name in metric_names:
            metric = name.lower()
            if metric not in supported:
                self.logger.warning("metrics_engine.metric_skipped", extra={
                    "metric": name,
                    "target_type": target_type
                })
                continue
            if len(labels) == 0:
                results[metric] = float('nan')
                continue
            results[metric] = float(getattr(self, f"_{metric}")(predictions, labels, target_type))

        return results

    # Regression

    @staticmethod
    def _mse(predictions, labels, target_type):
        return mean_squared_error(labels, predictions)

    @staticmethod
    def _rmse(predictions, labels, target_type):
        return np.sqrt(mean_squared_error(labels, predictions))

    @staticmethod
    def _mae(predictions, labels, target_type):
        return mean_absolute_error(labels, predictions)

    @staticmethod
    def _mape(predictions, labels, target_type):
        return 100.0 * mean_absolute_percentage_error(labels, predictions)

    @staticmethod
    def _r2(predictions, labels, target_type):
        if len(labels) < 2:
            return float('nan')
        return r2_score(labels, predictions)

    # Classification

    @staticmethod
    def _accuracy(predictions, labels, target_type):
        if target_type == "multiclass":
            predicted = np.argmax(predictions, axis=1)
        else:
            predicted = (predictions >= DECISION_THRESHOLD).astype(int)
        return float(np.mean(predicted == labels))

    @staticmethod
    def _precision(predictions, labels, target_type):
        predicted = (predictions >= DECISION_THRESHOLD).astype(int)
        return precision_score(labels, predicted, zero_division=0)

    @staticmethod
    def _recall(predictions, labels, target_type):
        predicted = (predictions >= DECISION_THRESHOLD).astype(int)
        return recall_score(labels, predicted, zero_division=0)

    @staticmethod
    def _f1(predictions, labels, target_type):
        predicted = (predictions >= DECISION_THRESHOLD).astype(int)
        return f1_score(labels, predicted, zero_division=0)

    @staticmethod
    def _roc_auc(predictions, labels, target_type):
        tp, fp, fn, tn = threshold_confusion_counts(predictions, labels)
        tpr = _safe_ratio(tp, tp + fn)
        fpr = _safe_ratio(fp, fp + tn)
        order = np.lexsort((tpr, fpr))
        return trapezoid_area(fpr[order], tpr[order])

    @staticmethod
    def _pr_auc(predictions, labels, target_type):
        tp, fp, fn, _ = threshold_confusion_counts(predictions, labels)
        precision = _safe_ratio(tp, tp + fp)
        recall = _safe_ratio(tp, tp + fn)
        order = np.lexsort((-precision, recall))
        return trapezoid_area(recall[order], precision[order])

    def supported_metrics(self, target_type: str) -> List[str]:
        return list(SUPPORTED_METRICS.get(target_type, ()))


def threshold_confusion_counts(predictions: np.ndarray, labels: np.ndarray,
                               n_thresholds: int = AUC_THRESHOLD_COUNT):
    """
    Confusion counts at equally spaced thresholds in [0, 1].

    A row is predicted positive when ``prediction >= threshold``.

    Returns:
        Arrays (tp, fp, fn, tn), one entry per threshold
    """
    thresholds = np.linspace(0.0, 1.0, n_thresholds)
    positive = labels > DECISION_THRESHOLD
    predicted = predictions[None, :] >= thresholds[:, None]

    tp = (predicted & positive).sum(axis=1)
    fp = (predicted & ~positive).sum(axis=1)
    fn = (~predicted & positive).sum(axis=1)
    tn = (~predicted & ~positive).sum(axis=1)
    return tp, fp, fn, tn


def trapezoid_area(x: np.ndarray, y: np.ndarray) -> float:
    """Trapezoidal integral of y over x (x sorted ascending)."""
    return float(np.sum(np.diff(x) * (y[1:] + y[:-1]) / 2.0))


def _safe_ratio(numerator: np.ndarray, denominator: np.ndarray) -> np.ndarray:
    numerator = numerator.astype(float)
    denominator = denominator.astype(float)
    return np.divide(numerator, denominator, out=np.zeros_like(numerator), where=denominator > 0)
