"""
Unit tests for the MetricsEngine and the metric direction helpers.
"""

import sys
import logging
from pathlib import Path

import numpy as np
import pytest

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from pocketml.core.metrics_engine import (
    MetricsEngine,
    MetricDirection,
    metric_direction,
    is_improvement,
    sort_key,
    threshold_confusion_counts,
    trapezoid_area,
)


class TestRegressionMetrics:
    """Test regression metrics."""

    def setup_method(self):
        self.engine = MetricsEngine()
        self.labels = np.array([100.0, 200.0, 300.0, 400.0])
        self.predictions = np.array([110.0, 180.0, 300.0, 440.0])

    def test_rmse_is_root_of_mse(self):
        scores = self.engine.score(self.predictions, self.labels, "regression", ["mse", "rmse"])

        assert scores["mse"] == pytest.approx((100 + 400 + 0 + 1600) / 4)
        assert scores["rmse"] == pytest.approx(np.sqrt(scores["mse"]))

    def test_mae_and_mape_percent(self):
        scores = self.engine.score(self.predictions, self.labels, "regression", ["mae", "mape"])

        assert scores["mae"] == pytest.approx((10 + 20 + 0 + 40) / 4)
        assert scores["mape"] == pytest.approx(100 * (0.1 + 0.1 + 0.0 + 0.1) / 4)

    def test_perfect_r2(self):
        scores = self.engine.score(self.labels, self.labels, "regression", ["r2"])
        assert scores["r2"] == pytest.approx(1.0)

    def test_r2_undefined_for_single_row(self):
        scores = self.engine.score(np.array([1.0]), np.array([2.0]), "regression", ["r2"])
        assert np.isnan(scores["r2"])

    def test_metric_names_case_insensitive(self):
        scores = self.engine.score(self.predictions, self.labels, "regression", ["RMSE"])
        assert "rmse" in scores


class TestBinaryMetrics:
    """Test binary classification metrics."""

    def setup_method(self):
        self.engine = MetricsEngine()
        self.labels = np.array([0, 0, 1, 1])

    def test_perfect_separator_roc_auc_is_one(self):
        predictions = np.array([0.1, 0.2, 0.8, 0.9])

        scores = self.engine.score(predictions, self.labels, "binary", ["roc_auc", "accuracy"])

        assert scores["roc_auc"] == pytest.approx(1.0)
        assert scores["accuracy"] == 1.0

    def test_inverted_separator_roc_auc_is_zero(self):
        predictions = np.array([0.9, 0.8, 0.2, 0.1])

        scores = self.engine.score(predictions, self.labels, "binary", ["roc_auc"])

        assert scores["roc_auc"] == pytest.approx(0.0)

    def test_pr_auc_of_separator(self):
        """Highest-threshold point has no positives predicted, so precision there is 0."""
        predictions = np.array([0.1, 0.2, 0.8, 0.9])

        scores = self.engine.score(predictions, self.labels, "binary", ["pr_auc"])

        assert scores["pr_auc"] == pytest.approx(0.75)

    def test_always_positive_has_full_recall(self):
        labels = np.array([0, 1, 1, 0])
        predictions = np.full(4, 0.9)

        scores = self.engine.score(predictions, labels, "binary", ["recall", "precision", "f1"])

        assert scores["recall"] == 1.0
        assert scores["precision"] == pytest.approx(0.5)
        assert scores["f1"] == pytest.approx(2 / 3)

    def test_no_positive_predictions_precision_zero(self):
        predictions = np.full(4, 0.1)

        scores = self.engine.score(predictions, self.labels, "binary", ["precision", "recall"])

        assert scores["precision"] == 0.0
        assert scores["recall"] == 0.0

    def test_decision_threshold_inclusive(self):
        scores = self.engine.score(np.array([0.5]), np.array([1]), "binary", ["accuracy"])
        assert scores["accuracy"] == 1.0

    def test_unseen_labels_excluded(self):
        """Rows labelled -1 do not count toward any metric."""
        labels = np.array([-1, 0, 1])
        predictions = np.array([0.9, 0.1, 0.9])

        scores = self.engine.score(predictions, labels, "binary", ["accuracy"])

        assert scores["accuracy"] == 1.0

    def test_only_unseen_labels_gives_nan(self):
        scores = self.engine.score(np.array([0.3]), np.array([-1]), "binary", ["accuracy"])
        assert np.isnan(scores["accuracy"])


class TestMulticlassMetrics:
    """Test multiclass metrics and metric applicability."""

    def setup_method(self):
        self.engine = MetricsEngine()

    def test_accuracy_uses_argmax(self):
        predictions = np.array([
            [0.7, 0.2, 0.1],
            [0.1, 0.8, 0.1],
            [0.3, 0.3, 0.4],
            [0.6, 0.3, 0.1],
        ])
        labels = np.array([0, 1, 2, 1])

        scores = self.engine.score(predictions, labels, "multiclass", ["accuracy"])

        assert scores["accuracy"] == pytest.approx(0.75)

    def test_inapplicable_metric_skipped_with_warning(self, caplog):
        predictions = np.array([[0.9, 0.1], [0.2, 0.8]])
        labels = np.array([0, 1])

        with caplog.at_level(logging.WARNING, logger="pocketml.core.metrics_engine"):
            scores = self.engine.score(predictions, labels, "multiclass",
                                       ["accuracy", "roc_auc", "bogus"])

        assert set(scores) == {"accuracy"}
        skipped = [r for r in caplog.records if r.getMessage() == "metrics_engine.metric_skipped"]
        assert [r.metric for r in skipped] == ["roc_auc", "bogus"]

    def test_supported_metrics(self):
        assert self.engine.supported_metrics("multiclass") == ["accuracy"]
        assert "pr_auc" in self.engine.supported_metrics("binary")
        assert self.engine.supported_metrics("ranking") == []


class TestMetricDirections:
    """Test the direction table and comparison helpers."""

    def test_directions(self):
        assert metric_direction("rmse") is MetricDirection.LOWER_IS_BETTER
        assert metric_direction("MAPE") is MetricDirection.LOWER_IS_BETTER
        assert metric_direction("roc_auc") is MetricDirection.HIGHER_IS_BETTER
        assert metric_direction("custom") is MetricDirection.HIGHER_IS_BETTER

    def test_is_improvement(self):
        assert is_improvement("rmse", 1.0, 2.0)
        assert not is_improvement("rmse", 2.0, 1.0)
        assert is_improvement("accuracy", 0.9, 0.8)
        assert not is_improvement("accuracy", 0.8, 0.8)

    def test_is_improvement_without_incumbent(self):
        assert is_improvement("rmse", 5.0, None)
        assert is_improvement("rmse", 5.0, float("nan"))

    def test_nan_never_improves(self):
        assert not is_improvement("accuracy", float("nan"), 0.1)
        assert not is_improvement("accuracy", float("nan"), None)

    def test_sort_key_puts_best_first(self):
        values = [0.7, float("nan"), 0.9, 0.8]

        assert sorted(values, key=lambda v: sort_key("accuracy", v))[:3] == [0.9, 0.8, 0.7]
        assert sorted([3.0, 1.0, 2.0], key=lambda v: sort_key("mae", v)) == [1.0, 2.0, 3.0]


class TestThresholdSweep:
    """Test the helpers behind ROC and PR AUC."""

    def test_confusion_counts_at_extremes(self):
        predictions = np.array([0.2, 0.6])
        labels = np.array([0, 1])

        tp, fp, fn, tn = threshold_confusion_counts(predictions, labels, n_thresholds=3)

        # thresholds 0.0, 0.5, 1.0
        assert tp.tolist() == [1, 1, 0]
        assert fp.tolist() == [1, 0, 0]
        assert fn.tolist() == [0, 0, 1]
        assert tn.tolist() == [0, 1, 1]

    def test_trapezoid_area(self):
        assert trapezoid_area(np.array([0.0, 1.0]), np.array([0.0, 1.0])) == pytest.approx(0.5)
        assert trapezoid_area(np.array([0.0, 0.5, 1.0]), np.array([1.0, 1.0, 1.0])) == pytest.approx(1.0)
