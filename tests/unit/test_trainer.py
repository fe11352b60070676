"""
Unit tests for the Trainer and TrainedModel handle.
"""

import sys
from pathlib import Path
from unittest.mock import Mock, patch

import numpy as np
import pytest
import torch

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from pocketml.config.training_config import HyperparameterConfig
from pocketml.core.trainer import Trainer, TrainedModel, TrainingError, compute_task_loss
from pocketml.utils.resource_manager import (
    ResourceReleasedError,
    SplitTensors,
    TensorBundle,
)


def make_bundle(target_type: str, n_rows: int = 120, n_features: int = 3, seed: int = 0) -> TensorBundle:
    """Synthetic tensors with a learnable signal in the first feature."""
    generator = torch.Generator().manual_seed(seed)
    splits = {}
    for name, size in (("train", n_rows), ("validation", n_rows // 4), ("test", n_rows // 4)):
        features = torch.randn(size, n_features, generator=generator)
        if target_type == "regression":
            targets = 2.0 * features[:, 0] + 0.5
        elif target_type == "binary":
            targets = (features[:, 0] > 0).long()
        else:
            targets = torch.bucketize(features[:, 0], torch.tensor([-0.5, 0.5]))
        splits[name] = SplitTensors(features=features, targets=targets)
    return TensorBundle(splits, torch.device("cpu"))


class TestTrainerFit:
    """Test single-configuration training."""

    def setup_method(self):
        self.trainer = Trainer()

    def test_regression_loss_decreases(self):
        bundle = make_bundle("regression")
        hyperparameters = HyperparameterConfig(learning_rate=0.01, batch_size=16, epochs=20,
                                               early_stopping_enabled=False)

        outcome = self.trainer.fit(bundle, "regression", 1, hyperparameters)

        assert outcome.epochs_trained == 20
        assert not outcome.stopped_early
        assert outcome.history[-1]['train_loss'] < outcome.history[0]['train_loss']
        assert [entry['epoch'] for entry in outcome.history] == list(range(1, 21))
        outcome.model.release()

    def test_progress_callback_per_epoch(self):
        bundle = make_bundle("binary")
        on_epoch = Mock()
        hyperparameters = HyperparameterConfig(batch_size=32, epochs=4, early_stopping_enabled=False)

        outcome = self.trainer.fit(bundle, "binary", 2, hyperparameters, on_epoch=on_epoch)

        assert [c.args for c in on_epoch.call_args_list] == [(1, 4), (2, 4), (3, 4), (4, 4)]
        outcome.model.release()

    def test_early_stopping_after_patience(self):
        """Flat validation loss stops training three epochs after the first."""
        bundle = make_bundle("binary")
        hyperparameters = HyperparameterConfig(batch_size=32, epochs=20)

        with patch.object(Trainer, '_evaluate_loss', return_value=1.0):
            outcome = self.trainer.fit(bundle, "binary", 2, hyperparameters)

        assert outcome.stopped_early
        assert outcome.epochs_trained == 4
        outcome.model.release()

    def test_early_stopping_disabled(self):
        bundle = make_bundle("binary")
        hyperparameters = HyperparameterConfig(batch_size=32, epochs=6, early_stopping_enabled=False)

        with patch.object(Trainer, '_evaluate_loss', return_value=1.0):
            outcome = self.trainer.fit(bundle, "binary", 2, hyperparameters)

        assert outcome.epochs_trained == 6
        assert not outcome.stopped_early
        outcome.model.release()

    def test_same_seed_same_model(self):
        bundle = make_bundle("regression")
        hyperparameters = HyperparameterConfig(batch_size=16, epochs=3, seed=11)

        first = self.trainer.fit(bundle, "regression", 1, hyperparameters).model
        second = self.trainer.fit(bundle, "regression", 1, hyperparameters).model

        features = bundle.test.features
        np.testing.assert_allclose(first.predict(features), second.predict(features), rtol=1e-5)
        first.release()
        second.release()

    def test_multiclass_predictions(self):
        bundle = make_bundle("multiclass")
        hyperparameters = HyperparameterConfig(batch_size=32, epochs=3)

        model = self.trainer.fit(bundle, "multiclass", 3, hyperparameters).model
        probabilities = model.predict(bundle.test.features)

        assert probabilities.shape == (len(bundle.test), 3)
        np.testing.assert_allclose(probabilities.sum(axis=1), np.ones(len(bundle.test)), rtol=1e-5)
        model.release()

    def test_unbuildable_network_raises_training_error(self):
        bundle = make_bundle("multiclass")

        with pytest.raises(TrainingError):
            self.trainer.fit(bundle, "multiclass", 1, HyperparameterConfig(epochs=1))

    def test_empty_train_split_raises(self):
        empty = SplitTensors(features=torch.empty(0, 3), targets=torch.empty(0))
        bundle = TensorBundle({"train": empty, "validation": empty, "test": empty},
                              torch.device("cpu"))

        with pytest.raises(TrainingError):
            self.trainer.fit(bundle, "regression", 1, HyperparameterConfig(epochs=1))


class TestTaskLoss:
    """Test loss masking for unseen labels."""

    def test_unseen_labels_ignored(self):
        outputs = torch.tensor([5.0, -5.0, 100.0])
        targets = torch.tensor([1, 0, -1])

        loss, counted = compute_task_loss(outputs, targets, "binary")

        assert counted == 2
        assert loss.item() < 0.01

    def test_all_unseen_counts_nothing(self):
        outputs = torch.tensor([[1.0, 2.0], [0.5, 0.1]])
        targets = torch.tensor([-1, -1])

        loss, counted = compute_task_loss(outputs, targets, "multiclass")

        assert counted == 0
        assert loss.item() == 0.0

    def test_regression_mse(self):
        loss, counted = compute_task_loss(torch.tensor([1.0, 3.0]), torch.tensor([0.0, 1.0]),
                                          "regression")
        assert counted == 2
        assert loss.item() == pytest.approx(2.5)


class TestTrainedModel:
    """Test the release-once model handle."""

    def setup_method(self):
        bundle = make_bundle("binary")
        self.features = bundle.test.features
        self.model = Trainer().fit(bundle, "binary", 2, HyperparameterConfig(epochs=1)).model

    def test_release_is_idempotent(self):
        assert self.model.release() is True
        assert self.model.release() is False
        assert self.model.is_released

    def test_predict_after_release_raises(self):
        self.model.release()

        with pytest.raises(ResourceReleasedError):
            self.model.predict(self.features)

    def test_summary_survives_release(self):
        rendered = self.model.architecture.render()
        self.model.release()

        assert self.model.architecture.render() == rendered

    def test_predict_empty_input(self):
        predictions = self.model.predict(np.empty((0, 3), dtype=np.float32))

        assert predictions.shape == (0,)
        self.model.release()

    def test_context_manager_releases(self):
        with self.model as model:
            assert isinstance(model, TrainedModel)
        assert self.model.is_released
