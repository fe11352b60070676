"""
Unit tests for ModelStore persistence.
"""

import sys
from pathlib import Path

import numpy as np
import pytest
import torch

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from pocketml.config.training_config import HyperparameterConfig
from pocketml.core.architecture import ArchitectureBuilder
from pocketml.core.model_store import (
    ModelNameExistsError,
    ModelNotFoundError,
    ModelStore,
    ModelStoreError,
)
from pocketml.core.trainer import TrainedModel
from pocketml.utils.resource_manager import ResourceReleasedError


def make_model(target_type: str = "binary", seed: int = 1) -> TrainedModel:
    hyperparameters = HyperparameterConfig(hidden_dim_mode="manual", hidden_dim_value=8,
                                           dropout_rate=0.1, seed=seed)
    num_classes = 3 if target_type == "multiclass" else 2
    network = ArchitectureBuilder.build(5, 100, target_type, num_classes, hyperparameters)
    return TrainedModel(network, hyperparameters)


class TestModelStore:
    """Test save, list, load and delete."""

    @pytest.fixture
    def store(self, temp_dir):
        return ModelStore(temp_dir / "models")

    def test_round_trip_predictions(self, store):
        model = make_model("multiclass")
        features = np.random.RandomState(0).normal(size=(6, 5)).astype(np.float32)

        store.save("iris-v1", model, metadata={'target_column': 'species'},
                   results={'primary_metric': 'accuracy'})
        loaded = store.load("iris-v1")

        np.testing.assert_allclose(loaded.model.predict(features), model.predict(features), rtol=1e-6)
        assert loaded.metadata == {'target_column': 'species'}
        assert loaded.results == {'primary_metric': 'accuracy'}
        assert loaded.model.hyperparameters == model.hyperparameters
        assert loaded.model.architecture == model.architecture

    def test_layout_on_disk(self, store):
        path = store.save("churn", make_model())

        assert (path / "model.pt").exists()
        assert (path / "metadata.json").exists()
        assert not any(p.name.startswith(".saving-") for p in store.base_dir.iterdir())

    def test_duplicate_name_rejected(self, store):
        store.save("churn", make_model())

        with pytest.raises(ModelNameExistsError):
            store.save("churn", make_model(seed=2))

    def test_list_models(self, store):
        store.save("first", make_model())
        store.save("second", make_model())

        records = store.list_models()

        assert {r['name'] for r in records} == {"first", "second"}
        timestamps = [r['timestamp'] for r in records]
        assert timestamps == sorted(timestamps, reverse=True)
        assert records[0]['architecture']['text'] == "8 → 2 (+) 15"

    def test_numpy_metadata_serialised(self, store):
        store.save("numbers", make_model(), metadata={'rows': np.int64(10), 'score': np.float32(0.5)})

        loaded = store.load("numbers")

        assert loaded.metadata == {'rows': 10, 'score': 0.5}

    def test_delete(self, store):
        store.save("old", make_model())

        store.delete("old")

        assert not store.exists("old")
        with pytest.raises(ModelNotFoundError):
            store.delete("old")

    def test_load_unknown(self, store):
        with pytest.raises(ModelNotFoundError):
            store.load("nothing")

    @pytest.mark.parametrize("name", ["", "../escape", ".hidden", "a/b"])
    def test_invalid_names(self, store, name):
        with pytest.raises(ModelStoreError):
            store.exists(name)

    def test_released_model_cannot_be_saved(self, store):
        model = make_model()
        model.release()

        with pytest.raises(ResourceReleasedError):
            store.save("gone", model)
        assert not store.exists("gone")

    def test_loaded_model_on_device(self, store):
        store.save("cpu-model", make_model())

        loaded = store.load("cpu-model", device=torch.device("cpu"))

        assert next(loaded.model.network.parameters()).device.type == "cpu"
        assert not loaded.model.network.training
