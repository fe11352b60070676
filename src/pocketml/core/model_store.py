# /pocket-ml/src/pocketml/core/model_store.py

"""
ModelStore: Named Persistence for Trained Models

Saves a trained network together with its metadata and cycle results
under a unique name, and rebuilds it later from the stored architecture
and weights.

Layout:
    <base_dir>/<name>/model.pt        architecture config + state_dict
    <base_dir>/<name>/metadata.json   name, timestamp, metadata, results

Saves are atomic: files are written to a temporary directory inside
``base_dir`` which is renamed into place only when complete.
"""

import json
import re
import shutil
import tempfile
import threading
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass

import torch

from ..config.training_config import HyperparameterConfig
from .architecture import ArchitectureBuilder
from .trainer import TrainedModel


MODEL_FILE = "model.pt"
METADATA_FILE = "metadata.json"

_VALID_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.\-]*$")


@dataclass
class StoredModel:
    """A model loaded back from the store."""
    name: str
    model: TrainedModel
    metadata: Dict[str, Any]
    results: Optional[Dict[str, Any]]
    timestamp: datetime


class ModelStore:
    """
    Directory-backed store of named models.
    """

    def __init__(self, base_dir: Union[str, Path] = "models/saved"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()

    def _model_dir(self, name: str) -> Path:
        if not name or not _VALID_NAME.match(name) or name.startswith("."):
            raise ModelStoreError(f"Invalid model name: {name!r}")
        return self.base_dir / name

    def exists(self, name: str) -> bool:
        return (self._model_dir(name) / METADATA_FILE).exists()

    def save(self, name: str, model: TrainedModel,
             metadata: Optional[Dict[str, Any]] = None,
             results: Optional[Dict[str, Any]] = None) -> Path:
        """
        Save a model under a new name.

        Args:
            name: Unique model name
            model: Trained model handle (must not be released)
            metadata: Free-form description (target column, feature columns, ...)
            results: Serialised cycle results

        Returns:
            Directory the model was saved to

        Raises:
            ModelNameExistsError: If the name is already taken
            ModelStoreError: If the save fails
        """
        target_dir = self._model_dir(name)
        model.ensure_active()

        with self._lock:
            if target_dir.exists():
                raise ModelNameExistsError(f"A model named {name!r} already exists")

            temp_dir = Path(tempfile.mkdtemp(prefix=".saving-", dir=self.base_dir))
            try:
                torch.save({
                    'architecture': model.network.config(),
                    'hyperparameters': model.hyperparameters.to_dict(),
                    'state_dict': model.state_dict()
                }, temp_dir / MODEL_FILE)

                record = {
                    'name': name,
                    'timestamp': datetime.now().isoformat(),
                    'architecture': model.architecture.to_dict(),
                    'metadata': metadata or {},
                    'results': results
                }
                with open(temp_dir / METADATA_FILE, 'w') as f:
                    json.dump(record, f, indent=2, default=_json_default)

                temp_dir.rename(target_dir)
            except (OSError, TypeError, ValueError, RuntimeError) as e:
                shutil.rmtree(temp_dir, ignore_errors=True)
                self.logger.error("model_store.save_failed", extra={
                    "model_name": name,
                    "error": str(e)
                })
                raise ModelStoreError(f"Failed to save model {name!r}: {e}") from e

        self.logger.info("model_store.saved", extra={
            "model_name": name,
            "path": str(target_dir),
            "architecture": model.architecture.render()
        })

        return target_dir

    def list_models(self) -> List[Dict[str, Any]]:
        """Metadata records of all saved models, most recent first."""
        records = []
        for metadata_path in self.base_dir.glob(f"*/{METADATA_FILE}"):
            if metadata_path.parent.name.startswith("."):
                continue
            try:
                with open(metadata_path) as f:
                    records.append(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                self.logger.warning("model_store.unreadable_metadata", extra={
                    "path": str(metadata_path),
                    "error": str(e)
                })

        return sorted(records, key=lambda r: r.get('timestamp', ''), reverse=True)

    def load(self, name: str, device: Optional[torch.device] = None) -> StoredModel:
        """
        Rebuild a saved model.

        Raises:
            ModelNotFoundError: If no model has that name
        """
        model_dir = self._model_dir(name)
        if not (model_dir / METADATA_FILE).exists():
            raise ModelNotFoundError(f"No model named {name!r}")

        try:
            with open(model_dir / METADATA_FILE) as f:
                record = json.load(f)
            payload = torch.load(model_dir / MODEL_FILE, map_location="cpu", weights_only=True)

            network = ArchitectureBuilder.from_config(payload['architecture'])
            network.load_state_dict(payload['state_dict'])
            if device is not None:
                network = network.to(device)
            network.eval()
        except (OSError, KeyError, RuntimeError, json.JSONDecodeError) as e:
            raise ModelStoreError(f"Failed to load model {name!r}: {e}") from e

        hyperparameters = HyperparameterConfig(**payload['hyperparameters'])

        self.logger.info("model_store.loaded", extra={
            "model_name": name,
            "architecture": network.describe().render()
        })

        return StoredModel(
            name=name,
            model=TrainedModel(network, hyperparameters, resource_id=f"model:{name}"),
            metadata=record.get('metadata', {}),
            results=record.get('results'),
            timestamp=datetime.fromisoformat(record['timestamp'])
        )

    def delete(self, name: str) -> None:
        model_dir = self._model_dir(name)
        with self._lock:
            if not model_dir.exists():
                raise ModelNotFoundError(f"No model named {name!r}")
            shutil.rmtree(model_dir)

        self.logger.info("model_store.deleted", extra={"model_name": name})


def _json_default(value: Any) -> Any:
    """Serialise numpy scalars/arrays and other stragglers."""
    if hasattr(value, 'item') and callable(value.item):
        try:
            return value.item()
        except (ValueError, TypeError):
            pass
    if hasattr(value, 'tolist'):
        return value.tolist()
    if isinstance(value, (datetime, Path)):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# Custom exceptions
class ModelStoreError(Exception):
    """Base exception for model store operations."""
    pass

class ModelNameExistsError(ModelStoreError):
    """Raised when saving under a name that is already taken."""
    pass

class ModelNotFoundError(ModelStoreError):
    """Raised when a named model does not exist."""
    pass
