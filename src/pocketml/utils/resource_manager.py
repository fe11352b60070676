# /pocket-ml/src/pocketml/utils/resource_manager.py

"""
Resource Management for the Training Search Engine

Owns the tensors and devices a training cycle allocates and guarantees
each is released exactly once.

Key Features:
- Resource handles with release-once semantics and context-manager support
- Split tensors built once per cycle from the encoded dataset
- Device selection (cpu / cuda / auto) and torch thread configuration
- psutil snapshots of process memory and CPU for logging and telemetry

Architecture:
- ResourceHandle.release() is idempotent; cleanup() runs at most once
- Access to a released handle raises ResourceReleasedError
"""

import gc
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass
import logging

import psutil
import torch


SPLIT_NAMES = ("train", "validation", "test")


@dataclass
class ResourceUsage:
    """
    Snapshot of current process resource usage.
    """
    timestamp: datetime
    memory_mb: float
    memory_percent: float
    cpu_percent: float
    threads: int = 0
    gpu_memory_mb: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'timestamp': self.timestamp.isoformat(),
            'memory_mb': self.memory_mb,
            'memory_percent': self.memory_percent,
            'cpu_percent': self.cpu_percent,
            'threads': self.threads,
            'gpu_memory_mb': self.gpu_memory_mb
        }


class ResourceHandle(ABC):
    """
    Abstract base class for handles that must be released exactly once.
    """

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        self.acquired_at = datetime.now()
        self._released = False
        self._release_lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    @abstractmethod
    def cleanup(self) -> None:
        """Free the underlying resource. Called at most once."""
        pass

    @property
    def is_released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """
        Release the resource.

        Returns:
            True if this call released it, False if it was already released
        """
        with self._release_lock:
            if self._released:
                return False
            self._released = True

        self.cleanup()
        self.logger.debug("resource.released", extra={
            'resource_id': self.resource_id,
            'held_seconds': (datetime.now() - self.acquired_at).total_seconds()
        })
        return True

    def ensure_active(self) -> None:
        if self._released:
            raise ResourceReleasedError(f"Resource already released: {self.resource_id}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


@dataclass
class SplitTensors:
    """Feature matrix and target vector of one split."""
    features: torch.Tensor
    targets: torch.Tensor

    def __len__(self) -> int:
        return int(self.features.shape[0])


class TensorBundle(ResourceHandle):
    """
    Train/validation/test tensors for one training cycle.

    Built once from an EncodedDataset and shared by every attempt of the
    cycle; released by the orchestrator when the cycle finishes.
    """

    def __init__(self, splits: Dict[str, SplitTensors], device: torch.device,
                 resource_id: str = "tensors"):
        super().__init__(resource_id)
        self._splits = splits
        self.device = device

        self.logger.info("tensor_bundle.allocated", extra={
            'resource_id': resource_id,
            'device': str(device),
            'split_sizes': self.split_sizes(),
            'n_features': self.n_features
        })

    @classmethod
    def from_dataset(cls, encoded, device: Optional[torch.device] = None) -> "TensorBundle":
        """
        Build tensors from an EncodedDataset.

        Classification targets become int64 class indices, regression
        targets float32.
        """
        device = device or torch.device("cpu")
        splits = {}
        for name in SPLIT_NAMES:
            features = torch.as_tensor(encoded.features(name), dtype=torch.float32, device=device)
            targets = torch.as_tensor(encoded.targets(name), device=device)
            splits[name] = SplitTensors(features=features, targets=targets)
        return cls(splits, device)

    def split(self, name: str) -> SplitTensors:
        self.ensure_active()
        if name not in self._splits:
            raise KeyError(f"Unknown split: {name}")
        return self._splits[name]

    @property
    def train(self) -> SplitTensors:
        return self.split("train")

    @property
    def validation(self) -> SplitTensors:
        return self.split("validation")

    @property
    def test(self) -> SplitTensors:
        return self.split("test")

    @property
    def n_features(self) -> int:
        return int(self._splits["train"].features.shape[1])

    def split_sizes(self) -> Dict[str, int]:
        return {name: len(tensors) for name, tensors in self._splits.items()}

    def cleanup(self) -> None:
        self._splits.clear()
        if self.device.type == "cuda":
            torch.cuda.empty_cache()
        gc.collect()


def select_device(preference: str = "cpu") -> torch.device:
    """Resolve 'cpu', 'cuda' or 'auto' to a torch device."""
    preference = preference.lower()
    if preference == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    if preference == "cuda":
        if not torch.cuda.is_available():
            raise ResourceAllocationError("CUDA requested but no GPU is available")
        return torch.device("cuda")
    return torch.device("cpu")


def configure_threads(num_threads: Optional[int]) -> None:
    if num_threads:
        torch.set_num_threads(num_threads)


class SystemResourceMonitor:
    """
    Process resource snapshots via psutil.
    """

    def __init__(self, max_memory_gb: float = 8.0, oom_threshold: float = 0.9):
        self.max_memory_gb = max_memory_gb
        self.oom_threshold = oom_threshold
        self.logger = logging.getLogger(__name__)
        self._process = psutil.Process()

    def get_current_usage(self) -> ResourceUsage:
        """Get current process resource usage."""
        memory_info = self._process.memory_info()

        gpu_memory_mb = None
        if torch.cuda.is_available():
            gpu_memory_mb = torch.cuda.memory_allocated() / (1024 ** 2)

        return ResourceUsage(
            timestamp=datetime.now(),
            memory_mb=memory_info.rss / (1024 ** 2),
            memory_percent=self._process.memory_percent(),
            cpu_percent=self._process.cpu_percent(interval=None),
            threads=self._process.num_threads(),
            gpu_memory_mb=gpu_memory_mb
        )

    def check_memory(self) -> Tuple[bool, List[str]]:
        """
        Check the process against the configured memory ceiling.

        Returns:
            Tuple of (within_limits, error_messages)
        """
        errors = []
        usage = self.get_current_usage()
        limit_mb = self.max_memory_gb * 1024

        if usage.memory_mb > limit_mb:
            errors.append(f"Process memory {usage.memory_mb:.0f}MB exceeds limit {limit_mb:.0f}MB")

        system_percent = psutil.virtual_memory().percent
        if system_percent > self.oom_threshold * 100:
            errors.append(
                f"System memory usage above threshold: {system_percent:.1f}% "
                f"> {self.oom_threshold * 100:.1f}%"
            )

        if errors:
            self.logger.warning("resource_monitor.memory_pressure", extra={
                'memory_mb': usage.memory_mb,
                'system_memory_percent': system_percent,
                'errors': errors
            })

        return len(errors) == 0, errors


# Custom exceptions
class ResourceAllocationError(Exception):
    """Raised when a requested resource is unavailable."""
    pass


class ResourceReleasedError(Exception):
    """Raised when a released resource is accessed."""
    pass
