# /pocket-ml/src/pocketml/core/architecture.py

"""
ArchitectureBuilder: Residual MLP Sized from the Data's Shape

Builds the single network family the search engine trains: a tapering
stack of GELU layers whose outputs are concatenated with the raw input
before the prediction head.

Layout:
    input ─┬─ [dropout] Linear(h) GELU ─┬─ [dropout] Linear(h/4) GELU ─┬─ ...
           │                            │                              │
           └──────────── concat ────────┴──────────────────────────────┴─ [dropout] ─ head

Sizing:
- First width h: manual, or 2 ** ceil(log2(ceil((n_train / n_features) ** 0.4)))
- Following widths: ceil(previous / 4) while the result is at least 2
- h is capped at 512
"""

import math
from typing import Any, Dict, List
from dataclasses import dataclass

import torch
import torch.nn as nn
import torch.nn.functional as F

from ..config.training_config import HyperparameterConfig, MAX_HIDDEN_DIM


WIDTH_EXPONENT = 0.4
TAPER_FACTOR = 4
MIN_TAPERED_WIDTH = 2


@dataclass(frozen=True)
class ArchitectureSummary:
    """Human-readable description of a built network."""
    input_dim: int
    hidden_dims: List[int]
    concat_dim: int
    output_dim: int
    parameter_count: int

    def render(self) -> str:
        return " → ".join(str(w) for w in self.hidden_dims) + f" (+) {self.concat_dim}"

    def __str__(self) -> str:
        return self.render()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'input_dim': self.input_dim,
            'hidden_dims': list(self.hidden_dims),
            'concat_dim': self.concat_dim,
            'output_dim': self.output_dim,
            'parameter_count': self.parameter_count,
            'text': self.render(),
        }


class ResidualMLP(nn.Module):
    """
    Feed-forward network with input/hidden skip concatenation.

    ``forward`` returns raw outputs (logits for classification);
    ``predict`` applies the sigmoid/softmax for the target type.
    """

    def __init__(self, input_dim: int, hidden_dims: List[int], output_dim: int,
                 target_type: str, dropout_rate: float = 0.0,
                 l1_penalty: float = 0.0, seed: int = 42):
        super().__init__()
        if input_dim < 1:
            raise ArchitectureError(f"Network needs at least one input feature, got {input_dim}")
        if not hidden_dims:
            raise ArchitectureError("Network needs at least one hidden layer")

        self.input_dim = input_dim
        self.hidden_dims = list(hidden_dims)
        self.output_dim = output_dim
        self.target_type = target_type
        self.dropout_rate = dropout_rate
        self.l1_penalty = l1_penalty
        self.seed = seed

        self.hidden_layers = nn.ModuleList()
        previous = input_dim
        for width in self.hidden_dims:
            block = []
            if dropout_rate > 0:
                block.append(nn.Dropout(dropout_rate))
            block.append(nn.Linear(previous, width))
            block.append(nn.GELU())
            self.hidden_layers.append(nn.Sequential(*block))
            previous = width

        self.concat_dim = input_dim + sum(self.hidden_dims)
        self.final_dropout = nn.Dropout(dropout_rate) if dropout_rate > 0 else nn.Identity()
        self.head = nn.Linear(self.concat_dim, output_dim)

        self._initialize_weights()

    def _linear_layers(self) -> List[nn.Linear]:
        layers = [m for block in self.hidden_layers for m in block if isinstance(m, nn.Linear)]
        return layers + [self.head]

    @torch.no_grad()
    def _initialize_weights(self) -> None:
        """Glorot-uniform weights and zero biases, seeded per layer."""
        for index, layer in enumerate(self._linear_layers()):
            generator = torch.Generator().manual_seed(self.seed + index)
            fan_out, fan_in = layer.weight.shape
            bound = math.sqrt(6.0 / (fan_in + fan_out))
            weights = torch.rand(layer.weight.shape, generator=generator) * 2 * bound - bound
            layer.weight.copy_(weights)
            layer.bias.zero_()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        outputs = [x]
        hidden = x
        for block in self.hidden_layers:
            hidden = block(hidden)
            outputs.append(hidden)

        combined = self.final_dropout(torch.cat(outputs, dim=1))
        logits = self.head(combined)

        if self.output_dim == 1:
            return logits.squeeze(-1)
        return logits

    @torch.no_grad()
    def predict(self, x: torch.Tensor) -> torch.Tensor:
        """Predictions in evaluation mode: values, P(positive) or class probabilities."""
        was_training = self.training
        self.eval()
        try:
            output = self.forward(x)
        finally:
            self.train(was_training)

        if self.target_type == "binary":
            return torch.sigmoid(output)
        if self.target_type == "multiclass":
            return F.softmax(output, dim=1)
        return output

    def regularization_loss(self) -> torch.Tensor:
        """L1 penalty on the first hidden layer's weights."""
        first = self._linear_layers()[0]
        if self.l1_penalty <= 0:
            return torch.zeros((), device=first.weight.device)
        return self.l1_penalty * first.weight.abs().sum()

    def parameter_count(self) -> int:
        return sum(p.numel() for p in self.parameters())

    def describe(self) -> ArchitectureSummary:
        return ArchitectureSummary(
            input_dim=self.input_dim,
            hidden_dims=list(self.hidden_dims),
            concat_dim=self.concat_dim,
            output_dim=self.output_dim,
            parameter_count=self.parameter_count(),
        )

    def config(self) -> Dict[str, Any]:
        """Constructor arguments, enough to rebuild the network for a state_dict."""
        return {
            'input_dim': self.input_dim,
            'hidden_dims': list(self.hidden_dims),
            'output_dim': self.output_dim,
            'target_type': self.target_type,
            'dropout_rate': self.dropout_rate,
            'l1_penalty': self.l1_penalty,
            'seed': self.seed,
        }


class ArchitectureBuilder:
    """Derives layer widths from the data shape and builds ResidualMLP instances."""

    @staticmethod
    def auto_first_width(n_features: int, n_train_rows: int) -> int:
        ratio = max(n_train_rows, 1) / max(n_features, 1)
        scaled = math.ceil(ratio ** WIDTH_EXPONENT)
        if scaled <= 1:
            return 1
        return min(2 ** math.ceil(math.log2(scaled)), MAX_HIDDEN_DIM)

    @classmethod
    def compute_hidden_dims(cls, n_features: int, n_train_rows: int,
                            hyperparameters: HyperparameterConfig) -> List[int]:
        if hyperparameters.hidden_dim_mode == "manual" and hyperparameters.hidden_dim_value:
            first = int(hyperparameters.hidden_dim_value)
        else:
            first = cls.auto_first_width(n_features, n_train_rows)
        first = max(1, min(first, MAX_HIDDEN_DIM))

        widths = [first]
        while True:
            following = math.ceil(widths[-1] / TAPER_FACTOR)
            if following < MIN_TAPERED_WIDTH:
                break
            widths.append(following)
        return widths

    @staticmethod
    def output_dim(target_type: str, num_classes: int) -> int:
        if target_type == "multiclass":
            if num_classes < 2:
                raise ArchitectureError(f"Multiclass target needs at least 2 classes, got {num_classes}")
            return num_classes
        return 1

    @classmethod
    def build(cls, n_features: int, n_train_rows: int, target_type: str,
              num_classes: int, hyperparameters: HyperparameterConfig) -> ResidualMLP:
        """
        Build a freshly initialised network for one training attempt.

        Args:
            n_features: Width of the encoded feature matrix
            n_train_rows: Number of training rows
            target_type: 'regression', 'binary' or 'multiclass'
            num_classes: Number of classes (ignored for regression/binary)
            hyperparameters: Width mode, dropout, L1 and seed

        Returns:
            ResidualMLP
        """
        return ResidualMLP(
            input_dim=n_features,
            hidden_dims=cls.compute_hidden_dims(n_features, n_train_rows, hyperparameters),
            output_dim=cls.output_dim(target_type, num_classes),
            target_type=target_type,
            dropout_rate=hyperparameters.dropout_rate,
            l1_penalty=hyperparameters.l1_penalty,
            seed=hyperparameters.seed,
        )

    @staticmethod
    def from_config(config: Dict[str, Any]) -> ResidualMLP:
        return ResidualMLP(**config)


# Custom exceptions
class ArchitectureError(Exception):
    """Raised when a network cannot be built for the given shape."""
    pass
