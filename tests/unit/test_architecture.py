"""
Unit tests for ArchitectureBuilder and ResidualMLP.
"""

import sys
from pathlib import Path

import pytest
import torch

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from pocketml.config.training_config import HyperparameterConfig
from pocketml.core.architecture import ArchitectureBuilder, ArchitectureError, ResidualMLP


def manual(width: int, **kwargs) -> HyperparameterConfig:
    return HyperparameterConfig(hidden_dim_mode="manual", hidden_dim_value=width, **kwargs)


class TestWidthComputation:
    """Test hidden width derivation."""

    def test_auto_width_from_data_shape(self):
        """7000 rows over 10 features: ceil(700 ** 0.4) = 14, rounded up to 16."""
        widths = ArchitectureBuilder.compute_hidden_dims(10, 7000, HyperparameterConfig())
        assert widths == [16, 4]

    def test_auto_width_when_rows_scarce(self):
        assert ArchitectureBuilder.auto_first_width(100, 50) == 1
        assert ArchitectureBuilder.compute_hidden_dims(100, 50, HyperparameterConfig()) == [1]

    def test_manual_width_tapers_by_four(self):
        assert ArchitectureBuilder.compute_hidden_dims(10, 100, manual(64)) == [64, 16, 4]
        assert ArchitectureBuilder.compute_hidden_dims(10, 100, manual(5)) == [5, 2]

    def test_width_capped(self):
        config = HyperparameterConfig(hidden_dim_mode="manual", hidden_dim_value=4096)
        widths = ArchitectureBuilder.compute_hidden_dims(10, 100, config)
        assert widths == [512, 128, 32, 8, 2]

    def test_auto_width_capped(self):
        assert ArchitectureBuilder.auto_first_width(1, 10 ** 12) == 512

    def test_output_dims(self):
        assert ArchitectureBuilder.output_dim("regression", 1) == 1
        assert ArchitectureBuilder.output_dim("binary", 2) == 1
        assert ArchitectureBuilder.output_dim("multiclass", 4) == 4

    def test_multiclass_needs_two_classes(self):
        with pytest.raises(ArchitectureError):
            ArchitectureBuilder.output_dim("multiclass", 1)


class TestResidualMLP:
    """Test the built network."""

    def test_render_and_concat_width(self):
        network = ArchitectureBuilder.build(10, 100, "regression", 1, manual(64))
        summary = network.describe()

        assert summary.concat_dim == 10 + 64 + 16 + 4
        assert summary.render() == "64 → 16 → 4 (+) 94"
        assert summary.parameter_count == (10 * 64 + 64) + (64 * 16 + 16) + (16 * 4 + 4) + (94 + 1)

    def test_output_shapes(self):
        x = torch.randn(5, 6)

        regression = ArchitectureBuilder.build(6, 100, "regression", 1, manual(8))
        binary = ArchitectureBuilder.build(6, 100, "binary", 2, manual(8))
        multiclass = ArchitectureBuilder.build(6, 100, "multiclass", 3, manual(8))

        assert regression(x).shape == (5,)
        assert binary(x).shape == (5,)
        assert multiclass(x).shape == (5, 3)

    def test_predict_applies_link_function(self):
        x = torch.randn(8, 4)

        binary = ArchitectureBuilder.build(4, 100, "binary", 2, manual(8))
        multiclass = ArchitectureBuilder.build(4, 100, "multiclass", 3, manual(8))

        probabilities = binary.predict(x)
        assert torch.all((probabilities >= 0) & (probabilities <= 1))
        assert torch.allclose(multiclass.predict(x).sum(dim=1), torch.ones(8))

    def test_predict_restores_training_mode(self):
        network = ArchitectureBuilder.build(4, 100, "binary", 2, manual(8, dropout_rate=0.2))
        network.train()

        network.predict(torch.randn(3, 4))

        assert network.training

    def test_seeded_initialisation(self):
        first = ArchitectureBuilder.build(6, 100, "regression", 1, manual(16, seed=3))
        second = ArchitectureBuilder.build(6, 100, "regression", 1, manual(16, seed=3))
        other = ArchitectureBuilder.build(6, 100, "regression", 1, manual(16, seed=4))

        for key, tensor in first.state_dict().items():
            assert torch.equal(tensor, second.state_dict()[key])
        assert not torch.equal(first.head.weight, other.head.weight)

    def test_biases_start_at_zero(self):
        network = ArchitectureBuilder.build(6, 100, "regression", 1, manual(16))
        for name, parameter in network.named_parameters():
            if name.endswith("bias"):
                assert torch.count_nonzero(parameter) == 0

    def test_dropout_layers_follow_rate(self):
        with_dropout = ArchitectureBuilder.build(6, 100, "binary", 2, manual(16, dropout_rate=0.3))
        without = ArchitectureBuilder.build(6, 100, "binary", 2, manual(16))

        assert any(isinstance(m, torch.nn.Dropout) for m in with_dropout.modules())
        assert not any(isinstance(m, torch.nn.Dropout) for m in without.modules())

    def test_l1_penalty_on_first_layer(self):
        network = ArchitectureBuilder.build(6, 100, "regression", 1, manual(16, l1_penalty=0.01))
        first_weight = network.hidden_layers[0][0].weight

        assert network.regularization_loss().item() == pytest.approx(
            0.01 * first_weight.abs().sum().item(), rel=1e-5
        )

    def test_no_l1_penalty(self):
        network = ArchitectureBuilder.build(6, 100, "regression", 1, manual(16))
        assert network.regularization_loss().item() == 0.0

    def test_rebuild_from_config(self):
        network = ArchitectureBuilder.build(6, 100, "multiclass", 3, manual(16, dropout_rate=0.1))
        rebuilt = ArchitectureBuilder.from_config(network.config())

        assert rebuilt.describe() == network.describe()
        assert isinstance(rebuilt, ResidualMLP)

    def test_no_features_rejected(self):
        with pytest.raises(ArchitectureError):
            ArchitectureBuilder.build(0, 100, "regression", 1, HyperparameterConfig())
