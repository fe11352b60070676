"""
Unit tests for raw dataset handling and validation.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from pocketml.core.dataset import (
    DatasetLoadingError,
    DatasetValidationError,
    filter_missing_target,
    is_missing,
    is_real_number,
    load_rows_from_csv,
    rows_to_frame,
    suggest_target_type,
    validate_dataset,
)


class TestMissingValues:
    """Test the uniform missing-value rule."""

    @pytest.mark.parametrize("value", [None, float("nan"), np.nan, "", pd.NA])
    def test_missing(self, value):
        assert is_missing(value)

    @pytest.mark.parametrize("value", [0, 0.0, "0", " ", "Unknown", False])
    def test_present(self, value):
        assert not is_missing(value)

    def test_real_numbers(self):
        assert is_real_number(3)
        assert is_real_number(np.float32(1.5))
        assert not is_real_number(True)
        assert not is_real_number("3")
        assert not is_real_number(float("nan"))


class TestTargetTypeSuggestion:
    """Test target type suggestion."""

    def test_numeric_two_values_binary(self):
        assert suggest_target_type([0, 1, 1, 0]) == "binary"

    def test_numeric_few_values_multiclass(self):
        assert suggest_target_type([1, 2, 3, 2, 1]) == "multiclass"

    def test_numeric_many_values_regression(self):
        assert suggest_target_type(np.linspace(0, 1, 50)) == "regression"

    def test_text_values(self):
        assert suggest_target_type(["yes", "no", "yes"]) == "binary"
        assert suggest_target_type(["a", "b", "c"]) == "multiclass"

    def test_missing_values_ignored(self):
        assert suggest_target_type([1.0, None, 2.0, ""]) == "binary"


class TestValidateDataset:
    """Test dataset validation."""

    def test_valid_dataset(self, binary_frame):
        result = validate_dataset(binary_frame, "churned", "binary")

        assert result.is_valid
        assert result.metrics['row_count'] == len(binary_frame)
        assert result.metrics['suggested_target_type'] == "binary"

    def test_empty_dataset(self):
        result = validate_dataset([], "y")

        assert not result.is_valid
        assert "empty" in result.errors[0]

    def test_missing_target_column(self, binary_frame):
        result = validate_dataset(binary_frame, "label")

        assert not result.is_valid
        with pytest.raises(DatasetValidationError):
            result.raise_if_invalid()

    def test_single_valued_target(self):
        result = validate_dataset([{'x': 1, 'y': 'a'}, {'x': 2, 'y': 'a'}], "y")

        assert not result.is_valid
        assert "one unique value" in result.errors[0]

    def test_binary_target_with_three_values(self):
        rows = [{'x': i, 'y': label} for i, label in enumerate(['a', 'b', 'c'])]

        result = validate_dataset(rows, "y", "binary")

        assert not result.is_valid

    def test_missing_targets_warn(self):
        rows = [{'x': 1, 'y': 1.0}, {'x': 2, 'y': None}, {'x': 3, 'y': 2.0}]

        result = validate_dataset(rows, "y")

        assert result.is_valid
        assert result.metrics['missing_target_count'] == 1
        assert any("missing target" in warning for warning in result.warnings)

    def test_empty_columns_warn(self):
        rows = [{'x': 1, 'empty': None, 'y': 0}, {'x': 2, 'empty': "", 'y': 1}]

        result = validate_dataset(rows, "y")

        assert any("empty" in warning for warning in result.warnings)

    def test_to_dict(self, binary_frame):
        data = validate_dataset(binary_frame, "churned").to_dict()
        assert data['is_valid'] is True
        assert 'validation_timestamp' in data


class TestFrameHelpers:
    """Test frame construction, target filtering and CSV loading."""

    def test_rows_to_frame_copies(self, binary_frame):
        frame = rows_to_frame(binary_frame)
        frame['signal'] = 0.0

        assert not (binary_frame['signal'] == 0.0).all()

    def test_filter_missing_target(self):
        frame = pd.DataFrame({'x': [1, 2, 3], 'y': ['a', '', None]})

        filtered = filter_missing_target(frame, 'y')

        assert list(filtered.index) == [0]

    def test_load_csv(self, temp_dir):
        path = temp_dir / "data.csv"
        path.write_text("x,colour,y\n1,red,0\n2,,1\n,blue,1\n")

        frame = load_rows_from_csv(path)

        assert frame.shape == (3, 3)
        assert is_missing(frame.loc[1, 'colour'])
        assert is_missing(frame.loc[2, 'x'])

    def test_load_missing_file(self, temp_dir):
        with pytest.raises(DatasetLoadingError):
            load_rows_from_csv(temp_dir / "absent.csv")

    def test_load_empty_file(self, temp_dir):
        path = temp_dir / "empty.csv"
        path.write_text("")

        with pytest.raises(DatasetLoadingError):
            load_rows_from_csv(path)
