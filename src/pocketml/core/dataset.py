# /pocket-ml/src/pocketml/core/dataset.py

"""
Dataset: Raw Tabular Input Handling and Validation

Turns raw tabular input (a list of row mappings or a DataFrame) into a
pandas frame and checks it for the data errors that must be rejected
before a training cycle starts.

Key Features:
- Uniform missing-value detection (None, NaN, empty string)
- Dataset validation with detailed diagnostics
- Target type suggestion from the target column's values
- CSV loading for command-line use
"""

import logging
import numbers
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from dataclasses import dataclass, field

import numpy as np
import pandas as pd


RowsLike = Union[pd.DataFrame, Iterable[Mapping[str, Any]]]

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """
    Dataset validation results with detailed diagnostics.
    """
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    validation_timestamp: datetime = field(default_factory=datetime.now)

    def add_error(self, error: str) -> None:
        """Add validation error."""
        self.errors.append(error)
        self.is_valid = False

    def add_warning(self, warning: str) -> None:
        """Add validation warning."""
        self.warnings.append(warning)

    def raise_if_invalid(self) -> None:
        if not self.is_valid:
            raise DatasetValidationError("; ".join(self.errors))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'is_valid': self.is_valid,
            'errors': self.errors,
            'warnings': self.warnings,
            'metrics': self.metrics,
            'validation_timestamp': self.validation_timestamp.isoformat()
        }


def is_missing(value: Any) -> bool:
    """True for None, NaN/NA and the empty string."""
    if isinstance(value, str):
        return value == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def missing_mask(series: pd.Series) -> pd.Series:
    """Vectorised ``is_missing`` over a column."""
    empty = series.map(lambda v: isinstance(v, str) and v == "").astype(bool)
    return series.isna() | empty


def is_real_number(value: Any) -> bool:
    return (isinstance(value, numbers.Real)
            and not isinstance(value, (bool, np.bool_))
            and not is_missing(value))


def to_python_scalar(value: Any) -> Any:
    """Unwrap numpy scalars so values serialise cleanly."""
    if isinstance(value, np.generic):
        return value.item()
    return value


def rows_to_frame(rows: RowsLike) -> pd.DataFrame:
    """
    Build a DataFrame from row mappings (or copy an existing frame).

    The caller's data is never modified.
    """
    if isinstance(rows, pd.DataFrame):
        frame = rows.copy()
    else:
        frame = pd.DataFrame.from_records(list(rows))

    if frame.empty or len(frame.columns) == 0:
        raise DatasetValidationError("Dataset is empty")

    return frame


def filter_missing_target(frame: pd.DataFrame, target_column: str) -> pd.DataFrame:
    """Drop rows whose target value is missing."""
    if target_column not in frame.columns:
        raise DatasetValidationError(f"Target column not found: {target_column}")

    keep = ~missing_mask(frame[target_column])
    dropped = int((~keep).sum())
    if dropped:
        logger.warning("dataset.missing_target_rows_dropped", extra={
            "target_column": target_column,
            "dropped_rows": dropped
        })
    return frame.loc[keep]


def suggest_target_type(values: Iterable[Any]) -> str:
    """
    Suggest a target type from the target column's values.

    Numeric targets with two distinct values are binary, three to ten
    distinct values multiclass, anything else regression. Non-numeric
    targets are binary with exactly two distinct values, else multiclass.
    """
    unique_values = list(dict.fromkeys(to_python_scalar(v) for v in values if not is_missing(v)))

    if unique_values and all(is_real_number(v) for v in unique_values):
        if len(unique_values) == 2:
            return "binary"
        if 3 <= len(unique_values) <= 10:
            return "multiclass"
        return "regression"

    return "binary" if len(unique_values) == 2 else "multiclass"


def validate_dataset(rows: RowsLike, target_column: str,
                     target_type: Optional[str] = None) -> ValidationResult:
    """
    Check a raw dataset for errors that must be rejected before training.

    Args:
        rows: Raw rows or DataFrame
        target_column: Name of the target column
        target_type: Optional declared target type to check against

    Returns:
        ValidationResult with errors, warnings and target statistics
    """
    result = ValidationResult(is_valid=True)

    try:
        frame = rows_to_frame(rows)
    except DatasetValidationError as e:
        result.add_error(str(e))
        return result

    if target_column not in frame.columns:
        result.add_error(f"Target column not found: {target_column}")
        return result

    target = frame[target_column]
    missing = missing_mask(target)
    distinct = target[~missing].map(to_python_scalar).nunique()

    if missing.all():
        result.add_error(f"Target column has no values: {target_column}")
    elif distinct == 1:
        result.add_error(f"Target column has only one unique value: {target_column}")

    if missing.any():
        result.add_warning(
            f"{int(missing.sum())} rows with missing target values will be discarded"
        )

    if target_type is not None:
        if target_type not in ("regression", "binary", "multiclass"):
            result.add_error(f"Unknown target type: {target_type}")
        elif target_type == "binary" and distinct > 2:
            result.add_error(f"Binary target has {distinct} distinct values")
        elif target_type == "regression":
            numeric = pd.to_numeric(target[~missing], errors="coerce")
            if numeric.isna().any():
                result.add_warning(
                    f"{int(numeric.isna().sum())} non-numeric regression targets will be discarded"
                )

    empty_columns = [
        col for col in frame.columns
        if col != target_column and missing_mask(frame[col]).all()
    ]
    if empty_columns:
        result.add_warning(f"Columns with no values will be dropped: {empty_columns}")

    result.metrics = {
        'row_count': len(frame),
        'column_count': len(frame.columns),
        'missing_target_count': int(missing.sum()),
        'unique_target_count': int(distinct),
        'suggested_target_type': suggest_target_type(target) if distinct else None,
    }

    return result


def load_rows_from_csv(path: Union[str, Path]) -> pd.DataFrame:
    """Load a CSV file; empty cells become missing values."""
    path = Path(path)
    if not path.exists():
        raise DatasetLoadingError(f"Data file not found: {path}")

    try:
        frame = pd.read_csv(path)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise DatasetLoadingError(f"Failed to parse {path}: {e}") from e

    logger.info("dataset.loaded", extra={
        "path": str(path),
        "shape": frame.shape
    })

    return frame


# Custom exceptions
class DatasetError(Exception):
    """Base exception for dataset operations."""
    pass

class DatasetValidationError(DatasetError):
    """Raised when a dataset fails validation."""
    pass

class DatasetLoadingError(DatasetError):
    """Raised when a dataset cannot be loaded."""
    pass
