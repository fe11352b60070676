# /pocket-ml/src/pocketml/core/feature_encoder.py

"""
FeatureEncoder: Leakage-Free Tabular Preprocessing

Turns raw rows into clean numeric train/validation/test frames. Every
encoding parameter (category maps, scaler statistics, class mapping) is
fit on the training split only and applied by lookup to the other splits.

Pipeline stages, in order:
1. Stratified split (target class, or target decile for regression)
2. Constant-column removal
3. Granularity filter for high-cardinality categorical columns
4. Missing categorical values -> "Unknown"
5. One-hot or smoothed target encoding, chosen by category count
6. Numeric imputation with the training mean
7. Standardisation of originally-numeric columns
8. Target transform through the class mapping

Architecture:
- EncodingState holds every fitted parameter and can transform any frame
- EncodedDataset bundles the three encoded splits with their state
- Numeric edge cases (zero std, unseen category) fall back silently
"""

import math
import time
import logging
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from ..config.training_config import DataConfig, TARGET_TYPES
from .dataset import (
    RowsLike,
    DatasetValidationError,
    filter_missing_target,
    is_missing,
    is_real_number,
    missing_mask,
    rows_to_frame,
    to_python_scalar,
)


NUMERIC = "numeric"
CATEGORICAL = "categorical"
TARGET = "target"

ONE_HOT = "one_hot"
TARGET_ENCODED = "target"

UNSEEN_LABEL = -1

_MISSING_STRATUM = "__missing__"
_SPLIT_EPSILON = 1e-9


@dataclass(frozen=True)
class SplitRatios:
    """Train/validation/test proportions summing to 1.0."""
    train: float = 0.7
    validation: float = 0.2
    test: float = 0.1

    def __post_init__(self):
        for name in ("train", "validation", "test"):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise DatasetValidationError(f"{name} ratio must be between 0 and 1: {value}")
        total = self.train + self.validation + self.test
        if abs(total - 1.0) > 1e-6:
            raise DatasetValidationError(f"Split ratios must sum to 1.0: {total}")

    @classmethod
    def from_config(cls, config: DataConfig) -> "SplitRatios":
        return cls(config.train_split, config.validation_split, config.test_split)


@dataclass
class ClassMapping:
    """
    Bijection between raw train labels and contiguous indices 0..k-1.
    """
    classes: List[Any]

    def __post_init__(self):
        self._index = {label: i for i, label in enumerate(self.classes)}

    @classmethod
    def fit(cls, labels: pd.Series) -> "ClassMapping":
        unique = list(dict.fromkeys(to_python_scalar(v) for v in labels))
        try:
            ordered = sorted(unique)
        except TypeError:
            ordered = sorted(unique, key=str)
        return cls(classes=ordered)

    @property
    def num_classes(self) -> int:
        return len(self.classes)

    def index_of(self, label: Any) -> int:
        return self._index.get(to_python_scalar(label), UNSEEN_LABEL)

    def encode(self, labels: pd.Series) -> pd.Series:
        return labels.map(self.index_of).astype(np.int64)

    def decode(self, indices: np.ndarray) -> List[Any]:
        return [self.classes[int(i)] if 0 <= int(i) < len(self.classes) else None for i in indices]

    def to_dict(self) -> Dict[str, int]:
        return {str(label): i for i, label in enumerate(self.classes)}


@dataclass(frozen=True)
class ScalerParams:
    """Training-split statistics for one numeric column."""
    mean: float
    std: float

    def apply(self, values: pd.Series) -> pd.Series:
        return (values - self.mean) / self.std


@dataclass
class CategoricalEncoding:
    """
    Fitted encoding of one categorical column.

    ``mapping`` maps each output column to a category -> value lookup;
    ``priors`` holds the value used for categories unseen in train.
    """
    column: str
    method: str
    categories: List[str]
    output_columns: List[str]
    mapping: Dict[str, Dict[str, float]]
    priors: Dict[str, float]
    reference: Optional[str] = None

    def transform(self, values: pd.Series) -> pd.DataFrame:
        encoded = {}
        for output in self.output_columns:
            lookup = self.mapping[output]
            encoded[output] = values.map(lookup).astype(float).fillna(self.priors[output])
        return pd.DataFrame(encoded, index=values.index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'column': self.column,
            'method': self.method,
            'categories': self.categories,
            'reference': self.reference,
            'output_columns': self.output_columns,
            'priors': self.priors,
        }


@dataclass
class EncodingState:
    """
    Every parameter fitted on the training split.
    """
    target_column: str
    target_type: str
    column_types: Dict[str, str]
    dropped_columns: Dict[str, str]
    numeric_columns: List[str]
    categorical_encodings: Dict[str, CategoricalEncoding]
    imputation_means: Dict[str, float]
    scaler: Dict[str, ScalerParams]
    feature_columns: List[str]
    class_mapping: Optional[ClassMapping] = None
    unknown_category: str = "Unknown"

    @property
    def num_classes(self) -> int:
        if self.class_mapping is None:
            return 1
        return self.class_mapping.num_classes

    def transform(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Apply the fitted encoding to validation/test (or new) rows."""
        missing = [col for col in self._source_columns() if col not in frame.columns]
        if missing:
            raise FeatureEncodingError(f"Columns missing from input: {missing}")

        parts = []
        for column in self._source_columns():
            if column in self.categorical_encodings:
                values = fill_unknown(frame[column], self.unknown_category)
                parts.append(self.categorical_encodings[column].transform(values))
            else:
                values = coerce_numeric(frame[column]).fillna(self.imputation_means[column])
                parts.append(self.scaler[column].apply(values).rename(column).to_frame())

        features = pd.concat(parts, axis=1) if parts else pd.DataFrame(index=frame.index)
        features = features[self.feature_columns].copy()

        if self.target_column in frame.columns:
            features[self.target_column] = self.transform_target(frame[self.target_column])

        return features

    def transform_target(self, target: pd.Series) -> pd.Series:
        if self.class_mapping is not None:
            return self.class_mapping.encode(target)
        return coerce_numeric(target).astype(float)

    def _source_columns(self) -> List[str]:
        return [col for col, kind in self.column_types.items()
                if kind != TARGET and col not in self.dropped_columns]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'target_column': self.target_column,
            'target_type': self.target_type,
            'column_types': self.column_types,
            'dropped_columns': self.dropped_columns,
            'feature_columns': self.feature_columns,
            'categorical_encodings': {
                col: enc.to_dict() for col, enc in self.categorical_encodings.items()
            },
            'scaler': {col: {'mean': p.mean, 'std': p.std} for col, p in self.scaler.items()},
            'class_mapping': self.class_mapping.to_dict() if self.class_mapping else None,
        }


@dataclass
class EncodedDataset:
    """
    Encoded train/validation/test frames plus the fitted encoding state.

    Each frame holds the feature columns followed by the encoded target
    and keeps the original row labels of the input.
    """
    train: pd.DataFrame
    validation: pd.DataFrame
    test: pd.DataFrame
    state: EncodingState
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def target_column(self) -> str:
        return self.state.target_column

    @property
    def target_type(self) -> str:
        return self.state.target_type

    @property
    def feature_columns(self) -> List[str]:
        return self.state.feature_columns

    @property
    def scaler(self) -> Dict[str, ScalerParams]:
        return self.state.scaler

    @property
    def class_mapping(self) -> Optional[ClassMapping]:
        return self.state.class_mapping

    @property
    def categorical_encodings(self) -> Dict[str, CategoricalEncoding]:
        return self.state.categorical_encodings

    @property
    def dropped_columns(self) -> Dict[str, str]:
        return self.state.dropped_columns

    @property
    def column_types(self) -> Dict[str, str]:
        return self.state.column_types

    @property
    def num_classes(self) -> int:
        return self.state.num_classes

    @property
    def split_sizes(self) -> Dict[str, int]:
        return {'train': len(self.train), 'validation': len(self.validation), 'test': len(self.test)}

    def split(self, name: str) -> pd.DataFrame:
        if name not in ("train", "validation", "test"):
            raise KeyError(f"Unknown split: {name}")
        return getattr(self, name)

    def features(self, name: str) -> np.ndarray:
        return self.split(name)[self.feature_columns].to_numpy(dtype=np.float32)

    def targets(self, name: str) -> np.ndarray:
        target = self.split(name)[self.target_column]
        if self.state.class_mapping is not None:
            return target.to_numpy(dtype=np.int64)
        return target.to_numpy(dtype=np.float32)


def fill_unknown(values: pd.Series, unknown: str = "Unknown") -> pd.Series:
    """Categorical view of a column: strings, missing -> ``unknown``."""
    mask = missing_mask(values)
    as_text = values.map(lambda v: v if isinstance(v, str) else str(to_python_scalar(v)))
    return as_text.where(~mask, unknown)


def coerce_numeric(values: pd.Series) -> pd.Series:
    """Numeric view of a column: invalid and missing entries become NaN."""
    return pd.to_numeric(values.where(~missing_mask(values)), errors="coerce").astype(float)


def ordered_target_statistic(categories: np.ndarray, targets: np.ndarray,
                             prior: float, order: np.ndarray) -> Tuple[np.ndarray, Dict[str, float]]:
    """
    Running smoothed target mean over a shuffled pass of the training rows.

    Each row receives its category's value before its own target is added
    (the prior for a category not seen yet); the category is then updated
    to ``(running_sum + prior) / (count + 2)``.

    Returns:
        Per-row encoded values and the final category -> value map
    """
    sums: Dict[str, float] = {}
    counts: Dict[str, int] = {}
    encoded = np.empty(len(categories), dtype=float)

    for position in order:
        category = categories[position]
        count = counts.get(category, 0)
        if count == 0:
            encoded[position] = prior
        else:
            encoded[position] = (sums[category] + prior) / (count + 2)
        sums[category] = sums.get(category, 0.0) + float(targets[position])
        counts[category] = count + 1

    final = {category: (sums[category] + prior) / (counts[category] + 2) for category in sums}
    return encoded, final


class FeatureEncoder:
    """
    Tabular feature-encoding pipeline.

    Stateless between calls: ``encode`` fits a fresh EncodingState on the
    training split of every dataset it is given.
    """

    def __init__(self, config: Optional[DataConfig] = None):
        self.config = config or DataConfig()
        self.logger = logging.getLogger(__name__)

    def encode(self, rows: RowsLike, target_column: str, target_type: str,
               split_ratios: Optional[SplitRatios] = None,
               seed: Optional[int] = None) -> EncodedDataset:
        """
        Split, fit on train, and encode all three splits.

        Args:
            rows: Raw rows (mappings) or a DataFrame
            target_column: Name of the target column
            target_type: 'regression', 'binary' or 'multiclass'
            split_ratios: Train/validation/test proportions
            seed: Seed for the split shuffle and target-encoding order

        Returns:
            EncodedDataset ready for tensor construction
        """
        start_time = time.time()
        split_ratios = split_ratios or SplitRatios.from_config(self.config)
        seed = self.config.seed if seed is None else seed

        if target_type not in TARGET_TYPES:
            raise DatasetValidationError(f"Unknown target type: {target_type}")

        frame = filter_missing_target(rows_to_frame(rows), target_column)
        if target_type == "regression":
            invalid = coerce_numeric(frame[target_column]).isna()
            frame = frame.loc[~invalid]
        if frame.empty:
            raise DatasetValidationError("No rows with a valid target value")

        train, validation, test = self.stratified_split(
            frame, target_column, target_type, split_ratios, seed
        )
        if train.empty:
            raise DatasetValidationError("Training split is empty")

        state, encoded_train = self.fit_transform(train, target_column, target_type, seed)

        dataset = EncodedDataset(
            train=encoded_train,
            validation=state.transform(validation),
            test=state.transform(test),
            state=state,
            metadata={
                'input_shape': frame.shape,
                'seed': seed,
                'split_ratios': {
                    'train': split_ratios.train,
                    'validation': split_ratios.validation,
                    'test': split_ratios.test,
                },
                'processing_time': time.time() - start_time,
            }
        )

        self.logger.info("feature_encoder.encoded", extra={
            "target_column": target_column,
            "target_type": target_type,
            "split_sizes": dataset.split_sizes,
            "feature_count": len(state.feature_columns),
            "dropped_columns": list(state.dropped_columns)
        })

        return dataset

    def stratified_split(self, frame: pd.DataFrame, target_column: str, target_type: str,
                         split_ratios: SplitRatios,
                         seed: int) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
        """
        Seeded stratified split.

        Within each stratum rows are shuffled, the first ``floor(n * train)``
        go to train, the next ``floor(n * validation)`` to validation and the
        rest to test. Row labels of ``frame`` are preserved.
        """
        keys = self._stratification_keys(frame[target_column], target_type).to_numpy()
        rng = np.random.RandomState(seed)

        train_idx: List[int] = []
        validation_idx: List[int] = []
        test_idx: List[int] = []

        for stratum in sorted(set(keys), key=str):
            members = np.flatnonzero(keys == stratum)
            shuffled = members[rng.permutation(len(members))]

            n = len(shuffled)
            n_train = int(math.floor(n * split_ratios.train + _SPLIT_EPSILON))
            n_validation = int(math.floor(n * split_ratios.validation + _SPLIT_EPSILON))
            n_validation = min(n_validation, n - n_train)

            train_idx.extend(shuffled[:n_train])
            validation_idx.extend(shuffled[n_train:n_train + n_validation])
            test_idx.extend(shuffled[n_train + n_validation:])

        self.logger.debug("feature_encoder.split", extra={
            "strata": len(set(keys)),
            "train_rows": len(train_idx),
            "validation_rows": len(validation_idx),
            "test_rows": len(test_idx)
        })

        return tuple(
            frame.iloc[sorted(int(i) for i in idx)] for idx in (train_idx, validation_idx, test_idx)
        )

    def _stratification_keys(self, target: pd.Series, target_type: str) -> pd.Series:
        """Stratum label per row: the class, or a quantile bin for regression."""
        if target_type != "regression":
            labels = target.map(lambda v: _MISSING_STRATUM if is_missing(v) else str(to_python_scalar(v)))
            return labels.astype(str)

        numeric = coerce_numeric(target)
        keys = pd.Series(_MISSING_STRATUM, index=target.index, dtype=object)
        valid = numeric.notna()

        if numeric[valid].nunique() < 2:
            keys[valid] = "0"
        else:
            bins = pd.qcut(numeric[valid], q=self.config.regression_bins,
                           labels=False, duplicates="drop")
            keys[valid] = bins.astype(int).astype(str)

        return keys

    def fit(self, train: pd.DataFrame, target_column: str, target_type: str,
            seed: Optional[int] = None) -> EncodingState:
        """Fit the encoding parameters on training rows only."""
        state, _ = self.fit_transform(train, target_column, target_type, seed)
        return state

    def fit_transform(self, train: pd.DataFrame, target_column: str, target_type: str,
                      seed: Optional[int] = None) -> Tuple[EncodingState, pd.DataFrame]:
        """
        Fit every encoding parameter on ``train`` and encode it.

        Training rows of target-encoded columns receive their running
        (ordered) statistic; other splits use the final map via
        ``EncodingState.transform``.
        """
        seed = self.config.seed if seed is None else seed
        rng = np.random.RandomState(seed)
        unknown = self.config.unknown_category

        column_types = self._classify_columns(train, target_column)
        dropped: Dict[str, str] = {}

        # Stage 2: constant columns
        for column, kind in column_types.items():
            if kind == TARGET:
                continue
            if self._is_constant(train[column]):
                dropped[column] = "constant"

        # Stage 8 is fitted first: the class count drives the encoding choice
        class_mapping = None
        if target_type != "regression":
            class_mapping = ClassMapping.fit(train[target_column])
            k = class_mapping.num_classes
        else:
            k = self.config.regression_class_proxy

        target_train = self._train_target(train[target_column], target_type, class_mapping)

        encodings: Dict[str, CategoricalEncoding] = {}
        numeric_columns: List[str] = []
        imputation_means: Dict[str, float] = {}
        scaler: Dict[str, ScalerParams] = {}
        parts: List[pd.DataFrame] = []

        for column, kind in column_types.items():
            if kind == TARGET or column in dropped:
                continue

            if kind == CATEGORICAL:
                # Stages 3-4: granularity filter over the "Unknown"-filled values
                values = fill_unknown(train[column], unknown)
                shares = values.value_counts(normalize=True)
                if (shares < self.config.granularity_threshold).all():
                    dropped[column] = "too_granular"
                    continue

                # Stage 5
                categories = sorted(shares.index)
                if len(categories) < k + self.config.one_hot_margin:
                    encoding = self._fit_one_hot(column, values, categories, shares)
                    encoded = encoding.transform(values)
                else:
                    encoding, encoded = self._fit_target_encoding(
                        column, values, categories, target_train, target_type, class_mapping, rng
                    )
                encodings[column] = encoding
                parts.append(encoded)
            else:
                # Stages 6-7
                values = coerce_numeric(train[column])
                mean = float(values.mean()) if values.notna().any() else 0.0
                filled = values.fillna(mean)
                std = float(filled.std(ddof=0))
                if not np.isfinite(std) or std == 0:
                    std = 1.0
                numeric_columns.append(column)
                imputation_means[column] = mean
                scaler[column] = ScalerParams(mean=mean, std=std)
                parts.append(scaler[column].apply(filled).rename(column).to_frame())

        encoded_train = pd.concat(parts, axis=1) if parts else pd.DataFrame(index=train.index)
        feature_columns = list(encoded_train.columns)

        state = EncodingState(
            target_column=target_column,
            target_type=target_type,
            column_types=column_types,
            dropped_columns=dropped,
            numeric_columns=numeric_columns,
            categorical_encodings=encodings,
            imputation_means=imputation_means,
            scaler=scaler,
            feature_columns=feature_columns,
            class_mapping=class_mapping,
            unknown_category=unknown,
        )

        encoded_train[target_column] = state.transform_target(train[target_column])

        if not feature_columns:
            self.logger.warning("feature_encoder.no_features", extra={
                "target_column": target_column,
                "dropped_columns": dropped
            })

        return state, encoded_train

    def _classify_columns(self, train: pd.DataFrame, target_column: str) -> Dict[str, str]:
        """Tag each column by the runtime type of its first non-missing training value."""
        column_types: Dict[str, str] = {}
        for column in train.columns:
            if column == target_column:
                column_types[column] = TARGET
                continue
            present = train[column][~missing_mask(train[column])]
            if present.empty:
                # Undefined type; the constant-column stage drops it
                column_types[column] = NUMERIC
            elif is_real_number(present.iloc[0]):
                column_types[column] = NUMERIC
            else:
                column_types[column] = CATEGORICAL
        return column_types

    @staticmethod
    def _is_constant(values: pd.Series) -> bool:
        normalised = values.map(lambda v: None if is_missing(v) else to_python_scalar(v))
        return normalised.nunique(dropna=False) <= 1

    @staticmethod
    def _train_target(target: pd.Series, target_type: str,
                      class_mapping: Optional[ClassMapping]) -> np.ndarray:
        if class_mapping is not None:
            return class_mapping.encode(target).to_numpy()
        return coerce_numeric(target).to_numpy(dtype=float)

    def _fit_one_hot(self, column: str, values: pd.Series, categories: List[str],
                     shares: pd.Series) -> CategoricalEncoding:
        """One indicator per category except the last (the reference)."""
        indicators = categories[:-1]
        outputs = [f"{column}_{category}" for category in indicators]
        mapping = {
            output: {c: 1.0 if c == category else 0.0 for c in categories}
            for output, category in zip(outputs, indicators)
        }
        priors = {output: float(shares[category]) for output, category in zip(outputs, indicators)}

        return CategoricalEncoding(
            column=column,
            method=ONE_HOT,
            categories=categories,
            output_columns=outputs,
            mapping=mapping,
            priors=priors,
            reference=categories[-1],
        )

    def _fit_target_encoding(self, column: str, values: pd.Series, categories: List[str],
                             target: np.ndarray, target_type: str,
                             class_mapping: Optional[ClassMapping],
                             rng: np.random.RandomState) -> Tuple[CategoricalEncoding, pd.DataFrame]:
        """Smoothed target encoding; one column, or k-1 for classification."""
        category_array = values.to_numpy()
        order = rng.permutation(len(category_array))

        if class_mapping is None:
            statistics = [(f"{column}_te", target)]
        else:
            statistics = [
                (f"{column}_te_{class_index}", (target == class_index).astype(float))
                for class_index in range(1, class_mapping.num_classes)
            ]

        mapping: Dict[str, Dict[str, float]] = {}
        priors: Dict[str, float] = {}
        encoded: Dict[str, np.ndarray] = {}

        for output, statistic in statistics:
            prior = float(np.mean(statistic))
            row_values, final = ordered_target_statistic(category_array, statistic, prior, order)
            mapping[output] = final
            priors[output] = prior
            encoded[output] = row_values

        encoding = CategoricalEncoding(
            column=column,
            method=TARGET_ENCODED,
            categories=categories,
            output_columns=[output for output, _ in statistics],
            mapping=mapping,
            priors=priors,
            reference=str(class_mapping.classes[0]) if class_mapping is not None else None,
        )

        self.logger.debug("feature_encoder.target_encoded", extra={
            "column": column,
            "categories": len(categories),
            "target_type": target_type,
            "outputs": len(statistics)
        })

        return encoding, pd.DataFrame(encoded, index=values.index)


# Custom exceptions
class FeatureEncodingError(Exception):
    """Base exception for feature encoding operations."""
    pass
