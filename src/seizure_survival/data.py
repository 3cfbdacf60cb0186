from __future__ import annotations
import csv
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple

import numpy as np
import pandas as pd
from pandas.api.types import CategoricalDtype
from sklearn.preprocessing import OrdinalEncoder

from seizure_survival.config import DataConfig, ModelSpec
from seizure_survival.exceptions import DataValidationError, SchemaError

# Run type for distinguishing quick sample runs from full runs
RunType = Literal["sample", "full"]

logger = logging.getLogger("seizure_survival.data")


def _check_field_counts(file_path: Path, separator: str) -> None:
    """Raise SchemaError if any row's field count differs from the header's."""
    with open(file_path, newline="", encoding="utf-8") as f:
        reader = csv.reader(f, delimiter=separator)
        header = next(reader, None)
        if header is None:
            raise SchemaError(f"Empty data file: {file_path}")
        for line_no, row in enumerate(reader, start=2):
            if not row:
                continue
            if len(row) != len(header):
                raise SchemaError(
                    f"{file_path}: line {line_no} has {len(row)} fields, "
                    f"header has {len(header)}"
                )


def load_data(
    file_path: str,
    config: Optional[DataConfig] = None,
    run_type: RunType = "full",
) -> pd.DataFrame:
    """Load the trial dataset from a delimited text or pickle file.

    Tab-separated files (.tsv, .txt, .dat) use ``config.separator``; .csv
    files are comma separated. Every row must have as many fields as the
    header and every required column must be present.

    Args:
        file_path: Path to the input file
        config: Schema definition. Defaults to DataConfig()
        run_type: "sample" or "full"; only used in log messages

    Returns:
        Raw DataFrame, one row per subject, date columns kept as strings

    Raises:
        FileNotFoundError: If file_path does not exist
        ValueError: If the file extension is not supported
        SchemaError: On field count mismatch or missing required columns

    Example:
        >>> df = load_data("data/inputs/seizures.tsv")
        >>> df.shape
        (1443, 21)
    """
    config = config or DataConfig()
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    suffix = file_path.suffix.lower()
    date_dtypes = {col: str for col in config.date_columns}

    if suffix in (".tsv", ".txt", ".dat", ".csv"):
        separator = "," if suffix == ".csv" else config.separator
        _check_field_counts(file_path, separator)
        logger.info(f"Loading delimited data from {file_path} (run_type={run_type})")
        try:
            df = pd.read_csv(file_path, sep=separator, dtype=date_dtypes)
        except pd.errors.ParserError as e:
            raise SchemaError(f"{file_path}: {e}") from e
    elif suffix in (".pkl", ".pickle"):
        logger.info(f"Loading pickle data from {file_path} (run_type={run_type})")
        df = pd.read_pickle(file_path)
    else:
        raise ValueError(
            f"Unsupported file format: {suffix}. "
            f"Supported formats: .tsv, .txt, .dat, .csv, .pkl, .pickle"
        )

    df.columns = [str(c).strip() for c in df.columns]
    missing = [c for c in config.required_columns if c not in df.columns]
    if missing:
        raise SchemaError(f"{file_path}: missing required columns {missing}")

    logger.info(f"Loaded {len(df):,} records with {len(df.columns)} columns")
    return df


# ============================================================================
# Type normalization
# ============================================================================

def recode_categories(df: pd.DataFrame, config: DataConfig) -> pd.DataFrame:
    """Relabel coded columns into named categoricals.

    Codes missing from a column's table become missing values. The centre
    column gets one level per observed code, labelled ``centre_<code>``.
    """
    out = df.copy()
    for col, table in config.code_tables.items():
        codes = pd.to_numeric(out[col], errors="coerce")
        labels = list(dict.fromkeys(table.values()))
        recoded = codes.map(table)
        unknown = int((codes.notna() & recoded.isna()).sum())
        if unknown:
            logger.warning(f"{col}: {unknown} values outside code table set to missing")
        out[col] = pd.Categorical(
            recoded, categories=labels, ordered=col in config.ordered_categoricals
        )

    codes = pd.to_numeric(out[config.centre_column], errors="coerce")
    levels = {code: f"centre_{int(code)}" for code in sorted(codes.dropna().unique())}
    out[config.centre_column] = pd.Categorical(
        codes.map(levels), categories=list(levels.values())
    )
    return out


def parse_dates(df: pd.DataFrame, config: DataConfig) -> pd.DataFrame:
    """Parse ``dd/mm/yy`` columns; empty or unparseable strings become NaT."""
    out = df.copy()
    for col in config.date_columns:
        raw = out[col].astype("string").str.strip()
        parsed = pd.to_datetime(raw, format=config.date_format, errors="coerce")
        bad = int((raw.notna() & (raw != "") & parsed.isna()).sum())
        if bad:
            logger.warning(f"{col}: {bad} unparseable dates set to missing")
        out[col] = parsed
    return out


def recode_binary(df: pd.DataFrame, config: DataConfig) -> pd.DataFrame:
    """Map yes/no flags from {1, 2} to {1, 0}; anything else becomes missing."""
    out = df.copy()
    for col in config.binary_columns:
        codes = pd.to_numeric(out[col], errors="coerce")
        recoded = codes.map({1: 1, 2: 0})
        unknown = int((codes.notna() & recoded.isna()).sum())
        if unknown:
            logger.warning(f"{col}: {unknown} codes outside {{1, 2}} set to missing")
        out[col] = recoded.astype("Int64")
    return out


def coerce_numeric(df: pd.DataFrame, config: DataConfig) -> pd.DataFrame:
    """Convert counts and continuous columns to numbers.

    Negative counts, negative periods and non-positive ages are out of range
    and become missing.
    """
    out = df.copy()
    for col in (*config.count_columns, *config.numeric_columns, config.event_column):
        out[col] = pd.to_numeric(out[col], errors="coerce").astype(float)

    out_of_range = {
        **{col: out[col] < 0 for col in config.count_columns},
        config.period_column: out[config.period_column] < 0,
        config.age_column: out[config.age_column] <= 0,
    }
    for col, mask in out_of_range.items():
        n_bad = int(mask.sum())
        if n_bad:
            logger.warning(f"{col}: {n_bad} out-of-range values set to missing")
            out.loc[mask, col] = np.nan
    return out


def correct_eeg(df: pd.DataFrame, config: DataConfig) -> pd.DataFrame:
    """Set the EEG-performed flag wherever an abnormal EEG was recorded.

    A handful of records report "no EEG" together with an abnormal EEG
    result. The abnormal result is authoritative. Applying the correction
    twice changes nothing.
    """
    out = df.copy()
    eeg, abnormal = config.eeg_column, config.abnormal_eeg_column
    is_abnormal = (out[abnormal] == 1).fillna(False).astype(bool)
    needs_fix = is_abnormal & (out[eeg] != 1).fillna(True).astype(bool)
    if needs_fix.any():
        logger.info(
            f"EEG correction: {int(needs_fix.sum())} records with abnormal EEG "
            f"but {eeg} != 1 set to {eeg} = 1"
        )
    out.loc[is_abnormal, eeg] = 1
    return out


def normalize(df: pd.DataFrame, config: Optional[DataConfig] = None) -> pd.DataFrame:
    """Run every type-normalization step on the raw table.

    Returns a new DataFrame; the input is left untouched.
    """
    config = config or DataConfig()
    out = recode_categories(df, config)
    out = parse_dates(out, config)
    out = coerce_numeric(out, config)
    out = recode_binary(out, config)
    out = correct_eeg(out, config)
    return out


# ============================================================================
# Cross-field validation
# ============================================================================

def check_missingness(df: pd.DataFrame, config: Optional[DataConfig] = None) -> int:
    """Check that first-seizure date and period are missing together.

    Args:
        df: Normalized subject table
        config: Schema definition

    Returns:
        Number of rows missing both fields

    Raises:
        DataValidationError: If a row misses exactly one of the two fields
    """
    config = config or DataConfig()
    date_missing = df[config.first_seizure_date_column].isna()
    period_missing = df[config.period_column].isna()

    mismatch = date_missing != period_missing
    if mismatch.any():
        rows = df.index[mismatch]
        raise DataValidationError(
            f"{int(mismatch.sum())} rows have only one of "
            f"{config.first_seizure_date_column}/{config.period_column} missing",
            rows=rows,
        )

    jointly = int((date_missing & period_missing).sum())
    expected = config.expected_jointly_missing
    if expected is not None and jointly != expected:
        logger.warning(
            f"{jointly} rows miss both first-seizure date and period, expected {expected}"
        )
    elif jointly:
        logger.info(
            f"{jointly} rows miss both first-seizure date and period; "
            "treated as missing at random and dropped per model fit"
        )
    return jointly


def check_outcome(df: pd.DataFrame, config: Optional[DataConfig] = None) -> None:
    """Check that time-to-event and censoring indicator are consistent.

    Raises:
        DataValidationError: On missing outcome, status outside {0, 1},
            negative times, or observed events at or below ``min_event_time``
    """
    config = config or DataConfig()
    time = df[config.time_column]
    status = df[config.event_column]

    problems = {
        "missing outcome": time.isna() | status.isna(),
        "status outside {0, 1}": status.notna() & ~status.isin([0, 1]),
        "negative time": time < 0,
        f"event at time <= {config.min_event_time}": (status == 1) & (time <= config.min_event_time),
    }
    for label, mask in problems.items():
        if mask.any():
            raise DataValidationError(
                f"{int(mask.sum())} rows with {label}", rows=df.index[mask]
            )


# ============================================================================
# Model inputs
# ============================================================================

def to_structured_y(df: pd.DataFrame, config: Optional[DataConfig] = None) -> np.ndarray:
    """Create a scikit-survival structured array from the outcome columns.

    Example:
        >>> df = pd.DataFrame({'status': [1, 0], 'time': [120.0, 730.0]})
        >>> to_structured_y(df).dtype.names
        ('event', 'time')
    """
    config = config or DataConfig()
    y = np.array(
        list(zip(df[config.event_column].astype(bool).values,
                 df[config.time_column].astype(float).values)),
        dtype=[("event", bool), ("time", float)],
    )
    return y


def _is_categorical(series: pd.Series) -> bool:
    return isinstance(series.dtype, CategoricalDtype) or series.dtype == object


def _safe_name(*parts) -> str:
    return re.sub(r"\W+", "_", "_".join(str(p) for p in parts)).strip("_")


@dataclass
class DesignMatrix:
    """Numeric design matrix for one model specification.

    Attributes:
        X: Float design columns, one row per retained subject
        duration: Time to event for the retained subjects (None for profiles)
        event: Event indicator for the retained subjects (None for profiles)
        term_of: Design column -> source term (covariate or ``a:b``)
        categories: Categorical dtypes used for dummy coding
        n_dropped: Rows removed by listwise deletion
    """
    X: pd.DataFrame
    duration: Optional[pd.Series]
    event: Optional[pd.Series]
    term_of: Dict[str, str]
    categories: Dict[str, CategoricalDtype] = field(default_factory=dict)
    n_dropped: int = 0

    def frame(self, duration_col: str = "time", event_col: str = "event") -> pd.DataFrame:
        """Design columns plus duration and event, as lifelines expects."""
        out = self.X.copy()
        out[duration_col] = self.duration.astype(float).values
        out[event_col] = self.event.astype(int).values
        return out


def build_design_matrix(
    df: pd.DataFrame,
    spec: ModelSpec,
    config: Optional[DataConfig] = None,
    categories: Optional[Dict[str, CategoricalDtype]] = None,
    with_outcome: bool = True,
) -> DesignMatrix:
    """Encode the covariates and interactions of ``spec`` as float columns.

    Numeric covariates are used as is, booleans as 0/1, categoricals as
    dummy columns with the first level dropped. An interaction ``a:b`` is
    the product of every design column of ``a`` with every design column of
    ``b``. Rows with a missing value in any needed column are dropped
    (listwise deletion); the shared table is never modified.

    Args:
        df: Derived subject table (or a table of synthetic profiles)
        spec: Model specification
        config: Schema definition
        categories: Categorical dtypes to reuse, e.g. from the fitted model
            when encoding prediction profiles
        with_outcome: Whether to carry time and event columns

    Returns:
        DesignMatrix

    Raises:
        KeyError: If a covariate is not a column of ``df``
    """
    config = config or DataConfig()
    categories = dict(categories or {})

    missing = [c for c in spec.covariates if c not in df.columns]
    if missing:
        raise KeyError(f"{spec.name}: covariates not in data: {missing}")

    needed = list(spec.covariates)
    if with_outcome:
        needed += [config.time_column, config.event_column]
    data = df[needed].dropna()
    n_dropped = len(df) - len(data)
    if n_dropped:
        logger.debug(f"{spec.name}: listwise deletion removed {n_dropped} rows")

    columns: Dict[str, pd.Series] = {}
    term_of: Dict[str, str] = {}
    columns_of: Dict[str, List[str]] = {}

    for cov in spec.covariates:
        values = data[cov]
        if _is_categorical(values) or cov in categories:
            dtype = categories.get(cov)
            if dtype is None:
                dtype = (values.dtype if isinstance(values.dtype, CategoricalDtype)
                         else CategoricalDtype(sorted(values.unique())))
                categories[cov] = dtype
            # unobserved levels of the dtype still get a column
            dummies = pd.get_dummies(values.astype(dtype), prefix=cov, drop_first=True, dtype=float)
            dummies.columns = [_safe_name(c) for c in dummies.columns]
            for name in dummies.columns:
                columns[name] = dummies[name]
                term_of[name] = cov
            columns_of[cov] = list(dummies.columns)
        else:
            columns[cov] = values.astype(float)
            term_of[cov] = cov
            columns_of[cov] = [cov]

    for a, b in spec.interactions:
        term = f"{a}:{b}"
        for ca in columns_of[a]:
            for cb in columns_of[b]:
                name = f"{ca}_x_{cb}"
                columns[name] = columns[ca] * columns[cb]
                term_of[name] = term

    X = pd.DataFrame(columns, index=data.index)
    return DesignMatrix(
        X=X,
        duration=data[config.time_column] if with_outcome else None,
        event=data[config.event_column] if with_outcome else None,
        term_of=term_of,
        categories=categories,
        n_dropped=n_dropped,
    )


def build_ordinal_matrix(
    df: pd.DataFrame,
    spec: ModelSpec,
    config: Optional[DataConfig] = None,
) -> Tuple[pd.DataFrame, np.ndarray]:
    """One column per covariate for tree ensembles.

    Categoricals are ordinal encoded with their declared level order so that
    each covariate gets a single importance score. Interactions are left to
    the trees.

    Returns:
        Tuple of (X, y) with y a structured survival array
    """
    config = config or DataConfig()
    needed = list(spec.covariates) + [config.time_column, config.event_column]
    data = df[needed].dropna()

    X = pd.DataFrame(index=data.index)
    for cov in spec.covariates:
        values = data[cov]
        if _is_categorical(values):
            levels = (list(values.dtype.categories)
                      if isinstance(values.dtype, CategoricalDtype)
                      else sorted(values.unique()))
            encoder = OrdinalEncoder(categories=[levels])
            X[cov] = encoder.fit_transform(values.astype(object).to_frame()).ravel()
        else:
            X[cov] = values.astype(float)

    return X, to_structured_y(data, config)
