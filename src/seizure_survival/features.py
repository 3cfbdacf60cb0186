"""Derived covariates computed from the normalized subject table.

All derivations are deterministic and leave the input untouched:

- ``age_band``: age banded at fixed breakpoints (0,5,9,19,29,39,49,59,69,max]
- ``log_period``: log(period + 1), defined for every period >= 0
- ``multiple_seizures``: total previous seizures > 1
"""
from __future__ import annotations
import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from seizure_survival.config import DataConfig

logger = logging.getLogger("seizure_survival.features")


def age_band_labels(breakpoints: Sequence[float]) -> list[str]:
    """Interval labels for the age bands.

    Example:
        >>> age_band_labels((0, 5, 9))
        ['[0,5]', '(5,9]', '(9,max]']
    """
    edges = [_fmt(b) for b in breakpoints]
    labels = [f"[{edges[0]},{edges[1]}]"]
    labels += [f"({lo},{hi}]" for lo, hi in zip(edges[1:-1], edges[2:])]
    labels.append(f"({edges[-1]},max]")
    return labels


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def add_age_band(
    df: pd.DataFrame,
    breakpoints: Sequence[float] = DataConfig.age_breakpoints,
    age_col: str = "age",
    out_col: str = "age_band",
) -> pd.DataFrame:
    """Band age into ordered, non-overlapping intervals.

    The lowest band includes its lower edge; the last band is open up to the
    oldest subject. Ages below the first breakpoint and missing ages map to
    missing.
    """
    out = df.copy()
    bins = [float(b) for b in breakpoints] + [np.inf]
    out[out_col] = pd.cut(
        out[age_col],
        bins=bins,
        labels=age_band_labels(breakpoints),
        right=True,
        include_lowest=True,
        ordered=True,
    )
    return out


def add_log_period(
    df: pd.DataFrame,
    period_col: str = "period",
    out_col: str = "log_period",
) -> pd.DataFrame:
    """Add log(period + 1); a period of 0 maps to 0."""
    out = df.copy()
    out[out_col] = np.log1p(out[period_col].astype(float))
    return out


def add_multiple_seizures(
    df: pd.DataFrame,
    threshold: int = 1,
    count_col: str = "total_seizures",
    out_col: str = "multiple_seizures",
) -> pd.DataFrame:
    """Flag subjects with more than ``threshold`` previous seizures.

    Missing counts stay missing (nullable boolean dtype).
    """
    out = df.copy()
    counts = out[count_col].astype("Float64")
    out[out_col] = (counts > threshold).astype("boolean")
    return out


def derive_features(df: pd.DataFrame, config: Optional[DataConfig] = None) -> pd.DataFrame:
    """Add every derived covariate to a normalized subject table."""
    config = config or DataConfig()
    out = add_age_band(df, config.age_breakpoints, age_col=config.age_column)
    out = add_log_period(out, period_col=config.period_column)
    out = add_multiple_seizures(
        out, threshold=config.seizure_threshold, count_col=config.total_seizures_column
    )
    n_multiple = int(out["multiple_seizures"].sum())
    logger.info(
        f"Derived features: age_band ({len(config.age_breakpoints)} bands), "
        f"log_period, multiple_seizures ({n_multiple} true)"
    )
    return out
