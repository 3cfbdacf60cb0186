"""Descriptive summaries of the trial population.

Read-only views over the normalized (or derived) subject table: frequency
and balance tables by treatment arm, the raw EEG inconsistency cross-tab,
outcome summaries per group, Kaplan-Meier estimates with a log-rank test,
and the corresponding figures.

Functions:
    frequency_table: Two-way counts with margins
    balance_table: Per-group summaries of covariates
    eeg_consistency_table: Raw eeg x abnormal_eeg cross-tab
    summarise_outcome: Events, event rate and follow-up by group
    kaplan_meier_by_group: Median time to first seizure and log-rank test
    plot_histograms: Histograms / bar charts of selected columns
    plot_kaplan_meier: Kaplan-Meier curves by group
    plot_importance: Forest permutation importance
"""
from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import matplotlib

matplotlib.use("Agg")  # headless
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
from lifelines import KaplanMeierFitter  # noqa: E402
from lifelines.statistics import logrank_test, multivariate_logrank_test  # noqa: E402
from pandas.api.types import is_bool_dtype, is_numeric_dtype  # noqa: E402

from seizure_survival.config import DataConfig  # noqa: E402

logger = logging.getLogger("seizure_survival.descriptive")


def _is_continuous(series: pd.Series) -> bool:
    return is_numeric_dtype(series) and not is_bool_dtype(series)


def _with_margins(table: pd.DataFrame) -> pd.DataFrame:
    out = table.copy()
    out.index = pd.Index(out.index.astype(object), name=table.index.name)
    out.columns = pd.Index(out.columns.astype(object), name=table.columns.name)
    out["Total"] = out.sum(axis=1)
    out.loc["Total"] = out.sum(axis=0)
    return out


def frequency_table(df: pd.DataFrame, row: str, col: str) -> pd.DataFrame:
    """Cross-tabulate two columns with row and column totals.

    Example:
        >>> frequency_table(df, "sex", "treat")
        treat   immediate  deferred  Total
        sex
        male          380       375    755
        female        342       346    688
        Total         722       721   1443
    """
    return _with_margins(pd.crosstab(df[row], df[col]))


def balance_table(df: pd.DataFrame, by: str, covariates: Sequence[str]) -> pd.DataFrame:
    """Summarise covariates within each level of ``by``.

    Continuous covariates get a ``mean`` and ``sd`` row; categorical and
    boolean covariates get one ``proportion`` row per level. Proportions are
    among the non-missing values of the group. A ``missing`` row counts
    missing values where there are any.

    Returns:
        DataFrame with columns ``covariate``, ``level``, ``statistic`` and
        one column per group
    """
    groups = [(str(level), grp) for level, grp in df.groupby(by, observed=True, sort=True)]
    rows: List[dict] = []

    for cov in covariates:
        series = df[cov]
        if _is_continuous(series):
            for stat in ("mean", "sd"):
                row = {"covariate": cov, "level": "", "statistic": stat}
                for name, grp in groups:
                    values = grp[cov].astype(float)
                    row[name] = values.mean() if stat == "mean" else values.std()
                rows.append(row)
        else:
            levels = (list(series.cat.categories) if hasattr(series, "cat")
                      else sorted(series.dropna().unique()))
            for level in levels:
                row = {"covariate": cov, "level": str(level), "statistic": "proportion"}
                for name, grp in groups:
                    values = grp[cov].dropna()
                    row[name] = float((values == level).mean()) if len(values) else np.nan
                rows.append(row)

        if series.isna().any():
            row = {"covariate": cov, "level": "", "statistic": "missing"}
            for name, grp in groups:
                row[name] = int(grp[cov].isna().sum())
            rows.append(row)

    return pd.DataFrame(rows)


def eeg_consistency_table(raw_df: pd.DataFrame, config: Optional[DataConfig] = None) -> pd.DataFrame:
    """Cross-tab of the raw EEG-performed and abnormal-EEG codes.

    Must be called on the raw table, before the EEG correction. Records in
    the ``no`` row and ``yes`` column are the inconsistent ones.
    """
    config = config or DataConfig()
    labels = {1: "yes", 2: "no"}

    def _label(col):
        return pd.to_numeric(raw_df[col], errors="coerce").map(labels).fillna("missing")

    table = _with_margins(pd.crosstab(_label(config.eeg_column), _label(config.abnormal_eeg_column)))
    table.index.name = config.eeg_column
    table.columns.name = config.abnormal_eeg_column
    return table


def summarise_outcome(df: pd.DataFrame, by: str, config: Optional[DataConfig] = None) -> pd.DataFrame:
    """Subjects, first seizures and follow-up per group.

    Returns:
        DataFrame indexed by group with columns n, events, event_rate,
        median_time, max_time
    """
    config = config or DataConfig()
    data = df[[by, config.time_column, config.event_column]].dropna()
    summary = data.groupby(by, observed=True).agg(
        n=(config.event_column, "count"),
        events=(config.event_column, "sum"),
        median_time=(config.time_column, "median"),
        max_time=(config.time_column, "max"),
    )
    summary["events"] = summary["events"].astype(int)
    summary["event_rate"] = summary["events"] / summary["n"]
    return summary[["n", "events", "event_rate", "median_time", "max_time"]]


@dataclass
class KaplanMeierResult:
    """Kaplan-Meier estimates per group plus the log-rank comparison.

    Attributes:
        table: Per-group n, events and median survival time (inf when the
            curve never drops to 0.5)
        test_statistic: Log-rank chi-squared statistic
        p_value: Log-rank p-value
        fitters: Fitted KaplanMeierFitter per group label
    """
    table: pd.DataFrame
    test_statistic: float
    p_value: float
    fitters: Dict[str, KaplanMeierFitter] = field(default_factory=dict)


def kaplan_meier_by_group(df: pd.DataFrame, by: str,
                          config: Optional[DataConfig] = None) -> KaplanMeierResult:
    """Fit a Kaplan-Meier curve per level of ``by`` and test for equality.

    Two groups use the two-sample log-rank test; more groups use the
    multivariate version.

    Raises:
        ValueError: If fewer than two groups have data
    """
    config = config or DataConfig()
    time_col, event_col = config.time_column, config.event_column
    data = df[[by, time_col, event_col]].dropna()

    groups = [(str(level), grp) for level, grp in data.groupby(by, observed=True, sort=True)]
    if len(groups) < 2:
        raise ValueError(f"Kaplan-Meier comparison needs at least two groups of {by}")

    rows, fitters = [], {}
    for label, grp in groups:
        kmf = KaplanMeierFitter(label=label)
        kmf.fit(grp[time_col], event_observed=grp[event_col])
        fitters[label] = kmf
        rows.append({
            "group": label,
            "n": len(grp),
            "events": int(grp[event_col].sum()),
            "median_time": float(kmf.median_survival_time_),
        })

    if len(groups) == 2:
        (_, a), (_, b) = groups
        test = logrank_test(a[time_col], b[time_col],
                            event_observed_A=a[event_col], event_observed_B=b[event_col])
    else:
        test = multivariate_logrank_test(data[time_col], data[by].astype(str), data[event_col])

    result = KaplanMeierResult(
        table=pd.DataFrame(rows).set_index("group"),
        test_statistic=float(test.test_statistic),
        p_value=float(test.p_value),
        fitters=fitters,
    )
    logger.info(f"Log-rank test by {by}: chi2={result.test_statistic:.3f}, p={result.p_value:.4g}")
    return result


def plot_kaplan_meier(df: pd.DataFrame, by: str, path: str,
                      config: Optional[DataConfig] = None) -> str:
    """Kaplan-Meier curves with confidence bands, one per level of ``by``.

    Returns:
        Path of the saved figure
    """
    km = kaplan_meier_by_group(df, by, config)
    fig, ax = plt.subplots(figsize=(8, 5))
    for kmf in km.fitters.values():
        kmf.plot_survival_function(ax=ax, ci_show=True)
    ax.set_xlabel("Days since randomisation")
    ax.set_ylabel("Proportion seizure free")
    ax.set_title(f"Time to first seizure by {by} (log-rank p = {km.p_value:.3g})")
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)
    return path


def plot_histograms(df: pd.DataFrame, columns: Sequence[str], path: str, bins: int = 30) -> str:
    """Grid of histograms (continuous columns) and bar charts (the rest).

    Returns:
        Path of the saved figure
    """
    n = len(columns)
    ncols = min(3, max(n, 1))
    nrows = max(1, math.ceil(n / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(4 * ncols, 3 * nrows), squeeze=False)

    for ax, col in zip(axes.ravel(), columns):
        series = df[col].dropna()
        if _is_continuous(series):
            ax.hist(series.astype(float), bins=bins, color="C0")
        else:
            counts = series.astype(str).value_counts(sort=False)
            ax.bar(counts.index, counts.values, color="C0")
            ax.tick_params(axis="x", rotation=45)
        ax.set_title(col)
    for ax in axes.ravel()[n:]:
        ax.set_visible(False)

    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)
    return path


def plot_importance(importance: pd.Series, path: str, threshold: Optional[float] = None) -> str:
    """Horizontal bar chart of permutation importance, largest on top.

    Returns:
        Path of the saved figure
    """
    ordered = importance.sort_values()
    fig, ax = plt.subplots(figsize=(7, 0.35 * len(ordered) + 1.5))
    ax.barh(ordered.index.astype(str), ordered.values, color="C0")
    if threshold is not None:
        ax.axvline(threshold, color="C3", linestyle="--", linewidth=1)
    ax.set_xlabel("Mean decrease in concordance when permuted")
    ax.set_title("Random survival forest variable importance")
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)
    return path
