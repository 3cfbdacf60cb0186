from __future__ import annotations
import logging
from typing import Optional

import pandas as pd
from lifelines.statistics import proportional_hazard_test

from seizure_survival.config import DataConfig, Family
from seizure_survival.data import build_design_matrix
from seizure_survival.models import DURATION_COL, EVENT_COL, FitResult

logger = logging.getLogger("seizure_survival.validation")


def ph_assumption_flags(
    fit: FitResult,
    df: pd.DataFrame,
    config: Optional[DataConfig] = None,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """Check the proportional hazards assumption of a Cox fit.

    Runs the Schoenfeld residual test (rank time transform) for every design
    column. Low p-values indicate covariates whose effect changes over time.

    Args:
        fit: Fitted Cox model
        df: Derived subject table the model was fitted on
        config: Schema definition
        alpha: Level at which a column is flagged

    Returns:
        DataFrame indexed by design column with ``term``, ``test_statistic``,
        ``schoenfeld_p`` and ``violation``, sorted by p-value (most
        problematic first)

    Raises:
        TypeError: If ``fit`` is not a Cox model

    Example:
        >>> flags = ph_assumption_flags(cox_fit, df)
        >>> flags[flags["violation"]].index.tolist()
        ['multiple_seizures']
    """
    if fit.family != Family.COX:
        raise TypeError(f"{fit.name}: Schoenfeld test needs a Cox model, got {fit.family.value}")

    design = build_design_matrix(df, fit.spec, config, categories=fit.categories)
    frame = design.frame(DURATION_COL, EVENT_COL)
    results = proportional_hazard_test(fit.fitter, frame, time_transform="rank")

    summary = results.summary
    out = pd.DataFrame({
        "term": [fit.term_of.get(str(c), str(c)) for c in summary.index],
        "test_statistic": summary["test_statistic"].to_numpy(dtype=float),
        "schoenfeld_p": summary["p"].to_numpy(dtype=float),
    }, index=[str(c) for c in summary.index])
    out["violation"] = out["schoenfeld_p"] < alpha
    out = out.sort_values("schoenfeld_p")

    n_flagged = int(out["violation"].sum())
    if n_flagged:
        logger.warning(
            f"{fit.name}: proportional hazards doubtful for {out.index[out['violation']].tolist()}"
        )
    else:
        logger.info(f"{fit.name}: no proportional hazards violations at alpha={alpha}")
    return out
