from __future__ import annotations
import numpy as np
import pandas as pd
from scipy import stats
from sksurv.metrics import concordance_index_censored


def compute_cindex(event, time, risk_scores) -> float:
    """Calculate Harrell's concordance index.

    Args:
        event: Boolean-like array, True where the event was observed
        time: Observed or censoring times
        risk_scores: Predicted risk; higher values mean earlier events

    Returns:
        Concordance index between 0 and 1 (0.5 = random ordering)

    Example:
        >>> compute_cindex([1, 0, 1], [5.0, 20.0, 12.0], [0.9, 0.1, 0.4])
        1.0
    """
    result = concordance_index_censored(
        np.asarray(event, dtype=bool),
        np.asarray(time, dtype=float),
        np.asarray(risk_scores, dtype=float),
    )
    return float(result[0])  # (cindex, concordant, discordant, tied_risk, tied_time)


def wald_pvalues(coef, se) -> np.ndarray:
    """Two-sided Wald test p-values for coefficient estimates."""
    coef = np.asarray(coef, dtype=float)
    se = np.asarray(se, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        z = coef / se
    return 2.0 * stats.norm.sf(np.abs(z))


def criterion_table(fits) -> pd.DataFrame:
    """Collect the summary rows of several fits into one DataFrame."""
    return pd.DataFrame([fit.summary_row() for fit in fits])
