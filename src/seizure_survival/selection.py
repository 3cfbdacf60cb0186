"""Model comparison and covariate selection.

Pure, deterministic operations over fitted models: ranking by information
criterion, extracting the covariates each method flags, intersecting those
sets, and narrowing a model specification. Thresholds are supplied by the
caller (see SelectionConfig); nothing here fits a model.
"""
from __future__ import annotations
import logging
from typing import Iterable, Optional, Sequence

import pandas as pd

from seizure_survival.config import Family, ModelSpec, SelectionConfig
from seizure_survival.metrics import criterion_table
from seizure_survival.models import FitResult, INTERCEPT_TERMS

logger = logging.getLogger("seizure_survival.selection")

# True = lower is better
CRITERION_ASCENDING = {
    "aic": True,
    "aic_partial": True,
    "concordance": False,
}


def _common_criterion(fits: Sequence[FitResult]) -> str:
    if not fits:
        raise ValueError("No fitted models to compare")
    criteria = {fit.criterion for fit in fits}
    if len(criteria) > 1:
        raise ValueError(
            f"Cannot rank models with different criteria: {sorted(criteria)}"
        )
    return criteria.pop()


def rank_models(fits: Sequence[FitResult]) -> pd.DataFrame:
    """Rank fits of the same outcome by their criterion.

    AIC (full or partial) ranks ascending; concordance ranks descending.

    Args:
        fits: Fitted models sharing one criterion

    Returns:
        DataFrame of summary rows sorted best first, with a ``rank`` column
        and ``delta`` (distance to the best criterion value)

    Raises:
        ValueError: If fits is empty or mixes criteria

    Example:
        >>> table = rank_models([weibull_fit, lognormal_fit])
        >>> table[["model", "aic", "rank"]]
    """
    criterion = _common_criterion(fits)
    ascending = CRITERION_ASCENDING[criterion]
    table = criterion_table(fits)
    table = table.sort_values("criterion_value", ascending=ascending, kind="mergesort")
    table = table.reset_index(drop=True)
    table["rank"] = (
        table["criterion_value"].rank(ascending=ascending, method="min").astype(int)
    )
    best = table["criterion_value"].iloc[0]
    table["delta"] = (table["criterion_value"] - best).abs()
    return table


def select_best(fits: Sequence[FitResult]) -> FitResult:
    """Return the best fit by criterion; ties keep the earlier fit."""
    criterion = _common_criterion(fits)
    ascending = CRITERION_ASCENDING[criterion]
    ordered = sorted(fits, key=lambda f: f.criterion_value, reverse=not ascending)
    best = ordered[0]
    logger.info(f"Best model by {criterion}: {best.name} ({best.criterion_value:.3f})")
    return best


def significant_covariates(fit: FitResult, alpha: float = 0.05) -> set[str]:
    """Source terms with at least one coefficient p-value below ``alpha``.

    Intercept and baseline terms are never returned. A categorical covariate
    counts as significant when any of its levels is.
    """
    if fit.family == Family.RSF:
        raise ValueError(f"{fit.name}: random survival forests have no p-values")
    coefs = fit.coefficients
    coefs = coefs[~coefs["term"].isin(INTERCEPT_TERMS)]
    return set(coefs.loc[coefs["p"] < alpha, "term"])


def important_covariates(fit: FitResult, threshold: float = 0.002) -> set[str]:
    """Covariates whose importance score exceeds ``threshold``."""
    if fit.importance is None:
        raise ValueError(f"{fit.name}: no importance scores")
    return set(fit.importance.index[fit.importance > threshold])


def consensus_covariates(*covariate_sets: Iterable[str]) -> set[str]:
    """Covariates flagged by every method."""
    if not covariate_sets:
        raise ValueError("At least one covariate set is required")
    return set.intersection(*(set(s) for s in covariate_sets))


def reduce_spec(
    spec: ModelSpec,
    keep: Iterable[str],
    name: Optional[str] = None,
    family: Optional[Family] = None,
) -> ModelSpec:
    """Narrow a specification to the retained covariates.

    Interactions are kept only when both of their covariates are retained.

    Raises:
        ValueError: If no covariate of ``spec`` is retained
    """
    keep = set(keep)
    covariates = tuple(c for c in spec.covariates if c in keep)
    if not covariates:
        raise ValueError(f"{spec.name}: no covariates retained from {sorted(keep)}")
    interactions = tuple(
        (a, b) for a, b in spec.interactions if a in covariates and b in covariates
    )
    family = Family(family) if family is not None else spec.family
    return ModelSpec(
        name=name or f"reduced_{family.value}",
        family=family,
        covariates=covariates,
        interactions=interactions,
    )


def narrow_covariates(
    spec: ModelSpec,
    significance_fits: Sequence[FitResult] = (),
    importance_fits: Sequence[FitResult] = (),
    config: Optional[SelectionConfig] = None,
) -> tuple[str, ...]:
    """Covariates of ``spec`` retained by every supplied selection method.

    Each significance fit contributes the covariates significant at
    ``config.alpha``; each importance fit those above
    ``config.importance_threshold``. The sets are intersected and the
    forced covariates added back.

    Returns:
        Retained covariates in the order of ``spec.covariates``
    """
    config = config or SelectionConfig()
    sets = [significant_covariates(f, config.alpha) for f in significance_fits]
    sets += [important_covariates(f, config.importance_threshold) for f in importance_fits]
    if not sets:
        raise ValueError("At least one significance or importance fit is required")

    retained = consensus_covariates(*sets) | set(config.forced_covariates)
    ordered = tuple(c for c in spec.covariates if c in retained)
    logger.info(f"Retained covariates: {list(ordered)}")
    return ordered
