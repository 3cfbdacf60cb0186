from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any
import logging

import autograd.numpy as anp
import numpy as np
import pandas as pd
from lifelines import (
    AalenAdditiveFitter,
    CoxPHFitter,
    LogLogisticAFTFitter,
    LogNormalAFTFitter,
    WeibullAFTFitter,
)
from lifelines.exceptions import ConvergenceError
from lifelines.fitters import ParametricRegressionFitter
from sklearn.inspection import permutation_importance
from sksurv.ensemble import RandomSurvivalForest

from seizure_survival.config import DataConfig, Family, ModelConfig, ModelSpec
from seizure_survival.data import DesignMatrix, build_design_matrix, build_ordinal_matrix
from seizure_survival.exceptions import ModelFitError
from seizure_survival.metrics import compute_cindex, wald_pvalues

logger = logging.getLogger("seizure_survival.models")

DURATION_COL = "T"
EVENT_COL = "E"
INTERCEPT_TERMS = ("Intercept", "baseline")


class ExponentialAFTFitter(ParametricRegressionFitter):
    """Exponential accelerated failure time model.

    Weibull AFT with the shape fixed at 1: ``log T = x'b + W`` with ``W``
    standard extreme-value, i.e. ``S(t) = exp(-t / lambda)`` and
    ``log lambda = x'b``.
    """

    _fitted_parameter_names = ["lambda_"]

    def _cumulative_hazard(self, params, T, Xs):
        lambda_ = anp.exp(anp.dot(Xs["lambda_"], params["lambda_"]))
        return T / lambda_


@dataclass
class FitResult:
    """Output of one model-runner invocation.

    Attributes:
        spec: The model specification that was fitted
        coefficients: One row per estimated coefficient with columns
            ``param``, ``covariate``, ``term``, ``coef``, ``se``, ``p``
            (empty for the random survival forest)
        criterion: Name of the goodness-of-fit statistic used for ranking
            ("aic_partial", "aic" or "concordance")
        criterion_value: Value of that statistic
        log_likelihood: Log (partial) likelihood, None when undefined
        aic: AIC (partial AIC for Cox), None when undefined
        concordance: Harrell's C-index of the fit
        n_obs: Subjects used after listwise deletion
        n_events: Observed events among them
        term_of: Design column -> source term
        categories: Categorical dtypes used for dummy coding
        design_columns: Ordered design columns
        fitter: Underlying fitted lifelines / scikit-survival object
        importance: Permutation importance per covariate (forest only)
    """
    spec: ModelSpec
    coefficients: pd.DataFrame
    criterion: str
    criterion_value: float
    log_likelihood: Optional[float]
    aic: Optional[float]
    concordance: Optional[float]
    n_obs: int
    n_events: int
    term_of: Dict[str, str]
    categories: Dict[str, Any]
    design_columns: list
    fitter: Any
    importance: Optional[pd.Series] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def family(self) -> Family:
        return self.spec.family

    def summary_row(self) -> dict:
        """One-line summary used by comparison tables and tracking."""
        return {
            "model": self.name,
            "family": self.family.value,
            "n_obs": self.n_obs,
            "n_events": self.n_events,
            "n_params": len(self.coefficients),
            "log_likelihood": self.log_likelihood,
            "aic": self.aic,
            "concordance": self.concordance,
            "criterion": self.criterion,
            "criterion_value": self.criterion_value,
        }


def _coefficient_table(summary: pd.DataFrame, term_of: Dict[str, str], param: str,
                       coef_col: str = "coef", se_col: str = "se(coef)",
                       p_col: str = "p") -> pd.DataFrame:
    covariates = [str(c) for c in summary.index]
    return pd.DataFrame({
        "param": param,
        "covariate": covariates,
        "term": [term_of.get(c, c) for c in covariates],
        "coef": summary[coef_col].to_numpy(dtype=float),
        "se": summary[se_col].to_numpy(dtype=float),
        "p": summary[p_col].to_numpy(dtype=float),
    })


def _check_design(spec: ModelSpec, design: DesignMatrix) -> None:
    """Reject designs that cannot be estimated before calling the library."""
    X = design.X
    if X.shape[1] == 0:
        raise ModelFitError(spec.name, "no covariates in design matrix")
    if X.shape[0] <= X.shape[1]:
        raise ModelFitError(
            spec.name, f"{X.shape[0]} subjects for {X.shape[1]} design columns"
        )
    if int(design.event.sum()) == 0:
        raise ModelFitError(spec.name, "no observed events")

    constant = [c for c in X.columns if X[c].nunique() <= 1]
    if constant:
        raise ModelFitError(spec.name, f"constant design columns {constant}")

    with_intercept = np.column_stack([np.ones(len(X)), X.to_numpy(dtype=float)])
    rank = np.linalg.matrix_rank(with_intercept)
    if rank < with_intercept.shape[1]:
        raise ModelFitError(
            spec.name,
            f"rank-deficient design matrix (rank {rank} < {with_intercept.shape[1]})",
        )


class BaseSurvivalModel:
    """Base class for the family wrappers.

    Each wrapper turns a derived subject table and a ModelSpec into a
    FitResult.
    """

    family: Family = None

    def __init__(self, model_config: Optional[ModelConfig] = None,
                 data_config: Optional[DataConfig] = None):
        self.model_config = model_config or ModelConfig()
        self.data_config = data_config or DataConfig()

    def fit(self, df: pd.DataFrame, spec: ModelSpec) -> FitResult:
        raise NotImplementedError

    def _design(self, df: pd.DataFrame, spec: ModelSpec) -> DesignMatrix:
        design = build_design_matrix(df, spec, self.data_config)
        _check_design(spec, design)
        return design


class CoxPHWrapper(BaseSurvivalModel):
    """Cox proportional hazards model (lifelines CoxPHFitter, Efron ties)."""

    family = Family.COX

    def fit(self, df: pd.DataFrame, spec: ModelSpec) -> FitResult:
        design = self._design(df, spec)
        cph = CoxPHFitter(penalizer=self.model_config.cox_penalizer)
        cph.fit(design.frame(DURATION_COL, EVENT_COL),
                duration_col=DURATION_COL, event_col=EVENT_COL)

        return FitResult(
            spec=spec,
            coefficients=_coefficient_table(cph.summary, design.term_of, "beta"),
            criterion="aic_partial",
            criterion_value=float(cph.AIC_partial_),
            log_likelihood=float(cph.log_likelihood_),
            aic=float(cph.AIC_partial_),
            concordance=float(cph.concordance_index_),
            n_obs=len(design.X),
            n_events=int(design.event.sum()),
            term_of=design.term_of,
            categories=design.categories,
            design_columns=list(design.X.columns),
            fitter=cph,
        )


class AalenAdditiveWrapper(BaseSurvivalModel):
    """Aalen additive hazards model (lifelines AalenAdditiveFitter).

    Time-varying coefficients have no single likelihood; the reported
    coefficient is the slope of the cumulative regression function and the
    fit is ranked by concordance.
    """

    family = Family.AALEN

    def fit(self, df: pd.DataFrame, spec: ModelSpec) -> FitResult:
        design = self._design(df, spec)
        aaf = AalenAdditiveFitter(
            coef_penalizer=self.model_config.aalen_coef_penalizer, fit_intercept=True
        )
        aaf.fit(design.frame(DURATION_COL, EVENT_COL),
                duration_col=DURATION_COL, event_col=EVENT_COL)

        summary = aaf.summary.copy()
        summary["p"] = wald_pvalues(summary["slope(coef)"], summary["se(slope(coef))"])
        coefficients = _coefficient_table(
            summary, design.term_of, "slope",
            coef_col="slope(coef)", se_col="se(slope(coef))",
        )

        expectation = np.asarray(aaf.predict_expectation(design.X)).ravel()
        cindex = compute_cindex(design.event.to_numpy(), design.duration.to_numpy(), -expectation)

        return FitResult(
            spec=spec,
            coefficients=coefficients,
            criterion="concordance",
            criterion_value=cindex,
            log_likelihood=None,
            aic=None,
            concordance=cindex,
            n_obs=len(design.X),
            n_events=int(design.event.sum()),
            term_of=design.term_of,
            categories=design.categories,
            design_columns=list(design.X.columns),
            fitter=aaf,
        )


class ParametricAFTWrapper(BaseSurvivalModel):
    """Fully parametric accelerated failure time model.

    Supported families: exponential, Weibull, log-normal, log-logistic.
    Durations must be strictly positive; non-positive ones are raised to
    ``ModelConfig.min_positive_time``.
    """

    FITTERS = {
        Family.EXPONENTIAL: ExponentialAFTFitter,
        Family.WEIBULL: WeibullAFTFitter,
        Family.LOGNORMAL: LogNormalAFTFitter,
        Family.LOGLOGISTIC: LogLogisticAFTFitter,
    }
    LOCATION = {
        Family.EXPONENTIAL: "lambda_",
        Family.WEIBULL: "lambda_",
        Family.LOGNORMAL: "mu_",
        Family.LOGLOGISTIC: "alpha_",
    }

    def __init__(self, family: Family, model_config: Optional[ModelConfig] = None,
                 data_config: Optional[DataConfig] = None):
        super().__init__(model_config, data_config)
        family = Family(family)
        if family not in self.FITTERS:
            raise ValueError(f"{family.value} is not a parametric AFT family")
        self.family = family

    def fit(self, df: pd.DataFrame, spec: ModelSpec) -> FitResult:
        design = self._design(df, spec)
        frame = design.frame(DURATION_COL, EVENT_COL)

        floor = self.model_config.min_positive_time
        non_positive = frame[DURATION_COL] <= 0
        if non_positive.any():
            logger.warning(
                f"{spec.name}: {int(non_positive.sum())} non-positive durations "
                f"raised to {floor} for the AFT fit"
            )
            frame.loc[non_positive, DURATION_COL] = floor

        fitter = self.FITTERS[self.family]()
        if self.family == Family.EXPONENTIAL:
            formula = " + ".join(design.X.columns)
            fitter.fit(frame, duration_col=DURATION_COL, event_col=EVENT_COL,
                       regressors={"lambda_": formula})
        else:
            fitter.fit(frame, duration_col=DURATION_COL, event_col=EVENT_COL)

        summary = fitter.summary
        parts = []
        for param in summary.index.get_level_values(0).unique():
            parts.append(_coefficient_table(summary.loc[param], design.term_of, param))
        coefficients = pd.concat(parts, ignore_index=True)

        # the shape does not depend on covariates, so the predicted median
        # orders subjects like the location linear predictor
        slopes = fitter.params_.loc[self.LOCATION[self.family]].drop("Intercept", errors="ignore")
        location = design.X[list(slopes.index)].to_numpy(dtype=float) @ slopes.to_numpy(dtype=float)
        cindex = compute_cindex(design.event.to_numpy(), frame[DURATION_COL].to_numpy(), -location)

        return FitResult(
            spec=spec,
            coefficients=coefficients,
            criterion="aic",
            criterion_value=float(fitter.AIC_),
            log_likelihood=float(fitter.log_likelihood_),
            aic=float(fitter.AIC_),
            concordance=cindex,
            n_obs=len(design.X),
            n_events=int(design.event.sum()),
            term_of=design.term_of,
            categories=design.categories,
            design_columns=list(design.X.columns),
            fitter=fitter,
        )


class RSFWrapper(BaseSurvivalModel):
    """Random survival forest with permutation variable importance.

    Covariates are ordinal encoded (one column each) so that every covariate
    receives exactly one importance score: the mean drop in Harrell's
    C-index when its column is permuted. Both the forest and the
    permutations are seeded with ``ModelConfig.random_state``.
    """

    family = Family.RSF

    def fit(self, df: pd.DataFrame, spec: ModelSpec) -> FitResult:
        mc = self.model_config
        X, y = build_ordinal_matrix(df, spec, self.data_config)
        if X.shape[1] == 0:
            raise ModelFitError(spec.name, "no covariates")
        if int(y["event"].sum()) == 0:
            raise ModelFitError(spec.name, "no observed events")

        rsf = RandomSurvivalForest(
            n_estimators=mc.rsf_n_estimators,
            min_samples_leaf=mc.rsf_min_samples_leaf,
            max_features=mc.rsf_max_features,
            oob_score=True,
            random_state=mc.random_state,
        )
        rsf.fit(X, y)

        perm = permutation_importance(
            rsf, X, y, n_repeats=mc.importance_repeats, random_state=mc.random_state
        )
        importance = (
            pd.Series(perm.importances_mean, index=list(X.columns), name="importance")
            .sort_values(ascending=False)
        )
        oob = float(rsf.oob_score_)

        return FitResult(
            spec=spec,
            coefficients=pd.DataFrame(columns=["param", "covariate", "term", "coef", "se", "p"]),
            criterion="concordance",
            criterion_value=oob,
            log_likelihood=None,
            aic=None,
            concordance=oob,
            n_obs=len(X),
            n_events=int(y["event"].sum()),
            term_of={c: c for c in X.columns},
            categories={},
            design_columns=list(X.columns),
            fitter=rsf,
            importance=importance,
        )


def build_model(
    family: Family,
    model_config: Optional[ModelConfig] = None,
    data_config: Optional[DataConfig] = None,
) -> BaseSurvivalModel:
    """Instantiate the wrapper for a family tag.

    Example:
        >>> build_model(Family.WEIBULL).family
        <Family.WEIBULL: 'weibull'>
    """
    family = Family(family)
    if family == Family.COX:
        return CoxPHWrapper(model_config, data_config)
    if family == Family.AALEN:
        return AalenAdditiveWrapper(model_config, data_config)
    if family == Family.RSF:
        return RSFWrapper(model_config, data_config)
    return ParametricAFTWrapper(family, model_config, data_config)


def fit_model(
    df: pd.DataFrame,
    spec: ModelSpec,
    model_config: Optional[ModelConfig] = None,
    data_config: Optional[DataConfig] = None,
) -> FitResult:
    """Fit one model specification.

    Args:
        df: Derived subject table
        spec: Covariates, interactions and family tag
        model_config: Fitting options
        data_config: Schema definition

    Returns:
        FitResult

    Raises:
        ModelFitError: On non-convergence, singular or rank-deficient
            designs. The caller decides on a reduced specification.

    Example:
        >>> spec = ModelSpec("cox_treat", Family.COX, ("treat", "multiple_seizures"))
        >>> fit = fit_model(df, spec)
        >>> fit.coefficients[["covariate", "coef", "p"]]
    """
    model = build_model(spec.family, model_config, data_config)
    logger.info(f"Fitting {spec.name} ({spec.family.value}) on {len(spec.terms)} terms")
    try:
        result = model.fit(df, spec)
    except ModelFitError:
        raise
    except (ConvergenceError, np.linalg.LinAlgError, ValueError, ZeroDivisionError) as e:
        raise ModelFitError(spec.name, f"fit failed: {e}") from e

    logger.info(
        f"{spec.name}: n={result.n_obs}, events={result.n_events}, "
        f"{result.criterion}={result.criterion_value:.4f}"
    )
    return result
