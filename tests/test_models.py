"""Unit tests for seizure_survival.models module."""
import numpy as np
import pandas as pd
import pytest

from seizure_survival.config import AFT_FAMILIES, Family, ModelConfig, ModelSpec
from seizure_survival.exceptions import ModelFitError
from seizure_survival.metrics import compute_cindex, wald_pvalues
from seizure_survival.models import (
    INTERCEPT_TERMS,
    AalenAdditiveWrapper,
    CoxPHWrapper,
    ParametricAFTWrapper,
    RSFWrapper,
    build_model,
    fit_model,
)

COVARIATES = ("treat", "multiple_seizures", "age")


@pytest.fixture(scope="module")
def small_forest_config():
    """Forest options small enough for unit tests."""
    return ModelConfig(rsf_n_estimators=30, importance_repeats=2, rsf_min_samples_leaf=10)


@pytest.fixture(scope="module")
def cox_fit(derived_trial):
    return fit_model(derived_trial, ModelSpec("cox", Family.COX, COVARIATES))


@pytest.fixture(scope="module")
def weibull_fit(derived_trial):
    return fit_model(derived_trial, ModelSpec("weibull", Family.WEIBULL, COVARIATES))


class TestMetrics:
    """Tests for the metric helpers."""

    def test_cindex_perfect(self):
        """Test that a perfectly ordered risk gives concordance 1."""
        assert compute_cindex([1, 0, 1], [5.0, 20.0, 12.0], [0.9, 0.1, 0.4]) == 1.0

    def test_cindex_reversed(self):
        """Test that a reversed ordering gives concordance 0."""
        assert compute_cindex([1, 1, 1], [1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == 0.0

    def test_wald_pvalues(self):
        """Test two-sided p-values for z = 0 and z = 1.96."""
        p = wald_pvalues([0.0, 1.96], [1.0, 1.0])

        assert p[0] == pytest.approx(1.0)
        assert p[1] == pytest.approx(0.05, abs=1e-3)


class TestBuildModel:
    """Tests for the family dispatch."""

    @pytest.mark.parametrize("family,cls", [
        (Family.COX, CoxPHWrapper),
        (Family.AALEN, AalenAdditiveWrapper),
        (Family.RSF, RSFWrapper),
        (Family.WEIBULL, ParametricAFTWrapper),
        ("lognormal", ParametricAFTWrapper),
    ])
    def test_dispatch(self, family, cls):
        """Test every tag maps to its wrapper."""
        assert isinstance(build_model(family), cls)

    def test_aft_wrapper_rejects_cox(self):
        """Test the AFT wrapper only accepts parametric families."""
        with pytest.raises(ValueError, match="not a parametric AFT family"):
            ParametricAFTWrapper(Family.COX)


class TestCoxPH:
    """Tests for the Cox proportional hazards wrapper."""

    def test_coefficients(self, cox_fit):
        """Test one beta row per design column with source terms."""
        coefs = cox_fit.coefficients

        assert list(coefs["covariate"]) == ["treat_deferred", "multiple_seizures", "age"]
        assert list(coefs["term"]) == list(COVARIATES)
        assert (coefs["param"] == "beta").all()
        assert coefs["p"].between(0, 1).all()

    def test_deferred_treatment_raises_hazard(self, cox_fit):
        """Test the simulated treatment effect is recovered."""
        coefs = cox_fit.coefficients.set_index("covariate")

        assert coefs.loc["treat_deferred", "coef"] > 0
        assert coefs.loc["treat_deferred", "p"] < 0.05

    def test_criterion(self, cox_fit, trial_facts):
        """Test partial AIC criterion and listwise sample size."""
        assert cox_fit.criterion == "aic_partial"
        assert cox_fit.criterion_value == pytest.approx(cox_fit.aic)
        assert cox_fit.n_obs == trial_facts["n_subjects"]
        assert 0.5 < cox_fit.concordance <= 1.0

    def test_summary_row(self, cox_fit):
        """Test the one-line summary."""
        row = cox_fit.summary_row()

        assert row["model"] == "cox"
        assert row["family"] == "cox"
        assert row["n_params"] == 3


class TestParametricAFT:
    """Tests for the AFT wrappers."""

    def test_weibull_parameters(self, weibull_fit):
        """Test Weibull rows for the location and shape parameters."""
        params = set(weibull_fit.coefficients["param"])

        assert params == {"lambda_", "rho_"}
        assert weibull_fit.criterion == "aic"
        assert weibull_fit.log_likelihood is not None

    def test_deferred_treatment_shortens_time(self, weibull_fit):
        """Test that deferred treatment accelerates time to seizure."""
        coefs = weibull_fit.coefficients
        row = coefs[(coefs["param"] == "lambda_") & (coefs["covariate"] == "treat_deferred")]

        assert row["coef"].iloc[0] < 0

    @pytest.mark.slow
    @pytest.mark.parametrize("family", AFT_FAMILIES)
    def test_every_family_fits(self, derived_trial, family):
        """Test that each AFT family fits the small specification."""
        fit = fit_model(derived_trial, ModelSpec(f"m_{family.value}", family, COVARIATES))

        assert fit.family is family
        assert np.isfinite(fit.aic)
        assert "Intercept" in set(fit.coefficients["covariate"])

    def test_exponential_has_no_shape(self, derived_trial):
        """Test the exponential model only estimates the scale."""
        fit = fit_model(derived_trial, ModelSpec("exp", Family.EXPONENTIAL, ("treat",)))

        assert set(fit.coefficients["param"]) == {"lambda_"}

    def test_exponential_concordance(self, derived_trial):
        """Test the exponential fit reports a concordance and an AIC."""
        fit = fit_model(derived_trial, ModelSpec("exp", Family.EXPONENTIAL, COVARIATES))

        assert 0.5 < fit.concordance <= 1.0
        assert np.isfinite(fit.criterion_value)
        assert fit.criterion == "aic"

    def test_concordance_matches_lifelines(self, weibull_fit):
        """Test the location-based concordance against the fitter's own value."""
        assert weibull_fit.concordance == pytest.approx(weibull_fit.fitter.concordance_index_, abs=0.01)

    def test_weibull_refit_identical(self, derived_trial, weibull_fit):
        """Test that refitting gives the same estimates."""
        again = fit_model(derived_trial, weibull_fit.spec)

        pd.testing.assert_frame_equal(again.coefficients, weibull_fit.coefficients)

    def test_non_positive_durations_floored(self, derived_trial):
        """Test that a censored time of 0 does not break the fit."""
        df = derived_trial.copy()
        censored = df.index[df["status"] == 0][0]
        df.loc[censored, "time"] = 0.0

        fit = fit_model(df, ModelSpec("w", Family.WEIBULL, ("treat",)))

        assert fit.n_obs == len(df)


class TestAalen:
    """Tests for the Aalen additive wrapper."""

    def test_ranked_by_concordance(self, derived_trial):
        """Test slope coefficients and concordance criterion."""
        fit = fit_model(derived_trial, ModelSpec("aalen", Family.AALEN, ("treat", "age")))

        assert fit.criterion == "concordance"
        assert fit.aic is None
        assert (fit.coefficients["param"] == "slope").all()
        assert set(fit.coefficients["covariate"]) & set(INTERCEPT_TERMS)
        assert 0.0 <= fit.criterion_value <= 1.0


class TestRSF:
    """Tests for the random survival forest wrapper."""

    @pytest.mark.slow
    def test_importance_per_covariate(self, derived_trial, small_forest_config):
        """Test one importance score per covariate and an OOB criterion."""
        spec = ModelSpec("rsf", Family.RSF, ("treat", "sex", "age", "multiple_seizures"))
        fit = fit_model(derived_trial, spec, small_forest_config)

        assert set(fit.importance.index) == set(spec.covariates)
        assert fit.coefficients.empty
        assert fit.criterion == "concordance"
        assert fit.criterion_value == pytest.approx(fit.fitter.oob_score_)

    @pytest.mark.slow
    def test_seeded_refit_identical(self, derived_trial, small_forest_config):
        """Test that the seeded forest gives identical importances."""
        spec = ModelSpec("rsf", Family.RSF, ("treat", "age"))
        first = fit_model(derived_trial, spec, small_forest_config)
        second = fit_model(derived_trial, spec, small_forest_config)

        pd.testing.assert_series_equal(first.importance, second.importance)

    def test_no_covariates_raises(self, derived_trial, small_forest_config):
        """Test ModelFitError for an empty forest specification."""
        with pytest.raises(ModelFitError):
            fit_model(derived_trial, ModelSpec("rsf", Family.RSF, ()), small_forest_config)


class TestFitFailures:
    """Tests for designs that cannot be estimated."""

    def test_constant_column_raises(self, derived_trial):
        """Test ModelFitError naming the constant column."""
        df = derived_trial.copy()
        df["constant"] = 1.0

        with pytest.raises(ModelFitError, match="constant") as exc_info:
            fit_model(df, ModelSpec("bad_cox", Family.COX, ("treat", "constant")))
        assert exc_info.value.spec_name == "bad_cox"

    def test_collinear_columns_raise(self, derived_trial):
        """Test ModelFitError for a duplicated covariate."""
        df = derived_trial.copy()
        df["age_copy"] = df["age"]

        with pytest.raises(ModelFitError, match="rank-deficient"):
            fit_model(df, ModelSpec("bad_weibull", Family.WEIBULL, ("age", "age_copy")))

    def test_no_events_raises(self, derived_trial):
        """Test ModelFitError when every subject is censored."""
        df = derived_trial.copy()
        df["status"] = 0

        with pytest.raises(ModelFitError, match="no observed events"):
            fit_model(df, ModelSpec("cox", Family.COX, ("treat",)))

    def test_empty_specification_raises(self, derived_trial):
        """Test ModelFitError for a model without covariates."""
        with pytest.raises(ModelFitError, match="no covariates"):
            fit_model(derived_trial, ModelSpec("empty", Family.COX, ()))
