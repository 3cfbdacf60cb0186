"""Unit tests for seizure_survival.predict module."""
import numpy as np
import pandas as pd
import pytest
from scipy import stats

from seizure_survival.config import Family, ModelSpec
from seizure_survival.models import fit_model
from seizure_survival.predict import (
    median_survival,
    plot_quantiles,
    predict_quantiles,
    profile_design,
    standard_quantile,
)

PROFILES = {
    "immediate_single": {"treat": "immediate", "multiple_seizures": False},
    "deferred_multiple": {"treat": "deferred", "multiple_seizures": True},
}
SPEC_COVARIATES = ("treat", "multiple_seizures")


@pytest.fixture(scope="module")
def weibull_fit(derived_trial):
    return fit_model(derived_trial, ModelSpec("weibull", Family.WEIBULL, SPEC_COVARIATES))


@pytest.fixture(scope="module")
def lognormal_fit(derived_trial):
    return fit_model(derived_trial, ModelSpec("lognormal", Family.LOGNORMAL, SPEC_COVARIATES))


class TestStandardQuantile:
    """Tests for the standardized error quantiles."""

    def test_values(self):
        """Test known quantiles of each error distribution."""
        assert standard_quantile(Family.LOGNORMAL, 0.5) == pytest.approx(0.0)
        assert standard_quantile(Family.LOGLOGISTIC, 0.5) == pytest.approx(0.0)
        assert standard_quantile(Family.WEIBULL, 1 - np.exp(-1)) == pytest.approx(0.0)
        assert standard_quantile(Family.LOGNORMAL, 0.975) == pytest.approx(stats.norm.ppf(0.975))

    @pytest.mark.parametrize("family", [Family.EXPONENTIAL, Family.WEIBULL,
                                        Family.LOGNORMAL, Family.LOGLOGISTIC])
    def test_increasing(self, family):
        """Test quantiles increase with p."""
        z = standard_quantile(family, [0.1, 0.25, 0.5, 0.75, 0.9])

        assert np.all(np.diff(z) > 0)

    @pytest.mark.parametrize("p", [0.0, 1.0, -0.1])
    def test_out_of_range_raises(self, p):
        """Test ValueError for probabilities outside (0, 1)."""
        with pytest.raises(ValueError):
            standard_quantile(Family.WEIBULL, p)

    def test_non_aft_raises(self):
        """Test ValueError for a non-parametric family."""
        with pytest.raises(ValueError, match="not a parametric AFT family"):
            standard_quantile(Family.COX, 0.5)


class TestProfileDesign:
    """Tests for profile encoding."""

    def test_training_columns(self, weibull_fit):
        """Test profiles get the fitted design columns."""
        X = profile_design(weibull_fit, PROFILES)

        assert list(X.columns) == weibull_fit.design_columns
        assert X.loc["deferred_multiple", "treat_deferred"] == 1.0
        assert X.loc["immediate_single", "treat_deferred"] == 0.0

    def test_incomplete_profile_raises(self, weibull_fit):
        """Test ValueError for a profile with a missing value."""
        profiles = {"p": {"treat": "immediate", "multiple_seizures": None}}

        with pytest.raises(ValueError, match="missing covariate values"):
            profile_design(weibull_fit, profiles)

    def test_absent_covariate_raises(self, weibull_fit):
        """Test KeyError for a profile without a model covariate."""
        with pytest.raises(KeyError):
            profile_design(weibull_fit, {"p": {"treat": "immediate"}})


class TestPredictQuantiles:
    """Tests for predicted quantiles and their bands."""

    def test_output_shape(self, weibull_fit):
        """Test one row per profile and probability."""
        pred = predict_quantiles(weibull_fit, PROFILES, probabilities=(0.25, 0.5, 0.75))

        assert len(pred) == 6
        assert set(pred["profile"]) == set(PROFILES)
        assert {"time", "lower", "upper", "log_time", "se_log_time"} <= set(pred.columns)

    def test_band_contains_estimate(self, lognormal_fit):
        """Test lower < time < upper and positive times."""
        pred = predict_quantiles(lognormal_fit, PROFILES)

        assert (pred["time"] > 0).all()
        assert (pred["lower"] < pred["time"]).all()
        assert (pred["time"] < pred["upper"]).all()

    def test_band_is_two_standard_errors(self, weibull_fit):
        """Test the band on the log scale."""
        pred = predict_quantiles(weibull_fit, PROFILES)

        np.testing.assert_allclose(
            np.log(pred["upper"]) - pred["log_time"], 2.0 * pred["se_log_time"], rtol=1e-8
        )

    def test_monotonic_in_p(self, weibull_fit):
        """Test quantiles increase with p for every profile."""
        pred = predict_quantiles(weibull_fit, PROFILES, probabilities=(0.1, 0.5, 0.9))

        for _, grp in pred.groupby("profile"):
            assert grp["time"].is_monotonic_increasing

    def test_deferred_multiple_earlier(self, weibull_fit):
        """Test the higher-risk profile has the shorter median."""
        med = median_survival(weibull_fit, PROFILES)

        assert med.loc["deferred_multiple", "time"] < med.loc["immediate_single", "time"]

    def test_matches_lifelines_percentile(self, weibull_fit):
        """Test time at F = p equals lifelines' survival percentile 1 - p."""
        X = profile_design(weibull_fit, PROFILES)
        pred = predict_quantiles(weibull_fit, PROFILES, probabilities=(0.25,))
        expected = np.asarray(weibull_fit.fitter.predict_percentile(X, p=0.75), dtype=float).ravel()

        np.testing.assert_allclose(pred["time"].to_numpy(), expected, rtol=1e-6)

    def test_dataframe_profiles(self, weibull_fit):
        """Test profiles given as a DataFrame indexed by name."""
        frame = pd.DataFrame.from_dict(PROFILES, orient="index")
        pred = predict_quantiles(weibull_fit, frame, probabilities=(0.5,))

        assert list(pred["profile"]) == list(PROFILES)

    def test_cox_raises_type_error(self, derived_trial):
        """Test TypeError for a non-AFT fit."""
        cox = fit_model(derived_trial, ModelSpec("cox", Family.COX, SPEC_COVARIATES))

        with pytest.raises(TypeError, match="parametric AFT"):
            predict_quantiles(cox, PROFILES)

    def test_exponential(self, derived_trial):
        """Test the exponential band from the scale parameter only."""
        fit = fit_model(derived_trial, ModelSpec("exp", Family.EXPONENTIAL, SPEC_COVARIATES))
        pred = predict_quantiles(fit, PROFILES, probabilities=(0.5,))
        lam = np.exp(pred["log_time"] - np.log(np.log(2.0)))

        assert (pred["se_log_time"] > 0).all()
        assert (lam > pred["time"]).all()


class TestPlotQuantiles:
    """Tests for the quantile plot."""

    def test_file_written(self, weibull_fit, tmp_path):
        """Test that the figure is saved."""
        pred = predict_quantiles(weibull_fit, PROFILES)
        path = plot_quantiles(pred, str(tmp_path / "quantiles.png"))

        assert (tmp_path / "quantiles.png").exists()
        assert path.endswith("quantiles.png")
