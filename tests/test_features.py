"""Unit tests for seizure_survival.features module."""
import numpy as np
import pandas as pd
import pytest

from seizure_survival.config import DataConfig
from seizure_survival.features import (
    add_age_band,
    add_log_period,
    add_multiple_seizures,
    age_band_labels,
    derive_features,
)


class TestAgeBand:
    """Tests for age banding."""

    def test_labels(self):
        """Test interval labels for the default breakpoints."""
        labels = age_band_labels(DataConfig.age_breakpoints)

        assert labels[0] == "[0,5]"
        assert labels[1] == "(5,9]"
        assert labels[-1] == "(69,max]"
        assert len(labels) == len(DataConfig.age_breakpoints)

    @pytest.mark.parametrize("age,band", [
        (0.5, "[0,5]"),
        (5.0, "[0,5]"),
        (5.5, "(5,9]"),
        (19.0, "(9,19]"),
        (69.0, "(59,69]"),
        (70.0, "(69,max]"),
        (104.0, "(69,max]"),
    ])
    def test_band_edges(self, age, band):
        """Test that each band is closed on the right."""
        out = add_age_band(pd.DataFrame({"age": [age]}))

        assert out["age_band"].iloc[0] == band

    def test_every_age_in_exactly_one_band(self, derived_trial):
        """Test that every observed age falls in a band."""
        has_age = derived_trial["age"].notna()

        assert derived_trial.loc[has_age, "age_band"].notna().all()

    def test_bands_ordered(self, derived_trial):
        """Test the band categorical is ordered youngest first."""
        bands = derived_trial["age_band"].cat

        assert bands.ordered
        assert list(bands.categories) == age_band_labels(DataConfig.age_breakpoints)

    def test_missing_age_stays_missing(self):
        """Test that a missing age has no band."""
        out = add_age_band(pd.DataFrame({"age": [np.nan, 30.0]}))

        assert out["age_band"].isna().tolist() == [True, False]


class TestLogPeriod:
    """Tests for log(period + 1)."""

    def test_zero_period(self):
        """Test that a period of 0 maps to 0."""
        out = add_log_period(pd.DataFrame({"period": [0.0]}))

        assert out["log_period"].iloc[0] == 0.0

    def test_monotonic(self):
        """Test that log_period increases with period."""
        out = add_log_period(pd.DataFrame({"period": [0.0, 1.0, 10.0, 1000.0]}))

        assert out["log_period"].is_monotonic_increasing
        assert out["log_period"].iloc[1] == pytest.approx(np.log(2.0))

    def test_missing_period_missing(self, derived_trial, trial_facts):
        """Test that jointly missing rows have no log_period."""
        assert derived_trial["log_period"].isna().sum() == trial_facts["n_jointly_missing"]


class TestMultipleSeizures:
    """Tests for the multiple seizures indicator."""

    def test_threshold(self):
        """Test one seizure is not multiple and five are."""
        out = add_multiple_seizures(pd.DataFrame({"total_seizures": [1, 5]}))

        assert out["multiple_seizures"].tolist() == [False, True]

    def test_missing_count_preserved(self):
        """Test that a missing count gives a missing indicator."""
        df = pd.DataFrame({"total_seizures": pd.array([2, None], dtype="Int64")})
        out = add_multiple_seizures(df)

        assert out["multiple_seizures"].iloc[0]
        assert pd.isna(out["multiple_seizures"].iloc[1])

    def test_custom_threshold(self):
        """Test a higher threshold."""
        out = add_multiple_seizures(pd.DataFrame({"total_seizures": [2, 3]}), threshold=2)

        assert out["multiple_seizures"].tolist() == [False, True]


class TestDeriveFeatures:
    """Tests for derive_features."""

    def test_adds_all_columns(self, normalized_trial):
        """Test that the three derived covariates are added."""
        out = derive_features(normalized_trial)

        for col in ("age_band", "log_period", "multiple_seizures"):
            assert col in out.columns

    def test_input_untouched(self, normalized_trial):
        """Test that the normalized table is not modified."""
        before = normalized_trial.copy()
        derive_features(normalized_trial)

        pd.testing.assert_frame_equal(normalized_trial, before)

    def test_deterministic(self, normalized_trial):
        """Test that deriving twice gives identical tables."""
        pd.testing.assert_frame_equal(
            derive_features(normalized_trial), derive_features(normalized_trial)
        )
