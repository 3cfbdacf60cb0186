"""Unit tests for seizure_survival.descriptive module."""
import numpy as np
import pandas as pd
import pytest

from seizure_survival.descriptive import (
    balance_table,
    eeg_consistency_table,
    frequency_table,
    kaplan_meier_by_group,
    plot_histograms,
    plot_importance,
    plot_kaplan_meier,
    summarise_outcome,
)


class TestFrequencyTable:
    """Tests for frequency_table."""

    def test_margins(self, derived_trial, trial_facts):
        """Test row and column totals."""
        table = frequency_table(derived_trial, "sex", "treat")

        assert table.loc["Total", "Total"] == trial_facts["n_subjects"]
        assert list(table.columns) == ["immediate", "deferred", "Total"]
        assert (table.loc[["male", "female"], "Total"]
                == table.loc[["male", "female"], ["immediate", "deferred"]].sum(axis=1)).all()


class TestEEGConsistencyTable:
    """Tests for the raw EEG cross-tab."""

    def test_inconsistent_cell(self, raw_trial, trial_facts):
        """Test the no-EEG / abnormal-EEG cell counts the bad records."""
        table = eeg_consistency_table(raw_trial)

        assert table.loc["no", "yes"] == trial_facts["n_eeg_inconsistent"]
        assert table.loc["Total", "Total"] == trial_facts["n_subjects"]
        assert table.index.name == "eeg"
        assert table.columns.name == "abnormal_eeg"

    def test_missing_codes_labelled(self):
        """Test unknown codes appear as missing."""
        raw = pd.DataFrame({"eeg": [1, 2, np.nan], "abnormal_eeg": [1, 2, 2]})
        table = eeg_consistency_table(raw)

        assert table.loc["missing", "no"] == 1


class TestBalanceTable:
    """Tests for balance_table."""

    @pytest.fixture(scope="class")
    def table(self, derived_trial):
        return balance_table(derived_trial, "treat", ["age", "sex", "multiple_seizures", "log_period"])

    def test_columns(self, table):
        """Test one column per treatment arm."""
        assert list(table.columns) == ["covariate", "level", "statistic", "immediate", "deferred"]

    def test_continuous_rows(self, table, derived_trial):
        """Test mean and sd rows for age."""
        age = table[table["covariate"] == "age"].set_index("statistic")
        immediate = derived_trial.loc[derived_trial["treat"] == "immediate", "age"]

        assert age.loc["mean", "immediate"] == pytest.approx(immediate.mean())
        assert age.loc["sd", "immediate"] == pytest.approx(immediate.std())

    def test_proportions_sum_to_one(self, table):
        """Test categorical proportions per arm."""
        sex = table[(table["covariate"] == "sex") & (table["statistic"] == "proportion")]
        multiple = table[table["covariate"] == "multiple_seizures"]

        assert sex["immediate"].sum() == pytest.approx(1.0)
        assert multiple["deferred"].sum() == pytest.approx(1.0)

    def test_missing_row(self, table, trial_facts):
        """Test missing counts for covariates with gaps."""
        missing = table[(table["covariate"] == "log_period") & (table["statistic"] == "missing")]

        assert int(missing[["immediate", "deferred"]].sum(axis=1).iloc[0]) == trial_facts["n_jointly_missing"]
        assert table[(table["covariate"] == "age") & (table["statistic"] == "missing")].empty


class TestOutcomeSummary:
    """Tests for summarise_outcome."""

    def test_counts(self, derived_trial, trial_facts):
        """Test subjects and events per arm."""
        summary = summarise_outcome(derived_trial, "treat")

        assert summary["n"].sum() == trial_facts["n_subjects"]
        assert summary["events"].sum() == int(derived_trial["status"].sum())
        assert summary["event_rate"].between(0, 1).all()


class TestKaplanMeier:
    """Tests for kaplan_meier_by_group."""

    def test_two_groups_logrank(self, derived_trial):
        """Test the treatment arms differ and deferred seizes earlier."""
        km = kaplan_meier_by_group(derived_trial, "treat")

        assert list(km.table.index) == ["immediate", "deferred"]
        assert km.p_value < 0.05
        assert km.table.loc["deferred", "median_time"] < km.table.loc["immediate", "median_time"]

    def test_several_groups(self, derived_trial):
        """Test the multivariate log-rank test across centres."""
        km = kaplan_meier_by_group(derived_trial, "centre")

        assert len(km.table) == derived_trial["centre"].nunique()
        assert 0.0 <= km.p_value <= 1.0

    def test_single_group_raises(self, derived_trial):
        """Test ValueError with one group."""
        immediate = derived_trial[derived_trial["treat"] == "immediate"]

        with pytest.raises(ValueError, match="at least two groups"):
            kaplan_meier_by_group(immediate, "treat")


class TestPlots:
    """Tests for the figure helpers."""

    def test_kaplan_meier_plot(self, derived_trial, tmp_path):
        path = plot_kaplan_meier(derived_trial, "treat", str(tmp_path / "km.png"))

        assert (tmp_path / "km.png").exists()
        assert path == str(tmp_path / "km.png")

    def test_histograms(self, derived_trial, tmp_path):
        plot_histograms(derived_trial, ["age", "log_period", "age_band", "multiple_seizures"],
                        str(tmp_path / "hist.png"))

        assert (tmp_path / "hist.png").exists()

    def test_importance(self, tmp_path):
        importance = pd.Series({"treat": 0.01, "age": 0.002, "sex": -0.001})
        plot_importance(importance, str(tmp_path / "imp.png"), threshold=0.002)

        assert (tmp_path / "imp.png").exists()
