"""Pytest configuration and shared fixtures for seizure survival tests.

Provides a synthetic trial dataset in the raw file format (codes 1/2,
dd/mm/yy dates, tab separated) together with its normalized and derived
versions.
"""
import numpy as np
import pandas as pd
import pytest

from seizure_survival.config import DataConfig
from seizure_survival.data import normalize
from seizure_survival.features import derive_features

N_SUBJECTS = 300
N_JOINTLY_MISSING = 5
N_EEG_INCONSISTENT = 3


def make_raw_trial(n: int = N_SUBJECTS, seed: int = 0) -> pd.DataFrame:
    """Simulate a raw trial table.

    Immediate treatment doubles the median time to first seizure; multiple
    previous seizures shorten it. The first ``N_JOINTLY_MISSING`` subjects
    lack both first-seizure date and period, and the next
    ``N_EEG_INCONSISTENT`` report no EEG with an abnormal EEG result.
    """
    rng = np.random.default_rng(seed)

    treat = np.where(np.arange(n) % 2 == 0, 1, 2)
    tonic_clonic = rng.poisson(1.0, n)
    partial = rng.poisson(0.5, n)
    myoclonic = rng.poisson(0.2, n)
    total = np.maximum(tonic_clonic + partial + myoclonic, 1)
    period = rng.integers(0, 1500, n).astype(float)

    abnormal_eeg = rng.choice([1, 2], n, p=[0.35, 0.65])
    eeg = np.where(abnormal_eeg == 1, 1, rng.choice([1, 2], n, p=[0.6, 0.4]))
    jm = slice(0, N_JOINTLY_MISSING)
    bad_eeg = slice(N_JOINTLY_MISSING, N_JOINTLY_MISSING + N_EEG_INCONSISTENT)
    abnormal_eeg[bad_eeg] = 1
    eeg[bad_eeg] = 2

    scale = 500.0 * np.where(treat == 1, 2.0, 1.0) * np.where(total > 1, 0.5, 1.0)
    event_time = np.maximum(np.ceil(scale * rng.weibull(0.9, n)), 1.0)
    censor_time = rng.integers(200, 1500, n)
    status = (event_time <= censor_time).astype(int)
    time = np.where(status == 1, event_time, censor_time).astype(float)

    randomised = pd.Timestamp("1995-01-01") + pd.to_timedelta(rng.integers(0, 1800, n), unit="D")
    first = randomised - pd.to_timedelta(period, unit="D")
    last = randomised - pd.to_timedelta(rng.integers(0, 30, n), unit="D")

    df = pd.DataFrame({
        "id": np.arange(1, n + 1),
        "centre": rng.integers(1, 6, n),
        "treat": treat,
        "age": rng.integers(1, 85, n).astype(float),
        "sex": rng.choice([1, 2], n),
        "tonic_clonic": tonic_clonic,
        "partial": partial,
        "myoclonic": myoclonic,
        "total_seizures": total,
        "period": period,
        "eeg": eeg,
        "abnormal_eeg": abnormal_eeg,
        "epileptiform": rng.choice([1, 2], n),
        "focal": rng.choice([1, 2], n),
        "neuro_deficit": rng.choice([1, 2], n, p=[0.1, 0.9]),
        "learning_disability": rng.choice([1, 2], n, p=[0.1, 0.9]),
        "date_randomisation": randomised.strftime("%d/%m/%y"),
        "date_first_seizure": pd.Series(first.strftime("%d/%m/%y"), dtype=object),
        "date_last_seizure": last.strftime("%d/%m/%y"),
        "time": time,
        "status": status,
    })
    df.loc[df.index[jm], ["date_first_seizure", "period"]] = np.nan
    return df


@pytest.fixture(scope="session")
def data_config():
    """Default schema definition."""
    return DataConfig()


@pytest.fixture(scope="session")
def raw_trial():
    """Raw synthetic trial table (do not mutate; copy first)."""
    return make_raw_trial()


@pytest.fixture(scope="session")
def normalized_trial(raw_trial, data_config):
    """Normalized synthetic trial table."""
    return normalize(raw_trial, data_config)


@pytest.fixture(scope="session")
def derived_trial(normalized_trial, data_config):
    """Normalized trial table with derived features."""
    return derive_features(normalized_trial, data_config)


@pytest.fixture
def trial_tsv(raw_trial, tmp_path):
    """Raw synthetic trial written as a tab-separated file."""
    path = tmp_path / "trial.tsv"
    raw_trial.to_csv(path, sep="\t", index=False)
    return path


@pytest.fixture(autouse=True)
def cleanup_mlflow_runs():
    """Reset the MLflow tracking URI and end stray runs after each test."""
    import mlflow
    yield
    if mlflow.active_run() is not None:
        mlflow.end_run()
    mlflow.set_tracking_uri(None)


@pytest.fixture(scope="session")
def trial_facts():
    """Known properties of the simulated trial."""
    return {
        "n_subjects": N_SUBJECTS,
        "n_jointly_missing": N_JOINTLY_MISSING,
        "n_eeg_inconsistent": N_EEG_INCONSISTENT,
    }
