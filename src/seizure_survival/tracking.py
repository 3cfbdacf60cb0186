from __future__ import annotations
import logging
import os
from typing import Any, Dict, Optional

import mlflow
import mlflow.exceptions

EXPERIMENT_NAME = "seizure_survival"


def start_run(run_name: str, tags: Dict[str, str] | None = None,
              tracking_uri: Optional[str] = None,
              artifact_location: Optional[str] = None):
    """Start an MLflow run under the seizure_survival experiment.

    Args:
        run_name: Name identifier for this run
        tags: Optional tags attached to the run
        tracking_uri: Optional store location, e.g.
            ``sqlite:///data/outputs/full/mlflow.db``
        artifact_location: Artifact root used when the experiment is created
            in this store

    Returns:
        Active MLflow run context manager

    Raises:
        MlflowException: If the store cannot be opened

    Example:
        >>> with start_run("seizure_survival_full", tags={"run_type": "full"}):
        ...     log_params({"alpha": 0.05})
    """
    if tracking_uri:
        mlflow.set_tracking_uri(tracking_uri)
    experiment = mlflow.get_experiment_by_name(EXPERIMENT_NAME)
    if experiment is None:
        experiment_id = mlflow.create_experiment(EXPERIMENT_NAME, artifact_location=artifact_location)
    else:
        experiment_id = experiment.experiment_id
    return mlflow.start_run(run_name=run_name, experiment_id=experiment_id, tags=tags)


def safe_start_run(run_name: str, tags: Dict[str, str] | None = None,
                   tracking_uri: Optional[str] = None,
                   artifact_location: Optional[str] = None,
                   logger: Optional[logging.Logger] = None):
    """Start a run, degrading to a warning if the store is unusable.

    Returns:
        Active MLflow run, or None if the run could not be started
    """
    try:
        return start_run(run_name, tags=tags, tracking_uri=tracking_uri,
                         artifact_location=artifact_location)
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow tracking disabled, could not start run: {e}")
        return None


def flatten_params(params: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested config dictionaries to dotted MLflow parameter names.

    Example:
        >>> flatten_params({"model": {"random_state": 42}, "run_type": "full"})
        {'model.random_state': 42, 'run_type': 'full'}
    """
    flat = {}
    for key, value in params.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(flatten_params(value, prefix=f"{name}."))
        else:
            flat[name] = value
    return flat


def safe_log_params(params: Dict[str, Any], logger: Optional[logging.Logger] = None) -> bool:
    """Log parameters, degrading to a warning if MLflow is unavailable.

    Returns:
        True if logging succeeded
    """
    try:
        mlflow.log_params({k: str(v) for k, v in flatten_params(params).items()})
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow params logging failed: {e}")
        return False


def safe_log_metrics(metrics: Dict[str, float], step: Optional[int] = None,
                     logger: Optional[logging.Logger] = None) -> bool:
    """Log metrics, skipping None/NaN values.

    Returns:
        True if logging succeeded
    """
    clean = {k: float(v) for k, v in metrics.items() if v is not None and v == v}
    try:
        mlflow.log_metrics(clean, step=step)
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow metrics logging failed: {e}")
        return False


def safe_log_artifact(path: str, logger: Optional[logging.Logger] = None) -> bool:
    """Log a file artifact if it exists.

    Returns:
        True if logging succeeded
    """
    if not os.path.exists(path):
        if logger:
            logger.warning(f"Artifact not found, skipping: {path}")
        return False
    try:
        mlflow.log_artifact(path)
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow artifact logging failed for {path}: {e}")
        return False


def safe_log_dict(name: str, d: Dict[str, Any], logger: Optional[logging.Logger] = None) -> bool:
    """Log a dictionary as ``<name>.json`` in the run's artifacts."""
    try:
        mlflow.log_dict(d, f"{name}.json")
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow dict logging failed for {name}: {e}")
        return False
