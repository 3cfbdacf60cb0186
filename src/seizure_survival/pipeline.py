"""End-to-end analysis run.

Stages, strictly in order:

1. Load, normalize and validate the trial table; derive features
2. Descriptive tables and figures, Kaplan-Meier estimates by arm
3. Fit every configured family on the initial covariate set
4. Proportional hazards check of the Cox fit
5. Rank the parametric AFT families by AIC
6. Narrow the covariates (Cox significance and forest importance) and refit
   the best AFT family on them, unless a final model is configured
7. Predict time-to-seizure quantiles for the configured profiles
8. Save tables, figures and fitted models; log to MLflow; write the report
"""
from __future__ import annotations
import logging
import os
import pickle
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import joblib
import pandas as pd

from seizure_survival.config import AnalysisConfig, Family, ModelSpec
from seizure_survival.data import check_missingness, check_outcome, load_data, normalize
from seizure_survival.descriptive import (
    KaplanMeierResult,
    balance_table,
    eeg_consistency_table,
    frequency_table,
    kaplan_meier_by_group,
    plot_histograms,
    plot_importance,
    plot_kaplan_meier,
    summarise_outcome,
)
from seizure_survival.exceptions import ModelFitError, SurvivalAnalysisError
from seizure_survival.features import derive_features
from seizure_survival.logging_config import ProgressLogger, capture_warnings, log_performance
from seizure_survival.metrics import criterion_table
from seizure_survival.models import FitResult, fit_model
from seizure_survival.predict import median_survival, plot_quantiles, predict_quantiles
from seizure_survival.report import write_report
from seizure_survival.selection import narrow_covariates, rank_models, reduce_spec, select_best
from seizure_survival.timing import Timer
from seizure_survival.tracking import (
    safe_log_artifact,
    safe_log_dict,
    safe_log_metrics,
    safe_log_params,
    safe_start_run,
)
from seizure_survival.utils import get_output_paths, save_table, versioned_name
from seizure_survival.validation import ph_assumption_flags

HISTOGRAM_COLUMNS = ("age", "period", "log_period", "total_seizures")
RANKING_COLUMNS = ["model", "family", "n_obs", "n_events", "n_params", "log_likelihood", "aic",
                   "concordance", "criterion", "criterion_value", "rank", "delta"]


@dataclass
class AnalysisResults:
    """Everything one run produces, as consumed by the report."""
    config: AnalysisConfig
    n_subjects: int
    n_events: int
    eeg_inconsistent: int
    jointly_missing: int
    eeg_table: pd.DataFrame
    frequency_tables: Dict[str, pd.DataFrame]
    balance: pd.DataFrame
    outcome_summary: pd.DataFrame
    km: KaplanMeierResult
    initial_fits: Dict[str, FitResult]
    failures: Dict[str, str]
    criteria: pd.DataFrame
    ph_flags: Optional[pd.DataFrame]
    aft_ranking: pd.DataFrame
    retained_covariates: Tuple[str, ...]
    final_fit: FitResult
    predictions: pd.DataFrame
    median_predictions: pd.DataFrame
    figures: Dict[str, str] = field(default_factory=dict)
    tables: Dict[str, str] = field(default_factory=dict)
    models: Dict[str, str] = field(default_factory=dict)
    report_paths: Dict[str, Optional[str]] = field(default_factory=dict)


def prepare_data(input_file: str, config: AnalysisConfig) -> Tuple[pd.DataFrame, pd.DataFrame, int]:
    """Load, normalize, validate and derive.

    Returns:
        Tuple of (raw table, derived table, jointly missing count)

    Raises:
        SchemaError: On malformed input
        DataValidationError: On cross-field inconsistencies
    """
    raw = load_data(input_file, config.data, run_type=config.run_type)
    df = normalize(raw, config.data)
    jointly_missing = check_missingness(df, config.data)
    check_outcome(df, config.data)
    df = derive_features(df, config.data)
    return raw, df, jointly_missing


def count_eeg_inconsistencies(eeg_table: pd.DataFrame) -> int:
    """Records with EEG = no but abnormal EEG = yes in the raw cross-tab."""
    if "no" in eeg_table.index and "yes" in eeg_table.columns:
        return int(eeg_table.loc["no", "yes"])
    return 0


def fit_initial_models(
    df: pd.DataFrame,
    config: AnalysisConfig,
    logger: logging.Logger,
) -> Tuple[Dict[str, FitResult], Dict[str, str]]:
    """Fit the initial covariate set under every configured family.

    A failed fit is logged and recorded; the others still run.

    Returns:
        Tuple of (fits keyed by family tag, failure message keyed by spec name)
    """
    fits: Dict[str, FitResult] = {}
    failures: Dict[str, str] = {}
    progress = ProgressLogger(logger, total=len(config.families), desc="Initial fits")

    for family in config.families:
        spec = config.initial_spec(family)
        with Timer(logger, f"Fit {spec.name}"), capture_warnings(logger):
            try:
                fit = fit_model(df, spec, config.model, config.data)
            except ModelFitError as e:
                logger.error(str(e))
                failures[spec.name] = str(e)
                progress.update(1)
                continue
        fits[family.value] = fit
        log_performance(logger, f"{spec.name} fitted", n_obs=fit.n_obs,
                        criterion=fit.criterion, value=round(fit.criterion_value, 4))
        progress.update(1, metrics={fit.criterion: fit.criterion_value})

    return fits, failures


def choose_final_spec(
    fits: Dict[str, FitResult],
    config: AnalysisConfig,
    logger: logging.Logger,
) -> Tuple[pd.DataFrame, Tuple[str, ...], ModelSpec]:
    """Rank the AFT pool and narrow the covariates.

    Returns:
        Tuple of (AFT ranking table, retained covariates, final spec)

    Raises:
        SurvivalAnalysisError: If no AFT family in the pool was fitted and
            no final model is configured
    """
    pool = [fits[f.value] for f in config.selection.criterion_family_pool if f.value in fits]
    ranking = rank_models(pool) if pool else pd.DataFrame(columns=RANKING_COLUMNS)

    if config.final_spec is not None:
        logger.info(f"Using configured final model {config.final_spec.name}")
        return ranking, config.final_spec.covariates, config.final_spec

    if not pool:
        raise SurvivalAnalysisError("No parametric AFT family could be fitted")
    best = select_best(pool)

    significance = [fits[Family.COX.value]] if Family.COX.value in fits else []
    importance = [fits[Family.RSF.value]] if Family.RSF.value in fits else []
    if significance or importance:
        retained = narrow_covariates(best.spec, significance, importance, config.selection)
    else:
        logger.warning("No Cox or forest fit available; keeping the initial covariates")
        retained = best.spec.covariates

    spec = reduce_spec(best.spec, retained, name=f"final_{best.family.value}")
    return ranking, spec.covariates, spec


def _save_fit(fit: FitResult, models_dir: str, run_type: str, logger: logging.Logger) -> Optional[str]:
    path = os.path.join(models_dir, versioned_name(fit.name, run_type=run_type) + ".joblib")
    try:
        joblib.dump(fit, path)
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        logger.warning(f"Could not persist {fit.name}: {e}")
        return None
    return path


def run_analysis(
    input_file: str,
    config: Optional[AnalysisConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> AnalysisResults:
    """Run the complete analysis on one trial dataset.

    Args:
        input_file: Tab-separated trial data
        config: Analysis configuration. Defaults to AnalysisConfig()
        logger: Logger to use. Defaults to ``seizure_survival.pipeline``

    Returns:
        AnalysisResults

    Raises:
        SchemaError, DataValidationError: On bad input
        ModelFitError: If the final model cannot be fitted
        SurvivalAnalysisError: If no AFT family could be fitted
        ValueError: If a prediction profile lacks a final covariate

    Side Effects:
        Writes tables, figures, models and the report below
        ``<output_dir>/<run_type>/``; logs to the seizure_survival MLflow
        experiment when ``config.track_mlflow`` is set.

    Example:
        >>> config = AnalysisConfig.for_run_type("sample")
        >>> results = run_analysis("data/inputs/seizures.tsv", config)
        >>> results.final_fit.name
        'final_weibull'
    """
    config = config or AnalysisConfig()
    logger = logger or logging.getLogger("seizure_survival.pipeline")
    paths = get_output_paths(config.run_type, config.output_dir)
    data_cfg = config.data
    treat = data_cfg.treatment_column

    if config.final_spec is not None:
        config.prediction.check_covers(config.final_spec.covariates)
    config.save(os.path.join(paths["base_dir"], "config.json"))

    with Timer(logger, "Data preparation"):
        raw, df, jointly_missing = prepare_data(input_file, config)

    figures: Dict[str, str] = {}
    tables: Dict[str, str] = {}

    with Timer(logger, "Descriptive summaries"):
        eeg_table = eeg_consistency_table(raw, data_cfg)
        frequency_tables = {
            "Treatment by sex": frequency_table(df, treat, "sex"),
            "Treatment by age band": frequency_table(df, treat, "age_band"),
        }
        balance_covariates = [c for c in config.covariates if c != treat and c in df.columns]
        balance = balance_table(df, treat, balance_covariates)
        outcome_summary = summarise_outcome(df, treat, data_cfg)
        km = kaplan_meier_by_group(df, treat, data_cfg)

        tables["eeg_consistency"] = save_table(eeg_table, paths["tables"], "eeg_consistency", index=True)
        tables["freq_treat_sex"] = save_table(frequency_tables["Treatment by sex"], paths["tables"],
                                              "freq_treat_sex", index=True)
        tables["freq_treat_age_band"] = save_table(frequency_tables["Treatment by age band"],
                                                   paths["tables"], "freq_treat_age_band", index=True)
        tables["balance"] = save_table(balance, paths["tables"], "balance")
        tables["outcome_summary"] = save_table(outcome_summary, paths["tables"], "outcome_summary",
                                               index=True)
        tables["kaplan_meier"] = save_table(km.table, paths["tables"], "kaplan_meier", index=True)

        hist_cols = [c for c in HISTOGRAM_COLUMNS if c in df.columns]
        figures["histograms"] = plot_histograms(df, hist_cols,
                                                os.path.join(paths["figures"], "histograms.png"))
        figures["kaplan_meier"] = plot_kaplan_meier(
            df, treat, os.path.join(paths["figures"], "kaplan_meier.png"), data_cfg
        )

    with Timer(logger, "Initial model fits"):
        fits, failures = fit_initial_models(df, config, logger)
    if not fits:
        raise SurvivalAnalysisError("Every initial model fit failed")
    criteria = criterion_table(fits.values())
    tables["initial_models"] = save_table(criteria, paths["tables"], "initial_models")
    for family, fit in fits.items():
        if len(fit.coefficients):
            tables[f"coef_{family}"] = save_table(fit.coefficients, paths["tables"], f"coef_{fit.name}")

    ph_flags = None
    if Family.COX.value in fits:
        with Timer(logger, "Proportional hazards check"):
            ph_flags = ph_assumption_flags(fits[Family.COX.value], df, data_cfg,
                                           alpha=config.selection.alpha)
        tables["ph_flags"] = save_table(ph_flags, paths["tables"], "ph_flags", index=True)

    if Family.RSF.value in fits:
        rsf = fits[Family.RSF.value]
        tables["importance"] = save_table(rsf.importance.to_frame(), paths["tables"], "importance",
                                          index=True)
        figures["importance"] = plot_importance(
            rsf.importance, os.path.join(paths["figures"], "importance.png"),
            threshold=config.selection.importance_threshold,
        )

    with Timer(logger, "Model selection"):
        aft_ranking, retained, final_spec = choose_final_spec(fits, config, logger)
        tables["aft_ranking"] = save_table(aft_ranking, paths["tables"], "aft_ranking")
        config.prediction.check_covers(final_spec.covariates)

    with Timer(logger, f"Fit {final_spec.name}"), capture_warnings(logger):
        final_fit = fit_model(df, final_spec, config.model, data_cfg)
    tables["final_model"] = save_table(final_fit.coefficients, paths["tables"], "final_model")

    with Timer(logger, "Quantile prediction"):
        predictions = predict_quantiles(final_fit, config.prediction.profiles,
                                        config.prediction.probabilities, config=data_cfg)
        medians = median_survival(final_fit, config.prediction.profiles, data_cfg)
        tables["predictions"] = save_table(predictions, paths["tables"], "predictions")
        figures["quantiles"] = plot_quantiles(
            predictions, os.path.join(paths["figures"], "quantiles.png"),
            title=f"Predicted time to first seizure ({final_fit.name})",
        )

    models: Dict[str, str] = {}
    for fit in [*fits.values(), final_fit]:
        path = _save_fit(fit, paths["models"], config.run_type, logger)
        if path:
            models[fit.name] = path

    results = AnalysisResults(
        config=config,
        n_subjects=len(df),
        n_events=int(df[data_cfg.event_column].sum()),
        eeg_inconsistent=count_eeg_inconsistencies(eeg_table),
        jointly_missing=jointly_missing,
        eeg_table=eeg_table,
        frequency_tables=frequency_tables,
        balance=balance,
        outcome_summary=outcome_summary,
        km=km,
        initial_fits=fits,
        failures=failures,
        criteria=criteria,
        ph_flags=ph_flags,
        aft_ranking=aft_ranking,
        retained_covariates=tuple(retained),
        final_fit=final_fit,
        predictions=predictions,
        median_predictions=medians,
        figures=figures,
        tables=tables,
        models=models,
    )

    with Timer(logger, "Report"):
        md_path, docx_path = write_report(results, paths["report"], render_docx=config.render_docx)
    results.report_paths = {"markdown": md_path, "docx": docx_path}

    if config.track_mlflow:
        _track(results, input_file, paths, logger)

    logger.info(f"[{config.run_type.upper()}] Analysis complete: final model {final_fit.name}")
    return results


def tracking_locations(base_dir: str) -> Tuple[str, str]:
    """SQLite store and artifact root kept inside the run directory."""
    base = Path(base_dir).absolute()
    return f"sqlite:///{base / 'mlflow.db'}", (base / "mlartifacts").as_uri()


def _track(results: AnalysisResults, input_file: str, paths: Dict[str, str],
           logger: logging.Logger) -> None:
    """Log parameters, per-fit metrics and artifacts of a finished run."""
    config = results.config
    tracking_uri, artifact_location = tracking_locations(paths["base_dir"])
    run = safe_start_run(f"seizure_survival_{config.run_type}",
                         tags={"run_type": config.run_type}, tracking_uri=tracking_uri,
                         artifact_location=artifact_location, logger=logger)
    if run is None:
        return
    with run:
        safe_log_params({"input_file": input_file, "n_subjects": results.n_subjects,
                         "final_model": results.final_fit.name,
                         "retained_covariates": ",".join(results.retained_covariates)}, logger)
        safe_log_dict("config", config.to_dict(), logger)
        for fit in [*results.initial_fits.values(), results.final_fit]:
            safe_log_metrics({
                f"{fit.name}_aic": fit.aic,
                f"{fit.name}_log_likelihood": fit.log_likelihood,
                f"{fit.name}_concordance": fit.concordance,
            }, logger=logger)
        safe_log_metrics({"logrank_p": results.km.p_value}, logger=logger)
        for path in [*results.tables.values(), *results.figures.values(),
                     *[p for p in results.report_paths.values() if p]]:
            safe_log_artifact(path, logger)
