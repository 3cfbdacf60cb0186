"""Main entry point for the seizure survival analysis.

Runs the complete analysis (descriptives, model fits, comparison, reduced
model, predicted quantiles, report) on one trial dataset.
Supports quick sample runs and full runs.

Can be used as CLI or imported as a function.
"""
import argparse
import logging
import os
from typing import Optional

from seizure_survival.config import AnalysisConfig
from seizure_survival.exceptions import SurvivalAnalysisError
from seizure_survival.logging_config import LOGGER_NAME, setup_logging
from seizure_survival.pipeline import run_analysis


def run_pipeline(
    input_file: str,
    config_file: Optional[str] = None,
    run_type: Optional[str] = None,
    output_dir: Optional[str] = None,
    track_mlflow: Optional[bool] = None,
    log_level: str = "INFO",
) -> int:
    """Run the seizure survival analysis.

    Command-line values override the ones in ``config_file``.

    Args:
        input_file: Tab-separated trial data
        config_file: Optional JSON configuration written by AnalysisConfig.save
        run_type: "sample" or "full"; with ``config_file`` it also replaces
            the forest sizing of the loaded model options
        output_dir: Root output directory
        track_mlflow: Whether to log the run to MLflow
        log_level: Console log level name

    Returns:
        Exit code (0 for success, 1 for failure)

    Example:
        >>> from main import run_pipeline
        >>> run_pipeline("data/inputs/seizures.tsv", run_type="sample", track_mlflow=False)
        0
    """
    if config_file:
        try:
            config = AnalysisConfig.load(config_file)
        except (OSError, ValueError, TypeError, KeyError) as e:
            logging.getLogger(LOGGER_NAME).error(f"Invalid configuration {config_file}: {e}")
            return 1
        if run_type:
            config.run_type = run_type
            config.model = config.model.with_run_type(run_type)
    else:
        config = AnalysisConfig.for_run_type(run_type or "full")
    if output_dir:
        config.output_dir = output_dir
    if track_mlflow is not None:
        config.track_mlflow = track_mlflow

    logger = setup_logging(
        run_type=config.run_type,
        log_level=getattr(logging, log_level.upper(), logging.INFO),
        output_dir=config.output_dir,
    )

    if not os.path.exists(input_file):
        logger.error(f"Input file not found: {input_file}")
        return 1

    logger.info("=" * 70)
    logger.info(f"SEIZURE SURVIVAL ANALYSIS - {config.run_type.upper()} RUN")
    logger.info(f"Input file: {input_file}")
    logger.info(f"Output dir: {config.run_dir}")
    logger.info(f"Families:   {', '.join(f.value for f in config.families)}")
    logger.info("=" * 70)

    try:
        results = run_analysis(input_file, config, logger=logging.getLogger("seizure_survival.pipeline"))
    except (SurvivalAnalysisError, ValueError) as e:
        logger.error(f"Analysis failed: {e}")
        return 1

    logger.info(f"Final model: {results.final_fit.name} "
                f"({', '.join(results.retained_covariates)})")
    logger.info(f"Report: {results.report_paths.get('markdown')}")
    return 0


def main():
    """Main execution function with argument parsing."""
    parser = argparse.ArgumentParser(
        description="Seizure survival analysis - time to first seizure after randomisation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Quick run with smaller forests
  python src/main.py --input data/inputs/seizures.tsv --run-type sample

  # Full run from a saved configuration, without MLflow
  python src/main.py --input data/inputs/seizures.tsv --config configs/full.json --no-tracking
        """,
    )
    parser.add_argument("--input", type=str, required=True,
                        help="Path to the tab-separated trial data")
    parser.add_argument("--config", type=str, default=None,
                        help="JSON configuration file (see AnalysisConfig.save)")
    parser.add_argument("--run-type", type=str, choices=["sample", "full"], default=None,
                        help="Run type: 'sample' for quick runs, 'full' for the report. Default: full")
    parser.add_argument("--output-dir", type=str, default=None,
                        help="Root output directory. Default: data/outputs")
    parser.add_argument("--no-tracking", action="store_true",
                        help="Do not log the run to MLflow")
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Console log level. Default: INFO")
    args = parser.parse_args()

    return run_pipeline(
        input_file=args.input,
        config_file=args.config,
        run_type=args.run_type,
        output_dir=args.output_dir,
        track_mlflow=False if args.no_tracking else None,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    exit(main())
