"""Logging setup for the seizure survival analysis.

Every run writes to ``<output_dir>/<run_type>/logs/``:

- ``analysis_{timestamp}.log``: every message, with module names
- ``performance_{timestamp}.log``: stage timings and model metrics only
- ``warnings_{timestamp}.log``: warnings and errors only

Library warnings (lifelines convergence, pandas dtype changes, ...) are
routed into the same files by ``capture_warnings``.

Example:
    >>> from seizure_survival.logging_config import setup_logging, log_performance
    >>> logger = setup_logging(run_type="sample", output_dir="data/outputs")
    >>> log_performance(logger, "Weibull fitted", aic=5311.2)
"""
import logging
import sys
import warnings
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

LOGGER_NAME = "seizure_survival"

_DETAILED = logging.Formatter(
    fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
_BRIEF = logging.Formatter(fmt="%(asctime)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
_CONSOLE = logging.Formatter(fmt="%(levelname)-8s | %(message)s")


class PerformanceFilter(logging.Filter):
    """Pass only records logged through ``log_performance``."""

    def filter(self, record):
        return getattr(record, "is_performance", False)


class WarningErrorFilter(logging.Filter):
    """Pass WARNING and above."""

    def filter(self, record):
        return record.levelno >= logging.WARNING


def _file_handler(path: Path, level: int, formatter: logging.Formatter,
                  log_filter: Optional[logging.Filter] = None) -> logging.Handler:
    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    if log_filter is not None:
        handler.addFilter(log_filter)
    return handler


def setup_logging(
    run_type: str = "full",
    log_level: int = logging.INFO,
    console_output: bool = True,
    output_dir: str = "data/outputs",
) -> logging.Logger:
    """Configure the package logger for one analysis run.

    Handlers from a previous call are removed, so calling this twice in the
    same process does not duplicate output.

    Args:
        run_type: "sample" or "full"; selects the log directory
        log_level: Console threshold (the main log file always gets DEBUG)
        console_output: Whether to echo messages to stdout
        output_dir: Root output directory

    Returns:
        The ``seizure_survival`` logger
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_dir = Path(output_dir) / run_type / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = False

    if console_output:
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(log_level)
        console.setFormatter(_CONSOLE)
        logger.addHandler(console)

    logger.addHandler(_file_handler(log_dir / f"analysis_{timestamp}.log", logging.DEBUG, _DETAILED))
    logger.addHandler(_file_handler(
        log_dir / f"performance_{timestamp}.log", logging.INFO, _BRIEF, PerformanceFilter()
    ))
    logger.addHandler(_file_handler(
        log_dir / f"warnings_{timestamp}.log", logging.WARNING, _DETAILED, WarningErrorFilter()
    ))

    logger.info(f"Logging initialized for {run_type} run in {log_dir.absolute()}")
    return logger


def log_performance(logger: logging.Logger, message: str, **kwargs):
    """Log a timing or metric message to the main and performance logs.

    Example:
        >>> log_performance(logger, "Model fitted", duration_sec=1.2, aic=5311.2)
        # "Model fitted | duration_sec=1.2 | aic=5311.2"
    """
    if kwargs:
        message = message + " | " + " | ".join(f"{k}={v}" for k, v in kwargs.items())
    logger.info(message, extra={"is_performance": True})


class WarningLogger:
    """Counts captured library warnings by category."""

    WARNING_CATEGORIES = {
        "convergence": ["convergence", "did not converge", "maximum iterations", "step size"],
        "numerical": ["overflow", "underflow", "invalid value", "divide by zero"],
        "data": ["missing values", "futurewarning", "dtype", "downcasting"],
        "statistical": ["hessian", "variance", "proportional hazard", "collinear"],
    }

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.warning_counts = {cat: 0 for cat in self.WARNING_CATEGORIES}
        self.warning_counts["other"] = 0

    def categorize_warning(self, message: str) -> str:
        message = message.lower()
        for category, keywords in self.WARNING_CATEGORIES.items():
            if any(kw in message for kw in keywords):
                return category
        return "other"

    def log_warning(self, message: str, category: Optional[str] = None):
        category = category or self.categorize_warning(message)
        self.warning_counts[category] += 1
        self.logger.warning(f"[{category.upper()}] {message}")

    def summary(self) -> dict:
        """Categories with at least one warning."""
        return {k: v for k, v in self.warning_counts.items() if v > 0}


@contextmanager
def capture_warnings(logger: logging.Logger):
    """Route ``warnings.warn`` calls to ``logger`` for the duration of the block.

    Yields:
        WarningLogger with the per-category counts

    Example:
        >>> with capture_warnings(logger) as captured:
        ...     fit_model(df, spec)
        >>> captured.summary()
        {'convergence': 1}
    """
    captured = WarningLogger(logger)

    def _show(message, category, filename, lineno, file=None, line=None):
        captured.log_warning(f"{category.__name__}: {message}")

    previous = warnings.showwarning
    warnings.showwarning = _show
    try:
        yield captured
    finally:
        warnings.showwarning = previous
        summary = captured.summary()
        if summary:
            logger.info("Warning summary: " + ", ".join(f"{k}={v}" for k, v in summary.items()))


class ProgressLogger:
    """Logs ``desc: i/total`` progress lines, optionally with metrics.

    Example:
        >>> progress = ProgressLogger(logger, total=6, desc="Initial fits")
        >>> progress.update(metrics={"aic": 5311.2})
        # "Initial fits: 1/6 (16.7%) | aic=5311.2000"
    """

    def __init__(self, logger: logging.Logger, total: int, desc: str):
        self.logger = logger
        self.total = total
        self.desc = desc
        self.current = 0

    def update(self, n: int = 1, metrics: Optional[dict] = None):
        self.current += n
        pct = 100.0 * self.current / self.total if self.total else 100.0
        msg = f"{self.desc}: {self.current}/{self.total} ({pct:.1f}%)"
        if metrics:
            msg += " | " + ", ".join(
                f"{k}={v:.4f}" if isinstance(v, float) else f"{k}={v}" for k, v in metrics.items()
            )
        self.logger.info(msg)
