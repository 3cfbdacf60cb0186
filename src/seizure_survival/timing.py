"""Stage timing for the analysis pipeline.

Example:
    >>> from seizure_survival.timing import Timer
    >>> with Timer(logger, "Initial model fits") as t:
    ...     fits = fit_initial_models(df, config)
    >>> t.duration
    12.7
"""
import functools
import logging
import time
from typing import Callable, Optional

from seizure_survival.logging_config import log_performance


def log_execution_time(logger: Optional[logging.Logger] = None):
    """Decorator logging the wall time of each call to the performance log.

    Failures are logged with their traceback and re-raised.
    """
    def decorator(func: Callable) -> Callable:
        log = logger or logging.getLogger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                log.error(f"{func.__name__} failed after {time.perf_counter() - start:.2f}s: {e}",
                          exc_info=True)
                raise
            log_performance(log, f"Completed: {func.__name__}",
                            duration_sec=round(time.perf_counter() - start, 2))
            return result

        return wrapper
    return decorator


class Timer:
    """Context manager timing one pipeline stage.

    The duration (seconds) is available as ``duration`` after the block and
    as ``elapsed()`` inside it. Exceptions are logged and propagated.
    """

    def __init__(self, logger: logging.Logger, description: str):
        self.logger = logger
        self.description = description
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.info(f"Starting: {self.description}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        if exc_type is None:
            log_performance(self.logger, f"Completed: {self.description}",
                            duration_sec=round(self.duration, 2))
        else:
            self.logger.error(
                f"{self.description} failed after {self.duration:.2f}s: {exc_val}"
            )
        return False

    def elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        return time.perf_counter() - self.start_time
