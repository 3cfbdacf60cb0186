"""Exception types raised by the seizure survival pipeline.

Input-format and cross-field problems stop the pipeline before modelling.
Fit failures are reported per model specification so the analyst can
supply a reduced one.
"""


class SurvivalAnalysisError(Exception):
    """Base class for all pipeline errors."""


class SchemaError(SurvivalAnalysisError):
    """Input file is malformed or misses required columns."""


class DataValidationError(SurvivalAnalysisError):
    """A cross-field invariant of the subject table does not hold.

    Attributes:
        rows: Index labels of the offending rows
    """

    def __init__(self, message: str, rows=None):
        super().__init__(message)
        self.rows = list(rows) if rows is not None else []


class ModelFitError(SurvivalAnalysisError):
    """A model specification could not be fitted.

    Raised on non-convergence, singular or rank-deficient design matrices.
    The pipeline never retries with a smaller covariate set.

    Attributes:
        spec_name: Name of the model specification that failed
    """

    def __init__(self, spec_name: str, message: str):
        super().__init__(f"{spec_name}: {message}")
        self.spec_name = spec_name
