"""Configuration for the seizure survival analysis.

Every analyst judgement of the report (which covariates to start from, which
families to fit, the significance and importance thresholds, the excluded
centre variable, the prediction profiles) is a configuration input here so
that a run can be repeated for any covariate/family combination without
editing code.
"""
from __future__ import annotations
from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Optional
import os
import json


class Family(str, Enum):
    """Model family tag understood by the model runner.

    Attributes:
        COX: Semi-parametric proportional hazards
        AALEN: Non-parametric additive hazards
        EXPONENTIAL: Exponential accelerated failure time
        WEIBULL: Weibull accelerated failure time
        LOGNORMAL: Log-normal accelerated failure time
        LOGLOGISTIC: Log-logistic accelerated failure time
        RSF: Random survival forest (importance scores, no coefficients)
    """
    COX = "cox"
    AALEN = "aalen"
    EXPONENTIAL = "exponential"
    WEIBULL = "weibull"
    LOGNORMAL = "lognormal"
    LOGLOGISTIC = "loglogistic"
    RSF = "rsf"

    @property
    def is_aft(self) -> bool:
        return self in AFT_FAMILIES


AFT_FAMILIES = (Family.EXPONENTIAL, Family.WEIBULL, Family.LOGNORMAL, Family.LOGLOGISTIC)


@dataclass(frozen=True)
class ModelSpec:
    """One model-runner invocation.

    Attributes:
        name: Identifier used in logs, tables and file names
        family: Family tag
        covariates: Source covariate names (columns of the derived table)
        interactions: Pairwise interaction terms as (a, b) tuples

    Example:
        >>> spec = ModelSpec("cox_full", Family.COX, ("treat", "age"), (("treat", "age"),))
        >>> spec.terms
        ('treat', 'age', 'treat:age')
    """
    name: str
    family: Family
    covariates: tuple[str, ...]
    interactions: tuple[tuple[str, str], ...] = ()

    def __post_init__(self):
        if isinstance(self.family, str):
            object.__setattr__(self, "family", Family(self.family))
        object.__setattr__(self, "covariates", tuple(self.covariates))
        object.__setattr__(
            self, "interactions", tuple(tuple(pair) for pair in self.interactions)
        )
        for pair in self.interactions:
            if len(pair) != 2:
                raise ValueError(f"{self.name}: interaction {pair} is not a pair")
            missing = [c for c in pair if c not in self.covariates]
            if missing:
                raise ValueError(
                    f"{self.name}: interaction {pair} uses covariates not in the model: {missing}"
                )

    @property
    def terms(self) -> tuple[str, ...]:
        """Main effects followed by interaction terms named ``a:b``."""
        return self.covariates + tuple(f"{a}:{b}" for a, b in self.interactions)

    def with_family(self, family: Family, name: Optional[str] = None) -> "ModelSpec":
        """Return the same covariate set under another family tag."""
        family = Family(family)
        return replace(self, family=family, name=name or f"{self.name}_{family.value}")

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "family": self.family.value,
            "covariates": list(self.covariates),
            "interactions": [list(pair) for pair in self.interactions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ModelSpec":
        return cls(
            name=data["name"],
            family=Family(data["family"]),
            covariates=tuple(data["covariates"]),
            interactions=tuple(tuple(p) for p in data.get("interactions", ())),
        )


# ============================================================================
# Data Configuration
# ============================================================================

@dataclass
class DataConfig:
    """Schema of the trial dataset and the hand-written recoding tables.

    Attributes:
        separator: Field delimiter of the input file
        id_column: Subject identifier column
        time_column: Days to first post-randomisation seizure
        event_column: Censoring indicator (1 = seizure observed)
        code_tables: Raw code -> label tables per categorical column
        ordered_categoricals: Categorical columns whose label order matters
        binary_columns: Yes/no columns encoded 1 = yes, 2 = no
        date_columns: Columns holding ``dd/mm/yy`` dates
        date_format: strptime format of the date columns
        count_columns: Non-negative count columns
        treatment_column: Randomised arm, used for descriptive comparisons
        eeg_column: EEG performed flag
        abnormal_eeg_column: EEG abnormal flag, authoritative over ``eeg_column``
        first_seizure_date_column: Date of first ever seizure
        period_column: Days from first seizure to randomisation
        total_seizures_column: Total previous seizure count
        age_column: Age at randomisation
        age_breakpoints: Lower edges of the age bands; the last band is open to the maximum
        seizure_threshold: Counts strictly above this mark multiple seizures
        min_event_time: Observed events must have time strictly above this value
        expected_jointly_missing: Known number of rows missing both first-seizure
            date and period (None = not checked)
    """
    separator: str = "\t"
    id_column: str = "id"
    time_column: str = "time"
    event_column: str = "status"

    code_tables: dict[str, dict[int, str]] = field(default_factory=lambda: {
        "treat": {1: "immediate", 2: "deferred"},
        "sex": {1: "male", 2: "female"},
    })
    """Raw code -> label. Codes absent from a table become missing."""

    ordered_categoricals: tuple[str, ...] = ("treat",)

    centre_column: str = "centre"
    """Centre codes are relabelled as ``centre_<code>`` with every observed code a level."""

    binary_columns: tuple[str, ...] = (
        "eeg",
        "abnormal_eeg",
        "epileptiform",
        "focal",
        "neuro_deficit",
        "learning_disability",
    )
    """Diagnostic flags encoded 1 = yes, 2 = no; normalized to 1/0."""

    date_columns: tuple[str, ...] = (
        "date_randomisation",
        "date_first_seizure",
        "date_last_seizure",
    )
    date_format: str = "%d/%m/%y"

    count_columns: tuple[str, ...] = (
        "tonic_clonic",
        "partial",
        "myoclonic",
        "total_seizures",
    )

    numeric_columns: tuple[str, ...] = ("age", "period", "time")

    treatment_column: str = "treat"
    eeg_column: str = "eeg"
    abnormal_eeg_column: str = "abnormal_eeg"
    first_seizure_date_column: str = "date_first_seizure"
    period_column: str = "period"
    total_seizures_column: str = "total_seizures"
    age_column: str = "age"

    age_breakpoints: tuple[float, ...] = (0, 5, 9, 19, 29, 39, 49, 59, 69)
    """Band edges; bands are [0,5], (5,9], ..., (59,69], (69,max]."""

    seizure_threshold: int = 1
    min_event_time: float = 0.0

    expected_jointly_missing: Optional[int] = 5
    """Rows in the trial data with neither first-seizure date nor period."""

    @property
    def required_columns(self) -> list[str]:
        """Columns that must be present in the input file."""
        cols = [
            self.id_column,
            self.centre_column,
            *self.code_tables.keys(),
            *self.numeric_columns,
            *self.count_columns,
            *self.binary_columns,
            *self.date_columns,
            self.event_column,
        ]
        seen = []
        for col in cols:
            if col not in seen:
                seen.append(col)
        return seen


# ============================================================================
# Model Configuration
# ============================================================================

@dataclass
class ModelConfig:
    """Fitting options shared by all model-runner invocations.

    Attributes:
        random_state: Seed for the forest and the permutation importance
        rsf_n_estimators: Trees in the random survival forest
        rsf_min_samples_leaf: Minimum subjects per terminal node
        rsf_max_features: Covariates tried per split (None = sqrt)
        importance_repeats: Permutations per covariate for importance scores
        aalen_coef_penalizer: Ridge penalty on the Aalen regression coefficients
        cox_penalizer: Ridge penalty of the Cox model (0 = unpenalized)
        min_positive_time: Floor applied to non-positive durations in AFT fits
    """
    random_state: int = 42
    rsf_n_estimators: int = 500
    rsf_min_samples_leaf: int = 15
    rsf_max_features: Optional[str] = "sqrt"
    importance_repeats: int = 10
    aalen_coef_penalizer: float = 0.5
    cox_penalizer: float = 0.0
    min_positive_time: float = 0.5

    @classmethod
    def for_run_type(cls, run_type: str) -> "ModelConfig":
        """Smaller forests for quick sample runs.

        Example:
            >>> ModelConfig.for_run_type("sample").rsf_n_estimators
            100
        """
        if run_type == "sample":
            return cls(rsf_n_estimators=100, importance_repeats=3)
        return cls()

    def with_run_type(self, run_type: str) -> "ModelConfig":
        """Copy with the forest sizing of ``run_type``; other options are kept."""
        sized = ModelConfig.for_run_type(run_type)
        return replace(self, rsf_n_estimators=sized.rsf_n_estimators,
                       importance_repeats=sized.importance_repeats)


@dataclass
class SelectionConfig:
    """Thresholds and exclusions used by the model comparator.

    Attributes:
        alpha: p-value threshold for significant coefficients
        importance_threshold: Minimum permutation importance for a covariate
        excluded_covariates: Covariates dropped before any fit
        forced_covariates: Covariates kept in the reduced model regardless of
            the thresholds (the randomised comparison itself)
        criterion_family_pool: Families ranked by AIC to choose the final family
    """
    alpha: float = 0.05
    importance_threshold: float = 0.002
    excluded_covariates: tuple[str, ...] = ("centre",)
    forced_covariates: tuple[str, ...] = ("treat",)
    criterion_family_pool: tuple[Family, ...] = AFT_FAMILIES

    def __post_init__(self):
        self.excluded_covariates = tuple(self.excluded_covariates)
        self.forced_covariates = tuple(self.forced_covariates)
        self.criterion_family_pool = tuple(Family(f) for f in self.criterion_family_pool)


DEFAULT_COVARIATES = (
    "treat",
    "sex",
    "age",
    "tonic_clonic",
    "partial",
    "myoclonic",
    "log_period",
    "multiple_seizures",
    "eeg",
    "abnormal_eeg",
    "epileptiform",
    "focal",
    "neuro_deficit",
    "learning_disability",
    "centre",
)


@dataclass
class PredictionConfig:
    """Synthetic covariate profiles and the probability grid for quantiles.

    Profiles give a value for every candidate covariate; the predictor uses
    the ones the final model needs.
    """
    probabilities: tuple[float, ...] = tuple(round(0.05 * i, 2) for i in range(1, 20))
    profiles: dict[str, dict] = field(default_factory=lambda: {
        "immediate_single": {
            "treat": "immediate", "sex": "male", "age": 30.0,
            "tonic_clonic": 1, "partial": 0, "myoclonic": 0,
            "log_period": 3.0, "multiple_seizures": False,
            "eeg": 1, "abnormal_eeg": 0, "epileptiform": 0, "focal": 0,
            "neuro_deficit": 0, "learning_disability": 0,
        },
        "deferred_single": {
            "treat": "deferred", "sex": "male", "age": 30.0,
            "tonic_clonic": 1, "partial": 0, "myoclonic": 0,
            "log_period": 3.0, "multiple_seizures": False,
            "eeg": 1, "abnormal_eeg": 0, "epileptiform": 0, "focal": 0,
            "neuro_deficit": 0, "learning_disability": 0,
        },
        "immediate_multiple": {
            "treat": "immediate", "sex": "male", "age": 30.0,
            "tonic_clonic": 3, "partial": 0, "myoclonic": 0,
            "log_period": 5.0, "multiple_seizures": True,
            "eeg": 1, "abnormal_eeg": 1, "epileptiform": 1, "focal": 0,
            "neuro_deficit": 0, "learning_disability": 0,
        },
        "deferred_multiple": {
            "treat": "deferred", "sex": "male", "age": 30.0,
            "tonic_clonic": 3, "partial": 0, "myoclonic": 0,
            "log_period": 5.0, "multiple_seizures": True,
            "eeg": 1, "abnormal_eeg": 1, "epileptiform": 1, "focal": 0,
            "neuro_deficit": 0, "learning_disability": 0,
        },
    })

    def check_covers(self, covariates) -> None:
        """Raise ValueError if a profile has no value for one of ``covariates``."""
        for name, profile in self.profiles.items():
            missing = [c for c in covariates if c not in profile]
            if missing:
                raise ValueError(f"Prediction profile {name} has no value for {missing}")


# ============================================================================
# Master Configuration
# ============================================================================

@dataclass
class AnalysisConfig:
    """Master configuration for one run of the analysis.

    Attributes:
        data: Schema and recoding tables
        model: Fitting options
        selection: Comparator thresholds
        prediction: Profiles for predicted quantiles
        covariates: Initial covariate set (before exclusions)
        interactions: Initial pairwise interactions
        families: Families fitted on the initial covariate set
        final_spec: Explicit final model; None = derived by the comparator
        run_type: "sample" or "full"
        output_dir: Root of all outputs
        track_mlflow: Whether to log the run to MLflow
        render_docx: Whether to convert the Markdown report to Word
        description: Optional free text stored with the config

    Example:
        >>> config = AnalysisConfig.for_run_type("sample")
        >>> config.save("configs/sample.json")
        >>> loaded = AnalysisConfig.load("configs/sample.json")
    """
    data: DataConfig = field(default_factory=DataConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    selection: SelectionConfig = field(default_factory=SelectionConfig)
    prediction: PredictionConfig = field(default_factory=PredictionConfig)

    covariates: tuple[str, ...] = DEFAULT_COVARIATES
    interactions: tuple[tuple[str, str], ...] = ()
    families: tuple[Family, ...] = tuple(Family)
    final_spec: Optional[ModelSpec] = None

    run_type: str = "full"
    output_dir: str = "data/outputs"
    track_mlflow: bool = True
    render_docx: bool = True
    description: str = ""

    def __post_init__(self):
        self.families = tuple(Family(f) for f in self.families)
        self.covariates = tuple(self.covariates)
        self.interactions = tuple(tuple(p) for p in self.interactions)
        if isinstance(self.final_spec, dict):
            self.final_spec = ModelSpec.from_dict(self.final_spec)
        if self.final_spec is not None and not self.final_spec.family.is_aft:
            raise ValueError(
                f"Final model {self.final_spec.name} must be a parametric AFT family, "
                f"got {self.final_spec.family.value}"
            )

    @classmethod
    def for_run_type(cls, run_type: str) -> "AnalysisConfig":
        """Create configuration for a run type ("sample" or "full")."""
        return cls(model=ModelConfig.for_run_type(run_type), run_type=run_type)

    def initial_spec(self, family: Family) -> ModelSpec:
        """Initial covariate set under ``family`` with exclusions applied."""
        family = Family(family)
        excluded = set(self.selection.excluded_covariates)
        covariates = tuple(c for c in self.covariates if c not in excluded)
        interactions = tuple(
            pair for pair in self.interactions if not excluded.intersection(pair)
        )
        return ModelSpec(f"initial_{family.value}", family, covariates, interactions)

    @property
    def run_dir(self) -> str:
        return os.path.join(self.output_dir, self.run_type)

    def to_dict(self) -> dict:
        """Convert configuration to a JSON-serializable dictionary."""
        def _to_dict(obj):
            if isinstance(obj, ModelSpec):
                return obj.to_dict()
            if hasattr(obj, "__dataclass_fields__"):
                return {k: _to_dict(v) for k, v in obj.__dict__.items()}
            if isinstance(obj, Enum):
                return obj.value
            if isinstance(obj, dict):
                return {str(k): _to_dict(v) for k, v in obj.items()}
            if isinstance(obj, (list, tuple)):
                return [_to_dict(v) for v in obj]
            return obj

        return _to_dict(self)

    def save(self, path: str) -> None:
        """Save configuration to a JSON file."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "AnalysisConfig":
        """Load configuration from a JSON file written by :meth:`save`."""
        with open(path) as f:
            data = json.load(f)

        data_cfg = dict(data.get("data", {}))
        if "code_tables" in data_cfg:
            # JSON object keys are strings; raw codes are integers
            data_cfg["code_tables"] = {
                col: {int(code): label for code, label in table.items()}
                for col, table in data_cfg["code_tables"].items()
            }
        for key in ("ordered_categoricals", "binary_columns", "date_columns",
                    "count_columns", "numeric_columns", "age_breakpoints"):
            if key in data_cfg:
                data_cfg[key] = tuple(data_cfg[key])

        selection = dict(data.get("selection", {}))

        prediction = dict(data.get("prediction", {}))
        if "probabilities" in prediction:
            prediction["probabilities"] = tuple(prediction["probabilities"])

        final_spec = data.get("final_spec")
        return cls(
            data=DataConfig(**data_cfg),
            model=ModelConfig(**data.get("model", {})),
            selection=SelectionConfig(**selection),
            prediction=PredictionConfig(**prediction),
            covariates=tuple(data.get("covariates", DEFAULT_COVARIATES)),
            interactions=tuple(tuple(p) for p in data.get("interactions", ())),
            families=tuple(data.get("families", [f.value for f in Family])),
            final_spec=ModelSpec.from_dict(final_spec) if final_spec else None,
            run_type=data.get("run_type", "full"),
            output_dir=data.get("output_dir", "data/outputs"),
            track_mlflow=data.get("track_mlflow", True),
            render_docx=data.get("render_docx", True),
            description=data.get("description", ""),
        )
