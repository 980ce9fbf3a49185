"""
Analysis configuration.

Every analyst decision the pipeline depends on (covariate selection, recodes, the
cognitive test battery, the component-to-domain mapping, the stopping rule whose
weights are carried forward) lives here rather than being inferred at run time.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


logger = logging.getLogger(__name__)


EXPOSURE_LEVELS = ["None", "OnetoSix", "SeventoTwelve", "MorethanTwelve"]
EXPOSURE_BREAKS = [0.0, 1.0, 7.0, 13.0, float("inf")]
STOPPING_RULES = ["es.mean", "es.max", "ks.mean", "ks.max"]
ESTIMANDS = ["ATE", "ATT"]


@dataclass
class PropensityConfig:
    """Hyperparameters of the boosted multinomial propensity model."""
    n_trees: int = 10000
    interaction_depth: int = 3
    shrinkage: float = 0.01
    bag_fraction: float = 0.5
    stopping_rules: List[str] = field(default_factory=lambda: list(STOPPING_RULES))
    estimand: str = "ATE"
    treated_category: Optional[str] = None
    checkpoint_step: int = 100
    extreme_threshold: float = 0.001
    random_state: int = 42


@dataclass
class InferenceConfig:
    """Settings for weight truncation and replicate-weight inference."""
    selected_stopping_rule: str = "es.mean"
    truncation_percentile: float = 99.0
    n_replicates: int = 1000
    imbalance_threshold: float = 0.10
    confidence_level: float = 0.95
    random_state: int = 42


@dataclass
class SensitivityConfig:
    """Treatment contrasts and benchmark covariates for the bias-factor analysis."""
    treatments: List[str] = field(default_factory=lambda: ["MorethanTwelve", "SeventoTwelve"])
    benchmark_covariates: List[str] = field(default_factory=lambda: ["maternal_education"])
    kd: List[float] = field(default_factory=lambda: [1.0, 2.0, 3.0])
    ky: Optional[List[float]] = None
    q: float = 1.0
    alpha: float = 0.05
    use_weights: bool = False


@dataclass
class AnalysisConfig:
    """Complete configuration of one analysis run."""
    id_col: str = "child_id"
    duration_col: str = "bf_duration_months"
    exposure_col: str = "bf_category"
    base_weight_col: str = "sampling_weight"
    missing_values: List[Any] = field(default_factory=lambda: [-9, "-9", "Missing"])

    covariates: List[str] = field(default_factory=lambda: [
        "child_sex", "child_age_months", "maternal_age", "marital_status",
        "birth_weight_g", "gestational_age_wk", "maternal_smoking_pregnancy",
        "maternal_education", "household_income_q", "parity",
    ])
    categorical_covariates: List[str] = field(default_factory=lambda: [
        "child_sex", "marital_status", "maternal_smoking_pregnancy",
        "maternal_education", "household_income_q",
    ])
    recodes: Dict[str, Dict[str, str]] = field(default_factory=lambda: {
        "maternal_education": {
            "Primary": "Lower secondary or less",
            "Lower secondary": "Lower secondary or less",
            "Upper secondary": "Upper secondary",
            "Post-secondary": "Post-secondary",
            "Degree": "Degree or higher",
            "Postgraduate": "Degree or higher",
        },
        "maternal_smoking_pregnancy": {"Yes": "Yes", "No": "No"},
        "marital_status": {
            "Married": "Married",
            "Cohabiting": "Cohabiting",
            "Single": "Single",
            "Separated": "Separated or divorced",
            "Divorced": "Separated or divorced",
        },
    })
    feature_groups: Dict[str, List[str]] = field(default_factory=lambda: {
        "demographic": ["child_sex", "child_age_months", "maternal_age", "marital_status"],
        "prenatal": ["birth_weight_g", "gestational_age_wk", "maternal_smoking_pregnancy"],
        "family": ["maternal_education", "household_income_q", "parity"],
    })

    repeated_trials: List[str] = field(default_factory=lambda: [
        "list_trial_1", "list_trial_2", "list_trial_3", "list_trial_4", "list_trial_5",
    ])
    trials_mean_col: str = "list_learning_mean"
    test_scores: List[str] = field(default_factory=lambda: [
        "vocabulary", "matrices", "digit_span_fwd", "digit_span_bwd", "picture_memory",
        "story_recall", "list_learning_mean", "card_sort", "flanker", "trail_making",
        "verbal_fluency",
    ])
    n_components: int = 3
    domain_map: Dict[str, int] = field(default_factory=lambda: {
        "general_ability": 0, "memory": 1, "executive_function": 2,
    })
    sign_flips: List[str] = field(default_factory=list)

    propensity: PropensityConfig = field(default_factory=PropensityConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    sensitivity: SensitivityConfig = field(default_factory=SensitivityConfig)

    def __post_init__(self):
        if self.propensity.estimand not in ESTIMANDS:
            raise ValueError(f"Unknown estimand {self.propensity.estimand!r}; expected one of {ESTIMANDS}")
        unknown_rules = [r for r in self.propensity.stopping_rules if r not in STOPPING_RULES]
        if unknown_rules:
            raise ValueError(f"Unknown stopping rules: {unknown_rules}")
        if self.inference.selected_stopping_rule not in self.propensity.stopping_rules:
            raise ValueError(
                f"Selected stopping rule {self.inference.selected_stopping_rule!r} "
                f"is not among the fitted rules {self.propensity.stopping_rules}"
            )
        missing_categorical = [c for c in self.categorical_covariates if c not in self.covariates]
        if missing_categorical:
            raise ValueError(f"Categorical covariates not in covariate list: {missing_categorical}")

    @property
    def continuous_covariates(self) -> List[str]:
        return [c for c in self.covariates if c not in self.categorical_covariates]

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "AnalysisConfig":
        """Build a configuration from a (possibly partial) nested dictionary."""
        values = dict(values)
        nested = {
            'propensity': PropensityConfig,
            'inference': InferenceConfig,
            'sensitivity': SensitivityConfig,
        }
        for key, nested_cls in nested.items():
            if key in values:
                values[key] = nested_cls(**values[key])
        return cls(**values)

    @classmethod
    def from_json(cls, filepath: Union[str, Path]) -> "AnalysisConfig":
        """
        Load a configuration file.

        Args:
            filepath: Path to a JSON configuration file

        Returns:
            Parsed configuration
        """
        with open(filepath, 'r') as f:
            values = json.load(f)
        logger.info(f"Loaded analysis configuration from {filepath}")
        return cls.from_dict(values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
