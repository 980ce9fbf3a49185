"""
End-to-end analysis: cohort preparation through sensitivity analysis, in that order.
"""

import pandas as pd
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import logging

from .config import AnalysisConfig
from .data.preprocessor import CohortPreprocessor
from .models.balance import imbalanced_covariates
from .models.factors import FactorExtractor, FactorSolution, apply_domain_mapping
from .models.inference import SurveyDesign, WeightedMeans, WeightedModelResult
from .models.propensity import PropensityFit, PropensityModel, compare_stopping_rules
from .models.sensitivity import SensitivityAnalyzer, SensitivityResult
from .models.weights import WeightDeriver, WeightKey, WeightRegistry


logger = logging.getLogger(__name__)


WEIGHT_VARIANTS = ("untruncated", "truncated")


@dataclass(frozen=True)
class AnalysisResults:
    """Every artifact of one pipeline run."""
    cohort: pd.DataFrame
    factors: FactorSolution
    propensity_fits: Dict[str, PropensityFit]
    stopping_rule_comparison: pd.DataFrame
    weights: WeightRegistry
    selected_weights: WeightKey
    adjustment_covariates: List[str]
    weighted_means: Dict[Tuple[str, str], WeightedMeans]
    contrasts: Dict[Tuple[str, str], pd.DataFrame]
    models: Dict[Tuple[str, str, str], WeightedModelResult]
    sensitivity: Dict[Tuple[str, str], SensitivityResult]

    def model_table(self) -> pd.DataFrame:
        """Exposure coefficients of every model under both weight variants."""
        frames = []
        for (factor, variant, label), model in self.models.items():
            frame = model.to_frame()
            frame.insert(0, 'model', label)
            frame.insert(0, 'weights', variant)
            frame.insert(0, 'factor', factor)
            frames.append(frame.rename_axis('category').reset_index())
        return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'n_subjects': len(self.cohort),
            'n_excluded_from_factors': len(self.factors.excluded),
            'loadings': self.factors.loadings,
            'variance_explained': self.factors.variance_explained,
            'eigenvalues': self.factors.eigenvalues,
            'stopping_rules': self.stopping_rule_comparison,
            'selected_weights': list(self.selected_weights),
            'weight_summaries': self.weights.comparison(),
            'adjustment_covariates': self.adjustment_covariates,
            'weighted_means': {f"{f}/{v}": m.means for (f, v), m in self.weighted_means.items()},
            'contrasts': {f"{f}/{v}": c for (f, v), c in self.contrasts.items()},
            'models': self.model_table(),
            'sensitivity': {
                f"{f}/{t}": {
                    'estimate': s.estimate,
                    'std_error': s.std_error,
                    'partial_r2_treatment': s.partial_r2_treatment,
                    'partial_f2_treatment': s.partial_f2_treatment,
                    'rv_q': s.rv_q,
                    'rv_qa': s.rv_qa,
                    'benchmark_r2': s.benchmark_r2,
                    'bounds': s.bounds_frame(),
                } for (f, t), s in self.sensitivity.items()
            },
        }


class AnalysisPipeline:
    """Runs the six analysis stages against one cohort release."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()

    def prepare(self, raw: pd.DataFrame) -> pd.DataFrame:
        return CohortPreprocessor(self.config).preprocess(raw)

    def extract_factors(self, cohort: pd.DataFrame) -> FactorSolution:
        cfg = self.config
        extractor = FactorExtractor(n_components=cfg.n_components, random_state=cfg.propensity.random_state)
        solution = extractor.fit_transform(cohort, cfg.test_scores)
        return apply_domain_mapping(solution, cfg.domain_map, cfg.sign_flips)

    def estimate_propensity(self, cohort: pd.DataFrame) -> Dict[str, PropensityFit]:
        cfg = self.config
        model = PropensityModel.from_config(cfg.propensity)
        return model.fit(cohort, cfg.exposure_col, cfg.covariates, cfg.categorical_covariates,
                         cfg.base_weight_col)

    def derive_weights(self, cohort: pd.DataFrame, fits: Dict[str, PropensityFit]) -> WeightRegistry:
        cfg = self.config
        deriver = WeightDeriver(cfg.inference.truncation_percentile)
        registry = WeightRegistry()
        base = pd.to_numeric(cohort[cfg.base_weight_col])
        for fit in fits.values():
            registry.register(deriver.derive(fit, cohort[cfg.exposure_col], base))
        return registry

    def run(self, raw: pd.DataFrame) -> AnalysisResults:
        """
        Execute the full analysis.

        Args:
            raw: Cohort table as returned by the loader

        Returns:
            Results of every stage
        """
        cfg = self.config

        logger.info("Stage 1: cohort preparation")
        cohort = self.prepare(raw)

        logger.info("Stage 2: factor extraction")
        factors = self.extract_factors(cohort)
        domains = factors.components
        analysis = cohort.loc[factors.scores.index].join(factors.scores)
        logger.info(f"{len(analysis)} subjects with factor scores enter the weighted analyses "
                    f"({len(factors.excluded)} excluded for incomplete tests)")

        logger.info("Stage 3: propensity model")
        fits = self.estimate_propensity(cohort)
        comparison = compare_stopping_rules(fits)

        logger.info("Stage 4: weight derivation")
        registry = self.derive_weights(cohort, fits)
        selected_key = (cfg.propensity.estimand, cfg.inference.selected_stopping_rule)
        selected = registry.get(*selected_key)
        logger.info(f"Weights carried forward: {selected_key}")

        logger.info("Stage 5: weighted inference")
        adjustment = imbalanced_covariates(fits[cfg.inference.selected_stopping_rule].balance,
                                           cfg.inference.imbalance_threshold)
        categorical = [c for c in adjustment if c in cfg.categorical_covariates]

        weighted_means, contrasts, models = {}, {}, {}
        for variant in WEIGHT_VARIANTS:
            design = SurveyDesign(
                analysis,
                selected.variant(variant).loc[analysis.index],
                cfg.exposure_col,
                n_replicates=cfg.inference.n_replicates,
                random_state=cfg.inference.random_state,
                confidence_level=cfg.inference.confidence_level,
            )
            for domain in domains:
                weighted_means[(domain, variant)] = design.weighted_means(domain)
                contrasts[(domain, variant)] = design.pairwise_contrasts(domain)
                models[(domain, variant, 'unadjusted')] = design.fit_model(domain, label='unadjusted')
                if adjustment:
                    models[(domain, variant, 'adjusted')] = design.fit_model(
                        domain, adjustment, categorical, label='adjusted')

        logger.info("Stage 6: sensitivity analysis")
        analyzer = SensitivityAnalyzer(q=cfg.sensitivity.q, alpha=cfg.sensitivity.alpha)
        sensitivity_weights = selected.weights.loc[analysis.index] if cfg.sensitivity.use_weights else None
        sensitivity = {}
        for domain in domains:
            for treatment in cfg.sensitivity.treatments:
                sensitivity[(domain, treatment)] = analyzer.analyze(
                    analysis,
                    outcome=domain,
                    exposure_col=cfg.exposure_col,
                    treatment=treatment,
                    covariates=cfg.covariates,
                    categorical=cfg.categorical_covariates,
                    benchmark_covariates=cfg.sensitivity.benchmark_covariates,
                    kd=cfg.sensitivity.kd,
                    ky=cfg.sensitivity.ky,
                    weights=sensitivity_weights,
                )

        logger.info("Analysis complete")
        return AnalysisResults(
            cohort=cohort,
            factors=factors,
            propensity_fits=fits,
            stopping_rule_comparison=comparison,
            weights=registry,
            selected_weights=selected_key,
            adjustment_covariates=adjustment,
            weighted_means=weighted_means,
            contrasts=contrasts,
            models=models,
            sensitivity=sensitivity,
        )
