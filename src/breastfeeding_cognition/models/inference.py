"""
Survey-weighted inference with bootstrap replicate weights.
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, List, Optional, Tuple
import logging

import statsmodels.api as sm
from scipy import stats

from ..config import EXPOSURE_LEVELS
from ..data.preprocessor import validate_exposure
from ..exceptions import AnalysisError, ExposureCategoryError, MissingDataError


logger = logging.getLogger(__name__)


@dataclass
class CausalEstimate:
    """Container for an effect estimate with its replicate-based uncertainty."""
    coefficient: float
    std_error: float
    ci_lower: float
    ci_upper: float
    p_value: float
    method: str

    @property
    def is_significant(self) -> bool:
        """Significance at the 5% level."""
        return self.p_value < 0.05

    def to_dict(self) -> Dict[str, float]:
        return {
            'coefficient': self.coefficient,
            'std_error': self.std_error,
            'ci_lower': self.ci_lower,
            'ci_upper': self.ci_upper,
            'p_value': self.p_value,
            'significant': self.is_significant,
        }


def wald_estimate(coefficient: float, std_error: float, method: str, confidence_level: float = 0.95) -> CausalEstimate:
    """Wald interval and two-sided normal p-value."""
    z = stats.norm.ppf(1 - (1 - confidence_level) / 2)
    if std_error > 0:
        p_value = float(2 * stats.norm.sf(abs(coefficient / std_error)))
    else:
        p_value = float('nan')
    return CausalEstimate(
        coefficient=float(coefficient),
        std_error=float(std_error),
        ci_lower=float(coefficient - z * std_error),
        ci_upper=float(coefficient + z * std_error),
        p_value=p_value,
        method=method,
    )


def treatment_term(exposure_col: str, level: str) -> str:
    """Design-matrix column name of an exposure indicator."""
    return f"{exposure_col}[T.{level}]"


def build_design(
    df: pd.DataFrame,
    exposure_col: str,
    covariates: Optional[List[str]] = None,
    categorical: Optional[List[str]] = None,
    reference: str = "None"
) -> pd.DataFrame:
    """
    Design matrix with an intercept, exposure indicators against ``reference`` and covariates.

    Categorical covariates enter as indicators with the first observed level dropped.
    Indicator columns are named ``<covariate>:<level>``.
    """
    if reference not in EXPOSURE_LEVELS:
        raise ExposureCategoryError(f"Reference category {reference!r} is not one of {EXPOSURE_LEVELS}")
    covariates = list(covariates or [])
    categorical = [c for c in (categorical or []) if c in covariates]

    missing_cols = [c for c in covariates if c not in df.columns]
    if missing_cols:
        raise MissingDataError(f"Covariates not found: {missing_cols}")
    n_missing = df[covariates].isna().sum()
    n_missing = n_missing[n_missing > 0]
    if len(n_missing):
        raise MissingDataError(f"Missing covariate values: {n_missing.to_dict()}")

    exposure = validate_exposure(df[exposure_col])
    design = pd.DataFrame({'Intercept': 1.0}, index=df.index)
    for level in EXPOSURE_LEVELS:
        if level != reference:
            design[treatment_term(exposure_col, level)] = (exposure == level).astype(float)

    if covariates:
        frame = df[covariates].copy()
        for col in categorical:
            frame[col] = frame[col].astype('category').cat.remove_unused_categories()
        dummies = pd.get_dummies(frame, columns=categorical, prefix_sep=":", drop_first=True, dtype=float)
        design = pd.concat([design, dummies.astype(float)], axis=1)

    return design


@dataclass
class WeightedModelResult:
    """A weighted linear model of one outcome on exposure category."""
    outcome: str
    label: str
    covariates: List[str]
    params: pd.Series
    std_errors: pd.Series
    estimates: Dict[str, CausalEstimate]
    n_obs: int
    n_failed_replicates: int = 0

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({level: est.to_dict() for level, est in self.estimates.items()}).T


@dataclass
class WeightedMeans:
    """Weighted mean of an outcome per exposure category and the replicate covariance."""
    outcome: str
    means: pd.Series
    covariance: pd.DataFrame
    replicates: pd.DataFrame = field(repr=False)

    @property
    def std_errors(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.covariance)), index=self.means.index)


class SurveyDesign:
    """
    Subjects, their analysis weights and bootstrap replicate weights.

    Replicate r reweights subject i by w_i times the number of times i is drawn when
    resampling n subjects with replacement. Variances are the spread of replicate
    estimates around their mean with an R - 1 divisor.
    """

    def __init__(
        self,
        data: pd.DataFrame,
        weights: pd.Series,
        exposure_col: str,
        n_replicates: int = 1000,
        random_state: int = 42,
        confidence_level: float = 0.95
    ):
        """
        Args:
            data: Analysis table (outcomes, exposure, covariates)
            weights: Analysis weight per subject, indexed like ``data``
            exposure_col: Exposure category column
            n_replicates: Number of bootstrap replicates
            random_state: Seed of the resampling
            confidence_level: Level of reported Wald intervals
        """
        missing_ids = weights.index.difference(data.index)
        if len(missing_ids):
            raise MissingDataError(f"{len(missing_ids)} weighted subjects are absent from the analysis table")
        if weights.isna().any() or (weights <= 0).any():
            raise ValueError("Analysis weights must be positive and non-missing")

        self.data = data.loc[weights.index]
        self.weights = weights.astype(float)
        self.exposure_col = exposure_col
        self.exposure = validate_exposure(self.data[exposure_col])
        counts = self.exposure.value_counts().reindex(EXPOSURE_LEVELS, fill_value=0)
        empty = counts[counts == 0].index.tolist()
        if empty:
            raise ExposureCategoryError(f"No weighted subjects in exposure categories {empty}")
        self.n_replicates = n_replicates
        self.random_state = random_state
        self.confidence_level = confidence_level

        rng = np.random.default_rng(random_state)
        n = len(self.weights)
        counts = rng.multinomial(n, np.full(n, 1.0 / n), size=n_replicates)
        self.replicate_weights = counts.T * self.weights.to_numpy()[:, None]

        logger.info(f"Survey design: {n} subjects, {n_replicates} bootstrap replicates")

    def _outcome(self, outcome: str) -> np.ndarray:
        y = pd.to_numeric(self.data[outcome], errors='coerce')
        if y.isna().any():
            raise MissingDataError(f"Outcome '{outcome}' missing for {int(y.isna().sum())} subjects in the design")
        return y.to_numpy(dtype=float)

    def _variance(self, replicates: np.ndarray) -> np.ndarray:
        return np.var(replicates, axis=0, ddof=1)

    def weighted_means(self, outcome: str) -> WeightedMeans:
        """
        Weighted mean of ``outcome`` per exposure category.

        Returns:
            Means and the replicate covariance matrix across categories
        """
        y = self._outcome(outcome)
        w = self.weights.to_numpy()
        means, replicates = {}, {}
        for level in EXPOSURE_LEVELS:
            mask = (self.exposure == level).to_numpy(dtype=float)
            means[level] = float(np.sum(w * y * mask) / np.sum(w * mask))
            with np.errstate(invalid='ignore', divide='ignore'):
                replicates[level] = ((y * mask) @ self.replicate_weights) / (mask @ self.replicate_weights)

        replicates = pd.DataFrame(replicates)
        valid = replicates.notna().all(axis=1)
        if not valid.all():
            logger.warning(f"{int((~valid).sum())} replicates drew no subjects from some category and are ignored")
        replicates = replicates[valid]

        covariance = pd.DataFrame(np.cov(replicates.to_numpy(), rowvar=False, ddof=1),
                                  index=EXPOSURE_LEVELS, columns=EXPOSURE_LEVELS)
        return WeightedMeans(outcome=outcome, means=pd.Series(means), covariance=covariance,
                             replicates=replicates)

    def contrast(self, outcome: str, a: str, b: str, means: Optional[WeightedMeans] = None) -> CausalEstimate:
        """Difference in weighted means, category ``a`` minus category ``b``."""
        means = means or self.weighted_means(outcome)
        estimate = means.means[a] - means.means[b]
        replicate_diffs = means.replicates[a] - means.replicates[b]
        std_error = float(np.sqrt(self._variance(replicate_diffs.to_numpy()[:, None])[0]))
        return wald_estimate(estimate, std_error, f"{a} - {b}", self.confidence_level)

    def pairwise_contrasts(self, outcome: str) -> pd.DataFrame:
        """
        All six pairwise differences between exposure categories.

        Each row is the higher exposure category minus the lower one.
        """
        means = self.weighted_means(outcome)
        rows = []
        for lower, higher in combinations(EXPOSURE_LEVELS, 2):
            est = self.contrast(outcome, higher, lower, means)
            row = {'outcome': outcome, 'group_a': higher, 'group_b': lower}
            row.update(est.to_dict())
            rows.append(row)
        return pd.DataFrame(rows)

    def fit_model(
        self,
        outcome: str,
        covariates: Optional[List[str]] = None,
        categorical: Optional[List[str]] = None,
        reference: str = "None",
        label: Optional[str] = None
    ) -> WeightedModelResult:
        """
        Weighted least squares of ``outcome`` on exposure category, optionally adjusted.

        Point estimates come from statsmodels WLS with the analysis weights; standard errors
        from refitting under every replicate weight.

        Args:
            outcome: Outcome column (a factor score)
            covariates: Adjustment covariates
            categorical: Covariates to enter as indicators
            reference: Reference exposure category
            label: Name of the model in reports

        Returns:
            Coefficients, replicate SEs and Wald intervals for every non-reference category
        """
        covariates = list(covariates or [])
        label = label or ("adjusted" if covariates else "unadjusted")
        y = self._outcome(outcome)
        X = build_design(self.data, self.exposure_col, covariates, categorical, reference)

        result = sm.WLS(y, X, weights=self.weights.to_numpy()).fit()
        params = result.params

        Xv = X.to_numpy(dtype=float)
        replicate_params = []
        n_failed = 0
        for r in range(self.n_replicates):
            sw = np.sqrt(self.replicate_weights[:, r])
            coef, _, rank, _ = np.linalg.lstsq(Xv * sw[:, None], y * sw, rcond=None)
            if rank < Xv.shape[1]:
                n_failed += 1
                continue
            replicate_params.append(coef)
        if not replicate_params:
            raise AnalysisError(f"{outcome}/{label}: every bootstrap replicate gave a rank-deficient design")
        if n_failed:
            logger.warning(f"{outcome}/{label}: {n_failed} rank-deficient replicates ignored")

        replicate_params = np.asarray(replicate_params)
        std_errors = pd.Series(np.sqrt(self._variance(replicate_params)), index=X.columns)

        estimates = {}
        for level in EXPOSURE_LEVELS:
            if level == reference:
                continue
            term = treatment_term(self.exposure_col, level)
            estimates[level] = wald_estimate(params[term], std_errors[term], f"{level} vs {reference}",
                                             self.confidence_level)

        logger.info(f"{outcome}/{label}: " + ", ".join(
            f"{lvl}={est.coefficient:.3f} (SE {est.std_error:.3f})" for lvl, est in estimates.items()))

        return WeightedModelResult(
            outcome=outcome,
            label=label,
            covariates=covariates,
            params=params,
            std_errors=std_errors,
            estimates=estimates,
            n_obs=len(y),
            n_failed_replicates=n_failed,
        )
