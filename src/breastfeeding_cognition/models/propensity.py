"""
Boosted multinomial propensity model tuned against covariate balance stopping rules.
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

from xgboost import XGBClassifier

from ..config import EXPOSURE_LEVELS, STOPPING_RULES, PropensityConfig
from ..data.preprocessor import validate_exposure
from ..exceptions import DegeneratePropensityError, ExposureCategoryError, MissingDataError
from .balance import (
    balance_table, encode_covariates, ess_by_category, pairwise_balance, summarize_balance
)
from .weights import treatment_weights


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PropensityFit:
    """Propensities and balance diagnostics at the iteration selected by one stopping rule."""
    stopping_rule: str
    estimand: str
    treated_category: Optional[str]
    best_iteration: int
    criterion: float
    trace: pd.Series
    propensities: pd.DataFrame
    balance: pd.DataFrame
    ess: pd.Series
    n_extreme: int
    at_final_iteration: bool

    def summary(self) -> Dict[str, float]:
        """Criteria before and after weighting plus effective sample sizes."""
        before = summarize_balance(self.balance, suffix='_before')
        after = summarize_balance(self.balance, suffix='_after')
        row = {'best_iteration': self.best_iteration}
        row.update({f'{k}_before': v for k, v in before.items()})
        row.update({f'{k}_after': v for k, v in after.items()})
        row.update({f'ess_{k}': v for k, v in self.ess.items()})
        row['n_extreme'] = self.n_extreme
        row['at_final_iteration'] = self.at_final_iteration
        return row


def validate_propensities(propensities: np.ndarray, tol: float = 1e-5) -> None:
    """
    Fail if any propensity vector does not sum to 1 or has an entry outside (0, 1).

    Propensities are never clipped; a degenerate estimate stops the run.
    """
    p = np.asarray(propensities, dtype=float)
    row_sums = p.sum(axis=1)
    bad_sum = np.abs(row_sums - 1.0) > tol
    if bad_sum.any():
        raise DegeneratePropensityError(
            f"{int(bad_sum.sum())} propensity vectors do not sum to 1 (worst {row_sums[bad_sum][0]:.6f})"
        )
    outside = (p <= 0.0) | (p >= 1.0)
    if outside.any():
        rows = np.unique(np.where(outside)[0])
        raise DegeneratePropensityError(f"{len(rows)} subjects have propensities of exactly 0 or 1")


class PropensityModel:
    """
    Multinomial propensity scores from gradient-boosted trees.

    The ensemble is grown once to ``n_trees`` rounds. Balance is evaluated at every
    ``checkpoint_step`` rounds, and each stopping rule keeps the round minimizing its own
    criterion. All rules are returned; choosing between them is left to the analyst.
    """

    def __init__(
        self,
        n_trees: int = 10000,
        interaction_depth: int = 3,
        shrinkage: float = 0.01,
        bag_fraction: float = 0.5,
        stopping_rules: Optional[List[str]] = None,
        estimand: str = "ATE",
        treated_category: Optional[str] = None,
        checkpoint_step: int = 100,
        extreme_threshold: float = 0.001,
        random_state: int = 42
    ):
        """
        Args:
            n_trees: Boosting rounds
            interaction_depth: Maximum tree depth
            shrinkage: Learning rate
            bag_fraction: Subsample fraction per round
            stopping_rules: Subset of ``es.mean``, ``es.max``, ``ks.mean``, ``ks.max``
            estimand: ``"ATE"`` or ``"ATT"``
            treated_category: Exposure category treated as the target population for ATT
            checkpoint_step: Rounds between balance evaluations
            extreme_threshold: Propensities below this are reported as extreme
            random_state: Random seed
        """
        self.stopping_rules = list(stopping_rules or STOPPING_RULES)
        unknown = [r for r in self.stopping_rules if r not in STOPPING_RULES]
        if unknown:
            raise ValueError(f"Unknown stopping rules: {unknown}")
        if estimand not in ("ATE", "ATT"):
            raise ValueError(f"Unknown estimand {estimand!r}")
        if estimand == "ATT" and treated_category not in EXPOSURE_LEVELS:
            raise ExposureCategoryError(f"ATT requires a treated category among {EXPOSURE_LEVELS}")

        self.n_trees = n_trees
        self.interaction_depth = interaction_depth
        self.shrinkage = shrinkage
        self.bag_fraction = bag_fraction
        self.estimand = estimand
        self.treated_category = treated_category if estimand == "ATT" else None
        self.checkpoint_step = checkpoint_step
        self.extreme_threshold = extreme_threshold
        self.random_state = random_state
        self.model = None
        self.fits = {}

    @classmethod
    def from_config(cls, config: PropensityConfig) -> "PropensityModel":
        return cls(
            n_trees=config.n_trees,
            interaction_depth=config.interaction_depth,
            shrinkage=config.shrinkage,
            bag_fraction=config.bag_fraction,
            stopping_rules=config.stopping_rules,
            estimand=config.estimand,
            treated_category=config.treated_category,
            checkpoint_step=config.checkpoint_step,
            extreme_threshold=config.extreme_threshold,
            random_state=config.random_state,
        )

    def _build_model(self) -> XGBClassifier:
        return XGBClassifier(
            n_estimators=self.n_trees,
            max_depth=self.interaction_depth,
            learning_rate=self.shrinkage,
            subsample=self.bag_fraction,
            objective="multi:softprob",
            eval_metric="mlogloss",
            tree_method="hist",
            random_state=self.random_state,
            n_jobs=1,
        )

    def _checkpoints(self) -> List[int]:
        step = max(1, min(self.checkpoint_step, self.n_trees))
        checkpoints = list(range(step, self.n_trees + 1, step))
        if checkpoints[-1] != self.n_trees:
            checkpoints.append(self.n_trees)
        return checkpoints

    def _predict(self, X: pd.DataFrame, iteration: int) -> np.ndarray:
        return self.model.predict_proba(X, iteration_range=(0, iteration)).astype(float)

    def fit(
        self,
        df: pd.DataFrame,
        exposure_col: str,
        covariates: List[str],
        categorical: Optional[List[str]] = None,
        base_weight_col: Optional[str] = None
    ) -> Dict[str, PropensityFit]:
        """
        Fit the ensemble and select an iteration per stopping rule.

        Args:
            df: Prepared cohort
            exposure_col: Four-level exposure category column
            covariates: Explicit covariate list
            categorical: Covariates to expand into indicators
            base_weight_col: Sampling weight column (uniform weights if None)

        Returns:
            Dictionary mapping stopping rule to its fit
        """
        categories = validate_exposure(df[exposure_col])
        counts = categories.value_counts().reindex(EXPOSURE_LEVELS)
        empty = counts[counts == 0].index.tolist()
        if empty:
            raise ExposureCategoryError(f"No subjects in exposure categories {empty}")
        codes = categories.cat.codes.to_numpy()

        X, sources = encode_covariates(df, covariates, categorical)

        if base_weight_col is None:
            base = np.ones(len(df))
        else:
            base_series = pd.to_numeric(df[base_weight_col], errors='coerce')
            if base_series.isna().any():
                raise MissingDataError(f"Sampling weight missing for {int(base_series.isna().sum())} subjects")
            if (base_series <= 0).any():
                raise ValueError("Sampling weights must be positive")
            base = base_series.to_numpy(dtype=float)

        treated_code = EXPOSURE_LEVELS.index(self.treated_category) if self.treated_category else None

        logger.info(f"Fitting boosted propensity model: {self.n_trees} trees, depth {self.interaction_depth}, "
                    f"shrinkage {self.shrinkage}, {X.shape[1]} covariate columns, estimand {self.estimand}")
        self.model = self._build_model()
        self.model.fit(X, codes, sample_weight=base)

        checkpoints = self._checkpoints()
        traces = {rule: {} for rule in self.stopping_rules}
        for iteration in checkpoints:
            p = self._predict(X, iteration)
            w = treatment_weights(p, codes, base, self.estimand, treated_code)
            criteria = summarize_balance(pairwise_balance(X, categories, w, base, sources))
            for rule in self.stopping_rules:
                traces[rule][iteration] = criteria[rule]

        fits = {}
        for rule in self.stopping_rules:
            trace = pd.Series(traces[rule], name=rule)
            best = int(trace.idxmin())
            p = self._predict(X, best)
            validate_propensities(p)

            n_extreme = int((p < self.extreme_threshold).any(axis=1).sum())
            if n_extreme:
                logger.warning(f"[{rule}] {n_extreme} subjects have a propensity below {self.extreme_threshold}")
            at_final = best == checkpoints[-1]
            if at_final:
                logger.warning(f"[{rule}] balance still improving at the final iteration ({best}); "
                               f"the ensemble may need more trees")

            w = treatment_weights(p, codes, base, self.estimand, treated_code)
            fits[rule] = PropensityFit(
                stopping_rule=rule,
                estimand=self.estimand,
                treated_category=self.treated_category,
                best_iteration=best,
                criterion=float(trace[best]),
                trace=trace,
                propensities=pd.DataFrame(p, index=df.index, columns=EXPOSURE_LEVELS),
                balance=balance_table(X, categories, base, w, sources),
                ess=ess_by_category(w, categories),
                n_extreme=n_extreme,
                at_final_iteration=at_final,
            )
            logger.info(f"[{rule}] best iteration {best}, criterion {trace[best]:.4f}")

        self.fits = fits
        return fits


def compare_stopping_rules(fits: Dict[str, PropensityFit]) -> pd.DataFrame:
    """
    Diagnostics of every stopping rule side by side.

    Selecting a rule trades residual imbalance against effective sample size and is left
    to the analyst.
    """
    return pd.DataFrame({rule: fit.summary() for rule, fit in fits.items()}).T
