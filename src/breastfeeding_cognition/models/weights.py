"""
Inverse-probability-of-treatment weights and their versioned registry.
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple
import logging

from ..config import EXPOSURE_LEVELS
from ..exceptions import WeightVersionError
from .balance import effective_sample_size


logger = logging.getLogger(__name__)


WeightKey = Tuple[str, str]


def treatment_weights(
    propensities: np.ndarray,
    codes: np.ndarray,
    base_weights: np.ndarray,
    estimand: str = "ATE",
    treated_code: Optional[int] = None
) -> np.ndarray:
    """
    Combine own-category propensities with sampling weights.

    ATE: base / p(own category). ATT: base for the treated category, base * p(treated) / p(own)
    for everyone else.

    Args:
        propensities: Subjects x categories probability matrix
        codes: Integer category code per subject (column index into ``propensities``)
        base_weights: Sampling weight per subject
        estimand: ``"ATE"`` or ``"ATT"``
        treated_code: Category code of the treated group for ATT

    Returns:
        Unnormalized weights
    """
    p = np.asarray(propensities, dtype=float)
    codes = np.asarray(codes, dtype=int)
    base = np.asarray(base_weights, dtype=float)
    p_own = p[np.arange(len(codes)), codes]

    if estimand == "ATE":
        return base / p_own
    if estimand == "ATT":
        if treated_code is None:
            raise ValueError("ATT weights require a treated category")
        w = base * p[:, treated_code] / p_own
        w[codes == treated_code] = base[codes == treated_code]
        return w
    raise ValueError(f"Unknown estimand {estimand!r}")


def rescale_to_unit_mean(weights: np.ndarray) -> np.ndarray:
    w = np.asarray(weights, dtype=float)
    return w / w.mean()


def truncate_weights(weights: np.ndarray, percentile: float = 99.0) -> Tuple[np.ndarray, float]:
    """
    Clamp weights above a percentile of their own distribution.

    The truncated vector is not renormalized, so every weight is at most its untruncated
    value and weights below the threshold are unchanged.

    Returns:
        Tuple of (truncated weights, threshold)
    """
    w = np.asarray(weights, dtype=float)
    threshold = float(np.percentile(w, percentile))
    return np.minimum(w, threshold), threshold


@dataclass(frozen=True)
class WeightSet:
    """One candidate weighting, identified by its estimand and stopping rule."""
    estimand: str
    stopping_rule: str
    weights: pd.Series
    truncated: pd.Series
    truncation_threshold: float
    truncation_percentile: float

    @property
    def key(self) -> WeightKey:
        return (self.estimand, self.stopping_rule)

    def variant(self, name: str) -> pd.Series:
        """Weights by variant name, ``"untruncated"`` or ``"truncated"``."""
        if name == "untruncated":
            return self.weights
        if name == "truncated":
            return self.truncated
        raise KeyError(f"Unknown weight variant {name!r}")

    def summary(self) -> Dict[str, float]:
        return {
            'mean': float(self.weights.mean()),
            'min': float(self.weights.min()),
            'max': float(self.weights.max()),
            'truncation_threshold': self.truncation_threshold,
            'n_truncated': int((self.weights > self.truncation_threshold).sum()),
            'ess': effective_sample_size(self.weights.to_numpy()),
            'ess_truncated': effective_sample_size(self.truncated.to_numpy()),
        }


class WeightDeriver:
    """Turns fitted propensities into normalized and truncated weight sets."""

    def __init__(self, truncation_percentile: float = 99.0):
        self.truncation_percentile = truncation_percentile

    def derive(self, fit, categories: pd.Series, base_weights: pd.Series) -> WeightSet:
        """
        Derive the weight set for one propensity fit.

        Args:
            fit: A ``PropensityFit``
            categories: Exposure category per subject, aligned with the fit's propensities
            base_weights: Sampling weight per subject

        Returns:
            Weight set with unit-mean and truncated variants
        """
        propensities = fit.propensities.loc[categories.index, EXPOSURE_LEVELS]
        codes = pd.Series(categories).cat.codes.to_numpy()
        treated_code = EXPOSURE_LEVELS.index(fit.treated_category) if fit.treated_category else None

        raw = treatment_weights(propensities.to_numpy(), codes, base_weights.loc[categories.index].to_numpy(),
                                fit.estimand, treated_code)
        weights = rescale_to_unit_mean(raw)
        truncated, threshold = truncate_weights(weights, self.truncation_percentile)

        weight_set = WeightSet(
            estimand=fit.estimand,
            stopping_rule=fit.stopping_rule,
            weights=pd.Series(weights, index=categories.index, name='weight'),
            truncated=pd.Series(truncated, index=categories.index, name='weight_truncated'),
            truncation_threshold=threshold,
            truncation_percentile=self.truncation_percentile,
        )
        summary = weight_set.summary()
        logger.info(f"Weights {weight_set.key}: max={summary['max']:.2f}, "
                    f"{summary['n_truncated']} truncated at {threshold:.2f}, ESS={summary['ess']:.1f}")
        return weight_set


class WeightRegistry:
    """
    Every candidate weighting of a run, keyed by (estimand, stopping rule).

    Entries are written once. Choosing a different stopping rule means reading a different
    key, never overwriting one.
    """

    def __init__(self):
        self._weights: Dict[WeightKey, WeightSet] = {}

    def register(self, weight_set: WeightSet) -> None:
        if weight_set.key in self._weights:
            raise WeightVersionError(f"Weights for {weight_set.key} are already registered")
        self._weights[weight_set.key] = weight_set

    def get(self, estimand: str, stopping_rule: str) -> WeightSet:
        key = (estimand, stopping_rule)
        if key not in self._weights:
            raise WeightVersionError(f"No weights registered for {key}; available: {self.keys()}")
        return self._weights[key]

    def keys(self) -> List[WeightKey]:
        return list(self._weights)

    def comparison(self) -> pd.DataFrame:
        """Summary statistics of every registered weighting side by side."""
        return pd.DataFrame({f"{e}/{r}": ws.summary() for (e, r), ws in self._weights.items()}).T

    def __contains__(self, key: WeightKey) -> bool:
        return key in self._weights

    def __iter__(self) -> Iterator[WeightSet]:
        return iter(self._weights.values())

    def __len__(self) -> int:
        return len(self._weights)
