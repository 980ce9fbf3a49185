"""
Covariate balance diagnostics across exposure categories.
"""

import numpy as np
import pandas as pd
from itertools import combinations
from typing import Dict, List, Optional, Tuple
import logging

from ..exceptions import MissingDataError


logger = logging.getLogger(__name__)


INDICATOR_SEP = ":"


def encode_covariates(
    df: pd.DataFrame,
    covariates: List[str],
    categorical: Optional[List[str]] = None
) -> Tuple[pd.DataFrame, Dict[str, str]]:
    """
    Expand categorical covariates into indicators.

    Args:
        df: Cohort table
        covariates: Covariates in the propensity model
        categorical: Covariates to expand (all levels kept, including ``Unmapped``)

    Returns:
        Tuple of (numeric design matrix, column -> source covariate)
    """
    missing_cols = [c for c in covariates if c not in df.columns]
    if missing_cols:
        raise MissingDataError(f"Covariates not found in cohort table: {missing_cols}")

    n_missing = df[covariates].isna().sum()
    n_missing = n_missing[n_missing > 0]
    if len(n_missing):
        raise MissingDataError(f"Missing covariate values: {n_missing.to_dict()}")

    categorical = [c for c in (categorical or []) if c in covariates]
    frame = df[covariates].copy()
    for col in categorical:
        # levels nobody holds would add constant indicators to the criteria
        frame[col] = frame[col].astype('category').cat.remove_unused_categories()
    X = pd.get_dummies(frame, columns=categorical, prefix_sep=INDICATOR_SEP, dtype=float)
    X = X.apply(pd.to_numeric, errors='raise').astype(float)

    sources = {}
    for col in X.columns:
        source = col.split(INDICATOR_SEP, 1)[0] if INDICATOR_SEP in col else col
        sources[col] = source if source in covariates else col
    return X, sources


def _weighted_mean(x: np.ndarray, w: np.ndarray) -> float:
    return float(np.sum(w * x) / np.sum(w))


def _weighted_sd(x: np.ndarray, w: np.ndarray) -> float:
    mean = _weighted_mean(x, w)
    return float(np.sqrt(np.sum(w * (x - mean) ** 2) / np.sum(w)))


def weighted_ks(x_a: np.ndarray, w_a: np.ndarray, x_b: np.ndarray, w_b: np.ndarray) -> float:
    """Two-sample Kolmogorov-Smirnov statistic between weighted empirical distributions."""
    support = np.unique(np.concatenate([x_a, x_b]))

    def ecdf(x, w):
        order = np.argsort(x, kind='stable')
        x_sorted = x[order]
        cum = np.concatenate([[0.0], np.cumsum(w[order])]) / np.sum(w)
        return cum[np.searchsorted(x_sorted, support, side='right')]

    return float(np.max(np.abs(ecdf(x_a, w_a) - ecdf(x_b, w_b))))


def pairwise_balance(
    X: pd.DataFrame,
    categories: pd.Series,
    weights: np.ndarray,
    reference_weights: Optional[np.ndarray] = None,
    sources: Optional[Dict[str, str]] = None
) -> pd.DataFrame:
    """
    Standardized effect size and KS statistic for every covariate and category pair.

    The effect size is the difference in weighted means scaled by the full-sample standard
    deviation under ``reference_weights`` (the sampling weights), so before and after
    comparisons share a denominator.

    Args:
        X: Numeric covariate matrix
        categories: Exposure category per subject
        weights: Weights to evaluate balance under
        reference_weights: Weights defining the standardizing SD (defaults to uniform)
        sources: Column -> source covariate mapping from ``encode_covariates``

    Returns:
        Long table with one row per (covariate, group_a, group_b)
    """
    w = np.asarray(weights, dtype=float)
    ref = np.ones(len(X)) if reference_weights is None else np.asarray(reference_weights, dtype=float)
    cats = pd.Series(categories).astype(str).to_numpy()
    levels = [str(c) for c in pd.Series(categories).cat.categories] \
        if isinstance(pd.Series(categories).dtype, pd.CategoricalDtype) else sorted(set(cats))
    present = [lvl for lvl in levels if np.any(cats == lvl)]
    masks = {lvl: cats == lvl for lvl in present}

    rows = []
    for col in X.columns:
        x = X[col].to_numpy(dtype=float)
        sd = _weighted_sd(x, ref)
        for a, b in combinations(present, 2):
            ma, mb = masks[a], masks[b]
            diff = _weighted_mean(x[ma], w[ma]) - _weighted_mean(x[mb], w[mb])
            rows.append({
                'covariate': col,
                'source': (sources or {}).get(col, col),
                'group_a': a,
                'group_b': b,
                'std_eff_sz': diff / sd if sd > 0 else 0.0,
                'ks': weighted_ks(x[ma], w[ma], x[mb], w[mb]),
            })

    return pd.DataFrame(rows, columns=['covariate', 'source', 'group_a', 'group_b', 'std_eff_sz', 'ks'])


def balance_table(
    X: pd.DataFrame,
    categories: pd.Series,
    base_weights: np.ndarray,
    weights: np.ndarray,
    sources: Optional[Dict[str, str]] = None
) -> pd.DataFrame:
    """
    Balance before (sampling weights) and after (sampling x treatment weights) weighting.

    Returns:
        One row per (covariate, pair) with ``_before`` and ``_after`` statistics
    """
    keys = ['covariate', 'source', 'group_a', 'group_b']
    before = pairwise_balance(X, categories, base_weights, base_weights, sources)
    after = pairwise_balance(X, categories, weights, base_weights, sources)
    table = before.merge(after, on=keys, suffixes=('_before', '_after'))
    table['abs_std_eff_sz_after'] = table['std_eff_sz_after'].abs()
    return table


def summarize_balance(table: pd.DataFrame, suffix: str = "") -> Dict[str, float]:
    """
    Stopping-rule criteria from a balance table.

    Args:
        table: Output of ``pairwise_balance`` (``suffix=""``) or ``balance_table`` (``"_after"``)
        suffix: Column suffix selecting the statistics

    Returns:
        Dictionary with ``es.mean``, ``es.max``, ``ks.mean`` and ``ks.max``
    """
    es = table[f'std_eff_sz{suffix}'].abs()
    ks = table[f'ks{suffix}']
    return {
        'es.mean': float(es.mean()),
        'es.max': float(es.max()),
        'ks.mean': float(ks.mean()),
        'ks.max': float(ks.max()),
    }


def effective_sample_size(weights: np.ndarray) -> float:
    """Kish effective sample size, (sum w)^2 / sum w^2."""
    w = np.asarray(weights, dtype=float)
    denom = float(np.sum(w ** 2))
    if denom <= 0:
        return float('nan')
    return float(np.sum(w) ** 2 / denom)


def ess_by_category(weights: np.ndarray, categories: pd.Series) -> pd.Series:
    """Effective sample size within each exposure category."""
    w = pd.Series(np.asarray(weights, dtype=float), index=pd.Series(categories).index)
    return w.groupby(pd.Series(categories), observed=False).apply(effective_sample_size)


def imbalanced_covariates(
    table: pd.DataFrame,
    threshold: float = 0.10,
    column: str = 'std_eff_sz_after'
) -> List[str]:
    """
    Source covariates whose absolute effect size exceeds ``threshold`` for any pair.

    Indicators of one categorical covariate collapse to the covariate itself, so the
    adjusted model enters the whole variable.
    """
    flagged = table.loc[table[column].abs() > threshold, 'source']
    covariates = list(dict.fromkeys(flagged.tolist()))
    logger.info(f"{len(covariates)} covariates with |effect size| > {threshold} after weighting: {covariates}")
    return covariates
