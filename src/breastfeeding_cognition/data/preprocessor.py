"""
Cohort preparation: exposure categorisation, covariate recoding and test consolidation.
"""

import pandas as pd
import numpy as np
from typing import Dict, List, Optional
import logging

from ..config import AnalysisConfig, EXPOSURE_BREAKS, EXPOSURE_LEVELS
from ..exceptions import ExposureCategoryError, MissingDataError


logger = logging.getLogger(__name__)


UNMAPPED = "Unmapped"


def categorize_exposure(duration: pd.Series) -> pd.Series:
    """
    Bin breastfeeding duration (months) into the four ordered exposure categories.

    Intervals are left-closed and right-open over [0, inf): 0 -> None, [1, 7) -> OnetoSix,
    [7, 13) -> SeventoTwelve, [13, inf) -> MorethanTwelve. Durations in (0, 1) fall into
    None as well, since the first interval is [0, 1).

    Args:
        duration: Exposure duration in months

    Returns:
        Ordered categorical series aligned with ``duration``
    """
    values = pd.to_numeric(duration, errors='coerce')

    if values.isna().any():
        bad = duration[values.isna()].index.tolist()
        raise ExposureCategoryError(
            f"Exposure duration missing or non-numeric for {len(bad)} subjects: {bad[:10]}"
        )
    if (values < 0).any():
        bad = values[values < 0].index.tolist()
        raise ExposureCategoryError(f"Negative exposure duration for {len(bad)} subjects: {bad[:10]}")

    categories = pd.cut(values, bins=EXPOSURE_BREAKS, labels=EXPOSURE_LEVELS, right=False)
    return categories.astype(pd.CategoricalDtype(EXPOSURE_LEVELS, ordered=True))


def validate_exposure(categories: pd.Series) -> pd.Series:
    """
    Check that an exposure column holds only the four defined levels, with no missing values.

    Returns:
        The exposure as an ordered categorical with the canonical level order
    """
    observed = set(pd.Series(categories).dropna().astype(str).unique())
    unknown = observed - set(EXPOSURE_LEVELS)
    if unknown:
        raise ExposureCategoryError(f"Exposure categories outside the defined levels: {sorted(unknown)}")
    if pd.Series(categories).isna().any():
        raise ExposureCategoryError("Exposure category missing for some subjects")
    return pd.Series(categories).astype(str).astype(pd.CategoricalDtype(EXPOSURE_LEVELS, ordered=True))


def recode_covariate(series: pd.Series, mapping: Dict[str, str]) -> pd.Series:
    """
    Recode raw category labels.

    Labels absent from ``mapping`` become the observed level ``Unmapped`` (for example
    "Refused"), so the propensity model treats them as a category of their own. Values
    that are genuinely missing stay missing.

    Args:
        series: Raw labels
        mapping: Raw label -> analysis label

    Returns:
        Recoded labels as an unordered categorical
    """
    missing = series.isna()
    recoded = series.astype(object).map(lambda v: mapping.get(v, UNMAPPED) if not pd.isna(v) else v)
    recoded = recoded.where(~missing, np.nan)

    levels = list(dict.fromkeys(mapping.values()))
    if (recoded == UNMAPPED).any():
        n_unmapped = int((recoded == UNMAPPED).sum())
        logger.info(f"{series.name}: {n_unmapped} values kept as '{UNMAPPED}'")
        levels.append(UNMAPPED)

    return pd.Series(pd.Categorical(recoded, categories=levels), index=series.index, name=series.name)


def consolidate_trials(df: pd.DataFrame, trial_columns: List[str], name: str) -> pd.Series:
    """
    Average repeated-trial scores into a single measure.

    A subject missing any trial gets a missing mean; partial averages would make the
    consolidated score incomparable across subjects.
    """
    missing_cols = [c for c in trial_columns if c not in df.columns]
    if missing_cols:
        raise MissingDataError(f"Repeated-trial columns not found: {missing_cols}")

    trials = df[trial_columns].apply(pd.to_numeric, errors='coerce')
    return trials.mean(axis=1, skipna=False).rename(name)


class CohortPreprocessor:
    """Prepares raw cohort records for factor extraction and propensity weighting."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        """
        Initialize the preprocessor.

        Args:
            config: Analysis configuration (defaults to the study configuration)
        """
        self.config = config or AnalysisConfig()

    def preprocess(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Add the exposure category, recoded covariates and consolidated trial score.

        No rows are dropped; row filtering is an upstream decision.

        Args:
            df: Cohort table as returned by the loader

        Returns:
            Copy of ``df`` with the derived columns
        """
        cfg = self.config
        logger.info("Starting cohort preparation")
        df_processed = df.copy()

        if cfg.duration_col not in df_processed.columns:
            raise MissingDataError(f"Exposure duration column '{cfg.duration_col}' not found")
        df_processed[cfg.exposure_col] = categorize_exposure(df_processed[cfg.duration_col])

        for col, mapping in cfg.recodes.items():
            if col not in df_processed.columns:
                logger.warning(f"Recode configured for absent column '{col}'")
                continue
            df_processed[col] = recode_covariate(df_processed[col], mapping)

        for col in cfg.categorical_covariates:
            if col in df_processed.columns and col not in cfg.recodes:
                df_processed[col] = df_processed[col].astype('category')

        if cfg.repeated_trials:
            df_processed[cfg.trials_mean_col] = consolidate_trials(
                df_processed, cfg.repeated_trials, cfg.trials_mean_col
            )

        counts = df_processed[cfg.exposure_col].value_counts().reindex(EXPOSURE_LEVELS)
        logger.info(f"Exposure categories: {counts.to_dict()}")
        logger.info(f"Cohort preparation complete. Shape: {df_processed.shape}")
        return df_processed

    def get_feature_groups(self, df: Optional[pd.DataFrame] = None) -> Dict[str, List[str]]:
        """
        Configured covariate groups, restricted to columns present in ``df`` if given.

        Returns:
            Dictionary mapping group names to covariate lists
        """
        groups = {name: list(cols) for name, cols in self.config.feature_groups.items()}
        if df is not None:
            groups = {name: [c for c in cols if c in df.columns] for name, cols in groups.items()}
        return groups
