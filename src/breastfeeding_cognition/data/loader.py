"""
Data loading module for the cohort survey release.
"""

import pandas as pd
from pathlib import Path
from typing import Any, List, Optional, Union
import logging

from ..exceptions import MissingDataError


logger = logging.getLogger(__name__)


class CohortDataLoader:
    """Loads the persisted cohort table and resolves missingness sentinels once."""

    def __init__(
        self,
        filepath: Union[str, Path],
        id_col: str = "child_id",
        missing_values: Optional[List[Any]] = None
    ):
        """
        Initialize the data loader.

        Args:
            filepath: Path to the cohort table (.csv, .parquet or .dta)
            id_col: Subject identifier column, unique per child
            missing_values: Sentinel codes that denote a missing answer in the release
        """
        self.filepath = Path(filepath)
        self.id_col = id_col
        self.missing_values = list(missing_values) if missing_values is not None else [-9, "-9", "Missing"]
        self._raw_data = None

    def _read(self) -> pd.DataFrame:
        suffix = self.filepath.suffix.lower()
        if suffix == '.csv':
            # only blanks and the release's own sentinels count as missing; "NA" or "None" are labels
            # ids are never sentinels, so a child numbered -9 keeps its id
            sentinels = [str(v) for v in self.missing_values] + [""]
            columns = pd.read_csv(self.filepath, nrows=0).columns
            na_values = {col: [""] if col == self.id_col else sentinels for col in columns}
            return pd.read_csv(self.filepath, na_values=na_values, keep_default_na=False)
        if suffix == '.parquet':
            return pd.read_parquet(self.filepath)
        if suffix == '.dta':
            return pd.read_stata(self.filepath, convert_categoricals=True)
        raise ValueError(f"Unsupported file format: {suffix}")

    def resolve_missing(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Replace sentinel codes with explicit missing values.

        This is the only place in the pipeline where a raw value becomes missing.
        Labels such as "Refused" or "Don't know" are answers, not sentinels, and are
        kept as observed values.

        Args:
            df: Raw cohort table

        Returns:
            Table with sentinel codes replaced by NaN
        """
        df = df.copy()
        for col in df.columns:
            if col == self.id_col:
                continue
            mask = df[col].isin(self.missing_values)
            if mask.any():
                df[col] = df[col].mask(mask)
        return df

    def load_data(self) -> pd.DataFrame:
        """
        Load the cohort table.

        Returns:
            One row per subject, indexed by the subject identifier
        """
        logger.info(f"Loading cohort table from {self.filepath}")

        df = self.resolve_missing(self._read())

        if self.id_col not in df.columns:
            raise MissingDataError(f"Identifier column '{self.id_col}' not found in cohort table")
        if df[self.id_col].isna().any():
            raise MissingDataError(f"Identifier column '{self.id_col}' contains missing values")

        duplicated = df[self.id_col].duplicated(keep=False)
        if duplicated.any():
            n_dup = df.loc[duplicated, self.id_col].nunique()
            raise ValueError(f"Cohort table has {n_dup} subjects with more than one record")

        df = df.set_index(self.id_col, drop=False)
        df.index.name = None

        self._raw_data = df
        logger.info(f"Loaded dataset with {len(df)} subjects and {len(df.columns)} fields")

        return df

    def describe_dataset(self) -> None:
        """Print dataset description and missingness summary."""
        if self._raw_data is None:
            logger.error("No data loaded. Call load_data() first.")
            return

        print("Dataset Overview:")
        print("=" * 50)
        print(f"Shape: {self._raw_data.shape}")
        print(f"Subjects: {self._raw_data[self.id_col].nunique()}")

        print("\nMissing data summary:")
        missing_pct = self._raw_data.isnull().mean() * 100

        for col in self._raw_data.columns:
            if missing_pct[col] > 0:
                print(f"  {col}: {missing_pct[col]:.1f}%")
