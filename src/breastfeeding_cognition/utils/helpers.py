"""
Utility functions for the cohort analysis.
"""

import pandas as pd
import numpy as np
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional
import json
import pickle


logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Set up logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file to write logs to
    """
    log_level = getattr(logging, level.upper())

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def to_serializable(value: Any) -> Any:
    """Convert numpy and pandas objects into JSON-compatible structures."""
    if isinstance(value, dict):
        return {str(k): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_serializable(v) for v in value]
    if isinstance(value, pd.DataFrame):
        return to_serializable(value.reset_index().to_dict(orient='records'))
    if isinstance(value, pd.Series):
        return to_serializable(value.to_dict())
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return None if np.isnan(value) else float(value)
    if isinstance(value, float) and np.isnan(value):
        return None
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.ndarray):
        return to_serializable(value.tolist())
    return value


def save_results(results: Dict[str, Any], filepath: str) -> None:
    """
    Save analysis results to file.

    Args:
        results: Dictionary containing analysis results
        filepath: Path to save results
    """
    filepath = Path(filepath)

    if filepath.suffix == '.json':
        serializable_results = {}
        for key, value in to_serializable(results).items():
            try:
                json.dumps(value)
                serializable_results[key] = value
            except (TypeError, ValueError):
                serializable_results[key] = str(value)

        with open(filepath, 'w') as f:
            json.dump(serializable_results, f, indent=2)

    elif filepath.suffix == '.pkl':
        with open(filepath, 'wb') as f:
            pickle.dump(results, f)

    else:
        raise ValueError(f"Unsupported file format: {filepath.suffix}")

    logger.info(f"Results saved to {filepath}")


def load_results(filepath: str) -> Dict[str, Any]:
    """
    Load analysis results from file.

    Args:
        filepath: Path to results file

    Returns:
        Dictionary containing analysis results
    """
    filepath = Path(filepath)

    if filepath.suffix == '.json':
        with open(filepath, 'r') as f:
            results = json.load(f)

    elif filepath.suffix == '.pkl':
        with open(filepath, 'rb') as f:
            results = pickle.load(f)

    else:
        raise ValueError(f"Unsupported file format: {filepath.suffix}")

    logger.info(f"Results loaded from {filepath}")
    return results


def calculate_summary_statistics(df: pd.DataFrame, group_col: str = None) -> pd.DataFrame:
    """
    Calculate summary statistics for numeric variables.

    Args:
        df: Dataset
        group_col: Optional column to group by

    Returns:
        DataFrame with summary statistics
    """
    numeric_cols = df.select_dtypes(include=[np.number]).columns.tolist()

    if group_col and group_col in df.columns:
        summary = df.groupby(group_col, observed=False)[numeric_cols].agg(['count', 'mean', 'std', 'min', 'max'])
    else:
        summary = df[numeric_cols].agg(['count', 'mean', 'std', 'min', 'max']).T

    return summary


def validate_data_quality(df: pd.DataFrame, columns: List[str], exposure_col: Optional[str] = None) -> Dict[str, Any]:
    """
    Missingness and distribution checks on the analysis fields.

    Args:
        df: Prepared cohort
        columns: Fields the analysis uses
        exposure_col: Exposure category column

    Returns:
        Dictionary with data quality metrics
    """
    present = [c for c in columns if c in df.columns]
    missing_counts = df[present].isnull().sum()

    quality_metrics = {
        'n_observations': len(df),
        'n_features': len(df.columns),
        'absent_columns': [c for c in columns if c not in df.columns],
        'missing_data': missing_counts[missing_counts > 0].to_dict(),
    }

    if exposure_col and exposure_col in df.columns:
        quality_metrics['exposure_distribution'] = df[exposure_col].value_counts(sort=False).to_dict()

    return quality_metrics


def format_results_table(estimates: Dict[str, Any], title: str = "Exposure Effect Estimates") -> str:
    """
    Format estimates as a table for reporting.

    Args:
        estimates: Dictionary of estimates (objects with coefficient, std_error, ci and p-value)
        title: Title for the table

    Returns:
        Formatted table string
    """
    table_lines = [f"\n{title}", "=" * len(title)]

    headers = ["Contrast", "Coefficient", "Std Error", "95% CI", "P-value", "Significant"]
    table_lines.append(" | ".join(f"{h:>16}" for h in headers))
    table_lines.append("-" * (17 * len(headers) + len(headers) - 1))

    for name, est in estimates.items():
        if hasattr(est, 'coefficient'):
            significance = "Yes" if est.is_significant else "No"
            ci_str = f"[{est.ci_lower:.3f}, {est.ci_upper:.3f}]"

            row = [
                name[:16],
                f"{est.coefficient:.4f}",
                f"{est.std_error:.4f}",
                ci_str,
                f"{est.p_value:.4f}",
                significance
            ]
            table_lines.append(" | ".join(f"{cell:>16}" for cell in row))

    return "\n".join(table_lines)


def ensure_directory(path: str) -> Path:
    """
    Ensure directory exists, create if it doesn't.

    Args:
        path: Directory path

    Returns:
        Path object
    """
    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj
