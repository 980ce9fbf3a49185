"""
Errors raised when a pipeline stage receives data it must not silently repair.
"""


class AnalysisError(ValueError):
    """Base class for all analysis pipeline errors."""
    pass


class MissingDataError(AnalysisError):
    """
    Raised when a stage receives missing values in fields that must be complete.

    Missing data handling is decided once, at ingestion. Downstream stages never
    drop or impute rows on their own.
    """
    pass


class ExposureCategoryError(AnalysisError):
    """Raised when an exposure value falls outside the four defined categories."""
    pass


class DegeneratePropensityError(AnalysisError):
    """Raised when propensity vectors do not sum to 1 or contain 0 or 1."""
    pass


class DomainMappingError(AnalysisError):
    """Raised when a component-to-domain mapping does not cover the components exactly once."""
    pass


class WeightVersionError(AnalysisError):
    """Raised when a weight version is registered twice or requested but absent."""
    pass
