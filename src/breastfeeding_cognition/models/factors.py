"""
Factor extraction: rotated principal components of the cognitive test battery.
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple
import logging

from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler
from statsmodels.multivariate.factor_rotation import rotate_factors

from ..exceptions import DomainMappingError, MissingDataError


logger = logging.getLogger(__name__)


def varimax(
    loadings: np.ndarray,
    normalize: bool = True,
    max_iter: int = 1000,
    tol: float = 1e-5
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Varimax rotation of a loading matrix.

    The rotation itself is statsmodels' gradient projection varimax; this wrapper adds
    Kaiser normalisation, which statsmodels leaves to the caller.

    Args:
        loadings: Unrotated loadings (variables x components)
        normalize: Apply Kaiser normalisation (rows scaled to unit communality while rotating)
        max_iter: Maximum number of gradient projection iterations
        tol: Convergence tolerance on the projected gradient

    Returns:
        Tuple of (rotated loadings, orthogonal rotation matrix)
    """
    L = np.asarray(loadings, dtype=float)
    k = L.shape[1]
    if k < 2:
        return L.copy(), np.eye(k)

    h = np.ones(L.shape[0])
    if normalize:
        h = np.sqrt(np.sum(L ** 2, axis=1))
        h[h == 0] = 1.0

    _, rotation = rotate_factors(L / h[:, None], 'varimax', max_tries=max_iter, tol=tol)
    return L @ rotation, rotation


@dataclass(frozen=True)
class FactorSolution:
    """Frozen loadings and the scores they produce."""
    loadings: pd.DataFrame
    scores: pd.DataFrame
    score_weights: pd.DataFrame
    eigenvalues: pd.Series
    variance_explained: pd.Series
    excluded: pd.Index
    center: pd.Series
    scale: pd.Series

    @property
    def components(self) -> List[str]:
        return list(self.loadings.columns)

    def transform(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Score subjects with the frozen loadings.

        Args:
            df: Test scores with the same columns used for extraction, no missing values

        Returns:
            Scores (subjects x components)
        """
        tests = list(self.loadings.index)
        data = df[tests].apply(pd.to_numeric, errors='coerce')
        if data.isna().any().any():
            raise MissingDataError("Cannot score subjects with missing test scores")
        z = (data - self.center) / self.scale
        return pd.DataFrame(z.to_numpy() @ self.score_weights.to_numpy(),
                            index=df.index, columns=self.components)

    def loading_table(self, threshold: float = 0.4) -> pd.DataFrame:
        """Loadings with small entries blanked, for the domain-labelling inspection."""
        return self.loadings.round(3).where(self.loadings.abs() >= threshold, other=np.nan)


class FactorExtractor:
    """
    Rotated principal component analysis of cognitive test scores.

    The number of components is fixed a priori. Component order and sign come out of the
    decomposition (sorted by rotated variance, signs oriented so loadings sum positive);
    which component is which cognitive domain is an analyst decision passed to
    ``apply_domain_mapping`` after inspecting the loadings.

    Loadings are estimated on the same sample they are used to score, so downstream
    precision may be overstated. This is a known limitation of the analysis.
    """

    def __init__(self, n_components: int = 3, rotate: bool = True, random_state: int = 42):
        """
        Args:
            n_components: Number of components to retain
            rotate: Apply varimax rotation
            random_state: Seed passed to the decomposition
        """
        self.n_components = n_components
        self.rotate = rotate
        self.random_state = random_state
        self.solution: Optional[FactorSolution] = None

    def fit_transform(self, df: pd.DataFrame, test_columns: List[str]) -> FactorSolution:
        """
        Extract components and score subjects with complete test data.

        Subjects with any missing test score are excluded from extraction and receive no
        score; they are listed in ``FactorSolution.excluded``.

        Args:
            df: Cohort table
            test_columns: The test battery

        Returns:
            Fitted factor solution
        """
        missing_cols = [c for c in test_columns if c not in df.columns]
        if missing_cols:
            raise MissingDataError(f"Test score columns not found: {missing_cols}")
        if self.n_components > len(test_columns):
            raise ValueError(f"Cannot extract {self.n_components} components from {len(test_columns)} tests")

        data = df[test_columns].apply(pd.to_numeric, errors='coerce')
        complete = data.notna().all(axis=1)
        excluded = data.index[~complete]
        data = data[complete]
        if len(excluded):
            logger.warning(f"Excluding {len(excluded)} subjects with incomplete test scores from factor extraction")
        if len(data) <= len(test_columns):
            raise MissingDataError(f"Only {len(data)} complete cases for {len(test_columns)} tests")

        scaler = StandardScaler()
        z = scaler.fit_transform(data.to_numpy(dtype=float))
        n = z.shape[0]

        correlation = np.corrcoef(z, rowvar=False)
        all_eigenvalues = np.sort(np.linalg.eigvalsh(correlation))[::-1]

        pca = PCA(n_components=self.n_components, svd_solver='full', random_state=self.random_state)
        pca.fit(z)
        # explained_variance_ uses n - 1; the correlation matrix of z uses n
        eigenvalues = pca.explained_variance_ * (n - 1) / n
        vectors = pca.components_.T
        loadings = vectors * np.sqrt(eigenvalues)

        if self.rotate:
            loadings, rotation = varimax(loadings)
        else:
            rotation = np.eye(self.n_components)
        weights = (vectors / np.sqrt(eigenvalues)) @ rotation

        # canonical order and sign so reruns are comparable
        ssl = np.sum(loadings ** 2, axis=0)
        order = np.argsort(-ssl, kind='stable')
        loadings, weights, ssl = loadings[:, order], weights[:, order], ssl[order]
        signs = np.sign(loadings.sum(axis=0))
        signs[signs == 0] = 1.0
        loadings, weights = loadings * signs, weights * signs

        prefix = "RC" if self.rotate else "PC"
        names = [f"{prefix}{i + 1}" for i in range(self.n_components)]
        scores = pd.DataFrame(z @ weights, index=data.index, columns=names)

        self.solution = FactorSolution(
            loadings=pd.DataFrame(loadings, index=test_columns, columns=names),
            scores=scores,
            score_weights=pd.DataFrame(weights, index=test_columns, columns=names),
            eigenvalues=pd.Series(all_eigenvalues, index=[f"PC{i + 1}" for i in range(len(all_eigenvalues))]),
            variance_explained=pd.Series(ssl / len(test_columns), index=names),
            excluded=excluded,
            center=pd.Series(scaler.mean_, index=test_columns),
            scale=pd.Series(scaler.scale_, index=test_columns),
        )

        logger.info(f"Extracted {self.n_components} components from {len(test_columns)} tests on {n} subjects; "
                    f"cumulative variance {self.solution.variance_explained.sum():.3f}")
        return self.solution


def apply_domain_mapping(
    solution: FactorSolution,
    domain_map: Dict[str, int],
    sign_flips: Optional[List[str]] = None
) -> FactorSolution:
    """
    Label components with cognitive domains.

    Args:
        solution: Factor solution with positional component names
        domain_map: Domain name -> zero-based component position, covering every component once
        sign_flips: Domains whose loadings and scores are negated (e.g. timed tests where lower is better)

    Returns:
        New solution with domain-named columns
    """
    components = solution.components
    positions = sorted(domain_map.values())
    if positions != list(range(len(components))):
        raise DomainMappingError(
            f"Domain mapping {domain_map} must assign each of the {len(components)} components exactly once"
        )
    sign_flips = list(sign_flips or [])
    unknown = [d for d in sign_flips if d not in domain_map]
    if unknown:
        raise DomainMappingError(f"Sign flips requested for unmapped domains: {unknown}")

    rename = {components[pos]: domain for domain, pos in domain_map.items()}
    ordered = [domain for domain, _ in sorted(domain_map.items(), key=lambda item: item[1])]
    signs = pd.Series([-1.0 if d in sign_flips else 1.0 for d in ordered], index=ordered)

    def relabel(frame: pd.DataFrame) -> pd.DataFrame:
        return frame.rename(columns=rename)[ordered] * signs

    logger.info(f"Component labels: {rename}")
    return replace(
        solution,
        loadings=relabel(solution.loadings),
        scores=relabel(solution.scores),
        score_weights=relabel(solution.score_weights),
        variance_explained=solution.variance_explained.rename(index=rename)[ordered],
    )
