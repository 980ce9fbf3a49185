"""
Diagnostic figures for the analyst decisions: stopping rule, component labels, truncation.
"""

import matplotlib.pyplot as plt
import seaborn as sns
import pandas as pd
import numpy as np
from typing import Dict, Optional, Tuple
import logging

from ..models.factors import FactorSolution
from ..models.inference import WeightedModelResult
from ..models.propensity import PropensityFit
from ..models.weights import WeightSet


logger = logging.getLogger(__name__)


class DiagnosticVisualization:
    """Creates diagnostic plots for the propensity-weighted analysis."""

    def __init__(self, figsize: Tuple[int, int] = (10, 6)):
        """
        Initialize visualization settings.

        Args:
            figsize: Default figure size
        """
        plt.style.use('default')
        sns.set_palette("husl")
        self.figsize = figsize
        self.colors = {
            'primary': '#2E86AB',
            'secondary': '#A23B72',
            'accent': '#F18F01',
            'neutral': '#C73E1D',
            'light_gray': '#F5F5F5',
            'dark_gray': '#333333'
        }

    def _finish(self, fig, save_path: Optional[str], description: str) -> None:
        plt.tight_layout()
        if save_path:
            fig.savefig(save_path, dpi=300, bbox_inches='tight')
            logger.info(f"{description} saved to {save_path}")
        plt.close(fig)

    def plot_balance_trace(self, fits: Dict[str, PropensityFit], save_path: Optional[str] = None) -> None:
        """
        Balance criterion against boosting iteration for every stopping rule.

        Args:
            fits: Propensity fits keyed by stopping rule
            save_path: Path to save the figure
        """
        fig, axes = plt.subplots(1, len(fits), figsize=(5 * len(fits), 4), squeeze=False)

        for ax, (rule, fit) in zip(axes[0], fits.items()):
            ax.plot(fit.trace.index, fit.trace.values, color=self.colors['primary'])
            ax.axvline(fit.best_iteration, color=self.colors['neutral'], linestyle='--',
                       label=f'best = {fit.best_iteration}')
            ax.set_title(rule)
            ax.set_xlabel('Iteration')
            ax.set_ylabel('Criterion')
            ax.legend()

        self._finish(fig, save_path, "Balance trace plot")

    def plot_balance(self, fit: PropensityFit, save_path: Optional[str] = None) -> None:
        """
        Largest absolute standardized effect size per covariate before and after weighting.

        Args:
            fit: Propensity fit of one stopping rule
            save_path: Path to save the figure
        """
        table = fit.balance.assign(
            before=fit.balance['std_eff_sz_before'].abs(),
            after=fit.balance['std_eff_sz_after'].abs(),
        ).groupby('covariate')[['before', 'after']].max().sort_values('before')

        fig, ax = plt.subplots(figsize=(8, max(4, 0.3 * len(table))))
        y = np.arange(len(table))
        ax.scatter(table['before'], y, color=self.colors['light_gray'], edgecolor=self.colors['dark_gray'],
                   label='Sampling weights')
        ax.scatter(table['after'], y, color=self.colors['primary'], label='Propensity weights')
        ax.axvline(0.1, color=self.colors['neutral'], linestyle='--', linewidth=1)
        ax.set_yticks(y)
        ax.set_yticklabels(table.index)
        ax.set_xlabel('Max |standardized effect size| across category pairs')
        ax.set_title(f'Covariate Balance ({fit.estimand}, {fit.stopping_rule})')
        ax.legend(loc='lower right')

        self._finish(fig, save_path, "Balance plot")

    def plot_weight_distribution(self, weight_set: WeightSet, save_path: Optional[str] = None) -> None:
        """
        Untruncated and truncated weight distributions.

        Args:
            weight_set: Weights of one (estimand, stopping rule)
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=self.figsize)
        sns.histplot(weight_set.weights, bins=50, color=self.colors['primary'], alpha=0.5,
                     label='Untruncated', ax=ax)
        sns.histplot(weight_set.truncated, bins=50, color=self.colors['accent'], alpha=0.5,
                     label='Truncated', ax=ax)
        ax.axvline(weight_set.truncation_threshold, color=self.colors['neutral'], linestyle='--',
                   label=f'{weight_set.truncation_percentile:g}th percentile')
        ax.set_xlabel('Weight')
        ax.set_title(f'Weight Distribution ({weight_set.estimand}, {weight_set.stopping_rule})')
        ax.legend()

        self._finish(fig, save_path, "Weight distribution plot")

    def plot_loadings(self, solution: FactorSolution, save_path: Optional[str] = None) -> None:
        """
        Scree plot and rotated loading heatmap, for assigning domain labels.

        Args:
            solution: Factor solution
            save_path: Path to save the figure
        """
        fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(14, 6), gridspec_kw={'width_ratios': [1, 1.4]})

        eigenvalues = solution.eigenvalues
        ax1.plot(range(1, len(eigenvalues) + 1), eigenvalues.values, marker='o', color=self.colors['primary'])
        ax1.axhline(1.0, color=self.colors['neutral'], linestyle='--', linewidth=1)
        ax1.set_xlabel('Component')
        ax1.set_ylabel('Eigenvalue')
        ax1.set_title('Scree Plot')

        sns.heatmap(solution.loadings, annot=True, fmt='.2f', cmap='RdBu_r', center=0,
                    vmin=-1, vmax=1, ax=ax2)
        ax2.set_title('Rotated Loadings')

        self._finish(fig, save_path, "Loadings plot")

    def plot_model_estimates(
        self,
        models: Dict[Tuple[str, str, str], WeightedModelResult],
        save_path: Optional[str] = None
    ) -> None:
        """
        Forest plot of exposure coefficients for every factor, weight variant and model.

        Args:
            models: Model results keyed by (factor, weight variant, model label)
            save_path: Path to save the figure
        """
        rows = []
        for (factor, variant, label), model in models.items():
            for level, est in model.estimates.items():
                rows.append({
                    'name': f"{factor} | {variant} | {label} | {level}",
                    'coefficient': est.coefficient,
                    'lower': est.ci_lower,
                    'upper': est.ci_upper,
                    'significant': est.is_significant,
                })
        table = pd.DataFrame(rows)
        if table.empty:
            logger.warning("No model estimates to plot")
            return

        fig, ax = plt.subplots(figsize=(10, max(4, 0.3 * len(table))))
        y = np.arange(len(table))
        colors = [self.colors['neutral'] if s else self.colors['primary'] for s in table['significant']]
        ax.errorbar(table['coefficient'], y,
                    xerr=[table['coefficient'] - table['lower'], table['upper'] - table['coefficient']],
                    fmt='none', ecolor=self.colors['dark_gray'], capsize=3)
        ax.scatter(table['coefficient'], y, color=colors, zorder=3)
        ax.axvline(0, color=self.colors['dark_gray'], linewidth=1)
        ax.set_yticks(y)
        ax.set_yticklabels(table['name'], fontsize=8)
        ax.set_xlabel('Difference from no breastfeeding (SD units)')
        ax.set_title('Exposure Effects on Cognitive Domains')

        self._finish(fig, save_path, "Model estimates plot")
