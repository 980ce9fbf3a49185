"""
Unit tests for the diagnostic figures.
"""

import unittest
import tempfile
from types import SimpleNamespace
import pandas as pd
import numpy as np
import sys
from pathlib import Path

import matplotlib
matplotlib.use("Agg")

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from breastfeeding_cognition.config import EXPOSURE_LEVELS
from breastfeeding_cognition.models.factors import FactorExtractor
from breastfeeding_cognition.models.inference import CausalEstimate, WeightedModelResult
from breastfeeding_cognition.models.weights import WeightDeriver
from breastfeeding_cognition.visualization.plots import DiagnosticVisualization


class TestDiagnosticVisualization(unittest.TestCase):
    """Test cases for DiagnosticVisualization."""

    def setUp(self):
        """Set up test fixtures."""
        self.tmpdir = tempfile.TemporaryDirectory()
        self.out = Path(self.tmpdir.name)
        self.visualizer = DiagnosticVisualization()

        rng = np.random.default_rng(0)
        n = 120
        self.categories = pd.Series(pd.Categorical(np.repeat(EXPOSURE_LEVELS, n // 4),
                                                   categories=EXPOSURE_LEVELS, ordered=True))
        raw = rng.uniform(0.1, 1.0, size=(n, 4))
        propensities = pd.DataFrame(raw / raw.sum(axis=1, keepdims=True), columns=EXPOSURE_LEVELS)
        balance = pd.DataFrame({
            'covariate': ['maternal_age'] * 6 + ['parity'] * 6,
            'std_eff_sz_before': rng.normal(scale=0.3, size=12),
            'std_eff_sz_after': rng.normal(scale=0.05, size=12),
        })
        self.fit = SimpleNamespace(
            propensities=propensities, estimand='ATE', stopping_rule='es.mean', treated_category=None,
            trace=pd.Series([0.3, 0.2, 0.25], index=[20, 40, 60]), best_iteration=40, balance=balance,
        )

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_initialization(self):
        self.assertEqual(self.visualizer.figsize, (10, 6))
        self.assertIn('primary', self.visualizer.colors)

    def test_balance_figures(self):
        self.visualizer.plot_balance_trace({'es.mean': self.fit}, save_path=self.out / "trace.png")
        self.visualizer.plot_balance(self.fit, save_path=self.out / "balance.png")
        self.assertTrue((self.out / "trace.png").exists())
        self.assertTrue((self.out / "balance.png").exists())

    def test_weight_distribution(self):
        weight_set = WeightDeriver().derive(self.fit, self.categories, pd.Series(np.ones(len(self.categories))))
        self.visualizer.plot_weight_distribution(weight_set, save_path=self.out / "weights.png")
        self.assertTrue((self.out / "weights.png").exists())

    def test_loadings(self):
        data = pd.DataFrame(np.random.default_rng(1).normal(size=(80, 5)), columns=list('abcde'))
        solution = FactorExtractor(n_components=2).fit_transform(data, list(data.columns))
        self.visualizer.plot_loadings(solution, save_path=self.out / "loadings.png")
        self.assertTrue((self.out / "loadings.png").exists())

    def test_model_estimates(self):
        estimates = {level: CausalEstimate(0.1, 0.05, 0.0, 0.2, 0.04, f"{level} vs None")
                     for level in EXPOSURE_LEVELS[1:]}
        model = WeightedModelResult(outcome='memory', label='unadjusted', covariates=[],
                                    params=pd.Series(dtype=float), std_errors=pd.Series(dtype=float),
                                    estimates=estimates, n_obs=100)
        self.visualizer.plot_model_estimates({('memory', 'untruncated', 'unadjusted'): model},
                                             save_path=self.out / "estimates.png")
        self.assertTrue((self.out / "estimates.png").exists())

    def test_no_estimates_skips_figure(self):
        self.visualizer.plot_model_estimates({}, save_path=self.out / "empty.png")
        self.assertFalse((self.out / "empty.png").exists())


if __name__ == '__main__':
    unittest.main()
