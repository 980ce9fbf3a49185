"""
Unit tests for the omitted variable bias sensitivity analysis.
"""

import unittest
import pandas as pd
import numpy as np
import sys
from pathlib import Path

import statsmodels.api as sm

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from breastfeeding_cognition.config import EXPOSURE_LEVELS
from breastfeeding_cognition.models.inference import build_design
from breastfeeding_cognition.models.sensitivity import (
    SensitivityAnalyzer, SensitivityResult, adjusted_estimate, adjusted_std_error,
    confounder_bounds, group_partial_r2, partial_f2, partial_r2, robustness_value
)
from breastfeeding_cognition.exceptions import MissingDataError


def make_outcome_table(n_samples: int = 600, seed: int = 13) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    education = rng.choice(['Lower', 'Middle', 'Higher'], n_samples)
    edu_score = pd.Series(education).map({'Lower': 0.0, 'Middle': 0.5, 'Higher': 1.0}).to_numpy()
    age = rng.normal(30, 5, n_samples)
    codes = np.clip(np.round(1.5 + 1.5 * edu_score + rng.normal(scale=1.0, size=n_samples)), 0, 3).astype(int)
    category = np.array(EXPOSURE_LEVELS)[codes]
    score = 0.1 * codes + 0.6 * edu_score + 0.02 * (age - 30) + rng.normal(scale=0.8, size=n_samples)
    return pd.DataFrame({
        'bf_category': pd.Categorical(category, categories=EXPOSURE_LEVELS, ordered=True),
        'maternal_education': pd.Categorical(education),
        'maternal_age': age,
        'memory': score,
    }, index=pd.RangeIndex(1, n_samples + 1))


class TestSensitivityStatistics(unittest.TestCase):
    """Test cases for closed-form sensitivity statistics."""

    def test_partial_r2(self):
        self.assertAlmostEqual(partial_r2(2.0, 96.0), 4.0 / 100.0)
        self.assertAlmostEqual(partial_f2(2.0, 96.0), 4.0 / 96.0)
        self.assertAlmostEqual(group_partial_r2(4.0, 1, 96.0), partial_r2(2.0, 96.0))

    def test_robustness_value_reference_values(self):
        """Published values for the Darfur peace-attitudes example (t = 4.18, 783 df)."""
        self.assertAlmostEqual(robustness_value(4.18445, 783), 0.1388, places=3)
        self.assertAlmostEqual(robustness_value(4.18445, 783, q=1, alpha=0.05), 0.0763, places=3)

    def test_robustness_value_ordering(self):
        rv_q = robustness_value(3.0, 500)
        self.assertLess(robustness_value(3.0, 500, alpha=0.05), rv_q)
        self.assertLess(robustness_value(3.0, 500, q=0.5), rv_q)
        self.assertGreaterEqual(robustness_value(0.5, 500, alpha=0.05), 0.0)
        self.assertEqual(robustness_value(0.5, 500, alpha=0.05), 0.0)

    def test_confounder_at_robustness_value_removes_estimate(self):
        """A confounder as strong as the robustness value brings the estimate to zero."""
        t_value, dof, std_error = 3.5, 400.0, 0.2
        rv = robustness_value(t_value, dof)
        self.assertAlmostEqual(adjusted_estimate(t_value * std_error, std_error, dof, rv, rv), 0.0, places=8)
        self.assertAlmostEqual(adjusted_estimate(-t_value * std_error, std_error, dof, rv, rv), 0.0, places=8)

    def test_no_confounding_leaves_estimate(self):
        self.assertAlmostEqual(adjusted_estimate(0.7, 0.1, 300, 0.0, 0.0), 0.7)
        self.assertAlmostEqual(adjusted_std_error(0.1, 300, 0.0, 0.0), 0.1 * np.sqrt(300 / 299))

    def test_bounds_grow_with_kd(self):
        bounds = [confounder_bounds(0.05, 0.03, kd, kd) for kd in [1, 2, 3]]
        r2d = [b['r2dz_x'] for b in bounds]
        r2y = [b['r2yz_dx'] for b in bounds]
        self.assertEqual(r2d, sorted(r2d))
        self.assertEqual(r2y, sorted(r2y))
        self.assertAlmostEqual(bounds[0]['r2dz_x'], 0.05 / 0.95)

    def test_impossible_kd(self):
        with self.assertRaises(ValueError):
            confounder_bounds(0.5, 0.1, 1, 1)
        with self.assertRaises(ValueError):
            confounder_bounds(0.3, 0.1, 3, 3)


class TestSensitivityAnalyzer(unittest.TestCase):
    """Test cases for SensitivityAnalyzer."""

    def setUp(self):
        """Set up test fixtures."""
        self.data = make_outcome_table()
        self.analyzer = SensitivityAnalyzer(q=1.0, alpha=0.05)
        self.covariates = ['maternal_education', 'maternal_age']
        self.categorical = ['maternal_education']

    def test_matches_outcome_regression(self):
        result = self.analyzer.analyze(self.data, 'memory', 'bf_category', 'MorethanTwelve',
                                       self.covariates, self.categorical)
        design = build_design(self.data, 'bf_category', self.covariates, self.categorical)
        ols = sm.OLS(self.data['memory'].to_numpy(), design).fit()
        term = 'bf_category[T.MorethanTwelve]'

        self.assertIsInstance(result, SensitivityResult)
        self.assertAlmostEqual(result.estimate, ols.params[term])
        self.assertAlmostEqual(result.std_error, ols.bse[term])
        self.assertEqual(result.dof, ols.df_resid)
        self.assertAlmostEqual(result.partial_r2_treatment, partial_r2(ols.tvalues[term], ols.df_resid))
        self.assertLessEqual(result.rv_qa, result.rv_q)
        self.assertEqual(result.bounds, [])

    def test_benchmark_bounds(self):
        result = self.analyzer.analyze(self.data, 'memory', 'bf_category', 'MorethanTwelve',
                                       self.covariates, self.categorical,
                                       benchmark_covariates=['maternal_education'], kd=[1, 2])

        self.assertIn('maternal_education', result.benchmark_r2)
        r2 = result.benchmark_r2['maternal_education']
        self.assertTrue(0 < r2['r2dxj_x'] < 1)
        self.assertTrue(0 < r2['r2yxj_dx'] < 1)

        frame = result.bounds_frame()
        self.assertEqual(list(frame['kd']), [1, 2])
        self.assertEqual(list(frame['ky']), [1, 2])
        self.assertLessEqual(frame['r2dz_x'].iloc[0], frame['r2dz_x'].iloc[1])
        for bound in result.bounds:
            # bias moves the estimate towards zero
            self.assertLessEqual(np.sign(result.estimate) * bound.adjusted_estimate, abs(result.estimate))
            self.assertLess(bound.adjusted_lower, bound.adjusted_upper)
        self.assertIn('Robustness value', result.summary())

    def test_single_benchmark_matches_t_statistic(self):
        """For one continuous benchmark the group partial R2 reduces to its t statistic."""
        result = self.analyzer.analyze(self.data, 'memory', 'bf_category', 'SeventoTwelve',
                                       self.covariates, self.categorical,
                                       benchmark_covariates=['maternal_age'], kd=[1])
        design = build_design(self.data, 'bf_category', self.covariates, self.categorical)
        ols = sm.OLS(self.data['memory'].to_numpy(), design).fit()

        self.assertAlmostEqual(result.benchmark_r2['maternal_age']['r2yxj_dx'],
                               partial_r2(ols.tvalues['maternal_age'], ols.df_resid))

    def test_weighted_outcome_model(self):
        weights = pd.Series(np.linspace(0.5, 1.5, len(self.data)), index=self.data.index)
        unweighted = self.analyzer.analyze(self.data, 'memory', 'bf_category', 'MorethanTwelve',
                                           self.covariates, self.categorical)
        weighted = self.analyzer.analyze(self.data, 'memory', 'bf_category', 'MorethanTwelve',
                                         self.covariates, self.categorical, weights=weights)
        self.assertNotAlmostEqual(weighted.estimate, unweighted.estimate)

    def test_reference_treatment_rejected(self):
        with self.assertRaises(ValueError):
            self.analyzer.analyze(self.data, 'memory', 'bf_category', 'None', self.covariates, self.categorical)

    def test_unknown_benchmark(self):
        with self.assertRaises(MissingDataError):
            self.analyzer.analyze(self.data, 'memory', 'bf_category', 'MorethanTwelve',
                                  self.covariates, self.categorical, benchmark_covariates=['parity'])

    def test_mismatched_multipliers(self):
        with self.assertRaises(ValueError):
            self.analyzer.analyze(self.data, 'memory', 'bf_category', 'MorethanTwelve',
                                  self.covariates, self.categorical,
                                  benchmark_covariates=['maternal_education'], kd=[1, 2], ky=[1])


if __name__ == '__main__':
    unittest.main()
