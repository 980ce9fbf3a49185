"""
Unit tests for data loading and cohort preparation.
"""

import unittest
import tempfile
import pandas as pd
import numpy as np
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from breastfeeding_cognition.config import AnalysisConfig, EXPOSURE_LEVELS
from breastfeeding_cognition.data.loader import CohortDataLoader
from breastfeeding_cognition.data.preprocessor import (
    CohortPreprocessor, UNMAPPED, categorize_exposure, consolidate_trials,
    recode_covariate, validate_exposure
)
from breastfeeding_cognition.exceptions import ExposureCategoryError, MissingDataError


class TestCohortDataLoader(unittest.TestCase):
    """Test cases for CohortDataLoader."""

    def setUp(self):
        """Set up a temporary cohort file."""
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "cohort.csv"
        pd.DataFrame({
            'child_id': [1, 2, 3],
            'bf_duration_months': [0, -9, 9],
            'maternal_education': ['Degree', 'Refused', 'Missing'],
            'vocabulary': [10.0, 12.0, -9],
            'sampling_weight': [1.0, 1.5, 2.0],
        }).to_csv(self.path, index=False)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_initialization(self):
        """Test loader initialization."""
        loader = CohortDataLoader(self.path)
        self.assertEqual(loader.id_col, "child_id")
        self.assertIn(-9, loader.missing_values)
        self.assertIsNone(loader._raw_data)

    def test_load_data_resolves_sentinels(self):
        """Sentinel codes become missing; other labels are kept."""
        result = CohortDataLoader(self.path).load_data()

        self.assertEqual(len(result), 3)
        self.assertTrue(pd.isna(result.loc[2, 'bf_duration_months']))
        self.assertTrue(pd.isna(result.loc[3, 'maternal_education']))
        self.assertTrue(pd.isna(result.loc[3, 'vocabulary']))
        self.assertEqual(result.loc[2, 'maternal_education'], 'Refused')
        self.assertEqual(result.loc[1, 'vocabulary'], 10.0)

    def test_resolve_missing_on_frame(self):
        """Sentinels are replaced in any column except the identifier."""
        loader = CohortDataLoader(self.path)
        df = pd.DataFrame({'child_id': [-9, 2], 'x': [-9, 3], 'y': ['Missing', 'No']})
        result = loader.resolve_missing(df)

        self.assertEqual(result['child_id'].tolist(), [-9, 2])
        self.assertTrue(pd.isna(result.loc[0, 'x']))
        self.assertEqual(result.loc[1, 'x'], 3)
        self.assertTrue(pd.isna(result.loc[0, 'y']))
        self.assertEqual(result.loc[1, 'y'], 'No')

    def test_sentinel_valued_id_read_from_csv(self):
        """A subject whose id equals a sentinel code keeps it; its answers are still resolved."""
        pd.DataFrame({'child_id': [-9, 2], 'x': [-9, 3]}).to_csv(self.path, index=False)
        result = CohortDataLoader(self.path).load_data()

        self.assertEqual(result['child_id'].tolist(), [-9, 2])
        self.assertIn(-9, result.index)
        self.assertTrue(pd.isna(result.loc[-9, 'x']))
        self.assertEqual(result.loc[2, 'x'], 3)

    def test_blank_id_in_csv_raises(self):
        self.path.write_text("child_id,x\n,1\n2,3\n")
        with self.assertRaises(MissingDataError):
            CohortDataLoader(self.path).load_data()

    def test_duplicate_subjects_raise(self):
        """More than one record per subject stops the run."""
        pd.DataFrame({'child_id': [1, 1], 'x': [1, 2]}).to_csv(self.path, index=False)
        with self.assertRaises(ValueError):
            CohortDataLoader(self.path).load_data()

    def test_missing_identifier_raises(self):
        pd.DataFrame({'x': [1, 2]}).to_csv(self.path, index=False)
        with self.assertRaises(MissingDataError):
            CohortDataLoader(self.path).load_data()

    def test_unsupported_format(self):
        with self.assertRaises(ValueError):
            CohortDataLoader(Path(self.tmpdir.name) / "cohort.xlsx").load_data()


class TestExposureCategories(unittest.TestCase):
    """Test cases for exposure categorisation."""

    def test_representative_durations(self):
        """Durations 0, 3, 9 and 15 map to the four categories in order."""
        result = categorize_exposure(pd.Series([0, 3, 9, 15]))
        self.assertEqual(result.astype(str).tolist(), EXPOSURE_LEVELS)
        self.assertTrue(result.cat.ordered)

    def test_interval_boundaries(self):
        """Intervals are left-closed and right-open with no gaps."""
        durations = pd.Series([0, 0.5, 1, 6, 6.99, 7, 12, 12.99, 13, 48])
        expected = ['None', 'None', 'OnetoSix', 'OnetoSix', 'OnetoSix', 'SeventoTwelve',
                    'SeventoTwelve', 'SeventoTwelve', 'MorethanTwelve', 'MorethanTwelve']
        result = categorize_exposure(durations)
        self.assertEqual(result.astype(str).tolist(), expected)
        self.assertFalse(result.isna().any())

    def test_integer_months(self):
        """Every whole month maps to exactly one category."""
        months = pd.Series(np.arange(0, 40))
        result = categorize_exposure(months).astype(str)
        self.assertEqual(result[months == 0].unique().tolist(), ['None'])
        self.assertEqual(result[(months >= 1) & (months <= 6)].unique().tolist(), ['OnetoSix'])
        self.assertEqual(result[(months >= 7) & (months <= 12)].unique().tolist(), ['SeventoTwelve'])
        self.assertEqual(result[months >= 13].unique().tolist(), ['MorethanTwelve'])

    def test_negative_duration_raises(self):
        with self.assertRaises(ExposureCategoryError):
            categorize_exposure(pd.Series([0, -1]))

    def test_missing_duration_raises(self):
        with self.assertRaises(ExposureCategoryError):
            categorize_exposure(pd.Series([0, np.nan]))

    def test_validate_exposure(self):
        """Only the four defined levels are accepted."""
        result = validate_exposure(pd.Series(['None', 'MorethanTwelve']))
        self.assertEqual(list(result.cat.categories), EXPOSURE_LEVELS)

        with self.assertRaises(ExposureCategoryError):
            validate_exposure(pd.Series(['None', 'TwentyFour']))
        with self.assertRaises(ExposureCategoryError):
            validate_exposure(pd.Series(['None', None]))


class TestCovariateRecoding(unittest.TestCase):
    """Test cases for covariate recoding."""

    def setUp(self):
        self.mapping = {'Primary': 'Lower', 'Degree': 'Higher'}

    def test_unmapped_labels_are_observed(self):
        """Labels absent from the mapping form their own level; missing stays missing."""
        series = pd.Series(['Degree', 'Refused', np.nan, 'Primary'], name='maternal_education')
        result = recode_covariate(series, self.mapping)

        self.assertEqual(result.iloc[0], 'Higher')
        self.assertEqual(result.iloc[1], UNMAPPED)
        self.assertTrue(pd.isna(result.iloc[2]))
        self.assertEqual(result.iloc[3], 'Lower')
        self.assertIn(UNMAPPED, result.cat.categories)
        self.assertEqual(result.name, 'maternal_education')

    def test_no_unmapped_level_when_all_mapped(self):
        result = recode_covariate(pd.Series(['Degree', 'Primary']), self.mapping)
        self.assertNotIn(UNMAPPED, result.cat.categories)

    def test_consolidate_trials(self):
        """Trial means require every trial."""
        df = pd.DataFrame({'t1': [1.0, 2.0], 't2': [3.0, np.nan], 't3': [5.0, 4.0]})
        result = consolidate_trials(df, ['t1', 't2', 't3'], 'trials_mean')

        self.assertAlmostEqual(result.iloc[0], 3.0)
        self.assertTrue(pd.isna(result.iloc[1]))
        self.assertEqual(result.name, 'trials_mean')

    def test_consolidate_trials_missing_column(self):
        with self.assertRaises(MissingDataError):
            consolidate_trials(pd.DataFrame({'t1': [1.0]}), ['t1', 't2'], 'mean')


class TestCohortPreprocessor(unittest.TestCase):
    """Test cases for CohortPreprocessor."""

    def setUp(self):
        """Set up test fixtures."""
        self.preprocessor = CohortPreprocessor()

        self.sample_data = pd.DataFrame({
            'child_id': [1, 2, 3, 4],
            'bf_duration_months': [0, 3, 9, 15],
            'child_sex': ['Male', 'Female', 'Female', 'Male'],
            'maternal_education': ['Degree', 'Refused', 'Primary', np.nan],
            'maternal_smoking_pregnancy': ['No', 'Yes', 'No', 'No'],
            'marital_status': ['Married', 'Single', 'Divorced', 'Married'],
            'household_income_q': [1, 2, 3, 4],
            'list_trial_1': [5.0, 6.0, 7.0, 8.0],
            'list_trial_2': [5.0, 6.0, 7.0, 8.0],
            'list_trial_3': [5.0, 6.0, 7.0, 8.0],
            'list_trial_4': [5.0, 6.0, 7.0, np.nan],
            'list_trial_5': [10.0, 6.0, 7.0, 8.0],
        })

    def test_initialization(self):
        """Test preprocessor initialization."""
        self.assertIsInstance(self.preprocessor.config, AnalysisConfig)

    def test_preprocess_adds_columns_without_dropping_rows(self):
        result = self.preprocessor.preprocess(self.sample_data)

        self.assertEqual(len(result), len(self.sample_data))
        self.assertEqual(result['bf_category'].astype(str).tolist(), EXPOSURE_LEVELS)
        self.assertIn('list_learning_mean', result.columns)
        self.assertAlmostEqual(result['list_learning_mean'].iloc[0], 6.0)
        self.assertTrue(pd.isna(result['list_learning_mean'].iloc[3]))

    def test_preprocess_recodes(self):
        result = self.preprocessor.preprocess(self.sample_data)

        self.assertEqual(result['maternal_education'].iloc[0], 'Degree or higher')
        self.assertEqual(result['maternal_education'].iloc[1], UNMAPPED)
        self.assertTrue(pd.isna(result['maternal_education'].iloc[3]))
        self.assertEqual(result['marital_status'].iloc[2], 'Separated or divorced')
        self.assertEqual(str(result['household_income_q'].dtype), 'category')

    def test_preprocess_does_not_modify_input(self):
        original = self.sample_data.copy()
        self.preprocessor.preprocess(self.sample_data)
        pd.testing.assert_frame_equal(self.sample_data, original)

    def test_missing_duration_column(self):
        with self.assertRaises(MissingDataError):
            self.preprocessor.preprocess(self.sample_data.drop(columns=['bf_duration_months']))

    def test_get_feature_groups(self):
        """Test feature grouping functionality."""
        groups = self.preprocessor.get_feature_groups()
        for group in ['demographic', 'prenatal', 'family']:
            self.assertIn(group, groups)
            self.assertIsInstance(groups[group], list)

        restricted = self.preprocessor.get_feature_groups(self.sample_data)
        self.assertEqual(restricted['prenatal'], ['maternal_smoking_pregnancy'])


class TestAnalysisConfig(unittest.TestCase):
    """Test cases for the configuration layer."""

    def test_from_dict_nested(self):
        config = AnalysisConfig.from_dict({
            'propensity': {'n_trees': 50, 'stopping_rules': ['es.mean', 'ks.max']},
            'inference': {'selected_stopping_rule': 'ks.max'},
        })
        self.assertEqual(config.propensity.n_trees, 50)
        self.assertEqual(config.inference.selected_stopping_rule, 'ks.max')
        self.assertEqual(config.inference.n_replicates, 1000)

    def test_selected_rule_must_be_fitted(self):
        with self.assertRaises(ValueError):
            AnalysisConfig.from_dict({
                'propensity': {'stopping_rules': ['ks.max']},
                'inference': {'selected_stopping_rule': 'es.mean'},
            })

    def test_unknown_estimand(self):
        with self.assertRaises(ValueError):
            AnalysisConfig.from_dict({'propensity': {'estimand': 'ATC'}})

    def test_shipped_config_loads(self):
        path = Path(__file__).parent.parent / "config" / "analysis.json"
        config = AnalysisConfig.from_json(path)
        self.assertEqual(len(config.test_scores), 11)
        self.assertEqual(len(config.repeated_trials), 5)
        self.assertEqual(sorted(config.domain_map.values()), [0, 1, 2])


if __name__ == '__main__':
    unittest.main()
