"""
Main analysis script: breastfeeding duration and child neurocognitive outcomes.

Runs the propensity-weighted analysis against one cohort release: exposure categories,
rotated principal component scores for three cognitive domains, boosted multinomial
propensity weights, replicate-weight inference and sensitivity to unobserved confounding.
"""

import sys
from pathlib import Path
import logging

# Add src to path for imports
sys.path.append(str(Path(__file__).parent / "src"))

from breastfeeding_cognition.config import AnalysisConfig
from breastfeeding_cognition.data.loader import CohortDataLoader
from breastfeeding_cognition.pipeline import AnalysisPipeline
from breastfeeding_cognition.visualization.plots import DiagnosticVisualization
from breastfeeding_cognition.utils.helpers import (
    setup_logging, save_results, calculate_summary_statistics,
    validate_data_quality, format_results_table, ensure_directory
)


CONFIG_PATH = Path("config/analysis.json")
DATA_PATH = Path("data/raw/cohort.csv")


def main():
    """Run the complete analysis pipeline."""

    # Setup
    results_dir = ensure_directory("results")
    figures_dir = ensure_directory("figures")
    setup_logging(level="INFO", log_file=str(results_dir / "analysis.log"))
    logger = logging.getLogger(__name__)

    config = AnalysisConfig.from_json(CONFIG_PATH) if CONFIG_PATH.exists() else AnalysisConfig()

    # Step 1: Load data
    loader = CohortDataLoader(DATA_PATH, id_col=config.id_col, missing_values=config.missing_values)
    raw_data = loader.load_data()

    quality_metrics = validate_data_quality(
        raw_data,
        [config.duration_col, config.base_weight_col] + config.covariates + config.test_scores
        + config.repeated_trials
    )
    logger.info(f"Data quality: {quality_metrics['n_observations']} subjects, "
                f"missing fields: {quality_metrics['missing_data']}")

    # Steps 2-7: run the pipeline
    pipeline = AnalysisPipeline(config)
    results = pipeline.run(raw_data)

    descriptives = calculate_summary_statistics(
        results.cohort[config.continuous_covariates + [config.exposure_col]], config.exposure_col
    )
    descriptives.to_csv(results_dir / "descriptives_by_exposure.csv")

    # Diagnostics for the analyst decisions
    visualizer = DiagnosticVisualization()
    visualizer.plot_loadings(results.factors, save_path=figures_dir / "loadings.png")
    visualizer.plot_balance_trace(results.propensity_fits, save_path=figures_dir / "balance_trace.png")
    for rule, fit in results.propensity_fits.items():
        visualizer.plot_balance(fit, save_path=figures_dir / f"balance_{rule}.png")
    for weight_set in results.weights:
        visualizer.plot_weight_distribution(
            weight_set, save_path=figures_dir / f"weights_{weight_set.estimand}_{weight_set.stopping_rule}.png"
        )
    visualizer.plot_model_estimates(results.models, save_path=figures_dir / "model_estimates.png")

    results.stopping_rule_comparison.to_csv(results_dir / "stopping_rules.csv")
    results.model_table().to_csv(results_dir / "models.csv", index=False)
    save_results(results.to_dict(), results_dir / "analysis_results.json")
    save_results({"models": results.model_table(), "stopping_rules": results.stopping_rule_comparison,
                  "selected_weights": results.selected_weights}, results_dir / "analysis_results.pkl")

    # Print summary
    print("\n" + "=" * 80)
    print("BREASTFEEDING DURATION AND NEUROCOGNITION: WEIGHTED ANALYSIS")
    print("=" * 80)

    print("\nStopping rule diagnostics:")
    print(results.stopping_rule_comparison.to_string())

    for (factor, variant, label), model in results.models.items():
        print(format_results_table(model.estimates, f"{factor} ({variant} weights, {label})"))

    for result in results.sensitivity.values():
        print(result.summary())

    print(f"\nAnalysis complete! Outputs saved to:")
    print(f"- Figures: {figures_dir}")
    print(f"- Results: {results_dir}")


if __name__ == "__main__":
    main()
