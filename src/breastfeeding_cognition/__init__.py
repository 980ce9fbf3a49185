"""
Propensity-weighted analysis of breastfeeding duration and child neurocognition.

This package implements the cohort analysis pipeline: exposure categorisation, rotated
principal component extraction of cognitive domains, boosted multinomial propensity
weighting, survey-weighted inference with bootstrap replicates and omitted variable
bias sensitivity analysis.
"""

__version__ = "1.0.0"
__author__ = "Data Science Research"
