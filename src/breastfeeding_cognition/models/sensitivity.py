"""
Omitted variable bias sensitivity analysis in the partial R^2 parameterization.

For a treatment indicator in a linear model, these statistics answer how strongly an
unobserved confounder would have to be associated with treatment and outcome, expressed
as multiples of an observed benchmark covariate group, to bring the estimate to zero
(Cinelli and Hazlett, 2020).
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

import statsmodels.api as sm
from scipy import stats

from ..exceptions import MissingDataError
from .inference import build_design, treatment_term


logger = logging.getLogger(__name__)


def partial_r2(t_value: float, dof: float) -> float:
    return t_value ** 2 / (t_value ** 2 + dof)


def partial_f2(t_value: float, dof: float) -> float:
    return t_value ** 2 / dof


def group_partial_r2(f_value: float, df_num: float, dof: float) -> float:
    """Partial R^2 of a group of regressors from its joint F statistic."""
    return f_value * df_num / (f_value * df_num + dof)


def robustness_value(t_value: float, dof: float, q: float = 1.0, alpha: float = 1.0) -> float:
    """
    Minimal equal strength of confounding (partial R^2 with treatment and with outcome)
    that reduces the estimate by ``100 * q`` percent, or, when ``alpha < 1``, makes the
    adjusted interval include the reduced value.
    """
    fq = q * abs(t_value) / np.sqrt(dof)
    f_crit = abs(stats.t.ppf(alpha / 2, dof - 1)) / np.sqrt(dof - 1) if alpha < 1 else 0.0
    fqa = fq - f_crit
    if fqa <= 0:
        return 0.0
    if f_crit > 0 and fq > 1 / f_crit:
        return float((fq ** 2 - f_crit ** 2) / (1 + fq ** 2))
    return float(0.5 * (np.sqrt(fqa ** 4 + 4 * fqa ** 2) - fqa ** 2))


def confounder_bounds(r2dxj_x: float, r2yxj_dx: float, kd: float, ky: float) -> Dict[str, float]:
    """
    Strength of a confounder ``kd`` times as associated with treatment and ``ky`` times as
    associated with outcome as the benchmark.

    Args:
        r2dxj_x: Partial R^2 of the benchmark with treatment
        r2yxj_dx: Partial R^2 of the benchmark with outcome, given treatment
        kd: Multiplier on the treatment association
        ky: Multiplier on the outcome association

    Returns:
        Partial R^2 of the confounder with treatment (``r2dz_x``) and outcome (``r2yz_dx``)
    """
    r2dz_x = kd * (r2dxj_x / (1 - r2dxj_x))
    if r2dz_x >= 1:
        raise ValueError(f"kd={kd} implies a confounder explaining all treatment variation; use a smaller kd")
    r2zxj_xd = kd * r2dxj_x ** 2 / ((1 - kd * r2dxj_x) * (1 - r2dxj_x))
    if r2zxj_xd >= 1:
        raise ValueError(f"kd={kd} is impossible for this benchmark")
    r2yz_dx = ((np.sqrt(ky) + np.sqrt(r2zxj_xd)) / np.sqrt(1 - r2zxj_xd)) ** 2 * (r2yxj_dx / (1 - r2yxj_dx))
    if r2yz_dx > 1:
        logger.warning(f"Implied partial R^2 with outcome above 1 for ky={ky}; capped at 1")
        r2yz_dx = 1.0
    return {'r2dz_x': float(r2dz_x), 'r2yz_dx': float(r2yz_dx)}


def adjusted_estimate(estimate: float, std_error: float, dof: float, r2dz_x: float, r2yz_dx: float) -> float:
    """Estimate after removing the maximal bias of the confounder, towards zero."""
    bias = std_error * np.sqrt(r2yz_dx * r2dz_x / (1 - r2dz_x)) * np.sqrt(dof)
    return float(np.sign(estimate) * (abs(estimate) - bias))


def adjusted_std_error(std_error: float, dof: float, r2dz_x: float, r2yz_dx: float) -> float:
    return float(std_error * np.sqrt((1 - r2yz_dx) / (1 - r2dz_x)) * np.sqrt(dof / (dof - 1)))


@dataclass
class BenchmarkBound:
    """Adjusted inference under a confounder scaled from the benchmark group."""
    benchmark: str
    kd: float
    ky: float
    r2dz_x: float
    r2yz_dx: float
    adjusted_estimate: float
    adjusted_se: float
    adjusted_t: float
    adjusted_lower: float
    adjusted_upper: float


@dataclass
class SensitivityResult:
    """Sensitivity statistics of one treatment contrast on one outcome."""
    outcome: str
    treatment: str
    estimate: float
    std_error: float
    t_value: float
    dof: float
    partial_r2_treatment: float
    partial_f2_treatment: float
    rv_q: float
    rv_qa: float
    q: float
    alpha: float
    benchmark_r2: Dict[str, Dict[str, float]] = field(default_factory=dict)
    bounds: List[BenchmarkBound] = field(default_factory=list)

    def bounds_frame(self) -> pd.DataFrame:
        return pd.DataFrame([vars(b) for b in self.bounds])

    def summary(self) -> str:
        lines = [
            "",
            f"Sensitivity Analysis: {self.treatment} -> {self.outcome}",
            "-" * 50,
            f"  Estimate: {self.estimate:.4f} (SE {self.std_error:.4f}, t = {self.t_value:.2f}, df = {self.dof:.0f})",
            f"  Partial R2 of treatment with outcome: {self.partial_r2_treatment:.4f}",
            f"  Partial f2 of treatment: {self.partial_f2_treatment:.4f}",
            f"  Robustness value (q = {self.q}): {self.rv_q:.4f}",
            f"  Robustness value (q = {self.q}, alpha = {self.alpha}): {self.rv_qa:.4f}",
        ]
        for bound in self.bounds:
            lines.append(
                f"  {bound.kd:g}x {bound.benchmark}: R2dz.x = {bound.r2dz_x:.4f}, R2yz.dx = {bound.r2yz_dx:.4f}, "
                f"adjusted estimate {bound.adjusted_estimate:.4f} "
                f"[{bound.adjusted_lower:.4f}, {bound.adjusted_upper:.4f}]"
            )
        lines.append("")
        return "\n".join(lines)


class SensitivityAnalyzer:
    """Bias-factor sensitivity of exposure-category effects to unobserved confounding."""

    def __init__(self, q: float = 1.0, alpha: float = 0.05):
        """
        Args:
            q: Fraction of the estimate the confounder would remove (1 = bring it to zero)
            alpha: Significance level for the robustness value that also accounts for sampling error
        """
        self.q = q
        self.alpha = alpha

    @staticmethod
    def _benchmark_columns(design: pd.DataFrame, benchmark: List[str]) -> List[str]:
        columns = [c for c in design.columns
                   if any(c == b or c.startswith(f"{b}:") for b in benchmark)]
        if not columns:
            raise MissingDataError(f"Benchmark covariates {benchmark} not in the model")
        return columns

    @staticmethod
    def _group_r2(result, columns: List[str]) -> float:
        names = list(result.params.index)
        restriction = np.zeros((len(columns), len(names)))
        for i, col in enumerate(columns):
            restriction[i, names.index(col)] = 1.0
        test = result.f_test(restriction)
        return group_partial_r2(float(np.squeeze(test.fvalue)), float(test.df_num), float(result.df_resid))

    def analyze(
        self,
        data: pd.DataFrame,
        outcome: str,
        exposure_col: str,
        treatment: str,
        covariates: List[str],
        categorical: Optional[List[str]] = None,
        benchmark_covariates: Optional[List[str]] = None,
        kd: Optional[List[float]] = None,
        ky: Optional[List[float]] = None,
        weights: Optional[pd.Series] = None,
        reference: str = "None"
    ) -> SensitivityResult:
        """
        Sensitivity statistics for one exposure category against the reference.

        Args:
            data: Analysis table
            outcome: Outcome column
            exposure_col: Exposure category column
            treatment: Exposure category whose indicator is the treatment
            covariates: Covariates of the outcome model
            categorical: Covariates entered as indicators
            benchmark_covariates: Covariates forming the benchmark group
            kd: Multipliers of the benchmark's association with treatment
            ky: Multipliers of the benchmark's association with outcome (default: ``kd``)
            weights: Optional simple weights for the outcome model
            reference: Reference exposure category

        Returns:
            Sensitivity result
        """
        y = pd.to_numeric(data[outcome], errors='coerce')
        if y.isna().any():
            raise MissingDataError(f"Outcome '{outcome}' missing for {int(y.isna().sum())} subjects")

        design = build_design(data, exposure_col, covariates, categorical, reference)
        term = treatment_term(exposure_col, treatment)
        if term not in design.columns:
            raise ValueError(f"Treatment {treatment!r} is the reference category or unknown")

        if weights is None:
            outcome_model = sm.OLS(y.to_numpy(), design).fit()
        else:
            outcome_model = sm.WLS(y.to_numpy(), design, weights=weights.loc[data.index].to_numpy()).fit()

        estimate = float(outcome_model.params[term])
        std_error = float(outcome_model.bse[term])
        t_value = float(outcome_model.tvalues[term])
        dof = float(outcome_model.df_resid)

        result = SensitivityResult(
            outcome=outcome,
            treatment=treatment,
            estimate=estimate,
            std_error=std_error,
            t_value=t_value,
            dof=dof,
            partial_r2_treatment=partial_r2(t_value, dof),
            partial_f2_treatment=partial_f2(t_value, dof),
            rv_q=robustness_value(t_value, dof, self.q),
            rv_qa=robustness_value(t_value, dof, self.q, self.alpha),
            q=self.q,
            alpha=self.alpha,
        )

        if benchmark_covariates:
            columns = self._benchmark_columns(design, benchmark_covariates)
            others = design.drop(columns=[term])
            if weights is None:
                treatment_model = sm.OLS(design[term].to_numpy(), others).fit()
            else:
                treatment_model = sm.WLS(design[term].to_numpy(), others,
                                         weights=weights.loc[data.index].to_numpy()).fit()

            r2yxj_dx = self._group_r2(outcome_model, columns)
            r2dxj_x = self._group_r2(treatment_model, columns)
            name = "+".join(benchmark_covariates)
            result.benchmark_r2[name] = {'r2yxj_dx': r2yxj_dx, 'r2dxj_x': r2dxj_x}

            kd = list(kd or [1.0])
            ky = list(ky) if ky is not None else kd
            if len(ky) != len(kd):
                raise ValueError("kd and ky must have the same length")

            t_crit = stats.t.ppf(1 - self.alpha / 2, dof - 1)
            for kd_i, ky_i in zip(kd, ky):
                strength = confounder_bounds(r2dxj_x, r2yxj_dx, kd_i, ky_i)
                adj = adjusted_estimate(estimate, std_error, dof, strength['r2dz_x'], strength['r2yz_dx'])
                adj_se = adjusted_std_error(std_error, dof, strength['r2dz_x'], strength['r2yz_dx'])
                result.bounds.append(BenchmarkBound(
                    benchmark=name,
                    kd=kd_i,
                    ky=ky_i,
                    r2dz_x=strength['r2dz_x'],
                    r2yz_dx=strength['r2yz_dx'],
                    adjusted_estimate=adj,
                    adjusted_se=adj_se,
                    adjusted_t=adj / adj_se if adj_se > 0 else float('nan'),
                    adjusted_lower=adj - t_crit * adj_se,
                    adjusted_upper=adj + t_crit * adj_se,
                ))

        logger.info(f"Sensitivity {outcome}/{treatment}: partial R2 {result.partial_r2_treatment:.4f}, "
                    f"RV {result.rv_q:.4f}, RV(alpha) {result.rv_qa:.4f}")
        return result
