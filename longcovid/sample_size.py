"""
Required sample size from a simulated power (or assurance) curve.

The simulated rates are smoothed with a quasi-binomial logistic regression of
rate on N, each point weighted by its number of valid replicates:

    logit(rate) = b0 + b1 * N

and the fitted line is inverted at the target rate:

    N* = (logit(target) - b0) / b1

The standard error of N* comes from the delta method,

    dN*/db0 = -1 / b1
    dN*/db1 = -(logit(target) - b0) / b1^2
    Var(N*) = g' Cov(b) g

with a symmetric normal interval N* +/- z * SE.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import scipy.stats as sps
import statsmodels.api as sm
from scipy.special import expit, logit

from longcovid.replicates import AggregateResult
from longcovid.trial_spec import validate_probability


class CurveFitError(RuntimeError):
    """The fitted curve cannot be inverted (flat or decreasing in N)."""

    def __init__(self, message: str, intercept: float, slope: float):
        super().__init__(f"{message} (intercept={intercept:.6g}, slope={slope:.6g})")
        self.intercept = intercept
        self.slope = slope


@dataclass(frozen=True)
class RequiredSampleSize:
    target_rate: float
    required_n: float
    se: float
    lower_ci: float
    upper_ci: float
    intercept: float
    slope: float
    cov: np.ndarray
    n_points: int

    def predict(self, n) -> np.ndarray:
        """Fitted rate at sample size(s) ``n``."""
        return expit(self.intercept + self.slope * np.asarray(n, dtype=float))

    def __str__(self) -> str:
        return (f"Required N for {self.target_rate:.0%}: {self.required_n:.1f} "
                f"[{self.lower_ci:.1f}, {self.upper_ci:.1f}] (SE {self.se:.1f})")


def fit_required_n(
    results: Sequence[AggregateResult],
    target_rate: float = 0.90,
    conf_level: float = 0.95,
) -> RequiredSampleSize:
    """Fit the logistic curve through ``results`` and solve for the target rate.

    Points with an undefined estimate (no valid replicates) are skipped.
    Raises CurveFitError when the slope is zero or negative, or when the
    target is already exceeded below N = 1.
    """
    validate_probability(target_rate, "target_rate", allow_zero=False, allow_one=False)
    validate_probability(conf_level, "conf_level", allow_zero=False, allow_one=False)

    usable = [r for r in results if r.defined and r.n is not None and r.n_valid > 0]
    skipped = len(results) - len(usable)
    if skipped:
        warnings.warn(f"Skipping {skipped} curve point(s) without valid replicates", RuntimeWarning, stacklevel=2)
    if len({r.n for r in usable}) < 2:
        raise ValueError("at least two distinct sample sizes with valid replicates are required")

    n_values = np.array([r.n for r in usable], dtype=float)
    rates = np.array([r.estimate for r in usable], dtype=float)
    weights = np.array([r.n_valid for r in usable], dtype=float)

    X = sm.add_constant(n_values, has_constant="add")
    model = sm.GLM(rates, X, family=sm.families.Binomial(), var_weights=weights)
    try:
        fit = model.fit(scale=1.0)
    except (ValueError, np.linalg.LinAlgError) as err:
        raise CurveFitError(f"logistic fit failed: {err}", math.nan, math.nan) from err

    beta0, beta1 = (float(v) for v in fit.params)
    # Pearson dispersion (quasi-binomial), 1 when it is zero or not estimable
    dispersion = fit.pearson_chi2 / fit.df_resid if fit.df_resid > 0 else math.nan
    if not (math.isfinite(dispersion) and dispersion > 0):
        dispersion = 1.0
    cov = np.asarray(fit.cov_params(), dtype=float) * dispersion

    if not (math.isfinite(beta0) and math.isfinite(beta1)):
        raise CurveFitError("non-finite regression coefficients", beta0, beta1)
    if abs(beta1) <= 1e-10 * max(1.0, abs(beta0)):
        raise CurveFitError("fitted slope is zero; rate does not change with N", beta0, beta1)
    if beta1 < 0:
        raise CurveFitError("fitted slope is negative; rate decreases with N", beta0, beta1)

    target_logit = float(logit(target_rate))
    required_n = (target_logit - beta0) / beta1
    if not math.isfinite(required_n) or required_n < 1:
        raise CurveFitError(
            f"target rate lies below the fitted curve; required N = {required_n:.1f}", beta0, beta1
        )

    d_b0 = -1.0 / beta1
    d_b1 = -(target_logit - beta0) / (beta1 ** 2)
    var_n = (d_b0 ** 2) * cov[0, 0] + (d_b1 ** 2) * cov[1, 1] + 2.0 * d_b0 * d_b1 * cov[0, 1]
    se = math.sqrt(max(0.0, var_n))
    z = float(sps.norm.ppf(1.0 - (1.0 - conf_level) / 2.0))

    return RequiredSampleSize(
        target_rate=target_rate,
        required_n=required_n,
        se=se,
        lower_ci=required_n - z * se,
        upper_ci=required_n + z * se,
        intercept=beta0,
        slope=beta1,
        cov=cov,
        n_points=len(usable),
    )
