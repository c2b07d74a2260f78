"""
Decision-threshold calibration for a target Type I error.

Higher thresholds give fewer false positives, so the threshold achieving a
target alpha is found by bisection over [low, high]. Each step runs a fresh
null-effect batch at the bracket midpoint (new seeds every iteration), so the
measured rate is noisy; the search stops once a step lands within
``tolerance`` of the target, otherwise after ``max_iter`` steps, returning
the best step seen and ``converged=False``.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import List, Optional, Tuple

import pandas as pd

from longcovid.operating_characteristics import TYPE1_SEED, estimate_type1_error
from longcovid.posterior import InferenceEngine
from longcovid.replicates import AggregateResult
from longcovid.trial_spec import validate_probability

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibrationStep:
    iteration: int
    threshold: float
    type1_error: Optional[float]
    lower_ci: Optional[float]
    upper_ci: Optional[float]
    n_valid: int
    bracket_low: float    # bracket searched at this step
    bracket_high: float


@dataclass(frozen=True)
class CalibrationResult:
    calibrated_threshold: float
    achieved_type1_error: Optional[float]
    target_alpha: float
    converged: bool
    history: Tuple[CalibrationStep, ...]
    final_result: AggregateResult

    def history_frame(self) -> pd.DataFrame:
        return pd.DataFrame([step.__dict__ for step in self.history])


def calibrate_threshold(
    n: int,
    engine: Optional[InferenceEngine] = None,
    target_alpha: float = 0.05,
    n_reps: int = 200,
    threshold_range: Tuple[float, float] = (0.90, 0.99),
    tolerance: float = 0.01,
    max_iter: int = 10,
    *,
    base_seed: int = TYPE1_SEED,
    **kwargs,
) -> CalibrationResult:
    """Bisection search for the threshold whose null success rate is ``target_alpha``.

    Extra keyword arguments (effects, outcomes, settings, rule, n_jobs, ...)
    are passed to ``estimate_type1_error``.
    """
    validate_probability(target_alpha, "target_alpha", allow_zero=False, allow_one=False)
    low, high = (float(v) for v in threshold_range)
    if not (0.0 <= low < high <= 1.0):
        raise ValueError(f"threshold_range must satisfy 0 <= low < high <= 1, got {threshold_range}")
    if tolerance < 0:
        raise ValueError("tolerance must be >= 0")
    if max_iter < 1:
        raise ValueError("max_iter must be >= 1")

    logger.info("Calibrating threshold for %.1f%% Type I error...", target_alpha * 100)
    history: List[CalibrationStep] = []
    results: List[AggregateResult] = []
    converged = False

    for iteration in range(1, max_iter + 1):
        mid = (low + high) / 2.0
        logger.info("  Iteration %d: testing threshold = %.4f", iteration, mid)
        result = estimate_type1_error(
            n, engine, n_reps, mid,
            base_seed=base_seed + 7919 * iteration,
            **kwargs,
        )
        history.append(CalibrationStep(
            iteration=iteration,
            threshold=mid,
            type1_error=result.estimate,
            lower_ci=result.lower_ci,
            upper_ci=result.upper_ci,
            n_valid=result.n_valid,
            bracket_low=low,
            bracket_high=high,
        ))
        results.append(result)

        if not result.defined:
            warnings.warn(f"No valid replicates at threshold {mid:.4f}; stopping calibration",
                          RuntimeWarning, stacklevel=2)
            break

        if abs(result.estimate - target_alpha) <= tolerance:
            converged = True
            logger.info("  Converged: Type I error = %.4f at threshold = %.4f", result.estimate, mid)
            break

        if result.estimate > target_alpha:
            low = mid
        else:
            high = mid

    defined = [i for i, r in enumerate(results) if r.defined]
    if defined:
        best = min(defined, key=lambda i: (abs(results[i].estimate - target_alpha), i))
    else:
        best = len(results) - 1

    if not converged:
        warnings.warn(
            f"Threshold calibration did not reach |alpha - {target_alpha}| <= {tolerance} "
            f"in {len(history)} iteration(s); returning the closest step",
            RuntimeWarning,
            stacklevel=2,
        )

    return CalibrationResult(
        calibrated_threshold=history[best].threshold,
        achieved_type1_error=results[best].estimate,
        target_alpha=target_alpha,
        converged=converged,
        history=tuple(history),
        final_result=results[best],
    )
