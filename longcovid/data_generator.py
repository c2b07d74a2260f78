"""
Synthetic trial data for the two co-primary endpoints.

Model
-----
- Baseline per endpoint ~ Normal(mean + baseline_adjustment, sd) truncated to
  the endpoint range.
- Treatment ~ Bernoulli(allocation_ratio), independently per subject (2:1
  design, so 2/3 treated on average).
- Natural change: a bounded regression-to-the-mean term. Its sign is drawn
  per subject with P(negative) = logistic(2 * (z_tmt + 0.5)), where z_tmt is
  the standardized TMT baseline deviation; the same sign is shared by both
  endpoints. Its magnitude is Normal(0, cap * |baseline| / damping), clipped
  to +/- cap * |baseline| (cap = 0.2, damping = 5 by default).
- Follow-up = baseline + natural change + effect * treat + e, with (e1, e2)
  bivariate normal (residual SDs, correlation rho), then hard-clipped to the
  endpoint range.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.stats as sps
from scipy.special import expit

from longcovid.trial_spec import (
    DEFAULT_EFFECTS,
    DEFAULT_OUTCOMES,
    DEFAULT_SETTINGS,
    OutcomeSpec,
    TrialSettings,
    TrueEffects,
)


class GenerationError(ValueError):
    """Invalid data-generation configuration (never coerced)."""


@dataclass(frozen=True)
class TrialDataset:
    n: int
    treat: np.ndarray        # shape (n,), 0/1
    baseline: np.ndarray     # shape (n, 2)
    follow_up: np.ndarray    # shape (n, 2)
    endpoints: Tuple[str, str] = ("tmt", "mfis")

    def __post_init__(self):
        for name in ("treat", "baseline", "follow_up"):
            arr = np.array(getattr(self, name))
            arr.flags.writeable = False
            object.__setattr__(self, name, arr)
        if self.treat.shape != (self.n,) or self.baseline.shape != (self.n, 2) or self.follow_up.shape != (self.n, 2):
            raise ValueError("dataset arrays do not match n")

    @property
    def prop_treated(self) -> float:
        return float(np.mean(self.treat)) if self.n > 0 else float("nan")

    def to_frame(self) -> pd.DataFrame:
        data = {"treat": self.treat}
        for j, name in enumerate(self.endpoints):
            data[f"{name}_base"] = self.baseline[:, j]
            data[f"{name}_follow"] = self.follow_up[:, j]
        return pd.DataFrame(data)


def _check_residual_covariance(cov: np.ndarray, rho: float) -> None:
    if cov.size == 0 or cov.shape != (2, 2):
        raise GenerationError(f"residual covariance must be 2x2, got shape {cov.shape}")
    if not np.all(np.isfinite(cov)):
        raise GenerationError("residual covariance contains non-finite entries")
    if not np.allclose(cov, cov.T):
        raise GenerationError("residual covariance must be symmetric")
    if not (-1.0 < rho < 1.0):
        raise GenerationError(f"residual correlation must lie in (-1, 1), got {rho}")
    eig = np.linalg.eigvalsh(cov)
    if eig.min() < -1e-12 * max(1.0, abs(eig.max())):
        raise GenerationError(f"residual covariance is not positive semi-definite (eigenvalues {eig})")


def _truncated_normal(n: int, outcome: OutcomeSpec, rng: np.random.Generator) -> np.ndarray:
    loc = outcome.adjusted_mean()
    a = (outcome.lower - loc) / outcome.sd
    b = (outcome.upper - loc) / outcome.sd
    draws = sps.truncnorm.rvs(a, b, loc=loc, scale=outcome.sd, size=n, random_state=rng)
    # rvs can land a rounding error outside the support
    return np.clip(np.asarray(draws, dtype=float), outcome.lower, outcome.upper)


def _natural_change(baseline: np.ndarray, outcomes: Sequence[OutcomeSpec], settings: TrialSettings,
                    rng: np.random.Generator) -> np.ndarray:
    n = baseline.shape[0]
    # Direction shared across endpoints, driven by the first (TMT) endpoint
    deviation = (baseline[:, 0] - outcomes[0].mean) / outcomes[0].sd
    prob_regress = expit(2.0 * (deviation + 0.5))
    direction = np.where(rng.random(n) < prob_regress, -1.0, 1.0)

    adj = np.empty_like(baseline)
    for j in range(baseline.shape[1]):
        max_change = settings.natural_change_cap * np.abs(baseline[:, j])
        raw = direction * rng.normal(0.0, max_change / settings.natural_change_damping)
        adj[:, j] = np.clip(raw, -max_change, max_change)
    return adj


def _correlated_errors(n: int, effects: TrueEffects, rng: np.random.Generator) -> np.ndarray:
    s1, s2 = effects.sigmas
    rho = float(effects.rho)
    z = rng.standard_normal((n, 2))
    e1 = s1 * z[:, 0]
    e2 = s2 * (rho * z[:, 0] + np.sqrt(max(0.0, 1.0 - rho * rho)) * z[:, 1])
    return np.column_stack([e1, e2])


def simulate_trial_data(
    n: int,
    outcomes: Sequence[OutcomeSpec] = DEFAULT_OUTCOMES,
    effects: TrueEffects = DEFAULT_EFFECTS,
    settings: TrialSettings = DEFAULT_SETTINGS,
    seed: Optional[int] = None,
) -> TrialDataset:
    """Generate one trial dataset of ``n`` subjects.

    Raises GenerationError for n < 1 or an invalid residual covariance.
    """
    if isinstance(n, bool) or int(n) != n or n < 1:
        raise GenerationError(f"n must be an integer >= 1, got {n!r}")
    n = int(n)
    if len(outcomes) != 2:
        raise GenerationError(f"exactly two outcomes are required, got {len(outcomes)}")
    _check_residual_covariance(effects.covariance(), float(effects.rho))

    rng = np.random.default_rng(seed)

    baseline = np.column_stack([_truncated_normal(n, o, rng) for o in outcomes])
    treat = rng.binomial(1, settings.allocation_ratio, size=n).astype(np.int64)
    adj = _natural_change(baseline, outcomes, settings, rng)

    mu = baseline + adj + np.outer(treat, effects.effects)
    eps = _correlated_errors(n, effects, rng)

    lower = np.array([o.lower for o in outcomes])
    upper = np.array([o.upper for o in outcomes])
    follow_up = np.clip(mu + eps, lower, upper)

    return TrialDataset(
        n=n,
        treat=treat,
        baseline=baseline,
        follow_up=follow_up,
        endpoints=(outcomes[0].name, outcomes[1].name),
    )


def check_dataset(dataset: TrialDataset, outcomes: Sequence[OutcomeSpec] = DEFAULT_OUTCOMES,
                  allocation_ratio: float = DEFAULT_SETTINGS.allocation_ratio) -> Dict[str, object]:
    """Distributional diagnostics for one simulated dataset."""
    res: Dict[str, object] = {"n": dataset.n, "prop_treat": dataset.prop_treated}
    res["treat_ok"] = abs(res["prop_treat"] - allocation_ratio) < 0.1

    in_range = True
    for j, o in enumerate(outcomes):
        base = dataset.baseline[:, j]
        follow = dataset.follow_up[:, j]
        res[f"{o.name}_base_mean"] = float(np.mean(base))
        res[f"{o.name}_base_sd"] = float(np.std(base, ddof=1)) if dataset.n > 1 else float("nan")
        base_ok = bool(np.all((base >= o.lower) & (base <= o.upper)))
        follow_ok = bool(np.all((follow >= o.lower) & (follow <= o.upper)))
        res[f"{o.name}_base_in_range"] = base_ok
        res[f"{o.name}_follow_in_range"] = follow_ok
        in_range = in_range and base_ok and follow_ok

        treated = dataset.treat == 1
        if treated.any() and (~treated).any():
            res[f"crude_{o.name}_effect"] = float(follow[treated].mean() - follow[~treated].mean())
        else:
            res[f"crude_{o.name}_effect"] = float("nan")

    res["in_range"] = in_range
    if dataset.n > 2:
        res["correlation"] = float(np.corrcoef(dataset.follow_up[:, 0], dataset.follow_up[:, 1])[0, 1])
    else:
        res["correlation"] = float("nan")
    return res
