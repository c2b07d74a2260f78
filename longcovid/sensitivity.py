"""
Sensitivity of power / assurance to the assumed treatment effect and to the
design prior.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from longcovid.design_priors import design_prior
from longcovid.operating_characteristics import calculate_assurance, simulate_power
from longcovid.posterior import InferenceEngine
from longcovid.replicates import AggregateResult
from longcovid.trial_spec import DEFAULT_EFFECTS, TrueEffects

logger = logging.getLogger(__name__)

SENSITIVITY_METRICS = ("power", "assurance")


def _row(result: AggregateResult) -> Dict[str, object]:
    return {
        "value": result.estimate if result.defined else np.nan,
        "lower_ci": result.lower_ci if result.defined else np.nan,
        "upper_ci": result.upper_ci if result.defined else np.nan,
        "n_valid": result.n_valid,
        "n_failed": result.n_failed,
    }


def effect_sensitivity(
    n: int,
    effect_sizes: Iterable[float],
    engine: Optional[InferenceEngine] = None,
    n_reps: int = 100,
    *,
    effects: TrueEffects = DEFAULT_EFFECTS,
    **kwargs,
) -> pd.DataFrame:
    """Power at ``n`` for each assumed effect, applied to both endpoints."""
    sizes = [float(e) for e in effect_sizes]
    logger.info("Running effect size sensitivity with %d values...", len(sizes))
    rows = []
    for effect in sizes:
        logger.info("  Effect = %.3f", effect)
        res = simulate_power(n, engine, n_reps, effects=effects.with_effect(effect), **kwargs)
        row = {"effect_size": effect, "n": int(n)}
        row.update(_row(res))
        rows.append(row)
    table = pd.DataFrame(rows)
    return table.rename(columns={"value": "power"})


def prior_grid(
    mean_range: Tuple[float, float] = (-0.5, 0.0),
    sd_range: Tuple[float, float] = (0.1, 0.5),
    n_mean: int = 5,
    n_sd: int = 3,
) -> pd.DataFrame:
    """All combinations of evenly spaced prior means and SDs (means vary fastest)."""
    if n_mean < 1 or n_sd < 1:
        raise ValueError("n_mean and n_sd must be >= 1")
    means = np.linspace(mean_range[0], mean_range[1], n_mean)
    sds = np.linspace(sd_range[0], sd_range[1], n_sd)
    if np.any(sds <= 0):
        raise ValueError(f"prior SDs must be positive, got range {sd_range}")
    mean_col, sd_col = np.meshgrid(means, sds)
    return pd.DataFrame({"prior_mean": mean_col.ravel(), "prior_sd": sd_col.ravel()})


def prior_sensitivity(
    n: int,
    grid: pd.DataFrame,
    engine: Optional[InferenceEngine] = None,
    n_reps: int = 50,
    metric: str = "power",
    *,
    effects: TrueEffects = DEFAULT_EFFECTS,
    **kwargs,
) -> pd.DataFrame:
    """Power or assurance for every (prior_mean, prior_sd) row of ``grid``.

    For power the prior mean is used as the fixed true effect on both endpoints
    (the SD is ignored); for assurance each row becomes a normal design prior.
    """
    if metric not in SENSITIVITY_METRICS:
        raise ValueError(f"metric must be one of {SENSITIVITY_METRICS}, got {metric!r}")
    missing = {"prior_mean", "prior_sd"} - set(grid.columns)
    if missing:
        raise ValueError(f"prior grid is missing columns: {sorted(missing)}")

    total = len(grid)
    logger.info("Running prior sensitivity analysis with %d specifications...", total)
    rows = []
    for i, spec in enumerate(grid.itertuples(index=False), start=1):
        mean, sd = float(spec.prior_mean), float(spec.prior_sd)
        logger.info("  [%d/%d] Prior mean=%.2f, sd=%.2f", i, total, mean, sd)
        if metric == "assurance":
            prior = design_prior("normal", mean=mean, sd=sd)
            res = calculate_assurance(n, prior, engine, n_reps, effects=effects, **kwargs)
        else:
            res = simulate_power(n, engine, n_reps, effects=effects.with_effect(mean), **kwargs)
        row = {"prior_mean": mean, "prior_sd": sd, "n": int(n), "metric": metric}
        row.update(_row(res))
        rows.append(row)
    return pd.DataFrame(rows)


def compare_prior_scenarios(
    n: int,
    scenarios: Mapping[str, Mapping[str, object]],
    engine: Optional[InferenceEngine] = None,
    n_reps: int = 100,
    **kwargs,
) -> pd.DataFrame:
    """Assurance under named design-prior scenarios.

    Each scenario is a mapping of ``design_prior`` arguments, e.g.
    ``{"optimistic": {"mean": -0.3, "sd": 0.1}, "vague": {"distribution": "student_t", "mean": -0.1, "sd": 0.2, "df": 3}}``.
    """
    logger.info("Comparing %d prior scenarios...", len(scenarios))
    rows = []
    for name, scenario in scenarios.items():
        logger.info("  Scenario: %s", name)
        params = dict(scenario)
        params.setdefault("distribution", "normal")
        prior = design_prior(**params)
        res = calculate_assurance(n, prior, engine, n_reps, **kwargs)
        row = {
            "scenario": name,
            "distribution": prior.distribution,
            "prior_mean": prior.mean,
            "prior_sd": prior.sd,
            "n": int(n),
        }
        row.update(_row(res))
        rows.append(row)
    return pd.DataFrame(rows).rename(columns={"value": "assurance"})


def sensitivity_range(table: pd.DataFrame, column: Optional[str] = None) -> Tuple[float, float]:
    """Smallest and largest estimate in a sensitivity table, ignoring undefined rows."""
    if column is None:
        column = next((c for c in ("value", "power", "assurance") if c in table.columns), None)
        if column is None:
            raise ValueError("no estimate column found in sensitivity table")
    values = table[column].dropna()
    if values.empty:
        return float("nan"), float("nan")
    return float(values.min()), float(values.max())
