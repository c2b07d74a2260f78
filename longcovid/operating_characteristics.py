"""
Power, Type I error and assurance by Monte Carlo.

All three are the same computation with different true effects:

- power:       the configured effects
- Type I error: every treatment effect set to zero
- assurance:   one effect per replicate drawn from a design prior and applied
               to both endpoints

The effects are always passed explicitly to the replicate runner; nothing
global is modified, so the batches are safe to run in parallel.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

import pandas as pd

from longcovid.design_priors import DesignPrior
from longcovid.posterior import AncovaPosteriorEngine, InferenceEngine
from longcovid.replicates import AggregateResult, aggregate, results_frame, run_replicates
from longcovid.result_cache import ResultCache, cache_key
from longcovid.trial_spec import (
    DEFAULT_EFFECTS,
    DEFAULT_OUTCOMES,
    DEFAULT_SETTINGS,
    OutcomeSpec,
    TrialSettings,
    TrueEffects,
)

logger = logging.getLogger(__name__)

POWER_SEED = 1234
TYPE1_SEED = 5000
ASSURANCE_SEED = 1234
PRIOR_DRAW_SEED = 42


def _cached(cache: Optional[ResultCache], key: str, compute) -> AggregateResult:
    if cache is not None:
        hit = cache.get(key)
        if hit is not None:
            logger.info("Using cached result %s", key)
            return hit
    result = compute()
    if cache is not None:
        cache.put(key, result)
    return result


def simulate_power(
    n: int,
    engine: Optional[InferenceEngine] = None,
    n_reps: Optional[int] = None,
    *,
    effects: TrueEffects = DEFAULT_EFFECTS,
    outcomes: Sequence[OutcomeSpec] = DEFAULT_OUTCOMES,
    settings: TrialSettings = DEFAULT_SETTINGS,
    decision_threshold: Optional[float] = None,
    rule: Optional[str] = None,
    base_seed: Optional[int] = POWER_SEED,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    cache: Optional[ResultCache] = None,
    metric: str = "power",
) -> AggregateResult:
    """Monte Carlo success rate at sample size ``n`` under fixed true effects."""
    engine = engine if engine is not None else AncovaPosteriorEngine()
    n_reps = settings.n_reps if n_reps is None else int(n_reps)
    threshold = settings.efficacy_threshold if decision_threshold is None else float(decision_threshold)
    rule = settings.decision_rule if rule is None else rule

    def compute() -> AggregateResult:
        logger.info("Estimating %s for N = %d with %d replications...", metric, n, n_reps)
        outcomes_list = run_replicates(
            n, n_reps, engine,
            effects=effects,
            outcomes=outcomes,
            settings=settings,
            decision_threshold=threshold,
            rule=rule,
            base_seed=base_seed,
            n_jobs=n_jobs,
            chunk_size=chunk_size,
        )
        result = aggregate(outcomes_list, settings.conf_level, n=int(n), metric=metric)
        logger.info("%s", result)
        return result

    key = cache_key(metric, n, n_reps=n_reps, threshold=threshold, rule=rule, seed=base_seed,
                    effects=effects, outcomes=tuple(outcomes), settings=settings, engine=engine)
    return _cached(cache, key, compute)


def power_curve(
    sample_sizes: Optional[Iterable[int]] = None,
    engine: Optional[InferenceEngine] = None,
    n_reps: Optional[int] = None,
    *,
    settings: TrialSettings = DEFAULT_SETTINGS,
    **kwargs,
) -> List[AggregateResult]:
    """Power at each sample size of the grid (settings.sample_sizes by default)."""
    sizes = list(settings.sample_sizes if sample_sizes is None else sample_sizes)
    logger.info("Estimating power curve for %d sample sizes...", len(sizes))
    return [simulate_power(int(n), engine, n_reps, settings=settings, **kwargs) for n in sizes]


def estimate_type1_error(
    n: int,
    engine: Optional[InferenceEngine] = None,
    n_reps: int = 500,
    decision_threshold: Optional[float] = None,
    *,
    effects: TrueEffects = DEFAULT_EFFECTS,
    base_seed: Optional[int] = TYPE1_SEED,
    **kwargs,
) -> AggregateResult:
    """False-positive rate at ``n``: the success rate with every effect set to zero."""
    return simulate_power(
        n, engine, n_reps,
        effects=effects.null(),
        decision_threshold=decision_threshold,
        base_seed=base_seed,
        metric="type1_error",
        **kwargs,
    )


def type1_curve(
    sample_sizes: Iterable[int],
    engine: Optional[InferenceEngine] = None,
    n_reps: int = 500,
    decision_threshold: Optional[float] = None,
    **kwargs,
) -> List[AggregateResult]:
    return [estimate_type1_error(int(n), engine, n_reps, decision_threshold, **kwargs) for n in sample_sizes]


def calculate_assurance(
    n: int,
    design_prior: DesignPrior,
    engine: Optional[InferenceEngine] = None,
    n_reps: Optional[int] = None,
    *,
    effects: TrueEffects = DEFAULT_EFFECTS,
    outcomes: Sequence[OutcomeSpec] = DEFAULT_OUTCOMES,
    settings: TrialSettings = DEFAULT_SETTINGS,
    decision_threshold: Optional[float] = None,
    rule: Optional[str] = None,
    prior_seed: Optional[int] = PRIOR_DRAW_SEED,
    base_seed: Optional[int] = ASSURANCE_SEED,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    cache: Optional[ResultCache] = None,
) -> AggregateResult:
    """Success rate averaged over the design prior (assurance).

    One effect is drawn per replicate and applied to both endpoints; residual
    SDs and correlation come from ``effects``.
    """
    engine = engine if engine is not None else AncovaPosteriorEngine()
    n_reps = settings.n_reps if n_reps is None else int(n_reps)
    threshold = settings.efficacy_threshold if decision_threshold is None else float(decision_threshold)
    rule = settings.decision_rule if rule is None else rule

    def compute() -> AggregateResult:
        logger.info("Calculating assurance for N = %d...", n)
        draws = design_prior.sample(n_reps, seed=prior_seed)
        per_rep = [effects.with_effect(float(d)) for d in draws]
        outcomes_list = run_replicates(
            n, n_reps, engine,
            effects=per_rep,
            outcomes=outcomes,
            settings=settings,
            decision_threshold=threshold,
            rule=rule,
            base_seed=base_seed,
            n_jobs=n_jobs,
            chunk_size=chunk_size,
        )
        result = aggregate(outcomes_list, settings.conf_level, n=int(n), metric="assurance")
        logger.info("%s", result)
        return result

    key = cache_key("assurance", n, n_reps=n_reps, threshold=threshold, rule=rule, seed=base_seed,
                    prior_seed=prior_seed, prior=design_prior, effects=effects,
                    outcomes=tuple(outcomes), settings=settings, engine=engine)
    return _cached(cache, key, compute)


def assurance_curve(
    sample_sizes: Iterable[int],
    design_prior: DesignPrior,
    engine: Optional[InferenceEngine] = None,
    n_reps: Optional[int] = None,
    **kwargs,
) -> List[AggregateResult]:
    sizes = list(sample_sizes)
    logger.info("Estimating assurance curve for %d sample sizes...", len(sizes))
    return [calculate_assurance(int(n), design_prior, engine, n_reps, **kwargs) for n in sizes]


def operating_characteristics(
    power: Sequence[AggregateResult],
    assurance: Optional[Sequence[AggregateResult]] = None,
    type1: Optional[Sequence[AggregateResult]] = None,
) -> pd.DataFrame:
    """Power, assurance and Type I error side by side, joined on sample size."""
    table = results_frame(power)[["n", "power", "lower_ci", "upper_ci", "n_valid"]]
    table = table.rename(columns={"lower_ci": "power_lower", "upper_ci": "power_upper",
                                  "n_valid": "power_n_valid"})
    for label, results, column in (("assurance", assurance, "assurance"), ("type1", type1, "type1_error")):
        if results is None:
            continue
        other = results_frame(results)[["n", column, "lower_ci", "upper_ci"]]
        other = other.rename(columns={"lower_ci": f"{label}_lower", "upper_ci": f"{label}_upper"})
        table = table.merge(other, on="n", how="left")
    return table
