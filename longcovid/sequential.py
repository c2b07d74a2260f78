"""
Trials with interim analyses.

At each scheduled sample size (ascending) the cumulative dataset is
simulated afresh and fitted, then the stopping rule is applied:

- efficacy:  BOTH endpoints have P(benefit) > efficacy threshold
- futility:  EITHER endpoint has P(benefit) < futility threshold
- model failed: the look is recorded and the trial continues
- otherwise continue

A trial that reaches the last look without stopping is classified as success
or failure from the combined probability at that look; if the final look
itself could not be fitted the trial ends as "model-failed".
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from longcovid.data_generator import simulate_trial_data
from longcovid.posterior import AncovaPosteriorEngine, EngineFailure, InferenceEngine
from longcovid.replicates import chunked, decision_probability, map_chunks, replicate_seeds
from longcovid.trial_spec import (
    DEFAULT_EFFECTS,
    DEFAULT_OUTCOMES,
    DEFAULT_SETTINGS,
    OutcomeSpec,
    TrialSettings,
    TrueEffects,
)

logger = logging.getLogger(__name__)

SEQUENTIAL_SEED = 1000


class LookDecision(str, Enum):
    CONTINUE = "continue"
    EFFICACY = "efficacy-stop"
    FUTILITY = "futility-stop"
    MODEL_FAILED = "model-failed"


class StopReason(str, Enum):
    EFFICACY = "efficacy-stop"
    FUTILITY = "futility-stop"
    SUCCESS = "success"
    FAILURE = "failure"
    MODEL_FAILED = "model-failed"


@dataclass(frozen=True)
class InterimLook:
    n: int
    prob_benefit: Optional[Tuple[float, float]]
    prob_combined: Optional[float]
    decision: LookDecision


@dataclass(frozen=True)
class SequentialRun:
    looks: Tuple[InterimLook, ...]
    stop_n: int
    stop_reason: StopReason
    stopped_early: bool
    schedule: Tuple[int, ...]


def evaluate_stopping_rule(prob_a: float, prob_b: float, efficacy_threshold: float = 0.95,
                           futility_threshold: float = 0.10) -> LookDecision:
    if prob_a > efficacy_threshold and prob_b > efficacy_threshold:
        return LookDecision.EFFICACY
    if prob_a < futility_threshold or prob_b < futility_threshold:
        return LookDecision.FUTILITY
    return LookDecision.CONTINUE


def _validate_schedule(schedule: Sequence[int]) -> Tuple[int, ...]:
    sizes = tuple(int(n) for n in schedule)
    if not sizes:
        raise ValueError("interim schedule is empty")
    if sizes[0] < 1 or any(b <= a for a, b in zip(sizes, sizes[1:])):
        raise ValueError(f"interim schedule must be strictly ascending positive sizes, got {sizes}")
    return sizes


def run_sequential_trial(
    engine: Optional[InferenceEngine] = None,
    schedule: Optional[Sequence[int]] = None,
    *,
    effects: TrueEffects = DEFAULT_EFFECTS,
    outcomes: Sequence[OutcomeSpec] = DEFAULT_OUTCOMES,
    settings: TrialSettings = DEFAULT_SETTINGS,
    final_threshold: Optional[float] = None,
    seed: Optional[int] = None,
) -> SequentialRun:
    """Simulate one trial through its interim looks."""
    engine = engine if engine is not None else AncovaPosteriorEngine()
    sizes = _validate_schedule(settings.interim_schedule() if schedule is None else schedule)
    final_threshold = settings.efficacy_threshold if final_threshold is None else float(final_threshold)

    looks: List[InterimLook] = []
    for n in sizes:
        # Cumulative data up to n, regenerated from the trial seed
        data = simulate_trial_data(n, outcomes, effects, settings, seed=seed)
        try:
            fitted = engine.fit(data, seed=seed)
        except Exception as exc:
            logger.warning("Inference engine raised at interim n=%d seed=%s: %s", n, seed, exc)
            fitted = EngineFailure(str(exc))

        if isinstance(fitted, EngineFailure):
            warnings.warn(f"Model failed at interim n={n}: {fitted.reason}", RuntimeWarning, stacklevel=2)
            looks.append(InterimLook(n=n, prob_benefit=None, prob_combined=None,
                                     decision=LookDecision.MODEL_FAILED))
            continue

        prob_a, prob_b = fitted.prob_benefit
        decision = evaluate_stopping_rule(prob_a, prob_b, settings.efficacy_threshold, settings.futility_threshold)
        looks.append(InterimLook(n=n, prob_benefit=(prob_a, prob_b),
                                 prob_combined=decision_probability(fitted, "average"), decision=decision))
        if decision in (LookDecision.EFFICACY, LookDecision.FUTILITY):
            return SequentialRun(looks=tuple(looks), stop_n=n, stop_reason=StopReason(decision.value),
                                 stopped_early=True, schedule=sizes)

    final = looks[-1]
    if final.prob_combined is None:
        reason = StopReason.MODEL_FAILED
    elif final.prob_combined >= final_threshold:
        reason = StopReason.SUCCESS
    else:
        reason = StopReason.FAILURE
    return SequentialRun(looks=tuple(looks), stop_n=sizes[-1], stop_reason=reason,
                         stopped_early=False, schedule=sizes)


@dataclass(frozen=True)
class _SequentialPayload:
    seeds: Tuple[int, ...]
    engine: InferenceEngine
    schedule: Tuple[int, ...]
    effects: TrueEffects
    outcomes: Tuple[OutcomeSpec, ...]
    settings: TrialSettings
    final_threshold: Optional[float]


def _run_sequential_chunk(payload: _SequentialPayload) -> List[SequentialRun]:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        return [
            run_sequential_trial(payload.engine, payload.schedule, effects=payload.effects,
                                 outcomes=payload.outcomes, settings=payload.settings,
                                 final_threshold=payload.final_threshold, seed=s)
            for s in payload.seeds
        ]


def simulate_sequential_trials(
    engine: Optional[InferenceEngine] = None,
    n_reps: int = 100,
    schedule: Optional[Sequence[int]] = None,
    *,
    effects: TrueEffects = DEFAULT_EFFECTS,
    outcomes: Sequence[OutcomeSpec] = DEFAULT_OUTCOMES,
    settings: TrialSettings = DEFAULT_SETTINGS,
    final_threshold: Optional[float] = None,
    base_seed: Optional[int] = SEQUENTIAL_SEED,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> List[SequentialRun]:
    """Run ``n_reps`` independent sequential trials (in parallel when n_jobs > 1)."""
    if n_reps <= 0:
        raise ValueError("n_reps must be a positive integer")
    engine = engine if engine is not None else AncovaPosteriorEngine()
    sizes = _validate_schedule(settings.interim_schedule() if schedule is None else schedule)
    logger.info("Simulating %d trials with interim analyses at %s...", n_reps, sizes)

    payloads = [
        _SequentialPayload(seeds=chunk, engine=engine, schedule=sizes, effects=effects,
                           outcomes=tuple(outcomes), settings=settings, final_threshold=final_threshold)
        for chunk in chunked(replicate_seeds(base_seed, n_reps), chunk_size)
    ]
    runs: List[SequentialRun] = []
    for chunk_runs in map_chunks(_run_sequential_chunk, payloads, n_jobs=n_jobs):
        runs.extend(chunk_runs)

    failed_looks = sum(1 for r in runs for look in r.looks if look.decision == LookDecision.MODEL_FAILED)
    if failed_looks:
        warnings.warn(f"{failed_looks} interim look(s) failed to fit across {n_reps} trials",
                      RuntimeWarning, stacklevel=2)
    return runs


@dataclass(frozen=True)
class SequentialSummary:
    n_reps: int
    prob_efficacy: float
    prob_futility: float
    prob_success: float          # efficacy stop or success at the final look
    prob_stopped_early: float
    prob_model_failed: float
    reason_counts: Dict[str, int]
    mean_n: float
    median_n: float
    sd_n: float
    stopping_by_stage: pd.DataFrame

    def __str__(self) -> str:
        lines = [
            f"Trials: {self.n_reps}",
            f"  Efficacy (early stop): {self.prob_efficacy:.1%}",
            f"  Futility (early stop): {self.prob_futility:.1%}",
            f"  Overall success: {self.prob_success:.1%}",
            f"  Stopped early: {self.prob_stopped_early:.1%}",
            f"  Sample size: mean {self.mean_n:.1f}, median {self.median_n:.0f}, SD {self.sd_n:.1f}",
        ]
        for row in self.stopping_by_stage.itertuples(index=False):
            lines.append(f"  N = {row.n:3d}: {row.prop_stopped:.1%} stopped (cumulative: {row.cumulative:.1%})")
        return "\n".join(lines)


def summarize_sequential(runs: Sequence[SequentialRun]) -> SequentialSummary:
    """Stopping probabilities, sample-size distribution and per-stage stopping table."""
    if not runs:
        raise ValueError("no sequential runs to summarize")
    schedule = runs[0].schedule
    if any(r.schedule != schedule for r in runs):
        raise ValueError("all runs must share the same interim schedule")

    total = len(runs)
    reasons = [r.stop_reason for r in runs]
    stop_ns = np.array([r.stop_n for r in runs], dtype=float)
    counts = {reason.value: sum(1 for x in reasons if x == reason) for reason in StopReason}

    by_stage = np.array([np.sum(stop_ns == n) for n in schedule], dtype=float) / total
    stage_table = pd.DataFrame({
        "n": list(schedule),
        "prop_stopped": by_stage,
        "cumulative": np.cumsum(by_stage),
    })

    return SequentialSummary(
        n_reps=total,
        prob_efficacy=counts[StopReason.EFFICACY.value] / total,
        prob_futility=counts[StopReason.FUTILITY.value] / total,
        prob_success=(counts[StopReason.EFFICACY.value] + counts[StopReason.SUCCESS.value]) / total,
        prob_stopped_early=sum(1 for r in runs if r.stopped_early) / total,
        prob_model_failed=counts[StopReason.MODEL_FAILED.value] / total,
        reason_counts=counts,
        mean_n=float(np.mean(stop_ns)),
        median_n=float(np.median(stop_ns)),
        sd_n=float(np.std(stop_ns, ddof=1)) if total > 1 else float("nan"),
        stopping_by_stage=stage_table,
    )
