"""
Replicate evaluation and aggregation.

One replicate = simulate a dataset, fit it, compute the decision probability
and classify the trial as success / failure / invalid (engine failed). Many
replicates are reduced to a rate with a Wilson score interval; invalid
replicates are dropped from the denominator and reported as a failure count.

Decision rules
--------------
- "average": mean of the two per-endpoint probabilities of benefit (default)
- "joint":   joint posterior probability that both effects favour treatment
- "both":    each endpoint's probability of benefit must reach the threshold

Replicates run serially or in chunks on a process pool (thread pool when
processes are not allowed). Every replicate gets its own seed up-front, so the
outcome multiset does not depend on n_jobs or chunk_size.
"""

from __future__ import annotations

import logging
import math
import os
import warnings
from collections import Counter
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import scipy.stats as sps

from longcovid.data_generator import TrialDataset, simulate_trial_data
from longcovid.posterior import EngineFailure, InferenceEngine, PosteriorSummary
from longcovid.trial_spec import (
    DEFAULT_OUTCOMES,
    DEFAULT_SETTINGS,
    OutcomeSpec,
    TrialSettings,
    TrueEffects,
    validate_probability,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 16
DECISION_RULES = ("average", "joint", "both")


class ReplicateOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    INVALID = "invalid"


# ---------- Decision rules ----------

def decision_probability(summary: PosteriorSummary, rule: str = "average") -> float:
    """Probability compared against the decision threshold under ``rule``."""
    if rule == "average":
        return summary.prob_combined
    if rule == "joint":
        return summary.prob_joint
    if rule == "both":
        return min(summary.prob_benefit)
    raise ValueError(f"unknown decision rule {rule!r}; expected one of {DECISION_RULES}")


def classify(summary: PosteriorSummary, decision_threshold: float, rule: str = "average") -> ReplicateOutcome:
    if decision_probability(summary, rule) >= decision_threshold:
        return ReplicateOutcome.SUCCESS
    return ReplicateOutcome.FAILURE


def evaluate_trial(
    dataset: TrialDataset,
    decision_threshold: float,
    engine: InferenceEngine,
    *,
    rule: str = "average",
    seed: Optional[int] = None,
) -> ReplicateOutcome:
    """Fit one dataset and classify it; engine failures become INVALID."""
    validate_probability(decision_threshold, "decision_threshold")
    try:
        result = engine.fit(dataset, seed=seed)
    except Exception as exc:
        logger.warning("Inference engine raised for n=%d seed=%s: %s", dataset.n, seed, exc)
        return ReplicateOutcome.INVALID
    if isinstance(result, EngineFailure):
        logger.debug("Inference engine failed for n=%d seed=%s: %s", dataset.n, seed, result.reason)
        return ReplicateOutcome.INVALID
    return classify(result, decision_threshold, rule)


# ---------- Aggregation ----------

@dataclass(frozen=True)
class AggregateResult:
    n: Optional[int]
    estimate: Optional[float]   # None when no replicate was valid
    lower_ci: Optional[float]
    upper_ci: Optional[float]
    successes: int
    n_valid: int
    n_failed: int
    conf_level: float = 0.95
    metric: str = "power"

    @property
    def defined(self) -> bool:
        return self.estimate is not None

    @property
    def n_reps(self) -> int:
        return self.n_valid + self.n_failed

    def valid_label(self) -> str:
        return f"{self.n_valid}/{self.n_reps} valid"

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "AggregateResult":
        return cls(**data)

    def __str__(self) -> str:
        label = f"N = {self.n}" if self.n is not None else "N = ?"
        if not self.defined:
            return f"{label}: {self.metric} undefined ({self.valid_label()})"
        return (f"{label}: {self.metric} = {self.estimate:.3f} "
                f"[{self.lower_ci:.3f}, {self.upper_ci:.3f}] ({self.valid_label()})")


def _z_two_sided(conf_level: float) -> float:
    return float(sps.norm.ppf(1.0 - (1.0 - conf_level) / 2.0))


def wilson_interval(successes: int, n_valid: int, conf_level: float = 0.95) -> Tuple[float, float]:
    """Wilson score interval for the binomial proportion successes/n_valid."""
    if n_valid <= 0:
        raise ValueError("Wilson interval needs at least one valid trial")
    if not (0 <= successes <= n_valid):
        raise ValueError(f"successes must lie in [0, {n_valid}], got {successes}")
    validate_probability(conf_level, "conf_level", allow_zero=False, allow_one=False)
    z = _z_two_sided(conf_level)
    phat = successes / n_valid
    denom = 1.0 + (z * z) / n_valid
    center = (phat + (z * z) / (2.0 * n_valid)) / denom
    half = (z / denom) * math.sqrt(max(0.0, phat * (1.0 - phat) / n_valid + (z * z) / (4.0 * n_valid * n_valid)))
    # Clamp so rounding never breaks 0 <= lower <= phat <= upper <= 1
    low = min(phat, max(0.0, center - half))
    high = max(phat, min(1.0, center + half))
    return low, high


def aggregate(
    outcomes: Iterable[Union[ReplicateOutcome, str]],
    conf_level: float = 0.95,
    *,
    n: Optional[int] = None,
    metric: str = "power",
) -> AggregateResult:
    """Reduce replicate outcomes to a rate with a Wilson interval.

    Order-independent: only the counts of each outcome matter.
    """
    counts = Counter(ReplicateOutcome(o) for o in outcomes)
    successes = counts[ReplicateOutcome.SUCCESS]
    n_valid = successes + counts[ReplicateOutcome.FAILURE]
    n_failed = counts[ReplicateOutcome.INVALID]

    if n_valid == 0:
        warnings.warn(
            f"All {n_failed} replicates failed for n = {n}; {metric} is undefined",
            RuntimeWarning,
            stacklevel=2,
        )
        return AggregateResult(n=n, estimate=None, lower_ci=None, upper_ci=None, successes=0,
                               n_valid=0, n_failed=n_failed, conf_level=conf_level, metric=metric)

    if n_failed:
        logger.warning("%d/%d replicates failed for n = %s", n_failed, n_valid + n_failed, n)
    low, high = wilson_interval(successes, n_valid, conf_level)
    return AggregateResult(
        n=n,
        estimate=successes / n_valid,
        lower_ci=low,
        upper_ci=high,
        successes=successes,
        n_valid=n_valid,
        n_failed=n_failed,
        conf_level=conf_level,
        metric=metric,
    )


def results_frame(results: Sequence[AggregateResult]) -> pd.DataFrame:
    """Tabulate aggregate results (one row per sample size)."""
    rows = []
    for r in results:
        rows.append({
            "n": r.n,
            r.metric: r.estimate if r.defined else np.nan,
            "lower_ci": r.lower_ci if r.defined else np.nan,
            "upper_ci": r.upper_ci if r.defined else np.nan,
            "successes": r.successes,
            "n_valid": r.n_valid,
            "n_failed": r.n_failed,
        })
    return pd.DataFrame(rows)


# ---------- Batch execution ----------

@dataclass(frozen=True)
class _ReplicateTask:
    index: int
    seed: int
    effects: TrueEffects


@dataclass(frozen=True)
class _ChunkPayload:
    n: int
    tasks: Tuple[_ReplicateTask, ...]
    outcomes: Tuple[OutcomeSpec, ...]
    settings: TrialSettings
    engine: InferenceEngine
    decision_threshold: float
    rule: str


def _resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """Translate user-provided n_jobs into an actual worker count."""
    if n_jobs is None:
        return 1
    if n_jobs == 0:
        return 1
    if n_jobs < 0:
        cpu = os.cpu_count() or 1
        # Example: -1 -> cpu, -2 -> cpu-1
        target = cpu + 1 + n_jobs
        return max(1, target)
    return max(1, int(n_jobs))


def chunked(items: Sequence, chunk_size: Optional[int]) -> List[Tuple]:
    if chunk_size is None or chunk_size <= 0:
        chunk_size = DEFAULT_CHUNK_SIZE
    return [tuple(items[i:i + chunk_size]) for i in range(0, len(items), chunk_size)]


def replicate_seeds(base_seed: Optional[int], count: int) -> List[int]:
    """Independent per-replicate seeds derived from one base seed."""
    if count <= 0:
        return []
    rng = np.random.default_rng(base_seed)
    seeds = rng.integers(0, 2**63 - 1, size=count, dtype=np.int64)
    # Python ints for pickle friendliness
    return [int(s) for s in seeds]


def _run_chunk(payload: _ChunkPayload) -> List[Tuple[int, ReplicateOutcome]]:
    out = []
    for task in payload.tasks:
        data = simulate_trial_data(payload.n, payload.outcomes, task.effects, payload.settings, seed=task.seed)
        outcome = evaluate_trial(data, payload.decision_threshold, payload.engine,
                                 rule=payload.rule, seed=task.seed)
        out.append((task.index, outcome))
    return out


def map_chunks(func, payloads: Sequence, n_jobs: Optional[int] = None) -> List:
    """Apply ``func`` to every payload, in a process pool when n_jobs > 1.

    Falls back to threads when the platform refuses to start processes.
    Results come back in payload order.
    """
    worker_count = _resolve_n_jobs(n_jobs)
    if worker_count <= 1 or len(payloads) <= 1:
        return [func(p) for p in payloads]

    max_workers = min(worker_count, len(payloads)) or 1
    try:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(func, payloads))
    except (PermissionError, NotImplementedError, OSError):
        logger.info("Process pool unavailable; falling back to %d threads", max_workers)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(func, payloads))


def run_replicates(
    n: int,
    n_reps: int,
    engine: InferenceEngine,
    *,
    effects: Union[TrueEffects, Sequence[TrueEffects]],
    outcomes: Sequence[OutcomeSpec] = DEFAULT_OUTCOMES,
    settings: TrialSettings = DEFAULT_SETTINGS,
    decision_threshold: Optional[float] = None,
    rule: Optional[str] = None,
    base_seed: Optional[int] = 1234,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> List[ReplicateOutcome]:
    """Evaluate ``n_reps`` independent replicates at sample size ``n``.

    ``effects`` is either one configuration shared by all replicates or one
    configuration per replicate (design-prior draws). Returned outcomes are in
    replicate order.
    """
    if n_reps <= 0:
        raise ValueError("n_reps must be a positive integer")
    if isinstance(effects, TrueEffects):
        per_rep = [effects] * n_reps
    else:
        per_rep = list(effects)
        if len(per_rep) != n_reps:
            raise ValueError(f"expected {n_reps} effect configurations, got {len(per_rep)}")
    threshold = settings.efficacy_threshold if decision_threshold is None else float(decision_threshold)
    validate_probability(threshold, "decision_threshold")
    rule = settings.decision_rule if rule is None else rule
    if rule not in DECISION_RULES:
        raise ValueError(f"unknown decision rule {rule!r}; expected one of {DECISION_RULES}")

    seeds = replicate_seeds(base_seed, n_reps)
    tasks = [_ReplicateTask(index=i, seed=seeds[i], effects=per_rep[i]) for i in range(n_reps)]
    payloads = [
        _ChunkPayload(
            n=int(n),
            tasks=chunk,
            outcomes=tuple(outcomes),
            settings=settings,
            engine=engine,
            decision_threshold=threshold,
            rule=rule,
        )
        for chunk in chunked(tasks, chunk_size)
    ]

    ordered: List[Optional[ReplicateOutcome]] = [None] * n_reps
    for chunk_result in map_chunks(_run_chunk, payloads, n_jobs=n_jobs):
        for index, outcome in chunk_result:
            ordered[index] = outcome
    return ordered
