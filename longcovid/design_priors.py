"""
Design priors for assurance.

A design prior expresses genuine uncertainty about the TRUE treatment effect.
Drawing one effect per replicate before simulating data turns the success
rate into assurance (power averaged over the prior) instead of power at a
fixed effect. It is separate from the analysis prior used when fitting.

Supported families: normal, Student-t (location-scale) and uniform. The
family is chosen once, when the prior is constructed.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import scipy.stats as sps

from longcovid.trial_spec import validate_positive


class DesignPrior(ABC):
    """Base class: a distribution over one scalar true effect."""

    distribution: str = ""

    @property
    @abstractmethod
    def mean(self) -> float:
        ...

    @property
    @abstractmethod
    def sd(self) -> float:
        ...

    @abstractmethod
    def _frozen(self):
        """Frozen scipy.stats distribution."""

    def sample(self, count: int, seed: Optional[int] = None) -> np.ndarray:
        if count < 0:
            raise ValueError(f"count must be >= 0, got {count}")
        rng = np.random.default_rng(seed)
        return np.asarray(self._frozen().rvs(size=count, random_state=rng), dtype=float).reshape(count)

    def interval(self, level: float = 0.95) -> Tuple[float, float]:
        lo, hi = self._frozen().interval(level)
        return float(lo), float(hi)


@dataclass(frozen=True)
class NormalPrior(DesignPrior):
    location: float
    scale: float
    distribution: str = "normal"

    def __post_init__(self):
        validate_positive(self.scale, "scale")

    @property
    def mean(self) -> float:
        return float(self.location)

    @property
    def sd(self) -> float:
        return float(self.scale)

    def _frozen(self):
        return sps.norm(loc=self.location, scale=self.scale)


@dataclass(frozen=True)
class StudentTPrior(DesignPrior):
    location: float
    scale: float
    df: float
    distribution: str = "student_t"

    def __post_init__(self):
        validate_positive(self.scale, "scale")
        validate_positive(self.df, "df")

    @property
    def mean(self) -> float:
        return float(self.location) if self.df > 1 else float("nan")

    @property
    def sd(self) -> float:
        if self.df <= 2:
            return float("inf")
        return float(self.scale * math.sqrt(self.df / (self.df - 2.0)))

    def _frozen(self):
        return sps.t(df=self.df, loc=self.location, scale=self.scale)


@dataclass(frozen=True)
class UniformPrior(DesignPrior):
    lower: float
    upper: float
    distribution: str = "uniform"

    def __post_init__(self):
        if not (self.lower < self.upper):
            raise ValueError(f"uniform prior needs lower < upper, got [{self.lower}, {self.upper}]")

    @property
    def mean(self) -> float:
        return (self.lower + self.upper) / 2.0

    @property
    def sd(self) -> float:
        return (self.upper - self.lower) / math.sqrt(12.0)

    def _frozen(self):
        return sps.uniform(loc=self.lower, scale=self.upper - self.lower)


def design_prior(distribution: str = "normal", mean: float = 0.0, sd: float = 1.0,
                 df: Optional[float] = None, lower: Optional[float] = None,
                 upper: Optional[float] = None) -> DesignPrior:
    """Construct a design prior by family name."""
    if distribution == "normal":
        return NormalPrior(location=float(mean), scale=float(sd))
    if distribution == "student_t":
        if df is None:
            raise ValueError("df required for student_t distribution")
        return StudentTPrior(location=float(mean), scale=float(sd), df=float(df))
    if distribution == "uniform":
        if lower is None or upper is None:
            raise ValueError("lower and upper required for uniform distribution")
        return UniformPrior(lower=float(lower), upper=float(upper))
    raise ValueError(f"Unknown distribution: {distribution}")


def combined_design_prior(tmt_effect: float = -0.10, tmt_sd: float = 0.05,
                          mfis_effect: float = -0.20, mfis_sd: float = 0.10) -> NormalPrior:
    """Single normal prior for the joint effect of the two co-primary endpoints.

    Mean is the average of the two means; variance is (var1 + var2) / 4,
    treating the endpoint effects as independent.
    """
    combined_mean = (tmt_effect + mfis_effect) / 2.0
    combined_sd = math.sqrt((tmt_sd ** 2 + mfis_sd ** 2) / 4.0)
    return NormalPrior(location=combined_mean, scale=combined_sd)


def default_design_priors() -> Dict[str, NormalPrior]:
    """Endpoint-specific priors from pilot data and clinical judgement."""
    return {
        "tmt": NormalPrior(location=-0.10, scale=0.05),
        "mfis": NormalPrior(location=-3.0, scale=1.5),
    }


def compare_priors(design: DesignPrior, analysis_mean: float, analysis_sd: float) -> Dict[str, float]:
    return {
        "design_mean": design.mean,
        "design_sd": design.sd,
        "analysis_mean": float(analysis_mean),
        "analysis_sd": float(analysis_sd),
        "mean_difference": design.mean - float(analysis_mean),
        "sd_ratio": design.sd / float(analysis_sd),
    }
