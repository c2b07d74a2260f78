"""
Posterior summaries and the inference-engine boundary.

The simulation core only needs, per fitted replicate, the posterior
probability that each treatment effect is below zero (both endpoints are
lower-is-better) and the joint probability that both are. Any engine that
implements ``fit(dataset, seed)`` and returns a ``PosteriorSummary`` or an
``EngineFailure`` can be plugged in (an MCMC backend, a cached lookup, a
test stub).

``AncovaPosteriorEngine`` is the bundled engine: an ANCOVA per endpoint
(follow-up ~ 1 + baseline + treat) fitted with statsmodels OLS, and a
bivariate normal posterior for the two treatment coefficients built from the
residual cross-covariance (flat prior by default, optionally combined with a
normal analysis prior). Draws are taken with the replicate seed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm

from longcovid.data_generator import TrialDataset
from longcovid.trial_spec import validate_positive


@dataclass(frozen=True)
class PosteriorSummary:
    endpoints: Tuple[str, str]
    prob_benefit: Tuple[float, float]   # P(effect < 0 | data) per endpoint
    prob_joint: float                   # P(both effects < 0 | data)
    draws: Optional[np.ndarray] = None  # shape (n_draws, 2), treatment-effect draws

    def __post_init__(self):
        if len(self.prob_benefit) != 2:
            raise ValueError("prob_benefit needs one probability per endpoint")
        for p in tuple(self.prob_benefit) + (self.prob_joint,):
            if not (0.0 <= p <= 1.0):
                raise ValueError(f"posterior probabilities must lie in [0, 1], got {p}")

    @property
    def prob_combined(self) -> float:
        """Average of the two per-endpoint probabilities of benefit."""
        return (self.prob_benefit[0] + self.prob_benefit[1]) / 2.0

    @classmethod
    def from_draws(cls, draws: np.ndarray, endpoints: Sequence[str] = ("tmt", "mfis")) -> "PosteriorSummary":
        draws = np.asarray(draws, dtype=float)
        if draws.ndim != 2 or draws.shape[1] != 2 or draws.shape[0] == 0:
            raise ValueError(f"draws must have shape (n_draws, 2), got {draws.shape}")
        below = draws < 0.0
        return cls(
            endpoints=(str(endpoints[0]), str(endpoints[1])),
            prob_benefit=(float(below[:, 0].mean()), float(below[:, 1].mean())),
            prob_joint=float(np.all(below, axis=1).mean()),
            draws=draws,
        )

    def summary_frame(self) -> pd.DataFrame:
        rows = []
        for j, name in enumerate(self.endpoints):
            row = {"outcome": name.upper(), "prob_benefit": self.prob_benefit[j]}
            if self.draws is not None:
                d = self.draws[:, j]
                row.update({
                    "mean": float(np.mean(d)),
                    "sd": float(np.std(d, ddof=1)) if len(d) > 1 else float("nan"),
                    "q025": float(np.quantile(d, 0.025)),
                    "q975": float(np.quantile(d, 0.975)),
                })
            rows.append(row)
        return pd.DataFrame(rows)


@dataclass(frozen=True)
class EngineFailure:
    reason: str


FitResult = Union[PosteriorSummary, EngineFailure]


class InferenceEngine(Protocol):
    def fit(self, dataset: TrialDataset, seed: Optional[int] = None) -> FitResult:
        ...


# ---------- Analysis priors ----------

_ANALYSIS_PRIOR_SD = {
    "weakly_informative": 2.0,
    "skeptical": 0.5,
    "informative": 0.3,
}


@dataclass(frozen=True)
class AnalysisPrior:
    """Normal prior on a treatment effect, used when fitting (not when generating) data."""

    mean: float = 0.0
    sd: float = 2.0
    prior_type: str = "weakly_informative"

    def __post_init__(self):
        validate_positive(self.sd, "sd")

    @classmethod
    def of_type(cls, prior_type: str = "weakly_informative", mean: float = 0.0,
                sd: Optional[float] = None) -> "AnalysisPrior":
        if sd is None:
            sd = _ANALYSIS_PRIOR_SD.get(prior_type, 1.0)
        return cls(mean=float(mean), sd=float(sd), prior_type=prior_type)


def prior_effective_sample_size(prior_sd: float, likelihood_var: float) -> float:
    """Number of observations with variance ``likelihood_var`` carrying the prior's information."""
    validate_positive(prior_sd, "prior_sd")
    validate_positive(likelihood_var, "likelihood_var")
    return float(likelihood_var / (prior_sd ** 2))


# ---------- Default engine ----------

@dataclass(frozen=True)
class AncovaPosteriorEngine:
    n_draws: int = 8000
    # One prior per endpoint; None means flat
    analysis_priors: Optional[Tuple[AnalysisPrior, AnalysisPrior]] = None

    def _posterior_moments(self, dataset: TrialDataset) -> Tuple[np.ndarray, np.ndarray]:
        treat = dataset.treat.astype(float)
        coefs = np.empty(2, dtype=float)
        resid = np.empty((dataset.n, 2), dtype=float)
        # Row of (X'X)^-1 X' that maps follow-up to the treatment coefficient
        weights = np.empty((2, dataset.n), dtype=float)
        for j in range(2):
            X = np.column_stack([
                np.ones(dataset.n, dtype=float),
                dataset.baseline[:, j],
                treat,
            ])
            fit = sm.OLS(dataset.follow_up[:, j], X).fit()
            coefs[j] = float(fit.params[2])
            resid[:, j] = fit.resid
            weights[j] = (fit.normalized_cov_params @ X.T)[2]
        sigma = resid.T @ resid / float(dataset.n - 3)
        # Cov(b_j, b_k) = sigma_jk * w_j . w_k for equation-by-equation OLS
        cov = sigma * (weights @ weights.T)

        if self.analysis_priors is not None:
            prior_mean = np.array([p.mean for p in self.analysis_priors], dtype=float)
            prior_prec = np.diag([1.0 / (p.sd ** 2) for p in self.analysis_priors])
            data_prec = np.linalg.inv(cov)
            cov = np.linalg.inv(data_prec + prior_prec)
            coefs = cov @ (data_prec @ coefs + prior_prec @ prior_mean)
        return coefs, cov

    def fit(self, dataset: TrialDataset, seed: Optional[int] = None) -> FitResult:
        if dataset.n < 5:
            return EngineFailure(f"too few subjects to fit (n={dataset.n})")
        n_treated = int(np.sum(dataset.treat))
        if n_treated == 0 or n_treated == dataset.n:
            return EngineFailure("all subjects in one arm")
        try:
            mean, cov = self._posterior_moments(dataset)
        except (np.linalg.LinAlgError, ValueError) as exc:
            return EngineFailure(f"ANCOVA fit failed: {exc}")
        if not (np.all(np.isfinite(mean)) and np.all(np.isfinite(cov))):
            return EngineFailure("non-finite posterior moments")
        if np.any(np.diag(cov) < 0):
            return EngineFailure("negative posterior variance")
        rng = np.random.default_rng(seed)
        draws = rng.multivariate_normal(mean, cov, size=self.n_draws, method="eigh")
        return PosteriorSummary.from_draws(draws, dataset.endpoints)
