"""
Tests for posterior summaries and the bundled ANCOVA engine.
"""

import numpy as np
import pytest

import longcovid.data_generator as dg
import longcovid.posterior as post
import longcovid.trial_spec as ts


def test_summary_from_draws():
    draws = np.array([[-1.0, -1.0], [-1.0, 1.0], [1.0, -1.0], [1.0, 1.0]])
    summary = post.PosteriorSummary.from_draws(draws)
    assert summary.prob_benefit == (0.5, 0.5)
    assert summary.prob_joint == 0.25
    assert summary.prob_combined == 0.5
    frame = summary.summary_frame()
    assert list(frame["outcome"]) == ["TMT", "MFIS"]
    assert {"mean", "sd", "q025", "q975", "prob_benefit"}.issubset(frame.columns)


def test_summary_rejects_bad_probabilities():
    with pytest.raises(ValueError):
        post.PosteriorSummary(endpoints=("tmt", "mfis"), prob_benefit=(1.2, 0.5), prob_joint=0.5)
    with pytest.raises(ValueError):
        post.PosteriorSummary.from_draws(np.zeros((10, 3)))


class TestAncovaEngine:
    """Default engine: ANCOVA per endpoint, bivariate normal posterior."""

    def test_detects_large_effect(self):
        effects = ts.TrueEffects(endpoints=(ts.EndpointEffect(-1.0, 0.5), ts.EndpointEffect(-15.0, 8.0)))
        data = dg.simulate_trial_data(400, effects=effects, seed=10)
        summary = post.AncovaPosteriorEngine(n_draws=4000).fit(data, seed=10)
        assert isinstance(summary, post.PosteriorSummary)
        assert min(summary.prob_benefit) > 0.99
        assert summary.prob_joint > 0.98

    def test_harmful_effect_gives_low_probability(self):
        effects = ts.TrueEffects(endpoints=(ts.EndpointEffect(1.0, 0.5), ts.EndpointEffect(15.0, 8.0)))
        data = dg.simulate_trial_data(400, effects=effects, seed=12)
        summary = post.AncovaPosteriorEngine(n_draws=4000).fit(data, seed=12)
        assert max(summary.prob_benefit) < 0.01

    def test_same_seed_same_summary(self):
        data = dg.simulate_trial_data(150, seed=4)
        engine = post.AncovaPosteriorEngine(n_draws=2000)
        assert engine.fit(data, seed=9).prob_benefit == engine.fit(data, seed=9).prob_benefit

    def test_too_few_subjects(self):
        data = dg.simulate_trial_data(4, seed=1)
        assert isinstance(post.AncovaPosteriorEngine().fit(data), post.EngineFailure)

    def test_single_arm_sample(self):
        data = dg.simulate_trial_data(30, seed=2)
        one_arm = dg.TrialDataset(n=30, treat=np.ones(30, dtype=int), baseline=data.baseline,
                                  follow_up=data.follow_up)
        result = post.AncovaPosteriorEngine().fit(one_arm)
        assert isinstance(result, post.EngineFailure)
        assert "one arm" in result.reason

    def test_tight_analysis_prior_shrinks_estimate(self):
        effects = ts.TrueEffects(endpoints=(ts.EndpointEffect(-0.5, 0.5), ts.EndpointEffect(-10.0, 8.0)))
        data = dg.simulate_trial_data(200, effects=effects, seed=3)
        flat = post.AncovaPosteriorEngine(n_draws=4000).fit(data, seed=1)
        priors = (post.AnalysisPrior.of_type("informative", sd=0.01), post.AnalysisPrior.of_type("informative", sd=0.1))
        shrunk = post.AncovaPosteriorEngine(n_draws=4000, analysis_priors=priors).fit(data, seed=1)
        flat_means = flat.summary_frame()["mean"].abs().to_numpy()
        shrunk_means = shrunk.summary_frame()["mean"].abs().to_numpy()
        assert np.all(shrunk_means < flat_means)


def test_analysis_prior_types_and_ess():
    assert post.AnalysisPrior.of_type("weakly_informative").sd == 2.0
    assert post.AnalysisPrior.of_type("skeptical").sd == 0.5
    assert post.AnalysisPrior.of_type("informative").sd == 0.3
    assert post.prior_effective_sample_size(2.0, 4.0) == pytest.approx(1.0)
    assert post.prior_effective_sample_size(0.5, 1.0) == pytest.approx(4.0)
    with pytest.raises(ValueError):
        post.AnalysisPrior(sd=0.0)
