"""
Tests for the synthetic trial data generator.

Covers range guarantees, the 2:1 allocation, the deterministic limit of the
outcome model and fail-fast handling of invalid configurations.
"""

import numpy as np
import pytest

import longcovid.data_generator as dg
import longcovid.trial_spec as ts


WIDE_OUTCOMES = (
    ts.OutcomeSpec(name="tmt", fullname="TMT unbounded", mean=2.22, sd=1.07, mcid=0.5,
                   lower=-1e6, upper=1e6, baseline_adjustment=0.2),
    ts.OutcomeSpec(name="mfis", fullname="MFIS unbounded", mean=23.7, sd=21.1, mcid=10.0,
                   lower=-1e6, upper=1e6, baseline_adjustment=10.0),
)


def _noiseless_effects(tmt: float = -0.1, mfis: float = -3.0) -> ts.TrueEffects:
    return ts.TrueEffects(endpoints=(ts.EndpointEffect(tmt, 0.0), ts.EndpointEffect(mfis, 0.0)), rho=0.2)


class TestOutputShapeAndRange:
    """Every dataset respects the endpoint ranges and the binary assignment."""

    @pytest.mark.parametrize("n", [1, 2, 7, 120, 480])
    def test_lengths_binary_assignment_and_bounds(self, n):
        data = dg.simulate_trial_data(n, seed=n)
        assert data.n == n
        assert data.treat.shape == (n,)
        assert data.baseline.shape == (n, 2)
        assert data.follow_up.shape == (n, 2)
        assert set(np.unique(data.treat)).issubset({0, 1})
        for j, outcome in enumerate(ts.DEFAULT_OUTCOMES):
            assert np.all(data.baseline[:, j] >= outcome.lower)
            assert np.all(data.baseline[:, j] <= outcome.upper)
            assert np.all(data.follow_up[:, j] >= outcome.lower)
            assert np.all(data.follow_up[:, j] <= outcome.upper)

    def test_allocation_converges_to_two_thirds(self):
        data = dg.simulate_trial_data(10_000, seed=2024)
        assert abs(data.prop_treated - 2.0 / 3.0) < 0.01

    def test_same_seed_same_dataset(self):
        a = dg.simulate_trial_data(150, seed=77)
        b = dg.simulate_trial_data(150, seed=77)
        np.testing.assert_array_equal(a.treat, b.treat)
        np.testing.assert_array_equal(a.baseline, b.baseline)
        np.testing.assert_array_equal(a.follow_up, b.follow_up)

    def test_dataset_is_read_only(self):
        data = dg.simulate_trial_data(20, seed=1)
        with pytest.raises(ValueError):
            data.follow_up[0, 0] = 0.0

    def test_to_frame_columns(self):
        frame = dg.simulate_trial_data(30, seed=3).to_frame()
        assert list(frame.columns) == ["treat", "tmt_base", "tmt_follow", "mfis_base", "mfis_follow"]
        assert len(frame) == 30


class TestDeterministicLimit:
    """Without natural change and residual noise, follow-up is baseline plus the effect."""

    def test_follow_up_equals_baseline_plus_effect(self):
        settings = ts.TrialSettings(natural_change_cap=0.0)
        effects = _noiseless_effects()
        data = dg.simulate_trial_data(120, WIDE_OUTCOMES, effects, settings, seed=11)
        expected = data.baseline + np.outer(data.treat, effects.effects)
        np.testing.assert_array_equal(data.follow_up, expected)

    def test_crude_effect_recovered_exactly(self):
        settings = ts.TrialSettings(natural_change_cap=0.0)
        data = dg.simulate_trial_data(120, WIDE_OUTCOMES, _noiseless_effects(-0.4, -6.0), settings, seed=5)
        change = data.follow_up - data.baseline
        treated = data.treat == 1
        assert np.allclose(change[treated], [-0.4, -6.0])
        assert np.allclose(change[~treated], 0.0)


class TestNaturalChange:
    """The regression-to-the-mean term stays within its cap."""

    def test_change_bounded_by_cap(self):
        settings = ts.TrialSettings(natural_change_cap=0.2)
        data = dg.simulate_trial_data(2000, WIDE_OUTCOMES, _noiseless_effects(0.0, 0.0), settings, seed=8)
        change = np.abs(data.follow_up - data.baseline)
        cap = 0.2 * np.abs(data.baseline) + 1e-12
        assert np.all(change <= cap)

    def test_high_baseline_tends_to_improve(self):
        settings = ts.TrialSettings()
        data = dg.simulate_trial_data(4000, WIDE_OUTCOMES, _noiseless_effects(0.0, 0.0), settings, seed=21)
        change = data.follow_up[:, 0] - data.baseline[:, 0]
        high = data.baseline[:, 0] > np.median(data.baseline[:, 0])
        assert np.mean(change[high] < 0) > np.mean(change[~high] < 0)


class TestInvalidConfiguration:
    """Invalid generation settings fail fast with GenerationError."""

    @pytest.mark.parametrize("n", [0, -5, 2.5])
    def test_bad_sample_size(self, n):
        with pytest.raises(dg.GenerationError):
            dg.simulate_trial_data(n, seed=1)

    @pytest.mark.parametrize("rho", [1.0, -1.0, 1.5])
    def test_degenerate_correlation(self, rho):
        effects = ts.TrueEffects(rho=rho)
        with pytest.raises(dg.GenerationError):
            dg.simulate_trial_data(50, effects=effects, seed=1)

    def test_generation_error_is_value_error(self):
        assert issubclass(dg.GenerationError, ValueError)

    def test_negative_residual_sd_rejected(self):
        with pytest.raises(ValueError):
            ts.EndpointEffect(effect=-0.1, sigma=-0.5)

    def test_wrong_number_of_outcomes(self):
        with pytest.raises(dg.GenerationError):
            dg.simulate_trial_data(10, outcomes=(ts.TMT,), seed=1)


def test_check_dataset_reports_ranges_and_allocation():
    data = dg.simulate_trial_data(600, seed=99)
    diag = dg.check_dataset(data)
    assert diag["n"] == 600
    assert diag["treat_ok"]
    assert diag["in_range"]
    assert -1.0 <= diag["correlation"] <= 1.0
    assert np.isfinite(diag["crude_tmt_effect"])


def test_true_effects_copies_are_independent():
    base = ts.DEFAULT_EFFECTS
    null = base.null()
    assert np.all(null.effects == 0.0)
    assert base.effects.tolist() == [-0.1, -3.0]
    assert base.with_effect(-0.5, index=1).effects.tolist() == [-0.1, -0.5]
    assert null.sigmas.tolist() == base.sigmas.tolist()


def test_interim_schedule_and_design_text():
    settings = ts.DEFAULT_SETTINGS
    assert settings.interim_schedule() == (120, 180, 240, 300, 360, 420, 480)
    text = ts.describe_design()
    assert "TMT" in text and "MFIS" in text
    assert "2:1" in text


def test_secondary_fatigue_outcome():
    assert "FAS (Fatigue Assessment Scale)" in ts.describe_design()
    assert "Secondary" not in ts.describe_design(secondary=())
    outcomes = (ts.TMT, ts.FAS)
    dataset = dg.simulate_trial_data(300, outcomes=outcomes, seed=11)
    assert dataset.endpoints == ("tmt", "fas")
    checks = dg.check_dataset(dataset, outcomes=outcomes)
    assert checks["fas_base_in_range"] and checks["fas_follow_in_range"]
    assert ts.FAS.lower < checks["fas_base_mean"] < ts.FAS.mean + 3.0
