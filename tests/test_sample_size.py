"""
Tests for the logistic power-curve fit and its inversion.
"""

import math

import numpy as np
import pytest
from scipy.special import expit, logit

import longcovid.replicates as rep
import longcovid.sample_size as ss


def _point(n, rate, n_valid=100, n_failed=0):
    return rep.AggregateResult(n=n, estimate=rate, lower_ci=rate, upper_ci=rate,
                               successes=int(round(rate * n_valid)), n_valid=n_valid, n_failed=n_failed)


def _curve(beta0, beta1, sizes=range(120, 481, 60)):
    return [_point(n, float(expit(beta0 + beta1 * n))) for n in sizes]


class TestNoiselessCurve:
    """Rates generated exactly from a logistic curve are inverted exactly."""

    def test_recovers_required_n(self):
        beta0, beta1 = -3.0, 0.02
        fit = ss.fit_required_n(_curve(beta0, beta1), target_rate=0.90)
        expected = (logit(0.90) - beta0) / beta1
        assert fit.required_n == pytest.approx(expected, rel=1e-4)
        assert fit.intercept == pytest.approx(beta0, rel=1e-4)
        assert fit.slope == pytest.approx(beta1, rel=1e-4)
        assert fit.lower_ci <= fit.required_n <= fit.upper_ci
        assert fit.n_points == 7

    def test_prediction_at_required_n_hits_target(self):
        fit = ss.fit_required_n(_curve(-2.0, 0.015), target_rate=0.80)
        assert float(fit.predict(fit.required_n)) == pytest.approx(0.80, abs=1e-6)

    def test_two_points_are_enough(self):
        fit = ss.fit_required_n(_curve(-1.0, 0.01, sizes=(100, 300)), target_rate=0.75)
        assert fit.required_n == pytest.approx((logit(0.75) + 1.0) / 0.01, rel=1e-4)


class TestNoisyCurve:
    """Delta-method interval on a noisy curve."""

    def test_interval_is_symmetric_and_positive_width(self):
        rng = np.random.default_rng(7)
        points = []
        for n in range(120, 481, 60):
            p = float(expit(-3.0 + 0.02 * n))
            successes = int(rng.binomial(100, p))
            points.append(_point(n, successes / 100))
        fit = ss.fit_required_n(points, target_rate=0.90)
        assert fit.se > 0
        assert fit.required_n - fit.lower_ci == pytest.approx(fit.upper_ci - fit.required_n)
        assert 150 < fit.required_n < 400
        z = 1.959964
        assert fit.upper_ci - fit.lower_ci == pytest.approx(2 * z * fit.se, rel=1e-4)
        assert "Required N for 90%" in str(fit)


class TestDegenerateCurves:
    """Wrong-sign slopes and unusable inputs fail loudly."""

    def test_decreasing_rate_raises_with_coefficients(self):
        with pytest.raises(ss.CurveFitError) as excinfo:
            ss.fit_required_n(_curve(1.0, -0.01))
        assert excinfo.value.slope < 0
        assert math.isfinite(excinfo.value.intercept)
        assert "slope" in str(excinfo.value)

    def test_flat_curve_raises(self):
        points = [_point(n, 0.5) for n in range(120, 481, 60)]
        with pytest.raises(ss.CurveFitError, match="slope is zero"):
            ss.fit_required_n(points, target_rate=0.90)

    def test_target_below_fitted_range_raises(self):
        # logit(0.90) < 3.0, so the line reaches the target at a negative N
        with pytest.raises(ss.CurveFitError, match="below the fitted curve") as excinfo:
            ss.fit_required_n(_curve(3.0, 0.02), target_rate=0.90)
        assert excinfo.value.slope == pytest.approx(0.02, rel=1e-4)

    def test_perfect_fit_keeps_unit_dispersion(self):
        fit = ss.fit_required_n(_curve(-3.0, 0.02), target_rate=0.90)
        assert math.isfinite(fit.se) and fit.se > 0
        assert np.all(np.isfinite(fit.cov))

    def test_curve_fit_error_is_runtime_error(self):
        assert issubclass(ss.CurveFitError, RuntimeError)

    def test_undefined_points_are_skipped(self):
        points = _curve(-3.0, 0.02)
        undefined = rep.AggregateResult(n=540, estimate=None, lower_ci=None, upper_ci=None,
                                        successes=0, n_valid=0, n_failed=100)
        with pytest.warns(RuntimeWarning, match="Skipping 1"):
            fit = ss.fit_required_n(points + [undefined])
        assert fit.n_points == 7

    def test_needs_two_distinct_sizes(self):
        with pytest.raises(ValueError):
            ss.fit_required_n([_point(120, 0.5), _point(120, 0.6)])

    def test_target_must_be_strict_probability(self):
        with pytest.raises(ValueError):
            ss.fit_required_n(_curve(-3.0, 0.02), target_rate=1.0)
