"""Tests for the log-link, variance mu^2 trend GLM."""

import warnings

import numpy as np
import pytest

import weitrix as wx
from weitrix.glm import gamma_quasi_deviance


class TestGlmLogQuasi:
    """glm_log_quasi."""

    def test_intercept_is_weighted_mean(self):
        y = np.array([1.0, 2.0, 3.0, 6.0])
        w = np.array([1.0, 1.0, 2.0, 0.5])
        fit = wx.glm_log_quasi(y, np.ones((4, 1)), prior_weights=w)
        assert fit['converged']
        assert abs(np.exp(fit['coefficients'][0]) - np.sum(w * y) / np.sum(w)) < 1e-8

    def test_recovers_slope(self, rng):
        n = 2000
        x = rng.uniform(-1, 1, size=n)
        mu = np.exp(1.0 + 0.5 * x)
        y = mu * rng.gamma(shape=5.0, scale=1 / 5.0, size=n)
        X = np.column_stack([np.ones(n), x])
        fit = wx.glm_log_quasi(y, X)
        assert abs(fit['coefficients'][0] - 1.0) < 0.05
        assert abs(fit['coefficients'][1] - 0.5) < 0.05
        # Gamma(shape 5) has squared coefficient of variation 1/5
        assert abs(fit['dispersion'] - 0.2) < 0.03

    def test_zero_responses(self):
        y = np.array([0.0, 1.0, 2.0, 0.0, 3.0])
        fit = wx.glm_log_quasi(y, np.ones((5, 1)))
        assert np.isfinite(fit['deviance'])
        assert abs(fit['fitted.values'][0] - 1.2) < 1e-8

    def test_negative_response(self):
        with pytest.raises(ValueError, match="Negative"):
            wx.glm_log_quasi(np.array([1.0, -1.0]), np.ones((2, 1)))

    def test_no_usable_observations(self):
        with pytest.raises(ValueError):
            wx.glm_log_quasi(np.array([1.0, 2.0]), np.ones((2, 1)),
                             prior_weights=np.zeros(2))

    def test_bad_start(self):
        with pytest.raises(ValueError, match="Starting"):
            wx.glm_log_quasi(np.array([1.0, 2.0]), np.ones((2, 1)), mustart=0.0)

    def test_offset_only(self):
        off = np.log(np.array([1.0, 2.0, 4.0]))
        fit = wx.glm_log_quasi(np.array([1.0, 1.0, 1.0]), np.zeros((3, 0)), offset=off)
        assert fit['converged']
        assert np.allclose(fit['fitted.values'], [1.0, 2.0, 4.0])
        assert len(fit['coefficients']) == 0

    def test_offset_scaling(self):
        w = np.array([1.0, 2.0, 4.0, 8.0])
        y = 3.0 / w
        fit = wx.glm_log_quasi(y, np.ones((4, 1)), offset=-np.log(w))
        assert abs(fit['coefficients'][0] - np.log(3.0)) < 1e-6
        assert np.allclose(fit['fitted.values'], y)

    def test_excluded_rows_still_predicted(self):
        y = np.array([1.0, 2.0, np.nan, 4.0])
        X = np.column_stack([np.ones(4), [0.0, 1.0, 2.0, 3.0]])
        fit = wx.glm_log_quasi(y, X)
        assert np.all(np.isfinite(fit['fitted.values']))
        assert fit['df.residual'] == 1

    def test_non_convergence_warns(self, rng):
        n = 50
        x = rng.uniform(-1, 1, size=n)
        y = np.exp(x) * rng.gamma(2.0, 0.5, size=n)
        X = np.column_stack([np.ones(n), x])
        with pytest.warns(wx.ConvergenceWarning):
            fit = wx.glm_log_quasi(y, X, maxit=1, tol=1e-30)
        assert not fit['converged']

    def test_starts_from_mustart(self):
        x = np.array([-1.0, 0.0, 1.0, 2.0])
        X = np.column_stack([np.ones(4), x])
        start = np.exp(0.3 - 0.2 * x)
        with pytest.warns(wx.ConvergenceWarning):
            fit = wx.glm_log_quasi(np.array([1.0, 2.0, 1.0, 3.0]), X,
                                   mustart=start, maxit=0)
        assert np.allclose(fit['coefficients'], [0.3, -0.2])
        assert np.allclose(fit['fitted.values'], start)

    def test_converged_without_warning(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            wx.glm_log_quasi(np.array([1.0, 2.0, 3.0]), np.ones((3, 1)))


class TestDeviance:
    """Unit deviances."""

    def test_zero_at_fit(self):
        y = np.array([0.5, 1.0, 2.0])
        assert np.allclose(gamma_quasi_deviance(y, y), 0)

    def test_zero_response_finite(self):
        dev = gamma_quasi_deviance(np.array([0.0, 0.0]), np.array([4.0, 2.0]))
        # -2 * (log(1/mu) + 1), truncated at zero
        assert abs(dev[0] - 2 * (np.log(4.0) - 1)) < 1e-12
        assert dev[1] == 0

    def test_weights(self):
        y, mu = np.array([1.0, 3.0]), np.array([2.0, 2.0])
        base = gamma_quasi_deviance(y, mu)
        assert np.allclose(gamma_quasi_deviance(y, mu, np.array([2.0, 0.5])),
                           base * [2.0, 0.5])
