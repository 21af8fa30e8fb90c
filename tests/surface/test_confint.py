"""Tests for effect-size confidence intervals."""

import numpy as np
import pytest
from scipy.stats import norm

from pysynergy.surface import confint_bootstrap, confint_normal

D1 = np.array([1.0, 2.0, 3.0])
D2 = np.array([1.0, 1.0, 1.0])


@pytest.fixture
def total():
    return np.array([
        [0.04, 0.01, 0.00],
        [0.01, 0.04, 0.01],
        [0.00, 0.01, 0.04],
    ])


class TestNormal:

    def test_interval_width(self, total):
        residual = np.array([0.5, 0.0, -0.5])
        ci = confint_normal(residual, total, d1=D1, d2=D2, conf_level=0.9)
        z = norm.ppf(0.95)
        np.testing.assert_allclose(ci.upper - ci.lower, 2 * z * 0.2)
        np.testing.assert_allclose(ci.estimate, residual)

    def test_overall(self, total):
        residual = np.array([0.5, 0.1, 0.3])
        ci = confint_normal(residual, total, d1=D1, d2=D2)
        z = norm.ppf(0.975)
        se = np.sqrt(total.sum()) / 3
        assert ci.overall_estimate == pytest.approx(0.3)
        assert ci.overall_lower == pytest.approx(0.3 - z * se)
        assert ci.overall_call == "synergy"

    def test_calls(self, total):
        ci = confint_normal(np.array([0.5, 0.0, -0.5]), total, d1=D1, d2=D2)
        assert ci.call == ("synergy", "additive", "antagonism")
        flipped = confint_normal(np.array([0.5, 0.0, -0.5]), total, d1=D1, d2=D2, direction=-1)
        assert flipped.call == ("antagonism", "additive", "synergy")

    def test_invalid_level(self, total):
        with pytest.raises(ValueError):
            confint_normal(np.zeros(3), total, d1=D1, d2=D2, conf_level=1.0)


class TestBootstrap:

    def test_percentiles(self):
        np.random.seed(7)
        boot = np.random.normal([1.0, 0.0, -1.0], 0.1, size=(2000, 3))
        ci = confint_bootstrap(np.array([1.0, 0.0, -1.0]), boot, d1=D1, d2=D2)
        np.testing.assert_allclose(ci.lower, [0.804, -0.196, -1.196], atol=0.02)
        assert ci.call == ("synergy", "additive", "antagonism")
        assert ci.n_boot == 2000
        assert ci.method == "bootstrap"

    def test_column_mismatch(self):
        with pytest.raises(ValueError, match="columns"):
            confint_bootstrap(np.zeros(3), np.zeros((10, 2)), d1=D1, d2=D2)

    def test_summary(self):
        boot = np.tile([0.1, 0.2, 0.3], (5, 1))
        s = confint_bootstrap(np.array([0.1, 0.2, 0.3]), boot, d1=D1, d2=D2).summary()
        assert "95%" in s
