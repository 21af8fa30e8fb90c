"""Tests for the marginal model functions."""

import numpy as np
import pytest

from pysynergy.marginal import COEF_NAMES, curve_direction, ll4, ll4_inverse, on_axis_response


class TestLL4:

    def test_zero_dose_is_baseline(self):
        assert ll4(np.array([0.0]), 2.0, 10.0, 0.0, 1.5)[0] == pytest.approx(2.0)

    def test_half_effect_at_ec50(self):
        r = ll4(np.array([np.exp(1.2)]), 0.0, 10.0, 1.2, 2.0)
        assert r[0] == pytest.approx(5.0)

    def test_infinite_dose_reaches_asymptote(self):
        r = ll4(np.array([1e12]), 0.0, 10.0, 0.0, 1.0)
        assert r[0] == pytest.approx(10.0, rel=1e-6)

    def test_decreasing_curve(self):
        dose = np.array([0.01, 0.1, 1, 10, 100])
        r = ll4(dose, 100.0, 0.0, 0.0, 1.0)
        assert np.all(np.diff(r) < 0)

    def test_no_warnings_on_extreme_input(self):
        dose = np.array([0.0, 1e-300, 1e300])
        with np.errstate(all="raise"):
            r = ll4(dose, 0.0, 1.0, 0.0, 50.0)
        assert np.all(np.isfinite(r))


class TestLL4Inverse:

    def test_inverts_ll4(self):
        dose = np.array([0.05, 0.5, 5.0, 50.0])
        r = ll4(dose, 1.0, 9.0, np.log(2.0), 1.3)
        np.testing.assert_allclose(ll4_inverse(r, 1.0, 9.0, np.log(2.0), 1.3), dose, rtol=1e-10)

    def test_unreachable_response_is_inf(self):
        out = ll4_inverse(np.array([10.0, -1.0]), 0.0, 5.0, 0.0, 1.0)
        assert np.all(np.isinf(out))


class TestOnAxisResponse:

    def test_selects_curve_by_axis(self):
        coef = np.array([1.0, 2.0, 0.0, 10.0, 20.0, 0.0, 0.0])
        d1 = np.array([0.0, 1.0, 0.0])
        d2 = np.array([0.0, 0.0, 1.0])
        np.testing.assert_allclose(on_axis_response(d1, d2, coef), [0.0, 5.0, 10.0])

    def test_coef_order(self):
        assert COEF_NAMES == ("h1", "h2", "b", "m1", "m2", "e1", "e2")


class TestCurveDirection:

    @pytest.mark.parametrize("b,m,h,expected", [
        (0, 1, 1, 1),
        (0, 1, -1, -1),
        (1, 0, 1, -1),
        (1, 0, -1, 1),
        (1, 1, 2, 0),
    ])
    def test_direction(self, b, m, h, expected):
        assert curve_direction(b, m, h) == expected
