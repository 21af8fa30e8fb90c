"""Tests for the meanR and maxR statistics."""

import warnings

import numpy as np
import pytest
from scipy.stats import f as f_dist
from scipy.stats import t as t_dist

from pysynergy import SingularCovariance
from pysynergy.surface import maxr, meanr, residual_covariance


@pytest.fixture
def total():
    k = 4
    return residual_covariance(np.full(k, 0.04), np.full(k, 2), 0.04, 0.1 * np.eye(k) + 0.02)


class TestResidualCovariance:

    def test_composition(self):
        cp = np.array([[0.5, 0.1], [0.1, 0.5]])
        tot = residual_covariance(np.array([0.2, 0.4]), np.array([2, 4]), 0.1, cp)
        np.testing.assert_allclose(tot, [[0.15, 0.01], [0.01, 0.15]])

    def test_singular(self):
        with pytest.raises(SingularCovariance) as info:
            residual_covariance(np.zeros(3), np.full(3, 2), 1.0, np.ones((3, 3)))
        assert info.value.component == "TestStatisticEngine"

    def test_non_finite(self):
        with pytest.raises(SingularCovariance):
            residual_covariance(np.array([np.nan, 1.0]), np.array([2, 2]), 1.0, np.eye(2))


class TestMeanR:

    def test_zero_residual(self, total):
        r = meanr(np.zeros(4), total, df=15)
        assert r.statistic == 0.0
        assert r.p_value == pytest.approx(1.0)
        assert (r.df1, r.df2) == (4, 15)

    def test_f_reference(self, total):
        residual = np.array([0.3, -0.1, 0.2, 0.05])
        r = meanr(residual, total, df=15)
        expected = residual @ np.linalg.solve(total, residual) / 4
        assert r.statistic == pytest.approx(expected)
        assert r.p_value == pytest.approx(f_dist.sf(expected, 4, 15))
        assert r.distribution == "F"

    def test_bootstrap_reference(self, total):
        residual = np.array([0.3, -0.1, 0.2, 0.05])
        stat = meanr(residual, total, df=15).statistic
        boot = np.array([0.0, stat / 2, stat, 2 * stat])
        r = meanr(residual, total, df=15, boot_statistics=boot, n_boot_requested=5)
        assert r.p_value == pytest.approx(0.5)
        assert r.n_boot == 4
        assert r.n_boot_requested == 5
        assert "bootstrap" in r.summary()

    def test_bootstrap_p_value_variance_shrinks(self, total):
        """Monte Carlo error of the tail proportion falls with more replicates."""
        np.random.seed(0)
        residual = np.array([0.3, -0.1, 0.2, 0.05])
        p_small, p_large = [], []
        for _ in range(200):
            p_small.append(meanr(residual, total, df=15, boot_statistics=f_dist.rvs(4, 15, size=20)).p_value)
            p_large.append(meanr(residual, total, df=15, boot_statistics=f_dist.rvs(4, 15, size=500)).p_value)
        assert np.var(p_large) < np.var(p_small) / 5


class TestMaxR:

    def test_single_point_is_two_sided_t(self):
        tot = np.array([[0.25]])
        r = maxr(np.array([1.0]), tot, d1=[1.0], d2=[1.0], df=10)
        assert r.statistic[0] == pytest.approx(2.0)
        assert r.p_value[0] == pytest.approx(2 * t_dist.sf(2.0, 10))

    def test_p_value_grows_with_points(self, total):
        residual = np.array([0.5, 0.0, 0.0, 0.0])
        p4 = maxr(residual, total, d1=np.ones(4), d2=np.ones(4), df=15).p_value[0]
        p1 = maxr(residual[:1], total[:1, :1], d1=[1.0], d2=[1.0], df=15).p_value[0]
        assert p4 > p1

    def test_calls_oriented_by_direction(self, total):
        residual = np.array([1.0, -1.0, 0.0, 0.01])
        up = maxr(residual, total, d1=np.ones(4), d2=np.ones(4), df=15, direction=1)
        down = maxr(residual, total, d1=np.ones(4), d2=np.ones(4), df=15, direction=-1)
        assert up.call == ("synergy", "antagonism", "additive", "additive")
        assert down.call == ("antagonism", "synergy", "additive", "additive")
        assert up.n_synergy == 1

    def test_zero_residual_is_silent(self, total):
        with warnings.catch_warnings():
            warnings.simplefilter("error", RuntimeWarning)
            r = maxr(np.zeros(4), total, d1=np.ones(4), d2=np.ones(4), df=15)
        np.testing.assert_allclose(r.p_value, 1.0)
        assert r.global_p_value == pytest.approx(1.0)
        assert set(r.call) == {"additive"}

    def test_global_statistic(self, total):
        residual = np.array([0.2, -0.6, 0.1, 0.0])
        r = maxr(residual, total, d1=np.ones(4), d2=np.ones(4), df=15)
        assert r.global_statistic == pytest.approx(np.max(np.abs(r.statistic)))
        assert r.global_p_value == pytest.approx(r.p_value.min())

    def test_bootstrap_reference(self, total):
        residual = np.array([1.0, 0.0, 0.0, 0.0])
        r = maxr(residual, total, d1=np.ones(4), d2=np.ones(4), df=15, boot_max=np.full(10, 0.5))
        assert r.p_value[0] == 0.0
        np.testing.assert_allclose(r.p_value[1:], 1.0)
        assert r.distribution == "bootstrap"

    def test_summary(self, total):
        r = maxr(np.zeros(4), total, d1=np.arange(4.0), d2=np.ones(4), df=15)
        assert "maxR" in r.summary()

    @pytest.mark.parametrize("kwargs", [
        dict(cutoff=1.5), dict(direction=0), dict(df=0),
    ])
    def test_invalid(self, total, kwargs):
        args = dict(d1=np.ones(4), d2=np.ones(4), df=15)
        args.update(kwargs)
        with pytest.raises(ValueError):
            maxr(np.zeros(4), total, **args)
