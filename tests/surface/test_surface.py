"""End-to-end tests of fit_surface."""

import numpy as np
import pytest

from conftest import TRUE_COEF, make_model, paired_design
from pysynergy import MonotonicityViolation
from pysynergy.marginal import fit_marginals
from pysynergy.surface import NullModel, ResponseSurface, fit_surface, predict_null

SYNERGY_POINT = 4


@pytest.fixture
def additive_surface(combo_data, fitted_model):
    return fit_surface(
        combo_data, fitted_model, statistic="both", n_boot_cp=20, seed=11, confint=True,
    )


# ---------------------------------------------------------------------------
# Additive data
# ---------------------------------------------------------------------------

class TestAdditive:
    """Data generated exactly under generalized Loewe."""

    def test_returns_surface(self, additive_surface):
        assert isinstance(additive_surface, ResponseSurface)
        assert additive_surface.n_points == 9
        assert additive_surface.null_model is NullModel.GENERALIZED_LOEWE

    def test_no_global_rejection(self, additive_surface):
        assert additive_surface.meanr.statistic == pytest.approx(0.0, abs=1e-6)
        assert additive_surface.meanr.p_value > 0.05

    def test_all_points_additive(self, additive_surface):
        assert set(additive_surface.maxr.call) == {"additive"}
        assert additive_surface.maxr.global_p_value > 0.05

    def test_same_covariance_for_both_tests(self, additive_surface):
        np.testing.assert_array_equal(additive_surface.z_score, additive_surface.maxr.statistic)

    def test_occupancy(self, additive_surface):
        occ = additive_surface.occupancy
        assert occ.shape == (9,)
        assert np.all((occ > 0) & (occ < 1))

    def test_confint_covers_zero(self, additive_surface):
        ci = additive_surface.confint
        assert np.all(ci.lower < 0) and np.all(ci.upper > 0)
        assert ci.method == "normal"

    def test_summary(self, additive_surface):
        s = additive_surface.summary()
        assert "generalized_loewe" in s
        assert "meanR" in s
        assert "maxR" in s


# ---------------------------------------------------------------------------
# One synergistic point
# ---------------------------------------------------------------------------

class TestSingleSynergy:
    """One off-axis pair shifted by five standard errors."""

    @pytest.fixture
    def shifted(self, combo_data, fitted_model):
        base = fit_surface(combo_data, fitted_model, statistic="maxR", n_boot_cp=20, seed=11)
        se = np.sqrt(base.total_cov[SYNERGY_POINT, SYNERGY_POINT])
        data = paired_design(shift={SYNERGY_POINT: 5 * se})
        model = fit_marginals(data).unwrap()
        return fit_surface(data, model, statistic="both", n_boot_cp=20, seed=11)

    def test_statistic_is_five(self, shifted):
        assert shifted.maxr.statistic[SYNERGY_POINT] == pytest.approx(5.0, rel=1e-4)

    def test_exactly_one_synergy_call(self, shifted):
        calls = shifted.maxr.call
        assert calls[SYNERGY_POINT] == "synergy"
        assert calls.count("synergy") == 1
        assert calls.count("antagonism") == 0

    def test_global_rejection(self, shifted):
        assert shifted.maxr.global_p_value < 0.05
        assert shifted.meanr.statistic > 1.0


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

class TestOptions:

    def test_precomputed_cp(self, combo_data, fitted_model):
        cp = 0.1 * np.eye(9)
        s = fit_surface(combo_data, fitted_model, cp=cp, statistic="meanR")
        np.testing.assert_array_equal(s.cp, cp)
        assert s.cp_bootstrap is None
        assert s.maxr is None

    def test_generator_seed(self, combo_data, fitted_model):
        a = fit_surface(combo_data, fitted_model, n_boot_cp=4, seed=np.random.default_rng(1))
        b = fit_surface(combo_data, fitted_model, n_boot_cp=4, seed=np.random.default_rng(1))
        np.testing.assert_array_equal(a.cp, b.cp)

    def test_cp_shape_checked(self, combo_data, fitted_model):
        with pytest.raises(ValueError, match="cp must have shape"):
            fit_surface(combo_data, fitted_model, cp=np.eye(3))

    def test_bootstrap_statistics(self, combo_data, fitted_model):
        s = fit_surface(
            combo_data, fitted_model, cp=0.1 * np.eye(9), statistic="both",
            n_boot_statistic=5, seed=3,
        )
        assert s.meanr.distribution == "bootstrap"
        assert s.maxr.distribution == "bootstrap"
        assert s.meanr.n_boot_requested == 5
        assert s.meanr.n_boot <= 5

    def test_bootstrap_confint(self, combo_data, fitted_model):
        s = fit_surface(
            combo_data, fitted_model, cp=0.1 * np.eye(9), confint=True,
            n_boot_confint=10, seed=3,
        )
        assert s.confint.method == "bootstrap"
        assert s.confint.lower.shape == (9,)

    @pytest.mark.parametrize("null_model", ["classical_loewe", "hsa", "bliss", "alternative_loewe"])
    def test_other_null_models(self, combo_data, fitted_model, null_model):
        s = fit_surface(combo_data, fitted_model, null_model=null_model, cp=0.1 * np.eye(9))
        expected = predict_null(fitted_model, s.d1, s.d2, null_model).response
        np.testing.assert_allclose(s.predicted, expected)

    def test_unequal_variance(self, combo_data, fitted_model):
        s = fit_surface(
            combo_data, fitted_model, variance_method="unequal", cp=0.1 * np.eye(9),
            statistic="meanR",
        )
        assert s.meanr.df2 == 9

    def test_monotonicity_violation(self):
        model = make_model([1.0, 1.0, 50.0, 100.0, 0.0, 0.0, 0.0])
        data = paired_design(coef=TRUE_COEF)
        with pytest.raises(MonotonicityViolation):
            fit_surface(data, model, null_model="hsa", cp=np.eye(9))

    def test_unknown_statistic(self, combo_data, fitted_model):
        with pytest.raises(ValueError, match="statistic must be one of"):
            fit_surface(combo_data, fitted_model, statistic="minR")
