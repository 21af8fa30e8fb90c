"""Tests for null-model predictions."""

import numpy as np
import pytest

from conftest import TRUE_COEF, make_model
from pysynergy import MonotonicityViolation
from pysynergy.surface import (
    NullModel,
    effect_direction,
    predict_grid,
    predict_null,
    predict_off_axis,
)

ALL_MODELS = [m.value for m in NullModel]
LOEWE = ["generalized_loewe", "classical_loewe", "alternative_loewe"]

D1 = np.array([0.1, 0.5, 1.0, 2.0, 8.0, 0.3])
D2 = np.array([0.2, 0.5, 3.0, 0.1, 8.0, 5.0])


@pytest.fixture
def shared_model():
    return make_model(TRUE_COEF, shared=True)


@pytest.fixture
def unequal_model():
    """Compound 2 reaches only 60% of compound 1's maximal response."""
    return make_model([1.5, 1.0, 0.0, 1.0, 0.6, 0.0, np.log(2.0)])


@pytest.fixture
def decreasing_model():
    return make_model([1.2, 2.0, 100.0, 10.0, 30.0, np.log(0.5), np.log(3.0)])


@pytest.fixture
def opposite_model():
    return make_model([1.0, 1.0, 50.0, 100.0, 0.0, 0.0, 0.0])


class TestMarginalConsistency:
    """Every null model reduces to the marginal curves on the axes."""

    @pytest.mark.parametrize("null_model", ALL_MODELS)
    def test_single_compound(self, unequal_model, null_model):
        dose = np.array([0.1, 1.0, 10.0])
        p1 = predict_null(unequal_model, dose, np.zeros(3), null_model).response
        p2 = predict_null(unequal_model, np.zeros(3), dose, null_model).response
        np.testing.assert_allclose(p1, unequal_model.predict_marginal(dose, 1), rtol=1e-8)
        np.testing.assert_allclose(p2, unequal_model.predict_marginal(dose, 2), rtol=1e-8)

    @pytest.mark.parametrize("null_model", ALL_MODELS)
    def test_zero_dose_is_baseline(self, unequal_model, null_model):
        r = predict_null(unequal_model, [0.0], [0.0], null_model).response
        assert r[0] == pytest.approx(0.0, abs=1e-12)


class TestLoewe:

    def test_variants_coincide_when_shared(self, shared_model):
        preds = [predict_null(shared_model, D1, D2, m).response for m in LOEWE]
        np.testing.assert_allclose(preds[1], preds[0], rtol=1e-8)
        np.testing.assert_allclose(preds[2], preds[0], rtol=1e-8)

    def test_dose_additivity_of_sham_combination(self, shared_model):
        """Compound 1 combined with itself: 0.5 d + 0.5 d acts like d."""
        same = make_model([1.5, 1.5, 0.0, 1.0, 1.0, 0.0, 0.0], shared=True)
        dose = np.array([0.2, 1.0, 5.0])
        combo = predict_null(same, dose / 2, dose / 2, "generalized_loewe").response
        np.testing.assert_allclose(combo, same.predict_marginal(dose, 1), rtol=1e-8)

    def test_occupancy_in_unit_interval(self, unequal_model):
        for m in LOEWE:
            occ = predict_null(unequal_model, D1, D2, m).occupancy
            assert occ is not None
            assert np.all((occ >= 0) & (occ <= 1))

    @pytest.mark.parametrize("null_model", LOEWE)
    def test_bounded_by_asymptotes(self, unequal_model, null_model):
        big = np.array([1e-3, 1.0, 1e4])
        g1, g2 = np.meshgrid(big, big)
        r = predict_null(unequal_model, g1, g2, null_model).response
        assert np.all((r >= -1e-12) & (r <= 1.0 + 1e-12))

    def test_alternative_not_below_classical(self, unequal_model):
        classical = predict_null(unequal_model, D1, D2, "classical_loewe").response
        alternative = predict_null(unequal_model, D1, D2, "alternative_loewe").response
        assert np.all(alternative >= classical - 1e-10)

    def test_non_loewe_has_no_occupancy(self, unequal_model):
        assert predict_null(unequal_model, D1, D2, "hsa").occupancy is None
        assert predict_null(unequal_model, D1, D2, "bliss").occupancy is None


class TestHSA:

    def test_maximum_for_increasing(self, unequal_model):
        r = predict_null(unequal_model, D1, D2, "hsa").response
        f1 = unequal_model.predict_marginal(D1, 1)
        f2 = unequal_model.predict_marginal(D2, 2)
        np.testing.assert_allclose(r, np.maximum(f1, f2))

    def test_minimum_for_decreasing(self, decreasing_model):
        r = predict_null(decreasing_model, D1, D2, "hsa").response
        f1 = decreasing_model.predict_marginal(D1, 1)
        f2 = decreasing_model.predict_marginal(D2, 2)
        np.testing.assert_allclose(r, np.minimum(f1, f2))


class TestBliss:

    def test_independence(self, shared_model):
        r = predict_null(shared_model, D1, D2, "bliss").response
        p1 = shared_model.predict_marginal(D1, 1)
        p2 = shared_model.predict_marginal(D2, 2)
        np.testing.assert_allclose(r, p1 + p2 - p1 * p2)


class TestMonotonicity:

    @pytest.mark.parametrize("null_model", ["hsa", "bliss", "classical_loewe", "alternative_loewe"])
    def test_opposite_directions_rejected(self, opposite_model, null_model):
        with pytest.raises(MonotonicityViolation) as info:
            predict_null(opposite_model, D1, D2, null_model)
        assert info.value.component == "NullModelEngine"
        assert info.value.details["directions"] == (1, -1)

    def test_generalized_allows_opposite_directions(self, opposite_model):
        r = predict_null(opposite_model, D1, D2, "generalized_loewe")
        assert np.all(np.isfinite(r.response))


class TestHelpers:

    def test_effect_direction(self, unequal_model, decreasing_model):
        assert effect_direction(unequal_model) == 1
        assert effect_direction(decreasing_model) == -1

    def test_grid_shape(self, unequal_model):
        g = predict_grid(unequal_model, [0.1, 1.0, 10.0], [0.5, 5.0], "bliss")
        assert g.response.shape == (3, 2)
        assert g.d1[2, 0] == 10.0

    def test_unknown_model(self, unequal_model):
        with pytest.raises(ValueError, match="null_model must be one of"):
            predict_null(unequal_model, D1, D2, "loewe")

    def test_negative_dose(self, unequal_model):
        with pytest.raises(ValueError):
            predict_null(unequal_model, [-1.0], [1.0])

    def test_off_axis_comparison(self, combo_data, fitted_model):
        comp = predict_off_axis(fitted_model, combo_data)
        assert comp.groups.n_groups == 9
        np.testing.assert_array_equal(comp.groups.counts, 2)
        np.testing.assert_allclose(comp.residual, 0.0, atol=1e-6)

    def test_off_axis_requires_combinations(self, combo_data, fitted_model):
        on_only = combo_data.subset(combo_data.on_axis)
        with pytest.raises(ValueError, match="no off-axis"):
            predict_off_axis(fitted_model, on_only)
