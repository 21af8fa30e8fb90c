"""Tests for biological and power transforms."""

import numpy as np
import pytest

from pysynergy.marginal import TransformSpec, box_cox_transform, exponential_growth_transform


@pytest.fixture
def growth_spec():
    return TransformSpec(
        biological=exponential_growth_transform(),
        power=box_cox_transform(lam=0.5),
        args={"n0": 1000.0, "time": 48.0},
    )


class TestTransformSpec:

    def test_identity_default(self):
        tf = TransformSpec()
        y = np.array([1.0, -2.0, 3.5])
        assert tf.is_identity
        np.testing.assert_array_equal(tf.stabilize(y), y)
        np.testing.assert_array_equal(tf.to_latent(y), y)

    def test_half_pair_rejected(self):
        with pytest.raises(ValueError, match="together"):
            TransformSpec.from_functions(power=np.log)

    def test_non_callable_rejected(self):
        with pytest.raises(ValueError):
            TransformSpec(power=(np.log, "exp"))

    def test_biological_round_trip(self, growth_spec):
        rate = np.array([-0.01, 0.0, 0.02, 0.05])
        back = growth_spec.to_latent(growth_spec.to_observed(rate))
        np.testing.assert_allclose(back, rate, rtol=1e-12, atol=1e-15)

    def test_power_round_trip(self, growth_spec):
        counts = np.array([10.0, 500.0, 1e4, 3e5])
        back = growth_spec.destabilize(growth_spec.stabilize(counts))
        np.testing.assert_allclose(back, counts, rtol=1e-12)

    def test_fit_scale_composes(self, growth_spec):
        rate = np.array([0.01, 0.03])
        expected = growth_spec.stabilize(growth_spec.to_observed(rate))
        np.testing.assert_allclose(growth_spec.latent_to_fit_scale(rate), expected)


class TestBoxCox:

    def test_log_case(self):
        fwd, inv = box_cox_transform(lam=0.0, shift=1.0)
        y = np.array([0.0, 1.0, 9.0])
        np.testing.assert_allclose(fwd(y, {}), np.log(y + 1.0))
        np.testing.assert_allclose(inv(fwd(y, {}), {}), y, atol=1e-12)

    def test_non_finite_lambda(self):
        with pytest.raises(ValueError):
            box_cox_transform(lam=np.nan)
