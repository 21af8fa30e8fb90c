"""Tests for batch marginal refitting (CPU and GPU)."""

import numpy as np
import pytest

from conftest import DELTA, TRUE_COEF
from pysynergy.marginal import TransformSpec, box_cox_transform, fit_marginals_batch


@pytest.fixture
def batch_design(combo_data):
    """On-axis design plus K=5 response vectors with flipped replicate signs."""
    design = combo_data.subset(combo_data.on_axis)
    base = design.effect
    mean = base - np.tile([DELTA, -DELTA], design.n_obs // 2)
    effects = np.vstack([base, mean + (mean - base)] + [base] * 3)
    return design, effects


class TestBatchCPU:

    def test_all_converged(self, batch_design):
        design, effects = batch_design
        r = fit_marginals_batch(design, effects, backend="cpu")
        assert r.n_fits == 5
        assert r.converged.all()
        assert r.backend == "cpu"

    def test_coef_recovery(self, batch_design):
        design, effects = batch_design
        r = fit_marginals_batch(design, effects, backend="cpu")
        np.testing.assert_allclose(r.coef, np.tile(TRUE_COEF, (5, 1)), atol=1e-4)

    def test_rejects_off_axis_design(self, combo_data):
        with pytest.raises(ValueError, match="on-axis"):
            fit_marginals_batch(combo_data, combo_data.effect[None, :])

    def test_shape_mismatch(self, batch_design):
        design, effects = batch_design
        with pytest.raises(ValueError, match="one column per design point"):
            fit_marginals_batch(design, effects[:, :-1])

    def test_bad_backend(self, batch_design):
        design, effects = batch_design
        with pytest.raises(ValueError, match="backend"):
            fit_marginals_batch(design, effects, backend="tpu")

    def test_gpu_rejects_transforms(self, batch_design):
        design, effects = batch_design
        tf = TransformSpec(power=box_cox_transform(lam=0.5, shift=1.0))
        with pytest.raises(ValueError, match="identity transforms"):
            fit_marginals_batch(design, effects, transforms=tf, backend="gpu")


class TestBatchGPU:
    """Batched Levenberg-Marquardt in PyTorch (runs on CPU tensors without a device)."""

    def test_gpu_matches_cpu(self, batch_design):
        pytest.importorskip("torch")
        design, effects = batch_design
        gpu = fit_marginals_batch(design, effects, backend="gpu", start=TRUE_COEF + 0.05)
        assert gpu.backend == "gpu"
        assert gpu.converged.all()
        np.testing.assert_allclose(gpu.coef, np.tile(TRUE_COEF, (5, 1)), atol=1e-3)

    def test_fully_fixed_shortcut(self, batch_design):
        pytest.importorskip("torch")
        design, effects = batch_design
        fixed = dict(zip(("h1", "h2", "b", "m1", "m2", "e1", "e2"), TRUE_COEF))
        r = fit_marginals_batch(design, effects, backend="gpu", fixed=fixed)
        assert r.converged.all()
        np.testing.assert_allclose(r.rss, 22 * DELTA**2, rtol=1e-8)
