"""Shared fixtures: a noise-controlled two-compound combination design."""

import numpy as np
import pytest

from pysynergy.marginal import (
    MarginalModel,
    Observations,
    SolverMethod,
    TransformSpec,
    build_constraints,
    fit_marginals,
)
from pysynergy.surface import predict_null

DOSES = np.array([0.1, 0.3, 1.0, 3.0, 10.0])
OFF_DOSES = np.array([0.3, 1.0, 3.0])
DELTA = 0.02

# (h1, h2, b, m1, m2, e1, e2)
TRUE_COEF = np.array([1.5, 1.0, 0.0, 1.0, 1.0, 0.0, np.log(2.0)])


def make_model(coef, shared=False):
    """A MarginalModel with given coefficients and a placeholder fit."""
    coef = np.asarray(coef, dtype=float)
    dummy = Observations.from_arrays([0.0], [0.0], [0.0])
    return MarginalModel(
        coef=coef,
        vcov=np.zeros((7, 7)),
        sigma=0.1,
        df=10,
        rss=0.1,
        n_iter=0,
        constraints=build_constraints(),
        shared_asymptote=shared,
        method=SolverMethod.LEVENBERG_MARQUARDT,
        transforms=TransformSpec(),
        data=dummy,
        fitted=np.zeros(1),
        residuals=np.zeros(1),
    )


def paired_design(coef=TRUE_COEF, null_model="generalized_loewe", delta=DELTA, shift=None):
    """Two replicates per dose pair at ``truth +/- delta``.

    The replicate pairs cancel in the least-squares gradient, so the marginal
    fit recovers *coef* and the off-axis means equal the null prediction.
    *shift* maps an off-axis pair index to an offset added to both of its
    replicates.
    """
    truth = make_model(coef)
    zeros = np.zeros_like(DOSES)
    on_d1 = np.concatenate([[0.0], DOSES, zeros])
    on_d2 = np.concatenate([[0.0], zeros, DOSES])
    g1, g2 = np.meshgrid(OFF_DOSES, OFF_DOSES, indexing="ij")
    off_d1, off_d2 = g1.ravel(), g2.ravel()

    on_mean = np.where(
        on_d1 > 0, truth.predict_marginal(on_d1, 1), truth.predict_marginal(on_d2, 2),
    )
    off_mean = predict_null(truth, off_d1, off_d2, null_model).response.copy()
    for j, offset in (shift or {}).items():
        off_mean[j] += offset

    d1 = np.concatenate([on_d1, off_d1])
    d2 = np.concatenate([on_d2, off_d2])
    mean = np.concatenate([on_mean, off_mean])
    return Observations.from_arrays(
        np.repeat(d1, 2),
        np.repeat(d2, 2),
        np.repeat(mean, 2) + np.tile([delta, -delta], d1.size),
    )


@pytest.fixture
def combo_data():
    return paired_design()


@pytest.fixture
def fitted_model(combo_data):
    return fit_marginals(combo_data).unwrap()


@pytest.fixture
def noisy_data():
    """Random-noise design with four replicates per dose pair."""
    np.random.seed(42)
    clean = paired_design(delta=0.0)
    d1 = np.repeat(clean.d1[::2], 4)
    d2 = np.repeat(clean.d2[::2], 4)
    effect = np.repeat(clean.effect[::2], 4) + np.random.normal(0, 0.03, d1.size)
    return Observations.from_arrays(d1, d2, effect)
