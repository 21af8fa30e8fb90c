"""Null models of non-interaction for two-compound combinations.

Given fitted marginal curves, predict the combined response at arbitrary
dose pairs under:

* ``hsa``: highest single agent, the more extreme of the two marginal
  responses;
* ``bliss``: independence, ``p = p1 + p2 - p1 p2`` on responses normalised
  to the larger dynamic range;
* ``classical_loewe``: dose additivity ``d1/ED1(y) + d2/ED2(y) = 1``,
  with a compound contributing nothing beyond its own maximal response;
* ``generalized_loewe``: dose additivity on a shared occupancy scale,
  with each compound's share of the occupancy weighted by its own maximal
  response;
* ``alternative_loewe``: classical Loewe while the solution stays within
  the weaker compound's range, equivalent-dose addition beyond it.

All Loewe variants coincide when the asymptotes are shared.

The implicit Loewe equations are solved per dose pair with Brent's method
on the log-odds scale of the occupancy.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import brentq
from scipy.special import expit

from pysynergy._errors import ConvergenceFailure, MonotonicityViolation
from pysynergy.marginal import DoseGroups, MarginalModel, Observations, ll4, ll4_inverse

_EXP_CAP = 700.0


class NullModel(str, Enum):
    """Null model of non-interaction."""

    GENERALIZED_LOEWE = "generalized_loewe"
    CLASSICAL_LOEWE = "classical_loewe"
    HSA = "hsa"
    BLISS = "bliss"
    ALTERNATIVE_LOEWE = "alternative_loewe"

    @property
    def is_loewe(self) -> bool:
        return self in (
            NullModel.GENERALIZED_LOEWE,
            NullModel.CLASSICAL_LOEWE,
            NullModel.ALTERNATIVE_LOEWE,
        )


VALID_NULL_MODELS = tuple(m.value for m in NullModel)

# Null models whose definition needs both curves moving the same way
_REQUIRES_SAME_DIRECTION = frozenset({
    NullModel.HSA,
    NullModel.BLISS,
    NullModel.ALTERNATIVE_LOEWE,
    NullModel.CLASSICAL_LOEWE,
})


def coerce_null_model(null_model: str | NullModel) -> NullModel:
    try:
        return NullModel(null_model)
    except ValueError:
        raise ValueError(
            f"null_model must be one of {VALID_NULL_MODELS}, got {null_model!r}"
        ) from None


@dataclass(frozen=True)
class NullPrediction:
    """Predicted latent response (and occupancy) at a set of dose pairs."""

    d1: NDArray[np.floating]
    d2: NDArray[np.floating]
    response: NDArray[np.floating]
    occupancy: NDArray[np.floating] | None
    null_model: NullModel


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Curves:
    """Marginal coefficients unpacked per compound (index 0 and 1)."""

    b: float
    m: NDArray
    e: NDArray
    h: NDArray
    strong: int  # compound with the larger dynamic range
    tau_max: NDArray  # (m_i - b) / (M - b)

    @staticmethod
    def from_model(model: MarginalModel) -> _Curves:
        c = model.coefficients
        b = c["b"]
        m = np.array([c["m1"], c["m2"]])
        span = np.abs(m - b)
        strong = int(np.argmax(span))
        big = m[strong] - b
        if big == 0:
            tau_max = np.zeros(2)
        else:
            tau_max = (m - b) / big
        if model.shared_asymptote or abs(span[0] - span[1]) <= 1e-12 * max(1.0, span.max()):
            tau_max = np.where(tau_max > 0, 1.0, tau_max)
        return _Curves(
            b=b,
            m=m,
            e=np.array([c["e1"], c["e2"]]),
            h=np.array([c["h1"], c["h2"]]),
            strong=strong,
            tau_max=tau_max,
        )

    @property
    def top(self) -> float:
        return float(self.m[self.strong])

    def marginal(self, i: int, dose: NDArray) -> NDArray:
        return ll4(dose, self.b, self.m[i], self.e[i], self.h[i])


def _solve_bracketed(
    func: Callable[[float], float],
    lo: float,
    hi: float,
    *,
    xtol: float = 1e-12,
    maxiter: int = 500,
    max_expand: int = 40,
) -> float:
    """Solve ``func(x) == 0`` via Brent's method, widening the bracket first."""
    f_lo, f_hi = func(lo), func(hi)
    n_expand = 0
    while f_lo * f_hi > 0:
        if n_expand >= max_expand:
            raise ConvergenceFailure(
                "occupancy equation has no sign change in the search interval",
                solver="brentq",
                component="NullModelEngine",
                details={"bracket": (lo, hi)},
            )
        width = hi - lo
        lo, hi = lo - width, hi + width
        f_lo, f_hi = func(lo), func(hi)
        n_expand += 1
    if f_lo == 0:
        return lo
    if f_hi == 0:
        return hi
    return brentq(func, lo, hi, xtol=xtol, maxiter=maxiter)


def _capped_exp(x: NDArray | float) -> NDArray | float:
    return np.exp(np.minimum(x, _EXP_CAP))


def _log_odds_ratio(u: float, tau_max: float) -> float:
    """``log((tau_max - tau) / tau)`` with ``tau = expit(u)``; NaN when <= 0."""
    if tau_max == 1.0:
        return -u
    a = np.log(tau_max) + np.logaddexp(0.0, -u)
    if a <= 0:
        return np.nan
    return float(a + np.log1p(-np.exp(-a)))


# ---------------------------------------------------------------------------
# Null model implementations: (curves, d1, d2) -> (response, occupancy)
# ---------------------------------------------------------------------------

def _hsa(cv: _Curves, d1: NDArray, d2: NDArray) -> tuple[NDArray, None]:
    f1 = cv.marginal(0, d1)
    f2 = cv.marginal(1, d2)
    sign = np.sign(cv.top - cv.b) or 1.0
    return np.where(sign * (f1 - cv.b) >= sign * (f2 - cv.b), f1, f2), None


def _bliss(cv: _Curves, d1: NDArray, d2: NDArray) -> tuple[NDArray, None]:
    span = cv.top - cv.b
    if span == 0:
        return np.full(d1.shape, cv.b), None
    p1 = (cv.marginal(0, d1) - cv.b) / span
    p2 = (cv.marginal(1, d2) - cv.b) / span
    return cv.b + (p1 + p2 - p1 * p2) * span, None


def _generalized_loewe_point(cv: _Curves, doses: tuple[float, float]) -> tuple[float, float]:
    active = [i for i in (0, 1) if doses[i] > 0]
    if not active:
        return cv.b, 0.0

    log_ratio = {i: np.log(doses[i]) - cv.e[i] for i in active}
    if len(active) == 1:
        u = cv.h[active[0]] * log_ratio[active[0]]
    else:
        def g(u: float) -> float:
            return sum(_capped_exp(log_ratio[i] - u / cv.h[i]) for i in active) - 1.0

        singles = [cv.h[i] * log_ratio[i] for i in active]
        u = _solve_bracketed(g, min(singles) - 1.0, max(singles) + 1.0 + np.log(2.0) * np.max(np.abs(cv.h)))

    occ = float(expit(u))
    response = cv.b
    for i in active:
        share = _capped_exp(log_ratio[i] - u / cv.h[i])
        response += (cv.m[i] - cv.b) * occ * share
    return float(response), occ


def _generalized_loewe(cv: _Curves, d1: NDArray, d2: NDArray) -> tuple[NDArray, NDArray]:
    resp = np.empty(d1.shape)
    occ = np.empty(d1.shape)
    for k in range(d1.shape[0]):
        resp[k], occ[k] = _generalized_loewe_point(cv, (d1[k], d2[k]))
    return resp, occ


def _classical_occupancy(cv: _Curves, doses: tuple[float, float]) -> float:
    """Solve ``sum d_i / ED_i(y) = 1`` for ``tau = (y - b) / (M - b)``."""
    active = [i for i in (0, 1) if doses[i] > 0 and cv.tau_max[i] > 0]
    if not active or cv.top == cv.b:
        return 0.0

    log_ratio = {i: np.log(doses[i]) - cv.e[i] for i in active}

    def g(u: float) -> float:
        total = 0.0
        for i in active:
            lr = _log_odds_ratio(u, cv.tau_max[i])
            if np.isfinite(lr):
                total += _capped_exp(log_ratio[i] + lr / cv.h[i])
        return total - 1.0

    singles = [cv.h[i] * log_ratio[i] for i in active]
    u = _solve_bracketed(g, min(singles) - 1.0, max(singles) + 1.0)
    return float(expit(u))


def _classical_loewe(cv: _Curves, d1: NDArray, d2: NDArray) -> tuple[NDArray, NDArray]:
    occ = np.array([_classical_occupancy(cv, (a, b)) for a, b in zip(d1, d2)])
    return cv.b + occ * (cv.top - cv.b), occ


def _alternative_loewe(cv: _Curves, d1: NDArray, d2: NDArray) -> tuple[NDArray, NDArray]:
    resp, occ = _classical_loewe(cv, d1, d2)
    weak = 1 - cv.strong
    s = cv.strong
    tau_w = cv.tau_max[weak]
    if tau_w >= 1.0 or cv.top == cv.b:
        return resp, occ

    doses = np.column_stack([d1, d2])
    beyond = (doses[:, weak] > 0) & (doses[:, s] > 0) & (occ >= tau_w)
    if np.any(beyond):
        # Weak compound converted to the equipotent dose of the strong one
        y_weak = cv.marginal(weak, doses[beyond, weak])
        d_eq = ll4_inverse(y_weak, cv.b, cv.m[s], cv.e[s], cv.h[s])
        d_eq = np.where(np.isfinite(d_eq), d_eq, 0.0)
        resp = resp.copy()
        occ = occ.copy()
        resp[beyond] = cv.marginal(s, doses[beyond, s] + d_eq)
        occ[beyond] = (resp[beyond] - cv.b) / (cv.top - cv.b)
    return resp, occ


_NULL_MODEL_MAP: dict[NullModel, Callable[[_Curves, NDArray, NDArray], tuple[NDArray, NDArray | None]]] = {
    NullModel.GENERALIZED_LOEWE: _generalized_loewe,
    NullModel.CLASSICAL_LOEWE: _classical_loewe,
    NullModel.HSA: _hsa,
    NullModel.BLISS: _bliss,
    NullModel.ALTERNATIVE_LOEWE: _alternative_loewe,
}


def _check_directions(model: MarginalModel, null_model: NullModel) -> None:
    s1, s2 = model.direction(1), model.direction(2)
    if null_model in _REQUIRES_SAME_DIRECTION and s1 * s2 < 0:
        raise MonotonicityViolation(
            f"{null_model.value} requires both marginal curves to change in the same direction",
            component="NullModelEngine",
            details={"null_model": null_model.value, "directions": (s1, s2), "names": model.names},
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def effect_direction(model: MarginalModel) -> int:
    """Direction of "more effect": that of the curve with the larger range."""
    cv = _Curves.from_model(model)
    d = model.direction(cv.strong + 1) or model.direction(2 - cv.strong)
    return d or 1


def predict_null(
    model: MarginalModel,
    d1: NDArray[np.floating],
    d2: NDArray[np.floating],
    null_model: str | NullModel = NullModel.GENERALIZED_LOEWE,
) -> NullPrediction:
    """Predict the latent response under *null_model* at dose pairs.

    Parameters
    ----------
    model : MarginalModel
        Fitted marginal curves.
    d1, d2 : array
        Doses of compound 1 and 2 (broadcast against each other).
    null_model : str
        One of ``'generalized_loewe'``, ``'classical_loewe'``, ``'hsa'``,
        ``'bliss'``, ``'alternative_loewe'``.

    Returns
    -------
    NullPrediction
        ``occupancy`` is populated for the Loewe family only.

    Raises
    ------
    MonotonicityViolation
        If the model needs same-direction curves and they are not.
    """
    null_model = coerce_null_model(null_model)
    d1, d2 = np.broadcast_arrays(
        np.asarray(d1, dtype=np.float64), np.asarray(d2, dtype=np.float64),
    )
    if np.any(d1 < 0) or np.any(d2 < 0):
        raise ValueError("doses must be >= 0")
    _check_directions(model, null_model)

    cv = _Curves.from_model(model)
    shape = d1.shape
    resp, occ = _NULL_MODEL_MAP[null_model](cv, d1.ravel(), d2.ravel())
    return NullPrediction(
        d1=d1.copy(),
        d2=d2.copy(),
        response=np.asarray(resp).reshape(shape),
        occupancy=None if occ is None else np.asarray(occ).reshape(shape),
        null_model=null_model,
    )


def predict_grid(
    model: MarginalModel,
    d1: NDArray[np.floating],
    d2: NDArray[np.floating],
    null_model: str | NullModel = NullModel.GENERALIZED_LOEWE,
) -> NullPrediction:
    """Null-model prediction on the full grid ``d1 x d2`` (shape ``(n1, n2)``)."""
    g1, g2 = np.meshgrid(np.asarray(d1, dtype=np.float64), np.asarray(d2, dtype=np.float64), indexing="ij")
    return predict_null(model, g1, g2, null_model)


@dataclass(frozen=True)
class OffAxisComparison:
    """Observed group means against null predictions at off-axis points.

    ``observed`` and ``predicted`` are on the fitting (power-transformed)
    scale; ``prediction`` holds the latent-scale null prediction.
    """

    groups: DoseGroups
    observed: NDArray[np.floating]
    predicted: NDArray[np.floating]
    prediction: NullPrediction

    @property
    def residual(self) -> NDArray[np.floating]:
        return self.observed - self.predicted


def predict_off_axis(
    model: MarginalModel,
    data: Observations,
    null_model: str | NullModel = NullModel.GENERALIZED_LOEWE,
) -> OffAxisComparison:
    """Compare replicate-averaged off-axis observations with *null_model*."""
    off = data.subset(data.off_axis)
    if off.n_obs == 0:
        raise ValueError("data contains no off-axis observations (d1 > 0 and d2 > 0)")
    groups = off.groups()
    tf = model.transforms
    prediction = predict_null(model, groups.d1, groups.d2, null_model)
    with np.errstate(all="ignore"):
        predicted = tf.latent_to_fit_scale(prediction.response)
    return OffAxisComparison(
        groups=groups,
        observed=groups.means(tf.stabilize(off.effect)),
        predicted=predicted,
        prediction=prediction,
    )
