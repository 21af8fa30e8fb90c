"""Residual variance of off-axis observations.

Three estimators are available:

* ``equal``: one pooled variance, the residual mean square of the
  marginal fit, used everywhere;
* ``unequal``: the marginal residual mean square on-axis and a separate
  pooled within-replicate variance for the off-axis points;
* ``model``: a linear regression of replicate-group sample variance on
  group mean (optionally for the log variance), evaluated at each off-axis
  group mean.  Regression artefacts are floored at the smallest observed
  sample variance; there is no upper cap.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from pysynergy._errors import InsufficientReplicates
from pysynergy.marginal import MarginalModel, Observations


class VarianceMethod(str, Enum):
    EQUAL = "equal"
    UNEQUAL = "unequal"
    MODEL = "model"


class VarianceTransform(str, Enum):
    IDENTITY = "identity"
    LOG = "log"


@dataclass(frozen=True)
class VarianceEstimate:
    """Per-off-axis-point variance and the degrees of freedom behind it.

    ``variance`` is aligned with the unique off-axis dose pairs of the data
    (sorted as :meth:`Observations.groups` sorts them).
    """

    variance: NDArray[np.floating]
    df: int
    sigma0_sq: float
    method: VarianceMethod
    transform: VarianceTransform
    min_observed: float | None = None
    intercept: float | None = None
    slope: float | None = None


def _coerce(value, enum_cls, name):
    try:
        return enum_cls(value)
    except ValueError:
        valid = tuple(m.value for m in enum_cls)
        raise ValueError(f"{name} must be one of {valid}, got {value!r}") from None


def _unequal(y_off: NDArray, off: Observations) -> tuple[NDArray, int]:
    groups = off.groups()
    dev = y_off - groups.means(y_off)[groups.index]
    df = int(np.sum(groups.counts - 1))
    if df < 1:
        raise InsufficientReplicates(
            "unequal variances need replicated off-axis dose pairs",
            component="VarianceEstimator",
            details={"n_off_axis": off.n_obs, "n_pairs": groups.n_groups},
        )
    s2 = float(dev @ dev) / df
    return np.full(groups.n_groups, s2), df


def _modelled(
    model: MarginalModel,
    data: Observations,
    transform: VarianceTransform,
) -> tuple[NDArray, float, float, float]:
    tf = model.transforms
    y_all = tf.stabilize(data.effect)
    groups = data.groups()
    means = groups.means(y_all)
    variances = groups.variances(y_all)
    usable = groups.counts > 1
    if transform is VarianceTransform.LOG:
        usable &= variances > 0

    if np.count_nonzero(usable) < 3:
        raise InsufficientReplicates(
            "variance model needs at least 3 replicated dose pairs",
            component="VarianceEstimator",
            details={"n_replicated": int(np.count_nonzero(usable)), "transform": transform.value},
        )
    x = means[usable]
    v = variances[usable]
    y = np.log(v) if transform is VarianceTransform.LOG else v
    if np.ptp(x) == 0:
        raise InsufficientReplicates(
            "variance model needs replicated dose pairs with distinct means",
            component="VarianceEstimator",
            details={"n_replicated": int(x.size)},
        )

    fit = stats.linregress(x, y)
    off = data.subset(data.off_axis)
    off_groups = off.groups()
    off_means = off_groups.means(tf.stabilize(off.effect))
    pred = fit.intercept + fit.slope * off_means
    if transform is VarianceTransform.LOG:
        pred = np.exp(pred)

    floor = float(np.min(v))
    return np.maximum(pred, floor), floor, float(fit.intercept), float(fit.slope)


def estimate_variance(
    model: MarginalModel,
    data: Observations,
    *,
    method: str | VarianceMethod = VarianceMethod.EQUAL,
    transform: str | VarianceTransform = VarianceTransform.IDENTITY,
) -> VarianceEstimate:
    """Estimate the residual variance at each unique off-axis dose pair.

    Parameters
    ----------
    model : MarginalModel
        Fitted marginal model (supplies the on-axis residual mean square
        and the transforms).
    data : Observations
        Full data set (on- and off-axis).
    method : str
        ``'equal'``, ``'unequal'`` or ``'model'``.
    transform : str
        ``'identity'`` or ``'log'``; scale of the variance regression in
        ``'model'`` mode.

    Returns
    -------
    VarianceEstimate

    Raises
    ------
    InsufficientReplicates
        If the replicate structure cannot support the requested estimator.
    """
    method = _coerce(method, VarianceMethod, "variance_method")
    transform = _coerce(transform, VarianceTransform, "variance_transform")

    off = data.subset(data.off_axis)
    if off.n_obs == 0:
        raise ValueError("data contains no off-axis observations (d1 > 0 and d2 > 0)")
    sigma0_sq = model.sigma**2
    n_pairs = off.groups().n_groups

    if method is VarianceMethod.EQUAL:
        return VarianceEstimate(
            variance=np.full(n_pairs, sigma0_sq),
            df=model.df,
            sigma0_sq=sigma0_sq,
            method=method,
            transform=transform,
        )

    if method is VarianceMethod.UNEQUAL:
        variance, df = _unequal(model.transforms.stabilize(off.effect), off)
        return VarianceEstimate(
            variance=variance, df=df, sigma0_sq=sigma0_sq, method=method, transform=transform,
        )

    variance, floor, intercept, slope = _modelled(model, data, transform)
    return VarianceEstimate(
        variance=variance,
        df=model.df,
        sigma0_sq=sigma0_sq,
        method=method,
        transform=transform,
        min_observed=floor,
        intercept=intercept,
        slope=slope,
    )
