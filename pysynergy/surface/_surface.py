"""Response surface: null-model comparison of a combination experiment."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from pysynergy.marginal import MarginalModel, Observations
from pysynergy.surface._bootstrap import (
    BootstrapCP,
    ErrorDistribution,
    SeedLike,
    as_seed_sequence,
    bootstrap_cp,
    bootstrap_effects,
    bootstrap_statistics,
)
from pysynergy.surface._confint import ConfidenceIntervalResult, confint_bootstrap, confint_normal
from pysynergy.surface._nullmodels import (
    NullModel,
    NullPrediction,
    coerce_null_model,
    effect_direction,
    predict_off_axis,
)
from pysynergy.surface._statistics import (
    VALID_STATISTICS,
    MaxRResult,
    MeanRResult,
    StatisticKind,
    maxr,
    maxr_statistics,
    meanr,
    residual_covariance,
)
from pysynergy.surface._variance import (
    VarianceEstimate,
    VarianceMethod,
    VarianceTransform,
    estimate_variance,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResponseSurface:
    """Observed against null-predicted responses at the off-axis dose pairs.

    ``observed``, ``predicted`` and ``residual`` are on the fitting scale and
    aligned with ``d1``/``d2`` (unique pairs, sorted).  ``cp`` is in units
    of ``sigma0^2``; ``total_cov`` is the full residual covariance shared by
    every test and interval.
    """

    d1: NDArray[np.floating]
    d2: NDArray[np.floating]
    counts: NDArray[np.intp]
    observed: NDArray[np.floating]
    predicted: NDArray[np.floating]
    residual: NDArray[np.floating]
    z_score: NDArray[np.floating]
    variance: VarianceEstimate
    cp: NDArray[np.floating]
    total_cov: NDArray[np.floating]
    prediction: NullPrediction
    null_model: NullModel
    direction: int
    model: MarginalModel
    cp_bootstrap: BootstrapCP | None = None
    meanr: MeanRResult | None = None
    maxr: MaxRResult | None = None
    confint: ConfidenceIntervalResult | None = None

    @property
    def occupancy(self) -> NDArray[np.floating] | None:
        """Occupancy at each point (Loewe-family null models only)."""
        return self.prediction.occupancy

    @property
    def n_points(self) -> int:
        return int(self.d1.shape[0])

    def summary(self) -> str:
        lines = [
            f"Response surface: {self.model.names[0]} / {self.model.names[1]}",
            "=" * 50,
            f"Null model        : {self.null_model.value}",
            f"Off-axis points   : {self.n_points}",
            f"Variance          : {self.variance.method.value} ({self.variance.df} df)",
        ]
        if self.cp_bootstrap is not None:
            lines.append(
                f"CP replicates     : {self.cp_bootstrap.n_boot} of "
                f"{self.cp_bootstrap.n_boot_requested} ({self.cp_bootstrap.backend})"
            )
        if self.meanr is not None:
            lines += ["", self.meanr.summary()]
        if self.maxr is not None:
            lines += ["", self.maxr.summary()]
        if self.confint is not None:
            lines += ["", self.confint.summary()]
        return "\n".join(lines)


def _coerce_statistic(statistic: str | StatisticKind) -> StatisticKind:
    try:
        return StatisticKind(statistic)
    except ValueError:
        raise ValueError(
            f"statistic must be one of {VALID_STATISTICS}, got {statistic!r}"
        ) from None


def fit_surface(
    data: Observations,
    model: MarginalModel,
    *,
    null_model: str | NullModel = NullModel.GENERALIZED_LOEWE,
    statistic: str | StatisticKind = StatisticKind.NONE,
    variance_method: str | VarianceMethod = VarianceMethod.EQUAL,
    variance_transform: str | VarianceTransform = VarianceTransform.IDENTITY,
    cp: NDArray[np.floating] | None = None,
    n_boot_cp: int = 50,
    n_boot_statistic: int | None = None,
    cutoff: float = 0.95,
    confint: bool = False,
    conf_level: float = 0.95,
    n_boot_confint: int | None = None,
    error: str | ErrorDistribution = ErrorDistribution.RESAMPLE,
    wild: bool = False,
    seed: SeedLike = None,
    n_jobs: int = 1,
    timeout: float | None = None,
    backend: str = "cpu",
) -> ResponseSurface:
    """Compare off-axis observations with a null model and test for synergy.

    Parameters
    ----------
    data : Observations
        Full data set (on- and off-axis) the marginal model was fitted to.
    model : MarginalModel
        Fitted marginal curves.
    null_model : str
        ``'generalized_loewe'``, ``'classical_loewe'``, ``'hsa'``,
        ``'bliss'`` or ``'alternative_loewe'``.
    statistic : str
        ``'none'``, ``'meanR'``, ``'maxR'`` or ``'both'``.
    variance_method : str
        ``'equal'``, ``'unequal'`` or ``'model'``.
    variance_transform : str
        ``'identity'`` or ``'log'`` (``'model'`` variance only).
    cp : array or None
        Precomputed ``CP`` matrix; bootstrapped when ``None``.
    n_boot_cp : int
        Replicates for ``CP``.
    n_boot_statistic : int or None
        Replicates for the null distribution of the statistics; ``None``
        uses the F / maximum-t approximations.
    cutoff : float
        Confidence level of the maxR calls.
    confint : bool
        Compute effect-size confidence intervals.
    conf_level : float
        Coverage of the intervals.
    n_boot_confint : int or None
        Replicates for percentile intervals; ``None`` gives normal intervals.
    error : str
        ``'resample'`` or ``'normal'`` bootstrap errors.
    wild : bool
        Wild bootstrap errors.
    seed : int, SeedSequence, Generator or None
        Root seed; the CP, statistic and interval bootstraps use independent
        child streams.
    n_jobs : int
        Worker threads for bootstrap replicates.
    timeout : float or None
        Wall-clock budget per bootstrap procedure, in seconds.
    backend : str
        Refit backend of the CP bootstrap (``'cpu'``, ``'gpu'``, ``'auto'``).

    Returns
    -------
    ResponseSurface

    Raises
    ------
    MonotonicityViolation
        If the null model cannot be used with the fitted curves.
    InsufficientReplicates
        If the variance estimator lacks replicate groups.
    SingularCovariance
        If the residual covariance is numerically singular.

    Examples
    --------
    >>> surface = fit_surface(data, model, statistic="both", n_boot_cp=100, seed=1)
    >>> surface.maxr.call
    ('additive', 'synergy', ...)
    """
    null_model = coerce_null_model(null_model)
    statistic = _coerce_statistic(statistic)
    if n_boot_statistic is not None and n_boot_statistic < 1:
        raise ValueError(f"n_boot_statistic must be >= 1 or None, got {n_boot_statistic}")
    if n_boot_confint is not None and n_boot_confint < 1:
        raise ValueError(f"n_boot_confint must be >= 1 or None, got {n_boot_confint}")

    comparison = predict_off_axis(model, data, null_model)
    groups = comparison.groups
    k = groups.n_groups
    variance = estimate_variance(
        model, data, method=variance_method, transform=variance_transform,
    )
    cp_seed, stat_seed, ci_seed = as_seed_sequence(seed).spawn(3)
    boot_kwargs = dict(error=error, wild=wild, n_jobs=n_jobs, timeout=timeout)

    cp_boot = None
    if cp is None:
        cp_boot = bootstrap_cp(
            model, data, null_model=null_model, n_boot=n_boot_cp, seed=cp_seed,
            backend=backend, **boot_kwargs,
        )
        cp_mat = cp_boot.cp
    else:
        cp_mat = np.asarray(cp, dtype=np.float64)
        if cp_mat.shape != (k, k):
            raise ValueError(f"cp must have shape ({k}, {k}), got {cp_mat.shape}")

    total = residual_covariance(variance.variance, groups.counts, variance.sigma0_sq, cp_mat)
    residual = comparison.residual
    direction = effect_direction(model)

    distribution = None
    if statistic is not StatisticKind.NONE and n_boot_statistic is not None:
        distribution = bootstrap_statistics(
            model, data, cp_mat,
            null_model=null_model,
            variance_method=variance.method,
            variance_transform=variance.transform,
            n_boot=n_boot_statistic,
            seed=stat_seed,
            **boot_kwargs,
        )

    meanr_result = None
    if statistic.wants_meanr:
        meanr_result = meanr(
            residual, total,
            df=variance.df,
            boot_statistics=None if distribution is None else distribution.meanr,
            n_boot_requested=n_boot_statistic,
        )

    maxr_result = None
    if statistic.wants_maxr:
        maxr_result = maxr(
            residual, total,
            d1=groups.d1,
            d2=groups.d2,
            df=variance.df,
            direction=direction,
            cutoff=cutoff,
            boot_max=None if distribution is None else distribution.maxr,
            n_boot_requested=n_boot_statistic,
        )

    ci = None
    if confint:
        if n_boot_confint is None:
            ci = confint_normal(
                residual, total, d1=groups.d1, d2=groups.d2,
                direction=direction, conf_level=conf_level,
            )
        else:
            effects = bootstrap_effects(
                model, data,
                null_model=null_model,
                variance_method=variance.method,
                variance_transform=variance.transform,
                n_boot=n_boot_confint,
                seed=ci_seed,
                **boot_kwargs,
            )
            ci = confint_bootstrap(
                residual, effects.effects, d1=groups.d1, d2=groups.d2,
                direction=direction, conf_level=conf_level,
            )

    logger.debug("response surface for %s at %d off-axis points", null_model.value, k)
    return ResponseSurface(
        d1=groups.d1,
        d2=groups.d2,
        counts=groups.counts,
        observed=comparison.observed,
        predicted=comparison.predicted,
        residual=residual,
        z_score=maxr_statistics(residual, total),
        variance=variance,
        cp=cp_mat,
        total_cov=total,
        prediction=comparison.prediction,
        null_model=null_model,
        direction=direction,
        model=model,
        cp_bootstrap=cp_boot,
        meanr=meanr_result,
        maxr=maxr_result,
        confint=ci,
    )
