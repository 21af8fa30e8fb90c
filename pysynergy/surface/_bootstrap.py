"""Parametric and residual bootstrap for the synergy tests.

Three procedures share one simulation scheme:

* :func:`bootstrap_cp` simulates on-axis data around the fitted marginal
  curves, refits them and records the off-axis null predictions.  Their
  covariance, in units of ``sigma0^2``, is the ``CP`` matrix.
* :func:`bootstrap_statistics` simulates complete data sets under the null
  model (off-axis centred on the null prediction) and records the meanR and
  maxR statistics of each replicate, reusing the observed ``CP``.
* :func:`bootstrap_effects` simulates around the observed data (off-axis
  centred on the observed means) and records per-point effect sizes for
  percentile confidence intervals.

Simulated errors are built from standardised scores on the fitting scale:
on-axis ``fitted + sigma0 * s``, off-axis ``centre_i + sqrt(v_i) * s``.
Scores are resampled from the standardised marginal residuals (stratified
by experiment when labels are given), drawn from ``N(0, 1)``, or, for the
wild bootstrap, equal to each observation's own standardised residual times
a Rademacher sign.

Every replicate draws from its own child of one ``SeedSequence``, so results
do not depend on ``n_jobs`` or on scheduling.  Replicates that fail (solver
failure, degenerate refit) or that time out are logged and excluded.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, TypeVar

import numpy as np
from numpy.typing import NDArray

from pysynergy._errors import SynergyError
from pysynergy.marginal import MarginalModel, Observations, fit_marginals, fit_marginals_batch
from pysynergy.surface._nullmodels import NullModel, coerce_null_model, predict_null, predict_off_axis
from pysynergy.surface._statistics import maxr_statistics, meanr_statistic, residual_covariance
from pysynergy.surface._variance import VarianceMethod, VarianceTransform, estimate_variance

logger = logging.getLogger(__name__)

T = TypeVar("T")

SeedLike = int | np.random.SeedSequence | np.random.Generator | None

# Failures that exclude a single replicate instead of aborting the run
_REPLICATE_ERRORS = (SynergyError, ValueError, np.linalg.LinAlgError, FloatingPointError)


class ErrorDistribution(str, Enum):
    """How simulated errors are generated."""

    RESAMPLE = "resample"
    NORMAL = "normal"


VALID_ERRORS = tuple(e.value for e in ErrorDistribution)


@dataclass(frozen=True)
class BootstrapCP:
    """Bootstrap covariance of the off-axis null predictions.

    ``cp`` is in units of ``sigma0^2``; ``predictions`` holds one row per
    effective replicate (fitting scale).
    """

    cp: NDArray[np.floating]
    predictions: NDArray[np.floating]
    n_boot: int
    n_boot_requested: int
    backend: str


@dataclass(frozen=True)
class BootstrapDistribution:
    """Null distribution of the meanR and maxR statistics."""

    meanr: NDArray[np.floating]
    maxr: NDArray[np.floating]
    n_boot: int
    n_boot_requested: int


@dataclass(frozen=True)
class BootstrapEffects:
    """Per-point effect sizes (observed minus predicted) of each replicate."""

    effects: NDArray[np.floating]
    n_boot: int
    n_boot_requested: int


# ---------------------------------------------------------------------------
# Random streams
# ---------------------------------------------------------------------------

def as_seed_sequence(seed: SeedLike) -> np.random.SeedSequence:
    """Root :class:`~numpy.random.SeedSequence` for *seed*.

    A ``Generator`` is consumed: one draw from it seeds the sequence, so
    passing the same generator twice gives different streams.
    """
    if isinstance(seed, np.random.SeedSequence):
        return seed
    if isinstance(seed, np.random.Generator):
        return np.random.SeedSequence(int(seed.integers(2**63)))
    if seed is not None and (not isinstance(seed, (int, np.integer)) or seed < 0):
        raise ValueError(
            f"seed must be a non-negative int, a SeedSequence, a Generator or None, got {seed!r}"
        )
    return np.random.SeedSequence(seed)


def spawn_streams(seed: SeedLike, n: int) -> list[np.random.SeedSequence]:
    """*n* independent child seeds of *seed*."""
    return as_seed_sequence(seed).spawn(n)


# ---------------------------------------------------------------------------
# Error model and simulator
# ---------------------------------------------------------------------------

def _coerce_error(error: str | ErrorDistribution) -> ErrorDistribution:
    try:
        return ErrorDistribution(error)
    except ValueError:
        raise ValueError(f"error must be one of {VALID_ERRORS}, got {error!r}") from None


@dataclass(frozen=True)
class _ErrorModel:
    kind: ErrorDistribution
    wild: bool
    pool: NDArray
    pool_strata: NDArray | None

    def draw(
        self, rng: np.random.Generator, own: NDArray, strata: NDArray | None,
    ) -> NDArray:
        """Standardised scores for observations with residuals *own*."""
        n = own.shape[0]
        if self.wild:
            return own * rng.choice((-1.0, 1.0), size=n)
        if self.kind is ErrorDistribution.NORMAL:
            return rng.standard_normal(n)
        if self.pool_strata is None or strata is None:
            return rng.choice(self.pool, size=n, replace=True)

        out = np.empty(n)
        for label in np.unique(strata):
            target = strata == label
            source = self.pool[self.pool_strata == label]
            if source.size == 0:
                source = self.pool
            out[target] = rng.choice(source, size=int(np.count_nonzero(target)), replace=True)
        return out


def _standardised_marginal_residuals(model: MarginalModel) -> NDArray:
    n = model.data.n_obs
    if model.sigma == 0 or model.df < 1:
        return np.zeros(n)
    return model.residuals * np.sqrt(n / model.df) / model.sigma


@dataclass(frozen=True)
class _Simulator:
    """Builds simulated data sets on the design of *data*."""

    data: Observations
    model: MarginalModel
    errors: _ErrorModel
    on_mask: NDArray
    off_mask: NDArray
    off_index: NDArray
    off_scale: NDArray
    own_on: NDArray
    own_off: NDArray

    @staticmethod
    def build(
        model: MarginalModel,
        data: Observations,
        off_variance: NDArray | None,
        error: ErrorDistribution,
        wild: bool,
    ) -> _Simulator:
        on_mask = data.on_axis
        off_mask = data.off_axis
        if int(np.count_nonzero(on_mask)) != model.data.n_obs:
            raise ValueError("data does not match the on-axis observations the model was fitted to")

        pool = _standardised_marginal_residuals(model)
        experiment = model.data.experiment
        errors = _ErrorModel(kind=error, wild=wild, pool=pool, pool_strata=experiment)

        off = data.subset(off_mask)
        groups = off.groups()
        if off_variance is None:
            off_variance = np.full(groups.n_groups, model.sigma**2)
        off_scale = np.sqrt(np.asarray(off_variance, dtype=np.float64))

        # Own residuals of off-axis points: deviation from the replicate mean
        y_off = model.transforms.stabilize(off.effect)
        dev = y_off - groups.means(y_off)[groups.index]
        n_g = groups.counts[groups.index]
        scale = off_scale[groups.index]
        with np.errstate(divide="ignore", invalid="ignore"):
            own_off = np.where(
                (n_g > 1) & (scale > 0), dev / scale * np.sqrt(n_g / np.maximum(n_g - 1, 1)), 0.0,
            )

        return _Simulator(
            data=data,
            model=model,
            errors=errors,
            on_mask=on_mask,
            off_mask=off_mask,
            off_index=groups.index,
            off_scale=off_scale,
            own_on=pool,
            own_off=own_off,
        )

    def fit_scale_effects(
        self, rng: np.random.Generator, off_centre: NDArray | None,
    ) -> NDArray:
        """One simulated response vector on the fitting scale."""
        tf = self.model.transforms
        y = tf.stabilize(self.data.effect).copy()
        y[self.on_mask] = self.model.fitted + self.model.sigma * self.errors.draw(
            rng, self.own_on, self.model.data.experiment,
        )
        if off_centre is not None:
            strata = None if self.data.experiment is None else self.data.experiment[self.off_mask]
            scores = self.errors.draw(rng, self.own_off, strata)
            y[self.off_mask] = (
                off_centre[self.off_index] + self.off_scale[self.off_index] * scores
            )
        return y

    def simulate(self, rng: np.random.Generator, off_centre: NDArray | None) -> Observations:
        y = self.fit_scale_effects(rng, off_centre)
        with np.errstate(all="ignore"):
            return self.data.with_effect(self.model.transforms.destabilize(y))


def _refit(model: MarginalModel, data: Observations) -> MarginalModel:
    return fit_marginals(
        data,
        method=model.method,
        transforms=model.transforms,
        constraints=model.constraints,
        start=model.coef,
        names=model.names,
    ).unwrap()


# ---------------------------------------------------------------------------
# Replicate runner
# ---------------------------------------------------------------------------

def run_replicates(
    func: Callable[[np.random.Generator], T],
    seeds: Sequence[np.random.SeedSequence],
    *,
    n_jobs: int = 1,
    timeout: float | None = None,
    label: str = "bootstrap",
) -> list[T]:
    """Run ``func(rng)`` once per seed; return the successful results in seed order.

    Failed replicates (any typed failure, ``ValueError`` or linear algebra
    error) are logged and dropped; so are replicates still running when
    *timeout* seconds have elapsed.

    Threads cannot be interrupted: a timed-out replicate is discarded but its
    worker keeps running until *func* returns, and the interpreter waits for
    it at exit.  *timeout* bounds the wait for results, not the CPU time spent.
    """
    if n_jobs < 1:
        raise ValueError(f"n_jobs must be >= 1, got {n_jobs}")
    if timeout is not None and timeout <= 0:
        raise ValueError(f"timeout must be positive, got {timeout}")

    results: list[Any] = [None] * len(seeds)
    ok = np.zeros(len(seeds), dtype=bool)
    executor = ThreadPoolExecutor(max_workers=n_jobs)
    try:
        futures = {
            executor.submit(func, np.random.default_rng(seed)): i for i, seed in enumerate(seeds)
        }
        done, not_done = wait(futures, timeout=timeout)
        for fut in not_done:
            fut.cancel()
        for fut in done:
            i = futures[fut]
            try:
                results[i] = fut.result()
            except _REPLICATE_ERRORS as exc:
                logger.debug("%s replicate %d failed: %s", label, i, exc)
                continue
            ok[i] = True
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    if not_done:
        logger.warning("%s: %d of %d replicates timed out", label, len(not_done), len(seeds))
    n_failed = len(seeds) - len(not_done) - int(ok.sum())
    if n_failed:
        logger.warning("%s: %d of %d replicates failed and were excluded", label, n_failed, len(seeds))
    return [r for r, good in zip(results, ok) if good]


def _check_n_boot(n_boot: int, minimum: int) -> None:
    if n_boot < minimum:
        raise ValueError(f"n_boot must be >= {minimum}, got {n_boot}")


def _too_few(label: str, n_eff: int, n_boot: int, minimum: int) -> SynergyError:
    return SynergyError(
        f"{label}: only {n_eff} of {n_boot} replicates succeeded, need at least {minimum}",
        component="BootstrapEngine",
        details={"n_effective": n_eff, "n_requested": n_boot},
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def bootstrap_cp(
    model: MarginalModel,
    data: Observations,
    *,
    null_model: str | NullModel = NullModel.GENERALIZED_LOEWE,
    n_boot: int = 50,
    error: str | ErrorDistribution = ErrorDistribution.RESAMPLE,
    wild: bool = False,
    seed: SeedLike = None,
    n_jobs: int = 1,
    timeout: float | None = None,
    backend: str = "cpu",
) -> BootstrapCP:
    """Bootstrap covariance of null predictions at the off-axis points.

    Parameters
    ----------
    model : MarginalModel
        Fitted marginal curves.
    data : Observations
        Full data set the model was fitted to.
    null_model : str
        Null model used for the off-axis predictions.
    n_boot : int
        Number of replicates (at least 2).
    error : str
        ``'resample'`` or ``'normal'``.
    wild : bool
        Use wild (Rademacher) errors instead.
    seed : int, SeedSequence, Generator or None
        Root seed of the replicate streams.
    n_jobs : int
        Worker threads.
    timeout : float or None
        Wall-clock budget in seconds; unfinished replicates are excluded
        (their worker threads still run to completion, see
        :func:`run_replicates`).
    backend : str
        ``'cpu'`` refits each replicate with :func:`fit_marginals`;
        ``'gpu'``/``'auto'`` refit all replicates at once with
        :func:`fit_marginals_batch`.

    Returns
    -------
    BootstrapCP
    """
    _check_n_boot(n_boot, 2)
    null_model = coerce_null_model(null_model)
    sim = _Simulator.build(model, data, None, _coerce_error(error), wild)
    off = data.subset(data.off_axis)
    if off.n_obs == 0:
        raise ValueError("data contains no off-axis observations (d1 > 0 and d2 > 0)")
    groups = off.groups()
    tf = model.transforms
    seeds = spawn_streams(seed, n_boot)

    def predict(fitted: MarginalModel) -> NDArray:
        response = predict_null(fitted, groups.d1, groups.d2, null_model).response
        with np.errstate(all="ignore"):
            pred = tf.latent_to_fit_scale(response)
        if not np.all(np.isfinite(pred)):
            raise ValueError("non-finite null prediction")
        return pred

    if backend in ("gpu", "auto"):
        on_design = model.data
        effects = np.vstack([
            tf.destabilize(sim.fit_scale_effects(np.random.default_rng(s), None)[sim.on_mask])
            for s in seeds
        ])
        batch = fit_marginals_batch(
            on_design,
            effects,
            method=model.method,
            transforms=tf,
            constraints=model.constraints,
            start=model.coef,
            backend=backend,
        )
        rows = []
        for i in np.flatnonzero(batch.converged):
            try:
                rows.append(predict(replace(model, coef=batch.coef[i])))
            except _REPLICATE_ERRORS as exc:
                logger.debug("CP replicate %d failed: %s", i, exc)
        used_backend = batch.backend
    elif backend == "cpu":
        def replicate(rng: np.random.Generator) -> NDArray:
            return predict(_refit(model, sim.simulate(rng, None)))

        rows = run_replicates(replicate, seeds, n_jobs=n_jobs, timeout=timeout, label="CP bootstrap")
        used_backend = "cpu"
    else:
        raise ValueError(f"backend must be 'cpu', 'gpu' or 'auto', got {backend!r}")

    if len(rows) < 2:
        raise _too_few("CP bootstrap", len(rows), n_boot, 2)
    preds = np.vstack(rows)
    sigma0_sq = model.sigma**2
    cov = np.atleast_2d(np.cov(preds, rowvar=False))
    cp = cov / sigma0_sq if sigma0_sq > 0 else np.zeros_like(cov)
    logger.info("CP estimated from %d of %d replicates (%s)", len(rows), n_boot, used_backend)
    return BootstrapCP(
        cp=cp, predictions=preds, n_boot=len(rows), n_boot_requested=n_boot, backend=used_backend,
    )


def bootstrap_statistics(
    model: MarginalModel,
    data: Observations,
    cp: NDArray[np.floating],
    *,
    null_model: str | NullModel = NullModel.GENERALIZED_LOEWE,
    variance_method: str | VarianceMethod = VarianceMethod.EQUAL,
    variance_transform: str | VarianceTransform = VarianceTransform.IDENTITY,
    n_boot: int = 200,
    error: str | ErrorDistribution = ErrorDistribution.RESAMPLE,
    wild: bool = False,
    seed: SeedLike = None,
    n_jobs: int = 1,
    timeout: float | None = None,
) -> BootstrapDistribution:
    """Null distribution of the meanR and maxR statistics.

    Each replicate simulates on-axis data around the fitted marginals and
    off-axis data around the null prediction, refits the marginals,
    re-estimates the variance and evaluates both statistics with the
    observed *cp*.

    Parameters
    ----------
    model, data
        As in :func:`bootstrap_cp`.
    cp : array, shape ``(k, k)``
        Observed ``CP`` matrix.
    null_model, variance_method, variance_transform
        As used for the observed statistics.
    n_boot : int
        Number of replicates.
    error, wild, seed, n_jobs, timeout
        As in :func:`bootstrap_cp`.

    Returns
    -------
    BootstrapDistribution
    """
    _check_n_boot(n_boot, 1)
    null_model = coerce_null_model(null_model)
    comparison = predict_off_axis(model, data, null_model)
    variance = estimate_variance(model, data, method=variance_method, transform=variance_transform)
    sim = _Simulator.build(model, data, variance.variance, _coerce_error(error), wild)
    counts = comparison.groups.counts

    def replicate(rng: np.random.Generator) -> tuple[float, float]:
        sim_data = sim.simulate(rng, comparison.predicted)
        fitted = _refit(model, sim_data)
        comp_b = predict_off_axis(fitted, sim_data, null_model)
        var_b = estimate_variance(
            fitted, sim_data, method=variance.method, transform=variance.transform,
        )
        total = residual_covariance(var_b.variance, counts, var_b.sigma0_sq, cp)
        residual = comp_b.residual
        if not np.all(np.isfinite(residual)):
            raise ValueError("non-finite residuals in replicate")
        return (
            meanr_statistic(residual, total),
            float(np.max(np.abs(maxr_statistics(residual, total)))),
        )

    rows = run_replicates(
        replicate, spawn_streams(seed, n_boot), n_jobs=n_jobs, timeout=timeout,
        label="statistic bootstrap",
    )
    if not rows:
        raise _too_few("statistic bootstrap", 0, n_boot, 1)
    arr = np.asarray(rows, dtype=np.float64)
    logger.info("null distribution from %d of %d replicates", len(rows), n_boot)
    return BootstrapDistribution(
        meanr=arr[:, 0], maxr=arr[:, 1], n_boot=len(rows), n_boot_requested=n_boot,
    )


def bootstrap_effects(
    model: MarginalModel,
    data: Observations,
    *,
    null_model: str | NullModel = NullModel.GENERALIZED_LOEWE,
    variance_method: str | VarianceMethod = VarianceMethod.EQUAL,
    variance_transform: str | VarianceTransform = VarianceTransform.IDENTITY,
    n_boot: int = 200,
    error: str | ErrorDistribution = ErrorDistribution.RESAMPLE,
    wild: bool = False,
    seed: SeedLike = None,
    n_jobs: int = 1,
    timeout: float | None = None,
) -> BootstrapEffects:
    """Per-point effect sizes of replicates simulated around the observed data."""
    _check_n_boot(n_boot, 1)
    null_model = coerce_null_model(null_model)
    comparison = predict_off_axis(model, data, null_model)
    variance = estimate_variance(model, data, method=variance_method, transform=variance_transform)
    sim = _Simulator.build(model, data, variance.variance, _coerce_error(error), wild)

    def replicate(rng: np.random.Generator) -> NDArray:
        sim_data = sim.simulate(rng, comparison.observed)
        residual = predict_off_axis(_refit(model, sim_data), sim_data, null_model).residual
        if not np.all(np.isfinite(residual)):
            raise ValueError("non-finite residuals in replicate")
        return residual

    rows = run_replicates(
        replicate, spawn_streams(seed, n_boot), n_jobs=n_jobs, timeout=timeout,
        label="effect bootstrap",
    )
    if not rows:
        raise _too_few("effect bootstrap", 0, n_boot, 1)
    return BootstrapEffects(effects=np.vstack(rows), n_boot=len(rows), n_boot_requested=n_boot)
