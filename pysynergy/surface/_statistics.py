"""Global (meanR) and per-combination (maxR) tests against a null model.

For the ``k`` unique off-axis dose pairs let ``R`` be the replicate-averaged
observed minus predicted response.  Under the null model its covariance is

.. math::
    \\Sigma = \\mathrm{diag}(v_i / n_i) + \\sigma_0^2 \\, CP

where ``v_i`` is the residual variance at point ``i``, ``n_i`` its number of
replicates, ``sigma_0^2`` the residual mean square of the marginal fit and
``CP`` the (bootstrap) covariance of the null predictions in units of
``sigma_0^2``.

* **meanR**: ``F = R' Sigma^{-1} R / k``, referred to ``F(k, df)`` or to its
  bootstrap distribution.
* **maxR**: ``t_i = R_i / sqrt(Sigma_ii)``; each point's two-sided p-value
  is that of the maximum ``|t|`` over ``k`` points, so the point-wise calls
  control the family-wise error rate.

Both tests use the same ``Sigma``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np
from numpy.typing import NDArray
from scipy.stats import f as f_dist
from scipy.stats import t as t_dist

from pysynergy._errors import SingularCovariance

_COND_LIMIT = 1e12


class StatisticKind(str, Enum):
    """Which test statistics to compute."""

    NONE = "none"
    MEANR = "meanR"
    MAXR = "maxR"
    BOTH = "both"

    @property
    def wants_meanr(self) -> bool:
        return self in (StatisticKind.MEANR, StatisticKind.BOTH)

    @property
    def wants_maxr(self) -> bool:
        return self in (StatisticKind.MAXR, StatisticKind.BOTH)


VALID_STATISTICS = tuple(s.value for s in StatisticKind)

SYNERGY = "synergy"
ANTAGONISM = "antagonism"
ADDITIVE = "additive"


@dataclass(frozen=True)
class MeanRResult:
    """Global F-type test of deviation from the null model."""

    statistic: float
    df1: int
    df2: int
    p_value: float
    distribution: str  # 'F' or 'bootstrap'
    n_boot: int | None = None
    n_boot_requested: int | None = None

    def summary(self) -> str:
        lines = [
            "meanR: global test of deviation from the null model",
            "=" * 50,
            f"F statistic : {self.statistic:.4f}",
        ]
        if self.distribution == "F":
            lines.append(f"Reference   : F({self.df1}, {self.df2})")
        else:
            lines.append(
                f"Reference   : bootstrap ({self.n_boot} of {self.n_boot_requested} replicates)"
            )
        lines.append(f"p-value     : {self.p_value:.4g}")
        return "\n".join(lines)


@dataclass(frozen=True)
class MaxRResult:
    """Per-combination test with synergy/antagonism/additive calls."""

    d1: NDArray[np.floating]
    d2: NDArray[np.floating]
    statistic: NDArray[np.floating]
    p_value: NDArray[np.floating]
    call: tuple[str, ...]
    cutoff: float
    global_statistic: float
    global_p_value: float
    distribution: str  # 't-max' or 'bootstrap'
    n_boot: int | None = None
    n_boot_requested: int | None = None

    @property
    def n_synergy(self) -> int:
        return sum(c == SYNERGY for c in self.call)

    @property
    def n_antagonism(self) -> int:
        return sum(c == ANTAGONISM for c in self.call)

    def summary(self) -> str:
        lines = [
            "maxR: per-combination test",
            "=" * 50,
            f"max |R|     : {self.global_statistic:.4f}  (p = {self.global_p_value:.4g})",
            f"cutoff      : {self.cutoff}",
            f"calls       : {self.n_synergy} synergy, {self.n_antagonism} antagonism, "
            f"{len(self.call) - self.n_synergy - self.n_antagonism} additive",
            "",
            f"  {'d1':>10s} {'d2':>10s} {'R':>9s} {'p':>9s}  call",
        ]
        for a, b, s, p, c in zip(self.d1, self.d2, self.statistic, self.p_value, self.call):
            lines.append(f"  {a:>10.4g} {b:>10.4g} {s:>9.3f} {p:>9.3g}  {c}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

def residual_covariance(
    variance: NDArray[np.floating],
    counts: NDArray[np.integer],
    sigma0_sq: float,
    cp: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Covariance of the residuals ``R``; raises if numerically singular."""
    variance = np.asarray(variance, dtype=np.float64)
    k = variance.shape[0]
    cp = np.asarray(cp, dtype=np.float64).reshape(k, k)
    total = np.diag(variance / np.asarray(counts, dtype=np.float64)) + sigma0_sq * cp
    total = (total + total.T) / 2.0

    if not np.all(np.isfinite(total)):
        raise SingularCovariance(
            "residual covariance has non-finite entries",
            component="TestStatisticEngine",
            details={"n_points": k},
        )
    cond = np.linalg.cond(total)
    if not np.isfinite(cond) or cond > _COND_LIMIT:
        raise SingularCovariance(
            "residual covariance is numerically singular",
            component="TestStatisticEngine",
            details={"n_points": k, "condition_number": float(cond)},
        )
    if np.any(np.diag(total) <= 0):
        raise SingularCovariance(
            "residual covariance has non-positive variances",
            component="TestStatisticEngine",
            details={"n_points": k},
        )
    return total


def meanr_statistic(residual: NDArray[np.floating], total: NDArray[np.floating]) -> float:
    """``R' Sigma^{-1} R / k``."""
    residual = np.asarray(residual, dtype=np.float64)
    return float(residual @ np.linalg.solve(total, residual)) / residual.shape[0]


def maxr_statistics(
    residual: NDArray[np.floating], total: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Standardised residuals ``R_i / sqrt(Sigma_ii)``."""
    return np.asarray(residual, dtype=np.float64) / np.sqrt(np.diag(total))


def _max_abs_t_pvalue(stat: NDArray, k: int, df: int) -> NDArray:
    """P(max of k independent |t_df| >= |stat|)."""
    sf = t_dist.sf(np.abs(stat), df)
    # stat == 0 gives sf == 0.5 and log1p(-1) == -inf, i.e. p == 1
    with np.errstate(divide="ignore"):
        return -np.expm1(k * np.log1p(-2.0 * sf))


def _classify(
    stat: NDArray, p_value: NDArray, direction: int, cutoff: float,
) -> tuple[str, ...]:
    signed = direction * stat
    significant = p_value < 1.0 - cutoff
    return tuple(
        (SYNERGY if s > 0 else ANTAGONISM) if sig else ADDITIVE
        for s, sig in zip(signed, significant)
    )


def _tail_proportion(boot: NDArray, observed: NDArray | float) -> NDArray:
    boot = np.asarray(boot, dtype=np.float64)
    obs = np.atleast_1d(np.asarray(observed, dtype=np.float64))
    return (boot[None, :] >= obs[:, None]).mean(axis=1)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def meanr(
    residual: NDArray[np.floating],
    total: NDArray[np.floating],
    *,
    df: int,
    boot_statistics: NDArray[np.floating] | None = None,
    n_boot_requested: int | None = None,
) -> MeanRResult:
    """Global meanR test.

    Parameters
    ----------
    residual : array, shape ``(k,)``
        Observed minus predicted at the unique off-axis points.
    total : array, shape ``(k, k)``
        Residual covariance from :func:`residual_covariance`.
    df : int
        Residual degrees of freedom of the variance estimate.
    boot_statistics : array or None
        Bootstrap replicates of the F statistic under the null; when given
        the p-value is their tail proportion instead of the F distribution.
    n_boot_requested : int or None
        Nominal number of bootstrap replicates (for reporting).
    """
    residual = np.asarray(residual, dtype=np.float64)
    k = residual.shape[0]
    if df < 1:
        raise ValueError(f"df must be >= 1, got {df}")
    stat = meanr_statistic(residual, total)

    if boot_statistics is None:
        return MeanRResult(
            statistic=stat,
            df1=k,
            df2=int(df),
            p_value=float(f_dist.sf(stat, k, df)),
            distribution="F",
        )

    boot = np.asarray(boot_statistics, dtype=np.float64)
    if boot.size == 0:
        raise ValueError("boot_statistics is empty")
    return MeanRResult(
        statistic=stat,
        df1=k,
        df2=int(df),
        p_value=float(_tail_proportion(boot, stat)[0]),
        distribution="bootstrap",
        n_boot=int(boot.size),
        n_boot_requested=n_boot_requested if n_boot_requested is not None else int(boot.size),
    )


def maxr(
    residual: NDArray[np.floating],
    total: NDArray[np.floating],
    *,
    d1: NDArray[np.floating],
    d2: NDArray[np.floating],
    df: int,
    direction: int = 1,
    cutoff: float = 0.95,
    boot_max: NDArray[np.floating] | None = None,
    n_boot_requested: int | None = None,
) -> MaxRResult:
    """Per-combination maxR test with synergy/antagonism calls.

    Parameters
    ----------
    residual, total
        As in :func:`meanr`.
    d1, d2 : array, shape ``(k,)``
        Dose pairs the residuals belong to.
    df : int
        Residual degrees of freedom of the variance estimate.
    direction : int
        ``+1`` when "more effect" means a larger response, ``-1`` when it
        means a smaller one.  Positive ``direction * R`` is synergy.
    cutoff : float
        Confidence level; a point is called when ``p < 1 - cutoff``.
    boot_max : array or None
        Bootstrap replicates of ``max |t|`` under the null.
    n_boot_requested : int or None
        Nominal number of bootstrap replicates (for reporting).
    """
    if not (0.0 < cutoff < 1.0):
        raise ValueError(f"cutoff must be in (0, 1), got {cutoff}")
    if direction not in (-1, 1):
        raise ValueError(f"direction must be -1 or 1, got {direction}")
    if df < 1:
        raise ValueError(f"df must be >= 1, got {df}")

    stat = maxr_statistics(residual, total)
    k = stat.shape[0]
    abs_stat = np.abs(stat)
    global_stat = float(abs_stat.max())

    if boot_max is None:
        p_value = _max_abs_t_pvalue(stat, k, df)
        global_p = float(_max_abs_t_pvalue(np.array([global_stat]), k, df)[0])
        distribution = "t-max"
        n_boot = None
    else:
        boot = np.asarray(boot_max, dtype=np.float64)
        if boot.size == 0:
            raise ValueError("boot_max is empty")
        p_value = _tail_proportion(boot, abs_stat)
        global_p = float(_tail_proportion(boot, global_stat)[0])
        distribution = "bootstrap"
        n_boot = int(boot.size)
        if n_boot_requested is None:
            n_boot_requested = n_boot

    return MaxRResult(
        d1=np.asarray(d1, dtype=np.float64),
        d2=np.asarray(d2, dtype=np.float64),
        statistic=stat,
        p_value=p_value,
        call=_classify(stat, p_value, direction, cutoff),
        cutoff=cutoff,
        global_statistic=global_stat,
        global_p_value=global_p,
        distribution=distribution,
        n_boot=n_boot,
        n_boot_requested=n_boot_requested if boot_max is not None else None,
    )
