"""Confidence intervals for off-axis effect sizes.

The effect size at an off-axis dose pair is the observed mean minus the null
prediction (``R``).  The overall effect is the mean of ``R`` over the
off-axis points.

* **normal**: ``R_i +/- z * sqrt(Sigma_ii)``; the overall effect has
  variance ``1' Sigma 1 / k^2``.
* **bootstrap**: percentile intervals of replicate effect sizes from
  :func:`~pysynergy.surface.bootstrap_effects`.

A point whose interval excludes zero is called synergy or antagonism,
oriented by the direction of effect.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.stats import norm

from pysynergy.surface._statistics import ADDITIVE, ANTAGONISM, SYNERGY


@dataclass(frozen=True)
class ConfidenceIntervalResult:
    """Per-point and overall effect sizes with intervals at ``conf_level``."""

    d1: NDArray[np.floating]
    d2: NDArray[np.floating]
    estimate: NDArray[np.floating]
    lower: NDArray[np.floating]
    upper: NDArray[np.floating]
    call: tuple[str, ...]
    overall_estimate: float
    overall_lower: float
    overall_upper: float
    overall_call: str
    conf_level: float
    method: str  # 'normal' or 'bootstrap'
    n_boot: int | None = None

    def summary(self) -> str:
        pct = f"{100 * self.conf_level:g}%"
        lines = [
            f"Effect sizes with {pct} confidence intervals ({self.method})",
            "=" * 50,
            f"Overall: {self.overall_estimate:.4f}  "
            f"[{self.overall_lower:.4f}, {self.overall_upper:.4f}]  {self.overall_call}",
            "",
            f"  {'d1':>10s} {'d2':>10s} {'effect':>9s} {'lower':>9s} {'upper':>9s}  call",
        ]
        for row in zip(self.d1, self.d2, self.estimate, self.lower, self.upper, self.call):
            a, b, est, lo, hi, c = row
            lines.append(f"  {a:>10.4g} {b:>10.4g} {est:>9.4f} {lo:>9.4f} {hi:>9.4f}  {c}")
        return "\n".join(lines)


def _check_level(conf_level: float) -> None:
    if not (0.0 < conf_level < 1.0):
        raise ValueError(f"conf_level must be in (0, 1), got {conf_level}")


def _call(lower: float, upper: float, direction: int) -> str:
    if lower > 0:
        return SYNERGY if direction > 0 else ANTAGONISM
    if upper < 0:
        return ANTAGONISM if direction > 0 else SYNERGY
    return ADDITIVE


def _assemble(d1, d2, estimate, lower, upper, overall, conf_level, method, direction, n_boot=None):
    calls = tuple(_call(lo, hi, direction) for lo, hi in zip(lower, upper))
    est, lo, hi = overall
    return ConfidenceIntervalResult(
        d1=np.asarray(d1, dtype=np.float64),
        d2=np.asarray(d2, dtype=np.float64),
        estimate=estimate,
        lower=lower,
        upper=upper,
        call=calls,
        overall_estimate=float(est),
        overall_lower=float(lo),
        overall_upper=float(hi),
        overall_call=_call(lo, hi, direction),
        conf_level=conf_level,
        method=method,
        n_boot=n_boot,
    )


def confint_normal(
    residual: NDArray[np.floating],
    total: NDArray[np.floating],
    *,
    d1: NDArray[np.floating],
    d2: NDArray[np.floating],
    direction: int = 1,
    conf_level: float = 0.95,
) -> ConfidenceIntervalResult:
    """Normal-approximation intervals from the residual covariance.

    Parameters
    ----------
    residual : array, shape ``(k,)``
        Observed minus predicted at the off-axis points.
    total : array, shape ``(k, k)``
        Residual covariance.
    d1, d2 : array
        Dose pairs of the points.
    direction : int
        Direction of "more effect" (``+1`` or ``-1``).
    conf_level : float
        Coverage of the intervals.
    """
    _check_level(conf_level)
    residual = np.asarray(residual, dtype=np.float64)
    total = np.asarray(total, dtype=np.float64)
    k = residual.shape[0]
    z = norm.ppf(0.5 + conf_level / 2.0)
    se = np.sqrt(np.diag(total))

    overall = residual.mean()
    overall_se = np.sqrt(total.sum()) / k
    return _assemble(
        d1, d2, residual, residual - z * se, residual + z * se,
        (overall, overall - z * overall_se, overall + z * overall_se),
        conf_level, "normal", direction,
    )


def confint_bootstrap(
    residual: NDArray[np.floating],
    boot_effects: NDArray[np.floating],
    *,
    d1: NDArray[np.floating],
    d2: NDArray[np.floating],
    direction: int = 1,
    conf_level: float = 0.95,
) -> ConfidenceIntervalResult:
    """Percentile intervals from replicate effect sizes.

    *boot_effects* has one row per replicate and one column per point.
    """
    _check_level(conf_level)
    residual = np.asarray(residual, dtype=np.float64)
    boot = np.atleast_2d(np.asarray(boot_effects, dtype=np.float64))
    if boot.shape[1] != residual.shape[0]:
        raise ValueError(
            f"boot_effects must have {residual.shape[0]} columns, got {boot.shape[1]}"
        )
    alpha = 1.0 - conf_level
    q = [100 * alpha / 2, 100 * (1 - alpha / 2)]
    lower, upper = np.percentile(boot, q, axis=0)
    o_lower, o_upper = np.percentile(boot.mean(axis=1), q)
    return _assemble(
        d1, d2, residual, lower, upper,
        (residual.mean(), o_lower, o_upper),
        conf_level, "bootstrap", direction, n_boot=boot.shape[0],
    )
