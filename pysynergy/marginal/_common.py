"""Shared data and result types for marginal dose-response fitting."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

import numpy as np
from numpy.typing import NDArray

from pysynergy._errors import SynergyError
from pysynergy.marginal._constraints import EqualityConstraints
from pysynergy.marginal._models import COEF_NAMES, curve_direction, ll4
from pysynergy.marginal._transforms import TransformSpec


class SolverMethod(str, Enum):
    """Nonlinear least-squares solver used for the marginal fit."""

    LEVENBERG_MARQUARDT = "levenberg_marquardt"
    GAUSS_NEWTON = "gauss_newton"
    NELDER_MEAD = "nelder_mead"


# ---------------------------------------------------------------------------
# Observations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DoseGroups:
    """Unique dose pairs of a set of observations.

    ``index[k]`` is the group of observation ``k``; ``counts`` are the
    replicate numbers per group.
    """

    d1: NDArray[np.floating]
    d2: NDArray[np.floating]
    index: NDArray[np.intp]
    counts: NDArray[np.intp]

    @property
    def n_groups(self) -> int:
        return int(self.d1.shape[0])

    def means(self, values: NDArray[np.floating]) -> NDArray[np.floating]:
        """Per-group means of *values* (aligned with the observations)."""
        sums = np.bincount(self.index, weights=values, minlength=self.n_groups)
        return sums / self.counts

    def variances(self, values: NDArray[np.floating]) -> NDArray[np.floating]:
        """Per-group sample variances (``ddof=1``); NaN for singletons."""
        dev = values - self.means(values)[self.index]
        ss = np.bincount(self.index, weights=dev**2, minlength=self.n_groups)
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(self.counts > 1, ss / (self.counts - 1), np.nan)


def dose_groups(d1: NDArray[np.floating], d2: NDArray[np.floating]) -> DoseGroups:
    pairs = np.column_stack([d1, d2])
    uniq, index, counts = np.unique(pairs, axis=0, return_inverse=True, return_counts=True)
    return DoseGroups(
        d1=uniq[:, 0], d2=uniq[:, 1], index=np.asarray(index).reshape(-1), counts=counts,
    )


@dataclass(frozen=True)
class Observations:
    """Dose-response observations for a two-compound combination experiment."""

    d1: NDArray[np.floating]
    d2: NDArray[np.floating]
    effect: NDArray[np.floating]
    experiment: NDArray | None = None

    @staticmethod
    def from_arrays(
        d1: NDArray[np.floating],
        d2: NDArray[np.floating],
        effect: NDArray[np.floating],
        experiment: NDArray | None = None,
    ) -> Observations:
        """Validate and coerce raw columns."""
        d1 = np.asarray(d1, dtype=np.float64)
        d2 = np.asarray(d2, dtype=np.float64)
        effect = np.asarray(effect, dtype=np.float64)

        if d1.ndim != 1 or d2.ndim != 1 or effect.ndim != 1:
            raise ValueError("d1, d2 and effect must be 1-D arrays")
        if not (d1.shape == d2.shape == effect.shape):
            raise ValueError(
                f"d1, d2 and effect must have same shape, got "
                f"{d1.shape}, {d2.shape} and {effect.shape}"
            )
        if np.any(~np.isfinite(d1)) or np.any(~np.isfinite(d2)):
            raise ValueError("doses must be finite")
        if np.any(d1 < 0) or np.any(d2 < 0):
            raise ValueError("doses must be >= 0")
        if np.any(~np.isfinite(effect)):
            raise ValueError("effect must be finite")
        if experiment is not None:
            experiment = np.asarray(experiment)
            if experiment.shape != d1.shape:
                raise ValueError("experiment must have same shape as d1")
        return Observations(d1=d1, d2=d2, effect=effect, experiment=experiment)

    @property
    def n_obs(self) -> int:
        return int(self.d1.shape[0])

    @property
    def on_axis(self) -> NDArray[np.bool_]:
        return (self.d1 == 0) | (self.d2 == 0)

    @property
    def off_axis(self) -> NDArray[np.bool_]:
        return ~self.on_axis

    def subset(self, mask: NDArray[np.bool_]) -> Observations:
        return Observations(
            d1=self.d1[mask],
            d2=self.d2[mask],
            effect=self.effect[mask],
            experiment=None if self.experiment is None else self.experiment[mask],
        )

    def with_effect(self, effect: NDArray[np.floating]) -> Observations:
        """Same design, new responses (bootstrap replicates)."""
        effect = np.asarray(effect, dtype=np.float64)
        if effect.shape != self.effect.shape:
            raise ValueError("replacement effect must match the design length")
        return replace(self, effect=effect)

    def groups(self) -> DoseGroups:
        return dose_groups(self.d1, self.d2)


# ---------------------------------------------------------------------------
# Fitted marginal model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MarginalModel:
    """Jointly fitted marginal curves of two compounds.

    ``coef`` is ordered ``(h1, h2, b, m1, m2, e1, e2)``; ``e`` is on the
    natural-log dose scale.  ``fitted`` and ``residuals`` are on the fitting
    (power-transformed) scale.
    """

    coef: NDArray[np.floating]
    vcov: NDArray[np.floating]
    sigma: float
    df: int
    rss: float
    n_iter: int
    constraints: EqualityConstraints
    shared_asymptote: bool
    method: SolverMethod
    transforms: TransformSpec
    data: Observations
    fitted: NDArray[np.floating]
    residuals: NDArray[np.floating]
    names: tuple[str, str] = ("Compound 1", "Compound 2")

    @property
    def coefficients(self) -> dict[str, float]:
        return {name: float(v) for name, v in zip(COEF_NAMES, self.coef)}

    @property
    def se(self) -> NDArray[np.floating]:
        return np.sqrt(np.maximum(np.diag(self.vcov), 0.0))

    def _curve(self, compound: int) -> tuple[float, float, float, float]:
        c = self.coefficients
        if compound not in (1, 2):
            raise ValueError(f"compound must be 1 or 2, got {compound!r}")
        return c["b"], c[f"m{compound}"], c[f"e{compound}"], c[f"h{compound}"]

    def predict_marginal(
        self, dose: NDArray[np.floating], compound: int,
    ) -> NDArray[np.floating]:
        """Latent-scale response of one compound given alone."""
        return ll4(dose, *self._curve(compound))

    def direction(self, compound: int) -> int:
        """``+1`` if the curve increases with dose, ``-1`` decreasing, ``0`` flat."""
        b, m, _, h = self._curve(compound)
        return curve_direction(b, m, h)

    def summary(self) -> str:
        """Human-readable summary of the marginal fit."""
        se = self.se
        lines = [
            f"Marginal fit: {self.names[0]} / {self.names[1]}",
            f"Solver: {self.method.value}",
            "",
            "Coefficients:",
        ]
        for i, name in enumerate(COEF_NAMES):
            val = self.coef[i]
            se_val = se[i]
            if se_val > 0 and np.isfinite(se_val):
                lines.append(f"  {name:>4s} = {val:>12.6f}  (SE = {se_val:.6f})")
            else:
                lines.append(f"  {name:>4s} = {val:>12.6f}  (fixed)")
        lines.append("")
        for row in self.constraints.describe():
            lines.append(f"  constraint: {row}")
        lines.append(f"  Shared asymptote: {self.shared_asymptote}")
        lines.append(f"  RSS   = {self.rss:.6f}")
        lines.append(f"  sigma = {self.sigma:.6f}  on {self.df} df")
        return "\n".join(lines)


@dataclass(frozen=True)
class FitAttempt:
    """Outcome of one solver attempt: a model or a typed failure."""

    method: SolverMethod
    model: MarginalModel | None = None
    failure: SynergyError | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.model is not None

    def unwrap(self) -> MarginalModel:
        """Return the model, raising the recorded failure otherwise."""
        if self.failure is not None:
            raise self.failure
        assert self.model is not None
        return self.model


@dataclass(frozen=True)
class BatchMarginalResult:
    """Result of refitting many response vectors on one dose design.

    ``coef`` has shape ``(n_fits, 7)``; failed fits hold NaN.
    """

    coef: NDArray[np.floating]
    converged: NDArray[np.bool_]
    rss: NDArray[np.floating]
    n_fits: int
    backend: str
