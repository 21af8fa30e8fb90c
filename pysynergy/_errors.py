"""Typed failures raised or returned by the synergy-testing core.

Every failure carries the ``component`` that produced it and a ``details``
mapping describing the offending input, so that callers can implement
fallback policies (e.g. retry with another solver) without parsing
messages.
"""

from __future__ import annotations

from typing import Any


class SynergyError(Exception):
    """Base class for computational failures of the core."""

    def __init__(
        self,
        message: str,
        *,
        component: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.component = component
        self.details = dict(details or {})

    def __str__(self) -> str:
        if not self.details:
            return f"[{self.component}] {self.message}"
        extra = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
        return f"[{self.component}] {self.message} ({extra})"


class ConvergenceFailure(SynergyError):
    """A solver did not converge (or warned) within its iteration budget."""

    def __init__(
        self,
        message: str,
        *,
        solver: str,
        residual_norm: float = float("nan"),
        component: str = "MarginalCurveFitter",
        details: dict[str, Any] | None = None,
    ) -> None:
        d = {"solver": solver, "residual_norm": residual_norm}
        d.update(details or {})
        super().__init__(message, component=component, details=d)
        self.solver = solver
        self.residual_norm = residual_norm


class ConstraintInfeasible(SynergyError):
    """Equality constraints are inconsistent or rank-deficient."""


class MonotonicityViolation(SynergyError):
    """A null model requiring same-direction marginals received otherwise."""


class SingularCovariance(SynergyError):
    """The residual covariance used by meanR/maxR is numerically singular."""


class InsufficientReplicates(SynergyError):
    """Not enough replicate groups to estimate the requested variance."""
