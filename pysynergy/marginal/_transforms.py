"""Paired forward/inverse transforms applied around the marginal fit.

Two optional pairs are supported:

* a **biological** pair mapping the latent model response (e.g. a growth
  rate or an occupancy-driven effect) onto the observed measurement scale;
* a **power** pair mapping observed measurements onto a variance-stabilised
  scale on which residuals are compared and bootstrap errors are added.

Each function has the signature ``f(values, args)`` where ``args`` is the
composite argument bundle stored on the :class:`TransformSpec`.  Both
members of a pair must be supplied together; an absent pair is the
identity.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import NDArray

TransformFunc = Callable[[NDArray[np.floating], Mapping[str, Any]], NDArray[np.floating]]
TransformPair = tuple[TransformFunc, TransformFunc]


def _check_pair(pair: Any, name: str) -> None:
    if pair is None:
        return
    if not isinstance(pair, tuple) or len(pair) != 2:
        raise ValueError(f"{name} transform must be a (forward, inverse) pair")
    forward, inverse = pair
    if forward is None or inverse is None:
        raise ValueError(
            f"{name} transform requires both forward and inverse functions"
        )
    if not (callable(forward) and callable(inverse)):
        raise ValueError(f"{name} transform functions must be callable")


@dataclass(frozen=True)
class TransformSpec:
    """Biological and power transform pairs plus their shared arguments."""

    biological: TransformPair | None = None
    power: TransformPair | None = None
    args: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _check_pair(self.biological, "biological")
        _check_pair(self.power, "power")

    @classmethod
    def from_functions(
        cls,
        *,
        biological: TransformFunc | None = None,
        biological_inverse: TransformFunc | None = None,
        power: TransformFunc | None = None,
        power_inverse: TransformFunc | None = None,
        args: Mapping[str, Any] | None = None,
    ) -> TransformSpec:
        """Build transform pairs from four loose functions, rejecting half pairs."""
        if (biological is None) != (biological_inverse is None):
            raise ValueError(
                "biological and biological_inverse must be given together"
            )
        if (power is None) != (power_inverse is None):
            raise ValueError("power and power_inverse must be given together")
        bio = None if biological is None else (biological, biological_inverse)
        pw = None if power is None else (power, power_inverse)
        return cls(biological=bio, power=pw, args=dict(args or {}))

    @property
    def is_identity(self) -> bool:
        return self.biological is None and self.power is None

    # -- biological -------------------------------------------------------

    def to_observed(self, latent: NDArray[np.floating]) -> NDArray[np.floating]:
        """Latent model response -> observed measurement scale."""
        latent = np.asarray(latent, dtype=np.float64)
        if self.biological is None:
            return latent
        return np.asarray(self.biological[0](latent, self.args), dtype=np.float64)

    def to_latent(self, observed: NDArray[np.floating]) -> NDArray[np.floating]:
        """Observed measurement -> latent model response scale."""
        observed = np.asarray(observed, dtype=np.float64)
        if self.biological is None:
            return observed
        return np.asarray(self.biological[1](observed, self.args), dtype=np.float64)

    # -- power ------------------------------------------------------------

    def stabilize(self, observed: NDArray[np.floating]) -> NDArray[np.floating]:
        """Observed measurement -> variance-stabilised (fitting) scale."""
        observed = np.asarray(observed, dtype=np.float64)
        if self.power is None:
            return observed
        return np.asarray(self.power[0](observed, self.args), dtype=np.float64)

    def destabilize(self, stabilized: NDArray[np.floating]) -> NDArray[np.floating]:
        """Variance-stabilised scale -> observed measurement."""
        stabilized = np.asarray(stabilized, dtype=np.float64)
        if self.power is None:
            return stabilized
        return np.asarray(self.power[1](stabilized, self.args), dtype=np.float64)

    # -- composite --------------------------------------------------------

    def latent_to_fit_scale(self, latent: NDArray[np.floating]) -> NDArray[np.floating]:
        """Model prediction -> scale on which residuals are formed."""
        return self.stabilize(self.to_observed(latent))


IDENTITY = TransformSpec()


def resolve_transforms(transforms: TransformSpec | None) -> TransformSpec:
    """Return *transforms* or the identity transforms when ``None``."""
    if transforms is None:
        return IDENTITY
    if not isinstance(transforms, TransformSpec):
        raise ValueError(
            f"transforms must be a TransformSpec or None, got {type(transforms).__name__}"
        )
    return transforms


# ---------------------------------------------------------------------------
# Ready-made pairs
# ---------------------------------------------------------------------------

def box_cox_transform(lam: float = 0.0, shift: float = 0.0) -> TransformPair:
    """Box-Cox power pair ``((y + shift)^lam - 1) / lam``; ``lam = 0`` is log.

    Parameters
    ----------
    lam : float
        Box-Cox exponent.
    shift : float
        Constant added before transforming, to keep values positive.
    """
    if not np.isfinite(lam):
        raise ValueError(f"lam must be finite, got {lam}")

    def forward(y: NDArray, args: Mapping[str, Any]) -> NDArray:
        y = np.asarray(y, dtype=np.float64) + shift
        if lam == 0.0:
            return np.log(y)
        return (np.power(y, lam) - 1.0) / lam

    def inverse(z: NDArray, args: Mapping[str, Any]) -> NDArray:
        z = np.asarray(z, dtype=np.float64)
        if lam == 0.0:
            return np.exp(z) - shift
        return np.power(lam * z + 1.0, 1.0 / lam) - shift

    return forward, inverse


def exponential_growth_transform() -> TransformPair:
    """Biological pair for cell-count readouts: ``N0 * exp(rate * time)``.

    The latent response is a growth rate; ``args`` must provide ``"n0"``
    (initial count) and ``"time"`` (assay duration).
    """

    def forward(rate: NDArray, args: Mapping[str, Any]) -> NDArray:
        return args["n0"] * np.exp(np.asarray(rate, dtype=np.float64) * args["time"])

    def inverse(count: NDArray, args: Mapping[str, Any]) -> NDArray:
        return np.log(np.asarray(count, dtype=np.float64) / args["n0"]) / args["time"]

    return forward, inverse
