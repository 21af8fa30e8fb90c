"""Linear equality constraints on the marginal coefficients.

Constraints ``A @ coef = c`` are enforced by reparametrisation rather than
penalisation: with ``N`` an orthonormal basis of the null space of ``A``
and ``x_p`` a particular solution, every feasible coefficient vector is
``x_p + N @ z`` and only the reduced vector ``z`` is optimised.

Coefficient order is ``(h1, h2, b, m1, m2, e1, e2)``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import null_space

from pysynergy._errors import ConstraintInfeasible
from pysynergy.marginal._models import COEF_NAMES, N_COEF

_TOL = 1e-10


@dataclass(frozen=True)
class EqualityConstraints:
    """Constraint system ``matrix @ coef = rhs`` (``matrix`` is r x 7)."""

    matrix: NDArray[np.floating]
    rhs: NDArray[np.floating]

    @property
    def n_rows(self) -> int:
        return int(self.matrix.shape[0])

    def describe(self) -> list[str]:
        """Render each row as a readable equation, e.g. ``'m1 - m2 = 0'``."""
        rows = []
        for a_row, c in zip(self.matrix, self.rhs):
            terms = []
            for name, a in zip(COEF_NAMES, a_row):
                if a == 0:
                    continue
                if not terms:
                    sign = "-" if a < 0 else ""
                else:
                    sign = " - " if a < 0 else " + "
                mag = "" if abs(a) == 1 else f"{abs(a):g}*"
                terms.append(f"{sign}{mag}{name}")
            rows.append(f"{''.join(terms)} = {c:g}")
        return rows


NO_CONSTRAINTS = EqualityConstraints(
    matrix=np.zeros((0, N_COEF)), rhs=np.zeros(0),
)


def build_constraints(
    matrix: NDArray[np.floating] | None = None,
    rhs: NDArray[np.floating] | None = None,
    *,
    fixed: Mapping[str, float] | None = None,
) -> EqualityConstraints:
    """Compose a constraint matrix and a fixed-value map into one system.

    Parameters
    ----------
    matrix : array, shape ``(r, 7)``, optional
        Equality-constraint matrix ``A``.  A 1-D array is one row.
    rhs : array, shape ``(r,)``, optional
        Right-hand side ``c``; zeros when omitted.
    fixed : mapping, optional
        Coefficients held at fixed values, e.g. ``{"m1": 0, "m2": 0}``.
        Each entry becomes an extra unit row.

    Returns
    -------
    EqualityConstraints
    """
    rows: list[NDArray] = []
    values: list[float] = []

    if matrix is not None:
        a = np.atleast_2d(np.asarray(matrix, dtype=np.float64))
        if a.ndim != 2 or a.shape[1] != N_COEF:
            raise ValueError(
                f"constraint matrix must have {N_COEF} columns {COEF_NAMES}, "
                f"got shape {a.shape}"
            )
        if rhs is None:
            c = np.zeros(a.shape[0])
        else:
            c = np.atleast_1d(np.asarray(rhs, dtype=np.float64))
        if c.shape != (a.shape[0],):
            raise ValueError(
                f"rhs must have one entry per constraint row, got {c.shape} for {a.shape[0]} rows"
            )
        rows.extend(a)
        values.extend(c)
    elif rhs is not None:
        raise ValueError("rhs given without a constraint matrix")

    if fixed is not None:
        for name, val in fixed.items():
            if name not in COEF_NAMES:
                raise ValueError(f"unknown coefficient {name!r}; expected one of {COEF_NAMES}")
            if not np.isfinite(val):
                raise ValueError(f"fixed value for {name!r} must be finite, got {val}")
            row = np.zeros(N_COEF)
            row[COEF_NAMES.index(name)] = 1.0
            rows.append(row)
            values.append(float(val))

    if not rows:
        return NO_CONSTRAINTS
    return EqualityConstraints(matrix=np.vstack(rows), rhs=np.asarray(values, dtype=np.float64))


@dataclass(frozen=True)
class Reparametrization:
    """Affine map ``coef = particular + basis @ z`` onto the feasible set."""

    particular: NDArray[np.floating]  # (7,)
    basis: NDArray[np.floating]  # (7, q), orthonormal columns

    @property
    def n_free(self) -> int:
        return int(self.basis.shape[1])

    def expand(self, z: NDArray[np.floating]) -> NDArray[np.floating]:
        return self.particular + self.basis @ np.asarray(z, dtype=np.float64)

    def project(self, coef: NDArray[np.floating]) -> NDArray[np.floating]:
        """Closest reduced vector to *coef* (least squares)."""
        return self.basis.T @ (np.asarray(coef, dtype=np.float64) - self.particular)

    def enforces_equal(self, i: int, j: int) -> bool:
        """Whether every feasible vector has ``coef[i] == coef[j]``."""
        return bool(
            np.allclose(self.basis[i], self.basis[j], atol=1e-8)
            and abs(self.particular[i] - self.particular[j]) <= 1e-8 * max(1.0, abs(self.particular[i]))
        )


def reparametrize(constraints: EqualityConstraints) -> Reparametrization:
    """Null-space reparametrisation of *constraints*.

    Raises
    ------
    ConstraintInfeasible
        If the rows are linearly dependent (rank-deficient) or the system
        has no solution.
    """
    a, c = constraints.matrix, constraints.rhs
    r = a.shape[0]
    if r == 0:
        return Reparametrization(particular=np.zeros(N_COEF), basis=np.eye(N_COEF))

    rank = int(np.linalg.matrix_rank(a, tol=_TOL))
    particular, *_ = np.linalg.lstsq(a, c, rcond=None)
    misfit = float(np.linalg.norm(a @ particular - c))

    if misfit > _TOL * max(1.0, float(np.linalg.norm(c))):
        raise ConstraintInfeasible(
            "equality constraints are mutually inconsistent",
            component="MarginalCurveFitter",
            details={"constraints": constraints.describe(), "misfit": misfit},
        )
    if rank < r:
        raise ConstraintInfeasible(
            "equality constraints are rank-deficient",
            component="MarginalCurveFitter",
            details={"constraints": constraints.describe(), "rank": rank, "rows": r},
        )

    basis = null_space(a, rcond=_TOL)
    return Reparametrization(particular=particular, basis=basis)
