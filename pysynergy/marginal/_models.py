"""Marginal dose-response model functions.

Each compound follows a 4-parameter log-logistic curve sharing one
baseline ``b``:

.. math::
    f_i(d) = b + \\frac{m_i - b}{1 + \\exp\\bigl(-h_i (\\ln d - e_i)\\bigr)}
           = b + (m_i - b) \\frac{d^{h_i}}{d^{h_i} + \\exp(e_i)^{h_i}}

where ``m_i`` is the maximal-response asymptote, ``e_i`` the natural log
of the dose giving half of the effect range, and ``h_i`` the Hill slope.
The curve increases with dose when ``(m_i - b) * h_i > 0``.

Dose = 0 is handled via IEEE 754 arithmetic: ``log(0) = -inf`` and the
exponential term evaluates to the baseline for ``h_i > 0``.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

COEF_NAMES: tuple[str, ...] = ("h1", "h2", "b", "m1", "m2", "e1", "e2")
N_COEF = len(COEF_NAMES)


def _safe_log_dose(dose: NDArray[np.floating]) -> NDArray[np.floating]:
    """Compute log(dose) with dose=0 mapped to -inf (IEEE 754 compliant)."""
    with np.errstate(divide="ignore"):
        return np.where(dose > 0, np.log(np.where(dose > 0, dose, 1.0)), -np.inf)


def ll4(
    dose: NDArray[np.floating],
    baseline: float,
    asymptote: float,
    log_ec50: float,
    hill: float,
) -> NDArray[np.floating]:
    """4-parameter log-logistic curve of a single compound.

    Parameters
    ----------
    dose : array
        Dose values.  May contain zeros.
    baseline : float
        Response at dose 0 (``b``), shared between the two compounds.
    asymptote : float
        Maximal response reached at infinite dose (``m``).
    log_ec50 : float
        Natural log of the dose producing half of the effect range (``e``).
    hill : float
        Hill slope (``h``).

    Returns
    -------
    NDArray
        Predicted response values.
    """
    dose = np.asarray(dose, dtype=np.float64)
    log_dose = _safe_log_dose(dose)
    with np.errstate(over="ignore", under="ignore", invalid="ignore"):
        exponent = -hill * (log_dose - log_ec50)
        return baseline + (asymptote - baseline) / (1.0 + np.exp(exponent))


def ll4_inverse(
    response: NDArray[np.floating],
    baseline: float,
    asymptote: float,
    log_ec50: float,
    hill: float,
) -> NDArray[np.floating]:
    """Dose at which a single compound reaches *response*.

    Responses outside the open interval between ``baseline`` and
    ``asymptote`` are unreachable and map to ``inf``.
    """
    response = np.asarray(response, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = (response - baseline) / (asymptote - response)
        dose = np.exp(log_ec50) * np.power(ratio, 1.0 / hill)
    return np.where((ratio > 0) & np.isfinite(ratio), dose, np.inf)


def on_axis_response(
    d1: NDArray[np.floating],
    d2: NDArray[np.floating],
    coef: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Joint marginal prediction for on-axis dose pairs.

    Points with ``d1 > 0`` follow compound 1's curve, all others compound
    2's; the ``(0, 0)`` point therefore evaluates to the baseline.
    """
    h1, h2, b, m1, m2, e1, e2 = coef
    d1 = np.asarray(d1, dtype=np.float64)
    d2 = np.asarray(d2, dtype=np.float64)
    return np.where(d1 > 0, ll4(d1, b, m1, e1, h1), ll4(d2, b, m2, e2, h2))


def curve_direction(baseline: float, asymptote: float, hill: float) -> int:
    """``+1`` for an increasing curve, ``-1`` decreasing, ``0`` flat."""
    return int(np.sign((asymptote - baseline) * hill))
