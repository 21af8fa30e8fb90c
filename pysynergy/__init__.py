"""
PySynergy: synergy and antagonism testing for two-compound combinations.

Fits the marginal dose-response curves of both compounds, predicts the
combined response under a null model of non-interaction (Loewe variants,
HSA, Bliss), and tests the observed deviations globally (meanR) and per
dose pair (maxR), with normal-theory or bootstrap reference distributions.

Usage:
    from pysynergy import marginal, surface
"""

__version__ = "0.1.0"
__author__ = "Hai-Shuo"
__email__ = "contact@sgcx.org"

from pysynergy import marginal
from pysynergy import surface
from pysynergy._errors import (
    ConstraintInfeasible,
    ConvergenceFailure,
    InsufficientReplicates,
    MonotonicityViolation,
    SingularCovariance,
    SynergyError,
)

__all__ = [
    "__version__",
    "marginal",
    "surface",
    "SynergyError",
    "ConvergenceFailure",
    "ConstraintInfeasible",
    "MonotonicityViolation",
    "SingularCovariance",
    "InsufficientReplicates",
]
