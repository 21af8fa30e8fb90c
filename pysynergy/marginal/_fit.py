"""Joint fitting of two marginal dose-response curves.

Both compounds' 4-parameter log-logistic curves are fitted simultaneously to
the on-axis observations, sharing the baseline ``b``.  Linear equality
constraints are honoured by fitting only the null-space coordinates of the
constraint matrix (see :mod:`pysynergy.marginal._constraints`).

Each call to :func:`fit_marginals` makes exactly one attempt with one
solver and reports the outcome as a :class:`FitAttempt`; switching solvers
after a failure is the job of :func:`fit_marginals_fallback`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import least_squares, minimize

from pysynergy._errors import ConstraintInfeasible, ConvergenceFailure
from pysynergy.marginal._common import (
    FitAttempt,
    MarginalModel,
    Observations,
    SolverMethod,
)
from pysynergy.marginal._constraints import (
    EqualityConstraints,
    Reparametrization,
    build_constraints,
    reparametrize,
)
from pysynergy.marginal._models import COEF_NAMES, N_COEF, on_axis_response
from pysynergy.marginal._transforms import TransformSpec, resolve_transforms

logger = logging.getLogger(__name__)

ResidualFunc = Callable[[NDArray], NDArray]


# ---------------------------------------------------------------------------
# Self-starting parameter estimation
# ---------------------------------------------------------------------------

def _interpolate_log_ec50(
    dose_sorted: NDArray,
    resp_sorted: NDArray,
    midpoint: float,
) -> float:
    """Log dose at which response crosses *midpoint* (linear on log dose).

    Returned on the log scale because the EC50 coefficient is ``log(EC50)``;
    the fit then starts from a potency that is unconstrained in sign.
    """
    for i in range(len(resp_sorted) - 1):
        r1, r2 = resp_sorted[i], resp_sorted[i + 1]
        if (r1 - midpoint) * (r2 - midpoint) <= 0:
            d1 = np.log(dose_sorted[i])
            d2 = np.log(dose_sorted[i + 1])
            if abs(r2 - r1) < 1e-12:
                return float((d1 + d2) / 2.0)
            frac = (midpoint - r1) / (r2 - r1)
            return float(d1 + frac * (d2 - d1))

    # No crossing: middle of the log-dose range
    return float(np.mean(np.log(dose_sorted)))


def _estimate_hill(
    dose_sorted: NDArray,
    resp_sorted: NDArray,
    baseline: float,
    asymptote: float,
) -> float:
    """Hill slope via logit-linear regression on the normalised response."""
    span = asymptote - baseline
    if abs(span) < 1e-12 or len(dose_sorted) < 2:
        return 1.0

    y_norm = np.clip((resp_sorted - baseline) / span, 0.01, 0.99)
    logit_y = np.log(y_norm / (1.0 - y_norm))
    log_dose = np.log(dose_sorted)
    if np.ptp(log_dose) == 0:
        return 1.0

    slope = np.polyfit(log_dose, logit_y, 1)[0]
    # Direction lives in (m - b); keep the slope positive
    return float(np.clip(abs(slope), 0.1, 20.0))


def _initial_coefficients(
    d1: NDArray,
    d2: NDArray,
    latent: NDArray,
) -> NDArray[np.floating]:
    """Data-driven starting values in coefficient order.

    1.  Baseline from the ``(0, 0)`` responses (or the lowest doses).
    2.  Asymptotes from each compound's highest-dose responses.
    3.  Log-potency from the mid-response crossing on the log-dose scale.
    4.  Hill slopes from logit-linear regression.
    """
    zero = (d1 == 0) & (d2 == 0)
    curves = []
    for dose, other in ((d1, d2), (d2, d1)):
        mask = (dose > 0) & (other == 0)
        order = np.argsort(dose[mask])
        curves.append((dose[mask][order], latent[mask][order]))

    if np.any(zero):
        baseline = float(np.mean(latent[zero]))
    else:
        lows = [r[dose == dose[0]] for dose, r in curves if len(dose)]
        baseline = float(np.mean(np.concatenate(lows)))

    start = dict.fromkeys(COEF_NAMES, 0.0)
    start["b"] = baseline
    for k, (dose, resp) in enumerate(curves, start=1):
        top = float(np.mean(resp[dose == dose[-1]]))
        mid = (baseline + top) / 2.0
        start[f"m{k}"] = top
        start[f"e{k}"] = _interpolate_log_ec50(dose, resp, mid)
        start[f"h{k}"] = _estimate_hill(dose, resp, baseline, top)

    return np.array([start[name] for name in COEF_NAMES], dtype=np.float64)


# ---------------------------------------------------------------------------
# Solvers: each returns (z, n_iter) or raises ConvergenceFailure
# ---------------------------------------------------------------------------

def _fd_jacobian(residuals: ResidualFunc, z: NDArray, r0: NDArray) -> NDArray:
    """Forward-difference Jacobian of the residual vector."""
    jac = np.empty((r0.shape[0], z.shape[0]))
    for j in range(z.shape[0]):
        step = 1.5e-8 * max(1.0, abs(z[j]))
        z_j = z.copy()
        z_j[j] += step
        jac[:, j] = (residuals(z_j) - r0) / step
    return jac


def _solve_levenberg_marquardt(
    residuals: ResidualFunc, z0: NDArray, max_iter: int,
) -> tuple[NDArray, int]:
    result = least_squares(
        residuals,
        z0,
        method="lm",
        max_nfev=max_iter,
        xtol=1e-12,
        ftol=1e-12,
        gtol=1e-12,
    )
    rnorm = float(np.linalg.norm(result.fun))
    solver = SolverMethod.LEVENBERG_MARQUARDT.value
    if result.status <= 0 or not np.all(np.isfinite(result.x)) or not np.isfinite(rnorm):
        raise ConvergenceFailure(
            f"did not converge: {result.message}", solver=solver, residual_norm=rnorm,
        )
    # Warning condition: singular gradient at the solution
    if not np.all(np.isfinite(result.jac)) or np.linalg.matrix_rank(result.jac) < z0.shape[0]:
        raise ConvergenceFailure(
            "singular gradient at the solution", solver=solver, residual_norm=rnorm,
        )
    return result.x, int(result.nfev)


def _solve_gauss_newton(
    residuals: ResidualFunc, z0: NDArray, max_iter: int, tol: float = 1e-12,
) -> tuple[NDArray, int]:
    """Gauss-Newton with step halving."""
    solver = SolverMethod.GAUSS_NEWTON.value
    z = z0.copy()
    r = residuals(z)
    rss = float(r @ r)
    if not np.isfinite(rss):
        raise ConvergenceFailure("non-finite residuals at start", solver=solver)

    for it in range(1, max_iter + 1):
        jac = _fd_jacobian(residuals, z, r)
        step, *_ = np.linalg.lstsq(jac, -r, rcond=None)

        alpha = 1.0
        while alpha > 1e-10:
            z_new = z + alpha * step
            r_new = residuals(z_new)
            rss_new = float(r_new @ r_new)
            if np.isfinite(rss_new) and rss_new <= rss:
                break
            alpha /= 2.0
        else:
            raise ConvergenceFailure(
                "step halving failed to reduce the residual sum of squares",
                solver=solver,
                residual_norm=float(np.sqrt(rss)),
                details={"iterations": it},
            )

        small_step = np.linalg.norm(alpha * step) <= tol * (np.linalg.norm(z) + tol)
        converged = (rss - rss_new) <= tol * (rss + tol) or small_step
        z, r, rss = z_new, r_new, rss_new
        if converged:
            return z, it

    raise ConvergenceFailure(
        "iteration budget exhausted",
        solver=solver,
        residual_norm=float(np.sqrt(rss)),
        details={"iterations": max_iter},
    )


def _solve_nelder_mead(
    residuals: ResidualFunc, z0: NDArray, max_iter: int,
) -> tuple[NDArray, int]:
    def objective(z: NDArray) -> float:
        r = residuals(z)
        val = float(r @ r)
        return val if np.isfinite(val) else np.inf

    n = z0.shape[0]
    result = minimize(
        objective,
        z0,
        method="Nelder-Mead",
        options={
            "maxiter": max(max_iter, 1000 * n),
            "maxfev": max(max_iter, 2000 * n),
            "xatol": 1e-8,
            "fatol": 1e-12,
            "adaptive": True,
        },
    )
    if not result.success or not np.isfinite(result.fun):
        raise ConvergenceFailure(
            f"did not converge: {result.message}",
            solver=SolverMethod.NELDER_MEAD.value,
            residual_norm=float(np.sqrt(result.fun)) if np.isfinite(result.fun) else float("nan"),
        )
    return result.x, int(result.nit)


_SOLVERS: dict[SolverMethod, Callable[[ResidualFunc, NDArray, int], tuple[NDArray, int]]] = {
    SolverMethod.LEVENBERG_MARQUARDT: _solve_levenberg_marquardt,
    SolverMethod.GAUSS_NEWTON: _solve_gauss_newton,
    SolverMethod.NELDER_MEAD: _solve_nelder_mead,
}

VALID_METHODS = tuple(m.value for m in SolverMethod)


# ---------------------------------------------------------------------------
# Covariance of the coefficients
# ---------------------------------------------------------------------------

def _compute_vcov(
    jac: NDArray,
    rss: float,
    df: int,
    reparam: Reparametrization,
) -> NDArray[np.floating]:
    """``N (J'J)^{-1} N' * s^2``; fixed directions get zero variance."""
    if reparam.n_free == 0:
        return np.zeros((N_COEF, N_COEF))
    s2 = rss / df
    try:
        cov_z = np.linalg.inv(jac.T @ jac) * s2
    except np.linalg.LinAlgError:
        return np.full((N_COEF, N_COEF), np.nan)
    return reparam.basis @ cov_z @ reparam.basis.T


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _coerce_method(method: str | SolverMethod) -> SolverMethod:
    try:
        return SolverMethod(method)
    except ValueError:
        raise ValueError(f"method must be one of {VALID_METHODS}, got {method!r}") from None


def fit_marginals(
    data: Observations,
    *,
    method: str | SolverMethod = SolverMethod.LEVENBERG_MARQUARDT,
    transforms: TransformSpec | None = None,
    constraints: EqualityConstraints | None = None,
    fixed: Mapping[str, float] | None = None,
    start: Mapping[str, float] | NDArray | None = None,
    names: tuple[str, str] = ("Compound 1", "Compound 2"),
    max_iter: int = 2000,
) -> FitAttempt:
    """Jointly fit both marginal curves with a single solver attempt.

    Parameters
    ----------
    data : Observations
        Observations; only on-axis points (``d1 == 0`` or ``d2 == 0``) are
        used.
    method : str
        ``'levenberg_marquardt'``, ``'gauss_newton'`` or ``'nelder_mead'``.
    transforms : TransformSpec or None
        Biological/power transforms; identity when ``None``.
    constraints : EqualityConstraints or None
        Linear equality constraints ``A @ coef = c``.
    fixed : mapping or None
        Coefficients held fixed, e.g. ``{"m1": 0.0}``.  Composed with
        *constraints* as extra rows.
    start : mapping or array or None
        Starting coefficients.  When ``None``, self-starting estimates are
        derived from the data.  Projected onto the constraint set.
    names : tuple of str
        Compound display names.
    max_iter : int
        Iteration / function-evaluation budget of the solver.

    Returns
    -------
    FitAttempt
        ``ok`` with the :class:`MarginalModel`, or the typed failure
        (:class:`ConvergenceFailure`, :class:`ConstraintInfeasible`).

    Examples
    --------
    >>> attempt = fit_marginals(data, fixed={"m1": 1.0, "m2": 1.0})
    >>> model = attempt.unwrap()
    >>> model.shared_asymptote
    True
    """
    # --- Validate ---
    method = _coerce_method(method)
    if not isinstance(data, Observations):
        raise ValueError(f"data must be Observations, got {type(data).__name__}")
    tf = resolve_transforms(transforms)
    if max_iter < 1:
        raise ValueError(f"max_iter must be >= 1, got {max_iter}")

    on = data.subset(data.on_axis)
    for k, (dose, other) in enumerate(((on.d1, on.d2), (on.d2, on.d1)), start=1):
        n_levels = np.unique(dose[(dose > 0) & (other == 0)]).size
        if n_levels < 2:
            raise ValueError(
                f"compound {k} needs at least 2 distinct positive on-axis doses, got {n_levels}"
            )

    extra = build_constraints(fixed=fixed) if fixed else None
    if constraints is None:
        cons = extra if extra is not None else build_constraints()
    elif extra is None:
        cons = constraints
    else:
        cons = build_constraints(
            np.vstack([constraints.matrix, extra.matrix]),
            np.concatenate([constraints.rhs, extra.rhs]),
        )

    try:
        reparam = reparametrize(cons)
    except ConstraintInfeasible as exc:
        return FitAttempt(method=method, failure=exc)

    n_obs = on.n_obs
    n_free = reparam.n_free
    if n_obs < n_free + 1:
        raise ValueError(
            f"Need at least {n_free + 1} on-axis observations for {n_free} free coefficients, got {n_obs}"
        )

    y_fit = tf.stabilize(on.effect)
    if not np.all(np.isfinite(y_fit)):
        raise ValueError("effect values fall outside the domain of the power transform")

    # --- Starting values ---
    if start is None:
        with np.errstate(all="ignore"):
            latent = tf.to_latent(on.effect)
        if not np.all(np.isfinite(latent)):
            latent = on.effect
        x0 = _initial_coefficients(on.d1, on.d2, latent)
    elif isinstance(start, Mapping):
        missing = set(COEF_NAMES) - set(start)
        if missing:
            raise ValueError(f"start is missing coefficients {sorted(missing)}")
        x0 = np.array([start[name] for name in COEF_NAMES], dtype=np.float64)
    else:
        x0 = np.asarray(start, dtype=np.float64)
        if x0.shape != (N_COEF,):
            raise ValueError(f"start must have {N_COEF} entries, got shape {x0.shape}")
    z0 = reparam.project(x0)

    # --- Residual function (observed - predicted, fitting scale) ---
    def residuals(z: NDArray) -> NDArray:
        coef = reparam.expand(z)
        pred = on_axis_response(on.d1, on.d2, coef)
        with np.errstate(all="ignore"):
            return y_fit - tf.latent_to_fit_scale(pred)

    # --- Fit ---
    if n_free == 0:
        z_hat, n_iter = z0, 0
    else:
        try:
            z_hat, n_iter = _SOLVERS[method](residuals, z0, max_iter)
        except ConvergenceFailure as exc:
            exc.details.setdefault("names", names)
            return FitAttempt(method=method, failure=exc)

    # --- Extract ---
    coef = reparam.expand(z_hat)
    res_vec = residuals(z_hat)
    rss = float(res_vec @ res_vec)
    df = n_obs - n_free
    sigma = float(np.sqrt(rss / df))
    jac = _fd_jacobian(residuals, z_hat, res_vec) if n_free else np.zeros((n_obs, 0))

    model = MarginalModel(
        coef=coef,
        vcov=_compute_vcov(jac, rss, df, reparam),
        sigma=sigma,
        df=df,
        rss=rss,
        n_iter=n_iter,
        constraints=cons,
        shared_asymptote=reparam.enforces_equal(COEF_NAMES.index("m1"), COEF_NAMES.index("m2")),
        method=method,
        transforms=tf,
        data=on,
        fitted=y_fit - res_vec,
        residuals=res_vec,
        names=names,
    )
    return FitAttempt(method=method, model=model)


def fit_marginals_fallback(
    data: Observations,
    *,
    methods: Sequence[str | SolverMethod] = (
        SolverMethod.LEVENBERG_MARQUARDT,
        SolverMethod.NELDER_MEAD,
    ),
    **kwargs,
) -> FitAttempt:
    """Try solvers in order until one succeeds.

    Each entry of *methods* is one :func:`fit_marginals` attempt with the
    remaining keyword arguments.  Returns the first successful attempt, or
    the last failure if all of them fail.
    """
    if not methods:
        raise ValueError("methods must name at least one solver")
    attempt = None
    for method in methods:
        attempt = fit_marginals(data, method=method, **kwargs)
        if attempt.ok:
            return attempt
        logger.warning("marginal fit with %s failed: %s", attempt.method.value, attempt.failure)
    return attempt
