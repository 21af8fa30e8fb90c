"""Batch refitting of marginal curves on one dose design.

Bootstrap procedures refit the marginal model to many simulated response
vectors that share the observed on-axis design.  Each refit is independent,
so they can be batched.

**CPU path**: loops over the response vectors calling :func:`fit_marginals`.

**GPU path**: batched Levenberg-Marquardt in PyTorch.  All K response
vectors are fitted simultaneously in the reduced (null-space) coordinates of
the constraint system, using vectorised forward passes, finite-difference
Jacobians and batched linear solves.  Only identity transforms are
supported on the GPU.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

import numpy as np
from numpy.typing import NDArray

from pysynergy.marginal._common import BatchMarginalResult, Observations, SolverMethod
from pysynergy.marginal._constraints import (
    EqualityConstraints,
    build_constraints,
    reparametrize,
)
from pysynergy.marginal._fit import _initial_coefficients
from pysynergy.marginal._models import N_COEF, on_axis_response
from pysynergy.marginal._transforms import TransformSpec, resolve_transforms

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CPU fallback
# ---------------------------------------------------------------------------

def _batch_cpu(
    design: Observations,
    effects: NDArray,
    method: SolverMethod | str,
    transforms: TransformSpec,
    constraints: EqualityConstraints,
    start: NDArray | None,
    max_iter: int,
) -> BatchMarginalResult:
    """Fit each response vector sequentially via :func:`fit_marginals`."""
    from pysynergy.marginal._fit import fit_marginals

    K = effects.shape[0]
    coef = np.full((K, N_COEF), np.nan)
    converged = np.zeros(K, dtype=bool)
    rss = np.full(K, np.nan)

    for i in range(K):
        try:
            attempt = fit_marginals(
                design.with_effect(effects[i]),
                method=method,
                transforms=transforms,
                constraints=constraints,
                start=start,
                max_iter=max_iter,
            )
        except ValueError as exc:
            logger.debug("batch fit %d rejected: %s", i, exc)
            continue
        if attempt.ok:
            coef[i] = attempt.model.coef
            converged[i] = True
            rss[i] = attempt.model.rss

    return BatchMarginalResult(
        coef=coef, converged=converged, rss=rss, n_fits=K, backend="cpu",
    )


# ---------------------------------------------------------------------------
# GPU batched Levenberg-Marquardt
# ---------------------------------------------------------------------------

def _batch_gpu(
    design: Observations,
    effects: NDArray,
    constraints: EqualityConstraints,
    start: NDArray | None,
    max_iter: int,
    tol: float,
) -> BatchMarginalResult:
    """Batched Levenberg-Marquardt for the joint marginal model.

    Optimises the reduced vector ``z`` with ``coef = x_p + N z``; log-scale
    potencies keep the problem unconstrained.
    """
    import torch

    # Select device
    if torch.cuda.is_available():
        device = torch.device("cuda")
    elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        device = torch.device("mps")
    else:
        device = torch.device("cpu")

    # MPS (Apple Silicon) does not support float64, use float32 there
    dtype = torch.float32 if device.type == "mps" else torch.float64

    # Adapt numerical constants for precision of chosen dtype
    is_f32 = (dtype == torch.float32)
    eps_fd = 1e-3 if is_f32 else 1e-6        # finite-difference step
    tol_eff = max(tol, 1e-5) if is_f32 else tol
    diag_clamp = 1e-6 if is_f32 else 1e-12   # minimum diagonal damping
    lam_lo = 1e-10 if is_f32 else 1e-15
    lam_hi = 1e10 if is_f32 else 1e15

    reparam = reparametrize(constraints)
    q = reparam.n_free
    K, N = effects.shape

    if q == 0:
        coef = np.tile(reparam.particular, (K, 1))
        pred = np.vstack([on_axis_response(design.d1, design.d2, c) for c in coef])
        return BatchMarginalResult(
            coef=coef,
            converged=np.ones(K, dtype=bool),
            rss=((effects - pred) ** 2).sum(axis=1),
            n_fits=K,
            backend="gpu",
        )

    if start is None:
        x0 = np.vstack([_initial_coefficients(design.d1, design.d2, e) for e in effects])
    else:
        x0 = np.tile(np.asarray(start, dtype=np.float64), (K, 1))
    z0 = (x0 - reparam.particular) @ reparam.basis  # (K, q)

    xp_t = torch.as_tensor(reparam.particular, device=device, dtype=dtype)
    basis_t = torch.as_tensor(reparam.basis, device=device, dtype=dtype)  # (7, q)
    resp_t = torch.as_tensor(effects, device=device, dtype=dtype)
    d1_t = torch.as_tensor(design.d1, device=device, dtype=dtype)
    d2_t = torch.as_tensor(design.d2, device=device, dtype=dtype)
    neg_inf = torch.tensor(float("-inf"), device=device, dtype=dtype)
    log_d1 = torch.where(d1_t > 0, torch.log(d1_t), neg_inf)
    log_d2 = torch.where(d2_t > 0, torch.log(d2_t), neg_inf)
    use_first = (d1_t > 0).unsqueeze(0)  # (1, N)

    def _forward(z: torch.Tensor) -> torch.Tensor:
        """Joint on-axis prediction for all K fits; z is (K, q)."""
        coef = xp_t + z @ basis_t.T  # (K, 7)
        h1, h2, b, m1, m2, e1, e2 = (coef[:, j].unsqueeze(1) for j in range(N_COEF))
        f1 = b + (m1 - b) / (1.0 + torch.exp(-h1 * (log_d1 - e1)))
        f2 = b + (m2 - b) / (1.0 + torch.exp(-h2 * (log_d2 - e2)))
        return torch.where(use_first, f1, f2)

    theta = torch.as_tensor(z0, device=device, dtype=dtype)
    lam = torch.full((K,), 1.0, device=device, dtype=dtype)
    conv = torch.zeros(K, dtype=torch.bool, device=device)

    for _ in range(max_iter):
        pred = _forward(theta)
        r = resp_t - pred
        rss_old = (r**2).sum(dim=1)

        # Batched Jacobian via finite differences: J[k, n, p] = d pred / d z_p
        J = torch.zeros(K, N, q, device=device, dtype=dtype)
        for p in range(q):
            th_p = theta.clone()
            th_p[:, p] += eps_fd
            J[:, :, p] = (_forward(th_p) - pred) / eps_fd

        Jt = J.transpose(1, 2)
        JtJ = Jt @ J
        Jtr = Jt @ r.unsqueeze(2)

        # LM damping: A = JtJ + lambda * (diag(JtJ) + mu)
        diag_JtJ = torch.clamp(torch.diagonal(JtJ, dim1=-2, dim2=-1), min=diag_clamp)
        mu = diag_JtJ.mean(dim=1, keepdim=True).clamp(min=1.0)
        A = JtJ + torch.diag_embed(lam.unsqueeze(1) * (diag_JtJ + mu))

        try:
            delta = torch.linalg.solve(A, Jtr).squeeze(2)
        except RuntimeError:
            lam *= 10.0
            continue

        theta_new = theta + delta
        rss_new = ((resp_t - _forward(theta_new)) ** 2).sum(dim=1)
        rss_new = torch.nan_to_num(rss_new, nan=float("inf"))

        improved = rss_new < rss_old
        accept = improved & ~conv
        theta = torch.where(accept.unsqueeze(1), theta_new, theta)

        lam = torch.clamp(torch.where(improved, lam * 0.1, lam * 10.0), lam_lo, lam_hi)

        rel_change = torch.abs(rss_new - rss_old) / (rss_old + diag_clamp)
        conv = conv | ((rel_change < tol_eff) & (rss_new <= rss_old))
        if conv.all():
            break

    rss_final = ((resp_t - _forward(theta)) ** 2).sum(dim=1)
    coef = (xp_t + theta @ basis_t.T).cpu().numpy().astype(np.float64)
    converged = conv.cpu().numpy() & np.all(np.isfinite(coef), axis=1)
    coef[~converged] = np.nan

    return BatchMarginalResult(
        coef=coef,
        converged=converged,
        rss=rss_final.cpu().numpy().astype(np.float64),
        n_fits=K,
        backend="gpu",
    )


def _gpu_available() -> bool:
    try:
        import torch
    except ImportError:
        return False
    return torch.cuda.is_available() or (
        hasattr(torch.backends, "mps") and torch.backends.mps.is_available()
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def fit_marginals_batch(
    design: Observations,
    effects: NDArray[np.floating],
    *,
    method: SolverMethod | str = SolverMethod.LEVENBERG_MARQUARDT,
    transforms: TransformSpec | None = None,
    constraints: EqualityConstraints | None = None,
    fixed: Mapping[str, float] | None = None,
    start: NDArray[np.floating] | None = None,
    backend: str = "cpu",
    max_iter: int = 200,
    tol: float = 1e-10,
) -> BatchMarginalResult:
    """Refit the marginal model to many response vectors on one design.

    Parameters
    ----------
    design : Observations
        On-axis observations defining the doses; their effects are ignored.
    effects : array, shape ``(n_fits, n_obs)``
        Response vectors, aligned with *design*.
    method : str
        Solver for the CPU path.  The GPU path always uses batched
        Levenberg-Marquardt.
    transforms, constraints, fixed, start
        As in :func:`fit_marginals`.
    backend : str
        ``'cpu'``, ``'gpu'`` or ``'auto'`` (GPU when available and the
        transforms are the identity).
    max_iter : int
        Iteration budget per fit.
    tol : float
        GPU convergence tolerance on the relative RSS change.

    Returns
    -------
    BatchMarginalResult

    Notes
    -----
    The GPU backend requires ``pip install pysynergy[gpu]`` (PyTorch).
    """
    effects = np.asarray(effects, dtype=np.float64)
    if effects.ndim != 2:
        raise ValueError(f"effects must be 2-D (n_fits, n_obs), got shape {effects.shape}")
    if not np.all(design.on_axis):
        raise ValueError("design must contain on-axis observations only")
    if effects.shape[1] != design.n_obs:
        raise ValueError(
            f"effects must have one column per design point, got {effects.shape[1]} "
            f"columns for {design.n_obs} points"
        )
    if backend not in ("cpu", "gpu", "auto"):
        raise ValueError(f"backend must be 'cpu', 'gpu' or 'auto', got {backend!r}")

    tf = resolve_transforms(transforms)
    cons = constraints if constraints is not None else build_constraints()
    if fixed:
        extra = build_constraints(fixed=fixed)
        cons = build_constraints(
            np.vstack([cons.matrix, extra.matrix]), np.concatenate([cons.rhs, extra.rhs]),
        )

    if backend == "gpu":
        if not tf.is_identity:
            raise ValueError("the GPU backend supports identity transforms only")
        return _batch_gpu(design, effects, cons, start, max_iter, tol)

    if backend == "auto" and tf.is_identity and _gpu_available():
        logger.debug("fitting %d marginal models on GPU", effects.shape[0])
        return _batch_gpu(design, effects, cons, start, max_iter, tol)

    return _batch_cpu(design, effects, method, tf, cons, start, max(max_iter, 2000))
