from __future__ import annotations

"""Quasi-Newton Hessian updates and step generation (Cartesian coordinates).

Two update schemes are available: a dense BFGS Hessian combined with an exact
trust-region step, and limited-memory BFGS, whose two-loop direction is cut
back to the trust radius.
"""

import logging
from typing import List, Tuple

import torch

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = [
    "bfgs_update",
    "trust_region_step",
    "predicted_change",
    "lbfgs_direction",
    "lbfgs_push",
]


def bfgs_update(H: Tensor, s: Tensor, y: Tensor) -> Tensor:
    """BFGS update of the direct Hessian from step ``s`` and gradient change ``y``.

    The update is skipped (H returned unchanged) when the curvature y.s is not
    positive, which keeps H positive definite.
    """
    ys = float(y @ s)
    if ys <= 0.0:
        logger.warning("BFGS update skipped: non-positive curvature y.s = %.3e", ys)
        return H
    Hs = H @ s
    sHs = float(s @ Hs)
    return H + torch.outer(y, y) / ys - torch.outer(Hs, Hs) / sHs


def predicted_change(g: Tensor, H: Tensor, s: Tensor) -> float:
    """Quadratic model dE = g.s + 1/2 s.H.s."""
    return float(g @ s + 0.5 * (s @ (H @ s)))


def trust_region_step(g: Tensor, H: Tensor, radius: float, max_iter: int = 100) -> Tuple[Tensor, bool]:
    """Minimise the quadratic model within |s| <= radius.

    Returns the step and whether it lies on the boundary. The Newton step is
    used when H is positive definite and the step fits; otherwise the
    Levenberg shift lambda with |s(lambda)| = radius is found by bisection,
    s(lambda) = -(H + lambda 1)^-1 g.
    """
    w, V = torch.linalg.eigh(0.5 * (H + H.T))
    gt = V.T @ g

    def step_for(lam: float) -> Tensor:
        return -(V @ (gt / (w + lam)))

    if float(w[0]) > 0.0:
        s = step_for(0.0)
        if float(torch.linalg.norm(s)) <= radius:
            return s, False
    lo = max(0.0, -float(w[0])) + 1e-12
    hi = max(lo, 1.0)
    while float(torch.linalg.norm(step_for(hi))) > radius:
        hi *= 2.0
    for _ in range(max_iter):
        mid = 0.5 * (lo + hi)
        if float(torch.linalg.norm(step_for(mid))) > radius:
            lo = mid
        else:
            hi = mid
        if hi - lo <= 1e-14 * max(1.0, hi):
            break
    s = step_for(hi)
    return s, True


def lbfgs_direction(g: Tensor, s_hist: List[Tensor], y_hist: List[Tensor], h0: float) -> Tensor:
    """Two-loop recursion for -H^-1 g from the stored (s, y) pairs, oldest first.

    The initial inverse Hessian is ``1/h0`` without history and
    ``s.y / y.y`` of the newest pair otherwise.
    """
    rhos = [1.0 / float(y @ s) for s, y in zip(s_hist, y_hist)]
    q = g.clone()
    alphas = []
    for s, y, rho in reversed(list(zip(s_hist, y_hist, rhos))):
        a = rho * float(s @ q)
        alphas.append(a)
        q = q - a * y
    if s_hist:
        gamma = float(s_hist[-1] @ y_hist[-1]) / float(y_hist[-1] @ y_hist[-1])
    else:
        gamma = 1.0 / h0
    r = gamma * q
    for (s, y, rho), a in zip(zip(s_hist, y_hist, rhos), reversed(alphas)):
        b = rho * float(y @ r)
        r = r + (a - b) * s
    return -r


def lbfgs_push(s_hist: List[Tensor], y_hist: List[Tensor], s: Tensor, y: Tensor, memory: int) -> None:
    """Append a pair in place, dropping the oldest beyond ``memory``.

    Pairs with non-positive curvature are not stored.
    """
    ys = float(y @ s)
    if ys <= 0.0:
        logger.warning("L-BFGS pair skipped: non-positive curvature y.s = %.3e", ys)
        return
    s_hist.append(s.detach().clone())
    y_hist.append(y.detach().clone())
    while len(s_hist) > memory:
        s_hist.pop(0)
        y_hist.pop(0)
