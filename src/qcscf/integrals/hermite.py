from __future__ import annotations

"""McMurchie–Davidson machinery: Hermite expansion coefficients E^{ij}_t and
Hermite Coulomb integrals R_{tuv}, both vectorised over primitive pairs
(respectively primitive quartets) with numpy.

Conventions (Helgaker, Jorgensen, Olsen, ch. 9):

    E^{00}_0 = exp(-mu X_AB^2)
    E^{i+1,j}_t = E^{ij}_{t-1} / (2p) + X_PA E^{ij}_t + (t+1) E^{ij}_{t+1}
    E^{i,j+1}_t = E^{ij}_{t-1} / (2p) + X_PB E^{ij}_t + (t+1) E^{ij}_{t+1}

    R^n_{000} = (-2 alpha)^n F_n(alpha R_PC^2)
    R^n_{t+1,u,v} = t R^{n+1}_{t-1,u,v} + X_PC R^{n+1}_{tuv}   (same for u, v)
"""

from functools import lru_cache
from typing import Tuple

import numpy as np

from .boys import boys

__all__ = ["hermite_e", "hermite_r", "hermite_cube_index", "ket_sign", "tuv_list"]


def hermite_e(imax: int, jmax: int, a: np.ndarray, b: np.ndarray, xa: float, xb: float) -> np.ndarray:
    """1-D expansion coefficients for all i <= imax, j <= jmax.

    a, b: primitive exponents of the pair, shape (N,). Returns (N, imax+1, jmax+1, imax+jmax+1).
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    p = a + b
    xab = xa - xb
    xpa = -b * xab / p
    xpb = a * xab / p
    inv2p = 0.5 / p
    nt = imax + jmax + 2  # one spare slot for the (t+1) term
    tt = np.arange(1, nt, dtype=np.float64)
    E = np.zeros((a.shape[0], imax + 1, jmax + 1, nt))
    E[:, 0, 0, 0] = np.exp(-(a * b / p) * xab * xab)

    def _step(src: np.ndarray, x: np.ndarray) -> np.ndarray:
        out = x[:, None] * src
        out[:, 1:] += inv2p[:, None] * src[:, :-1]
        out[:, :-1] += tt[None, :] * src[:, 1:]
        return out

    for i in range(imax + 1):
        for j in range(jmax + 1):
            if i == 0 and j == 0:
                continue
            if j == 0:
                E[:, i, 0] = _step(E[:, i - 1, 0], xpa)
            else:
                E[:, i, j] = _step(E[:, i, j - 1], xpb)
    return E[..., : imax + jmax + 1]


@lru_cache(maxsize=None)
def tuv_list(L: int) -> Tuple[Tuple[int, int, int], ...]:
    """All (t, u, v) with 1 <= t+u+v <= L ordered by increasing total order."""
    out = []
    for total in range(1, L + 1):
        for t in range(total, -1, -1):
            for u in range(total - t, -1, -1):
                out.append((t, u, total - t - u))
    return tuple(out)


def hermite_r(L: int, alpha: np.ndarray, pc: np.ndarray) -> np.ndarray:
    """Hermite Coulomb integrals R_{tuv} (n = 0) for t, u, v <= L.

    alpha: (M,), pc: (M, 3) vector P - C. Returns (M, (L+1)**3) on the full
    cube (entries with t+u+v > L are zero).
    """
    alpha = np.asarray(alpha, dtype=np.float64)
    pc = np.asarray(pc, dtype=np.float64)
    M = alpha.shape[0]
    T = alpha * np.einsum("mi,mi->m", pc, pc)
    F = boys(L, T)
    X, Y, Z = pc[:, 0], pc[:, 1], pc[:, 2]
    n1 = L + 1
    prev = None
    m2a = -2.0 * alpha
    order = tuv_list(L)
    for n in range(L, -1, -1):
        cur = np.zeros((n1, n1, n1, M))
        cur[0, 0, 0] = m2a ** n * F[n]
        for (t, u, v) in order:
            if t + u + v > L - n:
                break
            if t > 0:
                val = X * prev[t - 1, u, v]
                if t > 1:
                    val = val + (t - 1) * prev[t - 2, u, v]
            elif u > 0:
                val = Y * prev[t, u - 1, v]
                if u > 1:
                    val = val + (u - 1) * prev[t, u - 2, v]
            else:
                val = Z * prev[t, u, v - 1]
                if v > 1:
                    val = val + (v - 1) * prev[t, u, v - 2]
            cur[t, u, v] = val
        prev = cur
    return prev.reshape(n1 ** 3, M).T


@lru_cache(maxsize=None)
def hermite_cube_index(l1: int, l2: int) -> np.ndarray:
    """Flat index into an R cube of order l1+l2 for every (bra tuv, ket tuv) pair.

    Returns (H1, H2) int array with H1 = (l1+1)**3, H2 = (l2+1)**3.
    """
    n1, n2, nt = l1 + 1, l2 + 1, l1 + l2 + 1
    t1, u1, v1 = np.meshgrid(np.arange(n1), np.arange(n1), np.arange(n1), indexing="ij")
    t2, u2, v2 = np.meshgrid(np.arange(n2), np.arange(n2), np.arange(n2), indexing="ij")
    t = t1.reshape(-1, 1) + t2.reshape(1, -1)
    u = u1.reshape(-1, 1) + u2.reshape(1, -1)
    v = v1.reshape(-1, 1) + v2.reshape(1, -1)
    idx = (t * nt + u) * nt + v
    idx.setflags(write=False)
    return idx


@lru_cache(maxsize=None)
def ket_sign(l2: int) -> np.ndarray:
    """(-1)^(tau+nu+phi) over the ket Hermite cube, flattened."""
    n2 = l2 + 1
    t, u, v = np.meshgrid(np.arange(n2), np.arange(n2), np.arange(n2), indexing="ij")
    s = np.where((t + u + v) % 2 == 0, 1.0, -1.0).reshape(-1)
    s.setflags(write=False)
    return s
