from __future__ import annotations

"""Shell-pair Hermite expansions shared by the nuclear-attraction and
electron-repulsion kernels.

For a shell pair (A, B) the Cartesian product of every component pair is
expanded in Hermite Gaussians centred at P,

    G_a G_b = sum_{tuv} E^{ab}_{tuv} Lambda_{tuv}(p, P),

and stored on the full (L+1)^3 cube so that quartet contractions become
plain tensor products. In derivative mode the same is done for
d/dA_k G_a G_b and G_a d/dB_k G_b using

    d/dA_x x_A^i exp(-a x_A^2) = 2a x_A^{i+1} exp(..) - i x_A^{i-1} exp(..).
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..basis.shells import Shell, cartesian_components
from .hermite import hermite_e

__all__ = ["PairExpansion", "shell_pair_expansion", "component_arrays"]


def component_arrays(l: int) -> np.ndarray:
    """(ncart, 3) integer array of Cartesian exponents."""
    return np.asarray(cartesian_components(l), dtype=np.int64).reshape(-1, 3)


@dataclass(frozen=True, eq=False)
class PairExpansion:
    la: int
    lb: int
    L: int  # cube order (la + lb, plus one in derivative mode)
    p: np.ndarray  # (N,)
    P: np.ndarray  # (N, 3)
    weight: np.ndarray  # (N,) c_a c_b
    E: np.ndarray  # (N, nab, (L+1)^3)
    dA: Optional[np.ndarray] = None  # (3, N, nab, (L+1)^3)
    dB: Optional[np.ndarray] = None

    @property
    def nab(self) -> int:
        return self.E.shape[1]


def _outer3(ex: np.ndarray, ey: np.ndarray, ez: np.ndarray) -> np.ndarray:
    # ex/ey/ez: (N, na, nb, n) -> (N, na*nb, n^3)
    N, na, nb, n = ex.shape
    full = ex[..., :, None, None] * ey[..., None, :, None] * ez[..., None, None, :]
    return full.reshape(N, na * nb, n * n * n)


def shell_pair_expansion(sa: Shell, sb: Shell, deriv: int = 0) -> PairExpansion:
    if deriv not in (0, 1):
        raise ValueError(f"derivative order must be 0 or 1, got {deriv}")
    a = np.repeat(sa.exponents, sb.nprim)
    b = np.tile(sb.exponents, sa.nprim)
    w = np.repeat(sa.coefficients, sb.nprim) * np.tile(sb.coefficients, sa.nprim)
    p = a + b
    P = (a[:, None] * sa.center[None, :] + b[:, None] * sb.center[None, :]) / p[:, None]
    L = sa.l + sb.l + deriv
    ca = component_arrays(sa.l)
    cb = component_arrays(sb.l)
    E1d = [hermite_e(sa.l + deriv, sb.l + deriv, a, b, sa.center[d], sb.center[d]) for d in range(3)]

    def sel(d: int, ia: np.ndarray, ib: np.ndarray) -> np.ndarray:
        return E1d[d][:, ia[:, None], ib[None, :], : L + 1]

    base = [sel(d, ca[:, d], cb[:, d]) for d in range(3)]
    E = _outer3(*base)
    dA = dB = None
    if deriv:
        dA = np.empty((3,) + E.shape)
        dB = np.empty((3,) + E.shape)
        for d in range(3):
            ia, ib = ca[:, d], cb[:, d]
            up = sel(d, ia + 1, ib)
            down = sel(d, np.maximum(ia - 1, 0), ib)
            dxa = 2.0 * a[:, None, None, None] * up - ia[None, :, None, None] * down
            up = sel(d, ia, ib + 1)
            down = sel(d, ia, np.maximum(ib - 1, 0))
            dxb = 2.0 * b[:, None, None, None] * up - ib[None, None, :, None] * down
            fa = list(base)
            fa[d] = dxa
            dA[d] = _outer3(*fa)
            fb = list(base)
            fb[d] = dxb
            dB[d] = _outer3(*fb)
    return PairExpansion(sa.l, sb.l, L, p, P, w, E, dA, dB)
