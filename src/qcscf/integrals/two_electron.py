from __future__ import annotations

"""Electron-repulsion integrals (ab|cd) for contracted Cartesian shell quartets.

    (ab|cd) = 2 pi^{5/2} / (p q sqrt(p+q))
              sum_{tuv} E^{ab}_{tuv} sum_{tau nu phi} (-1)^{tau+nu+phi} E^{cd}_{tau nu phi}
              R_{t+tau, u+nu, v+phi}(alpha, P - Q),      alpha = p q / (p + q)

evaluated for all primitive quartets at once: the Hermite Coulomb integrals
are gathered into a (bra cube x ket cube) matrix per primitive quartet and
contracted with the pair expansions in a single einsum.
"""

from math import pi, sqrt
from typing import Tuple

import numpy as np

from ..basis.shells import Shell
from .hermite import hermite_cube_index, hermite_r, ket_sign
from .pairs import PairExpansion, shell_pair_expansion

__all__ = [
    "eri_block",
    "eri_from_pairs",
    "eri_deriv_from_pairs",
    "eri_deriv_block",
    "schwarz_factor",
]

_ERI_PREF = 2.0 * pi ** 2.5


def _coulomb_matrix(bra: PairExpansion, ket: PairExpansion) -> np.ndarray:
    """Prefactor-weighted, sign-adjusted R gathered to (Ni, Nj, H1, H2)."""
    ni, nj = bra.p.shape[0], ket.p.shape[0]
    p = bra.p[:, None]
    q = ket.p[None, :]
    alpha = p * q / (p + q)
    pq = bra.P[:, None, :] - ket.P[None, :, :]
    R = hermite_r(bra.L + ket.L, alpha.reshape(-1), pq.reshape(-1, 3))
    G = R[:, hermite_cube_index(bra.L, ket.L)] * ket_sign(ket.L)[None, None, :]
    pref = _ERI_PREF / (p * q * np.sqrt(p + q)) * bra.weight[:, None] * ket.weight[None, :]
    return G.reshape(ni, nj, G.shape[1], G.shape[2]) * pref[:, :, None, None]


def _norm4(sa: Shell, sb: Shell, sc: Shell, sd: Shell) -> np.ndarray:
    return (
        sa.norms[:, None, None, None]
        * sb.norms[None, :, None, None]
        * sc.norms[None, None, :, None]
        * sd.norms[None, None, None, :]
    )


def eri_from_pairs(bra: PairExpansion, ket: PairExpansion, shells: Tuple[Shell, Shell, Shell, Shell]) -> np.ndarray:
    sa, sb, sc, sd = shells
    G = _coulomb_matrix(bra, ket)
    out = np.einsum("iah,ijhk,jbk->ab", bra.E, G, ket.E, optimize=True)
    return out.reshape(sa.ncart, sb.ncart, sc.ncart, sd.ncart) * _norm4(sa, sb, sc, sd)


def eri_block(sa: Shell, sb: Shell, sc: Shell, sd: Shell) -> np.ndarray:
    """(ab|cd) block of shape (na, nb, nc, nd)."""
    return eri_from_pairs(shell_pair_expansion(sa, sb), shell_pair_expansion(sc, sd), (sa, sb, sc, sd))


def eri_deriv_from_pairs(
    bra: PairExpansion, ket: PairExpansion, shells: Tuple[Shell, Shell, Shell, Shell]
) -> np.ndarray:
    """Derivatives of (ab|cd) with respect to the four centres.

    Both pair expansions must be built with ``deriv=1``. Returns an array of
    shape (4, 3, na, nb, nc, nd) ordered (A, B, C, D) x (x, y, z).
    """
    if bra.dA is None or ket.dA is None:
        raise ValueError("eri_deriv_from_pairs requires pair expansions built with deriv=1")
    sa, sb, sc, sd = shells
    G = _coulomb_matrix(bra, ket)
    T = np.einsum("ijhk,jbk->ihb", G, ket.E, optimize=True)
    U = np.einsum("iah,ijhk->jak", bra.E, G, optimize=True)
    out = np.empty((4, 3, bra.nab, ket.nab))
    out[0] = np.einsum("xiah,ihb->xab", bra.dA, T, optimize=True)
    out[1] = np.einsum("xiah,ihb->xab", bra.dB, T, optimize=True)
    out[2] = np.einsum("jak,xjbk->xab", U, ket.dA, optimize=True)
    out[3] = np.einsum("jak,xjbk->xab", U, ket.dB, optimize=True)
    out = out.reshape(4, 3, sa.ncart, sb.ncart, sc.ncart, sd.ncart)
    return out * _norm4(sa, sb, sc, sd)[None, None]


def eri_deriv_block(sa: Shell, sb: Shell, sc: Shell, sd: Shell) -> np.ndarray:
    return eri_deriv_from_pairs(
        shell_pair_expansion(sa, sb, deriv=1), shell_pair_expansion(sc, sd, deriv=1), (sa, sb, sc, sd)
    )


def schwarz_factor(sa: Shell, sb: Shell) -> float:
    """Q_ab = sqrt(max_{mu in a, nu in b} (mu nu|mu nu))."""
    pe = shell_pair_expansion(sa, sb)
    blk = eri_from_pairs(pe, pe, (sa, sb, sa, sb))
    na, nb = sa.ncart, sb.ncart
    diag = blk.reshape(na * nb, na * nb).diagonal()
    return sqrt(max(float(diag.max()), 0.0))
