from __future__ import annotations

"""One-electron integral blocks for contracted Cartesian shell pairs.

Overlap and kinetic energy factorise into 1-D Hermite overlaps
S_ij = E^{ij}_0 sqrt(pi/p); the kinetic 1-D factor is

    T_ij = -2 b^2 S_{i,j+2} + b (2j+1) S_ij - j (j-1)/2 S_{i,j-2}.

Nuclear attraction uses the pair Hermite expansion with R_{tuv}(p, P - C).
The dipole 1-D factor follows from x_C = (x - P_x) + X_PC and the Hermite
recurrence: <i|x_C|j> = (E^{ij}_1 + X_PC E^{ij}_0) sqrt(pi/p).
All blocks are returned in normalised component order (shape (na, nb)).
Derivatives are taken with respect to the bra centre A; for two-centre
operators d/dB = -d/dA. For the nuclear attraction the ket and operator
centre derivatives are returned explicitly (translational invariance per
nucleus: d/dC = -(d/dA + d/dB)).
"""

from math import pi
from typing import Tuple

import numpy as np

from ..basis.shells import Shell
from .hermite import hermite_e, hermite_r
from .pairs import component_arrays, shell_pair_expansion

__all__ = [
    "overlap_block",
    "kinetic_block",
    "overlap_deriv_block",
    "kinetic_deriv_block",
    "nuclear_block",
    "nuclear_deriv_blocks",
    "dipole_block",
]


def _prim_pairs(sa: Shell, sb: Shell):
    a = np.repeat(sa.exponents, sb.nprim)
    b = np.tile(sb.exponents, sa.nprim)
    w = np.repeat(sa.coefficients, sb.nprim) * np.tile(sb.coefficients, sa.nprim)
    return a, b, w


def _overlap_1d(sa: Shell, sb: Shell, extra_i: int, extra_j: int):
    a, b, w = _prim_pairs(sa, sb)
    p = a + b
    root = np.sqrt(pi / p)[:, None, None]
    S1 = [
        hermite_e(sa.l + extra_i, sb.l + extra_j, a, b, sa.center[d], sb.center[d])[..., 0] * root
        for d in range(3)
    ]
    return a, b, w, S1


def _kinetic_1d(S: np.ndarray, b: np.ndarray, jmax: int) -> np.ndarray:
    # S: (N, ni, jmax + 3); returns (N, ni, jmax + 1)
    N, ni, _ = S.shape
    T = np.zeros((N, ni, jmax + 1))
    bb = b[:, None]
    for j in range(jmax + 1):
        val = -2.0 * bb * bb * S[:, :, j + 2] + bb * (2 * j + 1) * S[:, :, j]
        if j >= 2:
            val = val - 0.5 * j * (j - 1) * S[:, :, j - 2]
        T[:, :, j] = val
    return T


def _gather(M: np.ndarray, ia: np.ndarray, ib: np.ndarray) -> np.ndarray:
    return M[:, ia[:, None], ib[None, :]]


def _d_bra(M: np.ndarray, a: np.ndarray, ia: np.ndarray, ib: np.ndarray) -> np.ndarray:
    up = _gather(M, ia + 1, ib)
    down = _gather(M, np.maximum(ia - 1, 0), ib)
    return 2.0 * a[:, None, None] * up - ia[None, :, None] * down


def _normalise(block: np.ndarray, sa: Shell, sb: Shell) -> np.ndarray:
    return block * sa.norms[:, None] * sb.norms[None, :]


def overlap_block(sa: Shell, sb: Shell) -> np.ndarray:
    _, _, w, S1 = _overlap_1d(sa, sb, 0, 0)
    ca, cb = component_arrays(sa.l), component_arrays(sb.l)
    f = [_gather(S1[d], ca[:, d], cb[:, d]) for d in range(3)]
    return _normalise(np.einsum("n,nab->ab", w, f[0] * f[1] * f[2]), sa, sb)


def kinetic_block(sa: Shell, sb: Shell) -> np.ndarray:
    _, b, w, S1 = _overlap_1d(sa, sb, 0, 2)
    T1 = [_kinetic_1d(S1[d], b, sb.l) for d in range(3)]
    ca, cb = component_arrays(sa.l), component_arrays(sb.l)
    s = [_gather(S1[d], ca[:, d], cb[:, d]) for d in range(3)]
    t = [_gather(T1[d], ca[:, d], cb[:, d]) for d in range(3)]
    tot = t[0] * s[1] * s[2] + s[0] * t[1] * s[2] + s[0] * s[1] * t[2]
    return _normalise(np.einsum("n,nab->ab", w, tot), sa, sb)


def overlap_deriv_block(sa: Shell, sb: Shell) -> np.ndarray:
    """d S_ab / d A_k, shape (3, na, nb)."""
    a, _, w, S1 = _overlap_1d(sa, sb, 1, 0)
    ca, cb = component_arrays(sa.l), component_arrays(sb.l)
    s = [_gather(S1[d], ca[:, d], cb[:, d]) for d in range(3)]
    ds = [_d_bra(S1[d], a, ca[:, d], cb[:, d]) for d in range(3)]
    out = np.empty((3, sa.ncart, sb.ncart))
    out[0] = np.einsum("n,nab->ab", w, ds[0] * s[1] * s[2])
    out[1] = np.einsum("n,nab->ab", w, s[0] * ds[1] * s[2])
    out[2] = np.einsum("n,nab->ab", w, s[0] * s[1] * ds[2])
    return _normalise(out, sa, sb)


def kinetic_deriv_block(sa: Shell, sb: Shell) -> np.ndarray:
    """d T_ab / d A_k, shape (3, na, nb)."""
    a, b, w, S1 = _overlap_1d(sa, sb, 1, 2)
    T1 = [_kinetic_1d(S1[d], b, sb.l) for d in range(3)]
    ca, cb = component_arrays(sa.l), component_arrays(sb.l)
    s = [_gather(S1[d], ca[:, d], cb[:, d]) for d in range(3)]
    t = [_gather(T1[d], ca[:, d], cb[:, d]) for d in range(3)]
    ds = [_d_bra(S1[d], a, ca[:, d], cb[:, d]) for d in range(3)]
    dt = [_d_bra(T1[d], a, ca[:, d], cb[:, d]) for d in range(3)]
    out = np.empty((3, sa.ncart, sb.ncart))
    for k in range(3):
        o1, o2 = [d for d in range(3) if d != k]
        tot = dt[k] * s[o1] * s[o2] + ds[k] * t[o1] * s[o2] + ds[k] * s[o1] * t[o2]
        out[k] = np.einsum("n,nab->ab", w, tot)
    return _normalise(out, sa, sb)


def _coulomb_r(L: int, p: np.ndarray, P: np.ndarray, centers: np.ndarray) -> np.ndarray:
    nc = centers.shape[0]
    pc = (P[None, :, :] - centers[:, None, :]).reshape(-1, 3)
    R = hermite_r(L, np.tile(p, nc), pc)
    return R.reshape(nc, p.shape[0], -1)


def nuclear_block(sa: Shell, sb: Shell, charges: np.ndarray, centers: np.ndarray) -> np.ndarray:
    """sum_C -Z_C <a| 1/|r - C| |b>, shape (na, nb)."""
    pe = shell_pair_expansion(sa, sb)
    pref = pe.weight * 2.0 * pi / pe.p
    R = _coulomb_r(pe.L, pe.p, pe.P, np.asarray(centers, dtype=np.float64))
    zr = np.einsum("c,cnh->nh", -np.asarray(charges, dtype=np.float64), R)
    V = np.einsum("n,nah,nh->a", pref, pe.E, zr).reshape(sa.ncart, sb.ncart)
    return _normalise(V, sa, sb)


def nuclear_deriv_blocks(
    sa: Shell, sb: Shell, charges: np.ndarray, centers: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Derivatives of the nuclear-attraction block.

    Returns (dA, dB, dC) with dA, dB of shape (3, na, nb) (summed over all
    nuclei) and dC of shape (ncenters, 3, na, nb), the derivative with
    respect to each operator centre.
    """
    pe = shell_pair_expansion(sa, sb, deriv=1)
    pref = pe.weight * 2.0 * pi / pe.p
    z = -np.asarray(charges, dtype=np.float64)
    R = _coulomb_r(pe.L, pe.p, pe.P, np.asarray(centers, dtype=np.float64))
    zR = z[:, None, None] * R
    na, nb = sa.ncart, sb.ncart
    dA_c = np.einsum("n,knah,cnh->cka", pref, pe.dA, zR).reshape(-1, 3, na, nb)
    dB_c = np.einsum("n,knah,cnh->cka", pref, pe.dB, zR).reshape(-1, 3, na, nb)
    dC = -(dA_c + dB_c)
    norm = sa.norms[:, None] * sb.norms[None, :]
    return dA_c.sum(0) * norm, dB_c.sum(0) * norm, dC * norm


def dipole_block(sa: Shell, sb: Shell, origin) -> np.ndarray:
    """<a| (r - C)_k |b> for the three Cartesian directions, shape (3, na, nb)."""
    a, b, w = _prim_pairs(sa, sb)
    p = a + b
    root = np.sqrt(pi / p)[:, None, None]
    C = np.asarray(origin, dtype=np.float64).reshape(3)
    S1, M1 = [], []
    for d in range(3):
        E = hermite_e(sa.l, sb.l, a, b, sa.center[d], sb.center[d])
        xpc = ((a * sa.center[d] + b * sb.center[d]) / p - C[d])[:, None, None]
        e1 = E[..., 1] if E.shape[-1] > 1 else 0.0
        S1.append(E[..., 0] * root)
        M1.append((e1 + xpc * E[..., 0]) * root)
    ca, cb = component_arrays(sa.l), component_arrays(sb.l)
    s = [_gather(S1[d], ca[:, d], cb[:, d]) for d in range(3)]
    m = [_gather(M1[d], ca[:, d], cb[:, d]) for d in range(3)]
    out = np.empty((3, sa.ncart, sb.ncart))
    out[0] = np.einsum("n,nab->ab", w, m[0] * s[1] * s[2])
    out[1] = np.einsum("n,nab->ab", w, s[0] * m[1] * s[2])
    out[2] = np.einsum("n,nab->ab", w, s[0] * s[1] * m[2])
    return _normalise(out, sa, sb)
