from __future__ import annotations

"""Eight-fold permutational symmetry and Schwarz screening of shell quartets.

Canonical quartets satisfy a >= b, c >= d and pair(a, b) >= pair(c, d) with
pair(i, j) = i (i + 1) / 2 + j. Every ordered quartet belongs to exactly one
canonical representative; :func:`quartet_permutations` lists the distinct
members of its orbit together with the axis permutation that maps the
canonical block onto each member.

Screening uses |(ab|cd)| <= Q_ab Q_cd (Cauchy–Schwarz), so a quartet with
Q_ab Q_cd below the threshold is guaranteed to hold no integral above it.
"""

import logging
from typing import Iterator, List, Tuple

import numpy as np

from ..basis.shells import BasisSet
from .two_electron import schwarz_factor

logger = logging.getLogger(__name__)

Quartet = Tuple[int, int, int, int]

__all__ = [
    "Quartet",
    "pair_index",
    "unique_quartets",
    "quartet_permutations",
    "quartet_degeneracy",
    "schwarz_matrix",
    "is_negligible",
    "significant_quartets",
]

# (index permutation, block axes) for the eight symmetry operations
_SYMMETRY_OPS = (
    ((0, 1, 2, 3), (0, 1, 2, 3)),
    ((1, 0, 2, 3), (1, 0, 2, 3)),
    ((0, 1, 3, 2), (0, 1, 3, 2)),
    ((1, 0, 3, 2), (1, 0, 3, 2)),
    ((2, 3, 0, 1), (2, 3, 0, 1)),
    ((3, 2, 0, 1), (3, 2, 0, 1)),
    ((2, 3, 1, 0), (2, 3, 1, 0)),
    ((3, 2, 1, 0), (3, 2, 1, 0)),
)


def pair_index(i: int, j: int) -> int:
    if i < j:
        i, j = j, i
    return i * (i + 1) // 2 + j


def unique_quartets(nshell: int) -> Iterator[Quartet]:
    for a in range(nshell):
        for b in range(a + 1):
            ab = pair_index(a, b)
            for c in range(a + 1):
                for d in range(c + 1):
                    if pair_index(c, d) > ab:
                        break
                    yield (a, b, c, d)


def quartet_permutations(q: Quartet) -> List[Tuple[Quartet, Tuple[int, int, int, int]]]:
    """Distinct index permutations of ``q`` and the transpose taking block(q) to each."""
    seen = set()
    out = []
    for perm, axes in _SYMMETRY_OPS:
        t = tuple(q[i] for i in perm)
        if t in seen:
            continue
        seen.add(t)
        out.append((t, axes))
    return out


def quartet_degeneracy(q: Quartet) -> int:
    a, b, c, d = q
    deg = 1
    if a != b:
        deg *= 2
    if c != d:
        deg *= 2
    if (a, b) != (c, d):
        deg *= 2
    return deg


def schwarz_matrix(basis: BasisSet) -> np.ndarray:
    n = basis.nshells
    Q = np.zeros((n, n))
    for a in range(n):
        for b in range(a + 1):
            Q[a, b] = Q[b, a] = schwarz_factor(basis.shells[a], basis.shells[b])
    return Q


def is_negligible(q_ab: float, q_cd: float, threshold: float) -> bool:
    return q_ab * q_cd < threshold


def significant_quartets(basis: BasisSet, Q: np.ndarray, threshold: float) -> List[Quartet]:
    out: List[Quartet] = []
    total = 0
    for q in unique_quartets(basis.nshells):
        total += 1
        a, b, c, d = q
        if not is_negligible(Q[a, b], Q[c, d], threshold):
            out.append(q)
    logger.debug("screening: %d of %d unique quartets significant (threshold %.1e)", len(out), total, threshold)
    return out
