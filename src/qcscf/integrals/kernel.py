from __future__ import annotations

"""IntegralKernel facade.

The kernel holds no mutable state: every method is a pure function of its
arguments and may be invoked concurrently from any number of workers. Block
methods operate on one shell pair/quartet; the matrix assemblers loop over
the basis and return torch tensors for the SCF layer.
"""

from typing import Tuple

import numpy as np
import torch

from ..basis.shells import BasisSet, Shell
from ..device import DTYPE
from ..molecule import Molecule
from . import one_electron as _one
from . import two_electron as _two
from .pairs import shell_pair_expansion
from .screening import quartet_permutations, schwarz_matrix, significant_quartets, is_negligible

Tensor = torch.Tensor

__all__ = ["IntegralKernel", "point_charges", "quartet_block", "place_quartet"]


class IntegralKernel:
    """Stateless one- and two-electron integral evaluator."""

    def __init__(self, screening_threshold: float = 1e-12) -> None:
        self.screening_threshold = float(screening_threshold)

    # ---- shell-level blocks -------------------------------------------------

    @staticmethod
    def overlap(sa: Shell, sb: Shell, deriv: int = 0) -> np.ndarray:
        return _one.overlap_deriv_block(sa, sb) if deriv else _one.overlap_block(sa, sb)

    @staticmethod
    def kinetic(sa: Shell, sb: Shell, deriv: int = 0) -> np.ndarray:
        return _one.kinetic_deriv_block(sa, sb) if deriv else _one.kinetic_block(sa, sb)

    @staticmethod
    def nuclear(sa: Shell, sb: Shell, charges: np.ndarray, centers: np.ndarray, deriv: int = 0):
        if deriv:
            return _one.nuclear_deriv_blocks(sa, sb, charges, centers)
        return _one.nuclear_block(sa, sb, charges, centers)

    @staticmethod
    def eri(sa: Shell, sb: Shell, sc: Shell, sd: Shell, deriv: int = 0) -> np.ndarray:
        return _two.eri_deriv_block(sa, sb, sc, sd) if deriv else _two.eri_block(sa, sb, sc, sd)

    def negligible(self, q_ab: float, q_cd: float) -> bool:
        return is_negligible(q_ab, q_cd, self.screening_threshold)

    # ---- matrix assemblers --------------------------------------------------

    @staticmethod
    def _pair_matrix(basis: BasisSet, fn) -> Tensor:
        M = np.zeros((basis.nao, basis.nao))
        for i, sa in enumerate(basis.shells):
            si = basis.shell_slice(i)
            for j in range(i + 1):
                sj = basis.shell_slice(j)
                blk = fn(sa, basis.shells[j])
                M[si, sj] = blk
                M[sj, si] = blk.T
        return torch.from_numpy(M).to(DTYPE)

    def overlap_matrix(self, basis: BasisSet) -> Tensor:
        return self._pair_matrix(basis, _one.overlap_block)

    def kinetic_matrix(self, basis: BasisSet) -> Tensor:
        return self._pair_matrix(basis, _one.kinetic_block)

    def nuclear_matrix(self, basis: BasisSet, molecule: Molecule) -> Tensor:
        charges, centers = point_charges(molecule)
        return self._pair_matrix(basis, lambda a, b: _one.nuclear_block(a, b, charges, centers))

    def core_hamiltonian(self, basis: BasisSet, molecule: Molecule) -> Tensor:
        return self.kinetic_matrix(basis) + self.nuclear_matrix(basis, molecule)

    def dipole_matrices(self, basis: BasisSet, origin=(0.0, 0.0, 0.0)) -> Tensor:
        """(3, nao, nao) matrices of (r - origin)_k."""
        M = np.zeros((3, basis.nao, basis.nao))
        for i, sa in enumerate(basis.shells):
            si = basis.shell_slice(i)
            for j in range(i + 1):
                sj = basis.shell_slice(j)
                blk = _one.dipole_block(sa, basis.shells[j], origin)
                M[:, si, sj] = blk
                M[:, sj, si] = blk.transpose(0, 2, 1)
        return torch.from_numpy(M).to(DTYPE)

    def schwarz(self, basis: BasisSet) -> np.ndarray:
        return schwarz_matrix(basis)

    def significant_quartets(self, basis: BasisSet, Q: np.ndarray | None = None):
        if Q is None:
            Q = schwarz_matrix(basis)
        return significant_quartets(basis, Q, self.screening_threshold)

    def eri_tensor(self, basis: BasisSet, screen: bool = True) -> Tensor:
        """Full (nao)^4 ERI tensor, serial. Intended for small systems and tests."""
        n = basis.nao
        out = np.zeros((n, n, n, n))
        if screen:
            quartets = self.significant_quartets(basis)
        else:
            quartets = significant_quartets(basis, schwarz_matrix(basis), 0.0)
        pairs = {}
        for q in quartets:
            place_quartet(out, basis, q, quartet_block(basis, q, pairs))
        return torch.from_numpy(out).to(DTYPE)


def point_charges(molecule: Molecule) -> Tuple[np.ndarray, np.ndarray]:
    return (
        molecule.numbers.detach().cpu().numpy().astype(np.float64),
        molecule.positions.detach().cpu().numpy().astype(np.float64),
    )


def quartet_block(basis: BasisSet, q, pairs: dict, deriv: int = 0) -> np.ndarray:
    a, b, c, d = q
    sh = basis.shells
    for key in ((a, b), (c, d)):
        if key not in pairs:
            pairs[key] = shell_pair_expansion(sh[key[0]], sh[key[1]], deriv=deriv)
    shells = (sh[a], sh[b], sh[c], sh[d])
    if deriv:
        return _two.eri_deriv_from_pairs(pairs[(a, b)], pairs[(c, d)], shells)
    return _two.eri_from_pairs(pairs[(a, b)], pairs[(c, d)], shells)


def place_quartet(out: np.ndarray, basis: BasisSet, q, block: np.ndarray) -> None:
    """Scatter a canonical block into every symmetry-equivalent position of ``out``."""
    for t, axes in quartet_permutations(q):
        sl = tuple(basis.shell_slice(i) for i in t)
        out[sl] = np.transpose(block, axes)


