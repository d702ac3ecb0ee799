from __future__ import annotations

"""Contracted Cartesian Gaussian shells and the molecular basis set.

Every Cartesian component is normalised individually, so the overlap matrix
has a unit diagonal for all angular momenta. The contraction coefficients
stored on a :class:`Shell` already include the primitive normalisation for
the shell's angular momentum; derivative integrals therefore reuse them
unchanged for the shifted (l +/- 1) functions.
"""

from dataclasses import dataclass
from functools import lru_cache
import hashlib
from math import pi
from pathlib import Path
from typing import List, Mapping, Sequence, Tuple

import numpy as np

from ..molecule import Molecule
from .loader import BasisTable, ShellSpec, basis_table_from_dict, load_basis_table

__all__ = [
    "cartesian_components",
    "ncart",
    "Shell",
    "BasisSet",
    "build_basis",
]


@lru_cache(maxsize=None)
def cartesian_components(l: int) -> Tuple[Tuple[int, int, int], ...]:
    """Deterministic Cartesian exponent list for angular momentum l (cached)."""
    out: List[Tuple[int, int, int]] = []
    for lx in range(l, -1, -1):
        for ly in range(l - lx, -1, -1):
            out.append((lx, ly, l - lx - ly))
    return tuple(out)


def ncart(l: int) -> int:
    return (l + 1) * (l + 2) // 2


def _double_factorial(n: int) -> int:
    out = 1
    while n > 1:
        out *= n
        n -= 2
    return out


def _primitive_norm(alpha: np.ndarray, l: int) -> np.ndarray:
    return (2.0 * alpha / pi) ** 0.75 * (4.0 * alpha) ** (0.5 * l) / np.sqrt(_double_factorial(2 * l - 1))


def _component_norms(l: int, exps: np.ndarray, coefs: np.ndarray) -> np.ndarray:
    """1/sqrt(<g|g>) for each Cartesian component of the contracted shell."""
    p = exps[:, None] + exps[None, :]
    cc = coefs[:, None] * coefs[None, :]
    out = np.empty(ncart(l))
    for k, (lx, ly, lz) in enumerate(cartesian_components(l)):
        df = _double_factorial(2 * lx - 1) * _double_factorial(2 * ly - 1) * _double_factorial(2 * lz - 1)
        s = cc * df / (2.0 * p) ** l * (pi / p) ** 1.5
        out[k] = 1.0 / np.sqrt(s.sum())
    return out


@dataclass(frozen=True, eq=False)
class Shell:
    atom_index: int
    l: int
    exponents: np.ndarray
    coefficients: np.ndarray
    center: np.ndarray
    norms: np.ndarray

    @classmethod
    def from_spec(cls, spec: ShellSpec, atom_index: int, center) -> "Shell":
        exps = np.asarray(spec.exponents, dtype=np.float64)
        coefs = np.asarray(spec.coefficients, dtype=np.float64) * _primitive_norm(exps, spec.l)
        return cls(
            atom_index=int(atom_index),
            l=int(spec.l),
            exponents=exps,
            coefficients=coefs,
            center=np.asarray(center, dtype=np.float64).reshape(3).copy(),
            norms=_component_norms(spec.l, exps, coefs),
        )

    @property
    def ncart(self) -> int:
        return ncart(self.l)

    @property
    def nprim(self) -> int:
        return int(self.exponents.shape[0])

    def moved(self, center) -> "Shell":
        return Shell(
            self.atom_index,
            self.l,
            self.exponents,
            self.coefficients,
            np.asarray(center, dtype=np.float64).reshape(3).copy(),
            self.norms,
        )


@dataclass(frozen=True, eq=False)
class BasisSet:
    name: str
    shells: Tuple[Shell, ...]
    ao_offsets: Tuple[int, ...]
    nao: int
    natoms: int

    @classmethod
    def from_shells(cls, name: str, shells: Sequence[Shell], natoms: int) -> "BasisSet":
        offsets = []
        n = 0
        for sh in shells:
            offsets.append(n)
            n += sh.ncart
        return cls(name=name, shells=tuple(shells), ao_offsets=tuple(offsets), nao=n, natoms=int(natoms))

    @property
    def nshells(self) -> int:
        return len(self.shells)

    def shell_slice(self, i: int) -> slice:
        o = self.ao_offsets[i]
        return slice(o, o + self.shells[i].ncart)

    def ao_atoms(self) -> np.ndarray:
        out = np.empty(self.nao, dtype=np.int64)
        for i, sh in enumerate(self.shells):
            out[self.shell_slice(i)] = sh.atom_index
        return out

    def with_molecule(self, molecule: Molecule) -> "BasisSet":
        """Re-centre every shell on its owner atom in ``molecule``."""
        if molecule.natoms != self.natoms:
            raise ValueError(f"basis built for {self.natoms} atoms, molecule has {molecule.natoms}")
        pos = molecule.positions.detach().cpu().numpy()
        shells = tuple(sh.moved(pos[sh.atom_index]) for sh in self.shells)
        return BasisSet(self.name, shells, self.ao_offsets, self.nao, self.natoms)

    def check_consistent(self, molecule: Molecule, atol: float = 1e-12) -> None:
        pos = molecule.positions.detach().cpu().numpy()
        for i, sh in enumerate(self.shells):
            if not np.allclose(sh.center, pos[sh.atom_index], rtol=0.0, atol=atol):
                raise ValueError(
                    f"shell {i} centre {sh.center.tolist()} differs from atom {sh.atom_index} position"
                )

    def identity(self) -> str:
        """Geometry-independent hash of the basis definition."""
        h = hashlib.sha256(self.name.encode())
        for sh in self.shells:
            h.update(f"{sh.atom_index}:{sh.l}".encode())
            h.update(np.ascontiguousarray(sh.exponents).tobytes())
            h.update(np.ascontiguousarray(sh.coefficients).tobytes())
        return h.hexdigest()


def build_basis(molecule: Molecule, basis: str | Path | BasisTable | Mapping = "sto-3g") -> BasisSet:
    """Build the molecular basis from a packaged name, a TOML path, a table or a raw dict."""
    if isinstance(basis, BasisTable):
        table = basis
    elif isinstance(basis, Mapping):
        table = basis_table_from_dict(basis)
    else:
        table = load_basis_table(basis)
    pos = molecule.positions.detach().cpu().numpy()
    shells: List[Shell] = []
    for ia, z in enumerate(molecule.numbers.tolist()):
        for spec in table.shells_for(int(z)):
            shells.append(Shell.from_spec(spec, ia, pos[ia]))
    return BasisSet.from_shells(table.name, shells, molecule.natoms)
