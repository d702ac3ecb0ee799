from __future__ import annotations

"""Molecular geometry container.

A :class:`Molecule` is immutable; the geometry optimizer replaces it
wholesale via :meth:`Molecule.with_positions` between SCF solves.
"""

from dataclasses import dataclass
import hashlib
from typing import Sequence, Tuple

import torch

from .device import DTYPE
from .units import ANGSTROM_TO_BOHR, atomic_number, symbol

Tensor = torch.Tensor

__all__ = ["Molecule", "nuclear_repulsion_energy", "nuclear_repulsion_gradient"]


@dataclass(frozen=True, eq=False)
class Molecule:
    numbers: Tensor  # (nat,) long
    positions: Tensor  # (nat, 3) bohr
    charge: int = 0
    multiplicity: int = 1

    def __post_init__(self) -> None:
        numbers = torch.as_tensor(self.numbers, dtype=torch.long).detach().clone()
        positions = torch.as_tensor(self.positions, dtype=DTYPE).detach().clone()
        if numbers.ndim != 1:
            raise ValueError(f"numbers must be 1-D, got shape {tuple(numbers.shape)}")
        if positions.shape != (numbers.shape[0], 3):
            raise ValueError(
                f"positions must have shape ({numbers.shape[0]}, 3), got {tuple(positions.shape)}"
            )
        for z in numbers.tolist():
            atomic_number(int(z))
        if self.multiplicity < 1:
            raise ValueError(f"multiplicity must be >= 1, got {self.multiplicity}")
        nel = int(numbers.sum().item()) - int(self.charge)
        if nel < 0:
            raise ValueError(f"charge {self.charge} leaves a negative electron count")
        if (nel - (self.multiplicity - 1)) % 2 != 0 or self.multiplicity - 1 > nel:
            raise ValueError(
                f"multiplicity {self.multiplicity} is inconsistent with {nel} electrons"
            )
        object.__setattr__(self, "numbers", numbers)
        object.__setattr__(self, "positions", positions)

    @classmethod
    def from_symbols(
        cls,
        symbols: Sequence[str | int],
        positions,
        *,
        charge: int = 0,
        multiplicity: int = 1,
        unit: str = "bohr",
    ) -> "Molecule":
        numbers = torch.tensor([atomic_number(s) for s in symbols], dtype=torch.long)
        pos = torch.as_tensor(positions, dtype=DTYPE)
        if unit == "angstrom":
            pos = pos * ANGSTROM_TO_BOHR
        elif unit != "bohr":
            raise ValueError(f"unit must be 'bohr' or 'angstrom', got '{unit}'")
        return cls(numbers, pos, charge=charge, multiplicity=multiplicity)

    @classmethod
    def from_angstrom(cls, numbers, positions, *, charge: int = 0, multiplicity: int = 1) -> "Molecule":
        pos = torch.as_tensor(positions, dtype=DTYPE) * ANGSTROM_TO_BOHR
        return cls(torch.as_tensor(numbers, dtype=torch.long), pos, charge=charge, multiplicity=multiplicity)

    @property
    def natoms(self) -> int:
        return int(self.numbers.shape[0])

    @property
    def symbols(self) -> Tuple[str, ...]:
        return tuple(symbol(int(z)) for z in self.numbers.tolist())

    @property
    def nelectron(self) -> int:
        return int(self.numbers.sum().item()) - int(self.charge)

    @property
    def nalpha(self) -> int:
        return (self.nelectron + self.multiplicity - 1) // 2

    @property
    def nbeta(self) -> int:
        return self.nelectron - self.nalpha

    def with_positions(self, positions: Tensor) -> "Molecule":
        return Molecule(self.numbers, positions, charge=self.charge, multiplicity=self.multiplicity)

    def nuclear_repulsion(self) -> float:
        return float(nuclear_repulsion_energy(self.numbers, self.positions))

    def fingerprint(self, decimals: int = 10) -> str:
        """Stable hash over composition, geometry (rounded), charge and multiplicity."""
        h = hashlib.sha256()
        h.update(",".join(str(int(z)) for z in self.numbers.tolist()).encode())
        for x in self.positions.reshape(-1).tolist():
            h.update(f"{round(x, decimals):+.{decimals}f}".encode())
        h.update(f"q={self.charge};m={self.multiplicity}".encode())
        return h.hexdigest()


def nuclear_repulsion_energy(numbers: Tensor, positions: Tensor) -> Tensor:
    """E_nn = sum_{A<B} Z_A Z_B / R_AB (differentiable in positions)."""
    z = numbers.to(positions.dtype)
    nat = positions.shape[0]
    if nat < 2:
        return positions.new_zeros(())
    i, j = torch.triu_indices(nat, nat, offset=1)
    rij = torch.linalg.norm(positions[i] - positions[j], dim=-1)
    return (z[i] * z[j] / rij).sum()


def nuclear_repulsion_gradient(numbers: Tensor, positions: Tensor) -> Tuple[Tensor, Tensor]:
    """Return (E_nn, dE_nn/dR) via autograd."""
    pos_req = positions.detach().clone().requires_grad_(True)
    e = nuclear_repulsion_energy(numbers, pos_req)
    if not e.requires_grad:
        return e.detach(), torch.zeros_like(positions)
    grad, = torch.autograd.grad(e, pos_req)
    return e.detach(), grad.detach()
