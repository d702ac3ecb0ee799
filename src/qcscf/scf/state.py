from __future__ import annotations

"""SCF state objects owned by :class:`~qcscf.scf.driver.SCFDriver`."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import torch

from .diis import DIISHistory

Tensor = torch.Tensor

__all__ = ["SCFStatus", "MOCoefficients", "SCFState", "SCFResult", "density_from_orbitals"]


class SCFStatus(Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    DIVERGED = "diverged"
    MAX_CYCLES_EXCEEDED = "max_cycles_exceeded"


def density_from_orbitals(coefficients: Tensor, occupations: Tensor) -> Tensor:
    """D^s = C^s diag(n^s) C^s^T for stacked (nspin, nao, nmo) coefficients."""
    return torch.einsum("spi,si,sqi->spq", coefficients, occupations, coefficients)


@dataclass(frozen=True, eq=False)
class MOCoefficients:
    coefficients: Tensor  # (nspin, nao, nmo)
    energies: Tensor  # (nspin, nmo)
    occupations: Tensor  # (nspin, nmo)

    @property
    def nspin(self) -> int:
        return int(self.coefficients.shape[0])

    @property
    def nmo(self) -> int:
        return int(self.coefficients.shape[-1])

    def density(self) -> Tensor:
        return density_from_orbitals(self.coefficients, self.occupations)

    def energy_weighted_density(self) -> Tensor:
        return density_from_orbitals(self.coefficients, self.occupations * self.energies)

    def homo_lumo(self):
        """(HOMO, LUMO) energies over both spin channels; LUMO is None without virtuals."""
        occ = self.occupations > 0
        homo = float(self.energies[occ].max())
        virt = self.energies[~occ]
        return homo, (float(virt.min()) if virt.numel() else None)


@dataclass
class SCFState:
    """Iteration state; reset for every new geometry."""

    cycle: int = 0
    energy: float = 0.0
    delta_energy: float = float("inf")
    delta_density: float = float("inf")
    residual: float = float("inf")
    status: SCFStatus = SCFStatus.INITIALIZED
    density: Optional[Tensor] = None  # (nspin, nao, nao)
    fock: Optional[Tensor] = None  # (nspin, nao, nao), built from ``density``
    mo: Optional[MOCoefficients] = None
    diis: Optional[DIISHistory] = None
    best_energy: float = float("inf")
    best_density: Optional[Tensor] = None
    fallback: bool = False
    history: List[float] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status is SCFStatus.CONVERGED

    def record_best(self) -> None:
        if self.energy < self.best_energy:
            self.best_energy = self.energy
            self.best_density = self.density


@dataclass(eq=False)
class SCFResult:
    state: SCFState
    mo: MOCoefficients
    energy: float
    components: Dict[str, float]
    density: Tensor  # (nspin, nao, nao)
    energy_weighted_density: Tensor  # (nspin, nao, nao)
    overlap: Tensor
    dipole: Optional[Tensor] = None  # (3,) e*bohr

    @property
    def converged(self) -> bool:
        return self.state.converged

    @property
    def cycles(self) -> int:
        return self.state.cycle

    def total_density(self) -> Tensor:
        return self.density.sum(0)
