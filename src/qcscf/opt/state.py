from __future__ import annotations

"""Geometry optimizer state, persisted across SCF solves of one run."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import torch

from ..device import DTYPE
from ..molecule import Molecule

Tensor = torch.Tensor

__all__ = ["OptimizerStatus", "OptimizerState"]


class OptimizerStatus(Enum):
    AWAITING_ENERGY = "awaiting_energy"
    STEP_PROPOSED = "step_proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    OPTIMIZED = "optimized"
    FAILED = "failed"


@dataclass
class OptimizerState:
    molecule: Molecule
    trust_radius: float
    hessian: Tensor  # (3N, 3N) Hartree/bohr^2
    energy: Optional[float] = None
    gradient: Optional[Tensor] = None  # (N, 3)
    density: Optional[Tensor] = None  # converged density at ``molecule``, next SCF guess
    status: OptimizerStatus = OptimizerStatus.AWAITING_ENERGY
    step: int = 0  # accepted steps
    evaluations: int = 0
    rejections: int = 0  # consecutive
    last_step_norm: float = float("inf")
    energies: List[float] = field(default_factory=list)
    s_history: List[Tensor] = field(default_factory=list)  # L-BFGS steps, oldest first
    y_history: List[Tensor] = field(default_factory=list)  # matching gradient changes

    @classmethod
    def initial(cls, molecule: Molecule, trust_radius: float, initial_hessian: float) -> "OptimizerState":
        n = 3 * molecule.natoms
        return cls(
            molecule=molecule,
            trust_radius=float(trust_radius),
            hessian=initial_hessian * torch.eye(n, dtype=DTYPE),
        )

    @property
    def max_force(self) -> float:
        if self.gradient is None:
            return float("inf")
        return float(self.gradient.abs().max())

    def to_dict(self) -> Dict[str, Any]:
        """Plain tensors and scalars only (checkpoint payload)."""
        mol = self.molecule
        return {
            "numbers": mol.numbers,
            "positions": mol.positions,
            "charge": int(mol.charge),
            "multiplicity": int(mol.multiplicity),
            "trust_radius": float(self.trust_radius),
            "hessian": self.hessian,
            "energy": self.energy,
            "gradient": self.gradient,
            "density": self.density,
            "status": self.status.value,
            "step": int(self.step),
            "evaluations": int(self.evaluations),
            "rejections": int(self.rejections),
            "last_step_norm": float(self.last_step_norm),
            "energies": [float(e) for e in self.energies],
            "s_history": list(self.s_history),
            "y_history": list(self.y_history),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptimizerState":
        mol = Molecule(
            data["numbers"], data["positions"], charge=int(data["charge"]), multiplicity=int(data["multiplicity"])
        )
        return cls(
            molecule=mol,
            trust_radius=float(data["trust_radius"]),
            hessian=data["hessian"],
            energy=data["energy"],
            gradient=data["gradient"],
            density=data["density"],
            status=OptimizerStatus(data["status"]),
            step=int(data["step"]),
            evaluations=int(data["evaluations"]),
            rejections=int(data["rejections"]),
            last_step_norm=float(data["last_step_norm"]),
            energies=list(data["energies"]),
            s_history=list(data.get("s_history", [])),
            y_history=list(data.get("y_history", [])),
        )
