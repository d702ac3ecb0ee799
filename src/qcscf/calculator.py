from __future__ import annotations

"""ASE calculator backed by the SCF engine (energy and analytic forces)."""

from dataclasses import replace
import logging
from typing import Optional

import numpy as np
import torch
from ase.calculators.calculator import Calculator, all_changes

from .config import JobConfig, SCFConfig
from .molecule import Molecule
from .opt.optimizer import EnergyGradientEngine
from .parallel.pool import WorkerPool
from .units import BOHR_TO_ANGSTROM, HARTREE_TO_EV

logger = logging.getLogger(__name__)

__all__ = ["QCSCFCalculator"]


class QCSCFCalculator(Calculator):
    """Energies in eV and forces in eV/Angstrom for ASE ``Atoms``.

    Consecutive calculations on the same composition reuse the previous
    converged density as the SCF guess.
    """

    implemented_properties = ["energy", "forces"]

    def __init__(
        self,
        method: Optional[str] = None,
        basis: str = "sto-3g",
        config: JobConfig | None = None,
        *,
        charge: int = 0,
        multiplicity: int = 1,
        pool: WorkerPool | None = None,
        label: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(label=label, **kwargs)
        config = config or JobConfig()
        scf: SCFConfig = config.scf
        if method is not None:
            scf = replace(scf, method=method)
        self.config = replace(config, scf=scf)
        self.basis_name = basis
        self.charge = int(charge)
        self.multiplicity = int(multiplicity)
        self.pool = pool
        self._engine: Optional[EnergyGradientEngine] = None
        self._numbers: Optional[tuple] = None
        self._density: Optional[torch.Tensor] = None
        self.last_scf = None

    def _molecule(self, atoms) -> Molecule:
        return Molecule.from_angstrom(
            atoms.get_atomic_numbers(),
            np.asarray(atoms.get_positions()),
            charge=self.charge,
            multiplicity=self.multiplicity,
        )

    def calculate(self, atoms=None, properties=("energy",), system_changes=all_changes):
        super().calculate(atoms, properties, system_changes)
        mol = self._molecule(self.atoms)
        key = tuple(mol.numbers.tolist())
        if self._engine is None or key != self._numbers:
            self._engine = EnergyGradientEngine(self.basis_name, self.config.scf, pool=self.pool)
            self._numbers = key
            self._density = None
        ev = self._engine.evaluate(mol, self._density)
        self._density = ev.density
        self.last_scf = ev.scf
        self.results["energy"] = ev.energy * HARTREE_TO_EV
        self.results["forces"] = (-ev.gradient * HARTREE_TO_EV / BOHR_TO_ANGSTROM).detach().cpu().numpy()
        logger.debug("QCSCFCalculator: E = %.10f Eh", ev.energy)
