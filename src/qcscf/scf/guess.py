from __future__ import annotations

"""Reference selection, aufbau occupations and initial densities."""

import torch

from ..device import DTYPE
from ..molecule import Molecule
from .orthogonalize import Orthogonalizer
from .state import density_from_orbitals

Tensor = torch.Tensor

__all__ = ["resolve_reference", "aufbau_occupations", "core_guess", "adapt_density"]


def resolve_reference(molecule: Molecule, reference: str = "auto") -> str:
    if reference == "auto":
        return "rhf" if molecule.multiplicity == 1 else "uhf"
    if reference == "rhf" and molecule.multiplicity != 1:
        raise ValueError(
            f"restricted closed-shell reference needs multiplicity 1, got {molecule.multiplicity}"
        )
    if reference not in ("rhf", "uhf"):
        raise ValueError(f"Unknown reference '{reference}'")
    return reference


def aufbau_occupations(molecule: Molecule, nmo: int, reference: str) -> Tensor:
    """Occupation numbers (nspin, nmo): 2/0 for 'rhf', 1/0 per spin for 'uhf'."""
    if reference == "rhf":
        nocc = [molecule.nelectron // 2]
        fill = 2.0
    else:
        nocc = [molecule.nalpha, molecule.nbeta]
        fill = 1.0
    if max(nocc) > nmo:
        raise ValueError(f"{max(nocc)} occupied orbitals requested but only {nmo} are available")
    occ = torch.zeros((len(nocc), nmo), dtype=DTYPE)
    for s, n in enumerate(nocc):
        occ[s, :n] = fill
    return occ


def core_guess(hcore: Tensor, orth: Orthogonalizer, occupations: Tensor) -> Tensor:
    """Density from the core-Hamiltonian eigenvectors (same orbitals for both spins)."""
    _, C = orth.diagonalize(hcore)
    nspin = occupations.shape[0]
    return density_from_orbitals(C.unsqueeze(0).expand(nspin, -1, -1), occupations)


def adapt_density(density: Tensor, nspin: int, nao: int) -> Tensor:
    """Bring a supplied density into (nspin, nao, nao) form.

    A closed-shell total density is split evenly over two spin channels, and a
    spin-resolved density is summed when a restricted run reuses it.
    """
    D = torch.as_tensor(density, dtype=DTYPE).detach().clone()
    if D.ndim == 2:
        D = D.unsqueeze(0)
    if D.shape[1:] != (nao, nao) or D.shape[0] not in (1, 2):
        raise ValueError(f"guess density must have shape (nspin, {nao}, {nao}), got {tuple(D.shape)}")
    if D.shape[0] == nspin:
        return D
    if nspin == 1:
        return D.sum(0, keepdim=True)
    return torch.cat([0.5 * D, 0.5 * D])
