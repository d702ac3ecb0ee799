from __future__ import annotations

"""Harmonic vibrational analysis from finite differences of analytic gradients.

The Cartesian Hessian is assembled column by column from central differences
of :class:`~qcscf.opt.optimizer.EnergyGradientEngine` gradients and then
symmetrised. It is mass-weighted, the three translations and the (up to three)
infinitesimal rotations about the centre of mass are projected out, and the
remaining block is diagonalised. Frequencies are in cm^-1; an imaginary mode
is reported with a negative sign.

Away from a stationary point the projected frequencies are not true normal
mode frequencies, but they are still well defined and useful for diagnosing
saddle points.
"""

from dataclasses import dataclass
import logging
from typing import Optional, Tuple

import torch

from .device import DTYPE
from .molecule import Molecule
from .opt.optimizer import EnergyGradientEngine, Evaluation
from .units import AMU_TO_ME, HARTREE_TO_WAVENUMBER, MASSES

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = [
    "VibrationalAnalysis",
    "atomic_masses",
    "finite_difference_hessian",
    "rigid_body_modes",
    "harmonic_analysis",
    "compute_frequencies",
]


@dataclass
class VibrationalAnalysis:
    molecule: Molecule
    energy: float
    gradient: Tensor  # (N, 3)
    hessian: Tensor  # (3N, 3N) Eh/bohr^2
    frequencies: Tensor  # (nvib,) cm^-1, ascending
    modes: Tensor  # (nvib, N, 3) Cartesian displacements
    all_frequencies: Tensor  # (3N,) projected spectrum, rigid-body modes near zero

    @property
    def nvib(self) -> int:
        return int(self.frequencies.shape[0])

    @property
    def imaginary(self) -> int:
        return int((self.frequencies < 0.0).sum())


def atomic_masses(molecule: Molecule) -> Tensor:
    """Standard atomic weights in electron masses."""
    amu = [MASSES[int(z)] for z in molecule.numbers.tolist()]
    return torch.tensor(amu, dtype=DTYPE) * AMU_TO_ME


def finite_difference_hessian(
    engine: EnergyGradientEngine,
    molecule: Molecule,
    step: float = 1e-3,
    reference: Optional[Evaluation] = None,
) -> Tuple[Evaluation, Tensor]:
    """Cartesian Hessian (3N, 3N) from central differences of gradients.

    ``H[:, i] = (g(x + h e_i) - g(x - h e_i)) / 2h`` followed by
    ``H <- (H + H^T) / 2``. Every displaced SCF is seeded with the density of
    the reference geometry, which is evaluated first unless given.
    """
    if step <= 0.0:
        raise ValueError(f"step must be positive, got {step}")
    ref = reference if reference is not None else engine.evaluate(molecule)
    x0 = molecule.positions.reshape(-1)
    n = x0.shape[0]
    H = torch.zeros((n, n), dtype=DTYPE)
    for i in range(n):
        grads = []
        for sign in (1.0, -1.0):
            x = x0.clone()
            x[i] += sign * step
            ev = engine.evaluate(molecule.with_positions(x.reshape(-1, 3)), guess_density=ref.density)
            grads.append(ev.gradient.reshape(-1))
        H[:, i] = (grads[0] - grads[1]) / (2.0 * step)
        logger.debug("hessian column %d/%d", i + 1, n)
    return ref, 0.5 * (H + H.T)


def rigid_body_modes(positions: Tensor, masses: Tensor, tol: float = 1e-6) -> Tensor:
    """Orthonormal translations and rotations in mass-weighted coordinates, (k, 3N).

    k is 6 for a general molecule, 5 for a linear one and 3 for a single atom;
    rotation vectors that vanish after orthogonalisation are dropped.
    """
    sqm = masses.sqrt()[:, None]
    com = (masses[:, None] * positions).sum(0) / masses.sum()
    r = positions - com
    eye = torch.eye(3, dtype=DTYPE)
    candidates = [(sqm * eye[k]).reshape(-1) for k in range(3)]
    candidates += [(sqm * torch.cross(eye[k].expand_as(r), r, dim=-1)).reshape(-1) for k in range(3)]

    cutoff = tol * float(masses.sum().sqrt())
    basis = []
    for v in candidates:
        for b in basis:
            v = v - (b @ v) * b
        norm = torch.linalg.norm(v)
        if norm > cutoff:
            basis.append(v / norm)
    return torch.stack(basis)


def _wavenumbers(eigenvalues: Tensor) -> Tensor:
    return torch.sign(eigenvalues) * eigenvalues.abs().sqrt() * HARTREE_TO_WAVENUMBER


def harmonic_analysis(molecule: Molecule, hessian: Tensor) -> Tuple[Tensor, Tensor, Tensor]:
    """Frequencies (cm^-1), Cartesian modes and the full projected spectrum.

    Returns ``(frequencies, modes, all_frequencies)``. ``frequencies`` and
    ``modes`` cover the internal (vibrational) subspace only;
    ``all_frequencies`` are the eigenvalues of ``P M^-1/2 H M^-1/2 P`` and
    contain one near-zero entry per projected rigid-body mode.
    """
    natoms = molecule.natoms
    m = atomic_masses(molecule)
    m3 = m.repeat_interleave(3)
    Hmw = hessian / torch.sqrt(m3[:, None] * m3[None, :])

    tr = rigid_body_modes(molecule.positions, m)
    n = Hmw.shape[0]
    P = torch.eye(n, dtype=DTYPE) - tr.T @ tr
    all_eig = torch.linalg.eigvalsh(P @ Hmw @ P)

    # orthonormal basis of the internal subspace (eigenvalue 1 of P)
    w, U = torch.linalg.eigh(P)
    B = U[:, w > 0.5]
    lam, vec = torch.linalg.eigh(B.T @ Hmw @ B)
    cart = (B @ vec) / m3.sqrt()[:, None]
    modes = cart.T.reshape(-1, natoms, 3)
    return _wavenumbers(lam), modes, _wavenumbers(all_eig)


def compute_frequencies(
    engine: EnergyGradientEngine,
    molecule: Molecule,
    step: float = 1e-3,
    reference: Optional[Evaluation] = None,
) -> VibrationalAnalysis:
    ref, H = finite_difference_hessian(engine, molecule, step, reference)
    freq, modes, all_freq = harmonic_analysis(molecule, H)
    result = VibrationalAnalysis(
        molecule=molecule,
        energy=float(ref.energy),
        gradient=ref.gradient,
        hessian=H,
        frequencies=freq,
        modes=modes,
        all_frequencies=all_freq,
    )
    logger.info(
        "harmonic frequencies (cm^-1): %s",
        "  ".join(f"{f:.1f}" for f in freq.tolist()),
    )
    if result.imaginary:
        logger.warning("%d imaginary mode(s); geometry is not a minimum", result.imaginary)
    return result
