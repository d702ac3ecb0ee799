from __future__ import annotations

"""Analytic nuclear gradient of a converged SCF energy.

    dE/dR = dE_nn/dR
          + sum_pq D_pq dH_pq/dR                          (kinetic + nuclear attraction)
          + 1/2 sum_pqrs G_pqrs d(pq|rs)/dR              (Coulomb + scaled exchange)
          - sum_pq W_pq dS_pq/dR                          (Pulay, W energy weighted)
          + dE_xc/dR + dE_disp/dR

with the two-particle density

    G_pqrs = D_pq D_rs - c_x f / 2 sum_s (D^s_pr D^s_qs + D^s_ps D^s_qr)

(D the total density; f = 1/2 for a closed-shell total density, 1 per spin
channel). G has the eight-fold symmetry of the integrals, so the two-electron
term is a sum over canonical quartets weighted by their degeneracy; it is
distributed over the worker pool like the Fock build.

The nuclear attraction derivative includes the operator centres. The XC term
holds the integration grid fixed.
"""

from dataclasses import dataclass
import logging
from typing import Any, Dict

import numpy as np
import torch

from ..basis.shells import BasisSet
from ..device import DTYPE
from ..dispersion import DispersionAdapter, get_dispersion
from ..errors import SCFNotConverged
from ..fock import FockBuilder
from ..integrals.kernel import point_charges, quartet_block
from ..integrals.one_electron import kinetic_deriv_block, nuclear_deriv_blocks, overlap_deriv_block
from ..integrals.screening import quartet_degeneracy
from ..molecule import nuclear_repulsion_gradient
from ..parallel.partition import iterate_units, make_work_units
from ..parallel.transport import Transport
from ..scf.state import SCFResult, SCFState, SCFStatus

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = ["GradientResult", "GradientAssembler", "eri_gradient_task", "one_electron_gradient"]


@dataclass
class GradientResult:
    gradient: Tensor  # (natoms, 3) Hartree/bohr
    terms: Dict[str, Tensor]
    energy: float

    @property
    def forces(self) -> Tensor:
        return -self.gradient

    def max_force(self) -> float:
        return float(self.gradient.abs().max())


def _two_particle_density(D: np.ndarray, Dt: np.ndarray, slices, kx: float) -> np.ndarray:
    p0, p1, p2, p3 = slices
    G = np.einsum("pq,rs->pqrs", Dt[p0, p1], Dt[p2, p3])
    if kx:
        X = np.einsum("npr,nqs->pqrs", D[:, p0, p2], D[:, p1, p3])
        X += np.einsum("nps,nqr->pqrs", D[:, p0, p3], D[:, p1, p2])
        G -= 0.5 * kx * X
    return G


def eri_gradient_task(transport: Transport, payload: Dict[str, Any]) -> Tensor:
    """Parallel task: two-electron contribution to dE/dR, shape (natoms, 3)."""
    basis: BasisSet = payload["basis"]
    quartets = payload["quartets"]
    D = payload["density"].detach().cpu().numpy()
    kx = float(payload["exchange"])
    Dt = D.sum(0)
    grad = np.zeros((basis.natoms, 3))
    units = make_work_units(payload["costs"], payload["nunits"])
    pairs: dict = {}
    for unit in iterate_units(transport, units, payload["scheduling"]):
        for q in quartets[unit.start:unit.stop]:
            dI = quartet_block(basis, q, pairs, deriv=1)
            G = _two_particle_density(D, Dt, tuple(basis.shell_slice(i) for i in q), kx)
            contrib = 0.5 * quartet_degeneracy(q) * np.einsum("kxpqrs,pqrs->kx", dI, G)
            for k, i in enumerate(q):
                grad[basis.shells[i].atom_index] += contrib[k]
    return transport.all_reduce(torch.from_numpy(grad).to(DTYPE))


def one_electron_gradient(basis: BasisSet, molecule, density: np.ndarray, weighted: np.ndarray) -> Dict[str, np.ndarray]:
    """Core-Hamiltonian and Pulay (overlap) terms from total D and W."""
    charges, centers = point_charges(molecule)
    nat = basis.natoms
    g_kin = np.zeros((nat, 3))
    g_nuc = np.zeros((nat, 3))
    g_pulay = np.zeros((nat, 3))
    sh = basis.shells
    for i in range(basis.nshells):
        si = basis.shell_slice(i)
        ai = sh[i].atom_index
        for j in range(i + 1):
            sj = basis.shell_slice(j)
            aj = sh[j].atom_index
            fac = 1.0 if i == j else 2.0
            Dij = fac * density[si, sj]
            Wij = fac * weighted[si, sj]
            dT = np.einsum("xab,ab->x", kinetic_deriv_block(sh[i], sh[j]), Dij)
            g_kin[ai] += dT
            g_kin[aj] -= dT
            dS = np.einsum("xab,ab->x", overlap_deriv_block(sh[i], sh[j]), Wij)
            g_pulay[ai] -= dS
            g_pulay[aj] += dS
            dA, dB, dC = nuclear_deriv_blocks(sh[i], sh[j], charges, centers)
            g_nuc[ai] += np.einsum("xab,ab->x", dA, Dij)
            g_nuc[aj] += np.einsum("xab,ab->x", dB, Dij)
            g_nuc += np.einsum("cxab,ab->cx", dC, Dij)
    return {"kinetic": g_kin, "nuclear_attraction": g_nuc, "pulay": g_pulay}


class GradientAssembler:
    """Combines integral-derivative, XC and dispersion terms for one geometry.

    The Fock builder supplies the basis, quartet list, worker pool, method
    variant and XC adapter of the SCF it belongs to. Without an explicit
    adapter the dispersion correction named by the builder's configuration
    is used, the same one the SCF driver adds to the energy.
    """

    def __init__(self, builder: FockBuilder, dispersion: DispersionAdapter | None = None) -> None:
        self.builder = builder
        if dispersion is None:
            dispersion = get_dispersion(builder.config.dispersion, builder.config.method)
        self.dispersion = dispersion

    @classmethod
    def for_driver(cls, driver) -> "GradientAssembler":
        return cls(driver.builder, driver.dispersion)

    def compute(self, scf: SCFResult | SCFState) -> GradientResult:
        state = scf.state if isinstance(scf, SCFResult) else scf
        if state.status is not SCFStatus.CONVERGED or state.mo is None:
            raise SCFNotConverged(
                f"gradients require a converged SCF (status: {state.status.value})",
                energy=state.energy,
                delta_density=state.delta_density,
                cycle=state.cycle,
            )
        b = self.builder
        mol = b.molecule
        density = state.mo.density()
        weighted = state.mo.energy_weighted_density()
        nspin = density.shape[0]

        terms: Dict[str, Tensor] = {}
        _, terms["nuclear_repulsion"] = nuclear_repulsion_gradient(mol.numbers, mol.positions)
        one = one_electron_gradient(
            b.basis, mol, density.sum(0).detach().cpu().numpy(), weighted.sum(0).detach().cpu().numpy()
        )
        for k, v in one.items():
            terms[k] = torch.from_numpy(v).to(DTYPE)
        kx = b.exchange_scale * b.exchange_factor(nspin) if b.flavor.uses_exchange else 0.0
        payload = {
            "basis": b.basis,
            "quartets": b.quartets,
            "costs": b.costs,
            "nunits": b.pool.units_hint(),
            "scheduling": b.pool.scheduling,
            "density": density.detach(),
            "exchange": kx,
        }
        terms["two_electron"] = b.pool.run("grad.eri", payload)
        if b.xc is not None:
            terms["xc"] = b.xc.nuclear_gradient(density)
        _, terms["dispersion"] = self.dispersion.evaluate(mol)

        gradient = torch.zeros_like(mol.positions)
        for v in terms.values():
            gradient = gradient + v
        logger.info("gradient: max |dE/dR| = %.3e", float(gradient.abs().max()))
        for k, v in terms.items():
            logger.debug("gradient term %-18s |g| = %.6e", k, float(torch.linalg.norm(v)))
        return GradientResult(gradient=gradient, terms=terms, energy=state.energy)
