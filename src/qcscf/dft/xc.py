from __future__ import annotations

"""Exchange-correlation energy, potential and nuclear gradient on a molecular grid.

The adapter owns the grid for one geometry and integrates whatever a
:class:`~qcscf.dft.functionals.Functional` returns per point:

    rho_s(r)      = sum_pq D^s_pq phi_p(r) phi_q(r)
    grad rho_s(r) = 2 sum_pq D^s_pq grad phi_p(r) phi_q(r)
    E_xc          = sum_n w_n e(r_n)
    V^s_pq        = sum_n w_n [vrho_s phi_p phi_q + vgrad_s . (grad phi_p phi_q + phi_p grad phi_q)]

Grid batches are distributed over the worker pool as work units and the
partial results are summed with one ``all_reduce``. The nuclear gradient
differentiates the AO values with respect to their centres (the grid itself
is held fixed, i.e. no weight derivatives).
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import torch

from ..basis.shells import BasisSet, cartesian_components
from ..config import GridConfig
from ..device import DTYPE
from ..molecule import Molecule
from ..parallel.partition import iterate_units, make_work_units
from ..parallel.pool import WorkerPool, local_pool
from ..parallel.transport import Transport
from .functionals import Functional, LibxcFunctional
from .grid import MolecularGrid, build_grid

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = ["ao_values", "XCAdapter", "xc_task", "xc_gradient_task"]


def _powers(x: Tensor, l: int) -> List[Tensor]:
    out = [torch.ones_like(x)]
    for _ in range(l):
        out.append(out[-1] * x)
    return out


def ao_values(basis: BasisSet, points: Tensor, centers: Optional[Tensor] = None) -> Tuple[Tensor, Tensor]:
    """AO values ``phi`` (N, nao) and gradients ``dphi`` (3, N, nao) at ``points``.

    If ``centers`` (natoms, 3) is given, shells are placed there instead of at
    their stored centres and the result is differentiable with respect to it.
    """
    cols: List[Tensor] = []
    dcols: List[List[Tensor]] = [[], [], []]
    for sh in basis.shells:
        if centers is None:
            c = torch.from_numpy(sh.center).to(points)
        else:
            c = centers[sh.atom_index]
        d = points - c
        r2 = (d * d).sum(-1)
        a = torch.from_numpy(sh.exponents).to(points)
        cc = torch.from_numpy(sh.coefficients).to(points)
        e = torch.exp(-r2[:, None] * a[None, :])
        rad = e @ cc
        drad = e @ (-2.0 * a * cc)
        px = _powers(d[:, 0], sh.l)
        py = _powers(d[:, 1], sh.l)
        pz = _powers(d[:, 2], sh.l)
        for k, (lx, ly, lz) in enumerate(cartesian_components(sh.l)):
            nrm = float(sh.norms[k])
            ang = px[lx] * py[ly] * pz[lz]
            cols.append(nrm * ang * rad)
            parts = (
                (lx, d[:, 0], (px[lx - 1] if lx else None), py[ly] * pz[lz]),
                (ly, d[:, 1], (py[ly - 1] if ly else None), px[lx] * pz[lz]),
                (lz, d[:, 2], (pz[lz - 1] if lz else None), px[lx] * py[ly]),
            )
            for axis, (li, xi, lower, rest) in enumerate(parts):
                val = ang * xi * drad
                if li:
                    val = val + li * lower * rest * rad
                dcols[axis].append(nrm * val)
    phi = torch.stack(cols, dim=-1)
    dphi = torch.stack([torch.stack(dc, dim=-1) for dc in dcols])
    return phi, dphi


def _density_on_points(phi: Tensor, dphi: Tensor, density: Tensor, gradient: bool):
    rho = torch.einsum("np,spq,nq->sn", phi, density, phi)
    grad = None
    if gradient:
        grad = 2.0 * torch.einsum("knp,spq,nq->skn", dphi, density, phi)
    return rho, grad


def _batch_contribution(functional: Optional[Functional], basis: BasisSet, points: Tensor, weights: Tensor, density: Tensor):
    needs_grad = functional is not None and functional.needs_gradient
    phi, dphi = ao_values(basis, points)
    rho, grad = _density_on_points(phi, dphi, density, needs_grad)
    nel = (weights * rho.sum(0)).sum()
    if functional is None:
        return torch.zeros((), dtype=DTYPE), torch.zeros_like(density), nel
    ev = functional.evaluate(rho, grad)
    exc = (weights * ev.exc).sum()
    V = torch.einsum("n,sn,np,nq->spq", weights, ev.vrho, phi, phi)
    if needs_grad:
        M = torch.einsum("n,skn,knp,nq->spq", weights, ev.vgrad, dphi, phi)
        V = V + M + M.transpose(-1, -2)
    return exc, V, nel


def _grid_units(payload: Dict[str, Any]):
    batches = payload["batches"]
    units = make_work_units([float(b.stop - b.start) for b in batches], payload["nunits"])
    return batches, units


def xc_task(transport: Transport, payload: Dict[str, Any]):
    """Parallel task: (E_xc, V_xc (nspin, nao, nao), integrated electron count)."""
    functional = payload["functional"]
    basis: BasisSet = payload["basis"]
    points, weights, density = payload["points"], payload["weights"], payload["density"]
    batches, units = _grid_units(payload)
    n = basis.nao
    nspin = density.shape[0]
    exc = torch.zeros((), dtype=DTYPE)
    V = torch.zeros((nspin, n, n), dtype=DTYPE)
    nel = torch.zeros((), dtype=DTYPE)
    for unit in iterate_units(transport, units, payload["scheduling"]):
        for b in batches[unit.start:unit.stop]:
            e_b, v_b, n_b = _batch_contribution(functional, basis, points[b], weights[b], density)
            exc = exc + e_b
            V = V + v_b
            nel = nel + n_b
    packed = torch.cat([exc.reshape(1), nel.reshape(1), V.reshape(-1)])
    total = transport.all_reduce(packed)
    return total[0], total[2:].reshape(nspin, n, n), total[1]


def xc_gradient_task(transport: Transport, payload: Dict[str, Any]) -> Tensor:
    """Parallel task: dE_xc/dR (natoms, 3) with the grid held fixed."""
    functional: Functional = payload["functional"]
    basis: BasisSet = payload["basis"]
    points, weights, density = payload["points"], payload["weights"], payload["density"]
    positions: Tensor = payload["positions"]
    batches, units = _grid_units(payload)
    needs_grad = functional.needs_gradient
    grad = torch.zeros_like(positions)
    for unit in iterate_units(transport, units, payload["scheduling"]):
        for b in batches[unit.start:unit.stop]:
            pts, w = points[b], weights[b]
            with torch.no_grad():
                phi0, dphi0 = ao_values(basis, pts)
                rho0, grad0 = _density_on_points(phi0, dphi0, density, needs_grad)
            ev = functional.evaluate(rho0, grad0)
            centers = positions.detach().clone().requires_grad_(True)
            with torch.enable_grad():
                phi, dphi = ao_values(basis, pts, centers)
                rho, g = _density_on_points(phi, dphi, density, needs_grad)
                surrogate = (w * (ev.vrho * rho).sum(0)).sum()
                if needs_grad:
                    surrogate = surrogate + (w * (ev.vgrad * g).sum((0, 1))).sum()
                dR, = torch.autograd.grad(surrogate, centers)
            grad = grad + dR.detach()
    return transport.all_reduce(grad)


class XCAdapter:
    """Grid-based XC contribution for one geometry.

    Parameters
    ----------
    functional : Functional | LibxcFunctional
        Per-point evaluator (built-in torch functional or libxc).
    molecule, basis : Molecule, BasisSet
        Geometry and matching basis; the grid is built once from ``molecule``.
    grid_config : GridConfig, optional
    pool : WorkerPool, optional
        Grid batches are distributed over this pool (in-process if omitted).
    """

    def __init__(
        self,
        functional: Functional | LibxcFunctional,
        molecule: Molecule,
        basis: BasisSet,
        grid_config: GridConfig | None = None,
        pool: WorkerPool | None = None,
    ) -> None:
        basis.check_consistent(molecule)
        self.functional = functional
        self.molecule = molecule
        self.basis = basis
        self.pool = pool if pool is not None else local_pool()
        self.grid: MolecularGrid = build_grid(molecule, grid_config)
        logger.debug("XC grid with %d points in %d batches", self.grid.npoints, len(self.grid.batches()))

    def _payload(self, density: Tensor, functional) -> Dict[str, Any]:
        if density.ndim == 2:
            density = density.unsqueeze(0)
        if density.shape[-1] != self.basis.nao:
            raise ValueError(f"density has {density.shape[-1]} AOs, basis has {self.basis.nao}")
        return {
            "functional": functional,
            "basis": self.basis,
            "points": self.grid.points,
            "weights": self.grid.weights,
            "batches": self.grid.batches(),
            "density": density.detach().to(DTYPE),
            "positions": self.molecule.positions,
            "nunits": self.pool.units_hint(),
            "scheduling": self.pool.scheduling,
        }

    def evaluate(self, density: Tensor) -> Tuple[Tensor, Tensor]:
        """Return (E_xc, V_xc) for ``density`` of shape (nspin, nao, nao)."""
        exc, vxc, nel = self.pool.run("dft.xc", self._payload(density, self.functional))
        logger.debug("XC: E_xc = %.10f, integrated electrons = %.8f", float(exc), float(nel))
        return exc, vxc

    def integrate_density(self, density: Tensor) -> float:
        """Number of electrons obtained by integrating ``density`` on the grid."""
        _, _, nel = self.pool.run("dft.xc", self._payload(density, None))
        return float(nel)

    def nuclear_gradient(self, density: Tensor) -> Tensor:
        return self.pool.run("grad.xc", self._payload(density, self.functional))

