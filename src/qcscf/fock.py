from __future__ import annotations

"""Parallel Fock-matrix construction.

For spin densities D^s (stacked (nspin, nao, nao); nspin == 1 holds the
closed-shell total density) the builder returns

    F^s = H + J[D] - c_x f K^s[D^s] + V_xc^s

with J_pq = sum_rs (pq|rs) D_rs (total density), K^s_pr = sum_qs (pq|rs) D^s_qs,
f = 1/2 for a closed-shell total density and 1 per spin channel otherwise,
and c_x the exact-exchange fraction of the method.

Which terms appear is fixed once per builder by its :class:`FockFlavor`.
Two-electron work is spread over canonical, Schwarz-significant shell
quartets grouped into cost-balanced work units. In ``incore`` mode the ERI
tensor is assembled once per geometry (one reduction) and J/K become
contractions; in ``direct`` mode every build reduces per-rank partial J/K.
Either way the reduced matrices do not depend on worker count or
assignment, up to summation order.
"""

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import torch

from .basis.shells import BasisSet
from .config import SCFConfig
from .device import DTYPE
from .dft.functionals import exact_exchange_fraction, get_functional
from .dft.xc import XCAdapter
from .integrals.kernel import IntegralKernel, place_quartet, quartet_block
from .integrals.screening import quartet_permutations
from .molecule import Molecule
from .parallel.partition import estimate_quartet_cost, iterate_units, make_work_units
from .parallel.pool import WorkerPool, local_pool
from .parallel.transport import Transport

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = [
    "FockFlavor",
    "FockVariant",
    "select_variant",
    "FockBuild",
    "FockBuilder",
    "eri_task",
    "jk_task",
]


class FockFlavor(Enum):
    COULOMB = "coulomb"
    COULOMB_EXCHANGE = "coulomb+exchange"
    COULOMB_XC = "coulomb+xc"
    COULOMB_SCALED_EXCHANGE_XC = "coulomb+scaled-exchange+xc"

    @property
    def uses_exchange(self) -> bool:
        return self in (FockFlavor.COULOMB_EXCHANGE, FockFlavor.COULOMB_SCALED_EXCHANGE_XC)

    @property
    def uses_xc(self) -> bool:
        return self in (FockFlavor.COULOMB_XC, FockFlavor.COULOMB_SCALED_EXCHANGE_XC)


@dataclass(frozen=True)
class FockVariant:
    flavor: FockFlavor
    exchange_scale: float


def select_variant(method: str, functional=None) -> FockVariant:
    """Pick the Fock contribution for a method; decided once per builder."""
    cx = exact_exchange_fraction(method, functional)
    if functional is None:
        flavor = FockFlavor.COULOMB_EXCHANGE if cx > 0.0 else FockFlavor.COULOMB
    else:
        flavor = FockFlavor.COULOMB_SCALED_EXCHANGE_XC if cx > 0.0 else FockFlavor.COULOMB_XC
    return FockVariant(flavor, cx)


@dataclass
class FockBuild:
    fock: Tensor  # (nspin, nao, nao)
    coulomb: Tensor  # (nao, nao)
    exchange: Optional[Tensor]  # (nspin, nao, nao), unscaled
    vxc: Optional[Tensor]  # (nspin, nao, nao)
    exc: Tensor  # scalar


def _quartet_units(payload: Dict[str, Any]):
    return make_work_units(payload["costs"], payload["nunits"])


def eri_task(transport: Transport, payload: Dict[str, Any]) -> Tensor:
    """Parallel task: assemble the full (nao)^4 ERI tensor from significant quartets."""
    basis: BasisSet = payload["basis"]
    quartets = payload["quartets"]
    n = basis.nao
    out = np.zeros((n, n, n, n))
    pairs: dict = {}
    count = 0
    for unit in iterate_units(transport, _quartet_units(payload), payload["scheduling"]):
        for q in quartets[unit.start:unit.stop]:
            place_quartet(out, basis, q, quartet_block(basis, q, pairs))
            count += 1
    logger.debug("rank %d: %d quartets evaluated for the ERI tensor", transport.rank, count)
    return transport.all_reduce(torch.from_numpy(out).to(DTYPE))


def jk_task(transport: Transport, payload: Dict[str, Any]) -> Tuple[Tensor, Optional[Tensor]]:
    """Parallel task: Coulomb and (optionally) per-spin exchange matrices, integral-direct."""
    basis: BasisSet = payload["basis"]
    quartets = payload["quartets"]
    D = payload["density"].detach().cpu().numpy()
    want_k = payload["exchange"]
    n = basis.nao
    nspin = D.shape[0]
    Dt = D.sum(0)
    J = np.zeros((n, n))
    K = np.zeros((nspin, n, n))
    pairs: dict = {}
    sl = basis.shell_slice
    for unit in iterate_units(transport, _quartet_units(payload), payload["scheduling"]):
        for q in quartets[unit.start:unit.stop]:
            block = quartet_block(basis, q, pairs)
            for t, axes in quartet_permutations(q):
                blk = np.transpose(block, axes)
                p0, p1, p2, p3 = (sl(i) for i in t)
                J[p0, p1] += np.einsum("pqrs,rs->pq", blk, Dt[p2, p3])
                if want_k:
                    K[:, p0, p2] += np.einsum("pqrs,nqs->npr", blk, D[:, p1, p3])
    packed = np.concatenate([J.reshape(-1), K.reshape(-1)]) if want_k else J.reshape(-1)
    total = transport.all_reduce(torch.from_numpy(packed).to(DTYPE))
    J_t = total[: n * n].reshape(n, n)
    K_t = total[n * n:].reshape(nspin, n, n) if want_k else None
    return J_t, K_t


class FockBuilder:
    """Fock matrices for one geometry; holds integrals, never iteration state.

    Parameters
    ----------
    molecule, basis : Molecule, BasisSet
        Geometry and a basis centred on it.
    config : SCFConfig
        Method, ERI mode, screening threshold, grid and XC backend.
    pool : WorkerPool, optional
        Worker pool for the two-electron and grid work (in-process if omitted).
    """

    def __init__(
        self,
        molecule: Molecule,
        basis: BasisSet,
        config: SCFConfig | None = None,
        pool: WorkerPool | None = None,
        kernel: IntegralKernel | None = None,
    ) -> None:
        basis.check_consistent(molecule)
        self.config = config or SCFConfig()
        self.molecule = molecule
        self.basis = basis
        self.pool = pool if pool is not None else local_pool()
        self.kernel = kernel or IntegralKernel(self.config.screening_threshold)

        self.functional = get_functional(self.config.method, self.config.xc_backend)
        self.variant = select_variant(self.config.method, self.functional)
        self.xc: Optional[XCAdapter] = None
        if self.variant.flavor.uses_xc:
            self.xc = XCAdapter(self.functional, molecule, basis, self.config.grid, self.pool)

        self.overlap = self.kernel.overlap_matrix(basis)
        self.hcore = self.kernel.core_hamiltonian(basis, molecule)
        self.schwarz = self.kernel.schwarz(basis)
        self.quartets: List[Tuple[int, int, int, int]] = self.kernel.significant_quartets(basis, self.schwarz)
        self.costs = [estimate_quartet_cost(basis, q) for q in self.quartets]

        mode = self.config.eri_mode
        if mode == "auto":
            mode = "incore" if basis.nao <= self.config.incore_max_nao else "direct"
        self.mode = mode
        self._eri: Optional[Tensor] = None
        logger.debug(
            "FockBuilder: %s, mode=%s, nao=%d, %d significant quartets",
            self.variant.flavor.value,
            self.mode,
            basis.nao,
            len(self.quartets),
        )

    @property
    def flavor(self) -> FockFlavor:
        return self.variant.flavor

    @property
    def exchange_scale(self) -> float:
        return self.variant.exchange_scale

    def _quartet_payload(self, **extra: Any) -> Dict[str, Any]:
        payload = {
            "basis": self.basis,
            "quartets": self.quartets,
            "costs": self.costs,
            "nunits": self.pool.units_hint(),
            "scheduling": self.pool.scheduling,
        }
        payload.update(extra)
        return payload

    def eri(self) -> Tensor:
        """The (nao)^4 ERI tensor, assembled on first use."""
        if self._eri is None:
            self._eri = self.pool.run("fock.eri", self._quartet_payload())
        return self._eri

    def coulomb_exchange(self, density: Tensor) -> Tuple[Tensor, Optional[Tensor]]:
        want_k = self.flavor.uses_exchange
        if self.mode == "incore":
            eri = self.eri()
            J = torch.einsum("pqrs,rs->pq", eri, density.sum(0))
            K = torch.einsum("pqrs,nqs->npr", eri, density) if want_k else None
            return J, K
        return self.pool.run("fock.jk", self._quartet_payload(density=density.detach(), exchange=want_k))

    @staticmethod
    def exchange_factor(nspin: int) -> float:
        return 0.5 if nspin == 1 else 1.0

    def build(self, density: Tensor) -> FockBuild:
        if density.ndim == 2:
            density = density.unsqueeze(0)
        n = self.basis.nao
        if density.shape[1:] != (n, n) or density.shape[0] not in (1, 2):
            raise ValueError(f"density must have shape (nspin, {n}, {n}), got {tuple(density.shape)}")
        density = density.to(DTYPE)
        nspin = density.shape[0]
        J, K = self.coulomb_exchange(density)
        F = (self.hcore + J).unsqueeze(0).repeat(nspin, 1, 1)
        if K is not None:
            F = F - self.exchange_scale * self.exchange_factor(nspin) * K
        vxc = None
        exc = torch.zeros((), dtype=DTYPE)
        if self.xc is not None:
            exc, vxc = self.xc.evaluate(density)
            F = F + vxc
        return FockBuild(fock=F, coulomb=J, exchange=K, vxc=vxc, exc=exc)

    def energy(self, density: Tensor, build: FockBuild) -> Tensor:
        """Electronic energy (without nuclear repulsion and dispersion)."""
        if density.ndim == 2:
            density = density.unsqueeze(0)
        nspin = density.shape[0]
        Dt = density.sum(0)
        e = (Dt * self.hcore).sum() + 0.5 * (Dt * build.coulomb).sum()
        if build.exchange is not None:
            e = e - 0.5 * self.exchange_scale * self.exchange_factor(nspin) * (density * build.exchange).sum()
        return e + build.exc
