from __future__ import annotations

"""One-electron properties of a converged density."""

from typing import Optional

import torch

from .basis.shells import BasisSet
from .device import DTYPE
from .integrals.kernel import IntegralKernel
from .molecule import Molecule

Tensor = torch.Tensor

__all__ = ["dipole_moment"]


def dipole_moment(
    basis: BasisSet,
    molecule: Molecule,
    density: Tensor,
    origin: Optional[Tensor] = None,
    kernel: Optional[IntegralKernel] = None,
) -> Tensor:
    """Dipole moment (3,) in e*bohr.

    mu = sum_A Z_A (R_A - O) - sum_pq D_pq <p|r - O|q>, with D the total
    density (spin densities are summed). For a neutral molecule the result
    does not depend on the origin O (default: coordinate origin).
    """
    if origin is None:
        origin = torch.zeros(3, dtype=DTYPE)
    origin = torch.as_tensor(origin, dtype=DTYPE)
    kernel = kernel or IntegralKernel()
    M = kernel.dipole_matrices(basis, origin.tolist())
    Dt = density.sum(0) if density.ndim == 3 else density
    electronic = -torch.einsum("kpq,pq->k", M, Dt.to(DTYPE))
    z = molecule.numbers.to(DTYPE)
    nuclear = (z[:, None] * (molecule.positions - origin)).sum(0)
    return nuclear + electronic
