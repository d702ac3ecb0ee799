from __future__ import annotations

"""Orthogonalisation of the AO basis and a guarded symmetric eigensolver.

The transformation X (nao, nmo) satisfies X^T S X = 1. It is chosen once per
geometry from the spectrum of S:

- symmetric (Löwdin) X = S^{-1/2} when the smallest eigenvalue of S is at or
  above ``threshold``;
- canonical X = U_k s_k^{-1/2} otherwise, keeping only eigenvectors with
  s >= threshold. The projected combinations never enter the orbital space
  and ``nmo < nao``; :class:`~qcscf.errors.BasisLinearDependency` is issued.
"""

from dataclasses import dataclass
import logging
from typing import Tuple
import warnings

import torch

from ..errors import BasisLinearDependency

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = ["Orthogonalizer", "build_orthogonalizer", "robust_eigh"]

_RIDGES = (1e-10, 1e-8, 1e-6, 1e-4)


def robust_eigh(M: Tensor) -> Tuple[Tensor, Tensor]:
    """eigh of the symmetrised matrix; retries with a diagonal ridge if LAPACK fails.

    A ridge r shifts every eigenvalue by r and leaves the eigenvectors
    unchanged, so the shift is removed from the returned eigenvalues.
    """
    A = 0.5 * (M + M.transpose(-1, -2))
    try:
        return torch.linalg.eigh(A)
    except torch.linalg.LinAlgError:
        eye = torch.eye(A.shape[-1], dtype=A.dtype, device=A.device)
        for i, r in enumerate(_RIDGES):
            try:
                w, V = torch.linalg.eigh(A + r * eye)
                logger.warning("eigh needed a diagonal ridge of %.0e", r)
                return w - r, V
            except torch.linalg.LinAlgError:
                if i == len(_RIDGES) - 1:
                    raise


@dataclass(frozen=True, eq=False)
class Orthogonalizer:
    X: Tensor  # (nao, nmo)
    kind: str  # 'symmetric' | 'canonical'
    overlap_eigenvalues: Tensor  # ascending, all nao of them

    @property
    def nao(self) -> int:
        return int(self.X.shape[0])

    @property
    def nmo(self) -> int:
        return int(self.X.shape[1])

    @property
    def dropped(self) -> int:
        return self.nao - self.nmo

    def to_orthogonal(self, M: Tensor) -> Tensor:
        """X^T M X for a single matrix or a (nspin, nao, nao) stack."""
        return self.X.transpose(-1, -2) @ M @ self.X

    def diagonalize(self, F: Tensor) -> Tuple[Tensor, Tensor]:
        """Solve F C = S C e; returns (e (..., nmo), C (..., nao, nmo))."""
        e, Cp = robust_eigh(self.to_orthogonal(F))
        return e, self.X @ Cp


def build_orthogonalizer(S: Tensor, threshold: float = 1e-7) -> Orthogonalizer:
    s, U = robust_eigh(S)
    smin = float(s[0])
    if smin <= 0.0 and threshold <= 0.0:
        raise ValueError(f"overlap matrix is not positive definite (min eigenvalue {smin:.3e})")
    if smin >= threshold:
        X = (U * s.rsqrt()) @ U.T
        return Orthogonalizer(X, "symmetric", s)
    keep = s >= threshold
    nkeep = int(keep.sum())
    if nkeep == 0:
        raise ValueError(f"all overlap eigenvalues fall below the linear-dependency threshold {threshold:.1e}")
    X = U[:, keep] * s[keep].rsqrt()
    msg = (
        f"basis is nearly linearly dependent (min overlap eigenvalue {smin:.3e} < {threshold:.1e}); "
        f"projecting out {S.shape[0] - nkeep} of {S.shape[0]} functions"
    )
    logger.warning(msg)
    warnings.warn(BasisLinearDependency(msg), stacklevel=2)
    return Orthogonalizer(X, "canonical", s)
