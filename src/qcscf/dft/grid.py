from __future__ import annotations

"""Molecular integration grid (Becke 1988).

Each atom carries a radial x angular product grid:

- radial: Gauss–Chebyshev (second kind) nodes x_i = cos(i pi / (n+1)) mapped
  with Becke's transformation r = R (1 + x) / (1 - x), R = half the
  Bragg–Slater radius (full radius for hydrogen);
- angular: Gauss–Legendre in cos(theta) times a uniform trapezoid in phi,
  exact for spherical harmonics up to degree 2 n_theta - 1.

Atomic grids are combined with Becke's fuzzy-cell partition (three iterations
of the smoothing polynomial). Points with negligible weight are dropped.
"""

from dataclasses import dataclass
import logging
from math import pi
from typing import List

import numpy as np
import torch

from ..config import GridConfig
from ..device import DTYPE
from ..molecule import Molecule
from ..units import ANGSTROM_TO_BOHR

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = ["BRAGG_SLATER_RADII", "MolecularGrid", "radial_grid", "angular_grid", "becke_weights", "build_grid"]

# Angstrom, index = Z
BRAGG_SLATER_RADII = [
    0.0,
    0.35, 0.35,
    1.45, 1.05, 0.85, 0.70, 0.65, 0.60, 0.50, 0.45,
    1.80, 1.50, 1.25, 1.10, 1.00, 1.00, 1.00, 0.95,
]


@dataclass(frozen=True, eq=False)
class MolecularGrid:
    points: Tensor  # (N, 3) bohr
    weights: Tensor  # (N,)
    batch_size: int

    @property
    def npoints(self) -> int:
        return int(self.points.shape[0])

    def batches(self) -> List[slice]:
        n = self.npoints
        return [slice(i, min(i + self.batch_size, n)) for i in range(0, n, self.batch_size)]


def radial_grid(n: int, rm: float):
    i = np.arange(1, n + 1, dtype=np.float64)
    theta = i * pi / (n + 1)
    x = np.cos(theta)
    w_cheb = pi / (n + 1) * np.sin(theta) ** 2
    r = rm * (1.0 + x) / (1.0 - x)
    drdx = 2.0 * rm / (1.0 - x) ** 2
    w = w_cheb / np.sqrt(1.0 - x * x) * r * r * drdx
    return r, w


def angular_grid(n_theta: int):
    ct, wt = np.polynomial.legendre.leggauss(n_theta)
    n_phi = 2 * n_theta
    phi = 2.0 * pi * np.arange(n_phi) / n_phi
    st = np.sqrt(1.0 - ct * ct)
    xyz = np.stack(
        [
            (st[:, None] * np.cos(phi)[None, :]).reshape(-1),
            (st[:, None] * np.sin(phi)[None, :]).reshape(-1),
            np.repeat(ct, n_phi),
        ],
        axis=1,
    )
    w = np.repeat(wt, n_phi) * (2.0 * pi / n_phi)
    return xyz, w


def becke_weights(points: np.ndarray, centers: np.ndarray, owner: np.ndarray, iterations: int = 3) -> np.ndarray:
    """Becke partition weight of each point with respect to its owner atom."""
    nat = centers.shape[0]
    if nat == 1:
        return np.ones(points.shape[0])
    dist = np.linalg.norm(points[:, None, :] - centers[None, :, :], axis=-1)  # (N, nat)
    rab = np.linalg.norm(centers[:, None, :] - centers[None, :, :], axis=-1)
    cell = np.ones((points.shape[0], nat))
    for a in range(nat):
        for b in range(nat):
            if a == b:
                continue
            mu = (dist[:, a] - dist[:, b]) / rab[a, b]
            for _ in range(iterations):
                mu = 1.5 * mu - 0.5 * mu ** 3
            cell[:, a] *= 0.5 * (1.0 - mu)
    total = cell.sum(axis=1)
    return cell[np.arange(points.shape[0]), owner] / total


def build_grid(molecule: Molecule, config: GridConfig | None = None) -> MolecularGrid:
    config = config or GridConfig()
    centers = molecule.positions.detach().cpu().numpy()
    ang_xyz, ang_w = angular_grid(config.angular_order)
    pts, wts, own = [], [], []
    for ia, z in enumerate(molecule.numbers.tolist()):
        rm = BRAGG_SLATER_RADII[int(z)] * ANGSTROM_TO_BOHR
        if int(z) != 1:
            rm *= 0.5
        r, wr = radial_grid(config.radial_points, rm)
        p = (r[:, None, None] * ang_xyz[None, :, :]).reshape(-1, 3) + centers[ia]
        w = (wr[:, None] * ang_w[None, :]).reshape(-1)
        pts.append(p)
        wts.append(w)
        own.append(np.full(w.shape[0], ia, dtype=np.int64))
    points = np.concatenate(pts)
    weights = np.concatenate(wts)
    owner = np.concatenate(own)
    weights = weights * becke_weights(points, centers, owner, config.becke_iterations)
    keep = weights > config.weight_cutoff
    logger.debug("grid: %d points (%d kept)", weights.shape[0], int(keep.sum()))
    return MolecularGrid(
        points=torch.from_numpy(points[keep]).to(DTYPE),
        weights=torch.from_numpy(weights[keep]).to(DTYPE),
        batch_size=config.batch_size,
    )
