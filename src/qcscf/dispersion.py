from __future__ import annotations

"""Empirical dispersion corrections as an additive (energy, gradient) term.

Any object with ``evaluate(molecule) -> (energy, gradient)`` can serve as the
dispersion adapter. Two are provided:

- :class:`NoDispersion`: zero energy and gradient.
- :class:`D2Dispersion`: Grimme's D2 pairwise correction

      E = -s6 sum_{A<B} C6_AB / R^6 f(R),   f(R) = 1 / (1 + exp(-d (R / R0_AB - 1)))

  with C6_AB = sqrt(C6_A C6_B) and R0_AB = R0_A + R0_B. Parameters are read
  from ``params/d2.toml``; the gradient follows from autograd.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Protocol, Tuple

import torch

try:  # Python 3.11+
    import tomllib as _toml
except ImportError:  # pragma: no cover - older interpreters
    import tomli as _toml  # type: ignore

from .device import DTYPE
from .molecule import Molecule
from .units import ANGSTROM_TO_BOHR, BOHR_TO_ANGSTROM

Tensor = torch.Tensor

__all__ = ["DispersionAdapter", "NoDispersion", "D2Parameters", "D2Dispersion", "load_d2_parameters", "get_dispersion"]

_D2_PATH = Path(__file__).parent / "params" / "d2.toml"

# J/mol per Hartree, nm per bohr
_HARTREE_J_PER_MOL = 2625499.639479
_BOHR_NM = BOHR_TO_ANGSTROM * 0.1


class DispersionAdapter(Protocol):
    def evaluate(self, molecule: Molecule) -> Tuple[Tensor, Tensor]:
        ...


class NoDispersion:
    def evaluate(self, molecule: Molecule) -> Tuple[Tensor, Tensor]:
        return torch.zeros((), dtype=DTYPE), torch.zeros_like(molecule.positions)


@dataclass(frozen=True)
class D2Parameters:
    c6: Dict[int, float]  # Hartree bohr^6
    r0: Dict[int, float]  # bohr
    s6: Dict[str, float]
    damping: float


@lru_cache(maxsize=4)
def load_d2_parameters(path: str | Path = _D2_PATH) -> D2Parameters:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"D2 parameter file not found: {p}")
    with p.open("rb") as fh:
        data = _toml.load(fh)
    conv = 1.0 / (_HARTREE_J_PER_MOL * _BOHR_NM ** 6)
    c6: Dict[int, float] = {}
    r0: Dict[int, float] = {}
    for key, entry in data["elements"].items():
        z = int(key)
        c6[z] = float(entry["c6"]) * conv
        r0[z] = float(entry["r0"]) * ANGSTROM_TO_BOHR
    s6 = {str(k).lower(): float(v) for k, v in data["s6"].items()}
    return D2Parameters(c6=c6, r0=r0, s6=s6, damping=float(data["damping"]))


def d2_energy(numbers: Tensor, positions: Tensor, params: D2Parameters, s6: float) -> Tensor:
    nat = positions.shape[0]
    if nat < 2:
        return positions.new_zeros(())
    zs = numbers.tolist()
    missing = sorted({int(z) for z in zs if int(z) not in params.c6})
    if missing:
        raise ValueError(f"D2 parameters missing for elements {missing}")
    c6 = torch.tensor([params.c6[int(z)] for z in zs], dtype=positions.dtype, device=positions.device)
    r0 = torch.tensor([params.r0[int(z)] for z in zs], dtype=positions.dtype, device=positions.device)
    i, j = torch.triu_indices(nat, nat, offset=1)
    r = torch.linalg.norm(positions[i] - positions[j], dim=-1)
    c6ij = torch.sqrt(c6[i] * c6[j])
    rr = r0[i] + r0[j]
    fdmp = 1.0 / (1.0 + torch.exp(-params.damping * (r / rr - 1.0)))
    return -s6 * (c6ij / r ** 6 * fdmp).sum()


class D2Dispersion:
    """Grimme D2 with a global ``s6`` scale."""

    def __init__(self, s6: float, params: D2Parameters | None = None) -> None:
        if s6 <= 0:
            raise ValueError(f"s6 must be positive, got {s6}")
        self.s6 = float(s6)
        self.params = params or load_d2_parameters()

    @classmethod
    def for_method(cls, method: str) -> "D2Dispersion":
        params = load_d2_parameters()
        key = method.lower()
        if key not in params.s6:
            raise ValueError(f"No D2 s6 parameter for method '{method}' (known: {', '.join(sorted(params.s6))})")
        return cls(params.s6[key], params)

    def energy(self, molecule: Molecule) -> Tensor:
        return d2_energy(molecule.numbers, molecule.positions, self.params, self.s6)

    def evaluate(self, molecule: Molecule) -> Tuple[Tensor, Tensor]:
        """Return (E_disp, dE_disp/dR) via autograd."""
        pos_req = molecule.positions.detach().clone().requires_grad_(True)
        e = d2_energy(molecule.numbers, pos_req, self.params, self.s6)
        if not e.requires_grad:
            return e.detach(), torch.zeros_like(molecule.positions)
        grad, = torch.autograd.grad(e, pos_req)
        return e.detach(), grad.detach()

    def __repr__(self) -> str:
        return f"D2Dispersion(s6={self.s6})"


def get_dispersion(kind: str | None, method: str) -> DispersionAdapter:
    if kind is None:
        return NoDispersion()
    if kind == "d2":
        return D2Dispersion.for_method(method)
    raise ValueError(f"Unknown dispersion correction '{kind}'")
