from __future__ import annotations

"""Pulay DIIS over a fixed-size arena of (Fock, error) slots.

Slots are reused round-robin: the ``k``-th push lands in slot ``k % window``,
overwriting the oldest entry once the window is full. :meth:`ordered`
returns the live slot indices from oldest to newest, which fixes the row
order of the B matrix.
"""

import logging
from typing import Dict, List, Optional, Tuple

import torch

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = ["DIISHistory"]


class DIISHistory:
    def __init__(self, window: int = 8, min_vectors: int = 2) -> None:
        if window < 2:
            raise ValueError(f"DIIS window must be >= 2, got {window}")
        if not 1 <= min_vectors <= window:
            raise ValueError(f"min_vectors must be in [1, {window}], got {min_vectors}")
        self.window = int(window)
        self.min_vectors = int(min_vectors)
        self._fock: List[Optional[Tensor]] = [None] * self.window
        self._error: List[Optional[Tensor]] = [None] * self.window
        self._pushes = 0

    def __len__(self) -> int:
        return min(self._pushes, self.window)

    @property
    def pushes(self) -> int:
        return self._pushes

    def ordered(self) -> List[int]:
        n = len(self)
        first = self._pushes - n
        return [(first + k) % self.window for k in range(n)]

    def push(self, fock: Tensor, error: Tensor) -> int:
        slot = self._pushes % self.window
        self._fock[slot] = fock.detach().clone()
        self._error[slot] = error.detach().clone()
        self._pushes += 1
        return slot

    def clear(self) -> None:
        self._fock = [None] * self.window
        self._error = [None] * self.window
        self._pushes = 0

    def latest(self) -> Tuple[Tensor, Tensor]:
        if not self._pushes:
            raise IndexError("DIIS history is empty")
        slot = (self._pushes - 1) % self.window
        return self._fock[slot], self._error[slot]

    def coefficients(self) -> Optional[Tensor]:
        """Solve the constrained least-squares system; None when it is unusable."""
        slots = self.ordered()
        m = len(slots)
        if m < self.min_vectors:
            return None
        errs = torch.stack([self._error[i].reshape(-1) for i in slots])
        B = torch.empty((m + 1, m + 1), dtype=errs.dtype)
        B[:m, :m] = errs @ errs.T
        B[m, :m] = -1.0
        B[:m, m] = -1.0
        B[m, m] = 0.0
        scale = B[:m, :m].diagonal().abs().max()
        if not torch.isfinite(scale) or scale <= 0.0:
            return None
        B[:m, :m] /= scale
        rhs = torch.zeros(m + 1, dtype=errs.dtype)
        rhs[m] = -1.0
        try:
            sol = torch.linalg.solve(B, rhs)
        except torch.linalg.LinAlgError:
            logger.debug("DIIS: singular B matrix with %d vectors", m)
            return None
        c = sol[:m]
        if not torch.all(torch.isfinite(c)):
            return None
        return c

    def extrapolate(self) -> Tensor:
        """Extrapolated Fock matrix, or the newest one if DIIS is not (yet) usable."""
        c = self.coefficients()
        if c is None:
            return self.latest()[0]
        logger.debug("DIIS coefficients: %s", [round(float(x), 6) for x in c])
        slots = self.ordered()
        out = torch.zeros_like(self._fock[slots[0]])
        for ci, i in zip(c, slots):
            out = out + ci * self._fock[i]
        return out

    def state_dict(self) -> Dict[str, object]:
        slots = self.ordered()
        return {
            "window": self.window,
            "min_vectors": self.min_vectors,
            "fock": [self._fock[i] for i in slots],
            "error": [self._error[i] for i in slots],
        }

    @classmethod
    def from_state_dict(cls, data: Dict[str, object]) -> "DIISHistory":
        h = cls(int(data["window"]), int(data["min_vectors"]))
        for f, e in zip(data["fock"], data["error"]):
            h.push(f, e)
        return h
