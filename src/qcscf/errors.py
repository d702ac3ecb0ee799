from __future__ import annotations

"""Error taxonomy of the engine.

Only numerically expected conditions are recovered locally (basis linear
dependency, transient SCF divergence via damping). Everything else propagates
to the caller carrying enough state to diagnose the failure or to restart from
the last checkpoint.
"""

from typing import Optional

import torch

__all__ = [
    "QCSCFError",
    "BasisLinearDependency",
    "SCFError",
    "SCFDivergence",
    "MaxCyclesExceeded",
    "SCFNotConverged",
    "JobCancelled",
    "OptimizerStepRejectionLimitExceeded",
    "OptimizerMaxStepsExceeded",
    "CheckpointError",
    "CheckpointVersionMismatch",
    "CheckpointCorrupt",
    "CheckpointFingerprintMismatch",
    "ParallelCommunicationFailure",
]


class QCSCFError(Exception):
    """Base class of all fatal engine errors."""


class BasisLinearDependency(UserWarning):
    """Near-singular overlap matrix; the offending combinations are projected out."""


class SCFError(QCSCFError):
    """SCF failure carrying the diagnostic state of the last completed cycle."""

    def __init__(
        self,
        message: str,
        *,
        energy: Optional[float] = None,
        delta_density: Optional[float] = None,
        cycle: int = 0,
    ) -> None:
        super().__init__(message)
        self.energy = energy
        self.delta_density = delta_density
        self.cycle = cycle


class SCFDivergence(SCFError):
    def __init__(
        self,
        message: str,
        *,
        energy: Optional[float] = None,
        delta_density: Optional[float] = None,
        cycle: int = 0,
        residual: Optional[float] = None,
    ) -> None:
        super().__init__(message, energy=energy, delta_density=delta_density, cycle=cycle)
        self.residual = residual


class MaxCyclesExceeded(SCFError):
    """Cycle cap reached. ``energy``/``density`` are the best (lowest-energy) iterate seen."""

    def __init__(
        self,
        message: str,
        *,
        energy: Optional[float] = None,
        delta_density: Optional[float] = None,
        cycle: int = 0,
        density: Optional[torch.Tensor] = None,
    ) -> None:
        super().__init__(message, energy=energy, delta_density=delta_density, cycle=cycle)
        self.density = density


class SCFNotConverged(SCFError):
    """A converged SCF state was required (e.g. for gradients) but not supplied."""


class JobCancelled(QCSCFError):
    def __init__(self, message: str, *, cycle: int = 0, state=None) -> None:
        super().__init__(message)
        self.cycle = cycle
        self.state = state


class OptimizerStepRejectionLimitExceeded(QCSCFError):
    def __init__(self, message: str, *, rejections: int, energy: Optional[float], trust_radius: float) -> None:
        super().__init__(message)
        self.rejections = rejections
        self.energy = energy
        self.trust_radius = trust_radius


class OptimizerMaxStepsExceeded(QCSCFError):
    def __init__(self, message: str, *, steps: int, energy: Optional[float], max_force: Optional[float]) -> None:
        super().__init__(message)
        self.steps = steps
        self.energy = energy
        self.max_force = max_force


class CheckpointError(QCSCFError):
    pass


class CheckpointVersionMismatch(CheckpointError):
    def __init__(self, message: str, *, found=None, expected=None) -> None:
        super().__init__(message)
        self.found = found
        self.expected = expected


class CheckpointCorrupt(CheckpointError):
    pass


class CheckpointFingerprintMismatch(CheckpointCorrupt):
    def __init__(self, message: str, *, found: str = "", expected: str = "") -> None:
        super().__init__(message)
        self.found = found
        self.expected = expected


class ParallelCommunicationFailure(QCSCFError):
    """Transport-level failure (broken pipe, lost worker, remote exception). Never retried."""

    def __init__(self, message: str, *, rank: Optional[int] = None) -> None:
        super().__init__(message)
        self.rank = rank
