from __future__ import annotations

"""Convergence and divergence bookkeeping for the SCF iteration.

:class:`ConvergenceMonitor` sees one (energy change, density change, DIIS
residual) triple per cycle and returns a :class:`Verdict`. It holds no
matrices, so the policy can be exercised with synthetic numbers.

Convergence requires |dE| < energy_tol and rms(dD) < density_tol on
``converge_cycles`` consecutive cycles. A density that did not move at all
(rms(dD) <= stationary_tol, with |dE| < energy_tol) is a fixed point and
converges immediately.

Divergence handling follows :class:`~qcscf.config.DivergencePolicy`: a run of
more than ``rise_cycles`` energy increases during which the residual did not
shrink starts a damped fallback; the fallback ends early once the residual drops to
``recover_ratio`` times its value on entry, and at the end of its window it
either hands back to DIIS (residual below the entry value) or reports
divergence.
"""

from enum import Enum
import logging

from ..config import SCFConfig

logger = logging.getLogger(__name__)

__all__ = ["Verdict", "ConvergenceMonitor"]


class Verdict(Enum):
    CONTINUE = "continue"
    CONVERGED = "converged"
    START_FALLBACK = "start_fallback"
    RESUME_DIIS = "resume_diis"
    DIVERGED = "diverged"
    MAX_CYCLES = "max_cycles"


class ConvergenceMonitor:
    def __init__(self, config: SCFConfig) -> None:
        self.config = config
        self.policy = config.divergence
        self.converged_streak = 0
        self.rise_streak = 0
        self.in_fallback = False
        self.fallback_cycles = 0
        self.entry_residual = float("inf")
        self._last_residual = float("inf")

    def observe(self, cycle: int, delta_energy: float, delta_density: float, residual: float) -> Verdict:
        cfg = self.config
        small_e = abs(delta_energy) < cfg.energy_tol
        if small_e and delta_density < cfg.density_tol:
            self.converged_streak += 1
        else:
            self.converged_streak = 0
        if small_e and delta_density <= cfg.stationary_tol:
            return Verdict.CONVERGED
        if self.converged_streak >= cfg.converge_cycles:
            return Verdict.CONVERGED

        verdict = self._divergence(delta_energy, residual)
        self._last_residual = residual
        if verdict is Verdict.DIVERGED:
            return verdict
        if cycle >= cfg.max_cycles:
            return Verdict.MAX_CYCLES
        return verdict

    def _divergence(self, delta_energy: float, residual: float) -> Verdict:
        policy = self.policy
        if not policy.enabled:
            return Verdict.CONTINUE
        if self.in_fallback:
            self.fallback_cycles += 1
            if residual <= policy.recover_ratio * self.entry_residual:
                return self._leave_fallback(residual)
            if self.fallback_cycles >= policy.fallback_cycles:
                if residual < self.entry_residual:
                    return self._leave_fallback(residual)
                logger.warning(
                    "damped fallback did not reduce the residual (%.3e -> %.3e) in %d cycles",
                    self.entry_residual,
                    residual,
                    self.fallback_cycles,
                )
                return Verdict.DIVERGED
            return Verdict.CONTINUE
        rising = delta_energy > policy.rise_tol
        shrinking = residual < self._last_residual
        if rising and not shrinking:
            self.rise_streak += 1
        else:
            self.rise_streak = 0
        if self.rise_streak > policy.rise_cycles:
            self.in_fallback = True
            self.fallback_cycles = 0
            self.entry_residual = residual
            self.rise_streak = 0
            return Verdict.START_FALLBACK
        return Verdict.CONTINUE

    def _leave_fallback(self, residual: float) -> Verdict:
        logger.info("residual recovered (%.3e -> %.3e); resuming DIIS", self.entry_residual, residual)
        self.in_fallback = False
        self.fallback_cycles = 0
        self.rise_streak = 0
        return Verdict.RESUME_DIIS
