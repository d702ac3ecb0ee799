from __future__ import annotations

"""Trust-region quasi-Newton geometry optimisation.

States: ``AWAITING_ENERGY -> STEP_PROPOSED -> ACCEPTED | REJECTED -> ... -> OPTIMIZED``.

Every evaluation is a full SCF solve plus analytic gradient at one geometry
(:class:`EnergyGradientEngine`), seeded with the converged density of the last
accepted geometry. A proposed step is rejected when the energy rises by more
than ``reject_ratio`` times the predicted decrease (at least
``energy_noise``); the trust radius then shrinks and a new step is proposed
from the unchanged state. Accepted steps update the quasi-Newton model (a
dense BFGS Hessian, or the L-BFGS pair history with ``update = "lbfgs"``) and
grow or shrink the trust radius from the ratio of actual to predicted change.
For L-BFGS the trust radius caps the length of the two-loop direction, so a
rejection followed by a shorter step plays the role of a backtracking line
search.
"""

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Callable, Optional, Tuple

import torch

from ..basis.shells import BasisSet, build_basis
from ..checkpoint import Checkpoint, CheckpointStore, system_fingerprint
from ..config import OptimizerConfig, SCFConfig
from ..dispersion import DispersionAdapter, get_dispersion
from ..errors import CheckpointFingerprintMismatch, JobCancelled, OptimizerMaxStepsExceeded, OptimizerStepRejectionLimitExceeded
from ..grad.assembler import GradientAssembler, GradientResult
from ..molecule import Molecule
from ..parallel.pool import WorkerPool
from ..scf.driver import CancellationToken, SCFDriver
from ..scf.state import SCFResult, SCFState
from .state import OptimizerState, OptimizerStatus
from .steps import bfgs_update, lbfgs_direction, lbfgs_push, predicted_change, trust_region_step

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = ["Evaluation", "EnergyGradientEngine", "OptimizationResult", "GeometryOptimizer"]


@dataclass
class Evaluation:
    molecule: Molecule
    energy: float
    gradient: Tensor  # (N, 3)
    density: Tensor
    scf: Optional[SCFResult]
    terms: Optional[GradientResult]


class EnergyGradientEngine:
    """Converged energy and analytic gradient at a given geometry."""

    def __init__(
        self,
        basis: str | Path | BasisSet = "sto-3g",
        scf_config: SCFConfig | None = None,
        *,
        pool: WorkerPool | None = None,
        dispersion: DispersionAdapter | None = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.basis = basis
        self.scf_config = scf_config or SCFConfig()
        self.pool = pool
        self.dispersion = dispersion if dispersion is not None else get_dispersion(
            self.scf_config.dispersion, self.scf_config.method
        )
        self.cancel = cancel
        self._template: Optional[BasisSet] = basis if isinstance(basis, BasisSet) else None

    def basis_for(self, molecule: Molecule) -> BasisSet:
        if self._template is None:
            self._template = build_basis(molecule, self.basis)
            return self._template
        return self._template.with_molecule(molecule)

    def basis_identity(self, molecule: Molecule) -> str:
        return self.basis_for(molecule).identity()

    def evaluate(self, molecule: Molecule, guess_density: Optional[Tensor] = None) -> Evaluation:
        basis = self.basis_for(molecule)
        driver = SCFDriver(
            molecule,
            basis,
            self.scf_config,
            pool=self.pool,
            guess_density=guess_density,
            dispersion=self.dispersion,
            cancel=self.cancel,
        )
        result = driver.run()
        grad = GradientAssembler.for_driver(driver).compute(result)
        return Evaluation(molecule, result.energy, grad.gradient, result.density, result, grad)


@dataclass
class OptimizationResult:
    state: OptimizerState

    @property
    def molecule(self) -> Molecule:
        return self.state.molecule

    @property
    def energy(self) -> float:
        return float(self.state.energy)

    @property
    def converged(self) -> bool:
        return self.state.status is OptimizerStatus.OPTIMIZED


class GeometryOptimizer:
    """Drives :class:`EnergyGradientEngine` evaluations toward a stationary point.

    Parameters
    ----------
    engine : EnergyGradientEngine
    molecule : Molecule
        Starting geometry (ignored when ``state`` is given).
    config : OptimizerConfig, optional
    state : OptimizerState, optional
        Resume from an existing state, e.g. restored from a checkpoint.
    checkpoint : (CheckpointStore, path), optional
        Where to write a checkpoint after every accepted or rejected step.
    callback : callable, optional
        ``callback(state)`` after every step decision.
    cancel : CancellationToken, optional
        Checked between steps.
    scf_state : SCFState, optional
        Converged SCF state at the current geometry; written to every
        checkpoint next to the optimizer state.
    """

    def __init__(
        self,
        engine: EnergyGradientEngine,
        molecule: Optional[Molecule] = None,
        config: OptimizerConfig | None = None,
        *,
        state: Optional[OptimizerState] = None,
        checkpoint: Optional[tuple] = None,
        callback: Optional[Callable[[OptimizerState], None]] = None,
        cancel: Optional[CancellationToken] = None,
        scf_state: Optional[SCFState] = None,
    ) -> None:
        self.engine = engine
        self.config = config or OptimizerConfig()
        if state is None:
            if molecule is None:
                raise ValueError("either a starting molecule or an optimizer state is required")
            state = OptimizerState.initial(molecule, self.config.trust_radius, self.config.initial_hessian)
        self.state = state
        self.checkpoint = checkpoint
        self.callback = callback
        self.cancel = cancel
        self.scf_state = scf_state

    @classmethod
    def resume(
        cls,
        engine: EnergyGradientEngine,
        store: CheckpointStore,
        path: str | Path,
        config: OptimizerConfig | None = None,
        **kwargs,
    ) -> "GeometryOptimizer":
        """Continue an optimisation from the checkpoint at ``path``; checkpoints keep going there."""
        ckpt = store.load(path)
        if ckpt.optimizer is None:
            raise ValueError(f"checkpoint {path} holds no optimizer state")
        expected = engine.basis_identity(ckpt.molecule)
        if ckpt.basis_identity != expected:
            raise CheckpointFingerprintMismatch(
                f"checkpoint {path} was written for a different basis",
                found=system_fingerprint(ckpt.molecule, ckpt.basis_identity),
                expected=system_fingerprint(ckpt.molecule, expected),
            )
        return cls(
            engine, config=config, state=ckpt.optimizer, checkpoint=(store, path), scf_state=ckpt.scf, **kwargs
        )

    # ---- bookkeeping ----------------------------------------------------------

    def _save(self) -> None:
        st = self.state
        if self.callback is not None:
            self.callback(st)
        if self.checkpoint is None:
            return
        store, path = self.checkpoint
        ckpt = Checkpoint(
            molecule=st.molecule,
            basis_identity=self.engine.basis_identity(st.molecule),
            scf=self.scf_state,
            optimizer=st,
        )
        store.save(ckpt, path)

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.cancelled:
            raise JobCancelled(
                f"optimization cancelled after {self.state.step} steps", cycle=self.state.step, state=self.state
            )

    def _evaluate_current(self) -> None:
        st = self.state
        ev = self.engine.evaluate(st.molecule, st.density)
        st.energy = ev.energy
        st.gradient = ev.gradient
        st.density = ev.density
        st.evaluations += 1
        st.energies.append(ev.energy)
        self.scf_state = ev.scf.state if ev.scf is not None else None

    def _propose(self, g: Tensor) -> Tuple[Tensor, bool, float]:
        """Step, whether it was cut at the trust radius, and its predicted energy change."""
        st = self.state
        cfg = self.config
        if cfg.update == "lbfgs":
            p = lbfgs_direction(g, st.s_history, st.y_history, cfg.initial_hessian)
            norm = float(torch.linalg.norm(p))
            t = min(1.0, st.trust_radius / norm) if norm > 0.0 else 1.0
            # quadratic model along p, whose minimum lies at t = 1
            return t * p, t < 1.0, float(g @ p) * (t - 0.5 * t * t)
        s, on_boundary = trust_region_step(g, st.hessian, st.trust_radius)
        return s, on_boundary, predicted_change(g, st.hessian, s)

    # ---- main loop --------------------------------------------------------------

    def run(self) -> OptimizationResult:
        cfg = self.config
        st = self.state
        if st.status in (OptimizerStatus.OPTIMIZED, OptimizerStatus.FAILED):
            return OptimizationResult(st)
        if st.energy is None or st.gradient is None:
            self._check_cancel()
            self._evaluate_current()
            logger.info("opt start: E = %.12f  max|g| = %.3e", st.energy, st.max_force)
        while True:
            self._check_cancel()
            g = st.gradient.reshape(-1)
            s, on_boundary, pred = self._propose(g)
            step_norm = float(torch.linalg.norm(s))
            st.status = OptimizerStatus.STEP_PROPOSED
            if st.max_force < cfg.max_force and step_norm < cfg.max_step:
                st.status = OptimizerStatus.OPTIMIZED
                st.last_step_norm = step_norm
                logger.info(
                    "optimized after %d steps: E = %.12f  max|g| = %.3e  |s| = %.3e",
                    st.step,
                    st.energy,
                    st.max_force,
                    step_norm,
                )
                self._save()
                return OptimizationResult(st)
            if st.step >= cfg.max_steps:
                st.status = OptimizerStatus.FAILED
                raise OptimizerMaxStepsExceeded(
                    f"geometry not converged in {st.step} steps (max|g| = {st.max_force:.3e})",
                    steps=st.step,
                    energy=st.energy,
                    max_force=st.max_force,
                )
            new_mol = st.molecule.with_positions(st.molecule.positions + s.reshape(-1, 3))
            ev = self.engine.evaluate(new_mol, st.density)
            st.evaluations += 1
            actual = ev.energy - st.energy
            tolerance = max(cfg.reject_ratio * abs(pred), cfg.energy_noise)
            if actual > tolerance:
                self._reject(actual, pred, step_norm)
                continue
            self._accept(ev, s, g, actual, pred, step_norm, on_boundary)

    def _reject(self, actual: float, pred: float, step_norm: float) -> None:
        cfg = self.config
        st = self.state
        st.status = OptimizerStatus.REJECTED
        st.rejections += 1
        st.trust_radius = max(cfg.trust_min, min(st.trust_radius, step_norm) * cfg.shrink)
        logger.info(
            "opt step rejected (%d): dE = %+.3e, predicted %+.3e; trust radius -> %.3e",
            st.rejections,
            actual,
            pred,
            st.trust_radius,
        )
        if st.rejections >= cfg.max_rejections:
            st.status = OptimizerStatus.FAILED
            self._save()
            raise OptimizerStepRejectionLimitExceeded(
                f"{st.rejections} consecutive steps rejected",
                rejections=st.rejections,
                energy=st.energy,
                trust_radius=st.trust_radius,
            )
        self._save()

    def _accept(self, ev: Evaluation, s: Tensor, g: Tensor, actual: float, pred: float, step_norm: float, on_boundary: bool) -> None:
        cfg = self.config
        st = self.state
        y = ev.gradient.reshape(-1) - g
        if cfg.update == "lbfgs":
            lbfgs_push(st.s_history, st.y_history, s, y, cfg.memory)
        else:
            st.hessian = bfgs_update(st.hessian, s, y)
        ratio = actual / pred if pred != 0.0 else 1.0
        if ratio > cfg.eta_grow and on_boundary:
            st.trust_radius = min(cfg.trust_max, st.trust_radius * cfg.grow)
        elif ratio < cfg.eta_shrink:
            st.trust_radius = max(cfg.trust_min, st.trust_radius * cfg.shrink)
        st.molecule = ev.molecule
        st.energy = ev.energy
        st.gradient = ev.gradient
        st.density = ev.density
        st.energies.append(ev.energy)
        st.rejections = 0
        self.scf_state = ev.scf.state if ev.scf is not None else None
        st.step += 1
        st.last_step_norm = step_norm
        st.status = OptimizerStatus.ACCEPTED
        logger.info(
            "opt %3d  E = %.12f  dE = %+.3e (pred %+.3e)  max|g| = %.3e  |s| = %.3e  trust = %.3e",
            st.step,
            st.energy,
            actual,
            pred,
            st.max_force,
            step_norm,
            st.trust_radius,
        )
        self._save()
