from __future__ import annotations

"""One-call entry points: single point, gradient, harmonic frequencies or
geometry optimisation.

``run_job`` owns the worker pool for the duration of the job and, for
optimisations, the checkpoint file: an existing checkpoint is resumed when
``resume=True``, otherwise it is overwritten after every step. Single
points restart from the SCF state (density, cycle count, DIIS vectors)
stored in a matching checkpoint. Frequency jobs add a finite-difference
Hessian on top of the single point; the displaced geometries are not
checkpointed.
"""

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Optional

from .basis.shells import BasisSet
from .checkpoint import Checkpoint, CheckpointStore, checkpoint_fingerprint
from .config import JobConfig
from .grad.assembler import GradientAssembler, GradientResult
from .molecule import Molecule
from .opt.optimizer import EnergyGradientEngine, Evaluation, GeometryOptimizer, OptimizationResult
from .parallel.pool import WorkerPool
from .scf.driver import CancellationToken, SCFDriver
from .scf.state import SCFResult
from .vibrations import VibrationalAnalysis, compute_frequencies

logger = logging.getLogger(__name__)

__all__ = ["JobResult", "run_job"]

_TASKS = ("energy", "gradient", "frequencies", "optimize")


@dataclass
class JobResult:
    task: str
    molecule: Molecule
    energy: float
    scf: Optional[SCFResult] = None
    gradient: Optional[GradientResult] = None
    optimization: Optional[OptimizationResult] = None
    vibrations: Optional[VibrationalAnalysis] = None


def run_job(
    molecule: Molecule,
    config: JobConfig | None = None,
    task: str = "energy",
    *,
    basis: str | Path | BasisSet = "sto-3g",
    checkpoint: str | Path | None = None,
    resume: bool = False,
    cancel: Optional[CancellationToken] = None,
) -> JobResult:
    if task not in _TASKS:
        raise ValueError(f"Unknown task '{task}' (expected one of {', '.join(_TASKS)})")
    config = config or JobConfig()
    with WorkerPool(config.parallel) as pool:
        engine = EnergyGradientEngine(basis, config.scf, pool=pool, cancel=cancel)
        if task == "optimize":
            return _optimize(molecule, config, engine, checkpoint, resume, cancel)

        store = CheckpointStore() if checkpoint is not None else None
        restart = None
        if resume:
            if store is None:
                raise ValueError("resume=True requires a checkpoint path")
            prior = store.load(
                checkpoint,
                expect_fingerprint=checkpoint_fingerprint(molecule, engine.basis_identity(molecule)),
            )
            if prior.scf is None:
                raise ValueError(f"checkpoint {checkpoint} holds no SCF state")
            restart = prior.scf
            logger.info("restarting SCF from %s (cycle %d)", checkpoint, prior.scf.cycle)

        def save_scf(state):
            store.save(
                Checkpoint(molecule=molecule, basis_identity=engine.basis_identity(molecule), scf=state),
                checkpoint,
            )

        driver = SCFDriver(
            molecule,
            engine.basis_for(molecule),
            config.scf,
            pool=pool,
            restart=restart,
            dispersion=engine.dispersion,
            callback=save_scf if store is not None else None,
            cancel=cancel,
        )
        result = driver.run()
        if store is not None:
            save_scf(result.state)
        out = JobResult(task=task, molecule=molecule, energy=result.energy, scf=result)
        if task in ("gradient", "frequencies"):
            out.gradient = GradientAssembler.for_driver(driver).compute(result)
        if task == "frequencies":
            ref = Evaluation(molecule, result.energy, out.gradient.gradient, result.density, result, out.gradient)
            out.vibrations = compute_frequencies(engine, molecule, config.vibrations.step, reference=ref)
        return out


def _optimize(molecule, config, engine, checkpoint, resume, cancel) -> JobResult:
    store = CheckpointStore()
    target = Path(checkpoint) if checkpoint is not None else None
    if resume:
        if target is None:
            raise ValueError("resume=True requires a checkpoint path")
        opt = GeometryOptimizer.resume(engine, store, target, config.optimizer, cancel=cancel)
    else:
        opt = GeometryOptimizer(
            engine,
            molecule,
            config.optimizer,
            checkpoint=(store, target) if target is not None else None,
            cancel=cancel,
        )
    result = opt.run()
    return JobResult(task="optimize", molecule=result.molecule, energy=result.energy, optimization=result)
