from __future__ import annotations

"""Self-consistent field driver.

States: ``INITIALIZED -> ITERATING -> CONVERGED | DIVERGED | MAX_CYCLES_EXCEEDED``.

Construction fixes everything that is structural for the geometry: integrals
(through :class:`~qcscf.fock.FockBuilder`), the orthogonaliser (including the
one-time linear-dependency projection), the reference and occupations. The
initial density D_0 and its Fock matrix F_0 are built before the first cycle.

One cycle k -> k+1:
 1. error e_k = X^T (F_k D_k S - S D_k F_k) X, residual = rms(e_k)
 2. DIIS: push (F_k, e_k) and extrapolate (skipped in the damped fallback)
 3. diagonalize the extrapolated Fock matrix, aufbau -> D_{k+1}
    (fallback: D_{k+1} <- (1 - a) D_{k+1} + a D_k)
 4. F_{k+1} = F[D_{k+1}], E_{k+1} = E[D_{k+1}]
 5. dE, rms(dD) and the verdict of :class:`~qcscf.scf.monitor.ConvergenceMonitor`

On convergence the final Fock matrix is diagonalized once more (no
extrapolation) so that the reported density, orbitals and energy-weighted
density belong to one idempotent solution.
"""

import logging
import threading
from typing import Callable, Dict, Optional

import torch

from ..basis.shells import BasisSet, build_basis
from ..config import SCFConfig
from ..dispersion import DispersionAdapter, get_dispersion
from ..errors import JobCancelled, MaxCyclesExceeded, SCFDivergence
from ..fock import FockBuild, FockBuilder
from ..molecule import Molecule
from ..parallel.pool import WorkerPool
from ..properties import dipole_moment
from .diis import DIISHistory
from .guess import adapt_density, aufbau_occupations, core_guess, resolve_reference
from .monitor import ConvergenceMonitor, Verdict
from .orthogonalize import Orthogonalizer, build_orthogonalizer
from .state import MOCoefficients, SCFResult, SCFState, SCFStatus, density_from_orbitals

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

__all__ = ["CancellationToken", "SCFDriver", "run_scf"]


class CancellationToken:
    """Thread-safe flag checked by the drivers between cycles and steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _rms(x: Tensor) -> float:
    return float(torch.sqrt((x * x).mean()))


class SCFDriver:
    """Owns the SCF iteration for one geometry.

    Parameters
    ----------
    molecule : Molecule
    basis : BasisSet | str
        A basis centred on ``molecule`` or the name/path of a basis table.
    config : SCFConfig, optional
    pool : WorkerPool, optional
        Shared with the Fock builder; the driver never closes it.
    guess_density : Tensor, optional
        Initial density (used when ``config.guess == "density"`` or whenever
        supplied), e.g. the converged density of the previous geometry.
    dispersion : DispersionAdapter, optional
        Defaults to the one named by ``config.dispersion``.
    callback : callable, optional
        ``callback(state)`` after every completed cycle.
    cancel : CancellationToken, optional
    restart : SCFState, optional
        State restored from a checkpoint of the same molecule and basis. Its
        density is the guess; cycle count, energy history and DIIS vectors
        carry over.
    """

    def __init__(
        self,
        molecule: Molecule,
        basis: BasisSet | str = "sto-3g",
        config: SCFConfig | None = None,
        *,
        pool: WorkerPool | None = None,
        guess_density: Optional[Tensor] = None,
        dispersion: DispersionAdapter | None = None,
        callback: Optional[Callable[[SCFState], None]] = None,
        cancel: Optional[CancellationToken] = None,
        restart: Optional[SCFState] = None,
    ) -> None:
        self.config = config or SCFConfig()
        self.molecule = molecule
        if not isinstance(basis, BasisSet):
            basis = build_basis(molecule, basis)
        self.basis = basis
        self.builder = FockBuilder(molecule, basis, self.config, pool)
        self.dispersion = dispersion if dispersion is not None else get_dispersion(self.config.dispersion, self.config.method)
        self.callback = callback
        self.cancel = cancel

        self.reference = resolve_reference(molecule, self.config.reference)
        self.orth: Orthogonalizer = build_orthogonalizer(self.builder.overlap, self.config.lindep_threshold)
        self.occupations = aufbau_occupations(molecule, self.orth.nmo, self.reference)
        self.nspin = int(self.occupations.shape[0])

        self.e_nuc = molecule.nuclear_repulsion()
        e_disp, _ = self.dispersion.evaluate(molecule)
        self.e_disp = float(e_disp)

        if guess_density is None and restart is not None:
            guess_density = restart.density
        if guess_density is None and self.config.guess == "density":
            raise ValueError("guess='density' requires guess_density")
        if guess_density is not None:
            D0 = adapt_density(guess_density, self.nspin, basis.nao)
        else:
            D0 = core_guess(self.builder.hcore, self.orth, self.occupations)

        self.state = SCFState(diis=DIISHistory(self.config.diis_window, self.config.diis_min_vectors))
        self._set_density(D0)
        if restart is not None:
            self._restore(restart)
        self.state.record_best()
        logger.info(
            "SCF init: %s/%s, %s, nao=%d, nmo=%d, E0 = %.10f",
            self.config.method,
            basis.name,
            self.reference,
            basis.nao,
            self.orth.nmo,
            self.state.energy,
        )

    def _restore(self, restart: SCFState) -> None:
        st = self.state
        st.cycle = int(restart.cycle)
        st.history = list(restart.history)
        old = restart.diis
        if old is None or not len(old):
            return
        fock, _ = old.latest()
        if fock.shape != st.fock.shape:
            logger.info("SCF restart: DIIS vectors of shape %s dropped", tuple(fock.shape))
            return
        data = old.state_dict()
        data["window"] = max(self.config.diis_window, len(old))
        data["min_vectors"] = self.config.diis_min_vectors
        st.diis = DIISHistory.from_state_dict(data)
        logger.info("SCF restart at cycle %d with %d DIIS vectors", st.cycle, len(st.diis))

    # ---- energy ---------------------------------------------------------------

    def _total_energy(self, density: Tensor, build: FockBuild) -> float:
        return float(self.builder.energy(density, build)) + self.e_nuc + self.e_disp

    def _set_density(self, density: Tensor) -> FockBuild:
        build = self.builder.build(density)
        self.state.density = density
        self.state.fock = build.fock
        self.state.energy = self._total_energy(density, build)
        self._last_build = build
        return build

    def energy_components(self, density: Tensor, build: FockBuild) -> Dict[str, float]:
        Dt = density.sum(0)
        b = self.builder
        one = float((Dt * b.hcore).sum())
        coul = float(0.5 * (Dt * build.coulomb).sum())
        exch = 0.0
        if build.exchange is not None:
            exch = float(-0.5 * b.exchange_scale * b.exchange_factor(self.nspin) * (density * build.exchange).sum())
        xc = float(build.exc)
        electronic = one + coul + exch + xc
        return {
            "one_electron": one,
            "coulomb": coul,
            "exchange": exch,
            "xc": xc,
            "electronic": electronic,
            "nuclear": self.e_nuc,
            "dispersion": self.e_disp,
            "total": electronic + self.e_nuc + self.e_disp,
        }

    # ---- iteration --------------------------------------------------------------

    def error_matrix(self, fock: Tensor, density: Tensor) -> Tensor:
        S = self.builder.overlap
        FDS = fock @ density @ S
        return self.orth.to_orthogonal(FDS - FDS.transpose(-1, -2))

    def _new_density(self, fock: Tensor) -> Tensor:
        _, C = self.orth.diagonalize(fock)
        return density_from_orbitals(C, self.occupations)

    def step(self, monitor: ConvergenceMonitor) -> Verdict:
        """One SCF cycle; returns the monitor's verdict."""
        st = self.state
        D_old, F_old, E_old = st.density, st.fock, st.energy
        err = self.error_matrix(F_old, D_old)
        st.residual = _rms(err)
        use_diis = self.config.diis and not st.fallback
        F_ext = F_old
        if use_diis:
            st.diis.push(F_old, err)
            F_ext = st.diis.extrapolate()
        D_new = self._new_density(F_ext)
        if st.fallback:
            a = self.config.divergence.damping
            D_new = (1.0 - a) * D_new + a * D_old
        self._set_density(D_new)
        st.cycle += 1
        st.delta_energy = st.energy - E_old
        st.delta_density = _rms(D_new - D_old)
        st.history.append(st.energy)
        st.record_best()
        logger.info(
            "SCF %3d  E = %.12f  dE = %+.3e  rms(dD) = %.3e  residual = %.3e%s",
            st.cycle,
            st.energy,
            st.delta_energy,
            st.delta_density,
            st.residual,
            "  [damped]" if st.fallback else "",
        )
        if self.callback is not None:
            self.callback(st)
        return monitor.observe(st.cycle, st.delta_energy, st.delta_density, st.residual)

    def run(self) -> SCFResult:
        st = self.state
        monitor = ConvergenceMonitor(self.config)
        st.status = SCFStatus.ITERATING
        while True:
            if self.cancel is not None and self.cancel.cancelled:
                raise JobCancelled(f"SCF cancelled after cycle {st.cycle}", cycle=st.cycle, state=st)
            verdict = self.step(monitor)
            if verdict is Verdict.CONVERGED:
                return self._finalize()
            if verdict is Verdict.START_FALLBACK:
                logger.warning(
                    "SCF energy rising for more than %d cycles without residual decrease; switching to damped updates",
                    self.config.divergence.rise_cycles,
                )
                st.fallback = True
                st.diis.clear()
            elif verdict is Verdict.RESUME_DIIS:
                st.fallback = False
            elif verdict is Verdict.DIVERGED:
                st.status = SCFStatus.DIVERGED
                raise SCFDivergence(
                    f"SCF diverged at cycle {st.cycle} (residual {st.residual:.3e})",
                    energy=st.energy,
                    delta_density=st.delta_density,
                    cycle=st.cycle,
                    residual=st.residual,
                )
            elif verdict is Verdict.MAX_CYCLES:
                st.status = SCFStatus.MAX_CYCLES_EXCEEDED
                raise MaxCyclesExceeded(
                    f"SCF not converged in {st.cycle} cycles (last dE = {st.delta_energy:.3e}, "
                    f"rms(dD) = {st.delta_density:.3e})",
                    energy=st.best_energy,
                    delta_density=st.delta_density,
                    cycle=st.cycle,
                    density=st.best_density,
                )

    def _finalize(self) -> SCFResult:
        st = self.state
        e, C = self.orth.diagonalize(st.fock)
        mo = MOCoefficients(coefficients=C, energies=e, occupations=self.occupations)
        D = mo.density()
        build = self._set_density(D)
        st.mo = mo
        st.status = SCFStatus.CONVERGED
        st.record_best()
        components = self.energy_components(D, build)
        logger.info("SCF converged in %d cycles: E = %.12f", st.cycle, st.energy)
        return SCFResult(
            state=st,
            mo=mo,
            energy=st.energy,
            components=components,
            density=D,
            energy_weighted_density=mo.energy_weighted_density(),
            overlap=self.builder.overlap,
            dipole=dipole_moment(self.basis, self.molecule, D, kernel=self.builder.kernel),
        )


def run_scf(
    molecule: Molecule,
    basis: BasisSet | str = "sto-3g",
    config: SCFConfig | None = None,
    **kwargs,
) -> SCFResult:
    """Convenience wrapper: build an :class:`SCFDriver` and run it."""
    return SCFDriver(molecule, basis, config, **kwargs).run()
