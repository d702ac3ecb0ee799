import pytest
import torch

from qcscf.config import DivergencePolicy, SCFConfig
from qcscf.errors import SCFDivergence
from qcscf.scf import driver as driver_mod
from qcscf.scf.driver import SCFDriver
from qcscf.scf.monitor import ConvergenceMonitor, Verdict
from qcscf.scf.state import SCFStatus

CFG = SCFConfig(divergence=DivergencePolicy(damping=0.3))


def _scripted(script):
    """Monitor that overrides the verdict on selected cycles."""

    class Scripted(ConvergenceMonitor):
        def observe(self, cycle, delta_energy, delta_density, residual):
            verdict = super().observe(cycle, delta_energy, delta_density, residual)
            return script.get(cycle, verdict)

    return Scripted


def test_fallback_takes_damped_steps_without_diis(water, monkeypatch):
    monkeypatch.setattr(
        driver_mod, "ConvergenceMonitor", _scripted({1: Verdict.START_FALLBACK, 3: Verdict.RESUME_DIIS})
    )
    snaps = {}

    def record(st):
        snaps[st.cycle] = {
            "density": st.density.clone(),
            "fock": st.fock.clone(),
            "fallback": st.fallback,
            "diis": len(st.diis),
        }

    drv = SCFDriver(water, "sto-3g", CFG, callback=record)
    res = drv.run()
    assert res.converged
    assert res.energy == pytest.approx(-74.942079928192, abs=1e-6)

    # cycle 1 ran with DIIS; the fallback starts afterwards and empties the history
    assert snaps[1]["diis"] == 1 and not snaps[1]["fallback"]
    # cycles 2 and 3 are damped and push nothing
    assert snaps[2]["fallback"] and snaps[3]["fallback"]
    assert snaps[2]["diis"] == 0 and snaps[3]["diis"] == 0
    a = CFG.divergence.damping
    for k in (2, 3):
        prev = snaps[k - 1]
        expected = (1.0 - a) * drv._new_density(prev["fock"]) + a * prev["density"]
        assert torch.allclose(snaps[k]["density"], expected, atol=1e-12)
    # DIIS resumes with a fresh history
    assert not snaps[4]["fallback"]
    assert snaps[4]["diis"] == 1


def test_divergence_reports_last_cycle(water, monkeypatch):
    monkeypatch.setattr(
        driver_mod, "ConvergenceMonitor", _scripted({1: Verdict.START_FALLBACK, 3: Verdict.DIVERGED})
    )
    drv = SCFDriver(water, "sto-3g", CFG)
    with pytest.raises(SCFDivergence) as info:
        drv.run()
    err = info.value
    st = drv.state
    assert st.status is SCFStatus.DIVERGED
    assert err.cycle == 3 == st.cycle
    assert err.residual == st.residual
    assert err.energy == st.energy
    assert err.delta_density == st.delta_density
    assert st.fallback


def test_real_monitor_enters_fallback_on_rising_energy(h2, monkeypatch):
    # feed the real policy an energy rise on every cycle while the residual stalls
    class Rising(ConvergenceMonitor):
        def observe(self, cycle, delta_energy, delta_density, residual):
            if cycle <= 5:
                return super().observe(cycle, 1.0, 1.0, 1.0)
            return super().observe(cycle, delta_energy, delta_density, residual)

    monkeypatch.setattr(driver_mod, "ConvergenceMonitor", Rising)
    flags = []
    cfg = SCFConfig(divergence=DivergencePolicy(rise_cycles=2, recover_ratio=1.0))
    res = SCFDriver(h2, "sto-3g", cfg, callback=lambda st: flags.append(st.fallback)).run()
    assert res.converged
    assert True in flags
    first = flags.index(True)
    # rises on cycles 2-4 exceed rise_cycles=2, so cycle 5 is the first damped one
    assert first == 4
