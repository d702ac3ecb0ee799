import pytest
import torch

from qcscf.config import DivergencePolicy, SCFConfig
from qcscf.errors import MaxCyclesExceeded
from qcscf.molecule import Molecule
from qcscf.scf.driver import SCFDriver, run_scf
from qcscf.scf.state import SCFStatus

TIGHT = SCFConfig(energy_tol=1e-10, density_tol=1e-9)


def test_h2_hf_sto3g(h2):
    res = run_scf(h2, "sto-3g", TIGHT)
    assert res.converged
    assert res.energy == pytest.approx(-1.1167143251, abs=1e-8)
    assert res.components["total"] == pytest.approx(res.energy, abs=1e-12)
    assert res.components["nuclear"] == pytest.approx(1.0 / 1.4, abs=1e-14)


def test_water_hf_sto3g(water):
    res = run_scf(water, "sto-3g", TIGHT)
    assert res.state.status is SCFStatus.CONVERGED
    assert res.energy == pytest.approx(-74.942079928192, abs=1e-7)
    c = res.components
    assert c["one_electron"] + c["coulomb"] + c["exchange"] == pytest.approx(c["electronic"], abs=1e-10)
    homo, lumo = res.mo.homo_lumo()
    assert homo < 0.0 < lumo


def test_helium_converges_in_one_cycle():
    he = Molecule(torch.tensor([2]), torch.zeros((1, 3), dtype=torch.float64))
    res = run_scf(he, "sto-3g")
    assert res.cycles == 1
    assert res.energy == pytest.approx(-2.807783957, abs=1e-8)


def test_hydrogen_atom_unrestricted():
    h = Molecule(torch.tensor([1]), torch.zeros((1, 3), dtype=torch.float64), multiplicity=2)
    res = run_scf(h, "sto-3g")
    assert res.density.shape[0] == 2
    assert res.energy == pytest.approx(-0.466581850, abs=1e-8)
    # one-electron system: no self-interaction left in HF
    assert res.components["coulomb"] + res.components["exchange"] == pytest.approx(0.0, abs=1e-12)


def test_converged_density_is_idempotent(water):
    res = run_scf(water, "sto-3g", TIGHT)
    P = 0.5 * res.density[0]
    S = res.overlap
    assert torch.allclose(P @ S @ P, P, atol=1e-8)
    assert float((res.total_density() * S).sum()) == pytest.approx(10.0, abs=1e-10)


def test_unrestricted_density_is_idempotent_per_spin():
    oh = Molecule.from_symbols(["O", "H"], [[0, 0, 0], [0, 0, 1.83]], multiplicity=2)
    res = run_scf(oh, "sto-3g", SCFConfig(max_cycles=200))
    S = res.overlap
    for s in range(2):
        D = res.density[s]
        assert torch.allclose(D @ S @ D, D, atol=1e-7)
    na = float((res.density[0] * S).sum())
    nb = float((res.density[1] * S).sum())
    assert (na, nb) == pytest.approx((5.0, 4.0), abs=1e-10)


def test_diis_accelerates_convergence(water):
    off = DivergencePolicy(enabled=False)
    plain = run_scf(water, "sto-3g", SCFConfig(diis=False, divergence=off, max_cycles=300))
    diis = run_scf(water, "sto-3g", SCFConfig(diis=True, divergence=off, max_cycles=300))
    assert diis.cycles < plain.cycles
    assert diis.energy == pytest.approx(plain.energy, abs=1e-6)


def test_max_cycles_reports_best_state(water):
    with pytest.raises(MaxCyclesExceeded) as info:
        run_scf(water, "sto-3g", SCFConfig(max_cycles=2))
    err = info.value
    assert err.cycle == 2
    assert err.density is not None
    assert err.energy is not None and err.energy < 0.0


def test_previous_density_as_guess_converges_faster(water):
    first = run_scf(water, "sto-3g", TIGHT)
    moved = water.with_positions(water.positions * 1.01)
    cold = run_scf(moved, "sto-3g", TIGHT)
    warm = run_scf(moved, "sto-3g", TIGHT, guess_density=first.density)
    assert warm.cycles <= cold.cycles
    assert warm.energy == pytest.approx(cold.energy, abs=1e-8)


def test_callback_sees_every_cycle(h2):
    seen = []
    driver = SCFDriver(h2, "sto-3g", TIGHT, callback=lambda st: seen.append(st.cycle))
    res = driver.run()
    assert seen == list(range(1, res.cycles + 1))


def test_guess_density_required_for_density_guess(h2):
    with pytest.raises(ValueError):
        SCFDriver(h2, "sto-3g", SCFConfig(guess="density"))


def test_restart_carries_cycle_history_and_diis(water):
    loose = SCFConfig(energy_tol=1e-4, density_tol=1e-3)
    first = SCFDriver(water, "sto-3g", loose).run()
    drv = SCFDriver(water, "sto-3g", TIGHT, restart=first.state)
    assert drv.state.cycle == first.state.cycle
    assert drv.state.history == first.state.history
    assert len(drv.state.diis) == len(first.state.diis)
    ref_f, _ = first.state.diis.latest()
    assert torch.equal(drv.state.diis.latest()[0], ref_f)
    res = drv.run()
    assert res.cycles > first.cycles
    assert res.energy == pytest.approx(-74.942079928192, abs=1e-7)


def test_restart_drops_diis_of_other_spin_shape(h2):
    uhf = SCFDriver(h2, "sto-3g", SCFConfig(reference="uhf")).run()
    drv = SCFDriver(h2, "sto-3g", SCFConfig(reference="rhf"), restart=uhf.state)
    assert len(drv.state.diis) == 0
    assert drv.state.cycle == uhf.state.cycle
    assert drv.run().energy == pytest.approx(-1.1167143251, abs=1e-7)
