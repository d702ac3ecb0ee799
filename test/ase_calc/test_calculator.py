import numpy as np
import pytest

ase = pytest.importorskip("ase")
from ase import Atoms  # noqa: E402

from qcscf.calculator import QCSCFCalculator  # noqa: E402
from qcscf.config import JobConfig, SCFConfig  # noqa: E402
from qcscf.molecule import Molecule  # noqa: E402
from qcscf.scf.driver import run_scf  # noqa: E402
from qcscf.units import BOHR_TO_ANGSTROM, HARTREE_TO_EV  # noqa: E402

CFG = JobConfig(scf=SCFConfig(energy_tol=1e-10, density_tol=1e-9))


def _water_atoms():
    pos = np.array(
        [
            [0.0, -0.143225816552, 0.0],
            [1.638036840407, 1.136548822547, 0.0],
            [-1.638036840407, 1.136548822547, 0.0],
        ]
    ) * BOHR_TO_ANGSTROM
    return Atoms("OH2", positions=pos)


def test_energy_in_ev_matches_scf(water):
    atoms = _water_atoms()
    atoms.calc = QCSCFCalculator(config=CFG)
    e = atoms.get_potential_energy()
    ref = run_scf(water, "sto-3g", CFG.scf).energy
    assert e == pytest.approx(ref * HARTREE_TO_EV, abs=1e-6)
    assert e / HARTREE_TO_EV == pytest.approx(-74.942079928192, abs=1e-6)


def test_forces_match_finite_difference():
    atoms = Atoms("H2", positions=[[0.0, 0.0, 0.0], [0.0, 0.0, 0.80]])
    atoms.calc = QCSCFCalculator(config=CFG)
    f = atoms.get_forces()
    assert f.shape == (2, 3)
    assert np.allclose(f[0], -f[1], atol=1e-8)
    h = 1e-4
    energies = []
    for d in (h, -h):
        moved = atoms.copy()
        moved.positions[1, 2] += d
        moved.calc = QCSCFCalculator(config=CFG)
        energies.append(moved.get_potential_energy())
    fd = -(energies[0] - energies[1]) / (2 * h)
    assert f[1, 2] == pytest.approx(fd, abs=1e-4)


def test_warm_start_reuses_density():
    atoms = Atoms("H2", positions=[[0.0, 0.0, 0.0], [0.0, 0.0, 0.74]])
    calc = QCSCFCalculator(config=CFG)
    atoms.calc = calc
    atoms.get_potential_energy()
    first = calc.last_scf.state.cycle
    atoms.positions[1, 2] = 0.7405
    e = atoms.get_potential_energy()
    assert calc.last_scf.state.cycle <= first
    mol = Molecule.from_angstrom([1, 1], atoms.positions)
    assert e == pytest.approx(run_scf(mol, "sto-3g", CFG.scf).energy * HARTREE_TO_EV, abs=1e-6)


def test_method_override_and_open_shell():
    atoms = Atoms("H", positions=[[0.0, 0.0, 0.0]])
    atoms.calc = QCSCFCalculator(method="hf", config=CFG, multiplicity=2)
    assert atoms.get_potential_energy() / HARTREE_TO_EV == pytest.approx(-0.466581850, abs=1e-6)
    assert np.allclose(atoms.get_forces(), 0.0, atol=1e-10)
    calc = QCSCFCalculator(method="LDA", config=CFG)
    assert calc.config.scf.method == "lda"
