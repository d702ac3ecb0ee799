from dataclasses import FrozenInstanceError

import pytest

from qcscf.config import (
    DivergencePolicy,
    GridConfig,
    JobConfig,
    OptimizerConfig,
    ParallelConfig,
    SCFConfig,
    VibrationConfig,
    load_config,
)

JOB = """
[scf]
method = "PBE0"
energy_tol = 1e-9
diis_window = 6
dispersion = "d2"

[scf.divergence]
rise_cycles = 4
damping = 0.3

[grid]
radial_points = 40
angular_order = 12

[parallel]
workers = 2
scheduling = "dynamic"

[optimizer]
max_force = 1e-4
trust_radius = 0.2

[vibrations]
step = 5e-3
"""


def _write(tmp_path, text, name="job.toml"):
    p = tmp_path / name
    p.write_text(text)
    return p


def test_defaults():
    cfg = JobConfig()
    assert cfg.scf.method == "hf"
    assert cfg.scf.divergence == DivergencePolicy()
    assert cfg.parallel.workers == 1
    assert cfg.optimizer.max_force == pytest.approx(4.5e-4)
    assert cfg.vibrations == VibrationConfig(step=1e-3)


def test_load_config(tmp_path):
    cfg = load_config(_write(tmp_path, JOB))
    assert cfg.scf.method == "pbe0"
    assert cfg.scf.energy_tol == pytest.approx(1e-9)
    assert cfg.scf.diis_window == 6
    assert cfg.scf.dispersion == "d2"
    assert cfg.scf.divergence.rise_cycles == 4
    assert cfg.scf.divergence.damping == pytest.approx(0.3)
    assert cfg.scf.grid.radial_points == 40
    assert cfg.scf.grid.angular_order == 12
    assert cfg.parallel == ParallelConfig(workers=2, scheduling="dynamic")
    assert cfg.optimizer.trust_radius == pytest.approx(0.2)
    assert cfg.vibrations.step == pytest.approx(5e-3)
    # untouched values keep their defaults
    assert cfg.scf.density_tol == SCFConfig().density_tol
    assert cfg.scf.grid.becke_iterations == GridConfig().becke_iterations


def test_empty_file_gives_defaults(tmp_path):
    assert load_config(_write(tmp_path, "")) == JobConfig()


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.toml")


@pytest.mark.parametrize(
    'text',
    [
        "[solver]\nx = 1\n",
        "[scf]\nmaxcycles = 3\n",
        "[scf.divergence]\nwindow = 3\n",
        "[scf.grid]\nradial_points = 10\n",
        "[grid]\nlebedev = 110\n",
        "[optimizer]\nstep = 0.1\n",
        "[vibrations]\ndisplacement = 0.01\n",
    ],
)
def test_unknown_keys_rejected(tmp_path, text):
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, text))


@pytest.mark.parametrize(
    'text',
    [
        '[scf]\nmethod = "b3lyp"\n',
        '[scf]\nreference = "rohf"\n',
        "[scf]\nmax_cycles = 0\n",
        "[scf]\ndiis_min_vectors = 9\n",
        '[scf]\ndispersion = "d3"\n',
        "[scf.divergence]\ndamping = 1.0\n",
        "[grid]\nradial_points = 2\n",
        "[parallel]\nworkers = 0\n",
        '[parallel]\nscheduling = "random"\n',
        "[optimizer]\ntrust_radius = 5.0\n",
        "[optimizer]\nshrink = 1.5\n",
        '[optimizer]\nupdate = "newton"\n',
        "[optimizer]\nmemory = 0\n",
        "[vibrations]\nstep = 0.0\n",
        "[vibrations]\nstep = 0.5\n",
    ],
)
def test_invalid_values_rejected(tmp_path, text):
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, text))


def test_pyscf_backend_accepts_any_functional_name():
    cfg = SCFConfig(method="B3LYP", xc_backend="pyscf")
    assert cfg.method == "b3lyp"


def test_with_scf_returns_new_config():
    base = JobConfig()
    changed = base.with_scf(method="lda", max_cycles=20)
    assert changed.scf.method == "lda"
    assert changed.scf.max_cycles == 20
    assert base.scf.method == "hf"
    assert changed.parallel is base.parallel


def test_frozen():
    with pytest.raises(FrozenInstanceError):
        OptimizerConfig().max_steps = 3
