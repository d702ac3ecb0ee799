from concurrent.futures import ThreadPoolExecutor
import contextlib
import gc
import json
import os

import pytest
import torch

from qcscf import checkpoint as ckmod
from qcscf.basis.shells import build_basis
from qcscf.checkpoint import MAGIC, Checkpoint, CheckpointStore, checkpoint_fingerprint, system_fingerprint
from qcscf.config import SCFConfig
from qcscf.errors import (
    CheckpointCorrupt,
    CheckpointFingerprintMismatch,
    CheckpointVersionMismatch,
    OptimizerMaxStepsExceeded,
)
from qcscf.opt.state import OptimizerState
from qcscf.scf.driver import SCFDriver
from qcscf.scf.state import SCFStatus


def _scf_checkpoint(mol):
    driver = SCFDriver(mol, "sto-3g", SCFConfig(energy_tol=1e-10, density_tol=1e-9))
    driver.run()
    return Checkpoint(molecule=mol, basis_identity=driver.basis.identity(), scf=driver.state)


def _rewrite_header(path, **changes):
    blob = path.read_bytes()
    end = blob.index(b"\n", len(MAGIC))
    header = json.loads(blob[len(MAGIC):end])
    header.update(changes)
    path.write_bytes(MAGIC + json.dumps(header).encode() + b"\n" + blob[end + 1:])


def test_scf_state_round_trip(tmp_path, water):
    ck = _scf_checkpoint(water)
    store = CheckpointStore(tmp_path)
    handle = store.save(ck, "water.ckpt")
    assert handle.path == tmp_path / "water.ckpt"
    assert handle.counters["scf_cycle"] == ck.scf.cycle
    back = store.load(handle, expect_fingerprint=ck.fingerprint)
    assert back.fingerprint == ck.fingerprint
    assert back.scf.status is ck.scf.status
    assert back.scf.energy == ck.scf.energy
    assert torch.equal(back.scf.density, ck.scf.density)
    assert torch.equal(back.scf.mo.coefficients, ck.scf.mo.coefficients)
    assert len(back.scf.diis) == len(ck.scf.diis)
    assert torch.equal(back.scf.diis.extrapolate(), ck.scf.diis.extrapolate())
    assert back.scf.history == ck.scf.history
    assert not list(tmp_path.glob(".*.tmp"))


def test_optimizer_state_round_trip(tmp_path, h2):
    st = OptimizerState.initial(h2, 0.3, 0.5)
    st.energy = -1.1
    st.gradient = torch.ones((2, 3), dtype=torch.float64)
    st.energies = [-1.0, -1.1]
    st.s_history = [torch.full((6,), 0.1, dtype=torch.float64)]
    st.y_history = [torch.full((6,), 0.05, dtype=torch.float64)]
    store = CheckpointStore(tmp_path)
    store.save(Checkpoint(h2, build_basis(h2).identity(), optimizer=st), "opt.ckpt")
    back = store.load("opt.ckpt").optimizer
    assert back.status is st.status
    assert back.energies == st.energies
    assert torch.equal(back.hessian, st.hessian)
    assert torch.equal(back.molecule.positions, h2.positions)
    assert back.last_step_norm == float("inf")
    assert len(back.s_history) == 1 and torch.equal(back.s_history[0], st.s_history[0])
    assert torch.equal(back.y_history[0], st.y_history[0])


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        CheckpointStore(tmp_path).load("nothing.ckpt")


def test_version_mismatch(tmp_path, h2):
    store = CheckpointStore(tmp_path)
    handle = store.save(_scf_checkpoint(h2), "h2.ckpt")
    _rewrite_header(handle.path, version=ckmod.VERSION + 1)
    with pytest.raises(CheckpointVersionMismatch):
        store.load(handle)


@pytest.mark.parametrize('damage', ['truncate', 'flip', 'magic', 'header'])
def test_corruption_detected(tmp_path, h2, damage):
    store = CheckpointStore(tmp_path)
    path = store.save(_scf_checkpoint(h2), "h2.ckpt").path
    blob = bytearray(path.read_bytes())
    if damage == 'truncate':
        blob = blob[: len(blob) - 100]
    elif damage == 'flip':
        blob[-50] ^= 0xFF
    elif damage == 'magic':
        blob[:5] = b"XXXXX"
    else:
        blob[len(MAGIC) + 2] = ord("!")
    path.write_bytes(bytes(blob))
    with pytest.raises(CheckpointCorrupt):
        store.load(path)


def test_missing_header_keys(tmp_path, h2):
    store = CheckpointStore(tmp_path)
    path = store.save(_scf_checkpoint(h2), "h2.ckpt").path
    blob = path.read_bytes()
    end = blob.index(b"\n", len(MAGIC))
    header = json.loads(blob[len(MAGIC):end])
    del header["payload_sha256"]
    path.write_bytes(MAGIC + json.dumps(header).encode() + b"\n" + blob[end + 1:])
    with pytest.raises(CheckpointCorrupt):
        store.load(path)


def test_fingerprint_mismatch(tmp_path, h2, water):
    store = CheckpointStore(tmp_path)
    ck = _scf_checkpoint(h2)
    handle = store.save(ck, "h2.ckpt")
    other = checkpoint_fingerprint(water, build_basis(water).identity())
    with pytest.raises(CheckpointFingerprintMismatch):
        store.load(handle, expect_fingerprint=other)
    with pytest.raises(CheckpointFingerprintMismatch):
        store.load(handle, expect_system=system_fingerprint(water, build_basis(water).identity()))
    # fingerprint mismatch is a kind of corruption for callers that only catch that
    assert issubclass(CheckpointFingerprintMismatch, CheckpointCorrupt)


def test_header_fingerprint_must_match_payload(tmp_path, h2):
    store = CheckpointStore(tmp_path)
    handle = store.save(_scf_checkpoint(h2), "h2.ckpt")
    _rewrite_header(handle.path, fingerprint="0" * 64)
    with pytest.raises(CheckpointFingerprintMismatch):
        store.load(handle)


def test_system_fingerprint_ignores_geometry(h2):
    ident = build_basis(h2).identity()
    moved = h2.with_positions(h2.positions * 1.1)
    assert system_fingerprint(h2, ident) == system_fingerprint(moved, ident)
    assert checkpoint_fingerprint(h2, ident) != checkpoint_fingerprint(moved, ident)


def test_crash_during_save_keeps_previous_checkpoint(tmp_path, h2, monkeypatch):
    store = CheckpointStore(tmp_path)
    first = _scf_checkpoint(h2)
    store.save(first, "h2.ckpt")
    before = (tmp_path / "h2.ckpt").read_bytes()

    def boom(src, dst):
        raise OSError("simulated crash")

    monkeypatch.setattr(os, "replace", boom)
    second = _scf_checkpoint(h2.with_positions(h2.positions * 1.05))
    with pytest.raises(OSError):
        store.save(second, "h2.ckpt")
    monkeypatch.undo()
    assert (tmp_path / "h2.ckpt").read_bytes() == before
    assert not list(tmp_path.glob(".h2.ckpt.*"))
    assert store.load("h2.ckpt").fingerprint == first.fingerprint


def test_read_header(tmp_path, h2):
    store = CheckpointStore(tmp_path)
    ck = _scf_checkpoint(h2)
    store.save(ck, "h2.ckpt")
    header = store.read_header("h2.ckpt")
    assert header["format"] == ckmod.FORMAT
    assert header["fingerprint"] == ck.fingerprint
    assert header["counters"]["scf_cycle"] == ck.scf.cycle


def test_optimizer_checkpoint_holds_scf_state(tmp_path, h2):
    from qcscf.config import OptimizerConfig
    from qcscf.opt.optimizer import EnergyGradientEngine, GeometryOptimizer

    store = CheckpointStore(tmp_path)
    seen = []
    opt = GeometryOptimizer(
        EnergyGradientEngine("sto-3g", SCFConfig(energy_tol=1e-10, density_tol=1e-9)),
        h2,
        OptimizerConfig(max_steps=1),
        checkpoint=(store, "opt.ckpt"),
        callback=lambda st: seen.append(st.step),
    )
    with contextlib.suppress(OptimizerMaxStepsExceeded):
        opt.run()
    assert seen and seen[-1] == 1
    ck = store.load("opt.ckpt")
    assert ck.scf is not None and ck.optimizer is not None
    assert ck.scf.status is SCFStatus.CONVERGED
    live = opt.scf_state
    assert torch.equal(ck.scf.mo.coefficients, live.mo.coefficients)
    assert torch.equal(ck.scf.mo.energies, live.mo.energies)
    assert torch.equal(ck.scf.mo.occupations, live.mo.occupations)
    assert torch.equal(ck.scf.density, ck.optimizer.density)
    assert ck.scf.energy == ck.optimizer.energy
    header = store.read_header("opt.ckpt")
    assert header["counters"]["scf_cycle"] == live.cycle
    assert header["counters"]["opt_step"] == 1


def test_concurrent_saves_leave_one_complete_checkpoint(tmp_path, h2):
    store = CheckpointStore(tmp_path)
    ck = _scf_checkpoint(h2)
    with ThreadPoolExecutor(max_workers=4) as pool:
        handles = list(pool.map(lambda _: store.save(ck, "h2.ckpt"), range(8)))
    assert {h.fingerprint for h in handles} == {ck.fingerprint}
    assert not list(tmp_path.glob(".h2.ckpt.*"))
    assert store.load("h2.ckpt").scf.energy == ck.scf.energy


def test_path_locks_released_after_use(tmp_path, h2):
    store = CheckpointStore(tmp_path)
    ck = Checkpoint(h2, build_basis(h2).identity(), optimizer=OptimizerState.initial(h2, 0.3, 0.5))
    for i in range(10):
        store.save(ck, f"opt{i}.ckpt")
        store.load(f"opt{i}.ckpt")
    gc.collect()
    root = str(tmp_path.resolve())
    assert not [key for key in list(ckmod._locks.keys()) if key.startswith(root)]
