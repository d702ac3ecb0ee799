from __future__ import annotations

"""Versioned, atomically written checkpoints of SCF and optimizer state.

File layout::

    QCSCF-CHECKPOINT\\n
    {"format": ..., "version": ..., "fingerprint": ..., ...}\\n   (JSON header, one line)
    <torch.save payload>

The header records the format version, the molecule+basis fingerprint, the
iteration counters and the sha256 and size of the payload. The payload holds
only tensors and plain Python values and is read back with
``torch.load(..., weights_only=True)``.

Saves go to a temporary file in the target directory which is flushed,
fsynced and then moved over the target with :func:`os.replace`, so a crash
leaves either the previous checkpoint or none. Loads validate everything
before constructing any state object.

Saves and loads of one path are serialised by a lock that covers the threads
of the current process only; the registry drops a path's lock once no caller
holds it. Writers in separate processes are not excluded from each other:
each writes its own temporary file and the last :func:`os.replace` wins, and
readers always see one complete checkpoint.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import io
import json
import logging
import os
from pathlib import Path
import pickle
import tempfile
import threading
from typing import Any, Dict, Optional
import weakref

import torch

from .errors import CheckpointCorrupt, CheckpointFingerprintMismatch, CheckpointVersionMismatch
from .molecule import Molecule
from .opt.state import OptimizerState
from .scf.diis import DIISHistory
from .scf.state import MOCoefficients, SCFState, SCFStatus

logger = logging.getLogger(__name__)

__all__ = [
    "FORMAT",
    "VERSION",
    "Checkpoint",
    "CheckpointHandle",
    "CheckpointStore",
    "checkpoint_fingerprint",
    "system_fingerprint",
]

FORMAT = "qcscf-checkpoint"
VERSION = 1
MAGIC = b"QCSCF-CHECKPOINT\n"

_HEADER_KEYS = ("format", "version", "fingerprint", "system", "basis", "counters", "payload_sha256", "payload_size")


class _PathLock:
    """Thread lock for one checkpoint path; lives only while some caller holds it."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> "_PathLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self._lock.release()


_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()


def _path_lock(path: Path) -> _PathLock:
    key = str(path.resolve())
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _PathLock()
            _locks[key] = lock
        return lock


def checkpoint_fingerprint(molecule: Molecule, basis_identity: str) -> str:
    """Geometry-specific fingerprint: molecule (incl. positions) and basis."""
    return hashlib.sha256(f"{molecule.fingerprint()}:{basis_identity}".encode()).hexdigest()


def system_fingerprint(molecule: Molecule, basis_identity: str) -> str:
    """Geometry-independent fingerprint: composition, charge, multiplicity and basis."""
    h = hashlib.sha256()
    h.update(",".join(str(int(z)) for z in molecule.numbers.tolist()).encode())
    h.update(f"q={molecule.charge};m={molecule.multiplicity};{basis_identity}".encode())
    return h.hexdigest()


# ---- state <-> plain payload ------------------------------------------------


def _mo_to_dict(mo: Optional[MOCoefficients]):
    if mo is None:
        return None
    return {"coefficients": mo.coefficients, "energies": mo.energies, "occupations": mo.occupations}


def _mo_from_dict(data) -> Optional[MOCoefficients]:
    if data is None:
        return None
    return MOCoefficients(data["coefficients"], data["energies"], data["occupations"])


def scf_state_to_dict(state: SCFState) -> Dict[str, Any]:
    return {
        "cycle": int(state.cycle),
        "energy": float(state.energy),
        "delta_energy": float(state.delta_energy),
        "delta_density": float(state.delta_density),
        "residual": float(state.residual),
        "status": state.status.value,
        "density": state.density,
        "fock": state.fock,
        "mo": _mo_to_dict(state.mo),
        "diis": None if state.diis is None else state.diis.state_dict(),
        "best_energy": float(state.best_energy),
        "best_density": state.best_density,
        "fallback": bool(state.fallback),
        "history": [float(e) for e in state.history],
    }


def scf_state_from_dict(data: Dict[str, Any]) -> SCFState:
    return SCFState(
        cycle=int(data["cycle"]),
        energy=float(data["energy"]),
        delta_energy=float(data["delta_energy"]),
        delta_density=float(data["delta_density"]),
        residual=float(data["residual"]),
        status=SCFStatus(data["status"]),
        density=data["density"],
        fock=data["fock"],
        mo=_mo_from_dict(data["mo"]),
        diis=None if data["diis"] is None else DIISHistory.from_state_dict(data["diis"]),
        best_energy=float(data["best_energy"]),
        best_density=data["best_density"],
        fallback=bool(data["fallback"]),
        history=list(data["history"]),
    )


@dataclass
class Checkpoint:
    """Snapshot of one job: molecule, basis identity, SCF and optimizer state."""

    molecule: Molecule
    basis_identity: str
    scf: Optional[SCFState] = None
    optimizer: Optional[OptimizerState] = None
    counters: Dict[str, int] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        return checkpoint_fingerprint(self.molecule, self.basis_identity)

    @property
    def system(self) -> str:
        return system_fingerprint(self.molecule, self.basis_identity)

    def _counters(self) -> Dict[str, int]:
        out = dict(self.counters)
        if self.scf is not None:
            out.setdefault("scf_cycle", int(self.scf.cycle))
        if self.optimizer is not None:
            out.setdefault("opt_step", int(self.optimizer.step))
            out.setdefault("opt_evaluations", int(self.optimizer.evaluations))
        return out

    def to_payload(self) -> Dict[str, Any]:
        mol = self.molecule
        return {
            "molecule": {
                "numbers": mol.numbers,
                "positions": mol.positions,
                "charge": int(mol.charge),
                "multiplicity": int(mol.multiplicity),
            },
            "basis_identity": self.basis_identity,
            "scf": None if self.scf is None else scf_state_to_dict(self.scf),
            "optimizer": None if self.optimizer is None else self.optimizer.to_dict(),
            "counters": self._counters(),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Checkpoint":
        m = payload["molecule"]
        mol = Molecule(m["numbers"], m["positions"], charge=int(m["charge"]), multiplicity=int(m["multiplicity"]))
        return cls(
            molecule=mol,
            basis_identity=str(payload["basis_identity"]),
            scf=None if payload["scf"] is None else scf_state_from_dict(payload["scf"]),
            optimizer=None if payload["optimizer"] is None else OptimizerState.from_dict(payload["optimizer"]),
            counters={str(k): int(v) for k, v in payload["counters"].items()},
        )


@dataclass(frozen=True)
class CheckpointHandle:
    path: Path
    fingerprint: str
    version: int
    counters: Dict[str, int]


class CheckpointStore:
    """Reads and writes checkpoint files; relative paths resolve against ``directory``."""

    def __init__(self, directory: str | Path | None = None) -> None:
        self.directory = Path(directory) if directory is not None else Path.cwd()

    def _resolve(self, target: str | Path | CheckpointHandle) -> Path:
        if isinstance(target, CheckpointHandle):
            return target.path
        p = Path(target)
        return p if p.is_absolute() else self.directory / p

    def save(self, checkpoint: Checkpoint, path: str | Path) -> CheckpointHandle:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        buf = io.BytesIO()
        payload = checkpoint.to_payload()
        torch.save(payload, buf)
        data = buf.getvalue()
        header = {
            "format": FORMAT,
            "version": VERSION,
            "fingerprint": checkpoint.fingerprint,
            "system": checkpoint.system,
            "basis": checkpoint.basis_identity,
            "counters": payload["counters"],
            "payload_sha256": hashlib.sha256(data).hexdigest(),
            "payload_size": len(data),
            "created": datetime.now(timezone.utc).isoformat(),
        }
        blob = MAGIC + json.dumps(header, sort_keys=True).encode() + b"\n" + data
        with _path_lock(target):
            fd, tmp = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(blob)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, target)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
            _fsync_directory(target.parent)
        logger.info("checkpoint saved: %s (%s)", target, header["counters"])
        return CheckpointHandle(target, header["fingerprint"], VERSION, dict(header["counters"]))

    def read_header(self, path: str | Path | CheckpointHandle) -> Dict[str, Any]:
        target = self._resolve(path)
        with _path_lock(target):
            blob = target.read_bytes()
        header, _ = _split(blob, target)
        return header

    def load(
        self,
        handle: str | Path | CheckpointHandle,
        expect_fingerprint: Optional[str] = None,
        expect_system: Optional[str] = None,
    ) -> Checkpoint:
        """Validate and restore a checkpoint; nothing is returned unless all checks pass."""
        target = self._resolve(handle)
        if not target.exists():
            raise FileNotFoundError(f"checkpoint not found: {target}")
        with _path_lock(target):
            blob = target.read_bytes()
        header, data = _split(blob, target)
        if len(data) != header["payload_size"]:
            raise CheckpointCorrupt(
                f"{target}: payload has {len(data)} bytes, header declares {header['payload_size']}"
            )
        if hashlib.sha256(data).hexdigest() != header["payload_sha256"]:
            raise CheckpointCorrupt(f"{target}: payload digest mismatch")
        try:
            payload = torch.load(io.BytesIO(data), weights_only=True)
            checkpoint = Checkpoint.from_payload(payload)
        except (KeyError, TypeError, ValueError, RuntimeError, EOFError, pickle.UnpicklingError) as exc:
            raise CheckpointCorrupt(f"{target}: payload cannot be restored: {exc}") from exc
        if checkpoint.fingerprint != header["fingerprint"]:
            raise CheckpointFingerprintMismatch(
                f"{target}: payload does not match the header fingerprint",
                found=checkpoint.fingerprint,
                expected=header["fingerprint"],
            )
        if expect_fingerprint is not None and header["fingerprint"] != expect_fingerprint:
            raise CheckpointFingerprintMismatch(
                f"{target}: checkpoint belongs to a different molecule/basis",
                found=header["fingerprint"],
                expected=expect_fingerprint,
            )
        if expect_system is not None and header["system"] != expect_system:
            raise CheckpointFingerprintMismatch(
                f"{target}: checkpoint belongs to a different system",
                found=header["system"],
                expected=expect_system,
            )
        logger.info("checkpoint loaded: %s (%s)", target, header["counters"])
        return checkpoint


def _split(blob: bytes, target: Path):
    if not blob.startswith(MAGIC):
        raise CheckpointCorrupt(f"{target}: not a checkpoint file")
    end = blob.find(b"\n", len(MAGIC))
    if end < 0:
        raise CheckpointCorrupt(f"{target}: truncated header")
    try:
        header = json.loads(blob[len(MAGIC):end].decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CheckpointCorrupt(f"{target}: unreadable header: {exc}") from exc
    if not isinstance(header, dict) or header.get("format") != FORMAT:
        raise CheckpointCorrupt(f"{target}: unknown checkpoint format")
    if header.get("version") != VERSION:
        raise CheckpointVersionMismatch(
            f"{target}: checkpoint version {header.get('version')}, expected {VERSION}",
            found=header.get("version"),
            expected=VERSION,
        )
    missing = [k for k in _HEADER_KEYS if k not in header]
    if missing:
        raise CheckpointCorrupt(f"{target}: header lacks {missing}")
    return header, blob[end + 1:]


def _fsync_directory(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
