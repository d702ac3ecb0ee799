from __future__ import annotations

"""Configuration values passed into the engine at construction time.

All configuration objects are frozen dataclasses validated on creation. A job
file in TOML form maps onto them table by table::

    [scf]
    method = "pbe0"
    energy_tol = 1e-8

    [scf.divergence]
    rise_cycles = 3

    [grid]
    radial_points = 60

    [parallel]
    workers = 4
    scheduling = "dynamic"

    [optimizer]
    max_force = 4.5e-4

    [vibrations]
    step = 1e-3
"""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

try:  # Python 3.11+
    import tomllib as _toml
except ImportError:  # pragma: no cover - older interpreters
    import tomli as _toml  # type: ignore

__all__ = [
    "DivergencePolicy",
    "GridConfig",
    "SCFConfig",
    "ParallelConfig",
    "OptimizerConfig",
    "VibrationConfig",
    "JobConfig",
    "load_config",
]

_METHODS_BUILTIN = ("hartree", "hf", "lda", "pbe", "pbe0")


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ValueError(msg)


@dataclass(frozen=True)
class DivergencePolicy:
    """Fallback policy for transient SCF divergence.

    After more than ``rise_cycles`` consecutive energy increases (each larger than
    ``rise_tol``) during which the DIIS residual did not shrink, the driver
    abandons extrapolation and switches to damped density updates
    ``D <- (1 - damping) D_new + damping D_old``. The damped phase gets
    ``fallback_cycles`` cycles to bring the residual below the value at which
    it was entered; if it does, DIIS resumes once the residual has dropped to
    ``recover_ratio`` times the entry value, otherwise the SCF is reported as
    diverged.
    """

    enabled: bool = True
    rise_cycles: int = 3
    rise_tol: float = 1e-10
    damping: float = 0.5
    fallback_cycles: int = 10
    recover_ratio: float = 0.5

    def __post_init__(self) -> None:
        _require(self.rise_cycles >= 1, "divergence.rise_cycles must be >= 1")
        _require(self.rise_tol >= 0.0, "divergence.rise_tol must be >= 0")
        _require(0.0 <= self.damping < 1.0, "divergence.damping must be in [0, 1)")
        _require(self.fallback_cycles >= 1, "divergence.fallback_cycles must be >= 1")
        _require(0.0 < self.recover_ratio <= 1.0, "divergence.recover_ratio must be in (0, 1]")


@dataclass(frozen=True)
class GridConfig:
    """Atom-centred integration grid for exchange-correlation terms."""

    radial_points: int = 60
    angular_order: int = 18  # Gauss-Legendre points in cos(theta); phi uses twice as many
    becke_iterations: int = 3
    weight_cutoff: float = 1e-15
    batch_size: int = 8192

    def __post_init__(self) -> None:
        _require(self.radial_points >= 4, "grid.radial_points must be >= 4")
        _require(self.angular_order >= 2, "grid.angular_order must be >= 2")
        _require(self.becke_iterations >= 1, "grid.becke_iterations must be >= 1")
        _require(self.batch_size >= 64, "grid.batch_size must be >= 64")


@dataclass(frozen=True)
class SCFConfig:
    method: str = "hf"
    reference: str = "auto"  # 'rhf' | 'uhf' | 'auto'
    max_cycles: int = 100
    energy_tol: float = 1e-8
    density_tol: float = 1e-7  # RMS change of the density matrix
    converge_cycles: int = 2
    stationary_tol: float = 1e-12
    diis: bool = True
    diis_window: int = 8
    diis_min_vectors: int = 2
    divergence: DivergencePolicy = field(default_factory=DivergencePolicy)
    lindep_threshold: float = 1e-7
    guess: str = "core"  # 'core' | 'density' (explicit density passed to the driver)
    eri_mode: str = "auto"  # 'incore' | 'direct' | 'auto'
    incore_max_nao: int = 64
    screening_threshold: float = 1e-12
    xc_backend: str = "builtin"  # 'builtin' | 'pyscf'
    dispersion: Optional[str] = None  # None | 'd2'
    grid: GridConfig = field(default_factory=GridConfig)

    def __post_init__(self) -> None:
        method = self.method.lower()
        object.__setattr__(self, "method", method)
        if self.xc_backend == "builtin":
            _require(method in _METHODS_BUILTIN, f"Unknown method '{self.method}' (builtin: {', '.join(_METHODS_BUILTIN)})")
        _require(self.xc_backend in ("builtin", "pyscf"), f"Unknown xc_backend '{self.xc_backend}'")
        _require(self.reference in ("rhf", "uhf", "auto"), f"Unknown reference '{self.reference}'")
        _require(self.max_cycles >= 1, "max_cycles must be >= 1")
        _require(self.energy_tol > 0 and self.density_tol > 0, "convergence thresholds must be positive")
        _require(self.converge_cycles >= 1, "converge_cycles must be >= 1")
        _require(self.diis_window >= 2, "diis_window must be >= 2")
        _require(2 <= self.diis_min_vectors <= self.diis_window, "diis_min_vectors must be in [2, diis_window]")
        _require(self.lindep_threshold > 0, "lindep_threshold must be positive")
        _require(self.guess in ("core", "density"), f"Unknown guess '{self.guess}'")
        _require(self.eri_mode in ("incore", "direct", "auto"), f"Unknown eri_mode '{self.eri_mode}'")
        _require(self.screening_threshold >= 0.0, "screening_threshold must be >= 0")
        _require(self.dispersion in (None, "d2"), f"Unknown dispersion '{self.dispersion}'")


@dataclass(frozen=True)
class ParallelConfig:
    workers: int = 1
    scheduling: str = "static"  # 'static' | 'dynamic'
    start_method: str = "spawn"
    units_per_worker: int = 4

    def __post_init__(self) -> None:
        _require(self.workers >= 1, "parallel.workers must be >= 1")
        _require(self.scheduling in ("static", "dynamic"), f"Unknown scheduling '{self.scheduling}'")
        _require(self.start_method in ("spawn", "fork", "forkserver"), f"Unknown start_method '{self.start_method}'")
        _require(self.units_per_worker >= 1, "parallel.units_per_worker must be >= 1")


@dataclass(frozen=True)
class OptimizerConfig:
    max_steps: int = 100
    trust_radius: float = 0.3  # bohr
    trust_min: float = 1e-3
    trust_max: float = 1.0
    max_force: float = 4.5e-4  # Hartree/bohr
    max_step: float = 1.8e-3  # bohr, norm of the proposed step
    reject_ratio: float = 0.1
    energy_noise: float = 1e-8
    max_rejections: int = 5
    shrink: float = 0.25
    grow: float = 2.0
    eta_shrink: float = 0.25
    eta_grow: float = 0.75
    initial_hessian: float = 0.5  # Hartree/bohr^2
    update: str = "bfgs"  # 'bfgs' | 'lbfgs'
    memory: int = 8  # L-BFGS pairs

    def __post_init__(self) -> None:
        _require(self.max_steps >= 1, "optimizer.max_steps must be >= 1")
        _require(0 < self.trust_min <= self.trust_radius <= self.trust_max, "optimizer trust radii must satisfy min <= radius <= max")
        _require(self.max_force > 0 and self.max_step > 0, "optimizer thresholds must be positive")
        _require(self.max_rejections >= 1, "optimizer.max_rejections must be >= 1")
        _require(0 < self.shrink < 1 < self.grow, "optimizer requires shrink < 1 < grow")
        _require(0 <= self.eta_shrink < self.eta_grow <= 1, "optimizer requires eta_shrink < eta_grow")
        _require(self.initial_hessian > 0, "optimizer.initial_hessian must be positive")
        _require(self.update in ("bfgs", "lbfgs"), f"Unknown optimizer update '{self.update}'")
        _require(self.memory >= 1, "optimizer.memory must be >= 1")


@dataclass(frozen=True)
class VibrationConfig:
    step: float = 1e-3  # bohr, central-difference displacement

    def __post_init__(self) -> None:
        _require(0.0 < self.step <= 0.1, "vibrations.step must be in (0, 0.1] bohr")


@dataclass(frozen=True)
class JobConfig:
    scf: SCFConfig = field(default_factory=SCFConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    vibrations: VibrationConfig = field(default_factory=VibrationConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobConfig":
        data = dict(data)
        unknown = set(data) - {"scf", "grid", "parallel", "optimizer", "vibrations"}
        if unknown:
            raise ValueError(f"Unknown configuration tables: {sorted(unknown)}")
        scf_data = dict(data.get("scf", {}))
        div = _build(DivergencePolicy, scf_data.pop("divergence", {}), "scf.divergence")
        grid = _build(GridConfig, data.get("grid", {}), "grid")
        scf = _build(SCFConfig, scf_data, "scf", divergence=div, grid=grid)
        return cls(
            scf=scf,
            parallel=_build(ParallelConfig, data.get("parallel", {}), "parallel"),
            optimizer=_build(OptimizerConfig, data.get("optimizer", {}), "optimizer"),
            vibrations=_build(VibrationConfig, data.get("vibrations", {}), "vibrations"),
        )

    def with_scf(self, **changes: Any) -> "JobConfig":
        return replace(self, scf=replace(self.scf, **changes))


def _build(cls, values: Dict[str, Any], table: str, **extra: Any):
    names = {f.name for f in fields(cls)} - set(extra)
    unknown = set(values) - names
    if unknown:
        raise ValueError(f"Unknown keys in [{table}]: {sorted(unknown)}")
    return cls(**values, **extra)


def load_config(path: str | Path) -> JobConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"configuration file not found: {p}")
    with p.open("rb") as fh:
        data = _toml.load(fh)
    return JobConfig.from_dict(data)
