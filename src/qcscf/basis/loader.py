from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Mapping, Tuple

try:  # Python 3.11+
    import tomllib as _toml
except ImportError:  # pragma: no cover - older interpreters
    import tomli as _toml  # type: ignore

__all__ = ["ShellSpec", "BasisTable", "L_LABELS", "load_basis_table", "basis_table_from_dict"]

L_LABELS = {"s": 0, "p": 1, "d": 2, "f": 3}

_DATA_DIR = Path(__file__).resolve().parent / "data"


@dataclass(frozen=True)
class ShellSpec:
    """Element-level shell template (no centre yet)."""

    l: int
    exponents: Tuple[float, ...]
    coefficients: Tuple[float, ...]


@dataclass(frozen=True)
class BasisTable:
    name: str
    elements: Mapping[int, Tuple[ShellSpec, ...]]

    def shells_for(self, z: int) -> Tuple[ShellSpec, ...]:
        if z not in self.elements:
            raise ValueError(f"Basis '{self.name}' has no entry for Z={z}")
        return self.elements[z]


def _parse_shells(z: int, entries) -> Tuple[ShellSpec, ...]:
    out = []
    for k, ent in enumerate(entries):
        label = str(ent.get("l", "")).lower()
        exps = tuple(float(x) for x in ent.get("exponents", ()))
        coefs = tuple(float(x) for x in ent.get("coefficients", ()))
        if not exps or len(exps) != len(coefs):
            raise ValueError(f"Z={z} shell {k}: exponents/coefficients missing or of unequal length")
        if any(a <= 0.0 for a in exps):
            raise ValueError(f"Z={z} shell {k}: exponents must be positive")
        if label == "sp":
            pco = tuple(float(x) for x in ent.get("p_coefficients", ()))
            if len(pco) != len(exps):
                raise ValueError(f"Z={z} shell {k}: 'sp' shell requires p_coefficients of matching length")
            out.append(ShellSpec(0, exps, coefs))
            out.append(ShellSpec(1, exps, pco))
        elif label in L_LABELS:
            out.append(ShellSpec(L_LABELS[label], exps, coefs))
        else:
            raise ValueError(f"Z={z} shell {k}: unknown angular momentum label '{label}'")
    return tuple(out)


def basis_table_from_dict(data: Mapping, name: str | None = None) -> BasisTable:
    """Build a table from the parsed TOML layout ``{name, elements: {Z: {shells: [...]}}}``."""
    elements: Dict[int, Tuple[ShellSpec, ...]] = {}
    for key, block in dict(data.get("elements", {})).items():
        z = int(key)
        elements[z] = _parse_shells(z, block.get("shells", ()))
    return BasisTable(name=str(name or data.get("name", "custom")).lower(), elements=elements)


@lru_cache(maxsize=None)
def load_basis_table(name_or_path: str | Path) -> BasisTable:
    """Load a basis table by packaged name (e.g. ``"sto-3g"``) or from a TOML file path."""
    p = Path(name_or_path)
    if not p.suffix:
        p = _DATA_DIR / f"{str(name_or_path).lower()}.toml"
    if not p.exists():
        raise FileNotFoundError(f"basis set file not found: {p}")
    with p.open("rb") as fh:
        data = _toml.load(fh)
    return basis_table_from_dict(data, name=data.get("name", p.stem))
