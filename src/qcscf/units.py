from __future__ import annotations

"""Physical constants and the element table (H–Ar).

Internal units are atomic units throughout: bohr for lengths and Hartree for
energies. Conversions are only applied at the outer surfaces (ASE calculator,
convenience constructors).
"""

from typing import Dict, List

__all__ = [
    "BOHR_TO_ANGSTROM",
    "ANGSTROM_TO_BOHR",
    "HARTREE_TO_EV",
    "AU_TO_DEBYE",
    "AMU_TO_ME",
    "HARTREE_TO_WAVENUMBER",
    "SYMBOLS",
    "MASSES",
    "atomic_number",
    "symbol",
]

BOHR_TO_ANGSTROM = 0.529177210903
ANGSTROM_TO_BOHR = 1.0 / BOHR_TO_ANGSTROM
HARTREE_TO_EV = 27.211386245988
AU_TO_DEBYE = 2.541746473
AMU_TO_ME = 1822.888486209
HARTREE_TO_WAVENUMBER = 219474.6313632

# Index = atomic number; index 0 is a dummy entry.
SYMBOLS: List[str] = [
    "X",
    "H", "He",
    "Li", "Be", "B", "C", "N", "O", "F", "Ne",
    "Na", "Mg", "Al", "Si", "P", "S", "Cl", "Ar",
]

# Standard atomic weights (amu)
MASSES: List[float] = [
    0.0,
    1.00794, 4.002602,
    6.941, 9.012182, 10.811, 12.0107, 14.0067, 15.9994, 18.9984032, 20.1797,
    22.98976928, 24.3050, 26.9815386, 28.0855, 30.973762, 32.065, 35.453, 39.948,
]

_Z_BY_SYMBOL: Dict[str, int] = {s.lower(): z for z, s in enumerate(SYMBOLS) if z > 0}


def atomic_number(sym: str | int) -> int:
    """Return the atomic number for an element symbol (case-insensitive) or pass an int through."""
    if isinstance(sym, int):
        z = sym
    else:
        key = sym.strip().lower()
        if key not in _Z_BY_SYMBOL:
            raise ValueError(f"Unknown element symbol '{sym}' (supported: H–Ar)")
        z = _Z_BY_SYMBOL[key]
    if not 1 <= z < len(SYMBOLS):
        raise ValueError(f"Unsupported atomic number {z} (supported: 1–{len(SYMBOLS) - 1})")
    return z


def symbol(z: int) -> str:
    if not 1 <= int(z) < len(SYMBOLS):
        raise ValueError(f"Unsupported atomic number {z}")
    return SYMBOLS[int(z)]
