import numpy as np
import pytest

from qcscf.basis.shells import build_basis
from qcscf.integrals.kernel import IntegralKernel, quartet_block
from qcscf.integrals.screening import (
    quartet_degeneracy,
    quartet_permutations,
    schwarz_matrix,
    significant_quartets,
    unique_quartets,
)
from qcscf.molecule import Molecule


def test_eri_eightfold_symmetry(water):
    eri = IntegralKernel().eri_tensor(build_basis(water, "sto-3g"), screen=False).numpy()
    for axes in [(1, 0, 2, 3), (0, 1, 3, 2), (2, 3, 0, 1), (3, 2, 1, 0)]:
        assert np.allclose(eri, np.transpose(eri, axes), atol=1e-14)


@pytest.mark.parametrize('nshell', [1, 2, 3, 5])
def test_unique_quartets_cover_every_ordered_quartet_once(nshell):
    seen = {}
    total = 0
    for q in unique_quartets(nshell):
        total += quartet_degeneracy(q)
        for t, _ in quartet_permutations(q):
            assert t not in seen
            seen[t] = q
        assert len(quartet_permutations(q)) == quartet_degeneracy(q)
    assert total == nshell ** 4
    assert len(seen) == nshell ** 4


def test_schwarz_screening_has_no_false_negatives():
    # stretched geometry so that screening actually removes quartets
    mol = Molecule.from_symbols(["H", "H", "He", "H"], [[0, 0, 0], [0, 0, 1.4], [0, 0, 9.0], [0, 0, 16.0]], multiplicity=2)
    basis = build_basis(mol, "sto-3g")
    Q = schwarz_matrix(basis)
    threshold = 1e-6
    kept = set(significant_quartets(basis, Q, threshold))
    assert 0 < len(kept) < sum(1 for _ in unique_quartets(basis.nshells))
    pairs = {}
    for q in unique_quartets(basis.nshells):
        if q in kept:
            continue
        blk = quartet_block(basis, q, pairs)
        assert np.abs(blk).max() < threshold
    full = IntegralKernel(0.0).eri_tensor(basis, screen=False).numpy()
    screened = IntegralKernel(threshold).eri_tensor(basis).numpy()
    assert np.abs(full - screened).max() < threshold


def test_schwarz_bound_holds(water):
    basis = build_basis(water, "sto-3g")
    Q = schwarz_matrix(basis)
    pairs = {}
    for q in unique_quartets(basis.nshells):
        a, b, c, d = q
        blk = quartet_block(basis, q, pairs)
        assert np.abs(blk).max() <= Q[a, b] * Q[c, d] * (1 + 1e-10) + 1e-14
