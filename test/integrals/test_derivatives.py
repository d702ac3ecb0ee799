import numpy as np
import pytest

from qcscf.basis.shells import build_basis
from qcscf.integrals.kernel import IntegralKernel, point_charges
from qcscf.molecule import Molecule

EPS = 1e-5

# H with an extra d shell so that l = 2 blocks are exercised
D_BASIS = {
    "name": "test-spd",
    "elements": {
        "1": {"shells": [
            {"l": "s", "exponents": [3.42525091, 0.62391373, 0.16885540], "coefficients": [0.15432897, 0.53532814, 0.44463454]},
            {"l": "d", "exponents": [0.9], "coefficients": [1.0]},
        ]},
        "8": {"shells": [
            {"l": "s", "exponents": [130.70932, 23.808861, 6.4436083], "coefficients": [0.15432897, 0.53532814, 0.44463454]},
            {"l": "sp", "exponents": [5.0331513, 1.1695961, 0.3803890], "coefficients": [-0.09996723, 0.39951283, 0.70011547], "p_coefficients": [0.15591627, 0.60768372, 0.39195739]},
        ]},
    },
}


def _shells():
    mol = Molecule.from_symbols(["O", "H"], [[0.0, 0.1, -0.2], [0.3, -0.4, 1.7]])
    return mol, build_basis(mol, D_BASIS).shells


def _shift(shell, k, h):
    c = shell.center.copy()
    c[k] += h
    return shell.moved(c)


def _pairs(shells):
    return [(shells[i], shells[j]) for i in range(len(shells)) for j in range(len(shells)) if i != j]


def test_normalised_cartesian_components():
    mol, shells = _shells()
    basis = build_basis(mol, D_BASIS)
    S = IntegralKernel().overlap_matrix(basis)
    assert np.allclose(S.diagonal().numpy(), 1.0, atol=1e-10)


@pytest.mark.parametrize('fn', ['overlap', 'kinetic'])
def test_one_electron_bra_derivative_matches_fd(fn):
    _, shells = _shells()
    block = getattr(IntegralKernel, fn)
    for sa, sb in _pairs(shells):
        d = block(sa, sb, deriv=1)
        for k in range(3):
            fd = (block(_shift(sa, k, EPS), sb) - block(_shift(sa, k, -EPS), sb)) / (2 * EPS)
            assert np.allclose(d[k], fd, rtol=1e-6, atol=1e-5)


def test_nuclear_attraction_derivatives_match_fd():
    mol, shells = _shells()
    charges, centers = point_charges(mol)
    for sa, sb in _pairs(shells)[:6]:
        dA, dB, dC = IntegralKernel.nuclear(sa, sb, charges, centers, deriv=1)
        for k in range(3):
            fdA = (
                IntegralKernel.nuclear(_shift(sa, k, EPS), sb, charges, centers)
                - IntegralKernel.nuclear(_shift(sa, k, -EPS), sb, charges, centers)
            ) / (2 * EPS)
            fdB = (
                IntegralKernel.nuclear(sa, _shift(sb, k, EPS), charges, centers)
                - IntegralKernel.nuclear(sa, _shift(sb, k, -EPS), charges, centers)
            ) / (2 * EPS)
            assert np.allclose(dA[k], fdA, atol=1e-6)
            assert np.allclose(dB[k], fdB, atol=1e-6)
            for c in range(centers.shape[0]):
                cp = centers.copy(); cp[c, k] += EPS
                cm = centers.copy(); cm[c, k] -= EPS
                fdC = (IntegralKernel.nuclear(sa, sb, charges, cp) - IntegralKernel.nuclear(sa, sb, charges, cm)) / (2 * EPS)
                assert np.allclose(dC[c, k], fdC, atol=1e-6)


def test_eri_derivatives_match_fd():
    _, shells = _shells()
    quartets = [(0, 3, 2, 1), (2, 2, 4, 3), (1, 4, 0, 3)]
    for q in quartets:
        sh = [shells[i] for i in q]
        d = IntegralKernel.eri(*sh, deriv=1)
        assert d.shape[:2] == (4, 3)
        for centre in range(4):
            for k in range(3):
                plus = list(sh); plus[centre] = _shift(sh[centre], k, EPS)
                minus = list(sh); minus[centre] = _shift(sh[centre], k, -EPS)
                fd = (IntegralKernel.eri(*plus) - IntegralKernel.eri(*minus)) / (2 * EPS)
                assert np.allclose(d[centre, k], fd, atol=1e-6)
        # translational invariance
        assert np.allclose(d.sum(0), 0.0, atol=1e-10)
