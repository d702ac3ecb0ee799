import pytest
import torch

from qcscf.basis.shells import build_basis
from qcscf.integrals.kernel import IntegralKernel


# Szabo & Ostlund, Modern Quantum Chemistry, section 3.5.2 (H2, STO-3G, R = 1.4 bohr)
SZABO = {
    "S12": 0.6593,
    "T11": 0.7600,
    "T12": 0.2365,
    "H11": -1.1204,
    "H12": -0.9584,
    "1111": 0.7746,
    "1122": 0.5697,
    "2121": 0.2970,
    "2111": 0.4441,
}


def test_h2_one_electron_integrals(h2):
    basis = build_basis(h2, "sto-3g")
    k = IntegralKernel()
    S = k.overlap_matrix(basis)
    T = k.kinetic_matrix(basis)
    H = k.core_hamiltonian(basis, h2)
    assert torch.allclose(S.diagonal(), torch.ones(2, dtype=torch.float64), atol=1e-10)
    assert float(S[0, 1]) == pytest.approx(SZABO["S12"], abs=1e-4)
    assert float(T[0, 0]) == pytest.approx(SZABO["T11"], abs=1e-4)
    assert float(T[0, 1]) == pytest.approx(SZABO["T12"], abs=1e-4)
    assert float(H[0, 0]) == pytest.approx(SZABO["H11"], abs=1e-4)
    assert float(H[0, 1]) == pytest.approx(SZABO["H12"], abs=1e-4)
    assert torch.allclose(H, H.T)


def test_h2_two_electron_integrals(h2):
    basis = build_basis(h2, "sto-3g")
    eri = IntegralKernel().eri_tensor(basis)
    assert float(eri[0, 0, 0, 0]) == pytest.approx(SZABO["1111"], abs=1e-4)
    assert float(eri[1, 1, 1, 1]) == pytest.approx(SZABO["1111"], abs=1e-4)
    assert float(eri[0, 0, 1, 1]) == pytest.approx(SZABO["1122"], abs=1e-4)
    assert float(eri[1, 0, 1, 0]) == pytest.approx(SZABO["2121"], abs=1e-4)
    assert float(eri[1, 0, 0, 0]) == pytest.approx(SZABO["2111"], abs=1e-4)


def test_nuclear_repulsion_water(water):
    assert water.nuclear_repulsion() == pytest.approx(8.002367061810450, abs=1e-10)
