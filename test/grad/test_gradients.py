import pytest
import torch

from qcscf.config import GridConfig, SCFConfig
from qcscf.dispersion import D2Dispersion
from qcscf.errors import SCFNotConverged
from qcscf.grad.assembler import GradientAssembler
from qcscf.molecule import Molecule
from qcscf.scf.driver import SCFDriver, run_scf

HF_TIGHT = SCFConfig(energy_tol=1e-11, density_tol=1e-9, converge_cycles=2)


def _analytic(mol, cfg, **kw):
    driver = SCFDriver(mol, "sto-3g", cfg, **kw)
    res = driver.run()
    return GradientAssembler.for_driver(driver).compute(res)


def _fd(mol, cfg, atoms=None, comps=(0, 1, 2), h=1e-4, **kw):
    g = torch.zeros_like(mol.positions)
    atoms = range(mol.natoms) if atoms is None else atoms
    for a in atoms:
        for k in comps:
            plus = mol.positions.clone(); plus[a, k] += h
            minus = mol.positions.clone(); minus[a, k] -= h
            ep = run_scf(mol.with_positions(plus), "sto-3g", cfg, **kw).energy
            em = run_scf(mol.with_positions(minus), "sto-3g", cfg, **kw).energy
            g[a, k] = (ep - em) / (2 * h)
    return g


def test_h2_hf_gradient_matches_fd(h2):
    res = _analytic(h2, HF_TIGHT)
    fd = _fd(h2, HF_TIGHT, comps=(2,))
    assert torch.allclose(res.gradient[:, 2], fd[:, 2], atol=1e-6)
    assert torch.allclose(res.gradient[:, :2], torch.zeros(2, 2, dtype=torch.float64), atol=1e-10)
    assert res.energy == pytest.approx(-1.1167143251, abs=1e-8)


def test_lih_hf_gradient_matches_fd(lih):
    res = _analytic(lih, HF_TIGHT)
    fd = _fd(lih, HF_TIGHT, comps=(2,))
    assert torch.allclose(res.gradient[:, 2], fd[:, 2], atol=1e-6)


def test_water_hf_gradient_matches_fd(water):
    res = _analytic(water, HF_TIGHT)
    fd = _fd(water, HF_TIGHT, comps=(0, 1))
    assert torch.allclose(res.gradient[:, :2], fd[:, :2], atol=1e-6)
    # translational invariance
    assert torch.allclose(res.gradient.sum(0), torch.zeros(3, dtype=torch.float64), atol=1e-9)
    assert torch.allclose(res.forces, -res.gradient)
    assert set(res.terms) == {
        "nuclear_repulsion", "kinetic", "nuclear_attraction", "pulay", "two_electron", "dispersion"
    }


def test_unrestricted_gradient_matches_fd():
    oh = Molecule.from_symbols(["O", "H"], [[0, 0, 0], [0, 0, 1.9]], multiplicity=2)
    cfg = SCFConfig(energy_tol=1e-11, density_tol=1e-9, max_cycles=200)
    res = _analytic(oh, cfg)
    fd = _fd(oh, cfg, atoms=[1], comps=(2,))
    assert float(res.gradient[1, 2]) == pytest.approx(float(fd[1, 2]), abs=1e-6)


def test_dispersion_term_enters_energy_and_gradient(water):
    disp = D2Dispersion(s6=1.0)
    res = _analytic(water, HF_TIGHT, dispersion=disp)
    e_disp, g_disp = disp.evaluate(water)
    assert torch.allclose(res.terms["dispersion"], g_disp)
    plain = run_scf(water, "sto-3g", HF_TIGHT)
    assert res.energy == pytest.approx(plain.energy + float(e_disp), abs=1e-9)
    fd = _fd(water, HF_TIGHT, atoms=[1], comps=(0,), dispersion=disp)
    assert float(res.gradient[1, 0]) == pytest.approx(float(fd[1, 0]), abs=1e-6)


def test_lda_gradient_matches_fd_without_grid_response(h2):
    cfg = SCFConfig(
        method="lda",
        energy_tol=1e-11,
        density_tol=1e-9,
        grid=GridConfig(radial_points=90, angular_order=30),
    )
    res = _analytic(h2, cfg)
    assert "xc" in res.terms
    fd = _fd(h2, cfg, atoms=[1], comps=(2,))
    # fixed-grid gradient: grid-weight derivatives are neglected
    assert float(res.gradient[1, 2]) == pytest.approx(float(fd[1, 2]), abs=1e-3)


def test_gradient_requires_converged_scf(h2):
    driver = SCFDriver(h2, "sto-3g")
    with pytest.raises(SCFNotConverged):
        GradientAssembler.for_driver(driver).compute(driver.state)


def test_assembler_defaults_to_configured_dispersion(water):
    cfg = SCFConfig(
        method="pbe",
        dispersion="d2",
        energy_tol=1e-9,
        density_tol=1e-7,
        grid=GridConfig(radial_points=30, angular_order=12),
    )
    drv = SCFDriver(water, "sto-3g", cfg)
    res = drv.run()
    assert drv.e_disp < 0.0
    direct = GradientAssembler(drv.builder).compute(res)
    via_driver = GradientAssembler.for_driver(drv).compute(res)
    assert torch.allclose(direct.terms["dispersion"], via_driver.terms["dispersion"])
    assert torch.allclose(direct.gradient, via_driver.gradient, atol=1e-12)
    assert float(direct.terms["dispersion"].abs().max()) > 1e-6
