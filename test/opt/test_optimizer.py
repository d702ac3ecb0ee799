import pytest
import torch

from qcscf.config import OptimizerConfig, SCFConfig
from qcscf.errors import JobCancelled, OptimizerMaxStepsExceeded, OptimizerStepRejectionLimitExceeded
from qcscf.molecule import Molecule
from qcscf.opt.optimizer import EnergyGradientEngine, Evaluation, GeometryOptimizer
from qcscf.opt.state import OptimizerStatus
from qcscf.scf.driver import CancellationToken

SCF = SCFConfig(energy_tol=1e-10, density_tol=1e-8)
TIGHT = OptimizerConfig(max_force=1e-5, max_step=1e-4)


class ModelEngine:
    """Analytic potential standing in for the SCF engine."""

    def __init__(self, fn):
        self.fn = fn
        self.calls = 0

    def basis_identity(self, molecule):
        return "model"

    def evaluate(self, molecule, guess_density=None):
        self.calls += 1
        x = molecule.positions.detach().clone().requires_grad_(True)
        e = self.fn(x)
        g, = torch.autograd.grad(e, x)
        return Evaluation(molecule, float(e), g.detach(), torch.zeros(1), None, None)


def _stretched_h2(r=1.6):
    return Molecule(torch.tensor([1, 1]), torch.tensor([[0.0, 0.0, 0.0], [0.0, 0.0, r]], dtype=torch.float64))


def _bond(mol):
    return float(torch.linalg.norm(mol.positions[1] - mol.positions[0]))


def test_h2_optimisation_reaches_equilibrium():
    opt = GeometryOptimizer(EnergyGradientEngine("sto-3g", SCF), _stretched_h2(), TIGHT)
    res = opt.run()
    assert res.converged
    assert _bond(res.molecule) == pytest.approx(1.346, abs=2e-3)
    assert res.state.max_force < 1e-5
    energies = res.state.energies
    assert all(b <= a + 1e-8 for a, b in zip(energies, energies[1:]))
    assert res.energy < energies[0]


def test_quadratic_model_converges_quickly():
    target = torch.tensor([[0.1, 0.2, -0.3], [1.0, -0.5, 0.7]], dtype=torch.float64)
    k = torch.tensor([0.8, 0.3, 0.5], dtype=torch.float64)
    engine = ModelEngine(lambda x: 0.5 * (k * (x - target) ** 2).sum())
    mol = Molecule(torch.tensor([1, 1]), torch.zeros((2, 3), dtype=torch.float64))
    res = GeometryOptimizer(engine, mol, OptimizerConfig(max_force=1e-8, max_step=1e-7, trust_radius=1.0)).run()
    assert res.converged
    assert torch.allclose(res.molecule.positions, target, atol=1e-6)


def test_uphill_steps_are_rejected_until_limit():
    # energy always rises away from the start although the gradient points downhill
    start = torch.zeros((2, 3), dtype=torch.float64)
    start[1, 2] = 1.5
    direction = torch.ones((2, 3), dtype=torch.float64)
    eps = 1e-6
    engine = ModelEngine(
        lambda x: (direction * (x - start)).sum() + 10.0 * ((((x - start) ** 2).sum() + eps ** 2).sqrt() - eps)
    )
    mol = Molecule(torch.tensor([1, 1]), start)
    states = []
    cfg = OptimizerConfig(max_rejections=3, trust_radius=0.3)
    opt = GeometryOptimizer(engine, mol, cfg, callback=lambda st: states.append((st.status, st.trust_radius)))
    with pytest.raises(OptimizerStepRejectionLimitExceeded) as info:
        opt.run()
    assert info.value.rejections == 3
    assert [s for s, _ in states] == [OptimizerStatus.REJECTED, OptimizerStatus.REJECTED, OptimizerStatus.FAILED]
    radii = [r for _, r in states]
    assert radii[0] < 0.3 and radii[1] < radii[0]
    # the geometry never moved
    assert torch.equal(opt.state.molecule.positions, mol.positions)


def test_max_steps_exceeded():
    opt = GeometryOptimizer(EnergyGradientEngine("sto-3g", SCF), _stretched_h2(2.5), OptimizerConfig(max_steps=1))
    with pytest.raises(OptimizerMaxStepsExceeded) as info:
        opt.run()
    assert info.value.steps == 1
    assert opt.state.status is OptimizerStatus.FAILED


def test_cancellation_between_steps():
    token = CancellationToken()
    token.cancel()
    opt = GeometryOptimizer(EnergyGradientEngine("sto-3g", SCF), _stretched_h2(), cancel=token)
    with pytest.raises(JobCancelled):
        opt.run()
    assert opt.state.evaluations == 0


def test_lbfgs_quadratic_model():
    target = torch.tensor([[0.1, 0.2, -0.3], [1.0, -0.5, 0.7]], dtype=torch.float64)
    k = torch.tensor([0.8, 0.3, 0.5], dtype=torch.float64)
    engine = ModelEngine(lambda x: 0.5 * (k * (x - target) ** 2).sum())
    mol = Molecule(torch.tensor([1, 1]), torch.zeros((2, 3), dtype=torch.float64))
    cfg = OptimizerConfig(max_force=1e-8, max_step=1e-7, trust_radius=1.0, update="lbfgs", memory=4)
    res = GeometryOptimizer(engine, mol, cfg).run()
    assert res.converged
    assert torch.allclose(res.molecule.positions, target, atol=1e-6)
    assert 0 < len(res.state.s_history) <= 4
    # the dense Hessian is not used by L-BFGS
    assert torch.equal(res.state.hessian, cfg.initial_hessian * torch.eye(6, dtype=torch.float64))


def test_h2_lbfgs_reaches_equilibrium():
    cfg = OptimizerConfig(max_force=1e-5, max_step=1e-4, update="lbfgs")
    res = GeometryOptimizer(EnergyGradientEngine("sto-3g", SCF), _stretched_h2(), cfg).run()
    assert res.converged
    assert _bond(res.molecule) == pytest.approx(1.346, abs=2e-3)
    assert res.energy < res.state.energies[0]
