import sys
from pathlib import Path

import pytest
import torch

# Ensure local src directory is importable as package root for qcscf
root = Path(__file__).resolve().parents[1]
src = root / 'src'
if str(src) not in sys.path:
    sys.path.insert(0, str(src))

from qcscf.molecule import Molecule  # noqa: E402


@pytest.fixture
def h2():
    return Molecule(torch.tensor([1, 1]), torch.tensor([[0.0, 0.0, 0.0], [0.0, 0.0, 1.4]], dtype=torch.float64))


@pytest.fixture
def water():
    # Crawford programming-project geometry (bohr)
    return Molecule(
        torch.tensor([8, 1, 1]),
        torch.tensor(
            [
                [0.0, -0.143225816552, 0.0],
                [1.638036840407, 1.136548822547, 0.0],
                [-1.638036840407, 1.136548822547, 0.0],
            ],
            dtype=torch.float64,
        ),
    )


@pytest.fixture
def lih():
    return Molecule(torch.tensor([3, 1]), torch.tensor([[0.0, 0.0, 0.0], [0.0, 0.0, 3.0]], dtype=torch.float64))
