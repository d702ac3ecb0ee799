import pytest
import torch

from qcscf.device import DTYPE, get_device, set_default_dtype


def test_cpu_default():
    assert get_device() == torch.device("cpu")
    assert get_device("cpu") == torch.device("cpu")


def test_cuda_only_when_available():
    expected = "cuda" if torch.cuda.is_available() else "cpu"
    assert get_device("cuda").type == expected


def test_unknown_preference():
    with pytest.raises(ValueError):
        get_device("tpu")


def test_set_default_dtype():
    old = torch.get_default_dtype()
    try:
        set_default_dtype()
        assert torch.get_default_dtype() == DTYPE
    finally:
        torch.set_default_dtype(old)
