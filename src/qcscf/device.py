from __future__ import annotations

"""Precision and device defaults shared by every module."""

from typing import Optional

import torch

__all__ = ["DTYPE", "get_device", "set_default_dtype"]

# SCF thresholds of 1e-8 Hartree are meaningless in float32.
DTYPE = torch.float64


def get_device(prefer: Optional[str] = None) -> torch.device:
    """CPU unless ``prefer="cuda"`` and a GPU is present.

    Integral kernels always run on the host; a GPU only helps the dense
    linear algebra of large systems.
    """
    if prefer == "cuda" and torch.cuda.is_available():
        return torch.device("cuda")
    if prefer not in (None, "cpu", "cuda"):
        raise ValueError(f"Unknown device preference '{prefer}'")
    return torch.device("cpu")


def set_default_dtype(dtype: torch.dtype = DTYPE) -> None:
    torch.set_default_dtype(dtype)
