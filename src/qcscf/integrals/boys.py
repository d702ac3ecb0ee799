from __future__ import annotations

"""Boys function F_n(T) = int_0^1 t^{2n} exp(-T t^2) dt, vectorised over T.

For T above a small cutoff the closed form through the regularised lower
incomplete gamma function is used,

    F_n(T) = Gamma(n + 1/2) P(n + 1/2, T) / (2 T^{n + 1/2}),

which is accurate for all orders needed here (no upward recurrence, hence
no cancellation). Below the cutoff a three-term Taylor series is exact to
double precision.
"""

import numpy as np
from scipy.special import gamma, gammainc

__all__ = ["boys"]

_SMALL_T = 1e-8


def boys(n_max: int, T: np.ndarray) -> np.ndarray:
    """Return F_n(T) for n = 0..n_max as an array of shape (n_max + 1, *T.shape)."""
    T = np.asarray(T, dtype=np.float64)
    n = np.arange(n_max + 1, dtype=np.float64).reshape((-1,) + (1,) * T.ndim)
    a = n + 0.5
    small = T < _SMALL_T
    Ts = np.where(small, 1.0, T)
    out = 0.5 * gamma(a) * gammainc(a, Ts) / Ts ** a
    series = 1.0 / (2.0 * n + 1.0) - T / (2.0 * n + 3.0) + T * T / (2.0 * (2.0 * n + 5.0))
    return np.where(small, series, out)
