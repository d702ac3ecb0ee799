from __future__ import annotations

"""Exchange-correlation functionals behind a uniform evaluation contract.

``Functional.evaluate(rho, grad)`` takes spin densities ``rho`` of shape
(nspin, N) and, for GGAs, their gradients ``grad`` of shape (nspin, 3, N).
For nspin == 1 the input is the total (closed-shell) density. It returns the
energy density per volume together with the potentials

    vrho  = d e / d rho_s          (nspin, N)
    vgrad = d e / d (grad rho_s)   (nspin, 3, N)    (None for LDA)

Built-in functionals write only the energy density in torch; potentials
follow from autograd. :class:`LibxcFunctional` routes the same contract to
libxc through ``pyscf.dft.libxc``.

Forms: Slater exchange; Perdew–Wang 1992 correlation; PBE exchange and
correlation (Perdew, Burke, Ernzerhof 1996); PBE0 with 25 % exact exchange.
"""

from dataclasses import dataclass
from math import log, pi
from typing import Optional

import numpy as np
import torch

from ..device import DTYPE

Tensor = torch.Tensor

__all__ = [
    "XCEvaluation",
    "Functional",
    "SlaterPW92",
    "PBE",
    "PBE0",
    "LibxcFunctional",
    "exact_exchange_fraction",
    "get_functional",
]

_DENS_CUTOFF = 1e-14

_CX = -0.75 * (3.0 / pi) ** (1.0 / 3.0)

# Perdew–Wang 1992: (A, alpha1, beta1, beta2, beta3, beta4)
_PW92_PARAMS = {
    "para": (0.031091, 0.21370, 7.5957, 3.5876, 1.6382, 0.49294),
    "ferro": (0.015545, 0.20548, 14.1189, 6.1977, 3.3662, 0.62517),
    "alpha": (0.016887, 0.11125, 10.357, 3.6231, 0.88026, 0.49671),
}
_FZ20 = 1.709921

_PBE_KAPPA = 0.804
_PBE_MU = 0.2195149727645171
_PBE_BETA = 0.06672455060314922
_PBE_GAMMA = (1.0 - log(2.0)) / pi ** 2


@dataclass
class XCEvaluation:
    exc: Tensor  # (N,) energy density per volume
    vrho: Tensor  # (nspin, N)
    vgrad: Optional[Tensor] = None  # (nspin, 3, N)


def _safe(x: Tensor, mask: Tensor, fill: float = 1.0) -> Tensor:
    return torch.where(mask, x, torch.full_like(x, fill))


def _pw92_g(rs: Tensor, params) -> Tensor:
    A, a1, b1, b2, b3, b4 = params
    srs = torch.sqrt(rs)
    den = 2.0 * A * (b1 * srs + b2 * rs + b3 * rs * srs + b4 * rs * rs)
    return -2.0 * A * (1.0 + a1 * rs) * torch.log1p(1.0 / den)


def pw92_epsilon(rho: Tensor, zeta: Tensor) -> Tensor:
    """Correlation energy per particle eps_c(rs, zeta)."""
    rs = (3.0 / (4.0 * pi * rho)) ** (1.0 / 3.0)
    ec0 = _pw92_g(rs, _PW92_PARAMS["para"])
    ec1 = _pw92_g(rs, _PW92_PARAMS["ferro"])
    ac = -_pw92_g(rs, _PW92_PARAMS["alpha"])
    zp = torch.clamp(1.0 + zeta, min=0.0)
    zm = torch.clamp(1.0 - zeta, min=0.0)
    fz = (zp ** (4.0 / 3.0) + zm ** (4.0 / 3.0) - 2.0) / (2.0 ** (4.0 / 3.0) - 2.0)
    z4 = zeta ** 4
    return ec0 + ac * fz / _FZ20 * (1.0 - z4) + (ec1 - ec0) * fz * z4


def slater_exchange_unpolarised(rho: Tensor) -> Tensor:
    return _CX * rho ** (4.0 / 3.0)


def pbe_exchange_unpolarised(rho: Tensor, sigma: Tensor) -> Tensor:
    kf = (3.0 * pi ** 2 * rho) ** (1.0 / 3.0)
    s2 = sigma / (4.0 * kf * kf * rho * rho)
    fx = 1.0 + _PBE_KAPPA - _PBE_KAPPA / (1.0 + _PBE_MU * s2 / _PBE_KAPPA)
    return slater_exchange_unpolarised(rho) * fx


def pbe_correlation(rho: Tensor, zeta: Tensor, sigma: Tensor) -> Tensor:
    """PBE correlation energy density (per volume) for total density and total sigma."""
    ec = pw92_epsilon(rho, zeta)
    zp = torch.clamp(1.0 + zeta, min=0.0)
    zm = torch.clamp(1.0 - zeta, min=0.0)
    phi = 0.5 * (zp ** (2.0 / 3.0) + zm ** (2.0 / 3.0))
    kf = (3.0 * pi ** 2 * rho) ** (1.0 / 3.0)
    ks = torch.sqrt(4.0 * kf / pi)
    t2 = sigma / (4.0 * phi * phi * ks * ks * rho * rho)
    phi3 = phi ** 3
    bg = _PBE_BETA / _PBE_GAMMA
    A = bg / torch.expm1(-ec / (_PBE_GAMMA * phi3))
    At2 = A * t2
    H = _PBE_GAMMA * phi3 * torch.log1p(bg * t2 * (1.0 + At2) / (1.0 + At2 + At2 * At2))
    return rho * (ec + H)


class Functional:
    """Base class for built-in functionals (energy density in torch)."""

    name = "none"
    kind = "lda"  # 'lda' | 'gga'
    exact_exchange = 0.0

    @property
    def needs_gradient(self) -> bool:
        return self.kind == "gga"

    def energy_density(self, rho_a: Tensor, rho_b: Tensor, saa: Tensor, sab: Tensor, sbb: Tensor) -> Tensor:
        raise NotImplementedError

    def evaluate(self, rho: Tensor, grad: Optional[Tensor] = None) -> XCEvaluation:
        nspin = rho.shape[0]
        if nspin not in (1, 2):
            raise ValueError(f"rho must have leading dimension 1 or 2, got {nspin}")
        if self.needs_gradient and grad is None:
            raise ValueError(f"{self.name} is a GGA and requires density gradients")
        r = rho.detach().clone().requires_grad_(True)
        g = grad.detach().clone().requires_grad_(True) if self.needs_gradient else None
        with torch.enable_grad():
            if nspin == 1:
                ra = rb = 0.5 * r[0]
                if g is not None:
                    s = (g[0] * g[0]).sum(0) * 0.25
                    saa = sab = sbb = s
                else:
                    saa = sab = sbb = torch.zeros_like(ra)
            else:
                ra, rb = r[0], r[1]
                if g is not None:
                    saa = (g[0] * g[0]).sum(0)
                    sab = (g[0] * g[1]).sum(0)
                    sbb = (g[1] * g[1]).sum(0)
                else:
                    saa = sab = sbb = torch.zeros_like(ra)
            e = self.energy_density(ra, rb, saa, sab, sbb)
            inputs = (r,) if g is None else (r, g)
            derivs = torch.autograd.grad(e.sum(), inputs, allow_unused=True)
        vrho = derivs[0] if derivs[0] is not None else torch.zeros_like(r)
        vgrad = None
        if g is not None:
            vgrad = derivs[1] if derivs[1] is not None else torch.zeros_like(g)
            vgrad = vgrad.detach()
        return XCEvaluation(e.detach(), vrho.detach(), vgrad)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def _spin_exchange(fn, rho_s: Tensor, sigma_ss: Optional[Tensor]) -> Tensor:
    """Spin scaling E_x[ra, rb] = (E_x[2 ra] + E_x[2 rb]) / 2 for one spin channel."""
    mask = rho_s > 0.5 * _DENS_CUTOFF
    r = _safe(rho_s, mask)
    if sigma_ss is None:
        val = 0.5 * fn(2.0 * r)
    else:
        val = 0.5 * fn(2.0 * r, 4.0 * _safe(sigma_ss, mask, 0.0))
    return torch.where(mask, val, torch.zeros_like(val))


def _correlation_inputs(rho_a: Tensor, rho_b: Tensor):
    rho = rho_a + rho_b
    mask = rho > _DENS_CUTOFF
    rs = _safe(rho, mask)
    zeta = torch.clamp((rho_a - rho_b) / rs, -1.0, 1.0)
    zeta = torch.where(mask, zeta, torch.zeros_like(zeta))
    return rho, mask, rs, zeta


class SlaterPW92(Functional):
    name = "lda"
    kind = "lda"

    def energy_density(self, rho_a, rho_b, saa, sab, sbb):
        ex = _spin_exchange(slater_exchange_unpolarised, rho_a, None) + _spin_exchange(
            slater_exchange_unpolarised, rho_b, None
        )
        _, mask, rho_safe, zeta = _correlation_inputs(rho_a, rho_b)
        ec = rho_safe * pw92_epsilon(rho_safe, zeta)
        return ex + torch.where(mask, ec, torch.zeros_like(ec))


class PBE(Functional):
    name = "pbe"
    kind = "gga"
    exchange_scale = 1.0

    def energy_density(self, rho_a, rho_b, saa, sab, sbb):
        ex = _spin_exchange(pbe_exchange_unpolarised, rho_a, saa) + _spin_exchange(
            pbe_exchange_unpolarised, rho_b, sbb
        )
        _, mask, rho_safe, zeta = _correlation_inputs(rho_a, rho_b)
        sigma = _safe(saa + 2.0 * sab + sbb, mask, 0.0)
        ec = pbe_correlation(rho_safe, zeta, sigma)
        return self.exchange_scale * ex + torch.where(mask, ec, torch.zeros_like(ec))


class PBE0(PBE):
    name = "pbe0"
    exact_exchange = 0.25
    exchange_scale = 0.75


def _to_tensor(a) -> Tensor:
    return torch.from_numpy(np.ascontiguousarray(a)).to(DTYPE)


class LibxcFunctional:
    """libxc functional evaluated through ``pyscf.dft.libxc`` (LDA and GGA only)."""

    def __init__(self, code: str) -> None:
        from pyscf.dft import libxc

        self.name = code
        xctype = libxc.xc_type(code)
        if xctype not in ("LDA", "GGA"):
            raise ValueError(f"libxc functional '{code}' of type {xctype} is not supported (LDA/GGA only)")
        self.kind = xctype.lower()
        self.exact_exchange = float(libxc.hybrid_coeff(code))

    @property
    def needs_gradient(self) -> bool:
        return self.kind == "gga"

    def evaluate(self, rho: Tensor, grad: Optional[Tensor] = None) -> XCEvaluation:
        from pyscf.dft import libxc

        nspin = rho.shape[0]
        r = rho.detach().cpu().numpy()
        g = grad.detach().cpu().numpy() if (grad is not None and self.needs_gradient) else None

        def pack(s: int):
            if g is None:
                return r[s]
            return np.concatenate([r[s][None, :], g[s]], axis=0)

        if nspin == 1:
            exc, vxc = libxc.eval_xc(self.name, pack(0), spin=0, deriv=1)[:2]
            e = exc * r[0]
            vrho = vxc[0][None, :]
            vgrad = None
            if g is not None:
                vgrad = (2.0 * vxc[1])[None, None, :] * g
        else:
            exc, vxc = libxc.eval_xc(self.name, (pack(0), pack(1)), spin=1, deriv=1)[:2]
            e = exc * (r[0] + r[1])
            vrho = np.ascontiguousarray(vxc[0].T)
            vgrad = None
            if g is not None:
                vs = vxc[1]
                va = 2.0 * vs[:, 0][None, :] * g[0] + vs[:, 1][None, :] * g[1]
                vb = 2.0 * vs[:, 2][None, :] * g[1] + vs[:, 1][None, :] * g[0]
                vgrad = np.stack([va, vb])
        return XCEvaluation(_to_tensor(e), _to_tensor(vrho), None if vgrad is None else _to_tensor(vgrad))

    def __getstate__(self):
        return {"name": self.name, "kind": self.kind, "exact_exchange": self.exact_exchange}

    def __setstate__(self, state):
        self.__dict__.update(state)

    def __repr__(self) -> str:
        return f"LibxcFunctional({self.name!r})"


_BUILTIN = {"lda": SlaterPW92, "pbe": PBE, "pbe0": PBE0}

# Methods without a density functional and their exact-exchange fraction
_WAVEFUNCTION = {"hf": 1.0, "hartree": 0.0}


def get_functional(method: str, backend: str = "builtin"):
    """Return the functional object for ``method`` or None for HF/Hartree."""
    method = method.lower()
    if method in _WAVEFUNCTION:
        return None
    if backend == "pyscf":
        return LibxcFunctional(method)
    if method not in _BUILTIN:
        raise ValueError(f"Unknown functional '{method}' (builtin: {', '.join(sorted(_BUILTIN))})")
    return _BUILTIN[method]()


def exact_exchange_fraction(method: str, functional=None) -> float:
    method = method.lower()
    if method in _WAVEFUNCTION:
        return _WAVEFUNCTION[method]
    if functional is None:
        raise ValueError(f"functional required to determine exact exchange for '{method}'")
    return float(functional.exact_exchange)
