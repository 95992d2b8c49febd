#
# Copyright 2025 Hannes Holey
#           2025 Christoph Huber
#
# ### MIT License
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
#
"""
Default visco-elasto-plastic constitutive closure.

Every phase combines linear and power-law (dislocation) creep, Maxwell
elasticity and Drucker-Prager plasticity. Per-phase results are averaged with
the phase ratios of each point. All functions are vectorized over points.
"""
from dataclasses import dataclass, fields
from typing import Sequence

import numpy as np
import numpy.typing as npt

from ..solvar import SolVarBulk, SolVarCell, SolVarDev, SolVarEdge

NDArray = npt.NDArray[np.floating]


class ConstitutiveError(RuntimeError):
    """Failure of the local constitutive update."""


@dataclass
class Material:
    """
    Material parameters of one phase.

    Attributes
    ----------
    rho : float
        Reference density.
    eta : float
        Linear viscosity (0: inactive).
    Bn : float
        Power-law creep constant in D = Bn * tau^n (0: inactive).
    n : float
        Power-law exponent.
    G : float
        Shear modulus (0: no elasticity).
    K : float
        Bulk modulus (0: incompressible).
    alpha : float
        Thermal expansion coefficient.
    cohesion : float
        Cohesion (0 together with zero friction: no plasticity).
    friction : float
        Friction angle in degrees.
    """
    rho: float = 0.
    eta: float = 0.
    Bn: float = 0.
    n: float = 1.
    G: float = 0.
    K: float = 0.
    alpha: float = 0.
    cohesion: float = 0.
    friction: float = 0.


@dataclass
class MatParLim:
    """Material parameter limits and switches of the constitutive update."""
    eta_min: float = 0.
    eta_max: float = np.inf
    eta_ref: float = 1.
    DII_ref: float | None = None
    TRef: float = 0.
    Rugc: float = 8.3144621
    eta_atol: float = 0.
    eta_rtol: float = 1e-8
    DII_atol: float = 0.
    DII_rtol: float = 1e-8
    minCh: float = 0.
    minFr: float = 0.
    tauUlt: float = np.inf
    shearHeatEff: float = 1.
    quasiHarmAvg: bool = False
    initGuess: bool = False

    def __post_init__(self):
        if self.DII_ref is None or not self.DII_ref > 0.:
            raise ValueError("Reference strain rate is not defined. Use DII_ref parameter")

    @classmethod
    def from_dict(cls, d: dict) -> "MatParLim":
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in names})


# ---------------------------
# Creep laws
# ---------------------------

def dislocation_viscosity(DII: NDArray, Bn: float, n: float) -> NDArray:
    r"""Power-law creep viscosity.

    .. math::
        \eta = \frac{1}{2} B_n^{-1/n} \dot\varepsilon_{II}^{1/n - 1}

    Parameters
    ----------
    DII : ndarray
        Strain rate invariant.
    Bn : float
        Creep constant.
    n : float
        Stress exponent.

    Returns
    -------
    ndarray
        Creep viscosity.
    """
    return 0.5 * Bn**(-1. / n) * DII**(1. / n - 1.)


def creep_viscosity(DII: NDArray, mat: Material, lim: MatParLim) -> NDArray:
    """Combined linear and power-law creep viscosity, limited to [eta_min, eta_max]."""

    inv_eta = np.zeros_like(DII)

    if mat.eta > 0.:
        inv_eta += 1. / mat.eta

    if mat.Bn > 0.:
        inv_eta += 1. / dislocation_viscosity(DII, mat.Bn, mat.n)

    with np.errstate(divide='ignore'):
        eta = np.where(inv_eta > 0., 1. / inv_eta, lim.eta_ref)

    return np.clip(eta, lim.eta_min, lim.eta_max)


def yield_stress(p: NDArray, mat: Material, lim: MatParLim) -> NDArray | None:
    r"""Drucker-Prager yield stress.

    .. math::
        \tau_y = C \cos\phi + p \sin\phi, \quad \tau_y \le \tau_{ult}

    Returns None if the phase has no plasticity.
    """
    if mat.cohesion <= 0. and mat.friction <= 0.:
        return None

    ch = max(mat.cohesion, lim.minCh)
    fr = np.deg2rad(max(mat.friction, lim.minFr))

    tauY = ch * np.cos(fr) + p * np.sin(fr)

    return np.clip(tauY, 0., lim.tauUlt)


# ---------------------------
# Closure
# ---------------------------

class Rheology:
    """
    Constitutive closure over a list of material phases.

    Parameters
    ----------
    phases : sequence of Material
        Material phases.
    lim : MatParLim
        Parameter limits.
    """

    def __init__(self, phases: Sequence[Material], lim: MatParLim) -> None:

        if len(phases) == 0:
            raise ValueError("At least one material phase is required")

        self.phases = list(phases)
        self.lim = lim

    @property
    def num_phases(self) -> int:
        return len(self.phases)

    def _average(self, phRat: NDArray, values: Sequence[NDArray], quasi_harmonic: bool = False) -> NDArray:
        if quasi_harmonic:
            return sum(phRat[..., i] * v**0.25 for i, v in enumerate(values))**4
        return sum(phRat[..., i] * v for i, v in enumerate(values))

    @staticmethod
    def _check(name: str, *arrays: NDArray) -> None:
        for a in arrays:
            if not np.all(np.isfinite(a)):
                raise ConstitutiveError(f"Non-finite {name} in constitutive update")

    def get_i2gdt(self, phRat: NDArray, dt: float) -> NDArray:
        """Inverse elastic parameter 1 / (2 G dt) averaged over phases (0 for inelastic phases)."""
        coef = [1. / (2. * m.G * dt) if m.G > 0. else 0. for m in self.phases]
        return phRat @ np.array(coef)

    def dev_const_eq(self,
                     dev: SolVarDev,
                     phRat: NDArray,
                     dt: float,
                     p: NDArray,
                     T: NDArray) -> NDArray:
        """
        Deviatoric constitutive update.

        Sets the effective viscosity and plastic strain rate of ``dev`` from its
        strain rate invariant ``DII``.

        Parameters
        ----------
        dev : SolVarDev
            Deviatoric state.
        phRat : ndarray
            Phase ratios, shape (..., num_phases).
        dt : float
            Time step.
        p : ndarray
            Pressure.
        T : ndarray
            Temperature.

        Returns
        -------
        ndarray
            Creep viscosity.
        """
        lim = self.lim

        DII = np.where(dev.DII > lim.DII_atol, dev.DII, lim.DII_ref)
        if lim.initGuess:
            DII = np.full_like(DII, lim.DII_ref)

        eta_cr, eta_eff, DIIpl = [], [], []

        for mat in self.phases:

            eta = creep_viscosity(DII, mat, lim)
            eta_cr.append(eta)

            # Maxwell visco-elastic viscosity
            if mat.G > 0.:
                eta = 1. / (1. / eta + 1. / (mat.G * dt))

            tauY = yield_stress(p, mat, lim)

            if tauY is None:
                DIIpl.append(np.zeros_like(DII))
            else:
                plastic = 2. * eta * DII > tauY
                DIIpl.append(np.where(plastic, DII - tauY / (2. * eta), 0.))
                eta = np.where(plastic, tauY / (2. * DII), eta)

            eta_eff.append(np.clip(eta, lim.eta_min, lim.eta_max))

        eta_creep = self._average(phRat, eta_cr, lim.quasiHarmAvg)

        dev.eta[...] = self._average(phRat, eta_eff, lim.quasiHarmAvg)
        dev.DIIpl[...] = self._average(phRat, DIIpl)

        self._check('viscosity', dev.eta, eta_creep)

        return eta_creep

    def vol_const_eq(self,
                     bulk: SolVarBulk,
                     phRat: NDArray,
                     dt: float,
                     p: NDArray,
                     T: NDArray) -> None:
        r"""
        Volumetric constitutive update.

        .. math::
            \rho = \sum_i \phi_i \rho_i (1 + p / K_i - \alpha_i (T - T_{ref}))

        Sets density, 1 / (K dt) and thermal expansion of ``bulk``.
        """
        lim = self.lim

        rho, IKdt, alpha = [], [], []

        for mat in self.phases:
            beta = 1. / mat.K if mat.K > 0. else 0.
            rho.append(mat.rho * (1. + beta * p - mat.alpha * (T - lim.TRef)))
            IKdt.append(np.full_like(p, beta / dt))
            alpha.append(np.full_like(p, mat.alpha))

        bulk.rho[...] = self._average(phRat, rho)
        bulk.IKdt[...] = self._average(phRat, IKdt)
        bulk.alpha[...] = self._average(phRat, alpha)

        self._check('density', bulk.rho)

    def get_stress_cell(self, sv: SolVarCell, XX: NDArray, YY: NDArray, ZZ: NDArray) -> None:
        """Diagonal deviatoric stresses and shear heating at cell centers."""

        eta = sv.dev.eta

        sv.sxx[...] = 2. * eta * XX
        sv.syy[...] = 2. * eta * YY
        sv.szz[...] = 2. * eta * ZZ

        sv.dev.Hr[...] = self.lim.shearHeatEff * (sv.sxx * sv.dxx + sv.syy * sv.dyy + sv.szz * sv.dzz)

        self._check('stress', sv.sxx, sv.syy, sv.szz)

    def get_stress_edge(self, sv: SolVarEdge, XY: NDArray) -> None:
        """Shear stress and shear heating at edges."""

        sv.s[...] = 2. * sv.dev.eta * XY
        sv.dev.Hr[...] = 2. * self.lim.shearHeatEff * sv.s * sv.d

        self._check('stress', sv.s)
