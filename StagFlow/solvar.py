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
Per-point solution variables of the constitutive update.

All containers are structure-of-arrays over the owned points of one point
set, shaped like the owned part of the distributed array (nz, ny, nx).
Phase ratios of all point sets share one contiguous buffer.
"""
from dataclasses import dataclass, fields
from typing import List, Sequence, Tuple

import numpy as np
import numpy.typing as npt

NDArray = npt.NDArray[np.floating]


@dataclass
class SolVarDev:
    """
    Deviatoric state.

    Attributes
    ----------
    DII : ndarray
        Square root of the second invariant of the effective strain rate.
    eta : ndarray
        Effective viscosity.
    I2Gdt : ndarray
        Inverse elastic parameter 1 / (2 G dt).
    Hr : ndarray
        Shear heating.
    DIIpl : ndarray
        Plastic strain rate.
    """
    DII: NDArray
    eta: NDArray
    I2Gdt: NDArray
    Hr: NDArray
    DIIpl: NDArray

    @classmethod
    def zeros(cls, shape: Tuple[int, ...]) -> "SolVarDev":
        return cls(*[np.zeros(shape) for _ in fields(cls)])


@dataclass
class SolVarBulk:
    """
    Volumetric state.

    Attributes
    ----------
    theta : ndarray
        Volumetric strain rate.
    rho : ndarray
        Density.
    IKdt : ndarray
        Inverse bulk modulus times time step, 1 / (K dt).
    alpha : ndarray
        Thermal expansion.
    pn, Tn : ndarray
        Pressure and temperature history.
    """
    theta: NDArray
    rho: NDArray
    IKdt: NDArray
    alpha: NDArray
    pn: NDArray
    Tn: NDArray

    @classmethod
    def zeros(cls, shape: Tuple[int, ...]) -> "SolVarBulk":
        return cls(*[np.zeros(shape) for _ in fields(cls)])


@dataclass
class SolVarCell:
    """Cell-center state: deviatoric and bulk state, diagonal stresses, strain rates and stress history."""
    dev: SolVarDev
    bulk: SolVarBulk
    phRat: NDArray
    sxx: NDArray
    syy: NDArray
    szz: NDArray
    hxx: NDArray
    hyy: NDArray
    hzz: NDArray
    dxx: NDArray
    dyy: NDArray
    dzz: NDArray
    eta_creep: NDArray

    @classmethod
    def zeros(cls, shape: Tuple[int, ...], phRat: NDArray) -> "SolVarCell":
        n = len(fields(cls)) - 3
        return cls(SolVarDev.zeros(shape), SolVarBulk.zeros(shape), phRat,
                   *[np.zeros(shape) for _ in range(n)])


@dataclass
class SolVarEdge:
    """Edge state: deviatoric state, shear stress, its history and the raw shear strain rate."""
    dev: SolVarDev
    phRat: NDArray
    s: NDArray
    h: NDArray
    d: NDArray

    @classmethod
    def zeros(cls, shape: Tuple[int, ...], phRat: NDArray) -> "SolVarEdge":
        return cls(SolVarDev.zeros(shape), phRat, np.zeros(shape), np.zeros(shape), np.zeros(shape))


def allocate_phase_ratios(num_phases: int,
                          shapes: Sequence[Tuple[int, ...]]) -> Tuple[NDArray, List[NDArray]]:
    """
    Allocate the phase ratios of several point sets in one buffer.

    Parameters
    ----------
    num_phases : int
        Number of material phases.
    shapes : sequence of tuple
        Owned shape of every point set.

    Returns
    -------
    buffer : ndarray
        Flat buffer of all phase ratios.
    views : list of ndarray
        Per point set views of shape ``shape + (num_phases,)`` into the buffer.
    """
    sizes = [int(np.prod(s)) * num_phases for s in shapes]
    buffer = np.zeros(sum(sizes))

    views = []
    offset = 0
    for shape, size in zip(shapes, sizes):
        views.append(buffer[offset:offset + size].reshape(tuple(shape) + (num_phases,)))
        offset += size

    return buffer, views
