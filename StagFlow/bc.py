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
Boundary constraints of the velocity, pressure and temperature fields.

Single-point constraints (SPC) fix individual unknowns by their global dof
number. Two-point constraints (TPC) relate a boundary ghost point to its
interior owner, with the boundary value stored in a ghosted local array at
the ghost position (NaN: no value, the ghost mirrors the owner).
"""
from typing import TYPE_CHECKING, Iterator, Tuple

import numpy as np
import numpy.typing as npt

if TYPE_CHECKING:
    from .fdstag import StaggeredGrid

NDArray = npt.NDArray[np.floating]
IntArray = npt.NDArray[np.signedinteger]


class BCCtx:
    """
    Boundary condition context.

    Parameters
    ----------
    fs : StaggeredGrid
        Staggered grid, with coupled dof numbering computed.
    """

    def __init__(self, fs: "StaggeredGrid") -> None:

        self.fs = fs

        # two-point constraint boundary values
        self.bcvx = fs.da_x.create_local(np.nan)
        self.bcvy = fs.da_y.create_local(np.nan)
        self.bcvz = fs.da_z.create_local(np.nan)
        self.bcp = fs.da_cen.create_local(np.nan)
        self.bcT = fs.da_cen.create_local(np.nan)

        self.clear_spc()

    # ---------------------------
    # Single-point constraints
    # ---------------------------

    def clear_spc(self) -> None:
        self.vSPCList = np.empty(0, dtype=np.int64)
        self.vSPCVals = np.empty(0)
        self.pSPCList = np.empty(0, dtype=np.int64)
        self.pSPCVals = np.empty(0)

    def _check_owned(self, ids: IntArray) -> None:
        dof = self.fs.dof
        if ids.size and (ids.min() < dof.st or ids.max() >= dof.st + dof.ln):
            raise ValueError("Single-point constraints must refer to locally owned dofs")

    def add_velocity_spc(self, ids, vals) -> None:
        """Append velocity constraints (global dof numbers and values)."""
        ids = np.asarray(ids, dtype=np.int64).ravel()
        vals = np.broadcast_to(np.asarray(vals, dtype=float), ids.shape)
        self._check_owned(ids)
        self.vSPCList = np.concatenate([self.vSPCList, ids])
        self.vSPCVals = np.concatenate([self.vSPCVals, vals])

    def add_pressure_spc(self, ids, vals) -> None:
        """Append pressure constraints (global dof numbers and values)."""
        ids = np.asarray(ids, dtype=np.int64).ravel()
        vals = np.broadcast_to(np.asarray(vals, dtype=float), ids.shape)
        self._check_owned(ids)
        self.pSPCList = np.concatenate([self.pSPCList, ids])
        self.pSPCVals = np.concatenate([self.pSPCVals, vals])

    def spc(self) -> Iterator[Tuple[IntArray, NDArray]]:
        """Velocity and pressure constraint lists with their values."""
        yield self.vSPCList, self.vSPCVals
        yield self.pSPCList, self.pSPCVals

    # ---------------------------
    # Standard setups
    # ---------------------------

    def set_free_slip(self) -> None:
        """Zero normal velocity on all six box faces."""

        fs = self.fs

        if fs.dof.idxmod != 'coupled':
            raise ValueError("Boundary constraints need the coupled dof numbering")

        for axis, (da, idx) in enumerate(((fs.da_x, fs.dof.ivx),
                                          (fs.da_y, fs.dof.ivy),
                                          (fs.da_z, fs.dof.ivz))):
            owned = np.moveaxis(idx[da.owned()], 2 - axis, 0)
            ids = []
            if da.at_lower_boundary(axis):
                ids.append(owned[0].ravel())
            if da.at_upper_boundary(axis):
                ids.append(owned[-1].ravel())
            if ids:
                self.add_velocity_spc(np.concatenate(ids), 0.)

    def set_temperature(self, Tbot: float | None = None, Ttop: float | None = None) -> None:
        """Fixed temperature on the bottom and top boundary (None: zero heat flux)."""

        da = self.fs.da_cen

        if Tbot is not None and da.at_lower_boundary(2):
            self.bcT[0] = Tbot

        if Ttop is not None and da.at_upper_boundary(2):
            self.bcT[-1] = Ttop
