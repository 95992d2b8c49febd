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
"""Degree-of-freedom numbering of the velocity and pressure unknowns."""
from typing import TYPE_CHECKING

from mpi4py import MPI
import numpy as np
import numpy.typing as npt

if TYPE_CHECKING:
    from .fdstag import StaggeredGrid

IntArray = npt.NDArray[np.signedinteger]

IDXMODES = ('coupled', 'uncoupled')


class DOFIndex:
    """
    Global dof numbers of the local velocity and pressure points.

    The index arrays are ghosted local arrays of the face and center point
    sets. Ghost points shared with neighbor processes carry the owner's
    number, boundary ghosts keep the sentinel -1.

    Parameters
    ----------
    fs : StaggeredGrid
        Staggered grid.
    """

    def __init__(self, fs: "StaggeredGrid") -> None:

        self.fs = fs

        # number of local unknowns
        self.lnv = fs.nx_face + fs.ny_face + fs.nz_face
        self.lnp = fs.ncells
        self.ln = self.lnv + self.lnp

        # starting indices of the separate velocity and pressure numberings
        scan = np.zeros(2, dtype=np.int64)
        fs.pgrid.comm.Scan(np.array([self.lnv, self.lnp], dtype=np.int64), scan, op=MPI.SUM)

        self.stv = int(scan[0]) - self.lnv
        self.stp = int(scan[1]) - self.lnp
        self.st = self.stv + self.stp

        self.ivx = fs.da_x.create_local(-1, dtype=np.int64)
        self.ivy = fs.da_y.create_local(-1, dtype=np.int64)
        self.ivz = fs.da_z.create_local(-1, dtype=np.int64)
        self.ip = fs.da_cen.create_local(-1, dtype=np.int64)

        self.idxmod = None

    def invalidate(self) -> None:
        """Reset all indices to the sentinel value."""
        for arr in (self.ivx, self.ivy, self.ivz, self.ip):
            arr.fill(-1)
        self.idxmod = None

    def compute(self, idxmod: str = 'coupled') -> None:
        """
        Number the local unknowns and exchange the numbers with the neighbors.

        Parameters
        ----------
        idxmod : str
            ``'coupled'``: one contiguous range per process, pressure after velocity.
            ``'uncoupled'``: separate velocity and pressure numberings.
        """
        if idxmod not in IDXMODES:
            raise ValueError(f"Unknown indexing mode '{idxmod}', use one of {IDXMODES}")

        self.invalidate()

        if idxmod == 'coupled':
            stv = self.st
            stp = self.st + self.lnv
        else:
            stv = self.stv
            stp = self.stp

        fs = self.fs

        for da, idx in ((fs.da_x, self.ivx), (fs.da_y, self.ivy), (fs.da_z, self.ivz)):
            idx[da.owned()] = np.arange(stv, stv + da.size).reshape(da.shape)
            stv += da.size

        da = fs.da_cen
        self.ip[da.owned()] = np.arange(stp, stp + da.size).reshape(da.shape)

        fs.da_x.local_to_local(self.ivx)
        fs.da_y.local_to_local(self.ivy)
        fs.da_z.local_to_local(self.ivz)
        fs.da_cen.local_to_local(self.ip)

        self.idxmod = idxmod

    @property
    def is_valid(self) -> bool:
        return self.idxmod is not None
