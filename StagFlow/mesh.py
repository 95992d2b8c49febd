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
One-dimensional mesh description and its parallel decomposition.

A coordinate axis is a concatenation of segments, each with its own number of
cells and a geometric bias (ratio of last to first cell width). ``Discret1D``
holds the part of one axis owned by a process, including ghost coordinates.
"""
from dataclasses import dataclass, field
from typing import List, Tuple

from mpi4py import MPI
import numpy as np
import numpy.typing as npt

NDArray = npt.NDArray[np.floating]

# relative tolerance for detecting a uniform axis
UNIFORM_RTOL = 1e-8


@dataclass
class MeshSegInp:
    """
    Segment input of one axis.

    Attributes
    ----------
    delims : list of float
        Interior segment delimiters (nsegs - 1 values).
    ncells : list of int
        Number of cells per segment.
    biases : list of float
        Last-to-first cell width ratio per segment.
    """
    delims: List[float] = field(default_factory=list)
    ncells: List[int] = field(default_factory=list)
    biases: List[float] = field(default_factory=list)

    @property
    def nsegs(self) -> int:
        return len(self.ncells)


class MeshSeg1D:
    """
    Segmented description of one coordinate axis.

    Parameters
    ----------
    beg, end : float
        Axis bounds.
    tncels : int
        Total number of cells.
    segs : MeshSegInp, optional
        Explicit segments. Without segments the axis is one uniform segment.
    """

    def __init__(self, beg: float, end: float, tncels: int, segs: MeshSegInp | None = None) -> None:

        if segs is not None and segs.nsegs > 0:
            nsegs = segs.nsegs
            istart = np.zeros(nsegs + 1, dtype=int)
            istart[1:nsegs] = np.cumsum(segs.ncells[:nsegs - 1])
            xstart = np.zeros(nsegs + 1)
            xstart[1:nsegs] = segs.delims[:nsegs - 1]
            biases = np.array(segs.biases, dtype=float)
        else:
            nsegs = 1
            istart = np.zeros(2, dtype=int)
            xstart = np.zeros(2)
            biases = np.ones(1)

        istart[0] = 0
        istart[nsegs] = tncels
        xstart[0] = beg
        xstart[nsegs] = end

        self.nsegs = nsegs
        self.tncels = int(tncels)
        self.istart = istart
        self.xstart = xstart
        self.biases = biases

    @property
    def uni_step(self) -> float:
        """Average cell size of the whole axis."""
        return (self.xstart[-1] - self.xstart[0]) / self.istart[-1]

    @property
    def global_box(self) -> Tuple[float, float]:
        return float(self.xstart[0]), float(self.xstart[-1])

    def stretch(self, eps: float) -> None:
        """Scale all breakpoints about the origin, x <- x*(1 - eps)."""
        self.xstart *= (1.0 - eps)

    def gen_coord(self, iseg: int, nl: int, istart: int, out: NDArray | None = None) -> NDArray:
        """
        Node coordinates of a sub-range of one segment.

        Parameters
        ----------
        iseg : int
            Segment index.
        nl : int
            Number of nodes to generate.
        istart : int
            Index of the first node relative to the segment start.
        out : ndarray, optional
            Output buffer of length ``nl``.

        Returns
        -------
        ndarray
            Node coordinates.
        """
        N = self.istart[iseg + 1] - self.istart[iseg] + 1
        M = N - 1
        x0 = self.xstart[iseg]
        x1 = self.xstart[iseg + 1]
        bias = self.biases[iseg]
        avg = (x1 - x0) / M

        idx = istart + np.arange(nl, dtype=float)

        if bias == 1.0:
            crd = x0 + idx * avg
        else:
            # linear progression of cell sizes from begSz to endSz
            begSz = 2.0 * avg / (1.0 + bias)
            endSz = bias * begSz
            dx = (endSz - begSz) / (M - 1) if M > 1 else 0.0
            crd = x0 + idx * begSz + 0.5 * idx * (idx - 1.0) * dx

        # exact segment end
        if istart + nl == N:
            crd[nl - 1] = x1

        if out is None:
            return crd

        out[:] = crd
        return out


class Discret1D:
    """
    Parallel decomposition of one coordinate axis.

    Node coordinates are stored with one ghost node below the first owned node
    and one (last process) or two ghost nodes above the last owned node.
    Cell-center coordinates carry one ghost cell on both sides.

    Parameters
    ----------
    nproc : int
        Number of processes along the axis.
    rank : int
        Axis rank of this process.
    nnod_proc : sequence of int
        Number of owned nodes per process.
    color : int
        Column color (index of the process in the plane normal to the axis).
    grprev, grnext : int
        Global ranks of the neighbors (-1 at the domain boundary).
    comm : MPI.Comm, optional
        Parent communicator of the column communicator (default: MPI.COMM_WORLD)
    """

    def __init__(self,
                 nproc: int,
                 rank: int,
                 nnod_proc,
                 color: int,
                 grprev: int,
                 grnext: int,
                 comm: MPI.Comm | None = None) -> None:

        self.nproc = int(nproc)
        self.rank = int(rank)
        self.color = int(color)
        self.grprev = int(grprev)
        self.grnext = int(grnext)

        starts = np.zeros(nproc + 1, dtype=int)
        starts[1:] = np.cumsum(nnod_proc)
        tnods = int(starts[nproc])
        starts[nproc] = tnods - 1

        self.starts = starts
        self.tnods = tnods
        self.tcels = tnods - 1
        self.pstart = int(starts[rank])
        self.nnods = int(nnod_proc[rank])
        self.ncels = self.nnods if self.grnext != -1 else self.nnods - 1

        nbuff = self.nnods + (3 if self.grnext != -1 else 2)

        # local node i lives at _nbuff[i + 1], local cell i at _cbuff[i + 1]
        self._nbuff = np.zeros(nbuff)
        self._cbuff = np.zeros(self.ncels + 2)

        self.h_uni = 0.0
        self.h_min = 0.0
        self.h_max = 0.0

        self._comm = MPI.COMM_WORLD if comm is None else comm
        self._col_comm = None

    # ---------------------------
    # Coordinates
    # ---------------------------

    @property
    def ncoor(self) -> NDArray:
        """Owned node coordinates."""
        return self._nbuff[1:1 + self.nnods]

    @property
    def ccoor(self) -> NDArray:
        """Owned cell-center coordinates."""
        return self._cbuff[1:1 + self.ncels]

    def node_coord(self, first: int, n: int) -> NDArray:
        """Node coordinates for global node indices ``first ... first+n-1`` (ghosts included)."""
        i = first - self.pstart + 1
        return self._nbuff[i:i + n]

    def cell_coord(self, first: int, n: int) -> NDArray:
        """Cell-center coordinates for global cell indices ``first ... first+n-1`` (ghosts included)."""
        i = first - self.pstart + 1
        return self._cbuff[i:i + n]

    def cell_size(self, first: int, n: int) -> NDArray:
        """Width of cells ``first ... first+n-1`` (distance between bounding nodes)."""
        i = first - self.pstart + 1
        return self._nbuff[i + 1:i + n + 1] - self._nbuff[i:i + n]

    def node_size(self, first: int, n: int) -> NDArray:
        """Distance between the cell centers adjacent to nodes ``first ... first+n-1``."""
        i = first - self.pstart + 1
        return self._cbuff[i:i + n] - self._cbuff[i - 1:i + n - 1]

    @property
    def local_box(self) -> Tuple[float, float]:
        """Coordinates of the first and last node bounding the owned cells."""
        return float(self._nbuff[1]), float(self._nbuff[1 + self.ncels])

    def gen_coord(self, ms: MeshSeg1D) -> None:
        """
        Generate local node and cell-center coordinates.

        Parameters
        ----------
        ms : MeshSeg1D
            Segment description of the axis.
        """
        pstart = self.pstart
        pos = 1
        n = self.nnods

        # include ghost nodes shared with neighbors
        if self.grprev != -1:
            pstart -= 1
            pos -= 1
            n += 1

        if self.grnext != -1:
            n += 2

        i = 0
        while n > 0:

            if i == ms.nsegs:
                raise ValueError("Local node range exceeds the segment description.")

            nl = ms.istart[i + 1] - pstart + 1

            if nl > 0:
                nl = min(nl, n)
                ms.gen_coord(i, nl, pstart - ms.istart[i], out=self._nbuff[pos:pos + nl])
                pstart += nl
                pos += nl
                n -= nl

            i += 1

        # extrapolate boundary ghost nodes
        if self.grprev == -1:
            self._nbuff[0] = 2.0 * self._nbuff[1] - self._nbuff[2]

        if self.grnext == -1:
            last = self.nnods
            self._nbuff[last + 1] = 2.0 * self._nbuff[last] - self._nbuff[last - 1]

        self._set_cell_centers()

        self.get_min_max_cell_size(ms)

    def _set_cell_centers(self) -> None:
        nc = self.ncels + 2
        self._cbuff[:] = 0.5 * (self._nbuff[:nc] + self._nbuff[1:nc + 1])

    # ---------------------------
    # Cell size statistics
    # ---------------------------

    def get_column_comm(self) -> MPI.Comm:
        """Communicator of all processes sharing this column color."""
        if self._col_comm is None:
            self._col_comm = self._comm.Split(self.color, self.rank)
        return self._col_comm

    def get_min_max_cell_size(self, ms: MeshSeg1D) -> None:
        """Set global minimum and maximum cell size and detect a uniform axis."""

        sz = self.cell_size(self.pstart, self.ncels)
        lmin, lmax = float(sz.min()), float(sz.max())

        if self.nproc == 1:
            gmin, gmax = lmin, lmax
        else:
            comm = self.get_column_comm()
            gmin = comm.allreduce(lmin, op=MPI.MIN)
            gmax = comm.allreduce(lmax, op=MPI.MAX)

        h = ms.uni_step

        if abs(gmax - gmin) < UNIFORM_RTOL * h:
            self.h_uni = h
            self.h_min = h
            self.h_max = h
        else:
            self.h_uni = -1.0
            self.h_min = gmin
            self.h_max = gmax

    @property
    def is_uniform(self) -> bool:
        return self.h_uni > 0.

    def stretch(self, ms: MeshSeg1D, eps: float) -> None:
        """
        Stretch the axis about the origin with constant factor, x <- x*(1 - eps).

        Parameters
        ----------
        ms : MeshSeg1D
            Segment description, stretched as well.
        eps : float
            Stretch factor.
        """
        ms.stretch(eps)

        self._nbuff *= (1.0 - eps)
        self._set_cell_centers()

        if self.h_uni < 0.0:
            self.h_min *= (1.0 - eps)
            self.h_max *= (1.0 - eps)
        else:
            self.h_uni = ms.uni_step
            self.h_min = self.h_uni
            self.h_max = self.h_uni

    # ---------------------------
    # Gather and multigrid checks
    # ---------------------------

    def gather_coord(self) -> NDArray | None:
        """
        Gather all node coordinates of the axis on global rank zero.

        Collective on the parent communicator. Only the column holding global
        rank zero exchanges coordinates.

        Returns
        -------
        ndarray or None
            Global node coordinates on global rank zero, None elsewhere.
        """
        is_root = self._comm.Get_rank() == 0

        if self.nproc == 1:
            return np.array(self.ncoor, copy=True) if is_root else None

        root_color = self._comm.bcast(self.color, root=0)
        if self.color != root_color:
            return None

        comm = self.get_column_comm()

        counts = np.diff(self.starts)
        counts[-1] += 1
        displs = self.starts[:-1]

        # global rank zero is first in its column
        recv = np.empty(self.tnods) if is_root else None
        comm.Gatherv(np.ascontiguousarray(self.ncoor),
                     [recv, counts, displs, MPI.DOUBLE] if is_root else None,
                     root=0)

        return recv

    def check_mg(self, direction: str) -> int:
        """
        Check that the axis supports a multigrid coarsening hierarchy.

        Parameters
        ----------
        direction : str
            Axis label used in error messages.

        Returns
        -------
        int
            Number of possible coarsening steps (halvings until the local size is odd).
        """
        if self.ncels % 2:
            raise ValueError(f"Local grid size is an odd number in {direction}-direction")

        if self.tcels % self.nproc:
            raise ValueError(f"Uniform local grid size doesn't exist in {direction}-direction")

        if self.ncels != self.tcels // self.nproc:
            raise ValueError(f"Local grid size is not constant on all processors in {direction}-direction")

        ncors = 0
        sz = self.ncels
        while not sz % 2:
            sz //= 2
            ncors += 1

        return ncors
