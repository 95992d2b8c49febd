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
Staggered finite-difference grid (FDSTAG).

Velocity components live on cell faces, pressure and the diagonal strain-rate
components at cell centers, off-diagonal components on cell edges.
"""
import os
import warnings
from enum import Enum
from typing import Sequence, Tuple

from mpi4py import MPI
import numpy as np

from .dof_index import DOFIndex
from .io import write_partitioning
from .logging import get_logger
from .mesh import Discret1D, MeshSeg1D, MeshSegInp
from .parallel import DistributedArray, ProcessGrid, split_ownership

# aspect ratio policy
MAX_ASPECT_RATIO = 5.0
WARN_ASPECT_RATIO = 2.0


class PointType(Enum):
    """Point sets of the staggered grid, as node/cell location per axis (x, y, z)."""
    CENTER = ('cell', 'cell', 'cell')
    CORNER = ('node', 'node', 'node')
    XY = ('node', 'node', 'cell')
    XZ = ('node', 'cell', 'node')
    YZ = ('cell', 'node', 'node')
    X = ('node', 'cell', 'cell')
    Y = ('cell', 'node', 'cell')
    Z = ('cell', 'cell', 'node')

    @property
    def nodes(self) -> Tuple[bool, bool, bool]:
        """Per-axis flag, True where the point set sits on grid nodes."""
        return tuple(kind == 'node' for kind in self.value)

    @property
    def ghosted(self) -> bool:
        """Centers and faces carry ghost points on the domain boundary."""
        return self in (PointType.CENTER, PointType.X, PointType.Y, PointType.Z)


EDGES = (PointType.XY, PointType.XZ, PointType.YZ)
FACES = (PointType.X, PointType.Y, PointType.Z)


class StaggeredGrid:
    """
    Distributed staggered grid built from three axis decompositions.

    Parameters
    ----------
    nel : sequence of int
        Global number of cells per axis (x, y, z).
    dims : sequence of int, optional
        Requested number of processes per axis (0 lets MPI decide).
    comm : MPI.Comm, optional
        MPI communicator (default: MPI.COMM_WORLD)
    """

    def __init__(self,
                 nel: Sequence[int],
                 dims: Sequence[int] = (0, 0, 0),
                 comm: MPI.Comm | None = None) -> None:

        self.logger = get_logger('stagflow.fdstag')

        self.pgrid = ProcessGrid(dims, comm)
        comm = self.pgrid.comm

        # base decomposition of the cell centers, nodes get one more point on the last process
        cells = [split_ownership(int(n), P) for n, P in zip(nel, self.pgrid.dims)]
        nodes = [c[:-1] + [c[-1] + 1] for c in cells]

        self.da = {}
        for pt in PointType:
            ranges = [nodes[a] if pt.nodes[a] else cells[a] for a in range(3)]
            self.da[pt] = DistributedArray(self.pgrid, ranges, pt.ghosted, name=pt.name)

        Px, Py, Pz = self.pgrid.dims
        rx, ry, rz = self.pgrid.coords

        colors = (ry + rz * Py, rx + rz * Px, rx + ry * Px)

        self.dsx, self.dsy, self.dsz = [Discret1D(self.pgrid.dims[a],
                                                  self.pgrid.coords[a],
                                                  nodes[a],
                                                  colors[a],
                                                  self.pgrid.neighbor(a, -1),
                                                  self.pgrid.neighbor(a, +1),
                                                  comm) for a in range(3)]

        self.msx = self.msy = self.msz = None

        # neighbor ranks, local index i + 3*j + 9*k for offsets -1, 0, 1
        self.neighb = np.array([self.pgrid.global_rank(rx + i, ry + j, rz + k)
                                for k in (-1, 0, 1)
                                for j in (-1, 0, 1)
                                for i in (-1, 0, 1)], dtype=int)

        self.dof = DOFIndex(self)

    # ---------------------------
    # Point sets
    # ---------------------------

    @property
    def ds(self) -> Tuple[Discret1D, Discret1D, Discret1D]:
        return self.dsx, self.dsy, self.dsz

    @property
    def ms(self) -> Tuple[MeshSeg1D, MeshSeg1D, MeshSeg1D]:
        return self.msx, self.msy, self.msz

    @property
    def da_cen(self) -> DistributedArray:
        return self.da[PointType.CENTER]

    @property
    def da_cor(self) -> DistributedArray:
        return self.da[PointType.CORNER]

    @property
    def da_xy(self) -> DistributedArray:
        return self.da[PointType.XY]

    @property
    def da_xz(self) -> DistributedArray:
        return self.da[PointType.XZ]

    @property
    def da_yz(self) -> DistributedArray:
        return self.da[PointType.YZ]

    @property
    def da_x(self) -> DistributedArray:
        return self.da[PointType.X]

    @property
    def da_y(self) -> DistributedArray:
        return self.da[PointType.Y]

    @property
    def da_z(self) -> DistributedArray:
        return self.da[PointType.Z]

    @property
    def ncells(self) -> int:
        return self.da_cen.size

    @property
    def ncorns(self) -> int:
        return self.da_cor.size

    @property
    def nxy_edg(self) -> int:
        return self.da_xy.size

    @property
    def nxz_edg(self) -> int:
        return self.da_xz.size

    @property
    def nyz_edg(self) -> int:
        return self.da_yz.size

    @property
    def nx_face(self) -> int:
        return self.da_x.size

    @property
    def ny_face(self) -> int:
        return self.da_y.size

    @property
    def nz_face(self) -> int:
        return self.da_z.size

    def cell_range(self, axis: int) -> Tuple[int, int]:
        """First global cell index and number of owned cells along ``axis``."""
        ds = self.ds[axis]
        return ds.pstart, ds.ncels

    def node_range(self, axis: int) -> Tuple[int, int]:
        """First global node index and number of owned nodes along ``axis``."""
        ds = self.ds[axis]
        return ds.pstart, ds.nnods

    # ---------------------------
    # Coordinates
    # ---------------------------

    def gen_coord(self,
                  bounds: Sequence[Sequence[float]],
                  segs: Sequence[MeshSegInp | None] = (None, None, None)) -> None:
        """
        Generate the coordinates of all axes.

        Parameters
        ----------
        bounds : sequence of (float, float)
            Domain bounds per axis.
        segs : sequence of MeshSegInp or None
            Segment input per axis.
        """
        self.msx, self.msy, self.msz = [MeshSeg1D(b[0], b[1], ds.tcels, s)
                                        for b, ds, s in zip(bounds, self.ds, segs)]

        for ds, ms in zip(self.ds, self.ms):
            ds.gen_coord(ms)

    def stretch(self, Exx: float, Eyy: float, dt: float) -> None:
        """Stretch the grid with constant background strain rates, Ezz = -(Exx + Eyy)."""

        Ezz = -(Exx + Eyy)

        for rate, ds, ms in zip((Exx, Eyy, Ezz), self.ds, self.ms):
            if rate:
                ds.stretch(ms, rate * dt)

    def get_local_box(self) -> Tuple[Tuple[float, float], ...]:
        return tuple(ds.local_box for ds in self.ds)

    def get_global_box(self) -> Tuple[Tuple[float, float], ...]:
        return tuple(ms.global_box for ms in self.ms)

    def get_point_ranks(self, X: Sequence[float]) -> Tuple[int, int]:
        """
        Locate the neighbor process owning a point.

        Only the 26 direct neighbors are considered, the point must lie within
        one cell of the local subdomain.

        Parameters
        ----------
        X : sequence of float
            Point coordinates.

        Returns
        -------
        lrank : int
            Local neighbor index (i + 3*j + 9*k).
        grank : int
            Global rank of the owning process.
        """
        r = []
        for x, ds in zip(X, self.ds):
            beg, end = ds.local_box
            if x < beg and ds.grprev != -1:
                r.append(0)
            elif x > end and ds.grnext != -1:
                r.append(2)
            else:
                r.append(1)

        lrank = r[0] + 3 * r[1] + 9 * r[2]

        return lrank, int(self.neighb[lrank])

    def get_aspect_ratio(self) -> float:
        """Maximum cell aspect ratio over the whole grid."""

        dx, dy, dz = [ds.cell_size(ds.pstart, ds.ncels) for ds in self.ds]

        def ratio(a, b):
            return max(a.max() / b.min(), b.max() / a.min())

        lrt = max(ratio(dx, dy), ratio(dx, dz), ratio(dy, dz))

        if self.pgrid.size == 1:
            return float(lrt)

        return float(self.pgrid.comm.allreduce(lrt, op=MPI.MAX))

    # ---------------------------
    # Output
    # ---------------------------

    def view(self) -> float:
        """Print grid information and enforce the aspect ratio policy."""

        cx, cy, cz = [ds.tcels for ds in self.ds]
        nx, ny, nz = [ds.tnods for ds in self.ds]

        maxAspRat = self.get_aspect_ratio()

        if self.pgrid.rank == 0:
            self.logger.info(f"  - {'Processor grid [nx, ny, nz]':<30s}: {list(self.pgrid.dims)}")
            self.logger.info(f"  - {'Fine grid cells [nx, ny, nz]':<30s}: {[cx, cy, cz]}")
            self.logger.info(f"  - {'Number of cells':<30s}: {cx * cy * cz}")
            self.logger.info(f"  - {'Number of velocity DOF':<30s}: {nx * cy * cz + cx * ny * cz + cx * cy * nz}")
            self.logger.info(f"  - {'Maximum cell aspect ratio':<30s}: {maxAspRat:7.5f}")

        if maxAspRat > MAX_ASPECT_RATIO:
            raise ValueError("Too large aspect ratio is not supported")

        if maxAspRat > WARN_ASPECT_RATIO:
            warnings.warn("non-optimal aspect ratio. Expect precision deterioration")

        return maxAspRat

    def proc_partitioning(self, outdir: str = '.', ch_len: float = 1.) -> str | None:
        """
        Write the processor partitioning file (rank zero only).

        Parameters
        ----------
        outdir : str
            Output directory.
        ch_len : float
            Characteristic length stored alongside the coordinates.

        Returns
        -------
        str or None
            Path of the written file on rank zero, None elsewhere.
        """
        # collective on the column communicators
        coords = [ds.gather_coord() for ds in self.ds]

        if self.pgrid.rank != 0:
            return None

        Px, Py, Pz = self.pgrid.dims
        fname = os.path.join(outdir, f"ProcessorPartitioning_{self.pgrid.size}cpu_{Px}.{Py}.{Pz}.bin")

        write_partitioning(fname,
                           self.pgrid.dims,
                           [ds.tnods for ds in self.ds],
                           [ds.starts for ds in self.ds],
                           ch_len,
                           coords)

        return fname
