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
from mpi4py import MPI
import numpy as np
import numpy.typing as npt

from typing import Sequence, Tuple

NDArray = npt.NDArray[np.floating]
IntArray = npt.NDArray[np.signedinteger]


def split_ownership(M: int, P: int) -> list:
    """
    Default ownership split of M points over P processes.

    The first ``M % P`` processes receive one extra point.

    Parameters
    ----------
    M : int
        Global number of points.
    P : int
        Number of processes.

    Returns
    -------
    list of int
        Number of points owned by each process.
    """
    if M < P:
        raise ValueError(f"Cannot distribute {M} points over {P} processes.")
    return [M // P + int(M % P > r) for r in range(P)]


class ProcessGrid:
    """
    Three-dimensional process layout over an MPI communicator.

    Ranks are ordered x-fastest: ``rank = rx + ry*Px + rz*Px*Py``.

    Parameters
    ----------
    dims : sequence of int, optional
        Requested number of processes per axis (0 lets MPI decide).
    comm : MPI.Comm, optional
        MPI communicator (default: MPI.COMM_WORLD)
    """

    def __init__(self,
                 dims: Sequence[int] = (0, 0, 0),
                 comm: MPI.Comm | None = None) -> None:

        self._comm = MPI.COMM_WORLD if comm is None else comm

        size = self._comm.Get_size()
        hint = [max(int(d), 0) for d in dims]

        fixed = int(np.prod([d for d in hint if d > 0]))
        if size % fixed != 0 or (all(d > 0 for d in hint) and fixed != size):
            raise ValueError(f"Process grid {hint} does not match communicator size {size}.")

        self._dims = tuple(int(d) for d in MPI.Compute_dims(size, hint))

        rank = self._comm.Get_rank()
        Px, Py, _ = self._dims
        self._coords = (rank % Px, (rank // Px) % Py, rank // (Px * Py))

    # ---------------------------
    # MPI properties
    # ---------------------------

    @property
    def comm(self) -> MPI.Comm:
        return self._comm

    @property
    def rank(self) -> int:
        """MPI rank of this process."""
        return self._comm.Get_rank()

    @property
    def size(self) -> int:
        """Total number of MPI processes."""
        return self._comm.Get_size()

    @property
    def dims(self) -> Tuple[int, int, int]:
        """Number of processes per axis (Px, Py, Pz)."""
        return self._dims

    @property
    def coords(self) -> Tuple[int, int, int]:
        """Position of this process in the process grid (rx, ry, rz)."""
        return self._coords

    # ---------------------------
    # Rank queries
    # ---------------------------

    def global_rank(self, rx: int, ry: int, rz: int) -> int:
        """Rank of the process at (rx, ry, rz), -1 outside the process grid."""
        Px, Py, Pz = self._dims
        if not (0 <= rx < Px and 0 <= ry < Py and 0 <= rz < Pz):
            return -1
        return rx + ry * Px + rz * Px * Py

    def neighbor(self, axis: int, offset: int) -> int:
        """Rank of the neighbor ``offset`` steps along ``axis``, -1 at the domain boundary."""
        c = list(self._coords)
        c[axis] += offset
        return self.global_rank(*c)


class DistributedArray:
    """
    Distributed structured array for one point set of the staggered grid.

    Each process owns a contiguous box of the global index space. Local arrays
    carry one ghost layer on every side adjoining a neighbor process and, if
    ``ghosted``, also on the physical domain boundary. Arrays are indexed
    ``[k, j, i]``, i.e. the numpy shape is ``(nz, ny, nx)``.

    Parameters
    ----------
    pgrid : ProcessGrid
        Process layout.
    ranges : sequence of sequence of int
        Number of owned points per process, for each axis (x, y, z).
    ghosted : bool
        Whether boundary ghost points exist on the domain boundary.
    name : str, optional
        Label of the point set.
    """

    def __init__(self,
                 pgrid: ProcessGrid,
                 ranges: Sequence[Sequence[int]],
                 ghosted: bool,
                 name: str = '') -> None:

        self.pgrid = pgrid
        self.name = name
        self.ghosted = bool(ghosted)
        self.ranges = tuple(tuple(int(n) for n in r) for r in ranges)

        for a, r in enumerate(self.ranges):
            if len(r) != pgrid.dims[a]:
                raise ValueError(f"Ownership list of axis {a} does not match the process grid.")

        coords = pgrid.coords

        self.sizes = tuple(sum(r) for r in self.ranges)
        self.starts = tuple(sum(r[:c]) for r, c in zip(self.ranges, coords))
        self.counts = tuple(r[c] for r, c in zip(self.ranges, coords))

        self._prev = tuple(pgrid.neighbor(a, -1) for a in range(3))
        self._next = tuple(pgrid.neighbor(a, +1) for a in range(3))

        self._lo = tuple(int(p != -1 or self.ghosted) for p in self._prev)
        self._hi = tuple(int(n != -1 or self.ghosted) for n in self._next)

        self.ghost_starts = tuple(s - lo for s, lo in zip(self.starts, self._lo))
        self.ghost_counts = tuple(n + lo + hi for n, lo, hi in zip(self.counts, self._lo, self._hi))

    # ---------------------------
    # Shapes and index ranges
    # ---------------------------

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Shape of the owned (global vector) part: (nz, ny, nx)."""
        return self.counts[::-1]

    @property
    def ghost_shape(self) -> Tuple[int, int, int]:
        """Shape of the ghosted local array: (nz, ny, nx)."""
        return self.ghost_counts[::-1]

    @property
    def size(self) -> int:
        """Number of locally owned points."""
        return int(np.prod(self.counts))

    def halo_range(self, axis: int) -> Tuple[int, int]:
        """Global index range of owned points plus ghosts shared with neighbors."""
        lo = int(self._prev[axis] != -1)
        hi = int(self._next[axis] != -1)
        return self.starts[axis] - lo, self.starts[axis] + self.counts[axis] + hi

    def at_lower_boundary(self, axis: int) -> bool:
        return self.starts[axis] == 0

    def at_upper_boundary(self, axis: int) -> bool:
        return self.starts[axis] + self.counts[axis] == self.sizes[axis]

    def box(self, start: Sequence[int], n: Sequence[int]) -> tuple:
        """
        Local slices addressing a box of global indices.

        Parameters
        ----------
        start : sequence of int
            First global index per axis (x, y, z).
        n : sequence of int
            Number of points per axis (x, y, z).

        Returns
        -------
        tuple of slice
            Slices in array order (z, y, x).
        """
        sl = [slice(s - g, s - g + m) for s, g, m in zip(start, self.ghost_starts, n)]
        return tuple(sl[::-1])

    def owned(self) -> tuple:
        """Local slices addressing the owned points."""
        return self.box(self.starts, self.counts)

    def take(self, local: NDArray, index: Sequence[IntArray]) -> NDArray:
        """
        Gather values at the outer product of per-axis global index arrays.

        Parameters
        ----------
        local : ndarray
            Ghosted local array.
        index : sequence of ndarray
            Global indices along x, y and z.

        Returns
        -------
        ndarray
            Values of shape (len(K), len(J), len(I)).
        """
        I, J, K = (np.asarray(idx) - g for idx, g in zip(index, self.ghost_starts))
        return local[np.ix_(K, J, I)]

    # ---------------------------
    # Array creation
    # ---------------------------

    def create_global(self, fill: float = 0., dtype=float) -> NDArray:
        """Array holding the owned points."""
        return np.full(self.shape, fill, dtype=dtype)

    def create_local(self, fill: float = 0., dtype=float) -> NDArray:
        """Ghosted local array."""
        return np.full(self.ghost_shape, fill, dtype=dtype)

    # ---------------------------
    # Ghost exchange
    # ---------------------------

    def global_to_local(self, glob: NDArray, local: NDArray) -> None:
        """Copy owned values into the local array and refresh the ghost points."""
        local[self.owned()] = glob
        self.local_to_local(local)

    def local_to_local(self, local: NDArray) -> None:
        """
        Refresh ghost points from their owners.

        Sweeps x, then y, then z so that edge and corner ghosts are filled.
        Boundary ghosts on the physical domain boundary are left untouched.
        """
        for axis in range(3):
            extent = [self._halo_slice(b) if b < axis else self._owned_slice(b) for b in range(3)]
            self._exchange(local, axis, extent)

    def local_to_global(self, local: NDArray, glob: NDArray) -> None:
        """
        Sum local contributions (owned and ghost) into the owned points.

        Contributions written to boundary ghosts are discarded.
        """
        work = np.array(local, copy=True)
        for axis in (2, 1, 0):
            extent = [self._owned_slice(b) if b > axis else self._halo_slice(b) for b in range(3)]
            self._accumulate(work, axis, extent)
        glob[...] = work[self.owned()]

    def _owned_slice(self, axis: int) -> slice:
        return slice(self._lo[axis], self._lo[axis] + self.counts[axis])

    def _halo_slice(self, axis: int) -> slice:
        lo = self._lo[axis] - int(self._prev[axis] != -1)
        hi = self._lo[axis] + self.counts[axis] + int(self._next[axis] != -1)
        return slice(lo, hi)

    @staticmethod
    def _slab(axis: int, pos: int, extent: list) -> tuple:
        idx = list(extent)
        idx[axis] = slice(pos, pos + 1)
        return tuple(idx[::-1])

    @staticmethod
    def _rank(r: int) -> int:
        return MPI.PROC_NULL if r == -1 else r

    def _exchange(self, local: NDArray, axis: int, extent: list) -> None:

        comm = self.pgrid.comm
        prev, nxt = self._prev[axis], self._next[axis]
        first = self._lo[axis]
        last = first + self.counts[axis] - 1

        # last owned layer -> next, previous neighbor -> lower ghost
        send = np.ascontiguousarray(local[self._slab(axis, last, extent)])
        recv = np.empty_like(send)
        comm.Sendrecv(send, dest=self._rank(nxt), sendtag=axis,
                      recvbuf=recv, source=self._rank(prev), recvtag=axis)
        if prev != -1:
            local[self._slab(axis, first - 1, extent)] = recv

        # first owned layer -> previous, next neighbor -> upper ghost
        send = np.ascontiguousarray(local[self._slab(axis, first, extent)])
        comm.Sendrecv(send, dest=self._rank(prev), sendtag=3 + axis,
                      recvbuf=recv, source=self._rank(nxt), recvtag=3 + axis)
        if nxt != -1:
            local[self._slab(axis, last + 1, extent)] = recv

    def _accumulate(self, local: NDArray, axis: int, extent: list) -> None:

        comm = self.pgrid.comm
        prev, nxt = self._prev[axis], self._next[axis]
        first = self._lo[axis]
        last = first + self.counts[axis] - 1

        recv = np.empty_like(local[self._slab(axis, first, extent)])

        # upper ghost -> first owned layer of next
        if nxt != -1:
            send = np.ascontiguousarray(local[self._slab(axis, last + 1, extent)])
        else:
            send = np.empty_like(recv)
        comm.Sendrecv(send, dest=self._rank(nxt), sendtag=6 + axis,
                      recvbuf=recv, source=self._rank(prev), recvtag=6 + axis)
        if prev != -1:
            local[self._slab(axis, first, extent)] += recv

        # lower ghost -> last owned layer of previous
        if prev != -1:
            send = np.ascontiguousarray(local[self._slab(axis, first - 1, extent)])
        else:
            send = np.empty_like(recv)
        comm.Sendrecv(send, dest=self._rank(prev), sendtag=9 + axis,
                      recvbuf=recv, source=self._rank(nxt), recvtag=9 + axis)
        if nxt != -1:
            local[self._slab(axis, last, extent)] += recv

    # ---------------------------
    # Reductions
    # ---------------------------

    def allreduce(self, value, op=MPI.SUM):
        """Reduce a scalar over all processes."""
        return self.pgrid.comm.allreduce(value, op=op)
