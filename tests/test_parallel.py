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
Tests for the process grid and the ghosted distributed arrays.

Run with: mpirun -np 1 python -m pytest tests/test_parallel.py -v
          mpirun -np 2 python -m pytest tests/test_parallel.py -v
          mpirun -np 4 python -m pytest tests/test_parallel.py -v
"""
import numpy as np
import pytest
from mpi4py import MPI

from StagFlow.parallel import ProcessGrid, DistributedArray, split_ownership


@pytest.mark.parametrize("M,P,expected", [(10, 3, [4, 3, 3]),
                                          (6, 2, [3, 3]),
                                          (5, 1, [5])])
def test_split_ownership(M, P, expected):
    assert split_ownership(M, P) == expected


def test_split_ownership_too_few_points():
    with pytest.raises(ValueError):
        split_ownership(2, 3)


def test_process_grid_layout():

    pgrid = ProcessGrid()
    comm = MPI.COMM_WORLD

    assert int(np.prod(pgrid.dims)) == comm.Get_size()

    rx, ry, rz = pgrid.coords
    Px, Py, _ = pgrid.dims
    assert rx + ry * Px + rz * Px * Py == comm.Get_rank()
    assert pgrid.global_rank(*pgrid.coords) == comm.Get_rank()

    assert pgrid.global_rank(-1, 0, 0) == -1
    assert pgrid.global_rank(Px, 0, 0) == -1

    if rx == 0:
        assert pgrid.neighbor(0, -1) == -1


def test_process_grid_mismatch():
    size = MPI.COMM_WORLD.Get_size()
    with pytest.raises(ValueError):
        ProcessGrid((size + 1, 1, 1))


def _make_array(ghosted, nglob=(7, 6, 5)):
    pgrid = ProcessGrid()
    ranges = [split_ownership(n, P) for n, P in zip(nglob, pgrid.dims)]
    return DistributedArray(pgrid, ranges, ghosted)


@pytest.mark.parametrize("ghosted", [True, False])
def test_ownership_is_conserved(ghosted):

    da = _make_array(ghosted)

    assert da.sizes == (7, 6, 5)
    assert da.allreduce(da.size) == 7 * 6 * 5

    for a in range(3):
        lo = int(da._prev[a] != -1 or ghosted)
        hi = int(da._next[a] != -1 or ghosted)
        assert da.ghost_counts[a] == da.counts[a] + lo + hi


@pytest.mark.parametrize("ghosted", [True, False])
def test_ghost_refresh(ghosted):

    da = _make_array(ghosted)
    Nx, Ny, _ = da.sizes

    def global_index(I, J, K):
        k, j, i = np.meshgrid(K, J, I, indexing='ij')
        return (i + Nx * (j + Ny * k)).astype(float)

    owned = [np.arange(s, s + n) for s, n in zip(da.starts, da.counts)]

    glob = global_index(*owned)
    local = da.create_local(-1.)
    da.global_to_local(glob, local)

    halo = [np.arange(*da.halo_range(a)) for a in range(3)]
    np.testing.assert_array_equal(da.take(local, halo), global_index(*halo))

    # physical boundary ghosts are not touched
    if ghosted and da.at_lower_boundary(0):
        assert np.all(local[:, :, 0] == -1.)


def test_local_to_global_owned_only():

    da = _make_array(True)

    local = da.create_local()
    local[da.owned()] = 1.

    glob = da.create_global()
    da.local_to_global(local, glob)

    np.testing.assert_array_equal(glob, 1.)


def test_local_to_global_sums_shared_ghosts():

    da = _make_array(True)

    local = da.create_local(1.)
    glob = da.create_global()
    da.local_to_global(local, glob)

    # every entry outside the physical boundary ghosts ends up exactly once
    nhalo = int(np.prod([hi - lo for lo, hi in (da.halo_range(a) for a in range(3))]))

    assert da.allreduce(float(glob.sum())) == pytest.approx(da.allreduce(nhalo))
    assert np.all(glob >= 1.)
