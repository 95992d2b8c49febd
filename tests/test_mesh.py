import numpy as np
import pytest
from mpi4py import MPI

from StagFlow.mesh import MeshSegInp, MeshSeg1D, Discret1D


def serial_axis(beg, end, ncells, segs=None):
    ms = MeshSeg1D(beg, end, ncells, segs)
    ds = Discret1D(1, 0, [ncells + 1], 0, -1, -1, MPI.COMM_SELF)
    ds.gen_coord(ms)
    return ms, ds


def test_uniform_segment():

    ms = MeshSeg1D(0., 1., 4)

    np.testing.assert_allclose(ms.gen_coord(0, 5, 0), np.linspace(0., 1., 5))
    assert ms.uni_step == pytest.approx(0.25)
    assert ms.global_box == (0., 1.)


def test_biased_segment():

    ms = MeshSeg1D(0., 1., 4, MeshSegInp(delims=[], ncells=[4], biases=[2.]))
    x = ms.gen_coord(0, 5, 0)
    h = np.diff(x)

    assert x[0] == 0.
    assert x[-1] == 1.
    assert h[-1] / h[0] == pytest.approx(2.)
    # cell widths grow linearly
    np.testing.assert_allclose(np.diff(h), (h[-1] - h[0]) / 3.)


def test_sub_range_matches_full_range():

    ms = MeshSeg1D(0., 1., 6, MeshSegInp(delims=[], ncells=[6], biases=[0.5]))

    full = ms.gen_coord(0, 7, 0)
    part = ms.gen_coord(0, 3, 2)

    np.testing.assert_allclose(part, full[2:5])


def test_segments_are_continuous():

    segs = MeshSegInp(delims=[0.5], ncells=[2, 3], biases=[1., 1.])
    ms, ds = serial_axis(0., 1., 5, segs)

    np.testing.assert_allclose(ds.ncoor, [0., 0.25, 0.5, 0.5 + 0.5 / 3., 0.5 + 1. / 3., 1.])
    assert np.all(np.diff(ds.ncoor) > 0.)

    assert not ds.is_uniform
    assert ds.h_min == pytest.approx(1. / 6.)
    assert ds.h_max == pytest.approx(0.25)


def test_ghosts_and_cell_centers():

    ms, ds = serial_axis(0., 1., 4)

    # extrapolated boundary ghosts
    assert ds.node_coord(-1, 1)[0] == pytest.approx(-0.25)
    assert ds.node_coord(5, 1)[0] == pytest.approx(1.25)

    np.testing.assert_allclose(ds.ccoor, [0.125, 0.375, 0.625, 0.875])
    np.testing.assert_allclose(ds.cell_coord(-1, 6), np.linspace(-0.125, 1.125, 6))

    np.testing.assert_allclose(ds.cell_size(0, 4), 0.25)
    np.testing.assert_allclose(ds.node_size(0, 5), 0.25)

    assert ds.is_uniform
    assert ds.h_uni == pytest.approx(0.25)
    assert ds.local_box == (0., 1.)


def test_stretch():

    ms, ds = serial_axis(0., 1., 4)
    ds.stretch(ms, 0.5)

    np.testing.assert_allclose(ds.ncoor, np.linspace(0., 0.5, 5))
    np.testing.assert_allclose(ds.ccoor, np.linspace(0.0625, 0.4375, 4))
    assert ds.h_uni == pytest.approx(0.125)
    assert ms.global_box == (0., 0.5)


def test_gather_coord_serial():

    ms, ds = serial_axis(-1., 1., 8)
    crd = ds.gather_coord()

    np.testing.assert_allclose(crd, np.linspace(-1., 1., 9))
    crd[0] = 100.
    assert ds.ncoor[0] == -1.


def test_segment_overrun():

    # segment description shorter than the decomposed axis
    ms = MeshSeg1D(0., 1., 3)
    ds = Discret1D(1, 0, [6], 0, -1, -1)

    with pytest.raises(ValueError):
        ds.gen_coord(ms)


@pytest.mark.parametrize("ncells,expected", [(8, 3), (6, 1), (4, 2)])
def test_check_mg(ncells, expected):
    ms, ds = serial_axis(0., 1., ncells)
    assert ds.check_mg('x') == expected


@pytest.mark.parametrize("nproc,nnod_proc,message", [
    (1, [6], "Local grid size is an odd number in x-direction"),
    (3, [2, 2, 4], "Uniform local grid size doesn't exist in x-direction"),
    (2, [2, 5], "Local grid size is not constant on all processors in x-direction"),
])
def test_check_mg_errors(nproc, nnod_proc, message):

    grnext = 1 if nproc > 1 else -1
    ds = Discret1D(nproc, 0, nnod_proc, 0, -1, grnext)

    with pytest.raises(ValueError, match=message):
        ds.check_mg('x')
