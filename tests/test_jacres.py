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
Tests for the staggered-grid residual evaluation.

Run with: mpirun -np 1 python -m pytest tests/test_jacres.py -v
"""
import numpy as np
import pytest
from mpi4py import MPI

from StagFlow.bc import BCCtx
from StagFlow.fdstag import StaggeredGrid, PointType, EDGES
from StagFlow.jacres import JacRes
from StagFlow.mesh import MeshSegInp
from StagFlow.models import ConstitutiveError, Material, MatParLim, Rheology
from StagFlow.timestep import TimeStep

serial_only = pytest.mark.skipif(MPI.COMM_WORLD.size > 1, reason="checks global indices")


def make_jacres(nel=(4, 4, 4),
                bounds=((0., 1.), (0., 1.), (0., 1.)),
                segs=(None, None, None),
                materials=None,
                free_slip=False,
                dt=1.,
                grav=(0., 0., 0.),
                FSSA=0.,
                pShiftAct=False,
                Tbot=None,
                Ttop=None,
                comm=None):

    fs = StaggeredGrid(nel, comm=comm)
    fs.gen_coord(bounds, segs)
    fs.dof.compute('coupled')

    bc = BCCtx(fs)
    if free_slip:
        bc.set_free_slip()
    bc.set_temperature(Tbot, Ttop)

    if materials is None:
        materials = [Material(eta=1.)]

    rheo = Rheology(materials, MatParLim(DII_ref=1.))
    ts = TimeStep(dt=dt, dtmax=10. * dt)

    jr = JacRes(fs, bc, rheo, ts, grav=grav, FSSA=FSSA, pShiftAct=pShiftAct)
    jr.set_uniform_phase(0)

    return jr


def coords(fs, pt):
    """Coordinates (x, y, z) of the owned points of a point set, each of shape (nz, ny, nx)."""
    axes = [ds.ncoor if node else ds.ccoor for ds, node in zip(fs.ds, pt.nodes)]
    z, y, x = np.meshgrid(axes[2], axes[1], axes[0], indexing='ij')
    return x, y, z


def solution(jr, vx=None, vy=None, vz=None, p=None):
    """Coupled solution vector from functions of the point coordinates (default zero)."""
    fs = jr.fs
    fields = []
    for pt, f in zip((PointType.X, PointType.Y, PointType.Z, PointType.CENTER), (vx, vy, vz, p)):
        x, y, z = coords(fs, pt)
        fields.append(np.zeros_like(x) if f is None else f(x, y, z))
    return jr.pack_solution(*fields)


def random_solution(jr, seed=0):
    return np.random.default_rng(seed).uniform(-1., 1., jr.fs.dof.ln)


def eval_strain_rate(jr, x):
    jr.copy_solution(x)
    jr.get_i2gdt()
    jr.get_eff_strain_rate()


# ---------------------------
# Strain rate and vorticity
# ---------------------------

def test_deviatoric_strain_rate_is_trace_free():

    jr = make_jacres()
    eval_strain_rate(jr, random_solution(jr))

    sv = jr.svCell
    np.testing.assert_allclose(sv.dxx + sv.dyy + sv.dzz, 0., atol=1e-12)
    assert np.any(sv.bulk.theta != 0.)


def test_pure_shear():

    jr = make_jacres()
    x = solution(jr, vx=lambda x, y, z: x, vy=lambda x, y, z: -y)

    eval_strain_rate(jr, x)
    jr.get_vorticity()

    sv = jr.svCell
    np.testing.assert_allclose(sv.dxx, 1.)
    np.testing.assert_allclose(sv.dyy, -1.)
    np.testing.assert_allclose(sv.dzz, 0., atol=1e-12)
    np.testing.assert_allclose(sv.bulk.theta, 0., atol=1e-12)

    for pt in EDGES:
        np.testing.assert_allclose(jr.vorticity(pt), 0., atol=1e-12)
        np.testing.assert_allclose(jr.sv_edge(pt).d, 0., atol=1e-12)


@serial_only
def test_rigid_rotation():

    omega = 0.3

    jr = make_jacres()
    x = solution(jr, vx=lambda x, y, z: -omega * y, vy=lambda x, y, z: omega * x)

    eval_strain_rate(jr, x)
    jr.get_vorticity()

    sv = jr.svCell
    for d in (sv.dxx, sv.dyy, sv.dzz):
        np.testing.assert_allclose(d, 0., atol=1e-12)

    # edges away from the mirrored boundary ghosts
    inner = (slice(None), slice(1, -1), slice(1, -1))

    np.testing.assert_allclose(jr.lwxy[inner], 2. * omega)
    np.testing.assert_allclose(jr.svXYEdge.d[inner], 0., atol=1e-12)
    np.testing.assert_allclose(jr.lwxz, 0., atol=1e-12)
    np.testing.assert_allclose(jr.lwyz, 0., atol=1e-12)


def test_elastic_history_enters_effective_strain_rate():

    jr = make_jacres(materials=[Material(eta=1., G=1.)], dt=1.)
    jr.svCell.hxx[...] = 2.

    eval_strain_rate(jr, random_solution(jr))

    own = jr.fs.da_cen.owned()
    np.testing.assert_allclose(jr.svCell.dev.I2Gdt, 0.5)
    np.testing.assert_allclose(jr.ldxx[own], jr.svCell.dxx + 1.)
    np.testing.assert_allclose(jr.ldyy[own], jr.svCell.dyy)


# ---------------------------
# Boundary constraints
# ---------------------------

@serial_only
def test_two_point_constraint():

    jr = make_jacres()
    jr.bc.bcvx[:, 0, :] = 1.

    jr.copy_solution(solution(jr))

    # ghost = 2 * bc - owner, owner is zero
    np.testing.assert_allclose(jr.lvx[1:-1, 0, 1:-1], 2.)
    # mirrored ghosts elsewhere
    np.testing.assert_allclose(jr.lvx[1:-1, -1, 1:-1], 0.)


@serial_only
def test_temperature_constraint():

    jr = make_jacres()
    jr.bc.set_temperature(Tbot=1.)
    jr.set_temperature(0.5)

    np.testing.assert_allclose(jr.lT[0, 1:-1, 1:-1], 1.5)
    np.testing.assert_allclose(jr.lT[-1, 1:-1, 1:-1], 0.5)


def test_free_slip_nullifies_residual():

    jr = make_jacres(free_slip=True)
    f = jr.form_residual(random_solution(jr))

    fs = jr.fs
    lst, _ = next(jr.bc.spc())

    assert lst.size > 0
    np.testing.assert_array_equal(f[lst - fs.dof.st], 0.)

    if fs.da_x.at_lower_boundary(0):
        np.testing.assert_array_equal(jr.gvx[:, :, 0], 0.)


def test_single_point_constraint_value():

    jr = make_jacres()
    fs = jr.fs

    # last owned X face of the first row, present on every rank
    idx = fs.dof.ivx[fs.da_x.owned()]
    pos = (0, 0, idx.shape[2] - 1)
    jr.bc.add_velocity_spc(idx[pos], 5.)

    f = jr.form_residual(random_solution(jr))

    assert jr.gvx[pos] == 5.
    assert f[idx[pos] - fs.dof.st] == 0.


def test_constraint_must_be_owned():

    jr = make_jacres()
    with pytest.raises(ValueError):
        jr.bc.add_pressure_spc([jr.fs.dof.st + jr.fs.dof.ln], 0.)


# ---------------------------
# Residual
# ---------------------------

def test_second_invariant_is_non_negative():

    jr = make_jacres(materials=[Material(eta=1., Bn=1., n=3.)])
    jr.form_residual(random_solution(jr))

    for sv in [jr.svCell] + [jr.sv_edge(pt) for pt in EDGES]:
        assert np.all(np.isfinite(sv.dev.DII))
        assert np.all(sv.dev.DII >= 0.)
        assert np.all(sv.dev.eta > 0.)


@serial_only
def test_hydrostatic_compressible_column():

    p0 = 1.
    mat = Material(eta=1., rho=2., K=100.)
    jr = make_jacres(nel=(3, 3, 3), materials=[mat], grav=(0., 0., -10.))

    f = jr.form_residual(solution(jr, p=lambda x, y, z: np.full_like(x, p0)))

    # -1/(K dt) (p - pn) with zero pressure history
    np.testing.assert_allclose(jr.gc, -0.01)

    rho = 2. * (1. + p0 / 100.)
    np.testing.assert_allclose(jr.svCell.bulk.rho, rho)

    h = 1. / 3.
    np.testing.assert_allclose(jr.gfz[1:-1], 10. * rho)
    np.testing.assert_allclose(jr.gfz[0], p0 / h + 5. * rho)
    np.testing.assert_allclose(jr.gfz[-1], -p0 / h + 5. * rho)

    np.testing.assert_allclose(jr.gfx[:, :, 1:-1], 0., atol=1e-12)
    np.testing.assert_allclose(jr.gfx[:, :, 0], p0 / h)
    np.testing.assert_allclose(jr.gfx[:, :, -1], -p0 / h)

    assert f.shape == (jr.fs.dof.ln,)
    np.testing.assert_allclose(f[jr.fs.dof.lnv:], -0.01)


@serial_only
def test_channel_flow_is_exact():

    # vx = y (1 - y) driven by dp/dx = -2 with unit viscosity
    jr = make_jacres()
    x = solution(jr,
                 vx=lambda x, y, z: y * (1. - y),
                 p=lambda x, y, z: 2. - 2. * x)

    jr.form_residual(x)

    np.testing.assert_allclose(jr.gfx[:, 1:-1, 1:-1], 0., atol=1e-12)
    np.testing.assert_allclose(jr.gfy[:, 1:-1, :], 0., atol=1e-12)
    np.testing.assert_allclose(jr.gfz[1:-1], 0., atol=1e-12)
    np.testing.assert_allclose(jr.gc, 0., atol=1e-12)


def test_residual_norms():

    jr = make_jacres()
    f = jr.form_residual(random_solution(jr))

    norms = jr.view_residual()

    comm = jr.fs.pgrid.comm
    lnv = jr.fs.dof.lnv

    assert norms['mRes_2'] == pytest.approx(np.sqrt(comm.allreduce(float(np.sum(f[:lnv]**2)))))
    assert norms['Div_2'] == pytest.approx(np.sqrt(comm.allreduce(float(np.sum(f[lnv:]**2)))))
    assert norms['Div_min'] <= norms['Div_max']


def test_constitutive_error_propagates():

    jr = make_jacres(materials=[Material(eta=1., rho=np.nan)])

    with pytest.raises(ConstitutiveError):
        jr.form_residual(random_solution(jr))


def test_stage_order():

    jr = make_jacres()

    with pytest.raises(RuntimeError):
        jr.get_eff_strain_rate()

    with pytest.raises(RuntimeError):
        jr.copy_residual()

    jr.copy_solution(random_solution(jr))

    with pytest.raises(RuntimeError):
        jr.get_residual()


def test_solution_size_mismatch():

    jr = make_jacres()
    with pytest.raises(ValueError):
        jr.copy_solution(np.zeros(jr.fs.dof.ln + 1))


def owned_block(da):
    """Slices of a serial array covering the points another layout owns."""
    return tuple(slice(s, s + n) for s, n in zip(da.starts[::-1], da.counts[::-1]))


def test_parallel_residual_matches_serial():

    segs = (MeshSegInp(delims=[0.4], ncells=[3, 5], biases=[2., 0.5]),
            MeshSegInp(delims=[], ncells=[6], biases=[3.]),
            None)
    mat = Material(rho=1., eta=1., Bn=1., n=3., G=10., K=100., alpha=1e-2, cohesion=0.5, friction=30.)

    kwargs = dict(nel=(8, 6, 5),
                  bounds=((0., 2.), (-1., 1.), (-1., 0.)),
                  segs=segs,
                  materials=[mat],
                  free_slip=True,
                  dt=0.1,
                  grav=(0., 0., -1.),
                  FSSA=0.5,
                  pShiftAct=True,
                  Tbot=2.,
                  Ttop=1.)

    fields = dict(vx=lambda x, y, z: np.sin(np.pi * x) * np.cos(y) * (1. + z),
                  vy=lambda x, y, z: x * y * z,
                  vz=lambda x, y, z: np.cos(x + y) * z**2,
                  p=lambda x, y, z: 1. - z + 0.1 * x * y)

    results = []
    for comm in (MPI.COMM_WORLD, MPI.COMM_SELF):
        jr = make_jacres(comm=comm, **kwargs)
        x, _, z = coords(jr.fs, PointType.CENTER)
        jr.set_temperature(1. - z + 0.1 * x)
        jr.form_residual(solution(jr, **fields))
        results.append(jr)

    par, ser = results

    for name, pt in (('gfx', PointType.X), ('gfy', PointType.Y), ('gfz', PointType.Z), ('gc', PointType.CENTER)):
        np.testing.assert_allclose(getattr(par, name),
                                   getattr(ser, name)[owned_block(par.fs.da[pt])],
                                   rtol=1e-12, atol=1e-12)

    np.testing.assert_allclose(par.svCell.dev.DII,
                               ser.svCell.dev.DII[owned_block(par.fs.da_cen)],
                               rtol=1e-12, atol=1e-12)

    assert par.pShift == pytest.approx(ser.pShift, rel=1e-12)


# ---------------------------
# Phase ratios, history and time step
# ---------------------------

def test_phase_ratios():

    jr = make_jacres(materials=[Material(eta=1.), Material(eta=10.)])

    ratios = np.zeros(jr.fs.da_cen.shape + (2,))
    ratios[..., 0] = 0.25
    ratios[..., 1] = 0.75
    jr.set_phase_ratios(ratios)

    for pt in EDGES:
        np.testing.assert_allclose(jr.sv_edge(pt).phRat[..., 1], 0.75)

    with pytest.raises(ValueError):
        jr.set_phase_ratios(np.zeros_like(ratios))


@serial_only
def test_pressure_shift():

    jr = make_jacres(pShiftAct=True)
    jr.copy_solution(solution(jr, p=lambda x, y, z: 2. - 2. * x))

    assert jr.get_press_shift() == pytest.approx(1.)


def test_update_history():

    jr = make_jacres(materials=[Material(eta=1., G=1.)])
    jr.form_residual(random_solution(jr))
    jr.update_history()

    own = jr.fs.da_cen.owned()
    np.testing.assert_array_equal(jr.svCell.bulk.pn, jr.lp[own])
    np.testing.assert_array_equal(jr.svCell.hxx, jr.svCell.sxx)
    np.testing.assert_array_equal(jr.svXYEdge.h, jr.svXYEdge.s)


def test_courant_step_uniform():

    jr = make_jacres(dt=1.)
    jr.copy_solution(solution(jr, vx=lambda x, y, z: np.ones_like(x)))
    assert jr.get_max_velocity() == 1.

    # Cmax / max(|v| / h) = 0.5 / 4
    assert jr.get_courant_step() == pytest.approx(0.125)
    assert jr.ts.pdt == 1.


def test_courant_step_non_uniform():

    segs = (MeshSegInp(delims=[0.5], ncells=[1, 3], biases=[1., 1.]), None, None)
    jr = make_jacres(segs=segs, dt=1.)
    jr.copy_solution(solution(jr, vx=lambda x, y, z: np.ones_like(x)))

    # smallest upwind cell is 1/6
    assert jr.get_courant_step() == pytest.approx(1. / 12.)


def test_courant_step_at_rest():

    jr = make_jacres(dt=1.)
    jr.copy_solution(solution(jr))

    assert jr.get_courant_step() == pytest.approx(1.1)
    assert jr.get_courant_step() == pytest.approx(1.21)
