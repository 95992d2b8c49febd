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
Residual evaluation of the staggered-grid Stokes equations.

One nonlinear iteration runs

    copy_solution -> get_i2gdt -> get_eff_strain_rate -> get_residual -> copy_residual

Strain-rate components are gathered around every point with a per-axis
stencil that depends only on the staggering of the source and target point
sets, so cell centers and the three edge types share one code path.
"""
import itertools
from typing import TYPE_CHECKING, Dict, Sequence

from mpi4py import MPI
import numpy as np
import numpy.typing as npt

from .fdstag import EDGES, FACES, PointType
from .logging import get_logger
from .solvar import SolVarCell, SolVarEdge, allocate_phase_ratios

if TYPE_CHECKING:
    from .bc import BCCtx
    from .fdstag import StaggeredGrid
    from .models.rheology import Rheology
    from .timestep import TimeStep

NDArray = npt.NDArray[np.floating]

# normal axes (a, b) of every edge type and the sign of its vorticity component,
# w_xy = dvy/dx - dvx/dy, w_xz = dvx/dz - dvz/dx, w_yz = dvz/dy - dvy/dz
EDGE_AXES = {PointType.XY: (0, 1, 1.),
             PointType.XZ: (0, 2, -1.),
             PointType.YZ: (1, 2, 1.)}


def _along(h: NDArray, axis: int) -> NDArray:
    """Reshape a per-axis array to broadcast over (z, y, x) arrays."""
    shape = [1, 1, 1]
    shape[2 - axis] = -1
    return h.reshape(shape)


def _stencil(target: PointType, source: PointType, start, n, tnods) -> list:
    """
    Per-axis global indices of the source points surrounding the target points.

    Same staggering: the point itself. Cell target, node source: the two
    bounding nodes. Node target, cell source: the two adjacent cells, with the
    out-of-range cell replaced by the boundary cell.
    """
    index = []
    for a in range(3):
        i = np.arange(start[a], start[a] + n[a])
        if target.nodes[a] == source.nodes[a]:
            index.append([i])
        elif source.nodes[a]:
            index.append([i, i + 1])
        else:
            mx = tnods[a] - 1
            index.append([np.where(i == mx, mx - 1, i), np.where(i == 0, 0, i - 1)])
    return index


def _apply_tpc(da, local: NDArray, bcl: NDArray, axes: Sequence[int]) -> None:
    """
    Set boundary ghosts of a local array from two-point constraints.

    Face ghosts mirror the owner (NaN boundary value) or impose the boundary
    value midway between owner and ghost. Edge and corner ghosts are then
    extrapolated from the face ghosts, exact for linear fields.
    """
    faces = []
    for a in axes:
        if da.at_lower_boundary(a):
            faces.append((a, -1, 0))
        if da.at_upper_boundary(a):
            M = da.sizes[a]
            faces.append((a, M, M - 1))

    halo = [da.halo_range(b) for b in range(3)]

    def sl(sel: Dict[int, int]) -> tuple:
        idx = []
        for b in range(3):
            g = da.ghost_starts[b]
            if b in sel:
                idx.append(sel[b] - g)
            else:
                idx.append(slice(halo[b][0] - g, halo[b][1] - g))
        return tuple(idx[::-1])

    for a, G, O in faces:
        owner = local[sl({a: O})]
        bc = bcl[sl({a: G})]
        local[sl({a: G})] = np.where(np.isnan(bc), owner, 2. * bc - owner)

    for (a, Ga, Oa), (b, Gb, Ob) in itertools.combinations(faces, 2):
        if a == b:
            continue
        local[sl({a: Ga, b: Gb})] = (local[sl({a: Oa, b: Gb})]
                                     + local[sl({a: Ga, b: Ob})]
                                     - local[sl({a: Oa, b: Ob})])

    for (a, Ga, Oa), (b, Gb, Ob), (c, Gc, Oc) in itertools.combinations(faces, 3):
        if len({a, b, c}) < 3:
            continue
        local[sl({a: Ga, b: Gb, c: Gc})] = (local[sl({a: Oa, b: Gb, c: Gc})]
                                            + local[sl({a: Ga, b: Ob, c: Gc})]
                                            + local[sl({a: Ga, b: Gb, c: Oc})]
                                            - 2. * local[sl({a: Oa, b: Ob, c: Oc})])


class JacRes:
    """
    Solution state and residual assembler.

    Parameters
    ----------
    fs : StaggeredGrid
        Staggered grid with coordinates.
    bc : BCCtx
        Boundary constraints.
    rheo : Rheology
        Constitutive closure.
    ts : TimeStep
        Time stepping context.
    grav : sequence of float, optional
        Gravity vector.
    FSSA : float, optional
        Free surface stabilization parameter (0: off).
    pShiftAct : bool, optional
        Subtract the mean pressure of the top cell layer in the rheology.
    """

    def __init__(self,
                 fs: "StaggeredGrid",
                 bc: "BCCtx",
                 rheo: "Rheology",
                 ts: "TimeStep",
                 grav: Sequence[float] = (0., 0., 0.),
                 FSSA: float = 0.,
                 pShiftAct: bool = False) -> None:

        self.logger = get_logger('stagflow.jacres')

        self.fs = fs
        self.bc = bc
        self.rheo = rheo
        self.ts = ts

        self.grav = np.asarray(grav, dtype=float)
        self.FSSA = float(FSSA)
        self.pShift = 0.
        self.pShiftAct = bool(pShiftAct)

        if not fs.dof.is_valid:
            fs.dof.compute('coupled')

        # coupled solution and residual
        self.gsol = np.zeros(fs.dof.ln)
        self.gres = np.zeros(fs.dof.ln)

        # velocity
        self.gvx, self.gvy, self.gvz = [fs.da[pt].create_global() for pt in FACES]
        self.lvx, self.lvy, self.lvz = [fs.da[pt].create_local() for pt in FACES]

        # momentum residual
        self.gfx, self.gfy, self.gfz = [fs.da[pt].create_global() for pt in FACES]
        self.lfx, self.lfy, self.lfz = [fs.da[pt].create_local() for pt in FACES]

        # pressure, continuity residual, temperature
        self.gp = fs.da_cen.create_global()
        self.lp = fs.da_cen.create_local()
        self.gc = fs.da_cen.create_global()
        self.lT = fs.da_cen.create_local()

        # effective strain rates
        self.ldxx, self.ldyy, self.ldzz = [fs.da_cen.create_local() for _ in range(3)]
        self.ldxy, self.ldxz, self.ldyz = [fs.da[pt].create_local() for pt in EDGES]

        # vorticity
        self.lwxy, self.lwxz, self.lwyz = [fs.da[pt].create_local() for pt in EDGES]

        # per-point state, phase ratios share one buffer
        shapes = [fs.da_cen.shape] + [fs.da[pt].shape for pt in EDGES]
        self.svBuff, (phc, phxy, phxz, phyz) = allocate_phase_ratios(rheo.num_phases, shapes)

        self.svCell = SolVarCell.zeros(fs.da_cen.shape, phc)
        self.svXYEdge = SolVarEdge.zeros(fs.da_xy.shape, phxy)
        self.svXZEdge = SolVarEdge.zeros(fs.da_xz.shape, phxz)
        self.svYZEdge = SolVarEdge.zeros(fs.da_yz.shape, phyz)

        self._stage = None

    # ---------------------------
    # Lookup tables
    # ---------------------------

    @property
    def _lv(self):
        return self.lvx, self.lvy, self.lvz

    @property
    def _lf(self):
        return self.lfx, self.lfy, self.lfz

    @property
    def _tnods(self):
        return tuple(ds.tnods for ds in self.fs.ds)

    def sv_edge(self, pt: PointType) -> SolVarEdge:
        return {PointType.XY: self.svXYEdge,
                PointType.XZ: self.svXZEdge,
                PointType.YZ: self.svYZEdge}[pt]

    def edge_strain_rate(self, pt: PointType) -> NDArray:
        return {PointType.XY: self.ldxy,
                PointType.XZ: self.ldxz,
                PointType.YZ: self.ldyz}[pt]

    def vorticity(self, pt: PointType) -> NDArray:
        return {PointType.XY: self.lwxy,
                PointType.XZ: self.lwxz,
                PointType.YZ: self.lwyz}[pt]

    def _strain_rate_components(self):
        # (point set, local array, weight of the squared component in J2)
        return ((PointType.CENTER, self.ldxx, 0.5),
                (PointType.CENTER, self.ldyy, 0.5),
                (PointType.CENTER, self.ldzz, 0.5),
                (PointType.XY, self.ldxy, 1.),
                (PointType.XZ, self.ldxz, 1.),
                (PointType.YZ, self.ldyz, 1.))

    # ---------------------------
    # Phase ratios and temperature
    # ---------------------------

    def set_phase_ratios(self, ratios: NDArray) -> None:
        """
        Set cell phase ratios and interpolate them to the edges.

        Parameters
        ----------
        ratios : ndarray
            Phase ratios of the owned cells, shape (nz, ny, nx, num_phases).
        """
        if not np.allclose(np.sum(ratios, axis=-1), 1.):
            raise ValueError("Phase ratios must add up to one")

        fs = self.fs
        cen = fs.da_cen
        own = cen.owned()

        self.svCell.phRat[...] = ratios

        tmp = cen.create_local()

        for ip in range(self.rheo.num_phases):

            tmp[own] = ratios[..., ip]
            cen.local_to_local(tmp)

            for pt in EDGES:
                da = fs.da[pt]
                samples = list(itertools.product(*_stencil(pt, PointType.CENTER, da.starts, da.counts, self._tnods)))
                self.sv_edge(pt).phRat[..., ip] = sum(cen.take(tmp, idx) for idx in samples) / len(samples)

    def set_uniform_phase(self, iphase: int = 0) -> None:
        """Assign one phase to all points."""
        ratios = np.zeros(self.fs.da_cen.shape + (self.rheo.num_phases,))
        ratios[..., iphase] = 1.
        self.set_phase_ratios(ratios)

    def set_temperature(self, T) -> None:
        """Set the temperature of the owned cells (array or scalar) and its ghosts."""
        cen = self.fs.da_cen
        gT = cen.create_global()
        gT[...] = T
        cen.global_to_local(gT, self.lT)
        _apply_tpc(cen, self.lT, self.bc.bcT, (0, 1, 2))

    # ---------------------------
    # Solution vector
    # ---------------------------

    def pack_solution(self, vx, vy, vz, p) -> NDArray:
        """Coupled solution vector [X-faces | Y-faces | Z-faces | centers] from owned fields."""
        return np.concatenate([np.ravel(vx), np.ravel(vy), np.ravel(vz), np.ravel(p)])

    def copy_solution(self, x: NDArray) -> None:
        """
        Load a coupled solution vector.

        Applies single-point constraints, splits the vector into velocity and
        pressure, refreshes the ghost points and applies the two-point
        constraints on the boundary ghosts.

        Parameters
        ----------
        x : ndarray
            Local part of the coupled solution vector.
        """
        fs = self.fs
        dof = fs.dof

        if dof.idxmod != 'coupled':
            raise RuntimeError("Solution vector requires the coupled dof numbering")

        x = np.asarray(x, dtype=float)
        if x.shape != (dof.ln,):
            raise ValueError(f"Solution vector has {x.size} entries, expected {dof.ln}")

        sol = self.gsol
        sol[:] = x

        for lst, vals in self.bc.spc():
            sol[lst - dof.st] = vals

        offset = 0
        for pt, gv in zip(FACES + (PointType.CENTER,), (self.gvx, self.gvy, self.gvz, self.gp)):
            da = fs.da[pt]
            gv[...] = sol[offset:offset + da.size].reshape(da.shape)
            offset += da.size

        fs.da_x.global_to_local(self.gvx, self.lvx)
        fs.da_y.global_to_local(self.gvy, self.lvy)
        fs.da_z.global_to_local(self.gvz, self.lvz)
        fs.da_cen.global_to_local(self.gp, self.lp)

        # two-point constraints on the cell-like axes of every point set
        _apply_tpc(fs.da_x, self.lvx, self.bc.bcvx, (1, 2))
        _apply_tpc(fs.da_y, self.lvy, self.bc.bcvy, (0, 2))
        _apply_tpc(fs.da_z, self.lvz, self.bc.bcvz, (0, 1))
        _apply_tpc(fs.da_cen, self.lp, self.bc.bcp, (0, 1, 2))

        self._stage = 'solution'

    # ---------------------------
    # Strain rate and vorticity
    # ---------------------------

    def get_i2gdt(self) -> None:
        """Inverse elastic parameter at centers and edges."""
        dt = self.ts.dt
        self.svCell.dev.I2Gdt[...] = self.rheo.get_i2gdt(self.svCell.phRat, dt)
        for pt in EDGES:
            sv = self.sv_edge(pt)
            sv.dev.I2Gdt[...] = self.rheo.get_i2gdt(sv.phRat, dt)

    def _cross_derivative(self, pt: PointType, comp: int, axis: int) -> NDArray:
        """Derivative of velocity component ``comp`` along ``axis`` at the owned edge points."""

        fs = self.fs
        da = fs.da[pt]
        da_f = fs.da[FACES[comp]]
        lv = self._lv[comp]

        start, n = da.starts, da.counts
        lower = list(start)
        lower[axis] -= 1

        h = _along(fs.ds[axis].node_size(start[axis], n[axis]), axis)

        return (lv[da_f.box(start, n)] - lv[da_f.box(lower, n)]) / h

    def get_eff_strain_rate(self) -> None:
        """
        Deviatoric strain rates at centers and edges.

        Stores the raw components in the point state and the elastically
        corrected effective components in the ghosted strain-rate arrays.
        """
        if self._stage is None:
            raise RuntimeError("No solution loaded, call copy_solution first")

        fs = self.fs
        cen = fs.da_cen
        start, n = cen.starts, cen.counts
        own = cen.owned()
        sv = self.svCell

        grad = []
        for a, (pt, lv) in enumerate(zip(FACES, self._lv)):
            da = fs.da[pt]
            upper = list(start)
            upper[a] += 1
            h = _along(fs.ds[a].cell_size(start[a], n[a]), a)
            grad.append((lv[da.box(upper, n)] - lv[da.box(start, n)]) / h)

        xx, yy, zz = grad
        theta = xx + yy + zz
        sv.bulk.theta[...] = theta

        sv.dxx[...] = xx - theta / 3.
        sv.dyy[...] = yy - theta / 3.
        sv.dzz[...] = zz - theta / 3.

        I2Gdt = sv.dev.I2Gdt
        self.ldxx[own] = sv.dxx + sv.hxx * I2Gdt
        self.ldyy[own] = sv.dyy + sv.hyy * I2Gdt
        self.ldzz[own] = sv.dzz + sv.hzz * I2Gdt

        for arr in (self.ldxx, self.ldyy, self.ldzz):
            cen.local_to_local(arr)

        for pt in EDGES:
            a, b, _ = EDGE_AXES[pt]
            sv = self.sv_edge(pt)
            sv.d[...] = 0.5 * (self._cross_derivative(pt, a, b) + self._cross_derivative(pt, b, a))

            da = fs.da[pt]
            ld = self.edge_strain_rate(pt)
            ld[da.owned()] = sv.d + sv.h * sv.dev.I2Gdt
            da.local_to_local(ld)

        self._stage = 'strain_rate'

    def get_vorticity(self) -> None:
        """Vorticity components at the edges (right-handed)."""

        if self._stage is None:
            raise RuntimeError("No solution loaded, call copy_solution first")

        for pt in EDGES:
            a, b, sign = EDGE_AXES[pt]
            da = self.fs.da[pt]
            lw = self.vorticity(pt)
            lw[da.owned()] = sign * (self._cross_derivative(pt, b, a) - self._cross_derivative(pt, a, b))
            da.local_to_local(lw)

    # ---------------------------
    # Residual
    # ---------------------------

    def _second_invariant(self, pt: PointType, start, n) -> NDArray:
        """
        Second invariant of the effective strain rate at the owned points of ``pt``.

        Every component is averaged over the source points of its stencil,
        diagonal components enter with weight 1/2.
        """
        J2 = np.zeros(tuple(n)[::-1])

        for spt, arr, base in self._strain_rate_components():
            da = self.fs.da[spt]
            samples = list(itertools.product(*_stencil(pt, spt, start, n, self._tnods)))
            w = base / len(samples)
            for idx in samples:
                J2 += w * da.take(arr, idx)**2

        return J2

    def _center_average(self, local: NDArray, pt: PointType, start, n) -> NDArray:
        """Average of a center field over the centers adjacent to the owned points of ``pt``."""

        index = []
        for a in range(3):
            i = np.arange(start[a], start[a] + n[a])
            index.append([i - 1, i] if pt.nodes[a] else [i])

        samples = list(itertools.product(*index))
        cen = self.fs.da_cen

        return sum(cen.take(local, idx) for idx in samples) / len(samples)

    def get_residual(self) -> None:
        """
        Assemble the momentum and continuity residuals.

        Requires the strain rates of the current solution. Failures of the
        constitutive closure propagate unchanged.
        """
        if self._stage not in ('strain_rate', 'residual'):
            raise RuntimeError("Strain rates are not computed for the current solution")

        fs = self.fs
        dt = self.ts.dt
        rheo = self.rheo

        for lf in self._lf:
            lf.fill(0.)

        # ---------------------------
        # cell centers
        # ---------------------------

        cen = fs.da_cen
        start, n = cen.starts, cen.counts
        own = cen.owned()
        sv = self.svCell

        XX, YY, ZZ = self.ldxx[own], self.ldyy[own], self.ldzz[own]

        sv.dev.DII[...] = np.sqrt(self._second_invariant(PointType.CENTER, start, n))

        pc = self.lp[own]
        Tc = self.lT[own]

        sv.eta_creep[...] = rheo.dev_const_eq(sv.dev, sv.phRat, dt, pc - self.pShift, Tc)
        rheo.get_stress_cell(sv, XX, YY, ZZ)

        # total stress
        sigma = (sv.sxx - pc, sv.syy - pc, sv.szz - pc)

        rheo.vol_const_eq(sv.bulk, sv.phRat, dt, pc, Tc)

        for a, (pt, lf, lv) in enumerate(zip(FACES, self._lf, self._lv)):

            da = fs.da[pt]
            ds = fs.ds[a]

            # gravity and free surface stabilization
            g = sv.bulk.rho * self.grav[a]
            t = self.FSSA * dt * g

            upper = list(start)
            upper[a] += 1
            lo = da.box(start, n)
            hi = da.box(upper, n)

            bd = _along(ds.node_size(start[a], n[a]), a)
            fd = _along(ds.node_size(start[a] + 1, n[a]), a)

            lf[lo] -= (sigma[a] + lv[lo] * t) / bd + g / 2.
            lf[hi] += (sigma[a] + lv[hi] * t) / fd - g / 2.

        bulk = sv.bulk
        self.gc[...] = -bulk.IKdt * (pc - bulk.pn) - bulk.theta + bulk.alpha * (Tc - bulk.Tn) / dt

        # ---------------------------
        # edges
        # ---------------------------

        for pt in EDGES:

            a, b, _ = EDGE_AXES[pt]
            da = fs.da[pt]
            start, n = da.starts, da.counts
            sv = self.sv_edge(pt)

            D = self.edge_strain_rate(pt)[da.owned()]

            sv.dev.DII[...] = np.sqrt(self._second_invariant(pt, start, n))

            pc = self._center_average(self.lp, pt, start, n)
            Tc = self._center_average(self.lT, pt, start, n)

            rheo.dev_const_eq(sv.dev, sv.phRat, dt, pc - self.pShift, Tc)
            rheo.get_stress_edge(sv, D)

            # shear stress acts on both velocity components of the edge
            for comp, axis in ((a, b), (b, a)):

                da_f = fs.da[FACES[comp]]
                lf = self._lf[comp]
                ds = fs.ds[axis]

                lower = list(start)
                lower[axis] -= 1

                bd = _along(ds.cell_size(start[axis] - 1, n[axis]), axis)
                fd = _along(ds.cell_size(start[axis], n[axis]), axis)

                lf[da_f.box(lower, n)] -= sv.s / bd
                lf[da_f.box(start, n)] += sv.s / fd

        fs.da_x.local_to_global(self.lfx, self.gfx)
        fs.da_y.local_to_global(self.lfy, self.gfy)
        fs.da_z.local_to_global(self.lfz, self.gfz)

        self._stage = 'residual'

    # ---------------------------
    # Residual vector
    # ---------------------------

    def copy_residual(self, f: NDArray | None = None) -> NDArray:
        """
        Flatten the residual into the coupled vector and zero constrained entries.

        Parameters
        ----------
        f : ndarray, optional
            Output vector (default: the internal residual vector).

        Returns
        -------
        ndarray
            Coupled residual vector.
        """
        if self._stage != 'residual':
            raise RuntimeError("Residual is not assembled for the current solution")

        dof = self.fs.dof
        if f is None:
            f = self.gres

        f[:] = self.pack_solution(self.gfx, self.gfy, self.gfz, self.gc)

        for lst, _ in self.bc.spc():
            f[lst - dof.st] = 0.

        return f

    def copy_momentum_res(self, f: NDArray) -> None:
        """Copy the momentum part of a coupled vector into the face residuals."""
        offset = 0
        for pt, gf in zip(FACES, (self.gfx, self.gfy, self.gfz)):
            da = self.fs.da[pt]
            gf[...] = f[offset:offset + da.size].reshape(da.shape)
            offset += da.size

    def copy_continuity_res(self, f: NDArray) -> None:
        """Copy the continuity part of a coupled vector into the center residual."""
        dof = self.fs.dof
        self.gc[...] = f[dof.lnv:dof.ln].reshape(self.fs.da_cen.shape)

    def view_residual(self) -> dict:
        """Print and return the norms of the constrained residual."""

        comm = self.fs.pgrid.comm

        self.copy_momentum_res(self.gres)
        self.copy_continuity_res(self.gres)

        dmin = comm.allreduce(float(self.gc.min()), op=MPI.MIN)
        dmax = comm.allreduce(float(self.gc.max()), op=MPI.MAX)
        d2 = np.sqrt(comm.allreduce(float(np.sum(self.gc**2)), op=MPI.SUM))
        f2 = np.sqrt(comm.allreduce(float(sum(np.sum(gf**2) for gf in (self.gfx, self.gfy, self.gfz))),
                                    op=MPI.SUM))

        self.logger.info("------------------------------------------")
        self.logger.info("Residual summary: ")
        self.logger.info("  Continuity: ")
        self.logger.info(f"    Div_min  = {dmin:12.12e} ")
        self.logger.info(f"    Div_max  = {dmax:12.12e} ")
        self.logger.info(f"    |Div|_2  = {d2:12.12e} ")
        self.logger.info("  Momentum: ")
        self.logger.info(f"    |mRes|_2 = {f2:12.12e} ")
        self.logger.info("------------------------------------------")

        return {'Div_min': dmin, 'Div_max': dmax, 'Div_2': d2, 'mRes_2': f2}

    # ---------------------------
    # History and auxiliary steps
    # ---------------------------

    def update_history(self) -> None:
        """Store pressure, temperature and deviatoric stresses as history of the next step."""

        own = self.fs.da_cen.owned()
        sv = self.svCell

        sv.bulk.pn[...] = self.lp[own]
        sv.bulk.Tn[...] = self.lT[own]
        sv.hxx[...] = sv.sxx
        sv.hyy[...] = sv.syy
        sv.hzz[...] = sv.szz

        for pt in EDGES:
            sv = self.sv_edge(pt)
            sv.h[...] = sv.s

    def get_press_shift(self) -> float:
        """Mean pressure of the top cell layer, subtracted in the rheology."""

        if not self.pShiftAct:
            return self.pShift

        fs = self.fs
        cen = fs.da_cen
        top = fs.dsz.tcels - 1

        lsum = 0.
        if cen.at_upper_boundary(2):
            lsum = float(self.gp[top - cen.starts[2]].sum())

        gsum = fs.pgrid.comm.allreduce(lsum, op=MPI.SUM)

        self.pShift = gsum / (fs.dsx.tcels * fs.dsy.tcels)

        return self.pShift

    def _max_inv_step(self, axis: int, gv: NDArray) -> float:

        fs = self.fs
        ds = fs.ds[axis]
        da = fs.da[FACES[axis]]

        if gv.size == 0:
            return 0.

        if ds.is_uniform:
            return float(np.abs(gv).max() / ds.h_uni)

        start, n = da.starts[axis], da.counts[axis]

        # upwind cell width
        h = np.where(gv >= 0.,
                     _along(ds.cell_size(start, n), axis),
                     _along(ds.cell_size(start - 1, n), axis))

        return float((np.abs(gv) / h).max())

    def get_max_velocity(self) -> float:
        """Largest velocity component magnitude over all owned faces."""

        lvmax = max((float(np.abs(gv).max()) for gv in (self.gvx, self.gvy, self.gvz) if gv.size), default=0.)

        return self.fs.pgrid.comm.allreduce(lvmax, op=MPI.MAX)

    def get_courant_step(self) -> float:
        """
        Update the time step from the Courant criterion.

        Returns
        -------
        float
            New time step, min(1.1 * dt, Cmax / max(|v|/h), dtmax).
        """
        ts = self.ts

        lidtmax = max(self._max_inv_step(a, gv) for a, gv in enumerate((self.gvx, self.gvy, self.gvz)))

        gidtmax = self.fs.pgrid.comm.allreduce(lidtmax, op=MPI.MAX) / ts.Cmax

        dt = min(1.1 * ts.dt, ts.dtmax)
        if gidtmax > 0.:
            dt = min(dt, 1. / gidtmax)

        ts.pdt = ts.dt
        ts.dt = dt

        return dt

    # ---------------------------
    # Full evaluation
    # ---------------------------

    def form_residual(self, x: NDArray, f: NDArray | None = None) -> NDArray:
        """Residual of a coupled solution vector."""
        self.copy_solution(x)
        self.get_press_shift()
        self.get_i2gdt()
        self.get_eff_strain_rate()
        self.get_residual()
        return self.copy_residual(f)
