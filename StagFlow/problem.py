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
import os
import io
import signal
import numpy as np
from mpi4py import MPI

from typing import Type
import numpy.typing as npt
try:
    # Py>=3.11
    from typing import Self
except ImportError:
    # Py<=3.10
    from typing_extensions import Self

from . import __version__
from .bc import BCCtx
from .fdstag import StaggeredGrid
from .io import (read_yaml_input, write_config, create_output_directory, write_history, HISTORY_COLUMNS,
                 sanitize_options, sanitize_numerics, sanitize_bc, sanitize_initial)
from .jacres import JacRes
from .logging import get_logger
from .mesh import MeshSegInp
from .models import Material, MatParLim, Rheology
from .scaling import Scaling
from .timestep import TimeStep


class Problem:
    """
    Problem driver for StagFlow simulations.

    Builds the staggered grid, the dof numbering, the boundary conditions, the
    constitutive closure and the residual evaluator from nondimensionalized
    input, and evaluates the residual of the coupled Stokes system.

    Parameters
    ----------
    grid : dict
        Grid input (cell numbers, bounds, segments, process grid).
    materials : list of dict
        Material phases.
    limits : dict
        Material parameter limits.
    options : dict, optional
        Output options.
    numerics : dict, optional
        Time stepping and body force input.
    bc : dict, optional
        Boundary conditions.
    initial : dict, optional
        Initial pressure, temperature and phase.
    scaling : dict, optional
        Characteristic units of the input (default: dimensional input).
    comm : MPI.Comm, optional
        Communicator (default: COMM_WORLD).
    """

    def __init__(self,
                 grid: dict,
                 materials: list,
                 limits: dict,
                 options: dict | None = None,
                 numerics: dict | None = None,
                 bc: dict | None = None,
                 initial: dict | None = None,
                 scaling: dict | None = None,
                 comm: MPI.Comm | None = None
                 ) -> None:

        self.logger = get_logger('stagflow.problem')

        self.options = options if options is not None else sanitize_options({}, silent=True)
        self.numerics = numerics if numerics is not None else sanitize_numerics({}, silent=True)
        self.bc_input = bc if bc is not None else sanitize_bc({}, silent=True)
        self.initial = initial if initial is not None else sanitize_initial({}, silent=True)
        self.grid = grid
        self.materials = materials
        self.limits = limits

        self.scal = Scaling.from_dict(scaling)
        scal = self.scal

        # Grid
        self.fs = StaggeredGrid([grid[f'nel_{ax}'] for ax in 'xyz'], grid['procs'], comm)

        bounds = [[b / scal.length for b in grid[ax]] for ax in 'xyz']
        segs = [self._segments(grid.get(f'seg_{ax}')) for ax in 'xyz']
        self.fs.gen_coord(bounds, segs)
        self.fs.dof.compute('coupled')

        # Boundary conditions
        self.bc = BCCtx(self.fs)
        if self.bc_input['velocity'] == 'free_slip':
            self.bc.set_free_slip()
        self.bc.set_temperature(*[None if self.bc_input[k] is None else self.bc_input[k] / scal.temperature
                                  for k in ('Tbot', 'Ttop')])

        # Constitutive closure
        phases = [self._material(m) for m in materials]
        self.rheo = Rheology(phases, MatParLim.from_dict(self._limits(limits)))

        # Time stepping and residual
        self.ts = TimeStep(dt=self.numerics['dt'] / scal.time,
                           dtmax=self.numerics['dtmax'] / scal.time,
                           Cmax=self.numerics['Cmax'])

        self.jr = JacRes(self.fs, self.bc, self.rheo, self.ts,
                         grav=[g / scal.gravity_strength for g in self.numerics['gravity']],
                         FSSA=self.numerics['FSSA'],
                         pShiftAct=self.numerics['shift_press'])

        if not 0 <= self.initial['phase'] < self.rheo.num_phases:
            raise ValueError(f"Initial phase {self.initial['phase']} is not defined")

        self.jr.set_uniform_phase(self.initial['phase'])
        self.jr.set_temperature(self.initial['T0'] / scal.temperature)

        self.x0 = self._initial_guess(self.initial['p0'] / scal.stress)

        self.outdir = None
        self.history = None

    # ---------------------------
    # Input conversion
    # ---------------------------

    @staticmethod
    def _segments(d):
        if d is None:
            return None
        return MeshSegInp(delims=list(d['delims']), ncells=list(d['ncells']), biases=list(d['biases']))

    def _material(self, m: dict) -> Material:
        scal = self.scal
        return Material(rho=m['rho'] / scal.density,
                        eta=m['eta'] / scal.viscosity,
                        Bn=m['Bn'] / scal.power_law(m['n']),
                        n=m['n'],
                        G=m['G'] / scal.stress,
                        K=m['K'] / scal.stress,
                        alpha=m['alpha'] / scal.expansivity,
                        cohesion=m['cohesion'] / scal.stress,
                        friction=m['friction'])

    def _limits(self, d: dict) -> dict:
        scal = self.scal
        out = dict(d)
        for k in ('eta_min', 'eta_max', 'eta_ref'):
            out[k] = d[k] / scal.viscosity
        for k in ('minCh', 'tauUlt'):
            out[k] = d[k] / scal.stress
        out['TRef'] = d['TRef'] / scal.temperature
        if d.get('DII_ref') is not None:
            out['DII_ref'] = d['DII_ref'] / scal.strain_rate
        return out

    def _initial_guess(self, p0: float) -> npt.NDArray[np.floating]:
        fs = self.fs
        return self.jr.pack_solution(fs.da_x.create_global(),
                                     fs.da_y.create_global(),
                                     fs.da_z.create_global(),
                                     fs.da_cen.create_global(fill=p0))

    # ---------------------------
    # Constructors
    # ---------------------------

    @staticmethod
    def _get_mandatory_input(input_dict):

        # Mandatory inputs
        grid = input_dict['grid']
        materials = input_dict['materials']
        limits = input_dict['limits']

        return grid, materials, limits

    @staticmethod
    def _get_optional_input(input_dict):

        # Optional inputs
        return {k: input_dict.get(k, None)
                for k in ('options', 'numerics', 'bc', 'initial', 'scaling')}

    @classmethod
    def from_yaml(cls: Type[Self], fname: str) -> Self:
        """
        Create a Problem instance from a YAML file.

        Parameters
        ----------
        fname : str
            Path to YAML configuration file.

        Returns
        -------
        Problem
            Instantiated `Problem` object.
        """
        silent = MPI.COMM_WORLD.Get_rank() != 0
        if not silent:
            print(f"Reading input file: {fname}")
        with open(fname, "r") as ymlfile:
            input_dict = read_yaml_input(ymlfile, silent=silent)

        return cls.from_dict(input_dict)

    @classmethod
    def from_string(cls: Type[Self], ymlstring: str) -> Self:
        """
        Create a Problem instance from a YAML string.

        Parameters
        ----------
        ymlstring : str
            YAML content as a string.

        Returns
        -------
        Problem
            Instantiated `Problem` object.
        """
        silent = MPI.COMM_WORLD.Get_rank() != 0
        with io.StringIO(ymlstring) as ymlfile:
            input_dict = read_yaml_input(ymlfile, silent=silent)

        return cls.from_dict(input_dict)

    @classmethod
    def from_dict(cls: Type[Self], input_dict: dict) -> Self:
        """
        Create a Problem instance from a sanitized input dictionary.

        Parameters
        ----------
        input_dict : dict
            Sanitized input, as returned by ``read_yaml_input``.

        Returns
        -------
        Problem
            Instantiated `Problem` object.
        """
        return cls(*cls._get_mandatory_input(input_dict),
                   **cls._get_optional_input(input_dict))

    # ---------------------------
    # Residual evaluation
    # ---------------------------

    def residual(self, x: npt.NDArray[np.floating] | None = None) -> npt.NDArray[np.floating]:
        """
        Residual of the coupled system for a solution vector.

        Parameters
        ----------
        x : ndarray, optional
            Local part of the coupled solution vector (default: initial guess).

        Returns
        -------
        ndarray
            Local part of the coupled residual vector.
        """
        if x is None:
            x = self.x0
        return self.jr.form_residual(x).copy()

    # ---------------------------
    # Main run loop
    # ---------------------------

    def pre_run(self) -> None:
        """
        Create the output directory, write the full configuration and the
        processor partitioning, and print the grid summary.
        """
        comm = self.fs.pgrid.comm

        if not self.options['silent']:

            outdir = None
            if comm.Get_rank() == 0:
                outdir = create_output_directory(self.options['output'], self.options['use_tstamp'])
            self.outdir = comm.bcast(outdir, root=0)

            self.logger = get_logger('stagflow.problem', outdir=self.outdir, force=True)
            self.logger.info(f"Writing output into: {self.outdir}")

            if comm.Get_rank() == 0:
                sections = dict(zip(['options', 'grid', 'numerics', 'materials', 'limits', 'bc', 'initial', 'scaling'],
                                    [self.options, self.grid, self.numerics, self.materials, self.limits,
                                     self.bc_input, self.initial, self.scal.to_dict()]))

                write_config(os.path.join(self.outdir, 'config.yml'), sections, __version__)

        self.fs.view()

        if self.outdir is not None and self.options['write_partitioning']:
            fname = self.fs.proc_partitioning(self.outdir, self.scal.length)
            if fname is not None:
                self.logger.info(f"Processor partitioning written to {fname}")

        self.history = {name: [] for name, _ in HISTORY_COLUMNS}

        self._stop = False

    def run(self, nsteps: int = 1) -> dict:
        """
        Evaluate the residual of the current solution for a number of steps.

        Every step prints the residual summary, stores the history variables,
        updates the time step from the Courant criterion and applies the
        background strain rate to the grid.

        Parameters
        ----------
        nsteps : int, optional
            Number of steps (default 1).

        Returns
        -------
        dict
            Residual norms of the last step.
        """
        if self.history is None:
            self.pre_run()

        _handle_signals(self.receive_signal)

        norms = {}
        for _ in range(nsteps):

            if self._stop:
                break

            self.residual(self.x0)
            norms = self.jr.view_residual()

            self.history['step'].append(self.ts.istep)
            self.history['time'].append(self.ts.time)
            self.history['dt'].append(self.ts.dt)
            self.history['vmax'].append(self.jr.get_max_velocity())
            self.history['Div_2'].append(norms['Div_2'])
            self.history['mRes_2'].append(norms['mRes_2'])

            self.jr.update_history()
            self.jr.get_courant_step()

            exx, eyy = self.numerics['exx'], self.numerics['eyy']
            if exx != 0. or eyy != 0.:
                self.fs.stretch(exx * self.scal.time, eyy * self.scal.time, self.ts.dt)

            self.ts.advance()

        self.post_run()

        return norms

    def receive_signal(self, signum, frame) -> None:
        """
        Signal handler: request a graceful stop after the current step.
        """
        self._stop = True

    def post_run(self) -> None:
        """
        Finalize run: write history.
        """
        if self.outdir is not None and self.fs.pgrid.rank == 0:
            write_history(os.path.join(self.outdir, 'history.csv'), self.history, self.scal)


# ---------------------------
# Helper functions
# ---------------------------


def _handle_signals(func) -> None:
    """
    Register a function as the handler for common termination signals.
    """
    for s in [
        signal.SIGINT,
        signal.SIGTERM,
        signal.SIGUSR1,
        signal.SIGUSR2,
    ]:
        signal.signal(s, func)
