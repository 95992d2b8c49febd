import os
from datetime import datetime
import numpy as np
import yaml
import pandas as pd


# ---------------------------
# Console echo of the input
# ---------------------------

def print_header(title, width=60):
    """Framed section title."""
    width = max(width, len(title) + 4)
    print(width * '*')
    print('*' + title.center(width - 2) + '*')
    print(width * '*')


def print_dict(d):
    """Echo one sanitized input section, segment descriptions one level deeper."""
    for k, v in d.items():
        if isinstance(v, dict):
            print(f'  - {k}:')
            for kk, vv in v.items():
                print(f'    - {kk:<23s}: {vv}')
        elif v is not None:
            print(f'  - {k:<25s}: {v}')


# ---------------------------
# Run output
# ---------------------------

# history.csv columns and the characteristic unit that restores each to dimensional form
HISTORY_COLUMNS = (
    ('step', None),
    ('time', 'time'),
    ('dt', 'time'),
    ('vmax', 'velocity'),
    ('Div_2', 'strain_rate'),
    ('mRes_2', None),
)


def create_output_directory(name, use_tstamp=True):
    """
    Create an empty output directory, optionally prefixed with a timestamp.

    Raises
    ------
    RuntimeError
        If the directory exists and holds files from an earlier run.
    """
    outbase, outname = os.path.split(name)

    if use_tstamp:
        outname = datetime.now().replace(microsecond=0).strftime("%Y-%m-%d_%H%M%S") + '_' + outname

    outdir = os.path.join(outbase, outname)

    if os.path.isdir(outdir) and os.listdir(outdir):
        raise RuntimeError(f'Output path {outdir} exists and is not empty.')

    os.makedirs(outdir, exist_ok=True)

    return outdir


def write_config(fname, sections, version):
    """Dump the sanitized input sections, preceded by the package version, to a YAML file."""

    config = {'version': version}
    config.update(sections)

    with open(fname, 'w') as FILE:
        yaml.dump(config, FILE, sort_keys=False)


def write_history(fname, history, scal):
    """
    Write the per-step history to CSV in dimensional units.

    Parameters
    ----------
    fname : str
        Output file.
    history : dict
        Nondimensional history, one list per entry of HISTORY_COLUMNS.
    scal : Scaling
        Characteristic units. Momentum residual norms stay nondimensional.
    """
    data = {}
    for name, unit in HISTORY_COLUMNS:
        values = np.asarray(history[name])
        data[name] = values if unit is None else values * getattr(scal, unit)

    pd.DataFrame(data=data, columns=[name for name, _ in HISTORY_COLUMNS]).to_csv(fname, index=False)


# ---------------------------
# Processor partitioning file
# ---------------------------

# PETSc binary layout: big-endian 32 bit integers and 64 bit reals
_INT = '>i4'
_REAL = '>f8'


def write_partitioning(fname, dims, tnods, starts, ch_len, coords):
    """
    Write the processor partitioning file.

    Parameters
    ----------
    fname : str
        Output file name.
    dims : sequence of int
        Number of processes per axis.
    tnods : sequence of int
        Total number of nodes per axis.
    starts : sequence of ndarray
        First node index of every process per axis (nproc + 1 entries).
    ch_len : float
        Characteristic length.
    coords : sequence of ndarray
        Node coordinates per axis.
    """
    with open(fname, 'wb') as FILE:
        np.asarray(dims, dtype=_INT).tofile(FILE)
        np.asarray(tnods, dtype=_INT).tofile(FILE)
        for s in starts:
            np.asarray(s, dtype=_INT).tofile(FILE)
        np.asarray([ch_len], dtype=_REAL).tofile(FILE)
        for c in coords:
            np.asarray(c, dtype=_REAL).tofile(FILE)


def read_partitioning(fname):
    """
    Read a processor partitioning file.

    Returns
    -------
    dict
        Keys ``dims``, ``tnods``, ``starts``, ``ch_len`` and ``coords``.
    """
    with open(fname, 'rb') as FILE:
        dims = np.fromfile(FILE, dtype=_INT, count=3).astype(int)
        tnods = np.fromfile(FILE, dtype=_INT, count=3).astype(int)
        starts = [np.fromfile(FILE, dtype=_INT, count=P + 1).astype(int) for P in dims]
        ch_len = float(np.fromfile(FILE, dtype=_REAL, count=1)[0])
        coords = [np.fromfile(FILE, dtype=_REAL, count=n).astype(float) for n in tnods]

    return {'dims': tuple(dims), 'tnods': tuple(tnods), 'starts': starts,
            'ch_len': ch_len, 'coords': coords}


# ---------------------------
# Input sanitizing
# ---------------------------

def read_yaml_input(file, silent=False):

    if not silent:
        print_header("PROBLEM SETUP")

    sanitizing_functions = {'options': sanitize_options,
                            'grid': sanitize_grid,
                            'numerics': sanitize_numerics,
                            'materials': sanitize_materials,
                            'limits': sanitize_limits,
                            'bc': sanitize_bc,
                            'initial': sanitize_initial,
                            'scaling': sanitize_scaling}

    sanitized_dict = {}

    raw_dict = yaml.full_load(file)

    for key, value in raw_dict.items():

        if key in sanitizing_functions.keys():
            if not silent:
                print(f'- {key}:')
            sanitized_dict[key] = sanitizing_functions[key](value, silent=silent)

    for key in ('grid', 'materials', 'limits'):
        if key not in sanitized_dict.keys():
            raise IOError(f"Missing mandatory input section '{key}'")

    if not silent:
        print_header("PROBLEM SETUP COMPLETED")

    return sanitized_dict


def sanitize_options(d, silent=False):
    out = {}
    out['output'] = str(d.get('output', 'stagflow'))
    out['use_tstamp'] = bool(d.get('use_tstamp', True))
    out['silent'] = bool(d.get('silent', False))
    out['write_partitioning'] = bool(d.get('write_partitioning', True))

    if not silent:
        print_dict(out)

    return out


def _sanitize_segments(d, beg, end, nel, axis):

    out = {}
    out['ncells'] = [int(n) for n in d.get('ncells', [])]
    nsegs = len(out['ncells'])

    out['delims'] = [float(x) for x in d.get('delims', [])]
    out['biases'] = [float(b) for b in d.get('biases', [1.] * nsegs)]

    if nsegs == 0:
        raise IOError(f"Segments in {axis}-direction need cell numbers (ncells)")

    if sum(out['ncells']) != nel or min(out['ncells']) < 1:
        raise IOError(f"Segment cells in {axis}-direction must be positive and add up to {nel}")

    if len(out['delims']) != nsegs - 1 or len(out['biases']) != nsegs:
        raise IOError(f"Need {nsegs - 1} delimiters and {nsegs} biases in {axis}-direction")

    if not np.all(np.diff([beg] + out['delims'] + [end]) > 0.):
        raise IOError(f"Segment delimiters in {axis}-direction must increase strictly within the domain")

    if any(b <= 0. for b in out['biases']):
        raise IOError(f"Segment biases in {axis}-direction must be positive")

    return out


def sanitize_grid(d, silent=False):

    out = {}

    for ax, default in zip('xyz', (0., 0., -1.)):

        nel = int(d.get(f'nel_{ax}', 0))
        if nel < 1:
            raise IOError(f"Specify a positive number of cells (nel_{ax})")
        out[f'nel_{ax}'] = nel

        bounds = d.get(ax, [default, default + 1.])
        if len(bounds) != 2 or float(bounds[1]) <= float(bounds[0]):
            raise IOError(f"Specify increasing domain bounds in {ax}-direction, e.g. {ax}: [0., 1.]")
        out[ax] = [float(bounds[0]), float(bounds[1])]

        if f'seg_{ax}' in d.keys():
            out[f'seg_{ax}'] = _sanitize_segments(d[f'seg_{ax}'], *out[ax], nel, ax)

    procs = list(d.get('procs', [0, 0, 0]))
    if len(procs) != 3 or any(int(p) < 0 for p in procs):
        raise IOError("Process grid (procs) needs three non-negative entries (0: automatic)")
    out['procs'] = [int(p) for p in procs]

    if not silent:
        print_dict(out)

    return out


def sanitize_numerics(d, silent=False):

    out = {}

    out['dt'] = float(d.get('dt', 1.))
    out['dtmax'] = float(d.get('dtmax', out['dt']))
    out['Cmax'] = float(d.get('Cmax', 0.5))
    out['FSSA'] = float(d.get('FSSA', 0.))
    out['gravity'] = [float(g) for g in d.get('gravity', [0., 0., 0.])]
    out['shift_press'] = bool(d.get('shift_press', False))
    out['exx'] = float(d.get('exx', 0.))
    out['eyy'] = float(d.get('eyy', 0.))

    if out['dt'] <= 0. or out['dtmax'] <= 0.:
        raise IOError("Time step (dt) and maximum time step (dtmax) must be positive")

    if not 0. < out['Cmax'] <= 1.:
        raise IOError("Courant number (Cmax) must be in (0, 1]")

    if not 0. <= out['FSSA'] <= 1.:
        raise IOError("Free surface stabilization parameter (FSSA) must be in [0, 1]")

    if len(out['gravity']) != 3:
        raise IOError("Gravity needs three components")

    if not silent:
        print_dict(out)

    return out


def sanitize_materials(d, silent=False):

    if isinstance(d, dict):
        d = [d]

    if len(d) == 0:
        raise IOError("Specify at least one material phase")

    out = []

    for i, m in enumerate(d):

        ph = {}
        ph['rho'] = float(m.get('rho', 0.))
        ph['eta'] = float(m.get('eta', 0.))
        ph['Bn'] = float(m.get('Bn', 0.))
        ph['n'] = float(m.get('n', 1.))
        ph['G'] = float(m.get('G', 0.))
        ph['K'] = float(m.get('K', 0.))
        ph['alpha'] = float(m.get('alpha', 0.))
        ph['cohesion'] = float(m.get('cohesion', 0.))
        ph['friction'] = float(m.get('friction', 0.))

        if ph['eta'] <= 0. and ph['Bn'] <= 0.:
            raise IOError(f"Phase {i}: specify a linear viscosity (eta) or a power-law constant (Bn)")

        if any(ph[k] < 0. for k in ('eta', 'Bn', 'G', 'K', 'cohesion', 'friction')):
            raise IOError(f"Phase {i}: material parameters must be non-negative")

        if ph['n'] < 1.:
            raise IOError(f"Phase {i}: power-law exponent (n) must be at least 1")

        if not silent:
            print(f'  - phase {i}:')
            for k, v in ph.items():
                print(f'    - {k:<23s}: {v}')

        out.append(ph)

    return out


def sanitize_limits(d, silent=False):

    out = {}

    out['eta_min'] = float(d.get('eta_min', 0.))
    out['eta_max'] = float(d.get('eta_max', np.inf))
    out['eta_ref'] = float(d.get('eta_ref', 1.))
    out['DII_ref'] = float(d['DII_ref']) if d.get('DII_ref') is not None else None
    out['TRef'] = float(d.get('TRef', 0.))
    out['minCh'] = float(d.get('minCh', 0.))
    out['minFr'] = float(d.get('minFr', 0.))
    out['tauUlt'] = float(d.get('tauUlt', np.inf))
    out['shearHeatEff'] = float(d.get('shearHeatEff', 1.))
    out['quasiHarmAvg'] = bool(d.get('quasiHarmAvg', False))
    out['initGuess'] = bool(d.get('initGuess', False))

    if out['eta_max'] < out['eta_min']:
        raise IOError("Viscosity limits must satisfy eta_min <= eta_max")

    if not silent:
        print_dict(out)

    return out


def sanitize_bc(d, silent=False):

    available = ['free_slip', 'none']

    out = {}
    out['velocity'] = str(d.get('velocity', 'free_slip'))

    if out['velocity'] not in available:
        raise IOError(f"Velocity boundary condition must be one of {available}")

    for key in ('Tbot', 'Ttop'):
        out[key] = float(d[key]) if d.get(key) is not None else None

    if not silent:
        print_dict(out)

    return out


def sanitize_initial(d, silent=False):

    out = {}
    out['p0'] = float(d.get('p0', 0.))
    out['T0'] = float(d.get('T0', 0.))
    out['phase'] = int(d.get('phase', 0))

    if not silent:
        print_dict(out)

    return out


def sanitize_scaling(d, silent=False):

    out = {}
    for k in ('mass', 'time', 'length', 'temperature', 'force'):
        out[k] = float(d.get(k, 1.))
        if out[k] <= 0.:
            raise IOError(f"Characteristic {k} must be positive")

    if not silent:
        print_dict(out)

    return out
