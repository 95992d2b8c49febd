import io
import os
import numpy as np
import pandas as pd
import pytest

from StagFlow.io import (read_yaml_input, read_partitioning, write_partitioning,
                         create_output_directory, write_history)
from StagFlow.scaling import Scaling


BASE = """
grid:
    nel_x: 4
    nel_y: 4
    nel_z: 2
    x: [0., 2.]
    y: [0., 2.]
    z: [-1., 0.]
materials:
    - rho: 3300.
      eta: 1.e21
limits:
    DII_ref: 1.e-15
"""


def read(s):
    with io.StringIO(s) as f:
        return read_yaml_input(f, silent=True)


def test_minimal_input():

    d = read(BASE)

    assert d['grid']['nel_x'] == 4
    assert d['grid']['procs'] == [0, 0, 0]
    assert d['grid']['z'] == [-1., 0.]
    assert d['materials'][0]['n'] == 1.
    assert d['limits']['DII_ref'] == 1e-15
    assert d['limits']['eta_max'] == np.inf
    assert 'numerics' not in d


def test_defaults_of_optional_sections():

    d = read(BASE + """
numerics:
    dt: 2.
bc:
    Tbot: 1.
initial:
    p0: 5.
""")

    assert d['numerics']['dtmax'] == 2.
    assert d['numerics']['gravity'] == [0., 0., 0.]
    assert d['bc']['velocity'] == 'free_slip'
    assert d['bc']['Tbot'] == 1.
    assert d['bc']['Ttop'] is None
    assert d['initial']['p0'] == 5.


def test_segments():

    d = read(BASE.replace("    nel_z: 2\n", """    nel_z: 2
    seg_x:
        delims: [1.]
        ncells: [1, 3]
        biases: [1., 2.]
"""))

    assert d['grid']['seg_x'] == {'ncells': [1, 3], 'delims': [1.], 'biases': [1., 2.]}


@pytest.mark.parametrize("seg", [
    "        delims: [1.]\n        ncells: [1, 1]\n",
    "        delims: [3.]\n        ncells: [1, 3]\n",
    "        delims: []\n        ncells: [1, 3]\n",
    "        ncells: [4]\n        biases: [-1.]\n",
])
def test_bad_segments(seg):

    with pytest.raises(IOError):
        read(BASE.replace("    nel_z: 2\n", "    nel_z: 2\n    seg_x:\n" + seg))


def test_missing_mandatory_section():

    with pytest.raises(IOError, match="materials"):
        read(BASE.split("materials:")[0] + "limits:\n    DII_ref: 1.\n")


@pytest.mark.parametrize("section", [
    "numerics:\n    Cmax: 2.\n",
    "numerics:\n    dt: -1.\n",
    "numerics:\n    gravity: [0., -9.81]\n",
    "bc:\n    velocity: periodic\n",
    "scaling:\n    length: 0.\n",
])
def test_invalid_optional_input(section):
    with pytest.raises(IOError):
        read(BASE + section)


def test_invalid_material():
    with pytest.raises(IOError):
        read(BASE.replace("      eta: 1.e21\n", "      eta: 0.\n"))


def test_partitioning_round_trip(tmp_path):

    fname = str(tmp_path / 'part.bin')

    starts = [np.array([0, 3, 4]), np.array([0, 2]), np.array([0, 1, 2, 3])]
    coords = [np.linspace(0., 1., 5), np.linspace(0., 2., 3), np.linspace(-1., 0., 4)]

    write_partitioning(fname, (2, 1, 3), (5, 3, 4), starts, 1000., coords)
    part = read_partitioning(fname)

    assert part['dims'] == (2, 1, 3)
    assert part['tnods'] == (5, 3, 4)
    assert part['ch_len'] == 1000.

    for a in range(3):
        np.testing.assert_array_equal(part['starts'][a], starts[a])
        np.testing.assert_allclose(part['coords'][a], coords[a])


def test_output_directory(tmp_path):

    outdir = create_output_directory(str(tmp_path / 'run'), use_tstamp=False)
    assert os.path.isdir(outdir)

    # reusing an empty directory is fine, a used one is not
    assert create_output_directory(str(tmp_path / 'run'), use_tstamp=False) == outdir

    open(os.path.join(outdir, 'history.csv'), 'w').close()
    with pytest.raises(RuntimeError):
        create_output_directory(str(tmp_path / 'run'), use_tstamp=False)


def test_history_is_dimensional(tmp_path):

    scal = Scaling(length=1e3, time=1e10)
    history = {'step': [0, 1], 'time': [0., 1.], 'dt': [1., 1.1], 'vmax': [0., 2.],
               'Div_2': [1e-3, 1e-4], 'mRes_2': [1., 0.5]}

    fname = str(tmp_path / 'history.csv')
    write_history(fname, history, scal)

    df = pd.read_csv(fname)

    assert list(df.columns) == ['step', 'time', 'dt', 'vmax', 'Div_2', 'mRes_2']
    np.testing.assert_allclose(df['dt'], [1e10, 1.1e10])
    np.testing.assert_allclose(df['vmax'], [0., 2e-7])
    np.testing.assert_allclose(df['Div_2'], [1e-13, 1e-14])
    np.testing.assert_allclose(df['mRes_2'], [1., 0.5])
