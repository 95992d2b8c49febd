#
# Copyright 2026 Hannes Holey
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
from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from mpi4py import MPI


def _default_filename_for(name: str) -> str:
    # 'stagflow.jacres' -> 'stagflow_jacres.log'
    return f"{name.replace('.', '_')}.log"


def get_logger(name: str,
               outdir: Optional[str] = None,
               filename: Optional[str] = None,
               level: int = logging.INFO,
               force: bool = False,
               all_ranks: bool = False) -> logging.Logger:
    """Return a standardised logger for StagFlow modules.

    On parallel runs only rank 0 writes messages below WARNING, unless
    ``all_ranks`` is set.

    Parameters
    ----------
    name : str
        Name of the logger.
    outdir : str, optional
        Output directory to write logfiles (the default is None, which only writes to stdout)
    filename : str, optional
        Output filename of the logger (the default is None, which uses a default filename)
    level : int, optional
        Log level (the default is logging.INFO)
    force : bool, optional
        If true, replace existing handlers to allow reconfiguration (the default is False)
    all_ranks : bool, optional
        If true, every MPI rank logs at ``level`` (the default is False)

    Returns
    -------
    logging.Logger
        The logger object
    """

    logger = logging.getLogger(name)

    if force:
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

    if logger.handlers:
        return logger

    rank = MPI.COMM_WORLD.Get_rank()
    if rank != 0 and not all_ranks:
        level = max(level, logging.WARNING)

    logger.setLevel(level)

    fmt = logging.Formatter('%(message)s')

    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(fmt)
    logger.addHandler(sh)

    # logfile on rank 0 only
    if outdir is not None and rank == 0:
        os.makedirs(outdir, exist_ok=True)
        fh = logging.FileHandler(os.path.join(outdir, filename or _default_filename_for(name)))
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    logger.propagate = False

    return logger
