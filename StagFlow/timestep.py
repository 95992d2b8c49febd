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
from dataclasses import dataclass


@dataclass
class TimeStep:
    """
    Time stepping context.

    Attributes
    ----------
    dt : float
        Current time step.
    dtmax : float
        Upper bound of the time step.
    Cmax : float
        Courant number.
    pdt : float
        Previous time step.
    time : float
        Current time.
    istep : int
        Step counter.
    """
    dt: float = 1.
    dtmax: float = 1.
    Cmax: float = 0.5
    pdt: float = 0.
    time: float = 0.
    istep: int = 0

    def __post_init__(self):
        if self.dt <= 0. or self.dtmax <= 0.:
            raise ValueError("Time step and maximum time step must be positive")
        if not 0. < self.Cmax <= 1.:
            raise ValueError("Courant number must be in (0, 1]")

    def advance(self) -> None:
        self.time += self.dt
        self.istep += 1
