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
Characteristic units for nondimensional input.

All quantities are divided by their characteristic unit before entering the
solver. The primary units are mass, time, length, temperature and force, the
others are derived from them. Newton's second law need not hold for the
primary units of quasi-static problems.
"""
from dataclasses import dataclass, field, asdict
from typing import Dict


@dataclass
class Scaling:
    """
    Primary and derived characteristic units.

    Attributes
    ----------
    mass, time, length, temperature, force : float
        Primary units (default 1, i.e. dimensional input).
    """
    mass: float = 1.
    time: float = 1.
    length: float = 1.
    temperature: float = 1.
    force: float = 1.

    volume: float = field(init=False)
    area: float = field(init=False)

    velocity: float = field(init=False)
    stress: float = field(init=False)
    strain_rate: float = field(init=False)
    gravity_strength: float = field(init=False)

    density: float = field(init=False)
    viscosity: float = field(init=False)
    expansivity: float = field(init=False)

    def __post_init__(self):

        for name in ('mass', 'time', 'length', 'temperature', 'force'):
            if getattr(self, name) <= 0.:
                raise ValueError(f"Characteristic {name} must be positive")

        self.volume = self.length**3
        self.area = self.length**2

        self.velocity = self.length / self.time
        self.stress = self.force / self.area
        self.strain_rate = 1. / self.time
        self.gravity_strength = self.force / self.mass

        self.density = self.mass / self.volume
        self.viscosity = self.stress * self.time
        self.expansivity = 1. / self.temperature

    @classmethod
    def from_dict(cls, d: Dict[str, float] | None) -> "Scaling":
        if not d:
            return cls()
        return cls(**{k: float(d[k]) for k in ('mass', 'time', 'length', 'temperature', 'force') if k in d})

    def power_law(self, n: float) -> float:
        """Unit of the power-law creep constant B in D = B * tau^n (1 / stress^n / time)."""
        return self.stress**(-n) / self.time

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)
