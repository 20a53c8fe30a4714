from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Candidate:
    """Extremum being localized; only the detector mutates it."""

    octave: int
    level: int
    row: int
    col: int
    value: float
    iterations: int = 0

    def shift(self, d_level: int, d_row: int, d_col: int) -> None:
        self.level += d_level
        self.row += d_row
        self.col += d_col


@dataclass(frozen=True)
class KeyPoint:
    """A refined and accepted scale-space extremum.

    ``row``/``col``/``level_index`` are the integer samples the quadratic fit
    converged at in octave ``octave``; ``x``, ``y`` and ``sigma`` are the
    interpolated position and absolute scale in input image coordinates.
    """

    octave: int
    level_index: int
    row: int
    col: int
    level: float
    x: float
    y: float
    sigma: float
    value: float
    iterations: int

    @property
    def magnitude(self) -> float:
        return abs(self.value)

    def octave_coords(self, delta: float) -> tuple[float, float, float]:
        """(row, column, sigma) in pixels of an octave with sample distance ``delta``."""
        return self.y / delta, self.x / delta, self.sigma / delta
