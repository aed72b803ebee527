"""
Mesh descriptor for GPU field simulation.

A Mesh is the single authoritative description of the simulation grid: the
number of cells per axis, the physical size of one cell, and the number of
periodic repetitions per axis (0 = no periodicity on that axis). Every
mesh-shaped buffer in the process derives its shape from the current Mesh.

Mesh values are immutable. Reconfiguration produces a new Mesh; the registry
(see ``fieldmesh.core.registry``) decides which buffers have to follow.

Example:
    >>> from fieldmesh.core.mesh import Mesh
    >>> mesh = Mesh(size=(64, 32, 4), cell_size=(5e-9, 5e-9, 3e-9))
    >>> mesh.num_cells
    8192
    >>> mesh.launch_3d().grid
    Dim3(x=2, y=1, z=4)

Grid sizes whose prime factors are all <= 7 ("7-smooth") map well onto FFT
and launch tiling. Other sizes still work but may run slower, and very large
prime factors can trigger invalid-configuration failures on some platforms;
``smoothness_advisories`` reports them.
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .errors import InvalidArgumentError
from .launch import DEFAULT_LIMITS, LaunchConfig, LaunchLimits, configure_1d, configure_3d

AXES = ("x", "y", "z")

# Divisors converting a cell size in the given unit to meters
CELL_SIZE_UNITS = {
    "m": 1.0,
    "mm": 1e3,
    "um": 1e6,
    "nm": 1e9,
}


@dataclass(frozen=True)
class Mesh:
    """Grid descriptor: cell counts, cell size and periodic repetitions.

    Args:
        size: Cell counts (nx, ny, nz)
        cell_size: Physical cell size (cx, cy, cz) in meters
        pbc: Periodic repetition counts (px, py, pz), 0 = not periodic

    Attributes:
        size: Grid dimensions tuple
        cell_size: Cell size tuple in meters
        pbc: Repetition counts tuple
        num_cells: Total number of cells
        world_size: Physical extent per axis in meters
        is_set: False only for the unset (0, 0, 0) sentinel

    Note:
        Construction does not validate; use ``validate_mesh_params`` first.
        This keeps ``Mesh.unset()`` representable.
    """

    size: tuple[int, int, int]
    cell_size: tuple[float, float, float]
    pbc: tuple[int, int, int] = (0, 0, 0)

    @classmethod
    def unset(cls) -> Mesh:
        """The pre-initialization sentinel mesh."""
        return cls(size=(0, 0, 0), cell_size=(0.0, 0.0, 0.0))

    @property
    def is_set(self) -> bool:
        return self.size != (0, 0, 0)

    @property
    def shape(self) -> tuple[int, int, int]:
        """Alias for ``size``."""
        return self.size

    @property
    def num_cells(self) -> int:
        nx, ny, nz = self.size
        return nx * ny * nz

    @property
    def world_size(self) -> tuple[float, float, float]:
        """Physical domain size in meters."""
        return (
            self.size[0] * self.cell_size[0],
            self.size[1] * self.cell_size[1],
            self.size[2] * self.cell_size[2],
        )

    @property
    def periodic(self) -> tuple[bool, bool, bool]:
        """Whether each axis has periodic repetitions."""
        return (self.pbc[0] > 0, self.pbc[1] > 0, self.pbc[2] > 0)

    def cell_centers(self) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
        """Cell center coordinates along each axis, centered on the origin.

        Returns:
            Tuple (x, y, z) of 1D coordinate arrays in meters
        """
        coords = []
        for n, c in zip(self.size, self.cell_size):
            coords.append((np.arange(n, dtype=np.float64) - (n - 1) / 2) * c)
        return coords[0], coords[1], coords[2]

    def launch_1d(self, ncomp: int = 1, limits: LaunchLimits = DEFAULT_LIMITS) -> LaunchConfig:
        """1D launch covering ``ncomp`` values per cell."""
        return configure_1d(ncomp * self.num_cells, limits)

    def launch_3d(self, limits: LaunchLimits = DEFAULT_LIMITS) -> LaunchConfig:
        """3D launch with one block layer per z-slice."""
        return configure_3d(*self.size, limits=limits)

    def __str__(self) -> str:
        nx, ny, nz = self.size
        cx, cy, cz = self.cell_size
        return f"Mesh({nx}x{ny}x{nz} cells, {cx:g}x{cy:g}x{cz:g} m, pbc={self.pbc})"


def validate_grid_size(nx: int, ny: int, nz: int) -> None:
    """Raise InvalidArgumentError unless all cell counts are positive integers."""
    for n in (nx, ny, nz):
        if isinstance(n, bool) or not isinstance(n, (int, np.integer)) or n <= 0:
            raise InvalidArgumentError("GridSize", f"got ({nx}, {ny}, {nz})")


def validate_cell_size(cx: float, cy: float, cz: float) -> None:
    """Raise InvalidArgumentError unless all cell sizes are positive finite reals."""
    for c in (cx, cy, cz):
        if isinstance(c, bool) or not isinstance(c, numbers.Real):
            raise InvalidArgumentError("CellSize", f"got ({cx!r}, {cy!r}, {cz!r})")
        if not np.isfinite(c) or c <= 0:
            raise InvalidArgumentError("CellSize", f"got ({cx}, {cy}, {cz})")


def validate_pbc(px: int, py: int, pz: int) -> None:
    """Raise InvalidArgumentError unless all repetition counts are >= 0."""
    for p in (px, py, pz):
        if isinstance(p, bool) or not isinstance(p, (int, np.integer)) or p < 0:
            raise InvalidArgumentError("PBC", f"got ({px}, {py}, {pz})")


def validate_mesh_params(
    size: tuple[int, int, int],
    cell_size: tuple[float, float, float],
    pbc: tuple[int, int, int],
) -> None:
    """Validate all nine mesh values, reporting the first offending group."""
    validate_grid_size(*size)
    validate_cell_size(*cell_size)
    validate_pbc(*pbc)


def to_meters(cx: float, cy: float, cz: float, units: str = "m") -> tuple[float, float, float]:
    """Convert a cell size given in ``units`` to meters."""
    try:
        per_meter = CELL_SIZE_UNITS[units]
    except KeyError:
        raise InvalidArgumentError(
            "units", f"{units!r} is not one of {', '.join(CELL_SIZE_UNITS)}"
        ) from None
    return (float(cx) / per_meter, float(cy) / per_meter, float(cz) / per_meter)


def prime_factors(n: int) -> list[int]:
    """Prime factorization of ``n`` in ascending order, with repetition.

    ``prime_factors(1)`` returns ``[1]`` so callers can take ``max()`` safely.
    """
    n = int(n)
    if n <= 1:
        return [1]
    factors = []
    d = 2
    while d * d <= n:
        while n % d == 0:
            factors.append(d)
            n //= d
        d += 1
    if n > 1:
        factors.append(n)
    return factors


def is_7_smooth(n: int) -> bool:
    """True if no prime factor of ``n`` exceeds 7."""
    return max(prime_factors(n)) <= 7


def smoothness_advisories(size: tuple[int, int, int]) -> list[str]:
    """Advisory messages for each axis that is not 7-smooth.

    Returns:
        One message per offending axis, in x, y, z order
    """
    messages = []
    for axis, n in zip(AXES, size):
        factors = prime_factors(n)
        if max(factors) > 7:
            # Invalid-value failures become likely once the largest factor exceeds ~127
            messages.append(
                f"{axis}-axis is not 7-smooth. It has {n} cells, with prime "
                f"factors {factors}, at least one of which is greater than 7. "
                f"This may reduce performance or cause an invalid launch "
                f"configuration error."
            )
    return messages
