"""Kernel launch geometry.

Computes grid-of-blocks / threads-per-block shapes for kernels sized by the
mesh. Everything here is pure and reentrant; results are cheap to recompute,
so nothing is cached beyond a single configuration epoch.

Two shapes are supported:

- 1D: a flat problem of N elements with a fixed block size. When the number
  of blocks exceeds the hardware limit for one grid axis, the blocks are
  spread over grid x and y, and the kernel reconstructs its linear index as
  ``(blockIdx.y * gridDim.x + blockIdx.x) * blockDim.x + threadIdx.x``.
- 3D: 2D tiles over x/y and one block layer per z-slice.

Example:
    >>> from fieldmesh.core.launch import configure_1d, configure_3d
    >>> configure_1d(1000).grid
    Dim3(x=2, y=1, z=1)
    >>> configure_3d(64, 64, 8).grid
    Dim3(x=2, y=2, z=8)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

from .errors import InvalidArgumentError

# Platform tuning constants
BLOCK_SIZE = 512
TILE_X, TILE_Y = 32, 32
MAX_GRID_SIZE = 65535


class Dim3(NamedTuple):
    """Three-component launch dimension."""

    x: int
    y: int
    z: int

    @property
    def volume(self) -> int:
        return self.x * self.y * self.z


@dataclass(frozen=True)
class LaunchLimits:
    """Platform limits used to size kernel launches.

    Args:
        block_size: Threads per block for 1D launches
        tile_x: Block extent along x for 3D launches
        tile_y: Block extent along y for 3D launches
        max_grid_size: Maximum number of blocks along one grid axis

    Raises:
        InvalidArgumentError: If any limit is not a positive integer
    """

    block_size: int = BLOCK_SIZE
    tile_x: int = TILE_X
    tile_y: int = TILE_Y
    max_grid_size: int = MAX_GRID_SIZE

    def __post_init__(self):
        for name in ("block_size", "tile_x", "tile_y", "max_grid_size"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise InvalidArgumentError(
                    "LaunchLimits", f"{name} must be a positive integer, got {value!r}"
                )


DEFAULT_LIMITS = LaunchLimits()


@dataclass(frozen=True)
class LaunchConfig:
    """Launch geometry for one kernel dispatch.

    Attributes:
        grid: Number of blocks along x, y, z
        block: Number of threads per block along x, y, z
    """

    grid: Dim3
    block: Dim3

    @property
    def total_blocks(self) -> int:
        return self.grid.volume

    @property
    def threads_per_block(self) -> int:
        return self.block.volume

    @property
    def total_threads(self) -> int:
        return self.total_blocks * self.threads_per_block

    def covers(self, n: int) -> bool:
        """True if the launch provides at least ``n`` threads."""
        return self.total_threads >= n

    def covers_3d(self, nx: int, ny: int, nz: int) -> bool:
        """True if every axis is covered by grid * block threads."""
        return (
            self.grid.x * self.block.x >= nx
            and self.grid.y * self.block.y >= ny
            and self.grid.z * self.block.z >= nz
        )


def div_up(x: int, y: int) -> int:
    """Integer division rounded up, for positive ``x`` and ``y``."""
    return ((x - 1) // y) + 1


def configure_1d(n: int, limits: LaunchLimits = DEFAULT_LIMITS) -> LaunchConfig:
    """Make a 1D launch configuration suited for ``n`` threads.

    Args:
        n: Problem size (number of elements), n >= 1
        limits: Platform limits

    Returns:
        LaunchConfig with block (B, 1, 1) and a grid that covers n threads
        without exceeding ``limits.max_grid_size`` on x or y.
    """
    block = Dim3(limits.block_size, 1, 1)

    n2 = div_up(n, limits.block_size)  # blocks needed
    if n2 <= limits.max_grid_size:
        return LaunchConfig(grid=Dim3(n2, 1, 1), block=block)

    nx = div_up(n2, limits.max_grid_size)
    ny = div_up(n2, nx)
    return LaunchConfig(grid=Dim3(nx, ny, 1), block=block)


def configure_3d(
    nx: int, ny: int, nz: int, limits: LaunchLimits = DEFAULT_LIMITS
) -> LaunchConfig:
    """Make a 3D launch configuration for an (nx, ny, nz) mesh.

    x and y are tiled with ``limits.tile_x`` x ``limits.tile_y`` blocks; z is
    not tiled, there is one block layer per z-slice.
    """
    block = Dim3(limits.tile_x, limits.tile_y, 1)
    grid = Dim3(div_up(nx, limits.tile_x), div_up(ny, limits.tile_y), nz)
    return LaunchConfig(grid=grid, block=block)
