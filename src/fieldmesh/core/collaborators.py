"""Mesh-shaped collaborators whose buffers follow the mesh.

These are the boundary objects the lifecycle manager drives during a resize:

- RegionMap: per-cell region index (uint8)
- GeometryMask: per-cell fill fraction derived from a shape descriptor
- Excitation: external field / current density with optional extra terms
- ThermalNoise: scratch buffer for thermal noise, recreated lazily
- ConvolutionCache: precomputed convolution kernels valid for one mesh

The physics that consumes these buffers lives elsewhere.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .buffers import FieldBuffer
from .device import _torch, require_torch
from .errors import InvalidArgumentError
from .mesh import Mesh

logger = logging.getLogger(__name__)

# Shape descriptor: evaluated on broadcast cell-centre coordinate arrays (meters),
# returns True for cells inside the geometry
ShapeFunc = Callable[[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]], NDArray[np.bool_]]


class RegionMap:
    """Per-cell region index buffer."""

    def __init__(self, device: str = "cpu"):
        require_torch()
        self.buffer = FieldBuffer("regions", ncomp=1, dtype=_torch.uint8, device=device)

    def alloc(self, mesh: Mesh) -> None:
        self.buffer.alloc(mesh)

    def resize(self, mesh: Mesh) -> None:
        # Region indices are categorical, nearest-neighbour keeps them intact
        self.buffer.resize(mesh, preserve=True)

    def free(self) -> None:
        self.buffer.free()

    def define_region(self, index: int, shape: ShapeFunc, mesh: Mesh) -> int:
        """Assign ``index`` to every cell inside ``shape``.

        Returns:
            Number of cells assigned
        """
        if not 0 <= index <= 255:
            raise InvalidArgumentError("Region", f"index must be in [0, 255], got {index}")
        inside = _evaluate_shape(shape, mesh)
        mask = _torch.from_numpy(inside).to(self.buffer.device)
        self.buffer.data[0][mask] = index
        return int(inside.sum())


class GeometryMask:
    """Geometry fill buffer re-derived from a recorded shape descriptor.

    The buffer stays nil until ``set_geom`` is called; ``shape`` remembers the
    last descriptor so the mask can be rebuilt after a resize.
    """

    def __init__(self, device: str = "cpu"):
        require_torch()
        self.buffer = FieldBuffer("geometry", ncomp=1, device=device)
        self.shape: ShapeFunc | None = None

    def set_geom(self, shape: ShapeFunc | None, mesh: Mesh) -> None:
        """Fill the buffer from ``shape`` (None means the whole mesh)."""
        inside = _evaluate_shape(shape, mesh)
        if self.buffer.is_nil or self.buffer.shape[1:] != mesh.size:
            self.buffer.alloc(mesh)
        self.buffer.data[0].copy_(_torch.from_numpy(inside.astype(np.float32)))
        self.shape = shape

    def rebuild(self, mesh: Mesh) -> None:
        """Free the buffer, reallocate it for ``mesh`` and re-derive it."""
        self.buffer.free()
        self.buffer.alloc(mesh)
        self.set_geom(self.shape, mesh)

    @property
    def filled_cells(self) -> int:
        if self.buffer.is_nil:
            return 0
        return int(self.buffer.data.sum().item())


def _evaluate_shape(shape: ShapeFunc | None, mesh: Mesh) -> NDArray[np.bool_]:
    if shape is None:
        return np.ones(mesh.size, dtype=bool)
    x, y, z = mesh.cell_centers()
    X, Y, Z = np.meshgrid(x, y, z, indexing="ij")
    inside = np.asarray(shape(X, Y, Z), dtype=bool)
    if inside.shape != mesh.size:
        raise InvalidArgumentError(
            "Geometry", f"shape returned {inside.shape}, mesh is {mesh.size}"
        )
    return inside


@dataclass
class ExtraTerm:
    """Spatially varying addition to an excitation.

    Args:
        name: Identifier reported when the term is dropped
        mask: Tensor of shape (ncomp, nx, ny, nz)
        multiplier: Time-dependent scale factor, constant 1 if None
    """

    name: str
    mask: object
    multiplier: Callable[[float], float] | None = None

    def fits(self, mesh: Mesh) -> bool:
        return tuple(self.mask.shape[-3:]) == mesh.size


class Excitation:
    """External field or current density with extra terms."""

    def __init__(self, name: str, ncomp: int = 3):
        self.name = name
        self.ncomp = ncomp
        self._terms: list[ExtraTerm] = []

    @property
    def extra_terms(self) -> tuple[ExtraTerm, ...]:
        return tuple(self._terms)

    def add_extra_term(self, name: str, mask, multiplier: Callable[[float], float] | None = None) -> ExtraTerm:
        """Add ``mask * multiplier(t)`` to this excitation."""
        if mask.dim() != 4 or mask.shape[0] != self.ncomp:
            raise InvalidArgumentError(
                "ExtraTerm", f"mask must have shape ({self.ncomp}, nx, ny, nz), got {tuple(mask.shape)}"
            )
        term = ExtraTerm(name=name, mask=mask, multiplier=multiplier)
        self._terms.append(term)
        return term

    def remove_extra_terms(self, keep: Callable[[ExtraTerm], bool] | None = None) -> list[str]:
        """Remove extra terms.

        Args:
            keep: Predicate for terms to retain; None removes all terms

        Returns:
            Qualified names ("B_ext.name") of the removed terms
        """
        kept, dropped = [], []
        for term in self._terms:
            if keep is not None and keep(term):
                kept.append(term)
            else:
                dropped.append(f"{self.name}.{term.name}")
        self._terms = kept
        return dropped

    def evaluate_extra(self, t: float, mesh: Mesh):
        """Sum of all extra terms at time ``t``, or None if there are none."""
        if not self._terms:
            return None
        total = None
        for term in self._terms:
            scale = 1.0 if term.multiplier is None else float(term.multiplier(t))
            contrib = term.mask * scale
            total = contrib if total is None else total + contrib
        return total


class ThermalNoise:
    """Owner of the thermal-noise scratch buffer.

    The buffer is released on every mesh-shape change and recreated on the
    next ``noise_buffer`` call.
    """

    def __init__(self, device: str = "cpu"):
        self.noise = FieldBuffer("B_therm.noise", ncomp=3, device=device)

    def noise_buffer(self, mesh: Mesh):
        if self.noise.is_nil or self.noise.shape[1:] != mesh.size:
            self.noise.alloc(mesh)
        return self.noise.data

    def free(self) -> None:
        self.noise.free()


class ConvolutionCache:
    """Lazily built convolution kernels valid for a single mesh.

    Kernels are expensive to compute and depend on the whole mesh (size,
    cell size and repetition counts), so they are built on first use and
    dropped on any mesh change.

    Example:
        >>> cache = ConvolutionCache("demag")
        >>> kernel = cache.get_or_build("kxx", mesh, build_kxx)
    """

    def __init__(self, name: str):
        self.name = name
        self._mesh: Mesh | None = None
        self._kernels: dict[str, object] = {}
        self.builds = 0

    @property
    def is_empty(self) -> bool:
        return not self._kernels

    def get_or_build(self, key: str, mesh: Mesh, builder: Callable[[Mesh], object]):
        if self._mesh is not None and self._mesh != mesh:
            self.free()
        if key not in self._kernels:
            logger.debug("%s: building kernel %s for %s", self.name, key, mesh)
            self._kernels[key] = builder(mesh)
            self._mesh = mesh
            self.builds += 1
        return self._kernels[key]

    def free(self) -> None:
        self._kernels.clear()
        self._mesh = None
