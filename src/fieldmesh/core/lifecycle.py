"""Allocation, resize and release of every mesh-shaped device resource.

The lifecycle manager keeps the buffers consistent with the mesh:

- ``allocate_for_new_mesh`` runs once, on the unset -> set transition.
- ``resize_transaction`` runs on every later mesh change. Convolution
  kernels and the scratch pool are dropped on any change because they depend
  on the full mesh (including repetition counts); shape-dependent buffers are
  only reallocated when the grid size or cell size changed.

The manager never commits a mesh itself: it receives the new mesh
explicitly, and the registry publishes it only after the transaction
returns, so no consumer observes a mesh whose buffers have not been
reallocated yet.

Listeners (typically the transfer worker pool) are told before buffers are
released and after they are allocated, so pipelines bound to freed tensors
can be stopped and recreated. A change of repetition counts alone keeps
every mesh-shaped buffer, so listeners are not notified.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Protocol

from .buffers import BufferPool, FieldBuffer
from .collaborators import ConvolutionCache, Excitation, GeometryMask, RegionMap, ThermalNoise
from .errors import DroppedTermsWarning
from .launch import DEFAULT_LIMITS, LaunchConfig, LaunchLimits
from .mesh import Mesh

logger = logging.getLogger(__name__)


class LifecycleListener(Protocol):
    def buffers_releasing(self, mesh: Mesh | None) -> None: ...

    def buffers_allocated(self, mesh: Mesh) -> None: ...


@dataclass(frozen=True)
class LaunchGeometry:
    """Launch shapes for the current allocation epoch.

    Attributes:
        field_1d: 1D launch over every component of the primary field
        cells_3d: 3D launch over the mesh cells
    """

    field_1d: LaunchConfig
    cells_3d: LaunchConfig


class BufferLifecycleManager:
    """Owns the mesh-shaped buffers and drives them through mesh changes.

    Args:
        device: Torch device string for all buffers
        limits: Launch limits used to derive launch geometry
        ncomp: Components of the primary field

    Attributes:
        m: Primary field buffer
        regions: Per-region buffer
        geometry: Geometry mask
        B_ext: External field excitation
        J: Current density excitation
        thermal: Thermal noise owner
        demag_conv: Long-range field convolution kernels
        mfm_conv: Alternate-modality (MFM) convolution kernels
        pool: Scratch tensor pool
        launch: Launch geometry of the current epoch, None before allocation
    """

    def __init__(self, device: str = "cpu", limits: LaunchLimits = DEFAULT_LIMITS, ncomp: int = 3):
        self.device = device
        self.limits = limits
        self.m = FieldBuffer("m", ncomp=ncomp, device=device)
        self.regions = RegionMap(device)
        self.geometry = GeometryMask(device)
        self.B_ext = Excitation("B_ext")
        self.J = Excitation("J")
        self.thermal = ThermalNoise(device)
        self.demag_conv = ConvolutionCache("demag")
        self.mfm_conv = ConvolutionCache("mfm")
        self.pool = BufferPool(device)
        self.launch: LaunchGeometry | None = None
        self._listeners: list[LifecycleListener] = []

    def add_listener(self, listener: LifecycleListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: LifecycleListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def allocate_for_new_mesh(self, mesh: Mesh) -> None:
        """Allocate the primary field and region buffers for a first mesh."""
        self.m.alloc(mesh)
        self.regions.alloc(mesh)
        self._update_launch(mesh)
        for listener in self._listeners:
            listener.buffers_allocated(mesh)

    def resize_transaction(
        self,
        old: Mesh,
        new: Mesh,
        size_changed: bool,
        cell_size_changed: bool,
    ) -> list[str]:
        """Bring every resource from ``old`` to ``new``.

        Args:
            old: Mesh the buffers currently follow
            new: Mesh to move to
            size_changed: Grid size differs
            cell_size_changed: Cell size differs

        Returns:
            Qualified names of excitation extra terms removed because they
            no longer fit the new grid size. Callers must re-add them.

        Raises:
            ResourceExhaustionError: If a reallocation fails. Resources are
                left partially resized; the process should not continue.
        """
        logger.info("resizing %s -> %s", old, new)
        reshape = size_changed or cell_size_changed
        if reshape:
            for listener in self._listeners:
                listener.buffers_releasing(old)

        # Kernels and pooled scratch depend on the full parameter set
        self.demag_conv.free()
        self.mfm_conv.free()
        self.pool.free_all()

        dropped: list[str] = []
        if reshape:
            self.m.resize(new)
            self.regions.resize(new)
            self.geometry.rebuild(new)

            dropped.extend(self.B_ext.remove_extra_terms(keep=lambda t: t.fits(new)))
            dropped.extend(self.J.remove_extra_terms(keep=lambda t: t.fits(new)))
            if dropped:
                warnings.warn(
                    f"Resize removed excitation terms that no longer fit {new.size}: "
                    f"{', '.join(dropped)}. Add them again for the new mesh.",
                    DroppedTermsWarning,
                    stacklevel=2,
                )

            self.thermal.free()

        self._update_launch(new)
        if reshape:
            for listener in self._listeners:
                listener.buffers_allocated(new)
        return dropped

    def release_all(self) -> None:
        """Free every resource. Safe to call repeatedly."""
        for listener in self._listeners:
            listener.buffers_releasing(None)
        self.demag_conv.free()
        self.mfm_conv.free()
        self.pool.free_all()
        self.m.free()
        self.regions.free()
        self.geometry.buffer.free()
        self.thermal.free()
        self.launch = None

    @property
    def buffers(self) -> dict[str, FieldBuffer]:
        """Every mesh-shaped buffer by name, allocated or not."""
        return {
            b.name: b
            for b in (self.m, self.regions.buffer, self.geometry.buffer, self.thermal.noise)
        }

    def buffer(self, name: str) -> FieldBuffer:
        """Look up a mesh-shaped buffer by name.

        Raises:
            KeyError: If there is no buffer called ``name``
        """
        buffers = self.buffers
        if name not in buffers:
            raise KeyError(f"unknown buffer '{name}', expected one of {', '.join(buffers)}")
        return buffers[name]

    def memory_report(self) -> dict[str, int]:
        """Bytes held by each live mesh-shaped buffer."""
        return {name: b.nbytes for name, b in self.buffers.items() if not b.is_nil}

    def _update_launch(self, mesh: Mesh) -> None:
        self.launch = LaunchGeometry(
            field_1d=mesh.launch_1d(self.m.ncomp, self.limits),
            cells_3d=mesh.launch_3d(self.limits),
        )
