"""Mesh registry: validates and applies mesh configuration.

The registry owns the current Mesh of one simulation session. All mutation
goes through ``apply_full``, which runs as a single exclusive transaction:

1. validate all nine values (nothing is touched on failure)
2. warn about axes that are not 7-smooth
3. compare against the current mesh
4. first configuration: allocate buffers; later changes: run the lifecycle
   manager's resize transaction; identical requests: nothing to do
5. publish the new mesh

The partial setters (``set_grid_size``, ``set_cell_size``, ``set_pbc``)
record their piece in a PendingConfig and apply once grid size and cell size
are both known, so a script can set them in any order.

Example:
    >>> registry = MeshRegistry(lifecycle)
    >>> registry.set_grid_size(128, 64, 1)       # recorded, nothing applied
    >>> report = registry.set_cell_size(4, 4, 2, units="nm")
    >>> report.first_set
    True
    >>> registry.current().size
    (128, 64, 1)
"""

from __future__ import annotations

import logging
import threading
import warnings
from dataclasses import dataclass, replace
from typing import Protocol

from .errors import MeshAdvisoryWarning, PreconditionError
from .mesh import (
    Mesh,
    smoothness_advisories,
    to_meters,
    validate_cell_size,
    validate_grid_size,
    validate_mesh_params,
    validate_pbc,
)

logger = logging.getLogger(__name__)


class MeshLifecycle(Protocol):
    def allocate_for_new_mesh(self, mesh: Mesh) -> None: ...

    def resize_transaction(
        self, old: Mesh, new: Mesh, size_changed: bool, cell_size_changed: bool
    ) -> list[str]: ...


@dataclass(frozen=True)
class PendingConfig:
    """Accumulates mesh pieces that arrive through separate calls.

    Attributes:
        grid_size: Cell counts, None until set
        cell_size: Cell size in meters, None until set
        pbc: Repetition counts, all zero until set
    """

    grid_size: tuple[int, int, int] | None = None
    cell_size: tuple[float, float, float] | None = None
    pbc: tuple[int, int, int] = (0, 0, 0)

    @property
    def ready(self) -> bool:
        """True once grid size and cell size are both known."""
        return self.grid_size is not None and self.cell_size is not None

    def with_grid_size(self, nx: int, ny: int, nz: int) -> PendingConfig:
        return replace(self, grid_size=(nx, ny, nz))

    def with_cell_size(self, cx: float, cy: float, cz: float) -> PendingConfig:
        return replace(self, cell_size=(cx, cy, cz))

    def with_pbc(self, px: int, py: int, pz: int) -> PendingConfig:
        return replace(self, pbc=(px, py, pz))

    def build(self) -> tuple:
        """The nine mesh values, in ``apply_full`` argument order.

        Raises:
            PreconditionError: If grid size or cell size is missing
        """
        if not self.ready:
            missing = "grid size" if self.grid_size is None else "cell size"
            raise PreconditionError(f"cannot build mesh parameters: {missing} not set")
        return (*self.grid_size, *self.cell_size, *self.pbc)


@dataclass(frozen=True)
class ResizeReport:
    """Outcome of one ``apply_full`` call.

    Attributes:
        old: Mesh before the call (unset sentinel on first configuration)
        new: Mesh after the call
        first_set: The call moved the mesh out of the unset state
        size_changed: Grid size differs from ``old``
        cell_size_changed: Cell size differs from ``old``
        pbc_changed: Repetition counts differ from ``old``
        resized: The resize transaction ran
        dropped_terms: Excitation extra terms removed by the resize
    """

    old: Mesh
    new: Mesh
    first_set: bool
    size_changed: bool
    cell_size_changed: bool
    pbc_changed: bool
    resized: bool
    dropped_terms: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return self.size_changed or self.cell_size_changed or self.pbc_changed


class MeshRegistry:
    """Owner of the session mesh.

    Args:
        lifecycle: Resource manager driven on mesh changes

    Note:
        Configuration calls are serialized by an exclusive busy section.
        Calls from other threads wait for the running transaction; a call
        made from inside a transaction (e.g. by a lifecycle listener) raises
        PreconditionError instead of deadlocking.
    """

    def __init__(self, lifecycle: MeshLifecycle):
        self.lifecycle = lifecycle
        self._mesh = Mesh.unset()
        self._pending = PendingConfig()
        self._lock = threading.Lock()
        self._owner: int | None = None

    @property
    def busy(self) -> bool:
        """True while a reconfiguration transaction is running."""
        return self._owner is not None

    @property
    def is_configured(self) -> bool:
        return self._mesh.is_set

    @property
    def pending(self) -> PendingConfig:
        return self._pending

    def current(self) -> Mesh:
        """The current mesh.

        Raises:
            PreconditionError: If no mesh has been configured yet
        """
        mesh = self._mesh
        if not mesh.is_set:
            raise PreconditionError("mesh not yet configured")
        return mesh

    def apply_full(
        self,
        nx: int,
        ny: int,
        nz: int,
        cx: float,
        cy: float,
        cz: float,
        px: int = 0,
        py: int = 0,
        pz: int = 0,
    ) -> ResizeReport:
        """Validate and apply a complete mesh configuration.

        Args:
            nx, ny, nz: Cell counts, > 0
            cx, cy, cz: Cell size in meters, > 0
            px, py, pz: Periodic repetitions, >= 0

        Returns:
            ResizeReport describing what changed

        Raises:
            InvalidArgumentError: If any value is out of range (no mutation)
            PreconditionError: If called from inside a running transaction
            ResourceExhaustionError: If a buffer cannot be allocated
        """
        size = (nx, ny, nz)
        pbc = (px, py, pz)
        validate_mesh_params(size, (cx, cy, cz), pbc)
        cell_size = (float(cx), float(cy), float(cz))

        for message in smoothness_advisories(size):
            warnings.warn(message, MeshAdvisoryWarning, stacklevel=2)

        with self._busy_section():
            old = self._mesh
            new = Mesh(size=size, cell_size=cell_size, pbc=pbc)
            size_changed = old.size != new.size
            cell_size_changed = old.cell_size != new.cell_size
            pbc_changed = old.pbc != new.pbc

            first_set = not old.is_set
            resized = False
            dropped: list[str] = []
            if first_set:
                self.lifecycle.allocate_for_new_mesh(new)
            elif size_changed or cell_size_changed or pbc_changed:
                dropped = self.lifecycle.resize_transaction(
                    old, new, size_changed, cell_size_changed
                )
                resized = True

            # Publish only after every dependent buffer follows the new mesh
            self._mesh = new
            self._pending = PendingConfig(grid_size=size, cell_size=cell_size, pbc=pbc)

        if first_set:
            logger.info("mesh set: %s", new)
        return ResizeReport(
            old=old,
            new=new,
            first_set=first_set,
            size_changed=size_changed,
            cell_size_changed=cell_size_changed,
            pbc_changed=pbc_changed,
            resized=resized,
            dropped_terms=tuple(dropped),
        )

    def set_grid_size(self, nx: int, ny: int, nz: int) -> ResizeReport | None:
        """Record the grid size; apply if the cell size is already known."""
        validate_grid_size(nx, ny, nz)
        self._pending = self._pending.with_grid_size(nx, ny, nz)
        return self._apply_pending()

    def set_cell_size(self, cx: float, cy: float, cz: float, units: str = "m") -> ResizeReport | None:
        """Record the cell size; apply if the grid size is already known.

        Args:
            cx, cy, cz: Cell size in ``units``
            units: One of 'm', 'mm', 'um', 'nm'
        """
        validate_cell_size(cx, cy, cz)
        cx, cy, cz = to_meters(cx, cy, cz, units)
        # A tiny value can underflow to zero once scaled
        validate_cell_size(cx, cy, cz)
        self._pending = self._pending.with_cell_size(cx, cy, cz)
        return self._apply_pending()

    def set_pbc(self, px: int, py: int, pz: int) -> ResizeReport | None:
        """Record the repetition counts; apply if grid and cell size are known."""
        validate_pbc(px, py, pz)
        self._pending = self._pending.with_pbc(px, py, pz)
        return self._apply_pending()

    def set_mesh(
        self,
        nx: int,
        ny: int,
        nz: int,
        cx: float,
        cy: float,
        cz: float,
        px: int = 0,
        py: int = 0,
        pz: int = 0,
    ) -> ResizeReport:
        """Set grid size, cell size and repetition counts at once."""
        return self.apply_full(nx, ny, nz, cx, cy, cz, px, py, pz)

    def _apply_pending(self) -> ResizeReport | None:
        if not self._pending.ready:
            return None
        return self.apply_full(*self._pending.build())

    def _busy_section(self):
        return _BusySection(self)


class _BusySection:
    """Exclusive section guarding one reconfiguration transaction."""

    def __init__(self, registry: MeshRegistry):
        self.registry = registry

    def __enter__(self):
        me = threading.get_ident()
        if self.registry._owner == me:
            raise PreconditionError("mesh reconfiguration already in progress")
        self.registry._lock.acquire()
        self.registry._owner = me
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.registry._owner = None
        self.registry._lock.release()
        return False
