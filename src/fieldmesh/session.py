"""Simulation session: the context object that owns a mesh and its buffers.

A session replaces process-wide mesh state. It wires together:

- BufferLifecycleManager: mesh-shaped device buffers
- MeshRegistry: mesh validation and the reconfiguration transaction
- TransferWorkerPool: host <-> device pipelines, restarted around resizes

Example:
    >>> from fieldmesh import SimulationSession
    >>> session = SimulationSession(device="cpu")
    >>> _ = session.set_mesh(64, 64, 1, 4e-9, 4e-9, 2e-9)
    >>> session.attach_downloader("m.download", field="m")
    >>> _ = session.set_grid_size(128, 64, 1)  # pipeline restarts on new buffers
    >>> session.current_mesh()["size"]
    (128, 64, 1)
    >>> session.close()
"""

from __future__ import annotations

from fieldmesh.core.device import select_device
from fieldmesh.core.errors import PreconditionError
from fieldmesh.core.launch import DEFAULT_LIMITS, LaunchLimits
from fieldmesh.core.lifecycle import BufferLifecycleManager
from fieldmesh.core.mesh import Mesh
from fieldmesh.core.registry import MeshRegistry, ResizeReport
from fieldmesh.transfer.channel import TransferChannel, make_channel
from fieldmesh.transfer.pipeline import Downloader, TransferConfig, TransferPipeline, Uploader
from fieldmesh.transfer.pool import TransferWorkerPool


class SimulationSession:
    """Owner of one simulation's mesh, buffers and transfer workers.

    Args:
        device: 'auto', 'cuda', 'cuda:N', 'mps' or 'cpu'
        limits: Launch limits for buffer and kernel sizing
        transfer: Transfer pipeline settings
        ncomp: Components of the primary field

    Raises:
        ImportError: If PyTorch is not installed
        RuntimeError: If an explicitly requested device is unavailable
    """

    def __init__(
        self,
        device: str = "auto",
        limits: LaunchLimits = DEFAULT_LIMITS,
        transfer: TransferConfig | None = None,
        ncomp: int = 3,
    ):
        self.device = select_device(device)
        self.limits = limits
        self.transfer = transfer or TransferConfig()
        self.buffers = BufferLifecycleManager(self.device, limits, ncomp)
        self.registry = MeshRegistry(self.buffers)
        self.workers = TransferWorkerPool()
        self.buffers.add_listener(self.workers)

    # Configuration entry points

    def set_grid_size(self, nx: int, ny: int, nz: int) -> ResizeReport | None:
        return self.registry.set_grid_size(nx, ny, nz)

    def set_cell_size(self, cx: float, cy: float, cz: float, units: str = "m") -> ResizeReport | None:
        return self.registry.set_cell_size(cx, cy, cz, units)

    def set_pbc(self, px: int, py: int, pz: int) -> ResizeReport | None:
        return self.registry.set_pbc(px, py, pz)

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
        return self.registry.set_mesh(nx, ny, nz, cx, cy, cz, px, py, pz)

    @property
    def mesh(self) -> Mesh:
        """Current mesh; raises PreconditionError if unset."""
        return self.registry.current()

    def current_mesh(self) -> dict:
        """Current mesh as ``{size, cell_size, pbc}``."""
        mesh = self.registry.current()
        return {"size": mesh.size, "cell_size": mesh.cell_size, "pbc": mesh.pbc}

    def set_geom(self, shape) -> None:
        """Set the geometry from a shape descriptor, see GeometryMask."""
        self.buffers.geometry.set_geom(shape, self.mesh)

    # Transfer pipelines

    def attach_uploader(self, name: str, field: str = "m") -> None:
        """Stream host data into ``field`` for as long as the session lives."""
        self._attach(name, field, Uploader)

    def attach_downloader(self, name: str, field: str = "m") -> None:
        """Stream ``field`` out to a host channel for as long as the session lives."""
        self._attach(name, field, Downloader)

    def detach(self, name: str) -> None:
        """Stop a pipeline and forget its factory."""
        self.workers.unregister(name)

    def pipeline(self, name: str) -> TransferPipeline:
        return self.workers.pipeline(name)

    def _attach(self, name: str, field: str, kind: type[TransferPipeline]) -> None:
        self.buffers.buffer(field)  # fail fast on unknown names

        def factory(mesh: Mesh) -> TransferPipeline:
            return self._make_pipeline(name, field, kind)

        if self.registry.is_configured:
            self.workers.start(name, factory(self.registry.current()))
        self.workers.register(name, factory)

    def _make_pipeline(self, name: str, field: str, kind: type[TransferPipeline]) -> TransferPipeline:
        buf = self.buffers.buffer(field)
        if buf.is_nil:
            raise PreconditionError(f"buffer '{field}' is not allocated")
        poll = self.transfer.poll_interval
        dev = TransferChannel(buf.data, name=f"{name}.dev", poll_interval=poll)
        host = make_channel(
            dev.capacity,
            device="cpu",
            dtype=buf.dtype,
            pin_memory=self.transfer.pin_host_memory,
            name=f"{name}.host",
            poll_interval=poll,
        )
        config = self.transfer.for_capacity(dev.capacity)
        if kind is Uploader:
            return Uploader(host, dev, self.device, config)
        return Downloader(dev, host, self.device, config)

    # Teardown

    def close(self) -> None:
        """Stop every worker and free every buffer."""
        try:
            self.workers.stop_all()
        finally:
            self.buffers.release_all()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
