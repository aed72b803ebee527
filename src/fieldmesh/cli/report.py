"""Terminal reports for configured sessions.

Prints the mesh, its launch geometry, the memory held by each mesh-shaped
buffer and the host process RSS, and times a one-field upload through the
transfer pipeline.
"""

import time
from typing import TYPE_CHECKING

import psutil
from rich.console import Console
from rich.table import Table

from fieldmesh.transfer.channel import TransferChannel, make_channel
from fieldmesh.transfer.pipeline import Uploader

if TYPE_CHECKING:
    from fieldmesh.session import SimulationSession


def format_time(seconds: float) -> str:
    """Format time duration for display.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "850 ms" or "1m 23s"
    """
    if seconds < 1:
        return f"{seconds * 1e3:.0f} ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}m {secs:02d}s"


BYTE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB")


def format_bytes(num_bytes: float) -> str:
    """Buffer or transfer size with a binary prefix, e.g. "768.0 KiB".

    Sizes past the largest prefix stay in TiB.
    """
    value = float(num_bytes)
    step = 0
    while abs(value) >= 1024.0 and step < len(BYTE_UNITS) - 1:
        value /= 1024.0
        step += 1
    return f"{value:.1f} {BYTE_UNITS[step]}"


def _dim(d) -> str:
    return f"{d.x} × {d.y} × {d.z}"


def print_mesh_info(console: Console, session: "SimulationSession"):
    """Print mesh parameters, launch geometry and buffer memory.

    Args:
        console: Rich console instance
        session: Session with a configured mesh
    """
    mesh = session.mesh
    nx, ny, nz = mesh.size
    cx, cy, cz = mesh.cell_size

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Parameter", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Grid", f"{nx} × {ny} × {nz} ({mesh.num_cells:,} cells)")
    table.add_row("Cell size", f"{cx:.3e} × {cy:.3e} × {cz:.3e} m")
    if mesh.periodic:
        table.add_row("PBC", " × ".join(str(p) for p in mesh.pbc))
    table.add_row("Device", session.device)

    launch = session.buffers.launch
    if launch is not None:
        table.add_row(
            "Launch 1D",
            f"grid {_dim(launch.field_1d.grid)}, block {_dim(launch.field_1d.block)}",
        )
        table.add_row(
            "Launch 3D",
            f"grid {_dim(launch.cells_3d.grid)}, block {_dim(launch.cells_3d.block)}",
        )

    report = session.buffers.memory_report()
    for name, nbytes in report.items():
        table.add_row(f"Buffer {name}", format_bytes(nbytes))
    table.add_row("Buffers total", format_bytes(sum(report.values())))

    rss = psutil.Process().memory_info().rss
    table.add_row("Host RSS", format_bytes(rss))

    console.print(table)
    console.print()


def measure_upload(session: "SimulationSession", field: str = "m") -> tuple[int, float]:
    """Upload one full host copy of ``field`` and time it.

    The host ring is filled in a single write, then drained chunk by chunk
    into the device buffer on the calling thread.

    Returns:
        (chunks moved, seconds elapsed)
    """
    buf = session.buffers.buffer(field)
    dev = TransferChannel(buf.data, name=f"{field}.dev")
    host = make_channel(
        dev.capacity,
        dtype=buf.dtype,
        pin_memory=session.transfer.pin_host_memory,
        name=f"{field}.host",
    )
    host.write_next(host.capacity).copy_(buf.data.view(-1))
    host.write_done()

    config = session.transfer.for_capacity(host.capacity)
    uploader = Uploader(host, dev, session.device, config)
    start = time.perf_counter()
    moved = uploader.run(max_chunks=host.capacity // config.chunk_size)
    return moved, time.perf_counter() - start
