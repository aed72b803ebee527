"""
Example: Resizing a Live Session
================================
Configures a mesh, streams the magnetization out through a downloader,
then doubles the grid. The downloader is stopped before the old buffers are
released and restarted on the new ones; chunks published afterwards arrive
through the new pipeline.

Run with:

    python examples/resize_session.py
"""

import logging
import time

from fieldmesh import SimulationSession, TransferConfig

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")


def publish(pipeline, value):
    """Fill and publish one chunk of the device-side ring, as a kernel would."""
    dev = pipeline.source
    dev.write_next(pipeline.config.chunk_size).fill_(value)
    dev.write_done()


def wait_available(channel, n, timeout=5.0):
    deadline = time.monotonic() + timeout
    while channel.available < n and time.monotonic() < deadline:
        time.sleep(0.01)
    return channel.available


with SimulationSession(device="auto", transfer=TransferConfig(chunk_size=64)) as session:
    session.set_mesh(64, 64, 1, 4e-9, 4e-9, 2e-9)
    session.attach_downloader("m.download", field="m")

    pipeline = session.pipeline("m.download")
    publish(pipeline, 1.0)
    print(f"before resize: {wait_available(pipeline.destination, 64)} elements on host")

    report = session.set_grid_size(128, 64, 1)
    print(f"resized: {report.old.size} -> {report.new.size}, dropped terms: {report.dropped_terms}")

    pipeline = session.pipeline("m.download")
    publish(pipeline, 2.0)
    print(f"after resize: {wait_available(pipeline.destination, 64)} elements on host")
    print(f"launch 3D grid: {session.buffers.launch.cells_3d.grid}")
