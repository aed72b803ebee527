#!/usr/bin/env python3
"""
Transfer Pipeline Benchmark Script

Measures host -> device upload throughput of the chunked transfer pipeline
for different mesh sizes and chunk sizes, and the cost of a resize
transaction with a running pipeline attached.

Usage:
    python3 benchmarks/benchmark_transfer.py                # Full suite on the default device
    python3 benchmarks/benchmark_transfer.py --quick        # Smaller meshes
    python3 benchmarks/benchmark_transfer.py --device cpu   # Force a device
    python3 benchmarks/benchmark_transfer.py --json         # Output results as JSON
"""

import argparse
import json
import sys
import time
from dataclasses import asdict, dataclass
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fieldmesh import SimulationSession, TransferConfig, get_gpu_info
from fieldmesh.cli.report import measure_upload


@dataclass
class UploadResult:
    """Results from a single upload run."""
    name: str
    grid_size: tuple[int, int, int]
    chunk_size: int
    chunks: int
    time_ms: float
    mb_per_sec: float


@dataclass
class ResizeResult:
    """Results from a resize with an attached pipeline."""
    name: str
    old_size: tuple[int, int, int]
    new_size: tuple[int, int, int]
    time_ms: float


def run_upload_benchmark(device: str, shape: tuple[int, int, int], chunk_size: int) -> UploadResult:
    """Upload the primary field once and time it.

    Args:
        device: Device name passed to the session
        shape: Grid dimensions
        chunk_size: Elements per transfer chunk

    Returns:
        UploadResult with timing and throughput data
    """
    with SimulationSession(device=device, transfer=TransferConfig(chunk_size=chunk_size)) as session:
        session.set_mesh(*shape, 4e-9, 4e-9, 4e-9)
        chunks, elapsed = measure_upload(session)
        nbytes = session.buffers.m.nbytes

    return UploadResult(
        name=f"{shape[0]}x{shape[1]}x{shape[2]}_chunk{chunk_size}",
        grid_size=shape,
        chunk_size=chunk_size,
        chunks=chunks,
        time_ms=elapsed * 1000,
        mb_per_sec=nbytes / elapsed / 1e6 if elapsed > 0 else float("inf"),
    )


def run_resize_benchmark(device: str, old: tuple[int, int, int], new: tuple[int, int, int]) -> ResizeResult:
    """Time one resize transaction with an uploader and a downloader attached."""
    with SimulationSession(device=device) as session:
        session.set_mesh(*old, 4e-9, 4e-9, 4e-9)
        session.attach_uploader("m.upload")
        session.attach_downloader("m.download")

        start = time.perf_counter()
        session.set_grid_size(*new)
        elapsed = time.perf_counter() - start

    return ResizeResult(
        name=f"{old[0]}->{new[0]}",
        old_size=old,
        new_size=new,
        time_ms=elapsed * 1000,
    )


def main():
    parser = argparse.ArgumentParser(description="Benchmark fieldmesh transfer pipelines")
    parser.add_argument("--quick", action="store_true", help="Smaller meshes")
    parser.add_argument("--device", default="auto", help="Device (auto, cuda, mps, cpu)")
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    args = parser.parse_args()

    if args.quick:
        shapes = [(64, 64, 1), (128, 128, 1)]
        chunk_sizes = [256, 4096]
    else:
        shapes = [(128, 128, 1), (256, 256, 4), (512, 512, 8)]
        chunk_sizes = [256, 4096, 65536]

    uploads = [
        run_upload_benchmark(args.device, shape, chunk)
        for shape in shapes
        for chunk in chunk_sizes
    ]
    resizes = [
        run_resize_benchmark(args.device, shape, (shape[0] * 2, shape[1], shape[2]))
        for shape in shapes
    ]

    if args.json:
        print(json.dumps(
            {
                "gpu": get_gpu_info(),
                "uploads": [asdict(r) for r in uploads],
                "resizes": [asdict(r) for r in resizes],
            },
            indent=2,
        ))
        return

    print("\n" + "=" * 70)
    print("UPLOAD THROUGHPUT")
    print("=" * 70)
    print(f"{'Case':<28} {'Chunks':>10} {'Time (ms)':>12} {'MB/s':>12}")
    for r in uploads:
        print(f"{r.name:<28} {r.chunks:>10} {r.time_ms:>12.2f} {r.mb_per_sec:>12.1f}")

    print("\n" + "=" * 70)
    print("RESIZE WITH ATTACHED PIPELINES")
    print("=" * 70)
    for r in resizes:
        print(f"{r.name:<28} {r.time_ms:>12.2f} ms")


if __name__ == "__main__":
    main()
