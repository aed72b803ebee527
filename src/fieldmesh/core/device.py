"""Device selection, context binding and copy streams.

Device buffers are PyTorch tensors. CUDA devices get a dedicated copy stream
per transfer pipeline; MPS and CPU devices copy synchronously and their
``synchronize`` is a device-wide fence (MPS) or a no-op (CPU).

Example:
    >>> from fieldmesh.core.device import get_gpu_info, select_device
    >>> device = select_device("auto")  # cuda > mps > cpu
    >>> get_gpu_info()["available"] in (True, False)
    True
"""

from __future__ import annotations

import contextlib
from typing import Literal

# Check for PyTorch and accelerator availability
_HAS_TORCH = False
_HAS_CUDA = False
_HAS_MPS = False
_torch = None

try:
    import torch
    _torch = torch
    _HAS_TORCH = True
    _HAS_CUDA = torch.cuda.is_available()
    _HAS_MPS = torch.backends.mps.is_available() and torch.backends.mps.is_built()
except ImportError:
    pass

DeviceName = Literal["auto", "cuda", "mps", "cpu"]


def has_torch() -> bool:
    """True if PyTorch is importable."""
    return _HAS_TORCH


def has_gpu_support() -> bool:
    """Check if a GPU backend (CUDA or MPS) is available.

    Returns:
        True if PyTorch is installed and CUDA or MPS is usable.
    """
    return _HAS_CUDA or _HAS_MPS


def get_gpu_info() -> dict:
    """Get information about GPU support.

    Returns:
        Dict with keys: available, backend, device_count, pytorch_version
    """
    if not _HAS_TORCH:
        return {
            "available": False,
            "backend": None,
            "device_count": 0,
            "pytorch_version": None,
        }
    if _HAS_CUDA:
        backend = "cuda"
        count = _torch.cuda.device_count()
    elif _HAS_MPS:
        backend = "mps"
        count = 1
    else:
        backend = None
        count = 0
    return {
        "available": has_gpu_support(),
        "backend": backend,
        "device_count": count,
        "pytorch_version": _torch.__version__,
    }


def require_torch() -> None:
    """Raise ImportError if PyTorch is not installed."""
    if not _HAS_TORCH:
        raise ImportError(
            "PyTorch is required for device buffers. Install with: pip install torch"
        )


def select_device(device: DeviceName | str = "auto") -> str:
    """Resolve a device request to a concrete torch device string.

    Args:
        device: 'auto' (cuda > mps > cpu), 'cuda', 'cuda:N', 'mps' or 'cpu'

    Returns:
        Device string accepted by ``torch.device``

    Raises:
        RuntimeError: If an explicitly requested backend is unavailable
    """
    if device == "auto":
        if _HAS_CUDA:
            return "cuda"
        if _HAS_MPS:
            return "mps"
        return "cpu"
    if str(device).startswith("cuda"):
        if not _HAS_CUDA:
            raise RuntimeError("CUDA backend not available. Check PyTorch installation.")
        return str(device)
    if device == "mps":
        if not _HAS_MPS:
            raise RuntimeError("MPS backend not available. Check PyTorch installation.")
        return "mps"
    if device == "cpu":
        return "cpu"
    raise RuntimeError(f"Unknown device {device!r}")


def bind_device(device: str):
    """Context manager making ``device`` current for the calling thread.

    Stream and memory operations on CUDA are bound to the current device;
    a transfer worker enters this once and keeps it for its lifetime.
    """
    require_torch()
    dev = _torch.device(device)
    if dev.type == "cuda":
        return _torch.cuda.device(dev)
    return contextlib.nullcontext()


class DeviceStream:
    """A dedicated copy stream on one device.

    On CUDA this wraps ``torch.cuda.Stream``: copies are issued
    ``non_blocking`` on the stream and ``synchronize`` waits for that stream
    only. Elsewhere copies are synchronous.

    Args:
        device: Torch device string the stream belongs to

    Attributes:
        synchronizations: Number of ``synchronize`` calls so far
    """

    def __init__(self, device: str):
        require_torch()
        self.device = _torch.device(device)
        self._stream = (
            _torch.cuda.Stream(device=self.device) if self.device.type == "cuda" else None
        )
        self.synchronizations = 0

    def copy_async(self, dst, src) -> None:
        """Issue ``dst.copy_(src)`` on this stream."""
        if self._stream is not None:
            with _torch.cuda.stream(self._stream):
                dst.copy_(src, non_blocking=True)
        else:
            dst.copy_(src)

    def synchronize(self) -> None:
        """Block until every copy issued on this stream has completed."""
        if self._stream is not None:
            self._stream.synchronize()
        elif self.device.type == "mps":
            _torch.mps.synchronize()
        self.synchronizations += 1


def empty_device_cache(device: str) -> None:
    """Return cached allocator blocks of ``device`` to the driver."""
    if not _HAS_TORCH:
        return
    dev_type = _torch.device(device).type
    if dev_type == "cuda":
        _torch.cuda.empty_cache()
    elif dev_type == "mps":
        _torch.mps.empty_cache()
