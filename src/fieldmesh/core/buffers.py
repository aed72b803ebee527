"""Mesh-shaped device buffers and a pool for temporary tensors.

A FieldBuffer owns at most one tensor of shape ``(ncomp, nx, ny, nz)``. It is
either allocated or nil; ``free`` on a nil buffer is a no-op, so release
paths never fail. Allocation failures are reported as
``ResourceExhaustionError`` and are not retried.

Memory Usage:
    - float32 vector field: 3 x nx x ny x nz x 4 bytes
    - uint8 region map: nx x ny x nz bytes
    - Example (256 x 256 x 16 mesh): m = 12 MB, regions = 1 MB
"""

from __future__ import annotations

import logging
import threading

from .device import _torch, empty_device_cache, require_torch
from .errors import PreconditionError, ResourceExhaustionError
from .mesh import Mesh

logger = logging.getLogger(__name__)


def allocate(shape: tuple[int, ...], dtype=None, device: str = "cpu", pin_memory: bool = False):
    """Allocate a zeroed tensor, translating allocator failures.

    Args:
        shape: Tensor shape
        dtype: Torch dtype (default float32)
        device: Torch device string
        pin_memory: Page-lock a host tensor for async copies (CUDA only)

    Raises:
        ResourceExhaustionError: If the allocator cannot satisfy the request
    """
    require_torch()
    dtype = dtype or _torch.float32
    pin = pin_memory and _torch.device(device).type == "cpu" and _torch.cuda.is_available()
    try:
        return _torch.zeros(shape, dtype=dtype, device=device, pin_memory=pin)
    except RuntimeError as e:
        # torch.cuda.OutOfMemoryError is a RuntimeError subclass
        raise ResourceExhaustionError(
            f"cannot allocate {tuple(shape)} {dtype} on {device}: {e}"
        ) from e


def resample_nearest(data, size: tuple[int, int, int]):
    """Nearest-neighbour resample of a ``(ncomp, nx, ny, nz)`` tensor to ``size``."""
    if tuple(data.shape[1:]) == tuple(size):
        return data
    src = data.unsqueeze(0).to(_torch.float32)
    out = _torch.nn.functional.interpolate(src, size=tuple(size), mode="nearest")
    return out[0].to(data.dtype)


class FieldBuffer:
    """A device tensor tied to the mesh shape.

    Args:
        name: Identifier used in logs and memory reports
        ncomp: Number of components per cell
        dtype: Torch dtype (default float32)
        device: Torch device string

    Attributes:
        generation: Incremented on every allocation; two reads with the same
            generation saw the same tensor
    """

    def __init__(self, name: str, ncomp: int = 1, dtype=None, device: str = "cpu"):
        require_torch()
        self.name = name
        self.ncomp = ncomp
        self.dtype = dtype or _torch.float32
        self.device = device
        self.generation = 0
        self._data = None

    @property
    def is_nil(self) -> bool:
        return self._data is None

    @property
    def data(self):
        """The backing tensor.

        Raises:
            PreconditionError: If the buffer is nil
        """
        if self._data is None:
            raise PreconditionError(f"buffer '{self.name}' is not allocated")
        return self._data

    @property
    def shape(self) -> tuple[int, ...] | None:
        return None if self._data is None else tuple(self._data.shape)

    @property
    def nbytes(self) -> int:
        if self._data is None:
            return 0
        return self._data.numel() * self._data.element_size()

    def alloc(self, mesh: Mesh) -> None:
        """Allocate a zeroed tensor for ``mesh``, replacing any previous one."""
        self._data = None
        self._data = allocate((self.ncomp, *mesh.size), self.dtype, self.device)
        self.generation += 1
        logger.debug("alloc %s %s", self.name, self.shape)

    def free(self) -> None:
        """Drop the tensor. No-op if already nil."""
        if self._data is not None:
            logger.debug("free %s %s", self.name, self.shape)
        self._data = None

    def resize(self, mesh: Mesh, preserve: bool = True) -> None:
        """Reallocate for ``mesh``.

        Args:
            mesh: New mesh
            preserve: Resample previous contents onto the new shape
        """
        old = self._data
        self._data = None
        self.alloc(mesh)
        if preserve and old is not None:
            self._data.copy_(resample_nearest(old, mesh.size))

    def __repr__(self) -> str:
        state = "nil" if self.is_nil else f"shape={self.shape}"
        return f"FieldBuffer({self.name!r}, {state}, device={self.device!r})"


class BufferPool:
    """Recycles temporary device tensors by (shape, dtype).

    Kernels that need scratch space take a tensor with ``get`` and hand it back
    with ``recycle``. ``free_all`` drops every pooled tensor; it is called on
    every mesh change because pooled shapes follow the old mesh.

    Example:
        >>> pool = BufferPool("cpu")
        >>> t = pool.get((3, 8, 8, 1))
        >>> pool.recycle(t)
        >>> pool.get((3, 8, 8, 1)) is t
        True
    """

    def __init__(self, device: str = "cpu"):
        require_torch()
        self.device = device
        self._free: dict[tuple, list] = {}
        self._lock = threading.Lock()
        self._allocated = 0
        self._reused = 0

    def get(self, shape: tuple[int, ...], dtype=None):
        """Take a tensor of ``shape`` from the pool, allocating if none is free.

        Contents of a reused tensor are undefined.
        """
        dtype = dtype or _torch.float32
        key = (tuple(shape), dtype)
        with self._lock:
            free = self._free.get(key)
            if free:
                self._reused += 1
                return free.pop()
            self._allocated += 1
        return allocate(tuple(shape), dtype, self.device)

    def recycle(self, tensor) -> None:
        """Return a tensor obtained from ``get``."""
        key = (tuple(tensor.shape), tensor.dtype)
        with self._lock:
            self._free.setdefault(key, []).append(tensor)

    def free_all(self) -> None:
        """Drop all pooled tensors and release cached device memory."""
        with self._lock:
            self._free.clear()
        empty_device_cache(self.device)

    def stats(self) -> dict:
        """Pool usage counters.

        Returns:
            Dict with keys: allocated, reused, pooled
        """
        with self._lock:
            pooled = sum(len(v) for v in self._free.values())
            return {
                "allocated": self._allocated,
                "reused": self._reused,
                "pooled": pooled,
            }
