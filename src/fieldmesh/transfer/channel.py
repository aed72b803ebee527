"""Chunked single-producer / single-consumer channels over a flat tensor.

A TransferChannel is a ring over one buffer. The writer acquires the next
free chunk with ``write_next(n)``, fills it, and publishes it with
``write_done()``; the reader acquires the next filled chunk with
``read_next(n)`` and releases it with ``read_done()``. Each side holds at
most one chunk at a time, and chunks never straddle the end of the buffer.

Blocking acquisitions wake up every ``poll_interval`` seconds to check an
optional stop event, and fail with ChannelClosedError once the channel is
closed or the stop event is set.

Example:
    >>> chan = make_channel(64, device="cpu")
    >>> chunk = chan.write_next(16)
    >>> _ = chunk.fill_(1.0)
    >>> chan.write_done()
    >>> chan.read_next(16).sum().item()
    16.0
    >>> chan.read_done()
"""

from __future__ import annotations

import threading

from fieldmesh.core.buffers import allocate
from fieldmesh.core.errors import ChannelClosedError, InvalidArgumentError, PreconditionError

DEFAULT_POLL_INTERVAL = 0.05


class TransferChannel:
    """Bounded chunk handoff over a flat tensor.

    Args:
        data: Contiguous tensor backing the ring; it is viewed as 1D
        name: Identifier used in error messages
        poll_interval: Seconds between stop-signal checks while blocked

    Attributes:
        capacity: Number of elements in the ring
        reads: Number of completed ``read_next`` acquisitions
        writes: Number of completed ``write_next`` acquisitions
    """

    def __init__(self, data, name: str = "chan", poll_interval: float = DEFAULT_POLL_INTERVAL):
        if not data.is_contiguous():
            raise InvalidArgumentError("TransferChannel", f"'{name}' needs a contiguous tensor")
        self.data = data.view(-1)
        self.name = name
        self.capacity = self.data.numel()
        self.poll_interval = poll_interval
        self.reads = 0
        self.writes = 0

        self._cond = threading.Condition()
        self._written = 0  # elements published, monotonic
        self._consumed = 0  # elements released by the reader, monotonic
        self._write_n: int | None = None
        self._read_n: int | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def available(self) -> int:
        """Elements written and not yet consumed."""
        with self._cond:
            return self._written - self._consumed

    def write_next(self, n: int, stop: threading.Event | None = None):
        """Acquire the next ``n`` free elements for writing.

        Blocks until the reader has released enough space.

        Returns:
            1D tensor view of length ``n``

        Raises:
            InvalidArgumentError: If ``n`` does not fit the ring
            PreconditionError: If a write is already pending
            ChannelClosedError: If the channel closed or ``stop`` was set
        """
        with self._cond:
            if self._write_n is not None:
                raise PreconditionError(f"'{self.name}': write_next without write_done")
            start = self._written % self.capacity
            self._check_chunk(n, start)
            self._wait(lambda: self._written - self._consumed + n <= self.capacity, stop)
            self._write_n = n
            self.writes += 1
        return self.data[start : start + n]

    def write_done(self) -> None:
        """Publish the chunk acquired by ``write_next``."""
        with self._cond:
            if self._write_n is None:
                raise PreconditionError(f"'{self.name}': write_done without write_next")
            self._written += self._write_n
            self._write_n = None
            self._cond.notify_all()

    def abort_write(self) -> None:
        """Give up a pending write without publishing it."""
        with self._cond:
            self._write_n = None

    def read_next(self, n: int, stop: threading.Event | None = None):
        """Acquire the next ``n`` written elements for reading.

        Blocks until the writer has published enough data.

        Returns:
            1D tensor view of length ``n``

        Raises:
            InvalidArgumentError: If ``n`` does not fit the ring
            PreconditionError: If a read is already pending
            ChannelClosedError: If the channel closed or ``stop`` was set
        """
        with self._cond:
            if self._read_n is not None:
                raise PreconditionError(f"'{self.name}': read_next without read_done")
            start = self._consumed % self.capacity
            self._check_chunk(n, start)
            self._wait(lambda: self._written - self._consumed >= n, stop)
            self._read_n = n
            self.reads += 1
        return self.data[start : start + n]

    def read_done(self) -> None:
        """Release the chunk acquired by ``read_next``."""
        with self._cond:
            if self._read_n is None:
                raise PreconditionError(f"'{self.name}': read_done without read_next")
            self._consumed += self._read_n
            self._read_n = None
            self._cond.notify_all()

    def abort_read(self) -> None:
        """Give up a pending read without consuming it."""
        with self._cond:
            self._read_n = None

    def close(self) -> None:
        """Wake every blocked acquisition with ChannelClosedError."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def _check_chunk(self, n: int, start: int) -> None:
        if n <= 0 or n > self.capacity or start + n > self.capacity:
            raise InvalidArgumentError(
                "chunk_size",
                f"'{self.name}': chunk of {n} at offset {start} does not fit capacity {self.capacity}",
            )

    def _wait(self, predicate, stop: threading.Event | None) -> None:
        # Caller holds self._cond
        while True:
            if self._closed:
                raise ChannelClosedError(f"channel '{self.name}' closed")
            if stop is not None and stop.is_set():
                raise ChannelClosedError(f"channel '{self.name}': stop requested")
            if predicate():
                return
            self._cond.wait(self.poll_interval)

    def __repr__(self) -> str:
        return (
            f"TransferChannel({self.name!r}, capacity={self.capacity}, "
            f"written={self._written}, consumed={self._consumed})"
        )


def make_channel(
    numel: int,
    device: str = "cpu",
    dtype=None,
    pin_memory: bool = False,
    name: str = "chan",
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> TransferChannel:
    """Allocate a zeroed buffer and wrap it in a TransferChannel.

    Args:
        numel: Ring capacity in elements
        device: Torch device of the buffer
        dtype: Torch dtype (default float32)
        pin_memory: Page-lock a host buffer so device copies can run async
        name: Channel name
        poll_interval: Seconds between stop-signal checks
    """
    data = allocate((numel,), dtype, device, pin_memory=pin_memory)
    return TransferChannel(data, name=name, poll_interval=poll_interval)
