"""Uploader / Downloader: chunked host <-> device copies on a dedicated stream.

Each pipeline moves one field between a host channel and a device channel.
Per chunk it:

1. acquires the next readable chunk from the source (blocks on the producer)
2. acquires the next writable chunk of equal size from the destination
3. issues the copy on its own stream
4. synchronizes that stream
5. releases both chunks

Exactly one chunk is in flight, so chunks arrive in source order and the
handoff contract stays simple: once a chunk is released it is fully copied.

The stop signal is checked at every chunk boundary and by every blocked
acquisition, so ``stop`` returns control within one poll interval even when
the producer has stalled.

Example:
    >>> host = make_channel(1024, pin_memory=True, name="m.host")
    >>> dev = TransferChannel(field.data, name="m.dev")
    >>> up = Uploader(host, dev, device="cuda")
    >>> up.run(max_chunks=64)  # or hand it to a TransferWorkerPool
    64
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace

from fieldmesh.core.device import DeviceStream, bind_device
from fieldmesh.core.errors import ChannelClosedError, InvalidArgumentError

from .channel import DEFAULT_POLL_INTERVAL, TransferChannel

logger = logging.getLogger(__name__)


@dataclass
class TransferConfig:
    """Transfer pipeline settings.

    Args:
        chunk_size: Elements per handoff, independent of the buffer size
        poll_interval: Seconds between stop-signal checks while blocked
        pin_host_memory: Page-lock host channels allocated by the session
    """

    chunk_size: int = 16
    poll_interval: float = DEFAULT_POLL_INTERVAL
    pin_host_memory: bool = True

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise InvalidArgumentError("chunk_size", f"must be positive, got {self.chunk_size}")
        if self.poll_interval <= 0:
            raise InvalidArgumentError(
                "poll_interval", f"must be positive, got {self.poll_interval}"
            )

    def for_capacity(self, capacity: int) -> TransferConfig:
        """Settings whose chunk size divides a ring of ``capacity`` elements.

        The chunk size shrinks to gcd(chunk_size, capacity), so field buffers
        of any mesh shape can be streamed.
        """
        chunk = math.gcd(self.chunk_size, capacity)
        if chunk == self.chunk_size:
            return self
        return replace(self, chunk_size=chunk)


class TransferPipeline:
    """Copies chunks from ``source`` to ``destination`` until stopped.

    Args:
        source: Channel read from
        destination: Channel written to
        device: Device whose context the worker binds and whose stream copies
        config: Chunk size and polling settings
        stream_factory: Builds the copy stream, called once per ``run``

    Attributes:
        chunks: Total chunks moved over all runs
    """

    direction = "transfer"

    def __init__(
        self,
        source: TransferChannel,
        destination: TransferChannel,
        device: str = "cpu",
        config: TransferConfig | None = None,
        stream_factory: Callable[[str], DeviceStream] = DeviceStream,
    ):
        self.source = source
        self.destination = destination
        self.device = device
        self.config = config or TransferConfig()
        for chan in (source, destination):
            if chan.capacity % self.config.chunk_size:
                raise InvalidArgumentError(
                    "chunk_size",
                    f"{self.config.chunk_size} does not divide capacity {chan.capacity} of '{chan.name}'",
                )
        self.stream_factory = stream_factory
        self.stream = None
        self.chunks = 0
        self._stop = threading.Event()

    @property
    def name(self) -> str:
        return f"{self.direction}({self.source.name} -> {self.destination.name})"

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask ``run`` to return at the next chunk boundary."""
        self._stop.set()

    def run(self, max_chunks: int | None = None) -> int:
        """Move chunks until stopped, a channel closes, or ``max_chunks``.

        Returns:
            Number of chunks moved by this call
        """
        logger.debug("%s: run", self.name)
        bsize = self.config.chunk_size
        moved = 0
        with bind_device(self.device):
            self.stream = self.stream_factory(self.device)
            try:
                while not self._stop.is_set():
                    if max_chunks is not None and moved >= max_chunks:
                        break
                    src = self.source.read_next(bsize, stop=self._stop)
                    try:
                        dst = self.destination.write_next(bsize, stop=self._stop)
                    except ChannelClosedError:
                        self.source.abort_read()
                        raise
                    logger.debug("%s: chunk %d (%d elements)", self.name, moved, bsize)
                    self.stream.copy_async(dst, src)
                    self.stream.synchronize()
                    self.source.read_done()
                    self.destination.write_done()
                    moved += 1
            except ChannelClosedError as e:
                logger.debug("%s: %s", self.name, e)
            finally:
                self.chunks += moved
        logger.debug("%s: stopped after %d chunks", self.name, moved)
        return moved


class Uploader(TransferPipeline):
    """Uploads data from a host channel to a device channel."""

    direction = "upload"

    def __init__(
        self,
        host: TransferChannel,
        dev: TransferChannel,
        device: str = "cpu",
        config: TransferConfig | None = None,
        stream_factory: Callable[[str], DeviceStream] = DeviceStream,
    ):
        super().__init__(host, dev, device, config, stream_factory)


class Downloader(TransferPipeline):
    """Downloads data from a device channel to a host channel."""

    direction = "download"

    def __init__(
        self,
        dev: TransferChannel,
        host: TransferChannel,
        device: str = "cpu",
        config: TransferConfig | None = None,
        stream_factory: Callable[[str], DeviceStream] = DeviceStream,
    ):
        super().__init__(dev, host, device, config, stream_factory)
