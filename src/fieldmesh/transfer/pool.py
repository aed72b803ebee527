"""Dedicated worker threads for transfer pipelines.

Every running pipeline gets its own daemon thread, which binds the
pipeline's device for its whole lifetime (inside ``TransferPipeline.run``).

Pipelines bound to mesh-shaped buffers are registered with a factory. The
pool listens to the buffer lifecycle: registered pipelines are stopped
before buffers are released and rebuilt from their factory once the new
buffers exist, so no pipeline ever copies into a freed tensor.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from fieldmesh.core.errors import PreconditionError
from fieldmesh.core.mesh import Mesh

from .pipeline import TransferPipeline

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[Mesh], TransferPipeline]


class TransferWorkerPool:
    """Runs transfer pipelines, one dedicated thread each.

    Args:
        stop_timeout: Default seconds to wait for a worker to exit on stop

    Example:
        >>> pool = TransferWorkerPool()
        >>> pool.start("m.upload", uploader)
        >>> pool.stop("m.upload")
    """

    def __init__(self, stop_timeout: float = 5.0):
        self.stop_timeout = stop_timeout
        self._lock = threading.Lock()
        self._workers: dict[str, tuple[TransferPipeline, threading.Thread]] = {}
        self._errors: dict[str, BaseException] = {}
        self._factories: dict[str, PipelineFactory] = {}

    @property
    def running(self) -> list[str]:
        """Names of pipelines whose worker thread is alive."""
        with self._lock:
            return [name for name, (_, t) in self._workers.items() if t.is_alive()]

    def pipeline(self, name: str) -> TransferPipeline:
        """The pipeline currently started under ``name``.

        Raises:
            PreconditionError: If no pipeline is started under ``name``
        """
        with self._lock:
            if name not in self._workers:
                raise PreconditionError(f"no transfer pipeline named '{name}'")
            return self._workers[name][0]

    def start(self, name: str, pipeline: TransferPipeline) -> threading.Thread:
        """Start ``pipeline`` on a new dedicated worker thread."""
        with self._lock:
            if name in self._workers and self._workers[name][1].is_alive():
                raise PreconditionError(f"transfer pipeline '{name}' is already running")
            thread = threading.Thread(
                target=self._run, args=(name, pipeline), name=f"transfer-{name}", daemon=True
            )
            self._workers[name] = (pipeline, thread)
            self._errors.pop(name, None)
        thread.start()
        logger.debug("started %s on %s", name, thread.name)
        return thread

    def stop(self, name: str, timeout: float | None = None) -> int:
        """Stop a pipeline and wait for its worker to exit.

        Returns:
            Total chunks the pipeline moved

        Raises:
            PreconditionError: If no such pipeline or the worker did not exit
            Exception: Whatever the worker raised while running
        """
        with self._lock:
            if name not in self._workers:
                raise PreconditionError(f"no transfer pipeline named '{name}'")
            pipeline, thread = self._workers[name]
        pipeline.stop()
        thread.join(self.stop_timeout if timeout is None else timeout)
        if thread.is_alive():
            raise PreconditionError(f"transfer worker '{name}' did not stop")
        with self._lock:
            self._workers.pop(name, None)
            error = self._errors.pop(name, None)
        logger.debug("stopped %s after %d chunks", name, pipeline.chunks)
        if error is not None:
            raise error
        return pipeline.chunks

    def stop_all(self, timeout: float | None = None) -> None:
        """Stop every pipeline. The first worker error, if any, is re-raised."""
        with self._lock:
            names = list(self._workers)
        first_error = None
        for name in names:
            try:
                self.stop(name, timeout)
            except Exception as e:
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def register(self, name: str, factory: PipelineFactory) -> None:
        """Rebuild ``name`` from ``factory`` whenever buffers are allocated."""
        self._factories[name] = factory

    def unregister(self, name: str) -> None:
        self._factories.pop(name, None)
        with self._lock:
            active = name in self._workers
        if active:
            self.stop(name)

    # LifecycleListener

    def buffers_releasing(self, mesh: Mesh | None) -> None:
        for name in list(self._factories):
            with self._lock:
                active = name in self._workers
            if active:
                self.stop(name)

    def buffers_allocated(self, mesh: Mesh) -> None:
        # Restart failures are recorded per pipeline, never raised into the resize
        for name, factory in list(self._factories.items()):
            try:
                self.start(name, factory(mesh))
            except Exception as e:
                logger.error("transfer pipeline '%s' could not restart: %s", name, e)
                with self._lock:
                    self._errors[name] = e

    def restart_error(self, name: str) -> BaseException | None:
        """Error from the last failed restart of ``name``, if any."""
        with self._lock:
            return self._errors.get(name)

    def _run(self, name: str, pipeline: TransferPipeline) -> None:
        try:
            pipeline.run()
        except Exception as e:
            logger.error("transfer pipeline '%s' failed: %s", name, e)
            with self._lock:
                self._errors[name] = e
