"""Exception and warning types raised by fieldmesh.

The hierarchy mirrors how failures are handled by callers:

- InvalidArgumentError: a configuration value is out of range. Raised before
  any state is touched, so the caller can correct the value and retry.
- PreconditionError: an operation needs state that does not exist yet (an
  unset mesh, a pipeline that was never started, a registry that is busy).
- ResourceExhaustionError: the device allocator failed. Not recoverable at
  this layer; there is no rollback for a half-resized mesh.
- ChannelClosedError: a blocked chunk acquisition was interrupted by a stop
  signal.

Warnings are advisory only and never abort the operation that emitted them.
"""

from __future__ import annotations


class FieldMeshError(Exception):
    """Base class for all fieldmesh errors."""

    pass


class InvalidArgumentError(FieldMeshError, ValueError):
    """Raised when a configuration value violates its invariant.

    Args:
        group: Name of the offending parameter group (e.g. "GridSize")
        detail: Optional extra context appended to the message
    """

    def __init__(self, group: str, detail: str | None = None):
        self.group = group
        message = f"{group}: illegal argument"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class PreconditionError(FieldMeshError, RuntimeError):
    """Raised when an operation is invoked before its prerequisites exist."""

    pass


class ResourceExhaustionError(FieldMeshError, MemoryError):
    """Raised when a device allocation fails."""

    pass


class ChannelClosedError(FieldMeshError):
    """Raised from a blocked channel acquisition after the channel closed."""

    pass


class MeshAdvisoryWarning(UserWarning):
    """Grid axis has a prime factor larger than 7."""

    pass


class DroppedTermsWarning(UserWarning):
    """A resize removed excitation terms that no longer fit the mesh."""

    pass
