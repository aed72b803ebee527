"""Mesh, launch geometry and buffer lifecycle."""

from fieldmesh.core.errors import (
    ChannelClosedError,
    DroppedTermsWarning,
    FieldMeshError,
    InvalidArgumentError,
    MeshAdvisoryWarning,
    PreconditionError,
    ResourceExhaustionError,
)
from fieldmesh.core.launch import (
    DEFAULT_LIMITS,
    Dim3,
    LaunchConfig,
    LaunchLimits,
    configure_1d,
    configure_3d,
    div_up,
)
from fieldmesh.core.mesh import Mesh, prime_factors, smoothness_advisories
from fieldmesh.core.registry import MeshRegistry, PendingConfig, ResizeReport

__all__ = [
    "Mesh",
    "MeshRegistry",
    "PendingConfig",
    "ResizeReport",
    "Dim3",
    "LaunchConfig",
    "LaunchLimits",
    "DEFAULT_LIMITS",
    "configure_1d",
    "configure_3d",
    "div_up",
    "prime_factors",
    "smoothness_advisories",
    "FieldMeshError",
    "InvalidArgumentError",
    "PreconditionError",
    "ResourceExhaustionError",
    "ChannelClosedError",
    "MeshAdvisoryWarning",
    "DroppedTermsWarning",
]
