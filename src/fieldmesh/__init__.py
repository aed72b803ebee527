"""
fieldmesh - host-side mesh and buffer control for GPU field simulation.

Main exports:
- SimulationSession: Owns one mesh, its device buffers and transfer workers
- Mesh: Immutable grid descriptor (cell counts, cell size, PBC)
- MeshRegistry: Validates and applies mesh configuration
- BufferLifecycleManager: Allocates and resizes mesh-shaped buffers
- configure_1d, configure_3d: Kernel launch geometry
- Uploader, Downloader: Chunked host <-> device transfer pipelines
"""

from fieldmesh.core.device import get_gpu_info, has_gpu_support, select_device
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
from fieldmesh.core.lifecycle import BufferLifecycleManager
from fieldmesh.core.mesh import Mesh
from fieldmesh.core.registry import MeshRegistry, PendingConfig, ResizeReport
from fieldmesh.session import SimulationSession
from fieldmesh.transfer import (
    Downloader,
    TransferChannel,
    TransferConfig,
    TransferWorkerPool,
    Uploader,
    make_channel,
)

# Submodules for more specific imports
from . import core, transfer

__version__ = "0.1.0"

__all__ = [
    # Session and mesh
    "SimulationSession",
    "Mesh",
    "MeshRegistry",
    "PendingConfig",
    "ResizeReport",
    "BufferLifecycleManager",
    # Launch geometry
    "Dim3",
    "LaunchConfig",
    "LaunchLimits",
    "DEFAULT_LIMITS",
    "configure_1d",
    "configure_3d",
    "div_up",
    # Transfer
    "TransferChannel",
    "TransferConfig",
    "TransferWorkerPool",
    "Uploader",
    "Downloader",
    "make_channel",
    # Device
    "has_gpu_support",
    "get_gpu_info",
    "select_device",
    # Errors
    "FieldMeshError",
    "InvalidArgumentError",
    "PreconditionError",
    "ResourceExhaustionError",
    "ChannelClosedError",
    "MeshAdvisoryWarning",
    "DroppedTermsWarning",
    # Submodules
    "core",
    "transfer",
]
