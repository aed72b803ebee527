"""Pytest configuration for the fieldmesh test suite.

Shared fixtures:

- lifecycle: a recording stand-in for BufferLifecycleManager, so registry
  tests run without PyTorch
- stream_log / recording_stream_factory: a copy stream that records every
  copy and synchronize call, for transfer ordering tests
- cpu_session: a SimulationSession on the CPU device, closed after the test
"""

import os

import pytest

# =============================================================================
# OpenMP Library Conflict Resolution
# =============================================================================
# PyTorch and numpy may each load their own OpenMP runtime. When both are
# imported in the same Python process the second initialization aborts with:
#
#   OMP: Error #15: Initializing libomp.dylib, but found libomp.dylib already
#   initialized.
#
# This MUST be set before importing torch.
# =============================================================================
os.environ.setdefault("KMP_DUPLICATE_LIB_OK", "TRUE")


def pytest_configure(config):
    """Called after command line options have been parsed and all plugins
    and initial conftest files been loaded.
    """
    os.environ["KMP_DUPLICATE_LIB_OK"] = "TRUE"


# =============================================================================
# Recording collaborators
# =============================================================================


class RecordingLifecycle:
    """Lifecycle stand-in that records every call it receives."""

    def __init__(self, dropped=None):
        self.calls = []
        self.dropped = list(dropped or [])

    def allocate_for_new_mesh(self, mesh):
        self.calls.append(("allocate", mesh))

    def resize_transaction(self, old, new, size_changed, cell_size_changed):
        self.calls.append(("resize", old, new, size_changed, cell_size_changed))
        return list(self.dropped)

    @property
    def kinds(self):
        return [c[0] for c in self.calls]


class RecordingStream:
    """Copy stream that performs copies synchronously and logs them."""

    def __init__(self, device, log):
        self.device = device
        self.log = log
        self.synchronizations = 0

    def copy_async(self, dst, src):
        dst.copy_(src)
        self.log.append(("copy", src.clone()))

    def synchronize(self):
        self.synchronizations += 1
        self.log.append(("sync",))


@pytest.fixture
def lifecycle():
    return RecordingLifecycle()


@pytest.fixture
def stream_log():
    return []


@pytest.fixture
def recording_stream_factory(stream_log):
    streams = []

    def factory(device):
        stream = RecordingStream(device, stream_log)
        streams.append(stream)
        return stream

    factory.streams = streams
    return factory


@pytest.fixture
def cpu_session():
    pytest.importorskip("torch")
    from fieldmesh.session import SimulationSession

    session = SimulationSession(device="cpu")
    yield session
    session.close()
