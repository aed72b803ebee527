"""
Integration tests for SimulationSession.

Tests verify:
- Device selection and GPU info
- Session entry points delegate to the registry and buffer lifecycle
- Transfer pipelines are stopped before a resize and restarted on the new buffers
- Close releases every worker and buffer
"""

import time

import pytest

torch = pytest.importorskip("torch")

from fieldmesh import SimulationSession  # noqa: E402
from fieldmesh.core.device import (  # noqa: E402
    DeviceStream,
    get_gpu_info,
    has_gpu_support,
    select_device,
)
from fieldmesh.core.errors import PreconditionError  # noqa: E402

JOIN_TIMEOUT = 5.0


def wait_for(predicate, timeout=JOIN_TIMEOUT):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.005)


# =============================================================================
# Device Tests
# =============================================================================


class TestDevice:
    """Tests for device selection."""

    def test_gpu_info_consistency(self):
        info = get_gpu_info()
        assert set(info) == {"available", "backend", "device_count", "pytorch_version"}
        assert info["available"] == has_gpu_support()
        assert info["pytorch_version"] == torch.__version__

    def test_select_cpu(self):
        assert select_device("cpu") == "cpu"

    def test_auto_prefers_accelerator(self):
        expected = "cuda" if torch.cuda.is_available() else None
        device = select_device("auto")
        if expected:
            assert device == expected
        else:
            assert device in ("mps", "cpu")

    def test_unknown_device(self):
        with pytest.raises(RuntimeError, match="Unknown device"):
            select_device("tpu")

    @pytest.mark.skipif(torch.cuda.is_available(), reason="CUDA is available")
    def test_unavailable_cuda(self):
        with pytest.raises(RuntimeError, match="CUDA backend not available"):
            SimulationSession(device="cuda")

    def test_cpu_stream_copies_synchronously(self):
        stream = DeviceStream("cpu")
        dst = torch.zeros(4)
        stream.copy_async(dst, torch.ones(4))
        stream.synchronize()
        assert torch.all(dst == 1.0)
        assert stream.synchronizations == 1


# =============================================================================
# Configuration Tests
# =============================================================================


class TestSessionConfiguration:
    """Tests for session mesh entry points."""

    def test_unconfigured(self, cpu_session):
        with pytest.raises(PreconditionError, match="mesh not yet configured"):
            cpu_session.current_mesh()

    def test_set_mesh(self, cpu_session):
        cpu_session.set_mesh(64, 64, 1, 4e-9, 4e-9, 2e-9)
        assert cpu_session.current_mesh() == {
            "size": (64, 64, 1),
            "cell_size": (4e-9, 4e-9, 2e-9),
            "pbc": (0, 0, 0),
        }
        assert cpu_session.buffers.m.shape == (3, 64, 64, 1)

    def test_partial_setters(self, cpu_session):
        assert cpu_session.set_cell_size(4, 4, 2, units="nm") is None
        report = cpu_session.set_grid_size(16, 8, 1)
        assert report.first_set
        cpu_session.set_pbc(0, 2, 0)
        assert cpu_session.mesh.pbc == (0, 2, 0)

    def test_set_geom(self, cpu_session):
        cpu_session.set_mesh(8, 8, 1, 1e-9, 1e-9, 1e-9)
        cpu_session.set_geom(lambda x, y, z: y > 0)
        assert cpu_session.buffers.geometry.filled_cells == 32

        cpu_session.set_grid_size(8, 16, 1)
        assert cpu_session.buffers.geometry.filled_cells == 64

    def test_context_manager_releases(self):
        with SimulationSession(device="cpu") as session:
            session.set_mesh(4, 4, 4, 1e-9, 1e-9, 1e-9)
            m = session.buffers.m
        assert m.is_nil


# =============================================================================
# Transfer Pipeline Tests
# =============================================================================


class TestSessionTransfers:
    """Tests for pipelines bound to session buffers."""

    def test_attach_before_mesh_starts_on_configure(self, cpu_session):
        cpu_session.attach_downloader("m.download")
        assert cpu_session.workers.running == []

        cpu_session.set_mesh(4, 4, 1, 1e-9, 1e-9, 1e-9)
        assert cpu_session.workers.running == ["m.download"]
        dev = cpu_session.pipeline("m.download").source
        assert dev.data.data_ptr() == cpu_session.buffers.m.data.data_ptr()

    def test_download_moves_published_chunks(self, cpu_session):
        cpu_session.set_mesh(4, 4, 1, 1e-9, 1e-9, 1e-9)
        cpu_session.attach_downloader("m.download")
        pipeline = cpu_session.pipeline("m.download")
        chunk = pipeline.config.chunk_size

        dev = pipeline.source
        dev.write_next(chunk).fill_(2.0)
        dev.write_done()

        host = pipeline.destination
        wait_for(lambda: host.available == chunk)
        assert torch.all(host.data[:chunk] == 2.0)
        assert torch.all(cpu_session.buffers.m.data.view(-1)[:chunk] == 2.0)

    def test_resize_restarts_pipeline_on_new_buffers(self, cpu_session):
        cpu_session.set_mesh(4, 4, 4, 1e-9, 1e-9, 1e-9)
        cpu_session.attach_uploader("m.upload")
        before = cpu_session.pipeline("m.upload")

        cpu_session.set_grid_size(8, 4, 4)

        after = cpu_session.pipeline("m.upload")
        assert after is not before
        assert before.stopping
        assert after.destination.capacity == 3 * 8 * 4 * 4
        assert after.destination.data.data_ptr() == cpu_session.buffers.m.data.data_ptr()
        assert cpu_session.workers.running == ["m.upload"]

    def test_repetition_change_keeps_pipeline(self, cpu_session):
        cpu_session.set_mesh(4, 4, 4, 1e-9, 1e-9, 1e-9)
        cpu_session.attach_uploader("m.upload")
        before = cpu_session.pipeline("m.upload")

        cpu_session.set_pbc(2, 0, 0)

        assert cpu_session.pipeline("m.upload") is before
        assert not before.stopping
        assert cpu_session.workers.running == ["m.upload"]

    def test_failed_restart_does_not_abort_resize(self, cpu_session):
        cpu_session.set_mesh(4, 4, 4, 1e-9, 1e-9, 1e-9)
        cpu_session.buffers.thermal.noise_buffer(cpu_session.mesh)
        cpu_session.attach_uploader("m.upload")
        cpu_session.attach_downloader("noise.download", field="B_therm.noise")

        # The resize frees the noise buffer, so its pipeline cannot be rebuilt
        report = cpu_session.set_grid_size(8, 4, 4)

        assert report.resized
        assert cpu_session.mesh.size == (8, 4, 4)
        assert cpu_session.buffers.m.shape == (3, 8, 4, 4)
        assert cpu_session.workers.running == ["m.upload"]
        assert isinstance(cpu_session.workers.restart_error("noise.download"), PreconditionError)
        assert cpu_session.workers.restart_error("m.upload") is None

    def test_failed_attach_is_not_registered(self, cpu_session):
        cpu_session.set_mesh(4, 4, 4, 1e-9, 1e-9, 1e-9)
        with pytest.raises(PreconditionError, match="not allocated"):
            cpu_session.attach_downloader("noise.download", field="B_therm.noise")

        report = cpu_session.set_grid_size(8, 4, 4)
        assert report.resized
        assert cpu_session.mesh.size == (8, 4, 4)
        assert cpu_session.workers.running == []
        assert cpu_session.workers.restart_error("noise.download") is None

    def test_odd_mesh_shrinks_chunk(self, cpu_session):
        cpu_session.set_mesh(3, 1, 1, 1e-9, 1e-9, 1e-9)
        cpu_session.attach_uploader("m.upload")
        assert cpu_session.pipeline("m.upload").config.chunk_size == 1

    def test_attach_unknown_field(self, cpu_session):
        with pytest.raises(KeyError, match="unknown buffer"):
            cpu_session.attach_uploader("x.upload", field="x")

    def test_detach_and_close(self, cpu_session):
        cpu_session.set_mesh(4, 4, 1, 1e-9, 1e-9, 1e-9)
        cpu_session.attach_uploader("m.upload")
        cpu_session.attach_downloader("m.download")
        cpu_session.detach("m.upload")
        assert cpu_session.workers.running == ["m.download"]

        cpu_session.close()
        assert cpu_session.workers.running == []
        assert cpu_session.buffers.m.is_nil
