"""
Unit tests for the mesh registry.

The registry is driven through a recording lifecycle, so these tests do not
need PyTorch.

Tests verify:
- First configuration allocates, later changes resize, identical requests do nothing
- Invalid arguments leave the registry untouched
- Partial setters apply once grid size and cell size are both known
- 7-smoothness advisories are warned once per offending axis
- The busy section serializes transactions and rejects reentrant calls
"""

import threading
import time
import warnings

import pytest

from fieldmesh.core.errors import InvalidArgumentError, MeshAdvisoryWarning, PreconditionError
from fieldmesh.core.mesh import Mesh
from fieldmesh.core.registry import MeshRegistry, PendingConfig

# =============================================================================
# apply_full Tests
# =============================================================================


class TestApplyFull:
    """Tests for full mesh configuration."""

    def test_unconfigured_registry(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        assert not registry.is_configured
        with pytest.raises(PreconditionError, match="mesh not yet configured"):
            registry.current()

    def test_first_set_allocates(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        report = registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)

        assert report.first_set
        assert not report.resized
        assert not report.old.is_set
        assert lifecycle.kinds == ["allocate"]
        assert lifecycle.calls[0][1] == Mesh(size=(4, 4, 4), cell_size=(1e-9, 1e-9, 1e-9))
        assert registry.current().size == (4, 4, 4)

    def test_identical_request_does_nothing(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)
        report = registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)

        assert not report.changed
        assert not report.resized
        assert lifecycle.kinds == ["allocate"]

    def test_size_change_resizes(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)
        report = registry.apply_full(8, 4, 4, 1e-9, 1e-9, 1e-9)

        assert report.resized
        assert report.size_changed and not report.cell_size_changed
        kind, old, new, size_changed, cell_size_changed = lifecycle.calls[-1]
        assert kind == "resize"
        assert old.size == (4, 4, 4)
        assert new.size == (8, 4, 4)
        assert (size_changed, cell_size_changed) == (True, False)

    def test_cell_size_change_resizes(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)
        registry.apply_full(4, 4, 4, 2e-9, 1e-9, 1e-9)
        assert lifecycle.calls[-1][3:] == (False, True)

    def test_pbc_only_change_resizes_without_shape_change(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)
        report = registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9, 2, 0, 0)

        assert report.pbc_changed and report.resized
        assert lifecycle.calls[-1][3:] == (False, False)
        assert registry.current().pbc == (2, 0, 0)

    def test_invalid_arguments_do_not_mutate(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)

        with pytest.raises(InvalidArgumentError, match="GridSize"):
            registry.apply_full(0, 4, 4, 1e-9, 1e-9, 1e-9)
        with pytest.raises(InvalidArgumentError, match="CellSize"):
            registry.apply_full(8, 4, 4, -1.0, 1e-9, 1e-9)
        with pytest.raises(InvalidArgumentError, match="PBC"):
            registry.apply_full(8, 4, 4, 1e-9, 1e-9, 1e-9, -1, 0, 0)

        assert registry.current().size == (4, 4, 4)
        assert lifecycle.kinds == ["allocate"]

    def test_invalid_first_request_leaves_unset(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        with pytest.raises(InvalidArgumentError):
            registry.apply_full(4, 4, 4, 0.0, 1e-9, 1e-9)
        assert not registry.is_configured
        assert lifecycle.calls == []

    def test_dropped_terms_reported(self, lifecycle):
        lifecycle.dropped = ["B_ext.stripe"]
        registry = MeshRegistry(lifecycle)
        registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)
        report = registry.apply_full(8, 4, 4, 1e-9, 1e-9, 1e-9)
        assert report.dropped_terms == ("B_ext.stripe",)


# =============================================================================
# Partial Setter Tests
# =============================================================================


class TestPartialSetters:
    """Tests for set_grid_size / set_cell_size / set_pbc."""

    def test_grid_then_cell(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        assert registry.set_grid_size(128, 64, 1) is None
        assert not registry.is_configured
        assert lifecycle.calls == []

        report = registry.set_cell_size(4, 4, 2, units="nm")
        assert report.first_set
        mesh = registry.current()
        assert mesh.size == (128, 64, 1)
        assert mesh.cell_size == pytest.approx((4e-9, 4e-9, 2e-9))

    def test_cell_then_grid(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        assert registry.set_cell_size(1e-9, 1e-9, 1e-9) is None
        report = registry.set_grid_size(16, 16, 1)
        assert report.first_set
        assert lifecycle.kinds == ["allocate"]

    def test_pbc_before_mesh_is_recorded(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        assert registry.set_pbc(0, 3, 0) is None
        registry.set_grid_size(16, 16, 1)
        registry.set_cell_size(1e-9, 1e-9, 1e-9)
        assert registry.current().pbc == (0, 3, 0)

    def test_pbc_after_mesh_applies(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        registry.set_mesh(16, 16, 1, 1e-9, 1e-9, 1e-9)
        report = registry.set_pbc(1, 0, 0)
        assert report.resized
        assert registry.current().pbc == (1, 0, 0)

    def test_partial_setters_validate_eagerly(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        with pytest.raises(InvalidArgumentError, match="PBC"):
            registry.set_pbc(-1, 0, 0)
        with pytest.raises(InvalidArgumentError, match="GridSize"):
            registry.set_grid_size(0, 1, 1)
        with pytest.raises(InvalidArgumentError, match="units"):
            registry.set_cell_size(1, 1, 1, units="inch")
        assert registry.pending == PendingConfig()

    def test_pending_tracks_applied_mesh(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        registry.set_mesh(8, 8, 1, 1e-9, 1e-9, 1e-9, 1, 0, 0)
        assert registry.pending.grid_size == (8, 8, 1)
        assert registry.pending.pbc == (1, 0, 0)

        # A later partial change keeps the other pieces
        registry.set_grid_size(16, 8, 1)
        mesh = registry.current()
        assert mesh.size == (16, 8, 1)
        assert mesh.pbc == (1, 0, 0)

    def test_pending_build_requires_both_pieces(self):
        with pytest.raises(PreconditionError, match="cell size"):
            PendingConfig(grid_size=(1, 1, 1)).build()

    @pytest.mark.parametrize(
        "units, literal", [("m", 3.0), ("mm", 3e-3), ("um", 3e-6), ("nm", 3e-9)]
    )
    def test_unit_setter_matches_meters_literal(self, lifecycle, units, literal):
        registry = MeshRegistry(lifecycle)
        registry.set_grid_size(4, 4, 4)
        registry.set_cell_size(3, 3, 3, units=units)
        before = registry.current()

        report = registry.set_mesh(4, 4, 4, literal, literal, literal)
        assert not report.resized
        assert not report.cell_size_changed
        assert registry.current() == before
        assert lifecycle.kinds == ["allocate"]

    def test_non_numeric_cell_size_rejected(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        with pytest.raises(InvalidArgumentError, match="CellSize"):
            registry.apply_full(4, 4, 4, "a", 1, 1)
        with pytest.raises(InvalidArgumentError, match="CellSize"):
            registry.set_cell_size(None, 1, 1, units="nm")
        assert not registry.is_configured
        assert registry.pending == PendingConfig()
        assert lifecycle.calls == []


# =============================================================================
# Advisory Tests
# =============================================================================


class TestAdvisories:
    """Tests for 7-smoothness warnings."""

    def test_warns_once_for_non_smooth_axis(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        with pytest.warns(MeshAdvisoryWarning) as record:
            registry.apply_full(13, 4, 4, 1e-9, 1e-9, 1e-9)
        advisories = [w for w in record if issubclass(w.category, MeshAdvisoryWarning)]
        assert len(advisories) == 1
        assert "x-axis" in str(advisories[0].message)
        # Advisory only: the mesh is still applied
        assert registry.current().size == (13, 4, 4)

    def test_smooth_mesh_is_silent(self, lifecycle):
        registry = MeshRegistry(lifecycle)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)


# =============================================================================
# Busy Section Tests
# =============================================================================


class TestBusySection:
    """Tests for transaction exclusivity."""

    def test_reentrant_call_rejected(self):
        class ReentrantLifecycle:
            def __init__(self):
                self.registry = None
                self.error = None

            def allocate_for_new_mesh(self, mesh):
                assert self.registry.busy
                try:
                    self.registry.apply_full(8, 8, 8, 1e-9, 1e-9, 1e-9)
                except PreconditionError as e:
                    self.error = e

            def resize_transaction(self, old, new, size_changed, cell_size_changed):
                return []

        lifecycle = ReentrantLifecycle()
        registry = MeshRegistry(lifecycle)
        lifecycle.registry = registry
        registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)

        assert "already in progress" in str(lifecycle.error)
        assert registry.current().size == (4, 4, 4)
        assert not registry.busy

    def test_failed_transaction_releases_busy(self):
        class FailingLifecycle:
            def allocate_for_new_mesh(self, mesh):
                raise MemoryError("out of memory")

            def resize_transaction(self, old, new, size_changed, cell_size_changed):
                return []

        registry = MeshRegistry(FailingLifecycle())
        with pytest.raises(MemoryError):
            registry.apply_full(4, 4, 4, 1e-9, 1e-9, 1e-9)
        assert not registry.busy
        assert not registry.is_configured

    def test_concurrent_calls_are_serialized(self):
        class SlowLifecycle:
            def __init__(self):
                self.inside = 0
                self.overlap = False
                self.count = 0
                self.lock = threading.Lock()

            def _enter(self):
                with self.lock:
                    self.inside += 1
                    self.count += 1
                    if self.inside > 1:
                        self.overlap = True
                time.sleep(0.01)
                with self.lock:
                    self.inside -= 1

            def allocate_for_new_mesh(self, mesh):
                self._enter()

            def resize_transaction(self, old, new, size_changed, cell_size_changed):
                self._enter()
                return []

        lifecycle = SlowLifecycle()
        registry = MeshRegistry(lifecycle)
        threads = [
            threading.Thread(target=registry.apply_full, args=(4 * (i + 1), 4, 1, 1e-9, 1e-9, 1e-9))
            for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not lifecycle.overlap
        assert lifecycle.count == 4
        assert registry.current().size[0] in (4, 8, 12, 16)
