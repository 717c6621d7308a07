import gc

import pytest

from gcdispose.runtime.disposal_queue import get_default_queue
from gcdispose.runtime.drainer import get_default_drainer
from gcdispose.runtime.reference import InvalidOwnerError, ReferenceStrength, TrackingReference
from gcdispose.runtime.resources import ResourceScope, TrackType, maybe_scope, require_scope, track


class Owner:
    pass


@pytest.fixture
def fast_default_drainer(monkeypatch):
    monkeypatch.setenv("GCDISPOSE_DRAIN_POLL_INTERVAL", "0.01")


class TestTrack:
    """Tests for the track() entry point."""

    def test_gc_tracking_uses_default_drainer(self, fast_default_drainer, wait_for):
        log = []
        owner = Owner()
        ref = track(owner, lambda: log.append("closed"), track_type=TrackType.GC)

        assert get_default_drainer().is_running
        assert get_default_queue().pending_count == 1

        del owner
        gc.collect()

        assert wait_for(lambda: log == ["closed"])
        assert ref.disposed

    def test_auto_without_scope_is_gc_tracked(self, fast_default_drainer, wait_for):
        log = []
        owner = Owner()
        track(owner, lambda: log.append("closed"))

        del owner
        gc.collect()

        assert wait_for(lambda: log == ["closed"])

    def test_track_with_custom_queue(self, disposal_queue):
        owner = Owner()
        ref = track(owner, lambda: None, track_type="gc", queue=disposal_queue)

        assert disposal_queue.pending_count == 1
        ref.dispose()
        assert disposal_queue.pending_count == 0

    def test_track_soft(self, disposal_queue):
        from gcdispose.runtime.soft_retention import get_soft_retention_pool

        owner = Owner()
        ref = track(owner, lambda: None, strength=ReferenceStrength.SOFT, queue=disposal_queue)

        assert ref.strength is ReferenceStrength.SOFT
        assert ref in get_soft_retention_pool()

    def test_track_invalid_owner(self, disposal_queue):
        with pytest.raises(InvalidOwnerError):
            track(None, lambda: None, queue=disposal_queue)

    def test_stack_tracking_requires_scope(self):
        owner = Owner()
        with pytest.raises(RuntimeError, match="No ResourceScope is currently bound"):
            track(owner, lambda: None, track_type=TrackType.STACK)

    def test_stack_tracking_rejects_queue(self, disposal_queue):
        owner = Owner()
        with ResourceScope() as scope:
            with pytest.raises(ValueError, match="takes no queue"):
                track(owner, lambda: None, track_type=TrackType.STACK, queue=disposal_queue)

            assert len(scope) == 0
        assert disposal_queue.pending_count == 0

    def test_default_drainer_restarted_by_track(self, fast_default_drainer):
        drainer = get_default_drainer()
        drainer.stop(timeout=2.0)
        assert not drainer.is_running

        owner = Owner()
        track(owner, lambda: None, track_type=TrackType.GC)

        assert drainer.is_running


class TestResourceScope:
    """Tests for ResourceScope."""

    def test_scope_binding(self):
        assert maybe_scope() is None

        with ResourceScope() as scope:
            assert maybe_scope() is scope
            assert require_scope() is scope

        assert maybe_scope() is None

    def test_nested_scopes_restore_outer(self):
        with ResourceScope() as outer:
            with ResourceScope() as inner:
                assert require_scope() is inner
            assert require_scope() is outer

    def test_stack_resources_disposed_on_exit_in_reverse_order(self):
        order = []
        owners = [Owner() for _ in range(3)]

        with ResourceScope() as scope:
            for index, owner in enumerate(owners):
                track(owner, lambda index=index: order.append(index), track_type=TrackType.STACK)
            assert len(scope) == 3
            assert order == []

        assert order == [2, 1, 0]
        assert scope.closed

    def test_stack_reference_not_gc_tracked(self):
        calls = []
        with ResourceScope():
            owner = Owner()
            ref = track(owner, lambda: calls.append(1), track_type=TrackType.STACK)
            del owner
            gc.collect()

            assert ref.peek() is None
            assert calls == []

        assert calls == [1]

    def test_auto_tracking_inside_scope_disposes_once(self, disposal_queue):
        """A resource tracked both ways is disposed by whichever path runs first."""
        calls = []
        owner = Owner()

        with ResourceScope():
            ref = track(owner, lambda: calls.append(1), queue=disposal_queue)
            assert disposal_queue.pending_count == 1

        assert calls == [1]
        assert disposal_queue.pending_count == 0

        del owner
        gc.collect()
        assert disposal_queue.qsize() == 0
        assert ref.dispose() is False

    def test_close_attempts_every_reference(self):
        """A failing disposer is re-raised only after the rest were disposed."""
        calls = []

        def broken():
            calls.append("broken")
            raise OSError("close failed")

        owners = [Owner(), Owner()]
        with pytest.raises(OSError, match="close failed"):
            with ResourceScope():
                track(owners[0], lambda: calls.append("first"), track_type=TrackType.STACK)
                track(owners[1], broken, track_type=TrackType.STACK)

        assert calls == ["broken", "first"]

    def test_close_counts_disposers_run(self):
        """close() reports how many disposers it actually ran."""
        scope = ResourceScope()
        owners = [Owner(), Owner(), Owner()]
        refs = [scope.add(TrackingReference(owner, lambda: None)) for owner in owners]
        refs[0].dispose()

        assert scope.close() == 2
        assert all(ref.disposed for ref in refs)

    def test_add_after_close_rejected(self):
        scope = ResourceScope()
        scope.close()
        owner = Owner()

        with pytest.raises(RuntimeError, match="ResourceScope is closed"):
            scope.add(TrackingReference(owner, lambda: None))

    def test_scope_cannot_be_entered_twice(self):
        scope = ResourceScope()
        with scope:
            with pytest.raises(RuntimeError, match="already entered"):
                scope.__enter__()
