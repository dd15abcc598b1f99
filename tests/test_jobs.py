"""
Tests for the build store and its state machine.
"""
from datetime import datetime, timedelta, timezone

import pytest

from appbuilder.core.errors import BuildNotFoundError, InvalidTransitionError
from appbuilder.core.jobs import INTERRUPTED_ERROR, BuildStore
from appbuilder.core.metrics import metrics
from appbuilder.db.models import Build as BuildModel
from appbuilder.schemas.build import BuildState


def _create(store, allocator, **overrides):
    build_id, workspace = allocator.allocate()
    params = {
        "build_id": build_id,
        "source_url": "https://example.com",
        "app_name": "Demo",
        "app_config": {"name": "Demo"},
        "workspace_path": workspace,
        "log_path": allocator.log_path_for(build_id),
    }
    params.update(overrides)
    return store.create(**params)


class TestCreate:
    """Tests for build creation and lookup."""

    def test_create_starts_in_created(self, store, allocator):
        job = _create(store, allocator)
        assert job.state == BuildState.CREATED
        assert job.exit_code is None
        assert job.error is None
        assert job.container_id is None
        assert [event.state for event in job.events] == [BuildState.CREATED]

    def test_app_config_round_trips(self, store, allocator):
        config = {"name": "Demo", "bundleId": "com.example.demo", "customSettings": {"dark": True}}
        job = _create(store, allocator, app_config=config)
        assert store.get(job.id).app_config == config

    def test_create_increments_metric(self, store, allocator):
        before = metrics.get("builds_created_total")
        _create(store, allocator)
        assert metrics.get("builds_created_total") == before + 1

    def test_get_unknown_returns_none(self, store):
        assert store.get("build-1-1-deadbeef") is None

    def test_require_unknown_raises(self, store):
        with pytest.raises(BuildNotFoundError):
            store.require("build-1-1-deadbeef")


class TestTransitions:
    """Tests for the lifecycle state machine."""

    def test_happy_path(self, store, allocator):
        job = _create(store, allocator)
        store.transition(job.id, BuildState.ENVIRONMENT_STARTING)
        running = store.transition(job.id, BuildState.RUNNING)
        assert running.started_at is not None

        done = store.transition(job.id, BuildState.SUCCEEDED, exit_code=0)
        assert done.state == BuildState.SUCCEEDED
        assert done.exit_code == 0
        assert done.error is None
        assert done.completed_at is not None
        assert done.duration_ms is not None and done.duration_ms >= 0
        assert [event.state for event in done.events] == [
            BuildState.CREATED,
            BuildState.ENVIRONMENT_STARTING,
            BuildState.RUNNING,
            BuildState.SUCCEEDED,
        ]
        assert [event.sequence for event in done.events] == [1, 2, 3, 4]

    @pytest.mark.parametrize("start", [BuildState.CREATED, BuildState.ENVIRONMENT_STARTING])
    def test_fail_before_running(self, store, allocator, start):
        job = _create(store, allocator)
        if start == BuildState.ENVIRONMENT_STARTING:
            store.transition(job.id, start)

        failed = store.fail(job.id, "Backend unavailable: connection refused")
        assert failed.state == BuildState.FAILED
        assert failed.error == "Backend unavailable: connection refused"
        assert failed.events[-1].detail == failed.error

    def test_cannot_skip_to_running(self, store, allocator):
        job = _create(store, allocator)
        with pytest.raises(InvalidTransitionError):
            store.transition(job.id, BuildState.RUNNING)

    def test_cannot_succeed_before_running(self, store, allocator):
        job = _create(store, allocator)
        store.transition(job.id, BuildState.ENVIRONMENT_STARTING)
        with pytest.raises(InvalidTransitionError):
            store.transition(job.id, BuildState.SUCCEEDED, exit_code=0)

    def test_terminal_states_are_final(self, store, allocator):
        job = _create(store, allocator)
        store.fail(job.id, "Provisioning failed: no image")

        with pytest.raises(InvalidTransitionError):
            store.transition(job.id, BuildState.ENVIRONMENT_STARTING)
        with pytest.raises(InvalidTransitionError):
            store.fail(job.id, "again")
        assert store.get(job.id).error == "Provisioning failed: no image"

    def test_failed_requires_error(self, store, allocator):
        job = _create(store, allocator)
        with pytest.raises(InvalidTransitionError):
            store.transition(job.id, BuildState.FAILED)
        assert store.get(job.id).state == BuildState.CREATED

    def test_transition_unknown_build(self, store):
        with pytest.raises(BuildNotFoundError):
            store.transition("build-1-1-deadbeef", BuildState.ENVIRONMENT_STARTING)

    def test_fail_keeps_exit_code(self, store, allocator):
        job = _create(store, allocator)
        store.transition(job.id, BuildState.ENVIRONMENT_STARTING)
        store.transition(job.id, BuildState.RUNNING)
        failed = store.fail(job.id, "Build process exited with code 2", exit_code=2)
        assert failed.exit_code == 2
        assert "2" in failed.error

    def test_fail_if_open_leaves_terminal_alone(self, store, allocator):
        job = _create(store, allocator)
        store.transition(job.id, BuildState.ENVIRONMENT_STARTING)
        store.transition(job.id, BuildState.RUNNING)
        store.transition(job.id, BuildState.SUCCEEDED, exit_code=0)

        result = store.fail_if_open(job.id, "late error")
        assert result.state == BuildState.SUCCEEDED
        assert result.error is None


class TestContainerReference:
    """Tests for the container back-reference."""

    def test_attach_and_clear(self, store, allocator):
        job = _create(store, allocator)
        store.attach_container(job.id, "abc123")
        assert store.get(job.id).container_id == "abc123"

        store.attach_container(job.id, None)
        assert store.get(job.id).container_id is None


class TestListing:
    """Tests for listing and live ids."""

    def test_list_most_recent_first(self, store, allocator):
        first = _create(store, allocator)
        second = _create(store, allocator)

        items, total = store.list_builds()
        assert total == 2
        assert [item.id for item in items] == [second.id, first.id]

    def test_list_filter_by_state(self, store, allocator):
        failed = _create(store, allocator)
        _create(store, allocator)
        store.fail(failed.id, "boom")

        items, total = store.list_builds(state=BuildState.FAILED)
        assert total == 1
        assert items[0].id == failed.id

    def test_list_pagination(self, store, allocator):
        for _ in range(5):
            _create(store, allocator)
        items, total = store.list_builds(limit=2, offset=4)
        assert total == 5
        assert len(items) == 1

    def test_live_build_ids(self, store, allocator):
        live = _create(store, allocator)
        done = _create(store, allocator)
        store.fail(done.id, "boom")
        assert store.live_build_ids() == {live.id}


class TestStartupCleanup:
    """Tests for restart recovery."""

    def test_interrupted_builds_failed(self, store, allocator):
        job = _create(store, allocator)
        store.transition(job.id, BuildState.ENVIRONMENT_STARTING)
        store.transition(job.id, BuildState.RUNNING)

        interrupted, _ = store.run_startup_cleanup()
        assert interrupted == 1
        recovered = store.get(job.id)
        assert recovered.state == BuildState.FAILED
        assert recovered.error == INTERRUPTED_ERROR

    def test_old_terminal_records_deleted(self, store, allocator, service_config):
        old = _create(store, allocator)
        store.fail(old.id, "boom")
        recent = _create(store, allocator)
        store.fail(recent.id, "boom")

        session_factory = store._session_factory
        db = session_factory()
        try:
            model = db.query(BuildModel).filter(BuildModel.id == old.id).first()
            model.created_at = (datetime.now(timezone.utc) - timedelta(hours=200)).isoformat()
            db.commit()
        finally:
            db.close()

        _, deleted = store.run_startup_cleanup(retention_hours=168)
        assert deleted == 1
        assert store.get(old.id) is None
        assert store.get(recent.id) is not None
        # Workspaces outlive their records
        assert old.workspace_path.is_dir()

    def test_cleanup_is_idempotent(self, store, allocator):
        _create(store, allocator)
        assert store.run_startup_cleanup() == (1, 0)
        assert store.run_startup_cleanup() == (0, 0)
