"""
SQLite-backed build store: the single source of truth for build state.
Logs only build_id, state, exit code and duration - never app config contents.

State machine:
    created -> environment_starting -> running -> succeeded | failed
    created | environment_starting -> failed   (provisioning errors)
Succeeded and failed are terminal.
"""
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

from appbuilder.core.errors import BuildNotFoundError, InvalidTransitionError
from appbuilder.core.metrics import metrics
from appbuilder.db.models import Build as BuildModel, BuildEvent as BuildEventModel
from appbuilder.schemas.build import BuildState

logger = logging.getLogger(__name__)

# Record retention default; workspaces are not affected
BUILD_RETENTION_HOURS = 168

INTERRUPTED_ERROR = "Interrupted by service restart"

ALLOWED_TRANSITIONS: dict[BuildState, frozenset[BuildState]] = {
    BuildState.CREATED: frozenset({BuildState.ENVIRONMENT_STARTING, BuildState.FAILED}),
    BuildState.ENVIRONMENT_STARTING: frozenset({BuildState.RUNNING, BuildState.FAILED}),
    BuildState.RUNNING: frozenset({BuildState.SUCCEEDED, BuildState.FAILED}),
    BuildState.SUCCEEDED: frozenset(),
    BuildState.FAILED: frozenset(),
}


@dataclass
class StateEvent:
    """One recorded transition."""
    sequence: int
    state: BuildState
    detail: Optional[str]
    at: datetime


@dataclass
class BuildJob:
    """Represents a build job (in-memory representation)."""
    id: str
    source_url: str
    app_name: str
    app_config: dict[str, Any]
    workspace_path: Path
    log_path: Path
    state: BuildState = BuildState.CREATED
    exit_code: Optional[int] = None
    error: Optional[str] = None
    # Back-reference for control operations only; cleared after teardown
    container_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    events: list[StateEvent] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _model_to_job(model: BuildModel) -> BuildJob:
    """Convert SQLAlchemy model to BuildJob dataclass."""
    return BuildJob(
        id=model.id,
        source_url=model.source_url,
        app_name=model.app_name,
        app_config=json.loads(model.app_config) if model.app_config else {},
        workspace_path=Path(model.workspace_path),
        log_path=Path(model.log_path),
        state=BuildState(model.state),
        exit_code=model.exit_code,
        error=model.error,
        container_id=model.container_id,
        created_at=datetime.fromisoformat(model.created_at),
        started_at=_parse_ts(model.started_at),
        completed_at=_parse_ts(model.completed_at),
        duration_ms=model.duration_ms,
        events=[
            StateEvent(
                sequence=event.sequence,
                state=BuildState(event.state),
                detail=event.detail,
                at=datetime.fromisoformat(event.created_at),
            )
            for event in model.events
        ],
    )


class BuildStore:
    """SQLite-backed build store."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from appbuilder.db.database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        # Serializes check-then-update on state
        self._lock = threading.RLock()

    def _add_event(self, model: BuildModel, state: BuildState, detail: Optional[str], now: datetime) -> None:
        sequence = len(model.events) + 1
        model.events.append(BuildEventModel(
            build_id=model.id,
            sequence=sequence,
            state=state.value,
            detail=detail,
            created_at=now.isoformat(),
        ))

    # =========================================================================
    # Creation and lookup
    # =========================================================================

    def create(
        self,
        build_id: str,
        source_url: str,
        app_name: str,
        app_config: dict[str, Any],
        workspace_path: Path,
        log_path: Path,
    ) -> BuildJob:
        """Create a new build record in the created state."""
        now = datetime.now(timezone.utc)

        db = self._session_factory()
        try:
            model = BuildModel(
                id=build_id,
                state=BuildState.CREATED.value,
                source_url=source_url,
                app_name=app_name,
                app_config=json.dumps(app_config),
                workspace_path=str(workspace_path),
                log_path=str(log_path),
                created_at=now.isoformat(),
            )
            db.add(model)
            self._add_event(model, BuildState.CREATED, None, now)
            db.commit()
            db.refresh(model)

            job = _model_to_job(model)
            logger.info(
                f"build_created build_id={build_id} state={job.state.value}",
                extra={"build_id": build_id, "state": job.state.value},
            )
            metrics.inc("builds_created_total")
            return job
        finally:
            db.close()

    def get(self, build_id: str) -> Optional[BuildJob]:
        """Get a build by ID."""
        db = self._session_factory()
        try:
            model = db.query(BuildModel).filter(BuildModel.id == build_id).first()
            if not model:
                return None
            return _model_to_job(model)
        finally:
            db.close()

    def require(self, build_id: str) -> BuildJob:
        """Get a build by ID or raise BuildNotFoundError."""
        job = self.get(build_id)
        if job is None:
            raise BuildNotFoundError(build_id)
        return job

    def list_builds(
        self,
        limit: int = 20,
        offset: int = 0,
        state: Optional[BuildState] = None,
    ) -> tuple[list[BuildJob], int]:
        """
        List builds with pagination, most recent first.
        Returns (list of BuildJob, total count).
        """
        db = self._session_factory()
        try:
            query = db.query(BuildModel)
            if state is not None:
                query = query.filter(BuildModel.state == state.value)

            total = query.count()
            items = query.order_by(BuildModel.created_at.desc()).offset(offset).limit(limit).all()
            return [_model_to_job(item) for item in items], total
        finally:
            db.close()

    def live_build_ids(self) -> set[str]:
        """Ids of builds not yet in a terminal state."""
        db = self._session_factory()
        try:
            rows = (
                db.query(BuildModel.id)
                .filter(BuildModel.state.notin_([BuildState.SUCCEEDED.value, BuildState.FAILED.value]))
                .all()
            )
            return {row[0] for row in rows}
        finally:
            db.close()

    # =========================================================================
    # State machine
    # =========================================================================

    def transition(
        self,
        build_id: str,
        state: BuildState,
        error: Optional[str] = None,
        exit_code: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> BuildJob:
        """
        Move a build to a new state.

        Raises:
            BuildNotFoundError: If the build does not exist
            InvalidTransitionError: If the move is not allowed from the current
                state, or a failure carries no error message
        """
        if state == BuildState.FAILED and not error:
            raise InvalidTransitionError(f"{build_id}: failed state requires an error")

        with self._lock:
            db = self._session_factory()
            try:
                model = db.query(BuildModel).filter(BuildModel.id == build_id).first()
                if not model:
                    raise BuildNotFoundError(build_id)

                current = BuildState(model.state)
                if state not in ALLOWED_TRANSITIONS[current]:
                    raise InvalidTransitionError(
                        f"{build_id}: cannot move from {current.value} to {state.value}"
                    )

                now = datetime.now(timezone.utc)
                model.state = state.value

                if state == BuildState.RUNNING:
                    model.started_at = now.isoformat()
                elif state.is_terminal:
                    model.completed_at = now.isoformat()
                    started = model.started_at or model.created_at
                    model.duration_ms = int((now - datetime.fromisoformat(started)).total_seconds() * 1000)
                    model.exit_code = exit_code
                    model.error = error if state == BuildState.FAILED else None

                self._add_event(model, state, detail or (error if state == BuildState.FAILED else None), now)
                db.commit()
                db.refresh(model)
                job = _model_to_job(model)
            finally:
                db.close()

        logger.info(
            f"build_state build_id={build_id} state={state.value} "
            f"exit_code={job.exit_code} duration_ms={job.duration_ms}",
            extra={"build_id": build_id, "state": state.value, "exit_code": job.exit_code},
        )

        if state == BuildState.SUCCEEDED:
            metrics.inc("builds_succeeded_total")
        elif state == BuildState.FAILED:
            metrics.inc("builds_failed_total")
        return job

    def fail(self, build_id: str, error: str, exit_code: Optional[int] = None) -> BuildJob:
        """Move a build to failed with a human-readable cause."""
        return self.transition(build_id, BuildState.FAILED, error=error, exit_code=exit_code)

    def fail_if_open(self, build_id: str, error: str) -> BuildJob:
        """Fail a build unless it already reached a terminal state."""
        with self._lock:
            job = self.require(build_id)
            if job.is_terminal:
                return job
            return self.fail(build_id, error)

    def attach_container(self, build_id: str, container_id: Optional[str]) -> None:
        """Record (or clear, with None) the build's container back-reference."""
        db = self._session_factory()
        try:
            model = db.query(BuildModel).filter(BuildModel.id == build_id).first()
            if not model:
                raise BuildNotFoundError(build_id)
            model.container_id = container_id
            db.commit()
        finally:
            db.close()

    # =========================================================================
    # Maintenance
    # =========================================================================

    def fail_interrupted(self) -> int:
        """Fail builds left non-terminal by a previous process. Returns count."""
        failed = 0
        for build_id in self.live_build_ids():
            try:
                self.fail(build_id, INTERRUPTED_ERROR)
                failed += 1
            except InvalidTransitionError:
                continue
        if failed > 0:
            logger.info(f"interrupted_builds_failed count={failed}")
        return failed

    def _cleanup_old_builds(self, db, retention_hours: int) -> int:
        """Delete records older than retention period. Returns count deleted."""
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
            old = (
                db.query(BuildModel)
                .filter(BuildModel.created_at < cutoff.isoformat())
                .filter(BuildModel.state.in_([BuildState.SUCCEEDED.value, BuildState.FAILED.value]))
                .all()
            )
            for model in old:
                db.delete(model)
            db.commit()

            if old:
                logger.info(f"cleanup_builds deleted={len(old)}")
            return len(old)
        except Exception as e:
            # Never crash startup on cleanup failure
            logger.warning(f"cleanup_builds_failed error_type={type(e).__name__}")
            db.rollback()
            return 0

    def run_startup_cleanup(self, retention_hours: int = BUILD_RETENTION_HOURS) -> tuple[int, int]:
        """
        Run cleanup at startup. Safe to call multiple times.
        Returns (interrupted builds failed, old records deleted).
        """
        interrupted = self.fail_interrupted()
        db = self._session_factory()
        try:
            deleted = self._cleanup_old_builds(db, retention_hours)
        finally:
            db.close()
        return interrupted, deleted
