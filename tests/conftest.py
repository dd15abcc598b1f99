"""
Pytest configuration and fixtures.
"""
import dataclasses
import os
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Iterator, Optional

# Point every writable location at a scratch directory before importing app
_TEST_ROOT = tempfile.mkdtemp(prefix="appbuilder-tests-")
os.environ["BUILDS_DIR"] = os.path.join(_TEST_ROOT, "builds")
os.environ["BUILD_LOGS_DIR"] = os.path.join(_TEST_ROOT, "logs")
os.environ["APPBUILDER_DB_PATH"] = os.path.join(_TEST_ROOT, "builds.db")
os.environ["REAPER_INTERVAL_S"] = "0"

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from appbuilder.core.artifacts import ArtifactLocator
from appbuilder.core.backend import ContainerSpec, ExecutionBackend, ManagedContainer
from appbuilder.core.config import get_config
from appbuilder.core.errors import BackendError, BackendUnavailableError, ProvisioningError
from appbuilder.core.jobs import BuildStore
from appbuilder.core.orchestrator import BuildOrchestrator
from appbuilder.core.workspace import WorkspaceAllocator
from appbuilder.db.database import make_session_factory


class FakeBackend(ExecutionBackend):
    """
    Scripted in-memory backend.

    Every call is recorded in `calls` as (method, argument). Attributes can be
    changed between builds to script the next one.
    """

    def __init__(self):
        self.calls: list[tuple[str, Optional[str]]] = []
        self.specs: list[ContainerSpec] = []
        self.exit_code = 0
        self.output: list[bytes] = [b"building\n"]
        # Files the build program "writes", relative to the workspace
        self.files: dict[str, bytes] = {}
        self.run_seconds = 0.0
        # Pause between output chunks, and how long the stream stays open after exit
        self.chunk_seconds = 0.0
        self.linger_seconds = 0.0
        self.ping_error = False
        self.create_error = False
        self.partial_create = False
        self.start_error = False
        self.stop_error = False
        self.remove_error = False
        self.stream_error = False
        self.orphans: list[ManagedContainer] = []
        self._containers: dict[str, dict] = {}
        self._lock = threading.Lock()

    def _record(self, method: str, arg: Optional[str] = None) -> None:
        with self._lock:
            self.calls.append((method, arg))

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _register(self, spec: ContainerSpec) -> str:
        with self._lock:
            container_id = f"fake{len(self._containers) + 1:08d}"
            self._containers[container_id] = {
                "spec": spec,
                "killed": threading.Event(),
                "exited": threading.Event(),
            }
        return container_id

    @property
    def live_containers(self) -> list[str]:
        return list(self._containers)

    def ping(self) -> None:
        self._record("ping")
        if self.ping_error:
            raise BackendUnavailableError("connection refused")

    def create(self, spec: ContainerSpec) -> str:
        self._record("create", spec.name)
        self.specs.append(spec)
        if self.create_error:
            if self.partial_create:
                self._register(spec)
            raise ProvisioningError("Build image not found: react-native-builder:latest")
        return self._register(spec)

    def start(self, container_id: str) -> None:
        self._record("start", container_id)
        if self.start_error:
            raise ProvisioningError("Container start failed: port is already allocated")
        workspace = Path(self._containers[container_id]["spec"].workspace)
        for relative, data in self.files.items():
            target = workspace / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

    def stream_logs(self, container_id: str) -> Iterator[bytes]:
        self._record("stream_logs", container_id)
        container = self._containers[container_id]
        for chunk in self.output:
            yield chunk
            if self.chunk_seconds:
                time.sleep(self.chunk_seconds)
        if self.stream_error:
            raise BackendError("Log stream failed: ChunkedEncodingError")
        container["exited"].wait(timeout=10)
        if self.linger_seconds:
            time.sleep(self.linger_seconds)

    def wait(self, container_id: str) -> int:
        self._record("wait", container_id)
        container = self._containers[container_id]
        killed = container["killed"].wait(timeout=self.run_seconds) if self.run_seconds else False
        container["exited"].set()
        return 137 if killed else self.exit_code

    def kill(self, container_id: str) -> None:
        self._record("kill", container_id)
        self._containers[container_id]["killed"].set()

    def stop(self, container_id: str) -> None:
        self._record("stop", container_id)
        container = self._containers.get(container_id)
        if container is not None:
            container["killed"].set()
        if self.stop_error:
            raise BackendError("Container stop failed: APIError")

    def remove(self, container_id: str) -> None:
        self._record("remove", container_id)
        if self.remove_error:
            raise BackendError("Container remove failed: APIError")
        with self._lock:
            self._containers.pop(container_id, None)

    def find(self, name: str) -> Optional[str]:
        self._record("find", name)
        for container_id, container in self._containers.items():
            if container["spec"].name == name:
                return container_id
        return None

    def list_managed(self) -> list[ManagedContainer]:
        self._record("list_managed")
        managed = [
            ManagedContainer(container_id=container_id, build_id=container["spec"].build_id, status="running")
            for container_id, container in self._containers.items()
        ]
        return managed + list(self.orphans)


@pytest.fixture
def backend():
    """Fresh scripted backend."""
    return FakeBackend()


@pytest.fixture
def service_config(tmp_path):
    """Service config rooted in a per-test directory."""
    return dataclasses.replace(
        get_config(),
        builds_dir=tmp_path / "builds",
        logs_dir=tmp_path / "logs",
        db_path=tmp_path / "builds.db",
        build_timeout_s=30,
        max_concurrent_builds=2,
        reaper_interval_s=0,
    )


@pytest.fixture
def store(service_config):
    """Build store on a per-test SQLite database."""
    return BuildStore(make_session_factory(service_config.database_url))


@pytest.fixture
def allocator(service_config):
    return WorkspaceAllocator(service_config.builds_dir, service_config.logs_dir)


@pytest.fixture
def orchestrator(backend, store, allocator, service_config):
    """Orchestrator driving the fake backend."""
    orchestrator = BuildOrchestrator(backend, store, allocator, service_config)
    yield orchestrator
    orchestrator.shutdown()


@pytest.fixture
def client(orchestrator, service_config):
    """Test client with the orchestrator swapped for one on the fake backend."""
    original_orchestrator = app.state.orchestrator
    original_artifacts = app.state.artifacts
    app.state.orchestrator = orchestrator
    app.state.artifacts = ArtifactLocator(service_config.builds_dir)
    try:
        yield TestClient(app)
    finally:
        app.state.orchestrator = original_orchestrator
        app.state.artifacts = original_artifacts


@pytest.fixture
def convert_body():
    """A valid conversion request."""
    return {"url": "https://example.com", "appName": "Demo", "config": {"name": "Demo"}}
