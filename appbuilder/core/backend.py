"""
Execution backend: isolated, disposable containers for build jobs.

ExecutionBackend is the contract the orchestrator drives. Every call is
blocking request/response and addressed by container id; the orchestrator
runs them in worker threads. DockerBackend implements it on the Docker
Engine SDK with one shared client for the whole process.

Containers created here carry labels so the reaper can find them again
after a crash:
- appbuilder.managed=true
- appbuilder.build_id=<build id>
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from requests.exceptions import RequestException

from appbuilder.core.errors import BackendError, BackendUnavailableError, ProvisioningError

logger = logging.getLogger(__name__)

MANAGED_LABEL = "appbuilder.managed"
BUILD_ID_LABEL = "appbuilder.build_id"
CONTAINER_NAME_PREFIX = "appbuilder-"

# Seconds docker waits for SIGTERM before SIGKILL on stop
STOP_TIMEOUT_S = 10


def container_name_for(build_id: str) -> str:
    """Deterministic container name, used to find partially created containers."""
    return f"{CONTAINER_NAME_PREFIX}{build_id}"


@dataclass
class ContainerSpec:
    """Everything needed to provision one build container."""
    build_id: str
    image: str
    command: list[str]
    workspace: Path
    output_mount: str
    environment: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return container_name_for(self.build_id)

    @property
    def labels(self) -> dict[str, str]:
        return {MANAGED_LABEL: "true", BUILD_ID_LABEL: self.build_id}


def build_environment(
    build_id: str,
    source_url: str,
    app_name: str,
    app_config: dict[str, Any],
) -> dict[str, str]:
    """Input parameters read by the build program."""
    return {
        "APP_URL": source_url,
        "APP_NAME": app_name,
        "APP_CONFIG": json.dumps(app_config),
        "BUILD_ID": build_id,
        "DEBIAN_FRONTEND": "noninteractive",
    }


@dataclass
class ManagedContainer:
    """A labeled container seen on the backend."""
    container_id: str
    build_id: Optional[str]
    status: str


class ExecutionBackend(ABC):
    """Contract for the isolated execution environment provider."""

    @abstractmethod
    def ping(self) -> None:
        """Liveness probe. Raises BackendUnavailableError."""

    @abstractmethod
    def create(self, spec: ContainerSpec) -> str:
        """Create (not start) a container. Returns its id. Raises ProvisioningError."""

    @abstractmethod
    def start(self, container_id: str) -> None:
        """Start a created container. Raises ProvisioningError."""

    @abstractmethod
    def stream_logs(self, container_id: str) -> Iterator[bytes]:
        """Follow combined stdout/stderr until the container exits."""

    @abstractmethod
    def wait(self, container_id: str) -> int:
        """Block until the container exits. Returns its exit code."""

    @abstractmethod
    def kill(self, container_id: str) -> None:
        """Forcibly stop a running container."""

    @abstractmethod
    def stop(self, container_id: str) -> None:
        """Stop a container (no-op if already stopped)."""

    @abstractmethod
    def remove(self, container_id: str) -> None:
        """Remove a container."""

    @abstractmethod
    def find(self, name: str) -> Optional[str]:
        """Return the id of the container with this name, if any."""

    @abstractmethod
    def list_managed(self) -> list[ManagedContainer]:
        """All containers labeled as managed by this service."""


class DockerBackend(ExecutionBackend):
    """ExecutionBackend on the Docker Engine SDK."""

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        base_url: Optional[str] = None,
        timeout: int = 60,
    ):
        self._client = client
        self._base_url = base_url
        self._timeout = timeout
        self._lock = threading.Lock()

    @property
    def client(self) -> docker.DockerClient:
        """Shared client, created on first use."""
        with self._lock:
            if self._client is None:
                try:
                    if self._base_url:
                        self._client = docker.DockerClient(base_url=self._base_url, timeout=self._timeout)
                    else:
                        self._client = docker.from_env(timeout=self._timeout)
                except (DockerException, RequestException) as e:
                    raise BackendUnavailableError(f"Docker daemon is not reachable: {type(e).__name__}") from e
                logger.info("docker_client_initialized")
            return self._client

    def _get(self, container_id: str):
        try:
            return self.client.containers.get(container_id)
        except NotFound as e:
            raise BackendError(f"Container {container_id[:12]} not found") from e
        except (DockerException, RequestException) as e:
            raise BackendError(f"Docker request failed: {type(e).__name__}") from e

    def ping(self) -> None:
        try:
            self.client.ping()
        except BackendUnavailableError:
            raise
        except (DockerException, RequestException) as e:
            raise BackendUnavailableError(f"Docker daemon is not responding: {type(e).__name__}") from e

    def create(self, spec: ContainerSpec) -> str:
        try:
            container = self.client.containers.create(
                image=spec.image,
                command=spec.command,
                name=spec.name,
                environment=spec.environment,
                volumes={str(spec.workspace): {"bind": spec.output_mount, "mode": "rw"}},
                labels=spec.labels,
                tty=False,
                stdin_open=False,
                auto_remove=False,
            )
        except ImageNotFound as e:
            raise ProvisioningError(f"Build image not found: {spec.image}") from e
        except APIError as e:
            raise ProvisioningError(f"Container creation failed: {e.explanation or e}") from e
        except (DockerException, RequestException) as e:
            raise ProvisioningError(f"Container creation failed: {type(e).__name__}") from e
        return container.id

    def start(self, container_id: str) -> None:
        container = self._get(container_id)
        try:
            container.start()
        except APIError as e:
            raise ProvisioningError(f"Container start failed: {e.explanation or e}") from e
        except (DockerException, RequestException) as e:
            raise ProvisioningError(f"Container start failed: {type(e).__name__}") from e

    def stream_logs(self, container_id: str) -> Iterator[bytes]:
        container = self._get(container_id)
        try:
            yield from container.logs(stream=True, follow=True, stdout=True, stderr=True, timestamps=False)
        except (DockerException, RequestException) as e:
            raise BackendError(f"Log stream failed: {type(e).__name__}") from e

    def wait(self, container_id: str) -> int:
        container = self._get(container_id)
        try:
            result = container.wait()
        except (DockerException, RequestException) as e:
            raise BackendError(f"Waiting for container failed: {type(e).__name__}") from e
        return int(result.get("StatusCode", -1))

    def kill(self, container_id: str) -> None:
        container = self._get(container_id)
        try:
            container.kill()
        except APIError as e:
            # 409: not running any more
            if e.status_code != 409:
                raise BackendError(f"Container kill failed: {e.explanation or e}") from e
        except (DockerException, RequestException) as e:
            raise BackendError(f"Container kill failed: {type(e).__name__}") from e

    def stop(self, container_id: str) -> None:
        container = self._get(container_id)
        try:
            container.stop(timeout=STOP_TIMEOUT_S)
        except (DockerException, RequestException) as e:
            raise BackendError(f"Container stop failed: {type(e).__name__}") from e

    def remove(self, container_id: str) -> None:
        container = self._get(container_id)
        try:
            container.remove(force=True)
        except (DockerException, RequestException) as e:
            raise BackendError(f"Container remove failed: {type(e).__name__}") from e

    def find(self, name: str) -> Optional[str]:
        try:
            return self.client.containers.get(name).id
        except NotFound:
            return None
        except (DockerException, RequestException) as e:
            raise BackendError(f"Container lookup failed: {type(e).__name__}") from e

    def list_managed(self) -> list[ManagedContainer]:
        try:
            containers = self.client.containers.list(all=True, filters={"label": f"{MANAGED_LABEL}=true"})
        except (DockerException, RequestException) as e:
            raise BackendError(f"Container listing failed: {type(e).__name__}") from e
        return [
            ManagedContainer(
                container_id=container.id,
                build_id=container.labels.get(BUILD_ID_LABEL),
                status=container.status,
            )
            for container in containers
        ]
