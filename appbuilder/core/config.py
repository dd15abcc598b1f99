"""
Service configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _int_env(name: str, default: int) -> int:
    """Read an integer env var, falling back to default on bad input."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class ServiceConfig:
    """Service configuration (immutable)."""
    port: int = 3000
    listen_host: str = "0.0.0.0"
    builds_dir: Path = Path("./builds")
    logs_dir: Path = Path("./data/logs")
    db_path: Path = Path("./data/builds.db")
    # Execution image contract
    builder_image: str = "react-native-builder:latest"
    builder_command: str = "/bin/bash /app/scripts/build-app.sh"
    output_mount: str = "/app/output"
    # Backend
    docker_host: Optional[str] = None
    docker_timeout_s: int = 60
    # Scheduling
    build_timeout_s: int = 1800  # 0 = no budget
    max_concurrent_builds: int = 2
    reaper_interval_s: int = 300  # 0 = no periodic sweep
    record_retention_hours: int = 168
    log_level: str = "INFO"

    @property
    def builder_cmd(self) -> list[str]:
        """Builder command split into argv."""
        return shlex.split(self.builder_command)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.db_path}"


def get_config() -> ServiceConfig:
    """Load service configuration from environment."""
    return ServiceConfig(
        port=_int_env("PORT", 3000),
        listen_host=os.getenv("LISTEN_HOST", "0.0.0.0"),
        builds_dir=Path(os.getenv("BUILDS_DIR", "./builds")),
        logs_dir=Path(os.getenv("BUILD_LOGS_DIR", "./data/logs")),
        db_path=Path(os.getenv("APPBUILDER_DB_PATH", "./data/builds.db")),
        builder_image=os.getenv("BUILDER_IMAGE", "react-native-builder:latest"),
        builder_command=os.getenv("BUILDER_COMMAND", "/bin/bash /app/scripts/build-app.sh"),
        output_mount=os.getenv("BUILDER_OUTPUT_MOUNT", "/app/output"),
        docker_host=os.getenv("DOCKER_HOST") or None,
        docker_timeout_s=max(1, _int_env("DOCKER_TIMEOUT_S", 60)),
        build_timeout_s=max(0, _int_env("BUILD_TIMEOUT_S", 1800)),
        max_concurrent_builds=max(1, _int_env("MAX_CONCURRENT_BUILDS", 2)),
        reaper_interval_s=max(0, _int_env("REAPER_INTERVAL_S", 300)),
        record_retention_hours=max(1, _int_env("BUILD_RECORD_RETENTION_HOURS", 168)),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
