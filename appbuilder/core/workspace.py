"""
Build id minting and per-build workspace allocation.

Layout:
- <builds_dir>/<build_id>/          workspace, bound into the container as output
- <logs_dir>/<build_id>.log         durable build log, outside the served tree

Workspaces are never deleted here. Failed builds keep theirs for diagnosis
and successful ones serve artifacts after the job record is gone.
"""
import itertools
import logging
import re
import secrets
import threading
import time
from pathlib import Path

from appbuilder.core.errors import WorkspaceError

logger = logging.getLogger(__name__)

BUILD_ID_PREFIX = "build"

# build-<epoch ms>-<process sequence>-<random hex>
BUILD_ID_PATTERN = re.compile(r"^build-[0-9]+-[0-9]+-[0-9a-f]{8}$")


class WorkspaceAllocator:
    """Mints collision-free build ids and creates their workspaces."""

    def __init__(self, builds_dir: Path, logs_dir: Path):
        self._builds_dir = Path(builds_dir)
        self._logs_dir = Path(logs_dir)
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def new_build_id(self) -> str:
        """Return an id unique for the process lifetime."""
        with self._lock:
            sequence = next(self._counter)
        millis = int(time.time() * 1000)
        return f"{BUILD_ID_PREFIX}-{millis}-{sequence}-{secrets.token_hex(4)}"

    def workspace_for(self, build_id: str) -> Path:
        return self._builds_dir / build_id

    def log_path_for(self, build_id: str) -> Path:
        return self._logs_dir / f"{build_id}.log"

    def allocate(self) -> tuple[str, Path]:
        """
        Mint a build id and create its workspace directory.

        Returns:
            Tuple of (build_id, absolute workspace path)

        Raises:
            WorkspaceError: If the workspace or log directory cannot be created
        """
        build_id = self.new_build_id()
        workspace = self.workspace_for(build_id).resolve()

        try:
            workspace.mkdir(parents=True, exist_ok=False)
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"workspace_create_failed build_id={build_id} error_type={type(e).__name__}")
            raise WorkspaceError(f"Cannot create workspace for {build_id}: {e.strerror or e}") from e

        logger.info(f"workspace_created build_id={build_id}", extra={"build_id": build_id})
        return build_id, workspace
