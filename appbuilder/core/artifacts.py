"""
Artifact locator: maps (build id, platform, file) to a file in a workspace.

Existence on disk is the only criterion, so artifacts stay downloadable
after the build record is gone.

Security:
- Every path segment is validated before any filesystem access
- No "..", no separators other than "/" between file segments, no hidden names
- The resolved path must stay inside <builds_dir>/<build_id>/<platform>
"""
import logging
import re
from pathlib import Path

from appbuilder.core.errors import ArtifactNotFoundError, InvalidArtifactPathError

logger = logging.getLogger(__name__)

# Conventional outputs of the build program, relative to the workspace
ANDROID_ARTIFACT = "android/app-release.apk"
IOS_ARTIFACT = "ios/build/App.ipa"

SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._+-]{0,254}$")

# Nested directories allowed below the platform directory
MAX_FILE_DEPTH = 8


def download_links(build_id: str) -> dict[str, str]:
    """Download URLs for the conventional artifacts of a build."""
    return {
        "android": f"/builds/{build_id}/{ANDROID_ARTIFACT}",
        "ios": f"/builds/{build_id}/{IOS_ARTIFACT}",
    }


def is_safe_segment(segment: str) -> bool:
    """Check a single path component."""
    if not segment or ".." in segment:
        return False
    if "\\" in segment or "\x00" in segment or "/" in segment:
        return False
    return bool(SEGMENT_PATTERN.match(segment))


def split_file_path(file_path: str) -> list[str]:
    """
    Split a relative file path into validated segments.

    Raises:
        InvalidArtifactPathError: If any segment is unsafe
    """
    segments = file_path.split("/")
    if len(segments) > MAX_FILE_DEPTH:
        raise InvalidArtifactPathError("File path too deep")
    for segment in segments:
        if not is_safe_segment(segment):
            raise InvalidArtifactPathError("Invalid path segment")
    return segments


class ArtifactLocator:
    """Resolves artifact requests against the builds root."""

    def __init__(self, builds_dir: Path):
        self._builds_dir = Path(builds_dir)

    def resolve(self, build_id: str, platform: str, file_path: str) -> Path:
        """
        Resolve an artifact to an existing file.

        Args:
            build_id: Build id (workspace directory name)
            platform: Platform directory, e.g. "android" or "ios"
            file_path: File name, optionally with sub-directories ("build/App.ipa")

        Returns:
            Absolute path of the artifact

        Raises:
            InvalidArtifactPathError: If the request fails validation
            ArtifactNotFoundError: If no such file exists
        """
        if not is_safe_segment(build_id) or not is_safe_segment(platform):
            raise InvalidArtifactPathError("Invalid path segment")
        segments = split_file_path(file_path)

        workspace = self._builds_dir.resolve() / build_id
        candidate = workspace.joinpath(platform, *segments).resolve()

        # Symlinks written by the build program must not lead outside
        if not candidate.is_relative_to(workspace / platform):
            logger.warning(f"artifact_escape_rejected build_id={build_id}", extra={"build_id": build_id})
            raise InvalidArtifactPathError("Path escapes build workspace")

        if not candidate.is_file():
            raise ArtifactNotFoundError(f"{build_id}/{platform}/{file_path}")

        return candidate
