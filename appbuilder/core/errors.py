"""
Exception hierarchy for build orchestration.

Backend, provisioning and execution failures are caught by the orchestrator
and turned into a Failed build; they never escape to the HTTP layer.
"""


class BuildError(Exception):
    """Base error for build orchestration."""
    pass


class WorkspaceError(BuildError):
    """Workspace directory could not be created."""
    pass


class BackendError(BuildError):
    """Execution backend request failed."""
    pass


class BackendUnavailableError(BackendError):
    """Execution backend did not answer the liveness probe."""
    pass


class ProvisioningError(BackendError):
    """Execution environment could not be created or started."""
    pass


class InvalidTransitionError(BuildError):
    """Build state machine refused a transition."""
    pass


class BuildNotFoundError(BuildError):
    """No record exists for the build id."""
    pass


class ArtifactNotFoundError(BuildError):
    """Requested artifact does not exist in the build workspace."""
    pass


class InvalidArtifactPathError(ArtifactNotFoundError):
    """Artifact path segments failed validation."""
    pass
