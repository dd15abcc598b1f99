"""
Pydantic schemas for the build API requests and responses.
Wire format uses camelCase field names.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional, List

from pydantic import BaseModel, ConfigDict, Field


class BuildState(str, Enum):
    """Build job lifecycle state."""
    CREATED = "created"
    ENVIRONMENT_STARTING = "environment_starting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildState.SUCCEEDED, BuildState.FAILED)


class WireModel(BaseModel):
    """Base model accepting both alias and field names."""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Request Schemas
# =============================================================================

class AppConfig(WireModel):
    """Opaque app configuration handed to the build program as APP_CONFIG."""
    name: Optional[str] = Field(default=None, max_length=200)
    bundle_id: Optional[str] = Field(default=None, alias="bundleId", max_length=255)
    version: Optional[str] = Field(default=None, max_length=50)
    icon: Optional[str] = Field(default=None, max_length=2048)
    splash_screen: Optional[str] = Field(default=None, alias="splashScreen", max_length=2048)
    custom_settings: Optional[dict[str, Any]] = Field(default=None, alias="customSettings")


class ConvertRequest(WireModel):
    """
    Request body for POST /api/v1/convert and POST /api/v1/builds.

    url and appName are optional at the schema level so that a missing field
    gets the documented 400 response instead of a validation error.
    """
    url: Optional[str] = Field(default=None, max_length=2048)
    app_name: Optional[str] = Field(default=None, alias="appName", max_length=200)
    config: Optional[AppConfig] = None

    def is_complete(self) -> bool:
        """True when both required fields are present and non-blank."""
        return bool(self.url and self.url.strip() and self.app_name and self.app_name.strip())

    def app_config_payload(self) -> dict[str, Any]:
        """App config as sent to the build program (camelCase, no nulls)."""
        config = self.config or AppConfig()
        payload = config.model_dump(by_alias=True, exclude_none=True)
        payload.setdefault("name", self.app_name)
        return payload


# =============================================================================
# Response Schemas
# =============================================================================

class DownloadLinks(WireModel):
    """Conventional artifact locations produced by the build program."""
    android: str
    ios: str


class ConvertResponse(WireModel):
    """Response for a successful POST /api/v1/convert."""
    success: bool = True
    build_id: str = Field(alias="buildId")
    download_links: DownloadLinks = Field(alias="downloadLinks")


class SubmitResponse(WireModel):
    """Response for POST /api/v1/builds (accepted, running in background)."""
    success: bool = True
    build_id: str = Field(alias="buildId")
    state: BuildState
    status_url: str = Field(alias="statusUrl")


class BuildEventInfo(WireModel):
    """A recorded state transition."""
    sequence: int
    state: BuildState
    detail: Optional[str] = None
    at: datetime


class BuildStatusResponse(WireModel):
    """Response for GET /api/v1/builds/{build_id}."""
    success: bool = True
    build_id: str = Field(alias="buildId")
    state: BuildState
    source_url: str = Field(alias="sourceUrl")
    app_name: str = Field(alias="appName")
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    error: Optional[str] = None
    created_at: datetime = Field(alias="createdAt")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    duration_ms: Optional[int] = Field(default=None, alias="durationMs")
    download_links: Optional[DownloadLinks] = Field(default=None, alias="downloadLinks")
    events: List[BuildEventInfo] = Field(default_factory=list)


class BuildListItem(WireModel):
    """Single build in list response."""
    build_id: str = Field(alias="buildId")
    state: BuildState
    app_name: str = Field(alias="appName")
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    created_at: datetime = Field(alias="createdAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")


class BuildListResponse(WireModel):
    """Response for GET /api/v1/builds."""
    items: List[BuildListItem]
    limit: int
    offset: int
    total: int
