"""
Build API routes: conversion, decoupled submission, status and artifacts.
Every failure body is {"success": false, "error": "<short string>"}.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import FileResponse, JSONResponse, Response

from appbuilder.core.artifacts import ArtifactLocator, download_links
from appbuilder.core.errors import ArtifactNotFoundError, InvalidArtifactPathError, WorkspaceError
from appbuilder.core.jobs import BuildJob
from appbuilder.core.orchestrator import BuildOrchestrator
from appbuilder.schemas.build import (
    BuildEventInfo,
    BuildListItem,
    BuildListResponse,
    BuildState,
    BuildStatusResponse,
    ConvertRequest,
    ConvertResponse,
    DownloadLinks,
    SubmitResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["builds"])

# Download links are relative to the service root, not /api/v1
artifacts_router = APIRouter(tags=["artifacts"])

REQUIRED_FIELDS_ERROR = "URL and app name are required"
BUILD_FAILED_ERROR = "Build failed"
BUILD_NOT_FOUND_ERROR = "Build not found"
FILE_NOT_FOUND_ERROR = "Build file not found"
LOG_NOT_FOUND_ERROR = "Build log not found"


def get_orchestrator(request: Request) -> BuildOrchestrator:
    """Orchestrator wired at startup (replaced in tests)."""
    return request.app.state.orchestrator


def get_artifact_locator(request: Request) -> ArtifactLocator:
    return request.app.state.artifacts


def error_response(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _links(build_id: str) -> DownloadLinks:
    return DownloadLinks(**download_links(build_id))


def _status_response(job: BuildJob) -> BuildStatusResponse:
    return BuildStatusResponse(
        build_id=job.id,
        state=job.state,
        source_url=job.source_url,
        app_name=job.app_name,
        exit_code=job.exit_code,
        error=job.error,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        duration_ms=job.duration_ms,
        download_links=_links(job.id) if job.state == BuildState.SUCCEEDED else None,
        events=[
            BuildEventInfo(sequence=event.sequence, state=event.state, detail=event.detail, at=event.at)
            for event in job.events
        ],
    )


# =============================================================================
# Conversion
# =============================================================================

@router.post("/convert", response_model=ConvertResponse)
async def convert(
    request: Optional[ConvertRequest] = None,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
):
    """
    Convert a website into mobile app packages.

    Synchronous: the response is sent once the build reached a terminal state.
    ```json
    {"url": "https://example.com", "appName": "Demo", "config": {"name": "Demo"}}
    ```
    """
    if request is None:
        request = ConvertRequest()
    if not request.is_complete():
        return error_response(400, REQUIRED_FIELDS_ERROR)

    try:
        job = await orchestrator.convert(request)
    except WorkspaceError:
        return error_response(500, BUILD_FAILED_ERROR)

    if job.state != BuildState.SUCCEEDED:
        # The cause is in the build record and the logs, not in the response
        logger.info(f"convert_failed build_id={job.id}", extra={"build_id": job.id})
        return error_response(500, BUILD_FAILED_ERROR)

    return ConvertResponse(build_id=job.id, download_links=_links(job.id))


@router.post("/builds", status_code=202, response_model=SubmitResponse)
async def submit_build(
    background_tasks: BackgroundTasks,
    request: Optional[ConvertRequest] = None,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
):
    """
    Submit a build and return immediately.

    Poll GET /api/v1/builds/{build_id} for the outcome.
    """
    if request is None:
        request = ConvertRequest()
    if not request.is_complete():
        return error_response(400, REQUIRED_FIELDS_ERROR)

    try:
        job = orchestrator.submit(request)
    except WorkspaceError:
        return error_response(500, BUILD_FAILED_ERROR)

    background_tasks.add_task(orchestrator.run, job.id)

    return SubmitResponse(
        build_id=job.id,
        state=job.state,
        status_url=f"/api/v1/builds/{job.id}",
    )


# =============================================================================
# Status
# =============================================================================

@router.get("/builds", response_model=BuildListResponse)
async def list_builds(
    limit: int = Query(default=20, ge=1, le=100, description="Max items to return"),
    offset: int = Query(default=0, ge=0, description="Offset for pagination"),
    state: Optional[BuildState] = Query(default=None, description="Filter by state"),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> BuildListResponse:
    """List builds, most recent first."""
    items, total = orchestrator.store.list_builds(limit=limit, offset=offset, state=state)

    return BuildListResponse(
        items=[
            BuildListItem(
                build_id=item.id,
                state=item.state,
                app_name=item.app_name,
                exit_code=item.exit_code,
                created_at=item.created_at,
                completed_at=item.completed_at,
            )
            for item in items
        ],
        limit=limit,
        offset=offset,
        total=total,
    )


@router.get("/builds/{build_id}", response_model=BuildStatusResponse)
async def get_build_status(
    build_id: str,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
):
    """Current state, timing, outcome and transition history of a build."""
    job = orchestrator.store.get(build_id)
    if job is None:
        return error_response(404, BUILD_NOT_FOUND_ERROR)
    return _status_response(job)


@router.get("/builds/{build_id}/logs")
async def get_build_logs(
    build_id: str,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
):
    """The durable build log as plain text (may still be growing)."""
    job = orchestrator.store.get(build_id)
    if job is None or not job.log_path.is_file():
        return error_response(404, LOG_NOT_FOUND_ERROR)

    content = await asyncio.to_thread(job.log_path.read_bytes)
    return Response(content=content, media_type="text/plain; charset=utf-8")


# =============================================================================
# Artifacts
# =============================================================================

@artifacts_router.get("/builds/{build_id}/{platform}/{file_path:path}")
async def download_artifact(
    build_id: str,
    platform: str,
    file_path: str,
    locator: ArtifactLocator = Depends(get_artifact_locator),
):
    """Download a file produced by a build."""
    try:
        path = locator.resolve(build_id, platform, file_path)
    except InvalidArtifactPathError:
        logger.warning(f"artifact_path_rejected build_id={build_id[:64]}")
        return error_response(404, FILE_NOT_FOUND_ERROR)
    except ArtifactNotFoundError:
        return error_response(404, FILE_NOT_FOUND_ERROR)

    return FileResponse(path, filename=path.name, media_type="application/octet-stream")
