#!/usr/bin/env python3
"""
appbuilder-service: turns a website URL into installable mobile app packages.
Each build runs the builder image in its own disposable Docker container.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from appbuilder.api.builds import artifacts_router, router as builds_router
from appbuilder.core.artifacts import ArtifactLocator
from appbuilder.core.backend import DockerBackend
from appbuilder.core.config import ServiceConfig, get_config
from appbuilder.core.jobs import BuildStore
from appbuilder.core.logging import setup_logging
from appbuilder.core.metrics import metrics
from appbuilder.core.orchestrator import BuildOrchestrator
from appbuilder.core.request_logging import RequestLoggingMiddleware
from appbuilder.core.workspace import WorkspaceAllocator
from appbuilder.db.database import init_db

# =============================================================================
# Configuration from environment
# =============================================================================
config = get_config()
VERSION = "1.0.0"

# Setup structured JSON logging
setup_logging(config.log_level)
logger = logging.getLogger("appbuilder")

# Initialize database on startup
init_db()

# Fail builds interrupted by a previous process, drop expired records
build_store = BuildStore()
build_store.run_startup_cleanup(config.record_retention_hours)


def create_orchestrator(service_config: ServiceConfig) -> BuildOrchestrator:
    """Wire the orchestrator with one shared Docker client."""
    backend = DockerBackend(base_url=service_config.docker_host, timeout=service_config.docker_timeout_s)
    allocator = WorkspaceAllocator(service_config.builds_dir, service_config.logs_dir)
    return BuildOrchestrator(backend, build_store, allocator, service_config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator: BuildOrchestrator = app.state.orchestrator
    reaper = None
    if config.reaper_interval_s > 0:
        reaper = asyncio.create_task(orchestrator.reaper_loop(config.reaper_interval_s))
    logger.info(f"service_started port={config.port} builds_dir={config.builds_dir}")
    try:
        yield
    finally:
        if reaper is not None:
            reaper.cancel()
            await reaper
        orchestrator.shutdown()
        logger.info("service_stopped")


# Create app
app = FastAPI(
    title="appbuilder-service",
    description="Website to mobile app build orchestration",
    version=VERSION,
    lifespan=lifespan,
)

app.state.orchestrator = create_orchestrator(config)
app.state.artifacts = ArtifactLocator(config.builds_dir)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed input gets the same {success, error} body as every other failure."""
    in_body = any(tuple(error.get("loc", ()))[:1] == ("body",) for error in exc.errors())
    error = "Invalid request body" if in_body else "Invalid request parameters"
    return JSONResponse(status_code=400, content={"success": False, "error": error})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"unhandled_error path={request.url.path} error_type={type(exc).__name__}")
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# Include routes
app.include_router(builds_router)
app.include_router(artifacts_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics", response_class=PlainTextResponse, tags=["metrics"])
async def get_metrics() -> str:
    """Export counters in Prometheus text format."""
    return metrics.to_prometheus()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.listen_host, port=config.port)
