import logging
import sys

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from opswatch.src.config import get_settings
from opswatch.src.db.database import async_session, engine, init_db
from opswatch.src.routes import health_router, monitor_router, pipelines_router, realtime_router
from opswatch.src.services.errors import (
    ConflictError,
    NotFoundError,
    OperationTimeoutError,
    OpsWatchError,
    UpstreamError,
    ValidationError,
)
from opswatch.src.services.gitlab import GitLabClient
from opswatch.src.services.manifest import ManifestError
from opswatch.src.services.notifier import EmailNotifier
from opswatch.src.services.orchestrator import PipelineService
from opswatch.src.services.realtime import RealtimeHub
from opswatch.src.services.scheduler import Scheduler

settings = get_settings()

logger = logging.getLogger(__name__)

def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging(settings.log_level)
    logger.info("Starting OpsWatch API")
    await init_db()

    hub = RealtimeHub()
    hub.start()

    http_client = httpx.AsyncClient(follow_redirects=True)
    ci_client = GitLabClient()

    app.state.hub = hub
    app.state.http_client = http_client
    app.state.session_factory = async_session
    app.state.pipeline_service = PipelineService(async_session, ci_client, EmailNotifier(), hub)
    app.state.scheduler = Scheduler(async_session, http_client)

    yield

    # Shutdown
    logger.info("Shutting down OpsWatch API")
    if app.state.scheduler.is_running:
        await app.state.scheduler.stop()
    await app.state.pipeline_service.shutdown(timeout=10.0)
    await hub.stop()
    await ci_client.close()
    await http_client.aclose()
    await engine.dispose()

app = FastAPI(
    title="OpsWatch",
    description="Endpoint monitoring and approval-gated GitLab pipeline orchestration",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_CODES = (
    (ValidationError, 400),
    (ManifestError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (UpstreamError, 502),
    (OperationTimeoutError, 504),
)

def status_code_for(exc: Exception) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500

@app.exception_handler(OpsWatchError)
@app.exception_handler(ManifestError)
async def opswatch_error_handler(request: Request, exc: Exception):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})

# Include routers
app.include_router(health_router)
app.include_router(monitor_router, prefix="/api")
app.include_router(pipelines_router, prefix="/api")
app.include_router(realtime_router)

@app.get("/")
async def root():
    return {
        "name": "OpsWatch",
        "version": "0.1.0",
        "docs": "/docs"
    }
