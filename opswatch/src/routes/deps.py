"""
Request dependencies shared by the routers.
"""

from uuid import UUID

from fastapi import Header, HTTPException, Request

from opswatch.src.services.orchestrator import PipelineService
from opswatch.src.services.scheduler import Scheduler

async def get_current_user_id(x_user_id: str = Header(None)) -> UUID:
    """The acting user. Authentication sits in front of this service and sets X-User-ID."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid X-User-ID header")

def get_pipeline_service(request: Request) -> PipelineService:
    return request.app.state.pipeline_service

def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler

def get_http_client(request: Request):
    return request.app.state.http_client

def get_session_factory(request: Request):
    return request.app.state.session_factory
