from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from opswatch.src.config import get_settings
from opswatch.src.db.database import get_db
from opswatch.src.models.schemas import (
    AggregateStats,
    CheckResult,
    EndpointCreate,
    EndpointDetail,
    EndpointEssentials,
    EndpointResponse,
)
from opswatch.src.routes.deps import get_http_client, get_scheduler, get_session_factory
from opswatch.src.services import monitor
from opswatch.src.services.scheduler import Scheduler

router = APIRouter(prefix="/monitor", tags=["monitor"])

@router.post("/start")
async def start_checks(scheduler: Scheduler = Depends(get_scheduler)):
    """Start the periodic endpoint checks. 409 if already running."""
    handle = await scheduler.start()
    return {
        "message": "Endpoints check started",
        "endpoints": len(handle.endpoints),
        "interval": handle.interval,
    }

@router.post("/stop")
async def stop_checks(scheduler: Scheduler = Depends(get_scheduler)):
    await scheduler.stop()
    return {"message": "Endpoints check stopped"}

@router.get("/status")
async def scheduler_status(scheduler: Scheduler = Depends(get_scheduler)):
    handle = scheduler.handle
    return {
        "scheduler_running": scheduler.is_running,
        "endpoints": len(handle.endpoints) if handle else 0,
        "ticks": handle.ticks if handle else 0,
    }

@router.get("/endpoints", response_model=List[EndpointResponse])
async def list_endpoints(db: AsyncSession = Depends(get_db)):
    return await monitor.get_all_endpoints(db)

@router.post("/endpoints", response_model=EndpointResponse, status_code=201)
async def create_endpoint(data: EndpointCreate, db: AsyncSession = Depends(get_db)):
    return await monitor.create_endpoint(db, data)

@router.get("/endpoints/essentials", response_model=List[EndpointEssentials])
async def list_essentials(db: AsyncSession = Depends(get_db)):
    """Stats summary for every endpoint."""
    return await monitor.list_endpoint_essentials(db)

@router.get("/endpoints/aggregate", response_model=AggregateStats)
async def aggregate_stats(db: AsyncSession = Depends(get_db)):
    return await monitor.get_aggregate_stats(db)

@router.get("/endpoints/{endpoint_id}", response_model=EndpointDetail)
async def get_endpoint(endpoint_id: int, db: AsyncSession = Depends(get_db)):
    return await monitor.get_endpoint_detail(db, endpoint_id)

@router.post("/endpoints/{endpoint_id}/check", response_model=CheckResult)
async def check_endpoint_now(
    endpoint_id: int,
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
    client=Depends(get_http_client),
):
    """Probe one endpoint right away. Recorded like a scheduled check."""
    endpoint = await monitor.get_endpoint(db, endpoint_id)
    return await monitor.check_endpoint(
        session_factory, client, endpoint, get_settings().probe_timeout
    )
