from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from uuid import UUID

from opswatch.src.db.database import get_db
from opswatch.src.models.pipeline import PipelineStatus, ServiceType
from opswatch.src.models.schemas import (
    AuthorizationRequestResponse,
    DecisionRequest,
    ExecutionHistoryResponse,
    PipelineRunResponse,
    PipelineRunStatus,
    PipelineStatusResponse,
    PipelineUnitCreate,
    PipelineUnitWithServices,
    ServiceCreate,
    ServiceResponse,
    TriggerRequest,
)
from opswatch.src.routes.deps import get_current_user_id, get_pipeline_service
from opswatch.src.services import pipelines
from opswatch.src.services.orchestrator import PipelineService

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

@router.post("/services", response_model=ServiceResponse, status_code=201)
async def create_service(data: ServiceCreate, db: AsyncSession = Depends(get_db)):
    return await pipelines.create_service(db, data)

@router.get("/services", response_model=List[ServiceResponse])
async def list_services(type: Optional[ServiceType] = None, db: AsyncSession = Depends(get_db)):
    return await pipelines.list_services(db, type)

@router.get("/services/{service_id}", response_model=ServiceResponse)
async def get_service(service_id: UUID, db: AsyncSession = Depends(get_db)):
    return await pipelines.get_service(db, service_id)

@router.post("/units", response_model=PipelineUnitWithServices, status_code=201)
async def create_pipeline_unit(data: PipelineUnitCreate, db: AsyncSession = Depends(get_db)):
    """Create a unit. The order of micro_service_ids is the execution order."""
    unit = await pipelines.create_pipeline_unit(db, data)
    return await pipelines.get_pipeline_unit_with_services(db, unit.id)

@router.get("/units", response_model=List[PipelineUnitWithServices])
async def list_pipeline_units(db: AsyncSession = Depends(get_db)):
    return await pipelines.list_pipeline_units(db)

@router.get("/units/{unit_id}", response_model=PipelineUnitWithServices)
async def get_pipeline_unit(unit_id: UUID, db: AsyncSession = Depends(get_db)):
    return await pipelines.get_pipeline_unit_with_services(db, unit_id)

@router.post("/units/{unit_id}/trigger", response_model=PipelineRunResponse, status_code=201)
async def trigger_pipeline_unit(
    unit_id: UUID,
    data: TriggerRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: PipelineService = Depends(get_pipeline_service),
):
    """Create a pending run. Nothing executes until the request is approved."""
    return await service.trigger(unit_id, user_id, data.selected_micro_service_ids)

@router.get("/authorization-requests", response_model=List[AuthorizationRequestResponse])
async def list_authorization_requests(
    status: Optional[PipelineStatus] = None, db: AsyncSession = Depends(get_db)
):
    return await pipelines.list_authorization_requests(db, status)

@router.get("/authorization-requests/{request_id}", response_model=AuthorizationRequestResponse)
async def get_authorization_request(request_id: UUID, db: AsyncSession = Depends(get_db)):
    return await pipelines.get_authorization_request(db, request_id)

@router.post("/authorization-requests/{request_id}/approve", response_model=AuthorizationRequestResponse)
async def approve_request(
    request_id: UUID,
    data: DecisionRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: PipelineService = Depends(get_pipeline_service),
    db: AsyncSession = Depends(get_db),
):
    """Approve a pending request. Execution continues in the background."""
    await service.approve(request_id, user_id, data.comment)
    return await pipelines.get_authorization_request(db, request_id)

@router.post("/authorization-requests/{request_id}/reject", response_model=AuthorizationRequestResponse)
async def reject_request(
    request_id: UUID,
    data: DecisionRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: PipelineService = Depends(get_pipeline_service),
    db: AsyncSession = Depends(get_db),
):
    await service.reject(request_id, user_id, data.comment)
    return await pipelines.get_authorization_request(db, request_id)

@router.get("/runs/statuses", response_model=PipelineStatusResponse)
async def get_all_pipeline_statuses(db: AsyncSession = Depends(get_db)):
    """Runs grouped by running, pending, completed and failed."""
    return await pipelines.get_all_pipeline_statuses(db)

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    return await pipelines.get_pipeline_run(db, run_id)

@router.get("/runs/{run_id}/status", response_model=PipelineRunStatus)
async def get_run_status(run_id: UUID, db: AsyncSession = Depends(get_db)):
    return await pipelines.get_run_status_detail(db, run_id)

@router.get("/runs/{run_id}/history", response_model=List[ExecutionHistoryResponse])
async def get_run_history(run_id: UUID, db: AsyncSession = Depends(get_db)):
    return await pipelines.list_execution_history(db, run_id)

@router.get("/histories", response_model=List[ExecutionHistoryResponse])
async def list_execution_histories(
    requester_id: Optional[UUID] = None, db: AsyncSession = Depends(get_db)
):
    return await pipelines.list_execution_histories(db, requester_id)

@router.get("/histories/mine", response_model=List[ExecutionHistoryResponse])
async def list_my_execution_histories(
    user_id: UUID = Depends(get_current_user_id), db: AsyncSession = Depends(get_db)
):
    return await pipelines.list_execution_histories(db, user_id)
