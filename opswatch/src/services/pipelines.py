"""
Services, pipeline units and the read models over pipeline runs.
"""

import logging
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from opswatch.src.models.pipeline import (
    AuthorizationRequest,
    ExecutionHistory,
    PipelineRun,
    PipelineStatus,
    PipelineUnit,
    PipelineUnitDependency,
    Service,
    ServiceType,
)
from opswatch.src.models.schemas import (
    AuthorizationRequestResponse,
    ExecutionHistoryResponse,
    PipelineRunStatus,
    PipelineStatusResponse,
    PipelineUnitCreate,
    PipelineUnitWithServices,
    ServiceCreate,
    ServiceResponse,
)
from opswatch.src.services.errors import NotFoundError, PersistenceError, ValidationError
from opswatch.src.services.users import get_user_names

logger = logging.getLogger(__name__)

_UNIT_LOAD = (
    selectinload(PipelineUnit.macro_service),
    selectinload(PipelineUnit.dependencies).selectinload(PipelineUnitDependency.service),
)

async def create_service(session: AsyncSession, data: ServiceCreate) -> Service:
    service = Service(
        gitlab_repo_id=data.gitlab_repo_id,
        name=data.name,
        url=data.url,
        type=data.type.value,
    )
    session.add(service)
    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        raise PersistenceError(f"Failed to create service: {e}")

    await session.refresh(service)
    logger.info(f"Created {service.type} service {service.name} ({service.id})")
    return service

async def get_service(session: AsyncSession, service_id: UUID) -> Service:
    service = await session.get(Service, service_id)
    if service is None:
        raise NotFoundError(f"Service {service_id} not found")
    return service

async def list_services(session: AsyncSession, service_type: Optional[ServiceType] = None) -> List[Service]:
    query = select(Service).order_by(Service.created_at, Service.name)
    if service_type is not None:
        query = query.where(Service.type == service_type.value)
    result = await session.execute(query)
    return list(result.scalars().all())

async def _service_names(session: AsyncSession, ids: Iterable[UUID]) -> Dict[UUID, str]:
    ids = set(ids)
    if not ids:
        return {}
    result = await session.execute(select(Service.id, Service.name).where(Service.id.in_(ids)))
    return {row.id: row.name for row in result}

async def create_pipeline_unit(session: AsyncSession, data: PipelineUnitCreate) -> PipelineUnit:
    """
    Create a unit and its ordered micro service dependencies in one transaction.
    The order of `micro_service_ids` is the execution order.
    """
    if not data.micro_service_ids and data.macro_service_id is None:
        raise ValidationError("A pipeline unit needs a macro service or at least one micro service")

    if len(set(data.micro_service_ids)) != len(data.micro_service_ids):
        raise ValidationError("Duplicate micro service IDs in pipeline unit")

    if data.macro_service_id is not None:
        macro = await get_service(session, data.macro_service_id)
        if macro.type != ServiceType.MACRO.value:
            raise ValidationError(f"Service {macro.id} is not a macro service")

    for service_id in data.micro_service_ids:
        micro = await get_service(session, service_id)
        if micro.type != ServiceType.MICRO.value:
            raise ValidationError(f"Service {micro.id} is not a micro service")

    unit = PipelineUnit(macro_service_id=data.macro_service_id)
    session.add(unit)

    try:
        await session.flush()
        for index, service_id in enumerate(data.micro_service_ids):
            session.add(PipelineUnitDependency(
                pipeline_unit_id=unit.id,
                micro_service_id=service_id,
                order_index=index,
            ))
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        raise PersistenceError(f"Failed to create pipeline unit: {e}")

    logger.info(f"Created pipeline unit {unit.id} with {len(data.micro_service_ids)} micro service(s)")
    return await get_pipeline_unit(session, unit.id)

async def get_pipeline_unit(session: AsyncSession, unit_id: UUID) -> PipelineUnit:
    result = await session.execute(
        select(PipelineUnit)
        .where(PipelineUnit.id == unit_id)
        .options(*_UNIT_LOAD)
        .execution_options(populate_existing=True)
    )
    unit = result.scalar_one_or_none()
    if unit is None:
        raise NotFoundError(f"Pipeline unit {unit_id} not found")
    return unit

def _unit_with_services(unit: PipelineUnit) -> PipelineUnitWithServices:
    return PipelineUnitWithServices(
        id=unit.id,
        macro_service_id=unit.macro_service_id,
        micro_service_ids=unit.micro_service_ids,
        created_at=unit.created_at,
        macro_service=ServiceResponse.model_validate(unit.macro_service) if unit.macro_service else None,
        micro_services=[ServiceResponse.model_validate(dep.service) for dep in unit.dependencies],
    )

async def list_pipeline_units(session: AsyncSession) -> List[PipelineUnitWithServices]:
    result = await session.execute(
        select(PipelineUnit).options(*_UNIT_LOAD).order_by(PipelineUnit.created_at)
    )
    return [_unit_with_services(unit) for unit in result.scalars().all()]

async def get_pipeline_unit_with_services(session: AsyncSession, unit_id: UUID) -> PipelineUnitWithServices:
    return _unit_with_services(await get_pipeline_unit(session, unit_id))

async def get_pipeline_run(session: AsyncSession, run_id: UUID) -> PipelineRun:
    result = await session.execute(
        select(PipelineRun)
        .where(PipelineRun.id == run_id)
        .options(
            selectinload(PipelineRun.unit).selectinload(PipelineUnit.macro_service),
            selectinload(PipelineRun.authorization_request),
        )
        .execution_options(populate_existing=True)
    )
    run = result.scalar_one_or_none()
    if run is None:
        raise NotFoundError(f"Pipeline run {run_id} not found")
    return run

async def run_service_names(session: AsyncSession, run: PipelineRun):
    """Return (macro service name, selected micro service names in run order)."""
    selected = run.selected_ids
    macro_id = run.unit.macro_service_id if run.unit else None
    names = await _service_names(session, selected + ([macro_id] if macro_id else []))
    macro_name = names.get(macro_id, "") if macro_id else ""
    return macro_name, [names.get(service_id, str(service_id)) for service_id in selected]

async def _run_statuses(session: AsyncSession, runs: List[PipelineRun]) -> List[PipelineRunStatus]:
    user_ids = []
    for run in runs:
        if run.authorization_request is not None:
            user_ids.append(run.authorization_request.requester_id)
        user_ids.append(run.approver_id)
    users = await get_user_names(session, user_ids)

    statuses = []
    for run in runs:
        macro_name, micro_names = await run_service_names(session, run)
        request = run.authorization_request
        statuses.append(PipelineRunStatus(
            id=run.id,
            pipeline_unit_id=run.pipeline_unit_id,
            status=run.status,
            macro_service_name=macro_name,
            micro_service_names=micro_names,
            requester_name=users.get(request.requester_id, "") if request else "",
            approver_name=users.get(run.approver_id, "") if run.approver_id else "",
            gitlab_pipeline_id=run.gitlab_pipeline_id,
            created_at=run.created_at,
            updated_at=run.updated_at,
        ))
    return statuses

async def get_run_status_detail(session: AsyncSession, run_id: UUID) -> PipelineRunStatus:
    run = await get_pipeline_run(session, run_id)
    return (await _run_statuses(session, [run]))[0]

async def get_all_pipeline_statuses(session: AsyncSession) -> PipelineStatusResponse:
    result = await session.execute(
        select(PipelineRun)
        .options(
            selectinload(PipelineRun.unit).selectinload(PipelineUnit.macro_service),
            selectinload(PipelineRun.authorization_request),
        )
        .order_by(PipelineRun.created_at.desc())
    )
    runs = list(result.scalars().all())

    response = PipelineStatusResponse(total=len(runs))
    for status in await _run_statuses(session, runs):
        if status.status == PipelineStatus.RUNNING.value:
            response.running.append(status)
        elif status.status in (PipelineStatus.PENDING.value, PipelineStatus.ACCEPTED.value):
            response.pending.append(status)
        elif status.status == PipelineStatus.COMPLETED.value:
            response.completed.append(status)
        elif status.status == PipelineStatus.REJECTED.value:
            response.failed.append(status)
    return response

async def _authorization_views(
    session: AsyncSession, requests: List[AuthorizationRequest]
) -> List[AuthorizationRequestResponse]:
    users = await get_user_names(
        session, [r.requester_id for r in requests] + [r.approver_id for r in requests]
    )

    views = []
    for request in requests:
        macro_name, micro_names = await run_service_names(session, request.run)
        views.append(AuthorizationRequestResponse(
            id=request.id,
            pipeline_run_id=request.pipeline_run_id,
            requester_id=request.requester_id,
            requester_name=users.get(request.requester_id, ""),
            approver_id=request.approver_id,
            approver_name=users.get(request.approver_id, "") if request.approver_id else "",
            status=request.status,
            comment=request.comment or "",
            macro_service_name=macro_name,
            micro_service_names=micro_names,
            created_at=request.created_at,
            updated_at=request.updated_at,
        ))
    return views

def _authorization_query():
    return select(AuthorizationRequest).options(
        selectinload(AuthorizationRequest.run).selectinload(PipelineRun.unit)
    )

async def get_authorization_request(session: AsyncSession, request_id: UUID) -> AuthorizationRequestResponse:
    result = await session.execute(
        _authorization_query()
        .where(AuthorizationRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError(f"Authorization request {request_id} not found")
    return (await _authorization_views(session, [request]))[0]

async def list_authorization_requests(
    session: AsyncSession, status: Optional[PipelineStatus] = None
) -> List[AuthorizationRequestResponse]:
    query = _authorization_query().order_by(AuthorizationRequest.created_at.desc())
    if status is not None:
        query = query.where(AuthorizationRequest.status == status.value)
    result = await session.execute(query)
    return await _authorization_views(session, list(result.scalars().all()))

async def _history_views(session: AsyncSession, histories: List[ExecutionHistory]) -> List[ExecutionHistoryResponse]:
    users = await get_user_names(
        session, [h.requester_id for h in histories] + [h.approver_id for h in histories]
    )
    return [
        ExecutionHistoryResponse(
            id=history.id,
            pipeline_run_id=history.pipeline_run_id,
            pipeline_unit_id=history.run.pipeline_unit_id if history.run else None,
            requester_id=history.requester_id,
            requester_name=users.get(history.requester_id, ""),
            approver_id=history.approver_id,
            approver_name=users.get(history.approver_id, "") if history.approver_id else "",
            status=history.status,
            started_at=history.started_at,
            completed_at=history.completed_at,
            execution_time=history.execution_time,
            error_message=history.error_message,
            macro_service_name=history.macro_service_name or "",
            micro_service_names=history.micro_service_names or [],
        )
        for history in histories
    ]

def _history_query():
    return select(ExecutionHistory).options(selectinload(ExecutionHistory.run))

async def get_execution_history(session: AsyncSession, history_id: UUID) -> ExecutionHistoryResponse:
    result = await session.execute(
        _history_query()
        .where(ExecutionHistory.id == history_id)
        .execution_options(populate_existing=True)
    )
    history = result.scalar_one_or_none()
    if history is None:
        raise NotFoundError(f"Execution history {history_id} not found")
    return (await _history_views(session, [history]))[0]

async def list_execution_histories(
    session: AsyncSession, requester_id: Optional[UUID] = None
) -> List[ExecutionHistoryResponse]:
    query = _history_query().order_by(ExecutionHistory.started_at.desc())
    if requester_id is not None:
        query = query.where(ExecutionHistory.requester_id == requester_id)
    result = await session.execute(query)
    return await _history_views(session, list(result.scalars().all()))

async def list_execution_history(session: AsyncSession, run_id: UUID) -> List[ExecutionHistoryResponse]:
    await get_pipeline_run(session, run_id)
    result = await session.execute(
        _history_query()
        .where(ExecutionHistory.pipeline_run_id == run_id)
        .order_by(ExecutionHistory.started_at)
    )
    return await _history_views(session, list(result.scalars().all()))
