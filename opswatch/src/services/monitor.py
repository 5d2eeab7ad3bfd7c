"""
Endpoint probing, stats recording and endpoint read models.
"""

import logging
import time
from typing import List, Optional, Tuple

import httpx
from sqlalchemy import select, func, case
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opswatch.src.models.monitor import Endpoint, Check, EndpointStats
from opswatch.src.models.schemas import (
    AggregateStats,
    CheckResult,
    EndpointCreate,
    EndpointDetail,
    EndpointEssentials,
)
from opswatch.src.services.errors import (
    DuplicateEndpointError,
    NotFoundError,
    PersistenceError,
)
from opswatch.src.services.manifest import endpoint_identity, normalize_url

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

def _dialect_insert(session: AsyncSession):
    """Pick the insert construct that supports ON CONFLICT for the bound database."""
    dialect = session.get_bind().dialect.name
    try:
        return _UPSERT_INSERTS[dialect]
    except KeyError:
        raise PersistenceError(f"Upserts are not supported on dialect '{dialect}'")

async def get_all_endpoints(session: AsyncSession) -> List[Endpoint]:
    result = await session.execute(select(Endpoint).order_by(Endpoint.id))
    return list(result.scalars().all())

async def sync_endpoints(session: AsyncSession, entries: List[dict]) -> List[Endpoint]:
    """
    Merge manifest entries into the endpoint table.
    Entries whose identity tuple is already stored are skipped.
    Returns the full endpoint set.
    """
    endpoints = await get_all_endpoints(session)
    known = {
        endpoint_identity(ep.url, ep.api_method, ep.server_name, ep.expected_status_code)
        for ep in endpoints
    }

    added = 0
    for entry in entries:
        identity = endpoint_identity(
            entry["url"], entry["api_method"], entry["server_name"], entry["expected_status_code"]
        )
        if identity in known:
            continue

        endpoint = Endpoint(
            service_name=entry["service_name"],
            url=identity[0],
            server_name=entry["server_name"],
            api_method=identity[1],
            expected_status_code=identity[3],
        )
        session.add(endpoint)
        known.add(identity)
        endpoints.append(endpoint)
        added += 1

    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        raise PersistenceError(f"Failed to merge endpoint manifest: {e}")

    if added:
        logger.info(f"Merged {added} new endpoint(s) from manifest")
    return endpoints

async def create_endpoint(session: AsyncSession, data: EndpointCreate) -> Endpoint:
    """Register a new endpoint. Duplicate identity tuples are rejected."""
    url, method, server_name, expected = endpoint_identity(
        data.url, data.api_method, data.server_name, data.expected_status_code
    )

    existing = await session.execute(
        select(Endpoint.id).where(
            Endpoint.url == url,
            Endpoint.api_method == method,
            Endpoint.server_name == server_name,
            Endpoint.expected_status_code == expected,
        )
    )
    existing_id = existing.scalar_one_or_none()
    if existing_id is not None:
        raise DuplicateEndpointError(f"Endpoint with URL '{url}' already exists (id={existing_id})")

    endpoint = Endpoint(
        service_name=data.service_name,
        url=url,
        server_name=server_name,
        api_method=method,
        expected_status_code=expected,
        gitlab_url=data.gitlab_url,
        docker_container_name=data.docker_container_name,
        kubernetes_pod_name=data.kubernetes_pod_name,
        tags=data.tags or None,
        description=data.description,
        last_changed_by=data.last_changed_by,
    )
    session.add(endpoint)

    try:
        await session.commit()
    except IntegrityError:
        # Lost a race against a concurrent insert of the same identity
        await session.rollback()
        raise DuplicateEndpointError(f"Endpoint with URL '{url}' already exists")

    await session.refresh(endpoint)
    return endpoint

async def get_endpoint(session: AsyncSession, endpoint_id: int) -> Endpoint:
    endpoint = await session.get(Endpoint, endpoint_id)
    if endpoint is None:
        raise NotFoundError(f"Endpoint {endpoint_id} not found")
    return endpoint

async def probe(client: httpx.AsyncClient, url: str, timeout: float) -> Tuple[Optional[int], float, Optional[str]]:
    """
    Issue one GET against `url`.
    Returns (status_code, latency in ms, error message).
    """
    start = time.perf_counter()
    try:
        response = await client.get(url, timeout=timeout)
        status_code, error = response.status_code, None
    except httpx.HTTPError as e:
        status_code, error = None, str(e) or e.__class__.__name__
    latency_ms = (time.perf_counter() - start) * 1000
    return status_code, latency_ms, error

async def record_check(
    session: AsyncSession,
    endpoint_id: int,
    status_code: Optional[int],
    latency_ms: float,
    success: bool,
    error: Optional[str] = None,
):
    """
    Insert the check log row and fold the outcome into endpoint_stats
    with one INSERT ... ON CONFLICT DO UPDATE.
    """
    session.add(Check(
        endpoint_id=endpoint_id,
        status_code=status_code,
        latency_ms=latency_ms,
        error=error,
    ))
    await session.flush()

    insert = _dialect_insert(session)
    stmt = insert(EndpointStats).values(
        endpoint_id=endpoint_id,
        total_checks=1,
        total_latency=latency_ms,
        successful_checks=1 if success else 0,
        failure_count=0 if success else 1,
        last_run=success,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[EndpointStats.endpoint_id],
        set_={
            "total_checks": EndpointStats.total_checks + 1,
            "total_latency": EndpointStats.total_latency + stmt.excluded.total_latency,
            "successful_checks": EndpointStats.successful_checks + stmt.excluded.successful_checks,
            "failure_count": case(
                (stmt.excluded.successful_checks == 1, 0),
                else_=EndpointStats.failure_count + 1,
            ),
            "last_run": stmt.excluded.last_run,
            "updated_at": func.now(),
        },
    )
    await session.execute(stmt)
    await session.commit()

async def check_endpoint(
    session_factory: async_sessionmaker,
    client: httpx.AsyncClient,
    endpoint,
    timeout: float = 5.0,
) -> CheckResult:
    """Probe one endpoint and record the outcome. Failures are data, not errors."""
    logger.debug(f"Checking {endpoint.url}")
    status_code, latency_ms, error = await probe(client, endpoint.url, timeout)
    success = error is None and status_code == endpoint.expected_status_code

    if error:
        logger.info(f"Check failed for {endpoint.url}: {error}")
    elif not success:
        logger.info(
            f"Check failed for {endpoint.url}: got {status_code}, "
            f"expected {endpoint.expected_status_code}"
        )

    async with session_factory() as session:
        try:
            await record_check(session, endpoint.id, status_code, latency_ms, success, error)
        except SQLAlchemyError as e:
            await session.rollback()
            raise PersistenceError(f"Failed to record check for endpoint {endpoint.id}: {e}")

    return CheckResult(
        endpoint_id=endpoint.id,
        status_code=status_code,
        latency_ms=latency_ms,
        success=success,
        error=error,
    )

def _averages(stats: Optional[EndpointStats]) -> Tuple[float, float]:
    """Return (avg_latency, uptime_percentage)."""
    if stats is None or not stats.total_checks:
        return 0.0, 0.0
    return (
        stats.total_latency / stats.total_checks,
        100.0 * stats.successful_checks / stats.total_checks,
    )

async def get_endpoint_detail(session: AsyncSession, endpoint_id: int) -> EndpointDetail:
    endpoint = await get_endpoint(session, endpoint_id)
    stats = await session.get(EndpointStats, endpoint_id)
    avg_latency, uptime = _averages(stats)

    return EndpointDetail(
        id=endpoint.id,
        service_name=endpoint.service_name,
        url=endpoint.url,
        server_name=endpoint.server_name,
        api_method=endpoint.api_method,
        expected_status_code=endpoint.expected_status_code,
        gitlab_url=endpoint.gitlab_url,
        docker_container_name=endpoint.docker_container_name,
        kubernetes_pod_name=endpoint.kubernetes_pod_name,
        tags=endpoint.tags or [],
        description=endpoint.description,
        last_changed_by=endpoint.last_changed_by,
        total_checks=stats.total_checks if stats else 0,
        successful_checks=stats.successful_checks if stats else 0,
        failure_count=stats.failure_count if stats else 0,
        avg_latency=avg_latency,
        uptime_percentage=uptime,
        last_run_succeeded=bool(stats and stats.last_run),
        created_at=endpoint.created_at,
        updated_at=endpoint.updated_at,
    )

async def list_endpoint_essentials(session: AsyncSession) -> List[EndpointEssentials]:
    query = (
        select(Endpoint, EndpointStats)
        .outerjoin(EndpointStats, EndpointStats.endpoint_id == Endpoint.id)
        .order_by(Endpoint.id)
    )
    result = await session.execute(query)

    essentials = []
    for endpoint, stats in result.all():
        avg_latency, uptime = _averages(stats)
        total = stats.total_checks if stats else 0
        successful = stats.successful_checks if stats else 0
        essentials.append(EndpointEssentials(
            id=endpoint.id,
            service_name=endpoint.service_name,
            server_name=endpoint.server_name,
            url=endpoint.url,
            total_checks=total,
            successful_checks=successful,
            downtime_count=total - successful,
            uptime_percentage=uptime,
            avg_latency=avg_latency,
            last_run=bool(stats and stats.last_run),
            failure_count=stats.failure_count if stats else 0,
        ))
    return essentials

async def get_aggregate_stats(session: AsyncSession) -> AggregateStats:
    endpoint_count = (await session.execute(select(func.count(Endpoint.id)))).scalar() or 0

    totals = await session.execute(
        select(
            func.coalesce(func.sum(EndpointStats.total_checks), 0),
            func.coalesce(func.sum(EndpointStats.successful_checks), 0),
            func.coalesce(func.sum(EndpointStats.total_latency), 0),
        )
    )
    total_checks, successful, total_latency = totals.one()

    return AggregateStats(
        total_endpoints=endpoint_count,
        total_checks=total_checks,
        successful_checks=successful,
        down_time_count=total_checks - successful,
        overall_uptime=100.0 * successful / total_checks if total_checks else 0.0,
        average_latency=total_latency / total_checks if total_checks else 0.0,
    )
