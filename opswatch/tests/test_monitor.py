"""Tests for endpoint registration, probing and stats."""

import asyncio

import httpx
import pytest
from sqlalchemy import func, select

from opswatch.src.models import Check, Endpoint, EndpointStats
from opswatch.src.models.schemas import EndpointCreate
from opswatch.src.services import monitor
from opswatch.src.services.errors import DuplicateEndpointError, NotFoundError

MANIFEST = [
    {"service_name": "billing", "server_name": "prod-1", "url": "http://billing.local/health",
     "api_method": "GET", "expected_status_code": 200},
    {"service_name": "search", "server_name": "prod-1", "url": "http://search.local/ping",
     "api_method": "GET", "expected_status_code": 204},
]

def mock_client(status_by_host):
    def handler(request):
        status = status_by_host.get(request.url.host)
        if status is None:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status)
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))

async def endpoint_count(session):
    return (await session.execute(select(func.count(Endpoint.id)))).scalar()

async def test_manifest_merge_is_idempotent(session):
    await monitor.sync_endpoints(session, MANIFEST)
    await monitor.sync_endpoints(session, MANIFEST)

    variant = [dict(MANIFEST[0], url="HTTP://Billing.local/health/")]
    endpoints = await monitor.sync_endpoints(session, variant)

    assert await endpoint_count(session) == 2
    assert len(endpoints) == 2

async def test_manifest_merge_adds_new_identity(session):
    await monitor.sync_endpoints(session, MANIFEST)
    other_server = [dict(MANIFEST[0], server_name="prod-2")]
    await monitor.sync_endpoints(session, other_server)
    assert await endpoint_count(session) == 3

async def test_create_endpoint_normalizes_and_keeps_metadata(session):
    endpoint = await monitor.create_endpoint(session, EndpointCreate(
        service_name="billing",
        server_name="prod-1",
        url=" http://Billing.local/health/ ",
        api_method="get",
        tags=["payments"],
        kubernetes_pod_name="billing-7d9",
        last_changed_by="ops",
    ))
    assert endpoint.url == "http://billing.local/health"
    assert endpoint.api_method == "GET"
    assert endpoint.tags == ["payments"]
    assert endpoint.kubernetes_pod_name == "billing-7d9"

async def test_duplicate_endpoint_rejected(session):
    data = EndpointCreate(service_name="billing", server_name="prod-1", url="http://billing.local/health")
    await monitor.create_endpoint(session, data)

    duplicate = EndpointCreate(service_name="other", server_name="prod-1", url="http://BILLING.local/health/")
    with pytest.raises(DuplicateEndpointError):
        await monitor.create_endpoint(session, duplicate)

    # different expected code is a different endpoint
    await monitor.create_endpoint(session, EndpointCreate(
        service_name="billing", server_name="prod-1", url="http://billing.local/health",
        expected_status_code=204))
    assert await endpoint_count(session) == 2

async def test_get_unknown_endpoint(session):
    with pytest.raises(NotFoundError):
        await monitor.get_endpoint(session, 999)

async def test_probe_success_and_failure_recorded(session, session_factory):
    endpoints = await monitor.sync_endpoints(session, MANIFEST)
    billing, search = endpoints

    async with mock_client({"billing.local": 200, "search.local": 500}) as client:
        ok = await monitor.check_endpoint(session_factory, client, billing)
        bad = await monitor.check_endpoint(session_factory, client, search)

    assert ok.success and ok.status_code == 200
    assert not bad.success and bad.status_code == 500

    detail = await monitor.get_endpoint_detail(session, search.id)
    assert detail.total_checks == 1
    assert detail.successful_checks == 0
    assert detail.failure_count == 1
    assert detail.last_run_succeeded is False

async def test_transport_error_is_a_failed_check(session, session_factory):
    endpoint = (await monitor.sync_endpoints(session, MANIFEST[:1]))[0]

    async with mock_client({}) as client:
        result = await monitor.check_endpoint(session_factory, client, endpoint)

    assert result.success is False
    assert result.status_code is None
    assert "connection refused" in result.error

    checks = (await session.execute(select(func.count(Check.id)))).scalar()
    assert checks == 1

async def test_failure_count_resets_on_success(session, session_factory):
    endpoint = (await monitor.sync_endpoints(session, MANIFEST[:1]))[0]
    outcomes = [500, 500, 500, 200, 500]

    for status in outcomes:
        async with mock_client({"billing.local": status}) as client:
            await monitor.check_endpoint(session_factory, client, endpoint)

    async with session_factory() as fresh:
        stats = await fresh.get(EndpointStats, endpoint.id)
    assert stats.total_checks == 5
    assert stats.successful_checks == 1
    assert stats.failure_count == 1
    assert stats.last_run is False

async def test_stats_add_up(session, session_factory):
    endpoint = (await monitor.sync_endpoints(session, MANIFEST[:1]))[0]
    outcomes = [200, 503, 200, 200, 404, 200]

    for status in outcomes:
        async with mock_client({"billing.local": status}) as client:
            await monitor.check_endpoint(session_factory, client, endpoint)

    async with session_factory() as fresh:
        stats = await fresh.get(EndpointStats, endpoint.id)
    failed = sum(1 for status in outcomes if status != 200)
    assert stats.total_checks == len(outcomes)
    assert stats.successful_checks + failed == len(outcomes)
    assert stats.total_latency >= 0

async def test_concurrent_checks_do_not_lose_updates(session, session_factory):
    endpoint = (await monitor.sync_endpoints(session, MANIFEST[:1]))[0]
    k = 10

    async with mock_client({"billing.local": 200}) as client:
        await asyncio.gather(*[
            monitor.check_endpoint(session_factory, client, endpoint) for _ in range(k)
        ])

    async with session_factory() as fresh:
        stats = await fresh.get(EndpointStats, endpoint.id)
    assert stats.total_checks == k
    assert stats.successful_checks == k

async def test_essentials_and_aggregate(session, session_factory):
    billing, search = await monitor.sync_endpoints(session, MANIFEST)

    async with mock_client({"billing.local": 200, "search.local": 204}) as client:
        await monitor.check_endpoint(session_factory, client, billing)
        await monitor.check_endpoint(session_factory, client, search)
    async with mock_client({"billing.local": 500, "search.local": 204}) as client:
        await monitor.check_endpoint(session_factory, client, billing)

    async with session_factory() as fresh:
        essentials = await monitor.list_endpoint_essentials(fresh)
        aggregate = await monitor.get_aggregate_stats(fresh)

    by_service = {e.service_name: e for e in essentials}
    assert by_service["billing"].total_checks == 2
    assert by_service["billing"].downtime_count == 1
    assert by_service["billing"].uptime_percentage == 50.0
    assert by_service["search"].uptime_percentage == 100.0

    assert aggregate.total_endpoints == 2
    assert aggregate.total_checks == 3
    assert aggregate.successful_checks == 2
    assert aggregate.down_time_count == 1

async def test_aggregate_with_no_checks(session):
    aggregate = await monitor.get_aggregate_stats(session)
    assert aggregate.total_endpoints == 0
    assert aggregate.overall_uptime == 0.0
