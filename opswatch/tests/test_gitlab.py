"""Tests for the GitLab CI client."""

import json

import httpx
import pytest

from opswatch.src.services.errors import UpstreamError
from opswatch.src.services.gitlab import GitLabClient

def client_for(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GitLabClient("https://gitlab.example.com/api/v4/", "secret", client=http)

async def test_create_pipeline():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["token"] = request.headers.get("PRIVATE-TOKEN")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": 42, "status": "created"})

    gitlab = client_for(handler)
    pipeline_id = await gitlab.create_pipeline("group/repo-a", "development", {"DEPLOY_ENV": "QA"})

    assert pipeline_id == 42
    assert seen["url"] == "https://gitlab.example.com/api/v4/projects/group%2Frepo-a/pipeline"
    assert seen["token"] == "secret"
    assert seen["body"] == {
        "ref": "development",
        "variables": [{"key": "DEPLOY_ENV", "value": "QA"}],
    }

async def test_get_pipeline_status():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/api/v4/projects/123/pipelines/42"
        return httpx.Response(200, json={"id": 42, "status": "running"})

    assert await client_for(handler).get_pipeline_status("123", 42) == "running"

async def test_error_status_raises_upstream_error():
    def handler(request):
        return httpx.Response(500, text="boom")

    with pytest.raises(UpstreamError, match="returned 500"):
        await client_for(handler).create_pipeline("123", "main", {})

async def test_transport_error_raises_upstream_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamError, match="failed"):
        await client_for(handler).get_pipeline_status("123", 1)

async def test_missing_pipeline_id():
    def handler(request):
        return httpx.Response(201, json={"message": "ok"})

    with pytest.raises(UpstreamError, match="did not return a pipeline ID"):
        await client_for(handler).create_pipeline("123", "main", {})
