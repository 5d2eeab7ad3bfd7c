"""
GitLab CI client used to trigger and watch pipelines.
"""

import logging
from typing import Dict, Optional, Protocol
from urllib.parse import quote

import httpx

from opswatch.src.config import get_settings
from opswatch.src.services.errors import UpstreamError

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILED = "failed"
CANCELED = "canceled"
TERMINAL_PIPELINE_STATUSES = {SUCCESS, FAILED, CANCELED}

class CIProvider(Protocol):
    async def create_pipeline(self, project_id: str, ref: str, variables: Dict[str, str]) -> int:
        ...

    async def get_pipeline_status(self, project_id: str, pipeline_id: int) -> str:
        ...

class GitLabClient:
    """Minimal async client for the GitLab pipelines API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.gitlab_url).rstrip("/")
        self.token = token if token is not None else settings.gitlab_token
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _project_url(self, project_id: str) -> str:
        return f"{self.base_url}/projects/{quote(str(project_id), safe='')}"

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        headers = {"PRIVATE-TOKEN": self.token} if self.token else {}
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError(f"GitLab request {method} {url} failed: {e}")

        if response.status_code >= 400:
            raise UpstreamError(
                f"GitLab request {method} {url} returned {response.status_code}: {response.text[:200]}"
            )

        try:
            return response.json()
        except ValueError:
            raise UpstreamError(f"GitLab request {method} {url} returned invalid JSON")

    async def create_pipeline(self, project_id: str, ref: str, variables: Dict[str, str]) -> int:
        """Create a pipeline on `ref`. Returns the GitLab pipeline ID."""
        body = {
            "ref": ref,
            "variables": [{"key": key, "value": value} for key, value in variables.items()],
        }
        data = await self._request("POST", f"{self._project_url(project_id)}/pipeline", json=body)

        if "id" not in data:
            raise UpstreamError(f"GitLab did not return a pipeline ID for project {project_id}")

        logger.info(f"Created GitLab pipeline {data['id']} for project {project_id} on {ref}")
        return int(data["id"])

    async def get_pipeline_status(self, project_id: str, pipeline_id: int) -> str:
        data = await self._request("GET", f"{self._project_url(project_id)}/pipelines/{pipeline_id}")
        return data.get("status", "")

    async def close(self):
        if self._owns_client:
            await self._client.aclose()
