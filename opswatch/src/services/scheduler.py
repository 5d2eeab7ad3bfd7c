"""
Periodic endpoint check scheduler.

Only one check loop may run per process. `Scheduler.start()` hands out a
`SchedulerHandle`; the loop runs until that handle is stopped.
"""

import asyncio
import logging
from typing import List, Optional, Set

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from opswatch.src.config import get_settings
from opswatch.src.services.errors import AlreadyRunningError, NotRunningError
from opswatch.src.services.manifest import load_manifest
from opswatch.src.services.monitor import check_endpoint, get_all_endpoints, sync_endpoints

logger = logging.getLogger(__name__)

class SchedulerHandle:
    """A running check loop. Stopping it is the only way to end the loop."""

    def __init__(self, endpoints: List, interval: float):
        self.endpoints = endpoints
        self.interval = interval
        self.stop_event = asyncio.Event()
        self.probes: Set[asyncio.Task] = set()
        self.ticks = 0
        self.task: Optional[asyncio.Task] = None

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    async def stop(self):
        """Stop dispatching and wait for the loop to exit. In-flight probes keep running."""
        self.stop_event.set()
        if self.task is not None:
            await self.task

class Scheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        http_client: httpx.AsyncClient,
        check_timer: Optional[float] = None,
        probe_timeout: Optional[float] = None,
        manifest_path: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self._check_timer = check_timer
        self._probe_timeout = probe_timeout
        self._manifest_path = manifest_path
        self._handle: Optional[SchedulerHandle] = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> Optional[SchedulerHandle]:
        return self._handle

    async def load_endpoints(self) -> List:
        """Merge the static manifest into storage and return every endpoint."""
        settings = get_settings()
        path = self._manifest_path or settings.endpoints_manifest
        entries = load_manifest(path)

        async with self.session_factory() as session:
            if entries is None:
                logger.info(f"No endpoint manifest at {path}, using stored endpoints")
                return await get_all_endpoints(session)
            return await sync_endpoints(session, entries)

    async def start(self) -> SchedulerHandle:
        async with self._lock:
            if self._handle is not None:
                raise AlreadyRunningError("Endpoints check already running")

            settings = get_settings()
            interval = self._check_timer if self._check_timer is not None else settings.check_timer
            if interval <= 0:
                raise ValueError(f"Check interval must be positive, got {interval}")

            endpoints = await self.load_endpoints()

            handle = SchedulerHandle(endpoints, interval)
            handle.task = asyncio.create_task(self._run(handle), name="endpoint-scheduler")
            self._handle = handle

            logger.info(f"Scheduler started: {len(endpoints)} endpoint(s) every {interval}s")
            return handle

    async def stop(self, handle: Optional[SchedulerHandle] = None):
        async with self._lock:
            if self._handle is None:
                raise NotRunningError("No endpoints check running")
            if handle is not None and handle is not self._handle:
                raise NotRunningError("Scheduler handle is not the running one")

            try:
                await self._handle.stop()
            finally:
                self._handle = None

    async def _run(self, handle: SchedulerHandle):
        try:
            while True:
                try:
                    await asyncio.wait_for(handle.stop_event.wait(), timeout=handle.interval)
                    return
                except asyncio.TimeoutError:
                    pass

                self._dispatch(handle)
        finally:
            logger.info("Scheduler stopped")

    def _dispatch(self, handle: SchedulerHandle):
        """Launch one probe per endpoint without waiting for any of them."""
        handle.ticks += 1
        for endpoint in handle.endpoints:
            if handle.stopped:
                return
            task = asyncio.create_task(self._probe(handle, endpoint))
            handle.probes.add(task)
            task.add_done_callback(handle.probes.discard)

    async def _probe(self, handle: SchedulerHandle, endpoint):
        if handle.stopped:
            return

        timeout = self._probe_timeout
        if timeout is None:
            timeout = get_settings().probe_timeout

        try:
            await check_endpoint(self.session_factory, self.http_client, endpoint, timeout)
        except Exception as e:
            logger.error(f"Error checking {endpoint.url}: {e}")
