"""
Realtime fan-out of pipeline run events to websocket subscribers.

`RealtimeHub` is a small actor: one loop task owns the subscriber map and
performs every outbound write. Everything else talks to it by putting
commands on its queue.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional, Protocol, Set
from uuid import UUID

from opswatch.src.models.schemas import PipelineRunStatus, RealtimeMessage

logger = logging.getLogger(__name__)

STATUS_CHANGE = "pipeline_status_change"

_REGISTER = "register"
_UNREGISTER = "unregister"
_BROADCAST = "broadcast"
_STOP = "stop"

class Connection(Protocol):
    async def send_text(self, data: str) -> None:
        ...

    async def close(self) -> None:
        ...

class RealtimeHub:
    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._subscribers: Dict[str, Set[Connection]] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="realtime-hub")
        logger.info("Realtime hub started")

    async def stop(self):
        """Stop the loop after queued commands are handled and close every connection."""
        if self._task is None:
            return
        await self._queue.put((_STOP, None, None))
        await self._task
        self._task = None

        for entity_id in list(self._subscribers):
            for connection in list(self._subscribers.get(entity_id, ())):
                await self._remove(entity_id, connection)
        logger.info("Realtime hub stopped")

    async def join(self):
        """Wait until every queued command has been handled."""
        await self._queue.join()

    async def subscribe(self, entity_id, connection: Connection):
        await self._queue.put((_REGISTER, str(entity_id), connection))

    async def unsubscribe(self, entity_id, connection: Connection):
        await self._queue.put((_UNREGISTER, str(entity_id), connection))

    async def broadcast(self, message: RealtimeMessage):
        await self._queue.put((_BROADCAST, message.id, message))

    def subscriber_count(self, entity_id) -> int:
        return len(self._subscribers.get(str(entity_id), ()))

    async def _run(self):
        while True:
            kind, entity_id, item = await self._queue.get()
            try:
                if kind == _STOP:
                    return
                if kind == _REGISTER:
                    self._subscribers.setdefault(entity_id, set()).add(item)
                    logger.debug(f"Subscribed connection to {entity_id}")
                elif kind == _UNREGISTER:
                    await self._remove(entity_id, item)
                elif kind == _BROADCAST:
                    await self._deliver(entity_id, item)
            except Exception:
                logger.exception(f"Realtime hub failed handling {kind} for {entity_id}")
            finally:
                self._queue.task_done()

    async def _remove(self, entity_id: str, connection: Connection):
        connections = self._subscribers.get(entity_id)
        if not connections or connection not in connections:
            return

        connections.discard(connection)
        if not connections:
            del self._subscribers[entity_id]

        try:
            await connection.close()
        except Exception as e:
            logger.warning(f"Error closing connection for {entity_id}: {e}")

    async def _deliver(self, entity_id: str, message: RealtimeMessage):
        connections = self._subscribers.get(entity_id)
        if not connections:
            return

        data = message.model_dump_json()
        for connection in list(connections):
            try:
                await connection.send_text(data)
            except Exception as e:
                logger.warning(f"Dropping subscriber of {entity_id} after write failure: {e}")
                await self._remove(entity_id, connection)

class PipelineEventPublisher:
    """
    Turns (run id, status, message) into enriched realtime messages.

    `describe_run` returns the denormalized run view. When it fails the
    bare event is broadcast instead.
    """

    def __init__(self, hub: RealtimeHub, describe_run: Callable[[UUID], Awaitable[PipelineRunStatus]]):
        self.hub = hub
        self.describe_run = describe_run

    async def publish(
        self,
        run_id: UUID,
        status: str,
        message: str,
        current_service_id: Optional[UUID] = None,
    ):
        now = datetime.now(timezone.utc)

        try:
            detail = await self.describe_run(run_id)
            payload = self._enriched_payload(detail, status, message, current_service_id, now)
        except Exception as e:
            logger.warning(f"Could not enrich event for run {run_id}, sending basic payload: {e}")
            payload = {
                "type": STATUS_CHANGE,
                "pipeline_run_id": str(run_id),
                "status": status,
                "message": message,
                "timestamp": now.isoformat(),
            }

        await self.hub.broadcast(
            RealtimeMessage(
                type=STATUS_CHANGE,
                id=str(run_id),
                payload=json.dumps(payload),
                timestamp=now,
            )
        )

    @staticmethod
    def _enriched_payload(detail: PipelineRunStatus, status, message, current_service_id, now) -> dict:
        micro_names = list(detail.micro_service_names)
        services = ([detail.macro_service_name] if detail.macro_service_name else []) + micro_names

        payload = {
            "type": STATUS_CHANGE,
            "pipeline_run_id": str(detail.id),
            "pipeline_unit_id": str(detail.pipeline_unit_id),
            "status": status,
            "message": message,
            "macro_service_name": detail.macro_service_name,
            "micro_service_names": micro_names,
            "requester_name": detail.requester_name,
            "approver_name": detail.approver_name,
            "timestamp": now.isoformat(),
            "pipeline_info": {
                "services": services,
                "gitlab_pipeline_id": detail.gitlab_pipeline_id,
                "created_at": detail.created_at.isoformat() if detail.created_at else None,
            },
        }
        if current_service_id is not None:
            payload["current_service_id"] = str(current_service_id)
        return payload
