"""
Pipeline run state machine.

    pending --approve--> accepted --chain starts--> running --all stages ok--> completed
       |                                               |
       +--reject--> rejected <--any stage fails--------+

Trigger, approve and reject are synchronous. The execution chain runs as
a background task owned by the service, not by the request that approved
it, so a client disconnecting never cancels a deployment.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from opswatch.src.config import get_settings
from opswatch.src.models.pipeline import (
    AuthorizationRequest,
    ExecutionHistory,
    PipelineRun,
    PipelineStatus,
    Service,
)
from opswatch.src.models.schemas import PipelineRunStatus
from opswatch.src.services import pipelines
from opswatch.src.services.errors import (
    FetchFailed,
    InvalidSelectionError,
    NotFoundError,
    NotPendingError,
    OpsWatchError,
    PersistenceError,
    PollFailed,
    PollTimeout,
    RecordFailed,
    StageError,
    TriggerFailed,
    UpstreamError,
    ValidationError,
)
from opswatch.src.services.gitlab import SUCCESS, TERMINAL_PIPELINE_STATUSES, CIProvider
from opswatch.src.services.notifier import (
    NotificationGateway,
    render_authorization_request,
    render_execution_history,
)
from opswatch.src.services.realtime import PipelineEventPublisher, RealtimeHub
from opswatch.src.services.retry import RetryError, poll_until, retry_with_backoff
from opswatch.src.services.users import get_delivery_address

logger = logging.getLogger(__name__)

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _elapsed_since(started_at: datetime) -> float:
    # SQLite hands back naive datetimes
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return max((_utcnow() - started_at).total_seconds(), 0.0)

class PipelineService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        ci_provider: CIProvider,
        notifier: NotificationGateway,
        hub: RealtimeHub,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
        execution_timeout: Optional[float] = None,
        fetch_retries: Optional[int] = None,
        fetch_backoff: Optional[float] = None,
        fetch_timeout: Optional[float] = None,
        db_timeout: Optional[float] = None,
        gitlab_ref: Optional[str] = None,
        deploy_variables: Optional[Dict[str, str]] = None,
    ):
        settings = get_settings()

        def pick(value, default):
            return default if value is None else value

        self.session_factory = session_factory
        self.ci = ci_provider
        self.notifier = notifier
        self.hub = hub
        self.events = PipelineEventPublisher(hub, self.get_run_status_detail)

        self.poll_interval = pick(poll_interval, settings.poll_interval)
        self.poll_timeout = pick(poll_timeout, settings.poll_timeout)
        self.execution_timeout = pick(execution_timeout, settings.execution_timeout)
        self.fetch_retries = pick(fetch_retries, settings.fetch_retries)
        self.fetch_backoff = pick(fetch_backoff, settings.fetch_backoff)
        self.fetch_timeout = pick(fetch_timeout, settings.fetch_timeout)
        self.db_timeout = pick(db_timeout, settings.db_timeout)
        self.gitlab_ref = pick(gitlab_ref, settings.gitlab_ref)
        self.deploy_variables = pick(
            deploy_variables, {settings.deploy_env_key: settings.deploy_env_value}
        )

        self._background: Set[asyncio.Task] = set()
        self._finalized: Set[UUID] = set()

    # Background work

    def _spawn(self, coro, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @property
    def background_tasks(self) -> Set[asyncio.Task]:
        return set(self._background)

    async def wait_for_background(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for execution chains and notifications, including the ones
        they spawn. Returns False if `timeout` elapsed first.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while self._background:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self._background), timeout=remaining)
        return True

    async def shutdown(self, timeout: float = 10.0):
        if await self.wait_for_background(timeout):
            return

        pending = set(self._background)
        logger.warning(f"Cancelling {len(pending)} unfinished pipeline task(s)")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    # Read side

    async def get_run_status_detail(self, run_id: UUID) -> PipelineRunStatus:
        async with self.session_factory() as session:
            return await pipelines.get_run_status_detail(session, run_id)

    # Trigger / approve / reject

    async def trigger(
        self, pipeline_unit_id: UUID, requester_id: UUID, selected_micro_service_ids: List[UUID]
    ) -> PipelineRun:
        """
        Create a pending run for the selected micro services of a unit,
        together with its authorization request.
        """
        async with self.session_factory() as session:
            unit = await pipelines.get_pipeline_unit(session, pipeline_unit_id)

            declared = unit.micro_service_ids
            for service_id in selected_micro_service_ids:
                if service_id not in declared:
                    raise InvalidSelectionError(service_id, pipeline_unit_id)

            if len(set(selected_micro_service_ids)) != len(selected_micro_service_ids):
                raise ValidationError("Duplicate micro service IDs in selection")

            if not selected_micro_service_ids and unit.macro_service_id is None:
                raise ValidationError(f"Nothing to run: pipeline unit {pipeline_unit_id} has no macro service")

            # Stages run in the unit's declared order, whatever order they were picked in
            selected = [service_id for service_id in declared if service_id in selected_micro_service_ids]

            run = PipelineRun(
                pipeline_unit_id=unit.id,
                status=PipelineStatus.PENDING.value,
                selected_micro_service_ids=[str(service_id) for service_id in selected],
            )
            session.add(run)

            try:
                await session.flush()
                request = AuthorizationRequest(
                    pipeline_run_id=run.id,
                    requester_id=requester_id,
                    status=PipelineStatus.PENDING.value,
                )
                session.add(request)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError(f"Failed to create pipeline run: {e}")

            await session.refresh(run)

        logger.info(f"Pipeline run {run.id} triggered by {requester_id} for unit {pipeline_unit_id}")

        self._spawn(self._notify_authorization(request.id, "Pipeline Triggered"))
        await self.events.publish(
            run.id, PipelineStatus.PENDING.value, "Pipeline execution triggered, awaiting approval"
        )
        return run

    async def _decide(self, request_id: UUID, approver_id: UUID, status: PipelineStatus, comment: str):
        """
        Move a pending request to `status`. Raises NotPendingError if some
        other decision got there first.
        Returns the session-bound request, run and new history.
        """
        async with self.session_factory() as session:
            try:
                request = await session.get(AuthorizationRequest, request_id)
                if request is None:
                    raise NotFoundError(f"Authorization request {request_id} not found")

                result = await session.execute(
                    update(AuthorizationRequest)
                    .where(
                        AuthorizationRequest.id == request_id,
                        AuthorizationRequest.status == PipelineStatus.PENDING.value,
                    )
                    .values(
                        status=status.value,
                        approver_id=approver_id,
                        comment=comment,
                        updated_at=func.now(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise NotPendingError(request_id, request.status)

                await session.refresh(request)
                run = await pipelines.get_pipeline_run(session, request.pipeline_run_id)
                run.status = status.value
                run.approver_id = approver_id

                macro_name, micro_names = await pipelines.run_service_names(session, run)
                now = _utcnow()
                history = ExecutionHistory(
                    pipeline_run_id=run.id,
                    requester_id=request.requester_id,
                    approver_id=approver_id,
                    status=PipelineStatus.RUNNING.value,
                    started_at=now,
                    macro_service_name=macro_name,
                    micro_service_names=micro_names,
                )
                if status == PipelineStatus.REJECTED:
                    history.status = PipelineStatus.REJECTED.value
                    history.completed_at = now
                    history.execution_time = 0.0
                    history.error_message = comment
                session.add(history)

                await session.commit()
                return request, run, history
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError(f"Failed to record decision on {request_id}: {e}")

    async def approve(self, request_id: UUID, approver_id: UUID, comment: str = "") -> AuthorizationRequest:
        """
        Accept a pending request and launch the execution chain in the
        background. Returns as soon as the approval is stored.
        """
        request, run, history = await self._decide(
            request_id, approver_id, PipelineStatus.ACCEPTED, comment
        )
        logger.info(f"Pipeline run {run.id} approved by {approver_id}")

        await self.events.publish(run.id, PipelineStatus.ACCEPTED.value, "Pipeline run approved")
        self._spawn(self._notify_authorization(request.id, "Pipeline Has Been Approved"))
        self._spawn(self._execute(run.id, history.id), name=f"pipeline-run-{run.id}")
        return request

    async def reject(self, request_id: UUID, approver_id: UUID, comment: str = "") -> AuthorizationRequest:
        request, run, history = await self._decide(
            request_id, approver_id, PipelineStatus.REJECTED, comment
        )
        logger.info(f"Pipeline run {run.id} rejected by {approver_id}: {comment}")

        await self.events.publish(
            run.id, PipelineStatus.REJECTED.value, f"Pipeline run rejected: {comment}"
        )
        self._spawn(self._notify_authorization(request.id, "Pipeline Has Been Rejected"))
        return request

    # Execution chain

    async def _db(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.db_timeout)
        except asyncio.TimeoutError:
            raise PersistenceError(f"Database call exceeded {self.db_timeout:g}s")

    async def _update_run(self, run_id: UUID, **values):
        async def write():
            async with self.session_factory() as session:
                await session.execute(
                    update(PipelineRun)
                    .where(PipelineRun.id == run_id)
                    .values(updated_at=func.now(), **values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

        await self._db(write())

    async def _finish_history(self, history_id: UUID, status: PipelineStatus, error_message: Optional[str] = None) -> float:
        """Close the history record and return the run's duration in seconds."""
        async def write():
            async with self.session_factory() as session:
                history = await session.get(ExecutionHistory, history_id)
                if history is None:
                    raise NotFoundError(f"Execution history {history_id} not found")
                history.status = status.value
                history.completed_at = _utcnow()
                history.execution_time = _elapsed_since(history.started_at)
                history.error_message = error_message
                await session.commit()
                return history.execution_time

        return await self._db(write())

    async def _fetch_service(self, service_id: UUID) -> Service:
        async def fetch():
            async with self.session_factory() as session:
                return await pipelines.get_service(session, service_id)

        try:
            return await retry_with_backoff(
                lambda: asyncio.wait_for(fetch(), timeout=self.fetch_timeout),
                retries=self.fetch_retries,
                initial_delay=self.fetch_backoff,
                retry_on=(OpsWatchError, SQLAlchemyError, OSError, asyncio.TimeoutError),
                description=f"fetch service {service_id}",
            )
        except RetryError as e:
            raise FetchFailed(service_id, e.last_error)

    async def _run_stage(self, run_id: UUID, service: Service, is_last: bool):
        await self.events.publish(
            run_id,
            PipelineStatus.RUNNING.value,
            f"Starting pipeline for service {service.name}",
            current_service_id=service.id,
        )

        variables = dict(self.deploy_variables) if is_last else {}
        try:
            pipeline_id = await self.ci.create_pipeline(service.gitlab_repo_id, self.gitlab_ref, variables)
        except Exception as e:
            raise TriggerFailed(service.id, service.name, e)

        try:
            await self._update_run(run_id, gitlab_pipeline_id=pipeline_id)
        except Exception as e:
            raise RecordFailed(service.id, service.name, pipeline_id, e)
        logger.info(f"Run {run_id}: service {service.name} started GitLab pipeline {pipeline_id}")

        try:
            status = await poll_until(
                lambda: self.ci.get_pipeline_status(service.gitlab_repo_id, pipeline_id),
                lambda s: s in TERMINAL_PIPELINE_STATUSES,
                interval=self.poll_interval,
                timeout=self.poll_timeout,
            )
        except asyncio.TimeoutError:
            raise PollTimeout(service.id, service.name, pipeline_id, self.poll_timeout)
        except UpstreamError as e:
            raise PollFailed(service.id, service.name, pipeline_id, f"unknown ({e})")

        if status != SUCCESS:
            raise PollFailed(service.id, service.name, pipeline_id, status)

        logger.info(f"Run {run_id}: service {service.name} pipeline {pipeline_id} succeeded")

    async def _execute_chain(self, run_id: UUID, history_id: UUID):
        async def load():
            async with self.session_factory() as session:
                return await pipelines.get_pipeline_run(session, run_id)

        run = await self._db(load())
        await self._update_run(run_id, status=PipelineStatus.RUNNING.value)

        stage_ids = run.selected_ids
        if run.unit.macro_service_id is not None:
            stage_ids.append(run.unit.macro_service_id)

        try:
            services = [await self._fetch_service(service_id) for service_id in stage_ids]
            for index, service in enumerate(services):
                await self._run_stage(run_id, service, is_last=index == len(services) - 1)
        except StageError as e:
            logger.error(f"Pipeline run {run_id} failed at service {e.service_id}: {e}")
            await self._fail_run(run_id, history_id, str(e))
            return

        execution_time = await self._finish_history(history_id, PipelineStatus.COMPLETED)
        await self._update_run(
            run_id, status=PipelineStatus.COMPLETED.value, execution_time=execution_time
        )
        self._finalized.add(run_id)
        logger.info(f"Pipeline run {run_id} completed in {execution_time:.1f}s")

        self._spawn(
            self._announce(
                run_id,
                history_id,
                PipelineStatus.COMPLETED,
                "Pipeline run completed successfully",
                "Pipeline Has Run And Completed Successful",
            )
        )

    async def _execute(self, run_id: UUID, history_id: UUID):
        try:
            await asyncio.wait_for(
                self._execute_chain(run_id, history_id), timeout=self.execution_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Pipeline run {run_id} exceeded {self.execution_timeout:g}s")
            await self._fail_run(
                run_id, history_id, f"Pipeline execution timed out after {self.execution_timeout:g}s"
            )
        except Exception as e:
            logger.exception(f"Pipeline run {run_id} crashed")
            await self._fail_run(run_id, history_id, f"Pipeline execution error: {e}")
        finally:
            self._finalized.discard(run_id)

    async def _fail_run(self, run_id: UUID, history_id: UUID, message: str):
        """Record a run as rejected. A run that already reached a final state is left alone."""
        if run_id in self._finalized:
            logger.warning(f"Pipeline run {run_id} already finalized, ignoring failure: {message}")
            return

        try:
            execution_time = await self._finish_history(history_id, PipelineStatus.REJECTED, message)
            await self._update_run(
                run_id, status=PipelineStatus.REJECTED.value, execution_time=execution_time
            )
        except Exception:
            logger.exception(f"Failed to record failure of pipeline run {run_id}")
            return
        self._finalized.add(run_id)

        self._spawn(
            self._announce(
                run_id,
                history_id,
                PipelineStatus.REJECTED,
                f"Pipeline run failed: {message}",
                "Pipeline Run Failed",
            )
        )

    async def _announce(self, run_id: UUID, history_id: UUID, status: PipelineStatus, message: str, subject: str):
        # spawned, never under the execution ceiling
        await self.events.publish(run_id, status.value, message)
        await self._notify_history(history_id, subject)

    # Notifications (best effort)

    async def _send_to_requester(self, requester_id: UUID, subject: str, html: str):
        async with self.session_factory() as session:
            try:
                address = await get_delivery_address(session, requester_id)
            except NotFoundError as e:
                address = ""
                logger.warning(f"Delivery address lookup failed for {requester_id}: {e}")

        if not address:
            logger.warning(f"No delivery address for {requester_id}, skipping '{subject}'")
            return

        await self.notifier.send_html(subject, html, [address])

    async def _notify_authorization(self, request_id: UUID, subject: str):
        try:
            async with self.session_factory() as session:
                view = await pipelines.get_authorization_request(session, request_id)
            await self._send_to_requester(view.requester_id, subject, render_authorization_request(view))
        except Exception as e:
            logger.error(f"Failed to send '{subject}' notification for request {request_id}: {e}")

    async def _notify_history(self, history_id: UUID, subject: str):
        try:
            async with self.session_factory() as session:
                view = await pipelines.get_execution_history(session, history_id)
            await self._send_to_requester(view.requester_id, subject, render_execution_history(view))
        except Exception as e:
            logger.error(f"Failed to send '{subject}' notification for history {history_id}: {e}")
