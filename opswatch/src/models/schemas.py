from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime, timezone
from uuid import UUID

from opswatch.src.models.pipeline import ServiceType

class EndpointBase(BaseModel):
    service_name: str
    url: str
    server_name: str
    api_method: str = "GET"
    expected_status_code: int = 200

class EndpointCreate(EndpointBase):
    gitlab_url: Optional[str] = None
    docker_container_name: Optional[str] = None
    kubernetes_pod_name: Optional[str] = None
    tags: List[str] = []
    description: Optional[str] = None
    last_changed_by: Optional[str] = None

class EndpointResponse(EndpointCreate):
    id: int

    @field_validator("tags", mode="before")
    @classmethod
    def default_tags(cls, v):
        return v or []

    class Config:
        from_attributes = True

class EndpointDetail(EndpointResponse):
    total_checks: int = 0
    successful_checks: int = 0
    failure_count: int = 0
    avg_latency: float = 0.0
    uptime_percentage: float = 0.0
    last_run_succeeded: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class EndpointEssentials(BaseModel):
    id: int
    service_name: str
    server_name: str
    url: str
    total_checks: int
    successful_checks: int
    downtime_count: int
    uptime_percentage: float
    avg_latency: float
    last_run: bool
    failure_count: int

class AggregateStats(BaseModel):
    total_endpoints: int
    total_checks: int
    successful_checks: int
    down_time_count: int
    overall_uptime: float
    average_latency: float

class CheckResult(BaseModel):
    endpoint_id: int
    status_code: Optional[int] = None
    latency_ms: float
    success: bool
    error: Optional[str] = None

class ServiceCreate(BaseModel):
    gitlab_repo_id: str
    name: str
    url: str
    type: ServiceType

class ServiceResponse(BaseModel):
    id: UUID
    gitlab_repo_id: str
    name: str
    url: str
    type: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PipelineUnitCreate(BaseModel):
    macro_service_id: Optional[UUID] = None
    micro_service_ids: List[UUID] = []

class PipelineUnitResponse(BaseModel):
    id: UUID
    macro_service_id: Optional[UUID] = None
    micro_service_ids: List[UUID] = []
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PipelineUnitWithServices(PipelineUnitResponse):
    macro_service: Optional[ServiceResponse] = None
    micro_services: List[ServiceResponse] = []

class TriggerRequest(BaseModel):
    selected_micro_service_ids: List[UUID] = []

class DecisionRequest(BaseModel):
    comment: str = ""

class PipelineRunResponse(BaseModel):
    id: UUID
    pipeline_unit_id: UUID
    status: str
    selected_micro_service_ids: List[str] = []
    gitlab_pipeline_id: Optional[int] = None
    approver_id: Optional[UUID] = None
    execution_time: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class AuthorizationRequestResponse(BaseModel):
    id: UUID
    pipeline_run_id: UUID
    requester_id: UUID
    requester_name: str = ""
    approver_id: Optional[UUID] = None
    approver_name: str = ""
    status: str
    comment: str = ""
    macro_service_name: str = ""
    micro_service_names: List[str] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class ExecutionHistoryResponse(BaseModel):
    id: UUID
    pipeline_run_id: UUID
    pipeline_unit_id: Optional[UUID] = None
    requester_id: UUID
    requester_name: str = ""
    approver_id: Optional[UUID] = None
    approver_name: str = ""
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    execution_time: Optional[float] = None
    error_message: Optional[str] = None
    macro_service_name: str = ""
    micro_service_names: List[str] = []

class PipelineRunStatus(BaseModel):
    id: UUID
    pipeline_unit_id: UUID
    status: str
    macro_service_name: str = ""
    micro_service_names: List[str] = []
    requester_name: str = ""
    approver_name: str = ""
    gitlab_pipeline_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class PipelineStatusResponse(BaseModel):
    running: List[PipelineRunStatus] = []
    pending: List[PipelineRunStatus] = []
    completed: List[PipelineRunStatus] = []
    failed: List[PipelineRunStatus] = []
    total: int = 0

class RealtimeMessage(BaseModel):
    """Envelope pushed to realtime subscribers. `payload` is a JSON string."""
    type: str
    id: str
    payload: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
