from opswatch.src.models.monitor import Endpoint, Check, EndpointStats
from opswatch.src.models.pipeline import (
    PipelineStatus,
    ServiceType,
    Service,
    PipelineUnit,
    PipelineUnitDependency,
    PipelineRun,
    AuthorizationRequest,
    ExecutionHistory,
)
from opswatch.src.models.user import User

__all__ = [
    "Endpoint",
    "Check",
    "EndpointStats",
    "PipelineStatus",
    "ServiceType",
    "Service",
    "PipelineUnit",
    "PipelineUnitDependency",
    "PipelineRun",
    "AuthorizationRequest",
    "ExecutionHistory",
    "User",
]
