"""
Error taxonomy shared by the monitor and pipeline services.
"""

class OpsWatchError(Exception):
    """Base class for all service-level errors."""
    pass

class ValidationError(OpsWatchError):
    """Bad input shape or selection."""
    pass

class NotFoundError(OpsWatchError):
    """Unknown endpoint, service, unit, run or request."""
    pass

class ConflictError(OpsWatchError):
    """Operation conflicts with current state."""
    pass

class UpstreamError(OpsWatchError):
    """CI provider or notification failure."""
    pass

class OperationTimeoutError(OpsWatchError):
    """A poll, probe or execution ceiling elapsed."""
    pass

class PersistenceError(OpsWatchError):
    """Storage layer failure."""
    pass

class AlreadyRunningError(ConflictError):
    pass

class NotRunningError(ConflictError):
    pass

class NotPendingError(ConflictError):
    def __init__(self, request_id, status):
        super().__init__(f"Authorization request {request_id} is not pending (status: {status})")
        self.request_id = request_id
        self.status = status

class DuplicateEndpointError(ConflictError):
    pass

class InvalidSelectionError(ValidationError):
    def __init__(self, service_id, pipeline_unit_id):
        super().__init__(
            f"Invalid selected microservice ID: {service_id} "
            f"is not part of pipeline unit {pipeline_unit_id}"
        )
        self.service_id = service_id
        self.pipeline_unit_id = pipeline_unit_id

class StageError(OpsWatchError):
    """Terminal failure of one stage of an execution chain."""

    def __init__(self, service_id, message):
        super().__init__(message)
        self.service_id = service_id

class FetchFailed(StageError, PersistenceError):
    def __init__(self, service_id, cause):
        super().__init__(service_id, f"Failed to fetch services: {cause}")
        self.cause = cause

class TriggerFailed(StageError, UpstreamError):
    def __init__(self, service_id, service_name, cause):
        super().__init__(service_id, f"Service {service_name} pipeline failed to start: {cause}")
        self.cause = cause

class PollTimeout(StageError, OperationTimeoutError):
    def __init__(self, service_id, service_name, pipeline_id, timeout):
        super().__init__(
            service_id,
            f"Service {service_name} pipeline {pipeline_id} timed out after {timeout:g}s",
        )
        self.pipeline_id = pipeline_id

class PollFailed(StageError, UpstreamError):
    def __init__(self, service_id, service_name, pipeline_id, status):
        super().__init__(
            service_id,
            f"Service {service_name} pipeline {pipeline_id} failed with status {status}",
        )
        self.pipeline_id = pipeline_id
        self.status = status

class RecordFailed(StageError, PersistenceError):
    def __init__(self, service_id, service_name, pipeline_id, cause):
        super().__init__(
            service_id,
            f"Service {service_name} pipeline {pipeline_id} could not be recorded: {cause}",
        )
        self.pipeline_id = pipeline_id
        self.cause = cause
