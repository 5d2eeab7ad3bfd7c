from opswatch.src.services.errors import (
    OpsWatchError,
    ValidationError,
    NotFoundError,
    ConflictError,
    UpstreamError,
    OperationTimeoutError,
    PersistenceError,
)
from opswatch.src.services.manifest import (
    load_manifest,
    parse_manifest,
    validate_manifest,
    normalize_url,
    ManifestError,
)
from opswatch.src.services.retry import (
    retry_with_backoff,
    poll_until,
    RetryError,
)

__all__ = [
    "OpsWatchError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "UpstreamError",
    "OperationTimeoutError",
    "PersistenceError",
    "load_manifest",
    "parse_manifest",
    "validate_manifest",
    "normalize_url",
    "ManifestError",
    "retry_with_backoff",
    "poll_until",
    "RetryError",
]
