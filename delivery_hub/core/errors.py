from __future__ import annotations
from typing import Any


class PipelineError(Exception):
    """
    Base class for errors surfaced by the coverage pipeline.

    `code` is stable and machine-readable; `status_code` is the HTTP status the
    API layer renders it with.
    """
    code = "PIPELINE_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class ExternalFetchError(PipelineError):
    # provider unreachable, auth failure or malformed payload
    code = "EXTERNAL_FETCH_FAILED"
    status_code = 502

    def __init__(self, message: str, *, status: int | None = None, retryable: bool = False, details=None):
        super().__init__(message, details=details)
        self.status = status
        self.retryable = retryable


class InvalidTransitionError(PipelineError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, *, entity_id: str, current: str, target: str):
        super().__init__(
            f"cannot move staging city {entity_id} from {current} to {target}",
            details=[{"id": entity_id, "current": current, "target": target}],
        )
        self.entity_id = entity_id
        self.current = current
        self.target = target


class WriteConflictError(PipelineError):
    # another run of the same operation type is in flight
    code = "BUSY"
    status_code = 409

    def __init__(self, operation_type: str):
        super().__init__(f"{operation_type} is already running, retry later", details=[{"operation_type": operation_type}])
        self.operation_type = operation_type


class PerCityCommitError(PipelineError):
    code = "CITY_COMMIT_FAILED"
    status_code = 500

    def __init__(self, city_name: str, message: str, *, transient: bool = True):
        super().__init__(f"{city_name}: {message}")
        self.city_name = city_name
        self.transient = transient


class NotFoundError(PipelineError):
    code = "NOT_FOUND"
    status_code = 404
