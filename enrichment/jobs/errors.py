"""
Job Errors

Synchronous categories (validation, state conflict, not found, auth) are raised
to the caller before any state change. ExternalServiceError is the only kind
raised inside a detached runner, where it is converted to a persisted failure.
"""

from typing import Optional


class EnrichmentError(Exception):
    """Base class for job orchestration errors."""
    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class JobValidationError(EnrichmentError):
    status_code = 400
    error_type = "validation_error"


class JobNotFoundError(EnrichmentError):
    status_code = 404
    error_type = "not_found"


class JobStateConflictError(EnrichmentError):
    status_code = 409
    error_type = "state_conflict"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class JobConcurrencyError(EnrichmentError):
    """Optimistic-concurrency retries were exhausted."""
    status_code = 409
    error_type = "concurrent_update"


class WorkerAuthError(EnrichmentError):
    status_code = 401
    error_type = "unauthorized"


class ExternalServiceError(EnrichmentError):
    status_code = 502
    error_type = "external_service_error"

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service
