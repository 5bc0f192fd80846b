"""
Reconciliation error taxonomy.

Every error carries a stable ``code`` (stored on jobs and event logs) and a
``retryable`` flag that decides whether the retry queue schedules another
attempt or closes the job.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for all errors raised by the reconciliation core."""

    code = "reconciliation_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class MalformedPayload(ReconciliationError):
    """The payload cannot be turned into a canonical record. Never retried."""

    code = "malformed_payload"


class MissingIdentifier(MalformedPayload):
    """A recognized event lacks its entity's primary identifier."""

    code = "missing_identifier"

    def __init__(self, entity_type: str, field: str):
        super().__init__(f"{entity_type} payload has no {field}")
        self.entity_type = entity_type
        self.field = field


class OrganizationUnresolved(ReconciliationError):
    """Tenant could not be determined; the event is dropped without writes."""

    code = "organization_unresolved"


class DependencyNotYetAvailable(ReconciliationError):
    """
    A referenced row does not exist yet.

    When ``terminal_on_exhaustion`` is set, running out of attempts closes the
    job as legitimately unlinkable rather than failed.
    """

    code = "dependency_not_yet_available"
    retryable = True

    def __init__(self, message: str, terminal_on_exhaustion: bool = False):
        super().__init__(message)
        self.terminal_on_exhaustion = terminal_on_exhaustion


class UpstreamError(ReconciliationError):
    """Base class for failures talking to the commerce platform."""

    code = "upstream_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamRateLimited(UpstreamError):
    code = "upstream_rate_limited"
    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class UpstreamTimeout(UpstreamError):
    code = "upstream_timeout"
    retryable = True


class UpstreamUnavailable(UpstreamError):
    code = "upstream_unavailable"
    retryable = True


class UpstreamNotFound(UpstreamError):
    """Entity deleted or never existed upstream; terminal for the job."""

    code = "upstream_not_found"

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class StorageConstraintViolation(ReconciliationError):
    """An integrity error other than the expected natural-key conflict."""

    code = "storage_constraint_violation"


class UnknownJobStage(ReconciliationError):
    """A queued job names a stage no handler exists for."""

    code = "unknown_job_stage"
