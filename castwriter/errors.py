"""Typed error hierarchy for the content pipeline.

Every error carries a ``retryable`` flag so an external retry policy (or a
human deciding between "regenerate" and "resume") can tell transient provider
trouble from bad data. ``to_dict()`` is what gets stored in a failed stage
record's ``error_details``.
"""

from datetime import UTC, datetime

# HTTP statuses that indicate a transient provider problem
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 529})


class CastwriterError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.timestamp = datetime.now(UTC).isoformat()

    def to_dict(self) -> dict:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "timestamp": self.timestamp,
            "retryable": self.retryable,
        }


class ProviderError(CastwriterError):
    """An AI completion provider rejected or failed a request."""

    def __init__(
        self,
        provider: str,
        status_code: int | None,
        message: str,
        details: dict | None = None,
    ):
        super().__init__(f"{provider} API error ({status_code or 'no status'}): {message}")
        self.provider = provider
        self.status_code = status_code
        self.details = details
        # No status code means the request never got a response (connection trouble)
        self.retryable = status_code is None or status_code in RETRYABLE_STATUS_CODES

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "provider": self.provider,
            "status_code": self.status_code,
            "details": self.details,
        }


class ProviderTimeoutError(ProviderError):
    """A provider call (or a whole stage) exceeded its time budget."""

    def __init__(self, provider: str, timeout_seconds: float):
        super().__init__(provider, None, f"request timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds
        self.retryable = True


class AnalyzerValidationError(CastwriterError):
    """Malformed stage input or model output. The data must change before a retry helps."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Validation failed for '{field}': {reason}")
        self.field = field
        self.reason = reason

    def to_dict(self) -> dict:
        return {**super().to_dict(), "field": self.field, "reason": self.reason}


class PersistenceError(CastwriterError):
    """The episode/stage store could not complete an operation."""

    retryable = True

    def __init__(self, operation: str, message: str):
        super().__init__(f"Store operation '{operation}' failed: {message}")
        self.operation = operation

    def to_dict(self) -> dict:
        return {**super().to_dict(), "operation": self.operation}


class NotFoundError(CastwriterError, LookupError):
    """A requested episode or stage record does not exist."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class InvalidStatusError(CastwriterError, ValueError):
    """An operation was requested in a state that does not allow it."""


class StageExecutionError(CastwriterError):
    """A single stage (or sub-stage) failed. Retryability follows the cause."""

    def __init__(
        self,
        stage_number: int,
        stage_name: str,
        message: str,
        sub_stage: str | None = None,
        cause: BaseException | None = None,
    ):
        label = f"{stage_name} / {sub_stage}" if sub_stage else stage_name
        super().__init__(f"Stage {stage_number} ({label}) failed: {message}")
        self.stage_number = stage_number
        self.stage_name = stage_name
        self.sub_stage = sub_stage
        self.reason = message
        self.cause = cause
        self.retryable = getattr(cause, "retryable", False) if cause else False

    def to_dict(self) -> dict:
        cause = None
        if isinstance(self.cause, CastwriterError):
            cause = self.cause.to_dict()
        elif self.cause is not None:
            cause = {"name": type(self.cause).__name__, "message": str(self.cause)}
        return {
            **super().to_dict(),
            "stage_number": self.stage_number,
            "stage_name": self.stage_name,
            "sub_stage": self.sub_stage,
            "cause": cause,
        }


class PhaseFailedError(CastwriterError):
    """At least one task of a phase failed; the phase is discarded as a whole.

    ``failures`` holds the StageExecutionErrors in task order, ``successes``
    the StageOutputs of sibling tasks that finished but must not be kept.
    """

    def __init__(self, phase_id: str, failures: list, successes: list):
        first = failures[0]
        super().__init__(f"Phase '{phase_id}' failed: {first.message}")
        self.phase_id = phase_id
        self.failures = failures
        self.successes = successes
        self.retryable = all(f.retryable for f in failures)

    @property
    def first_failure(self) -> StageExecutionError:
        return self.failures[0]
