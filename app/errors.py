"""
Error taxonomy for the invitation pipeline.

Dispatch errors carry a ``retryable`` flag that drives the orchestrator's
retry state machine.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(PipelineError):
    """Inbound webhook payload does not match the expected shape."""

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(message)
        self.errors = errors or []


class ResolutionError(PipelineError):
    """Contact lookup failed. Terminal, never retried."""


class DispatchError(PipelineError):
    """Reputation platform call failed."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None, body: object = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def to_log(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "status_code": self.status_code,
            "body": self.body,
        }


class AuthError(DispatchError):
    """Credential exchange failed or the token was refused."""


class RejectedError(DispatchError):
    """Platform rejected the invitation (4xx other than auth)."""


class RateLimited(DispatchError):
    """Platform answered HTTP 429."""

    retryable = True

    def __init__(self, message: str, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TransientError(DispatchError):
    """5xx response or network failure."""

    retryable = True


class StoreError(PipelineError):
    """Persistence layer unavailable. Always propagated."""
