"""
Error taxonomy shared by the enrichment pipeline.

Dependency errors are produced only by the retrying client, which is the one
place that decides whether an outbound failure is transient or fatal.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for every pipeline failure."""
    retryable = False


class DependencyError(PipelineError):
    """An outbound call to an external dependency failed."""

    def __init__(self, message: str, dependency: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.dependency = dependency
        self.status_code = status_code


class AuthenticationError(DependencyError):
    """401/403 from a dependency. Never retried."""
    pass


class TransientDependencyError(DependencyError):
    """Network failure, timeout, 5xx or rate-limit rejection."""
    retryable = True


class RateLimitTimeout(TransientDependencyError):
    """No request token became available within the allowed wait."""
    pass


class PermanentDependencyError(DependencyError):
    """A 4xx that retrying cannot fix."""
    pass


class NotYetAvailableError(DependencyError):
    """The resource exists upstream but has not propagated yet (e.g. a recording)."""
    pass


class RetriesExhaustedError(DependencyError):
    """Every attempt allowed by the retry policy failed transiently."""

    def __init__(self, message: str, dependency: Optional[str] = None, attempts: int = 0,
                 last_error: Optional[Exception] = None):
        status_code = getattr(last_error, 'status_code', None)
        super().__init__(message, dependency=dependency, status_code=status_code)
        self.attempts = attempts
        self.last_error = last_error


class OperationCancelled(PipelineError):
    """A blocking wait was interrupted by a deadline or worker shutdown."""
    pass


class AnalysisParseError(PipelineError):
    """The content-analysis response did not have the expected structured shape."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response


class StageError(PipelineError):
    """
    A failure wrapped with the pipeline stage and the tenant/call it happened for.
    """

    def __init__(self, stage: str, tenant_id: str, call_id: str, cause: Exception):
        super().__init__(f"{stage} failed for tenant={tenant_id} call={call_id}: {cause}")
        self.stage = stage
        self.tenant_id = tenant_id
        self.call_id = call_id
        self.cause = cause

    @property
    def not_yet_available(self) -> bool:
        return isinstance(self.cause, NotYetAvailableError)
