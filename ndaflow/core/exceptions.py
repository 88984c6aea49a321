"""Custom exception hierarchy.

Every error carries a ``retryable`` flag. The pipeline orchestrator consults it
when a stage raises instead of returning an outcome, so provider clients can
signal transient failures without knowing about the orchestrator.
"""

from typing import Optional


class AppError(Exception):
    """Base exception for application errors."""

    retryable: bool = False

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class APIClientError(AppError):
    """Raised when an external API call fails."""
    pass


class APITimeoutError(APIClientError):
    """Raised when an external API call times out."""
    retryable = True


class APIRateLimitError(APIClientError):
    """Raised when a provider rejects a call with HTTP 429."""
    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None, original_error: Exception = None):
        super().__init__(message, original_error)
        self.retry_after = retry_after


class APIServerError(APIClientError):
    """Raised when a provider answers with a 5xx status."""
    retryable = True


class DatabaseError(AppError):
    """Raised when a database operation fails."""
    pass


class ValidationError(AppError):
    """Raised when input validation fails."""
    pass


class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass


class DocumentNotFoundError(AppError):
    """Raised when a document is not found."""
    pass


class AnalysisNotFoundError(AppError):
    """Raised when an analysis run is not found."""
    pass


class InvalidTransitionError(AppError):
    """Raised when a run is asked to move to a status its current status forbids."""

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot move analysis from '{current}' to '{target}'")
        self.current = current
        self.target = target


class ConcurrencyConflictError(DatabaseError):
    """Raised when a versioned update keeps losing to concurrent writers."""
    pass


class PipelineError(AppError):
    """Base exception for pipeline errors."""
    pass


class RetryableStageError(PipelineError):
    """A step failed transiently and may be attempted again."""
    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None, original_error: Exception = None):
        super().__init__(message, original_error)
        self.retry_after = retry_after


class StepTimeoutError(RetryableStageError):
    """A step exceeded its maximum duration."""
    pass


class StageContractError(PipelineError):
    """A stage broke its contract, e.g. returned malformed output."""
    pass


class ReportNotReadyError(AppError):
    """Raised when a report is requested for a run that has not completed."""
    pass


class DispatchError(AppError):
    """Raised when a run could not be handed to a worker."""
    pass
