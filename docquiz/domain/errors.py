"""
Custom application-specific exceptions.

Every ApiError knows the HTTP status and machine-readable code it maps to;
the Flask error handlers turn them into the standard error envelope.
"""
from typing import Optional


class BaseAppException(Exception):
    """Base exception for the application."""
    pass


class ApiError(BaseAppException):
    """An error with a stable HTTP mapping."""
    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable


class BadRequestError(ApiError):
    status_code = 400
    code = "BAD_REQUEST"


class ForbiddenError(ApiError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(ApiError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(ApiError):
    status_code = 409
    code = "CONFLICT"


class UnprocessableError(ApiError):
    status_code = 422
    code = "UNPROCESSABLE_ENTITY"


class RateLimitedError(ApiError):
    status_code = 429
    code = "RATE_LIMITED"
    retryable = True

    def __init__(self, message: str = "Too many requests", retry_after: int = 60, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.retry_after = retry_after


class InternalError(ApiError):
    status_code = 500
    code = "INTERNAL_ERROR"


class StorageError(ApiError):
    """Blob store read/write failure."""
    status_code = 500
    code = "STORAGE_ERROR"


class QueueError(ApiError):
    """The message queue rejected or could not accept a publish."""
    status_code = 502
    code = "QUEUE_ERROR"
    retryable = True


class ProviderError(ApiError):
    """Generic AI provider failure."""
    status_code = 502
    code = "PROVIDER_ERROR"
    retryable = True
    kind = "generic"

    def __init__(self, message: str, provider: Optional[str] = None, retryable: Optional[bool] = None):
        super().__init__(message, retryable=retryable)
        self.provider = provider


class ProviderNotConfiguredError(ProviderError):
    """The configured provider name has no registered client."""
    status_code = 500
    code = "PROVIDER_NOT_CONFIGURED"
    retryable = False
    kind = "not_configured"


class ProviderRateLimitedError(ProviderError):
    status_code = 429
    code = "RATE_LIMITED"
    kind = "rate_limited"


class ProviderQuotaExceededError(ProviderError):
    status_code = 429
    code = "BUDGET_EXCEEDED"
    retryable = False
    kind = "quota_exceeded"


class ProviderTimeoutError(ProviderError):
    status_code = 504
    code = "PROVIDER_TIMEOUT"
    kind = "timeout"
