"""Custom exceptions for the plugin runtime engine."""

from typing import Optional


class PluginRuntimeException(Exception):
    """Base exception for the plugin runtime engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(PluginRuntimeException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ValidationError(PluginRuntimeException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)


class ConflictError(PluginRuntimeException):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


class TemplateLoadError(PluginRuntimeException):
    """A template document could not be read or parsed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load template {path}: {reason}", 422)


class StepExecutionError(PluginRuntimeException):
    """A fetch or chain step failed; aborts the rest of the target's chain."""

    def __init__(self, message: str, step_id: Optional[str] = None):
        self.step_id = step_id
        if step_id:
            message = f"Step '{step_id}' failed: {message}"
        super().__init__(message, 502)
