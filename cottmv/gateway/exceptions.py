from typing import Any


class APIError(Exception):
    """Base exception for all API errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {"detail": str(self)}


class ValidationError(APIError):
    """Raised for semantically invalid request parameters - maps to HTTP 422."""

    status_code = 422


class ResourceNotFoundError(APIError):
    """Raised when a required resource is not found - maps to HTTP 404."""

    status_code = 404

    def __init__(self, resource_type: str, resource_id: Any, *, message: str | None = None):
        super().__init__(message or f"{resource_type} {resource_id!r} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id

    def to_dict(self) -> dict[str, Any]:
        return {"detail": str(self), "resource_type": self.resource_type, "resource_id": str(self.resource_id)}


class SourceNotFound(ResourceNotFoundError):
    """The media record or its file on disk is gone. Not retried."""

    def __init__(self, media_id: Any, *, message: str | None = None):
        super().__init__("Media", media_id, message=message)


class ProcessingError(APIError):
    """An external media tool (ffmpeg, OCR) failed on this request - maps to HTTP 502."""

    status_code = 502


class ConflictError(APIError):
    """Raised when a resource already exists - maps to HTTP 409."""

    status_code = 409
