"""
Shared error handling for the Access Review platform.

Every service raises one of the types below; the base service maps them
to JSON responses with the class's HTTP status code. Per-row failures in
batch operations are not raised, they are reported in the result body.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessReviewException(Exception):
    """Base exception for Access Review services."""

    status_code: int = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AccessReviewException):
    """Malformed input; rejects the whole call."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(AccessReviewException):
    """Requested entity does not exist (in the given partition)."""

    status_code = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.resource = resource
        self.resource_id = resource_id
        message = f"{resource} not found" if resource_id is None else f"{resource} '{resource_id}' not found"
        super().__init__("NOT_FOUND", message, details)


class ConflictError(AccessReviewException):
    """
    The entity changed since the caller read it, or the request collides
    with existing state.

    For concurrency-token mismatches both the caller's stale token and the
    store's current token are carried so the client can re-fetch and retry.
    """

    status_code = 409

    def __init__(
        self,
        message: str = "Conflict: the resource was updated by someone else. Refresh and retry.",
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        stale_token: Optional[str] = None,
        current_token: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.resource = resource
        self.resource_id = resource_id
        self.stale_token = stale_token
        self.current_token = current_token
        payload = dict(details or {})
        if resource:
            payload.setdefault("resource", resource)
        if resource_id:
            payload.setdefault("resource_id", resource_id)
        if stale_token is not None or current_token is not None:
            payload["stale_token"] = stale_token
            payload["current_token"] = current_token
        super().__init__("CONFLICT", message, payload)


class PreconditionError(AccessReviewException):
    """A required precondition (token, justification) was not supplied."""

    status_code = 428

    def __init__(self, message: str = "Precondition required", details: Optional[Dict[str, Any]] = None):
        super().__init__("PRECONDITION_REQUIRED", message, details)


class DependencyError(AccessReviewException):
    """An external collaborator (identity directory, store) is unavailable."""

    status_code = 503

    def __init__(self, service: str, message: str = "Dependency unavailable", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("DEPENDENCY_ERROR", f"{service}: {message}", details)


class ConfigurationError(AccessReviewException):
    """Service is missing required configuration."""

    status_code = 500

    def __init__(self, message: str = "Service misconfigured", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)
