"""
Typed failures raised by the application services.

Each error carries the HTTP status it maps to so the API layer can translate
it without inspecting the message.
"""

from typing import Any, Optional


class ApplicationServiceError(Exception):
    status_code: int = 500
    default_detail: str = "Application service error"

    def __init__(self, detail: Optional[str] = None, **context: Any):
        self.detail = detail or self.default_detail
        self.context = context
        super().__init__(self.detail)


class NotFoundError(ApplicationServiceError):
    status_code = 404
    default_detail = "Resource not found"

    @classmethod
    def for_resource(cls, resource: str, *identifiers: Any) -> "NotFoundError":
        ids = ", ".join(str(i) for i in identifiers)
        return cls(f"Unable to find {resource} {ids}".strip(), resource=resource)


class ForbiddenError(ApplicationServiceError):
    status_code = 403
    default_detail = "Not enough permissions"


class ConflictError(ApplicationServiceError):
    status_code = 409
    default_detail = "Resource was modified concurrently or already exists"


class InvalidStateError(ApplicationServiceError):
    status_code = 422
    default_detail = "Resource is in an invalid state for this operation"
