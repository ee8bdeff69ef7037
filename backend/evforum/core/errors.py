"""
Forum error taxonomy.

Every error carries the HTTP status it maps to, a stable machine code and a
human readable detail. ``fields`` holds field-level messages for validation
failures.
"""

from typing import Any

from fastapi import Request, status
from fastapi.responses import ORJSONResponse


class ForumError(Exception):
    """Base class for forum engine errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "forum_error"
    detail: str = "Forum error"

    def __init__(
        self,
        detail: str | None = None,
        fields: dict[str, str] | None = None,
    ) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail
        self.fields = fields or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "detail": self.detail}
        if self.fields:
            payload["fields"] = self.fields
        return payload


class ValidationError(ForumError):
    """Malformed or oversized input."""

    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    code = "validation_error"
    detail = "Invalid input"


class NotFoundError(ForumError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    detail = "Not found"


class CategoryNotFound(NotFoundError):
    code = "category_not_found"
    detail = "Category not found"


class ThreadNotFound(NotFoundError):
    code = "thread_not_found"
    detail = "Thread not found"


class ParentNotFound(NotFoundError):
    code = "parent_not_found"
    detail = "Parent reply not found in this thread"


class ReplyNotFound(NotFoundError):
    code = "reply_not_found"
    detail = "Reply not found"


class VotableNotFound(NotFoundError):
    code = "votable_not_found"
    detail = "Vote target not found"


class TargetNotFound(NotFoundError):
    code = "target_not_found"
    detail = "Moderation target not found"


class ForbiddenError(ForumError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"
    detail = "Insufficient permissions"


class ThreadLocked(ForbiddenError):
    code = "thread_locked"
    detail = "Cannot reply to a locked thread"


class ConflictError(ForumError):
    """Duplicate slug or stale state that survived a retry."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"
    detail = "Conflicting update"


class StoreUnavailable(ForumError):
    """Transient storage failure that survived call-site retries."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "store_unavailable"
    detail = "Content store temporarily unavailable"


async def forum_error_handler(request: Request, exc: ForumError) -> ORJSONResponse:
    """Render a ForumError as a JSON error body."""
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_dict())
