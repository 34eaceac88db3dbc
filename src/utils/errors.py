"""Error handling utilities."""

from typing import Optional


class SwipeLinkError(Exception):
    """Base exception for the SwipeLink CRM backend."""

    status_code = 500
    public_message = "internal server error"


class InvalidRequestError(SwipeLinkError):
    """Request body or query parameters failed validation."""

    status_code = 400

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.public_message = message
        self.details = details or {}


class StageTransitionError(InvalidRequestError):
    """Requested deal stage change is not allowed."""
    pass


class NotFoundError(SwipeLinkError):
    """Deal or task does not exist."""

    status_code = 404

    def __init__(self, message: str):
        super().__init__(message)
        self.public_message = message


class SupabaseError(SwipeLinkError):
    """Supabase operation error."""
    pass