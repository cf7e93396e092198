"""
Error taxonomy for the SideQuest API.

Each error carries the HTTP status it is surfaced with; the app turns them into
`{"message": ...}` JSON bodies.
"""
from typing import Optional


class SideQuestError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"message": self.message}


class ValidationError(SideQuestError):
    """Malformed or missing input."""
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self):
        body = super().to_dict()
        if self.field:
            body["field"] = self.field
        return body


class NotFoundError(SideQuestError):
    status_code = 404


class AuthorizationError(SideQuestError):
    status_code = 403


class ConflictError(SideQuestError):
    """The operation would break a quest or join request invariant."""
    status_code = 409


class InternalError(SideQuestError):
    status_code = 500

    def to_dict(self):
        return {"message": "Server error"}
