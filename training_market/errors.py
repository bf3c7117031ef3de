from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base for errors raised by the service layer and rendered by the API."""

    code = "error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, "retryable": self.retryable}


class NotFoundError(ServiceError):
    code = "not_found"
    status_code = 404
