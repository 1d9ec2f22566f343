"""
shared/utils/errors.py
Domain error taxonomy. Services raise these; handlers registered in
main.py turn them into JSON responses with the matching status code.
"""

from typing import Any, List, Optional

from fastapi import status


class AppError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors

    def to_dict(self) -> dict:
        body = {"message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(AppError):
    """Malformed or inconsistent input."""
    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class AuthorizationError(AppError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    """Booking collision or uniqueness violation."""
    status_code = status.HTTP_409_CONFLICT
