"""
Error taxonomy for the library service.

Every error carries the HTTP status it maps to; the exception handlers in
main.py render them into the standard response envelope.
"""

from typing import Any, Dict, List, Optional


class LibraryError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors


class NotFound(LibraryError):
    status_code = 404


class ValidationFailed(LibraryError):
    status_code = 400


class Conflict(LibraryError):
    status_code = 409


class DuplicateEntry(Conflict):
    """Unique-key violations (ISBN, category name, email) are reported as 400."""
    status_code = 400


class Unauthorized(LibraryError):
    status_code = 401


class Forbidden(LibraryError):
    status_code = 403
