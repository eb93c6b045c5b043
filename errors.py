# errors.py
"""
Error kinds raised by the RCM services.

Everything that goes wrong while touching the store is surfaced as a
DataAccessError carrying the original message plus whatever context the
caller had (report type, claim id, filter options...). NotFoundError and
BadRequestError are "operational" and pass through service wrappers as-is.
"""
from typing import Any, Dict, Optional


class RCMError(Exception):
    status_code = 500
    is_operational = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, "error": self.details}


class DataAccessError(RCMError):
    status_code = 500


class NotFoundError(RCMError):
    status_code = 404


class BadRequestError(RCMError):
    status_code = 400


def wrap_error(message: str, exc: Exception, **context: Any) -> RCMError:
    """Return exc untouched if it is already operational, else a DataAccessError."""
    if isinstance(exc, RCMError) and not isinstance(exc, DataAccessError):
        return exc
    details: Dict[str, Any] = {"original_error": str(exc)}
    details.update(context)
    return DataAccessError(message, details)
