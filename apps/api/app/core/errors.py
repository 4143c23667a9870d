from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base class for every failure surfaced to API callers.

    Subclasses pin the taxonomy ``kind`` and the HTTP status it maps to, so
    services raise by meaning and the API layer renders the envelope.
    """

    kind = "Internal"
    status_code = 500

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(CRMError):
    kind = "NotFound"
    status_code = 404


class AccessDeniedError(CRMError):
    kind = "AccessDenied"
    status_code = 403


class TenantRequiredError(CRMError):
    kind = "TenantRequired"
    status_code = 403


class AlreadyConvertedError(CRMError):
    kind = "AlreadyConverted"
    status_code = 400


class DuplicateEmailError(CRMError):
    kind = "DuplicateEmail"
    status_code = 409


class DuplicateNameError(CRMError):
    kind = "DuplicateName"
    status_code = 409


class ValidationFailedError(CRMError):
    kind = "ValidationFailed"
    status_code = 400


class ConflictError(CRMError):
    kind = "Conflict"
    status_code = 409


class InternalError(CRMError):
    kind = "Internal"
    status_code = 500
