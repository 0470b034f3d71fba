"""
Error taxonomy for the rewards engine.

Expected business outcomes travel as values (``OperationResult`` carrying a
``Rejection``); only unexpected failures are raised, as ``InternalError``.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from flask import jsonify


GENERIC_INTERNAL_MESSAGE = "Something went wrong, please try again later"


class ErrorKind(Enum):
    AUTHENTICATION_REQUIRED = "unauthenticated"
    AUTHORIZATION_DENIED = "permission-denied"
    VALIDATION_FAILED = "invalid-argument"
    PRECONDITION_FAILED = "failed-precondition"
    CONFLICT = "already-exists"
    NOT_FOUND = "not-found"
    INTERNAL = "internal"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    ErrorKind.AUTHENTICATION_REQUIRED: 401,
    ErrorKind.AUTHORIZATION_DENIED: 403,
    ErrorKind.VALIDATION_FAILED: 400,
    ErrorKind.PRECONDITION_FAILED: 412,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INTERNAL: 500,
}


@dataclass(frozen=True)
class Rejection:
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_response(self):
        body = {"success": False, "error": self.message, "code": self.kind.value}
        if self.details:
            body["details"] = self.details
        return jsonify(body), self.kind.http_status


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    rejection: Optional[Rejection] = None

    @classmethod
    def success(cls, **data) -> "OperationResult":
        return cls(ok=True, data=data)

    @classmethod
    def reject(cls, kind: ErrorKind, message: str, **details) -> "OperationResult":
        return cls(ok=False, rejection=Rejection(kind, message, details))

    @classmethod
    def from_rejection(cls, rejection: Rejection) -> "OperationResult":
        return cls(ok=False, rejection=rejection)

    def to_response(self, status: int = 200):
        if not self.ok:
            return self.rejection.to_response()
        return jsonify({"success": True, **self.data}), status


# Shorthands used by validators
def authentication_required(message="Authentication required", **details):
    return Rejection(ErrorKind.AUTHENTICATION_REQUIRED, message, details)


def authorization_denied(message="Permission denied", **details):
    return Rejection(ErrorKind.AUTHORIZATION_DENIED, message, details)


def validation_failed(message, **details):
    return Rejection(ErrorKind.VALIDATION_FAILED, message, details)


def precondition_failed(message, **details):
    return Rejection(ErrorKind.PRECONDITION_FAILED, message, details)


def conflict(message, **details):
    return Rejection(ErrorKind.CONFLICT, message, details)


def not_found(message, **details):
    return Rejection(ErrorKind.NOT_FOUND, message, details)


# ==========================================================
#                  FATAL CHANNEL
# ==========================================================
class InternalError(Exception):
    """Unexpected store / programming failure. Never shown to callers verbatim."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RetryExhaustedError(InternalError):
    pass


def internal_error_response():
    return jsonify({
        "success": False,
        "error": GENERIC_INTERNAL_MESSAGE,
        "code": ErrorKind.INTERNAL.value,
    }), 500
