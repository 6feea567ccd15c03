"""Outcome types shared by every engine.

Engines never raise for rule violations; they return an outcome carrying an
``ErrorKind`` and a stable machine-readable code. Only collaborator and
store failures surface as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(Enum):
    VALIDATION = "validation"
    STATE_CONFLICT = "state_conflict"
    FRAUD_BAN = "fraud_ban"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INTERNAL = "internal"


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.STATE_CONFLICT: 409,
    ErrorKind.FRAUD_BAN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INTERNAL: 500,
}


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    code: str
    message: str

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code}


def require_failure(success: bool, failure: Failure | None) -> None:
    """Reject an outcome that failed without saying why."""
    if not success and failure is None:
        raise ValueError("Unsuccessful outcome needs a failure")


def validation(code: str, message: str) -> Failure:
    return Failure(ErrorKind.VALIDATION, code, message)


def conflict(code: str, message: str) -> Failure:
    return Failure(ErrorKind.STATE_CONFLICT, code, message)


def not_found(code: str, message: str) -> Failure:
    return Failure(ErrorKind.NOT_FOUND, code, message)


USER_NOT_FOUND = not_found("user_not_found", "User not found")
ACCOUNT_NOT_ACTIVE = conflict("account_not_active", "Account is not active")
