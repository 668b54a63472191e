from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence


class ErrorCode(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    FAILED_PRECONDITION = "FAILED_PRECONDITION"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INTERNAL = "INTERNAL"


_HTTP_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.UNAUTHENTICATED: 401,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.FAILED_PRECONDITION: 412,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.RESOURCE_EXHAUSTED: 429,
    ErrorCode.INVALID_ARGUMENT: 400,
    ErrorCode.INTERNAL: 500,
}

INTERNAL_MESSAGE = "An internal error occurred."


class FlowError(RuntimeError):
    """
    A failure raised by a request flow, tagged with a stable machine-readable code.

    `status_overrides` lets an endpoint remap a code to a different HTTP status
    (e.g. an expired claim token is FAILED_PRECONDITION but answers 410).
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        status_overrides: Optional[Mapping[ErrorCode, int]] = None,
    ) -> None:
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = str(message)
        self.status_overrides: Dict[ErrorCode, int] = dict(status_overrides or {})

    def with_overrides(self, overrides: Mapping[ErrorCode, int]) -> "FlowError":
        self.status_overrides.update(overrides)
        return self

    @property
    def http_status(self) -> int:
        return http_status_for(self.code, self.status_overrides)

    def to_body(self) -> Dict[str, Dict[str, str]]:
        return error_body(self.code, self.message)


def http_status_for(
    code: ErrorCode, overrides: Optional[Mapping[ErrorCode, int]] = None
) -> int:
    if overrides and code in overrides:
        return int(overrides[code])
    return _HTTP_STATUS[code]


def error_body(code: ErrorCode, message: str) -> Dict[str, Dict[str, str]]:
    return {"error": {"status": ErrorCode(code).value, "message": str(message)}}


def validation_message(errors: Sequence[Mapping[str, Any]], *, prefix: str = "") -> str:
    """Flatten pydantic error entries into one `loc: msg` line per problem."""
    parts: List[str] = []
    for err in errors:
        loc = ".".join(str(x) for x in (err.get("loc") or ()) if x != "body")
        msg = str(err.get("msg") or "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    text = "; ".join(parts) or "Invalid request."
    return f"{prefix}{text}" if prefix else text
