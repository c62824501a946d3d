from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    INVALID_REQUEST = "invalid_request"
    NOT_CONNECTED = "not_connected"
    TEMPLATE_NOT_FOUND = "template_not_found"
    SEND_FAILED = "send_failed"
    UNKNOWN = "unknown"


HTTP_STATUS_BY_CODE = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.NOT_CONNECTED: 400,
    ErrorCode.TEMPLATE_NOT_FOUND: 404,
    ErrorCode.SEND_FAILED: 500,
    ErrorCode.UNKNOWN: 500,
}


@dataclass(frozen=True)
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: ErrorCode = ErrorCode.UNKNOWN) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return HTTP_STATUS_BY_CODE.get(self.error_code or ErrorCode.UNKNOWN, 500)
