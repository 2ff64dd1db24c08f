from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# Error codes shared by services; routers map them onto HTTP statuses.
NOT_FOUND = "not_found"
VALIDATION = "validation"
CONFLICT = "conflict"
UPSTREAM = "upstream"

HTTP_STATUS_BY_CODE = {
    NOT_FOUND: 404,
    VALIDATION: 422,
    CONFLICT: 409,
    UPSTREAM: 502,
}


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = VALIDATION) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.error_code or "", 400)
