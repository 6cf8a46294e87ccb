"""Error taxonomy shared by the Stratus delivery services."""

from __future__ import annotations

from fastapi import status


class StratusError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"

    def __init__(self, detail: str | None = None, *, headers: dict[str, str] | None = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.headers = headers or {}

    def to_payload(self) -> dict[str, str]:
        return {"detail": self.detail, "code": self.code}


class NotFound(StratusError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class AuthFailure(StratusError):
    """Mutation attempted without a valid credential."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "auth_failure"

    def __init__(self, detail: str | None = None, *, forbidden: bool = False) -> None:
        headers = {} if forbidden else {"WWW-Authenticate": 'Bearer realm="stratus"'}
        super().__init__(detail, headers=headers)
        if forbidden:
            self.status_code = status.HTTP_403_FORBIDDEN


class OriginUnavailable(StratusError):
    """Origin I/O failed or timed out."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "origin_unavailable"

    def __init__(self, detail: str | None = None, *, timeout: bool = False) -> None:
        super().__init__(detail)
        self.timeout = timeout
        if timeout:
            self.status_code = status.HTTP_504_GATEWAY_TIMEOUT


class CompressionFailure(StratusError):
    """Codec error. Handled by falling back to identity, never sent to a client."""

    code = "compression_failure"


class InvalidRequest(StratusError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_request"


class RangeNotSatisfiable(StratusError):
    status_code = status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE
    code = "range_not_satisfiable"

    def __init__(self, size: int) -> None:
        super().__init__("Requested range not satisfiable", headers={"Content-Range": f"bytes */{size}"})


class PayloadTooLarge(StratusError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    code = "payload_too_large"


class CacheInvalidationError(StratusError):
    """Cached variants could not be purged; the mutation must not be acknowledged."""

    code = "cache_invalidation_failed"


class RequestCancelled(Exception):
    """Raised inside a request once its client has gone away."""
