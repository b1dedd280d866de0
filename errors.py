from __future__ import annotations

from typing import Any


class KueError(Exception):
    """Base class for failures that cross the request boundary."""

    code = "ERROR"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code


class QuotaExceeded(KueError):
    """No credits left for a billable generation."""

    code = "QUOTA_EXCEEDED"

    def __init__(self, message: str | None = None, *, next_refill_at: str | None = None) -> None:
        super().__init__(message)
        self.next_refill_at = next_refill_at

    def to_detail(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "next_refill_at": self.next_refill_at,
        }


class Unauthorized(KueError):
    """Missing or invalid identity or signature."""

    code = "UNAUTHORIZED"


class UpstreamFailure(KueError):
    """The LLM or payment gateway failed or timed out."""

    code = "UPSTREAM_FAILURE"


class MalformedUpstreamResponse(UpstreamFailure):
    """The LLM returned content that could not be parsed."""

    code = "MALFORMED_UPSTREAM_RESPONSE"

    def __init__(self, message: str | None = None, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw
