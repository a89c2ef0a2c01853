"""Recognition failure categories and the safe fallback answer."""

from __future__ import annotations

import sqlite3
from typing import Any

import requests


ERROR_CODES = (
    "NETWORK_ERROR",
    "SERVER_ERROR",
    "RATE_LIMIT_EXCEEDED",
    "DATABASE_ERROR",
    "INVALID_INPUT",
    "CHURCH_ACCESS_DENIED",
    "RECOGNITION_TIMEOUT",
    "MATCHING_ENGINE_ERROR",
    "UNKNOWN_ERROR",
)

_USER_MESSAGES = {
    "NETWORK_ERROR": "Connection issue. Please check your internet and try again.",
    "SERVER_ERROR": "Temporary server issue. Please try again in a moment.",
    "RATE_LIMIT_EXCEEDED": "Too many requests. Please wait a moment before trying again.",
    "DATABASE_ERROR": "Data access issue. Please try again later.",
    "INVALID_INPUT": "Please check your information and try again.",
    "CHURCH_ACCESS_DENIED": "Access denied. Please contact your administrator.",
    "RECOGNITION_TIMEOUT": "Recognition is taking longer than usual. Please try again.",
    "MATCHING_ENGINE_ERROR": "Recognition service temporarily unavailable.",
}


class RecognitionError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        severity: str = "medium",
        is_retryable: bool = False,
        user_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code if code in ERROR_CODES else "UNKNOWN_ERROR"
        self.message = message
        self.severity = severity
        self.is_retryable = is_retryable
        self.user_message = user_message or _USER_MESSAGES.get(
            self.code, "Something went wrong. Please try again."
        )
        self.metadata = metadata or {}


class RateLimitExceeded(RecognitionError):
    def __init__(self, retry_after: int) -> None:
        super().__init__(
            "RATE_LIMIT_EXCEEDED",
            "Rate limit exceeded",
            severity="medium",
            is_retryable=True,
            metadata={"retry_after": retry_after},
        )
        self.retry_after = retry_after


def _from_status(status: int) -> RecognitionError:
    if status == 400:
        return RecognitionError("INVALID_INPUT", "Invalid request", "low", False, metadata={"status": status})
    if status in (401, 403):
        return RecognitionError("CHURCH_ACCESS_DENIED", "Access denied", "high", False, metadata={"status": status})
    if status == 429:
        return RecognitionError("RATE_LIMIT_EXCEEDED", "Rate limit exceeded", "medium", True, metadata={"status": status})
    if status >= 500:
        return RecognitionError("SERVER_ERROR", "Server error", "high", True, metadata={"status": status})
    return RecognitionError("UNKNOWN_ERROR", f"HTTP error {status}", "medium", True, metadata={"status": status})


def categorize_error(exc: BaseException) -> RecognitionError:
    """Map a raw exception onto a RecognitionError with a user-facing message."""

    if isinstance(exc, RecognitionError):
        return exc
    if isinstance(exc, requests.Timeout) or isinstance(exc, TimeoutError):
        return RecognitionError(
            "RECOGNITION_TIMEOUT", "Operation timeout", "medium", True, metadata={"error": str(exc)}
        )
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return _from_status(exc.response.status_code)
    if isinstance(exc, requests.ConnectionError):
        return RecognitionError(
            "NETWORK_ERROR", "Network request failed", "medium", True, metadata={"error": str(exc)}
        )
    if isinstance(exc, sqlite3.Error):
        return RecognitionError(
            "DATABASE_ERROR", "Database error", "high", True, metadata={"error": str(exc)}
        )
    if isinstance(exc, ValueError):
        return RecognitionError("INVALID_INPUT", str(exc), "low", False)
    return RecognitionError(
        "UNKNOWN_ERROR", str(exc) or "Unknown error", "medium", True, metadata={"error": repr(exc)}
    )


def fallback_result(error: RecognitionError) -> dict[str, Any]:
    return {
        "status": "no_match",
        "confidence": 0,
        "display_message": None,
        "masked_data": None,
        "requires_admin_review": False,
        "error_code": error.code,
    }
