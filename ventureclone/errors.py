"""Exception hierarchy and HTTP error mapping.

Every error that reaches a client is reduced to ``{error, code, requestId}``.
Raw exception text is only forwarded for errors we raised on purpose
(:class:`AppError` and validation failures); anything else is logged and
answered with a generic message.
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

log = logging.getLogger(__name__)

STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    429: "RATE_LIMITED",
    500: "INTERNAL",
    502: "AI_PROVIDER_DOWN",
    504: "GATEWAY_TIMEOUT",
}

GENERIC_MESSAGE = "Internal server error"


def error_code_for_status(status_code: int) -> str:
    return STATUS_CODES.get(status_code, "UNKNOWN")


class VentureCloneError(Exception):
    """Base exception for all VentureClone errors."""


class AppError(VentureCloneError):
    """Error with an HTTP status and a stable code, safe to show to clients."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: str | None = None,
        user_message: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code or error_code_for_status(status_code)
        self.user_message = user_message
        self.details = details or {}

    @classmethod
    def bad_request(cls, message: str, user_message: str | None = None) -> AppError:
        return cls(message, 400, "BAD_REQUEST", user_message)

    @classmethod
    def not_found(cls, label: str = "Resource") -> AppError:
        return cls(f"{label} not found", 404, "NOT_FOUND")

    @classmethod
    def validation(cls, message: str, user_message: str | None = None) -> AppError:
        return cls(message, 400, "VALIDATION_ERROR", user_message)

    @classmethod
    def config_missing(cls, message: str) -> AppError:
        return cls(message, 500, "CONFIG_MISSING",
                   "AI service is not configured. Please contact support.")


class ValidationFailed(VentureCloneError):
    """Input or generated content failed validation."""


class LLMCallError(VentureCloneError):
    """LLM call failed or returned unparseable output."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class TechDetectionError(VentureCloneError):
    """Technology detection could not complete."""


def _is_validation_error(exc: BaseException) -> bool:
    return (
        isinstance(exc, (ValidationFailed, ValidationError, RequestValidationError))
        or type(exc).__name__ == "ValidationError"
    )


def _validation_message(exc: BaseException) -> str:
    if isinstance(exc, (ValidationError, RequestValidationError)):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return "; ".join(parts) or "Invalid request data"
    return str(exc) or "Invalid request data"


def resolve_error(exc: BaseException) -> tuple[int, str, str]:
    """Map an exception to ``(status_code, code, client_message)``."""
    if isinstance(exc, AppError):
        return exc.status_code, exc.code, exc.message
    if _is_validation_error(exc):
        return 400, "VALIDATION_ERROR", _validation_message(exc)
    text = str(exc)
    if "timeout" in text.lower() or "TIMEOUT" in text or isinstance(exc, TimeoutError):
        return 504, "GATEWAY_TIMEOUT", "Request timeout"
    if "rate limit" in text.lower() or "RATE_LIMITED" in text:
        return 429, "RATE_LIMITED", "Rate limit exceeded"
    log.error("Unhandled error: %s", exc, exc_info=exc)
    return 500, "INTERNAL", GENERIC_MESSAGE


def error_body(message: str, code: str, request_id: str | None) -> dict[str, str]:
    return {"error": message, "code": code, "requestId": request_id or "unknown"}


# ---------------------------------------------------------------------------
# User-facing guidance
# ---------------------------------------------------------------------------


def error_guidance(exc: BaseException, context: str | None = None) -> dict[str, Any]:
    """Explain a failure to the user with next steps and whether retrying helps."""
    msg = str(exc).lower()
    if "timeout" in msg or "etimedout" in msg or isinstance(exc, TimeoutError):
        return {
            "userMessage": "The AI service took too long to respond. This usually happens during high traffic periods.",
            "nextSteps": [
                "Wait 1-2 minutes and try again",
                "If the problem persists, try a different time of day",
            ],
            "retryable": True,
            "estimatedWaitTime": "1-2 minutes",
        }
    if "rate limit" in msg or "quota" in msg or "429" in msg:
        return {
            "userMessage": "The AI service rate limit has been reached. This is temporary.",
            "nextSteps": [
                "Wait 5-10 minutes before trying again",
                "Consider upgrading your AI provider plan for higher limits",
            ],
            "retryable": True,
            "estimatedWaitTime": "5-10 minutes",
        }
    if "network" in msg or "connect" in msg or "econnreset" in msg:
        return {
            "userMessage": "A network error occurred while connecting to the AI service.",
            "nextSteps": ["Check your internet connection", "Try again in a few moments"],
            "retryable": True,
            "estimatedWaitTime": "30 seconds",
        }
    if "api key" in msg or "unauthorized" in msg or "401" in msg:
        return {
            "userMessage": "There is an issue with the AI service configuration.",
            "nextSteps": ["Verify the API key configured for your AI provider"],
            "retryable": False,
            "estimatedWaitTime": None,
        }
    if _is_validation_error(exc) or "validation" in msg or "schema" in msg or "invalid" in msg:
        return {
            "userMessage": "The AI service returned invalid data. This is usually temporary.",
            "nextSteps": ["Try again - the AI will generate a new response"],
            "retryable": True,
            "estimatedWaitTime": "30 seconds",
        }
    where = f" while {context}" if context else ""
    return {
        "userMessage": f"An unexpected error occurred{where}.",
        "nextSteps": ["Try again in a few moments", "If the problem persists, contact support"],
        "retryable": True,
        "estimatedWaitTime": "1 minute",
    }
