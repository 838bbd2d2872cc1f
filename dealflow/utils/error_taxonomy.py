from __future__ import annotations

import socket
import sqlite3
import traceback
from typing import Any, Literal

import httpx

ErrorCode = Literal[
    "AUTHORIZATION_ERROR",
    "OCR_STAGE_ERROR",
    "STAGE_ERROR",
    "UPSTREAM_UNAVAILABLE",
    "RESULT_SCHEMA_INVALID",
    "CONVERSATION_PROTOCOL_ERROR",
    "STORAGE_ERROR",
    "CONFIGURATION_ERROR",
    "UNKNOWN_ERROR",
]

ERROR_FRIENDLY_MESSAGES: dict[ErrorCode, str] = {
    "AUTHORIZATION_ERROR": "You are not allowed to analyze this deal.",
    "OCR_STAGE_ERROR": "The pitch deck could not be read. Check the document and retry.",
    "STAGE_ERROR": "A pipeline step failed. Please retry the analysis.",
    "UPSTREAM_UNAVAILABLE": (
        "An external service is temporarily unavailable. Please retry in a few minutes."
    ),
    "RESULT_SCHEMA_INVALID": "The generated analysis was malformed and was not saved.",
    "CONVERSATION_PROTOCOL_ERROR": (
        "The analysis model did not follow the expected protocol. Please retry."
    ),
    "STORAGE_ERROR": "Storage operation failed while saving analysis data.",
    "CONFIGURATION_ERROR": "The service is misconfigured. Contact an administrator.",
    "UNKNOWN_ERROR": "Unexpected error occurred during the analysis.",
}


class PipelineError(Exception):
    """Base class for errors raised by the analysis pipeline."""

    error_code: ErrorCode = "UNKNOWN_ERROR"


class AuthorizationError(PipelineError):
    """Raised before a job exists when the caller may not analyze the subject."""

    error_code: ErrorCode = "AUTHORIZATION_ERROR"

    def __init__(self, message: str, *, status_code: int = 403) -> None:
        super().__init__(message)
        self.status_code = status_code


class StageError(PipelineError):
    """Fatal failure of one named pipeline stage."""

    error_code: ErrorCode = "STAGE_ERROR"

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage
        self.detail = message
        if stage == "ocr":
            self.error_code = "OCR_STAGE_ERROR"


class UpstreamRetryableError(PipelineError):
    """Transient upstream failure (rate limit, timeout, network)."""

    error_code: ErrorCode = "UPSTREAM_UNAVAILABLE"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(PipelineError):
    """Structured result failed shape validation."""

    error_code: ErrorCode = "RESULT_SCHEMA_INVALID"

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class ConversationError(PipelineError):
    """The reasoning service broke the tool-calling protocol."""

    error_code: ErrorCode = "CONVERSATION_PROTOCOL_ERROR"


class PersistenceError(PipelineError):
    """Durable store read or write failed."""

    error_code: ErrorCode = "STORAGE_ERROR"


class ConfigurationError(PipelineError):
    """Required runtime configuration is missing or invalid."""

    error_code: ErrorCode = "CONFIGURATION_ERROR"


class DeadlineExceeded(TimeoutError):
    """Raised when a bounded call does not finish in time."""


def classify_error(error: BaseException) -> ErrorCode:
    if isinstance(error, PipelineError):
        return error.error_code
    if isinstance(error, sqlite3.Error):
        return "STORAGE_ERROR"
    if isinstance(error, Exception) and is_retryable_exception(error):
        return "UPSTREAM_UNAVAILABLE"
    return "UNKNOWN_ERROR"


def sanitize_error_message(error: BaseException) -> str:
    return ERROR_FRIENDLY_MESSAGES[classify_error(error)]


def is_retryable_exception(error: Exception) -> bool:
    if isinstance(error, UpstreamRetryableError):
        return True
    if isinstance(error, PipelineError):
        return False

    status_code = extract_http_status_code(error)
    if status_code is not None:
        return is_retryable_status_code(status_code)

    if isinstance(
        error,
        (ConnectionError, TimeoutError, socket.timeout, httpx.TransportError),
    ):
        return True

    class_name = error.__class__.__name__.lower()
    return any(marker in class_name for marker in ("timeout", "connection", "network"))


def is_retryable_status_code(status_code: int) -> bool:
    return status_code in (408, 429) or 500 <= status_code <= 599


def extract_http_status_code(error: Exception) -> int | None:
    for field_name in ("status_code", "status", "http_status"):
        value = getattr(error, field_name, None)
        parsed = _to_int_or_none(value)
        if parsed is not None:
            return parsed

    try:
        response = getattr(error, "response", None)
    except RuntimeError:
        # httpx raises when .response is read on a request-only error
        response = None
    if response is not None:
        parsed = _to_int_or_none(getattr(response, "status_code", None))
        if parsed is not None:
            return parsed

    return None


def build_error_details(error: BaseException) -> str:
    details: list[str] = [f"{error.__class__.__name__}: {error}"]
    if isinstance(error, Exception):
        status_code = extract_http_status_code(error)
        if status_code is not None:
            details.append(f"status_code={status_code}")

    for field_name in ("body", "response_body", "payload"):
        value = getattr(error, field_name, None)
        if value is None:
            continue
        details.append(f"{field_name}={value}")
    return "\n".join(details)


def format_stack_trace(error: BaseException) -> str:
    return "".join(
        traceback.format_exception(type(error), error, error.__traceback__)
    )


def _to_int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
