"""KiraPilot exception hierarchy.

All agent exceptions inherit from KiraError. Every error carries a kind,
a severity, a user-facing message, and recovery suggestions; ``retryable``
marks the kinds the retry mechanism is allowed to repeat.
"""

from __future__ import annotations

import asyncio
import re
import sqlite3
from enum import Enum
from typing import Any, ClassVar

import httpx


class ErrorKind(str, Enum):
    LLM = "LLMError"
    CONFIG = "ConfigError"
    INITIALIZATION = "InitializationError"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    INVALID_REQUEST = "InvalidRequest"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    INTERNAL = "InternalError"
    PERMISSION_DENIED = "PermissionDenied"
    VALIDATION = "ValidationError"
    NETWORK = "NetworkError"
    TIMEOUT = "TimeoutError"
    RESOURCE_EXHAUSTED = "ResourceExhausted"
    RECOVERY_FAILED = "RecoveryFailed"
    MODEL_NOT_FOUND = "ModelNotFound"
    DOWNLOAD_FAILED = "DownloadFailed"
    MODEL_LOAD_FAILED = "ModelLoadFailed"
    GENERATION_FAILED = "GenerationFailed"
    INSUFFICIENT_RESOURCES = "InsufficientResources"
    NOT_FOUND = "NotFound"
    STORAGE = "StorageError"
    ABORTED = "Aborted"

    @property
    def snake(self) -> str:
        if self is ErrorKind.LLM:
            return "llm_error"
        return re.sub(r"(?<!^)(?=[A-Z])", "_", self.value).lower()


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class KiraError(Exception):
    """Base exception for all KiraPilot errors."""

    kind: ClassVar[ErrorKind] = ErrorKind.INTERNAL
    error_code: ClassVar[str] = "INTERNAL_ERROR"
    default_severity: ClassVar[Severity] = Severity.HIGH
    default_retryable: ClassVar[bool] = False
    default_user_message: ClassVar[str] = (
        "Something went wrong while processing your request. Please try again."
    )
    default_suggestions: ClassVar[tuple[str, ...]] = (
        "Restart the application",
        "Switch to cloud model",
    )

    def __init__(
        self,
        message: str = "",
        *,
        retryable: bool | None = None,
        user_message: str | None = None,
        suggestions: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = self.default_retryable if retryable is None else retryable
        self.severity = self.default_severity
        self.user_message = user_message or self.default_user_message
        self.suggestions = list(suggestions) if suggestions is not None else list(
            self.default_suggestions
        )
        self.details: dict[str, Any] = dict(details or {})

    def describe(self) -> str:
        """Short ``Kind: message`` form used in observations and log rows."""
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value

    def to_response(self) -> dict[str, Any]:
        return {
            "error_type": self.kind.snake,
            "message": self.message or self.user_message,
            "code": self.error_code,
            "details": {
                "severity": self.severity.value,
                "retryable": self.retryable,
                "user_message": self.user_message,
                "suggestions": list(self.suggestions),
                **self.details,
            },
        }


class LLMError(KiraError):
    """Provider returned an error or an unusable response."""

    kind = ErrorKind.LLM
    error_code = "LLM_ERROR"
    default_severity = Severity.MEDIUM
    default_user_message = "The AI model returned an unexpected response. Please try again."
    default_suggestions = ("Try again in a few moments", "Switch to a different model")

    def __init__(self, message: str = "", *, code: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.code = code
        if code is not None:
            self.details["status_code"] = code


class ConfigError(KiraError):
    """Invalid or missing configuration."""

    kind = ErrorKind.CONFIG
    error_code = "CONFIGURATION_ERROR"
    default_user_message = (
        "There's a configuration issue with the AI model. Please check your settings."
    )
    default_suggestions = ("Check your settings", "Switch to a different model")


class InitializationError(KiraError):
    kind = ErrorKind.INITIALIZATION
    error_code = "INITIALIZATION_ERROR"
    default_severity = Severity.CRITICAL
    default_user_message = (
        "Failed to initialize the AI model. Please restart the application and try again."
    )


class ProviderUnavailableError(KiraError):
    """Named provider is not registered or not ready."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE
    error_code = "PROVIDER_UNAVAILABLE"
    default_severity = Severity.MEDIUM
    default_user_message = "The selected AI model is not available right now."
    default_suggestions = ("Switch to a different model", "Check the model settings")

    def __init__(self, message: str = "", *, provider: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider
        if provider:
            self.details["provider"] = provider


class InvalidRequestError(KiraError):
    kind = ErrorKind.INVALID_REQUEST
    error_code = "INVALID_REQUEST"
    default_severity = Severity.LOW
    default_user_message = "Invalid input provided. Please check your request and try again."
    default_suggestions = ("Rephrase your message",)


class ServiceUnavailableError(KiraError):
    kind = ErrorKind.SERVICE_UNAVAILABLE
    error_code = "SERVICE_UNAVAILABLE"
    default_severity = Severity.MEDIUM
    default_retryable = True
    default_user_message = (
        "The AI service is temporarily unavailable. Please try again later."
    )


class InternalError(KiraError):
    kind = ErrorKind.INTERNAL
    error_code = "INTERNAL_ERROR"
    default_severity = Severity.CRITICAL


class PermissionDeniedError(KiraError):
    kind = ErrorKind.PERMISSION_DENIED
    error_code = "PERMISSION_DENIED"
    default_severity = Severity.LOW
    default_user_message = "You don't have permission to perform that action."
    default_suggestions = ("Ask for a different action", "Review your permission settings")


class ValidationError(KiraError):
    kind = ErrorKind.VALIDATION
    error_code = "VALIDATION_ERROR"
    default_severity = Severity.LOW
    default_user_message = "Invalid input provided. Please check your request and try again."
    default_suggestions = ("Check the values you provided",)

    def __init__(self, message: str = "", *, field: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field
        if field is not None:
            self.details["field"] = field


class NetworkError(KiraError):
    kind = ErrorKind.NETWORK
    error_code = "NETWORK_ERROR"
    default_severity = Severity.LOW
    default_retryable = True
    default_user_message = "Network connection failed. Please check your internet connection."
    default_suggestions = ("Check your internet connection", "Try again in a few moments")


class RequestTimeoutError(KiraError):
    kind = ErrorKind.TIMEOUT
    error_code = "TIMEOUT_ERROR"
    default_severity = Severity.LOW
    default_retryable = True
    default_user_message = "The operation timed out. Please try again."
    default_suggestions = ("Try again with a shorter message", "Check system performance")


class ResourceExhaustedError(KiraError):
    kind = ErrorKind.RESOURCE_EXHAUSTED
    error_code = "RESOURCE_EXHAUSTED"
    default_severity = Severity.MEDIUM
    default_retryable = True
    default_user_message = (
        "System resources are currently exhausted. Please wait a moment and try again."
    )


class RecoveryFailedError(KiraError):
    kind = ErrorKind.RECOVERY_FAILED
    error_code = "RECOVERY_FAILED"
    default_severity = Severity.HIGH
    default_user_message = (
        "Failed to recover from a previous error. Please restart the application."
    )


class ModelNotFoundError(KiraError):
    kind = ErrorKind.MODEL_NOT_FOUND
    error_code = "MODEL_NOT_FOUND"
    default_severity = Severity.CRITICAL
    default_user_message = "The AI model could not be found. Please try downloading it again."
    default_suggestions = (
        "Try re-downloading the model",
        "Check your internet connection",
        "Switch to cloud model temporarily",
    )


class DownloadFailedError(KiraError):
    kind = ErrorKind.DOWNLOAD_FAILED
    error_code = "DOWNLOAD_FAILED"
    default_severity = Severity.MEDIUM
    default_retryable = True
    default_user_message = (
        "Failed to download the AI model. Please check your internet connection and try again."
    )
    default_suggestions = (
        "Check your internet connection",
        "Try again in a few minutes",
        "Use cloud model while troubleshooting",
    )


class ModelLoadFailedError(KiraError):
    kind = ErrorKind.MODEL_LOAD_FAILED
    error_code = "MODEL_LOAD_FAILED"
    default_severity = Severity.CRITICAL
    default_user_message = (
        "Failed to load the AI model. The model file may be corrupted. Please try re-downloading."
    )
    default_suggestions = (
        "Re-download the model file",
        "Check available disk space",
        "Switch to cloud model",
    )


class GenerationFailedError(KiraError):
    kind = ErrorKind.GENERATION_FAILED
    error_code = "GENERATION_FAILED"
    default_severity = Severity.MEDIUM
    default_retryable = True
    default_user_message = (
        "Failed to generate a response. Please try again with a different message."
    )
    default_suggestions = (
        "Try rephrasing your message",
        "Restart the conversation",
        "Switch to cloud model",
    )


class InsufficientResourcesError(KiraError):
    kind = ErrorKind.INSUFFICIENT_RESOURCES
    error_code = "INSUFFICIENT_RESOURCES"
    default_severity = Severity.MEDIUM
    default_retryable = True
    default_user_message = (
        "Your system doesn't have enough resources to run the local AI model. "
        "Consider using the cloud model instead."
    )
    default_suggestions = (
        "Close other applications to free memory",
        "Switch to cloud model",
        "Reduce model context size in settings",
    )


class NotFoundError(KiraError):
    """Repository lookup found nothing."""

    kind = ErrorKind.NOT_FOUND
    error_code = "NOT_FOUND"
    default_severity = Severity.LOW
    default_user_message = "The requested item could not be found."
    default_suggestions = ("Check the name or id and try again",)


class StorageError(KiraError):
    """Database or filesystem failure."""

    kind = ErrorKind.STORAGE
    error_code = "STORAGE_ERROR"
    default_user_message = (
        "A file system error occurred. Please check your disk space and permissions."
    )


class AbortedError(KiraError):
    """Request was cancelled by the caller."""

    kind = ErrorKind.ABORTED
    error_code = "ABORTED"
    default_severity = Severity.LOW
    default_user_message = "The request was cancelled."
    default_suggestions = ()


def classify_exception(exc: BaseException) -> KiraError:
    """Map a foreign exception onto the taxonomy; KiraErrors pass through."""
    if isinstance(exc, KiraError):
        return exc
    if isinstance(exc, asyncio.CancelledError):
        return AbortedError("request cancelled")
    if isinstance(exc, httpx.TimeoutException | asyncio.TimeoutError | TimeoutError):
        return RequestTimeoutError(str(exc) or "request timed out")
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, exc.response.text)
    if isinstance(exc, sqlite3.Error | OSError):
        return StorageError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, ValueError):
        return ValidationError(str(exc))
    return InternalError(f"{type(exc).__name__}: {exc}")


def error_for_status(status_code: int, body: str = "") -> KiraError:
    """Build the error for a non-2xx provider response, keeping the status code."""
    snippet = body.strip()[:200]
    message = f"HTTP {status_code}" + (f": {snippet}" if snippet else "")
    code = str(status_code)
    if status_code == 429:
        return ResourceExhaustedError(message, details={"status_code": code})
    if status_code in {408, 504}:
        return RequestTimeoutError(message, details={"status_code": code})
    if status_code in {500, 502, 503}:
        return ServiceUnavailableError(message, details={"status_code": code})
    return LLMError(message, code=code)
