"""Tests for error hierarchy."""

import asyncio
import sqlite3

import httpx
import pytest

from kirapilot.errors import (
    AbortedError,
    ConfigError,
    DownloadFailedError,
    ErrorKind,
    InternalError,
    KiraError,
    LLMError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    ProviderUnavailableError,
    RequestTimeoutError,
    ResourceExhaustedError,
    ServiceUnavailableError,
    Severity,
    StorageError,
    ValidationError,
    classify_exception,
    error_for_status,
)


def test_hierarchy() -> None:
    for cls in (
        LLMError,
        ConfigError,
        ProviderUnavailableError,
        NetworkError,
        PermissionDeniedError,
        ValidationError,
        NotFoundError,
        StorageError,
        AbortedError,
    ):
        assert issubclass(cls, KiraError)


def test_retryable_default() -> None:
    assert KiraError("test").retryable is False
    assert NetworkError("test").retryable is True
    assert RequestTimeoutError("test").retryable is True
    assert ServiceUnavailableError("test").retryable is True
    assert ResourceExhaustedError("test").retryable is True
    assert DownloadFailedError("test").retryable is True
    assert ConfigError("test").retryable is False
    assert PermissionDeniedError("test").retryable is False
    assert NetworkError("test", retryable=False).retryable is False


def test_describe_uses_kind_prefix() -> None:
    assert PermissionDeniedError("no access").describe() == "PermissionDenied: no access"
    assert NotFoundError().describe() == "NotFound"
    assert str(NetworkError("connection reset")) == "connection reset"


def test_to_response_shape() -> None:
    err = ValidationError("missing required field: title", field="title")
    payload = err.to_response()
    assert payload["error_type"] == "validation_error"
    assert payload["code"] == "VALIDATION_ERROR"
    assert payload["message"] == "missing required field: title"
    assert payload["details"]["field"] == "title"
    assert payload["details"]["severity"] == Severity.LOW.value
    assert payload["details"]["retryable"] is False
    assert payload["details"]["suggestions"]


def test_llm_error_snake_name_and_status_code() -> None:
    err = LLMError("bad response", code="418")
    assert ErrorKind.LLM.snake == "llm_error"
    assert ErrorKind.PERMISSION_DENIED.snake == "permission_denied"
    assert err.to_response()["details"]["status_code"] == "418"


def test_user_message_defaults_and_overrides() -> None:
    assert "internet" in NetworkError("x").user_message
    assert ConfigError("x", user_message="Set a key").user_message == "Set a key"
    assert AbortedError().suggestions == []


def test_catch_as_kira_error() -> None:
    try:
        raise ProviderUnavailableError("gone", provider="gemini")
    except KiraError as exc:
        assert exc.details["provider"] == "gemini"


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (429, ResourceExhaustedError),
        (408, RequestTimeoutError),
        (504, RequestTimeoutError),
        (500, ServiceUnavailableError),
        (503, ServiceUnavailableError),
        (400, LLMError),
        (401, LLMError),
    ],
)
def test_error_for_status(status_code: int, expected: type[KiraError]) -> None:
    err = error_for_status(status_code, "  upstream said no  ")
    assert type(err) is expected
    assert err.message == f"HTTP {status_code}: upstream said no"


def test_error_for_status_clips_body() -> None:
    err = error_for_status(400, "x" * 500)
    assert len(err.message) == len("HTTP 400: ") + 200
    assert err.details["status_code"] == "400"


def test_classify_exception() -> None:
    request = httpx.Request("GET", "http://llm.local")
    response = httpx.Response(503, request=request, text="busy")

    assert isinstance(classify_exception(asyncio.CancelledError()), AbortedError)
    assert isinstance(classify_exception(TimeoutError()), RequestTimeoutError)
    assert isinstance(
        classify_exception(httpx.ReadTimeout("slow", request=request)), RequestTimeoutError
    )
    assert isinstance(
        classify_exception(httpx.ConnectError("refused", request=request)), NetworkError
    )
    assert isinstance(
        classify_exception(httpx.HTTPStatusError("503", request=request, response=response)),
        ServiceUnavailableError,
    )
    assert isinstance(classify_exception(sqlite3.OperationalError("locked")), StorageError)
    assert isinstance(classify_exception(ValueError("bad")), ValidationError)
    assert isinstance(classify_exception(RuntimeError("boom")), InternalError)

    original = NotFoundError("missing")
    assert classify_exception(original) is original
