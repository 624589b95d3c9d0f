"""
Unit tests for model error normalization.
"""

import httpx
import openai
import pytest

from src.perplex.utils.error_handler import (
    ChatErrorHandler,
    ErrorCategory,
    ServiceError,
    not_found_error,
)

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def status_error(cls, status_code, code=None):
    body = {"code": code} if code else None
    return cls("upstream said no", response=httpx.Response(status_code, request=REQUEST), body=body)


class TestHandleModelError:
    """Each upstream failure maps to one category and status."""

    @pytest.mark.parametrize("error, category, status_code", [
        (status_error(openai.RateLimitError, 429, "insufficient_quota"), ErrorCategory.QUOTA, 402),
        (status_error(openai.RateLimitError, 429), ErrorCategory.RATE_LIMIT, 429),
        (openai.APITimeoutError(request=REQUEST), ErrorCategory.TIMEOUT, 504),
        (openai.APIConnectionError(request=REQUEST), ErrorCategory.NETWORK, 503),
        (status_error(openai.InternalServerError, 500), ErrorCategory.UPSTREAM_MODEL, 502),
        (RuntimeError("stream broke"), ErrorCategory.UPSTREAM_MODEL, 502),
    ])
    def test_mapping(self, error, category, status_code):
        service_error = ChatErrorHandler.handle_model_error(error)

        assert service_error.category is category
        assert service_error.status_code == status_code

    def test_quota_is_not_recoverable(self):
        service_error = ChatErrorHandler.handle_model_error(
            status_error(openai.RateLimitError, 429, "insufficient_quota")
        )

        assert not service_error.recoverable
        assert service_error.details["code"] == "insufficient_quota"

    def test_status_code_kept_in_details(self):
        service_error = ChatErrorHandler.handle_model_error(status_error(openai.InternalServerError, 500))

        assert service_error.details["status_code"] == 500

    def test_service_error_passes_through(self):
        original = ServiceError("already mapped", ErrorCategory.STORAGE)

        assert ChatErrorHandler.handle_model_error(original) is original


class TestConversions:
    """Stream payload and HTTP exception shapes."""

    def test_stream_payload(self):
        service_error = ChatErrorHandler.handle_model_error(status_error(openai.RateLimitError, 429))

        assert ChatErrorHandler.to_stream_payload(service_error) == {
            "message": "Rate limit exceeded. Please try again later.",
            "status": 429,
            "code": None,
            "category": "rate_limit",
        }

    def test_http_exception(self):
        exc = ChatErrorHandler.to_http_exception(not_found_error("Conversation not found", conversation_id="c1"))

        assert exc.status_code == 404
        assert exc.detail["category"] == "not_found"
        assert exc.detail["details"] == {"conversation_id": "c1"}
        assert exc.detail["recoverable"] is False
