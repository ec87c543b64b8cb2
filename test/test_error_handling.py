"""
Error Handling Test

에러 분류 (ErrorType + retryable) 테스트
"""

import json

import httpx
import pytest

from scene_worker.errors import (
    ErrorType,
    GeminiApiError,
    InvalidRequestError,
    JobCancelled,
    PipelineError,
    ResponseParseError,
    classify_error,
    is_retryable_type,
)


class TestClassifyError:

    @pytest.mark.parametrize("error, expected", [
        (GeminiApiError("Gemini API error", status=401), ErrorType.API_CONFIG),
        (GeminiApiError("Gemini API error", status=400, api_message="API key not valid"), ErrorType.API_CONFIG),
        (GeminiApiError("Gemini API error", status=429, api_message="RESOURCE_EXHAUSTED: quota"), ErrorType.GEMINI_QUOTA),
        (GeminiApiError("Gemini API error", status=403), ErrorType.GEMINI_QUOTA),
        (GeminiApiError("Gemini API error", status=429), ErrorType.GEMINI_RATE_LIMIT),
        (GeminiApiError("Gemini API error", status=503), ErrorType.MODEL_OVERLOAD),
        (GeminiApiError("Gemini API error", status=500), ErrorType.GEMINI_API_ERROR),
        (GeminiApiError("Gemini API error", status=400, api_message="INVALID_ARGUMENT"), ErrorType.INVALID_INPUT),
        (TimeoutError("Gemini 응답 타임아웃"), ErrorType.TIMEOUT),
        (httpx.ReadTimeout("read"), ErrorType.TIMEOUT),
        (ConnectionError("ECONNREFUSED"), ErrorType.NETWORK_ERROR),
        (httpx.ConnectError("refused"), ErrorType.NETWORK_ERROR),
        (ResponseParseError("Failed to parse", preview="{"), ErrorType.PARSE_ERROR),
        (json.JSONDecodeError("Expecting value", "x", 0), ErrorType.PARSE_ERROR),
        (InvalidRequestError("Script text is required"), ErrorType.INVALID_INPUT),
        (PipelineError("Invalid YouTube URL", ErrorType.INVALID_URL), ErrorType.INVALID_URL),
        (JobCancelled("Job cancelled by user"), ErrorType.CANCELLED),
        (RuntimeError("something odd"), ErrorType.UNKNOWN_ERROR),
    ])
    def test_error_type(self, error, expected):
        assert classify_error(error).type == expected

    @pytest.mark.parametrize("error_type, retryable", [
        (ErrorType.INVALID_URL, False),
        (ErrorType.INVALID_INPUT, False),
        (ErrorType.API_CONFIG, False),
        (ErrorType.PARSE_ERROR, False),
        (ErrorType.GEMINI_RATE_LIMIT, True),
        (ErrorType.GEMINI_QUOTA, True),
        (ErrorType.MODEL_OVERLOAD, True),
        (ErrorType.GEMINI_API_ERROR, True),
        (ErrorType.NETWORK_ERROR, True),
        (ErrorType.TIMEOUT, True),
        (ErrorType.CANCELLED, True),
        (ErrorType.UNKNOWN_ERROR, True),
    ])
    def test_retryability_table(self, error_type, retryable):
        assert is_retryable_type(error_type) is retryable

    def test_context_prefix_and_status(self):
        info = classify_error(GeminiApiError("Gemini API error", status=503), "Batch 3/5 failed")
        assert info.message.startswith("Batch 3/5 failed: ")
        assert info.status == 503
        assert info.retryable is True
        assert info.debug()["status"] == 503

    def test_gemini_error_str_includes_status_and_api_message(self):
        err = GeminiApiError("Gemini API error", status=429, api_message="Quota exceeded")
        assert str(err) == "Gemini API error [429] - Quota exceeded"
