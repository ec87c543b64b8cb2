"""
Error taxonomy

파이프라인 예외 계층과 단일 분류 지점 (classify_error).
재시도 엔진은 마지막 예외를 그대로 올려보내고, 분류는 오케스트레이터에서 한 번만 한다.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


# ===========================================================================
# 에러 타입 정의
# ===========================================================================

class ErrorType(Enum):
    """작업 실패 타입 (stream error 프레임의 type 값)"""
    INVALID_URL = "INVALID_URL"              # 잘못된 소스 URL (재시도 불가)
    INVALID_INPUT = "INVALID_INPUT"          # 잘못된 입력 / 안전 필터 차단 (재시도 불가)
    API_CONFIG = "API_CONFIG"                # API 키 누락/오류 (재시도 불가)
    GEMINI_RATE_LIMIT = "GEMINI_RATE_LIMIT"  # 429 (재시도 가능)
    GEMINI_QUOTA = "GEMINI_QUOTA"            # 쿼터 소진 (재시도 가능)
    MODEL_OVERLOAD = "MODEL_OVERLOAD"        # 503 / 과부하 (재시도 가능)
    GEMINI_API_ERROR = "GEMINI_API_ERROR"    # 기타 5xx/4xx (재시도 가능)
    NETWORK_ERROR = "NETWORK_ERROR"          # 연결 거부/리셋/DNS (재시도 가능)
    TIMEOUT = "TIMEOUT"                      # 호출 타임아웃 (재시도 가능)
    PARSE_ERROR = "PARSE_ERROR"              # 응답 JSON 파싱 실패 (재시도 불가)
    CANCELLED = "CANCELLED"                  # 사용자 취소 (항상 재개 가능)
    UNKNOWN_ERROR = "UNKNOWN_ERROR"          # 알 수 없는 오류 (재시도 가능)


_RETRYABLE: dict[ErrorType, bool] = {
    ErrorType.INVALID_URL: False,
    ErrorType.INVALID_INPUT: False,
    ErrorType.API_CONFIG: False,
    ErrorType.GEMINI_RATE_LIMIT: True,
    ErrorType.GEMINI_QUOTA: True,
    ErrorType.MODEL_OVERLOAD: True,
    ErrorType.GEMINI_API_ERROR: True,
    ErrorType.NETWORK_ERROR: True,
    ErrorType.TIMEOUT: True,
    ErrorType.PARSE_ERROR: False,
    ErrorType.CANCELLED: True,
    ErrorType.UNKNOWN_ERROR: True,
}

_DEFAULT_MESSAGES: dict[ErrorType, str] = {
    ErrorType.INVALID_URL: "Invalid URL. Please check again.",
    ErrorType.INVALID_INPUT: "Invalid input.",
    ErrorType.API_CONFIG: "API key configuration error.",
    ErrorType.GEMINI_RATE_LIMIT: "Gemini API rate limit exceeded. Please try again in a few seconds.",
    ErrorType.GEMINI_QUOTA: "Gemini API quota exceeded.",
    ErrorType.MODEL_OVERLOAD: "AI model is overloaded. Please try again in 1-2 minutes.",
    ErrorType.GEMINI_API_ERROR: "Error from Gemini AI.",
    ErrorType.NETWORK_ERROR: "Cannot connect to server.",
    ErrorType.TIMEOUT: "Request timeout.",
    ErrorType.PARSE_ERROR: "AI returned invalid data.",
    ErrorType.CANCELLED: "Job cancelled.",
    ErrorType.UNKNOWN_ERROR: "An unknown error occurred.",
}


def is_retryable_type(error_type: ErrorType) -> bool:
    return _RETRYABLE[error_type]


# ===========================================================================
# 예외 계층
# ===========================================================================

class PipelineError(Exception):
    """error_type 이 고정된 파이프라인 예외. classify_error 가 그대로 사용한다."""

    error_type: ErrorType = ErrorType.UNKNOWN_ERROR

    def __init__(self, message: str, error_type: Optional[ErrorType] = None):
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type


class InvalidRequestError(PipelineError):
    """요청 검증 실패 (provider 호출 전)."""

    error_type = ErrorType.INVALID_INPUT


class ResponseParseError(PipelineError):
    """provider 응답을 JSON으로 해석할 수 없음. 원문은 preview 만 보관한다."""

    error_type = ErrorType.PARSE_ERROR

    def __init__(self, message: str, preview: str = ""):
        super().__init__(message)
        self.preview = preview


class JobCancelled(PipelineError):
    """취소 토큰이 다음 중단 지점에서 발견됨."""

    error_type = ErrorType.CANCELLED


class GeminiApiError(Exception):
    """Gemini HTTP 오류.

    Attributes:
        status: HTTP 상태 코드 (없으면 None)
        api_message: 응답 body 의 error.message
        body: 응답 원문 (잘린 상태)
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        api_message: Optional[str] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status = status
        self.api_message = api_message
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is not None:
            base = f"{base} [{self.status}]"
        if self.api_message and self.api_message not in base:
            base = f"{base} - {self.api_message}"
        return base


# ===========================================================================
# 분류
# ===========================================================================

@dataclass
class ErrorInfo:
    """분류 결과. error 프레임 / JobError 로 변환된다."""
    type: ErrorType
    message: str
    retryable: bool
    status: Optional[int] = None

    def debug(self) -> dict:
        return {"status": self.status, "detail": self.message}


def classify_error(error: BaseException, context: Optional[str] = None) -> ErrorInfo:
    """
    예외를 ErrorType 으로 분류

    Args:
        error: 최종 예외 (재시도 엔진이 그대로 전달한 것)
        context: 메시지 앞에 붙일 문맥 (예: "Batch 3/5 failed")

    Returns:
        ErrorInfo
    """
    error_type = _detect_error_type(error)
    detail = str(error) or _DEFAULT_MESSAGES[error_type]
    message = f"{context}: {detail}" if context else detail
    return ErrorInfo(
        type=error_type,
        message=message,
        retryable=_RETRYABLE[error_type],
        status=getattr(error, "status", None),
    )


def _detect_error_type(error: BaseException) -> ErrorType:
    if isinstance(error, PipelineError):
        return error.error_type

    error_msg = str(error).lower()
    api_msg = (getattr(error, "api_message", None) or "").lower()
    status = getattr(error, "status", None) or 0
    error_name = type(error).__name__.lower()
    text = f"{error_msg} {api_msg}"

    # 설정 오류 (재시도 불가)
    if status == 401 or any(x in text for x in ["api key", "api_key", "unauthorized", "unauthenticated"]):
        return ErrorType.API_CONFIG

    # 쿼터: 429 RESOURCE_EXHAUSTED 도 쿼터로 본다
    if status == 403 or any(x in text for x in ["resource_exhausted", "quota"]):
        return ErrorType.GEMINI_QUOTA

    if status == 429 or any(x in text for x in ["rate limit", "rate_limit", "too many requests"]):
        return ErrorType.GEMINI_RATE_LIMIT

    if status == 503 or any(x in text for x in ["overload", "model_overload", "unavailable"]):
        return ErrorType.MODEL_OVERLOAD

    # 타임아웃 / 네트워크
    if isinstance(error, (TimeoutError, httpx.TimeoutException)) or status == 504 \
            or any(x in text for x in ["timeout", "timed out", "etimedout"]):
        return ErrorType.TIMEOUT

    if isinstance(error, (ConnectionError, httpx.TransportError)) \
            or any(x in text for x in ["econnrefused", "econnreset", "enotfound", "network", "connection"]):
        return ErrorType.NETWORK_ERROR

    if status == 400 or "invalid_argument" in text:
        return ErrorType.INVALID_INPUT

    if status >= 400 or "gemini" in text:
        return ErrorType.GEMINI_API_ERROR

    # 파싱
    if isinstance(error, json.JSONDecodeError) or "json" in error_name \
            or any(x in error_msg for x in ["parse", "invalid response"]):
        return ErrorType.PARSE_ERROR

    if any(x in error_msg for x in ["invalid url", "video id"]):
        return ErrorType.INVALID_URL

    return ErrorType.UNKNOWN_ERROR
