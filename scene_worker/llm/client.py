"""Gemini generateContent 클라이언트.

- 비동기 호출: httpx.AsyncClient (호출마다 async with)
- API 키 확인: requests 세션 + urllib3 Retry (동기, CLI 용)

재시도는 여기서 하지 않는다. scene_worker.retry.with_retry 가 감싼다.
HTTP/전송 오류는 GeminiApiError / TimeoutError / ConnectionError 로 변환해 올려보낸다.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config.settings import (
    GEMINI_API_BASE_URL,
    GEMINI_MODEL,
    GEMINI_TIMEOUT,
    get_gemini_api_key,
)
from scene_worker.errors import GeminiApiError, InvalidRequestError, ErrorType
from scene_worker.llm.logger import LLMCallTimer

logger = logging.getLogger(__name__)

_BLOCKED_FINISH_REASONS = ("SAFETY", "RECITATION", "PROHIBITED_CONTENT", "BLOCKLIST")


def _build_session() -> requests.Session:
    """재시도 전략이 포함된 requests 세션 생성."""
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=1,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET"],
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


# 모듈 레벨 세션 (재사용으로 커넥션 풀 활용)
_http_session = _build_session()


@dataclass
class CallMeta:
    """호출 1회의 메타데이터 (로그 엔트리 timing/tokens 로 복사됨)."""
    model: str
    prompt_length: int
    response_length: int = 0
    duration_ms: int = 0
    retries: int = 0
    tokens: Optional[dict] = None


@dataclass
class GeminiResponse:
    text: str
    finish_reason: Optional[str]
    meta: CallMeta
    raw: Optional[dict] = None


def _usage_tokens(data: dict) -> Optional[dict]:
    usage = data.get("usageMetadata")
    if not isinstance(usage, dict):
        return None
    return {
        "prompt": int(usage.get("promptTokenCount", 0) or 0),
        "candidates": int(usage.get("candidatesTokenCount", 0) or 0),
        "total": int(usage.get("totalTokenCount", 0) or 0),
    }


def _error_message(resp: httpx.Response) -> tuple[Optional[str], Any]:
    """에러 응답에서 error.message 와 body 를 꺼낸다."""
    try:
        body = resp.json()
    except (json.JSONDecodeError, ValueError):
        return None, resp.text[:2000]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message"), body
    return None, body


def extract_candidate_text(data: dict) -> tuple[str, Optional[str]]:
    """
    generateContent 응답에서 첫 후보의 텍스트 추출

    Returns:
        (text, finish_reason)

    Raises:
        InvalidRequestError: 안전 필터 등으로 차단됨 (재시도 무의미)
        GeminiApiError(503): 후보/텍스트 없음 (일시적, 재시도 대상)
    """
    candidates = data.get("candidates") or []
    if not candidates:
        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise InvalidRequestError(
                f"Prompt blocked by Gemini safety filters: {feedback['blockReason']}",
                ErrorType.INVALID_INPUT,
            )
        raise GeminiApiError("No candidates in Gemini response (Service Unavailable)", status=503)

    candidate = candidates[0]
    finish_reason = candidate.get("finishReason")
    if finish_reason in _BLOCKED_FINISH_REASONS:
        raise InvalidRequestError(
            f"Content blocked by Gemini safety filters. Finish reason: {finish_reason}",
            ErrorType.INVALID_INPUT,
        )

    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    if not text.strip():
        raise GeminiApiError(
            f"Empty response from Gemini (finishReason={finish_reason}, Service Unavailable)",
            status=503,
        )
    return text, finish_reason


class GeminiClient:
    """Gemini REST 클라이언트."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: str = GEMINI_API_BASE_URL,
        timeout: float = GEMINI_TIMEOUT,
    ):
        """
        Args:
            api_key: Gemini API 키 (None 이면 호출 시점 환경변수)
            model: 모델명 (None 이면 GEMINI_MODEL)
            base_url: ".../v1beta/models/" 형태의 베이스 URL
            timeout: 호출당 타임아웃 (초). 재시도 지연과 별개.
        """
        self._api_key = api_key
        self.model = model or GEMINI_MODEL
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.timeout = timeout

    @property
    def api_key(self) -> str:
        return self._api_key or get_gemini_api_key()

    def _url(self, model: str) -> str:
        return f"{self.base_url}{model}:generateContent"

    async def generate(self, body: dict, model: Optional[str] = None) -> GeminiResponse:
        """
        generateContent 1회 호출

        Args:
            body: 요청 body (contents / generationConfig)
            model: 이 호출에만 쓸 모델 (선택)

        Returns:
            GeminiResponse

        Raises:
            GeminiApiError: HTTP 4xx/5xx 또는 빈 응답
            InvalidRequestError: 안전 필터 차단
            TimeoutError: 호출 타임아웃
            ConnectionError: 연결 실패
        """
        api_key = self.api_key
        if not api_key:
            raise GeminiApiError("Gemini API key is required", status=401)

        model = model or self.model
        payload = json.dumps(body, ensure_ascii=False)
        meta = CallMeta(model=model, prompt_length=len(payload))

        with LLMCallTimer() as timer:
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(
                        self._url(model),
                        content=payload.encode("utf-8"),
                        headers={
                            "Content-Type": "application/json",
                            "x-goog-api-key": api_key,
                        },
                    )
            except httpx.TimeoutException as e:
                raise TimeoutError(f"Gemini 응답 타임아웃 ({self.timeout:.0f}초 초과)") from e
            except httpx.TransportError as e:
                raise ConnectionError(f"Gemini 연결 오류 (network): {e}") from e

        meta.duration_ms = timer.elapsed_ms

        if resp.status_code >= 400:
            api_message, err_body = _error_message(resp)
            raise GeminiApiError(
                f"Gemini API error: {resp.status_code} {resp.reason_phrase}",
                status=resp.status_code,
                api_message=api_message,
                body=err_body,
            )

        data = resp.json()
        text, finish_reason = extract_candidate_text(data)
        meta.response_length = len(text)
        meta.tokens = _usage_tokens(data)
        logger.debug(
            "Gemini 응답: model=%s duration=%dms len=%d finish=%s",
            model, meta.duration_ms, meta.response_length, finish_reason,
        )
        return GeminiResponse(text=text, finish_reason=finish_reason, meta=meta, raw=data)


def verify_api_key(api_key: str, base_url: str = GEMINI_API_BASE_URL, timeout: int = 10) -> bool:
    """API 키 유효성 확인 (models 목록 조회). 네트워크 오류는 예외로 올려보낸다."""
    url = base_url.rstrip("/")
    try:
        resp = _http_session.get(url, headers={"x-goog-api-key": api_key}, timeout=(5, timeout))
    except requests.Timeout:
        raise TimeoutError(f"Gemini 키 확인 타임아웃 ({timeout}초 초과)")
    except requests.RequestException as e:
        raise ConnectionError(f"Gemini 연결 오류: {e}") from e

    if resp.status_code in (400, 401, 403):
        logger.warning("Gemini API 키 확인 실패: status=%d", resp.status_code)
        return False
    resp.raise_for_status()
    return True
