"""Gemini 호출 로그 모듈.

호출마다 pending 엔트리(log) → completed/error 엔트리(logUpdate) 를 같은 id 로 만든다.
DB 저장(log_llm_call)은 선택 사항이며 실패 시 logger.warning 으로 fallback 한다.
메인 파이프라인을 절대 중단시키지 않는다.

사용 예:
    entry = create_pending_log(log_id, "phase-2", model=..., body=body_str, batch_number=0)
    ...
    done = create_completed_log(entry, response, "5 scenes", parsed_item_count=5)
    log_llm_call(job_id=job_id, entry=done, prompt_text=body_str, raw_response=response.text)
"""
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from config.settings import PHASE_CACHE_LOG_BODY_LIMIT
from db.models import LLMLog
from db.session import SessionLocal
from scene_worker.pipeline.types import LogEntry

if TYPE_CHECKING:
    from scene_worker.llm.client import GeminiResponse

logger = logging.getLogger(__name__)

# DB 저장 최대 길이 (TEXT 컬럼 64KB 안전 마진)
_MAX_TEXT_LEN = 60_000


class LLMCallTimer:
    """with 블록으로 사용하는 경과시간 측정기."""

    def __init__(self) -> None:
        self._start: float = 0.0
        self.elapsed_ms: int = 0

    def __enter__(self) -> "LLMCallTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *_: object) -> None:
        self.elapsed_ms = int((time.perf_counter() - self._start) * 1000)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# 로그 엔트리 팩토리
# ---------------------------------------------------------------------------

def create_pending_log(
    log_id: str,
    phase: str,
    *,
    model: str,
    body: str,
    batch_number: Optional[int] = None,
    video_url: Optional[str] = None,
) -> LogEntry:
    """API 호출 전 pending 엔트리."""
    request = {"model": model, "body": body, "promptLength": len(body)}
    if video_url:
        request["videoUrl"] = video_url
    return LogEntry(
        id=log_id,
        phase=phase,
        status="pending",
        timestamp=_now_iso(),
        batch_number=batch_number,
        request=request,
        response={"success": False, "body": "", "responseLength": 0, "parsedSummary": "awaiting response..."},
    )


def create_completed_log(
    pending: LogEntry,
    response: "GeminiResponse",
    parsed_summary: str,
    parsed_item_count: Optional[int] = None,
) -> LogEntry:
    """호출 성공 후 completed 엔트리 (pending 과 같은 id)."""
    meta = response.meta
    result = {
        "success": True,
        "finishReason": response.finish_reason,
        "body": response.text,
        "responseLength": meta.response_length,
        "parsedSummary": parsed_summary,
    }
    if parsed_item_count is not None:
        result["parsedItemCount"] = parsed_item_count
    return LogEntry(
        id=pending.id,
        phase=pending.phase,
        status="completed",
        timestamp=_now_iso(),
        batch_number=pending.batch_number,
        request={**pending.request, "model": meta.model, "promptLength": meta.prompt_length},
        response=result,
        timing={"durationMs": meta.duration_ms, "retries": meta.retries},
        tokens=meta.tokens,
    )


def create_error_log(
    pending: LogEntry,
    error_type: str,
    error_message: str,
    duration_ms: int = 0,
    retries: int = 0,
) -> LogEntry:
    """호출/파싱 실패 엔트리 (status 는 completed, error 필드로 구분)."""
    return LogEntry(
        id=pending.id,
        phase=pending.phase,
        status="completed",
        timestamp=_now_iso(),
        batch_number=pending.batch_number,
        request=dict(pending.request),
        response={
            "success": False,
            "body": "",
            "responseLength": 0,
            "parsedSummary": f"Error: {error_message}",
        },
        timing={"durationMs": duration_ms, "retries": retries},
        error={"type": error_type, "message": error_message},
    )


def truncate_log(entry: LogEntry, limit: int = PHASE_CACHE_LOG_BODY_LIMIT) -> LogEntry:
    """캐시 저장용: request/response body 를 limit 자로 자른 사본."""
    def _cut(section: dict) -> dict:
        body = section.get("body")
        if isinstance(body, str) and len(body) > limit:
            return {**section, "body": body[:limit] + "...[truncated]"}
        return dict(section)

    return LogEntry(
        id=entry.id,
        phase=entry.phase,
        status=entry.status,
        timestamp=entry.timestamp,
        batch_number=entry.batch_number,
        request=_cut(entry.request),
        response=_cut(entry.response),
        timing=dict(entry.timing),
        tokens=entry.tokens,
        error=entry.error,
    )


# ---------------------------------------------------------------------------
# DB 저장 (선택)
# ---------------------------------------------------------------------------

def log_llm_call(
    *,
    job_id: Optional[str],
    entry: LogEntry,
    prompt_text: str = "",
    raw_response: str = "",
) -> None:
    """완료된 호출 로그를 llm_logs 테이블에 기록한다.

    Args:
        job_id:       연결 job ID (없으면 None)
        entry:        completed 또는 error 엔트리
        prompt_text:  요청 body 전체
        raw_response: 모델 원시 응답
    """
    error = entry.error or {}
    try:
        with SessionLocal() as db:
            row = LLMLog(
                job_id=job_id,
                phase=entry.phase,
                batch_number=entry.batch_number,
                model_name=entry.request.get("model"),
                prompt_length=int(entry.request.get("promptLength", 0) or 0),
                response_length=int(entry.response.get("responseLength", 0) or 0),
                retries=int(entry.timing.get("retries", 0) or 0),
                tokens=entry.tokens,
                prompt_text=prompt_text[:_MAX_TEXT_LEN] if prompt_text else None,
                raw_response=raw_response[:_MAX_TEXT_LEN] if raw_response else None,
                success=not error,
                error_type=error.get("type"),
                error_message=error.get("message", "")[:2000] or None,
                duration_ms=entry.timing.get("durationMs"),
            )
            db.add(row)
            db.commit()
            logger.debug(
                "LLM 로그 저장: job_id=%s phase=%s batch=%s success=%s",
                job_id, entry.phase, entry.batch_number, not error,
            )
    except Exception as exc:
        # DB 오류는 파이프라인을 멈추지 않음
        logger.warning(
            "LLM 로그 DB 저장 실패 (무시): %s | job_id=%s phase=%s",
            exc, job_id, entry.phase,
        )
