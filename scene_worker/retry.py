"""
Retry Engine

단일 비동기 호출을 지수 백오프(+-20% jitter)로 재시도한다.
마지막 시도의 예외를 감싸지 않고 그대로 올려보낸다.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from config.settings import (
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_INITIAL_DELAY,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
)
from scene_worker.errors import JobCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 기본 재시도 대상 시그니처: "{예외 클래스명} {메시지}" 에 대소문자 무시 부분 일치
DEFAULT_RETRYABLE_ERRORS: tuple[str, ...] = (
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ConnectionError",
    "Connection refused",
    "Connection reset",
    "MODEL_OVERLOAD",
    "RATE_LIMIT",
    "RESOURCE_EXHAUSTED",
    "503",
    "429",
    "overloaded",
    "Service Unavailable",
    "timeout",
    "timed out",
    "quota",
)

JITTER_RATIO = 0.2

OnRetry = Callable[[int, BaseException, float], None]


@dataclass
class RetryPolicy:
    """재시도 정책 (지연 단위: 초)"""
    max_attempts: int = RETRY_MAX_ATTEMPTS                # 최대 시도 횟수 (최초 호출 포함)
    initial_delay: float = RETRY_INITIAL_DELAY            # 첫 재시도 전 대기
    max_delay: float = RETRY_MAX_DELAY                    # 지연 상한 (jitter 적용 전)
    backoff_multiplier: float = RETRY_BACKOFF_MULTIPLIER  # 백오프 배수
    retryable_errors: Sequence[str] = field(default_factory=lambda: DEFAULT_RETRYABLE_ERRORS)
    is_retryable: Optional[Callable[[BaseException], bool]] = None  # 지정 시 retryable_errors 대신 사용
    on_retry: Optional[OnRetry] = None


def calculate_backoff_delay(
    policy: RetryPolicy,
    attempt: int,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Exponential Backoff 지연 시간 계산

    Args:
        policy: 재시도 정책
        attempt: 실패한 시도 번호 (1부터 시작)
        rng: jitter 난수원 (테스트 주입용)

    Returns:
        대기 시간 (초). min(max_delay, initial * multiplier^(attempt-1)) 에 +-20% jitter
    """
    base = min(policy.max_delay, policy.initial_delay * (policy.backoff_multiplier ** (attempt - 1)))
    jitter = (rng or random).uniform(-JITTER_RATIO, JITTER_RATIO)
    return max(0.0, base * (1 + jitter))


def matches_retryable(error: BaseException, patterns: Sequence[str]) -> bool:
    """예외 클래스명 + 메시지 (+ status/code 속성) 에 패턴이 포함되면 재시도 대상."""
    parts = [type(error).__name__, str(error)]
    for attr in ("status", "code"):
        value = getattr(error, attr, None)
        if value is not None:
            parts.append(str(value))
    haystack = " ".join(parts).lower()
    return any(p.lower() in haystack for p in patterns)


def _should_retry(policy: RetryPolicy, error: BaseException) -> bool:
    if isinstance(error, JobCancelled):
        return False
    if policy.is_retryable is not None:
        return policy.is_retryable(error)
    return matches_retryable(error, policy.retryable_errors)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
    label: str = "operation",
) -> T:
    """
    재시도 메커니즘을 포함한 비동기 호출

    Args:
        operation: 인자 없는 코루틴 팩토리 (시도마다 새로 호출)
        policy: 재시도 정책 (None 이면 기본값)
        sleep: 백오프 대기 함수 (취소 감지 sleep 주입용)
        rng: jitter 난수원
        label: 로그 식별자

    Returns:
        operation 결과

    Raises:
        마지막 시도의 예외 (변형 없음)
    """
    policy = policy or RetryPolicy()
    max_attempts = max(1, policy.max_attempts)
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_attempts or not _should_retry(policy, e):
                if attempt > 1:
                    logger.error(
                        "⛔ 재시도 종료: %s (attempts=%d/%d) %s",
                        label, attempt, max_attempts, e,
                    )
                raise

            delay = calculate_backoff_delay(policy, attempt, rng)
            logger.warning(
                "🔄 재시도 대기: %s (attempt=%d/%d, %.2f초 후) error=%s",
                label, attempt, max_attempts, delay, e,
            )
            if policy.on_retry is not None:
                policy.on_retry(attempt, e, delay)
            await sleep(delay)
