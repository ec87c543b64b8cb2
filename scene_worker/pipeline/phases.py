"""
Phase Executors

각 phase 는 (요청 빌더, 응답 파서) 쌍이며 provider 호출만 Retry Engine 으로 감싼다.
파싱은 재시도 밖에서 한 번만 한다. 같은 프롬프트에 대한 malformed 응답은 재발 가능성이 높다.
phase 는 부분 결과를 내지 않는다: 완전히 정규화된 결과를 반환하거나 예외를 올린다.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from config.settings import (
    BATCH_OVERLAP_SECONDS,
    MAX_AUTO_SCENES,
    MIN_AUTO_SCENES,
    SECONDS_PER_SCENE,
)
from scene_worker.llm.client import GeminiResponse
from scene_worker.llm.normalizer import (
    parse_characters,
    parse_color_profile,
    parse_scene_batch,
    parse_script,
    parse_video_analysis,
)
from scene_worker.llm.prompts import (
    build_character_request,
    build_color_profile_request,
    build_scene_request,
    build_script_request,
    format_time,
    parse_timestamp,
)
from scene_worker.pipeline.types import (
    AnalysisResult,
    CharacterExtraction,
    GeneratedScript,
    JobRequest,
    Mode,
    SceneBatchResult,
    Workflow,
)
from scene_worker.retry import OnRetry, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# 배치 계획
# ---------------------------------------------------------------------------

@dataclass
class BatchPlan:
    """씬 배치 1개의 범위."""
    index: int                          # 0-based
    scene_count: int                    # 이 배치가 만들 씬 수
    first_sequence: int                 # 이 배치 첫 씬의 sequence (1-based)
    start_time: Optional[str] = None    # 비디오 분석 구간
    end_time: Optional[str] = None
    script_chunk: Optional[str] = None


def effective_scene_count(request: JobRequest) -> int:
    """auto 모드 + 영상 길이를 알면 길이 기준 씬 수 ([MIN_AUTO_SCENES, MAX_AUTO_SCENES]), 아니면 요청 값."""
    if _is_time_based(request) and request.scene_count_mode == "auto":
        calculated = math.ceil(request.video_duration_seconds / SECONDS_PER_SCENE)
        return max(MIN_AUTO_SCENES, min(calculated, MAX_AUTO_SCENES))
    return request.scene_count


def _is_time_based(request: JobRequest) -> bool:
    return (
        request.workflow == Workflow.URL_TO_SCENES
        and request.mode == Mode.DIRECT
        and bool(request.video_duration_seconds)
    )


def split_script(text: str, parts: int) -> list[str]:
    """스크립트를 줄 단위로 parts 개 청크로 나눈다. 빈 청크는 전체 텍스트로 대체."""
    lines = [line for line in text.splitlines() if line.strip()]
    if parts <= 1 or not lines:
        return [text] * max(1, parts)
    size = math.ceil(len(lines) / parts)
    chunks = []
    for i in range(parts):
        chunk = "\n".join(lines[i * size:(i + 1) * size])
        chunks.append(chunk or text)
    return chunks


def plan_batches(request: JobRequest, script_text: Optional[str] = None) -> list[BatchPlan]:
    """
    요청 → 배치 계획

    - direct + 영상 길이 known: batch_size * SECONDS_PER_SCENE 초 단위 구간 (첫 배치 외엔 overlap 포함)
    - 그 외: ceil(scene_count / batch_size) 개, 스크립트가 있으면 청크를 배치마다 나눠 준다
    """
    scene_count = effective_scene_count(request)
    batch_size = max(1, request.batch_size)

    if _is_time_based(request):
        duration = int(request.video_duration_seconds)
        offset = parse_timestamp(request.start_time) if request.start_time else 0
        seconds_per_batch = batch_size * SECONDS_PER_SCENE
        total = max(1, math.ceil(duration / seconds_per_batch))
        plans: list[BatchPlan] = []
        produced = 0
        for i in range(total):
            start = i * seconds_per_batch
            end = min((i + 1) * seconds_per_batch, duration)
            count = min(math.ceil((end - start) / SECONDS_PER_SCENE), scene_count - produced)
            if count <= 0:
                break
            analysis_start = start if i == 0 else max(0, start - BATCH_OVERLAP_SECONDS)
            plans.append(BatchPlan(
                index=i,
                scene_count=count,
                first_sequence=produced + 1,
                start_time=format_time(offset + analysis_start),
                end_time=format_time(offset + end),
            ))
            produced += count
        return plans

    total = max(1, math.ceil(scene_count / batch_size))
    chunks = split_script(script_text, total) if script_text else [None] * total
    return [
        BatchPlan(
            index=i,
            scene_count=min(batch_size, scene_count - i * batch_size),
            first_sequence=i * batch_size + 1,
            start_time=request.start_time,
            end_time=request.end_time,
            script_chunk=chunks[i],
        )
        for i in range(total)
    ]


# ---------------------------------------------------------------------------
# Phase 실행기
# ---------------------------------------------------------------------------

@dataclass
class PhaseOutcome(Generic[T]):
    result: T
    response: GeminiResponse


class PhaseExecutor(Generic[T]):
    """provider 호출 1회 (재시도 포함) + 파싱."""

    phase = "phase"

    def __init__(
        self,
        client,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Optional[OnRetry] = None,
        model: Optional[str] = None,
    ):
        self.client = client
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.on_retry = on_retry
        self.model = model
        self.last_retries = 0

    def parse(self, text: str) -> T:
        raise NotImplementedError

    async def execute(self, body: dict, label: Optional[str] = None) -> PhaseOutcome[T]:
        """
        Raises:
            재시도 소진 후 마지막 provider 예외, 또는 ResponseParseError
        """
        self.last_retries = 0

        def _count_retry(attempt: int, error: BaseException, delay: float) -> None:
            self.last_retries += 1
            if self.on_retry is not None:
                self.on_retry(attempt, error, delay)

        policy = replace(self.policy, on_retry=_count_retry)
        response = await with_retry(
            lambda: self.client.generate(body, model=self.model),
            policy,
            sleep=self.sleep,
            label=label or self.phase,
        )
        response.meta.retries = self.last_retries
        return PhaseOutcome(result=self.parse(response.text), response=response)


class AnalysisPhase(PhaseExecutor[AnalysisResult]):
    """Phase 0: 컬러 프로파일 (merged 면 캐릭터/배경 포함)."""

    phase = "phase-0"

    def __init__(self, client, policy: Optional[RetryPolicy] = None, *, merged: bool = False, **kwargs):
        super().__init__(client, policy, **kwargs)
        self.merged = merged

    def build(self, request: JobRequest) -> dict:
        return build_color_profile_request(
            request.video_url, request.start_time, request.end_time, merged=self.merged,
        )

    def parse(self, text: str) -> AnalysisResult:
        if self.merged:
            return parse_video_analysis(text)
        return AnalysisResult(color=parse_color_profile(text))


class CharacterPhase(PhaseExecutor[CharacterExtraction]):
    """Phase 1: 캐릭터 추출."""

    phase = "phase-1"

    def build(self, request: JobRequest) -> dict:
        return build_character_request(request.video_url, request.start_time, request.end_time)

    def parse(self, text: str) -> CharacterExtraction:
        return parse_characters(text)


class ScriptPhase(PhaseExecutor[GeneratedScript]):
    """hybrid / url-to-script: 비디오 → 구조화 스크립트."""

    phase = "phase-script"

    def build(self, request: JobRequest) -> dict:
        return build_script_request(request.video_url, request.start_time, request.end_time)

    def parse(self, text: str) -> GeneratedScript:
        return parse_script(text)


class ScenePhase(PhaseExecutor[SceneBatchResult]):
    """Phase 2: 씬 배치 1개."""

    phase = "phase-2"

    def __init__(self, client, policy: Optional[RetryPolicy] = None, *, media_type: str = "video", **kwargs):
        super().__init__(client, policy, **kwargs)
        self.media_type = media_type

    def build(self, **kwargs) -> dict:
        return build_scene_request(media_type=self.media_type, **kwargs)

    def parse(self, text: str) -> SceneBatchResult:
        return parse_scene_batch(text, self.media_type)
