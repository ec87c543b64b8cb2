"""
Job Orchestrator

한 job 의 phase 순서를 구동하고 진행 이벤트를 순서대로 내보낸다.

    Phase0(컬러 분석) → Phase1(캐릭터, 선택) → Phase2[배치 1..N] → Complete
                        어느 단계든 → Error / Cancelled

- phase/배치는 job 안에서 순차 실행 (배치 i+1 은 배치 i 의 씬/캐릭터에 의존)
- 배치 완료마다 job 스냅샷 + phase 캐시 저장 → 중단 시 최대 1개 배치만 유실
- Phase0/1 실패는 경고만 남기고 계속 진행
- 에러 분류는 여기서 한 번만 (classify_error)
- 취소는 다음 중단 지점(provider 호출 사이, 백오프/배치 대기)에서 반영
"""

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Callable, Optional

from config.settings import (
    BATCH_DELAY,
    GEMINI_MODEL,
    MAX_AUTO_SCENES,
    PHASE1_TIMEOUT,
    SSE_KEEPALIVE_INTERVAL,
    get_stream_timeout,
)
from db.models import JobStatus
from scene_worker.cache.job_cache import JobCache, utcnow
from scene_worker.cache.phase_cache import (
    LOGS,
    PHASE0,
    PHASE1,
    SCRIPT,
    PhaseCache,
    batch_key,
)
from scene_worker.errors import (
    ErrorType,
    InvalidRequestError,
    JobCancelled,
    PipelineError,
    classify_error,
)
from scene_worker.llm.logger import (
    create_completed_log,
    create_error_log,
    create_pending_log,
    log_llm_call,
    truncate_log,
)
from scene_worker.pipeline.events import (
    KEEPALIVE,
    EventIdGenerator,
    EventKind,
    StreamEvent,
    encode_sse,
)
from scene_worker.pipeline.phases import (
    AnalysisPhase,
    BatchPlan,
    CharacterPhase,
    PhaseExecutor,
    ScenePhase,
    ScriptPhase,
    effective_scene_count,
    plan_batches,
)
from scene_worker.pipeline.resume import (
    build_resume_config,
    build_resume_request,
    can_resume,
)
from scene_worker.pipeline.scene_merge import (
    build_continuity_context,
    merge_batch,
    registry_skeletons,
)
from scene_worker.pipeline.types import (
    AnalysisResult,
    CharacterExtraction,
    GeneratedScript,
    JobError,
    JobRequest,
    JobSnapshot,
    LogEntry,
    Mode,
    Scene,
    SceneBatchResult,
    Workflow,
    describe_character,
    registry_from_dict,
    registry_to_dict,
)
from scene_worker.retry import RetryPolicy

logger = logging.getLogger(__name__)

Emit = Callable[[StreamEvent], None]

_YOUTUBE_RE = re.compile(
    r"(?:youtube\.com/(?:watch\?(?:.*&)?v=|shorts/|embed/|live/|v/)|youtu\.be/)([A-Za-z0-9_-]{11})"
)


def new_job_id() -> str:
    """생성 시각 순으로 정렬되는 job id."""
    return f"job_{time.time_ns() // 1_000_000:013d}_{uuid.uuid4().hex[:8]}"


def extract_video_id(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    match = _YOUTUBE_RE.search(url)
    return match.group(1) if match else None


class CancelToken:
    """호출자 → 오케스트레이터 취소 신호."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise JobCancelled("Job cancelled by user")


# ---------------------------------------------------------------------------
# 요청 검증
# ---------------------------------------------------------------------------

def validate_request(request: JobRequest, client=None) -> None:
    """
    provider 호출 전 요청 검증

    Raises:
        PipelineError(INVALID_URL): 비디오 workflow 인데 유효한 YouTube URL 이 아님
        InvalidRequestError: 스크립트 없음 / 씬 수(1..MAX_AUTO_SCENES), 배치 크기 오류
        PipelineError(API_CONFIG): API 키 미설정
    """
    needs_video = request.workflow in (Workflow.URL_TO_SCENES, Workflow.URL_TO_SCRIPT)
    if needs_video or request.video_url:
        if not extract_video_id(request.video_url):
            raise PipelineError(
                f"Invalid YouTube URL: {request.video_url or '(empty)'}", ErrorType.INVALID_URL,
            )

    if request.workflow == Workflow.SCRIPT_TO_SCENES and not (request.script_text or "").strip():
        raise InvalidRequestError("Script text is required for script-to-scenes")

    if request.workflow != Workflow.URL_TO_SCRIPT:
        if request.scene_count <= 0:
            raise InvalidRequestError(f"Scene count must be positive: {request.scene_count}")
        if request.scene_count > MAX_AUTO_SCENES:
            raise InvalidRequestError(
                f"Scene count {request.scene_count} exceeds the maximum of {MAX_AUTO_SCENES}"
            )
        if request.batch_size <= 0:
            raise InvalidRequestError(f"Batch size must be positive: {request.batch_size}")

    if client is not None and not getattr(client, "api_key", "configured"):
        raise PipelineError("Gemini API key is not configured", ErrorType.API_CONFIG)


# ---------------------------------------------------------------------------
# 실행 컨텍스트
# ---------------------------------------------------------------------------

@dataclass
class _JobRun:
    """job 1회 실행의 가변 상태."""
    job: JobSnapshot
    request: JobRequest
    emit: Emit
    token: CancelToken
    ids: EventIdGenerator
    started_at: datetime
    plans: list[BatchPlan] = field(default_factory=list)
    current_batch: Optional[int] = None     # 배치 phase 진입 후에만 설정
    background: str = ""
    characters_seeded: bool = False

    def send(self, kind: EventKind, data: dict) -> None:
        batch = self.current_batch + 1 if self.current_batch is not None else 0
        self.emit(StreamEvent(kind=kind, data=data, id=self.ids.next_id(batch)))

    def progress(self, message: str, **extra) -> None:
        data = {
            "batchIndex": self.current_batch or 0,
            "totalBatches": self.job.total_batches,
            "sceneCount": len(self.job.scenes),
            "message": message,
        }
        data.update(extra)
        self.send(EventKind.PROGRESS, data)


class JobOrchestrator:
    """job 실행기. provider 클라이언트와 캐시, id/시계는 주입받는다."""

    def __init__(
        self,
        client,
        job_cache: JobCache,
        phase_cache: PhaseCache,
        *,
        id_generator: Callable[[], str] = new_job_id,
        clock: Callable[[], datetime] = utcnow,
        retry_policy: Optional[RetryPolicy] = None,
        batch_delay: float = BATCH_DELAY,
        phase1_timeout: Optional[float] = PHASE1_TIMEOUT,
        sleep=asyncio.sleep,
        persist_call_logs: bool = False,
    ):
        self.client = client
        self.job_cache = job_cache
        self.phase_cache = phase_cache
        self.id_generator = id_generator
        self.clock = clock
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_delay = batch_delay
        self.phase1_timeout = phase1_timeout
        self.sleep = sleep
        self.persist_call_logs = persist_call_logs

    # ------------------------------------------------------------------
    # 진입점
    # ------------------------------------------------------------------

    async def resume(
        self,
        job_id: str,
        emit: Emit,
        token: Optional[CancelToken] = None,
        reextract: bool = False,
    ) -> Optional[JobSnapshot]:
        """
        캐시된 partial/failed job 을 마지막 완료 배치 다음부터 재실행

        Raises:
            InvalidRequestError: job 없음 / 만료 / 재개 불가 상태
        """
        job = self.job_cache.get(job_id)
        if job is None:
            raise InvalidRequestError(f"Job not found or expired: {job_id}")
        if not can_resume(job, self.clock()):
            raise InvalidRequestError(
                f"Job {job_id} is not resumable (status={job.status.value})"
            )
        logger.info(
            "[Job %s] 재개: batch %d/%d 부터",
            job_id, job.resume_config.completed_batches + 1, job.total_batches,
        )
        return await self.run(build_resume_request(job, reextract=reextract), emit, token)

    async def run(
        self,
        request: JobRequest,
        emit: Emit,
        token: Optional[CancelToken] = None,
    ) -> Optional[JobSnapshot]:
        """
        job 1개 실행. 마지막 이벤트는 항상 complete / error / cancelled 중 하나.

        Returns:
            최종 JobSnapshot (요청 검증 실패 시 None)

        Raises:
            asyncio.CancelledError: 태스크 취소 (job 은 저장된 뒤 다시 올린다)
        """
        token = token or CancelToken()
        job_id = request.job_id or self.id_generator()
        ids = EventIdGenerator(job_id)

        try:
            validate_request(request, self.client)
            job = self._prepare_job(job_id, request)
        except PipelineError as e:
            info = classify_error(e)
            logger.warning("[Job %s] 요청 거부: %s", job_id, info.message)
            emit(StreamEvent(
                kind=EventKind.ERROR,
                data={"type": info.type.value, "message": info.message, "retryable": info.retryable},
                id=ids.next_id(0),
            ))
            return None

        run = _JobRun(
            job=job, request=request, emit=emit, token=token, ids=ids, started_at=self.clock(),
        )
        logger.info(
            "[Job %s] 시작: workflow=%s mode=%s scenes=%d batch_size=%d resume_from=%d",
            job_id, request.workflow.value, request.mode.value,
            job.scene_count, request.batch_size, request.resume_from_batch,
        )

        try:
            if request.workflow == Workflow.URL_TO_SCRIPT:
                await self._run_script(run)
            else:
                await self._run_scene_workflow(run)
            self._finish_complete(run)
        except JobCancelled:
            self._finish_cancelled(run)
        except asyncio.CancelledError:
            self._finish_cancelled(run)
            raise
        except Exception as e:
            self._finish_error(run, e)
        return run.job

    # ------------------------------------------------------------------
    # 준비
    # ------------------------------------------------------------------

    def _prepare_job(self, job_id: str, request: JobRequest) -> JobSnapshot:
        scene_count = effective_scene_count(request)
        total_batches = 0 if request.workflow == Workflow.URL_TO_SCRIPT else len(plan_batches(request))

        existing = self.job_cache.get(job_id) if request.job_id else None
        if existing is not None:
            if existing.status == JobStatus.COMPLETED:
                raise InvalidRequestError(f"Job {job_id} is already completed")
            job = existing
        else:
            job = JobSnapshot.create(job_id, request, total_batches, self.clock())

        job.status = JobStatus.IN_PROGRESS
        job.error = None
        job.scene_count = scene_count
        job.total_batches = total_batches
        job.scenes = list(request.existing_scenes)
        job.characters = dict(request.existing_characters)
        job.completed_batches = request.resume_from_batch
        if request.existing_color_profile is not None:
            job.color_profile = request.existing_color_profile
        if request.existing_script is not None:
            job.script = request.existing_script
        if request.reextract:
            job.color_profile = None
        return job

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    async def _run_scene_workflow(self, run: _JobRun) -> None:
        request = run.request
        if request.video_url:
            await self._run_analysis(run)
            if request.workflow == Workflow.URL_TO_SCENES:
                await self._run_characters(run)

        script_text = None
        if request.workflow == Workflow.SCRIPT_TO_SCENES:
            script_text = run.job.script_text
        elif request.mode == Mode.HYBRID:
            script = await self._run_script(run)
            script_text = script.to_plain_text()

        run.plans = plan_batches(request, script_text=script_text)
        run.job.total_batches = len(run.plans)
        await self._run_batches(run)

    async def _run_analysis(self, run: _JobRun) -> None:
        """Phase 0. 재개 시에는 건너뛴다 (reextract 제외). 실패해도 job 은 계속된다."""
        request, job = run.request, run.job
        if not request.extract_color_profile:
            return
        if request.resume_from_batch > 0 and not request.reextract:
            logger.info("[Job %s] 재개: Phase 0 건너뜀", job.job_id)
            return
        if job.color_profile is not None and not request.reextract:
            logger.info("[Job %s] 컬러 프로파일 재사용", job.job_id)
            return

        run.token.raise_if_cancelled()
        run.progress("Analyzing color profile...")
        cached = None if request.reextract else self.phase_cache.get(job.job_id, PHASE0)
        if cached is not None:
            logger.info("[Job %s] Phase 0 캐시 적중", job.job_id)
            analysis = AnalysisResult.from_dict(cached)
        else:
            phase = self._executor(AnalysisPhase, run, merged=request.merged_analysis)
            try:
                analysis = await self._call(run, phase, phase.build(request), _summarize_analysis)
            except JobCancelled:
                raise
            except Exception as e:
                logger.warning("[Job %s] Phase 0 실패, 컬러 프로파일 없이 진행: %s", job.job_id, e)
                run.progress(f"Color analysis skipped: {classify_error(e).message}")
                return
            self.phase_cache.put(job.job_id, PHASE0, analysis.to_dict())

        job.color_profile = analysis.color
        run.send(EventKind.COLOR_PROFILE, analysis.color.to_dict())
        if analysis.extraction is not None and analysis.extraction.characters:
            self._seed_characters(run, analysis.extraction)

    async def _run_characters(self, run: _JobRun) -> None:
        """Phase 1. merged 분석으로 캐릭터를 이미 알거나 재개 중이면 건너뛴다. 실패해도 계속."""
        job, request = run.job, run.request
        if run.characters_seeded:
            return
        if request.resume_from_batch > 0 and not request.reextract:
            logger.info("[Job %s] 재개: Phase 1 건너뜀", job.job_id)
            return
        if job.characters and not request.reextract:
            logger.info("[Job %s] 캐릭터 %d명 재사용", job.job_id, len(job.characters))
            return

        run.token.raise_if_cancelled()
        run.progress("Extracting characters...")
        cached = None if request.reextract else self.phase_cache.get(job.job_id, PHASE1)
        if cached is not None:
            logger.info("[Job %s] Phase 1 캐시 적중", job.job_id)
            extraction = CharacterExtraction.from_dict(cached)
        else:
            phase = self._executor(CharacterPhase, run)
            try:
                extraction = await self._call(
                    run, phase, phase.build(request), _summarize_characters,
                    timeout=self.phase1_timeout,
                )
            except JobCancelled:
                raise
            except Exception as e:
                logger.warning("[Job %s] Phase 1 실패, 캐릭터 없이 진행: %s", job.job_id, e)
                run.progress(f"Character extraction skipped: {classify_error(e).message}")
                return
            self.phase_cache.put(job.job_id, PHASE1, extraction.to_dict())

        self._seed_characters(run, extraction)

    def _seed_characters(self, run: _JobRun, extraction: CharacterExtraction) -> None:
        run.background = extraction.background or run.background
        for skeleton in extraction.characters:
            if skeleton.name in run.job.characters:
                continue
            run.job.characters[skeleton.name] = skeleton
            run.send(EventKind.CHARACTER, {"name": skeleton.name, "description": skeleton.describe()})
        run.characters_seeded = True

    async def _run_script(self, run: _JobRun) -> GeneratedScript:
        """스크립트 추출. 실패는 job 전체 실패."""
        job, request = run.job, run.request
        if job.script is not None and not request.reextract:
            return job.script

        run.token.raise_if_cancelled()
        run.progress("Extracting script...")
        cached = None if request.reextract else self.phase_cache.get(job.job_id, SCRIPT)
        if cached is not None:
            script = GeneratedScript.from_dict(cached)
        else:
            phase = self._executor(ScriptPhase, run)
            script = await self._call(run, phase, phase.build(request), _summarize_script)
            self.phase_cache.put(job.job_id, SCRIPT, script.to_dict())

        job.script = script
        run.send(EventKind.SCRIPT, {"script": script.to_dict()})
        return script

    async def _run_batches(self, run: _JobRun) -> None:
        job, request = run.job, run.request
        total = len(run.plans)
        phase = self._executor(ScenePhase, run, media_type=request.media_type)
        pre_extracted = registry_skeletons(job.characters)

        for plan in run.plans[request.resume_from_batch:]:
            run.token.raise_if_cancelled()
            run.current_batch = plan.index
            run.progress(f"Generating scenes (batch {plan.index + 1}/{total})...")

            cached = self.phase_cache.get(job.job_id, batch_key(plan.index))
            if cached is not None:
                logger.info("[Job %s] batch %d 캐시 적중", job.job_id, plan.index + 1)
                batch = SceneBatchResult(
                    scenes=[Scene.from_dict(s) for s in cached.get("scenes", [])],
                    characters=registry_from_dict(cached.get("characters")),
                )
            else:
                body = phase.build(
                    scene_count=plan.scene_count,
                    first_sequence=len(job.scenes) + 1,
                    total_scenes=job.scene_count,
                    batch_index=plan.index,
                    total_batches=total,
                    registry=job.characters,
                    color_profile=job.color_profile,
                    continuity=build_continuity_context(job.scenes),
                    video_url=request.video_url if request.workflow == Workflow.URL_TO_SCENES else None,
                    start_time=plan.start_time,
                    end_time=plan.end_time,
                    script_chunk=plan.script_chunk,
                    background=run.background,
                    pre_extracted=pre_extracted,
                    voice=request.voice,
                    negative_prompt=request.negative_prompt,
                    selfie_mode=request.selfie_mode,
                )
                batch = await self._call(
                    run, phase, body, _summarize_batch, batch_number=plan.index,
                )

            merged = merge_batch(job.scenes, job.characters, batch, plan.scene_count)
            job.scenes = merged.scenes
            job.characters = merged.characters
            job.completed_batches = plan.index + 1
            if merged.new_characters:
                logger.info("[Job %s] 새 캐릭터: %s", job.job_id, ", ".join(merged.new_characters))
            for name in merged.new_characters:
                run.send(EventKind.CHARACTER, {
                    "name": name,
                    "description": describe_character(job.characters[name]),
                })

            run.send(EventKind.BATCH_COMPLETE, {
                "batchNumber": plan.index,
                "scenes": [s.to_dict() for s in merged.batch_scenes],
                "characters": registry_to_dict(job.characters),
            })

            job.resume_config = build_resume_config(request, job.completed_batches)
            job.logs = self._cached_logs(run)
            self.job_cache.put(job)
            self.phase_cache.put(job.job_id, batch_key(plan.index), {
                "scenes": [s.to_dict() for s in merged.batch_scenes],
                "characters": registry_to_dict(batch.characters),
            })
            logger.info(
                "[Job %s] batch %d/%d 완료 (누적 씬 %d)",
                job.job_id, plan.index + 1, total, len(job.scenes),
            )

            if plan.index + 1 < total:
                await self._pause(run.token, self.batch_delay)

    # ------------------------------------------------------------------
    # provider 호출 + 로그
    # ------------------------------------------------------------------

    def _executor(self, cls: type[PhaseExecutor], run: _JobRun, **kwargs) -> PhaseExecutor:
        max_retries = max(0, self.retry_policy.max_attempts - 1)

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            run.progress(
                f"Retrying ({attempt}/{max_retries}) in {delay:.1f}s: {error}",
                retry=attempt,
            )

        return cls(
            self.client,
            self.retry_policy,
            sleep=lambda seconds: self._pause(run.token, seconds),
            on_retry=on_retry,
            model=run.request.model,
            **kwargs,
        )

    async def _call(
        self,
        run: _JobRun,
        phase: PhaseExecutor,
        body: dict,
        summarize: Callable[[object], tuple[str, Optional[int]]],
        batch_number: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        """pending 로그 → 호출 → completed/error 로그. 예외는 그대로 올린다."""
        job = run.job
        body_text = json.dumps(body, ensure_ascii=False)
        pending = create_pending_log(
            f"{job.job_id}-{phase.phase}-{len(job.logs) + 1}",
            phase.phase,
            model=run.request.model or getattr(self.client, "model", GEMINI_MODEL),
            body=body_text,
            batch_number=batch_number,
            video_url=run.request.video_url,
        )
        job.logs.append(pending)
        run.send(EventKind.LOG, {"entry": pending.to_dict()})

        label = f"{job.job_id}:{phase.phase}" + (f":batch-{batch_number + 1}" if batch_number is not None else "")
        try:
            execution = phase.execute(body, label=label)
            if timeout:
                outcome = await asyncio.wait_for(execution, timeout=timeout)
            else:
                outcome = await execution
        except Exception as e:
            info = classify_error(e)
            entry = create_error_log(pending, info.type.value, str(e), retries=phase.last_retries)
            self._record_log(run, entry, body_text, "")
            raise

        summary, count = summarize(outcome.result)
        entry = create_completed_log(pending, outcome.response, summary, count)
        self._record_log(run, entry, body_text, outcome.response.text)
        return outcome.result

    def _record_log(self, run: _JobRun, entry: LogEntry, prompt_text: str, raw_response: str) -> None:
        job = run.job
        job.logs = [entry if e.id == entry.id else e for e in job.logs]
        run.send(EventKind.LOG_UPDATE, {"entry": entry.to_dict()})
        self.phase_cache.put(job.job_id, LOGS, [e.to_dict() for e in self._cached_logs(run)])
        if self.persist_call_logs:
            log_llm_call(job_id=job.job_id, entry=entry, prompt_text=prompt_text, raw_response=raw_response)

    @staticmethod
    def _cached_logs(run: _JobRun) -> list[LogEntry]:
        return [truncate_log(e) for e in run.job.logs]

    async def _pause(self, token: CancelToken, seconds: float) -> None:
        """취소 감지 대기 (백오프 / 배치 간격)."""
        token.raise_if_cancelled()
        if seconds > 0:
            await self.sleep(seconds)
        token.raise_if_cancelled()

    # ------------------------------------------------------------------
    # 종료 처리
    # ------------------------------------------------------------------

    def _finish_complete(self, run: _JobRun) -> None:
        job = run.job
        job.status = JobStatus.COMPLETED
        job.error = None
        job.resume_config = None
        job.completed_batches = job.total_batches
        job.logs = self._cached_logs(run)
        self.job_cache.put(job)

        elapsed = (self.clock() - run.started_at).total_seconds()
        data = {
            "jobId": job.job_id,
            "scenes": [s.to_dict() for s in job.scenes],
            "characterRegistry": registry_to_dict(job.characters),
            "summary": {
                "totalScenes": len(job.scenes),
                "totalBatches": job.total_batches,
                "characterCount": len(job.characters),
                "elapsedSeconds": round(elapsed, 1),
            },
        }
        if job.script is not None:
            data["script"] = job.script.to_dict()
        if job.color_profile is not None:
            data["colorProfile"] = job.color_profile.to_dict()
        run.send(EventKind.COMPLETE, data)

        deleted = self.phase_cache.delete_job(job.job_id)
        logger.info(
            "[Job %s] 완료: 씬 %d개, 캐릭터 %d명 (%.1f초, phase 캐시 %d건 삭제)",
            job.job_id, len(job.scenes), len(job.characters), elapsed, deleted,
        )

    def _finish_error(self, run: _JobRun, error: Exception) -> None:
        job = run.job
        context = None
        if run.current_batch is not None:
            context = f"Batch {run.current_batch + 1}/{job.total_batches} failed"
        info = classify_error(error, context)
        logger.error(
            "[Job %s] 실패: type=%s retryable=%s %s",
            job.job_id, info.type.value, info.retryable, info.message,
            exc_info=info.type == ErrorType.UNKNOWN_ERROR,
        )

        job.status = JobStatus.PARTIAL if job.scenes else JobStatus.FAILED
        job.error = JobError(
            type=info.type.value,
            message=info.message,
            retryable=info.retryable,
            failed_batch=run.current_batch,
        )
        job.resume_config = (
            build_resume_config(run.request, job.completed_batches) if info.retryable else None
        )
        self._persist_terminal(job)

        data = {
            "type": info.type.value,
            "message": info.message,
            "retryable": info.retryable,
            "totalBatches": job.total_batches,
            "scenesCompleted": len(job.scenes),
            "debug": info.debug(),
        }
        if run.current_batch is not None:
            data["failedBatch"] = run.current_batch
        run.send(EventKind.ERROR, data)

    def _finish_cancelled(self, run: _JobRun) -> None:
        job = run.job
        logger.info(
            "[Job %s] 취소: 완료 배치 %d/%d, 씬 %d개",
            job.job_id, job.completed_batches, job.total_batches, len(job.scenes),
        )
        job.status = JobStatus.PARTIAL if job.scenes else JobStatus.FAILED
        job.error = JobError(
            type=ErrorType.CANCELLED.value,
            message="Job cancelled by user",
            retryable=True,
            failed_batch=run.current_batch,
        )
        # 진행이 없어도 재개 설정을 남긴다 (같은 job id 로 처음부터 다시 시작)
        job.resume_config = build_resume_config(run.request, job.completed_batches)
        self._persist_terminal(job)
        run.send(EventKind.CANCELLED, {
            "jobId": job.job_id,
            "completedBatches": job.completed_batches,
            "totalBatches": job.total_batches,
            "scenesCompleted": len(job.scenes),
            "resumable": True,
        })

    def _persist_terminal(self, job: JobSnapshot) -> None:
        """종료 프레임은 저장 실패와 무관하게 나가야 하므로 여기서만 저장 예외를 기록 후 삼킨다."""
        job.logs = [truncate_log(e) for e in job.logs]
        try:
            self.job_cache.put(job)
        except Exception:
            logger.exception("[Job %s] 종료 상태 저장 실패", job.job_id)


# ---------------------------------------------------------------------------
# 로그 요약
# ---------------------------------------------------------------------------

def _summarize_analysis(result: AnalysisResult) -> tuple[str, Optional[int]]:
    summary = f"Color profile (confidence {result.color.confidence:.2f})"
    if result.extraction is not None:
        count = len(result.extraction.characters)
        return f"{summary}, {count} characters", count
    return summary, None


def _summarize_characters(result: CharacterExtraction) -> tuple[str, Optional[int]]:
    names = ", ".join(c.name for c in result.characters[:5])
    return f"{len(result.characters)} characters: {names}", len(result.characters)


def _summarize_script(result: GeneratedScript) -> tuple[str, Optional[int]]:
    return f"Script '{result.title}' ({len(result.segments)} segments)", len(result.segments)


def _summarize_batch(result: SceneBatchResult) -> tuple[str, Optional[int]]:
    names = [describe_character(e)[:40] for e in list(result.characters.values())[:3]]
    summary = f"{len(result.scenes)} scenes"
    if names:
        summary += f", characters: {'; '.join(names)}"
    return summary, len(result.scenes)


# ---------------------------------------------------------------------------
# SSE 스트림
# ---------------------------------------------------------------------------

async def stream_job(
    orchestrator: JobOrchestrator,
    request: JobRequest,
    *,
    token: Optional[CancelToken] = None,
    keepalive_interval: float = SSE_KEEPALIVE_INTERVAL,
    timeout: Optional[float] = None,
) -> AsyncIterator[str]:
    """
    job 을 백그라운드 태스크로 실행하고 SSE 프레임 문자열을 순서대로 내보낸다

    - 대기 중 keepalive_interval 마다 keep-alive 주석
    - 전체 timeout 초과 시 취소 토큰 → cancelled 프레임으로 종료
    - 그 뒤 keepalive_interval 안에 멈추지 않으면 (provider 호출 대기 중) 태스크 자체를 cancel
    - 소비자가 도중에 닫으면 태스크를 cancel (job 은 저장 후 종료)
    """
    token = token or CancelToken()
    queue: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(orchestrator.run(request, queue.put_nowait, token))

    loop = asyncio.get_running_loop()
    limit = timeout if timeout is not None else get_stream_timeout(request.scene_count)
    deadline = loop.time() + limit
    task_cancelled = False
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0 and not token.cancelled:
                logger.warning("스트림 타임아웃 (%.0f초), job 취소 요청", limit)
                token.cancel()
            elif remaining <= -keepalive_interval and not task_cancelled and not task.done():
                logger.warning("취소 요청 후에도 job 이 진행 중, 태스크 취소")
                task.cancel()
                task_cancelled = True
            wait = min(keepalive_interval, remaining) if remaining > 0 else keepalive_interval
            try:
                event = await asyncio.wait_for(queue.get(), timeout=wait)
            except asyncio.TimeoutError:
                if task.done() and queue.empty():
                    break
                yield KEEPALIVE
                continue
            yield encode_sse(event)
            if event.is_terminal:
                break
        outcome = (await asyncio.gather(task, return_exceptions=True))[0]
        if isinstance(outcome, Exception):
            raise outcome
    finally:
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
