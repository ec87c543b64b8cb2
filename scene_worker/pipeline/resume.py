"""
Resume Config Builder

job 의 현재 상태에서 재개 설정을 만들고, 저장된 설정(현재/레거시 형식)을 읽는다.
레거시 resumeData 는 읽을 때만 현재 형식으로 변환한다 (저장본은 그대로 두고 TTL 로 자연 소멸).
"""

import logging
from datetime import datetime
from typing import Any, Optional

from db.models import JobStatus
from scene_worker.errors import InvalidRequestError
from scene_worker.pipeline.types import (
    JobRequest,
    JobSnapshot,
    Mode,
    ResumeConfig,
    Workflow,
)

logger = logging.getLogger(__name__)


def build_resume_config(
    request: JobRequest,
    completed_batches: int,
    last_interaction_id: Optional[str] = None,
) -> ResumeConfig:
    """제출 옵션 + 완료 배치 수 → ResumeConfig."""
    return ResumeConfig(
        completed_batches=completed_batches,
        workflow=request.workflow.value,
        mode=request.mode.value,
        batch_size=request.batch_size,
        scene_count=request.scene_count,
        voice=request.voice,
        use_video_title=request.use_video_title,
        use_video_description=request.use_video_description,
        use_video_chapters=request.use_video_chapters,
        use_video_captions=request.use_video_captions,
        negative_prompt=request.negative_prompt,
        extract_color_profile=request.extract_color_profile,
        media_type=request.media_type,
        scene_count_mode=request.scene_count_mode,
        start_time=request.start_time,
        end_time=request.end_time,
        selfie_mode=request.selfie_mode,
        last_interaction_id=last_interaction_id,
        merged_analysis=request.merged_analysis,
        video_duration_seconds=request.video_duration_seconds,
    )


def _default(value: Any, fallback: Any) -> Any:
    return fallback if value is None else value


def normalize_resume_data(rd: dict) -> ResumeConfig:
    """
    레거시 resumeData / 현재 resumeConfig dict → ResumeConfig

    레거시 형식에 없던 토글은 명시적 기본값으로 채운다:
    useVideo* / extractColorProfile = True, mediaType = "video", sceneCountMode = "auto"
    """
    return ResumeConfig(
        completed_batches=int(rd.get("completedBatches", 0) or 0),
        workflow=rd.get("workflow", Workflow.URL_TO_SCENES.value),
        mode=rd.get("mode", Mode.DIRECT.value),
        batch_size=int(rd.get("batchSize", 0) or 0),
        scene_count=int(rd.get("sceneCount", 0) or 0),
        voice=_default(rd.get("voice"), "no-voice"),
        use_video_title=_default(rd.get("useVideoTitle"), True),
        use_video_description=_default(rd.get("useVideoDescription"), True),
        use_video_chapters=_default(rd.get("useVideoChapters"), True),
        use_video_captions=_default(rd.get("useVideoCaptions"), True),
        negative_prompt=rd.get("negativePrompt"),
        extract_color_profile=_default(rd.get("extractColorProfile"), True),
        media_type=_default(rd.get("mediaType"), "video"),
        scene_count_mode=_default(rd.get("sceneCountMode"), "auto"),
        start_time=rd.get("startTime"),
        end_time=rd.get("endTime"),
        selfie_mode=bool(rd.get("selfieMode") or False),
        last_interaction_id=rd.get("lastInteractionId"),
        merged_analysis=bool(rd.get("mergedAnalysis") or False),
        video_duration_seconds=rd.get("videoDurationSeconds"),
    )


def get_resume_config(job_data: dict) -> Optional[ResumeConfig]:
    """저장된 job dict 에서 재개 설정 읽기. 현재 형식 우선, 없으면 레거시, 둘 다 없으면 None."""
    current = job_data.get("resumeConfig")
    if current:
        return normalize_resume_data(current)
    legacy = job_data.get("resumeData")
    if legacy:
        logger.debug("레거시 resumeData 변환: job_id=%s", job_data.get("id"))
        return normalize_resume_data(legacy)
    return None


def can_resume(job: JobSnapshot, now: datetime) -> bool:
    """partial/failed + 재개 설정 존재 + 만료 전 + 재시도 가능 에러."""
    if job.status not in (JobStatus.PARTIAL, JobStatus.FAILED):
        return False
    if job.resume_config is None or job.is_expired(now):
        return False
    return job.error is None or job.error.retryable


def build_resume_request(job: JobSnapshot, reextract: bool = False) -> JobRequest:
    """
    캐시된 job → 재제출 요청

    같은 job id 를 재사용하고, 저장된 옵션 + 누적 씬/캐릭터/컬러 프로파일을 시작점으로 넘긴다.

    Raises:
        InvalidRequestError: 재개 설정이 없는 job
    """
    rc = job.resume_config
    if rc is None:
        raise InvalidRequestError(f"Job {job.job_id} has no resume config")

    return JobRequest(
        workflow=Workflow(rc.workflow),
        mode=Mode(rc.mode),
        video_url=job.video_url,
        script_text=job.script_text,
        scene_count=rc.scene_count,
        batch_size=rc.batch_size,
        voice=rc.voice,
        use_video_title=rc.use_video_title,
        use_video_description=rc.use_video_description,
        use_video_chapters=rc.use_video_chapters,
        use_video_captions=rc.use_video_captions,
        negative_prompt=rc.negative_prompt,
        extract_color_profile=rc.extract_color_profile,
        merged_analysis=rc.merged_analysis,
        media_type=rc.media_type,
        scene_count_mode=rc.scene_count_mode,
        start_time=rc.start_time,
        end_time=rc.end_time,
        selfie_mode=rc.selfie_mode,
        video_duration_seconds=rc.video_duration_seconds,
        job_id=job.job_id,
        resume_from_batch=rc.completed_batches,
        existing_scenes=list(job.scenes),
        existing_characters=dict(job.characters),
        existing_color_profile=job.color_profile,
        existing_script=job.script,
        reextract=reextract,
    )
