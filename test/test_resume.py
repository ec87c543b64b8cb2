"""재개 설정 테스트 (현재/레거시 형식 읽기, 재개 가능 판정).

실행 방법:
  python -m pytest test/test_resume.py -v
"""
from datetime import datetime, timedelta, timezone

import pytest

from db.models import JobStatus
from scene_worker.errors import InvalidRequestError
from scene_worker.pipeline.resume import (
    build_resume_config,
    build_resume_request,
    can_resume,
    get_resume_config,
)
from scene_worker.pipeline.types import (
    CharacterSkeleton,
    JobError,
    JobRequest,
    JobSnapshot,
    Mode,
    Scene,
    Workflow,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _partial_job(**request_kwargs) -> JobSnapshot:
    request = JobRequest(
        video_url="https://www.youtube.com/watch?v=abcdefghijk",
        scene_count=25,
        batch_size=5,
        **request_kwargs,
    )
    job = JobSnapshot.create("job_resume", request, total_batches=5, now=NOW)
    job.status = JobStatus.PARTIAL
    job.scenes = [Scene(sequence=i + 1, description=f"s{i + 1}", prompt="p") for i in range(10)]
    job.characters = {"Mina": CharacterSkeleton(name="Mina", gender="female")}
    job.completed_batches = 2
    job.error = JobError(type="GEMINI_QUOTA", message="quota", retryable=True, failed_batch=2)
    job.resume_config = build_resume_config(request, completed_batches=2)
    return job


class TestReadResumeConfig:

    def test_legacy_resume_data_gets_defaults(self):
        payload = _partial_job().to_dict()
        payload["resumeConfig"] = None
        payload["resumeData"] = {
            "completedBatches": 2,
            "workflow": "url-to-scenes",
            "mode": "direct",
            "batchSize": 5,
            "sceneCount": 25,
            "voice": "narrator",
        }

        rc = JobSnapshot.from_dict(payload).resume_config
        assert rc.completed_batches == 2
        assert rc.voice == "narrator"
        assert rc.use_video_title is True
        assert rc.use_video_captions is True
        assert rc.extract_color_profile is True
        assert rc.media_type == "video"
        assert rc.scene_count_mode == "auto"

    def test_legacy_explicit_false_is_kept(self):
        rc = get_resume_config({"resumeData": {"completedBatches": 1, "useVideoCaptions": False}})
        assert rc.use_video_captions is False

    def test_current_format_preferred(self):
        rc = get_resume_config({
            "resumeConfig": {"completedBatches": 3, "mediaType": "image"},
            "resumeData": {"completedBatches": 1},
        })
        assert rc.completed_batches == 3
        assert rc.media_type == "image"

    def test_absent(self):
        assert get_resume_config({"id": "job_x"}) is None

    def test_round_trip_through_snapshot(self):
        job = _partial_job(voice="narrator", media_type="image", selfie_mode=True)
        restored = JobSnapshot.from_dict(job.to_dict())
        assert restored.resume_config == job.resume_config
        assert restored.to_dict()["resumeConfig"]["selfieMode"] is True


class TestCanResume:

    def test_partial_with_retryable_error(self):
        assert can_resume(_partial_job(), NOW) is True

    def test_completed_job(self):
        job = _partial_job()
        job.status = JobStatus.COMPLETED
        assert can_resume(job, NOW) is False

    def test_non_retryable_error(self):
        job = _partial_job()
        job.error = JobError(type="PARSE_ERROR", message="bad json", retryable=False)
        assert can_resume(job, NOW) is False

    def test_missing_config(self):
        job = _partial_job()
        job.resume_config = None
        assert can_resume(job, NOW) is False

    def test_expired(self):
        assert can_resume(_partial_job(), NOW + timedelta(days=8)) is False


class TestBuildResumeRequest:

    def test_carries_progress(self):
        job = _partial_job(negative_prompt="blurry")
        request = build_resume_request(job)

        assert request.job_id == "job_resume"
        assert request.is_resume
        assert request.resume_from_batch == 2
        assert request.workflow == Workflow.URL_TO_SCENES
        assert request.mode == Mode.DIRECT
        assert request.negative_prompt == "blurry"
        assert len(request.existing_scenes) == 10
        assert "Mina" in request.existing_characters
        assert request.reextract is False

    def test_does_not_alias_job_lists(self):
        job = _partial_job()
        request = build_resume_request(job, reextract=True)
        request.existing_scenes.append(Scene(sequence=11, description="", prompt=""))
        assert len(job.scenes) == 10
        assert request.reextract is True

    def test_without_config_raises(self):
        job = _partial_job()
        job.resume_config = None
        with pytest.raises(InvalidRequestError):
            build_resume_request(job)
