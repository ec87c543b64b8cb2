"""Job 오케스트레이터 시나리오 테스트 (가짜 provider + in-memory 캐시).

실행 방법:
  python -m pytest test/test_orchestrator.py -v
"""
import asyncio
import json

import pytest

from config.settings import MAX_AUTO_SCENES
from db.models import JobStatus
from scene_worker.cache.job_cache import InMemoryJobCache
from scene_worker.cache.phase_cache import InMemoryPhaseCache, batch_key
from scene_worker.errors import GeminiApiError, InvalidRequestError
from scene_worker.llm.client import CallMeta, GeminiResponse
from scene_worker.pipeline.events import KEEPALIVE, EventKind, decode_stream
from scene_worker.pipeline.orchestrator import (
    CancelToken,
    JobOrchestrator,
    extract_video_id,
    stream_job,
)
from scene_worker.pipeline.types import JobRequest, Scene, Workflow
from scene_worker.retry import RetryPolicy

VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
JOB_ID = "job_0000000000001_deadbeef"


async def _no_sleep(seconds: float) -> None:
    return None


class FakeGemini:
    """순서대로 응답 텍스트 또는 예외를 돌려주는 provider."""

    model = "gemini-fake"

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def generate(self, body, model=None):
        self.calls += 1
        if not self.outcomes:
            raise AssertionError("unexpected provider call")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return GeminiResponse(
            text=outcome,
            finish_reason="STOP",
            meta=CallMeta(model=model or self.model, prompt_length=len(json.dumps(body)), response_length=len(outcome)),
        )


class HangingGemini(FakeGemini):
    """준비된 응답을 다 쓰면 응답 없이 대기하는 provider."""

    def __init__(self, outcomes):
        super().__init__(outcomes)
        self.waiting = False

    async def generate(self, body, model=None):
        if self.outcomes:
            return await super().generate(body, model)
        self.calls += 1
        self.waiting = True
        await asyncio.sleep(3600)
        raise AssertionError("provider wait was not cancelled")


class SlowGemini(FakeGemini):
    """응답마다 실제 시간이 걸리는 provider."""

    def __init__(self, outcomes, delay: float):
        super().__init__(outcomes)
        self.delay = delay

    async def generate(self, body, model=None):
        await asyncio.sleep(self.delay)
        return await super().generate(body, model)


def _color_json() -> str:
    return json.dumps({
        "dominantColors": [{"hex": "#1a2b3c", "name": "navy"}],
        "colorTemperature": {"category": "cool", "kelvinEstimate": 6500},
        "confidence": 0.9,
    })


def _characters_json() -> str:
    return json.dumps({
        "characters": [
            {"name": "Mina", "gender": "female", "age": "20s", "hair": "long black hair"},
            {"name": "Jin", "gender": "male", "age": "30s", "baseOutfit": "grey suit"},
        ],
        "background": "neon-lit city street",
    })


def _scenes_json(count: int, tag: str = "", character: str = "Mina - female, 20s, long black hair") -> str:
    scenes = []
    for i in range(count):
        scene = {"sequence": 99, "description": f"{tag}scene {i + 1}", "prompt": f"cinematic shot {i + 1}"}
        if character:
            scene["character"] = character
        scenes.append(scene)
    return json.dumps(scenes)


def _quota_error() -> GeminiApiError:
    return GeminiApiError("Gemini API error: 429", status=429, api_message="RESOURCE_EXHAUSTED: quota")


def _orchestrator(client, job_cache=None, phase_cache=None, max_attempts: int = 1) -> JobOrchestrator:
    return JobOrchestrator(
        client,
        job_cache or InMemoryJobCache(),
        phase_cache or InMemoryPhaseCache(),
        id_generator=lambda: JOB_ID,
        retry_policy=RetryPolicy(max_attempts=max_attempts),
        batch_delay=0,
        sleep=_no_sleep,
    )


def _visible(events):
    """로그 프레임을 뺀 사용자 노출 이벤트."""
    return [e for e in events if e.kind not in (EventKind.LOG, EventKind.LOG_UPDATE)]


def _request(**kwargs) -> JobRequest:
    base = dict(video_url=VIDEO_URL, scene_count=25, batch_size=5)
    base.update(kwargs)
    return JobRequest(**base)


class TestQuotaFailureAndResume:

    def _run_until_quota(self):
        client = FakeGemini([
            _color_json(),
            _characters_json(),
            _scenes_json(5, "a"),
            _scenes_json(5, "b"),
            _quota_error(),
        ])
        job_cache, phase_cache = InMemoryJobCache(), InMemoryPhaseCache()
        events = []
        job = asyncio.run(_orchestrator(client, job_cache, phase_cache).run(_request(), events.append))
        return job, events, job_cache, phase_cache

    def test_event_order(self):
        _, events, _, _ = self._run_until_quota()
        visible = _visible(events)

        assert [e.kind for e in visible] == [
            EventKind.PROGRESS,
            EventKind.COLOR_PROFILE,
            EventKind.PROGRESS,
            EventKind.CHARACTER,
            EventKind.CHARACTER,
            EventKind.PROGRESS,
            EventKind.BATCH_COMPLETE,
            EventKind.PROGRESS,
            EventKind.BATCH_COMPLETE,
            EventKind.PROGRESS,
            EventKind.ERROR,
        ]
        assert [e.data["name"] for e in visible if e.kind == EventKind.CHARACTER] == ["Mina", "Jin"]
        assert [e.data["batchNumber"] for e in visible if e.kind == EventKind.BATCH_COMPLETE] == [0, 1]

        second_batch = visible[8].data["scenes"]
        assert [s["sequence"] for s in second_batch] == [6, 7, 8, 9, 10]

        error = visible[-1].data
        assert error["type"] == "GEMINI_QUOTA"
        assert error["retryable"] is True
        assert error["failedBatch"] == 2
        assert error["scenesCompleted"] == 10
        assert error["totalBatches"] == 5
        assert error["message"].startswith("Batch 3/5 failed")

    def test_terminal_event_is_last_and_ids_increase(self):
        _, events, _, _ = self._run_until_quota()
        assert sum(1 for e in events if e.is_terminal) == 1
        assert events[-1].kind == EventKind.ERROR

        counters = [int(e.id.rsplit("-", 1)[1]) for e in events]
        assert counters == list(range(1, len(events) + 1))
        assert all(e.id.startswith(f"{JOB_ID}-") for e in events)

    def test_each_call_logged_twice_with_same_id(self):
        _, events, _, _ = self._run_until_quota()
        logs = [e.data["entry"] for e in events if e.kind == EventKind.LOG]
        updates = [e.data["entry"] for e in events if e.kind == EventKind.LOG_UPDATE]

        assert len(logs) == len(updates) == 5
        assert [l["id"] for l in logs] == [u["id"] for u in updates]
        assert all(l["status"] == "pending" for l in logs)
        assert updates[-1]["error"]["type"] == "GEMINI_QUOTA"

    def test_persisted_partial_job(self):
        _, _, job_cache, phase_cache = self._run_until_quota()
        stored = job_cache.get(JOB_ID)

        assert stored.status == JobStatus.PARTIAL
        assert len(stored.scenes) == 10
        assert [s.sequence for s in stored.scenes] == list(range(1, 11))
        assert stored.resume_config.completed_batches == 2
        assert stored.error.failed_batch == 2
        assert stored.color_profile.confidence == pytest.approx(0.9)
        assert set(stored.characters) == {"Mina", "Jin"}
        assert "batch-1" in phase_cache.keys(JOB_ID)

    def test_resume_completes_remaining_batches(self):
        _, _, job_cache, phase_cache = self._run_until_quota()

        client = FakeGemini([_scenes_json(5, "c"), _scenes_json(5, "d"), _scenes_json(5, "e")])
        events = []
        job = asyncio.run(_orchestrator(client, job_cache, phase_cache).resume(JOB_ID, events.append))

        # 컬러/캐릭터는 재사용: 배치 3개만 호출
        assert client.calls == 3
        visible = _visible(events)
        assert EventKind.COLOR_PROFILE not in [e.kind for e in visible]
        assert EventKind.CHARACTER not in [e.kind for e in visible]
        assert [e.data["batchNumber"] for e in visible if e.kind == EventKind.BATCH_COMPLETE] == [2, 3, 4]

        complete = visible[-1]
        assert complete.kind == EventKind.COMPLETE
        assert complete.data["jobId"] == JOB_ID
        assert [s["sequence"] for s in complete.data["scenes"]] == list(range(1, 26))
        assert complete.data["summary"]["totalScenes"] == 25

        assert job.status == JobStatus.COMPLETED
        assert job.resume_config is None
        assert phase_cache.keys(JOB_ID) == []
        assert job_cache.get(JOB_ID).status == JobStatus.COMPLETED

    def test_resume_skips_analysis_and_character_phases(self):
        # 첫 실행: 컬러 분석 실패, 캐릭터 0명, 두 번째 배치에서 quota 초과
        client = FakeGemini([
            GeminiApiError("Gemini API error: 500", status=500),
            json.dumps({"characters": []}),
            _scenes_json(5, "a", character=""),
            _quota_error(),
        ])
        job_cache, phase_cache = InMemoryJobCache(), InMemoryPhaseCache()
        first = asyncio.run(
            _orchestrator(client, job_cache, phase_cache).run(_request(scene_count=10), lambda e: None)
        )
        assert first.status == JobStatus.PARTIAL
        assert first.color_profile is None
        assert first.characters == {}

        phase_cache.delete_job(JOB_ID)
        client = FakeGemini([_scenes_json(5, "b", character="")])
        events = []
        job = asyncio.run(_orchestrator(client, job_cache, phase_cache).resume(JOB_ID, events.append))

        assert client.calls == 1
        visible = _visible(events)
        assert [e.kind for e in visible] == [EventKind.PROGRESS, EventKind.BATCH_COMPLETE, EventKind.COMPLETE]
        assert job.status == JobStatus.COMPLETED
        assert len(job.scenes) == 10

    def test_completed_job_cannot_resume(self):
        _, _, job_cache, phase_cache = self._run_until_quota()
        client = FakeGemini([_scenes_json(5)] * 3)
        asyncio.run(_orchestrator(client, job_cache, phase_cache).resume(JOB_ID, lambda e: None))

        with pytest.raises(InvalidRequestError):
            asyncio.run(_orchestrator(FakeGemini([]), job_cache, phase_cache).resume(JOB_ID, lambda e: None))


class TestOrchestratorScenarios:

    def test_script_to_scenes_completes_and_clears_phase_cache(self):
        phase_cache = InMemoryPhaseCache()
        client = FakeGemini([_scenes_json(2), _scenes_json(3)])
        request = JobRequest(
            workflow=Workflow.SCRIPT_TO_SCENES,
            script_text="INT. CAFE - DAY\nMina waits.\nJin arrives.\nThey talk.",
            scene_count=4,
            batch_size=2,
        )
        events = []
        job = asyncio.run(_orchestrator(client, phase_cache=phase_cache).run(request, events.append))

        assert events[-1].kind == EventKind.COMPLETE
        # 초과 씬은 잘린다
        assert len(job.scenes) == 4
        assert job.status == JobStatus.COMPLETED
        assert "colorProfile" not in events[-1].data
        assert phase_cache.keys(JOB_ID) == []

    def test_invalid_url_rejected_before_provider_call(self):
        client = FakeGemini([])
        events = []
        result = asyncio.run(
            _orchestrator(client).run(_request(video_url="https://example.com/watch?v=1"), events.append)
        )

        assert result is None
        assert client.calls == 0
        assert len(events) == 1
        assert events[0].kind == EventKind.ERROR
        assert events[0].data["type"] == "INVALID_URL"
        assert events[0].data["retryable"] is False

    def test_color_failure_is_not_fatal(self):
        client = FakeGemini([
            GeminiApiError("Gemini API error: 500", status=500),
            _characters_json(),
            _scenes_json(5),
        ])
        events = []
        job = asyncio.run(_orchestrator(client).run(_request(scene_count=5), events.append))

        visible = _visible(events)
        assert visible[1].kind == EventKind.PROGRESS
        assert visible[1].data["message"].startswith("Color analysis skipped")
        assert visible[-1].kind == EventKind.COMPLETE
        assert job.color_profile is None
        assert len(job.scenes) == 5

    def test_parse_error_not_resumable(self):
        job_cache = InMemoryJobCache()
        client = FakeGemini([_color_json(), _characters_json(), "Sorry, I can't do that."])
        events = []
        job = asyncio.run(_orchestrator(client, job_cache).run(_request(scene_count=5), events.append))

        assert events[-1].data["type"] == "PARSE_ERROR"
        assert events[-1].data["retryable"] is False
        assert job.status == JobStatus.FAILED
        assert job.resume_config is None
        assert job_cache.get(JOB_ID).resume_config is None

    def test_retry_reported_as_progress(self):
        client = FakeGemini([
            _color_json(),
            _characters_json(),
            GeminiApiError("Gemini API error: 503", status=503),
            _scenes_json(5),
        ])
        events = []
        asyncio.run(_orchestrator(client, max_attempts=3).run(_request(scene_count=5), events.append))

        retries = [e for e in events if e.kind == EventKind.PROGRESS and "retry" in e.data]
        assert [e.data["retry"] for e in retries] == [1]
        assert events[-1].kind == EventKind.COMPLETE
        update = [e.data["entry"] for e in events if e.kind == EventKind.LOG_UPDATE][-1]
        assert update["timing"]["retries"] == 1

    def test_new_batch_character_emits_character_frame(self):
        client = FakeGemini([
            _color_json(),
            json.dumps({"characters": [{"name": "Mina", "gender": "female"}]}),
            _scenes_json(5, character="Jin - male, 30s, grey suit"),
        ])
        events = []
        job = asyncio.run(_orchestrator(client).run(_request(scene_count=5), events.append))

        visible = _visible(events)
        kinds = [e.kind for e in visible]
        characters = [e for e in visible if e.kind == EventKind.CHARACTER]
        assert [e.data["name"] for e in characters] == ["Mina", "Jin"]
        assert "male" in characters[1].data["description"]
        assert kinds.index(EventKind.BATCH_COMPLETE) == visible.index(characters[1]) + 1
        assert set(job.characters) == {"Mina", "Jin"}

    def test_cached_batch_replayed_without_provider_call(self):
        phase_cache = InMemoryPhaseCache()
        cached_scenes = [
            Scene(sequence=i + 1, description=f"cached {i + 1}", prompt="p").to_dict() for i in range(2)
        ]
        phase_cache.put(JOB_ID, batch_key(0), {"scenes": cached_scenes, "characters": {}})
        client = FakeGemini([_scenes_json(2, "fresh ")])
        request = JobRequest(
            workflow=Workflow.SCRIPT_TO_SCENES,
            script_text="Mina waits.\nJin arrives.",
            scene_count=4,
            batch_size=2,
        )
        events = []
        job = asyncio.run(_orchestrator(client, phase_cache=phase_cache).run(request, events.append))

        assert client.calls == 1
        assert len([e for e in events if e.kind == EventKind.LOG]) == 1
        assert [s.description for s in job.scenes] == ["cached 1", "cached 2", "fresh scene 1", "fresh scene 2"]
        assert [s.sequence for s in job.scenes] == [1, 2, 3, 4]
        assert events[-1].kind == EventKind.COMPLETE

    def test_scene_count_above_maximum_rejected(self):
        client = FakeGemini([])
        events = []
        result = asyncio.run(
            _orchestrator(client).run(_request(scene_count=MAX_AUTO_SCENES + 1), events.append)
        )

        assert result is None
        assert client.calls == 0
        assert events[0].data["type"] == "INVALID_INPUT"

    def test_task_cancellation_saved_before_reraise(self):
        job_cache = InMemoryJobCache()
        client = HangingGemini([_color_json(), _characters_json(), _scenes_json(5)])
        events = []

        async def scenario():
            task = asyncio.create_task(_orchestrator(client, job_cache).run(_request(), events.append))
            for _ in range(1000):
                if client.waiting:
                    break
                await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert events[-1].kind == EventKind.CANCELLED
        assert events[-1].data["completedBatches"] == 1
        stored = job_cache.get(JOB_ID)
        assert stored.status == JobStatus.PARTIAL
        assert stored.error.type == "CANCELLED"
        assert stored.resume_config.completed_batches == 1
        assert len(stored.scenes) == 5

    def test_cancel_between_batches(self):
        job_cache = InMemoryJobCache()
        token = CancelToken()
        client = FakeGemini([_color_json(), _characters_json(), _scenes_json(5), _scenes_json(5)])
        events = []

        def emit(event):
            events.append(event)
            if event.kind == EventKind.BATCH_COMPLETE:
                token.cancel()

        job = asyncio.run(_orchestrator(client, job_cache).run(_request(), emit, token))

        assert events[-1].kind == EventKind.CANCELLED
        assert events[-1].data == {
            "jobId": JOB_ID,
            "completedBatches": 1,
            "totalBatches": 5,
            "scenesCompleted": 5,
            "resumable": True,
        }
        assert client.calls == 3
        stored = job_cache.get(JOB_ID)
        assert stored.status == JobStatus.PARTIAL
        assert stored.error.type == "CANCELLED"
        assert stored.resume_config.completed_batches == 1


class TestStreamJob:

    def test_frames_end_with_terminal_event(self):
        client = FakeGemini([_color_json(), _characters_json(), _scenes_json(5)])

        async def collect():
            frames = []
            async for frame in stream_job(_orchestrator(client), _request(scene_count=5), keepalive_interval=5):
                frames.append(frame)
            return frames

        frames = asyncio.run(collect())
        events = list(decode_stream(frames))
        assert events[0].kind == EventKind.PROGRESS
        assert events[-1].kind == EventKind.COMPLETE
        assert len(events) == len(frames)

    def test_timeout_cancels_job_at_next_checkpoint(self):
        job_cache = InMemoryJobCache()
        client = SlowGemini([_color_json(), _characters_json(), _scenes_json(5)], delay=0.05)

        async def collect():
            return [
                frame async for frame in stream_job(
                    _orchestrator(client, job_cache), _request(scene_count=5),
                    keepalive_interval=1, timeout=0.01,
                )
            ]

        events = list(decode_stream(asyncio.run(collect())))
        assert events[-1].kind == EventKind.CANCELLED
        assert events[-1].data["resumable"] is True
        assert client.calls == 1
        assert job_cache.get(JOB_ID).error.type == "CANCELLED"

    def test_timeout_cancels_hung_provider_call(self):
        job_cache = InMemoryJobCache()
        client = HangingGemini([])

        async def collect():
            return [
                frame async for frame in stream_job(
                    _orchestrator(client, job_cache), _request(scene_count=5),
                    keepalive_interval=0.02, timeout=0.05,
                )
            ]

        frames = asyncio.run(collect())
        assert KEEPALIVE in frames
        events = list(decode_stream(frames))
        assert events[-1].kind == EventKind.CANCELLED
        assert events[-1].data["scenesCompleted"] == 0
        stored = job_cache.get(JOB_ID)
        assert stored.status == JobStatus.FAILED
        assert stored.resume_config.completed_batches == 0


@pytest.mark.parametrize("url, video_id", [
    ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
    ("https://youtu.be/dQw4w9WgXcQ?t=10", "dQw4w9WgXcQ"),
    ("https://www.youtube.com/shorts/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
    ("https://vimeo.com/12345", None),
    (None, None),
])
def test_extract_video_id(url, video_id):
    assert extract_video_id(url) == video_id
