"""Job / Phase 캐시 테스트 (in-memory + SQLite 백엔드).

실행 방법:
  python -m pytest test/test_job_cache.py -v
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import JobStatus
from db.session import init_db
from scene_worker.cache.job_cache import InMemoryJobCache, SqlJobCache
from scene_worker.cache.phase_cache import (
    PHASE0,
    InMemoryPhaseCache,
    SqlPhaseCache,
    batch_key,
)
from scene_worker.pipeline.types import JobRequest, JobSnapshot, Scene


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def job_cache(request, clock, session_factory):
    if request.param == "memory":
        return InMemoryJobCache(clock=clock, max_items=3)
    return SqlJobCache(session_factory=session_factory, clock=clock, max_items=3)


@pytest.fixture(params=["memory", "sql"])
def phase_cache(request, clock, session_factory):
    if request.param == "memory":
        return InMemoryPhaseCache(clock=clock)
    return SqlPhaseCache(session_factory=session_factory, clock=clock)


def _job(job_id: str, now: datetime, scenes: int = 0) -> JobSnapshot:
    request = JobRequest(video_url="https://youtu.be/abcdefghijk", scene_count=10, batch_size=5)
    job = JobSnapshot.create(job_id, request, total_batches=2, now=now)
    job.scenes = [Scene(sequence=i + 1, description=f"scene {i + 1}", prompt="p") for i in range(scenes)]
    return job


class TestJobCache:

    def test_put_and_get(self, job_cache, clock):
        job_cache.put(_job("job_a", clock(), scenes=3))
        loaded = job_cache.get("job_a")
        assert loaded is not None
        assert [s.sequence for s in loaded.scenes] == [1, 2, 3]
        assert loaded.status == JobStatus.IN_PROGRESS

    def test_missing_job(self, job_cache):
        assert job_cache.get("job_missing") is None

    def test_expired_job_is_absent(self, job_cache, clock):
        job_cache.put(_job("job_a", clock()))
        clock.advance(days=7, seconds=1)
        assert job_cache.get("job_a") is None
        assert job_cache.list() == []

    def test_reput_keeps_original_expiry(self, job_cache, clock):
        job = _job("job_a", clock())
        original_expiry = job.expires_at
        job_cache.put(job)

        clock.advance(days=6)
        updated = _job("job_a", clock(), scenes=5)
        updated.status = JobStatus.PARTIAL
        job_cache.put(updated)

        loaded = job_cache.get("job_a")
        assert loaded.expires_at == original_expiry
        assert loaded.status == JobStatus.PARTIAL
        assert len(loaded.scenes) == 5

        clock.advance(days=1, seconds=1)
        assert job_cache.get("job_a") is None

    def test_list_newest_first(self, job_cache, clock):
        for job_id in ("job_a", "job_b", "job_c"):
            job_cache.put(_job(job_id, clock(), scenes=2))
            clock.advance(minutes=1)

        summaries = job_cache.list()
        assert [s.job_id for s in summaries] == ["job_c", "job_b", "job_a"]
        assert summaries[0].scene_count == 2
        assert summaries[0].to_dict()["status"] == "in_progress"

    def test_max_items_evicts_oldest(self, job_cache, clock):
        for job_id in ("job_a", "job_b", "job_c", "job_d"):
            job_cache.put(_job(job_id, clock()))
            clock.advance(minutes=1)

        assert job_cache.get("job_a") is None
        assert {s.job_id for s in job_cache.list()} == {"job_b", "job_c", "job_d"}

    def test_running_job_rewrite_survives_eviction(self, job_cache, clock):
        # 가장 먼저 만든 job 이 아직 실행 중이면 배치마다 다시 저장된다
        for job_id in ("job_running", "job_b", "job_c"):
            job_cache.put(_job(job_id, clock()))
            clock.advance(minutes=1)

        job_cache.put(_job("job_running", clock(), scenes=5))
        clock.advance(minutes=1)
        job_cache.put(_job("job_d", clock()))

        running = job_cache.get("job_running")
        assert running is not None
        assert len(running.scenes) == 5
        assert job_cache.get("job_b") is None
        assert {s.job_id for s in job_cache.list()} == {"job_running", "job_c", "job_d"}

    def test_rewrite_at_cap_keeps_written_job(self, job_cache, clock):
        for job_id in ("job_a", "job_b", "job_c"):
            job_cache.put(_job(job_id, clock()))
            clock.advance(minutes=1)

        job_cache.put(_job("job_a", clock(), scenes=2))
        assert len(job_cache.get("job_a").scenes) == 2
        assert len(job_cache.list()) == 3

    def test_delete_and_clear(self, job_cache, clock):
        job_cache.put(_job("job_a", clock()))
        job_cache.put(_job("job_b", clock()))

        assert job_cache.delete("job_a") is True
        assert job_cache.delete("job_a") is False
        assert job_cache.clear() == 1
        assert job_cache.list() == []

    def test_purge_expired(self, job_cache, clock):
        job_cache.put(_job("job_old", clock()))
        clock.advance(days=3)
        job_cache.put(_job("job_new", clock()))
        clock.advance(days=5)

        assert job_cache.purge_expired() == 1
        assert [s.job_id for s in job_cache.list()] == ["job_new"]


class TestPhaseCache:

    def test_put_get_and_keys(self, phase_cache):
        phase_cache.put("job_a", PHASE0, {"color": {"confidence": 0.9}})
        phase_cache.put("job_a", batch_key(0), {"scenes": [], "characters": {}})
        phase_cache.put("job_b", PHASE0, {"color": None})

        assert phase_cache.get("job_a", PHASE0) == {"color": {"confidence": 0.9}}
        assert phase_cache.keys("job_a") == ["batch-0", "phase0"]
        assert phase_cache.get("job_a", "missing") is None

    def test_overwrite(self, phase_cache):
        phase_cache.put("job_a", PHASE0, {"v": 1})
        phase_cache.put("job_a", PHASE0, {"v": 2})
        assert phase_cache.get("job_a", PHASE0) == {"v": 2}
        assert phase_cache.keys("job_a") == ["phase0"]

    def test_delete_job_only_touches_one_job(self, phase_cache):
        phase_cache.put("job_a", PHASE0, {})
        phase_cache.put("job_a", batch_key(1), {})
        phase_cache.put("job_b", PHASE0, {"kept": True})

        assert phase_cache.delete_job("job_a") == 2
        assert phase_cache.keys("job_a") == []
        assert phase_cache.get("job_b", PHASE0) == {"kept": True}

    def test_expired_entry(self, phase_cache, clock):
        phase_cache.put("job_a", PHASE0, {"v": 1})
        clock.advance(days=8)
        assert phase_cache.get("job_a", PHASE0) is None
