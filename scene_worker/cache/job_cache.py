"""
Job Cache

JobSnapshot 을 TTL 과 함께 보관한다 (히스토리 표시 + 재개).

- put: 레코드 전체 교체. 단, created_at / expires_at 은 최초 저장값 유지
- get: 만료된 레코드는 물리 삭제 전이라도 None
- list: 만료되지 않은 job 요약 (최신순)
- purge_expired: 만료 레코드 물리 삭제
- max_items 초과 시 put 에서 마지막 저장이 가장 오래된 job 부터 제거 (방금 저장한 job 은 제외)

백엔드: InMemoryJobCache (테스트/단일 프로세스), SqlJobCache (SQLAlchemy, 기본)
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional

from config.settings import JOB_CACHE_MAX_ITEMS
from db.models import JobRecord, as_utc
from db.session import SessionLocal
from scene_worker.pipeline.types import JobSnapshot, JobSummary, parse_iso

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobCache(ABC):
    """Job 캐시 계약."""

    def __init__(self, clock: Clock = utcnow, max_items: Optional[int] = JOB_CACHE_MAX_ITEMS):
        self.clock = clock
        self.max_items = max_items

    @abstractmethod
    def put(self, job: JobSnapshot) -> None: ...

    @abstractmethod
    def get(self, job_id: str) -> Optional[JobSnapshot]: ...

    @abstractmethod
    def list(self) -> list[JobSummary]: ...

    @abstractmethod
    def delete(self, job_id: str) -> bool: ...

    @abstractmethod
    def clear(self) -> int: ...

    @abstractmethod
    def purge_expired(self) -> int: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryJobCache(JobCache):
    """dict 기반 구현. 저장/조회 모두 dict 사본을 거치므로 호출자와 상태를 공유하지 않는다."""

    def __init__(self, clock: Clock = utcnow, max_items: Optional[int] = JOB_CACHE_MAX_ITEMS):
        super().__init__(clock, max_items)
        self._store: dict[str, dict] = {}

    def put(self, job: JobSnapshot) -> None:
        payload = job.to_dict()
        existing = self._store.get(job.job_id)
        if existing is not None:
            payload["createdAt"] = existing["createdAt"]
            payload["expiresAt"] = existing["expiresAt"]
        # dict 순서 = 마지막 저장 순서
        self._store.pop(job.job_id, None)
        self._store[job.job_id] = payload
        self._evict_overflow(keep=job.job_id)

    def get(self, job_id: str) -> Optional[JobSnapshot]:
        payload = self._store.get(job_id)
        if payload is None:
            return None
        job = JobSnapshot.from_dict(payload)
        if job.is_expired(self.clock()):
            logger.debug("만료된 job 조회: %s", job_id)
            return None
        return job

    def list(self) -> list[JobSummary]:
        now = self.clock()
        jobs = [JobSnapshot.from_dict(p) for p in self._store.values()]
        jobs = [j for j in jobs if not j.is_expired(now)]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.summary() for j in jobs]

    def delete(self, job_id: str) -> bool:
        return self._store.pop(job_id, None) is not None

    def clear(self) -> int:
        count = len(self._store)
        self._store.clear()
        return count

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [
            job_id for job_id, p in self._store.items()
            if now > parse_iso(p["expiresAt"])
        ]
        for job_id in expired:
            del self._store[job_id]
        return len(expired)

    def _evict_overflow(self, keep: str) -> None:
        if not self.max_items or len(self._store) <= self.max_items:
            return
        overflow = len(self._store) - self.max_items
        victims = [job_id for job_id in self._store if job_id != keep][:overflow]
        for job_id in victims:
            logger.info("job 캐시 상한 초과, 오래된 job 제거: %s", job_id)
            del self._store[job_id]


# ---------------------------------------------------------------------------
# SQLAlchemy
# ---------------------------------------------------------------------------

class SqlJobCache(JobCache):
    """jobs 테이블 기반 구현."""

    def __init__(
        self,
        session_factory=SessionLocal,
        clock: Clock = utcnow,
        max_items: Optional[int] = JOB_CACHE_MAX_ITEMS,
    ):
        super().__init__(clock, max_items)
        self.session_factory = session_factory

    def put(self, job: JobSnapshot) -> None:
        """
        Raises:
            SQLAlchemyError: 저장 실패 (데이터 유실이 보이도록 그대로 올린다)
        """
        summary = job.summary()
        try:
            with self.session_factory() as session:
                record = session.query(JobRecord).filter_by(id=job.job_id).first()
                if record is None:
                    record = JobRecord(
                        id=job.job_id,
                        created_at=job.created_at,
                        expires_at=job.expires_at,
                    )
                    session.add(record)
                payload = job.to_dict()
                # 최초 저장값 유지
                payload["createdAt"] = as_utc(record.created_at).isoformat()
                payload["expiresAt"] = as_utc(record.expires_at).isoformat()

                record.workflow = job.workflow.value
                record.mode = job.mode.value
                record.status = job.status
                record.scene_count = summary.scene_count
                record.character_count = summary.character_count
                record.error_summary = summary.error_summary
                record.payload = payload
                record.updated_at = self.clock()
                session.commit()
                self._evict_overflow(session, keep=job.job_id)
        except Exception:
            logger.error("job 캐시 저장 실패: job_id=%s", job.job_id, exc_info=True)
            raise

    def get(self, job_id: str) -> Optional[JobSnapshot]:
        with self.session_factory() as session:
            record = session.query(JobRecord).filter_by(id=job_id).first()
            if record is None:
                return None
            if self.clock() > as_utc(record.expires_at):
                logger.debug("만료된 job 조회: %s", job_id)
                return None
            return JobSnapshot.from_dict(record.payload)

    def list(self) -> list[JobSummary]:
        now = self.clock()
        with self.session_factory() as session:
            records = (
                session.query(JobRecord)
                .order_by(JobRecord.created_at.desc())
                .all()
            )
            return [
                JobSummary(
                    job_id=r.id,
                    workflow=r.workflow,
                    mode=r.mode,
                    status=r.status,
                    created_at=as_utc(r.created_at),
                    expires_at=as_utc(r.expires_at),
                    scene_count=r.scene_count,
                    character_count=r.character_count,
                    error_summary=r.error_summary,
                )
                for r in records
                if now <= as_utc(r.expires_at)
            ]

    def delete(self, job_id: str) -> bool:
        with self.session_factory() as session:
            deleted = session.query(JobRecord).filter_by(id=job_id).delete()
            session.commit()
        return deleted > 0

    def clear(self) -> int:
        with self.session_factory() as session:
            deleted = session.query(JobRecord).delete()
            session.commit()
        logger.info("job 캐시 전체 삭제: %d건", deleted)
        return deleted

    def purge_expired(self) -> int:
        # SQLite 는 naive datetime 으로 저장하므로 비교 기준도 naive UTC
        now = self.clock().astimezone(timezone.utc).replace(tzinfo=None)
        with self.session_factory() as session:
            deleted = (
                session.query(JobRecord)
                .filter(JobRecord.expires_at < now)
                .delete(synchronize_session=False)
            )
            session.commit()
        if deleted:
            logger.info("만료 job 정리: %d건", deleted)
        return deleted

    def _evict_overflow(self, session, keep: str) -> None:
        if not self.max_items:
            return
        total = session.query(JobRecord).count()
        if total <= self.max_items:
            return
        oldest = (
            session.query(JobRecord)
            .filter(JobRecord.id != keep)
            .order_by(JobRecord.updated_at.asc(), JobRecord.created_at.asc())
            .limit(total - self.max_items)
            .all()
        )
        for record in oldest:
            logger.info("job 캐시 상한 초과, 오래된 job 제거: %s", record.id)
            session.delete(record)
        session.commit()
