"""
Phase Cache

job 진행 중의 phase 산출물을 (job_id, phase_key) 단위로 보관한다.
같은 배치를 다시 실행할 때 provider 호출 없이 결과를 재사용하기 위한 것으로,
job 이 complete 되면 delete_job 으로 전부 지운다.

phase_key:
    phase0      AnalysisResult
    phase1      CharacterExtraction
    script      GeneratedScript
    batch-<n>   {"scenes": [...], "characters": {...}}  (n 은 0-based)
    logs        [LogEntry, ...]  (body 잘림)
"""

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional

from db.models import PhaseCacheRecord, as_utc
from db.session import SessionLocal
from scene_worker.cache.job_cache import Clock, utcnow
from scene_worker.pipeline.types import JOB_TTL

logger = logging.getLogger(__name__)

PHASE0 = "phase0"
PHASE1 = "phase1"
SCRIPT = "script"
LOGS = "logs"


def batch_key(batch_index: int) -> str:
    return f"batch-{batch_index}"


class PhaseCache(ABC):

    def __init__(self, clock: Clock = utcnow, ttl: timedelta = JOB_TTL):
        self.clock = clock
        self.ttl = ttl

    @abstractmethod
    def put(self, job_id: str, phase_key: str, payload) -> None: ...

    @abstractmethod
    def get(self, job_id: str, phase_key: str): ...

    @abstractmethod
    def keys(self, job_id: str) -> list[str]: ...

    @abstractmethod
    def delete_job(self, job_id: str) -> int: ...


class InMemoryPhaseCache(PhaseCache):

    def __init__(self, clock: Clock = utcnow, ttl: timedelta = JOB_TTL):
        super().__init__(clock, ttl)
        self._store: dict[tuple[str, str], tuple[object, object]] = {}

    def put(self, job_id: str, phase_key: str, payload) -> None:
        self._store[(job_id, phase_key)] = (payload, self.clock() + self.ttl)

    def get(self, job_id: str, phase_key: str):
        item = self._store.get((job_id, phase_key))
        if item is None:
            return None
        payload, expires_at = item
        if self.clock() > expires_at:
            return None
        return payload

    def keys(self, job_id: str) -> list[str]:
        return sorted(key for jid, key in self._store if jid == job_id)

    def delete_job(self, job_id: str) -> int:
        targets = [k for k in self._store if k[0] == job_id]
        for k in targets:
            del self._store[k]
        return len(targets)


class SqlPhaseCache(PhaseCache):
    """phase_cache 테이블 기반 구현."""

    def __init__(self, session_factory=SessionLocal, clock: Clock = utcnow, ttl: timedelta = JOB_TTL):
        super().__init__(clock, ttl)
        self.session_factory = session_factory

    def put(self, job_id: str, phase_key: str, payload) -> None:
        now = self.clock()
        try:
            with self.session_factory() as session:
                record = (
                    session.query(PhaseCacheRecord)
                    .filter_by(job_id=job_id, phase_key=phase_key)
                    .first()
                )
                if record is None:
                    record = PhaseCacheRecord(job_id=job_id, phase_key=phase_key)
                    session.add(record)
                record.payload = payload
                record.created_at = now
                record.expires_at = now + self.ttl
                session.commit()
        except Exception:
            logger.error("phase 캐시 저장 실패: job_id=%s key=%s", job_id, phase_key, exc_info=True)
            raise

    def get(self, job_id: str, phase_key: str):
        with self.session_factory() as session:
            record = (
                session.query(PhaseCacheRecord)
                .filter_by(job_id=job_id, phase_key=phase_key)
                .first()
            )
            if record is None or self.clock() > as_utc(record.expires_at):
                return None
            return record.payload

    def keys(self, job_id: str) -> list[str]:
        with self.session_factory() as session:
            rows = (
                session.query(PhaseCacheRecord.phase_key)
                .filter_by(job_id=job_id)
                .order_by(PhaseCacheRecord.phase_key)
                .all()
            )
        return [row[0] for row in rows]

    def delete_job(self, job_id: str) -> int:
        with self.session_factory() as session:
            deleted = session.query(PhaseCacheRecord).filter_by(job_id=job_id).delete()
            session.commit()
        logger.debug("phase 캐시 삭제: job_id=%s (%d건)", job_id, deleted)
        return deleted
