import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, Index, Integer, BigInteger, String, Text, Enum, JSON,
    DateTime, PrimaryKeyConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class JobStatus(enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"     # 이후 읽기 전용
    PARTIAL = "partial"         # 씬 일부 생성 후 중단 (재개 가능)
    FAILED = "failed"           # 생성된 씬 없음


def _utcnow():
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """DB에서 읽은 naive datetime을 UTC aware로 변환한다 (SQLite는 tzinfo를 버림)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobRecord(Base):
    """Job 스냅샷: 히스토리 표시 + 재개용.

    payload 에 JobSnapshot.to_dict() 전체를 저장하고,
    목록 조회에 필요한 요약 필드만 별도 컬럼으로 둔다.
    """
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_created_at", "created_at"),
        Index("ix_jobs_expires_at", "expires_at"),
    )

    id = Column(String(64), primary_key=True)
    workflow = Column(String(32), nullable=False)
    mode = Column(String(16), nullable=False)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.IN_PROGRESS)
    scene_count = Column(Integer, nullable=False, default=0, server_default="0")
    character_count = Column(Integer, nullable=False, default=0, server_default="0")
    error_summary = Column(String(512), nullable=True)
    payload = Column(JSON, nullable=False)
    # created_at / expires_at 은 최초 저장 시에만 기록 (이후 변경 금지)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    expires_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<JobRecord {self.id} {self.status.value if self.status else None}>"


class PhaseCacheRecord(Base):
    """Phase 중간 산출물 (phase0 / phase1 / script / batch-N / logs).

    job 완료 시 job_id 단위로 전부 삭제된다.
    """
    __tablename__ = "phase_cache"
    __table_args__ = (
        PrimaryKeyConstraint("job_id", "phase_key", name="pk_phase_cache"),
    )

    job_id = Column(String(64), nullable=False)
    phase_key = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    expires_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<PhaseCacheRecord {self.job_id}:{self.phase_key}>"


class LLMLog(Base):
    """Gemini 호출 이력: 프롬프트 튜닝 / 비용 추적용 상세 로그.

    phase:
        'phase-0'       컬러/비디오 분석
        'phase-1'       캐릭터 추출
        'phase-2'       씬 배치 생성
        'phase-script'  스크립트 추출
    """
    __tablename__ = "llm_logs"
    __table_args__ = (
        Index("ix_llm_logs_job_id",     "job_id"),
        Index("ix_llm_logs_phase",      "phase"),
        Index("ix_llm_logs_created_at", "created_at"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id = Column(String(64), nullable=True)

    # 호출 메타
    phase        = Column(String(16), nullable=False)
    batch_number = Column(Integer, nullable=True)
    model_name   = Column(String(64), nullable=True)
    prompt_length   = Column(Integer, nullable=False, default=0, server_default="0")
    response_length = Column(Integer, nullable=False, default=0, server_default="0")
    retries         = Column(Integer, nullable=False, default=0, server_default="0")
    tokens          = Column(JSON, nullable=True)   # {"prompt", "candidates", "total"}

    # 프롬프트 / 응답 (TEXT: ~64KB)
    prompt_text  = Column(Text, nullable=True)
    raw_response = Column(Text, nullable=True)

    # 결과
    success       = Column(Boolean, nullable=False, default=True, server_default="1")
    error_type    = Column(String(32), nullable=True)
    error_message = Column(Text,    nullable=True)
    duration_ms   = Column(Integer, nullable=True)   # 밀리초

    created_at = Column(DateTime, nullable=False, default=_utcnow)
