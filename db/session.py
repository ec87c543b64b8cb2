from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config.settings import DATABASE_URL
from db.models import Base


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # 단일 파일 DB: 백그라운드 스레드에서 같은 커넥션 접근 허용
        return {"connect_args": {"check_same_thread": False}}
    # MySQL/PostgreSQL 커넥션 풀 튜닝 (동시 job 다수 접근 대응)
    return {
        "pool_size": 10,
        "max_overflow": 20,     # 풀 초과 시 최대 추가 커넥션
        "pool_timeout": 30,     # 커넥션 획득 대기 최대 30초
        "pool_recycle": 1800,   # 30분마다 커넥션 재생성 (MySQL wait_timeout 대응)
        "pool_pre_ping": True,  # stale connection 방지
    }


engine = create_engine(DATABASE_URL, echo=False, **_engine_kwargs(DATABASE_URL))

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,  # commit 후 detached 상태에서 속성 접근 허용
)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
