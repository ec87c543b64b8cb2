import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite:///{_PROJECT_ROOT / 'scene_worker.db'}",
)

# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------
# 기본 모델: 비디오 입력을 지원하는 flash 계열
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-exp")
GEMINI_API_BASE_URL = os.getenv(
    "GEMINI_API_BASE_URL",
    "https://generativelanguage.googleapis.com/v1beta/models/",
)
GEMINI_TIMEOUT = float(os.getenv("GEMINI_TIMEOUT", "300"))   # 호출당 타임아웃 (초)


def get_gemini_api_key() -> str:
    """API 키를 호출 시점의 환경변수에서 읽는다 (키 교체 시 재시작 불필요)."""
    return os.getenv("GEMINI_API_KEY", "")


# ---------------------------------------------------------------------------
# 재시도 기본값
# ---------------------------------------------------------------------------
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
RETRY_INITIAL_DELAY = float(os.getenv("RETRY_INITIAL_DELAY", "1.0"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "30.0"))
RETRY_BACKOFF_MULTIPLIER = float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2.0"))

# ---------------------------------------------------------------------------
# Job / Phase 캐시
# ---------------------------------------------------------------------------
JOB_CACHE_TTL_DAYS = int(os.getenv("JOB_CACHE_TTL_DAYS", "7"))
JOB_CACHE_MAX_ITEMS = int(os.getenv("JOB_CACHE_MAX_ITEMS", "20"))
# phase 캐시에 저장하는 로그 request/response body 최대 길이
PHASE_CACHE_LOG_BODY_LIMIT = int(os.getenv("PHASE_CACHE_LOG_BODY_LIMIT", "10000"))

# ---------------------------------------------------------------------------
# 파이프라인
# ---------------------------------------------------------------------------
BATCH_DELAY = float(os.getenv("BATCH_DELAY", "2.0"))        # 배치 사이 대기 (초)
SECONDS_PER_SCENE = int(os.getenv("SECONDS_PER_SCENE", "8"))
# auto 씬 수 범위 (영상 길이 기준 계산값을 이 안으로 자른다). MAX 는 요청 sceneCount 상한이기도 하다
MIN_AUTO_SCENES = int(os.getenv("MIN_AUTO_SCENES", "1"))
MAX_AUTO_SCENES = int(os.getenv("MAX_AUTO_SCENES", "120"))
BATCH_OVERLAP_SECONDS = int(os.getenv("BATCH_OVERLAP_SECONDS", "10"))
PHASE1_TIMEOUT = float(os.getenv("PHASE1_TIMEOUT", "300"))

# SSE
SSE_KEEPALIVE_INTERVAL = float(os.getenv("SSE_KEEPALIVE_INTERVAL", "15"))
STREAM_TIMEOUT_BASE = float(os.getenv("STREAM_TIMEOUT_BASE", "600"))
STREAM_TIMEOUT_PER_SCENE = float(os.getenv("STREAM_TIMEOUT_PER_SCENE", "30"))
STREAM_TIMEOUT_MAX = float(os.getenv("STREAM_TIMEOUT_MAX", "3600"))


def get_stream_timeout(scene_count: int) -> float:
    """씬 수에 비례한 스트림 전체 타임아웃 (초). 상한 STREAM_TIMEOUT_MAX."""
    return min(STREAM_TIMEOUT_MAX, STREAM_TIMEOUT_BASE + STREAM_TIMEOUT_PER_SCENE * max(0, scene_count))
