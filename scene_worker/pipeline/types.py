"""파이프라인 도메인 타입.

직렬화 dict 는 스트림 프로토콜/캐시 공통 형식(camelCase 키)을 따른다.
provider 응답의 관대한 변환은 scene_worker.llm.normalizer 에서만 한다.
여기의 from_dict 는 이미 정규화되어 저장된 값을 복원하는 용도.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Union

from config.settings import JOB_CACHE_TTL_DAYS
from db.models import JobStatus


class Workflow(Enum):
    URL_TO_SCENES = "url-to-scenes"
    SCRIPT_TO_SCENES = "script-to-scenes"
    URL_TO_SCRIPT = "url-to-script"


class Mode(Enum):
    DIRECT = "direct"   # 비디오 → 씬
    HYBRID = "hybrid"   # 비디오 → 스크립트 → 씬


JOB_TTL = timedelta(days=JOB_CACHE_TTL_DAYS)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# 캐릭터
# ---------------------------------------------------------------------------

@dataclass
class CharacterSkeleton:
    """구조화 캐릭터 기술자 (씬 간 외형 일관성 유지용)."""
    name: str
    gender: str = ""
    age: str = ""
    ethnicity: str = ""
    body_type: str = ""
    face_shape: str = ""
    hair: str = ""
    facial_hair: Optional[str] = None
    distinctive_features: Optional[str] = None
    base_outfit: str = ""
    first_appearance: Optional[str] = None

    def describe(self) -> str:
        """프롬프트/이벤트용 한 줄 요약."""
        parts = [
            self.gender, self.age, self.ethnicity, self.body_type, self.face_shape,
            self.hair, self.facial_hair or "", self.distinctive_features or "",
        ]
        text = ", ".join(p for p in parts if p)
        if self.base_outfit:
            text = f"{text}; wearing {self.base_outfit}" if text else f"wearing {self.base_outfit}"
        return text

    def to_dict(self) -> dict:
        d = {
            "name": self.name,
            "gender": self.gender,
            "age": self.age,
            "ethnicity": self.ethnicity,
            "bodyType": self.body_type,
            "faceShape": self.face_shape,
            "hair": self.hair,
            "baseOutfit": self.base_outfit,
        }
        if self.facial_hair:
            d["facialHair"] = self.facial_hair
        if self.distinctive_features:
            d["distinctiveFeatures"] = self.distinctive_features
        if self.first_appearance:
            d["firstAppearance"] = self.first_appearance
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "CharacterSkeleton":
        return cls(
            name=d["name"],
            gender=d.get("gender", ""),
            age=d.get("age", ""),
            ethnicity=d.get("ethnicity", ""),
            body_type=d.get("bodyType", ""),
            face_shape=d.get("faceShape", ""),
            hair=d.get("hair", ""),
            facial_hair=d.get("facialHair"),
            distinctive_features=d.get("distinctiveFeatures"),
            base_outfit=d.get("baseOutfit", ""),
            first_appearance=d.get("firstAppearance"),
        )


# 이름 → 구조화 기술자 또는 레거시 자유 텍스트
CharacterEntry = Union[CharacterSkeleton, str]
CharacterRegistry = dict[str, CharacterEntry]


def describe_character(entry: CharacterEntry) -> str:
    return entry if isinstance(entry, str) else entry.describe()


def registry_to_dict(registry: CharacterRegistry) -> dict[str, Any]:
    return {
        name: entry if isinstance(entry, str) else entry.to_dict()
        for name, entry in registry.items()
    }


def registry_from_dict(data: Optional[dict]) -> CharacterRegistry:
    registry: CharacterRegistry = {}
    for name, entry in (data or {}).items():
        if isinstance(entry, dict):
            registry[name] = CharacterSkeleton.from_dict({"name": name, **entry})
        else:
            registry[name] = str(entry)
    return registry


# ---------------------------------------------------------------------------
# 씬
# ---------------------------------------------------------------------------

# to_dict 에서 명시 필드로 다루는 키 (나머지는 extra 로 보존)
SCENE_KNOWN_KEYS = frozenset({
    "id", "sequence", "mediaType", "description", "object", "character", "style",
    "visual_specs", "lighting", "composition", "technical", "prompt",
    "negativePrompt", "voice", "characterVariations",
})


@dataclass
class Scene:
    """생성 결과 한 단위. sequence 는 job 전체에서 1부터 연속."""
    sequence: int
    description: str
    prompt: str
    media_type: str = "image"
    object: str = ""
    character: str = ""
    style: dict = field(default_factory=dict)
    visual_specs: dict = field(default_factory=dict)
    lighting: dict = field(default_factory=dict)
    composition: dict = field(default_factory=dict)
    technical: dict = field(default_factory=dict)
    negative_prompt: Optional[str] = None
    voice: Optional[str] = None
    character_variations: Optional[dict] = None
    scene_id: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = dict(self.extra)
        d.update({
            "sequence": self.sequence,
            "mediaType": self.media_type,
            "description": self.description,
            "object": self.object,
            "character": self.character,
            "style": self.style,
            "visual_specs": self.visual_specs,
            "lighting": self.lighting,
            "composition": self.composition,
            "technical": self.technical,
            "prompt": self.prompt,
        })
        if self.scene_id:
            d["id"] = self.scene_id
        if self.negative_prompt:
            d["negativePrompt"] = self.negative_prompt
        if self.voice:
            d["voice"] = self.voice
        if self.character_variations:
            d["characterVariations"] = self.character_variations
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Scene":
        return cls(
            sequence=int(d["sequence"]),
            description=d.get("description", ""),
            prompt=d.get("prompt", ""),
            media_type=d.get("mediaType", "image"),
            object=d.get("object", ""),
            character=d.get("character", ""),
            style=d.get("style") or {},
            visual_specs=d.get("visual_specs") or {},
            lighting=d.get("lighting") or {},
            composition=d.get("composition") or {},
            technical=d.get("technical") or {},
            negative_prompt=d.get("negativePrompt"),
            voice=d.get("voice"),
            character_variations=d.get("characterVariations"),
            scene_id=d.get("id"),
            extra={k: v for k, v in d.items() if k not in SCENE_KNOWN_KEYS},
        )


# ---------------------------------------------------------------------------
# Phase 결과
# ---------------------------------------------------------------------------

@dataclass
class ColorProfileResult:
    """컬러 프로파일 (job 당 1회 생성, 이후 불변 입력)."""
    profile: dict
    confidence: float = 0.8

    def to_dict(self) -> dict:
        return {"profile": self.profile, "confidence": self.confidence}

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Optional["ColorProfileResult"]:
        if not d:
            return None
        return cls(profile=d.get("profile") or {}, confidence=float(d.get("confidence", 0.8)))


@dataclass
class CharacterExtraction:
    characters: list[CharacterSkeleton] = field(default_factory=list)
    background: str = ""

    def to_dict(self) -> dict:
        return {
            "characters": [c.to_dict() for c in self.characters],
            "background": self.background,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "CharacterExtraction":
        return cls(
            characters=[CharacterSkeleton.from_dict(c) for c in d.get("characters", [])],
            background=d.get("background", ""),
        )


@dataclass
class AnalysisResult:
    """Phase 0 결과. merged 변형이면 캐릭터/배경까지 포함."""
    color: ColorProfileResult
    extraction: Optional[CharacterExtraction] = None

    def to_dict(self) -> dict:
        return {
            "color": self.color.to_dict(),
            "extraction": self.extraction.to_dict() if self.extraction else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AnalysisResult":
        extraction = d.get("extraction")
        return cls(
            color=ColorProfileResult.from_dict(d["color"]),
            extraction=CharacterExtraction.from_dict(extraction) if extraction else None,
        )


@dataclass
class GeneratedScript:
    title: str = "Untitled"
    duration: str = "Unknown"
    language: str = "Unknown"
    summary: str = ""
    characters: list[str] = field(default_factory=list)
    settings: list[str] = field(default_factory=list)
    segments: list[dict] = field(default_factory=list)
    raw_text: str = ""

    def to_plain_text(self) -> str:
        """배치 분할용 라인 텍스트. 세그먼트가 없으면 raw_text 사용."""
        if self.segments:
            lines = []
            for seg in self.segments:
                speaker = seg.get("speaker")
                content = seg.get("content", "")
                lines.append(f"[{seg.get('timestamp', '')}] {speaker + ': ' if speaker else ''}{content}")
            return "\n".join(lines)
        return self.raw_text

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "duration": self.duration,
            "language": self.language,
            "summary": self.summary,
            "characters": self.characters,
            "settings": self.settings,
            "segments": self.segments,
            "rawText": self.raw_text,
        }

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Optional["GeneratedScript"]:
        if not d:
            return None
        return cls(
            title=d.get("title", "Untitled"),
            duration=d.get("duration", "Unknown"),
            language=d.get("language", "Unknown"),
            summary=d.get("summary", ""),
            characters=list(d.get("characters", [])),
            settings=list(d.get("settings", [])),
            segments=list(d.get("segments", [])),
            raw_text=d.get("rawText", ""),
        )


@dataclass
class SceneBatchResult:
    """Phase 2 배치 하나의 정규화 결과 (재번호 전)."""
    scenes: list[Scene]
    characters: CharacterRegistry = field(default_factory=dict)


# ---------------------------------------------------------------------------
# 호출 로그
# ---------------------------------------------------------------------------

@dataclass
class LogEntry:
    """provider 호출 1회의 로그 (log → logUpdate 로 같은 id 갱신)."""
    id: str
    phase: str                      # phase-0 | phase-1 | phase-2 | phase-script
    status: str                     # pending | completed
    timestamp: str
    batch_number: Optional[int] = None
    request: dict = field(default_factory=dict)
    response: dict = field(default_factory=dict)
    timing: dict = field(default_factory=lambda: {"durationMs": 0, "retries": 0})
    tokens: Optional[dict] = None
    error: Optional[dict] = None

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "timestamp": self.timestamp,
            "phase": self.phase,
            "status": self.status,
            "request": self.request,
            "response": self.response,
            "timing": self.timing,
        }
        if self.batch_number is not None:
            d["batchNumber"] = self.batch_number
        if self.tokens:
            d["tokens"] = self.tokens
        if self.error:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "LogEntry":
        return cls(
            id=d["id"],
            phase=d["phase"],
            status=d["status"],
            timestamp=d.get("timestamp", ""),
            batch_number=d.get("batchNumber"),
            request=d.get("request") or {},
            response=d.get("response") or {},
            timing=d.get("timing") or {"durationMs": 0, "retries": 0},
            tokens=d.get("tokens"),
            error=d.get("error"),
        )


# ---------------------------------------------------------------------------
# 요청 / 재개 설정
# ---------------------------------------------------------------------------

@dataclass
class ResumeConfig:
    """부분/실패/취소 job 재시작용 스냅샷 (현재 형식).

    누적 씬/캐릭터/컬러 프로파일은 job 에 있으므로 직렬화하지 않는다.
    """
    completed_batches: int
    workflow: str
    mode: str
    batch_size: int
    scene_count: int
    voice: str = "no-voice"
    use_video_title: bool = True
    use_video_description: bool = True
    use_video_chapters: bool = True
    use_video_captions: bool = True
    negative_prompt: Optional[str] = None
    extract_color_profile: bool = True
    media_type: str = "video"
    scene_count_mode: str = "auto"
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    selfie_mode: bool = False
    last_interaction_id: Optional[str] = None
    merged_analysis: bool = False
    video_duration_seconds: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "completedBatches": self.completed_batches,
            "workflow": self.workflow,
            "mode": self.mode,
            "batchSize": self.batch_size,
            "sceneCount": self.scene_count,
            "voice": self.voice,
            "useVideoTitle": self.use_video_title,
            "useVideoDescription": self.use_video_description,
            "useVideoChapters": self.use_video_chapters,
            "useVideoCaptions": self.use_video_captions,
            "negativePrompt": self.negative_prompt,
            "extractColorProfile": self.extract_color_profile,
            "mediaType": self.media_type,
            "sceneCountMode": self.scene_count_mode,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "selfieMode": self.selfie_mode,
            "lastInteractionId": self.last_interaction_id,
            "mergedAnalysis": self.merged_analysis,
            "videoDurationSeconds": self.video_duration_seconds,
        }


@dataclass
class JobRequest:
    """job 제출 옵션. 재개 시 existing_* 와 resume_from_batch 가 채워진다."""
    workflow: Workflow = Workflow.URL_TO_SCENES
    mode: Mode = Mode.DIRECT
    video_url: Optional[str] = None
    script_text: Optional[str] = None
    scene_count: int = 10
    batch_size: int = 5
    voice: str = "no-voice"
    use_video_title: bool = True
    use_video_description: bool = True
    use_video_chapters: bool = True
    use_video_captions: bool = True
    negative_prompt: Optional[str] = None
    extract_color_profile: bool = True
    merged_analysis: bool = False
    media_type: str = "video"
    scene_count_mode: str = "auto"
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    selfie_mode: bool = False
    video_duration_seconds: Optional[int] = None
    model: Optional[str] = None

    # 재개
    job_id: Optional[str] = None
    resume_from_batch: int = 0
    existing_scenes: list[Scene] = field(default_factory=list)
    existing_characters: CharacterRegistry = field(default_factory=dict)
    existing_color_profile: Optional[ColorProfileResult] = None
    existing_script: Optional[GeneratedScript] = None
    reextract: bool = False     # True 면 알려진 컬러/캐릭터도 다시 추출

    @property
    def is_resume(self) -> bool:
        return self.job_id is not None and self.resume_from_batch > 0

    @classmethod
    def from_dict(cls, d: dict) -> "JobRequest":
        """CLI/JSON 설정 파일용 (camelCase 또는 snake_case 키 허용)."""
        def pick(snake: str, camel: str, default=None):
            if snake in d:
                return d[snake]
            return d.get(camel, default)

        return cls(
            workflow=Workflow(pick("workflow", "workflow", Workflow.URL_TO_SCENES.value)),
            mode=Mode(pick("mode", "mode", Mode.DIRECT.value)),
            video_url=pick("video_url", "videoUrl"),
            script_text=pick("script_text", "scriptText"),
            scene_count=int(pick("scene_count", "sceneCount", 10)),
            batch_size=int(pick("batch_size", "batchSize", 5)),
            voice=pick("voice", "voice", "no-voice"),
            use_video_title=bool(pick("use_video_title", "useVideoTitle", True)),
            use_video_description=bool(pick("use_video_description", "useVideoDescription", True)),
            use_video_chapters=bool(pick("use_video_chapters", "useVideoChapters", True)),
            use_video_captions=bool(pick("use_video_captions", "useVideoCaptions", True)),
            negative_prompt=pick("negative_prompt", "negativePrompt"),
            extract_color_profile=bool(pick("extract_color_profile", "extractColorProfile", True)),
            merged_analysis=bool(pick("merged_analysis", "mergedAnalysis", False)),
            media_type=pick("media_type", "mediaType", "video"),
            scene_count_mode=pick("scene_count_mode", "sceneCountMode", "auto"),
            start_time=pick("start_time", "startTime"),
            end_time=pick("end_time", "endTime"),
            selfie_mode=bool(pick("selfie_mode", "selfieMode", False)),
            video_duration_seconds=pick("video_duration_seconds", "videoDurationSeconds"),
            model=pick("model", "geminiModel"),
        )


# ---------------------------------------------------------------------------
# Job 스냅샷
# ---------------------------------------------------------------------------

@dataclass
class JobError:
    type: str
    message: str
    retryable: bool
    failed_batch: Optional[int] = None

    def to_dict(self) -> dict:
        d = {"type": self.type, "message": self.message, "retryable": self.retryable}
        if self.failed_batch is not None:
            d["failedBatch"] = self.failed_batch
        return d

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Optional["JobError"]:
        if not d:
            return None
        return cls(
            type=d.get("type", "UNKNOWN_ERROR"),
            message=d.get("message", ""),
            retryable=bool(d.get("retryable", False)),
            failed_batch=d.get("failedBatch"),
        )


@dataclass
class JobSnapshot:
    """한 generation 요청의 전체 기록.

    expires_at 은 생성 시 created_at + TTL 로 고정된다 (캐시 put 에서도 덮어쓰지 않음).
    """
    job_id: str
    workflow: Workflow
    mode: Mode
    scene_count: int
    batch_size: int
    total_batches: int
    created_at: datetime
    expires_at: datetime
    video_url: Optional[str] = None
    script_text: Optional[str] = None
    status: JobStatus = JobStatus.IN_PROGRESS
    scenes: list[Scene] = field(default_factory=list)
    characters: CharacterRegistry = field(default_factory=dict)
    color_profile: Optional[ColorProfileResult] = None
    script: Optional[GeneratedScript] = None
    logs: list[LogEntry] = field(default_factory=list)
    error: Optional[JobError] = None
    resume_config: Optional[ResumeConfig] = None
    completed_batches: int = 0

    @classmethod
    def create(
        cls,
        job_id: str,
        request: JobRequest,
        total_batches: int,
        now: datetime,
        ttl: timedelta = JOB_TTL,
    ) -> "JobSnapshot":
        return cls(
            job_id=job_id,
            workflow=request.workflow,
            mode=request.mode,
            scene_count=request.scene_count,
            batch_size=request.batch_size,
            total_batches=total_batches,
            created_at=now,
            expires_at=now + ttl,
            video_url=request.video_url,
            script_text=request.script_text,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def summary(self) -> "JobSummary":
        return JobSummary(
            job_id=self.job_id,
            workflow=self.workflow.value,
            mode=self.mode.value,
            status=self.status,
            created_at=self.created_at,
            expires_at=self.expires_at,
            scene_count=len(self.scenes),
            character_count=len(self.characters),
            error_summary=self.error.message[:200] if self.error else None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.job_id,
            "workflow": self.workflow.value,
            "mode": self.mode.value,
            "source": {"videoUrl": self.video_url, "scriptText": self.script_text},
            "sceneCount": self.scene_count,
            "batchSize": self.batch_size,
            "totalBatches": self.total_batches,
            "completedBatches": self.completed_batches,
            "status": self.status.value,
            "scenes": [s.to_dict() for s in self.scenes],
            "characterRegistry": registry_to_dict(self.characters),
            "colorProfile": self.color_profile.to_dict() if self.color_profile else None,
            "script": self.script.to_dict() if self.script else None,
            "logs": [entry.to_dict() for entry in self.logs],
            "createdAt": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
            "error": self.error.to_dict() if self.error else None,
            "resumeConfig": self.resume_config.to_dict() if self.resume_config else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "JobSnapshot":
        # 레거시 resumeData 는 읽을 때만 현재 형식으로 변환 (저장본은 그대로)
        from scene_worker.pipeline.resume import get_resume_config

        source = d.get("source") or {}
        created_at = parse_iso(d.get("createdAt")) or datetime.now(timezone.utc)
        return cls(
            job_id=d["id"],
            workflow=Workflow(d["workflow"]),
            mode=Mode(d.get("mode", Mode.DIRECT.value)),
            scene_count=int(d.get("sceneCount", 0)),
            batch_size=int(d.get("batchSize", 0)),
            total_batches=int(d.get("totalBatches") or 0),
            created_at=created_at,
            expires_at=parse_iso(d.get("expiresAt")) or created_at + JOB_TTL,
            video_url=source.get("videoUrl", d.get("videoUrl")),
            script_text=source.get("scriptText", d.get("scriptText")),
            status=JobStatus(d.get("status", JobStatus.IN_PROGRESS.value)),
            scenes=[Scene.from_dict(s) for s in d.get("scenes", [])],
            characters=registry_from_dict(d.get("characterRegistry")),
            color_profile=ColorProfileResult.from_dict(d.get("colorProfile")),
            script=GeneratedScript.from_dict(d.get("script")),
            logs=[LogEntry.from_dict(entry) for entry in d.get("logs", [])],
            error=JobError.from_dict(d.get("error")),
            resume_config=get_resume_config(d),
            completed_batches=int(d.get("completedBatches", 0)),
        )


@dataclass
class JobSummary:
    """히스토리 목록용 요약."""
    job_id: str
    workflow: str
    mode: str
    status: JobStatus
    created_at: datetime
    expires_at: datetime
    scene_count: int
    character_count: int
    error_summary: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.job_id,
            "workflow": self.workflow,
            "mode": self.mode,
            "status": self.status.value,
            "timestamp": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
            "sceneCount": self.scene_count,
            "characterCount": self.character_count,
            "error": self.error_summary,
        }
