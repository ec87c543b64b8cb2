"""Gemini 요청 body 빌더 (순수 함수).

프롬프트 문구는 데이터다. 여기서는 각 phase 가 필요로 하는 입력
(비디오 구간, 캐릭터 레지스트리, 컬러 프로파일, 배치 위치)을 요청에 싣는 것만 책임진다.
"""
import json
from typing import Optional

from scene_worker.pipeline.types import (
    CharacterRegistry,
    CharacterSkeleton,
    ColorProfileResult,
    describe_character,
)

_JSON_CONFIG = {
    "responseMimeType": "application/json",
    "temperature": 0.7,
    "maxOutputTokens": 65536,
}


# ---------------------------------------------------------------------------
# 프롬프트 템플릿
# ---------------------------------------------------------------------------

_COLOR_PROFILE_PROMPT = """\
You are a professional colorist. Analyze the color grading of this video and respond ONLY with JSON:
{
  "dominantColors": [{"hex": "#RRGGBB", "name": "...", "usage": "...", "moods": ["..."]}],
  "colorTemperature": {"category": "warm|cool|neutral|mixed", "kelvinEstimate": 5600, "description": "..."},
  "contrast": {"level": "low|medium|high|extreme", "style": "...", "blackPoint": "...", "whitePoint": "..."},
  "shadows": {"color": "...", "density": "...", "falloff": "..."},
  "highlights": {"color": "...", "handling": "...", "bloom": false},
  "filmStock": {"suggested": "...", "characteristics": "...", "digitalProfile": "..."},
  "mood": {"primary": "...", "atmosphere": "...", "emotionalTone": "..."},
  "grain": {"amount": "none|subtle|moderate|heavy", "type": "...", "pattern": "..."},
  "postProcessing": {"colorGrade": "...", "saturation": "...", "vignettePresent": false},
  "confidence": 0.0
}"""

_MERGED_ANALYSIS_SUFFIX = """
Also identify every recurring character and the main environment. Add to the same JSON object:
  "characters": [{"name": "...", "gender": "...", "age": "...", "ethnicity": "...", "bodyType": "...",
                  "faceShape": "...", "hair": "...", "facialHair": "...", "distinctiveFeatures": "...",
                  "baseOutfit": "...", "firstAppearance": "m:ss"}],
  "background": "..."
Do not list placeholder characters such as "No visible characters"."""

_CHARACTER_PROMPT = """\
Identify every recurring character in this video BEFORE any scene breakdown.
Use one consistent, specific name per character. Respond ONLY with JSON:
{
  "characters": [{"name": "...", "gender": "...", "age": "...", "ethnicity": "...", "bodyType": "...",
                  "faceShape": "...", "hair": "...", "facialHair": "...", "distinctiveFeatures": "...",
                  "baseOutfit": "...", "firstAppearance": "m:ss"}],
  "background": "main environment description"
}
Do not list placeholder characters such as "No visible characters"."""

_SCRIPT_PROMPT = """\
Transcribe and structure the narrative of this video. Respond ONLY with JSON:
{
  "title": "...", "duration": "m:ss", "language": "...", "summary": "...",
  "characters": ["..."], "settings": ["..."],
  "segments": [{"timestamp": "m:ss", "content": "...", "speaker": "...", "action": "...", "emotion": "..."}],
  "rawText": "full transcript"
}"""

_SCENE_PROMPT = """\
Break the source into exactly {scene_count} cinematic scenes for AI {media_type} generation.
These are scenes {first}-{last} of {total} (batch {batch_number}/{total_batches}).
Respond ONLY with a JSON array. Each scene:
{{"description": "...", "object": "...", "character": "Name - tag, tag" or "None",
  "style": {{}}, "visual_specs": {{}}, "lighting": {{}}, "composition": {{}}, "technical": {{}},
  "prompt": "render-ready prompt", "negativePrompt": "...", "characterVariations": {{}}}}
Voice: {voice}."""


# ---------------------------------------------------------------------------
# 공통
# ---------------------------------------------------------------------------

def _offset(value: Optional[str]) -> Optional[str]:
    """"1:30" / "90" → "90s" (Gemini videoMetadata 형식)."""
    if not value:
        return None
    return f"{parse_timestamp(value)}s"


def parse_timestamp(value: str) -> int:
    """"h:mm:ss" / "m:ss" / "ss" → 초."""
    seconds = 0
    for part in str(value).strip().split(":"):
        seconds = seconds * 60 + int(float(part or 0))
    return seconds


def format_time(seconds: float) -> str:
    seconds = int(seconds)
    return f"{seconds // 60}:{seconds % 60:02d}"


def _video_part(video_url: str, start: Optional[str] = None, end: Optional[str] = None) -> dict:
    part: dict = {"fileData": {"fileUri": video_url, "mimeType": "video/*"}}
    metadata = {}
    if _offset(start):
        metadata["startOffset"] = _offset(start)
    if _offset(end):
        metadata["endOffset"] = _offset(end)
    if metadata:
        part["videoMetadata"] = metadata
    return part


def _body(parts: list[dict], temperature: Optional[float] = None) -> dict:
    config = dict(_JSON_CONFIG)
    if temperature is not None:
        config["temperature"] = temperature
    return {"contents": [{"role": "user", "parts": parts}], "generationConfig": config}


# ---------------------------------------------------------------------------
# Phase 별 빌더
# ---------------------------------------------------------------------------

def build_color_profile_request(
    video_url: str,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    merged: bool = False,
) -> dict:
    """Phase 0: 컬러 분석 (merged=True 면 캐릭터/배경 포함)."""
    prompt = _COLOR_PROFILE_PROMPT + (_MERGED_ANALYSIS_SUFFIX if merged else "")
    return _body([_video_part(video_url, start_time, end_time), {"text": prompt}], temperature=0.2)


def build_character_request(
    video_url: str,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
) -> dict:
    """Phase 1: 캐릭터 추출."""
    return _body([_video_part(video_url, start_time, end_time), {"text": _CHARACTER_PROMPT}], temperature=0.2)


def build_script_request(
    video_url: str,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    video_title: Optional[str] = None,
    video_description: Optional[str] = None,
) -> dict:
    """스크립트 추출 (url-to-script / hybrid)."""
    prompt = _SCRIPT_PROMPT
    if video_title:
        prompt += f"\nVideo title: {video_title}"
    if video_description:
        prompt += f"\nVideo description: {video_description[:2000]}"
    return _body([_video_part(video_url, start_time, end_time), {"text": prompt}])


def _character_block(
    registry: CharacterRegistry,
    pre_extracted: Optional[list[CharacterSkeleton]] = None,
) -> str:
    lines = []
    names = set()
    for skeleton in pre_extracted or []:
        names.add(skeleton.name)
        lines.append(f"- {skeleton.name}: {skeleton.describe()}")
    for name, entry in registry.items():
        if name not in names:
            lines.append(f"- {name}: {describe_character(entry)}")
    if not lines:
        return ""
    return "Known characters (reuse these exact names, add new ones only if they first appear):\n" + "\n".join(lines)


def build_scene_request(
    *,
    scene_count: int,
    first_sequence: int,
    total_scenes: int,
    batch_index: int,
    total_batches: int,
    registry: CharacterRegistry,
    color_profile: Optional[ColorProfileResult] = None,
    continuity: str = "",
    video_url: Optional[str] = None,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    script_chunk: Optional[str] = None,
    background: str = "",
    pre_extracted: Optional[list[CharacterSkeleton]] = None,
    voice: str = "no-voice",
    media_type: str = "video",
    negative_prompt: Optional[str] = None,
    selfie_mode: bool = False,
) -> dict:
    """Phase 2: 씬 배치 1개.

    누적 캐릭터 레지스트리(이름 일관성), 컬러 프로파일(그레이딩 일관성),
    배치 위치와 직전 씬 요약(서사 연속성)을 함께 싣는다.
    """
    text = _SCENE_PROMPT.format(
        scene_count=scene_count,
        media_type=media_type,
        first=first_sequence,
        last=first_sequence + scene_count - 1,
        total=total_scenes,
        batch_number=batch_index + 1,
        total_batches=total_batches,
        voice=voice,
    )
    sections = [text]
    characters = _character_block(registry, pre_extracted)
    if characters:
        sections.append(characters)
    if background:
        sections.append(f"Main environment: {background}")
    if color_profile is not None:
        sections.append(
            "Apply this color grading to every scene:\n"
            + json.dumps(color_profile.profile, ensure_ascii=False)
        )
    if continuity:
        sections.append(continuity)
    if negative_prompt:
        sections.append(f"Always avoid: {negative_prompt}")
    if selfie_mode:
        sections.append("Frame every scene as a handheld selfie shot.")
    if script_chunk:
        sections.append(f"Script segment:\n{script_chunk}")

    parts: list[dict] = []
    if video_url:
        parts.append(_video_part(video_url, start_time, end_time))
    parts.append({"text": "\n\n".join(sections)})
    return _body(parts)
