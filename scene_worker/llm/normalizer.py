"""Gemini 응답 정규화.

provider 는 계약을 지키지 않는다 (산문/마크다운 감싸기, 잘린 JSON, 누락 필드).
여기서만 기본값을 채워 넣고, 나머지 코드는 정규화된 타입만 다룬다.

파싱 순서:
    1차: json.loads 직접 파싱
    2차: ```json 펜스 또는 첫 번째 균형 잡힌 {...}/[...] 추출 후 재파싱
    3차: 제어 문자 이스케이프 + 흔한 JSON 오류/잘림 보정 후 재파싱
    실패: ResponseParseError (원문 앞 300자 preview 만 보관)
"""
import json
import logging
import math
import re
from typing import Any, Optional

from scene_worker.errors import ResponseParseError
from scene_worker.pipeline.types import (
    AnalysisResult,
    CharacterExtraction,
    CharacterRegistry,
    CharacterSkeleton,
    ColorProfileResult,
    GeneratedScript,
    Scene,
    SceneBatchResult,
    SCENE_KNOWN_KEYS,
)

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 300
DEFAULT_CONFIDENCE = 0.8

_SKIP_CHARACTER_MARKERS = ("no visible", "none")


# ---------------------------------------------------------------------------
# JSON 추출 / 보정
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def _find_balanced(text: str) -> Optional[str]:
    """첫 번째 { 또는 [ 부터 짝이 맞는 닫는 괄호까지 반환.

    문자열 리터럴 내부의 괄호는 무시한다. 끝까지 닫히지 않으면(잘린 응답) 나머지 전체를 반환.
    """
    start = -1
    for i, c in enumerate(text):
        if c in "{[":
            start = i
            break
    if start < 0:
        return None

    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        c = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif c == "\\":
                escaped = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c in "{[":
            stack.append("}" if c == "{" else "]")
        elif c in "}]":
            if stack and stack[-1] == c:
                stack.pop()
                if not stack:
                    return text[start:i + 1]
    return text[start:]


def extract_json_text(text: str) -> str:
    """마크다운 펜스 → 첫 균형 JSON 블록 → 원문 순으로 JSON 후보 문자열을 고른다."""
    fence = _FENCE_RE.search(text)
    if fence:
        return fence.group(1).strip()
    block = _find_balanced(text)
    if block is not None:
        return block.strip()
    return text.strip()


def _fix_control_chars(s: str) -> str:
    """JSON 문자열 리터럴 내부의 제어 문자를 이스케이프 시퀀스로 변환."""
    result: list[str] = []
    in_string = False
    i = 0
    while i < len(s):
        c = s[i]
        if c == "\\" and in_string:
            result.append(c)
            i += 1
            if i < len(s):
                result.append(s[i])
            i += 1
            continue
        if c == '"':
            in_string = not in_string
            result.append(c)
        elif in_string and c == "\n":
            result.append("\\n")
        elif in_string and c == "\r":
            result.append("\\r")
        elif in_string and c == "\t":
            result.append("\\t")
        elif in_string and ord(c) < 0x20:
            result.append(f"\\u{ord(c):04x}")
        else:
            result.append(c)
        i += 1
    return "".join(result)


def _close_truncated(s: str) -> str:
    """max token 으로 잘린 JSON 의 열린 문자열/괄호를 닫는다."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for c in s:
        if in_string:
            if escaped:
                escaped = False
            elif c == "\\":
                escaped = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c in "{[":
            stack.append("}" if c == "{" else "]")
        elif c in "}]" and stack and stack[-1] == c:
            stack.pop()

    if not stack and not in_string:
        return s

    repaired = s + ('"' if in_string else "")
    repaired = re.sub(r",\s*$", "", repaired)            # trailing comma
    repaired = re.sub(r":\s*$", ": null", repaired)       # 값 누락
    if stack and stack[-1] == "}" and re.search(r'[{,]\s*"[^"]*"\s*$', repaired):
        repaired += ": null"                              # 값 없는 마지막 key
    return repaired + "".join(reversed(stack))


def _repair_json(s: str) -> str:
    """LLM이 자주 생성하는 JSON 오류를 보정한다."""
    s = _close_truncated(s)
    # trailing comma before } or ]
    s = re.sub(r",\s*([}\]])", r"\1", s)
    # leading comma inside array: [, "text"] → ["text"]
    s = re.sub(r"\[\s*,", "[", s)
    return s


def _preview(text: str) -> str:
    return text[:PREVIEW_LIMIT] + ("..." if len(text) > PREVIEW_LIMIT else "")


def parse_json_response(text: str, label: str = "response") -> Any:
    """
    provider 원문을 JSON 값으로 파싱

    Args:
        text: 모델 응답 텍스트
        label: 에러 메시지용 응답 종류 (예: "color profile")

    Returns:
        dict 또는 list

    Raises:
        ResponseParseError: 모든 시도 실패 (preview 포함)
    """
    if text is None or not str(text).strip():
        raise ResponseParseError(f"Empty {label} from Gemini API", preview="")

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    extracted = extract_json_text(text)
    try:
        return json.loads(extracted)
    except json.JSONDecodeError:
        pass

    repaired = _repair_json(_fix_control_chars(extracted))
    try:
        value = json.loads(repaired)
        logger.info("JSON 보정 후 파싱 성공: %s", label)
        return value
    except json.JSONDecodeError as e:
        preview = _preview(text)
        raise ResponseParseError(
            f"Failed to parse {label} as JSON. Error: {e}. Response preview: {preview}",
            preview=preview,
        ) from e


# ---------------------------------------------------------------------------
# 공통 coercion
# ---------------------------------------------------------------------------

def _obj(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _str(value: Any, default: str = "") -> str:
    if value is None or value == "":
        return default
    return str(value)


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value else None


def _num(value: Any, default: float) -> float:
    """숫자 변환. 누락, 변환 불가, NaN/Infinity 는 default."""
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


# ---------------------------------------------------------------------------
# 컬러 프로파일
# ---------------------------------------------------------------------------

def normalize_color_profile(parsed: Any) -> ColorProfileResult:
    """컬러 프로파일 dict 를 고정 형태로 정규화 (누락 필드는 중립 기본값)."""
    parsed = _obj(parsed)

    dominant_colors = []
    for color in parsed.get("dominantColors") or []:
        if not isinstance(color, dict):
            continue
        name = _str(color.get("name"), "unknown")
        dominant_colors.append({
            "hex": _str(color.get("hex"), "#000000"),
            "name": name,
            "semanticName": _str(color.get("semanticName"), name),
            "usage": _str(color.get("usage"), "general"),
            "moods": _str_list(color.get("moods")),
            "temperature": _str(color.get("temperature"), "neutral"),
        })

    temp = _obj(parsed.get("colorTemperature"))
    contrast = _obj(parsed.get("contrast"))
    shadows = _obj(parsed.get("shadows"))
    highlights = _obj(parsed.get("highlights"))
    film = _obj(parsed.get("filmStock"))
    mood = _obj(parsed.get("mood"))
    grain = _obj(parsed.get("grain"))
    post = _obj(parsed.get("postProcessing"))
    split_toning = post.get("splitToning")

    profile = {
        "dominantColors": dominant_colors,
        "colorTemperature": {
            "category": _str(temp.get("category"), "neutral"),
            "kelvinEstimate": int(_num(temp.get("kelvinEstimate"), 5600)),
            "description": _str(temp.get("description")),
        },
        "contrast": {
            "level": _str(contrast.get("level"), "medium"),
            "style": _str(contrast.get("style")),
            "blackPoint": _str(contrast.get("blackPoint")),
            "whitePoint": _str(contrast.get("whitePoint")),
        },
        "shadows": {
            "color": _str(shadows.get("color"), "neutral"),
            "density": _str(shadows.get("density"), "medium"),
            "falloff": _str(shadows.get("falloff"), "gradual"),
        },
        "highlights": {
            "color": _str(highlights.get("color"), "neutral"),
            "handling": _str(highlights.get("handling"), "soft roll-off"),
            "bloom": bool(highlights.get("bloom")),
        },
        "filmStock": {
            "suggested": _str(film.get("suggested"), "digital"),
            "characteristics": _str(film.get("characteristics")),
            "digitalProfile": _opt_str(film.get("digitalProfile")),
        },
        "mood": {
            "primary": _str(mood.get("primary")),
            "atmosphere": _str(mood.get("atmosphere")),
            "emotionalTone": _str(mood.get("emotionalTone")),
        },
        "grain": {
            "amount": _str(grain.get("amount"), "none"),
            "type": _str(grain.get("type")),
            "pattern": _str(grain.get("pattern")),
        },
        "postProcessing": {
            "colorGrade": _str(post.get("colorGrade")),
            "saturation": _str(post.get("saturation"), "normal"),
            "vignettePresent": bool(post.get("vignettePresent")),
            "splitToning": {
                "shadows": _str(split_toning.get("shadows")),
                "highlights": _str(split_toning.get("highlights")),
            } if isinstance(split_toning, dict) else None,
        },
    }
    return ColorProfileResult(
        profile=profile,
        confidence=_num(parsed.get("confidence"), DEFAULT_CONFIDENCE),
    )


# ---------------------------------------------------------------------------
# 캐릭터
# ---------------------------------------------------------------------------

def _is_placeholder_name(name: str) -> bool:
    lowered = name.lower()
    return any(m in lowered for m in _SKIP_CHARACTER_MARKERS) or lowered == "n/a"


def normalize_character(raw: Any) -> Optional[CharacterSkeleton]:
    """캐릭터 dict → CharacterSkeleton. 이름 없음/"no visible"/"none"/"n/a" 는 None."""
    if not isinstance(raw, dict):
        return None
    name = _str(raw.get("name")).strip()
    if not name or _is_placeholder_name(name):
        return None
    return CharacterSkeleton(
        name=name,
        gender=_str(raw.get("gender")),
        age=_str(raw.get("age")),
        ethnicity=_str(raw.get("ethnicity")),
        body_type=_str(raw.get("bodyType")),
        face_shape=_str(raw.get("faceShape")),
        hair=_str(raw.get("hair")),
        facial_hair=_opt_str(raw.get("facialHair")),
        distinctive_features=_opt_str(raw.get("distinctiveFeatures")),
        base_outfit=_str(raw.get("baseOutfit")),
        first_appearance=_opt_str(raw.get("firstAppearance")),
    )


def normalize_character_extraction(parsed: Any) -> CharacterExtraction:
    """{"characters": [...], "background": "..."} 또는 캐릭터 배열을 정규화."""
    if isinstance(parsed, list):
        raw_characters, background = parsed, ""
    else:
        parsed = _obj(parsed)
        raw_characters = parsed.get("characters") or []
        background = _str(parsed.get("background"))

    characters: list[CharacterSkeleton] = []
    seen: set[str] = set()
    for raw in raw_characters if isinstance(raw_characters, list) else []:
        skeleton = normalize_character(raw)
        if skeleton is None or skeleton.name in seen:
            continue
        seen.add(skeleton.name)
        characters.append(skeleton)
    return CharacterExtraction(characters=characters, background=background)


_GENDER_RE = re.compile(r"^(male|female|man|woman|boy|girl|non-binary|nb)$", re.I)
_AGE_RE = re.compile(
    r"^(\d+s?|teens?|twenties|thirties|forties|fifties|sixties|seventies|young|"
    r"middle-?aged|elderly|older|senior|\d+-\d+)$", re.I)
_ETHNICITY_RE = re.compile(
    r"(asian|caucasian|african|latino|latina|hispanic|indian|middle eastern|mixed|white|black|"
    r"olive skin|pale skin|tan skin|dark skin|fair skin)", re.I)
_BODY_RE = re.compile(
    r"(slim|slender|athletic|muscular|stocky|heavyset|petite|tall|short|medium build|"
    r"average build|curvy|fit)", re.I)
_FACE_RE = re.compile(
    r"(round face|oval face|square jaw|heart-?shaped|diamond|oblong|rectangle|"
    r"angular features|sharp features|soft features)", re.I)
_HAIR_RE = re.compile(
    r"(bald|buzz|short|medium|long|very long|curly|wavy|straight|coily|black hair|brown hair|"
    r"blonde|gray|grey|white hair|red hair|auburn|chestnut|brunette|salt-?and-?pepper|highlighted)", re.I)
_FACIAL_HAIR_RE = re.compile(
    r"(beard|goatee|mustache|clean-?shaven|stubble|5 o'?clock shadow|sideburns)", re.I)
_OUTFIT_KEYWORDS = (
    "shirt", "coat", "jacket", "pants", "dress", "suit", "apron", "uniform", "blazer",
    "jeans", "shorts", "skirt", "blouse", "sweater", "hoodie",
)


def parse_character_skeleton(text: str) -> Optional[CharacterSkeleton]:
    """
    레거시 "Name - tag, tag, ..." 문자열에서 skeleton 복원 시도

    첫 " - " 를 구분자로 사용한다 (Jean-Paul 같은 하이픈 이름 허용).
    gender/age/hair/outfit 중 하나도 못 찾으면 None (레거시 문자열 유지).
    """
    if not text or text.strip().lower() == "none":
        return None
    idx = text.find(" - ")
    if idx == -1:
        return None

    skeleton = CharacterSkeleton(name=text[:idx].strip())
    remaining: list[str] = []
    facial_hair: list[str] = []
    for tag in (t.strip().lower() for t in text[idx + 3:].split(",")):
        if not tag:
            continue
        if _GENDER_RE.search(tag) and not skeleton.gender:
            skeleton.gender = tag
        elif _AGE_RE.search(tag) and not skeleton.age:
            skeleton.age = tag
        elif _ETHNICITY_RE.search(tag) and not skeleton.ethnicity:
            skeleton.ethnicity = tag
        elif _BODY_RE.search(tag) and not skeleton.body_type:
            skeleton.body_type = tag
        elif _FACE_RE.search(tag) and not skeleton.face_shape:
            skeleton.face_shape = tag
        elif _HAIR_RE.search(tag) and not skeleton.hair:
            skeleton.hair = tag
        elif _FACIAL_HAIR_RE.search(tag):
            facial_hair.append(tag)
        else:
            remaining.append(tag)

    if facial_hair:
        skeleton.facial_hair = ", ".join(facial_hair)
    outfit = [t for t in remaining if any(k in t for k in _OUTFIT_KEYWORDS)]
    features = [t for t in remaining if t not in outfit]
    if outfit:
        skeleton.base_outfit = ", ".join(outfit)
    if features:
        skeleton.distinctive_features = ", ".join(features)

    if skeleton.gender or skeleton.age or skeleton.hair or skeleton.base_outfit:
        return skeleton
    return None


def extract_character_registry(scenes: list[Scene]) -> CharacterRegistry:
    """씬의 character 필드에서 레지스트리 추출 (이름당 첫 등장만)."""
    registry: CharacterRegistry = {}
    for scene in scenes:
        raw = (scene.character or "").strip()
        separator = " - " if " - " in raw else "-"
        name = raw.split(separator, 1)[0].strip()
        if not name or _is_placeholder_name(name) or name in registry:
            continue
        registry[name] = parse_character_skeleton(raw) or raw
    return registry


def _normalize_registry(raw: Any) -> CharacterRegistry:
    """응답에 명시된 characters 필드 (dict 또는 배열) 정규화."""
    registry: CharacterRegistry = {}
    if isinstance(raw, dict):
        for name, entry in raw.items():
            name = str(name).strip()
            if not name or _is_placeholder_name(name):
                continue
            if isinstance(entry, dict):
                skeleton = normalize_character({"name": name, **entry})
                if skeleton is not None:
                    registry[name] = skeleton
            elif entry:
                registry[name] = str(entry)
    elif isinstance(raw, list):
        for entry in raw:
            skeleton = normalize_character(entry)
            if skeleton is not None:
                registry.setdefault(skeleton.name, skeleton)
    return registry


# ---------------------------------------------------------------------------
# 분석 (merged) / 스크립트
# ---------------------------------------------------------------------------

def normalize_video_analysis(parsed: Any) -> AnalysisResult:
    """merged 분석 응답: 컬러 프로파일 + 캐릭터 + 배경."""
    color = normalize_color_profile(parsed)
    extraction = normalize_character_extraction(parsed)
    return AnalysisResult(color=color, extraction=extraction)


def normalize_script(parsed: Any) -> GeneratedScript:
    parsed = _obj(parsed)
    segments = [s for s in parsed.get("segments") or [] if isinstance(s, dict)]
    return GeneratedScript(
        title=_str(parsed.get("title"), "Untitled"),
        duration=_str(parsed.get("duration"), "Unknown"),
        language=_str(parsed.get("language"), "Unknown"),
        summary=_str(parsed.get("summary")),
        characters=_str_list(parsed.get("characters")),
        settings=_str_list(parsed.get("settings")),
        segments=segments,
        raw_text=_str(parsed.get("rawText") or parsed.get("transcript")),
    )


# ---------------------------------------------------------------------------
# 씬
# ---------------------------------------------------------------------------

def normalize_scene(raw: Any, fallback_sequence: int, media_type: str = "image") -> Scene:
    """씬 dict 정규화. sequence 는 임시값이며 병합 단계에서 재번호된다."""
    raw = _obj(raw)
    description = _str(raw.get("description"))
    try:
        sequence = int(raw.get("sequence") or fallback_sequence)
    except (TypeError, ValueError, OverflowError):
        sequence = fallback_sequence
    variations = raw.get("characterVariations")
    return Scene(
        sequence=sequence,
        description=description,
        prompt=_str(raw.get("prompt"), description),
        media_type=_str(raw.get("mediaType"), media_type),
        object=_str(raw.get("object")),
        character=_str(raw.get("character")),
        style=_obj(raw.get("style")),
        visual_specs=_obj(raw.get("visual_specs")),
        lighting=_obj(raw.get("lighting")),
        composition=_obj(raw.get("composition")),
        technical=_obj(raw.get("technical")),
        negative_prompt=_opt_str(raw.get("negativePrompt")),
        voice=_opt_str(raw.get("voice")),
        character_variations=variations if isinstance(variations, dict) and variations else None,
        scene_id=_opt_str(raw.get("id")),
        extra={k: v for k, v in raw.items() if k not in SCENE_KNOWN_KEYS},
    )


def normalize_scene_batch(parsed: Any, media_type: str = "image") -> SceneBatchResult:
    """
    배치 응답 정규화

    허용 형태:
        [scene, ...]
        {"scenes": [scene, ...], "characters": {...} | [...]}

    Raises:
        ResponseParseError: 씬 배열을 찾을 수 없음
    """
    if isinstance(parsed, list):
        raw_scenes, raw_characters = parsed, None
    elif isinstance(parsed, dict) and isinstance(parsed.get("scenes"), list):
        raw_scenes = parsed["scenes"]
        raw_characters = parsed.get("characters") or parsed.get("characterRegistry")
    else:
        preview = _preview(json.dumps(parsed, ensure_ascii=False)[:PREVIEW_LIMIT * 2])
        raise ResponseParseError(
            f"Scene response is not an array of scenes. Response preview: {preview}",
            preview=preview,
        )

    scenes = [
        normalize_scene(raw, fallback_sequence=i + 1, media_type=media_type)
        for i, raw in enumerate(raw_scenes)
        if isinstance(raw, dict)
    ]
    characters = extract_character_registry(scenes)
    # 명시 캐릭터가 씬에서 추출한 것보다 우선
    characters.update(_normalize_registry(raw_characters))
    return SceneBatchResult(scenes=scenes, characters=characters)


# ---------------------------------------------------------------------------
# 텍스트 → 도메인 (Phase 파서)
# ---------------------------------------------------------------------------

def parse_color_profile(text: str) -> ColorProfileResult:
    return normalize_color_profile(parse_json_response(text, "color profile response"))


def parse_video_analysis(text: str) -> AnalysisResult:
    return normalize_video_analysis(parse_json_response(text, "video analysis response"))


def parse_characters(text: str) -> CharacterExtraction:
    return normalize_character_extraction(parse_json_response(text, "character extraction response"))


def parse_script(text: str) -> GeneratedScript:
    return normalize_script(parse_json_response(text, "script response"))


def parse_scene_batch(text: str, media_type: str = "image") -> SceneBatchResult:
    return normalize_scene_batch(parse_json_response(text, "scene response"), media_type=media_type)
