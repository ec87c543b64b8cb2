"""배치 결과를 누적 job 상태에 병합.

- 씬 sequence 는 누적 목록 뒤에 1씩 이어지도록 재번호
- 캐릭터 레지스트리는 append-only: 기존 이름은 덮어쓰지 않는다
"""
import logging
from dataclasses import dataclass, field, replace

from scene_worker.pipeline.types import (
    CharacterRegistry,
    CharacterSkeleton,
    Scene,
    SceneBatchResult,
)

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    batch_scenes: list[Scene]            # 재번호된 이번 배치 씬
    scenes: list[Scene]                  # 누적 씬 전체
    characters: CharacterRegistry        # 누적 레지스트리
    new_characters: list[str] = field(default_factory=list)


def renumber_scenes(scenes: list[Scene], start: int) -> list[Scene]:
    """sequence 를 start 부터 연속 번호로 다시 매긴 사본."""
    return [replace(scene, sequence=start + i) for i, scene in enumerate(scenes)]


def merge_characters(
    existing: CharacterRegistry,
    incoming: CharacterRegistry,
) -> tuple[CharacterRegistry, list[str]]:
    """새 이름만 추가. 반환: (병합된 사본, 추가된 이름 목록)."""
    merged = dict(existing)
    added: list[str] = []
    for name, entry in incoming.items():
        if name in merged:
            continue
        merged[name] = entry
        added.append(name)
    return merged, added


def merge_batch(
    existing_scenes: list[Scene],
    existing_characters: CharacterRegistry,
    batch: SceneBatchResult,
    max_scenes: int,
) -> MergeResult:
    """
    배치 하나를 누적 상태에 병합

    Args:
        existing_scenes: 지금까지의 씬 (sequence 1..n)
        existing_characters: 지금까지의 레지스트리
        batch: 정규화된 배치 결과
        max_scenes: 이 배치가 채울 수 있는 최대 씬 수 (초과분은 버림)

    Returns:
        MergeResult
    """
    incoming = batch.scenes[:max(0, max_scenes)]
    if len(batch.scenes) > len(incoming):
        logger.warning(
            "배치 씬 초과분 버림: 요청=%d 응답=%d", max_scenes, len(batch.scenes),
        )
    batch_scenes = renumber_scenes(incoming, start=len(existing_scenes) + 1)
    characters, added = merge_characters(existing_characters, batch.characters)
    return MergeResult(
        batch_scenes=batch_scenes,
        scenes=list(existing_scenes) + batch_scenes,
        characters=characters,
        new_characters=added,
    )


def registry_skeletons(registry: CharacterRegistry) -> list[CharacterSkeleton]:
    """재개 시 프롬프트에 넘길 구조화 캐릭터만 추린다."""
    return [entry for entry in registry.values() if isinstance(entry, CharacterSkeleton)]


def build_continuity_context(scenes: list[Scene], last_n: int = 5) -> str:
    """직전 씬 요약 (서사 연속성용)."""
    if not scenes:
        return ""
    tail = scenes[-last_n:]
    lines = [f"- Scene {s.sequence}: {s.description[:200]}" for s in tail]
    return (
        f"Continue directly after scene {scenes[-1].sequence}. Previous scenes:\n"
        + "\n".join(lines)
    )
