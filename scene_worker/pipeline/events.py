"""
스트림 이벤트 프로토콜

프레임 형식 (text/event-stream):
    event: <kind>
    id: <jobId>-<batch>-<n>
    data: <json>
    <빈 줄>

": ..." 로 시작하는 줄은 keep-alive 주석이며 디코더가 무시한다.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

KEEPALIVE = ": keepalive\n\n"


class EventKind(Enum):
    PROGRESS = "progress"
    CHARACTER = "character"
    COLOR_PROFILE = "colorProfile"
    SCRIPT = "script"
    LOG = "log"
    LOG_UPDATE = "logUpdate"
    BATCH_COMPLETE = "batchComplete"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


# 스트림을 닫는 프레임
TERMINAL_KINDS = frozenset({EventKind.COMPLETE, EventKind.ERROR, EventKind.CANCELLED})


@dataclass
class StreamEvent:
    kind: EventKind
    data: dict
    id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def to_dict(self) -> dict:
        return {"event": self.kind.value, "id": self.id, "data": self.data}


class EventIdGenerator:
    """job 단위 이벤트 id 발급기 ({jobId}-{batch}-{n}, n 은 job 전체에서 단조 증가)."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._seq = 0

    def next_id(self, batch: int = 0) -> str:
        self._seq += 1
        return f"{self.job_id}-{batch}-{self._seq}"


def encode_sse(event: StreamEvent) -> str:
    """StreamEvent → SSE 프레임 문자열."""
    lines = [f"event: {event.kind.value}"]
    if event.id:
        lines.append(f"id: {event.id}")
    payload = json.dumps(event.data, ensure_ascii=False, default=str)
    # data 안의 개행은 JSON 인코딩으로 이스케이프되므로 항상 한 줄
    lines.append(f"data: {payload}")
    return "\n".join(lines) + "\n\n"


class SSEDecoder:
    """
    청크 단위로 도착하는 SSE 스트림을 프레임으로 복원

    프레임 경계는 빈 줄. 청크가 프레임 중간에서 잘려도 다음 feed 에서 이어 붙인다.
    """

    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> list[StreamEvent]:
        self._buffer += chunk.replace("\r\n", "\n")
        events: list[StreamEvent] = []
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            event = self._parse_block(block)
            if event is not None:
                events.append(event)
        return events

    @property
    def pending(self) -> str:
        return self._buffer

    @staticmethod
    def _parse_block(block: str) -> Optional[StreamEvent]:
        kind: Optional[str] = None
        event_id: Optional[str] = None
        data_lines: list[str] = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            field_name, _, value = line.partition(":")
            value = value[1:] if value.startswith(" ") else value
            if field_name == "event":
                kind = value
            elif field_name == "id":
                event_id = value
            elif field_name == "data":
                data_lines.append(value)

        if not data_lines:
            # keep-alive 전용 블록
            return None

        raw = "\n".join(data_lines)
        try:
            data: Any = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("SSE data JSON 파싱 실패 (무시): %s", raw[:200])
            return None
        if isinstance(data, dict) and kind is None and "event" in data:
            kind, data = data["event"], data.get("data") or {}

        try:
            event_kind = EventKind(kind or "progress")
        except ValueError:
            logger.warning("알 수 없는 이벤트 종류 (무시): %s", kind)
            return None
        return StreamEvent(kind=event_kind, data=data, id=event_id)


def decode_stream(chunks: Iterator[str]) -> Iterator[StreamEvent]:
    """청크 이터러블 → StreamEvent 이터레이터."""
    decoder = SSEDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
