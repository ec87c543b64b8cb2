"""스트림 이벤트 인코딩/디코딩 테스트.

실행 방법:
  python -m pytest test/test_events.py -v
"""
from scene_worker.pipeline.events import (
    KEEPALIVE,
    EventIdGenerator,
    EventKind,
    SSEDecoder,
    StreamEvent,
    decode_stream,
    encode_sse,
)


class TestEncode:

    def test_frame_layout(self):
        frame = encode_sse(StreamEvent(EventKind.PROGRESS, {"message": "다음 배치\n생성"}, id="job_1-1-3"))
        lines = frame.split("\n")
        assert lines[0] == "event: progress"
        assert lines[1] == "id: job_1-1-3"
        assert lines[2].startswith("data: {")
        # data 내부 개행은 JSON 이스케이프
        assert frame.endswith("\n\n") and frame.count("\n") == 4

    def test_terminal_kinds(self):
        assert StreamEvent(EventKind.COMPLETE, {}).is_terminal
        assert StreamEvent(EventKind.CANCELLED, {}).is_terminal
        assert not StreamEvent(EventKind.BATCH_COMPLETE, {}).is_terminal


class TestDecode:

    def test_round_trip_with_keepalive(self):
        events = [
            StreamEvent(EventKind.PROGRESS, {"batchIndex": 0, "message": "start"}, id="job_1-0-1"),
            StreamEvent(EventKind.BATCH_COMPLETE, {"batchNumber": 0, "scenes": []}, id="job_1-1-2"),
        ]
        stream = encode_sse(events[0]) + KEEPALIVE + encode_sse(events[1])
        assert list(decode_stream([stream])) == events

    def test_frame_split_across_chunks(self):
        frame = encode_sse(StreamEvent(EventKind.CHARACTER, {"name": "Mina"}, id="job_1-0-4"))
        decoder = SSEDecoder()

        assert decoder.feed(frame[:7]) == []
        assert decoder.feed(frame[7:20]) == []
        decoded = decoder.feed(frame[20:])

        assert len(decoded) == 1
        assert decoded[0].kind == EventKind.CHARACTER
        assert decoded[0].data == {"name": "Mina"}
        assert decoder.pending == ""

    def test_invalid_json_skipped(self):
        decoder = SSEDecoder()
        good = encode_sse(StreamEvent(EventKind.LOG, {"id": "log-1"}))
        decoded = decoder.feed("event: progress\ndata: {not json\n\n" + good)
        assert [e.kind for e in decoded] == [EventKind.LOG]

    def test_unknown_kind_skipped(self):
        assert SSEDecoder().feed('event: mystery\ndata: {}\n\n') == []

    def test_crlf_line_endings(self):
        decoded = SSEDecoder().feed('event: error\r\ndata: {"type": "TIMEOUT"}\r\n\r\n')
        assert decoded[0].kind == EventKind.ERROR
        assert decoded[0].data == {"type": "TIMEOUT"}


class TestEventIds:

    def test_monotonic_per_job(self):
        ids = EventIdGenerator("job_1")
        assert [ids.next_id(0), ids.next_id(1), ids.next_id(1), ids.next_id(2)] == [
            "job_1-0-1", "job_1-1-2", "job_1-1-3", "job_1-2-4",
        ]
