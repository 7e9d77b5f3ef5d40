import json
from typing import Any, Dict, List, Tuple

import pytest

from kimi_proxy.config import Settings
from kimi_proxy.connection import ConnectionGuard, format_sse
from kimi_proxy.errors import HeaderWriteError, UpstreamPayloadError
from kimi_proxy.streaming import StreamPhase, StreamReframer, looks_truncated


def parse_sse(frames: List[bytes]) -> List[Tuple[str, Dict[str, Any]]]:
    events = []
    for record in b"".join(frames).decode().split("\n\n"):
        if not record.strip():
            continue
        event_line, data_line = record.split("\n")
        assert event_line.startswith("event: ") and data_line.startswith("data: ")
        events.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return events


def _frame(obj: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(obj)}\n\n".encode()


def _delta(**delta: Any) -> Dict[str, Any]:
    return {"id": "chatcmpl-s", "choices": [{"index": 0, "delta": delta, "finish_reason": None}]}


def _tool(index: int, arguments: str, call_id: str = None, name: str = None) -> Dict[str, Any]:
    call: Dict[str, Any] = {"index": index, "function": {"arguments": arguments}}
    if call_id:
        call["id"] = call_id
        call["type"] = "function"
    if name:
        call["function"]["name"] = name
    return _delta(tool_calls=[call])


DONE = b"data: [DONE]\n\n"


def _reframer(**overrides: Any) -> Tuple[StreamReframer, ConnectionGuard]:
    cfg = Settings()
    cfg.update(**overrides)
    guard = ConnectionGuard()
    return StreamReframer("kimi-test", guard, settings=cfg, message_id="msg_test"), guard


def _run(*chunks: bytes, **overrides: Any) -> List[Tuple[str, Dict[str, Any]]]:
    reframer, guard = _reframer(**overrides)
    for chunk in chunks:
        reframer.feed(chunk)
    return parse_sse(guard.drain())


def test_text_stream_event_sequence():
    events = _run(_frame(_delta(role="assistant", content="Hel")), _frame(_delta(content="lo world")), DONE)
    names = [name for name, _ in events]
    assert names == [
        "message_start",
        "ping",
        "content_block_start",
        "content_block_delta",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    start = events[0][1]
    assert start["message"]["id"] == "msg_test"
    assert start["message"]["model"] == "kimi-test"
    assert start["message"]["content"] == []
    assert start["message"]["usage"] == {"input_tokens": 0, "output_tokens": 0}
    assert events[2][1] == {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}
    assert events[3][1]["delta"] == {"type": "text_delta", "text": "Hel"}
    assert events[4][1]["delta"] == {"type": "text_delta", "text": "lo world"}
    assert events[5][1] == {"type": "content_block_stop", "index": 0}
    message_delta = events[6][1]
    assert message_delta["delta"] == {"stop_reason": "end_turn", "stop_sequence": None}
    assert message_delta["usage"] == {"output_tokens": 2}
    assert events[7][1] == {"type": "message_stop"}


def test_upstream_usage_wins_over_estimate():
    final = {"id": "chatcmpl-s", "choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 7}}
    events = _run(_frame(_delta(content="a b c")), _frame(final), DONE)
    assert events[-2][1]["usage"] == {"output_tokens": 7}


def test_reasoning_shares_the_text_block():
    events = _run(_frame(_delta(reasoning="thinking hard")), _frame(_delta(content="answer")), DONE)
    starts = [data for name, data in events if name == "content_block_start"]
    assert len(starts) == 1 and starts[0]["index"] == 0
    deltas = [data["delta"] for name, data in events if name == "content_block_delta"]
    assert deltas == [
        {"type": "thinking_delta", "thinking": "thinking hard"},
        {"type": "text_delta", "text": "answer"},
    ]
    stops = [data for name, data in events if name == "content_block_stop"]
    assert stops == [{"type": "content_block_stop", "index": 0}]
    # estimate covers reasoning and content
    assert events[-2][1]["usage"] == {"output_tokens": 3}


def test_reasoning_content_key_is_accepted():
    events = _run(_frame(_delta(reasoning_content="hmm")), DONE)
    deltas = [data["delta"] for name, data in events if name == "content_block_delta"]
    assert deltas == [{"type": "thinking_delta", "thinking": "hmm"}]


def test_cumulative_tool_arguments_emit_only_suffixes():
    cumulative = ['{"ci', '{"city"', '{"city": "S', '{"city": "SF"}']
    chunks = [_frame(_tool(0, "", call_id="call_1", name="get_weather"))]
    chunks += [_frame(_tool(0, args)) for args in cumulative]
    # duplicate and shorter values are ignored
    chunks += [_frame(_tool(0, '{"city": "SF"}')), _frame(_tool(0, '{"ci'))]
    events = _run(*chunks, DONE)

    start = [data for name, data in events if name == "content_block_start"][0]
    assert start["content_block"] == {"type": "tool_use", "id": "call_1", "name": "get_weather", "input": {}}
    fragments = [data["delta"]["partial_json"] for name, data in events if name == "content_block_delta"]
    assert len(fragments) == len(cumulative)
    assert "".join(fragments) == cumulative[-1]
    assert events[-2][1]["delta"]["stop_reason"] == "tool_use"


def test_delta_mode_tool_arguments_are_forwarded_as_is():
    chunks = [
        _frame(_tool(0, '{"pa', call_id="call_1", name="read")),
        _frame(_tool(0, 'th": "/tmp"}')),
        _frame(_tool(0, "")),
    ]
    reframer, guard = _reframer(tool_arguments_mode="delta")
    for chunk in chunks + [DONE]:
        reframer.feed(chunk)
    events = parse_sse(guard.drain())
    fragments = [data["delta"]["partial_json"] for name, data in events if name == "content_block_delta"]
    assert fragments == ['{"pa', 'th": "/tmp"}']
    assert reframer.state.tool_arguments[0] == '{"path": "/tmp"}'


def test_two_tool_calls_close_exactly_their_own_blocks():
    events = _run(
        _frame(_tool(0, '{"a": 1}', call_id="call_a", name="first")),
        _frame(_tool(1, '{"b": 2}', call_id="call_b", name="second")),
        DONE,
    )
    starts = [data["index"] for name, data in events if name == "content_block_start"]
    stops = [data["index"] for name, data in events if name == "content_block_stop"]
    assert starts == [0, 1]
    assert stops == [0, 1]
    assert events[-2][1]["delta"]["stop_reason"] == "tool_use"


def test_text_block_closes_before_tool_block_opens():
    events = _run(
        _frame(_delta(content="Let me look.")),
        _frame(_tool(0, '{"q": "x"}', call_id="call_q", name="search")),
        _frame(_delta(content="ignored")),
        DONE,
    )
    blocks = [(name, data.get("index")) for name, data in events if name.startswith("content_block_")]
    assert blocks == [
        ("content_block_start", 0),
        ("content_block_delta", 0),
        ("content_block_stop", 0),
        ("content_block_start", 1),
        ("content_block_delta", 1),
        ("content_block_stop", 1),
    ]
    texts = [data["delta"].get("text") for name, data in events if name == "content_block_delta"]
    assert "ignored" not in texts


def test_text_after_tool_calls_is_reported_once(capsys):
    reframer, _ = _reframer()
    reframer.feed(_frame(_tool(0, "{}", call_id="call_q", name="search")))
    reframer.feed(_frame(_delta(content="late one")))
    reframer.feed(_frame(_delta(content="late two")))
    err = capsys.readouterr().err
    assert err.count("dropping text that arrived after tool calls") == 1
    assert "msg_test" in err
    assert reframer.state.accumulated_content == "late onelate two"


def test_frame_split_mid_json_matches_single_read():
    payload = _frame(_delta(content="hello"))
    cut = payload.index(b"choi") + 4
    split = _run(payload[:cut], payload[cut:], DONE)
    whole = _run(payload, DONE)
    assert split == whole
    assert [d["delta"]["text"] for n, d in split if n == "content_block_delta"] == ["hello"]


def test_multibyte_character_split_across_reads():
    payload = _frame(_delta(content="café"))
    cut = payload.index("é".encode()) + 1
    events = _run(payload[:cut], payload[cut:], DONE)
    assert [d["delta"]["text"] for n, d in events if n == "content_block_delta"] == ["café"]


def test_truncated_data_line_is_completed_by_next_line():
    events = _run(
        b'data: {"choices": [{"delta": {"content": "a\n',
        b'data: b"}}]}\n\n',
        DONE,
    )
    assert [d["delta"]["text"] for n, d in events if n == "content_block_delta"] == ["ab"]


def test_malformed_frame_is_skipped():
    reframer, guard = _reframer()
    reframer.feed(b'data: {"choices": []}}\n\n')
    assert reframer.state.incomplete_data_line == ""
    reframer.feed(_frame(_delta(content="ok")) + DONE)
    events = parse_sse(guard.drain())
    assert [d["delta"]["text"] for n, d in events if n == "content_block_delta"] == ["ok"]


def test_pending_frame_is_bounded():
    reframer, _ = _reframer(max_pending_frame_bytes=1024)
    reframer.feed(b'data: {"choices": [{"delta": {"content": "' + b"x" * 2048 + b"\n")
    assert reframer.state.incomplete_data_line == ""
    reframer.feed(b'data: {"choices": [{"delta": {"content": "short\n')
    assert reframer.state.incomplete_data_line.endswith("short")


def test_non_data_lines_are_ignored():
    events = _run(b": keep-alive\n\nevent: whatever\n" + _frame(_delta(content="x")) + DONE)
    assert [d["delta"]["text"] for n, d in events if n == "content_block_delta"] == ["x"]


def test_done_is_terminal():
    reframer, guard = _reframer()
    reframer.feed(_frame(_delta(content="one")) + DONE + _frame(_delta(content="two")))
    reframer.feed(_frame(_delta(content="three")) + DONE)
    events = parse_sse(guard.drain())
    assert reframer.terminated
    assert guard.ended
    assert [n for n, _ in events].count("message_stop") == 1
    assert [d["delta"]["text"] for n, d in events if n == "content_block_delta"] == ["one"]


def test_done_before_any_frame_emits_empty_message():
    events = _run(DONE)
    assert [n for n, _ in events] == ["message_start", "ping", "message_delta", "message_stop"]
    assert events[2][1]["delta"]["stop_reason"] == "end_turn"
    assert events[2][1]["usage"] == {"output_tokens": 0}


def test_flush_handles_unterminated_last_line():
    reframer, guard = _reframer()
    reframer.feed(_frame(_delta(content="hi")) + b"data: [DONE]")
    assert not reframer.terminated
    reframer.flush()
    assert reframer.terminated
    assert parse_sse(guard.drain())[-1][0] == "message_stop"


def test_upstream_error_frame_raises():
    reframer, guard = _reframer()
    with pytest.raises(UpstreamPayloadError, match="rate limited"):
        reframer.feed(_frame({"error": {"message": "rate limited"}}))
    assert not guard.header_sent


def test_writes_stop_after_connection_closes():
    reframer, guard = _reframer()
    reframer.feed(_frame(_delta(content="first")))
    assert [n for n, _ in parse_sse(guard.drain())][0] == "message_start"

    guard.mark_closed()
    reframer.feed(_frame(_delta(content=" second")))
    reframer.feed(_frame(_tool(0, "{}", call_id="c", name="t")))
    reframer.feed(DONE)
    assert guard.drain() == []
    # bookkeeping continues
    assert reframer.state.accumulated_content == "first second"
    assert reframer.terminated


def test_header_block_is_written_once():
    reframer, guard = _reframer()
    reframer.feed(_frame(_delta(content="a")))
    reframer.feed(_frame(_delta(content="b")))
    names = [n for n, _ in parse_sse(guard.drain())]
    assert names.count("message_start") == 1
    assert names.count("ping") == 1
    assert guard.start() is False
    assert reframer.has_started_streaming


def test_closed_before_header_terminates_without_output():
    reframer, guard = _reframer()
    guard.mark_closed()
    reframer.feed(_frame(_delta(content="late")))
    assert reframer.state.phase is StreamPhase.TERMINATED
    assert guard.drain() == []
    assert not guard.header_sent


def test_guard_start_raises_when_closed():
    guard = ConnectionGuard()
    guard.mark_closed()
    with pytest.raises(HeaderWriteError):
        guard.start()


def test_guard_refuses_writes_after_end():
    guard = ConnectionGuard()
    assert guard.send("ping", {"type": "ping"})
    guard.end()
    assert not guard.send("ping", {"type": "ping"})
    assert guard.drain() == [format_sse("ping", {"type": "ping"})]


def test_format_sse():
    assert format_sse("ping", {"type": "ping"}) == b'event: ping\ndata: {"type": "ping"}\n\n'


@pytest.mark.parametrize(
    "text, expected",
    [
        ('{"choi', True),
        ('{"choices": [', True),
        ('{"a": "x\\"', True),
        ('{"a": 1}}', False),
        ("not json", False),
        ('{"a": 1}', False),
    ],
)
def test_looks_truncated(text, expected):
    assert looks_truncated(text) is expected
