from __future__ import annotations

import codecs
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .config import Settings, settings as default_settings
from .connection import ConnectionGuard
from .errors import FrameParseError, HeaderWriteError, UpstreamPayloadError
from .logging_utils import debug, log_error
from .schemas.anthropic import MessageResponse, MessageStartEvent, MessageStopEvent, PingEvent
from .transform import estimate_tokens, new_message_id, upstream_error_message

DONE_SENTINEL = "[DONE]"


class StreamPhase(Enum):
    IDLE = "idle"
    HEADER_SENT = "header_sent"
    TEXT_OPEN = "text_open"
    TOOL_OPEN = "tool_open"
    TERMINATED = "terminated"


# Allowed phase transitions; anything else is a bug in the re-framer.
_TRANSITIONS = {
    StreamPhase.IDLE: {StreamPhase.HEADER_SENT, StreamPhase.TERMINATED},
    StreamPhase.HEADER_SENT: {StreamPhase.TEXT_OPEN, StreamPhase.TOOL_OPEN, StreamPhase.TERMINATED},
    StreamPhase.TEXT_OPEN: {StreamPhase.TOOL_OPEN, StreamPhase.TERMINATED},
    StreamPhase.TOOL_OPEN: {StreamPhase.TERMINATED},
    StreamPhase.TERMINATED: set(),
}


@dataclass
class StreamState:
    phase: StreamPhase = StreamPhase.IDLE
    text_block_index: Optional[int] = None
    # upstream tool-call index -> downstream content block index
    tool_blocks: Dict[int, int] = field(default_factory=dict)
    # upstream tool-call index -> arguments string sent so far
    tool_arguments: Dict[int, str] = field(default_factory=dict)
    next_block_index: int = 0
    accumulated_content: str = ""
    accumulated_reasoning: str = ""
    usage: Optional[Dict[str, Any]] = None
    encountered_tool_call: bool = False
    dropped_text_reported: bool = False
    buffer: str = ""
    incomplete_data_line: str = ""


def looks_truncated(text: str) -> bool:
    """True when ``text`` is an unfinished JSON value (open string or bracket)."""
    depth = 0
    in_str = False
    esc = False
    for ch in text:
        if esc:
            esc = False
        elif ch == "\\":
            esc = in_str
        elif ch == '"':
            in_str = not in_str
        elif not in_str:
            if ch in "{[":
                depth += 1
            elif ch in "}]":
                depth -= 1
                if depth < 0:
                    return False
    return in_str or depth > 0


def parse_frame(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        raise FrameParseError(text, truncated=looks_truncated(text))


class StreamReframer:
    """Re-frame an OpenAI chat-completion SSE byte stream as Anthropic SSE events.

    Feed raw upstream bytes with :meth:`feed` and call :meth:`flush` at end of
    body. Events are written through the request's :class:`ConnectionGuard`;
    nothing here touches the network.
    """

    def __init__(
        self,
        model: str,
        guard: ConnectionGuard,
        settings: Optional[Settings] = None,
        message_id: Optional[str] = None,
    ) -> None:
        cfg = settings or default_settings
        self.model = model
        self.guard = guard
        self.message_id = message_id or new_message_id()
        self.max_pending = cfg.max_pending_frame_bytes
        self.cumulative_arguments = cfg.tool_arguments_mode != "delta"
        self.state = StreamState()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def terminated(self) -> bool:
        return self.state.phase is StreamPhase.TERMINATED

    @property
    def has_started_streaming(self) -> bool:
        return self.guard.header_sent

    def _transition(self, phase: StreamPhase) -> None:
        current = self.state.phase
        if phase is current:
            return
        if phase not in _TRANSITIONS[current]:
            raise RuntimeError(f"Illegal stream transition {current.value} -> {phase.value}")
        self.state.phase = phase

    def _emit(self, event: str, data: Dict[str, Any]) -> bool:
        return self.guard.send(event, data)

    # -- bytes / lines -------------------------------------------------

    def feed(self, chunk: bytes) -> None:
        if self.terminated or not chunk:
            return
        text = self._decoder.decode(chunk)
        debug("upstream chunk:", text)
        st = self.state
        st.buffer += text
        lines = st.buffer.split("\n")
        st.buffer = lines.pop()
        for line in lines:
            if self.terminated:
                return
            self._process_line(line)

    def flush(self) -> None:
        """Process whatever is left once the upstream body has ended."""
        if self.terminated:
            return
        st = self.state
        tail = st.buffer + self._decoder.decode(b"", final=True)
        st.buffer = ""
        if tail.strip():
            self._process_line(tail)

    def finish(self) -> None:
        """Terminate as if ``[DONE]`` had arrived."""
        if not self.terminated:
            self._finish()

    def _process_line(self, line: str) -> None:
        trimmed = line.strip()
        if not trimmed.startswith("data:"):
            return
        st = self.state
        data_str = trimmed[len("data:"):].lstrip()
        if data_str == DONE_SENTINEL:
            if st.incomplete_data_line:
                debug("discarding incomplete frame at end of stream:", st.incomplete_data_line)
            self._finish()
            return
        if st.incomplete_data_line:
            data_str = st.incomplete_data_line + data_str
            st.incomplete_data_line = ""

        try:
            frame = parse_frame(data_str)
        except FrameParseError as e:
            if not e.truncated:
                debug("skipping malformed frame:", data_str)
            elif len(data_str.encode()) > self.max_pending:
                debug(f"dropping pending frame over {self.max_pending} bytes")
            else:
                debug("buffering incomplete frame:", data_str)
                st.incomplete_data_line = data_str
            return
        if isinstance(frame, dict):
            self._process_frame(frame)

    # -- frames --------------------------------------------------------

    def _ensure_header(self) -> bool:
        if self.state.phase is not StreamPhase.IDLE:
            return not self.terminated
        try:
            first = self.guard.start()
        except HeaderWriteError as e:
            debug("cannot write stream header:", e)
            self.guard.mark_closed()
            self._transition(StreamPhase.TERMINATED)
            return False
        self._transition(StreamPhase.HEADER_SENT)
        if first:
            start = MessageStartEvent(message=MessageResponse(id=self.message_id, model=self.model))
            self._emit("message_start", start.model_dump())
            self._emit("ping", PingEvent().model_dump())
        return True

    def _process_frame(self, frame: Dict[str, Any]) -> None:
        err = upstream_error_message(frame)
        if err is not None:
            raise UpstreamPayloadError(err)
        if not self._ensure_header():
            return
        st = self.state
        if frame.get("usage"):
            st.usage = frame["usage"]

        choices = frame.get("choices") or []
        delta = (choices[0] or {}).get("delta") if choices else None
        if not isinstance(delta, dict):
            return

        reasoning = delta.get("reasoning") or delta.get("reasoning_content")
        if reasoning:
            self._text_delta(str(reasoning), thinking=True)
        if delta.get("content"):
            self._text_delta(str(delta["content"]), thinking=False)
        for tool_call in delta.get("tool_calls") or []:
            if isinstance(tool_call, dict):
                self._tool_delta(tool_call)

    def _text_delta(self, text: str, thinking: bool) -> None:
        st = self.state
        if thinking:
            st.accumulated_reasoning += text
        else:
            st.accumulated_content += text
        if st.phase is StreamPhase.TOOL_OPEN:
            if not st.dropped_text_reported:
                log_error(f"dropping text that arrived after tool calls (message {self.message_id})")
                st.dropped_text_reported = True
            debug("dropping text after tool calls:", text)
            return
        if st.phase is StreamPhase.HEADER_SENT:
            st.text_block_index = st.next_block_index
            st.next_block_index += 1
            self._transition(StreamPhase.TEXT_OPEN)
            self._emit(
                "content_block_start",
                {
                    "type": "content_block_start",
                    "index": st.text_block_index,
                    "content_block": {"type": "text", "text": ""},
                },
            )
        # Reasoning shares the text block; only the delta type differs.
        delta = {"type": "thinking_delta", "thinking": text} if thinking else {"type": "text_delta", "text": text}
        self._emit(
            "content_block_delta",
            {"type": "content_block_delta", "index": st.text_block_index, "delta": delta},
        )

    def _tool_delta(self, tool_call: Dict[str, Any]) -> None:
        st = self.state
        st.encountered_tool_call = True
        try:
            idx = int(tool_call.get("index") or 0)
        except (TypeError, ValueError):
            idx = 0
        fn = tool_call.get("function") or {}

        if idx not in st.tool_blocks:
            if st.phase is StreamPhase.TEXT_OPEN:
                self._emit("content_block_stop", {"type": "content_block_stop", "index": st.text_block_index})
                st.text_block_index = None
            self._transition(StreamPhase.TOOL_OPEN)
            st.tool_blocks[idx] = st.next_block_index
            st.next_block_index += 1
            st.tool_arguments[idx] = ""
            self._emit(
                "content_block_start",
                {
                    "type": "content_block_start",
                    "index": st.tool_blocks[idx],
                    "content_block": {
                        "type": "tool_use",
                        "id": tool_call.get("id") or f"call_{uuid.uuid4().hex}",
                        "name": fn.get("name") or "",
                        "input": {},
                    },
                },
            )

        new_args = fn.get("arguments") or ""
        old_args = st.tool_arguments[idx]
        if self.cumulative_arguments:
            if len(new_args) <= len(old_args):
                return
            fragment = new_args[len(old_args):]
            st.tool_arguments[idx] = new_args
        else:
            if not new_args:
                return
            fragment = new_args
            st.tool_arguments[idx] = old_args + new_args
        self._emit(
            "content_block_delta",
            {
                "type": "content_block_delta",
                "index": st.tool_blocks[idx],
                "delta": {"type": "input_json_delta", "partial_json": fragment},
            },
        )

    def output_tokens(self) -> int:
        st = self.state
        if st.usage and st.usage.get("completion_tokens") is not None:
            return int(st.usage["completion_tokens"])
        return estimate_tokens(st.accumulated_content) + estimate_tokens(st.accumulated_reasoning)

    def _finish(self) -> None:
        st = self.state
        if st.phase is StreamPhase.IDLE and not self._ensure_header():
            return
        if st.phase is StreamPhase.TOOL_OPEN:
            for block_index in st.tool_blocks.values():
                self._emit("content_block_stop", {"type": "content_block_stop", "index": block_index})
        elif st.phase is StreamPhase.TEXT_OPEN:
            self._emit("content_block_stop", {"type": "content_block_stop", "index": st.text_block_index})
        self._emit(
            "message_delta",
            {
                "type": "message_delta",
                "delta": {
                    "stop_reason": "tool_use" if st.encountered_tool_call else "end_turn",
                    "stop_sequence": None,
                },
                "usage": {"output_tokens": self.output_tokens()},
            },
        )
        self._emit("message_stop", MessageStopEvent().model_dump())
        self.guard.end()
        self._transition(StreamPhase.TERMINATED)
        st.buffer = ""
        st.incomplete_data_line = ""
