from __future__ import annotations

import json
from typing import Any, Dict, List

from .errors import HeaderWriteError
from .logging_utils import debug


def format_sse(event: str, data: Dict[str, Any]) -> bytes:
    return f"event: {event}\n".encode() + f"data: {json.dumps(data, ensure_ascii=False)}\n\n".encode()


class ConnectionGuard:
    """Per-request gate in front of the downstream SSE writer.

    Frames are queued by :meth:`send` and handed to the response body by
    :meth:`drain`. Once the peer is gone (``closed``) or the response has been
    finished (``ended``) every further write is dropped.
    """

    def __init__(self) -> None:
        self.closed = False
        self.ended = False
        self.header_sent = False
        self._pending: List[bytes] = []

    @property
    def writable(self) -> bool:
        return not (self.closed or self.ended)

    def mark_closed(self) -> None:
        if not self.closed:
            debug("downstream connection closed")
        self.closed = True
        self._pending.clear()

    def start(self) -> bool:
        """Claim the streaming header block. True only for the first caller."""
        if self.header_sent:
            return False
        if not self.writable:
            raise HeaderWriteError("Downstream connection is no longer writable")
        self.header_sent = True
        return True

    def send(self, event: str, data: Dict[str, Any]) -> bool:
        if not self.writable:
            return False
        self._pending.append(format_sse(event, data))
        return True

    def end(self) -> None:
        self.ended = True

    def drain(self) -> List[bytes]:
        frames, self._pending = self._pending, []
        return frames

    async def poll_disconnect(self, request: Any) -> bool:
        """Check the ASGI request for a client disconnect; returns ``closed``."""
        if not self.closed:
            try:
                if await request.is_disconnected():
                    self.mark_closed()
            except Exception as e:
                debug("disconnect probe failed:", e)
                self.mark_closed()
        return self.closed
