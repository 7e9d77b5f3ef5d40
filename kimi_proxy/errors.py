from __future__ import annotations

from typing import Optional


class ProxyError(RuntimeError):
    ...


class UpstreamHTTPError(ProxyError):
    """Upstream answered with a non-2xx status before anything was sent downstream."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Upstream returned HTTP {status_code}")
        self.status_code = status_code
        self.body = body


class UpstreamPayloadError(ProxyError):
    """An ``error`` object inside an otherwise successful upstream body or frame."""

    def __init__(self, message: Optional[str]) -> None:
        super().__init__(message or "Upstream error")


class FrameParseError(ProxyError):
    def __init__(self, text: str, truncated: bool) -> None:
        super().__init__("Incomplete upstream frame" if truncated else "Malformed upstream frame")
        self.text = text
        self.truncated = truncated


class ConnectionClosedError(ProxyError):
    ...


class HeaderWriteError(ConnectionClosedError):
    ...
