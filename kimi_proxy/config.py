import os
from typing import Any, Optional


class Settings:
    def __init__(self) -> None:
        self.base_url: str = os.environ.get("KIMI_BASE_URL", "https://api.groq.com/openai")
        self.api_key: Optional[str] = os.environ.get("KIMI_API_KEY") or os.environ.get("GROQ_API_KEY")
        self.reasoning_model: str = os.environ.get("KIMI_REASONING_MODEL", "moonshotai/kimi-k2-instruct")
        self.completion_model: str = os.environ.get("KIMI_COMPLETION_MODEL", "moonshotai/kimi-k2-instruct")
        try:
            self.max_tokens: int = max(1, int(os.environ.get("KIMI_MAX_TOKENS", "16384")))
        except Exception:
            self.max_tokens = 16384
        self.debug: bool = (os.environ.get("DEBUG_PROXY", "").lower() in ("1", "true", "yes"))
        try:
            self.port: int = int(os.environ.get("PORT", "3000"))
        except Exception:
            self.port = 3000
        # HTTP/2 needs the h2 extra; the client falls back to HTTP/1.1 without it.
        self.http2: bool = (os.environ.get("PROXY_HTTP2", "0").lower() in ("1", "true", "yes"))
        try:
            self.upstream_timeout: float = float(os.environ.get("UPSTREAM_TIMEOUT", "120"))
        except Exception:
            self.upstream_timeout = 120.0
        # Upper bound for a data: line held back as a suspected truncated frame
        try:
            self.max_pending_frame_bytes: int = max(1024, int(os.environ.get("MAX_PENDING_FRAME_BYTES", str(1 << 20))))
        except Exception:
            self.max_pending_frame_bytes = 1 << 20
        # "cumulative": upstream resends the full argument string on every tool-call delta.
        # "delta": upstream sends only the new fragment.
        mode = os.environ.get("TOOL_ARGUMENTS_MODE", "cumulative").strip().lower()
        self.tool_arguments_mode: str = mode if mode in ("cumulative", "delta") else "cumulative"

    def update(self, **options: Any) -> None:
        """Apply startup overrides from the launcher (None values are ignored)."""
        for key, value in options.items():
            if value is None:
                continue
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    def upstream_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/v1/chat/completions"


settings = Settings()
