from __future__ import annotations

from typing import Any, Optional

import uvicorn

from .config import settings
from .logging_utils import debug


def start(port: Optional[int] = None, **options: Any) -> None:
    """Run the proxy until interrupted.

    ``options`` override configuration supplied by the launcher, e.g.
    ``api_key``, ``base_url``, ``reasoning_model``, ``completion_model``,
    ``max_tokens`` or ``debug``.
    """
    settings.update(**options)
    if port is not None:
        settings.port = int(port)
    debug(f"listening on 127.0.0.1:{settings.port}, backend {settings.base_url}")
    uvicorn.run(
        "kimi_proxy.main:app",
        host="127.0.0.1",
        port=settings.port,
        log_level="debug" if settings.debug else "warning",
    )
