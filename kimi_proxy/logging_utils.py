from __future__ import annotations

import json
import sys
from typing import Any, Dict

from .config import settings


def debug(*args: Any) -> None:
    if not settings.debug:
        return
    print("[proxy]", *args, file=sys.stderr)


def log_error(*args: Any) -> None:
    print("[proxy]", *args, file=sys.stderr)


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {
        k: ("<redacted>" if k.lower() in ("authorization", "x-api-key") else v)
        for k, v in headers.items()
    }


def dump(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False)
    except Exception:
        return repr(obj)
