from __future__ import annotations

from collections import deque
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import settings
from .connection import ConnectionGuard
from .errors import UpstreamHTTPError, UpstreamPayloadError
from .logging_utils import debug, dump, log_error, redact_headers
from .schemas.anthropic import ErrorResponse, MessagesRequest
from .streaming import StreamReframer
from .transform import anthropic_to_openai_payload, openai_to_anthropic_response


app = FastAPI(title="Kimi Code Proxy")

# Shared HTTP client with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def _get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # If http2 extras not installed, gracefully fall back to HTTP/1.1
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


_RECENT: deque = deque(maxlen=64)

_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def _upstream_headers() -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"
    return headers


def _error_response(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content=ErrorResponse(error=message).model_dump())


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


@app.post("/v1/messages")
async def messages(request: Request):
    _rec: Dict[str, Any] = {"phase": "start"}
    try:
        body = await request.json()
        parsed = MessagesRequest.model_validate(body)
    except Exception as e:
        _rec.update({"phase": "invalid_request", "message": str(e)})
        _RECENT.append(_rec)
        return _error_response(400, f"Invalid request body: {e}")

    oai_payload = anthropic_to_openai_payload(parsed.model_dump(exclude_none=True))
    _rec["model"] = oai_payload["model"]
    _rec["stream"] = oai_payload["stream"]
    debug("OpenAI payload:", dump(oai_payload))

    url = settings.upstream_url()
    headers = _upstream_headers()
    debug("upstream request:", dump({"url": url, "headers": redact_headers(headers)}))
    client = _get_httpx_client()

    if not oai_payload["stream"]:
        try:
            resp = await client.post(
                url,
                json=oai_payload,
                headers=headers,
                timeout=httpx.Timeout(settings.upstream_timeout),
            )
            if resp.status_code >= 400:
                raise UpstreamHTTPError(resp.status_code, resp.text)
            data = resp.json()
            debug("OpenAI response:", dump(data))
            result = openai_to_anthropic_response(
                data,
                model=oai_payload["model"],
                messages=oai_payload["messages"],
            )
        except UpstreamHTTPError as e:
            _rec.update({"phase": "non_stream_error", "upstream_status": e.status_code, "message": e.body})
            _RECENT.append(_rec)
            return _error_response(e.status_code, e.body)
        except Exception as e:
            log_error(f"non-stream request failed: {type(e).__name__}: {e}")
            _rec.update({"phase": "non_stream_exception", "message": str(e)})
            _RECENT.append(_rec)
            return _error_response(500, str(e))
        _rec["phase"] = "non_stream_ok"
        _RECENT.append(_rec)
        return JSONResponse(content=result)

    # Streaming path
    guard = ConnectionGuard()
    reframer = StreamReframer(oai_payload["model"], guard)
    try:
        # No read deadline: the model may pause for a long time between tokens.
        upstream = await client.send(
            client.build_request(
                "POST",
                url,
                json=oai_payload,
                headers={**headers, "Accept": "text/event-stream"},
                timeout=httpx.Timeout(settings.upstream_timeout, read=None),
            ),
            stream=True,
        )
    except Exception as e:
        log_error(f"upstream connection failed: {type(e).__name__}: {e}")
        _rec.update({"phase": "stream_connect_error", "message": str(e)})
        _RECENT.append(_rec)
        return _error_response(500, str(e))

    if upstream.status_code >= 400:
        try:
            await upstream.aread()
            error_body = upstream.text
        except Exception:
            error_body = f"Upstream returned HTTP {upstream.status_code} without body"
        finally:
            await upstream.aclose()
        _rec.update({"phase": "stream_error_status", "upstream_status": upstream.status_code, "message": error_body})
        _RECENT.append(_rec)
        return _error_response(upstream.status_code, error_body)

    chunks = upstream.aiter_bytes()

    # Hold the response back until the first event exists so that failures
    # before that point can still become an ordinary JSON error.
    try:
        while not guard.header_sent and not reframer.terminated:
            chunk = await _next_chunk(chunks)
            if chunk is None:
                reframer.flush()
                break
            reframer.feed(chunk)
    except Exception as e:
        await upstream.aclose()
        log_error(f"stream failed before first event: {type(e).__name__}: {e}")
        _rec.update({"phase": "stream_exception_before_start", "message": str(e)})
        _RECENT.append(_rec)
        return _error_response(500, str(e))

    if not guard.header_sent:
        # Upstream body ended without a single frame: answer with an empty message.
        reframer.finish()

    return StreamingResponse(
        _event_stream(request, upstream, chunks, reframer, guard, _rec),
        media_type="text/event-stream",
        headers=_STREAM_HEADERS,
    )


async def _event_stream(
    request: Request,
    upstream: httpx.Response,
    chunks: AsyncIterator[bytes],
    reframer: StreamReframer,
    guard: ConnectionGuard,
    _rec: Dict[str, Any],
) -> AsyncIterator[bytes]:
    try:
        for frame in guard.drain():
            yield frame
        while not reframer.terminated:
            if await guard.poll_disconnect(request):
                _rec["phase"] = "stream_client_disconnected"
                break
            chunk = await _next_chunk(chunks)
            if chunk is None:
                reframer.flush()
                if not reframer.terminated:
                    _rec["phase"] = "stream_eof_without_done"
            else:
                reframer.feed(chunk)
            frames: List[bytes] = guard.drain()
            for frame in frames:
                if guard.closed:
                    break
                yield frame
            if chunk is None:
                break
        if reframer.terminated and _rec["phase"] == "start":
            _rec["phase"] = "stream_ok"
    except UpstreamPayloadError as e:
        # No mid-stream error frame exists in the protocol; the stream just ends.
        log_error(f"upstream error mid-stream: {e}")
        _rec.update({"phase": "stream_upstream_error", "message": str(e)})
        # Frames translated from earlier lines of the failing chunk still go out.
        for frame in guard.drain():
            if guard.closed:
                break
            yield frame
    except Exception as e:
        log_error(f"stream exception: {type(e).__name__}: {e}")
        _rec.update({"phase": "stream_exception", "message": str(e), "exception_type": type(e).__name__})
    finally:
        if not guard.ended:
            guard.mark_closed()
        _RECENT.append(_rec)
        await upstream.aclose()


@app.get("/")
async def root():
    return {"ok": True, "backend": settings.base_url}


@app.get("/_debug/last")
async def debug_last():
    return _RECENT[-1] if _RECENT else {}


@app.on_event("shutdown")
async def _shutdown_close_client():
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        try:
            await _HTTPX_CLIENT.aclose()
        except Exception as e:
            debug("closing upstream client failed:", e)
        _HTTPX_CLIENT = None
