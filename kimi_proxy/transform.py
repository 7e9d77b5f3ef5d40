from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from .config import Settings, settings as default_settings
from .errors import UpstreamPayloadError
from .schema_sanitizer import remove_uri_format
from .schemas.anthropic import MessageResponse, TextBlock, ToolUseBlock, Usage

# Client-side meta tools the upstream cannot execute
EXCLUDED_TOOLS = frozenset({"BatchTool"})


def normalize_content(content: Any) -> Optional[str]:
    """Collapse Anthropic content into a plain string.

    Strings pass through; arrays are space-joined from their text-bearing blocks.
    Anything else yields None ("no content").
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for block in content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
            elif isinstance(block, str):
                parts.append(block)
        return " ".join(parts)
    return None


def thinking_enabled(thinking: Any) -> bool:
    if isinstance(thinking, dict):
        return bool(thinking) and thinking.get("type") != "disabled"
    return bool(thinking)


def _system_messages(system: Any) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    if isinstance(system, str):
        if system:
            out.append({"role": "system", "content": system})
        return out
    for entry in system or []:
        if not isinstance(entry, dict):
            continue
        normalized = normalize_content(entry.get("text") or entry.get("content"))
        if normalized:
            out.append({"role": "system", "content": normalized})
    return out


def _tool_call_entry(block: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": block.get("id") or f"call_{uuid.uuid4().hex}",
        "type": "function",
        "function": {
            "name": block.get("name", ""),
            "arguments": json_dumps_safe(block.get("input", {})),
        },
    }


def _tool_result_message(block: Dict[str, Any]) -> Dict[str, Any]:
    raw = block.get("text") or block.get("content")
    content = normalize_content(raw)
    return {
        "role": "tool",
        "content": content if content is not None else "",
        "tool_call_id": block.get("tool_use_id"),
    }


def convert_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Map Anthropic messages to OpenAI chat messages.

    tool_use blocks become ``tool_calls`` on the same message; tool_result blocks
    become separate ``role: tool`` messages placed right after it.
    """
    out: List[Dict[str, Any]] = []
    for msg in messages or []:
        content = msg.get("content")
        blocks = content if isinstance(content, list) else []
        blocks = [b for b in blocks if isinstance(b, dict)]

        tool_calls = [_tool_call_entry(b) for b in blocks if b.get("type") == "tool_use"]
        new_msg: Dict[str, Any] = {"role": msg.get("role")}
        normalized = normalize_content(content)
        if normalized:
            new_msg["content"] = normalized
        if tool_calls:
            new_msg["tool_calls"] = tool_calls
        if "content" in new_msg or "tool_calls" in new_msg:
            out.append(new_msg)

        for block in blocks:
            if block.get("type") == "tool_result":
                out.append(_tool_result_message(block))
    return out


def convert_tools(tools: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for tool in tools or []:
        if not isinstance(tool, dict) or tool.get("name") in EXCLUDED_TOOLS:
            continue
        out.append(
            {
                "type": "function",
                "function": {
                    "name": tool.get("name"),
                    "description": tool.get("description"),
                    "parameters": remove_uri_format(tool.get("input_schema") or {}),
                },
            }
        )
    return out


def anthropic_to_openai_payload(body: Dict[str, Any], settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Map an Anthropic v1/messages body to an OpenAI Chat Completions body."""
    cfg = settings or default_settings
    messages = _system_messages(body.get("system"))
    messages.extend(convert_messages(body.get("messages") or []))

    temperature = body.get("temperature")
    payload: Dict[str, Any] = {
        "model": cfg.reasoning_model if thinking_enabled(body.get("thinking")) else cfg.completion_model,
        "messages": messages,
        "max_tokens": cfg.max_tokens,
        "temperature": temperature if temperature is not None else 1,
        "stream": body.get("stream") is True,
    }
    if body.get("top_p") is not None:
        payload["top_p"] = body.get("top_p")
    if body.get("stop_sequences"):
        payload["stop"] = body.get("stop_sequences")

    tools = convert_tools(body.get("tools"))
    if tools:
        payload["tools"] = tools
    return payload


def map_finish_reason(fr: Optional[str]) -> str:
    if fr == "tool_calls":
        return "tool_use"
    if fr == "stop":
        return "end_turn"
    if fr == "length":
        return "max_tokens"
    return "end_turn"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:24]}"


def message_id_from_upstream(upstream_id: Any) -> str:
    if isinstance(upstream_id, str) and upstream_id.startswith("chatcmpl"):
        return "msg" + upstream_id[len("chatcmpl"):]
    return new_message_id()


def estimate_tokens(text: Optional[str]) -> int:
    """Rough word count used when upstream reports no usage. Not a token count."""
    if not text:
        return 0
    return len(text.split())


def upstream_error_message(data: Dict[str, Any]) -> Optional[str]:
    """Return the provider message when ``data`` carries an error object, else None."""
    err = data.get("error")
    if not err:
        return None
    if isinstance(err, dict):
        return str(err.get("message") or json_dumps_safe(err))
    return str(err)


def openai_to_anthropic_response(
    oai: Dict[str, Any],
    model: Optional[str] = None,
    messages: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Map a non-streaming OpenAI Chat Completions response to an Anthropic message.

    ``messages`` are the outbound chat messages, used only to estimate input
    tokens when upstream omits ``usage``.
    """
    err = upstream_error_message(oai)
    if err is not None:
        raise UpstreamPayloadError(err)
    choices = oai.get("choices") or []
    if not choices:
        raise UpstreamPayloadError("Upstream response contained no choices")

    choice = choices[0] or {}
    message = choice.get("message") or {}
    text = message.get("content") or ""
    if isinstance(text, list):
        text = normalize_content(text) or ""

    content: List[Any] = [TextBlock(text=str(text))]
    for tc in message.get("tool_calls") or []:
        fn = tc.get("function") or {}
        args = json_loads_safe(fn.get("arguments"))
        content.append(
            ToolUseBlock(
                id=tc.get("id") or f"call_{uuid.uuid4().hex}",
                name=fn.get("name") or "",
                input=args if isinstance(args, dict) else {},
            )
        )

    usage = oai.get("usage")
    if usage:
        token_usage = Usage(
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
        )
    else:
        token_usage = Usage(
            input_tokens=sum(estimate_tokens(normalize_content(m.get("content"))) for m in messages or []),
            output_tokens=estimate_tokens(str(text)),
        )

    return MessageResponse(
        id=message_id_from_upstream(oai.get("id")),
        model=model or oai.get("model") or "unknown-model",
        content=content,
        stop_reason=map_finish_reason(choice.get("finish_reason")),
        usage=token_usage,
    ).model_dump()


def json_dumps_safe(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False)
    except Exception:
        return "{}"


def json_loads_safe(s: Any) -> Any:
    try:
        if isinstance(s, str):
            return json.loads(s)
        return s if s is not None else {}
    except Exception:
        return {}
