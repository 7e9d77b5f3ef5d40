from typing import List, Literal, Optional, Union, Dict, Any
from pydantic import BaseModel, ConfigDict, Field


# Anthropic v1/messages schema (only the parts the proxy translates)


class MessageInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    # Either a plain string or an array of typed blocks (text / tool_use / tool_result)
    content: Optional[Union[str, List[Dict[str, Any]]]] = None


class ToolDefinition(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class MessagesRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    max_tokens: Optional[int] = None
    messages: List[MessageInput] = Field(default_factory=list)
    system: Optional[Union[str, List[Dict[str, Any]]]] = None
    tools: Optional[List[ToolDefinition]] = None
    # Kept loose: clients send either a boolean or {"type": "enabled", ...}
    thinking: Any = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    # Only a literal boolean true enables streaming; see transform.anthropic_to_openai_payload
    stream: Any = None


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    model: str
    content: List[Union[TextBlock, ToolUseBlock]] = Field(default_factory=list)
    stop_reason: Optional[Literal["end_turn", "max_tokens", "stop_sequence", "tool_use"]] = None
    stop_sequence: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)


# Streaming event payloads (subset)


class MessageStartEvent(BaseModel):
    type: Literal["message_start"] = "message_start"
    message: MessageResponse


class PingEvent(BaseModel):
    type: Literal["ping"] = "ping"


class MessageStopEvent(BaseModel):
    type: Literal["message_stop"] = "message_stop"


class ErrorResponse(BaseModel):
    error: str
