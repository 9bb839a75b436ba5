from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# Minimal OpenAI chat-completions schema: only the fields the proxy reads.
# Everything else passes through untouched (extra="allow").


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    # Replaced before forwarding, so any value is accepted
    model: Optional[Any] = None
    stream: Optional[Any] = False

    @property
    def wants_stream(self) -> bool:
        return bool(self.stream)


class FunctionFragment(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    arguments: Optional[str] = None


class ToolCallFragment(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: Optional[int] = None
    id: Optional[str] = None
    type: Optional[str] = None
    function: Optional[FunctionFragment] = None


class ChunkMessage(BaseModel):
    """Either ``choices[i].delta`` or ``choices[i].message``."""

    model_config = ConfigDict(extra="allow")

    role: Optional[str] = None
    content: Optional[Any] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[ToolCallFragment]] = None
    # Legacy single function call
    function_call: Optional[Dict[str, Any]] = None


class ChunkChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    delta: Optional[ChunkMessage] = None
    message: Optional[ChunkMessage] = None
    finish_reason: Optional[str] = None


class StreamChunk(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    model: Optional[str] = None
    choices: List[ChunkChoice] = Field(default_factory=list)

    def first_choice(self) -> Optional[ChunkChoice]:
        return self.choices[0] if self.choices else None


class FunctionCall(BaseModel):
    name: str = ""
    arguments: str = ""


class ToolCallRecord(BaseModel):
    id: str
    type: str = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)
    result: str = ""


class ToolDetailEntry(BaseModel):
    """One entry of the tool-detail file. Field names are part of the file format."""

    timestamp: str
    toolName: str
    arguments: str
    result: str
    resultCharCount: int
    id: str


class ErrorResponse(BaseModel):
    error: str
