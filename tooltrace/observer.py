from __future__ import annotations

import json
from typing import Any, Dict, List

from . import console
from .schemas.openai import ToolCallFragment, ToolCallRecord


class StreamObserver:
    """Receives notices from the stream core. The base class ignores all of them."""

    def skipped_line(self, line: str, reason: str) -> None: ...

    def tool_call_delta(self, fragments: List[ToolCallFragment]) -> None: ...

    def tool_calls_message(self, fragments: List[ToolCallFragment]) -> None: ...

    def finish_reason(self, reason: str) -> None: ...

    def function_call(self, payload: Dict[str, Any], source: str) -> None: ...

    def orphan_tool_result(self, tool_call_id: str) -> None: ...

    def record_emitted(self, record: ToolCallRecord, complete: bool) -> None: ...

    def draining(self, open_count: int) -> None: ...

    def processing_error(self, exc: BaseException) -> None: ...

    def stream_error(self, exc: BaseException) -> None: ...

    def client_disconnected(self) -> None: ...

    def stream_finished(self, decoded: int, skipped: int, saw_done: bool) -> None: ...


def _dump(obj: Any) -> str:
    try:
        if isinstance(obj, list):
            obj = [getattr(o, "model_dump", lambda: o)() for o in obj]
        return json.dumps(obj, ensure_ascii=False)
    except Exception:
        return repr(obj)


class ConsoleObserver(StreamObserver):
    """Writes notices to the proxy console; payload dumps only in debug mode."""

    def __init__(self, request_no: int) -> None:
        self.request_no = request_no

    def _tag(self, message: str) -> str:
        return f"#{self.request_no} {message}"

    def skipped_line(self, line: str, reason: str) -> None:
        console.debug(self._tag(f"skipped stream line ({reason}): {line[:100]}"))

    def tool_call_delta(self, fragments: List[ToolCallFragment]) -> None:
        console.debug(self._tag(f"tool call delta: {_dump(fragments)}"))

    def tool_calls_message(self, fragments: List[ToolCallFragment]) -> None:
        console.info(self._tag(f"tool calls in message: {_dump(fragments)}"))

    def finish_reason(self, reason: str) -> None:
        if reason == "tool_calls":
            console.info(self._tag("tool call turn finished, waiting for results"))

    def function_call(self, payload: Dict[str, Any], source: str) -> None:
        console.info(self._tag(f"legacy function_call in {source}: {_dump(payload)}"))

    def orphan_tool_result(self, tool_call_id: str) -> None:
        console.debug(self._tag(f"tool result for unknown call {tool_call_id} dropped"))

    def record_emitted(self, record: ToolCallRecord, complete: bool) -> None:
        state = "complete" if complete else "incomplete"
        console.info(self._tag(f"tool call {record.id} ({record.function.name or 'unknown'}) recorded, {state}"))

    def draining(self, open_count: int) -> None:
        console.info(self._tag(f"finalizing {open_count} unfinished tool call(s)"))

    def processing_error(self, exc: BaseException) -> None:
        console.error(self._tag(f"stream processing error (relay continues): {type(exc).__name__}: {exc}"))

    def stream_error(self, exc: BaseException) -> None:
        console.error(self._tag(f"upstream stream error: {type(exc).__name__}: {exc}"))

    def client_disconnected(self) -> None:
        console.info(self._tag("client disconnected during streaming"))

    def stream_finished(self, decoded: int, skipped: int, saw_done: bool) -> None:
        console.info(self._tag(f"upstream stream ended (events={decoded}, skipped={skipped}, done={saw_done})"))
