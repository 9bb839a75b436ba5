"""Reassembly of streamed tool calls and their hand-off to the recorder.

One :class:`ToolCallAccumulator` exists per upstream stream. Records are keyed
by call id and live in the table from their first sighting until they are
finalized, either by a tool-result message or by :meth:`drain` at stream end.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .observer import StreamObserver
from .schemas.openai import FunctionCall, StreamChunk, ToolCallFragment, ToolCallRecord

INCOMPLETE_RESULT = "[tool call incomplete: no result received]"


class RecordSink(Protocol):
    def append(self, record: ToolCallRecord) -> None: ...


class CallFinalizer:
    def __init__(self, sink: RecordSink, observer: Optional[StreamObserver] = None) -> None:
        self.sink = sink
        self.observer = observer or StreamObserver()
        self.emitted = 0

    def finalize(self, record: ToolCallRecord) -> None:
        self._emit(record, complete=True)

    def finalize_incomplete(self, record: ToolCallRecord) -> None:
        record.result = INCOMPLETE_RESULT
        self._emit(record, complete=False)

    def _emit(self, record: ToolCallRecord, complete: bool) -> None:
        try:
            self.sink.append(record)
        except Exception as e:
            # Recording must never break the relay
            self.observer.processing_error(e)
            return
        self.emitted += 1
        self.observer.record_emitted(record, complete)


def _result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    try:
        return json.dumps(content, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(content)


class ToolCallAccumulator:
    def __init__(self, finalizer: CallFinalizer, observer: Optional[StreamObserver] = None) -> None:
        self.finalizer = finalizer
        self.observer = observer or finalizer.observer
        self.table: Dict[str, ToolCallRecord] = {}
        # OpenAI sends the id only on a call's first fragment; later ones carry just the index
        self._ids_by_index: Dict[int, str] = {}

    def __len__(self) -> int:
        return len(self.table)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self.table

    def get(self, call_id: str) -> Optional[ToolCallRecord]:
        return self.table.get(call_id)

    def _resolve_id(self, fragment: ToolCallFragment) -> Optional[str]:
        if fragment.id:
            if fragment.index is not None:
                self._ids_by_index[fragment.index] = fragment.id
            return fragment.id
        if fragment.index is not None:
            return self._ids_by_index.get(fragment.index)
        return None

    def observe_delta(self, fragment: ToolCallFragment) -> None:
        call_id = self._resolve_id(fragment)
        if not call_id:
            return
        record = self.table.get(call_id)
        if record is None:
            record = ToolCallRecord(id=call_id, type=fragment.type or "function")
            self.table[call_id] = record
        fn = fragment.function
        if fn is None:
            return
        if fn.name:
            record.function.name = fn.name
        if fn.arguments:
            record.function.arguments += fn.arguments

    def observe_complete_message(self, tool_calls: Iterable[ToolCallFragment]) -> None:
        for tc in tool_calls:
            if not tc.id:
                continue
            fn = tc.function
            self.table[tc.id] = ToolCallRecord(
                id=tc.id,
                type=tc.type or "function",
                function=FunctionCall(
                    name=(fn.name if fn else None) or "",
                    arguments=(fn.arguments if fn else None) or "",
                ),
            )
            if tc.index is not None:
                self._ids_by_index[tc.index] = tc.id

    def observe_tool_result(self, tool_call_id: str, content: Any) -> None:
        record = self.table.get(tool_call_id)
        if record is None:
            self.observer.orphan_tool_result(tool_call_id)
            return
        record.result = _result_text(content)
        self.finalizer.finalize(record)
        del self.table[tool_call_id]

    def observe_chunk(self, chunk: StreamChunk) -> None:
        choice = chunk.first_choice()
        if choice is None:
            return
        delta, message = choice.delta, choice.message
        if delta is not None and delta.tool_calls:
            for fragment in delta.tool_calls:
                self.observe_delta(fragment)
            self.observer.tool_call_delta(delta.tool_calls)
        if message is not None and message.tool_calls:
            self.observe_complete_message(message.tool_calls)
            self.observer.tool_calls_message(message.tool_calls)
        if choice.finish_reason:
            self.observer.finish_reason(choice.finish_reason)
        if delta is not None and delta.function_call:
            self.observer.function_call(delta.function_call, "delta")
        if message is not None and message.function_call:
            self.observer.function_call(message.function_call, "message")
        if message is not None and message.role == "tool" and message.tool_call_id:
            self.observe_tool_result(message.tool_call_id, message.content)

    def drain(self) -> List[ToolCallRecord]:
        """Finalize every open call as incomplete and empty the table."""
        drained = list(self.table.values())
        if drained:
            self.observer.draining(len(drained))
        try:
            for record in drained:
                self.finalizer.finalize_incomplete(record)
        finally:
            self.table.clear()
            self._ids_by_index.clear()
        return drained
