from __future__ import annotations

import json
import os
import threading
from typing import Any, Dict, List

from . import console
from .schemas.openai import ToolCallRecord, ToolDetailEntry

# The detail file is shared by every request in the process
_DETAIL_LOCK = threading.Lock()


def to_entry(record: ToolCallRecord) -> ToolDetailEntry:
    result = record.result or ""
    return ToolDetailEntry(
        timestamp=console.timestamp(),
        toolName=record.function.name or "unknown",
        arguments=record.function.arguments or "{}",
        result=result,
        resultCharCount=len(result),
        id=record.id or "",
    )


class ToolDetailRecorder:
    """Appends finalized tool calls to a JSON array file, in finalization order."""

    def __init__(self, path: str) -> None:
        self.path = path

    def _load(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            console.error(f"could not read {self.path}, starting a new list: {e}")
            return []
        if not isinstance(data, list):
            console.error(f"{self.path} does not hold a list, starting a new list")
            return []
        return data

    def append(self, record: ToolCallRecord) -> None:
        entry = to_entry(record)
        with _DETAIL_LOCK:
            entries = self._load()
            entries.append(entry.model_dump())
            parent = os.path.dirname(self.path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(entries, f, ensure_ascii=False, indent=2)

    def entries(self) -> List[Dict[str, Any]]:
        with _DETAIL_LOCK:
            return self._load()
