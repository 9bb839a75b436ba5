"""Line splitting and ``data:`` decoding for OpenAI-style SSE streams."""

from __future__ import annotations

import json
from typing import List, Optional, Union

from pydantic import ValidationError

from .observer import StreamObserver
from .schemas.openai import StreamChunk

DATA_PREFIX = "data: "


class _Done:
    def __repr__(self) -> str:
        return "DONE"


# Returned by EventDecoder.decode for the ``data: [DONE]`` terminator
DONE = _Done()


class FrameSplitter:
    """Split stream chunks into lines.

    A line cut by a chunk boundary is held back and completed by the next
    chunk. Buffering happens on bytes, so a UTF-8 sequence split across chunks
    is decoded only once whole.
    """

    def __init__(self) -> None:
        self._buf = b""

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buf += chunk
        if b"\n" not in self._buf:
            return []
        *complete, self._buf = self._buf.split(b"\n")
        return [self._decode(raw) for raw in complete]

    def flush(self) -> List[str]:
        """Return the held tail, if any. Called once at stream end."""
        if not self._buf:
            return []
        raw, self._buf = self._buf, b""
        return [self._decode(raw)]

    @property
    def pending(self) -> int:
        return len(self._buf)

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").rstrip("\r")


class EventDecoder:
    """Decode single SSE lines into :class:`StreamChunk` objects.

    Malformed payloads are skipped, never raised; ``skipped_lines`` counts them.
    """

    def __init__(self, observer: Optional[StreamObserver] = None) -> None:
        self.observer = observer or StreamObserver()
        self.decoded_events = 0
        self.skipped_lines = 0

    def decode(self, line: str) -> Union[StreamChunk, _Done, None]:
        if not line.startswith(DATA_PREFIX):
            return None
        payload = line[len(DATA_PREFIX):]
        if payload == "[DONE]":
            return DONE
        if not payload.strip():
            return None
        try:
            obj = json.loads(payload)
        except ValueError:
            self._skip(line, "invalid json")
            return None
        if not isinstance(obj, dict):
            self._skip(line, "not an object")
            return None
        try:
            chunk = StreamChunk.model_validate(obj)
        except ValidationError:
            self._skip(line, "unexpected chunk shape")
            return None
        self.decoded_events += 1
        return chunk

    def _skip(self, line: str, reason: str) -> None:
        self.skipped_lines += 1
        self.observer.skipped_line(line, reason)
