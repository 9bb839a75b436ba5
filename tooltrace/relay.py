"""Pass-through relay of an upstream SSE stream with tool-call extraction on the side."""

from __future__ import annotations

from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Optional

from .observer import StreamObserver
from .request_log import RequestLogs
from .sse import DONE, EventDecoder, FrameSplitter
from .tool_calls import CallFinalizer, RecordSink, ToolCallAccumulator


class StreamRelay:
    """Forwards upstream chunks unchanged while feeding a copy to the decoder.

    Each instance serves exactly one upstream stream and owns its own
    tool-call table. Nothing done with the copy can alter or stop the
    forwarded bytes; only an upstream failure ends the relay early.
    """

    def __init__(
        self,
        sink: RecordSink,
        observer: Optional[StreamObserver] = None,
        response_log: Optional[RequestLogs] = None,
    ) -> None:
        self.observer = observer or StreamObserver()
        self.response_log = response_log
        self.splitter = FrameSplitter()
        self.decoder = EventDecoder(self.observer)
        self.finalizer = CallFinalizer(sink, self.observer)
        self.accumulator = ToolCallAccumulator(self.finalizer, self.observer)
        self.saw_done = False
        self.disconnected = False
        self.failed: Optional[BaseException] = None
        self._finished = False

    def _handle_line(self, line: str) -> None:
        event = self.decoder.decode(line)
        if event is None:
            return
        if event is DONE:
            self.saw_done = True
            return
        self.accumulator.observe_chunk(event)

    def _observe(self, chunk: bytes) -> None:
        if self.response_log is not None:
            try:
                self.response_log.append_response_bytes(chunk)
            except Exception as e:
                self.observer.processing_error(e)
        try:
            lines = self.splitter.feed(chunk)
        except Exception as e:
            self.observer.processing_error(e)
            return
        for line in lines:
            try:
                self._handle_line(line)
            except Exception as e:
                self.observer.processing_error(e)

    def _upstream_failed(self, exc: BaseException) -> None:
        self.failed = exc
        self.observer.stream_error(exc)
        if self.response_log is not None:
            try:
                self.response_log.append_error(f"{type(exc).__name__}: {exc}")
            except Exception as e:
                self.observer.processing_error(e)

    def finish(self) -> None:
        """End-of-stream handling: flush the held line, then drain open calls."""
        if self._finished:
            return
        self._finished = True
        for line in self.splitter.flush():
            try:
                self._handle_line(line)
            except Exception as e:
                self.observer.processing_error(e)
        self.accumulator.drain()
        self.observer.stream_finished(self.decoder.decoded_events, self.decoder.skipped_lines, self.saw_done)

    async def relay(
        self,
        chunks: AsyncIterable[bytes],
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[bytes]:
        iterator = chunks.__aiter__()
        try:
            while True:
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    self._upstream_failed(e)
                    raise
                # Every received chunk is logged and decoded, even one the client will never get
                self._observe(chunk)
                if is_disconnected is not None and await is_disconnected():
                    self.disconnected = True
                    self.observer.client_disconnected()
                    break
                yield chunk
        finally:
            # No draining after an upstream failure; a cancelled or abandoned relay still drains
            if self.failed is None:
                self.finish()
