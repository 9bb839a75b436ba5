import json
from contextlib import aclosing

import httpx
import pytest

from tooltrace.relay import StreamRelay
from tooltrace.request_log import RequestLogs
from tooltrace.tool_calls import INCOMPLETE_RESULT


class _ListSink:
    def __init__(self):
        self.records = []

    def append(self, record):
        self.records.append(record.model_copy(deep=True))


def _sse(obj) -> bytes:
    return f"data: {json.dumps(obj)}\n\n".encode("utf-8")


def _delta_chunk(index, call_id=None, name=None, arguments=None) -> dict:
    tc = {"index": index, "function": {}}
    if call_id:
        tc["id"] = call_id
        tc["type"] = "function"
    if name is not None:
        tc["function"]["name"] = name
    if arguments is not None:
        tc["function"]["arguments"] = arguments
    return {"choices": [{"index": 0, "delta": {"tool_calls": [tc]}, "finish_reason": None}]}


def _tool_result(call_id, content) -> dict:
    return {"choices": [{"index": 0, "message": {"role": "tool", "tool_call_id": call_id, "content": content}}]}


async def _agen(chunks):
    for c in chunks:
        yield c


async def _collect(relay, chunks, **kwargs):
    return [c async for c in relay.relay(_agen(chunks), **kwargs)]


@pytest.mark.asyncio
async def test_relay_forwards_every_chunk_unchanged():
    chunks = [
        _sse(_delta_chunk(0, "call_1", "read_file", '{"pa')),
        b"data: {not json\n",
        b"\xff\xfe garbage without newline",
        _sse(_delta_chunk(0, arguments='th": "a"}'))[:10],
        _sse(_delta_chunk(0, arguments='th": "a"}'))[10:],
        b"data: [DONE]\n\n",
    ]
    relay = StreamRelay(_ListSink())
    out = await _collect(relay, chunks)
    assert out == chunks
    assert b"".join(out) == b"".join(chunks)


@pytest.mark.asyncio
async def test_relay_reassembles_arguments_split_across_chunks():
    sink = _ListSink()
    whole = (
        _sse(_delta_chunk(0, "call_1", "read_file", '{"pa'))
        + _sse(_delta_chunk(0, arguments='th": "a.txt"}'))
        + _sse(_tool_result("call_1", "hello"))
        + b"data: [DONE]\n\n"
    )
    # Cut at arbitrary byte offsets, including inside JSON payloads
    chunks = [whole[i:i + 7] for i in range(0, len(whole), 7)]
    relay = StreamRelay(sink)
    await _collect(relay, chunks)

    assert len(sink.records) == 1
    rec = sink.records[0]
    assert rec.function.name == "read_file"
    assert rec.function.arguments == '{"path": "a.txt"}'
    assert rec.result == "hello"
    assert relay.decoder.skipped_lines == 0
    assert relay.saw_done is True


@pytest.mark.asyncio
async def test_malformed_line_does_not_stop_the_rest_of_the_chunk():
    sink = _ListSink()
    chunks = [
        _sse(_delta_chunk(0, "call_1", "ls", "{}")),
        b"data: {not json\n" + _sse(_tool_result("call_1", "ok")),
    ]
    relay = StreamRelay(sink)
    out = await _collect(relay, chunks)

    assert out == chunks
    assert relay.decoder.skipped_lines == 1
    assert [(r.id, r.result) for r in sink.records] == [("call_1", "ok")]


@pytest.mark.asyncio
async def test_open_calls_are_drained_at_stream_end():
    sink = _ListSink()
    chunks = [
        _sse(_delta_chunk(0, "call_y", "slow", '{"n": 1}')),
        _sse({"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]}),
        b"data: [DONE]\n\n",
    ]
    relay = StreamRelay(sink)
    await _collect(relay, chunks)

    assert [(r.id, r.result) for r in sink.records] == [("call_y", INCOMPLETE_RESULT)]
    assert len(relay.accumulator) == 0


@pytest.mark.asyncio
async def test_unterminated_last_line_is_processed_at_end():
    sink = _ListSink()
    chunks = [
        _sse(_delta_chunk(0, "call_1", "f", "{}")),
        ("data: " + json.dumps(_tool_result("call_1", "late"))).encode("utf-8"),
    ]
    relay = StreamRelay(sink)
    await _collect(relay, chunks)
    assert [(r.id, r.result) for r in sink.records] == [("call_1", "late")]


@pytest.mark.asyncio
async def test_each_relay_starts_with_an_empty_table():
    sink = _ListSink()
    first = StreamRelay(sink)
    await _collect(first, [_sse(_delta_chunk(0, "call_1", "f", "abc"))])
    second = StreamRelay(sink)
    assert len(second.accumulator) == 0
    await _collect(second, [_sse(_delta_chunk(0, "call_1", arguments="xyz"))])

    assert [(r.id, r.function.name, r.function.arguments) for r in sink.records] == [
        ("call_1", "f", "abc"),
        ("call_1", "", "xyz"),
    ]


@pytest.mark.asyncio
async def test_upstream_failure_is_logged_and_propagated(tmp_path):
    logs = RequestLogs(str(tmp_path), 1)
    logs.start_response_stream()
    sink = _ListSink()
    first = _sse(_delta_chunk(0, "call_1", "f", "{"))

    async def failing():
        yield first
        raise httpx.ReadError("connection reset")

    relay = StreamRelay(sink, response_log=logs)
    received = []
    with pytest.raises(httpx.ReadError):
        async for chunk in relay.relay(failing()):
            received.append(chunk)

    assert received == [first]
    assert isinstance(relay.failed, httpx.ReadError)
    # No draining on this path
    assert sink.records == []
    assert "call_1" in relay.accumulator
    logged = (tmp_path / "response-1.log").read_bytes()
    assert logged.startswith(first)
    assert b"connection reset" in logged[len(first):]


@pytest.mark.asyncio
async def test_client_disconnect_stops_relay_and_drains(tmp_path):
    logs = RequestLogs(str(tmp_path), 2)
    logs.start_response_stream()
    sink = _ListSink()
    chunks = [
        _sse(_delta_chunk(0, "call_1", "f", "{}")),
        _sse(_delta_chunk(0, arguments="more")),
        b"data: [DONE]\n\n",
    ]
    checks = []

    async def is_disconnected():
        checks.append(1)
        return len(checks) > 1

    relay = StreamRelay(sink, response_log=logs)
    out = await _collect(relay, chunks, is_disconnected=is_disconnected)

    assert out == chunks[:1]
    assert relay.disconnected is True
    # The chunk received when the disconnect was noticed is still logged and decoded
    assert (tmp_path / "response-2.log").read_bytes() == chunks[0] + chunks[1]
    assert [(r.id, r.function.arguments, r.result) for r in sink.records] == [("call_1", "{}more", INCOMPLETE_RESULT)]


@pytest.mark.asyncio
async def test_closing_an_abandoned_relay_drains_immediately():
    sink = _ListSink()
    chunks = [_sse(_delta_chunk(0, "call_1", "f", "{}")), b"data: [DONE]\n\n"]
    relay = StreamRelay(sink)

    async with aclosing(relay.relay(_agen(chunks))) as stream:
        async for chunk in stream:
            assert chunk == chunks[0]
            break
        assert sink.records == []

    assert [(r.id, r.result) for r in sink.records] == [("call_1", INCOMPLETE_RESULT)]
    assert len(relay.accumulator) == 0


@pytest.mark.asyncio
async def test_raw_chunks_are_appended_to_response_log(tmp_path):
    logs = RequestLogs(str(tmp_path), 5)
    logs.start_response_stream()
    chunks = [b"data: {not json\n", _sse({"choices": []}), b"data: [DONE]\n\n"]
    relay = StreamRelay(_ListSink(), response_log=logs)
    await _collect(relay, chunks)
    assert (tmp_path / "response-5.log").read_bytes() == b"".join(chunks)


@pytest.mark.asyncio
async def test_recording_failure_does_not_affect_forwarding():
    class _Broken:
        def append(self, record):
            raise OSError("read-only")

    chunks = [_sse(_delta_chunk(0, "call_1", "f", "{}")), _sse(_tool_result("call_1", "r"))]
    relay = StreamRelay(_Broken())
    out = await _collect(relay, chunks)
    assert out == chunks
    assert relay.finalizer.emitted == 0
