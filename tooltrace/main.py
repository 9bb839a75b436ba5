from __future__ import annotations

import json
import time
import traceback
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI, Header, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from . import console
from .config import settings
from .errors import UpstreamError
from .observer import ConsoleObserver
from .recorder import ToolDetailRecorder
from .relay import StreamRelay
from .request_log import RequestLogs
from .schemas.openai import ChatRequest, ErrorResponse, FunctionCall, StreamChunk, ToolCallRecord


app = FastAPI(title="Tool-trace chat-completions proxy")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
)

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
            # http2 extras not installed
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


def _auth_headers(authorization: str | None = None) -> Dict[str, str]:
    # Configured key wins; otherwise forward whatever the client authenticated with
    token = settings.upstream_api_key or authorization
    if not token:
        return {}
    if token.lower().startswith("bearer "):
        return {"Authorization": token}
    return {"Authorization": f"Bearer {token}"}


def _dumps(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False, indent=2)
    except Exception:
        return repr(obj)


def _error_response(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content=ErrorResponse(error=message).model_dump())


def _record_response_tool_calls(data: Any, recorder: ToolDetailRecorder) -> None:
    """Record tool calls found in a non-stream completion. Results are never known here."""
    try:
        choice = StreamChunk.model_validate(data).first_choice()
    except ValidationError:
        return
    message = choice.message if choice is not None else None
    if message is None:
        return
    records = []
    for tc in message.tool_calls or []:
        console.info(f"tool call in non-stream response: {_dumps(tc.model_dump())}")
        fn = tc.function
        records.append(ToolCallRecord(
            id=tc.id or "",
            type=tc.type or "function",
            function=FunctionCall(name=(fn.name if fn else None) or "", arguments=(fn.arguments if fn else None) or ""),
        ))
    if message.function_call:
        console.info(f"function call in non-stream response: {_dumps(message.function_call)}")
        fc = message.function_call
        records.append(ToolCallRecord(
            id=f"function_call_{int(time.time() * 1000)}",
            type="function",
            function=FunctionCall(name=str(fc.get("name") or ""), arguments=str(fc.get("arguments") or "")),
        ))
    for record in records:
        try:
            recorder.append(record)
        except OSError as e:
            console.error(f"writing tool call detail failed: {e}")


async def _complete(logs: RequestLogs, payload: Dict[str, Any], headers: Dict[str, str], recorder: ToolDetailRecorder) -> Response:
    client = _get_httpx_client()
    resp = await client.post(
        settings.chat_completions_url(),
        json=payload,
        headers=headers,
        timeout=httpx.Timeout(settings.upstream_timeout),
    )
    if resp.status_code >= 400:
        raise UpstreamError(resp.status_code, resp.reason_phrase, resp.text)
    data = resp.json()
    console.debug(f"upstream response: {_dumps(data)}")
    _record_response_tool_calls(data, recorder)
    logs.write_response(data)
    # Upstream bytes go back untouched
    return Response(content=resp.content, media_type="application/json")


async def _stream(
    request: Request,
    logs: RequestLogs,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    recorder: ToolDetailRecorder,
) -> Response:
    client = _get_httpx_client()
    upstream_req = client.build_request(
        "POST",
        settings.chat_completions_url(),
        json=payload,
        headers={**headers, "Accept": "text/event-stream"},
        timeout=None,
    )
    upstream = await client.send(upstream_req, stream=True)
    if upstream.status_code >= 400:
        try:
            body = (await upstream.aread()).decode("utf-8", errors="ignore")
        finally:
            await upstream.aclose()
        raise UpstreamError(upstream.status_code, upstream.reason_phrase, body)

    try:
        logs.start_response_stream()
    except BaseException:
        await upstream.aclose()
        raise
    console.info(f"#{logs.number} receiving upstream stream")
    relay = StreamRelay(recorder, ConsoleObserver(logs.number), logs)

    async def body() -> AsyncIterator[bytes]:
        try:
            async with aclosing(relay.relay(upstream.aiter_bytes(), request.is_disconnected)) as chunks:
                async for chunk in chunks:
                    yield chunk
        finally:
            await upstream.aclose()

    return StreamingResponse(
        body(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


def _proxy_failure(logs: RequestLogs, exc: Exception) -> JSONResponse:
    message = str(exc) or "Internal server error"
    console.error(f"#{logs.number} proxy request failed: {message}")
    try:
        logs.append_error(message, traceback.format_exc())
    except OSError as e:
        console.error(f"writing error log failed: {e}")
    return _error_response(500, message)


@app.post("/chat/completions")
async def chat_completions(
    request: Request,
    authorization: str | None = Header(default=None, alias="authorization"),
):
    try:
        body = await request.json()
    except Exception:
        return _error_response(400, "Invalid JSON body")
    if not isinstance(body, dict):
        return _error_response(400, "Request body must be a JSON object")
    parsed = ChatRequest.model_validate(body)
    payload = {**body, "model": settings.upstream_model}

    try:
        logs = RequestLogs.allocate(settings.log_dir)
        console.info(f"handling request #{logs.number}, logs: {logs.names()}")
        console.debug(f"inbound request: {_dumps(body)}")
        logs.write_request(body)
        console.debug(f"upstream request: {_dumps(payload)}")
        logs.write_upstream_request(payload)
    except OSError as e:
        console.error(f"request logging failed: {e}")
        return _error_response(500, f"Request logging failed: {e}")

    headers = _auth_headers(authorization)
    recorder = ToolDetailRecorder(settings.tool_detail_file)
    try:
        if not parsed.wants_stream:
            return await _complete(logs, payload, headers, recorder)
        return await _stream(request, logs, payload, headers, recorder)
    except UpstreamError as e:
        try:
            logs.write_response({"error": str(e)})
        except OSError as log_err:
            console.error(f"writing error log failed: {log_err}")
        return _proxy_failure(logs, e)
    except (httpx.HTTPError, ValueError, OSError) as e:
        return _proxy_failure(logs, e)


@app.get("/")
async def root():
    return {"ok": True, "upstream": settings.upstream_base_url}


@app.on_event("startup")
async def _startup_client():
    # Initialize shared HTTP client eagerly to establish pools
    _ = _get_httpx_client()
    return None


@app.on_event("shutdown")
async def _shutdown_close_client():
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        try:
            await _HTTPX_CLIENT.aclose()
        except Exception:
            ...
        _HTTPX_CLIENT = None
