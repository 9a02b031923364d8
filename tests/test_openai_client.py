import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from src import openai_client  # noqa: E402
from src.config import settings  # noqa: E402
from src.openai_client import (  # noqa: E402
    UnexpectedStreamError,
    UpstreamHTTPError,
    build_headers,
    create_chat_completions,
    get_chat_completions_url,
    open_chat_completion_stream,
)


def _use_transport(monkeypatch, handler):
    """让模块内创建的 AsyncClient 使用 MockTransport"""
    real_client = httpx.AsyncClient
    seen = []

    def recording_handler(request):
        seen.append(request)
        return handler(request)

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(recording_handler), **kwargs)

    monkeypatch.setattr(openai_client.httpx, "AsyncClient", factory)
    return seen


def test_chat_completions_url(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_base", "https://backend.example/v1/")

    assert get_chat_completions_url() == "https://backend.example/v1/chat/completions"


def test_headers_mark_agent_initiated_requests(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", "backend-secret")

    user_turn = build_headers({"messages": [{"role": "user", "content": "hi"}]}, stream=False)
    tool_turn = build_headers({"messages": [{"role": "tool", "tool_call_id": "c", "content": "{}"}]}, stream=True)

    assert user_turn["Authorization"] == "Bearer backend-secret"
    assert user_turn["Content-Type"] == "application/json"
    assert user_turn["Accept"] == "application/json"
    assert user_turn["X-Initiator"] == "user"
    assert tool_turn["Accept"] == "text/event-stream"
    assert tool_turn["X-Initiator"] == "agent"
    assert "Copilot-Vision-Request" not in user_turn


def test_headers_flag_image_requests(monkeypatch):
    payload = {"messages": [{
        "role": "user",
        "content": [{"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}],
    }]}

    assert build_headers(payload, stream=False)["Copilot-Vision-Request"] == "true"

    monkeypatch.setattr(settings, "vision_enabled_header", False)
    assert "Copilot-Vision-Request" not in build_headers(payload, stream=False)


def test_create_chat_completions_returns_json(monkeypatch):
    seen = _use_transport(
        monkeypatch,
        lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}),
    )

    result = asyncio.run(create_chat_completions({"model": "m", "messages": []}))

    assert result == {"choices": [{"message": {"content": "ok"}}]}
    assert seen[0].url.path.endswith("/chat/completions")
    assert json.loads(seen[0].content) == {"model": "m", "messages": []}


def test_create_chat_completions_raises_upstream_error(monkeypatch):
    _use_transport(monkeypatch, lambda request: httpx.Response(429, text="quota exceeded"))

    with pytest.raises(UpstreamHTTPError) as excinfo:
        asyncio.run(create_chat_completions({"model": "m", "messages": []}))

    assert excinfo.value.status_code == 429
    assert excinfo.value.body == "quota exceeded"


def test_create_chat_completions_rejects_event_stream(monkeypatch):
    _use_transport(
        monkeypatch,
        lambda request: httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=b"data: {}\n\n"
        ),
    )

    with pytest.raises(UnexpectedStreamError, match="Unexpected streaming response"):
        asyncio.run(create_chat_completions({"model": "m", "messages": []}))


def test_open_stream_yields_lines(monkeypatch):
    body = b'data: {"choices": []}\n\ndata: [DONE]\n\n'
    _use_transport(
        monkeypatch,
        lambda request: httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body),
    )

    async def run():
        upstream = await open_chat_completion_stream({"model": "m", "messages": [], "stream": True})
        try:
            assert upstream.is_event_stream
            return [line async for line in upstream.aiter_lines() if line]
        finally:
            await upstream.aclose()

    assert asyncio.run(run()) == ['data: {"choices": []}', "data: [DONE]"]


def test_open_stream_checks_status_before_streaming(monkeypatch):
    _use_transport(monkeypatch, lambda request: httpx.Response(401, text="bad token"))

    with pytest.raises(UpstreamHTTPError) as excinfo:
        asyncio.run(open_chat_completion_stream({"model": "m", "messages": [], "stream": True}))

    assert excinfo.value.status_code == 401


def test_open_stream_exposes_plain_json(monkeypatch):
    _use_transport(monkeypatch, lambda request: httpx.Response(200, json={"choices": []}))

    async def run():
        upstream = await open_chat_completion_stream({"model": "m", "messages": [], "stream": True})
        try:
            assert not upstream.is_event_stream
            return await upstream.json()
        finally:
            await upstream.aclose()

    assert asyncio.run(run()) == {"choices": []}
