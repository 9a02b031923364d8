import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from src import token_counter  # noqa: E402
from src.config import Settings  # noqa: E402
from src.rate_limit import RateLimiter, RateLimitExceeded  # noqa: E402


class _WordEncoding:
    def encode(self, text):
        return text.split()


def test_message_tokens_include_framing(monkeypatch):
    monkeypatch.setattr(token_counter, "_get_encoding", lambda *args: _WordEncoding())

    messages = [{"role": "user", "content": "hello there world"}]

    # 3 (framing) + 1 (role) + 3 (content) + 3 (reply priming)
    assert token_counter.count_message_tokens(messages) == 10
    assert token_counter.count_message_tokens([]) == 0


def test_request_tokens_count_tools_and_multipart_content(monkeypatch):
    monkeypatch.setattr(token_counter, "_get_encoding", lambda *args: _WordEncoding())

    request = {
        "messages": [{
            "role": "user",
            "content": [
                {"type": "text", "text": "one two"},
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
            ],
        }],
    }
    without_tools = token_counter.count_openai_request_tokens(request)
    request["tools"] = [{"type": "function", "function": {"name": "f", "parameters": {}}}]
    with_tools = token_counter.count_openai_request_tokens(request)

    assert without_tools == 3 + 1 + 2 + 3
    assert with_tools > without_tools


def test_rate_limiter_disabled_by_default():
    limiter = RateLimiter(None)

    async def run():
        for _ in range(3):
            await limiter.acquire()

    asyncio.run(run())


def test_rate_limiter_rejects_early_calls():
    limiter = RateLimiter(60)

    async def run():
        await limiter.acquire()
        await limiter.acquire()

    with pytest.raises(RateLimitExceeded) as excinfo:
        asyncio.run(run())

    assert 0 < excinfo.value.retry_after <= 60


def test_rate_limiter_can_wait_instead():
    limiter = RateLimiter(0.01, wait=True)

    async def run():
        await limiter.acquire()
        await limiter.acquire()

    asyncio.run(run())


def test_model_aliases_can_be_overridden():
    config = Settings(MODEL_ALIASES='{"gemini-pro": "gpt-4o"}', API_KEYS='["k1", "k2"]')

    assert config.resolve_model("gemini-pro") == "gpt-4o"
    assert config.resolve_model("gemini-2.5-flash") == "gemini-2.0-flash-001"
    assert config.resolve_model("unmapped") == "unmapped"
    assert config.validate_api_key("k2")
    assert not config.validate_api_key("sk-test-key")
