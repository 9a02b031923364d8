import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from src.config import settings


logger = logging.getLogger(__name__)


class UpstreamHTTPError(Exception):
    """后端返回非 2xx 状态码"""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Backend API error {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class UnexpectedStreamError(Exception):
    pass


def get_chat_completions_url() -> str:
    return f"{settings.openai_api_base.rstrip('/')}/chat/completions"


def has_image_content(payload: Dict[str, Any]) -> bool:
    for message in payload.get("messages") or []:
        content = message.get("content")
        if isinstance(content, list) and any(
            isinstance(part, dict) and part.get("type") == "image_url" for part in content
        ):
            return True
    return False


def build_headers(payload: Dict[str, Any], stream: bool) -> Dict[str, str]:
    """
    构造后端请求头：最后一条消息来自 assistant/tool 时标记为 agent 发起
    """
    messages = payload.get("messages") or []
    last_role = messages[-1].get("role") if messages else None

    headers = {
        "Authorization": f"Bearer {settings.openai_api_key}",
        "Content-Type": "application/json",
        "Accept": "text/event-stream" if stream else "application/json",
        "X-Initiator": "agent" if last_role in ("assistant", "tool") else "user",
    }
    if settings.vision_enabled_header and has_image_content(payload):
        headers["Copilot-Vision-Request"] = "true"
    return headers


def is_event_stream(response: httpx.Response) -> bool:
    return "text/event-stream" in response.headers.get("content-type", "")


async def _raise_for_status(response: httpx.Response) -> None:
    if 200 <= response.status_code < 300:
        return
    error_body = (await response.aread()).decode("utf-8", errors="ignore")
    logger.error(f"Backend API error {response.status_code}")
    logger.error(f"Error response: {error_body}")
    raise UpstreamHTTPError(response.status_code, error_body)


async def create_chat_completions(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    非流式调用后端 chat completions，返回 OpenAI 原生响应。
    """
    url = get_chat_completions_url()
    headers = build_headers(payload, stream=False)

    async with httpx.AsyncClient(timeout=settings.request_timeout) as client:
        response = await client.post(url, headers=headers, json=payload)
        await _raise_for_status(response)

        if is_event_stream(response):
            raise UnexpectedStreamError("Unexpected streaming response for non-streaming endpoint")
        return response.json()


class UpstreamStream:
    """
    已建立的后端响应。可能是 SSE，也可能是后端忽略 stream 参数后返回的普通 JSON。
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self._client = client
        self._response = response

    @property
    def is_event_stream(self) -> bool:
        return is_event_stream(self._response)

    def aiter_lines(self) -> AsyncIterator[str]:
        return self._response.aiter_lines()

    async def json(self) -> Any:
        await self._response.aread()
        return self._response.json()

    async def aclose(self) -> None:
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


async def open_chat_completion_stream(payload: Dict[str, Any]) -> UpstreamStream:
    """
    发起流式请求并在读取响应体前检查状态码，使错误能在响应开始前返回给客户端。
    """
    url = get_chat_completions_url()
    headers = build_headers(payload, stream=True)

    client = httpx.AsyncClient(timeout=settings.request_timeout)
    response: Optional[httpx.Response] = None
    try:
        request = client.build_request("POST", url, headers=headers, json=payload)
        response = await client.send(request, stream=True)
        await _raise_for_status(response)
    except BaseException:
        if response is not None:
            await response.aclose()
        await client.aclose()
        raise
    return UpstreamStream(client, response)
