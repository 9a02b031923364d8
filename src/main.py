"""FastAPI 主应用 - Gemini 兼容的 API 网关（后端为 OpenAI chat completions）"""
import logging
from typing import AsyncIterator, Dict, List, Optional

import httpx
from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from src.config import settings
from src.converter import RequestConverter, ResponseConverter
from src.openai_client import (
    UpstreamHTTPError,
    UpstreamStream,
    create_chat_completions,
    open_chat_completion_stream,
)
from src.rate_limit import RateLimiter, RateLimitExceeded
from src.token_counter import count_openai_request_tokens

# 配置日志
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Gemini to OpenAI API Gateway",
    description="将 OpenAI chat completions 后端包装成 Google Gemini 标准格式",
    version="1.0.0"
)

# 配置 CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

rate_limiter = RateLimiter(settings.rate_limit_seconds, wait=settings.rate_limit_wait)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": "error"}},
    )


def validate_api_key(
    authorization: Optional[str],
    x_goog_api_key: Optional[str] = None,
    query_key: Optional[str] = None,
) -> bool:
    """
    验证 API Key，依次接受：
    - 查询参数 key=<key>
    - X-Goog-Api-Key 头
    - Authorization: Bearer <key>
    """
    if query_key:
        return settings.validate_api_key(query_key)

    if x_goog_api_key:
        return settings.validate_api_key(x_goog_api_key)

    if not authorization:
        return False

    if not authorization.startswith("Bearer "):
        return False

    api_key = authorization[7:]  # 去掉 "Bearer " 前缀
    return settings.validate_api_key(api_key)


@app.get("/health")
async def health_check():
    """健康检查"""
    return {"status": "ok"}


@app.post("/v1/models/{model_action}")
@app.post("/v1beta/models/{model_action}")
async def gemini_models_endpoint(
    model_action: str,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_goog_api_key: Optional[str] = Header(None, alias="x-goog-api-key"),
    key: Optional[str] = Query(None)
):
    """
    Gemini 原生入口：/models/{model}:generateContent | :streamGenerateContent | :countTokens
    """
    model, separator, action = model_action.rpartition(":")
    handler = GEMINI_ACTIONS.get(action) if separator else None
    if handler is None:
        return error_response(404, f"Unknown operation: {model_action}")
    if not model:
        return error_response(400, "Model name is required in URL path")

    if not validate_api_key(authorization, x_goog_api_key, query_key=key):
        return error_response(401, "Invalid API key")

    # 解析请求体
    try:
        body = await request.json()
    except Exception as e:
        return error_response(400, f"Invalid JSON: {str(e)}")
    if not isinstance(body, dict):
        return error_response(400, "Request body must be a JSON object")

    try:
        return await handler(model, body)
    except UpstreamHTTPError as exc:
        return error_response(exc.status_code, exc.body)
    except httpx.TimeoutException:
        logger.error(f"Backend request timeout for model {model}")
        return error_response(504, "Request timeout")
    except RateLimitExceeded as exc:
        return error_response(429, str(exc))
    except Exception as exc:
        logger.exception(f"Request failed for model {model}")
        return error_response(500, str(exc))


async def handle_generate_content(model: str, body: Dict):
    """
    非流式请求处理：Gemini → OpenAI → Gemini
    """
    openai_request = RequestConverter.gemini_to_openai(body, model, stream=False)
    await rate_limiter.acquire()

    logger.info(f"generateContent model={model} -> {openai_request['model']}")
    openai_response = await create_chat_completions(openai_request)
    return ResponseConverter.openai_to_gemini(openai_response)


async def handle_stream_generate_content(model: str, body: Dict):
    """
    流式请求处理：后端状态码在响应开始前检查，错误可以正常返回给客户端
    """
    openai_request = RequestConverter.gemini_to_openai(body, model, stream=True)
    await rate_limiter.acquire()

    logger.info(f"streamGenerateContent model={model} -> {openai_request['model']}")
    upstream = await open_chat_completion_stream(openai_request)

    if upstream.is_event_stream:
        return StreamingResponse(
            stream_openai_to_gemini(upstream),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    # 后端忽略了 stream 参数，按普通 JSON 处理后再拆成流式事件
    logger.warning("Backend returned a non-stream response for a stream request")
    try:
        openai_response = await upstream.json()
    finally:
        await upstream.aclose()

    gemini_response = ResponseConverter.openai_to_gemini(openai_response)
    return StreamingResponse(
        replay_events(ResponseConverter.gemini_response_to_stream_events(gemini_response)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


async def handle_count_tokens(model: str, body: Dict):
    """
    countTokens 在本地估算，不调用后端
    """
    openai_request = RequestConverter.gemini_count_tokens_to_openai(body, model)
    total_tokens = count_openai_request_tokens(openai_request)
    return ResponseConverter.token_count_to_gemini(total_tokens)


async def stream_openai_to_gemini(upstream: UpstreamStream) -> AsyncIterator[str]:
    """
    流式代理：OpenAI SSE → Gemini SSE
    """
    gemini_stream = ResponseConverter.openai_sse_to_gemini(upstream.aiter_lines())
    try:
        async for chunk in gemini_stream:
            yield chunk
    except Exception as e:
        # 响应已经开始，只能记录日志并结束流
        logger.error(f"Stream error: {e}")
    finally:
        # 先关闭转换器释放累积状态，再关闭后端连接
        try:
            await gemini_stream.aclose()
        finally:
            await upstream.aclose()


async def replay_events(events: List[Dict]) -> AsyncIterator[str]:
    for event in events:
        yield ResponseConverter.format_sse(event)


GEMINI_ACTIONS = {
    "generateContent": handle_generate_content,
    "streamGenerateContent": handle_stream_generate_content,
    "countTokens": handle_count_tokens,
}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
