"""Local token estimate for countTokens requests, using tiktoken's cl100k_base encoding."""
import json
import logging
from functools import lru_cache
from typing import Any, Dict, List

import tiktoken


logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"

# Per-message framing overhead of the chat format (role marker + separators)
TOKENS_PER_MESSAGE = 3
# Every reply is primed with an assistant header
REPLY_PRIMING_TOKENS = 3


@lru_cache(maxsize=None)
def _get_encoding(encoding_name: str = DEFAULT_ENCODING):
    # cl100k_base is downloaded on first use, so load it lazily
    return tiktoken.get_encoding(encoding_name)


def count_text_tokens(text: str) -> int:
    if not text:
        return 0
    return len(_get_encoding().encode(text))


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def count_message_tokens(messages: List[Dict[str, Any]]) -> int:
    total = 0
    for message in messages:
        total += TOKENS_PER_MESSAGE
        total += count_text_tokens(message.get("role") or "")
        total += count_text_tokens(_content_text(message.get("content")))
        for tool_call in message.get("tool_calls") or []:
            function = tool_call.get("function") or {}
            total += count_text_tokens(function.get("name") or "")
            total += count_text_tokens(function.get("arguments") or "")
    return total + REPLY_PRIMING_TOKENS if messages else total


def count_openai_request_tokens(openai_request: Dict[str, Any]) -> int:
    """
    估算 OpenAI chat completions 请求的输入 token 数（消息 + 工具声明）
    """
    total = count_message_tokens(openai_request.get("messages") or [])
    tools = openai_request.get("tools")
    if tools:
        total += count_text_tokens(json.dumps(tools, ensure_ascii=False))
    logger.debug(f"Estimated {total} prompt tokens")
    return total
