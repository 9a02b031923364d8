"""协议转换模块 - Google Gemini ↔ OpenAI 格式转换"""
import copy
import json
import logging
import re
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Union

from src.config import settings
from src.finish_reason import map_openai_finish_reason_to_gemini
from src.stream_translator import StreamTranslator
from src.tool_call_registry import PendingToolCallRegistry

# 配置日志
logger = logging.getLogger(__name__)


DATA_URL_PATTERN = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

WEB_SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": "google_web_search",
        "description": (
            "Performs a web search using Google Search (via the Gemini API) and returns the results. "
            "This tool is useful for finding information on the internet based on a query."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "The search query to find information on the web.",
                },
            },
            "required": ["query"],
        },
    },
}

TOOL_CHOICE_MAPPING = {
    "AUTO": "auto",
    "ANY": "required",
    "NONE": "none",
}

STREAM_TEXT_CHUNK_SIZE = 50

GeminiTurn = Union[Dict, List[Dict]]


def _empty_object_schema() -> Dict:
    return {"type": "object", "properties": {}}


def _as_dict(value: Any) -> Dict:
    return value if isinstance(value, dict) else {}


class RequestConverter:
    """请求格式转换器"""
    SCHEMA_TYPE_MAPPING = {
        "string": "string",
        "number": "number",
        "integer": "integer",
        "boolean": "boolean",
        "array": "array",
        "object": "object",
        "null": "null",
        "type_unspecified": "string",
    }
    GENERATION_CONFIG_MAPPING = {
        "stopSequences": "stop",
        "temperature": "temperature",
        "topP": "top_p",
        "candidateCount": "n",
        "presencePenalty": "presence_penalty",
        "frequencyPenalty": "frequency_penalty",
        "seed": "seed",
    }

    @staticmethod
    def gemini_to_openai(gemini_request: Dict, model: str, stream: bool = False) -> Dict:
        """
        将 Gemini generateContent 请求转换为 OpenAI chat completions 格式

        stream=False 对应 generateContent，stream=True 对应 streamGenerateContent。
        """
        contents = gemini_request.get("contents") or []
        generation_config = _as_dict(gemini_request.get("generationConfig"))
        tools = RequestConverter.select_tools(gemini_request.get("tools"), contents)

        openai_request: Dict[str, Any] = {
            "model": settings.resolve_model(model),
            "messages": RequestConverter.convert_contents(
                contents,
                gemini_request.get("systemInstruction"),
            ),
            "max_tokens": generation_config.get("maxOutputTokens") or settings.default_max_tokens,
            "stream": stream,
        }

        for gemini_key, openai_key in RequestConverter.GENERATION_CONFIG_MAPPING.items():
            value = generation_config.get(gemini_key)
            if value is not None:
                openai_request[openai_key] = value
        if generation_config.get("responseMimeType") == "application/json":
            openai_request["response_format"] = {"type": "json_object"}

        if tools:
            openai_request["tools"] = tools
            tool_choice = RequestConverter.convert_tool_config(gemini_request.get("toolConfig"))
            if tool_choice is not None:
                openai_request["tool_choice"] = tool_choice

        RequestConverter.log_conversion_summary(contents, openai_request)
        return openai_request

    @staticmethod
    def gemini_count_tokens_to_openai(gemini_request: Dict, model: str) -> Dict:
        """
        countTokens 请求转换：与 generateContent 相同的会话整理，max_tokens 固定为 1，不带 stream
        """
        wrapped = gemini_request.get("generateContentRequest")
        if "contents" not in gemini_request and isinstance(wrapped, dict):
            gemini_request = wrapped

        contents = gemini_request.get("contents") or []
        openai_request: Dict[str, Any] = {
            "model": settings.resolve_model(model),
            "messages": RequestConverter.convert_contents(
                contents,
                gemini_request.get("systemInstruction"),
            ),
            "max_tokens": 1,
        }
        tools = RequestConverter.select_tools(gemini_request.get("tools"), contents)
        if tools:
            openai_request["tools"] = tools
        return openai_request

    @staticmethod
    def select_tools(gemini_tools: Optional[List[Dict]], contents: List[GeminiTurn]) -> Optional[List[Dict]]:
        """优先使用显式声明的工具，否则根据历史中的 functionCall 合成"""
        return RequestConverter.convert_tools(gemini_tools) or RequestConverter.synthesize_tools(contents)

    @staticmethod
    def convert_contents(contents: List[GeminiTurn], system_instruction: Any = None) -> List[Dict]:
        """
        将 Gemini 的 contents 转换为 OpenAI 的 messages

        contents 中的元素可以是标准的 {"role", "parts"}，
        也可以是某些客户端发送的裸 functionResponse 数组。
        """
        messages: List[Dict] = []
        pending_calls = PendingToolCallRegistry()

        if system_instruction:
            system_text = RequestConverter.extract_text(system_instruction)
            if system_text:
                messages.append({"role": "system", "content": system_text})

        for item in contents or []:
            if isinstance(item, list):
                RequestConverter.process_function_responses(item, pending_calls, messages)
                continue
            if not isinstance(item, dict):
                continue

            role = "assistant" if item.get("role") == "model" else "user"
            parts = [part for part in (item.get("parts") or []) if isinstance(part, dict)]

            function_calls = [part for part in parts if isinstance(part.get("functionCall"), dict)]
            function_responses = [part for part in parts if isinstance(part.get("functionResponse"), dict)]

            if function_responses:
                RequestConverter.process_function_responses(function_responses, pending_calls, messages)

            if function_calls and role == "assistant":
                RequestConverter.process_function_calls(function_calls, parts, pending_calls, messages)
            else:
                content = RequestConverter.convert_parts_to_content(parts)
                if content:
                    messages.append({"role": role, "content": content})

        messages = RequestConverter.remove_incomplete_tool_calls(messages)
        messages = RequestConverter.deduplicate_tool_responses(messages)
        return RequestConverter.merge_same_role_messages(messages)

    @staticmethod
    def process_function_responses(
        function_responses: List[Dict],
        pending_calls: PendingToolCallRegistry,
        messages: List[Dict],
    ) -> None:
        """按函数名把 functionResponse 匹配到最早的未应答调用，匹配不到的直接丢弃"""
        for part in function_responses:
            if not isinstance(part, dict) or not isinstance(part.get("functionResponse"), dict):
                continue
            function_response = _as_dict(part.get("functionResponse"))
            name = function_response.get("name")
            tool_call_id = pending_calls.resolve(name)
            if tool_call_id is None:
                logger.debug("Dropping functionResponse without a pending call: %s", name)
                continue
            messages.append({
                "role": "tool",
                "tool_call_id": tool_call_id,
                "content": json.dumps(function_response.get("response"), ensure_ascii=False),
            })

    @staticmethod
    def process_function_calls(
        function_calls: List[Dict],
        parts: List[Dict],
        pending_calls: PendingToolCallRegistry,
        messages: List[Dict],
    ) -> None:
        tool_calls = []
        for part in function_calls:
            function_call = _as_dict(part.get("functionCall"))
            name = function_call.get("name") or ""
            args = function_call.get("args")
            tool_calls.append({
                "id": pending_calls.register(name),
                "type": "function",
                "function": {
                    "name": name,
                    "arguments": json.dumps(args if args is not None else {}, ensure_ascii=False),
                },
            })

        messages.append({
            "role": "assistant",
            "content": RequestConverter.extract_text_from_parts(parts) or None,
            "tool_calls": tool_calls,
        })

    @staticmethod
    def remove_incomplete_tool_calls(messages: List[Dict]) -> List[Dict]:
        """
        删除没有对应 tool 消息的 assistant tool_calls 消息（客户端取消工具调用后遗留的历史）
        """
        answered_ids = {
            message.get("tool_call_id")
            for message in messages
            if message.get("role") == "tool" and message.get("tool_call_id")
        }

        result = []
        for message in messages:
            tool_calls = message.get("tool_calls")
            if message.get("role") == "assistant" and tool_calls:
                if any(call.get("id") not in answered_ids for call in tool_calls):
                    logger.debug(
                        "Removing assistant message with unanswered tool calls: %s",
                        [call["function"]["name"] for call in tool_calls],
                    )
                    continue
            result.append(message)
        return result

    @staticmethod
    def deduplicate_tool_responses(messages: List[Dict]) -> List[Dict]:
        """同一个 tool_call_id 只保留第一条 tool 消息"""
        result = []
        seen_ids = set()
        for message in messages:
            tool_call_id = message.get("tool_call_id")
            if message.get("role") == "tool" and tool_call_id:
                if tool_call_id in seen_ids:
                    logger.debug("Dropping duplicate tool response for %s", tool_call_id)
                    continue
                seen_ids.add(tool_call_id)
            result.append(message)
        return result

    @staticmethod
    def merge_same_role_messages(messages: List[Dict]) -> List[Dict]:
        """
        合并相邻的同角色纯文本消息；空白的 user 文本替换为单个空格（后端拒绝空内容）
        """
        merged: List[Dict] = []
        for message in messages:
            last = merged[-1] if merged else None

            if (
                last is not None
                and last.get("role") == message.get("role")
                and not last.get("tool_calls")
                and not message.get("tool_calls")
                and not last.get("tool_call_id")
                and not message.get("tool_call_id")
            ):
                if isinstance(last.get("content"), str) and isinstance(message.get("content"), str):
                    merged[-1] = {**last, "content": last["content"] + "\n\n" + message["content"]}
                else:
                    merged.append(message)
                continue

            if (
                message.get("role") == "user"
                and isinstance(message.get("content"), str)
                and not message["content"].strip()
            ):
                message = {**message, "content": " "}
            merged.append(message)
        return merged

    @staticmethod
    def convert_parts_to_content(parts: List[Dict]) -> Union[str, List[Dict], None]:
        """
        将 Gemini 的 parts 转换为 OpenAI 的 content

        - 纯文本: 返回字符串
        - 含 inlineData/fileData: 返回 [{"type": "text"}, {"type": "image_url"}] 数组
        """
        if not parts:
            return None

        has_media = any(
            isinstance(part.get("inlineData"), dict) or isinstance(part.get("fileData"), dict)
            for part in parts
        )
        if not has_media:
            return RequestConverter.extract_text_from_parts(parts)

        content_parts: List[Dict] = []
        for part in parts:
            if "text" in part:
                content_parts.append({"type": "text", "text": RequestConverter.extract_text_value(part.get("text"))})
            elif isinstance(part.get("inlineData"), dict):
                inline = part["inlineData"]
                content_parts.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{inline.get('mimeType')};base64,{inline.get('data')}"},
                })
            elif isinstance(part.get("fileData"), dict):
                file_data = part["fileData"]
                if file_data.get("fileUri"):
                    content_parts.append({
                        "type": "image_url",
                        "image_url": {"url": file_data["fileUri"]},
                    })
        return content_parts

    @staticmethod
    def extract_text_value(value) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, dict) and "text" in value:
            return RequestConverter.extract_text_value(value.get("text"))
        return ""

    @staticmethod
    def extract_text_from_parts(parts: List[Dict]) -> str:
        return "\n\n".join(
            RequestConverter.extract_text_value(part.get("text"))
            for part in parts
            if isinstance(part, dict) and "text" in part
        )

    @staticmethod
    def extract_text(content: Any) -> str:
        """提取 systemInstruction 等 Content 中的全部文本"""
        if isinstance(content, str):
            return content
        if isinstance(content, dict):
            return RequestConverter.extract_text_from_parts(content.get("parts") or [])
        return ""

    @staticmethod
    def convert_tools(gemini_tools: Optional[List[Dict]]) -> Optional[List[Dict]]:
        """
        将 Gemini 格式的 tools 转换为 OpenAI 格式

        Gemini 格式:
        [{
            "functionDeclarations": [{
                "name": "get_weather",
                "description": "...",
                "parameters": {...}
            }]
        }, {"googleSearch": {}}, {"urlContext": {}}]

        OpenAI 格式:
        [{
            "type": "function",
            "function": {
                "name": "get_weather",
                "description": "...",
                "parameters": {...}
            }
        }]

        googleSearch 改写为 google_web_search 函数；urlContext 后端不支持，直接丢弃。
        """
        if not gemini_tools:
            return None

        converted: List[Dict] = []
        for tool in gemini_tools:
            if not isinstance(tool, dict):
                continue

            for declaration in tool.get("functionDeclarations") or []:
                if not isinstance(declaration, dict):
                    continue
                name = declaration.get("name")
                if not isinstance(name, str) or not name.strip():
                    logger.warning("Skipping function declaration without a name")
                    continue

                parameters = (
                    declaration.get("parametersJsonSchema")
                    or declaration.get("parameters")
                    or _empty_object_schema()
                )
                function: Dict[str, Any] = {"name": name}
                if declaration.get("description") is not None:
                    function["description"] = declaration["description"]
                function["parameters"] = RequestConverter.normalize_schema(copy.deepcopy(parameters))
                converted.append({"type": "function", "function": function})

            if "googleSearch" in tool:
                converted.append(copy.deepcopy(WEB_SEARCH_TOOL))

            if "urlContext" in tool:
                logger.debug("Dropping urlContext tool, unsupported by the backend")

        return converted or None

    @staticmethod
    def synthesize_tools(contents: List[GeminiTurn]) -> Optional[List[Dict]]:
        """
        未显式提供 tools、但历史中已有 functionCall 时，按函数名合成最小工具声明，
        避免后端因 tool_calls 历史缺少工具声明而拒绝请求。
        """
        names: List[str] = []
        for item in contents or []:
            if not isinstance(item, dict):
                continue
            for part in item.get("parts") or []:
                if not isinstance(part, dict) or "functionCall" not in part:
                    continue
                name = _as_dict(part.get("functionCall")).get("name")
                if name and name not in names:
                    names.append(name)

        if not names:
            return None
        return [
            {"type": "function", "function": {"name": name, "parameters": _empty_object_schema()}}
            for name in names
        ]

    @staticmethod
    def convert_tool_config(tool_config: Optional[Dict]) -> Optional[str]:
        """
        将 Gemini 的 toolConfig 转换为 OpenAI 的 tool_choice

        AUTO -> auto, ANY -> required, NONE -> none, 其他 -> None
        """
        if not isinstance(tool_config, dict):
            return None
        mode = _as_dict(tool_config.get("functionCallingConfig")).get("mode")
        return TOOL_CHOICE_MAPPING.get(mode)

    @staticmethod
    def normalize_schema(schema: Dict) -> Dict:
        """
        规范化 Gemini Schema 中的 type 字段（STRING/OBJECT 等大写枚举），转换为 JSON Schema 小写类型
        """
        if not isinstance(schema, dict):
            return schema

        schema_type = schema.get("type")
        if isinstance(schema_type, str):
            schema["type"] = RequestConverter.SCHEMA_TYPE_MAPPING.get(schema_type.lower(), schema_type.lower())
        elif isinstance(schema_type, list):
            schema["type"] = [
                RequestConverter.SCHEMA_TYPE_MAPPING.get(item.lower(), item.lower()) if isinstance(item, str) else item
                for item in schema_type
            ]

        items = schema.get("items")
        if isinstance(items, dict):
            RequestConverter.normalize_schema(items)
        elif isinstance(items, list):
            for item in items:
                RequestConverter.normalize_schema(item)

        for key in ("properties", "patternProperties", "definitions", "$defs"):
            section = schema.get(key)
            if isinstance(section, dict):
                for subschema in section.values():
                    RequestConverter.normalize_schema(subschema)

        additional = schema.get("additionalProperties")
        if isinstance(additional, dict):
            RequestConverter.normalize_schema(additional)

        for key in ("anyOf", "allOf", "oneOf"):
            options = schema.get(key)
            if isinstance(options, list):
                for option in options:
                    RequestConverter.normalize_schema(option)

        RequestConverter.ensure_schema_defaults(schema)
        return schema

    @staticmethod
    def ensure_schema_defaults(schema: Dict) -> None:
        schema_type = schema.get("type")
        if schema_type == "object":
            if not isinstance(schema.get("properties"), dict):
                schema["properties"] = {}
        elif schema_type == "array":
            if not isinstance(schema.get("items"), (dict, list)):
                schema["items"] = {}

    @staticmethod
    def log_conversion_summary(contents: List[GeminiTurn], openai_request: Dict) -> None:
        """
        打印一次请求转换的摘要，帮助排查后端 400 问题
        """
        gemini_roles = [
            item.get("role", "unknown") if isinstance(item, dict) else "functionResponse[]"
            for item in contents or []
        ]
        openai_roles = [message.get("role") for message in openai_request.get("messages", [])]
        tools = [tool["function"]["name"] for tool in openai_request.get("tools") or []]

        logger.debug("Conversion summary - Gemini roles: %s", gemini_roles)
        logger.debug("Conversion summary - OpenAI roles: %s", openai_roles)
        logger.debug(
            "Conversion summary - model=%s, tools=%s, tool_choice=%s, stream=%s",
            openai_request.get("model"),
            tools or "none",
            openai_request.get("tool_choice"),
            openai_request.get("stream"),
        )


class ResponseConverter:
    """响应格式转换器"""

    @staticmethod
    def openai_to_gemini(openai_response: Dict) -> Dict:
        """
        将 OpenAI 非流式响应转换为 Gemini 格式

        Returns:
            {"candidates": [...], "usageMetadata": {...}}
        """
        candidates = []
        for idx, choice in enumerate(openai_response.get("choices") or []):
            if not isinstance(choice, dict):
                logger.warning(f"Skipping malformed choice at index {idx}: {choice!r}")
                continue
            candidates.append({
                "content": ResponseConverter.convert_message_to_content(_as_dict(choice.get("message"))),
                "finishReason": map_openai_finish_reason_to_gemini(choice.get("finish_reason")),
                "index": choice.get("index", idx),
            })

        usage = _as_dict(openai_response.get("usage"))
        return {
            "candidates": candidates,
            "usageMetadata": {
                "promptTokenCount": usage.get("prompt_tokens") or 0,
                "candidatesTokenCount": usage.get("completion_tokens") or 0,
                "totalTokenCount": usage.get("total_tokens") or 0,
            },
        }

    @staticmethod
    def convert_message_to_content(message: Dict) -> Dict:
        parts: List[Dict] = []

        content = message.get("content")
        if isinstance(content, str):
            if content:
                parts.append({"text": content})
        elif isinstance(content, list):
            for item in content:
                if not isinstance(item, dict):
                    continue
                if item.get("type") == "text":
                    parts.append({"text": item.get("text", "")})
                elif item.get("type") == "image_url":
                    url = _as_dict(item.get("image_url")).get("url") or ""
                    match = DATA_URL_PATTERN.match(url)
                    if match:
                        parts.append({"inlineData": {"mimeType": match.group(1), "data": match.group(2)}})

        for tool_call in message.get("tool_calls") or []:
            function = tool_call.get("function") if isinstance(tool_call, dict) else None
            if not isinstance(function, dict):
                logger.warning(f"Skipping malformed tool call: {tool_call!r}")
                continue
            parts.append({
                "functionCall": {
                    "name": function.get("name", ""),
                    "args": ResponseConverter.parse_tool_arguments(function.get("arguments")),
                }
            })

        return {"parts": parts, "role": "model"}

    @staticmethod
    def parse_tool_arguments(arguments: Any) -> Dict:
        if isinstance(arguments, dict):
            return arguments
        if not isinstance(arguments, str) or not arguments.strip():
            return {}
        try:
            args = json.loads(arguments)
        except (json.JSONDecodeError, ValueError):
            logger.warning(f"Invalid tool call arguments, using empty args: {arguments[:200]!r}")
            return {}
        return args if isinstance(args, dict) else {}

    @staticmethod
    async def openai_sse_to_gemini(openai_stream: AsyncIterator[str]) -> AsyncGenerator[str, None]:
        """
        将 OpenAI SSE 流式响应转换为 Gemini 格式

        Args:
            openai_stream: 后端的 SSE 流（按行的字符串迭代器）

        Yields:
            Gemini 格式的 SSE 数据行
        """
        translator = StreamTranslator()
        try:
            async for line in openai_stream:
                line = line.strip()

                # 跳过空行
                if not line:
                    continue

                # 只处理 "data:" 行，event/id/注释行跳过
                if not line.startswith("data:"):
                    continue
                json_str = line[5:].strip()

                # [DONE] 标记结束迭代
                if json_str == "[DONE]":
                    break

                try:
                    chunk = json.loads(json_str)
                except json.JSONDecodeError as e:
                    logger.error(f"JSON decode error: {e}")
                    logger.error(f"Problematic line: {repr(line[:200])}")
                    continue

                gemini_chunk = translator.translate_chunk(chunk)
                if gemini_chunk is not None:
                    yield ResponseConverter.format_sse(gemini_chunk)
        finally:
            translator.close()

    @staticmethod
    def gemini_response_to_stream_events(gemini_response: Dict) -> List[Dict]:
        """
        后端对流式请求返回了非流式 JSON 时，把 Gemini 响应拆分为流式事件

        首个 part 是非空文本时按 50 字符分块，只有最后一块带 finishReason/usageMetadata；
        否则整体作为单个事件发送。
        """
        candidates = gemini_response.get("candidates") or []
        first_candidate = candidates[0] if candidates else {}
        parts = _as_dict(first_candidate.get("content")).get("parts") or []
        first_part = parts[0] if parts else None

        if not isinstance(first_part, dict) or not first_part.get("text"):
            return [{
                "candidates": candidates,
                "usageMetadata": gemini_response.get("usageMetadata"),
            }]

        text = first_part["text"]
        chunk_size = max(1, min(STREAM_TEXT_CHUNK_SIZE, len(text)))
        events = []
        for start in range(0, len(text), chunk_size):
            is_last = start + chunk_size >= len(text)
            candidate: Dict[str, Any] = {
                "content": {"parts": [{"text": text[start:start + chunk_size]}], "role": "model"},
                "index": 0,
            }
            event: Dict[str, Any] = {"candidates": [candidate]}
            if is_last:
                if first_candidate.get("finishReason"):
                    candidate["finishReason"] = first_candidate["finishReason"]
                if gemini_response.get("usageMetadata"):
                    event["usageMetadata"] = gemini_response["usageMetadata"]
            events.append(event)
        return events

    @staticmethod
    def format_sse(payload: Dict) -> str:
        return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"

    @staticmethod
    def token_count_to_gemini(total_tokens: int) -> Dict:
        return {"totalTokens": total_tokens}
