"""Per-stream translation of OpenAI chat.completion.chunk events into Gemini stream responses.

A ``StreamTranslator`` owns the tool call accumulator for exactly one
streaming response. Create one per upstream stream and call ``close()``
when the stream ends so no fragment state outlives the request.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from src.finish_reason import map_openai_finish_reason_to_gemini


logger = logging.getLogger(__name__)


@dataclass
class _PendingToolCall:
    name: str
    arguments: str
    call_id: Optional[str] = None


def _try_function_call_part(name: str, arguments: str) -> Optional[Dict]:
    if not arguments:
        return None
    try:
        args = json.loads(arguments)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(args, dict):
        return None
    return {"functionCall": {"name": name, "args": args}}


class ToolCallAccumulator:
    """Argument fragments of in-flight tool calls, keyed by the upstream tool call index."""

    def __init__(self) -> None:
        self._entries: Dict[int, _PendingToolCall] = {}

    def start(self, index: int, name: str, arguments: Optional[str], call_id: Optional[str] = None) -> Optional[Dict]:
        """Seed a tool call from its first fragment; completes immediately if the arguments already parse."""
        entry = _PendingToolCall(name=name, arguments=arguments if isinstance(arguments, str) else "", call_id=call_id)
        self._entries[index] = entry
        part = _try_function_call_part(entry.name, entry.arguments)
        if part is not None:
            del self._entries[index]
        return part

    def append(self, index: int, fragment: Optional[str]) -> Optional[Dict]:
        entry = self._entries.get(index)
        if entry is None or not fragment or not isinstance(fragment, str):
            return None
        entry.arguments += fragment
        part = _try_function_call_part(entry.name, entry.arguments)
        if part is not None:
            del self._entries[index]
        return part

    def clear(self) -> List[_PendingToolCall]:
        """Drop every in-flight call and return what was dropped."""
        discarded = [self._entries[index] for index in sorted(self._entries)]
        for entry in discarded:
            logger.debug(
                "Discarding tool call %s (id=%s) with unusable arguments: %r",
                entry.name,
                entry.call_id,
                entry.arguments[:200],
            )
        self._entries.clear()
        return discarded

    def __contains__(self, index: object) -> bool:
        return index in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def _usage_metadata(chunk: Dict) -> Dict:
    usage = chunk.get("usage") if isinstance(chunk.get("usage"), dict) else {}
    return {
        "promptTokenCount": usage.get("prompt_tokens") or 0,
        "candidatesTokenCount": usage.get("completion_tokens") or 0,
        "totalTokenCount": usage.get("total_tokens") or 0,
    }


class StreamTranslator:
    """Stateful OpenAI delta -> Gemini stream response translator for a single stream."""

    def __init__(self) -> None:
        self.accumulator = ToolCallAccumulator()

    def translate_chunk(self, chunk: Dict) -> Optional[Dict]:
        """
        Translate one OpenAI chunk. Returns None when the chunk carries nothing worth relaying.
        """
        choices = chunk.get("choices") if isinstance(chunk, dict) else None
        if not isinstance(choices, list) or not choices:
            return None

        choice = choices[0] if isinstance(choices[0], dict) else {}
        delta = choice.get("delta") if isinstance(choice.get("delta"), dict) else {}
        finish_reason = choice.get("finish_reason")

        parts = self._collect_parts(delta)

        if not parts and not finish_reason:
            return None
        if not parts:
            # Gemini clients expect every frame, including the terminal one, to carry a part.
            parts.append({"text": ""})

        only_unnamed_calls = all(
            "functionCall" in part and not (part["functionCall"].get("name") or "").strip()
            for part in parts
        )
        if only_unnamed_calls and not finish_reason:
            return None

        candidate: Dict = {
            "content": {"parts": parts, "role": "model"},
            "index": choice.get("index", 0),
        }
        response: Dict = {"candidates": [candidate]}

        if finish_reason:
            candidate["finishReason"] = map_openai_finish_reason_to_gemini(finish_reason)
            response["usageMetadata"] = _usage_metadata(chunk)

        return response

    def _collect_parts(self, delta: Dict) -> List[Dict]:
        parts: List[Dict] = []

        content = delta.get("content")
        if isinstance(content, str) and content:
            parts.append({"text": content})

        for tool_call in delta.get("tool_calls") or []:
            if not isinstance(tool_call, dict):
                continue
            index = tool_call.get("index", 0)
            if not isinstance(index, int):
                continue
            function = tool_call.get("function") if isinstance(tool_call.get("function"), dict) else {}
            name = function.get("name")
            arguments = function.get("arguments")

            if isinstance(name, str) and name.strip():
                part = self.accumulator.start(index, name, arguments, tool_call.get("id"))
            else:
                part = self.accumulator.append(index, arguments)

            if part is not None:
                parts.append(part)

        return parts

    def close(self) -> None:
        self.accumulator.clear()
