"""Finish reason mapping between OpenAI chat completions and Gemini candidates."""

from __future__ import annotations

from typing import Optional


FINISH_REASON_UNSPECIFIED = "FINISH_REASON_UNSPECIFIED"

# Gemini has no tool-call specific terminal state, so tool_calls collapses to STOP.
_OPENAI_TO_GEMINI = {
    "stop": "STOP",
    "length": "MAX_TOKENS",
    "content_filter": "SAFETY",
    "tool_calls": "STOP",
}

_GEMINI_TO_OPENAI = {
    "STOP": "stop",
    FINISH_REASON_UNSPECIFIED: "stop",
    "MALFORMED_FUNCTION_CALL": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "IMAGE_SAFETY": "content_filter",
}


def map_openai_finish_reason_to_gemini(finish_reason: Optional[str]) -> str:
    if not isinstance(finish_reason, str):
        return FINISH_REASON_UNSPECIFIED
    return _OPENAI_TO_GEMINI.get(finish_reason, FINISH_REASON_UNSPECIFIED)


def map_gemini_finish_reason_to_openai(finish_reason: Optional[str]) -> str:
    if not isinstance(finish_reason, str):
        return "stop"
    return _GEMINI_TO_OPENAI.get(finish_reason, "stop")
