"""Pending tool call registry used while reconciling one Gemini conversation.

Gemini identifies a functionResponse only by function name, so responses
are paired with the oldest unanswered call of the same name.
"""

from __future__ import annotations

import secrets
import time
from collections import OrderedDict
from typing import Iterator, Optional, Tuple


def generate_tool_call_id(function_name: str) -> str:
    ts_ms = int(time.time() * 1000)
    rand = secrets.token_hex(5)[:9]
    return f"call_{function_name}_{ts_ms}_{rand}"


class PendingToolCallRegistry:
    """tool_call_id -> function name, in registration order."""

    def __init__(self) -> None:
        self._pending: "OrderedDict[str, str]" = OrderedDict()

    def register(self, function_name: str) -> str:
        tool_call_id = generate_tool_call_id(function_name)
        while tool_call_id in self._pending:
            tool_call_id = generate_tool_call_id(function_name)
        self._pending[tool_call_id] = function_name
        return tool_call_id

    def resolve(self, function_name: Optional[str]) -> Optional[str]:
        """Pop and return the first pending id registered for ``function_name``."""
        for tool_call_id, name in self._pending.items():
            if name == function_name:
                del self._pending[tool_call_id]
                return tool_call_id
        return None

    def __len__(self) -> int:
        return len(self._pending)

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(list(self._pending.items()))
