# chatrelay/utils/tokens.py
from __future__ import annotations

import math
from typing import Dict, Iterable


def approx_tokens(text: str) -> int:
    """Rough token estimate: 1 token ~= 4 chars."""
    return int(math.ceil(len(text or "") / 4))


def approx_tokens_messages(messages: Iterable[Dict[str, str]]) -> int:
    return sum(approx_tokens(m.get("content", "")) for m in messages)


def truncate_title(text: str, max_chars: int) -> str:
    return (text or "")[:max_chars]
