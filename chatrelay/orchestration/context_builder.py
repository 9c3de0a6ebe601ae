# chatrelay/orchestration/context_builder.py
from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

HISTORY_LIMIT = 20


def _role_content(item: object) -> Tuple[str, str]:
    if isinstance(item, tuple):
        role, content = item
    elif isinstance(item, dict):
        role, content = item.get("role", ""), item.get("content", "")
    else:  # ORM row
        role, content = getattr(item, "role", ""), getattr(item, "content", "")
    return ("user" if role == "user" else "assistant"), content or ""


def assemble_messages(
    system_prompt: str,
    history: Sequence[object],
    user_content: str,
    limit: int = HISTORY_LIMIT,
) -> List[Dict[str, str]]:
    """Provider message list: system prompt, the last ``limit`` history items, new input.

    ``history`` must already be oldest-first; only its tail is kept.
    """
    tail = list(history)[-limit:] if limit > 0 else []
    out: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
    for item in tail:
        role, content = _role_content(item)
        out.append({"role": role, "content": content})
    out.append({"role": "user", "content": user_content})
    return out
