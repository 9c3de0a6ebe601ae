# chatrelay/orchestration/sse.py
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_event(event: str, data: Dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n".encode("utf-8")


class SSEDecoder:
    """Incremental decoder for ``event:``/``data:`` frames.

    Transport reads may split a frame anywhere, including inside a multi-byte
    character; ``feed`` buffers until a blank line closes the frame and only
    then returns it.
    """

    def __init__(self) -> None:
        self._raw = b""

    def feed(self, chunk: bytes) -> List[Tuple[str, Dict[str, Any]]]:
        self._raw += chunk
        cut = self._raw.rfind(b"\n\n")
        if cut < 0:
            return []
        # the separator is ASCII, so the cut never lands inside a character
        complete, self._raw = self._raw[: cut + 2], self._raw[cut + 2:]
        text = complete.decode("utf-8")
        events: List[Tuple[str, Dict[str, Any]]] = []
        for block in text.split("\n\n"):
            parsed = self._parse_block(block)
            if parsed is not None:
                events.append(parsed)
        return events

    @staticmethod
    def _parse_block(block: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        if not block.strip():
            return None
        event = "message"
        data_lines: List[str] = []
        for ln in block.split("\n"):
            if ln.startswith(":"):
                continue
            if ln.startswith("event:"):
                event = ln[len("event:"):].strip()
            elif ln.startswith("data:"):
                data_lines.append(ln[len("data:"):].lstrip(" "))
        if not data_lines:
            return None
        return event, json.loads("\n".join(data_lines))

    @property
    def pending(self) -> bytes:
        return self._raw
