# chatrelay/core/logging.py
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator

from fastapi import Request, Response

TRACE_HEADER = "x-trace-id"

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach ``fields`` to every record logged in the current context.

    Nested blocks add to the outer fields; ``None`` values are left out.
    """
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


def current_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


class ContextFilter(logging.Filter):
    """Copies the bound request/turn fields onto the record as ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = current_log_context()
        return True


def record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Bound context first, then the call site's dict payload (or its plain message)."""
    fields: Dict[str, Any] = dict(getattr(record, "context", None) or {})
    if isinstance(record.msg, dict):
        fields.update(record.msg)
    else:
        fields["message"] = record.getMessage()
    return fields


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            **record_fields(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _plain_value(value: Any) -> str:
    text = json.dumps(value, ensure_ascii=False, default=str) if isinstance(value, (dict, list)) else str(value)
    return f'"{text}"' if (" " in text or ";" in text) else text


class PlainFormatter(logging.Formatter):
    # key=value lines for a terminal; LOG_FORMAT=plain
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
        fields = record_fields(record)
        message = fields.pop("message", None)
        body = " ".join(f"{k}={_plain_value(v)}" for k, v in fields.items())
        if message is not None:
            body = f"{message} {body}".strip()
        line = f"{ts} | {record.levelname.ljust(5)} | {record.name}: {body}".rstrip()
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str = "INFO", fmt: str | None = None) -> None:
    fmt = (fmt or os.getenv("LOG_FORMAT", "json")).lower()
    handler = logging.StreamHandler()
    handler.addFilter(ContextFilter())
    handler.setFormatter(PlainFormatter() if fmt in ("plain", "text", "human") else JsonFormatter())

    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers.clear()
    root.addHandler(handler)


async def request_logging_middleware(request: Request, call_next) -> Response:
    """Binds a trace id for the request, echoes it back and logs one line per request.

    For event streams the duration is time to first byte; the stream itself
    keeps the trace id through the turn's own log lines.
    """
    trace_id = request.headers.get(TRACE_HEADER) or uuid.uuid4().hex[:16]
    start = time.perf_counter()
    status = 500
    with log_context(trace_id=trace_id):
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers[TRACE_HEADER] = trace_id
            return response
        finally:
            logging.getLogger("app.request").info({
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            })
