# chatrelay/providers/openai_compat.py
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chatrelay.core.settings import AppSettings
from chatrelay.orchestration.cancellation import CancellationHandle
from chatrelay.providers.base import CompletionChunk, ProviderError

log = logging.getLogger("app.provider")


def _parse_sse_data(line: str) -> Optional[str]:
    if line.startswith("data: "):
        return line[len("data: "):]
    if line.startswith("data:"):
        return line[len("data:"):].lstrip()
    return None


def _chunk_from_event(obj: Dict[str, Any]) -> Optional[CompletionChunk]:
    total: Optional[int] = None
    usage = obj.get("usage")
    if isinstance(usage, dict):
        raw = usage.get("total_tokens")
        if raw is None and ("prompt_tokens" in usage or "completion_tokens" in usage):
            raw = int(usage.get("prompt_tokens") or 0) + int(usage.get("completion_tokens") or 0)
        if raw:
            total = int(raw)

    text = ""
    choices = obj.get("choices") or []
    if choices:
        first = choices[0] or {}
        delta = first.get("delta") or {}
        # chat delta first, then plain completions formats
        text = delta.get("content") or first.get("text") or first.get("text_delta") or ""

    if not text and total is None:
        return None
    return CompletionChunk(content=text, total_tokens=total)


class OpenAICompatProvider:
    """Streaming client for OpenAI-style ``/chat/completions`` endpoints."""

    name = "openai"

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        temperature: float = 0.7,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _stream_events(
        self, url: str, payload: Dict[str, Any], cancel: CancellationHandle
    ) -> AsyncIterator[CompletionChunk]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            async with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if cancel.cancelled:
                        return
                    if not line:
                        continue
                    data_str = _parse_sse_data(line)
                    if data_str is None:
                        continue
                    if data_str.strip() == "[DONE]":
                        return
                    try:
                        obj = json.loads(data_str)
                    except json.JSONDecodeError:
                        continue
                    chunk = _chunk_from_event(obj)
                    if chunk is not None:
                        yield chunk

    async def stream(
        self,
        messages: List[Dict[str, str]],
        cancel: CancellationHandle,
    ) -> AsyncIterator[CompletionChunk]:
        url_chat = f"{self.base_url}/chat/completions"
        url_comp = f"{self.base_url}/completions"
        payload_chat: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        log.info({"event": "provider_stream_start", "model": self.model, "messages": len(messages)})
        try:
            try:
                async for chunk in self._stream_events(url_chat, payload_chat, cancel):
                    yield chunk
                    if cancel.cancelled:
                        return
            except httpx.HTTPStatusError as e:
                if e.response is None or e.response.status_code != 404:
                    raise
                # Endpoint without chat support: retry as a plain completion
                log.warning({"event": "provider_chat_404_fallback", "url": url_chat})
                payload_comp: Dict[str, Any] = {
                    "model": self.model,
                    "prompt": "\n".join(m.get("content", "") for m in messages),
                    "temperature": self.temperature,
                    "stream": True,
                }
                async for chunk in self._stream_events(url_comp, payload_comp, cancel):
                    yield chunk
                    if cancel.cancelled:
                        return
        except httpx.HTTPStatusError as e:
            status = e.response.status_code if e.response is not None else 502
            detail_text = e.response.text if e.response is not None else str(e)
            raise ProviderError(status, f"Provider error {status}: {detail_text}") from e
        except httpx.RequestError as e:
            raise ProviderError(502, f"Failed to reach completion provider: {e}") from e


def get_openai_provider(settings: AppSettings) -> OpenAICompatProvider:
    return OpenAICompatProvider(
        base_url=settings.provider_base_url,
        model=settings.provider_model,
        api_key=settings.provider_api_key,
        temperature=settings.provider_temperature,
        timeout=settings.provider_timeout_sec,
    )
