# tests/test_provider.py
from __future__ import annotations

import json
import random
from typing import List

import httpx
import pytest
import respx
from httpx import Response

from chatrelay.orchestration.cancellation import CancellationHandle
from chatrelay.providers.base import CompletionChunk, ProviderError
from chatrelay.providers.mock import MockProvider, mock_reply_for
from chatrelay.providers.openai_compat import OpenAICompatProvider
from chatrelay.utils.tokens import approx_tokens

BASE = "http://provider.test/v1"

STREAM_BODY = (
    b"data: {\"choices\":[{\"delta\":{\"role\":\"assistant\"}}]}\n\n"
    b"data: {\"choices\":[{\"delta\":{\"content\":\"Hel\"}}]}\n\n"
    b": comment\n\n"
    b"data: not-json\n\n"
    b"data: {\"choices\":[{\"delta\":{\"content\":\"lo\"}}]}\n\n"
    b"data: {\"choices\":[],\"usage\":{\"prompt_tokens\":5,\"completion_tokens\":2,\"total_tokens\":7}}\n\n"
    b"data: [DONE]\n\n"
    b"data: {\"choices\":[{\"delta\":{\"content\":\"after done\"}}]}\n\n"
)

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def _provider() -> OpenAICompatProvider:
    return OpenAICompatProvider(base_url=BASE + "/", model="test-model", api_key="sk-test", temperature=0.2)


async def _collect(provider, cancel: CancellationHandle | None = None) -> List[CompletionChunk]:
    out: List[CompletionChunk] = []
    async for chunk in provider.stream(MESSAGES, cancel or CancellationHandle()):
        out.append(chunk)
    return out


@pytest.mark.asyncio
@respx.mock
async def test_openai_stream_fragments_and_usage() -> None:
    route = respx.post(f"{BASE}/chat/completions").mock(return_value=Response(200, content=STREAM_BODY))

    chunks = await _collect(_provider())

    assert [c.content for c in chunks if c.content] == ["Hel", "lo"]
    assert chunks[-1].total_tokens == 7
    sent = json.loads(route.calls.last.request.content)
    assert sent["stream"] is True
    assert sent["stream_options"] == {"include_usage": True}
    assert sent["messages"] == MESSAGES
    assert sent["model"] == "test-model"
    assert route.calls.last.request.headers["authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
@respx.mock
async def test_usage_without_total_is_summed() -> None:
    body = (
        b"data: {\"choices\":[{\"delta\":{\"content\":\"x\"}}],\"usage\":{\"prompt_tokens\":3,\"completion_tokens\":4}}\n\n"
        b"data: [DONE]\n\n"
    )
    respx.post(f"{BASE}/chat/completions").mock(return_value=Response(200, content=body))
    chunks = await _collect(_provider())
    assert chunks == [CompletionChunk(content="x", total_tokens=7)]


@pytest.mark.asyncio
@respx.mock
async def test_chat_404_falls_back_to_completions() -> None:
    respx.post(f"{BASE}/chat/completions").mock(return_value=Response(404, text="no chat here"))
    comp = respx.post(f"{BASE}/completions").mock(return_value=Response(
        200, content=b"data: {\"choices\":[{\"text\":\"plain\"}]}\n\ndata: [DONE]\n\n"
    ))

    chunks = await _collect(_provider())

    assert [c.content for c in chunks] == ["plain"]
    assert json.loads(comp.calls.last.request.content)["prompt"] == "sys\nhi"


@pytest.mark.asyncio
@respx.mock
async def test_upstream_status_error_becomes_provider_error() -> None:
    respx.post(f"{BASE}/chat/completions").mock(return_value=Response(500, text="boom"))
    with pytest.raises(ProviderError) as ei:
        await _collect(_provider())
    assert ei.value.code == 500
    assert "boom" in ei.value.message


@pytest.mark.asyncio
@respx.mock
async def test_unreachable_upstream_becomes_502() -> None:
    respx.post(f"{BASE}/chat/completions").mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(ProviderError) as ei:
        await _collect(_provider())
    assert ei.value.code == 502


@pytest.mark.asyncio
@respx.mock
async def test_cancel_stops_consuming_upstream() -> None:
    respx.post(f"{BASE}/chat/completions").mock(return_value=Response(200, content=STREAM_BODY))
    cancel = CancellationHandle()
    seen: List[str] = []
    async for chunk in _provider().stream(MESSAGES, cancel):
        seen.append(chunk.content)
        cancel.cancel()
    assert seen == ["Hel"]


@pytest.mark.asyncio
async def test_mock_provider_echoes_last_user_message() -> None:
    provider = MockProvider(0, 0, rng=random.Random(1))
    chunks = await _collect(provider)
    text = "".join(c.content for c in chunks)
    assert text == mock_reply_for("hi")
    assert all(len(c.content) == 1 for c in chunks[:-1])
    assert chunks[-1].total_tokens == approx_tokens(text)


@pytest.mark.asyncio
async def test_mock_provider_stops_on_cancel_without_usage() -> None:
    cancel = CancellationHandle()
    out: List[CompletionChunk] = []
    async for chunk in MockProvider(0, 0).stream(MESSAGES, cancel):
        out.append(chunk)
        if len(out) == 5:
            cancel.cancel()
    assert len(out) == 5
    assert all(c.total_tokens is None for c in out)
