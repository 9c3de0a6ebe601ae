# tests/conftest.py
from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import AsyncIterator, Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from apps.api.main import create_app
from chatrelay.core.auth import Principal, encode_access_token
from chatrelay.core.settings import AppSettings
from chatrelay.orchestration.cancellation import CancellationHandle
from chatrelay.providers.base import CompletionChunk, ProviderError
from chatrelay.storage.models import Message, utcnow
from chatrelay.storage.repo import init_models

PROVIDER_BASE = "http://provider.test/v1"


class ScriptedProvider:
    """Provider double: plays back fixed fragments, optionally failing partway."""

    name = "scripted"

    def __init__(
        self,
        fragments: List[str],
        total_tokens: Optional[int] = None,
        fail_after: Optional[int] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.fragments = fragments
        self.total_tokens = total_tokens
        self.fail_after = fail_after
        self.error = error or ProviderError(502, "upstream exploded")
        self.delay = delay
        self.calls: List[List[Dict[str, str]]] = []

    async def stream(self, messages: List[Dict[str, str]], cancel: CancellationHandle) -> AsyncIterator[CompletionChunk]:
        self.calls.append(messages)
        for i, frag in enumerate(self.fragments):
            if self.fail_after is not None and i >= self.fail_after:
                raise self.error
            if cancel.cancelled:
                return
            yield CompletionChunk(content=frag)
            await asyncio.sleep(self.delay)
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise self.error
        if self.total_tokens is not None and not cancel.cancelled:
            yield CompletionChunk(total_tokens=self.total_tokens)


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    return AppSettings(
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        provider_base_url=PROVIDER_BASE,
        provider_api_key="sk-test",
        provider_model="test-model",
        access_token_secret="test-secret",
        mock_stream_delay_min_ms=0,
        mock_stream_delay_max_ms=0,
    )


@pytest.fixture
async def app(settings):
    application = create_app(settings)
    await init_models(application.state.engine)
    await application.state.agents.save_agent(agent_id="a1", name="Helper", system_prompt="You are terse.")
    yield application
    await application.state.relay.drain()
    await application.state.engine.dispose()


@pytest.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def principal() -> Principal:
    return Principal(principal_id="u1", display_name="alice")


@pytest.fixture
def auth_headers(settings, principal) -> Dict[str, str]:
    token = encode_access_token(principal.principal_id, principal.display_name, settings)
    return {"Authorization": f"Bearer {token}"}


async def seed_history(app, thread_id: str, count: int) -> List[str]:
    """Insert ``count`` alternating messages one second apart, all in the past."""
    base = utcnow() - timedelta(hours=1)
    contents = []
    async with app.state.chats.session_scope() as s:
        for i in range(count):
            content = f"m{i}"
            contents.append(content)
            s.add(Message(
                thread_id=thread_id,
                id=f"{thread_id}-m{i}",
                role="user" if i % 2 == 0 else "assistant",
                content=content,
                token=0,
                created_at=base + timedelta(seconds=i),
                seq=i + 1,
            ))
    return contents
