# chatrelay/providers/mock.py
from __future__ import annotations

import asyncio
import random
from typing import AsyncIterator, Dict, List, Optional

from chatrelay.core.settings import AppSettings
from chatrelay.orchestration.cancellation import CancellationHandle
from chatrelay.providers.base import CompletionChunk
from chatrelay.utils.tokens import approx_tokens

MOCK_REPLY_TEMPLATE = (
    'Hello! I received your message: "{content}".\n\n'
    "This is a test endpoint that simulates an AI reply. It can be used to check:\n\n"
    "1. **Streaming output**: the reply arrives one character at a time\n"
    "2. **Markdown rendering**: code blocks, lists and the like\n"
    "3. **Interruption**: generation can be stopped at any point\n\n"
    "Let me know if you have any questions!"
)


def mock_reply_for(content: str) -> str:
    return MOCK_REPLY_TEMPLATE.format(content=content)


class MockProvider:
    """Offline provider: streams a canned echo reply character by character."""

    name = "mock"

    def __init__(self, delay_min_ms: int = 20, delay_max_ms: int = 50, rng: Optional[random.Random] = None) -> None:
        self.delay_min_ms = max(0, delay_min_ms)
        self.delay_max_ms = max(self.delay_min_ms, delay_max_ms)
        self._rng = rng or random.Random()

    def _delay(self) -> float:
        if self.delay_max_ms <= 0:
            return 0.0
        return self._rng.uniform(self.delay_min_ms, self.delay_max_ms) / 1000.0

    async def stream(
        self,
        messages: List[Dict[str, str]],
        cancel: CancellationHandle,
    ) -> AsyncIterator[CompletionChunk]:
        last_user = next((m.get("content", "") for m in reversed(messages) if m.get("role") == "user"), "")
        reply = mock_reply_for(last_user)
        produced: List[str] = []
        for ch in reply:
            if cancel.cancelled:
                return
            produced.append(ch)
            yield CompletionChunk(content=ch)
            await asyncio.sleep(self._delay())
        if cancel.cancelled:
            return
        yield CompletionChunk(total_tokens=approx_tokens("".join(produced)))


def get_mock_provider(settings: AppSettings) -> MockProvider:
    return MockProvider(settings.mock_stream_delay_min_ms, settings.mock_stream_delay_max_ms)
