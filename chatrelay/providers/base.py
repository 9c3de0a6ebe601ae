# chatrelay/providers/base.py
from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Protocol

from chatrelay.orchestration.cancellation import CancellationHandle


@dataclass(frozen=True)
class CompletionChunk:
    """One item of a completion stream: a text fragment, a usage report, or both."""

    content: str = ""
    total_tokens: Optional[int] = None


class ProviderError(Exception):
    """Transport or upstream failure. Cancellation is never reported this way."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class CompletionProvider(Protocol):
    name: str

    def stream(
        self,
        messages: List[Dict[str, str]],
        cancel: CancellationHandle,
    ) -> AsyncIterator[CompletionChunk]:
        """Yield chunks for one completion; stop at the next fragment once ``cancel`` is set.

        Raises ProviderError on transport/provider failure. One call per turn;
        the iterator is not restartable.
        """
        ...
