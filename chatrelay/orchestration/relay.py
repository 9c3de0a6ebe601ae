# chatrelay/orchestration/relay.py
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from sqlalchemy.exc import IntegrityError

from chatrelay.core.auth import Principal
from chatrelay.core.logging import log_context
from chatrelay.core.metrics import CHAT_STREAMS, CHAT_TOKENS_RELAYED
from chatrelay.core.settings import AppSettings
from chatrelay.orchestration.cancellation import (
    LIVE,
    CancellationHandle,
    CancellationRegistry,
    stream_key,
)
from chatrelay.orchestration.context_builder import assemble_messages
from chatrelay.orchestration.sse import format_event
from chatrelay.providers.base import CompletionProvider, ProviderError
from chatrelay.storage.models import Thread
from chatrelay.storage.repo import AgentRepo, ChatRepo
from chatrelay.utils.tokens import approx_tokens_messages, truncate_title

logger = logging.getLogger("app.relay")

MISSING_FIELDS_MESSAGE = "agent_id, thread_id, and content are required"
INTERNAL_ERROR_MESSAGE = "Internal server error"
PERSIST_ERROR_MESSAGE = "Failed to save reply"


class RelayError(Exception):
    """Failure that ends a turn with an ``error`` event before streaming starts."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class ChatTurn:
    agent_id: Optional[str]
    thread_id: Optional[str]
    content: Optional[str]

    def missing_fields(self) -> bool:
        return not (self.agent_id and self.thread_id and self.content)


@dataclass(frozen=True)
class RelayEvent:
    name: str
    data: Dict[str, Any] = field(default_factory=dict)

    def encode(self) -> bytes:
        return format_event(self.name, self.data)


def _error(code: int, message: str) -> RelayEvent:
    return RelayEvent("error", {"code": code, "message": message})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StreamRelay:
    """Runs one chat turn: persist input, build context, stream the provider, persist output.

    ``run`` yields the event sequence ``start``, ``token``*, then exactly one of
    ``end`` / ``error``. It never raises into the caller.
    """

    def __init__(
        self,
        chats: ChatRepo,
        agents: AgentRepo,
        registry: CancellationRegistry,
        settings: AppSettings,
    ) -> None:
        self.chats = chats
        self.agents = agents
        self.registry = registry
        self.history_limit = settings.chat_history_limit
        self.title_max_chars = settings.thread_title_max_chars
        self.default_system_prompt = settings.default_system_prompt
        self._detached: Set[asyncio.Task] = set()

    async def _prepare(self, principal: Principal, turn: ChatTurn) -> List[Dict[str, str]]:
        pid = principal.principal_id
        thread: Optional[Thread] = await self.chats.find_thread(turn.thread_id, pid)
        if thread is None:
            if await self.chats.get_thread(turn.thread_id) is not None:
                raise RelayError(403, "Thread not found or access denied")
            version = await self.agents.get_latest_version(turn.agent_id)
            if version is None:
                raise RelayError(404, "Agent not found")
            try:
                thread = await self.chats.create_thread(
                    thread_id=turn.thread_id,
                    user_id=pid,
                    agent_id=turn.agent_id,
                    agent_version=version,
                    title=truncate_title(turn.content, self.title_max_chars),
                )
                logger.info({"event": "thread_created", "agent_id": thread.agent_id, "agent_version": version})
            except IntegrityError:
                # a concurrent first turn on the same id won the insert
                thread = await self.chats.find_thread(turn.thread_id, pid)
                if thread is None:
                    raise RelayError(403, "Thread not found or access denied")
                await self.chats.touch_thread(thread.id)
        else:
            await self.chats.touch_thread(thread.id)

        user_msg = await self.chats.append_message(thread.id, "user", turn.content, token=0)
        history = await self.chats.list_recent_messages(thread.id, user_msg.id, self.history_limit)

        if await self.agents.get_latest_version(thread.agent_id) is None:
            raise RelayError(404, "Agent not found")
        system_prompt = await self.agents.get_system_prompt(thread.agent_id, thread.agent_version)
        return assemble_messages(
            system_prompt or self.default_system_prompt,
            history,
            turn.content,
            limit=self.history_limit,
        )

    async def run(
        self,
        principal: Principal,
        turn: ChatTurn,
        provider: CompletionProvider,
        *,
        handle: Optional[CancellationHandle] = None,
        namespace: str = LIVE,
    ) -> AsyncIterator[RelayEvent]:
        if turn.missing_fields():
            CHAT_STREAMS.labels(kind=namespace, outcome="invalid").inc()
            yield _error(400, MISSING_FIELDS_MESSAGE)
            return

        handle = handle or CancellationHandle()
        key = stream_key(principal.principal_id, turn.thread_id, namespace)

        try:
            messages = await self._prepare(principal, turn)
        except RelayError as e:
            logger.warning({"event": "relay_rejected", "code": e.code, "error": e.message})
            CHAT_STREAMS.labels(kind=namespace, outcome="error").inc()
            yield _error(e.code, e.message)
            return
        except Exception as e:  # noqa: BLE001
            logger.exception({"event": "relay_prepare_failed", "error": str(e)})
            CHAT_STREAMS.labels(kind=namespace, outcome="error").inc()
            yield _error(500, INTERNAL_ERROR_MESSAGE)
            return

        message_id = uuid.uuid4().hex
        collected: List[str] = []
        total_tokens = 0
        failure: Optional[ProviderError] = None

        # visible to abort requests before the client learns the message id
        self.registry.register(key, handle)
        try:
            logger.info({
                "event": "relay_start",
                "message_id": message_id,
                "history": len(messages) - 2,
                "prompt_tokens_approx": approx_tokens_messages(messages),
            })
            yield RelayEvent("start", {"messageId": message_id, "role": "assistant", "createdAt": _now_iso()})

            stream = provider.stream(messages, handle)
            try:
                async for chunk in stream:
                    if handle.cancelled:
                        break
                    if chunk.total_tokens is not None:
                        total_tokens = chunk.total_tokens
                    if chunk.content:
                        collected.append(chunk.content)
                        CHAT_TOKENS_RELAYED.labels(kind=namespace).inc()
                        yield RelayEvent("token", {"messageId": message_id, "content": chunk.content})
            except ProviderError as e:
                failure = e
            except Exception as e:  # noqa: BLE001
                logger.exception({"event": "relay_stream_failed", "message_id": message_id, "error": str(e)})
                failure = ProviderError(500, INTERNAL_ERROR_MESSAGE)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            cancelled = handle.cancelled
            text = "".join(collected)
            if failure is not None and not cancelled:
                logger.warning({"event": "relay_provider_error", "message_id": message_id, "code": failure.code,
                                "error": failure.message, "partial_chars": len(text)})

            if text:
                try:
                    await self.chats.append_message(
                        turn.thread_id, "assistant", text, token=total_tokens, message_id=message_id
                    )
                except Exception as e:  # noqa: BLE001
                    logger.exception({"event": "relay_persist_failed", "message_id": message_id,
                                      "cancelled": cancelled, "error": str(e)})
                    # an aborted turn still ends as aborted, e.g. when its thread was deleted
                    if not cancelled:
                        CHAT_STREAMS.labels(kind=namespace, outcome="error").inc()
                        yield _error(500, PERSIST_ERROR_MESSAGE)
                        return
            elif failure is not None and not cancelled:
                CHAT_STREAMS.labels(kind=namespace, outcome="error").inc()
                yield _error(failure.code, failure.message)
                return

            status = "aborted" if cancelled else "usage"
            logger.info({"event": "relay_end", "message_id": message_id, "status": status,
                         "chars": len(text), "total_tokens": total_tokens})
            CHAT_STREAMS.labels(kind=namespace, outcome=status).inc()
            yield RelayEvent(
                "end",
                {"messageId": message_id, "role": "assistant", "status": status, "totalTokens": total_tokens},
            )
        finally:
            self.registry.unregister(key, handle)

    async def sse(
        self,
        principal: Principal,
        turn: ChatTurn,
        provider: CompletionProvider,
        *,
        namespace: str = LIVE,
    ) -> AsyncIterator[bytes]:
        """Encoded event stream for an HTTP response.

        The turn runs in its own task feeding a queue. If the client goes away
        the handle is cancelled and the task is left to persist what it has and
        release its registry entry.
        """
        handle = CancellationHandle()
        queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()

        async def produce() -> None:
            # runs in its own task, so the bound fields stay with this turn
            with log_context(thread_id=turn.thread_id, user_id=principal.principal_id,
                             provider=provider.name, stream=namespace):
                try:
                    async for ev in self.run(principal, turn, provider, handle=handle, namespace=namespace):
                        await queue.put(ev.encode())
                finally:
                    queue.put_nowait(None)

        task = asyncio.create_task(produce())
        self._detached.add(task)
        task.add_done_callback(self._turn_done)
        try:
            while True:
                frame = await queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            if not task.done():
                logger.info({"event": "client_disconnected", "thread_id": turn.thread_id,
                             "user_id": principal.principal_id})
                handle.cancel()

    def _turn_done(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error({"event": "relay_task_failed", "error": repr(exc)}, exc_info=exc)

    @property
    def pending_turns(self) -> int:
        return len(self._detached)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for turns still finishing after their client disconnected.

        Turns still running after ``timeout`` are cancelled and awaited, so
        nothing touches the database once this returns.
        """
        pending = list(self._detached)
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning({"event": "relay_drain_timeout", "cancelled_turns": len(still_running)})
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
