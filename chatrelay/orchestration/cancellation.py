# chatrelay/orchestration/cancellation.py
from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Tuple

logger = logging.getLogger("app.cancellation")

# (namespace, principal id, thread id); namespace separates live and test streams
StreamKey = Tuple[str, str, str]

LIVE = "live"
TEST = "test"


def stream_key(principal_id: str, thread_id: str, namespace: str = LIVE) -> StreamKey:
    return (namespace, principal_id, thread_id)


class CancellationHandle:
    """Cooperative stop signal shared by the relay, the provider and the registry.

    Nothing is interrupted: whoever holds the handle polls ``cancelled`` at its
    own checkpoints.
    """

    __slots__ = ("_flag",)

    def __init__(self) -> None:
        self._flag = threading.Event()

    def cancel(self) -> None:
        self._flag.set()

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def __repr__(self) -> str:
        return f"CancellationHandle(cancelled={self.cancelled})"


class CancellationRegistry:
    """In-memory map from an active stream key to its cancellation handle.

    Last writer wins per key. Every operation holds the same lock, so a cancel
    racing a register or unregister on one key never leaves a dangling entry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[StreamKey, CancellationHandle] = {}

    def register(self, key: StreamKey, handle: CancellationHandle) -> None:
        with self._lock:
            replaced = self._entries.get(key)
            self._entries[key] = handle
        if replaced is not None and replaced is not handle:
            logger.info({"event": "stream_key_overwritten", "namespace": key[0], "thread_id": key[2]})

    def cancel(self, key: StreamKey) -> bool:
        with self._lock:
            handle = self._entries.pop(key, None)
            if handle is None:
                return False
            handle.cancel()
        return True

    def unregister(self, key: StreamKey, handle: Optional[CancellationHandle] = None) -> None:
        """Drop the entry for ``key``.

        With ``handle`` given, the entry is only dropped while it still points at
        that handle, so a finished stream cannot evict a newer one on the same key.
        """
        with self._lock:
            current = self._entries.get(key)
            if current is None:
                return
            if handle is not None and current is not handle:
                return
            del self._entries[key]

    def get(self, key: StreamKey) -> Optional[CancellationHandle]:
        with self._lock:
            return self._entries.get(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
