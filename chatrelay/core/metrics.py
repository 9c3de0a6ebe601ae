# chatrelay/core/metrics.py
from __future__ import annotations

from prometheus_client import Counter

CHAT_STREAMS = Counter("chat_streams_total", "Chat streams by terminal outcome", ["kind", "outcome"])
CHAT_TOKENS_RELAYED = Counter("chat_tokens_relayed_total", "Token events relayed to clients", ["kind"])
CHAT_ABORTS = Counter("chat_abort_requests_total", "Abort requests by outcome", ["outcome"])
