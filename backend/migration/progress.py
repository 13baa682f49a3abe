"""
In-process progress channel for history imports (Server-Sent Events).

Why:
    Imports run inside one request while the admin UI watches a second,
    long-lived SSE request keyed by a client-chosen session id. The registry
    joins the two: the orchestrator publishes, the stream request relays.

Design:
    - One `ProgressRegistry` per process, created at app start and injected
      (`app.state.progress_registry`); there is no module-level registry.
    - At most one subscriber per session id. A subscription registers when
      its stream starts; a new one replaces the old, which ends its stream.
    - Each subscription owns an `asyncio.Queue`; publish order is delivery
      order. After each idle heartbeat interval the stream yields `:ping`.
    - Cleanup happens in the stream's `finally`, so disconnects, cancellation
      and `aclose()` all drop the registry entry (only if still current).

Thread Safety:
    asyncio only; call from the event loop that serves the requests.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Mapping, Optional


logger = logging.getLogger("volunteer_portal.migration.progress")

HEARTBEAT_INTERVAL_SECONDS = 30.0
HEARTBEAT_FRAME = ":ping\n\n"

_CLOSE = object()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_sse(event: Mapping[str, Any]) -> str:
    """Frame one event as an SSE `data:` message."""
    return f"data: {json.dumps(dict(event), default=str)}\n\n"


class ProgressSubscription:
    def __init__(self, registry: "ProgressRegistry", session_id: str) -> None:
        self.session_id = session_id
        self._registry = registry
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: Dict[str, Any]) -> None:
        if self._closed:
            raise RuntimeError("subscription closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        """End the stream after already queued events have been relayed."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSE)

    async def stream(self, heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS) -> AsyncIterator[str]:
        if heartbeat_interval <= 0:
            raise ValueError(f"heartbeat_interval must be > 0, got {heartbeat_interval}")
        # Registered on first iteration; a stream that never starts leaves no entry
        self._registry._attach(self)
        try:
            yield format_sse(
                {"type": "connected", "message": "Progress stream connected", "timestamp": _utc_now_iso()}
            )
            while True:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=heartbeat_interval)
                except asyncio.TimeoutError:
                    yield HEARTBEAT_FRAME
                    continue
                if item is _CLOSE:
                    break
                yield format_sse(item)
        finally:
            self._closed = True
            self._registry._discard(self)
            logger.info("Progress stream closed session=%s", self.session_id)


class ProgressRegistry:
    """Session id -> active subscription."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, ProgressSubscription] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._subscriptions

    def get(self, session_id: str) -> Optional[ProgressSubscription]:
        return self._subscriptions.get(session_id)

    def subscribe(self, session_id: str) -> ProgressSubscription:
        """Create a subscription; it becomes current once its stream starts."""
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValueError("session_id required")
        return ProgressSubscription(self, session_id)

    def publish(self, session_id: str, event: Mapping[str, Any]) -> bool:
        """Queue `event` for the session's subscriber; False when nobody listens."""
        subscription = self._subscriptions.get(session_id) if session_id else None
        if subscription is None or subscription.closed:
            return False
        try:
            payload = dict(event)
            payload["timestamp"] = _utc_now_iso()
            subscription.deliver(payload)
        except Exception as exc:
            logger.warning("Progress publish failed session=%s: %s", session_id, exc.__class__.__name__)
            self._discard(subscription)
            return False
        return True

    def _attach(self, subscription: ProgressSubscription) -> None:
        previous = self._subscriptions.get(subscription.session_id)
        self._subscriptions[subscription.session_id] = subscription
        if previous is not None and previous is not subscription:
            previous.close()
            logger.info("Progress subscriber replaced session=%s", subscription.session_id)

    def _discard(self, subscription: ProgressSubscription) -> None:
        if self._subscriptions.get(subscription.session_id) is subscription:
            del self._subscriptions[subscription.session_id]


__all__ = [
    "HEARTBEAT_INTERVAL_SECONDS",
    "HEARTBEAT_FRAME",
    "ProgressRegistry",
    "ProgressSubscription",
    "format_sse",
]
