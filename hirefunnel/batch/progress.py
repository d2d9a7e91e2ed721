"""
Batch progress events and their delivery.

The coordinator is the only publisher.  Events for one batch reach each
subscriber in publication order; a subscriber that raises is logged and
skipped.  Subscriptions for a batch are dropped once its final event
(``completed``, ``cancelled`` or ``error``) has been delivered.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

EVENT_PROGRESS = "progress"
EVENT_COMPLETED = "completed"
EVENT_CANCELLED = "cancelled"
EVENT_ERROR = "error"
FINAL_EVENTS = (EVENT_COMPLETED, EVENT_CANCELLED, EVENT_ERROR)


@dataclass
class ItemOutcome:
    candidate_id: str
    file_name: str
    success: bool
    error: Optional[str] = None


@dataclass
class BatchEvent:
    kind: str
    batch_id: str
    processed: int
    failed: int
    total: int
    current_file: Optional[str] = None
    outcomes: List[ItemOutcome] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def percentage(self) -> float:
        return round((self.processed / self.total) * 100, 1) if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["percentage"] = self.percentage
        return data


Subscriber = Callable[[BatchEvent], Union[None, Awaitable[None]]]


class ProgressBroadcaster:
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._global: List[Subscriber] = []
        self._lock = asyncio.Lock()

    def subscribe(self, batch_id: str, callback: Subscriber) -> Callable[[], None]:
        """Receive events for ``batch_id``; returns a callable that unsubscribes."""
        self._subscribers.setdefault(batch_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(batch_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[batch_id]

        return unsubscribe

    def subscribe_all(self, callback: Subscriber) -> Callable[[], None]:
        """Receive events for every batch until explicitly unsubscribed."""
        self._global.append(callback)

        def unsubscribe() -> None:
            if callback in self._global:
                self._global.remove(callback)

        return unsubscribe

    def subscriber_count(self, batch_id: str) -> int:
        return len(self._subscribers.get(batch_id, []))

    async def publish(self, event: BatchEvent) -> None:
        async with self._lock:
            callbacks = list(self._subscribers.get(event.batch_id, [])) + list(self._global)
            for callback in callbacks:
                try:
                    result = callback(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception:  # noqa: BLE001
                    logger.exception("Progress subscriber failed for batch %s", event.batch_id)
            if event.kind in FINAL_EVENTS:
                self._subscribers.pop(event.batch_id, None)
