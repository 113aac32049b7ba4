"""Topic-based observer registry.

Delivery is fire-and-forget: ``notify`` schedules one task per subscriber on
the running event loop and returns immediately. A failing subscriber is
logged and never affects the notifier or the other subscribers.
"""

import asyncio
import inspect
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Protocol

from pump_history.logging_config import get_logger
from pump_history.schemas.pump_history import HistoryEvent

logger = get_logger(__name__)


class Topic(StrEnum):
    HISTORY_UPDATED = "history_updated"


class PumpHistoryObserver(Protocol):
    """Receives the committed, newest-first history after every merge."""

    def pump_history_did_update(self, events: list[HistoryEvent]) -> Any: ...


class Broadcaster:
    """Fan-out delivery of notifications to topic subscribers."""

    def __init__(self) -> None:
        self._subscribers: dict[Topic, list[Callable[..., Any]]] = {}
        self._pending: set[asyncio.Task] = set()

    def register(self, topic: Topic, callback: Callable[..., Any]) -> None:
        subscribers = self._subscribers.setdefault(topic, [])
        if callback not in subscribers:
            subscribers.append(callback)

    def unregister(self, topic: Topic, callback: Callable[..., Any]) -> None:
        subscribers = self._subscribers.get(topic, [])
        if callback in subscribers:
            subscribers.remove(callback)

    def subscribers(self, topic: Topic) -> list[Callable[..., Any]]:
        return list(self._subscribers.get(topic, []))

    def notify(self, topic: Topic, *args: Any) -> int:
        """Schedule delivery of ``args`` to every subscriber of ``topic``.

        Must be called from inside a running event loop. Returns the number
        of deliveries scheduled.
        """
        callbacks = self.subscribers(topic)
        for callback in callbacks:
            task = asyncio.create_task(self._deliver(topic, callback, args))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return len(callbacks)

    async def drain(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def _deliver(
        self, topic: Topic, callback: Callable[..., Any], args: tuple[Any, ...]
    ) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Observer failed to handle notification",
                topic=topic.value,
                observer=getattr(callback, "__qualname__", repr(callback)),
            )


def register_observer(broadcaster: Broadcaster, observer: PumpHistoryObserver) -> None:
    """Subscribe an observer object to history updates."""
    broadcaster.register(Topic.HISTORY_UPDATED, observer.pump_history_did_update)
