"""Pump history storage service.

Owns the canonical pump history log. Every write goes through one merge
cycle: read the stored log, append new records deduplicated by id (first
write wins), drop records outside the retention window, sort newest first,
save the result wholesale, then notify observers with the committed history.

Merge cycles are serialized by an asyncio lock, which hands out access in
submission order, and each cycle runs inside a single document store
transaction so concurrent readers only ever see a fully committed log.
"""

import asyncio
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

from pump_history.config import settings
from pump_history.logging_config import cycle_id_ctx, get_logger
from pump_history.schemas.pump_history import HistoryEvent, RawPumpEvent, Treatment
from pump_history.services.broadcaster import Broadcaster, Topic
from pump_history.services.file_storage import FileStorage
from pump_history.services.normalizer import journal_carbs_event, normalize_pump_events
from pump_history.services.reconciler import reconcile_treatments, sort_history

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PumpHistoryStorage:
    """Durable, deduplicated, 24 hour pump history log."""

    def __init__(
        self,
        storage: FileStorage,
        broadcaster: Broadcaster,
        *,
        retention: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
        entered_by: str | None = None,
    ):
        self._storage = storage
        self._broadcaster = broadcaster
        self._retention = retention or timedelta(hours=settings.history_retention_hours)
        self._clock = clock or _utcnow
        self._entered_by = entered_by or settings.treatment_entered_by
        self._history_key = settings.pump_history_key
        self._uploaded_key = settings.uploaded_treatments_key
        self._process_lock = asyncio.Lock()

    async def store_pump_events(self, events: Iterable[RawPumpEvent]) -> list[HistoryEvent]:
        """Normalize raw pump events and merge them into the history."""
        events = list(events)
        records = normalize_pump_events(events)
        logger.debug(
            "Normalized pump events",
            raw_events=len(events),
            records=len(records),
        )
        return await self._process_new_events(records)

    async def store_journal_carbs(self, grams: int) -> list[HistoryEvent]:
        """Record manually journaled carbs in the history."""
        return await self._process_new_events(
            [journal_carbs_event(grams, timestamp=self._clock())]
        )

    async def recent(self) -> list[HistoryEvent]:
        """Return the committed history, newest first."""
        return await self._storage.retrieve(self._history_key, HistoryEvent) or []

    async def pending_treatments(self) -> list[Treatment]:
        """Treatments derivable from history that were not uploaded yet."""
        history = await self.recent()
        if not history:
            return []

        uploaded = await self._storage.retrieve(self._uploaded_key, Treatment) or []
        pending = reconcile_treatments(history, uploaded, entered_by=self._entered_by)
        logger.debug(
            "Reconciled treatments",
            history=len(history),
            uploaded=len(uploaded),
            pending=len(pending),
        )
        return pending

    def _in_window(self, event: HistoryEvent, now: datetime) -> bool:
        return event.timestamp + self._retention > now

    async def _process_new_events(self, records: list[HistoryEvent]) -> list[HistoryEvent]:
        async with self._process_lock:
            token = cycle_id_ctx.set(uuid.uuid4().hex[:12])
            try:
                history = await self._merge(records)
            finally:
                cycle_id_ctx.reset(token)

        self._broadcaster.notify(Topic.HISTORY_UPDATED, history)
        return history

    async def _merge(self, records: list[HistoryEvent]) -> list[HistoryEvent]:
        async with self._storage.transaction() as tx:
            appended = await tx.append(self._history_key, records, uniq_by=lambda e: e.id)
            stored = await tx.retrieve(self._history_key, HistoryEvent) or []

            now = self._clock()
            history = sort_history(e for e in stored if self._in_window(e, now))
            await tx.save(self._history_key, history)

        logger.info(
            "Pump history merged",
            received=len(records),
            stored=len(appended),
            evicted=len(stored) - len(history),
            total=len(history),
        )
        return history
