"""Pump event normalization.

Translates raw driver events into canonical history records. A raw event
becomes zero, one or two records; temp basals expand into a duration record
and a rate record that share the raw timestamp.
"""

import hashlib
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime

from pump_history.logging_config import get_logger
from pump_history.schemas.pump_history import (
    HistoryEvent,
    HistoryEventType,
    PumpEventKind,
    RawPumpEvent,
    TempType,
)

logger = get_logger(__name__)

# Prefix that keeps the rate record's id distinct from its duration record
TEMP_BASAL_RATE_ID_PREFIX = "_"

# Kinds that map onto a single record carrying no dose data
_MARKER_TYPES: dict[PumpEventKind, HistoryEventType] = {
    PumpEventKind.SUSPEND: HistoryEventType.PUMP_SUSPEND,
    PumpEventKind.RESUME: HistoryEventType.PUMP_RESUME,
    PumpEventKind.REWIND: HistoryEventType.REWIND,
    PumpEventKind.PRIME: HistoryEventType.PRIME,
}


def event_identity(raw: bytes) -> str:
    """Derive the stable id of a pump-sourced record from its raw bytes.

    The digest is a deduplication key, not a security primitive: it only has
    to map the same payload to the same id on every retry. MD5 is kept for
    compatibility with ids already persisted.
    """
    return hashlib.md5(raw, usedforsecurity=False).hexdigest()


def normalize_pump_event(event: RawPumpEvent) -> list[HistoryEvent]:
    """Convert one raw pump event into canonical history records.

    Unknown kinds and bolus/temp basal events without dose data produce an
    empty list.
    """
    event_id = event_identity(event.raw)

    if event.kind == PumpEventKind.BOLUS:
        if event.dose is None:
            logger.debug("Dropping bolus without dose", event_id=event_id)
            return []
        return [
            HistoryEvent(
                id=event_id,
                type=HistoryEventType.BOLUS,
                timestamp=event.date,
                amount=event.dose.units,
                duration=event.dose.duration_minutes,
            )
        ]

    if event.kind == PumpEventKind.TEMP_BASAL:
        if event.dose is None:
            logger.debug("Dropping temp basal without dose", event_id=event_id)
            return []
        return [
            HistoryEvent(
                id=event_id,
                type=HistoryEventType.TEMP_BASAL_DURATION,
                timestamp=event.date,
                duration_min=event.dose.duration_minutes,
            ),
            HistoryEvent(
                id=TEMP_BASAL_RATE_ID_PREFIX + event_id,
                type=HistoryEventType.TEMP_BASAL,
                timestamp=event.date,
                rate=event.dose.units_per_hour,
                temp=TempType.ABSOLUTE,
            ),
        ]

    history_type = _MARKER_TYPES.get(event.kind) if event.kind else None
    if history_type is None:
        logger.debug(
            "Dropping unmapped pump event",
            event_id=event_id,
            kind=event.kind,
        )
        return []

    return [HistoryEvent(id=event_id, type=history_type, timestamp=event.date)]


def normalize_pump_events(events: Iterable[RawPumpEvent]) -> list[HistoryEvent]:
    """Normalize a batch of raw events, preserving input order."""
    return [record for event in events for record in normalize_pump_event(event)]


def journal_carbs_event(grams: int, timestamp: datetime | None = None) -> HistoryEvent:
    """Build a journaled carbs record.

    There is no raw payload to hash, so every call gets a fresh random id.
    """
    return HistoryEvent(
        id=str(uuid.uuid4()),
        type=HistoryEventType.JOURNAL_CARBS,
        timestamp=timestamp or datetime.now(UTC),
        carb_input=grams,
    )
