"""Treatment reconciliation.

Derives Nightscout treatments from the canonical pump history and removes
those that were already uploaded. Everything here is a pure function of its
arguments.

Temp basal pairing is positional: every rate record opens a treatment, and
the next temp basal record fills in its duration when it is the matching
duration record. ``sort_history`` keeps each rate record directly ahead of
its own duration record and is the ordering the store persists.
"""

from collections.abc import Iterable, Sequence

from pump_history.config import settings
from pump_history.schemas.pump_history import (
    HistoryEvent,
    HistoryEventType,
    Treatment,
    TreatmentEventType,
)
from pump_history.services.normalizer import TEMP_BASAL_RATE_ID_PREFIX

_TEMP_BASAL_TYPES = (HistoryEventType.TEMP_BASAL, HistoryEventType.TEMP_BASAL_DURATION)

# Within one temp basal pair the rate record sorts first
_TIE_BREAK: dict[HistoryEventType, int] = {
    HistoryEventType.TEMP_BASAL: 0,
    HistoryEventType.TEMP_BASAL_DURATION: 1,
}
_DEFAULT_TIE_BREAK = 2


def _pair_id(event: HistoryEvent) -> str:
    """Id shared by both halves of a temp basal pair."""
    if event.type in _TEMP_BASAL_TYPES:
        return event.id.removeprefix(TEMP_BASAL_RATE_ID_PREFIX)
    return event.id


def sort_history(events: Iterable[HistoryEvent]) -> list[HistoryEvent]:
    """Sort history newest first, rate records directly ahead of their durations.

    Records sharing a timestamp are grouped by pair id, so two temp basals
    set at the same instant never interleave.
    """
    return sorted(
        events,
        key=lambda e: (
            -e.timestamp.timestamp(),
            _pair_id(e),
            _TIE_BREAK.get(e.type, _DEFAULT_TIE_BREAK),
        ),
    )


def _completes(treatment: Treatment, duration: HistoryEvent) -> bool:
    rate = treatment.raw_rate
    return (
        treatment.raw_duration is None
        and rate is not None
        and treatment.created_at == duration.timestamp
        and _pair_id(rate) == duration.id
    )


def _temp_basal_treatments(
    history: Sequence[HistoryEvent], entered_by: str
) -> list[Treatment]:
    treatments: list[Treatment] = []

    for event in history:
        if event.type == HistoryEventType.TEMP_BASAL:
            treatments.append(
                Treatment(
                    event_type=TreatmentEventType.TEMP_BASAL,
                    created_at=event.timestamp,
                    entered_by=entered_by,
                    raw_rate=event,
                    absolute=event.rate,
                    rate=event.rate,
                )
            )
        elif event.type == HistoryEventType.TEMP_BASAL_DURATION:
            # A duration without its open rate treatment is dropped
            if treatments and _completes(treatments[-1], event):
                treatments[-1] = treatments[-1].model_copy(
                    update={"duration": event.duration_min, "raw_duration": event}
                )

    return treatments


def _bolus_and_carb_treatments(
    history: Sequence[HistoryEvent], entered_by: str
) -> list[Treatment]:
    treatments: list[Treatment] = []
    for event in history:
        if event.type == HistoryEventType.BOLUS:
            treatments.append(
                Treatment(
                    event_type=TreatmentEventType.BOLUS,
                    created_at=event.timestamp,
                    entered_by=entered_by,
                    duration=event.duration,
                    bolus=event,
                    insulin=event.amount,
                )
            )
        elif event.type == HistoryEventType.JOURNAL_CARBS:
            treatments.append(
                Treatment(
                    event_type=TreatmentEventType.CARB_CORRECTION,
                    created_at=event.timestamp,
                    entered_by=entered_by,
                    carbs=event.carb_input or 0,
                )
            )
    return treatments


def derive_treatments(
    history: Sequence[HistoryEvent],
    entered_by: str | None = None,
) -> list[Treatment]:
    """Derive every treatment the given newest-first history supports.

    Temp basals come first, followed by boluses and carb corrections, each
    group in history order. Suspend, resume, rewind and prime records never
    produce treatments.
    """
    entered_by = entered_by or settings.treatment_entered_by
    return _temp_basal_treatments(history, entered_by) + _bolus_and_carb_treatments(
        history, entered_by
    )


def reconcile_treatments(
    history: Sequence[HistoryEvent],
    uploaded: Iterable[Treatment],
    entered_by: str | None = None,
) -> list[Treatment]:
    """Return derived treatments not present in the uploaded snapshot.

    The result is sorted newest first by ``created_at``. Snapshot order is
    irrelevant; membership uses structural treatment equality.
    """
    if not history:
        return []

    uploaded_set = set(uploaded)
    pending = [t for t in derive_treatments(history, entered_by) if t not in uploaded_set]
    return sorted(pending, key=lambda t: t.created_at, reverse=True)
