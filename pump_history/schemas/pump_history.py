"""Pump history schemas.

Pydantic models for raw pump events coming from the driver layer, the
canonical history records kept in the store, and the treatment records
prepared for Nightscout.

History records serialize with the oref0 pumphistory field names and
treatments with the Nightscout field names, so documents written by this
package can be read by the tools that consume those formats.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _field_values(model: BaseModel) -> tuple:
    return tuple(getattr(model, name) for name in type(model).model_fields)


class PumpEventKind(StrEnum):
    """Event kinds reported by the pump driver."""

    ALARM = "alarm"
    ALARM_CLEAR = "alarmClear"
    BASAL = "basal"
    BOLUS = "bolus"
    PRIME = "prime"
    RESUME = "resume"
    REWIND = "rewind"
    SUSPEND = "suspend"
    TEMP_BASAL = "tempBasal"
    REPLACE_COMPONENT = "replaceComponent"


class HistoryEventType(StrEnum):
    """Canonical history record kinds."""

    BOLUS = "Bolus"
    TEMP_BASAL_DURATION = "TempBasalDuration"
    TEMP_BASAL = "TempBasal"  # the rate half of a temp basal
    PUMP_SUSPEND = "PumpSuspend"
    PUMP_RESUME = "PumpResume"
    REWIND = "Rewind"
    PRIME = "Prime"
    JOURNAL_CARBS = "JournalEntryMealMarker"


class TempType(StrEnum):
    ABSOLUTE = "absolute"


class TreatmentEventType(StrEnum):
    """Nightscout treatment event types produced from pump history."""

    TEMP_BASAL = "Temp Basal"
    BOLUS = "Bolus"
    CARB_CORRECTION = "Carb Correction"


class DoseEntry(BaseModel):
    """Dose information attached to a raw bolus or temp basal event."""

    model_config = ConfigDict(frozen=True)

    start_date: datetime
    end_date: datetime
    units: Decimal | None = None  # delivered bolus units
    units_per_hour: Decimal | None = None  # temp basal rate

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @property
    def duration_minutes(self) -> int:
        """Whole minutes between start and end, truncated toward zero."""
        return int((self.end_date - self.start_date).total_seconds() / 60)


class RawPumpEvent(BaseModel):
    """A pump event as reported by the driver layer.

    ``raw`` is the byte payload the pump reported for this event; it is the
    only input to the event identity.
    """

    model_config = ConfigDict(frozen=True)

    kind: PumpEventKind | None = None
    date: datetime
    dose: DoseEntry | None = None
    raw: bytes

    @field_validator("date")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class HistoryEvent(BaseModel):
    """One canonical, deduplicated pump history record.

    Never mutated after creation. Which optional fields are set depends on
    ``type``:

    - Bolus: ``amount``, ``duration``
    - TempBasalDuration: ``duration_min``
    - TempBasal: ``rate``, ``temp``
    - JournalEntryMealMarker: ``carb_input``
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    type: HistoryEventType = Field(alias="_type")
    timestamp: datetime
    amount: Decimal | None = None
    duration: int | None = None
    duration_min: int | None = Field(default=None, alias="duration (min)")
    rate: Decimal | None = None
    temp: TempType | None = None
    carb_input: int | None = None

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HistoryEvent):
            return NotImplemented
        return _field_values(self) == _field_values(other)

    def __hash__(self) -> int:
        return hash(_field_values(self))


class Treatment(BaseModel):
    """A Nightscout treatment derived from pump history.

    Equality and hashing are structural over every field, back-references
    included, so treatments can be diffed as sets against the snapshot of
    treatments that were already uploaded.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_type: TreatmentEventType = Field(alias="eventType")
    created_at: datetime
    entered_by: str = Field(alias="enteredBy")
    duration: int | None = None
    raw_duration: HistoryEvent | None = None
    raw_rate: HistoryEvent | None = None
    absolute: Decimal | None = None
    rate: Decimal | None = None
    bolus: HistoryEvent | None = None
    insulin: Decimal | None = None
    carbs: int | None = None

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Treatment):
            return NotImplemented
        return _field_values(self) == _field_values(other)

    def __hash__(self) -> int:
        return hash(_field_values(self))
