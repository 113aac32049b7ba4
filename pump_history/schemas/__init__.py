# Pydantic Schemas
from pump_history.schemas.pump_history import (
    DoseEntry,
    HistoryEvent,
    HistoryEventType,
    PumpEventKind,
    RawPumpEvent,
    TempType,
    Treatment,
    TreatmentEventType,
)

__all__ = [
    "DoseEntry",
    "HistoryEvent",
    "HistoryEventType",
    "PumpEventKind",
    "RawPumpEvent",
    "TempType",
    "Treatment",
    "TreatmentEventType",
]
