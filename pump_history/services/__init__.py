# Business Logic Services
from pump_history.services.broadcaster import (
    Broadcaster,
    PumpHistoryObserver,
    Topic,
    register_observer,
)
from pump_history.services.file_storage import (
    FileStorage,
    FileStorageError,
    StorageTransaction,
    StoredDocumentDecodeError,
)
from pump_history.services.normalizer import (
    event_identity,
    journal_carbs_event,
    normalize_pump_event,
    normalize_pump_events,
)
from pump_history.services.pump_history import PumpHistoryStorage
from pump_history.services.reconciler import (
    derive_treatments,
    reconcile_treatments,
    sort_history,
)

__all__ = [
    "Broadcaster",
    "FileStorage",
    "FileStorageError",
    "PumpHistoryObserver",
    "PumpHistoryStorage",
    "StorageTransaction",
    "StoredDocumentDecodeError",
    "Topic",
    "derive_treatments",
    "event_identity",
    "journal_carbs_event",
    "normalize_pump_event",
    "normalize_pump_events",
    "reconcile_treatments",
    "register_observer",
    "sort_history",
]
