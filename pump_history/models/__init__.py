# Database Models
from pump_history.models.base import Base, TimestampMixin
from pump_history.models.stored_document import StoredDocument

__all__ = [
    "Base",
    "StoredDocument",
    "TimestampMixin",
]
