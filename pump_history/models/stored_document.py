"""Stored document model.

One row per logical file of the key/value store. The payload is always a
JSON list that is replaced wholesale on every save.
"""

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from pump_history.models.base import Base, TimestampMixin


class StoredDocument(Base, TimestampMixin):
    """A JSON list document addressed by key.

    Keys look like relative file paths (``monitor/pumphistory-24h-zoned.json``)
    so the layout mirrors an on-disk settings directory.
    """

    __tablename__ = "stored_documents"

    key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )

    payload: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    def __repr__(self) -> str:
        return f"<StoredDocument(key={self.key}, items={len(self.payload or [])})>"
