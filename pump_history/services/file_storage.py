"""Transactional key/value document store.

Each key holds a JSON list of pydantic records. Reads outside a transaction
see the last committed document; ``transaction()`` gives one caller exclusive
read-modify-write access for its duration and commits or rolls back as a
unit.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable, Hashable, Iterable, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pump_history.database import get_session_maker
from pump_history.logging_config import get_logger
from pump_history.models.stored_document import StoredDocument

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class FileStorageError(Exception):
    """Base exception for document store failures."""

    pass


class StoredDocumentDecodeError(FileStorageError):
    """A stored document could not be decoded into the requested model."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"Cannot decode document {key}: {message}")


def _encode(items: Iterable[BaseModel]) -> list[dict[str, Any]]:
    return [
        item.model_dump(mode="json", by_alias=True, exclude_none=True)
        for item in items
    ]


def _decode(key: str, payload: list, model: type[ModelT]) -> list[ModelT]:
    try:
        return TypeAdapter(list[model]).validate_python(payload)
    except ValidationError as e:
        raise StoredDocumentDecodeError(key, str(e)) from e


class StorageTransaction:
    """Read-modify-write view of the store bound to one open transaction."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _load(self, key: str) -> StoredDocument | None:
        return await self._session.get(StoredDocument, key)

    async def retrieve(self, key: str, model: type[ModelT]) -> list[ModelT] | None:
        """Return the document under ``key`` or None if it was never saved."""
        document = await self._load(key)
        if document is None:
            return None
        return _decode(key, document.payload, model)

    async def save(self, key: str, items: Sequence[BaseModel]) -> None:
        """Replace the document under ``key`` wholesale."""
        payload = _encode(items)
        document = await self._load(key)
        if document is None:
            self._session.add(StoredDocument(key=key, payload=payload))
        else:
            document.payload = payload
        await self._session.flush()

    async def append(
        self,
        key: str,
        items: Sequence[ModelT],
        uniq_by: Callable[[ModelT], Hashable],
    ) -> list[ModelT]:
        """Append items whose ``uniq_by`` value is not stored yet.

        Existing records win over incoming ones with the same value, and the
        first occurrence wins within ``items``. Returns the items that were
        actually appended.
        """
        if not items:
            return []

        existing = await self.retrieve(key, type(items[0])) or []
        seen = {uniq_by(item) for item in existing}
        appended: list[ModelT] = []
        for item in items:
            identity = uniq_by(item)
            if identity in seen:
                continue
            seen.add(identity)
            appended.append(item)

        if appended:
            await self.save(key, [*existing, *appended])
        return appended


class FileStorage:
    """Document store backed by the ``stored_documents`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self._session_maker = session_maker or get_session_maker()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[StorageTransaction, None]:
        """Exclusive read-modify-write scope.

        Commits when the body completes; any exception rolls the store back
        to its state before the transaction and is re-raised.
        """
        async with self._lock:
            async with self._session_maker() as session:
                try:
                    async with session.begin():
                        yield StorageTransaction(session)
                except SQLAlchemyError as e:
                    logger.error("Document store transaction failed", error=str(e))
                    raise FileStorageError(f"Transaction failed: {e!s}") from e

    async def retrieve(self, key: str, model: type[ModelT]) -> list[ModelT] | None:
        """Read the last committed document under ``key``."""
        try:
            async with self._session_maker() as session:
                return await StorageTransaction(session).retrieve(key, model)
        except SQLAlchemyError as e:
            raise FileStorageError(f"Cannot read {key}: {e!s}") from e

    async def save(self, key: str, items: Sequence[BaseModel]) -> None:
        """Replace the document under ``key`` in its own transaction."""
        async with self.transaction() as tx:
            await tx.save(key, items)
