"""
Durable key-value storage.

The offline queue and the persisted identity live here. Values are opaque
strings (JSON-encoded by the caller).
"""

from abc import ABC, abstractmethod

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from expense_sync.datastore.models import Base, KeyValueDB


class StorageError(Exception):
    """Durable storage operation failed."""

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        super().__init__(message)


class KeyValueStorage(ABC):
    """Async key-value storage interface."""

    async def init(self) -> None:
        """Prepare the backend. Safe to call more than once."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...


class MemoryStorage(KeyValueStorage):
    """In-memory storage. Does not survive the process; used in tests."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


class SqlStorage(KeyValueStorage):
    """
    SQLAlchemy-backed storage.

    Usage:
        storage = SqlStorage("sqlite+aiosqlite:///./expense_sync.db")
        await storage.init()
        await storage.set("token", "abc")
        await storage.close()
    """

    def __init__(self, url: str, echo: bool = False):
        self._url = url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        if self._engine is not None:
            return

        self._engine = create_async_engine(self._url, echo=self._echo, future=True)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to initialize storage: {e}") from e

        logger.debug(f"Key-value storage ready at {self._url}")

    async def close(self) -> None:
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise StorageError("Storage not initialized. Call init() first.")
        return self._session_factory

    async def get(self, key: str) -> str | None:
        try:
            async with self._sessions()() as session:
                row = await session.get(KeyValueDB, key)
                return row.value if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read '{key}': {e}", key=key) from e

    async def set(self, key: str, value: str) -> None:
        try:
            async with self._sessions()() as session:
                async with session.begin():
                    row = await session.get(KeyValueDB, key)
                    if row is None:
                        session.add(KeyValueDB(key=key, value=value))
                    else:
                        row.value = value
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to write '{key}': {e}", key=key) from e

    async def delete(self, key: str) -> None:
        try:
            async with self._sessions()() as session:
                async with session.begin():
                    await session.execute(delete(KeyValueDB).where(KeyValueDB.key == key))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete '{key}': {e}", key=key) from e
