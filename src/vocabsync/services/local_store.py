"""Durable key-value store for the engine's collections."""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from vocabsync.config import STORE_COLLECTIONS, settings
from vocabsync.errors import StoreUnavailable
from vocabsync.models.base import create_db_engine, create_session_factory, init_db
from vocabsync.models.models import StoredRecord
from vocabsync.monitoring import error_count, store_operations

Record = Dict[str, Any]


class LocalStore:
    """Async key-value store over one SQLAlchemy table.

    Each call runs its blocking ORM work in a worker thread. Writes are
    serialized, so concurrent writes to the same key from this process apply
    in call order and none is lost.
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        """Initialize the store; nothing is opened until ``init``."""
        self.url = url or settings.database.url
        self.echo = settings.database.echo if echo is None else echo
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)

    @property
    def ready(self) -> bool:
        return self._session_factory is not None

    async def init(self) -> None:
        """Open the database and create the schema.

        Safe to call repeatedly or concurrently; only the first call does work.
        """
        async with self._init_lock:
            if self.ready:
                return
            try:
                engine = create_db_engine(self.url, self.echo)
                await asyncio.to_thread(init_db, engine)
            except SQLAlchemyError as e:
                error_count.labels(error_type="store_init").inc()
                self.logger.error("Failed to open local store: %s", str(e))
                raise StoreUnavailable(f"Cannot open local store: {e}") from e
            self.engine = engine
            self._session_factory = create_session_factory(engine)
            self.logger.info("Local store initialized")

    async def close(self) -> None:
        """Dispose of the engine."""
        async with self._init_lock:
            if self.engine is not None:
                await asyncio.to_thread(self.engine.dispose)
            self.engine = None
            self._session_factory = None

    async def get(self, collection: str, key: str) -> Optional[Record]:
        """Get one record, or None when the key is absent."""
        return await self._run("get", collection, self._get, collection, key)

    async def get_all(self, collection: str) -> Dict[str, Record]:
        """Get every record of a collection keyed by record key."""
        return await self._run("get_all", collection, self._get_all, collection)

    async def put(self, collection: str, key: str, record: Record) -> None:
        """Insert or replace one record."""
        async with self._write_lock:
            await self._run("put", collection, self._put, collection, key, record)

    async def delete(self, collection: str, key: str) -> None:
        """Delete one record; absent keys are ignored."""
        async with self._write_lock:
            await self._run("delete", collection, self._delete, collection, key)

    async def clear(self, collection: str) -> None:
        """Delete every record of a collection."""
        async with self._write_lock:
            await self._run("clear", collection, self._clear, collection)

    async def replace_all(self, collection: str, records: Dict[str, Record]) -> None:
        """Swap the contents of a collection in one transaction."""
        async with self._write_lock:
            await self._run("replace_all", collection, self._replace_all, collection, records)

    async def _run(self, operation: str, collection: str, func: Callable, *args) -> Any:
        if collection not in STORE_COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection}")
        if not self.ready:
            raise StoreUnavailable("Local store is not initialized")
        try:
            result = await asyncio.to_thread(func, *args)
        except SQLAlchemyError as e:
            error_count.labels(error_type="store").inc()
            raise StoreUnavailable(f"Local store {operation} on {collection} failed: {e}") from e
        store_operations.labels(operation_type=operation).inc()
        return result

    def _get(self, collection: str, key: str) -> Optional[Record]:
        with self._session_factory() as db:
            row = db.get(StoredRecord, (collection, key))
            return dict(row.payload) if row else None

    def _get_all(self, collection: str) -> Dict[str, Record]:
        with self._session_factory() as db:
            rows = db.query(StoredRecord).filter(StoredRecord.collection == collection).all()
            return {row.key: dict(row.payload) for row in rows}

    def _put(self, collection: str, key: str, record: Record) -> None:
        with self._session_factory() as db:
            row = db.get(StoredRecord, (collection, key))
            if row:
                row.payload = dict(record)
            else:
                db.add(StoredRecord(collection=collection, key=key, payload=dict(record)))
            db.commit()

    def _delete(self, collection: str, key: str) -> None:
        with self._session_factory() as db:
            db.query(StoredRecord).filter(
                StoredRecord.collection == collection,
                StoredRecord.key == key,
            ).delete()
            db.commit()

    def _clear(self, collection: str) -> None:
        with self._session_factory() as db:
            db.query(StoredRecord).filter(StoredRecord.collection == collection).delete()
            db.commit()

    def _replace_all(self, collection: str, records: Dict[str, Record]) -> None:
        with self._session_factory() as db:
            db.query(StoredRecord).filter(StoredRecord.collection == collection).delete()
            db.add_all(
                StoredRecord(collection=collection, key=key, payload=dict(record))
                for key, record in records.items()
            )
            db.commit()
