"""
SQLAlchemy-backed Data Store (PostgreSQL via asyncpg, SQLite via aiosqlite).

Every collection lives in the single ``pipeline_documents`` table, keyed by
(collection, document_id). Overwrites use the dialect's
INSERT ... ON CONFLICT DO UPDATE so repeated loads stay idempotent.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union
import asyncio
import logging

from pydantic_core import to_jsonable_python
from sqlalchemy import select, delete, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from core.clock import utcnow
from core.database import build_engine, build_session_maker
from core.exceptions import StoreUnavailableError
from models.base import Base, WriteMode
from models.document import StoredDocument
from pipeline.query import apply_query
from pipeline.stores.base import DataStore

logger = logging.getLogger(__name__)

_CONNECTIVITY_ERRORS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    ConnectionError,
    asyncio.TimeoutError,
)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SQLAlchemyDataStore(DataStore):
    """
    Data Store over an async SQLAlchemy engine.

    Filters and ordering are evaluated in Python over the collection's
    documents, so every dialect supports the same operator set.
    """

    def __init__(self, engine: AsyncEngine, session_maker: Optional[async_sessionmaker] = None):
        self.engine = engine
        self.session_maker = session_maker or build_session_maker(engine)

    @classmethod
    def from_url(cls, database_url: Optional[str] = None, echo: bool = False) -> "SQLAlchemyDataStore":
        return cls(build_engine(database_url, echo=echo))

    async def initialize(self) -> None:
        """Create the document table if it does not exist"""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except _CONNECTIVITY_ERRORS as e:
            raise StoreUnavailableError(
                "Data store unavailable during initialize",
                context={"operation": "initialize"},
                original_exception=e
            )
        logger.info("Document store initialized")

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self, operation: str, collection: Optional[str] = None):
        try:
            async with self.session_maker() as session:
                yield session
        except _CONNECTIVITY_ERRORS as e:
            raise StoreUnavailableError(
                f"Data store unavailable during {operation}",
                context={"operation": operation, "collection": collection},
                original_exception=e
            )

    @staticmethod
    def _as_document(row: StoredDocument) -> Dict[str, Any]:
        document = dict(row.payload or {})
        document["id"] = row.document_id
        return document

    async def _fetch(self, session: AsyncSession, collection: str, doc_id: str) -> Optional[StoredDocument]:
        result = await session.execute(
            select(StoredDocument).where(
                StoredDocument.collection == collection,
                StoredDocument.document_id == doc_id
            )
        )
        return result.scalar_one_or_none()

    # ========== Queries ==========

    async def query(self, collection, filters=None, order_by=None, limit=None):
        stmt = (
            select(StoredDocument)
            .where(StoredDocument.collection == collection)
            .order_by(StoredDocument.id)
        )
        # Push the limit down only when Python-side evaluation cannot reorder
        if limit is not None and not filters and not order_by:
            stmt = stmt.limit(limit)

        async with self._session("query", collection) as session:
            result = await session.execute(stmt)
            documents = [self._as_document(row) for row in result.scalars().all()]

        return apply_query(documents, filters, order_by, limit)

    async def get(self, collection, doc_id):
        async with self._session("get", collection) as session:
            row = await self._fetch(session, collection, doc_id)
            return self._as_document(row) if row else None

    async def ping(self) -> bool:
        try:
            async with self._session("ping") as session:
                await session.execute(text("SELECT 1"))
            return True
        except StoreUnavailableError as e:
            logger.error(f"Database connection failed: {e}")
            return False

    # ========== Mutations ==========

    async def write(self, collection, record, mode: Union[WriteMode, str] = WriteMode.APPEND):
        mode = WriteMode(mode)
        key, body = self.split_key(record, mode)
        if key is None:
            logger.warning(f"Overwrite into {collection} without an 'id' field rejected")
            return False
        payload = to_jsonable_python(body)

        try:
            async with self._session("write", collection) as session:
                async with session.begin():
                    if mode == WriteMode.UPSERT:
                        await self._merge(session, collection, key, payload)
                    elif mode == WriteMode.OVERWRITE:
                        await self._overwrite(session, collection, key, payload)
                    else:
                        session.add(StoredDocument(
                            collection=collection,
                            document_id=key,
                            payload=payload
                        ))
            return True
        except StoreUnavailableError:
            raise
        except SQLAlchemyError as e:
            logger.warning(f"Write to {collection}/{key} failed: {e}")
            return False

    async def _overwrite(self, session: AsyncSession, collection: str, key: str, payload: Dict[str, Any]):
        insert = _UPSERT_DIALECTS.get(self.engine.dialect.name)
        if insert is None:
            row = await self._fetch(session, collection, key)
            if row is None:
                session.add(StoredDocument(collection=collection, document_id=key, payload=payload))
            else:
                row.payload = payload
            return

        now = utcnow()
        stmt = insert(StoredDocument).values(
            collection=collection,
            document_id=key,
            payload=payload,
            created_at=now,
            updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["collection", "document_id"],
            set_={
                "payload": stmt.excluded.payload,
                "updated_at": stmt.excluded.updated_at,
            }
        )
        await session.execute(stmt)

    async def _merge(self, session: AsyncSession, collection: str, key: str, payload: Dict[str, Any]):
        row = await self._fetch(session, collection, key)
        if row is None:
            session.add(StoredDocument(collection=collection, document_id=key, payload=payload))
        else:
            # Assign a new dict so the JSON column registers the change
            row.payload = {**(row.payload or {}), **payload}

    async def update(self, collection, doc_id, fields):
        payload = to_jsonable_python(fields)
        payload.pop("id", None)
        try:
            async with self._session("update", collection) as session:
                async with session.begin():
                    row = await self._fetch(session, collection, doc_id)
                    if row is None:
                        return False
                    row.payload = {**(row.payload or {}), **payload}
            return True
        except StoreUnavailableError:
            raise
        except SQLAlchemyError as e:
            logger.warning(f"Update of {collection}/{doc_id} failed: {e}")
            return False

    async def delete(self, collection, doc_id):
        try:
            async with self._session("delete", collection) as session:
                async with session.begin():
                    result = await session.execute(
                        delete(StoredDocument).where(
                            StoredDocument.collection == collection,
                            StoredDocument.document_id == doc_id
                        )
                    )
            return result.rowcount > 0
        except StoreUnavailableError:
            raise
        except SQLAlchemyError as e:
            logger.warning(f"Delete of {collection}/{doc_id} failed: {e}")
            return False

