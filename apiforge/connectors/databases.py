from __future__ import annotations
import asyncio
import datetime
import logging
from typing import Any, Dict, List

from bson import ObjectId
from pymongo import MongoClient
from pymongo.errors import PyMongoError
from sqlalchemy import and_, column, create_engine, literal_column, select, table
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class DatabaseReadError(RuntimeError):
    """A database read failed or exceeded its time budget."""


def _jsonable(value: Any) -> Any:
    """Render BSON-specific scalars so the payload can be serialized as JSON."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


class MongoReader:
    """
    Reads documents from a MongoDB collection with a filter document.

    A client is opened per read and closed afterwards; nothing is kept
    between requests. PyMongo is synchronous, so the read runs in a worker
    thread.
    """

    def __init__(self, timeout_ms: int = 30_000) -> None:
        self._timeout_ms = timeout_ms

    async def read(
        self, uri: str, database: str, collection: str, query: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_sync, uri, database, collection, query)

    def _read_sync(
        self, uri: str, database: str, collection: str, query: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        client = MongoClient(
            uri,
            serverSelectionTimeoutMS=self._timeout_ms,
            socketTimeoutMS=self._timeout_ms,
        )
        try:
            db = client[database] if database else client.get_default_database()
            docs = list(db[collection].find(query or {}))
        except PyMongoError as exc:
            logger.error("Mongo read failed (%s.%s): %s", database, collection, exc)
            raise DatabaseReadError(f"MongoDB read failed: {exc}") from exc
        finally:
            client.close()

        logger.debug("Mongo read %s.%s -> %d document(s)", database, collection, len(docs))
        return [_jsonable(doc) for doc in docs]


class MysqlReader:
    """
    Reads rows from a SQL table with an equality-AND WHERE clause.

    query {"status": "open", "team": "web"} becomes
    SELECT * FROM <table> WHERE status = :p1 AND team = :p2.
    Values are always bound parameters and identifiers are quoted by the
    dialect. No operators (>, IN, LIKE, ...) are supported. A bare mysql://
    URI is read through the PyMySQL driver.
    """

    async def read(
        self, uri: str, database: str, table_name: str, query: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_sync, uri, database, table_name, query)

    def _read_sync(
        self, uri: str, database: str, table_name: str, query: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        try:
            url = make_url(uri)
            if url.drivername == "mysql":
                url = url.set(drivername="mysql+pymysql")
            if database:
                url = url.set(database=database)
            engine = create_engine(url)
        except (SQLAlchemyError, ImportError) as exc:
            raise DatabaseReadError(f"Cannot open SQL connection: {exc}") from exc

        stmt = select(literal_column("*")).select_from(table(table_name))
        if query:
            stmt = stmt.where(and_(*[column(key) == value for key, value in query.items()]))

        try:
            with engine.connect() as conn:
                rows = [dict(row._mapping) for row in conn.execute(stmt)]
        except SQLAlchemyError as exc:
            logger.error("SQL read failed (%s): %s", table_name, exc)
            raise DatabaseReadError(f"SQL read failed: {exc}") from exc
        finally:
            engine.dispose()

        logger.debug("SQL read %s -> %d row(s)", table_name, len(rows))
        return rows
