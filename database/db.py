"""
Database connection and query module.

Provides a clean interface for database operations with support
for both PostgreSQL and SQLite backends.
"""

import logging
import os
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
import aiosqlite

from config import config
from exceptions import PersistenceError

logger = logging.getLogger(__name__)


class Database:
    """
    Async database connection manager.

    Supports PostgreSQL (production) and SQLite (development and tests).
    Provides connection pooling and query execution methods. Queries are
    written with PostgreSQL $1, $2 placeholders and converted for SQLite.
    """

    def __init__(self, database_url: Optional[str] = None):
        """
        Initialize database manager.

        Args:
            database_url: Database connection URL. Uses config if not provided.
        """
        self.database_url = database_url or config.database.url
        self._pool = None
        self._sqlite_conn = None
        self._is_postgres = self.database_url.startswith('postgresql')

    @property
    def is_postgres(self) -> bool:
        return self._is_postgres

    @property
    def is_connected(self) -> bool:
        return self._pool is not None or self._sqlite_conn is not None

    async def connect(self) -> None:
        """Establish database connection(s)."""
        try:
            if self._is_postgres:
                logger.info("Connecting to PostgreSQL database...")
                self._pool = await asyncpg.create_pool(
                    self.database_url,
                    min_size=2,
                    max_size=10,
                    command_timeout=60
                )
            else:
                # SQLite for development
                db_path = self.database_url.replace('sqlite:///', '')
                logger.info(f"Connecting to SQLite database: {db_path}")
                self._sqlite_conn = await aiosqlite.connect(db_path)
                self._sqlite_conn.row_factory = aiosqlite.Row
        except (OSError, asyncpg.PostgresError, aiosqlite.Error) as e:
            raise PersistenceError(f"Could not connect to database: {e}") from e

        logger.info("Database connection established")

    async def disconnect(self) -> None:
        """Close database connection(s)."""
        if self._is_postgres and self._pool:
            await self._pool.close()
            self._pool = None
        elif self._sqlite_conn:
            await self._sqlite_conn.close()
            self._sqlite_conn = None

        logger.info("Database connection closed")

    def _adapt(self, value: Any) -> Any:
        """Convert a parameter into something SQLite can store."""
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc).isoformat(timespec='microseconds')
        if isinstance(value, Decimal):
            return str(value)
        return value

    def _params(self, args: Tuple) -> Tuple:
        if self._is_postgres:
            return args
        return tuple(self._adapt(a) for a in args)

    def _convert_params(self, query: str) -> str:
        """Convert PostgreSQL $1, $2 style params to SQLite ? style."""
        if self._is_postgres:
            return query
        # Replace $1, $2, etc. with ?
        return re.sub(r'\$\d+', '?', query)

    def _require_connection(self) -> None:
        if not self.is_connected:
            raise PersistenceError("Database is not connected")

    async def execute(self, query: str, *args) -> int:
        """
        Execute a query without returning results.

        Args:
            query: SQL query to execute
            *args: Query parameters

        Returns:
            Number of rows affected
        """
        self._require_connection()
        try:
            if self._is_postgres:
                async with self._pool.acquire() as conn:
                    status = await conn.execute(query, *args)
                # Status looks like "UPDATE 1" / "INSERT 0 1"
                tail = status.rsplit(' ', 1)[-1]
                return int(tail) if tail.isdigit() else 0
            else:
                cursor = await self._sqlite_conn.execute(
                    self._convert_params(query), self._params(args)
                )
                await self._sqlite_conn.commit()
                return cursor.rowcount
        except (asyncpg.PostgresError, aiosqlite.Error) as e:
            raise PersistenceError(f"Query failed: {e}") from e

    async def fetch_one(self, query: str, *args) -> Optional[Dict[str, Any]]:
        """
        Execute a query and fetch one row.

        Args:
            query: SQL query to execute
            *args: Query parameters

        Returns:
            Row as dictionary or None if no results
        """
        self._require_connection()
        try:
            if self._is_postgres:
                async with self._pool.acquire() as conn:
                    row = await conn.fetchrow(query, *args)
                    return dict(row) if row else None
            else:
                cursor = await self._sqlite_conn.execute(
                    self._convert_params(query), self._params(args)
                )
                row = await cursor.fetchone()
                if row:
                    columns = [d[0] for d in cursor.description]
                    return dict(zip(columns, row))
                return None
        except (asyncpg.PostgresError, aiosqlite.Error) as e:
            raise PersistenceError(f"Query failed: {e}") from e

    async def fetch_all(self, query: str, *args) -> List[Dict[str, Any]]:
        """
        Execute a query and fetch all rows.

        Args:
            query: SQL query to execute
            *args: Query parameters

        Returns:
            List of rows as dictionaries
        """
        self._require_connection()
        try:
            if self._is_postgres:
                async with self._pool.acquire() as conn:
                    rows = await conn.fetch(query, *args)
                    return [dict(row) for row in rows]
            else:
                cursor = await self._sqlite_conn.execute(
                    self._convert_params(query), self._params(args)
                )
                rows = await cursor.fetchall()
                if rows:
                    columns = [d[0] for d in cursor.description]
                    return [dict(zip(columns, row)) for row in rows]
                return []
        except (asyncpg.PostgresError, aiosqlite.Error) as e:
            raise PersistenceError(f"Query failed: {e}") from e

    async def insert_returning_id(self, query: str, *args) -> int:
        """
        Insert a row and return its generated integer id.

        The query must not include a RETURNING clause; it is added for
        PostgreSQL and replaced by last_insert_rowid() for SQLite.
        """
        self._require_connection()
        try:
            if self._is_postgres:
                async with self._pool.acquire() as conn:
                    return await conn.fetchval(f"{query} RETURNING id", *args)
            else:
                cursor = await self._sqlite_conn.execute(
                    self._convert_params(query), self._params(args)
                )
                await self._sqlite_conn.commit()
                return cursor.lastrowid
        except (asyncpg.PostgresError, aiosqlite.Error) as e:
            raise PersistenceError(f"Insert failed: {e}") from e

    async def init_schema(self) -> None:
        """Initialize database schema from schema.sql file."""
        schema_path = os.path.join(os.path.dirname(__file__), 'schema.sql')

        with open(schema_path, 'r') as f:
            schema = f.read()

        # Drop comment lines, then split by semicolons
        schema = '\n'.join(
            line for line in schema.splitlines() if not line.strip().startswith('--')
        )
        statements = [s.strip() for s in schema.split(';') if s.strip()]

        for statement in statements:
            if not self._is_postgres:
                statement = statement.replace('BIGSERIAL', 'INTEGER')
                statement = statement.replace('TIMESTAMPTZ', 'TEXT')
                statement = statement.replace('NUMERIC(15,2)', 'TEXT')

            try:
                if self._is_postgres:
                    async with self._pool.acquire() as conn:
                        await conn.execute(statement)
                else:
                    await self._sqlite_conn.execute(statement)
            except (asyncpg.PostgresError, aiosqlite.Error) as e:
                # Some statements may fail on re-run
                logger.debug(f"Schema statement skipped: {e}")

        if not self._is_postgres:
            await self._sqlite_conn.commit()

        logger.info("Database schema initialized")
