"""
Graph store: transactional access to the Neo4j property graph.

Key design decisions:
  - One session per operation; no session is shared across calls
  - Every unit of work runs as a single managed transaction, read or write,
    so the driver can route it and retry transient failures
  - Callers hand in a transaction function; the store never builds Cypher
    for domain operations itself
  - Schema bootstrap is idempotent and safe to run on every startup
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from neo4j import (
    READ_ACCESS,
    WRITE_ACCESS,
    AsyncDriver,
    AsyncGraphDatabase,
    AsyncManagedTransaction,
    AsyncSession,
)

from config import NEO4J_DATABASE, NEO4J_PASSWORD, NEO4J_URI, NEO4J_USER

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransactionWork = Callable[..., Awaitable[T]]

BOOTSTRAP_STATEMENTS = [
    "CREATE CONSTRAINT conversation_id IF NOT EXISTS "
    "FOR (c:Conversation) REQUIRE c.id IS UNIQUE",
    "CREATE CONSTRAINT utterance_id IF NOT EXISTS "
    "FOR (u:Utterance) REQUIRE u.id IS UNIQUE",
    "CREATE INDEX utterance_character IF NOT EXISTS "
    "FOR (u:Utterance) ON (u.characterId)",
    "CREATE INDEX utterance_conversation IF NOT EXISTS "
    "FOR (u:Utterance) ON (u.conversationId)",
]


# ─── Graph Store ──────────────────────────────────────────────────────

class GraphStore:
    """Async Neo4j adapter exposing read/write transaction primitives."""

    def __init__(
        self,
        uri: str = NEO4J_URI,
        user: str = NEO4J_USER,
        password: str = NEO4J_PASSWORD,
        database: Optional[str] = NEO4J_DATABASE,
    ):
        self._driver: AsyncDriver = AsyncGraphDatabase.driver(
            uri, auth=(user, password)
        )
        self._database = database

    async def close(self):
        await self._driver.close()

    async def __aenter__(self) -> "GraphStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @asynccontextmanager
    async def _session(
        self, access_mode: str = WRITE_ACCESS
    ) -> AsyncGenerator[AsyncSession, None]:
        kwargs: dict[str, Any] = {"default_access_mode": access_mode}
        if self._database:
            kwargs["database"] = self._database
        async with self._driver.session(**kwargs) as session:
            yield session

    # ─── Transaction Primitives ───────────────────────────────────

    async def read(self, work: TransactionWork[T], *args: Any) -> T:
        """Run ``work(tx, *args)`` inside one read transaction."""
        async with self._session(READ_ACCESS) as session:
            return await session.execute_read(work, *args)

    async def write(self, work: TransactionWork[T], *args: Any) -> T:
        """Run ``work(tx, *args)`` inside one write transaction."""
        async with self._session(WRITE_ACCESS) as session:
            return await session.execute_write(work, *args)

    async def read_query(self, query: str, **params: Any) -> list[dict]:
        """Run a single read statement and return its records as dicts."""
        return await self.read(_fetch_all, query, params)

    async def write_query(self, query: str, **params: Any) -> list[dict]:
        """Run a single write statement and return its records as dicts."""
        return await self.write(_fetch_all, query, params)

    # ─── Schema Setup ─────────────────────────────────────────────

    async def setup_indexes(self):
        """Create uniqueness constraints and lookup indexes."""
        async with self._session(WRITE_ACCESS) as session:
            for q in BOOTSTRAP_STATEMENTS:
                try:
                    result = await session.run(q)
                    await result.consume()
                except Exception as e:
                    logger.debug(f"Index creation note: {e}")

    async def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            records = await self.read_query("RETURN 1 AS n")
        except Exception as e:
            logger.warning(f"Neo4j health check failed: {e}")
            return False
        return bool(records) and records[0].get("n") == 1


async def _fetch_all(
    tx: AsyncManagedTransaction, query: str, params: dict
) -> list[dict]:
    result = await tx.run(query, params)
    return await result.data()
