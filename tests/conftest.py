"""Shared fixtures for Dialogue Graph Studio tests."""

from __future__ import annotations

import random
from typing import Callable, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import dialogue_graph as dg


# ─── Mock helpers ──────────────────────────────────────────────────────

class MockAsyncResult:
    """Mock for async Neo4j result; records are plain dicts."""

    def __init__(self, records: list[dict]):
        self._records = list(records)
        self._index = 0

    async def single(self):
        if self._records:
            return self._records[0]
        return None

    async def data(self):
        return [dict(r) for r in self._records]

    async def consume(self):
        return None

    def __aiter__(self):
        self._index = 0
        return self

    async def __anext__(self):
        if self._index >= len(self._records):
            raise StopAsyncIteration
        record = self._records[self._index]
        self._index += 1
        return record


class FakeTransaction:
    """Records every tx.run call and answers it through ``responder``."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.responder: Callable[[str, dict], list[dict]] = lambda query, params: []

    async def run(self, query, parameters=None, **kwargs):
        params = dict(parameters or {}, **kwargs)
        self.calls.append((query, params))
        return MockAsyncResult(self.responder(query, params))

    def calls_to(self, query: str) -> list[dict]:
        """Parameters of every call that ran exactly ``query``."""
        return [params for q, params in self.calls if q == query]


class InMemoryDialogue:
    """
    Answers the engine's traversal queries from an in-memory graph, so
    subgraph extraction, linear reads and walks can be exercised without
    Neo4j.
    """

    def __init__(self, conversation_id: str = "conv-1", title: str = "Tavern"):
        self.conversation_id = conversation_id
        self.title = title
        self.root_id: Optional[str] = None
        self.nodes: dict[str, dict] = {}
        self.edges: list[tuple[str, str, str, Optional[float]]] = []

    def add(
        self,
        node_id: str,
        text: str = "",
        deleted: bool = False,
        character_id: Optional[str] = None,
        tags: Optional[list[str]] = None,
        version: int = 1,
    ) -> "InMemoryDialogue":
        self.nodes[node_id] = {
            "id": node_id,
            "text": text or f"line {node_id}",
            "character_id": character_id,
            "deleted": deleted,
            "version": version,
            "tags": tags or [],
            "created_at": None,
            "updated_at": None,
        }
        return self

    def link(self, a: str, b: str, rel_type: str = "NEXT", weight: Optional[float] = None):
        self.edges.append((a, b, rel_type, weight))
        return self

    def chain(self, count: int, prefix: str = "u") -> list[str]:
        ids = [f"{prefix}{i}" for i in range(count)]
        for node_id in ids:
            self.add(node_id)
        for a, b in zip(ids, ids[1:]):
            self.link(a, b)
        self.root_id = ids[0]
        return ids

    def __call__(self, query: str, params: dict) -> list[dict]:
        if query == dg.CONVERSATION_ROOT:
            if params["cid"] != self.conversation_id:
                return []
            root = self.nodes.get(self.root_id) if self.root_id else None
            return [{
                "id": self.conversation_id,
                "title": self.title,
                "root_id": self.root_id,
                "root_deleted": bool(root and root["deleted"]),
            }]
        if query == dg.SUCCESSORS:
            found: list[str] = []
            for fid in params["frontier"]:
                for a, b, rel_type, _ in self.edges:
                    if a != fid or rel_type not in ("NEXT", "BRANCH_TO"):
                        continue
                    if not self.nodes[b]["deleted"] and b not in found:
                        found.append(b)
            return [{"id": b} for b in found]
        if query == dg.LINEAR_HEAD:
            root = self.nodes.get(self.root_id) if self.root_id else None
            if params["cid"] != self.conversation_id or root is None or root["deleted"]:
                return []
            return [{
                "conversation_id": self.conversation_id,
                "title": self.title,
                "id": root["id"],
                "text": root["text"],
                "character_id": root["character_id"],
            }]
        if query == dg.NEXT_SUCCESSOR:
            # Insertion order stands in for createdAt
            for a, b, rel_type, _ in self.edges:
                if a == params["id"] and rel_type == "NEXT":
                    node = self.nodes[b]
                    return [{
                        "id": b,
                        "text": node["text"],
                        "character_id": node["character_id"],
                        "deleted": node["deleted"],
                    }]
            return []
        if query == dg.NODES_BY_ID:
            return [dict(self.nodes[i]) for i in params["ids"] if i in self.nodes]
        if query == dg.INDUCED_EDGES:
            ids = set(params["ids"])
            return [
                {"from_id": a, "to_id": b, "type": t, "weight": w}
                for a, b, t, w in self.edges
                if a in ids and b in ids and t in ("NEXT", "BRANCH_TO")
            ]
        return []


# ─── Fixtures ──────────────────────────────────────────────────────────

@pytest.fixture
def fake_tx():
    return FakeTransaction()


@pytest.fixture
def mock_session(fake_tx):
    """A mock Neo4j async session whose managed transactions use ``fake_tx``."""
    session = AsyncMock()
    session.transactions = []

    async def execute_read(work, *args, **kwargs):
        session.transactions.append("read")
        return await work(fake_tx, *args, **kwargs)

    async def execute_write(work, *args, **kwargs):
        session.transactions.append("write")
        return await work(fake_tx, *args, **kwargs)

    session.execute_read = execute_read
    session.execute_write = execute_write
    session.run = AsyncMock(return_value=MockAsyncResult([]))
    return session


@pytest.fixture
def mock_graph_store(mock_session):
    """Create a GraphStore with mocked Neo4j driver."""
    with patch("graph_store.AsyncGraphDatabase") as mock_db:
        mock_driver = MagicMock()
        mock_db.driver.return_value = mock_driver

        # The driver.session() returns an async context manager
        # that yields our mock_session
        session_cm = AsyncMock()
        session_cm.__aenter__ = AsyncMock(return_value=mock_session)
        session_cm.__aexit__ = AsyncMock(return_value=False)
        mock_driver.session.return_value = session_cm
        mock_driver.close = AsyncMock()

        from graph_store import GraphStore
        store = GraphStore(uri="bolt://test:7687", user="neo4j", password="secret")
        yield store, mock_session


@pytest.fixture
def dialogue():
    return InMemoryDialogue()


@pytest.fixture
def engine(mock_graph_store, fake_tx, dialogue):
    """A DialogueGraph over the mocked store, answering from ``dialogue``."""
    store, _ = mock_graph_store
    fake_tx.responder = dialogue
    return dg.DialogueGraph(store, rng=random.Random(7))
