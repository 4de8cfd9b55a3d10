"""
Dialogue graph engine: versioned, branching conversations in Neo4j.

Key design decisions:
  - Every public operation is exactly one transaction (read or write)
  - Not-found and stale-version outcomes are reported as None/False, never
    raised; malformed requests (bad import payloads, missing branch edges)
    raise DialogueGraphError subclasses
  - Mutations take a write lock on the guarded node before evaluating their
    guard, so a compare-and-set or soft delete can only succeed once
  - Soft-deleted utterances are invisible to every traversal but remain
    readable by id
  - A conversation has at most one ROOT edge; adding a root again rewrites
    the live root, or replaces a soft-deleted one
  - Traversals advance one BFS level or one NEXT hop per query inside their
    read transaction, so fan-out never multiplies the paths Neo4j enumerates
"""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, field
from typing import Optional

from neo4j import AsyncManagedTransaction

from cypher import (
    GRAPH_DEPTH_DEFAULT,
    LINEAR_PATH_MAX_HOPS,
    RANDOM_DEPTH_DEFAULT,
    RANDOM_DEPTH_MAX,
    TRAVERSAL_TYPES,
    RelType,
    clamp_graph_depth,
    clamp_random_depth,
    clamp_weight,
    rel_pattern,
)
from graph_store import GraphStore
from random_walk import build_successors, detect_root, weighted_walk
from schema import (
    Conversation,
    ConversationExport,
    ConversationImport,
    GraphView,
    ImportedRelation,
    ImportedUtterance,
    PathView,
    RelationEdge,
    UtteranceDetail,
    UtteranceNode,
    CreatedUtterance,
    UtteranceSummary,
    normalize_tags,
)

logger = logging.getLogger(__name__)


# ─── Errors ───────────────────────────────────────────────────────────

class DialogueGraphError(Exception):
    """Base class for malformed requests against the dialogue graph."""


class InvalidImportError(DialogueGraphError, ValueError):
    """An import payload was rejected before any write happened."""


class BranchNotFoundError(DialogueGraphError, LookupError):
    """A BRANCH_TO edge that was expected to exist does not."""

    def __init__(self, from_id: str, to_id: str):
        super().__init__(f"No BRANCH_TO edge from '{from_id}' to '{to_id}'")
        self.from_id = from_id
        self.to_id = to_id


# ─── Cypher ───────────────────────────────────────────────────────────

_STEP = rel_pattern(*TRAVERSAL_TYPES)
_STEP_R = rel_pattern(*TRAVERSAL_TYPES, variable="r")

_UTTERANCE_DETAIL = """
    u.id AS id, u.text AS text, u.characterId AS character_id,
    coalesce(u.deleted, false) AS deleted,
    coalesce(u.version, 1) AS version,
    coalesce(u.tags, []) AS tags,
    u.createdAt AS created_at, u.updatedAt AS updated_at
"""

CREATE_CONVERSATION = """
CREATE (c:Conversation {id: $id, title: $title, createdAt: datetime()})
RETURN c.id AS id, c.title AS title
"""

GET_CONVERSATION = """
MATCH (c:Conversation {id: $cid})
RETURN c.id AS id, c.title AS title
"""

# The conversation node is locked first so concurrent root writers serialize
DETACH_DELETED_ROOT = """
MATCH (c:Conversation {id: $cid})
SET c._lock = true
REMOVE c._lock
WITH c
OPTIONAL MATCH (c)-[stale:ROOT]->(old:Utterance)
WHERE coalesce(old.deleted, false) = true
DELETE stale
RETURN DISTINCT c.id AS id
"""

UPSERT_ROOT = """
MATCH (c:Conversation {id: $cid})
MERGE (c)-[:ROOT]->(u:Utterance)
ON CREATE SET u.id = $id,
              u.createdAt = datetime(),
              u.deleted = false,
              u.version = 0,
              u.tags = [],
              u._created = true
SET u.text = $text,
    u.characterId = $character_id,
    u.conversationId = c.id,
    u.version = coalesce(u.version, 0) + 1,
    u.updatedAt = datetime()
WITH c, u, coalesce(u._created, false) AS created
REMOVE u._created
RETURN u.id AS id, u.text AS text, u.characterId AS character_id,
       c.id AS conversation_id, u.version AS version, created
"""

ADD_NEXT = f"""
MATCH (src:Utterance {{id: $from_id}})
SET src._lock = true
REMOVE src._lock
WITH src
WHERE coalesce(src.deleted, false) = false
CREATE (u:Utterance {{
    id: $id,
    text: $text,
    characterId: $character_id,
    createdAt: datetime(),
    updatedAt: datetime(),
    deleted: false,
    version: 1,
    tags: $tags,
    conversationId: src.conversationId
}})
CREATE (src)-[:{RelType.NEXT.value}]->(u)
RETURN u.id AS id, u.text AS text, u.characterId AS character_id,
       u.conversationId AS conversation_id
"""

GET_UTTERANCE = f"""
MATCH (u:Utterance {{id: $id}})
RETURN {_UTTERANCE_DETAIL}
"""

# Version check and write share one statement; the lock makes the check
# observe the latest committed version.
UPDATE_UTTERANCE = f"""
MATCH (u:Utterance {{id: $id}})
SET u._lock = true
REMOVE u._lock
WITH u
WHERE coalesce(u.deleted, false) = false
  AND coalesce(u.version, 1) = $expected_version
SET u.text = $text,
    u.tags = $tags,
    u.version = coalesce(u.version, 1) + 1,
    u.updatedAt = datetime()
RETURN {_UTTERANCE_DETAIL}
"""

SOFT_DELETE = """
MATCH (u:Utterance {id: $id})
SET u._lock = true
REMOVE u._lock
WITH u
WHERE coalesce(u.deleted, false) = false
SET u.deleted = true,
    u.updatedAt = datetime()
RETURN u.id AS id
"""

ADD_BRANCH = f"""
MATCH (a:Utterance {{id: $from_id}}), (b:Utterance {{id: $to_id}})
WHERE coalesce(a.deleted, false) = false AND coalesce(b.deleted, false) = false
SET a._lock = true
REMOVE a._lock
MERGE (a)-[r:{RelType.BRANCH_TO.value}]->(b)
ON CREATE SET r.weight = $default_weight
SET r.weight = coalesce($weight, r.weight)
RETURN a.id AS from_id, b.id AS to_id, r.weight AS weight
"""

SET_BRANCH_WEIGHT = f"""
MATCH (a:Utterance {{id: $from_id}})-[r:{RelType.BRANCH_TO.value}]->(b:Utterance {{id: $to_id}})
SET r.weight = $weight
RETURN r.weight AS weight
"""

LINEAR_HEAD = """
MATCH (c:Conversation {id: $cid})-[:ROOT]->(root:Utterance)
WHERE coalesce(root.deleted, false) = false
RETURN c.id AS conversation_id, c.title AS title,
       root.id AS id, root.text AS text, root.characterId AS character_id
ORDER BY root.createdAt
LIMIT 1
"""

NEXT_SUCCESSOR = f"""
MATCH (:Utterance {{id: $id}})-[:{RelType.NEXT.value}]->(n:Utterance)
RETURN n.id AS id, n.text AS text, n.characterId AS character_id,
       coalesce(n.deleted, false) AS deleted
ORDER BY n.createdAt, n.id
LIMIT 1
"""

CONVERSATION_ROOT = """
MATCH (c:Conversation {id: $cid})
OPTIONAL MATCH (c)-[:ROOT]->(root:Utterance)
RETURN c.id AS id, c.title AS title, root.id AS root_id,
       coalesce(root.deleted, false) AS root_deleted
ORDER BY root_deleted, root.createdAt
LIMIT 1
"""

SUCCESSORS = f"""
UNWIND $frontier AS fid
MATCH (:Utterance {{id: fid}})-{_STEP}->(b:Utterance)
WHERE coalesce(b.deleted, false) = false
WITH DISTINCT b
ORDER BY b.createdAt, b.id
RETURN b.id AS id
"""

NODES_BY_ID = f"""
UNWIND $ids AS uid
MATCH (u:Utterance {{id: uid}})
RETURN {_UTTERANCE_DETAIL}
"""

INDUCED_EDGES = f"""
UNWIND $ids AS aid
MATCH (a:Utterance {{id: aid}})-{_STEP_R}->(b:Utterance)
WHERE b.id IN $ids
RETURN a.id AS from_id, b.id AS to_id, type(r) AS type, r.weight AS weight
"""

IMPORT_CONVERSATION = """
MERGE (c:Conversation {id: $cid})
ON CREATE SET c.title = coalesce($title, 'Untitled conversation'),
              c.createdAt = datetime()
ON MATCH SET c.title = coalesce($title, c.title)
SET c._lock = true
REMOVE c._lock
RETURN c.id AS id, c.title AS title
"""

IMPORT_UTTERANCES = """
UNWIND $rows AS row
MERGE (u:Utterance {id: row.id})
ON CREATE SET u.createdAt = datetime()
SET u.text = row.text,
    u.characterId = row.character_id,
    u.deleted = row.deleted,
    u.version = row.version,
    u.tags = row.tags,
    u.conversationId = $cid,
    u.updatedAt = datetime()
"""

IMPORT_NEXT = f"""
UNWIND $rows AS row
MATCH (a:Utterance {{id: row.from_id}}), (b:Utterance {{id: row.to_id}})
MERGE (a)-[:{RelType.NEXT.value}]->(b)
"""

IMPORT_BRANCHES = f"""
UNWIND $rows AS row
MATCH (a:Utterance {{id: row.from_id}}), (b:Utterance {{id: row.to_id}})
MERGE (a)-[r:{RelType.BRANCH_TO.value}]->(b)
SET r.weight = row.weight
"""

IMPORT_ROOT = f"""
MATCH (c:Conversation {{id: $cid}})
OPTIONAL MATCH (c)-[old:{RelType.ROOT.value}]->()
DELETE old
WITH DISTINCT c
MATCH (u:Utterance {{id: $root_id}})
MERGE (c)-[:{RelType.ROOT.value}]->(u)
"""


# ─── Record mapping ───────────────────────────────────────────────────

def _new_id() -> str:
    return str(uuid.uuid4())


def _native(value):
    """Convert neo4j temporal values to datetime; pass anything else through."""
    to_native = getattr(value, "to_native", None)
    return to_native() if callable(to_native) else value


def _summary(record) -> UtteranceSummary:
    return UtteranceSummary(
        id=record["id"],
        text=record["text"] or "",
        character_id=record["character_id"],
    )


def _created(record) -> CreatedUtterance:
    return CreatedUtterance(
        id=record["id"],
        text=record["text"] or "",
        character_id=record["character_id"],
        conversation_id=record.get("conversation_id"),
        created=bool(record.get("created", True)),
        version=int(record.get("version") or 1),
    )


def _detail(record) -> UtteranceDetail:
    return UtteranceDetail(
        id=record["id"],
        text=record["text"] or "",
        character_id=record["character_id"],
        deleted=bool(record["deleted"]),
        version=int(record["version"]),
        tags=list(record["tags"] or []),
        created_at=_native(record.get("created_at")),
        updated_at=_native(record.get("updated_at")),
    )


def _node(record) -> UtteranceNode:
    return UtteranceNode(
        id=record["id"],
        text=record["text"] or "",
        character_id=record["character_id"],
        deleted=bool(record["deleted"]),
        tags=list(record["tags"] or []),
    )


def _edge(record) -> RelationEdge:
    rel_type = RelType(record["type"])
    weight = None
    if rel_type == RelType.BRANCH_TO:
        weight = clamp_weight(record["weight"])
    return RelationEdge(
        from_id=record["from_id"], to_id=record["to_id"], type=rel_type, weight=weight
    )


# ─── Subgraph extraction ──────────────────────────────────────────────

@dataclass
class Subgraph:
    """Reachable, non-deleted neighbourhood of a conversation's root."""

    conversation: Conversation
    root_id: Optional[str] = None
    nodes: list[dict] = field(default_factory=list)
    relations: list[RelationEdge] = field(default_factory=list)

    @property
    def node_ids(self) -> list[str]:
        return [n["id"] for n in self.nodes]


async def _run_single(tx: AsyncManagedTransaction, query: str, params: dict):
    result = await tx.run(query, params)
    return await result.single()


async def _run_data(tx: AsyncManagedTransaction, query: str, params: dict) -> list[dict]:
    result = await tx.run(query, params)
    return await result.data()


async def _extract_subgraph(
    tx: AsyncManagedTransaction, conversation_id: str, max_hops: int
) -> Optional[Subgraph]:
    """
    Breadth-first expansion from the ROOT utterance over NEXT and BRANCH_TO
    edges for at most ``max_hops`` levels, skipping soft-deleted utterances,
    followed by edge induction over the collected node set.
    """
    head = await _run_single(tx, CONVERSATION_ROOT, {"cid": conversation_id})
    if head is None:
        return None

    subgraph = Subgraph(
        conversation=Conversation(id=head["id"], title=head["title"] or "")
    )
    if head["root_id"] is None or head["root_deleted"]:
        return subgraph
    subgraph.root_id = head["root_id"]

    order = [subgraph.root_id]
    seen = {subgraph.root_id}
    frontier = [subgraph.root_id]
    for _ in range(max_hops):
        if not frontier:
            break
        records = await _run_data(tx, SUCCESSORS, {"frontier": frontier})
        frontier = []
        for record in records:
            node_id = record["id"]
            if node_id not in seen:
                seen.add(node_id)
                order.append(node_id)
                frontier.append(node_id)

    by_id = {r["id"]: r for r in await _run_data(tx, NODES_BY_ID, {"ids": order})}
    subgraph.nodes = [by_id[node_id] for node_id in order if node_id in by_id]

    edges = await _run_data(tx, INDUCED_EDGES, {"ids": order})
    subgraph.relations = [_edge(r) for r in edges]
    return subgraph


async def _walk_linear(tx: AsyncManagedTransaction, conversation_id: str):
    """
    Follow NEXT from the live root one hop at a time, always taking the
    earliest-created successor, for at most LINEAR_PATH_MAX_HOPS hops.

    Soft-deleted lines are stepped through but left out of the result.
    Returns (head record, path records), or None without a live root.
    """
    head = await _run_single(tx, LINEAR_HEAD, {"cid": conversation_id})
    if head is None:
        return None

    path = [head]
    seen = {head["id"]}
    current = head["id"]
    for _ in range(LINEAR_PATH_MAX_HOPS):
        record = await _run_single(tx, NEXT_SUCCESSOR, {"id": current})
        if record is None or record["id"] in seen:
            break
        seen.add(record["id"])
        if not record["deleted"]:
            path.append(record)
        current = record["id"]
    return head, path


# ─── Import planning ──────────────────────────────────────────────────

@dataclass
class ImportPlan:
    """A validated import payload with identifiers already resolved."""

    conversation_id: str
    title: Optional[str]
    utterances: list[dict]
    next_rows: list[dict]
    branch_rows: list[dict]
    root_id: Optional[str]

    @property
    def relation_count(self) -> int:
        return len(self.next_rows) + len(self.branch_rows) + (1 if self.root_id else 0)


def plan_import(payload: ConversationImport) -> ImportPlan:
    """Validate an import payload and map its identifiers. Performs no I/O."""
    allowed = {t.value for t in RelType}
    for rel in payload.relations:
        if rel.type not in allowed:
            raise InvalidImportError(f"Unsupported relation type '{rel.type}'")

    id_map: dict[str, str] = {}
    utterances = []
    for u in payload.utterances:
        new_id = u.id if (payload.preserve_ids and u.id) else _new_id()
        if u.id:
            if u.id in id_map:
                raise InvalidImportError(f"Duplicate utterance id '{u.id}'")
            id_map[u.id] = new_id
        utterances.append({
            "id": new_id,
            "text": u.text,
            "character_id": u.character_id,
            "deleted": bool(u.deleted),
            "version": u.version or 1,
            "tags": normalize_tags(u.tags),
        })

    def resolve(ref: str) -> str:
        if ref not in id_map:
            raise InvalidImportError(f"Relation references unknown utterance '{ref}'")
        return id_map[ref]

    roots: set[str] = set()
    if payload.root_utterance_id:
        roots.add(payload.root_utterance_id)

    next_rows: list[dict] = []
    branch_rows: list[dict] = []
    for rel in payload.relations:
        if rel.type == RelType.ROOT.value:
            roots.add(rel.to_id)
            continue
        row = {"from_id": resolve(rel.from_id), "to_id": resolve(rel.to_id)}
        if rel.type == RelType.BRANCH_TO.value:
            row["weight"] = clamp_weight(rel.weight)
            branch_rows.append(row)
        else:
            next_rows.append(row)

    if len(roots) > 1:
        raise InvalidImportError(f"Conflicting root utterances: {sorted(roots)}")
    root_id = resolve(roots.pop()) if roots else None

    conversation_id = (
        payload.conversation_id
        if payload.preserve_ids and payload.conversation_id
        else _new_id()
    )
    return ImportPlan(
        conversation_id=conversation_id,
        title=payload.title,
        utterances=utterances,
        next_rows=next_rows,
        branch_rows=branch_rows,
        root_id=root_id,
    )


async def _apply_import(tx: AsyncManagedTransaction, plan: ImportPlan):
    record = await _run_single(
        tx, IMPORT_CONVERSATION, {"cid": plan.conversation_id, "title": plan.title}
    )
    if plan.utterances:
        await _run_data(
            tx, IMPORT_UTTERANCES, {"cid": plan.conversation_id, "rows": plan.utterances}
        )
    if plan.next_rows:
        await _run_data(tx, IMPORT_NEXT, {"rows": plan.next_rows})
    if plan.branch_rows:
        await _run_data(tx, IMPORT_BRANCHES, {"rows": plan.branch_rows})
    if plan.root_id:
        await _run_data(
            tx, IMPORT_ROOT, {"cid": plan.conversation_id, "root_id": plan.root_id}
        )
    return record


async def _upsert_root(tx: AsyncManagedTransaction, params: dict):
    locked = await _run_single(tx, DETACH_DELETED_ROOT, {"cid": params["cid"]})
    if locked is None:
        return None
    return await _run_single(tx, UPSERT_ROOT, params)


# ─── Engine ───────────────────────────────────────────────────────────

class DialogueGraph:
    """Conversation/utterance operations over a GraphStore."""

    def __init__(self, store: GraphStore, rng: Optional[random.Random] = None):
        self._store = store
        self._rng = rng or random.Random()

    # ─── Conversations ────────────────────────────────────────────

    async def create_conversation(self, title: str) -> Conversation:
        record = await self._store.write(
            _run_single, CREATE_CONVERSATION, {"id": _new_id(), "title": title}
        )
        conversation = Conversation(id=record["id"], title=record["title"])
        logger.info(f"Created conversation '{conversation.id}'")
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        record = await self._store.read(
            _run_single, GET_CONVERSATION, {"cid": conversation_id}
        )
        if record is None:
            return None
        return Conversation(id=record["id"], title=record["title"])

    # ─── Utterance Mutations ──────────────────────────────────────

    async def add_root_utterance(
        self,
        conversation_id: str,
        text: str,
        character_id: Optional[str] = None,
    ) -> Optional[CreatedUtterance]:
        """
        Set the conversation's entry line.

        A live root is rewritten in place (its version is bumped and
        ``created`` is False); a soft-deleted root is detached and a new
        utterance becomes root. Returns None when the conversation does not
        exist.
        """
        record = await self._store.write(
            _upsert_root,
            {
                "cid": conversation_id,
                "id": _new_id(),
                "text": text,
                "character_id": character_id,
            },
        )
        if record is None:
            return None
        logger.info(f"Root of '{conversation_id}' is now '{record['id']}'")
        return _created(record)

    async def add_next_utterance(
        self,
        from_utterance_id: str,
        text: str,
        character_id: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Optional[CreatedUtterance]:
        """Append a NEXT continuation. None if the source is missing or deleted."""
        record = await self._store.write(
            _run_single,
            ADD_NEXT,
            {
                "from_id": from_utterance_id,
                "id": _new_id(),
                "text": text,
                "character_id": character_id,
                "tags": normalize_tags(tags),
            },
        )
        if record is None:
            logger.debug(f"Source utterance '{from_utterance_id}' missing or deleted")
            return None
        return _created(record)

    async def get_utterance(self, utterance_id: str) -> Optional[UtteranceDetail]:
        record = await self._store.read(_run_single, GET_UTTERANCE, {"id": utterance_id})
        return _detail(record) if record is not None else None

    async def update_utterance(
        self,
        utterance_id: str,
        text: str,
        tags: Optional[list[str]],
        expected_version: int,
    ) -> Optional[UtteranceDetail]:
        """
        Compare-and-set update of text and tags.

        Succeeds only when the utterance is live and its stored version
        equals ``expected_version``; the version is then incremented by one.
        None means the update was rejected (stale version, deleted or
        missing) and nothing changed.
        """
        record = await self._store.write(
            _run_single,
            UPDATE_UTTERANCE,
            {
                "id": utterance_id,
                "text": text,
                "tags": normalize_tags(tags),
                "expected_version": expected_version,
            },
        )
        if record is None:
            logger.debug(
                f"Update of '{utterance_id}' at version {expected_version} rejected"
            )
            return None
        return _detail(record)

    async def delete_utterance(self, utterance_id: str) -> bool:
        """Soft delete. True only for the call that actually flipped the flag."""
        record = await self._store.write(_run_single, SOFT_DELETE, {"id": utterance_id})
        return record is not None

    # ─── Branches ─────────────────────────────────────────────────

    async def add_branch(
        self,
        from_utterance_id: str,
        to_utterance_id: str,
        weight: Optional[float] = None,
    ) -> Optional[RelationEdge]:
        """
        Merge a BRANCH_TO edge between two live utterances.

        A new edge starts at weight 1.0; re-adding is a no-op unless an
        explicit weight is given. None if either endpoint is missing or
        deleted.
        """
        record = await self._store.write(
            _run_single,
            ADD_BRANCH,
            {
                "from_id": from_utterance_id,
                "to_id": to_utterance_id,
                "default_weight": clamp_weight(None),
                "weight": clamp_weight(weight) if weight is not None else None,
            },
        )
        if record is None:
            return None
        return RelationEdge(
            from_id=record["from_id"],
            to_id=record["to_id"],
            type=RelType.BRANCH_TO,
            weight=record["weight"],
        )

    async def set_branch_weight(
        self, from_utterance_id: str, to_utterance_id: str, weight: float
    ) -> float:
        """Reweight an existing branch. Raises BranchNotFoundError otherwise."""
        record = await self._store.write(
            _run_single,
            SET_BRANCH_WEIGHT,
            {
                "from_id": from_utterance_id,
                "to_id": to_utterance_id,
                "weight": clamp_weight(weight),
            },
        )
        if record is None:
            raise BranchNotFoundError(from_utterance_id, to_utterance_id)
        return record["weight"]

    # ─── Traversals ───────────────────────────────────────────────

    async def get_root(self, conversation_id: str) -> Optional[UtteranceSummary]:
        """The live root utterance, or None if absent or soft-deleted."""
        subgraph = await self._store.read(_extract_subgraph, conversation_id, 0)
        if subgraph is None or not subgraph.nodes:
            return None
        return _summary(subgraph.nodes[0])

    async def get_linear_path(self, conversation_id: str) -> Optional[PathView]:
        """
        Canonical reading order: from the root, follow the earliest-created
        NEXT successor at each step, at most 25 hops, with soft-deleted lines
        spliced out. None when the conversation or its live root is missing.
        """
        walked = await self._store.read(_walk_linear, conversation_id)
        if walked is None:
            return None
        head, path = walked
        return PathView(
            conversation_id=head["conversation_id"],
            title=head["title"] or "",
            path=[_summary(record) for record in path],
        )

    async def get_graph(
        self, conversation_id: str, depth: int = GRAPH_DEPTH_DEFAULT
    ) -> Optional[GraphView]:
        depth = clamp_graph_depth(depth)
        subgraph = await self._store.read(_extract_subgraph, conversation_id, depth)
        if subgraph is None:
            return None
        return GraphView(
            conversation_id=subgraph.conversation.id,
            title=subgraph.conversation.title,
            root_id=subgraph.root_id,
            nodes=[_node(n) for n in subgraph.nodes],
            relations=subgraph.relations,
        )

    async def get_random_path(
        self, conversation_id: str, max_depth: int = RANDOM_DEPTH_DEFAULT
    ) -> Optional[PathView]:
        """
        Sample one reading of the conversation by weighted random walk.

        The subgraph is extracted up to the largest allowed depth; the
        clamped ``max_depth`` only bounds the number of walk steps.
        """
        steps = clamp_random_depth(max_depth)
        subgraph = await self._store.read(
            _extract_subgraph, conversation_id, RANDOM_DEPTH_MAX
        )
        if subgraph is None:
            return None

        view = PathView(
            conversation_id=subgraph.conversation.id,
            title=subgraph.conversation.title,
        )
        start = detect_root(subgraph.node_ids, subgraph.relations)
        if start is None:
            return view

        visited = weighted_walk(
            start, build_successors(subgraph.relations), steps, self._rng
        )
        by_id = {n["id"]: n for n in subgraph.nodes}
        view.path = [_summary(by_id[node_id]) for node_id in visited]
        return view

    # ─── Bulk Import / Export ─────────────────────────────────────

    async def import_conversation(self, payload: ConversationImport) -> Conversation:
        """
        Create or merge a whole conversation in one write transaction.

        The payload is fully validated first; InvalidImportError is raised
        before anything is written.
        """
        plan = plan_import(payload)
        record = await self._store.write(_apply_import, plan)
        logger.info(
            f"Imported conversation '{plan.conversation_id}': "
            f"{len(plan.utterances)} utterances, {plan.relation_count} relations"
        )
        return Conversation(id=record["id"], title=record["title"])

    async def export_conversation(
        self, conversation_id: str, depth: int = GRAPH_DEPTH_DEFAULT
    ) -> Optional[ConversationExport]:
        depth = clamp_graph_depth(depth)
        subgraph = await self._store.read(_extract_subgraph, conversation_id, depth)
        if subgraph is None:
            return None

        utterances = [
            ImportedUtterance(
                id=n["id"],
                text=n["text"] or "",
                character_id=n["character_id"],
                deleted=bool(n["deleted"]),
                tags=list(n["tags"] or []),
                version=int(n["version"]),
            )
            for n in subgraph.nodes
        ]
        relations = []
        if subgraph.root_id:
            relations.append(ImportedRelation(
                from_id=subgraph.conversation.id,
                to_id=subgraph.root_id,
                type=RelType.ROOT.value,
            ))
        relations.extend(
            ImportedRelation(
                from_id=r.from_id, to_id=r.to_id, type=r.type.value, weight=r.weight
            )
            for r in subgraph.relations
        )
        return ConversationExport(
            conversation_id=subgraph.conversation.id,
            title=subgraph.conversation.title,
            root_utterance_id=subgraph.root_id,
            utterances=utterances,
            relations=relations,
        )
