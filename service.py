"""
Command/query surface over the dialogue graph.

Each method runs one engine operation and, only if it produced a committed
change, publishes the matching projection event. Linear paths and graph
views are served through the read cache that the projections keep fresh;
callers always receive their own copy of a cached view. Command input is
validated through the request models in ``schema`` before any write, so
a ``pydantic.ValidationError`` means nothing was touched.
"""

from __future__ import annotations

import logging
from typing import Optional

from cypher import GRAPH_DEPTH_DEFAULT, RANDOM_DEPTH_DEFAULT, clamp_graph_depth
from dialogue_graph import DialogueGraph
from generation import GenerationBridge
from projections import (
    BranchChanged,
    ConversationCreated,
    ConversationImported,
    ProjectionDispatcher,
    ReadCache,
    UtteranceCreated,
    UtteranceDeleted,
    UtteranceUpdated,
    conversation_key,
)
from schema import (
    AddNextRequest,
    AddRootRequest,
    BranchRequest,
    Conversation,
    ConversationExport,
    ConversationImport,
    CreateConversationRequest,
    CreatedUtterance,
    GraphView,
    PathView,
    RelationEdge,
    UpdateUtteranceRequest,
    UtteranceDetail,
    UtteranceSummary,
)

logger = logging.getLogger(__name__)


class DialogueService:
    def __init__(
        self,
        graph: DialogueGraph,
        dispatcher: ProjectionDispatcher,
        cache: Optional[ReadCache] = None,
        bridge: Optional[GenerationBridge] = None,
    ):
        self.graph = graph
        self.dispatcher = dispatcher
        self.cache = cache
        self.bridge = bridge

    # ─── Commands ─────────────────────────────────────────────────

    async def create_conversation(self, title: str) -> Conversation:
        request = CreateConversationRequest(title=title)
        conversation = await self.graph.create_conversation(request.title)
        self.dispatcher.publish(
            ConversationCreated(conversation_id=conversation.id, title=conversation.title)
        )
        return conversation

    async def add_root_utterance(
        self, conversation_id: str, text: str, character_id: Optional[str] = None
    ) -> Optional[CreatedUtterance]:
        request = AddRootRequest(
            conversation_id=conversation_id, text=text, character_id=character_id
        )
        utterance = await self.graph.add_root_utterance(
            request.conversation_id, request.text, request.character_id
        )
        if utterance is None:
            return None
        if utterance.created:
            self._utterance_created(utterance, request.conversation_id, is_root=True)
        else:
            self.dispatcher.publish(UtteranceUpdated(
                utterance_id=utterance.id,
                conversation_id=request.conversation_id,
                text=utterance.text,
                version=utterance.version,
            ))
        return utterance

    async def add_next_utterance(
        self,
        from_utterance_id: str,
        text: str,
        character_id: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Optional[CreatedUtterance]:
        request = AddNextRequest(
            from_utterance_id=from_utterance_id,
            text=text,
            character_id=character_id,
            tags=tags,
        )
        utterance = await self.graph.add_next_utterance(
            request.from_utterance_id, request.text, request.character_id, request.tags
        )
        if utterance is not None:
            self._utterance_created(utterance)
        return utterance

    async def update_utterance(
        self,
        utterance_id: str,
        text: str,
        tags: Optional[list[str]],
        expected_version: int,
    ) -> Optional[UtteranceDetail]:
        request = UpdateUtteranceRequest(
            utterance_id=utterance_id,
            text=text,
            tags=tags,
            expected_version=expected_version,
        )
        updated = await self.graph.update_utterance(
            request.utterance_id, request.text, request.tags, request.expected_version
        )
        if updated is not None:
            self.dispatcher.publish(UtteranceUpdated(
                utterance_id=updated.id,
                text=updated.text,
                tags=updated.tags,
                version=updated.version,
            ))
        return updated

    async def delete_utterance(self, utterance_id: str) -> bool:
        deleted = await self.graph.delete_utterance(utterance_id)
        if deleted:
            self.dispatcher.publish(UtteranceDeleted(utterance_id=utterance_id))
        return deleted

    async def add_branch(
        self, from_utterance_id: str, to_utterance_id: str, weight: Optional[float] = None
    ) -> Optional[RelationEdge]:
        request = BranchRequest(
            from_utterance_id=from_utterance_id, to_utterance_id=to_utterance_id, weight=weight
        )
        edge = await self.graph.add_branch(
            request.from_utterance_id, request.to_utterance_id, request.weight
        )
        if edge is not None:
            self._branch_changed(edge.from_id, edge.to_id, edge.weight)
        return edge

    async def set_branch_weight(
        self, from_utterance_id: str, to_utterance_id: str, weight: float
    ) -> float:
        request = BranchRequest(
            from_utterance_id=from_utterance_id, to_utterance_id=to_utterance_id, weight=weight
        )
        stored = await self.graph.set_branch_weight(
            request.from_utterance_id, request.to_utterance_id, weight
        )
        self._branch_changed(request.from_utterance_id, request.to_utterance_id, stored)
        return stored

    async def import_conversation(self, payload: ConversationImport) -> Conversation:
        conversation = await self.graph.import_conversation(payload)
        self.dispatcher.publish(ConversationImported(
            conversation_id=conversation.id,
            title=conversation.title,
            utterance_count=len(payload.utterances),
            relation_count=len(payload.relations),
        ))
        return conversation

    async def auto_expand(
        self,
        conversation_id: str,
        count: int,
        context: Optional[str] = None,
        from_utterance_id: Optional[str] = None,
    ) -> list[UtteranceSummary]:
        if self.bridge is None:
            logger.warning("Auto-expand requested but no generator is configured")
            return []
        appended = await self.bridge.auto_expand(
            conversation_id, count, context, from_utterance_id
        )
        for utterance in appended:
            self._utterance_created(utterance, conversation_id)
        return appended

    # ─── Queries ──────────────────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await self.graph.get_conversation(conversation_id)

    async def get_utterance(self, utterance_id: str) -> Optional[UtteranceDetail]:
        return await self.graph.get_utterance(utterance_id)

    async def get_linear_path(self, conversation_id: str) -> Optional[PathView]:
        key = conversation_key("path", conversation_id)
        cached = self._cached(key)
        if cached is not None:
            return cached
        path = await self.graph.get_linear_path(conversation_id)
        self._store(key, path)
        return path

    async def get_graph(
        self, conversation_id: str, depth: int = GRAPH_DEPTH_DEFAULT
    ) -> Optional[GraphView]:
        key = conversation_key("graph", conversation_id, clamp_graph_depth(depth))
        cached = self._cached(key)
        if cached is not None:
            return cached
        view = await self.graph.get_graph(conversation_id, depth)
        self._store(key, view)
        return view

    async def get_random_path(
        self, conversation_id: str, max_depth: int = RANDOM_DEPTH_DEFAULT
    ) -> Optional[PathView]:
        return await self.graph.get_random_path(conversation_id, max_depth)

    async def export_conversation(
        self, conversation_id: str, depth: int = GRAPH_DEPTH_DEFAULT
    ) -> Optional[ConversationExport]:
        return await self.graph.export_conversation(conversation_id, depth)

    # ─── Helpers ──────────────────────────────────────────────────

    def _utterance_created(
        self,
        utterance: UtteranceSummary,
        conversation_id: Optional[str] = None,
        is_root: bool = False,
    ) -> None:
        self.dispatcher.publish(UtteranceCreated(
            utterance_id=utterance.id,
            conversation_id=conversation_id or getattr(utterance, "conversation_id", None),
            text=utterance.text,
            character_id=utterance.character_id,
            is_root=is_root,
        ))

    def _branch_changed(self, from_id: str, to_id: str, weight: Optional[float]) -> None:
        self.dispatcher.publish(
            BranchChanged(from_id=from_id, to_id=to_id, weight=weight or 1.0)
        )

    def _cached(self, key: str):
        if self.cache is None:
            return None
        cached = self.cache.get(key)
        return cached.model_copy(deep=True) if cached is not None else None

    def _store(self, key: str, value) -> None:
        if self.cache is not None and value is not None:
            self.cache.set(key, value.model_copy(deep=True))
