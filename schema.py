"""
Schema definitions for Dialogue Graph Studio.

These Pydantic models are the typed contract between callers (CLI, command
handlers, the generation collaborator) and the Neo4j dialogue graph. Records
coming back from Cypher are mapped into these models before leaving the
engine.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cypher import RelType


TITLE_MIN_LENGTH = 3
TITLE_MAX_LENGTH = 200
TEXT_MAX_LENGTH = 5000
TAG_MAX_LENGTH = 50


def normalize_tags(tags: Optional[list[str]]) -> list[str]:
    """Tags are an unordered set; store them sorted and de-duplicated."""
    if not tags:
        return []
    return sorted({t.strip() for t in tags if t and t.strip()})


# ─── Conversations & Utterances ──────────────────────────────────────

class Conversation(BaseModel):
    id: str
    title: str


class UtteranceSummary(BaseModel):
    """One line of dialogue as returned by create and path operations."""

    id: str
    text: str
    character_id: Optional[str] = None


class CreatedUtterance(UtteranceSummary):
    """Result of a write that created, or rewrote in place, one utterance."""

    conversation_id: Optional[str] = None
    created: bool = True
    version: int = Field(default=1, ge=1)


class UtteranceDetail(UtteranceSummary):
    """Full utterance state, including soft-deleted ones."""

    deleted: bool = False
    version: int = Field(default=1, ge=1)
    tags: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UtteranceNode(UtteranceSummary):
    """An utterance as it appears inside a subgraph view."""

    deleted: bool = False
    tags: list[str] = Field(default_factory=list)


class RelationEdge(BaseModel):
    """A directed edge between two utterances (or conversation → root)."""

    model_config = ConfigDict(populate_by_name=True)

    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")
    type: RelType
    weight: Optional[float] = None


class PathView(BaseModel):
    """An ordered reading of a conversation."""

    conversation_id: str
    title: str
    path: list[UtteranceSummary] = Field(default_factory=list)


class GraphView(BaseModel):
    """Bounded neighbourhood of a conversation's root."""

    conversation_id: str
    title: str
    root_id: Optional[str] = None
    nodes: list[UtteranceNode] = Field(default_factory=list)
    relations: list[RelationEdge] = Field(default_factory=list)


# ─── Command Requests ────────────────────────────────────────────────

def _check_tags(tags: Optional[list[str]]) -> Optional[list[str]]:
    if tags is None:
        return None
    for tag in tags:
        if not tag.strip():
            raise ValueError("Tags must not be blank")
        if len(tag) > TAG_MAX_LENGTH:
            raise ValueError(f"Tag '{tag[:20]}...' exceeds {TAG_MAX_LENGTH} characters")
    return tags


class CommandRequest(BaseModel):
    """Base for validated command input; surrounding whitespace is ignored."""

    model_config = ConfigDict(str_strip_whitespace=True)


class CreateConversationRequest(CommandRequest):
    title: str = Field(min_length=TITLE_MIN_LENGTH, max_length=TITLE_MAX_LENGTH)


class UtteranceTextRequest(CommandRequest):
    text: str = Field(min_length=1, max_length=TEXT_MAX_LENGTH)
    character_id: Optional[str] = Field(default=None, min_length=1)


class AddRootRequest(UtteranceTextRequest):
    conversation_id: str = Field(min_length=1)


class AddNextRequest(UtteranceTextRequest):
    from_utterance_id: str = Field(min_length=1)
    tags: Optional[list[str]] = None

    @field_validator("tags")
    @classmethod
    def check_tags(cls, v):
        return _check_tags(v)


class UpdateUtteranceRequest(CommandRequest):
    utterance_id: str = Field(min_length=1)
    text: str = Field(min_length=1, max_length=TEXT_MAX_LENGTH)
    tags: Optional[list[str]] = None
    expected_version: int = Field(gt=0)

    @field_validator("tags")
    @classmethod
    def check_tags(cls, v):
        return _check_tags(v)


class BranchRequest(CommandRequest):
    """Non-positive weights are accepted here and clamped by the engine."""

    from_utterance_id: str = Field(min_length=1)
    to_utterance_id: str = Field(min_length=1)
    weight: Optional[float] = None


# ─── Import / Export ─────────────────────────────────────────────────

class ImportedUtterance(BaseModel):
    id: Optional[str] = None
    text: str = Field(max_length=TEXT_MAX_LENGTH)
    character_id: Optional[str] = None
    deleted: Optional[bool] = None
    tags: Optional[list[str]] = None
    version: Optional[int] = Field(default=None, ge=1)


class ImportedRelation(BaseModel):
    """
    A relation in the exchange format.

    ``type`` is kept as a plain string so that unsupported types reach the
    engine and are rejected there, before any write happens.
    """

    model_config = ConfigDict(populate_by_name=True)

    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")
    type: str
    weight: Optional[float] = None

    @field_validator("type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return v.strip().upper()


class ConversationImport(BaseModel):
    title: Optional[str] = None
    conversation_id: Optional[str] = None
    root_utterance_id: Optional[str] = None
    preserve_ids: bool = False
    utterances: list[ImportedUtterance] = Field(default_factory=list)
    relations: list[ImportedRelation] = Field(default_factory=list)


class ConversationExport(BaseModel):
    conversation_id: str
    title: str
    root_utterance_id: Optional[str] = None
    utterances: list[ImportedUtterance] = Field(default_factory=list)
    relations: list[ImportedRelation] = Field(default_factory=list)

    def to_import(self, preserve_ids: bool = True) -> ConversationImport:
        """Re-shape an export as an import payload for a fresh conversation."""
        return ConversationImport(
            title=self.title,
            root_utterance_id=self.root_utterance_id,
            preserve_ids=preserve_ids,
            utterances=[u.model_copy() for u in self.utterances],
            relations=[r.model_copy() for r in self.relations],
        )


# ─── Generation ──────────────────────────────────────────────────────

class GeneratedUtterance(BaseModel):
    """A line proposed by the external generation collaborator."""

    text: str = Field(min_length=1, max_length=TEXT_MAX_LENGTH)
    character_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("text")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Generated text is empty")
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def default_tags(cls, v):
        return v or []
