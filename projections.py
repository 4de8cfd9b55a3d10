"""
Event projections: best-effort side effects after a committed graph write.

Nothing here is part of the graph's transactional boundary. Events are
published into a bounded in-process outbox and handled by a background
worker; a failing handler is logged and skipped, never retried, and never
affects the result the caller already received.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from config import PROJECTION_QUEUE_SIZE

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Domain Events ───────────────────────────────────────────────────

class DomainEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = Field(default_factory=_utcnow)

    @property
    def event_type(self) -> str:
        return type(self).__name__


class ConversationCreated(DomainEvent):
    conversation_id: str
    title: str


class UtteranceCreated(DomainEvent):
    utterance_id: str
    text: str
    character_id: Optional[str] = None
    # Unknown when appending after an arbitrary utterance
    conversation_id: Optional[str] = None
    is_root: bool = False


class UtteranceUpdated(DomainEvent):
    utterance_id: str
    text: str
    # None when the rewrite left tags untouched
    tags: Optional[list[str]] = None
    version: int
    conversation_id: Optional[str] = None


class UtteranceDeleted(DomainEvent):
    utterance_id: str


class BranchChanged(DomainEvent):
    from_id: str
    to_id: str
    weight: float


class ConversationImported(DomainEvent):
    conversation_id: str
    title: str
    utterance_count: int
    relation_count: int


EventHandler = Callable[[Any], Awaitable[None]]


# ─── Dispatcher ──────────────────────────────────────────────────────

class ProjectionDispatcher:
    """In-process outbox with fire-and-forget delivery to subscribers."""

    def __init__(self, maxsize: int = PROJECTION_QUEUE_SIZE):
        self._handlers: dict[type, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._worker: Optional[asyncio.Task] = None

    def subscribe(self, event_type: type, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def publish(self, event: DomainEvent) -> bool:
        """Enqueue without waiting. Returns False if the event was dropped."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Projection queue full; dropped {event.event_type} {event.event_id}")
            return False
        return True

    async def dispatch(self, event: DomainEvent) -> None:
        """Deliver one event to every handler registered for its type."""
        handlers = [
            handler
            for event_type, registered in self._handlers.items()
            if isinstance(event, event_type)
            for handler in registered
        ]
        if not handlers:
            logger.debug(f"No projection handlers for {event.event_type}")
            return
        for handler in handlers:
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    f"Projection handler {getattr(handler, '__qualname__', handler)!r} "
                    f"failed for {event.event_type} {event.event_id}: {exc}"
                )

    async def run(self) -> None:
        """Drain the outbox forever; run as a background task."""
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self.run())

    async def drain(self) -> None:
        """Wait until every published event has been handled."""
        await self._queue.join()

    async def stop(self) -> None:
        """Flush pending events, then cancel the worker."""
        if self._worker is None:
            return
        await self.drain()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None


# ─── Read Cache Sink ─────────────────────────────────────────────────

class ReadCache:
    """Minimal in-memory cache for conversation reads."""

    def __init__(self):
        self._entries: dict[str, Any] = {}

    def get(self, key: str) -> Any:
        return self._entries.get(key)

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = value

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        stale = [k for k in self._entries if k.startswith(prefix)]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


def conversation_key(kind: str, conversation_id: str, *parts: Any) -> str:
    suffix = "".join(f":{p}" for p in parts)
    return f"conversation:{conversation_id}:{kind}{suffix}"


class CacheInvalidationHandler:
    """Evicts cached reads touched by a mutation."""

    def __init__(self, cache: ReadCache):
        self._cache = cache

    def register(self, dispatcher: ProjectionDispatcher) -> None:
        dispatcher.subscribe(DomainEvent, self.handle)

    async def handle(self, event: DomainEvent) -> None:
        conversation_id = getattr(event, "conversation_id", None)
        if conversation_id:
            removed = self._cache.invalidate_prefix(f"conversation:{conversation_id}:")
        else:
            # Utterance-level events do not know their conversation
            removed = self._cache.invalidate_prefix("conversation:")
        logger.debug(f"Cache invalidated for {event.event_type}: {removed} entries")


# ─── Analytics Mirror Sink ───────────────────────────────────────────

class ConversationStats(BaseModel):
    conversation_id: str
    title: str = ""
    total_utterances: int = 0
    last_activity: datetime = Field(default_factory=_utcnow)
    character_lines: dict[str, int] = Field(default_factory=dict)


class ConversationMirror:
    """In-memory analytics projection of conversation activity."""

    def __init__(self):
        self.conversations: dict[str, ConversationStats] = {}
        self.updates = 0
        self.deletions = 0

    def stats(self, conversation_id: str) -> Optional[ConversationStats]:
        return self.conversations.get(conversation_id)

    def _touch(self, conversation_id: str, when: datetime, title: str = "") -> ConversationStats:
        stats = self.conversations.setdefault(
            conversation_id,
            ConversationStats(conversation_id=conversation_id, title=title, last_activity=when),
        )
        if title:
            stats.title = title
        stats.last_activity = max(stats.last_activity, when)
        return stats

    def record_conversation(self, event: ConversationCreated) -> None:
        self._touch(event.conversation_id, event.occurred_at, event.title)

    def record_utterance(self, event: UtteranceCreated) -> None:
        if event.conversation_id is None:
            return
        stats = self._touch(event.conversation_id, event.occurred_at)
        stats.total_utterances += 1
        if event.character_id:
            stats.character_lines[event.character_id] = (
                stats.character_lines.get(event.character_id, 0) + 1
            )

    def record_update(self, event: UtteranceUpdated) -> None:
        self.updates += 1
        if event.conversation_id is not None:
            self._touch(event.conversation_id, event.occurred_at)

    def record_import(self, event: ConversationImported) -> None:
        stats = self._touch(event.conversation_id, event.occurred_at, event.title)
        stats.total_utterances = max(stats.total_utterances, event.utterance_count)


class MirrorProjectionHandler:
    """Feeds graph events into the analytics mirror."""

    def __init__(self, mirror: ConversationMirror):
        self._mirror = mirror

    def register(self, dispatcher: ProjectionDispatcher) -> None:
        dispatcher.subscribe(ConversationCreated, self.on_conversation_created)
        dispatcher.subscribe(UtteranceCreated, self.on_utterance_created)
        dispatcher.subscribe(UtteranceUpdated, self.on_utterance_updated)
        dispatcher.subscribe(UtteranceDeleted, self.on_utterance_deleted)
        dispatcher.subscribe(ConversationImported, self.on_conversation_imported)

    async def on_conversation_created(self, event: ConversationCreated) -> None:
        self._mirror.record_conversation(event)

    async def on_utterance_created(self, event: UtteranceCreated) -> None:
        self._mirror.record_utterance(event)

    async def on_utterance_updated(self, event: UtteranceUpdated) -> None:
        self._mirror.record_update(event)

    async def on_utterance_deleted(self, event: UtteranceDeleted) -> None:
        self._mirror.deletions += 1

    async def on_conversation_imported(self, event: ConversationImported) -> None:
        self._mirror.record_import(event)
