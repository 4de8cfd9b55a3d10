"""
Generation bridge: external utterance generator → NEXT chain in the graph.

The generator is a collaborator we do not control. Anything it does wrong
(unreachable, slow, malformed output) degrades to an empty expansion;
only cancellation propagates to the caller.

Design choices:
  - Generation happens before the attachment point is resolved, so a slow
    model never holds a graph transaction open
  - Each appended line is its own engine call and becomes the anchor for
    the next one; if an anchor disappears mid-way the chain stops there
  - Ollama output is parsed leniently and validated through Pydantic
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from config import (
    GENERATION_MAX_COUNT,
    OLLAMA_BASE_URL,
    OLLAMA_MODEL,
    OLLAMA_TEMPERATURE,
    OLLAMA_TIMEOUT,
)
from dialogue_graph import DialogueGraph
from schema import GeneratedUtterance, UtteranceSummary

logger = logging.getLogger(__name__)


# ─── Prompt Template ─────────────────────────────────────────────────

CONTINUATION_PROMPT = """You are a dialogue writer for a narrative game.
Continue the conversation below with exactly {count} new line(s) of dialogue.

Output ONLY a JSON array of objects. Each object must have:
- "text": string (the spoken line, no speaker prefix)
- "character_id": string or null (the speaking character's id if known)
- "tags": array of short strings (mood, intent; empty array if none)

Example output:
[
  {{"text": "You came back. I wasn't sure you would.", "character_id": null, "tags": ["relief"]}}
]

CONVERSATION SO FAR:
---
{context}
---

Output ONLY the JSON array, no explanation:"""


# ─── Generator Collaborators ─────────────────────────────────────────

class UtteranceGenerator(Protocol):
    async def generate(
        self, conversation_id: str, context: Optional[str], count: int
    ) -> list[GeneratedUtterance]:
        ...


def _parse_json_array(raw: str) -> list:
    """
    Parse a JSON array from model output, handling common LLM quirks:
    - Markdown code fences
    - Trailing commas
    - Preamble text before the JSON
    - A single object, or an object wrapping the array
    """
    text = raw.strip()

    if "```" in text:
        for part in text.split("```"):
            part = part.strip()
            if part.startswith("json"):
                part = part[4:].strip()
            if part.startswith("[") or part.startswith("{"):
                text = part
                break

    text = re.sub(r",\s*([}\]])", r"\1", text)

    start = text.find("[")
    end = text.rfind("]")
    if start != -1 and end > start:
        return json.loads(text[start : end + 1])

    # JSON mode often yields {"items": [...]} or a bare object
    obj = json.loads(text)
    if isinstance(obj, dict):
        for value in obj.values():
            if isinstance(value, list):
                return value
        return [obj]
    raise ValueError(f"No JSON array found in response: {text[:200]}")


class OllamaUtteranceGenerator:
    """Generates continuation lines with a local Ollama model."""

    def __init__(
        self,
        base_url: str = OLLAMA_BASE_URL,
        model: str = OLLAMA_MODEL,
        temperature: float = OLLAMA_TEMPERATURE,
        timeout: float = OLLAMA_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self._transport = transport

    async def _call_ollama(self, prompt: str) -> str:
        """Send a prompt to Ollama and return the raw text response."""
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.post(
                f"{self.base_url}/api/generate",
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "stream": False,
                    "format": "json",
                    "options": {"temperature": self.temperature},
                },
            )
            response.raise_for_status()
            return response.json()["response"]

    async def generate(
        self, conversation_id: str, context: Optional[str], count: int
    ) -> list[GeneratedUtterance]:
        prompt = CONTINUATION_PROMPT.format(
            count=count,
            context=context or "(the conversation has not started yet)",
        )
        raw = await self._call_ollama(prompt)

        items = []
        for entry in _parse_json_array(raw):
            if isinstance(entry, str):
                entry = {"text": entry}
            if not isinstance(entry, dict):
                continue
            try:
                items.append(GeneratedUtterance.model_validate(entry))
            except ValidationError as exc:
                logger.warning(f"  Dropping invalid generated line: {exc}")
        logger.info(
            f"Generated {len(items)} line(s) for conversation '{conversation_id}'"
        )
        return items


# ─── Bridge ──────────────────────────────────────────────────────────

class GenerationBridge:
    """Appends generated lines to a conversation as a NEXT chain."""

    def __init__(
        self,
        graph: DialogueGraph,
        generator: UtteranceGenerator,
        max_count: int = GENERATION_MAX_COUNT,
    ):
        self._graph = graph
        self._generator = generator
        self.max_count = max_count

    async def auto_expand(
        self,
        conversation_id: str,
        count: int,
        context: Optional[str] = None,
        from_utterance_id: Optional[str] = None,
    ) -> list[UtteranceSummary]:
        """
        Generate up to ``count`` lines and chain them after the anchor.

        The anchor is ``from_utterance_id`` or, when omitted, the
        conversation's live root. Returns the utterances actually appended;
        an out-of-range count, a generator failure or a missing anchor all
        yield an empty list.
        """
        if not 1 <= count <= self.max_count:
            logger.debug(f"Rejected auto-expand count {count} (max {self.max_count})")
            return []

        try:
            generated = await self._generator.generate(conversation_id, context, count)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                f"Generation failed for conversation '{conversation_id}': {exc}"
            )
            return []

        generated = generated[:count]
        if not generated:
            return []

        anchor = from_utterance_id
        if anchor is None:
            root = await self._graph.get_root(conversation_id)
            if root is None:
                logger.debug(f"Conversation '{conversation_id}' has no root to expand")
                return []
            anchor = root.id

        appended: list[UtteranceSummary] = []
        for item in generated:
            created = await self._graph.add_next_utterance(
                anchor, item.text, item.character_id, item.tags
            )
            if created is None:
                logger.warning(f"Anchor '{anchor}' vanished; stopping expansion")
                break
            appended.append(created)
            anchor = created.id
        return appended
