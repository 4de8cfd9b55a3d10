"""Tests for the Ollama generator and the generation bridge."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import httpx
import pytest

from generation import GenerationBridge, OllamaUtteranceGenerator, _parse_json_array
from schema import GeneratedUtterance, UtteranceSummary


# ─── Fakes ─────────────────────────────────────────────────────────────

class FakeGraph:
    """Stands in for DialogueGraph: a root plus a list of appends."""

    def __init__(self, root_id: Optional[str] = "root", live: Optional[set] = None):
        self.root_id = root_id
        self.live = live
        self.appended: list[tuple[str, str]] = []

    async def get_root(self, conversation_id):
        if self.root_id is None:
            return None
        return UtteranceSummary(id=self.root_id, text="Opening line")

    async def add_next_utterance(self, from_id, text, character_id=None, tags=None):
        if self.live is not None and from_id not in self.live:
            return None
        new_id = f"gen-{len(self.appended)}"
        self.appended.append((from_id, text))
        return UtteranceSummary(id=new_id, text=text, character_id=character_id)


class FakeGenerator:
    def __init__(self, lines=None, error: Optional[BaseException] = None):
        self.lines = lines or []
        self.error = error
        self.calls = 0

    async def generate(self, conversation_id, context, count):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [GeneratedUtterance(text=t) for t in self.lines]


# ═══════════════════════════════════════════════════════════════════════
# 1. Lenient JSON parsing
# ═══════════════════════════════════════════════════════════════════════


class TestParseJsonArray:

    def test_plain_array(self):
        assert _parse_json_array('[{"text": "Hi"}]') == [{"text": "Hi"}]

    def test_code_fence_and_trailing_comma(self):
        raw = 'Sure!\n```json\n[{"text": "Hi"},]\n```'
        assert _parse_json_array(raw) == [{"text": "Hi"}]

    def test_object_wrapping_array(self):
        assert _parse_json_array('{"lines": [{"text": "Hi"}]}') == [{"text": "Hi"}]

    def test_single_object(self):
        assert _parse_json_array('{"text": "Hi"}') == [{"text": "Hi"}]

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            _parse_json_array("no json here")


# ═══════════════════════════════════════════════════════════════════════
# 2. Ollama generator over a mock transport
# ═══════════════════════════════════════════════════════════════════════


def _ollama_transport(body: str, seen: list):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"response": body})
    return httpx.MockTransport(handler)


class TestOllamaGenerator:

    @pytest.mark.asyncio
    async def test_generate_parses_and_validates(self):
        seen = []
        body = json.dumps([
            {"text": " You again? ", "character_id": "guard", "tags": ["wary"]},
            {"text": "   "},
            "Move along.",
            42,
        ])
        generator = OllamaUtteranceGenerator(
            base_url="http://ollama.test/", model="tiny", transport=_ollama_transport(body, seen)
        )

        lines = await generator.generate("c1", "Hero: Hello", 2)

        assert [l.text for l in lines] == ["You again?", "Move along."]
        assert lines[0].character_id == "guard"
        assert seen[0]["model"] == "tiny"
        assert seen[0]["stream"] is False
        assert "Hero: Hello" in seen[0]["prompt"]

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        generator = OllamaUtteranceGenerator(base_url="http://ollama.test", transport=transport)
        with pytest.raises(httpx.HTTPStatusError):
            await generator.generate("c1", None, 1)


# ═══════════════════════════════════════════════════════════════════════
# 3. Bridge
# ═══════════════════════════════════════════════════════════════════════


class TestGenerationBridge:

    @pytest.mark.asyncio
    async def test_chains_after_root(self):
        graph = FakeGraph()
        bridge = GenerationBridge(graph, FakeGenerator(["one", "two", "three"]))

        appended = await bridge.auto_expand("c1", 3)

        assert [u.text for u in appended] == ["one", "two", "three"]
        assert graph.appended == [("root", "one"), ("gen-0", "two"), ("gen-1", "three")]

    @pytest.mark.asyncio
    async def test_explicit_anchor(self):
        graph = FakeGraph(root_id=None)
        bridge = GenerationBridge(graph, FakeGenerator(["one"]))

        appended = await bridge.auto_expand("c1", 1, from_utterance_id="mid")
        assert graph.appended == [("mid", "one")]
        assert len(appended) == 1

    @pytest.mark.asyncio
    async def test_output_truncated_to_count(self):
        graph = FakeGraph()
        bridge = GenerationBridge(graph, FakeGenerator(["a", "b", "c", "d"]))
        assert len(await bridge.auto_expand("c1", 2)) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, -1, 6])
    async def test_out_of_range_count(self, count):
        generator = FakeGenerator(["x"])
        bridge = GenerationBridge(FakeGraph(), generator)

        assert await bridge.auto_expand("c1", count) == []
        assert generator.calls == 0

    @pytest.mark.asyncio
    async def test_generator_failure_yields_empty(self):
        graph = FakeGraph()
        generator = FakeGenerator(error=httpx.ConnectError("refused"))
        bridge = GenerationBridge(graph, generator)

        assert await bridge.auto_expand("c1", 2) == []
        assert graph.appended == []

    @pytest.mark.asyncio
    async def test_timeout_yields_empty(self):
        bridge = GenerationBridge(FakeGraph(), FakeGenerator(error=httpx.ReadTimeout("slow")))
        assert await bridge.auto_expand("c1", 1) == []

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        bridge = GenerationBridge(FakeGraph(), FakeGenerator(error=asyncio.CancelledError()))
        with pytest.raises(asyncio.CancelledError):
            await bridge.auto_expand("c1", 1)

    @pytest.mark.asyncio
    async def test_no_root(self):
        graph = FakeGraph(root_id=None)
        bridge = GenerationBridge(graph, FakeGenerator(["one"]))
        assert await bridge.auto_expand("c1", 1) == []

    @pytest.mark.asyncio
    async def test_stops_when_anchor_vanishes(self):
        graph = FakeGraph(live={"root"})
        bridge = GenerationBridge(graph, FakeGenerator(["one", "two"]))

        appended = await bridge.auto_expand("c1", 2)
        assert [u.text for u in appended] == ["one"]
