"""Tests for the GraphStore adapter (mocked driver) and the CLI parser."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from neo4j import READ_ACCESS, WRITE_ACCESS

from graph_store import BOOTSTRAP_STATEMENTS, GraphStore
from tests.conftest import MockAsyncResult


class TestGraphStore:

    @pytest.mark.asyncio
    async def test_read_and_write_use_matching_access_modes(self, mock_graph_store, fake_tx):
        store, session = mock_graph_store
        fake_tx.responder = lambda q, p: [{"n": p.get("n", 0)}]

        assert await store.read_query("RETURN $n AS n", n=3) == [{"n": 3}]
        assert await store.write_query("RETURN $n AS n", n=4) == [{"n": 4}]

        assert session.transactions == ["read", "write"]
        modes = [c.kwargs["default_access_mode"] for c in store._driver.session.call_args_list]
        assert modes == [READ_ACCESS, WRITE_ACCESS]

    @pytest.mark.asyncio
    async def test_database_is_passed_when_configured(self):
        with patch("graph_store.AsyncGraphDatabase") as mock_db:
            driver = MagicMock()
            mock_db.driver.return_value = driver
            session = AsyncMock()
            session.execute_read = AsyncMock(return_value=[])
            session_cm = AsyncMock()
            session_cm.__aenter__ = AsyncMock(return_value=session)
            session_cm.__aexit__ = AsyncMock(return_value=False)
            driver.session.return_value = session_cm

            store = GraphStore(uri="bolt://x:7687", user="u", password="p", database="dialogue")
            await store.read_query("RETURN 1")

            assert driver.session.call_args.kwargs["database"] == "dialogue"
            mock_db.driver.assert_called_once_with("bolt://x:7687", auth=("u", "p"))

    @pytest.mark.asyncio
    async def test_setup_indexes_tolerates_failures(self, mock_graph_store):
        store, session = mock_graph_store
        session.run = AsyncMock(side_effect=[
            MockAsyncResult([]), Exception("already exists"), MockAsyncResult([]),
        ])

        await store.setup_indexes()
        assert session.run.await_count == len(BOOTSTRAP_STATEMENTS)

    @pytest.mark.asyncio
    async def test_ping(self, mock_graph_store, fake_tx):
        store, _ = mock_graph_store
        fake_tx.responder = lambda q, p: [{"n": 1}]
        assert await store.ping() is True

    @pytest.mark.asyncio
    async def test_ping_failure_is_reported(self, mock_graph_store, fake_tx):
        store, _ = mock_graph_store

        def boom(query, params):
            raise ConnectionError("refused")

        fake_tx.responder = boom
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_async_context_manager_closes_driver(self, mock_graph_store):
        store, _ = mock_graph_store
        async with store:
            pass
        store._driver.close.assert_awaited_once()


class TestCliParser:

    def test_subcommands_parse(self):
        from main import build_parser
        parser = build_parser()

        args = parser.parse_args(["add-next", "--from", "u1", "--text", "Hi"])
        assert (args.command, args.from_id, args.text) == ("add-next", "u1", "Hi")

        args = parser.parse_args(["update", "--utterance", "u1", "--text", "x",
                                  "--tag", "a", "--tag", "b", "--version", "2"])
        assert args.tag == ["a", "b"]
        assert args.version == 2

        args = parser.parse_args(["random-path", "--conversation", "c1"])
        assert args.max_depth == 20

    def test_command_required(self):
        from main import build_parser
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_invalid_input_exits_with_field_message(self, monkeypatch, capsys):
        import main
        from schema import CreateConversationRequest

        async def fake_create(args):
            CreateConversationRequest(title=args.title)

        monkeypatch.setattr(main, "cmd_create", fake_create)
        monkeypatch.setattr("sys.argv", ["main", "create", "--title", "ab"])

        with pytest.raises(SystemExit) as exc_info:
            main.main()

        assert exc_info.value.code == 2
        assert "Invalid input for title" in capsys.readouterr().out
