"""
Unit tests for recall/main.py

Tests argument parsing, each subcommand against a real in-memory engine,
and the exit codes of main().
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from recall.config import Config
from recall.main import build_parser, main, run, scope_from_args
from recall.retrieval.base import DirectMessageScope, GlobalScope, GuildScope
from recall.retrieval.engine import RetrievalEngine
from tests.fixtures import make_message, unit_vector


@pytest.fixture
def settings():
    with patch("recall.config._yaml_config", {}):
        settings = Config()
    settings.setup_logging = MagicMock()
    return settings


@pytest.fixture
def engine(db, gateway, settings):
    return RetrievalEngine(db, gateway, settings)


@pytest.fixture
def cli(settings, engine):
    """Run CLI arguments against the test engine."""
    async def invoke(*argv):
        args = build_parser().parse_args(argv)
        # Keep the database open so tests can inspect it after the command
        with patch("recall.main.config", settings), \
                patch("recall.main.create_retrieval_engine", return_value=engine) as factory, \
                patch.object(engine, "close", new=AsyncMock()) as close:
            result = await run(args)
        factory.assert_called_once_with(settings, db_path=args.db)
        close.assert_awaited_once()
        return result
    return invoke


class TestParser:
    """Tests for build_parser and scope_from_args."""

    def test_knowledge_search_arguments(self):
        args = build_parser().parse_args(["knowledge-search", "--guild", "g1", "--tag", "rules", "how to join"])

        assert args.command == "knowledge-search"
        assert args.guild == "g1"
        assert args.tag == "rules"
        assert args.limit == 10
        assert args.query == "how to join"

    def test_backfill_default_batch_size(self):
        assert build_parser().parse_args(["backfill"]).batch_size == 50

    @pytest.mark.parametrize(
        "argv, expected",
        [
            (["memories", "--user", "3", "--guild", "g9"], GuildScope("g9")),
            (["memories", "--user", "3", "--dm"], DirectMessageScope()),
            (["memories", "--user", "3", "--global"], GlobalScope()),
        ],
    )
    def test_memory_scopes(self, argv, expected):
        assert scope_from_args(build_parser().parse_args(argv)) == expected

    def test_memories_requires_one_scope(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["memories", "--user", "3"])
        with pytest.raises(SystemExit):
            build_parser().parse_args(["memories", "--user", "3", "--dm", "--global"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    """Tests for the subcommands."""

    @pytest.mark.asyncio
    async def test_stats(self, cli, engine, capsys):
        await engine.messages.insert(make_message("m1"))

        assert await cli("stats") is True

        output = capsys.readouterr().out
        assert "Messages:               1" in output
        assert "Unembedded messages:    1" in output
        assert "Embeddings ready:       yes" in output

    @pytest.mark.asyncio
    async def test_backfill(self, cli, engine, capsys):
        await engine.messages.insert(make_message("m1"))

        assert await cli("backfill", "--batch-size", "10") is True

        assert "Embedded 1 messages" in capsys.readouterr().out
        assert await engine.messages.count_unembedded() == 0

    @pytest.mark.asyncio
    async def test_backfill_rejects_bad_batch_size(self, cli):
        assert await cli("backfill", "--batch-size", "0") is False

    @pytest.mark.asyncio
    async def test_backfill_without_provider(self, settings, db, unready_gateway, capsys):
        engine = RetrievalEngine(db, unready_gateway, settings)
        args = build_parser().parse_args(["backfill"])

        with patch("recall.main.config", settings), \
                patch("recall.main.create_retrieval_engine", return_value=engine):
            assert await run(args) is False

        assert "Cannot backfill" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_knowledge_search(self, cli, engine, fake_service, capsys):
        fake_service.set_vector("voice rules", unit_vector(0))
        fake_service.set_vector("Voice rules: no soundboards", unit_vector(0))
        entry = await engine.knowledge.add("g1", "Voice rules: no soundboards", 1, tags=["rules"])

        assert await cli("knowledge-search", "--guild", "g1", "--tag", "rules", "voice rules") is True

        assert f"#{entry.id} (1.000) [rules]: Voice rules: no soundboards" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_knowledge_search_no_results(self, cli, capsys):
        assert await cli("knowledge-search", "--guild", "empty", "anything") is True
        assert "No matching knowledge entries." in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_memories(self, cli, engine, capsys):
        await engine.memories.save(3, GlobalScope(), "preference", "Likes dark mode")

        assert await cli("memories", "--user", "3", "--global") is True

        output = capsys.readouterr().out
        assert "1 memories (1 explicit, 0 inferred)" in output
        assert "preference/explicit: Likes dark mode" in output

    @pytest.mark.asyncio
    async def test_memories_empty(self, cli, capsys):
        assert await cli("memories", "--user", "3", "--dm") is True
        assert "No memories." in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_invalid_config_fails(self, settings):
        settings.memory.max_inferred = 0
        args = build_parser().parse_args(["stats"])

        with patch("recall.main.config", settings), \
                patch("recall.main.create_retrieval_engine") as factory:
            assert await run(args) is False

        factory.assert_not_called()


class TestMain:
    """Tests for main() exit codes."""

    def test_success_exits_zero(self):
        with patch("recall.main.run", new=AsyncMock(return_value=True)):
            with pytest.raises(SystemExit) as exc_info:
                main(["stats"])
        assert exc_info.value.code == 0

    def test_failure_exits_one(self):
        with patch("recall.main.run", new=AsyncMock(return_value=False)):
            with pytest.raises(SystemExit) as exc_info:
                main(["stats"])
        assert exc_info.value.code == 1

    def test_unexpected_error_exits_one(self, capsys):
        with patch("recall.main.run", new=AsyncMock(side_effect=RuntimeError("disk on fire"))):
            with pytest.raises(SystemExit) as exc_info:
                main(["stats"])
        assert exc_info.value.code == 1
        assert "disk on fire" in capsys.readouterr().out

    def test_keyboard_interrupt_exits_130(self):
        with patch("recall.main.run", new=AsyncMock(side_effect=KeyboardInterrupt)):
            with pytest.raises(SystemExit) as exc_info:
                main(["stats"])
        assert exc_info.value.code == 130
