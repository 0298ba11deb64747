"""CLI command tests with a mocked store."""

import io
import json
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, MagicMock, patch

from memory_neo4j.cli import CommandError, SleepCommand, build_parser, main, run_command
from memory_neo4j.config import parse_config
from memory_neo4j.consolidation import SleepCycleResult
from memory_neo4j.models import MemoryStat, SearchResult
from memory_neo4j.plugin import MemoryPlugin


def _create_mock_plugin():
    cfg = parse_config({
        "neo4j": {"uri": "bolt://localhost:7687", "password": "pw"},
        "embedding": {"provider": "ollama"},
    })
    db = MagicMock()
    db.close = AsyncMock()
    db.ensure_initialized = AsyncMock()
    embeddings = MagicMock()
    embeddings.close = AsyncMock()
    embeddings.embed_batch = AsyncMock(return_value=[])
    return MemoryPlugin(cfg, db=db, embeddings=embeddings)


async def _run(plugin, argv):
    args = vars(build_parser().parse_args(argv))
    command = args.pop("command")
    args.pop("config")
    args.pop("verbose")
    stdout, stderr = io.StringIO(), io.StringIO()
    code = await run_command(plugin, command, args, stdout, stderr)
    return code, stdout.getvalue(), stderr.getvalue()


class SleepOptionsTest(TestCase):
    """Flag validation happens before anything touches the store."""

    def test_flags_mapped(self):
        options = vars(build_parser().parse_args([
            "sleep", "--agent", "main", "--dedup-threshold", "0.9", "--decay-half-life", "45",
            "--batch-size", "10", "--delay", "0", "--concurrency", "2", "--skip-semantic",
            "--workspace", "  /tmp/ws  ",
        ]))
        sleep = SleepCommand.build_options(options)

        self.assertEqual(sleep.agent_id, "main")
        self.assertEqual(sleep.dedup_threshold, 0.9)
        self.assertEqual(sleep.decay_base_half_life_days, 45)
        self.assertEqual(sleep.extraction_batch_size, 10)
        self.assertEqual(sleep.extraction_delay_ms, 0)
        self.assertEqual(sleep.llm_concurrency, 2)
        self.assertTrue(sleep.skip_semantic_dedup)
        self.assertEqual(sleep.workspace_dir, "/tmp/ws")
        self.assertEqual(sleep.max_semantic_dedup_pairs, 500)

    def test_invalid_values_rejected(self):
        cases = [
            ({"batch_size": 0}, "--batch-size must be greater than 0"),
            ({"delay": -1}, "--delay must be >= 0"),
            ({"decay_threshold": 1.5}, "--decay-threshold must be between 0 and 1"),
            ({"dedup_threshold": 0}, "--dedup-threshold must be between 0 (exclusive) and 1"),
            ({"max_semantic_pairs": 0}, "--max-semantic-pairs must be greater than 0"),
        ]
        for options, message in cases:
            with self.assertRaises(CommandError) as ctx:
                SleepCommand.build_options(options)
            self.assertEqual(str(ctx.exception), message)

    def test_blank_workspace_is_none(self):
        self.assertIsNone(SleepCommand.build_options({"workspace": "   "}).workspace_dir)


class CommandTest(IsolatedAsyncioTestCase):

    async def test_sleep_validation_error_exit_code(self):
        plugin = _create_mock_plugin()
        code, _, err = await _run(plugin, ["sleep", "--batch-size", "0"])

        self.assertEqual(code, 1)
        self.assertEqual(err, "Error: --batch-size must be greater than 0\n")
        plugin.db.close.assert_awaited_once()
        plugin.embeddings.close.assert_awaited_once()

    async def test_sleep_runs_cycle_and_reports(self):
        plugin = _create_mock_plugin()
        result = SleepCycleResult()
        result.dedup = {"clustersFound": 2, "memoriesMerged": 3}
        with patch("memory_neo4j.cli.run_sleep_cycle", new=AsyncMock(return_value=result)) as run:
            code, out, _ = await _run(plugin, ["sleep", "--agent", "main"])

        self.assertEqual(code, 0)
        self.assertIn("Deduplication:  2 clusters -> 3 merged", out)
        self.assertEqual(run.call_args.args[2].agent_id, "main")

    async def test_list_rejects_non_positive_limit(self):
        plugin = _create_mock_plugin()
        plugin.db.list_memories = AsyncMock()
        code, _, err = await _run(plugin, ["list", "--limit", "0"])

        self.assertEqual(code, 1)
        self.assertIn("--limit must be greater than 0", err)
        plugin.db.list_memories.assert_not_called()

    async def test_list_groups_by_agent_and_category(self):
        plugin = _create_mock_plugin()
        plugin.db.list_memories = AsyncMock(return_value=[
            {"id": "1", "text": "User is Dana", "category": "core", "importance": 1.0, "agentId": "main"},
            {"id": "2", "text": "Likes green tea", "category": "preference", "importance": 0.6, "agentId": "main"},
        ])
        code, out, _ = await _run(plugin, ["list", "--agent", "main"])

        self.assertEqual(code, 0)
        self.assertIn("┌─ main (2 shown)", out)
        self.assertIn("── core (1) ──", out)
        self.assertIn("Likes green tea", out)
        plugin.db.list_memories.assert_awaited_once_with("main", None, 20)

    async def test_search_prints_json(self):
        plugin = _create_mock_plugin()
        found = [SearchResult(id="a", text="Dana lives in Lisbon", category="fact", importance=0.7, score=1.0)]
        with patch("memory_neo4j.cli.hybrid_search", new=AsyncMock(return_value=found)):
            code, out, _ = await _run(plugin, ["search", "where does Dana live"])

        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)[0]["text"], "Dana lives in Lisbon")

    async def test_stats(self):
        plugin = _create_mock_plugin()
        plugin.db.get_memory_stats = AsyncMock(return_value=[
            MemoryStat(agent_id="main", category="fact", count=4, avg_importance=0.6),
            MemoryStat(agent_id="ops", category="core", count=1, avg_importance=1.0),
        ])
        code, out, _ = await _run(plugin, ["stats"])

        self.assertEqual(code, 0)
        self.assertIn("Total memories: 5", out)
        self.assertIn("Agents: 2 (main, ops)", out)

    async def test_index_uses_batch_embedder(self):
        plugin = _create_mock_plugin()
        plugin.db.reindex = AsyncMock(return_value={"memories": 12})
        code, out, _ = await _run(plugin, ["index", "--batch-size", "25"])

        self.assertEqual(code, 0)
        self.assertIn("12 memories", out)
        args = plugin.db.reindex.call_args.args
        self.assertIs(args[0], plugin.embeddings.embed_batch)
        self.assertEqual(args[1], 25)

    async def test_cleanup_dry_run_then_execute(self):
        memories = [
            {"id": "n1", "text": "ok thanks", "source": "auto-capture"},
            {"id": "k1", "text": "My sister Priya lives in Lisbon and works at a bakery.", "source": "auto-capture"},
        ]
        plugin = _create_mock_plugin()
        plugin.db.list_memories_for_cleanup = AsyncMock(return_value=memories)
        plugin.db.prune_memories = AsyncMock(return_value=1)

        code, out, _ = await _run(plugin, ["cleanup"])
        self.assertEqual(code, 0)
        self.assertIn("Dry run: 1 memories would be removed", out)
        plugin.db.prune_memories.assert_not_called()

        code, out, _ = await _run(plugin, ["cleanup", "--execute", "--all"])
        plugin.db.prune_memories.assert_awaited_once_with(["n1"])
        plugin.db.list_memories_for_cleanup.assert_awaited_with(True, None)
        self.assertIn("Deleted 1 low-substance memories.", out)

    async def test_unexpected_failure_reported(self):
        plugin = _create_mock_plugin()
        plugin.db.get_memory_stats = AsyncMock(side_effect=RuntimeError("connection refused"))
        code, _, err = await _run(plugin, ["stats"])
        self.assertEqual(code, 1)
        self.assertEqual(err, "Error: connection refused\n")


class MainTest(TestCase):

    def test_missing_config_file(self):
        with patch("sys.stderr", new_callable=io.StringIO) as err:
            code = main(["--config", "/nonexistent/memory.json", "stats"])
        self.assertEqual(code, 1)
        self.assertIn("Config file not found", err.getvalue())
