"""Agent tool and lifecycle hook tests."""

from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, MagicMock, patch

from memory_neo4j.config import ExtractionConfig, parse_config
from memory_neo4j.consolidation import SleepCycleResult
from memory_neo4j.exceptions import InvalidMemoryIdError
from memory_neo4j.hooks import (
    CORE_MEMORY_FILE,
    SESSION_TTL_SECONDS,
    SWEEP_INTERVAL_SECONDS,
    CaptureOutcome,
    HookContext,
    MemoryHooks,
    SessionState,
    capture_message,
    run_auto_capture,
)
from memory_neo4j.models import SearchResult, SimilarMemory
from memory_neo4j.tools import MemoryTools


def _cfg(**extra):
    raw = {"neo4j": {"uri": "bolt://localhost:7687", "password": "pw"}, "embedding": {"provider": "ollama"}}
    raw.update(extra)
    return parse_config(raw)


def _extraction(enabled=True):
    return ExtractionConfig(enabled=enabled, api_key="k", model="m", base_url="http://localhost/v1")


def _result(memory_id, score, text=None, category="fact"):
    return SearchResult(id=memory_id, text=text or f"memory {memory_id}", category=category,
                        importance=0.5, score=score)


def _create_mock_db():
    db = MagicMock()
    db.find_similar = AsyncMock(return_value=[])
    db.store_memory = AsyncMock()
    db.delete_memory = AsyncMock(return_value=True)
    db.vector_search = AsyncMock(return_value=[])
    db.list_core_for_injection = AsyncMock(return_value=[])
    return db


def _create_mock_embeddings():
    embeddings = MagicMock()
    embeddings.embed = AsyncMock(return_value=[0.1, 0.2])
    embeddings.embed_batch = AsyncMock(side_effect=lambda texts: [[0.1, 0.2] for _ in texts])
    return embeddings


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


# =============================================================================
# Tools
# =============================================================================

class MemoryRecallToolTest(IsolatedAsyncioTestCase):

    async def test_formats_results(self):
        tools = MemoryTools(_create_mock_db(), _create_mock_embeddings(), _cfg(), _extraction(), "main")
        found = [_result("a", 0.9, "Alice likes tea"), _result("b", 0.456, "Bob uses vim", "preference")]
        with patch("memory_neo4j.tools.hybrid_search", new=AsyncMock(return_value=found)) as search:
            result = await tools.memory_recall("tea", limit=500)

        self.assertEqual(
            result.text,
            "Found 2 memories:\n\n1. [fact] Alice likes tea (90%)\n2. [preference] Bob uses vim (46%)",
        )
        self.assertEqual(result.details["count"], 2)
        self.assertEqual(result.details["memories"][0]["id"], "a")
        self.assertEqual(search.call_args.args[3], 50)
        self.assertEqual(search.call_args.args[4], "main")
        self.assertTrue(search.call_args.kwargs["graph_enabled"])

    async def test_no_results(self):
        tools = MemoryTools(_create_mock_db(), _create_mock_embeddings(), _cfg(), _extraction(False))
        with patch("memory_neo4j.tools.hybrid_search", new=AsyncMock(return_value=[])) as search:
            result = await tools.memory_recall("anything", limit=0)

        self.assertEqual(result.text, "No relevant memories found.")
        self.assertEqual(result.details, {"count": 0})
        self.assertEqual(search.call_args.args[3], 1)
        self.assertEqual(search.call_args.args[4], "default")


class MemoryStoreToolTest(IsolatedAsyncioTestCase):

    async def test_duplicate_short_circuits(self):
        db = _create_mock_db()
        db.find_similar = AsyncMock(return_value=[SimilarMemory(id="old", text="I use vim", score=0.97)])
        tools = MemoryTools(db, _create_mock_embeddings(), _cfg(), _extraction(), "main")

        result = await tools.memory_store("I use vim")

        self.assertEqual(result.details["action"], "duplicate")
        self.assertEqual(result.details["existingId"], "old")
        db.store_memory.assert_not_called()
        self.assertEqual(db.find_similar.call_args.args[1:], (0.95, 1, "main"))

    async def test_core_memory_locked_at_full_importance(self):
        db = _create_mock_db()
        tools = MemoryTools(db, _create_mock_embeddings(), _cfg(), _extraction(), "main", "sess-1")

        result = await tools.memory_store("My name is Dana", importance=0.2, category="core")

        stored = db.store_memory.call_args.args[0]
        self.assertEqual(stored.importance, 1.0)
        self.assertEqual(stored.category, "core")
        self.assertEqual(stored.source, "user")
        self.assertEqual(stored.extraction_status, "pending")
        self.assertEqual(stored.session_key, "sess-1")
        self.assertEqual(result.details, {"action": "created", "id": stored.id})

    async def test_defaults_and_invalid_category(self):
        db = _create_mock_db()
        tools = MemoryTools(db, _create_mock_embeddings(), _cfg(), _extraction(False))

        await tools.memory_store("Deploys happen on Thursdays", category="gossip")

        stored = db.store_memory.call_args.args[0]
        self.assertEqual(stored.category, "other")
        self.assertEqual(stored.importance, 0.7)
        self.assertEqual(stored.extraction_status, "skipped")
        self.assertEqual(stored.agent_id, "default")

    async def test_importance_clamped(self):
        db = _create_mock_db()
        tools = MemoryTools(db, _create_mock_embeddings(), _cfg(), _extraction())
        await tools.memory_store("x" * 150, importance=3)
        self.assertEqual(db.store_memory.call_args.args[0].importance, 1.0)

    async def test_store_failure_returns_error_shape(self):
        db = _create_mock_db()
        db.store_memory = AsyncMock(side_effect=RuntimeError("Neo.ClientError.Schema.ConstraintValidationFailed"))
        tools = MemoryTools(db, _create_mock_embeddings(), _cfg(), _extraction())

        result = await tools.memory_store("I decided to switch to Neo4j")

        self.assertEqual(result.details, {"action": "error", "error": "unavailable"})
        self.assertNotIn("Neo.ClientError", result.text)

    async def test_embedding_failure_in_recall_returns_error_shape(self):
        embeddings = _create_mock_embeddings()
        embeddings.embed = AsyncMock(side_effect=ConnectionError("connection refused"))
        tools = MemoryTools(_create_mock_db(), embeddings, _cfg(), _extraction())

        result = await tools.memory_recall("what editor do I use")

        self.assertEqual(result.details["action"], "error")


class MemoryForgetToolTest(IsolatedAsyncioTestCase):

    def _tools(self, db):
        return MemoryTools(db, _create_mock_embeddings(), _cfg(), _extraction(), "main")

    async def test_delete_by_id(self):
        db = _create_mock_db()
        result = await self._tools(db).memory_forget(memory_id="abc")
        self.assertEqual(result.details["action"], "deleted")
        db.delete_memory.assert_awaited_once_with("abc", "main")

    async def test_invalid_and_missing_ids(self):
        db = _create_mock_db()
        db.delete_memory = AsyncMock(side_effect=InvalidMemoryIdError("nope"))
        result = await self._tools(db).memory_forget(memory_id="nope")
        self.assertEqual(result.details["error"], "invalid_id")

        db.delete_memory = AsyncMock(return_value=False)
        result = await self._tools(db).memory_forget(memory_id="7f1c2b9e-2a4d-4c55-9a3b-1e2f3a4b5c6d")
        self.assertEqual(result.details["action"], "not_found")

    async def test_single_confident_match_deleted(self):
        db = _create_mock_db()
        db.vector_search = AsyncMock(return_value=[_result("m1", 0.97, "I live in Paris")])

        result = await self._tools(db).memory_forget(query="where I live")

        self.assertEqual(result.details, {"action": "deleted", "id": "m1"})
        db.vector_search.assert_awaited_once_with([0.1, 0.2], 5, 0.7, "main")

    async def test_match_at_exactly_auto_delete_score_deleted(self):
        db = _create_mock_db()
        db.vector_search = AsyncMock(return_value=[_result("m1", 0.95, "I live in Paris")])

        result = await self._tools(db).memory_forget(query="where I live")

        self.assertEqual(result.details, {"action": "deleted", "id": "m1"})
        db.delete_memory.assert_awaited_once_with("m1", "main")

    async def test_ambiguous_matches_returned(self):
        db = _create_mock_db()
        db.vector_search = AsyncMock(return_value=[_result("m1", 0.97), _result("m2", 0.8)])

        result = await self._tools(db).memory_forget(query="paris")

        self.assertEqual(result.details["action"], "candidates")
        self.assertEqual([c["id"] for c in result.details["candidates"]], ["m1", "m2"])
        db.delete_memory.assert_not_called()

    async def test_nothing_found_or_no_params(self):
        db = _create_mock_db()
        result = await self._tools(db).memory_forget(query="unknown")
        self.assertEqual(result.details, {"found": 0})
        result = await self._tools(db).memory_forget()
        self.assertEqual(result.details, {"error": "missing_param"})


# =============================================================================
# Session state
# =============================================================================

class SessionStateTest(TestCase):

    def test_idle_sessions_swept_after_ttl(self):
        clock = FakeClock()
        state = SessionState(clock)
        state.bootstrapped.add("old")
        state.touch("old")

        clock.now += SESSION_TTL_SECONDS + 1
        state.touch("new")

        self.assertNotIn("old", state.bootstrapped)
        self.assertNotIn("old", state.last_seen)
        self.assertIn("new", state.last_seen)

    def test_sweep_throttled(self):
        clock = FakeClock()
        state = SessionState(clock)
        state.last_seen["stale"] = clock.now - SESSION_TTL_SECONDS - 10
        clock.now += SWEEP_INTERVAL_SECONDS - 1
        state.sweep()
        self.assertIn("stale", state.last_seen)
        clock.now += 2
        state.sweep()
        self.assertNotIn("stale", state.last_seen)


# =============================================================================
# Hooks
# =============================================================================

class BeforeAgentStartTest(IsolatedAsyncioTestCase):

    async def test_auto_recall_filters_low_scores_and_core_ids(self):
        hooks = MemoryHooks(_create_mock_db(), _create_mock_embeddings(), _cfg(), _extraction())
        hooks.sessions.core_ids["s1"] = {"core-1"}
        found = [_result("core-1", 0.9), _result("a", 0.6, "Alice likes tea"), _result("b", 0.1)]

        with patch("memory_neo4j.hooks.hybrid_search", new=AsyncMock(return_value=found)):
            block = await hooks.before_agent_start("what does Alice drink?", HookContext("main", "s1"))

        self.assertTrue(block.startswith("<relevant-memories>"))
        self.assertIn("- [fact] Alice likes tea", block)
        self.assertNotIn("core-1", block)
        self.assertNotIn("memory b", block)

    async def test_short_prompt_and_skip_pattern(self):
        cfg = _cfg(autoRecallSkipPattern="^cron:")
        hooks = MemoryHooks(_create_mock_db(), _create_mock_embeddings(), cfg, _extraction())
        search = AsyncMock(return_value=[_result("a", 0.9)])

        with patch("memory_neo4j.hooks.hybrid_search", new=search):
            self.assertIsNone(await hooks.before_agent_start("hi", HookContext("main", "s1")))
            self.assertIsNone(await hooks.before_agent_start("long enough prompt", HookContext("main", "cron:daily")))
        search.assert_not_called()

    async def test_recall_failure_is_swallowed(self):
        hooks = MemoryHooks(_create_mock_db(), _create_mock_embeddings(), _cfg(), _extraction())
        with patch("memory_neo4j.hooks.hybrid_search", new=AsyncMock(side_effect=RuntimeError("down"))):
            self.assertIsNone(await hooks.before_agent_start("tell me something", HookContext("main", "s1")))

    async def test_core_refresh_once_per_token_window(self):
        db = _create_mock_db()
        db.list_core_for_injection = AsyncMock(return_value=[{"id": "c1", "text": "User is Dana"}])
        cfg = _cfg(coreMemory={"refreshAtContextPercent": 50}, autoRecall=False)
        hooks = MemoryHooks(db, _create_mock_embeddings(), cfg, _extraction())
        ctx = HookContext("main", "s1")

        self.assertIsNone(await hooks.before_agent_start("prompt text", ctx, 100_000, 40_000))
        block = await hooks.before_agent_start("prompt text", ctx, 100_000, 60_000)
        self.assertIn("<core-memory-refresh>", block)
        self.assertIn("- User is Dana", block)
        self.assertIsNone(await hooks.before_agent_start("prompt text", ctx, 100_000, 65_000))
        self.assertIsNotNone(await hooks.before_agent_start("prompt text", ctx, 100_000, 75_000))


class AgentBootstrapTest(IsolatedAsyncioTestCase):

    async def test_replaces_memory_file_once_per_session(self):
        db = _create_mock_db()
        db.list_core_for_injection = AsyncMock(return_value=[
            {"id": "c1", "text": "User is Dana"}, {"id": "c2", "text": "Prefers metric units"},
        ])
        hooks = MemoryHooks(db, _create_mock_embeddings(), _cfg(), _extraction())
        files = [{"name": "AGENTS.md", "content": "rules"}, {"name": "memory.md", "content": "stale"}]
        ctx = HookContext("main", "s1")

        updated = await hooks.agent_bootstrap(files, ctx)

        self.assertEqual(len(updated), 2)
        self.assertEqual(updated[1]["name"], CORE_MEMORY_FILE)
        self.assertIn("- User is Dana\n- Prefers metric units\n", updated[1]["content"])
        self.assertEqual(files[1]["content"], "stale")
        self.assertEqual(hooks.sessions.core_ids["s1"], {"c1", "c2"})
        self.assertIsNone(await hooks.agent_bootstrap(files, ctx))
        db.list_core_for_injection.assert_awaited_once_with("main")

    async def test_no_core_memories_still_marks_session(self):
        hooks = MemoryHooks(_create_mock_db(), _create_mock_embeddings(), _cfg(), _extraction())
        ctx = HookContext(None, "s2")
        self.assertIsNone(await hooks.agent_bootstrap([], ctx))
        self.assertIn("s2", hooks.sessions.bootstrapped)

    async def test_compaction_allows_reinjection(self):
        db = _create_mock_db()
        db.list_core_for_injection = AsyncMock(return_value=[{"id": "c1", "text": "User is Dana"}])
        hooks = MemoryHooks(db, _create_mock_embeddings(), _cfg(), _extraction())
        ctx = HookContext("main", "s1")

        await hooks.agent_bootstrap([], ctx)
        hooks.after_compaction(ctx)
        updated = await hooks.agent_bootstrap([], ctx)
        self.assertEqual(updated[0]["name"], CORE_MEMORY_FILE)


class AgentEndTest(TestCase):

    def _hooks(self, clock=None, **cfg):
        return MemoryHooks(_create_mock_db(), _create_mock_embeddings(), _cfg(**cfg), _extraction(),
                           clock=clock or FakeClock())

    def test_spawns_capture_and_sleep(self):
        hooks = self._hooks()
        with patch("memory_neo4j.hooks.spawn") as spawn:
            hooks.agent_end([{"role": "user", "content": "hello there"}], HookContext("main", "s1"))
        labels = [c.args[1] for c in spawn.call_args_list]
        self.assertEqual(labels, ["auto-capture", "auto-sleep"])
        for call in spawn.call_args_list:
            call.args[0].close()

    def test_skipped_turns(self):
        hooks = self._hooks(autoCaptureSkipPattern="^voice:")
        with patch("memory_neo4j.hooks.spawn") as spawn:
            hooks.agent_end([], HookContext("main", "s1"))
            hooks.agent_end([{"role": "user", "content": "x"}], HookContext("main", "s1"), success=False)
            hooks.agent_end([{"role": "user", "content": "x"}], HookContext("main", "voice:1"))
        spawn.assert_not_called()

    def test_sleep_interval_respected(self):
        clock = FakeClock()
        hooks = self._hooks(clock=clock, sleepCycle={"autoIntervalMs": 60_000})
        hooks.last_sleep_at = clock.now - 30
        with patch("memory_neo4j.hooks.spawn") as spawn:
            self.assertFalse(hooks.maybe_start_sleep_cycle())
            clock.now += 31
            self.assertTrue(hooks.maybe_start_sleep_cycle())
            self.assertFalse(hooks.maybe_start_sleep_cycle())
        spawn.call_args.args[0].close()

    def test_no_event_loop_leaves_auto_sleep_available(self):
        hooks = self._hooks()
        self.assertFalse(hooks.maybe_start_sleep_cycle())
        self.assertFalse(hooks.sleep_running)

        with patch("memory_neo4j.hooks.spawn") as spawn:
            self.assertTrue(hooks.maybe_start_sleep_cycle())
        spawn.call_args.args[0].close()

    def test_auto_sleep_disabled(self):
        hooks = self._hooks(sleepCycle={"auto": False})
        with patch("memory_neo4j.hooks.spawn") as spawn:
            self.assertFalse(hooks.maybe_start_sleep_cycle())
        spawn.assert_not_called()


class AutoSleepTest(IsolatedAsyncioTestCase):

    async def test_records_completion_and_clears_running_flag(self):
        clock = FakeClock()
        hooks = MemoryHooks(_create_mock_db(), _create_mock_embeddings(), _cfg(), _extraction(), clock=clock)
        hooks.sleep_running = True
        with patch("memory_neo4j.hooks.run_sleep_cycle", new=AsyncMock(return_value=SleepCycleResult())) as run:
            await hooks._auto_sleep()

        self.assertFalse(hooks.sleep_running)
        self.assertEqual(hooks.last_sleep_at, clock.now)
        self.assertIs(run.call_args.args[2].abort, hooks.sleep_abort)

    async def test_failure_still_clears_running_flag(self):
        hooks = MemoryHooks(_create_mock_db(), _create_mock_embeddings(), _cfg(), _extraction())
        hooks.sleep_running = True
        with patch("memory_neo4j.hooks.run_sleep_cycle", new=AsyncMock(side_effect=RuntimeError("neo4j down"))):
            await hooks._auto_sleep()
        self.assertFalse(hooks.sleep_running)
        self.assertEqual(hooks.last_sleep_at, 0.0)


# =============================================================================
# Auto-capture
# =============================================================================

class CaptureMessageTest(IsolatedAsyncioTestCase):

    async def _capture(self, db, source="auto-capture", threshold=0.65, discount=1.0,
                       extraction=None, rating=0.8, duplicate=False, vector=None):
        embeddings = _create_mock_embeddings()
        with patch("memory_neo4j.hooks.rate_importance", new=AsyncMock(return_value=rating)), \
                patch("memory_neo4j.hooks.is_semantic_duplicate", new=AsyncMock(return_value=duplicate)):
            outcome = await capture_message(
                "I started a new job at Acme last week", source, threshold, discount, "main", "s1",
                db, embeddings, extraction or _extraction(), vector,
            )
        return outcome, embeddings

    async def test_user_message_stored(self):
        db = _create_mock_db()
        outcome, _ = await self._capture(db, vector=[0.3, 0.4])
        self.assertTrue(outcome.stored)
        stored = db.store_memory.call_args.args[0]
        self.assertEqual(stored.source, "auto-capture")
        self.assertEqual(stored.importance, 0.8)
        self.assertEqual(stored.embedding, [0.3, 0.4])

    async def test_near_identical_skipped(self):
        db = _create_mock_db()
        db.find_similar = AsyncMock(return_value=[SimilarMemory(id="x", text="same", score=0.96)])
        outcome, _ = await self._capture(db)
        self.assertFalse(outcome.stored)
        db.store_memory.assert_not_called()

    async def test_low_importance_assistant_exits_before_embedding(self):
        db = _create_mock_db()
        outcome, embeddings = await self._capture(
            db, source="auto-capture-assistant", threshold=0.8, discount=0.75, rating=0.6
        )
        self.assertFalse(outcome.stored)
        embeddings.embed.assert_not_called()
        db.find_similar.assert_not_called()

    async def test_assistant_importance_discounted(self):
        db = _create_mock_db()
        await self._capture(db, source="auto-capture-assistant", threshold=0.8, discount=0.75, rating=0.9)
        self.assertAlmostEqual(db.store_memory.call_args.args[0].importance, 0.675)

    async def test_threshold_ignored_without_extraction(self):
        db = _create_mock_db()
        outcome, _ = await self._capture(db, extraction=_extraction(False), rating=0.5)
        self.assertTrue(outcome.stored)
        self.assertEqual(db.store_memory.call_args.args[0].extraction_status, "skipped")

    async def test_semantic_duplicate_not_stored(self):
        db = _create_mock_db()
        db.find_similar = AsyncMock(return_value=[SimilarMemory(id="x", text="joined Acme", score=0.85)])
        outcome, _ = await self._capture(db, duplicate=True)
        self.assertTrue(outcome.semantic_deduped)
        db.store_memory.assert_not_called()


class RunAutoCaptureTest(IsolatedAsyncioTestCase):

    async def test_gated_messages_captured(self):
        db = _create_mock_db()
        embeddings = _create_mock_embeddings()
        messages = [
            {"role": "user", "content": "ok thanks"},
            {"role": "user", "content": "My daughter starts school in Porto next September."},
        ]
        with patch("memory_neo4j.hooks.capture_message",
                   new=AsyncMock(return_value=CaptureOutcome(stored=True))) as capture:
            await run_auto_capture(messages, "main", "s1", db, embeddings, _extraction())

        embeddings.embed_batch.assert_awaited_once_with(["My daughter starts school in Porto next September."])
        self.assertEqual(capture.call_args.args[1], "auto-capture")

    async def test_failures_do_not_raise(self):
        embeddings = _create_mock_embeddings()
        embeddings.embed_batch = AsyncMock(side_effect=RuntimeError("ollama down"))
        messages = [{"role": "user", "content": "My daughter starts school in Porto next September."}]
        with self.assertLogs("memory_neo4j.hooks", level="WARNING"):
            await run_auto_capture(messages, "main", "s1", _create_mock_db(), embeddings, _extraction())
