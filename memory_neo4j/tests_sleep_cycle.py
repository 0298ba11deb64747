"""Sleep cycle tests against a mocked store."""

import asyncio
import tempfile
from pathlib import Path
from unittest import IsolatedAsyncioTestCase
from unittest.mock import AsyncMock, MagicMock, patch

from memory_neo4j.config import ExtractionConfig
from memory_neo4j.consolidation import SleepCycleOptions, run_sleep_cycle
from memory_neo4j.models import (
    ConflictCandidate,
    ConflictPair,
    DecayedMemory,
    DuplicateCluster,
    PendingExtraction,
)

SLEEP_MODULE = "memory_neo4j.consolidation.sleep_cycle"


def _config(enabled=True):
    return ExtractionConfig(enabled=enabled, api_key="k", model="m", base_url="http://localhost/v1")


def _create_mock_db():
    """Store mock where every phase finds nothing to do."""
    db = MagicMock()
    db.last_cluster_scan_truncated = False
    db.find_duplicate_clusters = AsyncMock(return_value=[])
    db.merge_memory_cluster = AsyncMock(return_value={"survivorId": "", "deletedCount": 0})
    db.invalidate_memory = AsyncMock()
    db.find_conflicting_memories = AsyncMock(return_value=[])
    db.reconcile_entity_mention_counts = AsyncMock(return_value=0)
    db.find_duplicate_entity_pairs = AsyncMock(return_value=[])
    db.merge_entity_pair = AsyncMock(return_value=True)
    db.count_by_extraction_status = AsyncMock(
        return_value={"pending": 0, "complete": 0, "failed": 0, "skipped": 0}
    )
    db.list_pending_extractions = AsyncMock(return_value=[])
    db.find_decayed_memories = AsyncMock(return_value=[])
    db.prune_memories = AsyncMock(return_value=0)
    db.find_orphan_entities = AsyncMock(return_value=[])
    db.delete_orphan_entities = AsyncMock(return_value=0)
    db.find_orphan_tags = AsyncMock(return_value=[])
    db.delete_orphan_tags = AsyncMock(return_value=0)
    db.find_single_use_tags = AsyncMock(return_value=[])
    db.delete_memories_by_pattern = AsyncMock(return_value=0)
    db.fetch_all_memories_for_scan = AsyncMock(return_value=[])
    db.delete_memories_by_ids = AsyncMock(return_value=0)
    return db


def _conflict(a_id, b_id):
    return ConflictPair(
        memory_a=ConflictCandidate(id=a_id, text=f"text {a_id}", importance=0.5),
        memory_b=ConflictCandidate(id=b_id, text=f"text {b_id}", importance=0.5),
    )


class SleepCycleOrderTest(IsolatedAsyncioTestCase):
    """Phase ordering, skipping and abort."""

    async def test_phases_run_in_order(self):
        phases = []
        options = SleepCycleOptions(on_phase_start=phases.append)
        result = await run_sleep_cycle(_create_mock_db(), _config(), options)

        self.assertEqual(phases, [
            "dedup", "semanticDedup", "conflict", "entityDedup", "extraction",
            "decay", "cleanup", "noiseCleanup", "credentialScan",
        ])
        self.assertFalse(result.aborted)
        self.assertIn("durationMs", result.to_dict())

    async def test_disabled_extraction_and_skipped_semantic_phases(self):
        db = _create_mock_db()
        phases = []
        options = SleepCycleOptions(skip_semantic_dedup=True, on_phase_start=phases.append)
        await run_sleep_cycle(db, _config(enabled=False), options)

        self.assertNotIn("conflict", phases)
        self.assertNotIn("extraction", phases)
        db.find_conflicting_memories.assert_not_called()
        db.count_by_extraction_status.assert_not_called()

    async def test_abort_before_start_touches_nothing(self):
        db = _create_mock_db()
        abort = asyncio.Event()
        abort.set()
        result = await run_sleep_cycle(db, _config(), SleepCycleOptions(abort=abort))

        self.assertTrue(result.aborted)
        db.find_duplicate_clusters.assert_not_called()
        db.find_decayed_memories.assert_not_called()
        db.prune_memories.assert_not_called()
        db.delete_memories_by_ids.assert_not_called()

    async def test_abort_mid_cycle_stops_later_phases(self):
        db = _create_mock_db()
        abort = asyncio.Event()

        def _on_phase(name):
            if name == "entityDedup":
                abort.set()

        result = await run_sleep_cycle(db, _config(), SleepCycleOptions(abort=abort, on_phase_start=_on_phase))

        self.assertTrue(result.aborted)
        db.find_duplicate_entity_pairs.assert_awaited_once()
        db.count_by_extraction_status.assert_not_called()
        db.find_decayed_memories.assert_not_called()

    async def test_failing_phase_does_not_stop_cycle(self):
        db = _create_mock_db()
        db.find_duplicate_clusters = AsyncMock(side_effect=RuntimeError("index missing"))
        db.find_decayed_memories = AsyncMock(return_value=[
            DecayedMemory(id="old", text="stale", importance=0.1, age_days=400, decay_score=0.01)
        ])
        db.prune_memories = AsyncMock(return_value=1)

        result = await run_sleep_cycle(db, _config(), SleepCycleOptions())

        self.assertEqual(result.decay["memoriesPruned"], 1)
        db.prune_memories.assert_awaited_once_with(["old"])
        db.fetch_all_memories_for_scan.assert_awaited_once()


class DedupPhaseTest(IsolatedAsyncioTestCase):

    async def test_high_similarity_clusters_merged(self):
        db = _create_mock_db()
        db.find_duplicate_clusters = AsyncMock(return_value=[
            DuplicateCluster(memory_ids=["a", "b"], texts=["x", "x!"], importances=[0.5, 0.9],
                             similarities={"a:b": 0.97}),
        ])
        db.merge_memory_cluster = AsyncMock(return_value={"survivorId": "b", "deletedCount": 1})

        with patch(f"{SLEEP_MODULE}.is_semantic_duplicate", new=AsyncMock()) as semantic:
            result = await run_sleep_cycle(db, _config(), SleepCycleOptions())

        self.assertEqual(result.dedup, {"clustersFound": 1, "memoriesMerged": 1})
        db.merge_memory_cluster.assert_awaited_once_with(["a", "b"], [0.5, 0.9])
        semantic.assert_not_called()

    async def test_paraphrase_band_keeps_more_important(self):
        db = _create_mock_db()
        db.find_duplicate_clusters = AsyncMock(return_value=[
            DuplicateCluster(memory_ids=["a", "b"], texts=["likes tea", "enjoys tea"],
                             importances=[0.4, 0.8], similarities={"a:b": 0.86}),
        ])

        with patch(f"{SLEEP_MODULE}.is_semantic_duplicate", new=AsyncMock(return_value=True)) as semantic:
            result = await run_sleep_cycle(db, _config(), SleepCycleOptions())

        semantic.assert_awaited_once()
        self.assertEqual(semantic.call_args.args[3], 0.86)
        db.merge_memory_cluster.assert_not_called()
        db.invalidate_memory.assert_awaited_once_with("a")
        self.assertEqual(result.semanticDedup, {"pairsChecked": 1, "duplicatesMerged": 1})

    async def test_pair_cap_prefers_highest_similarity(self):
        db = _create_mock_db()
        db.find_duplicate_clusters = AsyncMock(return_value=[
            DuplicateCluster(memory_ids=["a", "b", "c"], texts=["1", "2", "3"], importances=[0.5] * 3,
                             similarities={"a:b": 0.8, "a:c": 0.9, "b:c": 0.85}),
        ])
        progress = []
        options = SleepCycleOptions(max_semantic_dedup_pairs=1,
                                    on_progress=lambda phase, msg: progress.append((phase, msg)))

        with patch(f"{SLEEP_MODULE}.is_semantic_duplicate", new=AsyncMock(return_value=False)) as semantic:
            result = await run_sleep_cycle(db, _config(), options)

        self.assertEqual(result.semanticDedup["pairsChecked"], 1)
        self.assertEqual(semantic.call_args.args[3], 0.9)
        self.assertTrue(any("Capped at 1 pairs" in msg for _, msg in progress))


class ConflictPhaseTest(IsolatedAsyncioTestCase):

    async def test_decisions_applied(self):
        db = _create_mock_db()
        db.find_conflicting_memories = AsyncMock(return_value=[
            _conflict("a1", "b1"), _conflict("a2", "b2"), _conflict("a3", "b3"), _conflict("a4", "b4"),
        ])
        decisions = AsyncMock(side_effect=["a", "b", "both", "skip"])

        with patch(f"{SLEEP_MODULE}.resolve_conflict", new=decisions):
            result = await run_sleep_cycle(db, _config(), SleepCycleOptions())

        self.assertEqual(result.conflict, {"pairsFound": 4, "resolved": 3, "invalidated": 2})
        invalidated = [c.args[0] for c in db.invalidate_memory.call_args_list]
        self.assertEqual(invalidated, ["b1", "a2"])


class EntityDedupPhaseTest(IsolatedAsyncioTestCase):

    async def test_entity_removed_once(self):
        db = _create_mock_db()
        pair = MagicMock(keep_id="e1", remove_id="e2", keep_name="alice", remove_name="alice smith",
                         remove_mentions=2)
        repeat = MagicMock(keep_id="e3", remove_id="e2", keep_name="al", remove_name="alice smith",
                           remove_mentions=0)
        db.find_duplicate_entity_pairs = AsyncMock(return_value=[pair, repeat])

        result = await run_sleep_cycle(db, _config(), SleepCycleOptions())

        self.assertEqual(result.entityDedup, {"pairsFound": 2, "merged": 1})
        db.merge_entity_pair.assert_awaited_once_with("e1", "e2")


class ExtractionPhaseTest(IsolatedAsyncioTestCase):

    async def test_pending_memories_processed(self):
        db = _create_mock_db()
        db.count_by_extraction_status = AsyncMock(
            return_value={"pending": 2, "complete": 0, "failed": 0, "skipped": 0}
        )
        db.list_pending_extractions = AsyncMock(side_effect=[
            [PendingExtraction(id="m1", text="Alice works at Acme"),
             PendingExtraction(id="m2", text="Bob lives in Oslo", extraction_retries=1)],
            [],
        ])
        outcomes = AsyncMock(side_effect=[
            {"success": True, "memoryId": "m1"},
            {"success": False, "memoryId": "m2"},
        ])

        with patch(f"{SLEEP_MODULE}.run_background_extraction", new=outcomes):
            result = await run_sleep_cycle(db, _config(), SleepCycleOptions(extraction_delay_ms=0))

        self.assertEqual(result.extraction, {"total": 2, "processed": 2, "succeeded": 1, "failed": 1})
        self.assertEqual(outcomes.call_args_list[1].args[4], 1)


class CleanupPhasesTest(IsolatedAsyncioTestCase):

    async def test_orphans_and_single_use_tags(self):
        db = _create_mock_db()
        db.find_orphan_entities = AsyncMock(return_value=[{"id": "e1", "name": "ghost"}])
        db.delete_orphan_entities = AsyncMock(return_value=1)
        db.find_single_use_tags = AsyncMock(return_value=[{"id": "t1", "name": "once"}])
        db.delete_orphan_tags = AsyncMock(return_value=1)

        result = await run_sleep_cycle(db, _config(), SleepCycleOptions(single_use_tag_min_age_days=30))

        self.assertEqual(result.cleanup, {"entitiesRemoved": 1, "tagsRemoved": 0, "singleUseTagsRemoved": 1})
        db.find_single_use_tags.assert_awaited_once_with(30)
        db.delete_orphan_tags.assert_awaited_once_with(["t1"])

    async def test_noise_patterns_sent_as_case_insensitive_regex(self):
        db = _create_mock_db()
        await run_sleep_cycle(db, _config(), SleepCycleOptions(agent_id="main"))

        pattern, agent = db.delete_memories_by_pattern.call_args_list[0].args
        self.assertTrue(pattern.startswith("(?i).*"))
        self.assertEqual(agent, "main")

    async def test_credentials_removed(self):
        db = _create_mock_db()
        db.fetch_all_memories_for_scan = AsyncMock(return_value=[
            {"id": "m-secret-0001", "text": "deploy token: sk-abcdefghijklmnop1234"},
            {"id": "m-plain-00001", "text": "I like coffee"},
        ])
        db.delete_memories_by_ids = AsyncMock(return_value=1)

        result = await run_sleep_cycle(db, _config(), SleepCycleOptions())

        self.assertEqual(result.credentialScan, {"memoriesScanned": 2, "credentialsFound": 1, "memoriesRemoved": 1})
        db.delete_memories_by_ids.assert_awaited_once_with(["m-secret-0001"])

    async def test_task_ledger_phase(self):
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "TASKS.md").write_text(
                "## Active\n- [ ] TASK-1: old (updated: 2020-01-01T00:00:00Z)\n", encoding="utf-8"
            )
            result = await run_sleep_cycle(_create_mock_db(), _config(), SleepCycleOptions(workspace_dir=tmp))

        self.assertEqual(result.taskLedger["archivedIds"], ["TASK-1"])
