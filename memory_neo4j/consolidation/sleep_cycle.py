"""
Multi-phase sleep cycle for memory consolidation.

Phases, in order:
1.  dedup          - merge near-identical memories (vector similarity)
1b. semanticDedup  - LLM paraphrase detection in the 0.75-threshold band
1c. conflict       - resolve contradictory memories sharing entities
1d. entityDedup    - merge near-duplicate entities
2.  extraction     - build the entity graph for pending memories
3.  decay          - prune memories below the retention curve
4.  cleanup        - remove orphan entities/tags and stale single-use tags
5.  noiseCleanup   - remove stored proposals/questions
5b. credentialScan - remove memories holding secrets
6.  taskLedger     - archive stale tasks in TASKS.md

Each phase is isolated: a failure is logged and the next phase runs. Setting
``abort`` stops the cycle at the next check and marks the result aborted.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional

from ..config import ExtractionConfig
from ..extraction.service import is_semantic_duplicate, resolve_conflict, run_background_extraction
from ..schema import make_pair_key
from .credentials import NOISE_PATTERNS, detect_credential, noise_match_pattern
from .task_ledger import DEFAULT_STALE_TASK_MAX_AGE_MS, review_and_archive_stale_tasks

logger = logging.getLogger(__name__)

# Clusters are fetched once at this similarity; the dedup threshold splits them.
SEMANTIC_BAND_FLOOR = 0.75

PHASES = (
    "dedup", "semanticDedup", "conflict", "entityDedup", "extraction",
    "decay", "cleanup", "noiseCleanup", "credentialScan", "taskLedger",
)


@dataclass
class SleepCycleOptions:
    agent_id: Optional[str] = None
    abort: Optional[asyncio.Event] = None

    dedup_threshold: float = 0.95
    skip_semantic_dedup: bool = False
    max_semantic_dedup_pairs: int = 500
    llm_concurrency: int = 8

    decay_retention_threshold: float = 0.1
    decay_base_half_life_days: float = 30
    decay_importance_multiplier: float = 2
    decay_curves: Optional[Dict[str, float]] = None

    extraction_batch_size: int = 50
    extraction_delay_ms: int = 1000
    single_use_tag_min_age_days: int = 14

    workspace_dir: Optional[str] = None
    stale_task_max_age_ms: int = DEFAULT_STALE_TASK_MAX_AGE_MS

    on_phase_start: Optional[Callable[[str], None]] = None
    on_progress: Optional[Callable[[str, str], None]] = None


@dataclass
class SleepCycleResult:
    dedup: Dict[str, int] = field(default_factory=lambda: {"clustersFound": 0, "memoriesMerged": 0})
    conflict: Dict[str, int] = field(
        default_factory=lambda: {"pairsFound": 0, "resolved": 0, "invalidated": 0}
    )
    semanticDedup: Dict[str, int] = field(
        default_factory=lambda: {"pairsChecked": 0, "duplicatesMerged": 0}
    )
    entityDedup: Dict[str, int] = field(default_factory=lambda: {"pairsFound": 0, "merged": 0})
    extraction: Dict[str, int] = field(
        default_factory=lambda: {"total": 0, "processed": 0, "succeeded": 0, "failed": 0}
    )
    decay: Dict[str, int] = field(default_factory=lambda: {"memoriesPruned": 0})
    cleanup: Dict[str, int] = field(
        default_factory=lambda: {"entitiesRemoved": 0, "tagsRemoved": 0, "singleUseTagsRemoved": 0}
    )
    credentialScan: Dict[str, int] = field(
        default_factory=lambda: {"memoriesScanned": 0, "credentialsFound": 0, "memoriesRemoved": 0}
    )
    taskLedger: Dict[str, object] = field(
        default_factory=lambda: {"staleCount": 0, "archivedCount": 0, "archivedIds": []}
    )
    durationMs: int = 0
    aborted: bool = False

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class _DedupPair:
    id_a: str
    id_b: str
    text_a: str
    text_b: str
    importance_a: float
    importance_b: float
    similarity: Optional[float]


async def _abortable_sleep(seconds: float, abort: Optional[asyncio.Event]) -> None:
    if abort is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(abort.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class _Cycle:
    """One run of the sleep cycle; holds the options, result and callbacks."""

    def __init__(self, db, config: ExtractionConfig, options: SleepCycleOptions):
        self.db = db
        self.config = config
        self.opts = options
        self.result = SleepCycleResult()

    @property
    def aborted(self) -> bool:
        return self.opts.abort is not None and self.opts.abort.is_set()

    def phase(self, name: str) -> None:
        if self.opts.on_phase_start:
            self.opts.on_phase_start(name)

    def progress(self, phase: str, message: str) -> None:
        if self.opts.on_progress:
            self.opts.on_progress(phase, message)

    # ------------------------------------------------------------------
    # Phase 1: vector dedup + semantic dedup
    # ------------------------------------------------------------------

    async def dedup(self) -> None:
        opts, result = self.opts, self.result
        self.phase("dedup")
        logger.info("[sleep] Phase 1: Deduplication (vector + semantic)")

        clusters = await self.db.find_duplicate_clusters(SEMANTIC_BAND_FLOOR, opts.agent_id, True)
        if getattr(self.db, "last_cluster_scan_truncated", False):
            self.progress("dedup", "Duplicate scan hit its pair limit; remaining memories are scanned next cycle")

        high, medium = [], []
        for cluster in clusters:
            if self.aborted:
                break
            if not cluster.similarities or len(cluster.memory_ids) < 2:
                continue
            if any(score >= opts.dedup_threshold for score in cluster.similarities.values()):
                high.append(cluster)
            else:
                medium.append(cluster)

        result.dedup["clustersFound"] = len(high)
        for cluster in high:
            if self.aborted:
                break
            merged = await self.db.merge_memory_cluster(cluster.memory_ids, cluster.importances)
            result.dedup["memoriesMerged"] += merged["deletedCount"]
            self.progress("dedup", f"Merged cluster of {len(cluster.memory_ids)} -> 1 (vector)")
        logger.info(
            f"[sleep] Phase 1a complete: {result.dedup['clustersFound']} clusters, "
            f"{result.dedup['memoriesMerged']} merged"
        )

        self.phase("semanticDedup")
        if opts.skip_semantic_dedup:
            logger.info("[sleep] Phase 1b skipped (semantic dedup disabled)")
            self.progress("semanticDedup", "Skipped: semantic dedup disabled")
            return
        await self.semantic_dedup(medium)

    async def semantic_dedup(self, clusters) -> None:
        opts, result = self.opts, self.result
        logger.info("[sleep] Phase 1b: Semantic Deduplication")

        pairs: List[_DedupPair] = []
        for cluster in clusters:
            ids = cluster.memory_ids
            for i in range(len(ids) - 1):
                for j in range(i + 1, len(ids)):
                    pairs.append(_DedupPair(
                        id_a=ids[i], id_b=ids[j],
                        text_a=cluster.texts[i], text_b=cluster.texts[j],
                        importance_a=cluster.importances[i], importance_b=cluster.importances[j],
                        similarity=(cluster.similarities or {}).get(make_pair_key(ids[i], ids[j])),
                    ))

        if len(pairs) > opts.max_semantic_dedup_pairs:
            pairs.sort(key=lambda p: p.similarity or 0.0, reverse=True)
            skipped = len(pairs) - opts.max_semantic_dedup_pairs
            pairs = pairs[:opts.max_semantic_dedup_pairs]
            self.progress(
                "semanticDedup",
                f"Capped at {opts.max_semantic_dedup_pairs} pairs ({skipped} lower-similarity pairs skipped)",
            )
            logger.info(f"[sleep] Phase 1b capped to {opts.max_semantic_dedup_pairs} pairs ({skipped} skipped)")

        invalidated = set()
        step = max(1, opts.llm_concurrency)
        for start in range(0, len(pairs), step):
            if self.aborted:
                break
            batch = [
                p for p in pairs[start:start + step]
                if p.id_a not in invalidated and p.id_b not in invalidated
            ]
            if not batch:
                continue
            outcomes = await asyncio.gather(
                *(is_semantic_duplicate(p.text_a, p.text_b, self.config, p.similarity, opts.abort)
                  for p in batch),
                return_exceptions=True,
            )
            for pair, outcome in zip(batch, outcomes):
                result.semanticDedup["pairsChecked"] += 1
                if outcome is not True:
                    continue
                if pair.id_a in invalidated or pair.id_b in invalidated:
                    continue
                keep_a = pair.importance_a >= pair.importance_b
                remove_id = pair.id_b if keep_a else pair.id_a
                keep_text = pair.text_a if keep_a else pair.text_b
                remove_text = pair.text_b if keep_a else pair.text_a
                await self.db.invalidate_memory(remove_id)
                invalidated.add(remove_id)
                result.semanticDedup["duplicatesMerged"] += 1
                self.progress("semanticDedup", f'Merged: "{remove_text[:50]}..." -> kept "{keep_text[:50]}..."')

        logger.info(
            f"[sleep] Phase 1b complete: {result.semanticDedup['pairsChecked']} pairs checked, "
            f"{result.semanticDedup['duplicatesMerged']} merged"
        )

    # ------------------------------------------------------------------
    # Phase 1c: conflicts
    # ------------------------------------------------------------------

    async def conflicts(self) -> None:
        opts, result = self.opts, self.result
        self.phase("conflict")
        logger.info("[sleep] Phase 1c: Conflict Detection")

        pairs = await self.db.find_conflicting_memories(opts.agent_id)
        result.conflict["pairsFound"] = len(pairs)

        step = max(1, opts.llm_concurrency)
        for start in range(0, len(pairs), step):
            if self.aborted:
                break
            chunk = pairs[start:start + step]
            decisions = await asyncio.gather(
                *(resolve_conflict(p.memory_a.text, p.memory_b.text, self.config, opts.abort) for p in chunk),
                return_exceptions=True,
            )
            for pair, decision in zip(chunk, decisions):
                if self.aborted:
                    break
                if decision == "a":
                    await self.db.invalidate_memory(pair.memory_b.id)
                    result.conflict["invalidated"] += 1
                    result.conflict["resolved"] += 1
                    self.progress("conflict", f'Kept A, invalidated B: "{pair.memory_b.text[:40]}..."')
                elif decision == "b":
                    await self.db.invalidate_memory(pair.memory_a.id)
                    result.conflict["invalidated"] += 1
                    result.conflict["resolved"] += 1
                    self.progress("conflict", f'Kept B, invalidated A: "{pair.memory_a.text[:40]}..."')
                elif decision == "both":
                    result.conflict["resolved"] += 1
                    self.progress("conflict", "Kept both: no real conflict")

        logger.info(
            f"[sleep] Phase 1c complete: {result.conflict['pairsFound']} pairs, "
            f"{result.conflict['resolved']} resolved, {result.conflict['invalidated']} invalidated"
        )

    # ------------------------------------------------------------------
    # Phase 1d: entity dedup
    # ------------------------------------------------------------------

    async def entity_dedup(self) -> None:
        result = self.result
        self.phase("entityDedup")
        logger.info("[sleep] Phase 1d: Entity Deduplication")

        reconciled = await self.db.reconcile_entity_mention_counts()
        if reconciled > 0:
            logger.info(f"[sleep] Phase 1d: reconciled mentionCount for {reconciled} entities")
            self.progress("entityDedup", f"Reconciled {reconciled} entity mention counts")

        pairs = await self.db.find_duplicate_entity_pairs(self.opts.agent_id)
        result.entityDedup["pairsFound"] = len(pairs)

        removed = set()
        for pair in pairs:
            if self.aborted:
                break
            if pair.keep_id in removed or pair.remove_id in removed:
                continue
            if await self.db.merge_entity_pair(pair.keep_id, pair.remove_id):
                removed.add(pair.remove_id)
                result.entityDedup["merged"] += 1
                self.progress(
                    "entityDedup",
                    f'Merged "{pair.remove_name}" -> "{pair.keep_name}" '
                    f"({pair.remove_mentions} mentions transferred)",
                )

        logger.info(
            f"[sleep] Phase 1d complete: {result.entityDedup['pairsFound']} pairs found, "
            f"{result.entityDedup['merged']} merged"
        )

    # ------------------------------------------------------------------
    # Phase 2: extraction
    # ------------------------------------------------------------------

    async def extraction(self) -> None:
        opts, stats = self.opts, self.result.extraction
        self.phase("extraction")
        logger.info("[sleep] Phase 2: Entity Extraction")

        counts = await self.db.count_by_extraction_status(opts.agent_id)
        stats["total"] = counts.get("pending", 0)
        if stats["total"] == 0:
            logger.info("[sleep] Phase 2 complete: nothing pending")
            return

        step = max(1, opts.llm_concurrency)
        while not self.aborted:
            pending = await self.db.list_pending_extractions(opts.extraction_batch_size, opts.agent_id)
            if not pending:
                break
            for start in range(0, len(pending), step):
                if self.aborted:
                    break
                chunk = pending[start:start + step]
                outcomes = await asyncio.gather(
                    *(run_background_extraction(m.id, m.text, self.db, self.config,
                                                m.extraction_retries, opts.abort)
                      for m in chunk),
                    return_exceptions=True,
                )
                for outcome in outcomes:
                    stats["processed"] += 1
                    if isinstance(outcome, dict) and outcome.get("success"):
                        stats["succeeded"] += 1
                    else:
                        stats["failed"] += 1
                if stats["processed"] % 10 == 0 or start + step >= len(pending):
                    self.progress("extraction", f"{stats['processed']}/{stats['total']} processed")
            if not self.aborted:
                await _abortable_sleep(opts.extraction_delay_ms / 1000, opts.abort)

        logger.info(f"[sleep] Phase 2 complete: {stats['succeeded']} extracted, {stats['failed']} failed")

    # ------------------------------------------------------------------
    # Phase 3-5b
    # ------------------------------------------------------------------

    async def decay(self) -> None:
        opts = self.opts
        self.phase("decay")
        logger.info("[sleep] Phase 3: Decay & Pruning")

        decayed = await self.db.find_decayed_memories(
            retention_threshold=opts.decay_retention_threshold,
            base_half_life_days=opts.decay_base_half_life_days,
            importance_multiplier=opts.decay_importance_multiplier,
            decay_curves=opts.decay_curves,
            agent_id=opts.agent_id,
        )
        if decayed:
            pruned = await self.db.prune_memories([m.id for m in decayed])
            self.result.decay["memoriesPruned"] = pruned
            self.progress("decay", f"Pruned {pruned} decayed memories")
        logger.info(f"[sleep] Phase 3 complete: {self.result.decay['memoriesPruned']} memories pruned")

    async def cleanup(self) -> None:
        stats = self.result.cleanup
        self.phase("cleanup")
        logger.info("[sleep] Phase 4: Orphan Cleanup")

        if not self.aborted:
            orphans = await self.db.find_orphan_entities()
            if orphans:
                stats["entitiesRemoved"] = await self.db.delete_orphan_entities([e["id"] for e in orphans])
                self.progress("cleanup", f"Removed {stats['entitiesRemoved']} orphan entities")

        if not self.aborted:
            orphan_tags = await self.db.find_orphan_tags()
            if orphan_tags:
                stats["tagsRemoved"] = await self.db.delete_orphan_tags([t["id"] for t in orphan_tags])
                self.progress("cleanup", f"Removed {stats['tagsRemoved']} orphan tags")

        if not self.aborted:
            min_age = self.opts.single_use_tag_min_age_days
            single_use = await self.db.find_single_use_tags(min_age)
            if single_use:
                stats["singleUseTagsRemoved"] = await self.db.delete_orphan_tags([t["id"] for t in single_use])
                self.progress(
                    "cleanup",
                    f"Removed {stats['singleUseTagsRemoved']} single-use tags (>{min_age}d old)",
                )

        logger.info(
            f"[sleep] Phase 4 complete: {stats['entitiesRemoved']} entities, {stats['tagsRemoved']} orphan tags, "
            f"{stats['singleUseTagsRemoved']} single-use tags removed"
        )

    async def noise_cleanup(self) -> None:
        self.phase("noiseCleanup")
        logger.info("[sleep] Phase 5: Noise Pattern Cleanup")

        removed = 0
        for pattern in NOISE_PATTERNS:
            if self.aborted:
                break
            removed += await self.db.delete_memories_by_pattern(noise_match_pattern(pattern), self.opts.agent_id)
        if removed:
            self.progress("cleanup", f"Removed {removed} noise-pattern memories")
        logger.info(f"[sleep] Phase 5 complete: {removed} noise memories removed")

    async def credential_scan(self) -> None:
        stats = self.result.credentialScan
        self.phase("credentialScan")
        logger.info("[sleep] Phase 5b: Credential Scanning")

        memories = await self.db.fetch_all_memories_for_scan(self.opts.agent_id)
        stats["memoriesScanned"] = len(memories)

        to_remove = []
        for memory in memories:
            if self.aborted:
                break
            text = memory.get("text") or ""
            label = detect_credential(text)
            if label:
                to_remove.append(memory["id"])
                stats["credentialsFound"] += 1
                self.progress("credentialScan", f'Found {label} in memory {memory["id"][:8]}...: "{text[:40]}..."')
                logger.warning(f"[sleep] Credential detected ({label}) in memory {memory['id']}, removing")

        if to_remove:
            stats["memoriesRemoved"] = await self.db.delete_memories_by_ids(to_remove)
        logger.info(
            f"[sleep] Phase 5b complete: {stats['memoriesScanned']} scanned, "
            f"{stats['credentialsFound']} credentials found, {stats['memoriesRemoved']} removed"
        )

    async def task_ledger(self) -> None:
        opts = self.opts
        self.phase("taskLedger")
        logger.info("[sleep] Phase 6: Task Ledger Cleanup")

        stale = review_and_archive_stale_tasks(opts.workspace_dir, opts.stale_task_max_age_ms)
        if stale is None:
            self.progress("taskLedger", "TASKS.md not found, skipped")
            return
        self.result.taskLedger.update(stale)
        if stale["archivedCount"]:
            self.progress(
                "taskLedger",
                f"Archived {stale['archivedCount']} stale tasks: {', '.join(stale['archivedIds'])}",
            )
        else:
            self.progress("taskLedger", "No stale tasks found")
        logger.info(f"[sleep] Phase 6 complete: {stale['archivedCount']} stale tasks archived")

    async def _run_phase(self, label: str, fn) -> None:
        try:
            await fn()
        except Exception as e:
            logger.warning(f"[sleep] {label} error: {e}")

    async def run(self) -> SleepCycleResult:
        started = time.monotonic()
        opts = self.opts

        if not self.aborted:
            await self._run_phase("Phase 1", self.dedup)
        if not self.aborted and not opts.skip_semantic_dedup:
            await self._run_phase("Phase 1c", self.conflicts)
        if not self.aborted:
            await self._run_phase("Phase 1d", self.entity_dedup)
        if not self.config.enabled:
            logger.info("[sleep] Phase 2 skipped: extraction not enabled")
        elif not self.aborted:
            await self._run_phase("Phase 2", self.extraction)
        if not self.aborted:
            await self._run_phase("Phase 3", self.decay)
        if not self.aborted:
            await self._run_phase("Phase 4", self.cleanup)
        if not self.aborted:
            await self._run_phase("Phase 5", self.noise_cleanup)
        if not self.aborted:
            await self._run_phase("Phase 5b", self.credential_scan)
        if not opts.workspace_dir:
            logger.info("[sleep] Phase 6 skipped: no workspace dir")
        elif not self.aborted:
            await self._run_phase("Phase 6", self.task_ledger)

        self.result.durationMs = int((time.monotonic() - started) * 1000)
        self.result.aborted = self.aborted
        logger.info(
            f"[sleep] Sleep cycle complete in {self.result.durationMs / 1000:.1f}s"
            + (" (aborted)" if self.result.aborted else "")
        )
        return self.result


async def run_sleep_cycle(db, config: ExtractionConfig,
                          options: Optional[SleepCycleOptions] = None) -> SleepCycleResult:
    """
    Run every consolidation phase against the store.

    Args:
        db: Neo4jMemoryClient
        config: Resolved extraction config; LLM phases degrade to no-ops when disabled
        options: Thresholds, limits, callbacks and the abort event

    Returns:
        Aggregated per-phase statistics
    """
    return await _Cycle(db, config, options or SleepCycleOptions()).run()
