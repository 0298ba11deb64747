"""
Command-line interface for the Neo4j memory store.

Usage:
    memory-neo4j list [--agent ID] [--category NAME] [--limit N] [--json]
    memory-neo4j search QUERY [--limit N] [--agent ID]
    memory-neo4j stats
    memory-neo4j sleep [--agent ID] [--dedup-threshold X] [--skip-semantic] ...
    memory-neo4j index [--batch-size N]
    memory-neo4j cleanup [--execute] [--all] [--agent ID]
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Dict, List, Optional

from .attention import passes_attention_gate
from .config import load_config
from .consolidation.sleep_cycle import SleepCycleOptions, run_sleep_cycle
from .exceptions import MemoryStoreError
from .messages import strip_message_wrappers
from .plugin import MemoryPlugin
from .search import hybrid_search

logger = logging.getLogger(__name__)

RULE = "═" * 61
THIN_RULE = "─" * 61

PHASE_NAMES = {
    "dedup": "Phase 1: Deduplication",
    "semanticDedup": "Phase 1b: Semantic Deduplication",
    "conflict": "Phase 1c: Conflict Detection",
    "entityDedup": "Phase 1d: Entity Deduplication",
    "extraction": "Phase 2: Extraction",
    "decay": "Phase 3: Decay & Pruning",
    "cleanup": "Phase 4: Orphan Cleanup",
    "noiseCleanup": "Phase 5: Noise Cleanup",
    "credentialScan": "Phase 5b: Credential Scan",
    "taskLedger": "Phase 6: Task Ledger Cleanup",
}


class CommandError(Exception):
    """Invalid input or a failed command; printed as ``Error: ...`` with exit code 1."""


def _bar(ratio: float, width: int) -> str:
    filled = round(max(0.0, min(1.0, ratio)) * width)
    return "█" * filled + "░" * (width - filled)


def _preview(text: str, width: int) -> str:
    return text if len(text) <= width else text[:width - 3] + "..."


class BaseCommand:
    """A subcommand: declares its arguments and handles a parsed namespace."""

    name = ""
    help = ""

    def __init__(self, plugin: MemoryPlugin, stdout=None, stderr=None):
        self.plugin = plugin
        self.db = plugin.db
        self.embeddings = plugin.embeddings
        self.cfg = plugin.cfg
        self.extraction_config = plugin.extraction_config
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr

    def write(self, line: str = "") -> None:
        self.stdout.write(line + "\n")

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        pass

    async def handle(self, **options) -> None:
        raise NotImplementedError

    async def execute(self, **options) -> int:
        try:
            await self.handle(**options)
        except CommandError as e:
            self.stderr.write(f"Error: {e}\n")
            return 1
        except Exception as e:
            logger.debug(f"{self.name} failed", exc_info=True)
            self.stderr.write(f"Error: {e}\n")
            return 1
        return 0


# =============================================================================
# list / search / stats
# =============================================================================

class ListCommand(BaseCommand):
    name = "list"
    help = "List memories grouped by agent and category"

    @classmethod
    def add_arguments(cls, parser):
        parser.add_argument("--agent", help="Filter by agent id")
        parser.add_argument("--category", help="Filter by category")
        parser.add_argument("--limit", type=int, default=20, help="Max memories per category (default: 20)")
        parser.add_argument("--json", action="store_true", help="Output as JSON")

    async def handle(self, **options):
        if options["limit"] <= 0:
            raise CommandError("--limit must be greater than 0")

        rows = await self.db.list_memories(options.get("agent"), options.get("category"), options["limit"])
        if options["json"]:
            self.write(json.dumps(rows, indent=2, default=str))
            return
        if not rows:
            self.write("No memories found.")
            return

        grouped: Dict[str, Dict[str, List[dict]]] = {}
        for row in rows:
            agent = row.get("agentId") or "default"
            category = row.get("category") or "other"
            grouped.setdefault(agent, {}).setdefault(category, []).append(row)

        for agent, categories in grouped.items():
            shown = sum(len(m) for m in categories.values())
            self.write(f"\n┌─ {agent} ({shown} shown)")
            for category, memories in categories.items():
                self.write(f"│\n│  ── {category} ({len(memories)}) ──")
                for mem in memories:
                    importance = mem.get("importance") or 0.0
                    pct = f"{importance * 100:.0f}%".rjust(4)
                    self.write(f"│  {_bar(importance, 10)} {pct}  {_preview(mem['text'], 72)}")
            self.write("└")
        self.write()


class SearchCommand(BaseCommand):
    name = "search"
    help = "Search memories"

    @classmethod
    def add_arguments(cls, parser):
        parser.add_argument("query", help="Search query")
        parser.add_argument("--limit", type=int, default=5, help="Max results (default: 5)")
        parser.add_argument("--agent", default="default", help="Agent id (default: default)")

    async def handle(self, **options):
        if options["limit"] <= 0:
            raise CommandError("--limit must be greater than 0")
        results = await hybrid_search(
            self.db,
            self.embeddings,
            options["query"],
            options["limit"],
            options["agent"],
            graph_enabled=self.extraction_config.enabled,
            graph_search_depth=self.cfg.graph_search_depth,
        )
        self.write(json.dumps([r.to_summary() for r in results], indent=2))


class StatsCommand(BaseCommand):
    name = "stats"
    help = "Show memory statistics and configuration"

    async def handle(self, **options):
        await self.db.ensure_initialized()
        stats = await self.db.get_memory_stats()
        total = sum(s.count for s in stats)
        extraction = self.extraction_config.model if self.extraction_config.enabled else "disabled"

        self.write("\nMemory (Neo4j) Statistics")
        self.write("─" * 25)
        self.write(f"Total memories: {total}")
        self.write(f"Neo4j URI:      {self.cfg.neo4j.uri}")
        self.write(f"Embedding:      {self.cfg.embedding.provider}/{self.cfg.embedding.model}")
        self.write(f"Extraction:     {extraction}")
        self.write(f"Auto-capture:   {'enabled' if self.cfg.auto_capture else 'disabled'}")
        self.write(f"Auto-recall:    {'enabled' if self.cfg.auto_recall else 'disabled'}")
        self.write(f"Core memory:    {'enabled' if self.cfg.core_memory.enabled else 'disabled'}")

        if stats:
            by_agent: Dict[str, list] = {}
            for row in stats:
                by_agent.setdefault(row.agent_id, []).append(row)
            for agent, rows in by_agent.items():
                largest = max(r.count for r in rows) or 1
                label = max(len(r.category) for r in rows)
                self.write(f"\n┌─ {agent} ({sum(r.count for r in rows)} memories)")
                self.write("│")
                self.write(f"│  {'Category'.ljust(label)}  {'Count'.rjust(5)}  {''.ljust(20)}  {'Importance'.rjust(10)}")
                self.write(f"│  {'─' * (label + 5 + 20 * 2 + 18)}")
                for r in rows:
                    pct = f"{r.avg_importance * 100:.0f}%".rjust(10)
                    self.write(
                        f"│  {r.category.ljust(label)}  {str(r.count).rjust(5)}  "
                        f"{_bar(r.count / largest, 20)}  {pct}  {_bar(r.avg_importance, 20)}"
                    )
                self.write("└")
            self.write(f"\nAgents: {len(by_agent)} ({', '.join(by_agent)})")
        self.write()


# =============================================================================
# sleep / index / cleanup
# =============================================================================

class SleepCommand(BaseCommand):
    name = "sleep"
    help = "Run the sleep cycle to consolidate memories"

    @classmethod
    def add_arguments(cls, parser):
        parser.add_argument("--agent", help="Agent id (default: all agents)")
        parser.add_argument("--dedup-threshold", type=float, help="Vector similarity threshold for dedup (default: 0.95)")
        parser.add_argument("--decay-threshold", type=float, help="Decay score threshold for pruning (default: 0.1)")
        parser.add_argument("--decay-half-life", type=float, help="Base half-life in days (default: 30)")
        parser.add_argument("--batch-size", type=int, help="Extraction batch size (default: 50)")
        parser.add_argument("--delay", type=int, help="Delay between extraction batches in ms (default: 1000)")
        parser.add_argument("--max-semantic-pairs", type=int, help="Max LLM-checked semantic dedup pairs (default: 500)")
        parser.add_argument("--concurrency", type=int, help="Parallel LLM calls (default: 8)")
        parser.add_argument("--skip-semantic", action="store_true",
                            help="Skip LLM-based semantic dedup and conflict detection")
        parser.add_argument("--workspace", help="Workspace directory for TASKS.md cleanup")

    @staticmethod
    def build_options(options: dict) -> SleepCycleOptions:
        """Validate flags and map them onto sleep cycle options."""
        checks = (
            ("batch_size", lambda v: v > 0, "--batch-size must be greater than 0"),
            ("delay", lambda v: v >= 0, "--delay must be >= 0"),
            ("decay_half_life", lambda v: v > 0, "--decay-half-life must be greater than 0"),
            ("decay_threshold", lambda v: 0 <= v <= 1, "--decay-threshold must be between 0 and 1"),
            ("dedup_threshold", lambda v: 0 < v <= 1, "--dedup-threshold must be between 0 (exclusive) and 1"),
            ("max_semantic_pairs", lambda v: v > 0, "--max-semantic-pairs must be greater than 0"),
            ("concurrency", lambda v: v > 0, "--concurrency must be greater than 0"),
        )
        for key, valid, message in checks:
            value = options.get(key)
            if value is not None and not valid(value):
                raise CommandError(message)

        sleep = SleepCycleOptions(
            agent_id=options.get("agent"),
            skip_semantic_dedup=bool(options.get("skip_semantic")),
            workspace_dir=(options.get("workspace") or "").strip() or None,
        )
        mapping = {
            "dedup_threshold": "dedup_threshold",
            "decay_threshold": "decay_retention_threshold",
            "decay_half_life": "decay_base_half_life_days",
            "batch_size": "extraction_batch_size",
            "delay": "extraction_delay_ms",
            "max_semantic_pairs": "max_semantic_dedup_pairs",
            "concurrency": "llm_concurrency",
        }
        for flag, attr in mapping.items():
            if options.get(flag) is not None:
                setattr(sleep, attr, options[flag])
        return sleep

    async def handle(self, **options):
        sleep = self.build_options(options)
        sleep.decay_curves = self.cfg.decay_curves or None
        sleep.on_phase_start = lambda phase: self.write(f"\n▶ {PHASE_NAMES.get(phase, phase)}\n{THIN_RULE}")
        sleep.on_progress = lambda _phase, message: self.write(f"   {message}")

        self.write("\nMemory Sleep Cycle")
        self.write(RULE)

        await self.db.ensure_initialized()
        result = await run_sleep_cycle(self.db, self.extraction_config, sleep)

        ledger = result.taskLedger
        archived = f" ({', '.join(ledger['archivedIds'])})" if ledger["archivedIds"] else ""
        failed = f" ({result.extraction['failed']} failed)" if result.extraction["failed"] else ""
        self.write(f"\n{RULE}")
        self.write(f"Sleep cycle complete in {result.durationMs / 1000:.1f}s")
        self.write(THIN_RULE)
        self.write(f"   Deduplication:  {result.dedup['clustersFound']} clusters -> {result.dedup['memoriesMerged']} merged")
        self.write(
            f"   Conflicts:      {result.conflict['pairsFound']} pairs, {result.conflict['resolved']} resolved, "
            f"{result.conflict['invalidated']} invalidated"
        )
        self.write(
            f"   Semantic Dedup: {result.semanticDedup['pairsChecked']} pairs checked, "
            f"{result.semanticDedup['duplicatesMerged']} merged"
        )
        self.write(f"   Decay/Pruning:  {result.decay['memoriesPruned']} memories pruned")
        self.write(f"   Extraction:     {result.extraction['succeeded']}/{result.extraction['total']} extracted{failed}")
        self.write(
            f"   Cleanup:        {result.cleanup['entitiesRemoved']} entities, "
            f"{result.cleanup['tagsRemoved']} tags removed"
        )
        self.write(f"   Credentials:    {result.credentialScan['memoriesRemoved']} memories removed")
        self.write(f"   Task Ledger:    {ledger['archivedCount']} stale tasks archived{archived}")
        if result.aborted:
            self.write("\nSleep cycle was aborted before completion.")
        self.write()


class IndexCommand(BaseCommand):
    name = "index"
    help = "Re-embed all memories; use after changing embedding model or provider"

    @classmethod
    def add_arguments(cls, parser):
        parser.add_argument("--batch-size", type=int, default=50, help="Embedding batch size (default: 50)")

    async def handle(self, **options):
        batch_size = options["batch_size"]
        if batch_size <= 0:
            raise CommandError("--batch-size must be greater than 0")

        self.write("\nMemory Neo4j: Reindex Embeddings")
        self.write(RULE)
        self.write(f"Model:      {self.cfg.embedding.provider}/{self.cfg.embedding.model}")
        self.write(f"Dimensions: {self.plugin.vector_dim}")
        self.write(f"Batch size: {batch_size}\n")

        def on_progress(phase: str, done: int, total: int) -> None:
            if phase == "drop-indexes" and done == 0:
                self.write("▶ Dropping old vector index")
            elif phase == "memories":
                self.write(f"   Memories: {done}/{total}")
            elif phase == "create-indexes" and done == 0:
                self.write("▶ Recreating vector index")

        started = time.monotonic()
        result = await self.db.reindex(self.embeddings.embed_batch, batch_size, on_progress)
        self.write(f"\n{RULE}")
        self.write(f"Reindex complete in {time.monotonic() - started:.1f}s: {result['memories']} memories\n")


class CleanupCommand(BaseCommand):
    name = "cleanup"
    help = "Retroactively apply the attention gate and remove low-substance memories"

    @classmethod
    def add_arguments(cls, parser):
        parser.add_argument("--execute", action="store_true", help="Actually delete (default: dry-run preview)")
        parser.add_argument("--all", action="store_true",
                            help="Include explicitly-stored memories (default: auto-capture only)")
        parser.add_argument("--agent", help="Only clean up memories for a specific agent")

    async def handle(self, **options):
        memories = await self.db.list_memories_for_cleanup(options["all"], options.get("agent"))
        noise = [m for m in memories if not passes_attention_gate(strip_message_wrappers(m["text"]))]

        if not noise:
            self.write("\nNo low-substance memories found. Everything passes the gate.")
            return

        self.write(f"\nFound {len(noise)}/{len(memories)} memories that fail the attention gate:\n")
        for mem in noise:
            self.write(f'  [{mem.get("source") or "unknown"}] "{_preview(mem["text"], 80)}"')

        if not options["execute"]:
            self.write(f"\nDry run: {len(noise)} memories would be removed. Re-run with --execute to delete.\n")
            return
        deleted = await self.db.prune_memories([m["id"] for m in noise])
        self.write(f"\nDeleted {deleted} low-substance memories.\n")


COMMANDS = (ListCommand, SearchCommand, StatsCommand, SleepCommand, IndexCommand, CleanupCommand)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memory-neo4j", description="Neo4j graph memory commands")
    parser.add_argument("--config", help="Path to the JSON plugin config")
    parser.add_argument("--verbose", action="store_true", help="Show debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)
    for command in COMMANDS:
        sub = subparsers.add_parser(command.name, help=command.help)
        command.add_arguments(sub)
    return parser


async def run_command(plugin: MemoryPlugin, command_name: str, options: dict,
                      stdout=None, stderr=None) -> int:
    command_cls = next(c for c in COMMANDS if c.name == command_name)
    command = command_cls(plugin, stdout, stderr)
    try:
        return await command.execute(**options)
    finally:
        await plugin.db.close()
        await plugin.embeddings.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        plugin = MemoryPlugin(load_config(args.config))
    except MemoryStoreError as e:
        sys.stderr.write(f"Error: {e}\n")
        return 1

    options = {k: v for k, v in vars(args).items() if k not in ("config", "verbose", "command")}
    return asyncio.run(run_command(plugin, args.command, options))


if __name__ == "__main__":
    sys.exit(main())
