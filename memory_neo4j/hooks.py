"""
Lifecycle hooks: core-memory injection, auto-recall, auto-capture and auto-sleep.

The host calls these from its event bus and serialises calls per session.
Auto-capture and the auto-triggered sleep cycle are spawned in the
background; the hook returns without waiting for them.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from .attention import passes_assistant_attention_gate, passes_attention_gate
from .background import spawn
from .config import ExtractionConfig, MemoryConfig
from .consolidation.sleep_cycle import SleepCycleOptions, run_sleep_cycle
from .extraction.service import is_semantic_duplicate, rate_importance
from .messages import extract_assistant_messages, extract_user_messages
from .models import StoreMemoryInput
from .search import hybrid_search

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 24 * 60 * 60
SWEEP_INTERVAL_SECONDS = 5 * 60
MIN_TOKENS_SINCE_REFRESH = 10_000
AUTO_RECALL_LIMIT = 3
MIN_RECALL_PROMPT_CHARS = 5
MAX_RECALL_QUERY_CHARS = 1000

CAPTURE_CANDIDATE_THRESHOLD = 0.75
CAPTURE_CANDIDATE_LIMIT = 3
CAPTURE_DUPLICATE_THRESHOLD = 0.95
USER_IMPORTANCE_THRESHOLD = 0.65
ASSISTANT_IMPORTANCE_THRESHOLD = 0.8
ASSISTANT_IMPORTANCE_DISCOUNT = 0.75

CORE_MEMORY_FILE = "MEMORY.md"
CORE_MEMORY_PATH = "memory://neo4j/core-memory"


@dataclass
class HookContext:
    agent_id: Optional[str] = None
    session_key: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def agent(self) -> str:
        return self.agent_id or "default"


class SessionState:
    """
    Per-session bookkeeping with a lazy TTL sweep.

    Entries untouched for 24 hours are evicted; the sweep itself runs at most
    once every 5 minutes.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.bootstrapped: Set[str] = set()
        self.core_ids: Dict[str, Set[str]] = {}
        self.refresh_at_tokens: Dict[str, int] = {}
        self.last_seen: Dict[str, float] = {}
        self._last_sweep = clock()

    def touch(self, session_key: str) -> None:
        self.last_seen[session_key] = self._clock()
        self.sweep()

    def sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        cutoff = now - SESSION_TTL_SECONDS
        for key, seen in list(self.last_seen.items()):
            if seen < cutoff:
                self.clear(key)

    def clear(self, session_key: str) -> None:
        self.bootstrapped.discard(session_key)
        self.core_ids.pop(session_key, None)
        self.refresh_at_tokens.pop(session_key, None)
        self.last_seen.pop(session_key, None)


@dataclass
class CaptureOutcome:
    stored: bool = False
    semantic_deduped: bool = False


# =============================================================================
# Auto-capture pipeline
# =============================================================================

async def capture_message(
    text: str,
    source: str,
    importance_threshold: float,
    importance_discount: float,
    agent_id: str,
    session_key: Optional[str],
    db,
    embeddings,
    extraction_config: ExtractionConfig,
    vector: Optional[List[float]] = None,
) -> CaptureOutcome:
    """
    Embed, dedup, rate and store one message.

    Assistant messages are rated before embedding so low-value ones exit
    early. With extraction disabled the rating is a fixed fallback, so the
    importance threshold is not applied.
    """
    importance: Optional[float] = None
    if source == "auto-capture-assistant" and extraction_config.enabled:
        importance = await rate_importance(text, extraction_config)
        if importance < importance_threshold:
            return CaptureOutcome()

    if vector is None:
        vector = await embeddings.embed(text)

    candidates = await db.find_similar(vector, CAPTURE_CANDIDATE_THRESHOLD, CAPTURE_CANDIDATE_LIMIT, agent_id)
    if any(c.score >= CAPTURE_DUPLICATE_THRESHOLD for c in candidates):
        return CaptureOutcome()

    if importance is None:
        importance = await rate_importance(text, extraction_config)
        if extraction_config.enabled and importance < importance_threshold:
            return CaptureOutcome()

    for candidate in candidates:
        if await is_semantic_duplicate(text, candidate.text, extraction_config, candidate.score):
            logger.debug(
                f'Semantic dedup skipped "{text[:60]}..." (duplicate of "{candidate.text[:60]}...")'
            )
            return CaptureOutcome(semantic_deduped=True)

    await db.store_memory(StoreMemoryInput(
        id=str(uuid.uuid4()),
        text=text,
        embedding=vector,
        importance=importance * importance_discount,
        category="other",
        source=source,
        extraction_status="pending" if extraction_config.enabled else "skipped",
        agent_id=agent_id,
        session_key=session_key,
    ))
    return CaptureOutcome(stored=True)


async def run_auto_capture(messages: List[Any], agent_id: str, session_key: Optional[str],
                           db, embeddings, extraction_config: ExtractionConfig) -> None:
    """Gate, batch-embed and capture every user and assistant message of a turn."""
    try:
        t0 = time.perf_counter()
        user = [t for t in extract_user_messages(messages) if passes_attention_gate(t)]
        assistant = [t for t in extract_assistant_messages(messages) if passes_assistant_attention_gate(t)]

        items = [(t, "auto-capture", USER_IMPORTANCE_THRESHOLD, 1.0) for t in user]
        items += [
            (t, "auto-capture-assistant", ASSISTANT_IMPORTANCE_THRESHOLD, ASSISTANT_IMPORTANCE_DISCOUNT)
            for t in assistant
        ]
        vectors = await embeddings.embed_batch([item[0] for item in items]) if items else []
        t_embed = time.perf_counter()

        stored = deduped = 0
        for (text, source, threshold, discount), vector in zip(items, vectors):
            try:
                outcome = await capture_message(
                    text, source, threshold, discount, agent_id, session_key,
                    db, embeddings, extraction_config, vector,
                )
            except Exception as e:
                logger.debug(f"Auto-capture item failed: {e}")
                continue
            stored += outcome.stored
            deduped += outcome.semantic_deduped

        logger.info(
            f"[bench] auto-capture {(time.perf_counter() - t0) * 1000:.0f}ms "
            f"(embed={(t_embed - t0) * 1000:.0f}ms), {len(user)}+{len(assistant)} gated, "
            f"{stored} stored, {deduped} deduped"
        )
    except Exception as e:
        logger.warning(f"Auto-capture failed: {e}")


# =============================================================================
# Hooks
# =============================================================================

class MemoryHooks:
    """Hook handlers sharing one store, embedder and session state."""

    def __init__(self, db, embeddings, cfg: MemoryConfig, extraction_config: ExtractionConfig,
                 clock: Callable[[], float] = time.time):
        self.db = db
        self.embeddings = embeddings
        self.cfg = cfg
        self.extraction_config = extraction_config
        self.sessions = SessionState(clock)
        self._clock = clock

        self.sleep_abort = asyncio.Event()
        self.sleep_running = False
        self.last_sleep_at = 0.0

    # ------------------------------------------------------------------
    # before_agent_start
    # ------------------------------------------------------------------

    async def before_agent_start(self, prompt: Optional[str], ctx: HookContext,
                                 context_window_tokens: Optional[int] = None,
                                 estimated_used_tokens: Optional[int] = None) -> Optional[str]:
        """
        Build context to prepend to the prompt.

        Returns:
            A core-memory refresh block and/or a relevant-memories block, or
            None when there is nothing to add
        """
        blocks = []
        refresh = await self._core_refresh(ctx, context_window_tokens, estimated_used_tokens)
        if refresh:
            blocks.append(refresh)
        recall = await self._auto_recall(prompt, ctx)
        if recall:
            blocks.append(recall)
        return "\n\n".join(blocks) if blocks else None

    async def _core_refresh(self, ctx: HookContext, window: Optional[int],
                            used: Optional[int]) -> Optional[str]:
        threshold = self.cfg.core_memory.refresh_at_context_percent
        if not self.cfg.core_memory.enabled or not threshold or not window or not used:
            return None

        session_key = ctx.session_key or ""
        usage = used / window * 100
        if usage < threshold:
            return None

        since = used - self.sessions.refresh_at_tokens.get(session_key, 0)
        if since < MIN_TOKENS_SINCE_REFRESH:
            logger.debug(f"Skipping mid-session refresh (only {since} tokens since last refresh)")
            return None

        try:
            t0 = time.perf_counter()
            core = await self.db.list_core_for_injection(ctx.agent)
            if not core:
                return None
            self.sessions.refresh_at_tokens[session_key] = used
            self.sessions.touch(session_key)
            logger.info(
                f"[bench] core-refresh {(time.perf_counter() - t0) * 1000:.0f}ms at {usage:.1f}% context "
                f"({len(core)} memories)"
            )
            content = "\n".join(f"- {m['text']}" for m in core)
            return (
                "<core-memory-refresh>\n"
                "Reminder of persistent context (you may have seen this earlier, re-stating for recency):\n"
                f"{content}\n</core-memory-refresh>"
            )
        except Exception as e:
            logger.warning(f"Mid-session core refresh failed: {e}")
            return None

    async def _auto_recall(self, prompt: Optional[str], ctx: HookContext) -> Optional[str]:
        if not self.cfg.auto_recall or not prompt or len(prompt) < MIN_RECALL_PROMPT_CHARS:
            return None
        session_key = ctx.session_key or ""
        skip = self.cfg.auto_recall_skip_pattern
        if skip and skip.search(session_key):
            logger.debug(f"Skipping auto-recall for session {session_key} (matches skip pattern)")
            return None

        try:
            t0 = time.perf_counter()
            results = await hybrid_search(
                self.db,
                self.embeddings,
                prompt[:MAX_RECALL_QUERY_CHARS],
                AUTO_RECALL_LIMIT,
                ctx.agent,
                graph_enabled=self.extraction_config.enabled,
                graph_search_depth=self.cfg.graph_search_depth,
            )
            results = [r for r in results if r.score >= self.cfg.auto_recall_min_score]
            core_ids = self.sessions.core_ids.get(session_key)
            if core_ids:
                results = [r for r in results if r.id not in core_ids]
            logger.info(f"[bench] auto-recall {(time.perf_counter() - t0) * 1000:.0f}ms, {len(results)} results")
        except Exception as e:
            logger.warning(f"Auto-recall failed: {e}")
            return None

        if not results:
            return None
        context = "\n".join(f"- [{r.category}] {r.text}" for r in results)
        return (
            "<relevant-memories>\n"
            "The following memories may be relevant to this conversation:\n"
            f"{context}\n</relevant-memories>"
        )

    # ------------------------------------------------------------------
    # agent_bootstrap
    # ------------------------------------------------------------------

    async def agent_bootstrap(self, files: List[Dict[str, Any]],
                              ctx: HookContext) -> Optional[List[Dict[str, Any]]]:
        """
        Inject core memories as a virtual MEMORY.md, once per session.

        Returns:
            The updated file list, or None when nothing changed
        """
        if not self.cfg.core_memory.enabled:
            return None
        session_key = ctx.session_key
        if session_key and session_key in self.sessions.bootstrapped:
            logger.debug(f"Skipping core memory injection for bootstrapped session={session_key}")
            return None

        try:
            t0 = time.perf_counter()
            core = await self.db.list_core_for_injection(ctx.agent)
        except Exception as e:
            logger.warning(f"Core memory injection failed: {e}")
            return None

        if session_key:
            self.sessions.bootstrapped.add(session_key)
            self.sessions.touch(session_key)
        if not core:
            logger.info(f"[bench] core-inject {(time.perf_counter() - t0) * 1000:.0f}ms (0 memories, skipped)")
            return None

        content = "# Core Memory\n\n*Persistent context loaded from long-term memory*\n\n"
        content += "".join(f"- {m['text']}\n" for m in core)
        virtual = {"name": CORE_MEMORY_FILE, "path": CORE_MEMORY_PATH, "content": content, "missing": False}

        updated = list(files)
        index = next(
            (i for i, f in enumerate(updated) if f.get("name") in (CORE_MEMORY_FILE, "memory.md")), None
        )
        if index is None:
            updated.append(virtual)
        else:
            updated[index] = virtual

        if session_key:
            self.sessions.core_ids[session_key] = {m["id"] for m in core}
        logger.info(
            f"[bench] core-inject {(time.perf_counter() - t0) * 1000:.0f}ms, "
            f"{'added' if index is None else 'replaced'} {CORE_MEMORY_FILE} with {len(core)} memories"
        )
        return updated

    # ------------------------------------------------------------------
    # agent_end
    # ------------------------------------------------------------------

    def agent_end(self, messages: Optional[List[Any]], ctx: HookContext, success: bool = True) -> None:
        """Spawn auto-capture for the finished turn, and an auto-sleep cycle when due."""
        if not self.cfg.auto_capture:
            return
        if not success or not messages:
            logger.debug("Skipping auto-capture: unsuccessful turn or no messages")
            return
        skip = self.cfg.auto_capture_skip_pattern
        if skip and ctx.session_key and skip.search(ctx.session_key):
            logger.debug(f"Skipping auto-capture for session {ctx.session_key} (matches skip pattern)")
            return

        spawn(
            run_auto_capture(messages, ctx.agent, ctx.session_key, self.db, self.embeddings,
                             self.extraction_config),
            "auto-capture",
        )
        self.maybe_start_sleep_cycle()

    def maybe_start_sleep_cycle(self) -> bool:
        """Start a background sleep cycle if auto-sleep is on, idle, and the interval elapsed."""
        interval = self.cfg.sleep_cycle.auto_interval_ms / 1000
        if not self.cfg.sleep_cycle.auto or self.sleep_running:
            return False
        if self._clock() - self.last_sleep_at < interval:
            return False
        self.sleep_running = True
        if spawn(self._auto_sleep(), "auto-sleep") is None:
            self.sleep_running = False
            return False
        return True

    async def _auto_sleep(self) -> None:
        try:
            logger.info("[auto-sleep] starting background sleep cycle")
            result = await run_sleep_cycle(
                self.db,
                self.extraction_config,
                SleepCycleOptions(abort=self.sleep_abort, decay_curves=self.cfg.decay_curves or None),
            )
            self.last_sleep_at = self._clock()
            logger.info(
                f"[auto-sleep] complete in {result.durationMs / 1000:.1f}s: "
                f"dedup={result.dedup['memoriesMerged']}, extracted={result.extraction['succeeded']}, "
                f"decayed={result.decay['memoriesPruned']}, "
                f"credentials={result.credentialScan['credentialsFound']}"
                + (" (aborted)" if result.aborted else "")
            )
        except Exception as e:
            logger.warning(f"[auto-sleep] failed: {e}")
        finally:
            self.sleep_running = False

    # ------------------------------------------------------------------
    # after_compaction / session_end
    # ------------------------------------------------------------------

    def after_compaction(self, ctx: HookContext) -> None:
        if self.cfg.core_memory.enabled and ctx.session_key:
            self.sessions.clear(ctx.session_key)
            logger.info(f"Cleared bootstrap/refresh flags for session {ctx.session_key} after compaction")

    def session_end(self, ctx: HookContext) -> None:
        key = ctx.session_key or ctx.session_id
        if key:
            self.sessions.clear(key)
            logger.info(f"Cleared bootstrap/refresh flags for session={key} (session_end)")
