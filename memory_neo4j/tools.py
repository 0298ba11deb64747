"""
Agent-facing memory tools: recall, store and forget.

Each tool returns a ``ToolResult``; failures come back as structured
``details`` rather than raised exceptions.
"""

import logging
import uuid
from functools import wraps
from typing import Awaitable, Callable, Optional

from .config import ExtractionConfig, MemoryConfig
from .exceptions import InvalidMemoryIdError
from .models import StoreMemoryInput, ToolResult
from .schema import MEMORY_CATEGORIES
from .search import hybrid_search

logger = logging.getLogger(__name__)

DEFAULT_RECALL_LIMIT = 5
MAX_RECALL_LIMIT = 50
DEFAULT_STORE_IMPORTANCE = 0.7
DUPLICATE_THRESHOLD = 0.95
FORGET_CANDIDATE_LIMIT = 5
FORGET_MIN_SCORE = 0.7
FORGET_AUTO_DELETE_SCORE = 0.95


def tool_error_result(func: Callable[..., Awaitable[ToolResult]]) -> Callable[..., Awaitable[ToolResult]]:
    """
    Turn an unexpected failure inside a tool into an ``action: "error"`` result.

    The exception is logged; the agent only sees a generic message.
    """

    @wraps(func)
    async def wrapper(*args, **kwargs) -> ToolResult:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.warning(f"{func.__name__} failed: {e}")
            return ToolResult(
                text="Memory is temporarily unavailable. Try again later.",
                details={"action": "error", "error": "unavailable"},
            )

    return wrapper


class MemoryTools:
    """
    The three memory tools bound to one agent.

    Usage:
        tools = MemoryTools(db, embeddings, cfg, extraction_config, agent_id="main")
        result = await tools.memory_recall("what editor do I use?")
    """

    def __init__(self, db, embeddings, cfg: MemoryConfig, extraction_config: ExtractionConfig,
                 agent_id: Optional[str] = None, session_key: Optional[str] = None):
        self.db = db
        self.embeddings = embeddings
        self.cfg = cfg
        self.extraction_config = extraction_config
        self.agent_id = agent_id or "default"
        self.session_key = session_key

    @tool_error_result
    async def memory_recall(self, query: str, limit: float = DEFAULT_RECALL_LIMIT) -> ToolResult:
        """
        Search long-term memories.

        Args:
            query: Search query
            limit: Max results, clamped to 1..50

        Returns:
            Ranked list as text; ``details.memories`` holds the structured results
        """
        limit = int(min(MAX_RECALL_LIMIT, max(1, limit)))
        results = await hybrid_search(
            self.db,
            self.embeddings,
            query,
            limit,
            self.agent_id,
            graph_enabled=self.extraction_config.enabled,
            graph_search_depth=self.cfg.graph_search_depth,
        )
        if not results:
            return ToolResult(text="No relevant memories found.", details={"count": 0})

        lines = "\n".join(
            f"{i}. [{r.category}] {r.text} ({r.score * 100:.0f}%)"
            for i, r in enumerate(results, start=1)
        )
        return ToolResult(
            text=f"Found {len(results)} memories:\n\n{lines}",
            details={"count": len(results), "memories": [r.to_summary() for r in results]},
        )

    @tool_error_result
    async def memory_store(self, text: str, importance: Optional[float] = None,
                           category: Optional[str] = None) -> ToolResult:
        """
        Save information to long-term memory.

        A near-identical existing memory (cosine >= 0.95) short-circuits the
        write. Core memories are locked at importance 1.0. Entity extraction
        is deferred to the sleep cycle.
        """
        category = category if category in MEMORY_CATEGORIES else "other"
        importance = DEFAULT_STORE_IMPORTANCE if importance is None else importance

        vector = await self.embeddings.embed(text)

        existing = await self.db.find_similar(vector, DUPLICATE_THRESHOLD, 1, self.agent_id)
        if existing:
            return ToolResult(
                text=f'Similar memory already exists: "{existing[0].text}"',
                details={
                    "action": "duplicate",
                    "existingId": existing[0].id,
                    "existingText": existing[0].text,
                },
            )

        memory_id = str(uuid.uuid4())
        await self.db.store_memory(StoreMemoryInput(
            id=memory_id,
            text=text,
            embedding=vector,
            importance=1.0 if category == "core" else min(1.0, max(0.0, importance)),
            category=category,
            source="user",
            extraction_status="pending" if self.extraction_config.enabled else "skipped",
            agent_id=self.agent_id,
            session_key=self.session_key,
        ))
        suffix = "..." if len(text) > 100 else ""
        return ToolResult(
            text=f'Stored: "{text[:100]}{suffix}"',
            details={"action": "created", "id": memory_id},
        )

    @tool_error_result
    async def memory_forget(self, query: Optional[str] = None,
                            memory_id: Optional[str] = None) -> ToolResult:
        """
        Delete a memory by id, or search for it first.

        Search-based deletion only removes a single match scoring 0.95 or more;
        otherwise the candidates are returned so the caller can pick an id.
        """
        if memory_id:
            try:
                deleted = await self.db.delete_memory(memory_id, self.agent_id)
            except InvalidMemoryIdError:
                return ToolResult(
                    text=f"Invalid memory id: {memory_id}",
                    details={"action": "error", "error": "invalid_id", "id": memory_id},
                )
            if not deleted:
                return ToolResult(
                    text=f"Memory {memory_id} not found.",
                    details={"action": "not_found", "id": memory_id},
                )
            return ToolResult(
                text=f"Memory {memory_id} forgotten.",
                details={"action": "deleted", "id": memory_id},
            )

        if query:
            vector = await self.embeddings.embed(query)
            results = await self.db.vector_search(
                vector, FORGET_CANDIDATE_LIMIT, FORGET_MIN_SCORE, self.agent_id
            )
            if not results:
                return ToolResult(text="No matching memories found.", details={"found": 0})

            if len(results) == 1 and results[0].score >= FORGET_AUTO_DELETE_SCORE:
                await self.db.delete_memory(results[0].id, self.agent_id)
                return ToolResult(
                    text=f'Forgotten: "{results[0].text}"',
                    details={"action": "deleted", "id": results[0].id},
                )

            listing = "\n".join(f"- [{r.id}] {r.text[:60]}..." for r in results)
            return ToolResult(
                text=f"Found {len(results)} candidates. Specify memoryId:\n{listing}",
                details={
                    "action": "candidates",
                    "candidates": [
                        {"id": r.id, "text": r.text, "category": r.category, "score": r.score}
                        for r in results
                    ],
                },
            )

        return ToolResult(text="Provide query or memoryId.", details={"error": "missing_param"})
