"""Plugin service: wires config, store, embeddings, hooks and tools together."""

import logging
from typing import Any, Dict, Optional

from .config import MemoryConfig, parse_config, resolve_extraction_config, vector_dims_for_model
from .embeddings import EmbeddingProvider
from .hooks import MemoryHooks
from .store import Neo4jMemoryClient
from .tools import MemoryTools

logger = logging.getLogger(__name__)


class MemoryPlugin:
    """
    Long-term memory service for one host process.

    Usage:
        plugin = MemoryPlugin.from_dict(raw_config)
        await plugin.start()
        tools = plugin.tools(agent_id="main", session_key="abc")
        ...
        await plugin.stop()
    """

    def __init__(self, cfg: MemoryConfig, db: Optional[Neo4jMemoryClient] = None,
                 embeddings: Optional[EmbeddingProvider] = None):
        self.cfg = cfg
        self.extraction_config = resolve_extraction_config(cfg.extraction)
        self.vector_dim = vector_dims_for_model(cfg.embedding.model)
        self.db = db or Neo4jMemoryClient(
            cfg.neo4j.uri, cfg.neo4j.username, cfg.neo4j.password, self.vector_dim
        )
        self.embeddings = embeddings or EmbeddingProvider(cfg.embedding)
        self.hooks = MemoryHooks(self.db, self.embeddings, cfg, self.extraction_config)

        logger.debug(
            f"Registered (uri: {cfg.neo4j.uri}, provider: {cfg.embedding.provider}, "
            f"model: {cfg.embedding.model}, extraction: "
            f"{self.extraction_config.model if self.extraction_config.enabled else 'disabled'})"
        )

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MemoryPlugin":
        return cls(parse_config(raw))

    def tools(self, agent_id: Optional[str] = None, session_key: Optional[str] = None) -> MemoryTools:
        """Tool set bound to one agent (and optionally one session)."""
        return MemoryTools(self.db, self.embeddings, self.cfg, self.extraction_config, agent_id, session_key)

    async def start(self) -> None:
        """Initialise the schema; failures are logged and retried lazily on first use."""
        try:
            await self.db.ensure_initialized()
            logger.info(f"Service started (uri: {self.cfg.neo4j.uri}, model: {self.cfg.embedding.model})")
        except Exception as e:
            logger.error(f"Failed to start: {e}. Memory tools will attempt lazy initialization.")

    async def stop(self) -> None:
        """Abort any running sleep cycle and release connections."""
        self.hooks.sleep_abort.set()
        await self.db.close()
        await self.embeddings.close()
        logger.info("Service stopped")
