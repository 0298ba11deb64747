"""
Neo4j-backed long-term memory for conversational agents.

Hybrid search (vector + BM25 + graph), attention-gated auto-capture and a
multi-phase sleep cycle for consolidation.
"""

from .config import MemoryConfig, load_config, parse_config
from .exceptions import ConfigError, InvalidMemoryIdError, LLMError, MemoryStoreError
from .plugin import MemoryPlugin
from .search import hybrid_search
from .store import Neo4jMemoryClient

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "InvalidMemoryIdError",
    "LLMError",
    "MemoryConfig",
    "MemoryPlugin",
    "MemoryStoreError",
    "Neo4jMemoryClient",
    "hybrid_search",
    "load_config",
    "parse_config",
]
