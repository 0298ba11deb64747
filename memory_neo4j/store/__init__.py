from .client import Neo4jMemoryClient
from .retry import is_transient_neo4j_error, retry_on_transient

__all__ = ["Neo4jMemoryClient", "is_transient_neo4j_error", "retry_on_transient"]
