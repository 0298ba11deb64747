"""Graph schema constants and query-safety helpers."""

import re
from typing import Literal

MemoryCategory = Literal["core", "preference", "fact", "decision", "entity", "other"]
EntityType = Literal["person", "organization", "location", "event", "concept"]
ExtractionStatus = Literal["pending", "complete", "failed", "skipped"]
MemorySource = Literal[
    "user", "auto-capture", "auto-capture-assistant", "memory-watcher", "import"
]

MEMORY_CATEGORIES = ("core", "preference", "fact", "decision", "entity", "other")
ENTITY_TYPES = ("person", "organization", "location", "event", "concept")
EXTRACTION_STATUSES = ("pending", "complete", "failed", "skipped")
MEMORY_SOURCES = ("user", "auto-capture", "auto-capture-assistant", "memory-watcher", "import")

# Relationship types are interpolated into Cypher (the query language has no
# parameter slot for them), so only these literals may ever reach a query.
ALLOWED_RELATIONSHIP_TYPES = frozenset({
    "WORKS_AT",
    "LIVES_AT",
    "KNOWS",
    "MARRIED_TO",
    "PREFERS",
    "DECIDED",
    "RELATED_TO",
})

# Built from the constant above, never from input.
RELATIONSHIP_TYPE_PATTERN = "|".join(sorted(ALLOWED_RELATIONSHIP_TYPES))

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

_LUCENE_SPECIAL_CHARS = re.compile(r'[+\-&|!(){}\[\]^"~*?:\\/]')


def escape_lucene(query: str) -> str:
    """Escape Lucene query-syntax characters so user text is matched literally."""
    return _LUCENE_SPECIAL_CHARS.sub(lambda m: "\\" + m.group(0), query)


def validate_relationship_type(rel_type: str) -> bool:
    """Return True if the relationship type is in the allowlist."""
    return rel_type in ALLOWED_RELATIONSHIP_TYPES


def is_valid_memory_id(memory_id: str) -> bool:
    return isinstance(memory_id, str) and bool(UUID_PATTERN.match(memory_id))


def make_pair_key(a: str, b: str) -> str:
    """Order-independent key for a pair of ids."""
    return f"{a}:{b}" if a < b else f"{b}:{a}"


def canonical_name(name: str) -> str:
    return name.strip().lower()


def vector_index_statement(dimensions: int) -> str:
    """Cosine vector index over Memory.embedding; dimensions come from config, never input."""
    return f"""
        CREATE VECTOR INDEX memory_embedding_index IF NOT EXISTS
        FOR (m:Memory) ON m.embedding
        OPTIONS {{indexConfig: {{
          `vector.dimensions`: {int(dimensions)},
          `vector.similarity_function`: 'cosine'
        }}}}
    """
