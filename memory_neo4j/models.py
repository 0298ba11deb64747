"""Data models for the memory store."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .schema import EntityType, ExtractionStatus, MemoryCategory, MemorySource


class StoreMemoryInput(BaseModel):
    """Fields required to create a Memory node."""

    id: str
    text: str
    embedding: List[float]
    importance: float
    category: MemoryCategory = "other"
    source: MemorySource = "user"
    extraction_status: ExtractionStatus = "pending"
    agent_id: str = "default"
    session_key: Optional[str] = None


class SearchResult(BaseModel):
    """A memory returned by one search signal or by the fused hybrid search."""

    id: str
    text: str
    category: str = "other"
    importance: float = 0.0
    created_at: str = ""
    score: float = 0.0

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "category": self.category,
            "importance": self.importance,
            "score": self.score,
        }


class SimilarMemory(BaseModel):
    id: str
    text: str
    score: float


class ExtractedEntity(BaseModel):
    name: str
    type: EntityType
    aliases: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class ExtractedRelationship(BaseModel):
    source: str
    target: str
    type: str
    confidence: float = 0.7


class ExtractedTag(BaseModel):
    name: str
    category: str = "topic"


class ExtractionResult(BaseModel):
    """Validated output of an entity-extraction call."""

    category: Optional[MemoryCategory] = None
    entities: List[ExtractedEntity] = Field(default_factory=list)
    relationships: List[ExtractedRelationship] = Field(default_factory=list)
    tags: List[ExtractedTag] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.entities or self.relationships or self.tags)


class EntityMergeInput(BaseModel):
    """Entity as written by batch_entity_operations (id is used only on create)."""

    id: str
    name: str
    type: EntityType
    aliases: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class DuplicateCluster(BaseModel):
    """A group of near-duplicate memories found by vector similarity."""

    memory_ids: List[str]
    texts: List[str]
    importances: List[float]
    # pair key (see make_pair_key) -> cosine similarity
    similarities: Optional[Dict[str, float]] = None


class DecayedMemory(BaseModel):
    id: str
    text: str
    importance: float
    age_days: float
    decay_score: float


class EntityPair(BaseModel):
    """Two entities believed to name the same thing, with the survivor chosen."""

    keep_id: str
    keep_name: str
    remove_id: str
    remove_name: str
    keep_mentions: int = 0
    remove_mentions: int = 0


class ConflictCandidate(BaseModel):
    id: str
    text: str
    importance: float
    created_at: str = ""


class ConflictPair(BaseModel):
    memory_a: ConflictCandidate
    memory_b: ConflictCandidate


class PendingExtraction(BaseModel):
    id: str
    text: str
    agent_id: Optional[str] = None
    extraction_retries: int = 0


class MemoryStat(BaseModel):
    agent_id: str
    category: str
    count: int
    avg_importance: float


class ToolResult(BaseModel):
    """What a tool call hands back to the agent: display text plus structured details."""

    text: str
    details: Dict[str, object] = Field(default_factory=dict)
