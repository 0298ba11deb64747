"""
Extraction Service - LLM judgements for the memory system.

- Entity / relationship / tag extraction with strict validation
- Importance rating for auto-captured text
- Semantic duplicate verdicts
- Conflict resolution between memories that share entities
- Background extraction for a stored memory

Every call fails soft: a disabled config, a transport failure or a
malformed response yields a neutral answer instead of an exception.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel

from ..config import ExtractionConfig
from ..models import (
    EntityMergeInput,
    ExtractedEntity,
    ExtractedRelationship,
    ExtractedTag,
    ExtractionResult,
)
from ..schema import ALLOWED_RELATIONSHIP_TYPES, ENTITY_TYPES, canonical_name
from .llm_client import call_llm, is_transient_error
from .prompts import get_prompt_loader

logger = logging.getLogger(__name__)

# Below this cosine similarity two memories are never sent for an LLM verdict.
SEMANTIC_DEDUP_VECTOR_THRESHOLD = 0.8
MAX_EXTRACTION_RETRIES = 3
DEFAULT_IMPORTANCE = 0.5
DEFAULT_RELATIONSHIP_CONFIDENCE = 0.7

# "core" is only ever assigned explicitly, never by extraction.
EXTRACTABLE_CATEGORIES = ("preference", "fact", "decision", "entity", "other")
CONFLICT_DECISIONS = ("a", "b", "both")


class ExtractionOutcome(BaseModel):
    """Result of an extraction call; ``result`` is None on any failure."""

    result: Optional[ExtractionResult] = None
    transient_failure: bool = False


def _parse_json_object(content: Optional[str]) -> Optional[Dict[str, Any]]:
    if not content:
        return None
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        logger.debug(f"LLM returned non-JSON content: {content[:200]}")
        return None
    return data if isinstance(data, dict) else None


def _messages(prompt_key: str, **variables) -> List[Dict[str, str]]:
    loader = get_prompt_loader()
    return [
        {"role": "system", "content": loader.get(f"{prompt_key}.system", **variables)},
        {"role": "user", "content": loader.get(f"{prompt_key}.user", **variables)},
    ]


# =============================================================================
# Validation
# =============================================================================

def _validate_entity(raw: Any) -> Optional[ExtractedEntity]:
    if not isinstance(raw, dict):
        return None
    name, entity_type = raw.get("name"), raw.get("type")
    if not isinstance(name, str) or not isinstance(entity_type, str):
        return None
    name = canonical_name(name)
    if not name:
        return None
    if entity_type not in ENTITY_TYPES:
        entity_type = "concept"
    aliases = raw.get("aliases")
    aliases = [canonical_name(a) for a in aliases if isinstance(a, str)] if isinstance(aliases, list) else []
    description = raw.get("description")
    return ExtractedEntity(
        name=name,
        type=entity_type,
        aliases=aliases,
        description=description if isinstance(description, str) else None,
    )


def _validate_relationship(raw: Any) -> Optional[ExtractedRelationship]:
    if not isinstance(raw, dict):
        return None
    source, target, rel_type = raw.get("source"), raw.get("target"), raw.get("type")
    if not isinstance(source, str) or not isinstance(target, str):
        return None
    if rel_type not in ALLOWED_RELATIONSHIP_TYPES:
        return None
    confidence = raw.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = DEFAULT_RELATIONSHIP_CONFIDENCE
    return ExtractedRelationship(
        source=canonical_name(source),
        target=canonical_name(target),
        type=rel_type,
        confidence=min(1.0, max(0.0, float(confidence))),
    )


def _validate_tag(raw: Any) -> Optional[ExtractedTag]:
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
        return None
    name = canonical_name(raw["name"])
    if not name:
        return None
    category = raw.get("category")
    return ExtractedTag(name=name, category=category if isinstance(category, str) and category else "topic")


def validate_extraction_result(raw: Dict[str, Any]) -> ExtractionResult:
    """Normalise an LLM extraction payload, dropping anything malformed."""

    def _items(key: str) -> list:
        value = raw.get(key)
        return value if isinstance(value, list) else []

    category = raw.get("category")
    return ExtractionResult(
        category=category if category in EXTRACTABLE_CATEGORIES else None,
        entities=[e for e in map(_validate_entity, _items("entities")) if e],
        relationships=[r for r in map(_validate_relationship, _items("relationships")) if r],
        tags=[t for t in map(_validate_tag, _items("tags")) if t],
    )


# =============================================================================
# LLM operations
# =============================================================================

async def extract_entities(text: str, config: ExtractionConfig,
                           abort: Optional[asyncio.Event] = None) -> ExtractionOutcome:
    """
    Extract entities, relationships, tags and a category from memory text.

    Args:
        text: Memory text
        config: Resolved extraction config
        abort: Cancels the in-flight call when set

    Returns:
        ExtractionOutcome; ``transient_failure`` tells the caller a retry may succeed
    """
    if not config.enabled:
        return ExtractionOutcome()

    messages = _messages(
        "extraction",
        text=text,
        entity_types=" | ".join(ENTITY_TYPES),
        relationship_types=", ".join(sorted(ALLOWED_RELATIONSHIP_TYPES)),
    )
    try:
        content = await call_llm(config, messages, abort)
    except Exception as e:
        transient = is_transient_error(e)
        logger.warning(f"Entity extraction failed ({'transient' if transient else 'permanent'}): {e}")
        return ExtractionOutcome(transient_failure=transient)

    data = _parse_json_object(content)
    if data is None:
        return ExtractionOutcome()
    return ExtractionOutcome(result=validate_extraction_result(data))


async def rate_importance(text: str, config: ExtractionConfig) -> float:
    """
    Rate long-term importance of text on 0.1..1.0 (LLM score 1-10 divided by 10).

    Returns 0.5 when extraction is disabled or the call fails.
    """
    if not config.enabled:
        return DEFAULT_IMPORTANCE
    try:
        content = await call_llm(config, _messages("importance", text=text))
    except Exception as e:
        logger.debug(f"Importance rating failed: {e}")
        return DEFAULT_IMPORTANCE

    data = _parse_json_object(content)
    score = data.get("score") if data else None
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        return DEFAULT_IMPORTANCE
    return min(10.0, max(1.0, float(score))) / 10


async def is_semantic_duplicate(
    new_text: str,
    existing_text: str,
    config: ExtractionConfig,
    vector_similarity: Optional[float] = None,
    abort: Optional[asyncio.Event] = None,
) -> bool:
    """
    Ask the LLM whether two memories state the same information.

    Pairs whose vector similarity is known and below
    SEMANTIC_DEDUP_VECTOR_THRESHOLD are declared unique without a call.
    Fails open: any error means "not a duplicate".
    """
    if not config.enabled:
        return False
    if vector_similarity is not None and vector_similarity < SEMANTIC_DEDUP_VECTOR_THRESHOLD:
        return False
    try:
        content = await call_llm(
            config, _messages("semantic_dedup", text_a=new_text, text_b=existing_text), abort
        )
    except Exception as e:
        logger.debug(f"Semantic dedup check failed: {e}")
        return False
    data = _parse_json_object(content)
    return bool(data) and data.get("verdict") == "duplicate"


async def resolve_conflict(text_a: str, text_b: str, config: ExtractionConfig,
                           abort: Optional[asyncio.Event] = None) -> str:
    """Decide between two possibly conflicting memories: 'a', 'b', 'both' or 'skip'."""
    if not config.enabled:
        return "skip"
    try:
        content = await call_llm(config, _messages("conflict", text_a=text_a, text_b=text_b), abort)
    except Exception as e:
        logger.debug(f"Conflict resolution failed: {e}")
        return "skip"
    data = _parse_json_object(content)
    keep = data.get("keep") if data else None
    return keep if keep in CONFLICT_DECISIONS else "skip"


async def run_background_extraction(
    memory_id: str,
    text: str,
    db,
    config: ExtractionConfig,
    current_retries: int = 0,
    abort: Optional[asyncio.Event] = None,
) -> Dict[str, Any]:
    """
    Extract and persist the graph for one stored memory.

    Status transitions:
    - disabled: skipped
    - transient failure with retries left: stays pending, retry counter bumped
    - any other failure: failed
    - empty result: complete
    - otherwise one batch write, which marks the memory complete

    Returns:
        ``{"success": bool, "memoryId": memory_id}``
    """
    if not config.enabled:
        await db.update_extraction_status(memory_id, "skipped")
        return {"success": True, "memoryId": memory_id}

    outcome = await extract_entities(text, config, abort)
    result = outcome.result

    if result is None:
        if outcome.transient_failure and current_retries + 1 < MAX_EXTRACTION_RETRIES:
            await db.update_extraction_status(memory_id, "pending", increment_retries=True)
            logger.info(
                f"Extraction for {memory_id} hit a transient failure, "
                f"will retry ({current_retries + 1}/{MAX_EXTRACTION_RETRIES})"
            )
        else:
            await db.update_extraction_status(memory_id, "failed")
        return {"success": False, "memoryId": memory_id}

    if result.is_empty:
        await db.update_extraction_status(memory_id, "complete")
        return {"success": True, "memoryId": memory_id}

    entities = [
        EntityMergeInput(
            id=str(uuid4()),
            name=e.name,
            type=e.type,
            aliases=e.aliases,
            description=e.description,
        )
        for e in result.entities
    ]
    try:
        await db.batch_entity_operations(
            memory_id, entities, result.relationships, result.tags, result.category
        )
    except Exception as e:
        logger.warning(f"Failed to store extraction for {memory_id}: {e}")
        await db.update_extraction_status(memory_id, "failed")
        return {"success": False, "memoryId": memory_id}

    logger.info(
        f"extraction complete for {memory_id}: {len(entities)} entities, "
        f"{len(result.relationships)} relationships, {len(result.tags)} tags"
        + (f", category={result.category}" if result.category else "")
    )
    return {"success": True, "memoryId": memory_id}
