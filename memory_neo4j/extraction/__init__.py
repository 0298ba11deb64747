from .llm_client import call_llm, is_transient_error
from .service import (
    MAX_EXTRACTION_RETRIES,
    SEMANTIC_DEDUP_VECTOR_THRESHOLD,
    ExtractionOutcome,
    extract_entities,
    is_semantic_duplicate,
    rate_importance,
    resolve_conflict,
    run_background_extraction,
    validate_extraction_result,
)

__all__ = [
    "MAX_EXTRACTION_RETRIES",
    "SEMANTIC_DEDUP_VECTOR_THRESHOLD",
    "ExtractionOutcome",
    "call_llm",
    "extract_entities",
    "is_semantic_duplicate",
    "is_transient_error",
    "rate_importance",
    "resolve_conflict",
    "run_background_extraction",
    "validate_extraction_result",
]
