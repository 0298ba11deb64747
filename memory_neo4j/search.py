"""
Three-signal hybrid search with query-adaptive fusion.

Signals:
  1. Vector similarity (cosine over the HNSW index)
  2. BM25 keyword matching
  3. Graph traversal (entity -> MENTIONS <- memory, plus spreading activation)

Signals are fused with confidence-weighted Reciprocal Rank Fusion:

    score(d) = sum_i  w_i * score_i(d) / (k + rank_i(d))

so a rank-1 hit with score 0.99 outweighs a rank-1 hit with score 0.55.
A signal that fails contributes nothing; fusion continues with the rest.
"""

import asyncio
import logging
import re
import time
from typing import Dict, List, Sequence, Tuple

from .background import spawn
from .models import SearchResult

logger = logging.getLogger(__name__)

QUERY_TYPES = ("short", "entity", "long", "default")

MAX_CANDIDATES = 200
MIN_RRF_FOR_NORMALIZATION = 0.01

_COMMON_CAPITALIZED = frozenset({
    "I", "A", "An", "The", "Is", "Are", "Was", "Were", "What", "Who", "Where",
    "When", "How", "Why", "Do", "Does", "Did", "Find", "Show", "Get", "Tell",
    "Me", "My", "About", "For",
})
_CAPITALIZED = re.compile(r"^[A-Z]")
_ENTITY_QUESTION = re.compile(r"^(who|where|what)\s+(is|does|did|was|were)\s", re.IGNORECASE)

_WEIGHTS: Dict[str, Tuple[float, float, float]] = {
    "short": (0.8, 1.2, 1.0),
    "entity": (0.8, 1.0, 1.3),
    "long": (1.2, 0.7, 0.8),
    "default": (1.0, 1.0, 1.0),
}


def classify_query(query: str) -> str:
    """
    Classify a query for adaptive signal weights.

    - entity: contains a capitalised word that is not a common sentence
      opener, or is a short who/what/where question
    - short: one or two words (keyword matching wins)
    - long: five or more words (semantic matching wins)
    - default: everything else
    """
    words = query.split()
    if any(_CAPITALIZED.match(w) and w not in _COMMON_CAPITALIZED for w in words):
        return "entity"
    if len(words) <= 2:
        return "short"
    if len(words) <= 4 and _ENTITY_QUESTION.search(query.strip()):
        return "entity"
    if len(words) >= 5:
        return "long"
    return "default"


def get_signal_weights(query_type: str, graph_enabled: bool) -> Tuple[float, float, float]:
    """(vector, bm25, graph) weights; the graph weight is 0 when graph search is off."""
    vector, bm25, graph = _WEIGHTS.get(query_type, _WEIGHTS["default"])
    return vector, bm25, graph if graph_enabled else 0.0


def fuse_results(signals: Sequence[List[SearchResult]], k: float,
                 weights: Sequence[float]) -> List[SearchResult]:
    """
    Confidence-weighted RRF over ranked signal lists.

    Ranks are 1-based. Within one signal only the first occurrence of an id
    counts. Metadata comes from the first signal that returned the memory.
    """
    ranks: List[Dict[str, Tuple[int, float]]] = []
    for signal in signals:
        table: Dict[str, Tuple[int, float]] = {}
        for rank, entry in enumerate(signal, start=1):
            table.setdefault(entry.id, (rank, entry.score))
        ranks.append(table)

    candidates: Dict[str, SearchResult] = {}
    for signal in signals:
        for entry in signal:
            candidates.setdefault(entry.id, entry)

    fused = []
    for memory_id, meta in candidates.items():
        score = 0.0
        for weight, table in zip(weights, ranks):
            hit = table.get(memory_id)
            if hit:
                rank, signal_score = hit
                score += weight * signal_score / (k + rank)
        fused.append(meta.model_copy(update={"score": score}))

    fused.sort(key=lambda r: r.score, reverse=True)
    return fused


async def hybrid_search(
    db,
    embeddings,
    query: str,
    limit: int = 5,
    agent_id: str = "default",
    graph_enabled: bool = False,
    rrf_k: float = 60,
    candidate_multiplier: int = 4,
    graph_firing_threshold: float = 0.3,
    graph_search_depth: int = 1,
) -> List[SearchResult]:
    """
    Run the three signals in parallel and fuse them.

    Args:
        db: Neo4jMemoryClient
        embeddings: EmbeddingProvider for the query vector
        query: Free-text query
        limit: Maximum results returned
        agent_id: Namespace to search
        graph_enabled: Include the graph signal (needs extracted entities)
        rrf_k: RRF smoothing constant
        candidate_multiplier: Candidates fetched per signal, as a multiple of limit
        graph_firing_threshold: Minimum edge confidence for graph hops
        graph_search_depth: Maximum relationship hops (1-3)

    Returns:
        Up to ``limit`` results, scores normalised to 0..1 against the best hit
    """
    if not query.strip():
        return []

    candidate_limit = int(min(MAX_CANDIDATES, max(1, limit * candidate_multiplier)))

    t0 = time.perf_counter()
    query_embedding = await embeddings.embed(query)
    t_embed = time.perf_counter()

    query_type = classify_query(query)
    weights = get_signal_weights(query_type, graph_enabled)

    async def _no_graph() -> List[SearchResult]:
        return []

    vector_results, bm25_results, graph_results = await asyncio.gather(
        db.vector_search(query_embedding, candidate_limit, 0.1, agent_id),
        db.bm25_search(query, candidate_limit, agent_id),
        db.graph_search(query, candidate_limit, graph_firing_threshold, agent_id, graph_search_depth)
        if graph_enabled else _no_graph(),
    )
    t_signals = time.perf_counter()

    fused = fuse_results([vector_results, bm25_results, graph_results], rrf_k, weights)
    t_fuse = time.perf_counter()

    top = fused[0].score if fused else 0.0
    normalizer = 1 / top if top >= MIN_RRF_FOR_NORMALIZATION else 1.0
    results = [
        r.model_copy(update={"score": min(1.0, r.score * normalizer)})
        for r in fused[:limit]
    ]

    if results:
        spawn(db.record_retrievals([r.id for r in results]), "record_retrievals")

    logger.debug(
        f"[bench] hybrid_search {(t_fuse - t0) * 1000:.0f}ms "
        f"(embed={(t_embed - t0) * 1000:.0f}ms, signals={(t_signals - t_embed) * 1000:.0f}ms, "
        f"fuse={(t_fuse - t_signals) * 1000:.0f}ms) type={query_type} "
        f"vec={len(vector_results)} bm25={len(bm25_results)} graph={len(graph_results)} "
        f"-> {len(results)} results"
    )
    return results
