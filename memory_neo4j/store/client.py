"""
Neo4j memory client.

Owns all persisted state: connection and index provisioning, Memory CRUD,
the three raw search signals (vector, BM25, graph), retrieval tracking and
the write path used by entity extraction. Sleep-cycle queries live in
``MaintenanceMixin``.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..connections import Neo4jConnection
from ..exceptions import InvalidMemoryIdError, InvalidRelationshipTypeError
from ..models import (
    EntityMergeInput,
    ExtractedRelationship,
    ExtractedTag,
    MemoryStat,
    PendingExtraction,
    SearchResult,
    SimilarMemory,
    StoreMemoryInput,
)
from ..schema import (
    EXTRACTION_STATUSES,
    RELATIONSHIP_TYPE_PATTERN,
    canonical_name,
    escape_lucene,
    is_valid_memory_id,
    validate_relationship_type,
    vector_index_statement,
)
from .maintenance import MaintenanceMixin
from .retry import retry_on_transient

logger = logging.getLogger(__name__)

# Direct MENTIONS hits and each hop are scored by confidence; edges without
# one count as this.
DEFAULT_EDGE_CONFIDENCE = 0.7
BM25_SCORE_FLOOR = 0.3
BM25_SINGLE_RESULT_SCORE = 0.5
GRAPH_ENTITY_MIN_SCORE = 0.5
GRAPH_ENTITY_LIMIT = 5
MAX_GRAPH_DEPTH = 3


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


SCHEMA_STATEMENTS = (
    "CREATE CONSTRAINT memory_id_unique IF NOT EXISTS FOR (m:Memory) REQUIRE m.id IS UNIQUE",
    "CREATE CONSTRAINT entity_id_unique IF NOT EXISTS FOR (e:Entity) REQUIRE e.id IS UNIQUE",
    "CREATE CONSTRAINT tag_name_unique IF NOT EXISTS FOR (t:Tag) REQUIRE t.name IS UNIQUE",
    "CREATE FULLTEXT INDEX memory_fulltext_index IF NOT EXISTS FOR (m:Memory) ON EACH [m.text]",
    "CREATE FULLTEXT INDEX entity_fulltext_index IF NOT EXISTS FOR (e:Entity) ON EACH [e.name]",
    "CREATE INDEX memory_agent_index IF NOT EXISTS FOR (m:Memory) ON (m.agentId)",
    "CREATE INDEX memory_category_index IF NOT EXISTS FOR (m:Memory) ON (m.category)",
    "CREATE INDEX memory_created_index IF NOT EXISTS FOR (m:Memory) ON (m.createdAt)",
    "CREATE INDEX memory_retrieved_index IF NOT EXISTS FOR (m:Memory) ON (m.lastRetrievedAt)",
    "CREATE INDEX entity_type_index IF NOT EXISTS FOR (e:Entity) ON (e.type)",
    "CREATE INDEX entity_name_index IF NOT EXISTS FOR (e:Entity) ON (e.name)",
    "CREATE INDEX memory_agent_category_index IF NOT EXISTS FOR (m:Memory) ON (m.agentId, m.category)",
    "CREATE INDEX memory_extraction_status_index IF NOT EXISTS FOR (m:Memory) ON (m.extractionStatus)",
)


def _signal_result(row: Dict[str, Any], score_key: str) -> SearchResult:
    return SearchResult(
        id=row["id"],
        text=row.get("text") or "",
        category=row.get("category") or "other",
        importance=row.get("importance") or 0.0,
        created_at=str(row.get("createdAt") or ""),
        score=row[score_key],
    )


def normalize_bm25_scores(rows: List[Dict[str, Any]]) -> List[SearchResult]:
    """
    Min-max normalise raw BM25 scores (rows sorted descending) with a floor.

    The weakest of several matches maps to ``BM25_SCORE_FLOOR``, the best to
    1.0. A single result, or a set of identical scores, proves nothing about
    separation from non-matches and gets a moderate fixed score instead.
    """
    if not rows:
        return []
    max_score = rows[0]["bm25Score"]
    min_score = rows[-1]["bm25Score"]
    spread = max_score - min_score
    results = []
    for row in rows:
        if spread > 0:
            score = BM25_SCORE_FLOOR + (1 - BM25_SCORE_FLOOR) * (row["bm25Score"] - min_score) / spread
        else:
            score = BM25_SINGLE_RESULT_SCORE
        results.append(_signal_result({**row, "normalized": score}, "normalized"))
    return results


class Neo4jMemoryClient(MaintenanceMixin):
    """
    Async client for the memory graph.

    Every operation acquires a short-lived session and releases it on all
    exit paths. Writes go through ``retry_on_transient``; the read-path
    search signals degrade to an empty list on failure.
    """

    def __init__(self, uri: str, username: str, password: str, dimensions: int,
                 connection: Optional[Neo4jConnection] = None):
        self.uri = uri
        self.dimensions = dimensions
        self._connection = connection or Neo4jConnection(uri, username, password)
        self._indexes_ready = False
        self._init_lock = asyncio.Lock()
        self.last_cluster_scan_truncated = False

    # ------------------------------------------------------------------
    # Connection & initialization
    # ------------------------------------------------------------------

    async def ensure_initialized(self) -> None:
        """Connect and provision indexes once; later calls are no-ops."""
        if self._indexes_ready:
            return
        async with self._init_lock:
            if self._indexes_ready:
                return
            async with self._connection.session() as session:
                await session.run("RETURN 1")
            logger.info(f"Connected to Neo4j at {self.uri}")
            await self._ensure_indexes()
            self._indexes_ready = True

    async def _ensure_indexes(self) -> None:
        async with self._connection.session() as session:
            for statement in SCHEMA_STATEMENTS[:3]:
                await self._run_safe(session, statement)
            await self._run_safe(session, vector_index_statement(self.dimensions))
            for statement in SCHEMA_STATEMENTS[3:]:
                await self._run_safe(session, statement)
        logger.info("Memory indexes ensured")

    async def _run_safe(self, session, query: str) -> None:
        """Run a schema statement; existing indexes with other settings are not an error."""
        try:
            await session.run(query)
        except Exception as e:
            logger.debug(f"Index/constraint statement skipped: {e}")

    async def close(self) -> None:
        await self._connection.close()
        self._indexes_ready = False

    async def _fetch(self, query: str, /, **params) -> List[Dict[str, Any]]:
        async with self._connection.session() as session:
            result = await session.run(query, params)
            return await result.data()

    async def run_query(self, cypher: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run raw Cypher and return records as dicts keyed by the RETURN aliases."""
        await self.ensure_initialized()
        return await self._fetch(cypher, **(params or {}))

    async def verify_connection(self) -> bool:
        if not self._connection.is_open:
            return False
        try:
            await self._fetch("RETURN 1 AS ok")
            return True
        except Exception as e:
            logger.error(f"Neo4j connection verification failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Memory CRUD
    # ------------------------------------------------------------------

    async def store_memory(self, memory: StoreMemoryInput) -> str:
        await self.ensure_initialized()
        now = utc_now_iso()

        async def _store():
            rows = await self._fetch(
                """
                CREATE (m:Memory {
                  id: $id, text: $text, embedding: $embedding,
                  importance: $importance, category: $category,
                  source: $source, extractionStatus: $extractionStatus,
                  agentId: $agentId, sessionKey: $sessionKey,
                  createdAt: $now, updatedAt: $now,
                  retrievalCount: 0, lastRetrievedAt: null,
                  extractionRetries: 0
                })
                RETURN m.id AS id
                """,
                id=memory.id,
                text=memory.text,
                embedding=memory.embedding,
                importance=memory.importance,
                category=memory.category,
                source=memory.source,
                extractionStatus=memory.extraction_status,
                agentId=memory.agent_id,
                sessionKey=memory.session_key,
                now=now,
            )
            return rows[0]["id"]

        return await retry_on_transient(_store)

    async def delete_memory(self, memory_id: str, agent_id: Optional[str] = None) -> bool:
        """
        Delete one memory, decrementing mention counts of the entities it mentions.

        The decrement and the delete run as one statement so a crash cannot
        leave counts and edges disagreeing.

        Args:
            memory_id: UUID of the memory
            agent_id: When given, only delete if the memory belongs to this agent

        Returns:
            True if a memory was deleted

        Raises:
            InvalidMemoryIdError: If memory_id is not a UUID
        """
        if not is_valid_memory_id(memory_id):
            raise InvalidMemoryIdError(memory_id)
        await self.ensure_initialized()

        match = (
            "MATCH (m:Memory {id: $id, agentId: $agentId})"
            if agent_id else "MATCH (m:Memory {id: $id})"
        )
        params = {"id": memory_id}
        if agent_id:
            params["agentId"] = agent_id

        async def _delete():
            rows = await self._fetch(
                f"""
                {match}
                OPTIONAL MATCH (m)-[:MENTIONS]->(e:Entity)
                SET e.mentionCount = CASE WHEN e.mentionCount > 0 THEN e.mentionCount - 1 ELSE 0 END
                WITH m, count(e) AS _
                DETACH DELETE m
                RETURN count(*) AS deleted
                """,
                **params,
            )
            return bool(rows) and rows[0]["deleted"] > 0

        return await retry_on_transient(_delete)

    async def count_memories(self, agent_id: Optional[str] = None) -> int:
        await self.ensure_initialized()
        if agent_id:
            rows = await self._fetch(
                "MATCH (m:Memory {agentId: $agentId}) RETURN count(m) AS count", agentId=agent_id
            )
        else:
            rows = await self._fetch("MATCH (m:Memory) RETURN count(m) AS count")
        return rows[0]["count"] if rows else 0

    async def get_memory_stats(self) -> List[MemoryStat]:
        """Memory counts and average importance grouped by agent and category."""
        await self.ensure_initialized()
        rows = await self._fetch(
            """
            MATCH (m:Memory)
            RETURN m.agentId AS agentId, m.category AS category,
                   count(m) AS count, avg(m.importance) AS avgImportance
            ORDER BY agentId, category
            """
        )
        return [
            MemoryStat(
                agent_id=row["agentId"] or "default",
                category=row["category"] or "other",
                count=int(row["count"]),
                avg_importance=float(row["avgImportance"] or 0.0),
            )
            for row in rows
        ]

    async def list_by_category(self, category: str, limit: int, min_importance: float = 0.0,
                               agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        await self.ensure_initialized()
        agent_filter = "AND m.agentId = $agentId" if agent_id else ""
        return await self._fetch(
            f"""
            MATCH (m:Memory)
            WHERE m.category = $category AND m.importance >= $minImportance {agent_filter}
            RETURN m.id AS id, m.text AS text, m.category AS category, m.importance AS importance
            ORDER BY m.importance DESC
            LIMIT $limit
            """,
            category=category,
            minImportance=min_importance,
            limit=int(limit),
            agentId=agent_id,
        )

    async def list_core_for_injection(self, agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """All core memories; importance is locked at 1.0 so there is no ordering."""
        await self.ensure_initialized()
        agent_filter = "AND m.agentId = $agentId" if agent_id else ""
        return await self._fetch(
            f"""
            MATCH (m:Memory)
            WHERE m.category = 'core' {agent_filter}
            RETURN m.id AS id, m.text AS text, m.category AS category, m.importance AS importance
            """,
            agentId=agent_id,
        )

    async def list_memories(self, agent_id: Optional[str] = None, category: Optional[str] = None,
                            per_category_limit: int = 20) -> List[Dict[str, Any]]:
        """Top memories by importance for each (agent, category) group."""
        await self.ensure_initialized()
        conditions = []
        if agent_id:
            conditions.append("m.agentId = $agentId")
        if category:
            conditions.append("m.category = $category")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return await self._fetch(
            f"""
            MATCH (m:Memory) {where}
            WITH m.agentId AS agentId, m.category AS category, m
            ORDER BY m.importance DESC
            WITH agentId, category, collect({{
              id: m.id, text: m.text, importance: m.importance,
              createdAt: m.createdAt, source: coalesce(m.source, 'unknown')
            }}) AS memories
            UNWIND memories[0..$limit] AS mem
            RETURN agentId, category, mem.id AS id, mem.text AS text,
                   mem.importance AS importance, mem.createdAt AS createdAt,
                   mem.source AS source
            ORDER BY agentId, category, importance DESC
            """,
            agentId=agent_id,
            category=category,
            limit=int(per_category_limit),
        )

    # ------------------------------------------------------------------
    # Search signals
    # ------------------------------------------------------------------

    async def vector_search(self, embedding: List[float], limit: int, min_score: float = 0.1,
                            agent_id: Optional[str] = None) -> List[SearchResult]:
        """Signal 1: cosine similarity via the vector index."""
        await self.ensure_initialized()
        agent_filter = "AND node.agentId = $agentId" if agent_id else ""

        async def _search():
            return await self._fetch(
                f"""
                CALL db.index.vector.queryNodes('memory_embedding_index', $limit, $embedding)
                YIELD node, score
                WHERE score >= $minScore {agent_filter}
                RETURN node.id AS id, node.text AS text, node.category AS category,
                       node.importance AS importance, node.createdAt AS createdAt,
                       score AS similarity
                ORDER BY score DESC
                """,
                embedding=embedding,
                limit=int(limit),
                minScore=min_score,
                agentId=agent_id,
            )

        try:
            rows = await retry_on_transient(_search)
        except Exception as e:
            logger.warning(f"Vector search failed: {e}")
            return []
        return [_signal_result(row, "similarity") for row in rows]

    async def bm25_search(self, query: str, limit: int,
                          agent_id: Optional[str] = None) -> List[SearchResult]:
        """Signal 2: BM25 keyword search over the Memory fulltext index."""
        await self.ensure_initialized()
        escaped = escape_lucene(query)
        if not escaped.strip():
            return []
        agent_filter = "AND node.agentId = $agentId" if agent_id else ""

        async def _search():
            return await self._fetch(
                f"""
                CALL db.index.fulltext.queryNodes('memory_fulltext_index', $query)
                YIELD node, score
                WHERE true {agent_filter}
                RETURN node.id AS id, node.text AS text, node.category AS category,
                       node.importance AS importance, node.createdAt AS createdAt,
                       score AS bm25Score
                ORDER BY score DESC
                LIMIT $limit
                """,
                query=escaped,
                limit=int(limit),
                agentId=agent_id,
            )

        try:
            rows = await retry_on_transient(_search)
        except Exception as e:
            logger.warning(f"BM25 search failed: {e}")
            return []
        return normalize_bm25_scores(rows)

    async def graph_search(self, query: str, limit: int, firing_threshold: float = 0.3,
                           agent_id: Optional[str] = None, max_hops: int = 1) -> List[SearchResult]:
        """
        Signal 3: entity lookup plus spreading activation.

        Matching entities come from the entity fulltext index. Memories that
        mention them directly score the MENTIONS confidence; memories reached
        through 1..max_hops allowlisted relationships score the product of the
        edge confidences along the path. Every edge on a path must clear
        ``firing_threshold``. Duplicates keep their best path.
        """
        await self.ensure_initialized()
        escaped = escape_lucene(query)
        if not escaped.strip():
            return []

        hops = max(1, min(MAX_GRAPH_DEPTH, int(max_hops)))
        agent_filter_m = "AND m.agentId = $agentId" if agent_id else ""
        agent_filter_m2 = "AND m2.agentId = $agentId" if agent_id else ""
        cypher = f"""
            CALL db.index.fulltext.queryNodes('entity_fulltext_index', $query)
            YIELD node AS entity, score
            WHERE score >= {GRAPH_ENTITY_MIN_SCORE}
            WITH entity
            ORDER BY score DESC
            LIMIT {GRAPH_ENTITY_LIMIT}

            OPTIONAL MATCH (entity)<-[rm:MENTIONS]-(m:Memory)
            WHERE m IS NOT NULL {agent_filter_m}
            WITH entity, collect({{
              id: m.id, text: m.text, category: m.category,
              importance: m.importance, createdAt: m.createdAt,
              score: coalesce(rm.confidence, 1.0)
            }}) AS directResults

            OPTIONAL MATCH (entity)-[rels:{RELATIONSHIP_TYPE_PATTERN}*1..{hops}]-(e2:Entity)
            WHERE ALL(r IN rels WHERE coalesce(r.confidence, {DEFAULT_EDGE_CONFIDENCE}) >= $firingThreshold)
            OPTIONAL MATCH (e2)<-[rm2:MENTIONS]-(m2:Memory)
            WHERE m2 IS NOT NULL {agent_filter_m2}
            WITH directResults, collect({{
              id: m2.id, text: m2.text, category: m2.category,
              importance: m2.importance, createdAt: m2.createdAt,
              score: reduce(s = 1.0, r IN rels | s * coalesce(r.confidence, {DEFAULT_EDGE_CONFIDENCE}))
                     * coalesce(rm2.confidence, 1.0)
            }}) AS hopResults

            UNWIND (directResults + hopResults) AS row
            WITH row WHERE row.id IS NOT NULL
            RETURN row.id AS id, row.text AS text, row.category AS category,
                   row.importance AS importance, row.createdAt AS createdAt,
                   max(row.score) AS graphScore
        """

        async def _search():
            return await self._fetch(
                cypher, query=escaped, firingThreshold=firing_threshold, agentId=agent_id
            )

        try:
            rows = await retry_on_transient(_search)
        except Exception as e:
            logger.warning(f"Graph search failed: {e}")
            return []

        best: Dict[str, SearchResult] = {}
        for row in rows:
            if not row.get("id"):
                continue
            current = best.get(row["id"])
            if current is None or row["graphScore"] > current.score:
                best[row["id"]] = _signal_result(row, "graphScore")
        ranked = sorted(best.values(), key=lambda r: r.score, reverse=True)
        return ranked[:limit]

    async def find_similar(self, embedding: List[float], threshold: float = 0.95, limit: int = 1,
                           agent_id: Optional[str] = None) -> List[SimilarMemory]:
        """
        Nearest neighbours above ``threshold``, used for duplicate checks.

        The vector index cannot pre-filter, so an agent-scoped lookup fetches
        three times the limit and trims after filtering. Any failure means
        "no duplicate found".
        """
        await self.ensure_initialized()
        fetch_limit = limit * 3 if agent_id else limit
        agent_filter = "AND node.agentId = $agentId" if agent_id else ""

        async def _search():
            return await self._fetch(
                f"""
                CALL db.index.vector.queryNodes('memory_embedding_index', $limit, $embedding)
                YIELD node, score
                WHERE score >= $threshold {agent_filter}
                RETURN node.id AS id, node.text AS text, score AS similarity
                ORDER BY score DESC
                """,
                embedding=embedding,
                limit=int(fetch_limit),
                threshold=threshold,
                agentId=agent_id,
            )

        try:
            rows = await retry_on_transient(_search)
        except Exception as e:
            logger.debug(f"Similarity check failed: {e}")
            return []
        results = [SimilarMemory(id=r["id"], text=r["text"] or "", score=r["similarity"]) for r in rows]
        return results[:limit]

    # ------------------------------------------------------------------
    # Retrieval tracking
    # ------------------------------------------------------------------

    async def record_retrievals(self, memory_ids: List[str]) -> None:
        """Bump retrievalCount and lastRetrievedAt; recall resets the decay clock."""
        if not memory_ids:
            return
        await self.ensure_initialized()

        async def _record():
            await self._fetch(
                """
                UNWIND $ids AS memId
                MATCH (m:Memory {id: memId})
                SET m.retrievalCount = coalesce(m.retrievalCount, 0) + 1,
                    m.lastRetrievedAt = $now
                """,
                ids=list(memory_ids),
                now=utc_now_iso(),
            )

        await retry_on_transient(_record)

    # ------------------------------------------------------------------
    # Extraction write path
    # ------------------------------------------------------------------

    async def update_extraction_status(self, memory_id: str, status: str,
                                       increment_retries: bool = False) -> None:
        if status not in EXTRACTION_STATUSES:
            raise ValueError(f"Unknown extraction status: {status}")
        await self.ensure_initialized()
        retry_clause = (
            ", m.extractionRetries = coalesce(m.extractionRetries, 0) + 1"
            if increment_retries else ""
        )
        await self._fetch(
            f"""
            MATCH (m:Memory {{id: $id}})
            SET m.extractionStatus = $status, m.updatedAt = $now{retry_clause}
            """,
            id=memory_id,
            status=status,
            now=utc_now_iso(),
        )

    async def batch_entity_operations(
        self,
        memory_id: str,
        entities: List[EntityMergeInput],
        relationships: List[ExtractedRelationship],
        tags: List[ExtractedTag],
        category: Optional[str] = None,
    ) -> None:
        """
        Write one extraction result in a single transaction.

        1. MERGE entities by canonical name (create sets mentionCount=1,
           match increments it)
        2. MENTIONS edges from the memory
        3. Inter-entity relationships, allowlisted types only, one statement
           per type; a repeated assertion keeps the higher confidence
        4. MERGE tags and TAGGED edges
        5. Backfill category when the current one is 'other', mark complete
        """
        await self.ensure_initialized()

        # One row per canonical name: every row increments mentionCount, but
        # MERGE creates a single MENTIONS edge per entity.
        by_name: Dict[str, Dict[str, Any]] = {}
        for e in entities:
            name = canonical_name(e.name)
            if not name:
                continue
            row = by_name.get(name)
            if row is None:
                by_name[name] = {
                    "id": e.id,
                    "name": name,
                    "type": e.type,
                    "aliases": list(e.aliases),
                    "description": e.description,
                }
                continue
            row["aliases"].extend(a for a in e.aliases if a not in row["aliases"])
            if not row["description"]:
                row["description"] = e.description
        entity_rows = list(by_name.values())
        rels_by_type: Dict[str, List[Dict[str, Any]]] = {}
        for rel in relationships:
            if not validate_relationship_type(rel.type):
                logger.debug(f"Dropping relationship with disallowed type {rel.type!r}")
                continue
            rels_by_type.setdefault(rel.type, []).append({
                "source": canonical_name(rel.source),
                "target": canonical_name(rel.target),
                "confidence": rel.confidence,
            })
        tags_by_name: Dict[str, Dict[str, Any]] = {}
        for t in tags:
            name = canonical_name(t.name)
            if name:
                tags_by_name.setdefault(name, {"id": str(uuid4()), "name": name, "category": t.category})
        tag_rows = list(tags_by_name.values())

        async def _write(tx):
            now = utc_now_iso()
            if entity_rows:
                await tx.run(
                    """
                    UNWIND $entities AS e
                    MERGE (n:Entity {name: e.name})
                    ON CREATE SET
                      n.id = e.id, n.type = e.type, n.aliases = e.aliases,
                      n.description = e.description,
                      n.firstSeen = $now, n.lastSeen = $now, n.mentionCount = 1
                    ON MATCH SET
                      n.type = coalesce(e.type, n.type),
                      n.description = coalesce(e.description, n.description),
                      n.lastSeen = $now,
                      n.mentionCount = coalesce(n.mentionCount, 0) + 1
                    """,
                    entities=entity_rows,
                    now=now,
                )
                await tx.run(
                    """
                    UNWIND $entityNames AS eName
                    MATCH (m:Memory {id: $memoryId})
                    MATCH (e:Entity {name: eName})
                    MERGE (m)-[r:MENTIONS]->(e)
                    ON CREATE SET r.role = 'context', r.confidence = 1.0
                    """,
                    memoryId=memory_id,
                    entityNames=[row["name"] for row in entity_rows],
                )

            for rel_type, rels in rels_by_type.items():
                # rel_type passed validate_relationship_type above
                await tx.run(
                    f"""
                    UNWIND $rels AS r
                    MATCH (e1:Entity {{name: r.source}})
                    MATCH (e2:Entity {{name: r.target}})
                    MERGE (e1)-[rel:{rel_type}]->(e2)
                    ON CREATE SET rel.confidence = r.confidence, rel.createdAt = $now
                    ON MATCH SET rel.confidence = CASE WHEN r.confidence > rel.confidence
                                                       THEN r.confidence ELSE rel.confidence END
                    """,
                    rels=rels,
                    now=now,
                )

            if tag_rows:
                await tx.run(
                    """
                    UNWIND $tags AS t
                    MERGE (tag:Tag {name: t.name})
                    ON CREATE SET tag.id = t.id, tag.category = t.category, tag.createdAt = $now
                    WITH tag, t
                    MATCH (m:Memory {id: $memoryId})
                    MERGE (m)-[r:TAGGED]->(tag)
                    ON CREATE SET r.confidence = 1.0
                    """,
                    memoryId=memory_id,
                    tags=tag_rows,
                    now=now,
                )

            category_clause = (
                ", m.category = CASE WHEN m.category = 'other' THEN $category ELSE m.category END"
                if category else ""
            )
            await tx.run(
                f"""
                MATCH (m:Memory {{id: $memoryId}})
                SET m.extractionStatus = 'complete', m.updatedAt = $now{category_clause}
                """,
                memoryId=memory_id,
                now=now,
                category=category,
            )

        async def _batch():
            async with self._connection.session() as session:
                await session.execute_write(_write)

        await retry_on_transient(_batch)

    async def create_entity_relationship(self, source: str, target: str, rel_type: str,
                                         confidence: float = DEFAULT_EDGE_CONFIDENCE) -> bool:
        """
        Link two existing entities outside an extraction batch.

        Returns:
            True if both entities exist and the edge was written

        Raises:
            InvalidRelationshipTypeError: If rel_type is not in the allowlist
        """
        if not validate_relationship_type(rel_type):
            raise InvalidRelationshipTypeError(rel_type)
        await self.ensure_initialized()

        async def _create():
            # rel_type passed validate_relationship_type above
            rows = await self._fetch(
                f"""
                MATCH (e1:Entity {{name: $source}})
                MATCH (e2:Entity {{name: $target}})
                MERGE (e1)-[rel:{rel_type}]->(e2)
                ON CREATE SET rel.confidence = $confidence, rel.createdAt = $now
                ON MATCH SET rel.confidence = CASE WHEN $confidence > rel.confidence
                                                  THEN $confidence ELSE rel.confidence END
                RETURN count(rel) AS created
                """,
                source=canonical_name(source),
                target=canonical_name(target),
                confidence=float(confidence),
                now=utc_now_iso(),
            )
            return bool(rows) and rows[0]["created"] > 0

        return await retry_on_transient(_create)

    async def list_pending_extractions(self, limit: int = 100,
                                       agent_id: Optional[str] = None) -> List[PendingExtraction]:
        """Oldest-first memories still waiting for extraction."""
        await self.ensure_initialized()
        agent_filter = "AND m.agentId = $agentId" if agent_id else ""
        rows = await self._fetch(
            f"""
            MATCH (m:Memory)
            WHERE m.extractionStatus = 'pending' {agent_filter}
            RETURN m.id AS id, m.text AS text, m.agentId AS agentId,
                   coalesce(m.extractionRetries, 0) AS extractionRetries
            ORDER BY m.createdAt ASC
            LIMIT $limit
            """,
            limit=int(limit),
            agentId=agent_id,
        )
        return [
            PendingExtraction(
                id=row["id"],
                text=row["text"] or "",
                agent_id=row.get("agentId"),
                extraction_retries=int(row.get("extractionRetries") or 0),
            )
            for row in rows
        ]

    async def count_by_extraction_status(self, agent_id: Optional[str] = None) -> Dict[str, int]:
        await self.ensure_initialized()
        agent_filter = "WHERE m.agentId = $agentId" if agent_id else ""
        rows = await self._fetch(
            f"""
            MATCH (m:Memory)
            {agent_filter}
            RETURN m.extractionStatus AS status, count(m) AS count
            """,
            agentId=agent_id,
        )
        counts = {status: 0 for status in EXTRACTION_STATUSES}
        for row in rows:
            if row["status"] in counts:
                counts[row["status"]] = int(row["count"] or 0)
        return counts
