"""
Sleep-cycle queries: clustering, merging, decay, orphan cleanup, conflict
detection, entity deduplication and re-embedding.

Mixed into ``Neo4jMemoryClient``; relies on its ``_fetch``,
``_connection`` and ``ensure_initialized``.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..models import (
    ConflictCandidate,
    ConflictPair,
    DecayedMemory,
    DuplicateCluster,
    EntityPair,
)
from ..schema import make_pair_key, vector_index_statement
from .retry import retry_on_transient

logger = logging.getLogger(__name__)

CLUSTER_BATCH_SIZE = 8
CLUSTER_NEIGHBOURS = 10
# Bounds the union-find scan on stores with huge near-duplicate populations.
MAX_CLUSTER_PAIRS = 2000
CONFLICT_PAIR_LIMIT = 50


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _UnionFind:
    def __init__(self, items):
        self.parent = {item: item for item in items}

    def find(self, item: str) -> str:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self.parent[rb] = ra

    def groups(self) -> Dict[str, List[str]]:
        result: Dict[str, List[str]] = {}
        for item in self.parent:
            result.setdefault(self.find(item), []).append(item)
        return result


_DELETE_WITH_MENTION_DECREMENT = """
    UNWIND $ids AS memId
    MATCH (m:Memory {id: memId})
    OPTIONAL MATCH (m)-[:MENTIONS]->(e:Entity)
    SET e.mentionCount = CASE WHEN e.mentionCount > 0 THEN e.mentionCount - 1 ELSE 0 END
    WITH m, count(e) AS _
    DETACH DELETE m
    RETURN count(*) AS deleted
"""


class MaintenanceMixin:

    # ------------------------------------------------------------------
    # Vector deduplication
    # ------------------------------------------------------------------

    async def find_duplicate_clusters(self, threshold: float = 0.95, agent_id: Optional[str] = None,
                                      return_similarities: bool = False) -> List[DuplicateCluster]:
        """
        Group memories whose embeddings are within ``threshold`` of each other.

        Each memory's nearest neighbours are looked up through the vector
        index, in concurrent batches, and matching pairs are unioned. The scan
        stops early once ``MAX_CLUSTER_PAIRS`` pairs have been found; that
        sets ``last_cluster_scan_truncated``.

        Args:
            threshold: Minimum cosine similarity for two memories to be linked
            agent_id: Restrict the scan to one agent's memories
            return_similarities: Attach the pairwise similarities to each cluster

        Returns:
            Clusters of two or more memories
        """
        await self.ensure_initialized()
        self.last_cluster_scan_truncated = False

        agent_filter = "WHERE m.agentId = $agentId" if agent_id else ""
        rows = await self._fetch(
            f"""
            MATCH (m:Memory)
            {agent_filter}
            RETURN m.id AS id, m.importance AS importance
            """,
            agentId=agent_id,
        )
        if len(rows) < 2:
            return []

        importance = {row["id"]: row["importance"] or 0.0 for row in rows}
        ids = list(importance)
        uf = _UnionFind(ids)
        pair_similarities: Dict[str, float] = {}
        pairs_found = 0

        async def _neighbours(memory_id: str):
            return await self._fetch(
                f"""
                MATCH (src:Memory {{id: $id}})
                CALL db.index.vector.queryNodes('memory_embedding_index', {CLUSTER_NEIGHBOURS}, src.embedding)
                YIELD node, score
                WHERE node.id <> $id AND score >= $threshold
                RETURN node.id AS matchId, score AS similarity
                """,
                id=memory_id,
                threshold=threshold,
            )

        for start in range(0, len(ids), CLUSTER_BATCH_SIZE):
            if pairs_found > MAX_CLUSTER_PAIRS:
                logger.warning(
                    f"Duplicate scan stopped after {pairs_found} pairs; "
                    f"{len(ids) - start} memories not scanned this cycle"
                )
                self.last_cluster_scan_truncated = True
                break
            batch = ids[start:start + CLUSTER_BATCH_SIZE]
            results = await asyncio.gather(
                *(retry_on_transient(lambda mid=mid: _neighbours(mid)) for mid in batch)
            )
            for memory_id, matches in zip(batch, results):
                for match in matches:
                    other = match["matchId"]
                    if other not in importance:
                        continue
                    uf.union(memory_id, other)
                    pairs_found += 1
                    if return_similarities:
                        key = make_pair_key(memory_id, other)
                        pair_similarities[key] = max(pair_similarities.get(key, 0.0), match["similarity"])

        groups = [members for members in uf.groups().values() if len(members) > 1]
        if not groups:
            return []

        clustered_ids = [mid for members in groups for mid in members]
        text_rows = await self._fetch(
            "UNWIND $ids AS memId MATCH (m:Memory {id: memId}) RETURN m.id AS id, m.text AS text",
            ids=clustered_ids,
        )
        texts = {row["id"]: row["text"] or "" for row in text_rows}

        clusters = []
        for members in groups:
            similarities = None
            if return_similarities:
                member_set = set(members)
                similarities = {
                    key: score for key, score in pair_similarities.items()
                    if all(part in member_set for part in key.split(":"))
                }
            clusters.append(DuplicateCluster(
                memory_ids=members,
                texts=[texts.get(mid, "") for mid in members],
                importances=[importance[mid] for mid in members],
                similarities=similarities,
            ))
        return clusters

    async def merge_memory_cluster(self, memory_ids: List[str],
                                   importances: List[float]) -> Dict[str, Any]:
        """
        Collapse a cluster into its most important member.

        MENTIONS and TAGGED edges of the losers move to the survivor, then the
        losers are deleted. Nothing changes if any member has disappeared
        since the cluster was computed.

        Returns:
            ``{"survivorId": ..., "deletedCount": n}``
        """
        await self.ensure_initialized()
        best = max(range(len(memory_ids)), key=lambda i: (importances[i], -i))
        survivor = memory_ids[best]
        losers = [mid for i, mid in enumerate(memory_ids) if i != best]

        async def _merge(tx):
            result = await tx.run(
                """
                UNWIND $ids AS memId
                OPTIONAL MATCH (m:Memory {id: memId})
                RETURN memId, m IS NOT NULL AS exists
                """,
                ids=list(memory_ids),
            )
            existing = await result.data()
            missing = [row["memId"] for row in existing if not row["exists"]]
            if missing:
                logger.warning(f"Skipping cluster merge, memories no longer exist: {missing}")
                return 0

            await tx.run(
                """
                UNWIND $loserIds AS loserId
                MATCH (loser:Memory {id: loserId})-[r:MENTIONS]->(e:Entity)
                MATCH (survivor:Memory {id: $survivorId})
                MERGE (survivor)-[nr:MENTIONS]->(e)
                ON CREATE SET nr.role = r.role, nr.confidence = r.confidence
                DELETE r
                """,
                loserIds=losers,
                survivorId=survivor,
            )
            await tx.run(
                """
                UNWIND $loserIds AS loserId
                MATCH (loser:Memory {id: loserId})-[r:TAGGED]->(t:Tag)
                MATCH (survivor:Memory {id: $survivorId})
                MERGE (survivor)-[nr:TAGGED]->(t)
                ON CREATE SET nr.confidence = r.confidence
                DELETE r
                """,
                loserIds=losers,
                survivorId=survivor,
            )
            result = await tx.run(
                """
                UNWIND $loserIds AS loserId
                MATCH (m:Memory {id: loserId})
                DETACH DELETE m
                RETURN count(*) AS deleted
                """,
                loserIds=losers,
            )
            record = await result.single()
            return record["deleted"] if record else 0

        async def _run():
            async with self._connection.session() as session:
                return await session.execute_write(_merge)

        deleted = await retry_on_transient(_run)
        return {"survivorId": survivor, "deletedCount": deleted}

    # ------------------------------------------------------------------
    # Decay
    # ------------------------------------------------------------------

    async def find_decayed_memories(
        self,
        retention_threshold: float = 0.1,
        base_half_life_days: float = 30,
        importance_multiplier: float = 2,
        decay_curves: Optional[Dict[str, float]] = None,
        agent_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[DecayedMemory]:
        """
        Memories whose retention score fell below ``retention_threshold``.

        score = importance * exp(-age / halfLife), where age counts from the
        last retrieval when there was one and the half-life grows with
        importance and with retrieval count. Core memories never decay.
        """
        await self.ensure_initialized()
        agent_filter = "AND m.agentId = $agentId" if agent_id else ""
        if decay_curves:
            half_life = (
                "CASE WHEN $curveMap[m.category] IS NOT NULL "
                "THEN $curveMap[m.category] ELSE $baseHalfLife END"
            )
        else:
            half_life = "$baseHalfLife"

        rows = await self._fetch(
            f"""
            MATCH (m:Memory)
            WHERE m.createdAt IS NOT NULL AND m.category <> 'core' {agent_filter}
            WITH m,
                 duration.between(datetime(m.createdAt), datetime()).days AS ageDays,
                 CASE WHEN m.lastRetrievedAt IS NOT NULL
                      THEN duration.between(datetime(m.lastRetrievedAt), datetime()).days
                      ELSE duration.between(datetime(m.createdAt), datetime()).days
                 END AS effectiveAgeDays
            WITH m, ageDays, effectiveAgeDays,
                 ({half_life})
                   * (1.0 + coalesce(m.importance, 0.0) * $importanceMult)
                   * (1.0 + log(1.0 + coalesce(m.retrievalCount, 0)) * 0.2) AS halfLife
            WITH m, ageDays,
                 coalesce(m.importance, 0.0) * exp(-1.0 * effectiveAgeDays / halfLife) AS decayScore
            WHERE decayScore < $threshold
            RETURN m.id AS id, m.text AS text, m.importance AS importance,
                   ageDays, decayScore
            ORDER BY decayScore ASC
            LIMIT $limit
            """,
            threshold=retention_threshold,
            baseHalfLife=float(base_half_life_days),
            importanceMult=float(importance_multiplier),
            curveMap=dict(decay_curves or {}),
            agentId=agent_id,
            limit=int(limit),
        )
        return [
            DecayedMemory(
                id=row["id"],
                text=row["text"] or "",
                importance=row["importance"] or 0.0,
                age_days=row["ageDays"] or 0,
                decay_score=row["decayScore"],
            )
            for row in rows
        ]

    async def prune_memories(self, memory_ids: List[str]) -> int:
        """Delete memories, decrementing mention counts of their entities."""
        if not memory_ids:
            return 0
        await self.ensure_initialized()

        async def _prune():
            rows = await self._fetch(_DELETE_WITH_MENTION_DECREMENT, ids=list(memory_ids))
            return rows[0]["deleted"] if rows else 0

        return await retry_on_transient(_prune)

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------

    async def find_orphan_entities(self, limit: int = 500) -> List[Dict[str, Any]]:
        await self.ensure_initialized()
        return await self._fetch(
            """
            MATCH (e:Entity)
            WHERE NOT EXISTS { MATCH (:Memory)-[:MENTIONS]->(e) }
            RETURN e.id AS id, e.name AS name, e.type AS type
            LIMIT $limit
            """,
            limit=int(limit),
        )

    async def delete_orphan_entities(self, entity_ids: List[str]) -> int:
        if not entity_ids:
            return 0
        await self.ensure_initialized()
        rows = await self._fetch(
            """
            UNWIND $ids AS entityId
            MATCH (e:Entity {id: entityId})
            WHERE NOT EXISTS { MATCH (:Memory)-[:MENTIONS]->(e) }
            DETACH DELETE e
            RETURN count(*) AS deleted
            """,
            ids=list(entity_ids),
        )
        return rows[0]["deleted"] if rows else 0

    async def find_orphan_tags(self, limit: int = 500) -> List[Dict[str, Any]]:
        await self.ensure_initialized()
        return await self._fetch(
            """
            MATCH (t:Tag)
            WHERE NOT EXISTS { MATCH (:Memory)-[:TAGGED]->(t) }
            RETURN t.id AS id, t.name AS name
            LIMIT $limit
            """,
            limit=int(limit),
        )

    async def delete_orphan_tags(self, tag_ids: List[str]) -> int:
        if not tag_ids:
            return 0
        await self.ensure_initialized()
        rows = await self._fetch(
            """
            UNWIND $ids AS tagId
            MATCH (t:Tag {id: tagId})
            WHERE NOT EXISTS { MATCH (:Memory)-[:TAGGED]->(t) }
            DETACH DELETE t
            RETURN count(*) AS deleted
            """,
            ids=list(tag_ids),
        )
        return rows[0]["deleted"] if rows else 0

    async def find_single_use_tags(self, min_age_days: int = 14,
                                   limit: int = 500) -> List[Dict[str, Any]]:
        """Tags used by exactly one memory and older than ``min_age_days``."""
        await self.ensure_initialized()
        cutoff = (datetime.now(timezone.utc) - timedelta(days=min_age_days)).isoformat()
        return await self._fetch(
            """
            MATCH (t:Tag)
            WHERE t.createdAt IS NOT NULL AND t.createdAt < $cutoff
            WITH t, COUNT { (:Memory)-[:TAGGED]->(t) } AS usageCount
            WHERE usageCount = 1
            RETURN t.id AS id, t.name AS name
            LIMIT $limit
            """,
            cutoff=cutoff,
            limit=int(limit),
        )

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def find_conflicting_memories(self, agent_id: Optional[str] = None) -> List[ConflictPair]:
        """Pairs of non-core memories that mention at least one common entity."""
        await self.ensure_initialized()
        agent_filter = "AND m1.agentId = $agentId AND m2.agentId = $agentId" if agent_id else ""
        rows = await self._fetch(
            f"""
            MATCH (m1:Memory)-[:MENTIONS]->(e:Entity)<-[:MENTIONS]-(m2:Memory)
            WHERE m1.id < m2.id
              AND m1.category <> 'core' AND m2.category <> 'core'
              {agent_filter}
            WITH DISTINCT m1, m2
            RETURN m1.id AS aId, m1.text AS aText, m1.importance AS aImportance,
                   m1.createdAt AS aCreatedAt,
                   m2.id AS bId, m2.text AS bText, m2.importance AS bImportance,
                   m2.createdAt AS bCreatedAt
            LIMIT {CONFLICT_PAIR_LIMIT}
            """,
            agentId=agent_id,
        )
        return [
            ConflictPair(
                memory_a=ConflictCandidate(
                    id=row["aId"], text=row["aText"] or "",
                    importance=row["aImportance"] or 0.0,
                    created_at=str(row["aCreatedAt"] or ""),
                ),
                memory_b=ConflictCandidate(
                    id=row["bId"], text=row["bText"] or "",
                    importance=row["bImportance"] or 0.0,
                    created_at=str(row["bCreatedAt"] or ""),
                ),
            )
            for row in rows
        ]

    async def invalidate_memory(self, memory_id: str) -> None:
        """Drop a memory's importance to near zero so decay removes it."""
        await self.ensure_initialized()

        async def _invalidate():
            await self._fetch(
                "MATCH (m:Memory {id: $id}) SET m.importance = 0.01, m.updatedAt = $now",
                id=memory_id,
                now=_now_iso(),
            )

        await retry_on_transient(_invalidate)

    # ------------------------------------------------------------------
    # Re-embedding
    # ------------------------------------------------------------------

    async def reindex(
        self,
        embed_fn: Callable[[List[str]], Awaitable[List[List[float]]]],
        batch_size: int = 50,
        on_progress: Optional[Callable[[str, int, int], None]] = None,
    ) -> Dict[str, int]:
        """
        Re-embed every memory and rebuild the vector index.

        Used after switching embedding model or dimensions. The index is
        dropped first so writes of the new vector size are accepted.

        Args:
            embed_fn: Batch embedder; an empty vector leaves that memory untouched
            batch_size: Memories per embed call
            on_progress: Called as (phase, done, total)

        Returns:
            ``{"memories": n}`` with the number of memories re-embedded
        """
        await self.ensure_initialized()

        def _progress(phase: str, done: int, total: int):
            if on_progress:
                on_progress(phase, done, total)

        _progress("drop-indexes", 0, 1)
        async with self._connection.session() as session:
            await self._run_safe(session, "DROP INDEX memory_embedding_index IF EXISTS")
        _progress("drop-indexes", 1, 1)

        rows = await self._fetch(
            "MATCH (m:Memory) RETURN m.id AS id, m.text AS text ORDER BY m.createdAt ASC"
        )
        total = len(rows)
        updated = 0
        for start in range(0, total, batch_size):
            batch = rows[start:start + batch_size]
            vectors = await embed_fn([row["text"] or "" for row in batch])
            updates = [
                {"id": row["id"], "embedding": vector}
                for row, vector in zip(batch, vectors)
                if vector
            ]
            if updates:
                await self._fetch(
                    """
                    UNWIND $updates AS u
                    MATCH (m:Memory {id: u.id})
                    SET m.embedding = u.embedding
                    """,
                    updates=updates,
                )
                updated += len(updates)
            _progress("memories", min(start + batch_size, total), total)

        _progress("create-indexes", 0, 1)
        async with self._connection.session() as session:
            await self._run_safe(session, vector_index_statement(self.dimensions))
        _progress("create-indexes", 1, 1)
        logger.info(f"Re-embedded {updated}/{total} memories at {self.dimensions} dimensions")
        return {"memories": updated}

    # ------------------------------------------------------------------
    # Entity deduplication
    # ------------------------------------------------------------------

    async def find_duplicate_entity_pairs(self, agent_id: Optional[str] = None,
                                          limit: int = 200) -> List[EntityPair]:
        """
        Same-type entity pairs where one name contains the other or one lists
        the other's name as an alias. The entity with more mentions survives;
        on a tie, the shorter name.
        """
        await self.ensure_initialized()
        agent_filter = (
            "AND EXISTS { MATCH (:Memory {agentId: $agentId})-[:MENTIONS]->(e1) }"
            if agent_id else ""
        )
        rows = await self._fetch(
            f"""
            MATCH (e1:Entity), (e2:Entity)
            WHERE e1.name < e2.name AND e1.type = e2.type
              AND size(e1.name) > 2 AND size(e2.name) > 2
              AND (
                e1.name CONTAINS e2.name OR e2.name CONTAINS e1.name
                OR ANY(a IN coalesce(e1.aliases, []) WHERE toLower(a) = e2.name)
                OR ANY(a IN coalesce(e2.aliases, []) WHERE toLower(a) = e1.name)
              )
              {agent_filter}
            RETURN e1.id AS id1, e1.name AS name1, coalesce(e1.mentionCount, 0) AS mc1,
                   e2.id AS id2, e2.name AS name2, coalesce(e2.mentionCount, 0) AS mc2
            LIMIT $limit
            """,
            agentId=agent_id,
            limit=int(limit),
        )
        pairs = []
        for row in rows:
            first_wins = row["mc1"] > row["mc2"] or (
                row["mc1"] == row["mc2"] and len(row["name1"]) <= len(row["name2"])
            )
            if first_wins:
                pairs.append(EntityPair(
                    keep_id=row["id1"], keep_name=row["name1"],
                    remove_id=row["id2"], remove_name=row["name2"],
                    keep_mentions=row["mc1"], remove_mentions=row["mc2"],
                ))
            else:
                pairs.append(EntityPair(
                    keep_id=row["id2"], keep_name=row["name2"],
                    remove_id=row["id1"], remove_name=row["name1"],
                    keep_mentions=row["mc2"], remove_mentions=row["mc1"],
                ))
        return pairs

    async def merge_entity_pair(self, keep_id: str, remove_id: str) -> bool:
        """Move MENTIONS from ``remove_id`` to ``keep_id`` and delete the former."""
        await self.ensure_initialized()

        async def _merge(tx):
            result = await tx.run(
                """
                MATCH (remove:Entity {id: $removeId})<-[r:MENTIONS]-(m:Memory)
                MATCH (keep:Entity {id: $keepId})
                MERGE (m)-[nr:MENTIONS]->(keep)
                ON CREATE SET nr.role = r.role, nr.confidence = r.confidence
                DELETE r
                RETURN count(*) AS transferred
                """,
                keepId=keep_id,
                removeId=remove_id,
            )
            record = await result.single()
            transferred = record["transferred"] if record else 0
            # Memories that mentioned both entities already had an edge to
            # keep, so the count is taken from the edges, not incremented.
            await tx.run(
                """
                MATCH (keep:Entity {id: $keepId})
                SET keep.mentionCount = COUNT { (:Memory)-[:MENTIONS]->(keep) },
                    keep.lastSeen = CASE WHEN $transferred > 0 THEN $now ELSE keep.lastSeen END
                """,
                keepId=keep_id,
                transferred=transferred,
                now=_now_iso(),
            )
            await tx.run("MATCH (e:Entity {id: $removeId}) DETACH DELETE e", removeId=remove_id)

        try:
            async with self._connection.session() as session:
                await session.execute_write(_merge)
            return True
        except Exception as e:
            logger.warning(f"Entity merge {remove_id} -> {keep_id} failed: {e}")
            return False

    async def reconcile_entity_mention_counts(self) -> int:
        """Backfill mentionCount on entities that never had one."""
        await self.ensure_initialized()
        rows = await self._fetch(
            """
            MATCH (e:Entity)
            WHERE e.mentionCount IS NULL
            WITH e, COUNT { (:Memory)-[:MENTIONS]->(e) } AS actual
            SET e.mentionCount = actual
            RETURN count(e) AS updated
            """
        )
        return rows[0]["updated"] if rows else 0

    # ------------------------------------------------------------------
    # Bulk cleanup
    # ------------------------------------------------------------------

    async def delete_memories_by_pattern(self, pattern: str, agent_id: Optional[str] = None,
                                         limit: int = 100) -> int:
        """Delete non-core memories whose text matches a Cypher regex."""
        await self.ensure_initialized()
        agent_filter = "AND m.agentId = $agentId" if agent_id else ""
        rows = await self._fetch(
            f"""
            MATCH (m:Memory)
            WHERE m.text =~ $pattern AND m.category <> 'core' {agent_filter}
            WITH m LIMIT $limit
            OPTIONAL MATCH (m)-[:MENTIONS]->(e:Entity)
            SET e.mentionCount = CASE WHEN e.mentionCount > 0 THEN e.mentionCount - 1 ELSE 0 END
            WITH m, count(e) AS _
            DETACH DELETE m
            RETURN count(*) AS deleted
            """,
            pattern=pattern,
            agentId=agent_id,
            limit=int(limit),
        )
        return rows[0]["deleted"] if rows else 0

    async def fetch_all_memories_for_scan(self, agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        await self.ensure_initialized()
        agent_filter = "WHERE m.agentId = $agentId" if agent_id else ""
        return await self._fetch(
            f"MATCH (m:Memory) {agent_filter} RETURN m.id AS id, m.text AS text",
            agentId=agent_id,
        )

    async def delete_memories_by_ids(self, memory_ids: List[str]) -> int:
        return await self.prune_memories(memory_ids)

    async def list_memories_for_cleanup(self, include_all: bool = False,
                                        agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Auto-captured memories (or all of them) oldest first, for manual review."""
        await self.ensure_initialized()
        conditions = []
        if not include_all:
            conditions.append("m.source STARTS WITH 'auto-capture'")
        if agent_id:
            conditions.append("m.agentId = $agentId")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return await self._fetch(
            f"""
            MATCH (m:Memory) {where}
            RETURN m.id AS id, m.text AS text, m.category AS category,
                   m.importance AS importance, m.source AS source, m.createdAt AS createdAt
            ORDER BY m.createdAt ASC
            """,
            agentId=agent_id,
        )
