"""
Store client tests.

The Neo4j connection is replaced by a mock whose sessions record every query,
so none of these need a running database.
"""

from contextlib import asynccontextmanager
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, MagicMock, patch

from neo4j.exceptions import ServiceUnavailable

from memory_neo4j.exceptions import InvalidMemoryIdError, InvalidRelationshipTypeError
from memory_neo4j.models import EntityMergeInput, ExtractedRelationship, ExtractedTag
from memory_neo4j.store import Neo4jMemoryClient, is_transient_neo4j_error, retry_on_transient
from memory_neo4j.store.client import normalize_bm25_scores

VALID_ID = "7f1c2b9e-2a4d-4c55-9a3b-1e2f3a4b5c6d"


# =============================================================================
# Helper Functions
# =============================================================================

def _mock_result(rows=None, single=None):
    result = MagicMock()
    result.data = AsyncMock(return_value=rows or [])
    result.single = AsyncMock(return_value=single)
    return result


def _create_mock_connection(session):
    """Connection whose ``session()`` context yields the given mock session."""
    connection = MagicMock()

    @asynccontextmanager
    async def _session():
        yield session

    connection.session = _session
    connection.close = AsyncMock()
    return connection


def _execute_write_with(tx):
    """Stand-in for ``session.execute_write`` that runs the unit of work on ``tx``."""

    async def _execute_write(fn):
        return await fn(tx)

    return AsyncMock(side_effect=_execute_write)


def _client(session):
    client = Neo4jMemoryClient(
        "bolt://localhost:7687", "neo4j", "secret", 1024,
        connection=_create_mock_connection(session),
    )
    client._indexes_ready = True
    return client


def _rows(*scores):
    return [
        {"id": f"m{i}", "text": f"memory {i}", "category": "fact", "importance": 0.5,
         "createdAt": "2026-01-01T00:00:00+00:00", "bm25Score": s}
        for i, s in enumerate(scores)
    ]


# =============================================================================
# BM25 normalisation
# =============================================================================

class BM25NormalizationTest(TestCase):
    """Min-max normalisation of raw BM25 scores."""

    def test_single_result_gets_moderate_score(self):
        """One match proves nothing about relevance: 0.5, not 1.0."""
        results = normalize_bm25_scores(_rows(7.2))
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].score, 0.5)

    def test_multiple_results_span_floor_to_one(self):
        results = normalize_bm25_scores(_rows(9.0, 6.0, 3.0))
        self.assertAlmostEqual(results[0].score, 1.0)
        self.assertAlmostEqual(results[-1].score, 0.3)
        self.assertAlmostEqual(results[1].score, 0.65)

    def test_identical_scores_get_moderate_score(self):
        results = normalize_bm25_scores(_rows(4.0, 4.0))
        self.assertEqual([r.score for r in results], [0.5, 0.5])

    def test_empty_rows(self):
        self.assertEqual(normalize_bm25_scores([]), [])


# =============================================================================
# Memory CRUD
# =============================================================================

class DeleteMemoryTest(IsolatedAsyncioTestCase):
    """Deletion validates ids before touching the store."""

    async def test_invalid_id_rejected_without_query(self):
        session = MagicMock()
        session.run = AsyncMock()
        client = _client(session)

        with self.assertRaises(InvalidMemoryIdError):
            await client.delete_memory("1 OR 1=1")
        session.run.assert_not_called()

    async def test_valid_id_deleted(self):
        session = MagicMock()
        session.run = AsyncMock(return_value=_mock_result([{"deleted": 1}]))
        client = _client(session)

        self.assertTrue(await client.delete_memory(VALID_ID, "main"))
        query, params = session.run.call_args.args
        self.assertIn("agentId: $agentId", query)
        self.assertEqual(params["id"], VALID_ID)
        self.assertEqual(params["agentId"], "main")

    async def test_missing_memory_returns_false(self):
        session = MagicMock()
        session.run = AsyncMock(return_value=_mock_result([{"deleted": 0}]))
        client = _client(session)

        self.assertFalse(await client.delete_memory(VALID_ID))


class CountByExtractionStatusTest(IsolatedAsyncioTestCase):

    async def test_missing_statuses_default_to_zero(self):
        session = MagicMock()
        session.run = AsyncMock(return_value=_mock_result([
            {"status": "pending", "count": 4},
            {"status": "unknown", "count": 9},
        ]))
        counts = await _client(session).count_by_extraction_status()
        self.assertEqual(counts, {"pending": 4, "complete": 0, "failed": 0, "skipped": 0})


# =============================================================================
# Search signals degrade to empty
# =============================================================================

class SignalDegradationTest(IsolatedAsyncioTestCase):
    """Read-path failures return [] instead of raising."""

    async def test_vector_search_failure_returns_empty(self):
        session = MagicMock()
        session.run = AsyncMock(side_effect=RuntimeError("index offline"))
        results = await _client(session).vector_search([0.1] * 4, 10)
        self.assertEqual(results, [])

    async def test_bm25_search_failure_returns_empty(self):
        session = MagicMock()
        session.run = AsyncMock(side_effect=RuntimeError("index offline"))
        results = await _client(session).bm25_search("neo4j", 10)
        self.assertEqual(results, [])

    async def test_bm25_blank_query_skips_store(self):
        session = MagicMock()
        session.run = AsyncMock()
        self.assertEqual(await _client(session).bm25_search("   ", 10), [])
        session.run.assert_not_called()

    async def test_find_similar_failure_means_no_duplicate(self):
        session = MagicMock()
        session.run = AsyncMock(side_effect=RuntimeError("boom"))
        self.assertEqual(await _client(session).find_similar([0.1] * 4, 0.95, 1), [])

    async def test_bm25_escapes_lucene_syntax(self):
        session = MagicMock()
        session.run = AsyncMock(return_value=_mock_result([]))
        await _client(session).bm25_search("title:foo AND (bar)", 5)
        _, params = session.run.call_args.args
        self.assertEqual(params["query"], "title\\:foo AND \\(bar\\)")


# =============================================================================
# Cluster merge
# =============================================================================

class MergeMemoryClusterTest(IsolatedAsyncioTestCase):
    """The most important member survives; a vanished member aborts the merge."""

    def _session_with_tx(self, exists_rows, deleted):
        tx = MagicMock()
        tx.run = AsyncMock(side_effect=[
            _mock_result(exists_rows),
            _mock_result(),
            _mock_result(),
            _mock_result(single={"deleted": deleted}),
        ])
        session = MagicMock()
        session.execute_write = _execute_write_with(tx)
        return session, tx

    async def test_survivor_is_most_important(self):
        ids = ["a", "b", "c"]
        session, tx = self._session_with_tx(
            [{"memId": i, "exists": True} for i in ids], deleted=2
        )
        result = await _client(session).merge_memory_cluster(ids, [0.4, 0.9, 0.6])

        self.assertEqual(result, {"survivorId": "b", "deletedCount": 2})
        delete_call = tx.run.call_args_list[-1]
        self.assertEqual(delete_call.kwargs["loserIds"], ["a", "c"])

    async def test_missing_member_skips_merge(self):
        session, tx = self._session_with_tx(
            [{"memId": "a", "exists": True}, {"memId": "b", "exists": False}], deleted=0
        )
        result = await _client(session).merge_memory_cluster(["a", "b"], [0.5, 0.5])

        self.assertEqual(result["deletedCount"], 0)
        self.assertEqual(tx.run.call_count, 1)


# =============================================================================
# Extraction writes
# =============================================================================

class BatchEntityOperationsTest(IsolatedAsyncioTestCase):
    """Relationship types outside the allowlist never reach a query."""

    async def test_disallowed_relationship_type_dropped(self):
        tx = MagicMock()
        tx.run = AsyncMock(return_value=_mock_result())
        session = MagicMock()
        session.execute_write = _execute_write_with(tx)

        rels = [
            ExtractedRelationship(source="Alice", target="Acme", type="WORKS_AT", confidence=0.9),
            ExtractedRelationship(source="a", target="b", type="HACKED]->(x) DETACH DELETE x //"),
        ]
        await _client(session).batch_entity_operations(VALID_ID, [], rels, [], category="fact")

        queries = [c.args[0] for c in tx.run.call_args_list]
        self.assertTrue(any(":WORKS_AT]" in q for q in queries))
        self.assertFalse(any("HACKED" in q for q in queries))
        self.assertIn("extractionStatus = 'complete'", queries[-1])


# =============================================================================
# Transient retry
# =============================================================================

class TransientRetryTest(IsolatedAsyncioTestCase):

    def test_transient_classification(self):
        self.assertTrue(is_transient_neo4j_error(ServiceUnavailable("down")))
        self.assertTrue(is_transient_neo4j_error(RuntimeError("DeadlockDetected while locking")))
        self.assertFalse(is_transient_neo4j_error(ValueError("constraint violated")))

    async def test_retries_transient_then_succeeds(self):
        fn = AsyncMock(side_effect=[ServiceUnavailable("down"), ServiceUnavailable("down"), "ok"])
        with patch("memory_neo4j.store.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            self.assertEqual(await retry_on_transient(fn), "ok")
        self.assertEqual(fn.call_count, 3)
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [0.5, 1.0])

    async def test_permanent_error_not_retried(self):
        fn = AsyncMock(side_effect=ValueError("bad input"))
        with self.assertRaises(ValueError):
            await retry_on_transient(fn)
        self.assertEqual(fn.call_count, 1)

    async def test_gives_up_after_max_attempts(self):
        fn = AsyncMock(side_effect=ServiceUnavailable("down"))
        with patch("memory_neo4j.store.retry.asyncio.sleep", new=AsyncMock()):
            with self.assertRaises(ServiceUnavailable):
                await retry_on_transient(fn, max_attempts=3)
        self.assertEqual(fn.call_count, 3)


# =============================================================================
# Entity mention counts
# =============================================================================

class EntityMentionCountTest(IsolatedAsyncioTestCase):
    """mentionCount must equal the number of incoming MENTIONS edges."""

    def _session(self, *results):
        tx = MagicMock()
        tx.run = AsyncMock(side_effect=list(results) if results else None, return_value=_mock_result())
        session = MagicMock()
        session.execute_write = _execute_write_with(tx)
        return session, tx

    async def test_same_canonical_name_merged_once(self):
        session, tx = self._session()
        entities = [
            EntityMergeInput(id="e1", name="Tarun", type="person", aliases=["t"]),
            EntityMergeInput(id="e2", name="tarun ", type="person", aliases=["tk"], description="a friend"),
            EntityMergeInput(id="e3", name="Acme", type="organization"),
        ]
        tags = [ExtractedTag(name="Work"), ExtractedTag(name="work ")]

        await _client(session).batch_entity_operations(VALID_ID, entities, [], tags)

        merge_call = next(c for c in tx.run.call_args_list if "MERGE (n:Entity" in c.args[0])
        rows = merge_call.kwargs["entities"]
        self.assertEqual([r["name"] for r in rows], ["tarun", "acme"])
        self.assertEqual(rows[0]["aliases"], ["t", "tk"])
        self.assertEqual(rows[0]["description"], "a friend")
        mentions_call = next(c for c in tx.run.call_args_list if "MERGE (m)-[r:MENTIONS]" in c.args[0])
        self.assertEqual(mentions_call.kwargs["entityNames"], ["tarun", "acme"])
        tag_call = next(c for c in tx.run.call_args_list if "MERGE (tag:Tag" in c.args[0])
        self.assertEqual([t["name"] for t in tag_call.kwargs["tags"]], ["work"])

    async def test_entity_merge_recounts_survivor_from_edges(self):
        session, tx = self._session(
            _mock_result(single={"transferred": 1}),
            _mock_result(),
            _mock_result(),
        )

        merged = await _client(session).merge_entity_pair("keep-id", "remove-id")

        self.assertTrue(merged)
        recount_query = tx.run.call_args_list[1].args[0]
        self.assertIn("keep.mentionCount = COUNT { (:Memory)-[:MENTIONS]->(keep) }", recount_query)
        self.assertNotIn("+ $transferred", recount_query)
        self.assertIn("DETACH DELETE e", tx.run.call_args_list[2].args[0])

    async def test_entity_merge_without_transfers_still_recounts(self):
        session, tx = self._session(
            _mock_result(single={"transferred": 0}),
            _mock_result(),
            _mock_result(),
        )
        await _client(session).merge_entity_pair("keep-id", "remove-id")
        self.assertEqual(tx.run.call_count, 3)
        self.assertEqual(tx.run.call_args_list[1].kwargs["transferred"], 0)


class CreateEntityRelationshipTest(IsolatedAsyncioTestCase):

    async def test_disallowed_type_raises_before_query(self):
        session = MagicMock()
        session.run = AsyncMock(return_value=_mock_result())
        with self.assertRaises(InvalidRelationshipTypeError):
            await _client(session).create_entity_relationship("a", "b", "OWNS]->(x) DELETE x //")
        session.run.assert_not_called()

    async def test_allowed_type_written(self):
        session = MagicMock()
        session.run = AsyncMock(return_value=_mock_result([{"created": 1}]))

        created = await _client(session).create_entity_relationship("Alice", "Bob ", "KNOWS", 0.9)

        self.assertTrue(created)
        query, params = session.run.call_args.args
        self.assertIn("[rel:KNOWS]", query)
        self.assertEqual((params["source"], params["target"], params["confidence"]), ("alice", "bob", 0.9))


# =============================================================================
# Decay
# =============================================================================

class FindDecayedMemoriesTest(IsolatedAsyncioTestCase):
    """Core exclusion, retrieval clock reset and per-category half-lives live in the query."""

    def _session(self, rows=None):
        session = MagicMock()
        session.run = AsyncMock(return_value=_mock_result(rows))
        return session

    async def test_query_excludes_core_and_uses_last_retrieval(self):
        session = self._session([
            {"id": "m1", "text": "old note", "importance": 0.2, "ageDays": 120, "decayScore": 0.01},
        ])

        decayed = await _client(session).find_decayed_memories(
            retention_threshold=0.2, base_half_life_days=10, importance_multiplier=3
        )

        query, params = session.run.call_args.args
        self.assertIn("m.category <> 'core'", query)
        self.assertIn("m.lastRetrievedAt IS NOT NULL", query)
        self.assertIn("datetime(m.lastRetrievedAt)", query)
        self.assertIn("log(1.0 + coalesce(m.retrievalCount, 0)) * 0.2", query)
        self.assertNotIn("$curveMap[", query)
        self.assertEqual(params["threshold"], 0.2)
        self.assertEqual(params["baseHalfLife"], 10.0)
        self.assertEqual(params["importanceMult"], 3.0)
        self.assertEqual(params["curveMap"], {})
        self.assertEqual(decayed[0].id, "m1")
        self.assertEqual(decayed[0].decay_score, 0.01)

    async def test_decay_curves_override_half_life_per_category(self):
        session = self._session()

        await _client(session).find_decayed_memories(
            decay_curves={"fact": 90.0, "other": 7.0}, agent_id="main"
        )

        query, params = session.run.call_args.args
        self.assertIn("$curveMap[m.category]", query)
        self.assertIn("m.category <> 'core'", query)
        self.assertIn("m.agentId = $agentId", query)
        self.assertEqual(params["curveMap"], {"fact": 90.0, "other": 7.0})
        self.assertEqual(params["agentId"], "main")


# =============================================================================
# Duplicate clusters
# =============================================================================

class FindDuplicateClustersTest(IsolatedAsyncioTestCase):
    """Nearest-neighbour lookups joined with union-find."""

    MEMORIES = [
        {"id": "a", "importance": 0.9},
        {"id": "b", "importance": 0.5},
        {"id": "c", "importance": 0.3},
        {"id": "d", "importance": 0.7},
    ]
    NEIGHBOURS = {
        "a": [{"matchId": "b", "similarity": 0.97}],
        "b": [{"matchId": "a", "similarity": 0.97}, {"matchId": "c", "similarity": 0.9}],
        "c": [{"matchId": "b", "similarity": 0.9}],
        "d": [],
    }

    def _client(self, memories):
        client = _client(MagicMock())
        neighbour_ids = []

        async def _fetch(query, **params):
            if "queryNodes" in query:
                neighbour_ids.append(params["id"])
                return self.NEIGHBOURS[params["id"]]
            if "UNWIND $ids" in query:
                return [{"id": mid, "text": f"text {mid}"} for mid in params["ids"]]
            return memories

        client._fetch = AsyncMock(side_effect=_fetch)
        return client, neighbour_ids

    async def test_transitive_matches_form_one_cluster(self):
        client, _ = self._client(self.MEMORIES)

        clusters = await client.find_duplicate_clusters(0.75, return_similarities=True)

        self.assertEqual(len(clusters), 1)
        cluster = clusters[0]
        self.assertEqual(sorted(cluster.memory_ids), ["a", "b", "c"])
        by_id = dict(zip(cluster.memory_ids, zip(cluster.texts, cluster.importances)))
        self.assertEqual(by_id["a"], ("text a", 0.9))
        self.assertEqual(by_id["c"], ("text c", 0.3))
        self.assertEqual(cluster.similarities, {"a:b": 0.97, "b:c": 0.9})
        self.assertFalse(client.last_cluster_scan_truncated)

    async def test_similarities_omitted_unless_requested(self):
        client, _ = self._client(self.MEMORIES)
        clusters = await client.find_duplicate_clusters(0.75)
        self.assertIsNone(clusters[0].similarities)

    async def test_pair_bound_stops_scan_and_flags_truncation(self):
        client, neighbour_ids = self._client(self.MEMORIES)

        with patch("memory_neo4j.store.maintenance.MAX_CLUSTER_PAIRS", 1), \
                patch("memory_neo4j.store.maintenance.CLUSTER_BATCH_SIZE", 1):
            clusters = await client.find_duplicate_clusters(0.75)

        self.assertTrue(client.last_cluster_scan_truncated)
        self.assertEqual(neighbour_ids, ["a", "b"])
        self.assertEqual(sorted(clusters[0].memory_ids), ["a", "b", "c"])

    async def test_fewer_than_two_memories_skips_lookups(self):
        client, neighbour_ids = self._client([{"id": "a", "importance": 0.5}])

        self.assertEqual(await client.find_duplicate_clusters(0.95), [])
        self.assertEqual(neighbour_ids, [])
        self.assertEqual(client._fetch.call_count, 1)
