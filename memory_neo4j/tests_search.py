"""Hybrid search tests: query classification, fusion, the search pipeline and embeddings."""

import asyncio
import threading
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, MagicMock, patch

from memory_neo4j.background import drain
from memory_neo4j.config import EmbeddingConfig
from memory_neo4j.embeddings import EmbeddingProvider
from memory_neo4j.models import SearchResult
from memory_neo4j.search import classify_query, fuse_results, get_signal_weights, hybrid_search


def _hit(memory_id, score, text=None):
    return SearchResult(id=memory_id, text=text or f"memory {memory_id}", category="fact",
                        importance=0.5, score=score)


class ClassifyQueryTest(TestCase):
    """Query shape drives the signal weights."""

    def test_capitalised_name_is_entity(self):
        self.assertEqual(classify_query("John"), "entity")
        self.assertEqual(classify_query("where does Tarun live these days"), "entity")

    def test_sentence_openers_are_not_entities(self):
        self.assertEqual(classify_query("What"), "short")

    def test_short_queries(self):
        self.assertEqual(classify_query("ok"), "short")
        self.assertEqual(classify_query("fix bug"), "short")

    def test_lowercase_entity_question(self):
        self.assertEqual(classify_query("who is alice"), "entity")

    def test_long_query(self):
        self.assertEqual(classify_query("what did we decide about the database migration"), "long")

    def test_default(self):
        self.assertEqual(classify_query("deploy the app now"), "default")


class SignalWeightsTest(TestCase):

    def test_graph_weight_zero_when_disabled(self):
        self.assertEqual(get_signal_weights("entity", graph_enabled=False), (0.8, 1.0, 0.0))
        self.assertEqual(get_signal_weights("entity", graph_enabled=True), (0.8, 1.0, 1.3))

    def test_unknown_type_uses_default(self):
        self.assertEqual(get_signal_weights("bogus", graph_enabled=True), (1.0, 1.0, 1.0))


class FuseResultsTest(TestCase):
    """Confidence-weighted reciprocal rank fusion."""

    def test_agreement_across_signals_wins(self):
        vector = [_hit("a", 0.9), _hit("b", 0.5)]
        bm25 = [_hit("b", 0.8)]
        fused = fuse_results([vector, bm25, []], 60, (1.0, 1.0, 1.0))

        self.assertEqual([r.id for r in fused], ["b", "a"])
        self.assertAlmostEqual(fused[0].score, 0.5 / 62 + 0.8 / 61)
        self.assertAlmostEqual(fused[1].score, 0.9 / 61)

    def test_confidence_breaks_rank_ties(self):
        fused = fuse_results([[_hit("strong", 0.99)], [_hit("weak", 0.55)]], 60, (1.0, 1.0))
        self.assertEqual(fused[0].id, "strong")

    def test_first_occurrence_within_signal_counts(self):
        fused = fuse_results([[_hit("a", 0.8), _hit("a", 0.1)]], 60, (1.0,))
        self.assertEqual(len(fused), 1)
        self.assertAlmostEqual(fused[0].score, 0.8 / 61)

    def test_metadata_from_first_signal(self):
        fused = fuse_results(
            [[_hit("a", 0.5, text="from vector")], [_hit("a", 0.5, text="from bm25")]], 60, (1.0, 1.0)
        )
        self.assertEqual(fused[0].text, "from vector")


class HybridSearchTest(IsolatedAsyncioTestCase):

    def _deps(self, vector=None, bm25=None, graph=None):
        db = MagicMock()
        db.vector_search = AsyncMock(return_value=vector or [])
        db.bm25_search = AsyncMock(return_value=bm25 or [])
        db.graph_search = AsyncMock(return_value=graph or [])
        db.record_retrievals = AsyncMock()
        embeddings = MagicMock()
        embeddings.embed = AsyncMock(return_value=[0.1, 0.2, 0.3])
        return db, embeddings

    async def test_blank_query_returns_nothing(self):
        db, embeddings = self._deps()
        self.assertEqual(await hybrid_search(db, embeddings, "   "), [])
        embeddings.embed.assert_not_called()

    async def test_top_result_normalised_to_one(self):
        db, embeddings = self._deps(vector=[_hit("a", 0.9), _hit("b", 0.6)], bm25=[_hit("a", 0.7)])
        results = await hybrid_search(db, embeddings, "coffee preferences", limit=5, agent_id="main")
        await drain()

        self.assertEqual(results[0].id, "a")
        self.assertEqual(results[0].score, 1.0)
        self.assertLess(results[1].score, 1.0)
        db.graph_search.assert_not_called()
        db.record_retrievals.assert_awaited_once_with(["a", "b"])

    async def test_weak_fusion_not_inflated(self):
        db, embeddings = self._deps(vector=[_hit("a", 0.3)])
        results = await hybrid_search(db, embeddings, "anything at all")
        await drain()
        self.assertAlmostEqual(results[0].score, 0.3 / 61)

    async def test_empty_signal_does_not_block_others(self):
        db, embeddings = self._deps(bm25=[_hit("kw", 0.5)])
        results = await hybrid_search(db, embeddings, "neo4j")
        await drain()
        self.assertEqual([r.id for r in results], ["kw"])

    async def test_candidate_limit_and_graph_args(self):
        db, embeddings = self._deps()
        await hybrid_search(db, embeddings, "Alice", limit=100, agent_id="main",
                            graph_enabled=True, graph_search_depth=2)

        self.assertEqual(db.vector_search.call_args.args[1], 200)
        self.assertEqual(db.bm25_search.call_args.args[1], 200)
        db.graph_search.assert_awaited_once_with("Alice", 200, 0.3, "main", 2)
        db.record_retrievals.assert_not_called()

    async def test_limit_applied_after_fusion(self):
        db, embeddings = self._deps(vector=[_hit(str(i), 0.9 - i * 0.05) for i in range(8)])
        results = await hybrid_search(db, embeddings, "several results here please", limit=3)
        await drain()
        self.assertEqual([r.id for r in results], ["0", "1", "2"])


# =============================================================================
# Local embeddings
# =============================================================================

class LocalEmbeddingTest(IsolatedAsyncioTestCase):
    """The in-process model must not block the event loop."""

    def _provider(self, encode):
        provider = EmbeddingProvider(EmbeddingConfig(provider="local", model="all-MiniLM-L6-v2"))
        provider._model = MagicMock()
        provider._model.encode = MagicMock(side_effect=encode)
        return provider

    @staticmethod
    def _vectors(rows):
        return MagicMock(tolist=MagicMock(return_value=rows))

    async def test_encode_runs_off_the_loop_thread(self):
        release = threading.Event()
        encode_threads = []

        def encode(texts, convert_to_numpy):
            encode_threads.append(threading.get_ident())
            release.wait(5)
            return self._vectors([[0.1, 0.2]])

        provider = self._provider(encode)
        task = asyncio.create_task(provider.embed("hello"))
        for _ in range(200):
            if encode_threads:
                break
            await asyncio.sleep(0.01)
        # The loop is still serving this coroutine while encode is parked.
        self.assertEqual(len(encode_threads), 1)
        release.set()

        self.assertEqual(await task, [0.1, 0.2])
        self.assertNotEqual(encode_threads[0], threading.get_ident())

    async def test_model_loaded_once_for_concurrent_batches(self):
        provider = EmbeddingProvider(EmbeddingConfig(provider="local", model="all-MiniLM-L6-v2"))
        model = MagicMock()
        model.encode = MagicMock(return_value=self._vectors([[1.0]]))

        def _load():
            provider._model = model

        with patch.object(provider, "_init_local", side_effect=_load) as init_local:
            results = await asyncio.gather(*(provider.embed_batch([f"t{i}"]) for i in range(4)))

        init_local.assert_called_once()
        self.assertEqual(results, [[[1.0]]] * 4)
