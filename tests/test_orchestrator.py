import asyncio
import unittest

from fakes import FailingEmbedder, HashingEmbedder, make_chunk, memory_store, ts
from vaultsearch.errors import InvalidInput, UpstreamUnavailable
from vaultsearch.graph.build import GraphBuilder
from vaultsearch.graph.knowledge_graph import KnowledgeGraphIndex
from vaultsearch.search.models import SearchOptions
from vaultsearch.search.orchestrator import SearchOrchestrator


def vault_chunks():
    return [
        make_chunk(
            "A",
            "notes/acme.md",
            "Alice works at Acme Corp. The Acme team ships tools.",
            tags=("people", "work"),
            wikilinks=("Companies",),
            modified_at=ts(3),
        ),
        make_chunk(
            "B",
            "notes/places.md",
            "Acme Corp is located in Springfield.",
            tags=("places", "work"),
            modified_at=ts(5),
            extra={"weight": 2.0},
        ),
        make_chunk("C", "recipes/soup.md", "Tomato soup with basil and garlic.", tags=("food",), wikilinks=("Food",)),
        make_chunk(
            "M1",
            "maps/Companies.md",
            "Companies map listing Acme Corp and partners.",
            content_type="moc",
            wikilinks=("acme", "places"),
        ),
        make_chunk("M2", "maps/Food.md", "Food map for recipes.", content_type="moc", wikilinks=("soup",)),
        make_chunk(
            "V",
            "chats/2024-01-02.md",
            "Talked with Alice about Acme Corp hiring.",
            content_type="conversation",
            wikilinks=("Companies",),
        ),
    ]


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.embedder = HashingEmbedder()
        self.store = memory_store()
        self.index = KnowledgeGraphIndex()
        self.builder = GraphBuilder(self.index).attach(self.store)
        self.store.batch_upsert(vault_chunks())
        self.builder.drain()
        self.orch = SearchOrchestrator(self.store, self.embedder, self.index)

    def tearDown(self):
        self.builder.close()
        self.store.close()


class TestSearch(OrchestratorTestCase):
    async def test_search_is_ranked_and_enriched(self):
        resp = await self.orch.search("Acme Corp", SearchOptions(limit=4))
        self.assertLessEqual(len(resp.results), 4)
        scores = [r.score for r in resp.results]
        self.assertEqual(scores, sorted(scores, reverse=True))

        top = resp.results[0]
        self.assertTrue(any("Acme" in h.text for h in top.highlights))
        self.assertIn(top.facets["contentType"], {"note", "moc", "conversation"})
        self.assertTrue(top.graph_context.entities)
        self.assertLessEqual(len(top.related_chunks), 5)
        self.assertNotIn(top.chunk.id, {r.chunk_id for r in top.related_chunks})

    async def test_hits_keep_store_order(self):
        opts = SearchOptions(limit=6)
        raw = self.store.search(self.embedder.embed_query("Acme Corp"), 6)
        resp = await self.orch.search("Acme Corp", opts)
        self.assertEqual([r.chunk.id for r in resp.results], [h.chunk.id for h in raw])

    async def test_envelope_shape(self):
        d = (await self.orch.search("Acme Corp", SearchOptions(limit=3))).to_dict()
        self.assertEqual(
            set(d),
            {"query", "mode", "results", "totalFound", "latencyMs", "facets", "graphInsights", "concepts"},
        )
        self.assertEqual(
            set(d["results"][0]),
            {"chunk", "score", "highlights", "relatedChunks", "graphContext", "facets"},
        )
        self.assertNotIn("embedding", d["results"][0]["chunk"])

    async def test_graph_insights_and_concepts(self):
        resp = await self.orch.search("Acme Corp", SearchOptions(limit=6))
        shared = {s["entity"]["name"]: s["hitCount"] for s in resp.graph_insights["sharedEntities"]}
        self.assertGreaterEqual(shared.get("Acme Corp", 0), 2)
        self.assertIn("Acme Corp", [e["name"] for e in resp.graph_insights["queryEntities"]])
        self.assertTrue(resp.graph_insights["clusters"])

        names = [c.name for c in resp.concepts]
        self.assertEqual(names[0], "Acme Corp")
        self.assertLessEqual(len(resp.concepts), 10)

    async def test_response_facets(self):
        resp = await self.orch.search("Acme Corp", SearchOptions(limit=6))
        self.assertEqual(sum(resp.facets["contentTypes"].values()), len(resp.results))
        self.assertEqual(resp.facets["vault"]["totalChunks"], 6)

    async def test_min_similarity_unrelated_returns_empty(self):
        store = memory_store()
        store.batch_upsert([make_chunk("x", "a.md", "Tomato soup"), make_chunk("y", "b.md", "River run")])
        orch = SearchOrchestrator(store, self.embedder, KnowledgeGraphIndex())
        resp = await orch.search("Acme", SearchOptions(min_similarity=0.9))
        self.assertEqual(resp.results, [])
        self.assertEqual(resp.total_found, 0)
        store.close()

    async def test_unrelated_chunks_are_not_attached_as_related(self):
        store = memory_store()
        store.batch_upsert(
            [
                make_chunk("a", "physics/qcd.md", "quantum chromodynamics lattice"),
                make_chunk("b", "recipes/soup.md", "Tomato soup with basil"),
                make_chunk("c", "journal.md", "Went running by the river"),
                make_chunk("d", "physics/gauge.md", "quantum chromodynamics lattice gauge"),
            ]
        )
        orch = SearchOrchestrator(store, self.embedder, KnowledgeGraphIndex(), related_min_similarity=0.7)
        resp = await orch.search("quantum chromodynamics lattice", SearchOptions(limit=1))

        top = resp.results[0]
        self.assertEqual(top.chunk.id, "a")
        self.assertEqual([(r.chunk_id, r.reason) for r in top.related_chunks], [("d", "similarity")])
        self.assertGreaterEqual(top.related_chunks[0].score, 0.7)
        store.close()

    async def test_invalid_input_rejected_before_embedding(self):
        with self.assertRaises(InvalidInput):
            await self.orch.search("   ")
        with self.assertRaises(InvalidInput):
            await self.orch.search("Acme", SearchOptions(limit=0))
        with self.assertRaises(InvalidInput):
            await self.orch.search("Acme", SearchOptions(tag_mode="most"))
        self.assertEqual(self.embedder.calls, 0)

    async def test_embedding_failure_is_upstream_unavailable(self):
        orch = SearchOrchestrator(self.store, FailingEmbedder(), self.index)
        with self.assertRaises(UpstreamUnavailable) as cm:
            await orch.search("Acme")
        self.assertTrue(cm.exception.retryable)

    async def test_failing_enrichment_degrades(self):
        def boom(*a, **kw):
            raise RuntimeError("link table gone")

        self.store.chunks_sharing_wikilinks = boom
        with self.assertLogs("vaultsearch.search.orchestrator", level="WARNING"):
            resp = await self.orch.search("Acme Corp", SearchOptions(limit=3))
        self.assertEqual(len(resp.results), 3)
        self.assertTrue(all(r.related_chunks == [] for r in resp.results))
        self.assertTrue(any(r.highlights for r in resp.results))

    async def test_search_does_not_mutate(self):
        before_ids = self.store.all_chunk_ids()
        before_graph = self.index.to_dict()
        await self.orch.search("Acme Corp")
        await self.orch.explore_knowledge_cluster("Acme Corp")
        self.assertEqual(self.store.all_chunk_ids(), before_ids)
        self.assertEqual(self.index.to_dict(), before_graph)

    async def test_concurrent_requests_match_sequential(self):
        one = await self.orch.search("Acme Corp", SearchOptions(limit=3))
        a, b = await asyncio.gather(
            self.orch.search("Acme Corp", SearchOptions(limit=3)),
            self.orch.search("soup", SearchOptions(limit=3)),
        )
        self.assertEqual([r.chunk.id for r in a.results], [r.chunk.id for r in one.results])
        self.assertTrue(b.results)

    async def test_cancellation(self):
        task = asyncio.create_task(self.orch.search("Acme Corp", SearchOptions(limit=6)))
        await asyncio.sleep(0)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        # Shared state is untouched and usable.
        resp = await self.orch.search("Acme Corp", SearchOptions(limit=2))
        self.assertEqual(len(resp.results), 2)


class TestModes(OrchestratorTestCase):
    async def test_search_by_tag_recency(self):
        resp = await self.orch.search_by_tag("work")
        self.assertEqual([r.chunk.id for r in resp.results], ["B", "A"])
        self.assertTrue(all(r.score == 1.0 for r in resp.results))
        self.assertEqual(self.embedder.calls, 0)

    async def test_search_by_tag_relevance(self):
        resp = await self.orch.search_by_tag("#work", order="relevance")
        self.assertEqual(resp.results[0].chunk.id, "B")
        self.assertEqual(resp.results[0].score, 1.0)
        self.assertEqual(resp.results[1].score, 0.5)
        with self.assertRaises(InvalidInput):
            await self.orch.search_by_tag("work", order="random")

    async def test_search_mocs_without_query_ranks_by_inbound_links(self):
        resp = await self.orch.search_mocs()
        self.assertEqual([r.chunk.id for r in resp.results], ["M1", "M2"])
        self.assertEqual([r.score for r in resp.results], [1.0, 0.5])
        self.assertEqual(self.embedder.calls, 0)

    async def test_search_mocs_with_query(self):
        resp = await self.orch.search_mocs("recipes")
        self.assertTrue(resp.results)
        self.assertTrue(all(r.chunk.content_type == "moc" for r in resp.results))

    async def test_search_conversations(self):
        resp = await self.orch.search_conversations("Alice")
        self.assertEqual([r.chunk.id for r in resp.results], ["V"])

    async def test_find_related_notes_excludes_file(self):
        for strategy in ("average", "best"):
            resp = await self.orch.find_related_notes("notes/acme.md", SearchOptions(limit=3), strategy=strategy)
            self.assertTrue(resp.results)
            self.assertNotIn("notes/acme.md", {r.chunk.file_name for r in resp.results})
            scores = [r.score for r in resp.results]
            self.assertEqual(scores, sorted(scores, reverse=True))

    async def test_find_related_notes_unknown_file(self):
        resp = await self.orch.find_related_notes("nope.md")
        self.assertEqual(resp.results, [])

    async def test_explore_knowledge_cluster(self):
        resp = await self.orch.explore_knowledge_cluster("Acme Corp")
        ids = [r.chunk.id for r in resp.results]
        self.assertIn("A", ids)
        self.assertIn("B", ids)
        self.assertTrue(all(0.0 <= r.score <= 1.0 for r in resp.results))
        self.assertEqual(resp.graph_insights["seedEntity"]["name"], "Acme Corp")
        self.assertIn("cluster", resp.graph_insights)

    async def test_explore_unknown_concept(self):
        resp = await self.orch.explore_knowledge_cluster("Quantum Basket Weaving")
        self.assertEqual(resp.results, [])

    async def test_get_file_chunks_and_delete(self):
        resp = await self.orch.get_file_chunks("notes/acme.md")
        self.assertEqual([r.chunk.id for r in resp.results], ["A"])

        self.store.delete_chunks_by_file("notes/acme.md")
        resp = await self.orch.get_file_chunks("notes/acme.md")
        self.assertEqual(resp.results, [])
        self.assertEqual(self.index.entities_in_chunk("A"), [])
        # Alice is still mentioned in the conversation log.
        self.assertEqual(self.index.resolve("Alice").chunk_ids(), {"V"})

    async def test_stats_and_metrics(self):
        st = await self.orch.get_stats()
        self.assertEqual(st.total_chunks, 6)
        self.assertEqual(st.by_content_type["moc"], 2)
        await self.orch.search("Acme")
        m = await self.orch.performance_metrics()
        self.assertGreaterEqual(m["totalQueries"], 1)
        self.assertEqual(m["graph"]["entities"], self.index.stats()["entities"])


if __name__ == "__main__":
    unittest.main()
