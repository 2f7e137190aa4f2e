import threading
import unittest
from unittest import mock

from vaultsearch.graph.disambiguate import Disambiguator, trigram_vector
from vaultsearch.graph.extract import CandidateRelationship, DetectedMention, EntityExtractor, ExtractionResult
from vaultsearch.graph.knowledge_graph import ROOT_CLUSTER_ID, KnowledgeGraphIndex


def scenario_index():
    ex = EntityExtractor()
    idx = KnowledgeGraphIndex()
    idx.replace_chunk(ex.extract("A", "Alice works at Acme Corp", tags=["people"]))
    idx.replace_chunk(ex.extract("B", "Acme Corp is located in Springfield", tags=["places"]))
    return ex, idx


def mention(surface, etype, start=0):
    return DetectedMention(surface, start, start + len(surface), etype, 0.9)


class TestKnowledgeGraphIndex(unittest.TestCase):
    def setUp(self):
        self.ex, self.idx = scenario_index()

    def test_scenario_entities(self):
        alice = self.idx.resolve("Alice")
        acme = self.idx.resolve("Acme Corp")
        springfield = self.idx.resolve("Springfield")
        self.assertEqual((alice.name, alice.type), ("Alice", "person"))
        self.assertEqual((acme.name, acme.type), ("Acme Corp", "organization"))
        self.assertEqual((springfield.name, springfield.type), ("Springfield", "location"))

        # One canonical Acme across both chunks.
        self.assertEqual(acme.chunk_ids(), {"A", "B"})
        self.assertEqual(self.idx.stats()["entities"], 3)

    def test_scenario_relationships(self):
        alice = self.idx.resolve("Alice")
        acme = self.idx.resolve("Acme Corp")
        springfield = self.idx.resolve("Springfield")

        rels = {(r.source_id, r.type, r.target_id) for r in self.idx.relationships_of(acme.id)}
        self.assertIn((alice.id, "works-for", acme.id), rels)
        self.assertIn((acme.id, "located-in", springfield.id), rels)

    def test_neighbors_both_directions_and_type_filter(self):
        acme = self.idx.resolve("Acme Corp")
        names = {e.name for e in self.idx.neighbors(acme.id)}
        self.assertEqual(names, {"Alice", "Springfield"})
        only = {e.name for e in self.idx.neighbors(acme.id, ["located-in"])}
        self.assertEqual(only, {"Springfield"})
        self.assertEqual(self.idx.neighbors("no-such-entity"), [])

    def test_entities_in_chunk(self):
        self.assertEqual({e.name for e in self.idx.entities_in_chunk("A")}, {"Alice", "Acme Corp"})
        self.assertEqual(self.idx.entities_in_chunk("missing"), [])

    def test_replace_chunk_does_not_duplicate(self):
        res = self.ex.extract("A", "Alice works at Acme Corp", tags=["people"])
        self.idx.replace_chunk(res)
        self.idx.replace_chunk(res)
        acme = self.idx.resolve("Acme Corp")
        self.assertEqual(acme.mention_count, 2)
        self.assertEqual(self.idx.stats()["relationships"], 2)

    def test_replace_chunk_with_new_text_evicts_old_contribution(self):
        self.idx.replace_chunk(self.ex.extract("A", "Bob lives in Shelbyville"))
        self.assertIsNone(self.idx.get_entity("person:alice"))
        self.assertEqual(self.idx.resolve("Acme Corp").chunk_ids(), {"B"})
        self.assertIsNotNone(self.idx.resolve("Shelbyville"))

    def test_remove_chunks_prunes_by_reference_count(self):
        self.idx.remove_chunks(["A"])
        self.assertIsNone(self.idx.resolve("Alice"))
        acme = self.idx.resolve("Acme Corp")
        self.assertEqual(acme.mention_count, 1)
        types = {r.type for r in self.idx.relationships_of(acme.id)}
        self.assertEqual(types, {"located-in"})

        self.idx.remove_chunks(["B"])
        self.assertEqual(self.idx.stats()["entities"], 0)
        self.assertEqual(self.idx.stats()["relationships"], 0)

    def test_cluster_of_returns_chain_to_root(self):
        acme = self.idx.resolve("Acme Corp")
        cluster, ancestors = self.idx.cluster_of(acme.id)
        self.assertIn(acme.id, cluster.entity_ids)
        self.assertEqual(ancestors[-1].id, ROOT_CLUSTER_ID)

        component = next(c for c in [cluster, *ancestors] if c.level == 1)
        self.assertEqual(component.name, "Acme Corp")
        self.assertEqual(len(component.entity_ids), 3)
        self.assertIsNone(self.idx.cluster_of("missing"))

    def test_cluster_hierarchy_is_acyclic(self):
        self.idx.replace_chunk(self.ex.extract("C", "Carl Jung wrote about Analytical Psychology"))
        clusters = {c.id: c for c in self.idx.clusters()}
        for c in clusters.values():
            seen = set()
            cur = c
            while cur.parent_id is not None:
                self.assertNotIn(cur.id, seen)
                seen.add(cur.id)
                cur = clusters[cur.parent_id]
            self.assertEqual(cur.id, ROOT_CLUSTER_ID)

    def test_serialisation_round_trip(self):
        restored = KnowledgeGraphIndex.from_dict(self.idx.to_dict())
        self.assertEqual(restored.stats(), self.idx.stats())
        self.assertEqual(restored.resolve("acme corp").id, self.idx.resolve("Acme Corp").id)

    def test_concurrent_replace_of_one_chunk(self):
        res = self.ex.extract("A", "Alice works at Acme Corp", tags=["people"])
        threads = [threading.Thread(target=self.idx.replace_chunk, args=(res,)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(self.idx.resolve("Alice").mention_count, 1)
        self.assertEqual(self.idx.resolve("Acme Corp").mention_count, 2)

    def test_readers_get_copies(self):
        acme = self.idx.resolve("Acme Corp")
        acme.mentions.clear()
        self.assertEqual(self.idx.resolve("Acme Corp").mention_count, 2)

    def test_failed_replace_leaves_index_unchanged(self):
        def embed(name):
            if "globex" in name:
                raise ConnectionError("name embedder down")
            return trigram_vector(name)

        idx = KnowledgeGraphIndex(Disambiguator(embed_name=embed))
        idx.replace_chunk(self.ex.extract("A", "Alice works at Acme Corp", tags=["people"]))
        idx.replace_chunk(self.ex.extract("B", "Acme Corp is located in Springfield", tags=["places"]))
        before = idx.to_dict()
        clusters_before = [c.id for c in idx.clusters()]

        # Old contribution of A is evicted and Bob linked before Globex fails.
        with self.assertRaises(ConnectionError):
            idx.replace_chunk(self.ex.extract("A", "Bob works at Globex Corp"))

        self.assertEqual(idx.to_dict(), before)
        self.assertEqual([c.id for c in idx.clusters()], clusters_before)
        self.assertEqual(idx.resolve("Alice").chunk_ids(), {"A"})
        self.assertIsNone(idx.resolve("Bob"))
        self.assertEqual(idx.resolve("Acme Corp").chunk_ids(), {"A", "B"})


class TestEntityTyping(unittest.TestCase):
    def test_type_follows_remaining_mentions(self):
        idx = KnowledgeGraphIndex()
        idx.replace_chunk(
            ExtractionResult(
                "V",
                [mention("Alice", "other"), mention("Acme Corp", "organization", 10)],
                [CandidateRelationship(0, 1, "related-to", 0.5)],
            )
        )
        self.assertEqual(idx.resolve("Alice").id, "other:alice")

        idx.replace_chunk(ExtractionResult("A", [mention("Alice", "person")]))
        alice = idx.resolve("Alice")
        self.assertEqual((alice.id, alice.type), ("person:alice", "person"))
        self.assertEqual(alice.chunk_ids(), {"V", "A"})
        self.assertIsNone(idx.get_entity("other:alice"))
        self.assertEqual({e.name for e in idx.neighbors("person:alice")}, {"Acme Corp"})
        self.assertIn("person:alice", {e.id for e in idx.entities_in_chunk("V")})

        idx.remove_chunks(["A"])
        alice = idx.resolve("Alice")
        self.assertEqual((alice.id, alice.type), ("other:alice", "other"))
        self.assertIsNone(idx.get_entity("person:alice"))
        self.assertEqual({e.name for e in idx.neighbors("other:alice")}, {"Acme Corp"})
        self.assertEqual(idx.stats()["relationships"], 1)

    def test_aliases_leave_with_their_mentions(self):
        idx = KnowledgeGraphIndex()
        idx.replace_chunk(ExtractionResult("A", [mention("Acme Corporation", "organization")]))
        idx.replace_chunk(ExtractionResult("B", [mention("Acme Corporations", "organization")]))
        acme = idx.resolve("Acme Corporation")
        self.assertEqual(acme.chunk_ids(), {"A", "B"})
        self.assertIn(acme.id, idx._by_norm["acme corporations"])

        idx.remove_chunks(["B"])
        self.assertNotIn("acme corporations", idx._by_norm)
        self.assertEqual(idx._entity_norms[acme.id], {"acme corporation"})


class TestClusterRebuilds(unittest.TestCase):
    def test_clusters_rebuilt_once_per_batch(self):
        ex = EntityExtractor()
        idx = KnowledgeGraphIndex()
        with mock.patch.object(idx, "_rebuild_clusters", wraps=idx._rebuild_clusters) as rebuild:
            for i in range(10):
                idx.replace_chunk(ex.extract(f"c{i}", "Alice works at Acme Corp"))
            idx.remove_chunks(["c0", "c1"])
            self.assertEqual(rebuild.call_count, 0)

            cluster, _ = idx.cluster_of(idx.resolve("Acme Corp").id)
            idx.clusters()
            idx.stats()
            self.assertEqual(rebuild.call_count, 1)

        self.assertIn(idx.resolve("Alice").id, cluster.entity_ids)


if __name__ == "__main__":
    unittest.main()
