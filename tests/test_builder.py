import tempfile
import threading
import time
import unittest
from pathlib import Path

from fakes import make_chunk, memory_store
from vaultsearch.graph import snapshot
from vaultsearch.graph.build import GraphBuilder
from vaultsearch.graph.disambiguate import Disambiguator, trigram_vector
from vaultsearch.graph.extract import EntityExtractor
from vaultsearch.graph.knowledge_graph import KnowledgeGraphIndex


class FlakyExtractor(EntityExtractor):
    def __init__(self, fail_ids=(), block_ids=()):
        super().__init__()
        self.fail_ids = set(fail_ids)
        self.block_ids = set(block_ids)
        self.release = threading.Event()

    def extract(self, chunk_id, text, **kw):
        if chunk_id in self.fail_ids:
            raise RuntimeError("model crashed")
        if chunk_id in self.block_ids:
            self.release.wait(2.0)
        return super().extract(chunk_id, text, **kw)


class SlowExtractor(EntityExtractor):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def extract(self, chunk_id, text, **kw):
        time.sleep(self.delay)
        return super().extract(chunk_id, text, **kw)


def names_failing_on(word):
    def embed(name):
        if word in name:
            raise ConnectionError("name embedder down")
        return trigram_vector(name)

    return embed


def scenario_chunks():
    return [
        make_chunk("A", "notes/acme.md", "Alice works at Acme Corp", tags=("people",)),
        make_chunk("B", "notes/places.md", "Acme Corp is located in Springfield", tags=("places",)),
    ]


class TestGraphBuilder(unittest.TestCase):
    def setUp(self):
        self.store = memory_store()
        self.index = KnowledgeGraphIndex()

    def tearDown(self):
        self.store.close()

    def test_upserts_flow_into_the_index(self):
        builder = GraphBuilder(self.index).attach(self.store)
        self.store.batch_upsert(scenario_chunks())
        builder.drain()
        self.assertEqual({e.name for e in self.index.entities()}, {"Alice", "Acme Corp", "Springfield"})
        builder.close()

    def test_delete_file_evicts_entities(self):
        builder = GraphBuilder(self.index).attach(self.store)
        self.store.batch_upsert(scenario_chunks())
        builder.drain()

        self.store.delete_chunks_by_file("notes/acme.md")
        self.assertEqual(self.store.get_chunks_by_file("notes/acme.md"), [])
        self.assertIsNone(self.index.resolve("Alice"))
        self.assertIsNotNone(self.index.resolve("Acme Corp"))
        builder.close()

    def test_clear_all_empties_the_index(self):
        builder = GraphBuilder(self.index).attach(self.store)
        self.store.batch_upsert(scenario_chunks())
        builder.drain()
        self.store.clear_all()
        self.assertEqual(self.index.stats()["entities"], 0)
        builder.close()

    def test_failed_extraction_is_pending_not_fatal(self):
        extractor = FlakyExtractor(fail_ids={"A"})
        builder = GraphBuilder(self.index, extractor).attach(self.store)
        with self.assertLogs("vaultsearch.graph.build", level="WARNING"):
            changed = self.store.batch_upsert(scenario_chunks())
            builder.drain()

        self.assertEqual(changed, 2)
        self.assertEqual(builder.pending, {"A"})
        self.assertIsNotNone(self.store.get_by_id("A"))
        self.assertEqual(self.index.entities_in_chunk("A"), [])
        self.assertIsNotNone(self.index.resolve("Springfield"))

        extractor.fail_ids.clear()
        stats = builder.reprocess_pending()
        self.assertEqual(stats["still_pending"], 0)
        self.assertIsNotNone(self.index.resolve("Alice"))
        builder.close()

    def test_timeout_marks_pending(self):
        extractor = FlakyExtractor(block_ids={"A"})
        builder = GraphBuilder(self.index, extractor, timeout_s=0.05).attach(self.store)
        with self.assertLogs("vaultsearch.graph.build", level="WARNING") as logs:
            self.store.upsert(scenario_chunks()[0])
            builder.drain()
        extractor.release.set()

        self.assertIn("timed out", "\n".join(logs.output))
        self.assertEqual(builder.pending, {"A"})
        builder.close()

    def test_pending_chunk_deleted_is_dropped(self):
        extractor = FlakyExtractor(fail_ids={"A"})
        builder = GraphBuilder(self.index, extractor).attach(self.store)
        with self.assertLogs("vaultsearch.graph.build", level="WARNING"):
            self.store.batch_upsert(scenario_chunks())
            builder.drain()
        self.store.delete_chunks_by_file("notes/acme.md")
        self.assertEqual(builder.pending, set())
        builder.close()

    def test_linking_failure_is_pending_not_fatal(self):
        index = KnowledgeGraphIndex(Disambiguator(embed_name=names_failing_on("globex")))
        builder = GraphBuilder(index).attach(self.store)
        self.store.batch_upsert(scenario_chunks())
        builder.drain()
        before = index.to_dict()

        with self.assertLogs("vaultsearch.graph.build", level="WARNING") as logs:
            stored = self.store.upsert(make_chunk("G", "notes/globex.md", "Bob works at Globex Corp"))
            builder.drain()

        self.assertTrue(stored)
        self.assertIsNotNone(self.store.get_by_id("G"))
        self.assertIn("linking failed", "\n".join(logs.output))
        self.assertEqual(builder.pending, {"G"})
        self.assertEqual(index.entities_in_chunk("G"), [])
        # Bob was linked before Globex failed; nothing of the chunk is left behind.
        self.assertEqual(index.to_dict(), before)

        index.disambiguator.embed_name = trigram_vector
        stats = builder.reprocess_pending()
        self.assertEqual(stats["still_pending"], 0)
        self.assertEqual({e.name for e in index.entities_in_chunk("G")}, {"Bob", "Globex Corp"})
        builder.close()

    def test_upserts_do_not_wait_for_extraction(self):
        builder = GraphBuilder(self.index, SlowExtractor(0.3), timeout_s=5.0).attach(self.store)
        chunks = [make_chunk(f"c{i}", f"notes/{i}.md", f"Alice works at Acme Corp, note {i}") for i in range(4)]

        start = time.monotonic()
        self.assertEqual(self.store.batch_upsert(chunks), 4)
        self.assertLess(time.monotonic() - start, 0.25)

        self.assertTrue(builder.drain(timeout=10.0))
        self.assertEqual(self.index.resolve("Acme Corp").chunk_ids(), {c.id for c in chunks})
        self.assertEqual(builder.pending, set())
        builder.close()

    def test_delete_while_extracting_does_not_resurrect(self):
        extractor = FlakyExtractor(block_ids={"A"})
        builder = GraphBuilder(self.index, extractor, timeout_s=0.5).attach(self.store)
        self.store.upsert(scenario_chunks()[0])
        self.store.delete_chunks_by_file("notes/acme.md")
        extractor.release.set()
        self.assertTrue(builder.drain(timeout=5.0))

        self.assertEqual(self.index.entities_in_chunk("A"), [])
        self.assertIsNone(self.index.resolve("Alice"))
        self.assertEqual(builder.pending, set())
        builder.close()

    def test_rebuild_from_store(self):
        self.store.batch_upsert(scenario_chunks())
        builder = GraphBuilder(self.index)
        res = builder.rebuild(self.store)
        self.assertEqual(res["chunks_seen"], 2)
        self.assertEqual(res["entities"], 3)
        self.assertEqual(res["relationships"], 2)
        builder.close()

    def test_snapshot_round_trip(self):
        builder = GraphBuilder(self.index).attach(self.store)
        self.store.batch_upsert(scenario_chunks())
        builder.drain()
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "vault.db"
            path = snapshot.save(db, self.index, pending={"X"})
            self.assertEqual(path.name, "vault.db.graph.json")

            snap = snapshot.load(db)
            self.assertEqual(snap.pending, {"X"})
            self.assertEqual(snap.index.stats(), self.index.stats())

            with self.assertRaises(FileNotFoundError):
                snapshot.load(Path(tmp) / "other.db")
        builder.close()


if __name__ == "__main__":
    unittest.main()
