import unittest

from fakes import make_chunk
from vaultsearch.search.enrich import chunk_facets, highlights, query_terms, top_folder


class TestHighlights(unittest.TestCase):
    def test_highlights_wrap_query_terms(self):
        text = "Attachment theory proposes early caregiver relationships shape later relationships."
        hs = highlights(text, query_terms("What is attachment theory?"))
        self.assertTrue(hs)
        for h in hs:
            self.assertEqual(text[h.start : h.end].strip(), h.text)
        self.assertIn("Attachment", hs[0].text)

    def test_highlights_are_bounded(self):
        text = " ".join(["acme"] * 50)
        self.assertLessEqual(len(highlights(text, ["acme"])), 2)
        many = " ".join(f"alpha beta gamma delta epsilon {'x' * 120}" for _ in range(5))
        self.assertLessEqual(len(highlights(many, ["alpha", "beta", "gamma", "delta", "epsilon"])), 5)

    def test_no_terms_no_highlights(self):
        self.assertEqual(highlights("anything at all", []), [])
        self.assertEqual(query_terms(None), [])

    def test_regex_characters_are_literal(self):
        self.assertEqual(highlights("plain text", ["(a+"]), [])


class TestFacets(unittest.TestCase):
    def test_chunk_facets_rank_tags_globally(self):
        chunk = make_chunk("a", "notes/sub/x.md", "text", tags=("rare", "common", "mid", "other"))
        facets = chunk_facets(chunk, {"common": 10, "mid": 5, "rare": 1})
        self.assertEqual(facets["tags"], ["common", "mid", "rare"])
        self.assertEqual(facets["folder"], "notes")
        self.assertEqual(facets["contentType"], "note")

    def test_top_folder(self):
        self.assertEqual(top_folder(""), "Root")
        self.assertEqual(top_folder("a/b/c"), "a")


if __name__ == "__main__":
    unittest.main()
