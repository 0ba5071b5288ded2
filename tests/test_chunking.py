from __future__ import annotations

import unittest

from kbagent.chunking import chunk_note, frontmatter_length


class ChunkingTests(unittest.TestCase):
    def test_headings_scope_chunks(self) -> None:
        text = "# Title\n\nIntro paragraph.\n\n## Part A\n\nAlpha text.\n\n## Part B\n\nBeta text.\n"
        chunks = chunk_note(text, max_chars=200, overlap=20)
        self.assertEqual([c.heading for c in chunks], ["Title", "Title > Part A", "Title > Part B"])
        self.assertEqual([c.text for c in chunks], ["Intro paragraph.", "Alpha text.", "Beta text."])
        self.assertEqual([c.index for c in chunks], [0, 1, 2])

    def test_byte_offsets_point_into_the_note(self) -> None:
        text = "---\ntags: [x]\n---\n# Café\n\nNaïve résumé.\n"
        chunks = chunk_note(text, max_chars=200, overlap=0)
        self.assertEqual(len(chunks), 1)
        raw = text.encode("utf-8")
        chunk = chunks[0]
        self.assertEqual(raw[chunk.byte_start : chunk.byte_end].decode("utf-8"), "Naïve résumé.")
        self.assertEqual(chunk.heading, "Café")

    def test_paragraphs_under_same_heading_are_packed(self) -> None:
        text = "# H\n\none.\n\ntwo.\n\nthree.\n"
        chunks = chunk_note(text, max_chars=200, overlap=0)
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].text, "one.\n\ntwo.\n\nthree.")

    def test_oversized_paragraph_is_split_with_bounded_pieces(self) -> None:
        sentence = "This is a sentence about retrieval quality. "
        text = "# Long\n\n" + sentence * 40
        chunks = chunk_note(text, max_chars=200, overlap=30)
        self.assertGreater(len(chunks), 5)
        for chunk in chunks:
            self.assertLessEqual(len(chunk.text), 200)
            self.assertEqual(chunk.heading, "Long")

    def test_empty_and_invalid_inputs(self) -> None:
        self.assertEqual(chunk_note("   \n"), [])
        with self.assertRaises(ValueError):
            chunk_note("x", max_chars=0)
        with self.assertRaises(ValueError):
            chunk_note("x", max_chars=10, overlap=10)

    def test_frontmatter_length(self) -> None:
        self.assertEqual(frontmatter_length("---\na: 1\n---\nbody"), len("---\na: 1\n---\n"))
        self.assertEqual(frontmatter_length("---\nunterminated"), 0)
        self.assertEqual(frontmatter_length("body"), 0)


if __name__ == "__main__":
    unittest.main()
