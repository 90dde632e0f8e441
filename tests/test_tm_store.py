import os
import shutil
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor

SAMPLE_TMX = """<?xml version="1.0" encoding="UTF-8"?>
<tmx version="1.4">
  <header srclang="en" datatype="plaintext" segtype="sentence" adminlang="en" o-tmf="test" creationtool="test" creationtoolversion="1"/>
  <body>
    <tu>
      <tuv xml:lang="en"><seg>Save changes</seg></tuv>
      <tuv xml:lang="de"><seg>Änderungen speichern</seg></tuv>
    </tu>
    <tu>
      <tuv xml:lang="de"><seg>Abbrechen</seg></tuv>
      <tuv xml:lang="en"><seg>Cancel</seg></tuv>
    </tu>
    <tu>
      <tuv xml:lang="en"><seg>Orphan</seg></tuv>
    </tu>
  </body>
</tmx>
"""


class TestTranslationMemoryStore(unittest.TestCase):
    def setUp(self):
        from pipeline.tm_store import TranslationMemoryStore

        self.test_dir = tempfile.mkdtemp()
        self.store = TranslationMemoryStore(os.path.join(self.test_dir, "tm.db"))

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.test_dir)

    def test_exact_match_after_add(self):
        self.store.add_entry("Hello", "Hallo", "en", "de")

        matches = self.store.find_matches("Hello", "en", "de")
        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0].score, 100)
        self.assertTrue(matches[0].is_exact)
        self.assertEqual(matches[0].entry.target_text, "Hallo")

    def test_readding_same_key_updates_in_place(self):
        first = self.store.add_entry("Hello", "Hallo", "en", "de")
        second = self.store.add_entry("Hello", "Servus", "en", "de")

        self.assertEqual(first.status, "added")
        self.assertEqual(second.status, "updated")
        self.assertEqual(self.store.count(), 1)
        entry = self.store.get_entry(first.entry.entry_id)
        self.assertEqual(entry.target_text, "Servus")
        self.assertEqual(entry.usage_count, 2)

    def test_exact_match_bumps_usage_in_background(self):
        added = self.store.add_entry("Hello", "Hallo", "en", "de")
        self.store.find_matches("Hello", "en", "de")
        self.store.flush()

        entry = self.store.get_entry(added.entry.entry_id)
        self.assertEqual(entry.usage_count, 2)
        self.assertIsNotNone(entry.last_used_at)

    def test_language_pair_is_always_part_of_the_key(self):
        self.store.add_entry("Hello", "Hallo", "en", "de")

        self.assertEqual(self.store.find_matches("Hello", "en", "fr"), [])
        self.assertEqual(self.store.find_matches("Hello", "de", "en"), [])

    def test_project_scoping(self):
        self.store.add_entry("Hello", "Hallo (global)", "en", "de")
        self.store.add_entry("Hello", "Hallo (p1)", "en", "de", project_scope="p1")
        self.store.add_entry("Bye", "Tschüss (p2)", "en", "de", project_scope="p2")

        unscoped = self.store.find_matches("Hello", "en", "de")
        self.assertEqual([m.entry.target_text for m in unscoped], ["Hallo (global)"])

        scoped = self.store.find_matches("Hello", "en", "de", project_scope="p1")
        self.assertEqual([m.entry.target_text for m in scoped], ["Hallo (p1)", "Hallo (global)"])

        self.assertEqual(self.store.find_matches("Bye", "en", "de"), [])
        self.assertEqual(self.store.find_matches("Bye", "en", "de", project_scope="p1"), [])
        self.assertEqual(len(self.store.find_matches("Bye", "en", "de", project_scope="p2")), 1)

    def test_fuzzy_matches_are_ranked_below_exact(self):
        self.store.add_entry("Open the file", "Datei öffnen", "en", "de")
        self.store.add_entry("Open the files", "Dateien öffnen", "en", "de")
        self.store.add_entry("Something unrelated", "Etwas anderes", "en", "de")

        self.assertEqual(len(self.store.find_matches("Open the file", "en", "de")), 1)

        matches = self.store.find_matches("Open the file", "en", "de", fuzzy=True)
        self.assertEqual([m.entry.source_text for m in matches], ["Open the file", "Open the files"])
        self.assertEqual(matches[0].score, 100)
        self.assertTrue(75 <= matches[1].score < 100)

    def test_fuzzy_normalization_never_claims_exact(self):
        self.store.add_entry("Open <b>the</b> file", "Datei öffnen", "en", "de")

        matches = self.store.find_matches("open the  FILE", "en", "de", fuzzy=True)
        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0].score, 99)
        self.assertFalse(matches[0].is_exact)

    def test_fuzzy_enabled_by_configuration(self):
        from pipeline.tm_store import TranslationMemoryStore

        store = TranslationMemoryStore(":memory:", fuzzy_enabled=True, fuzzy_threshold=90)
        try:
            store.add_entry("Print the report", "Bericht drucken", "en", "de")
            self.assertEqual(len(store.find_matches("Print the reports", "en", "de")), 1)
            self.assertEqual(store.find_matches("Print a summary", "en", "de"), [])
        finally:
            store.close()

    def test_missing_fields_are_rejected(self):
        from pipeline.errors import ValidationError

        with self.assertRaises(ValidationError) as ctx:
            self.store.add_entry("Hello", "", "en", "de")
        self.assertEqual(ctx.exception.details["missing"], ["target_text"])
        self.assertEqual(self.store.count(), 0)

    def test_get_entry_not_found(self):
        from pipeline.errors import NotFoundError

        with self.assertRaises(NotFoundError):
            self.store.get_entry(12345)

    def test_concurrent_adds_do_not_duplicate(self):
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: self.store.add_entry("Hello", f"Hallo {i}", "en", "de"), range(16)))

        self.assertEqual(self.store.count(), 1)
        entry = self.store.find_matches("Hello", "en", "de")[0].entry
        self.assertEqual(entry.usage_count, 16)

    def test_import_tmx(self):
        path = os.path.join(self.test_dir, "sample.tmx")
        with open(path, "w", encoding="utf-8") as f:
            f.write(SAMPLE_TMX)

        result = self.store.import_tmx(path, project_scope="p1", created_by="pm")

        self.assertEqual(result.total_units, 3)
        self.assertEqual(result.added_count, 2)
        self.assertEqual(result.skipped_count, 1)
        self.assertEqual(len(result.errors), 1)

        cancel = self.store.find_matches("Cancel", "en", "de", project_scope="p1")
        self.assertEqual(cancel[0].entry.target_text, "Abbrechen")
        self.assertEqual(cancel[0].entry.created_by, "pm")

        again = self.store.import_tmx(path, project_scope="p1")
        self.assertEqual(again.updated_count, 2)
        self.assertEqual(self.store.count(), 2)

    def test_import_broken_tmx_raises_codec_error(self):
        from pipeline.errors import CodecError

        path = os.path.join(self.test_dir, "broken.tmx")
        with open(path, "w", encoding="utf-8") as f:
            f.write("<tmx><body>")
        with self.assertRaises(CodecError):
            self.store.import_tmx(path)


if __name__ == "__main__":
    unittest.main()
