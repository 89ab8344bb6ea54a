from __future__ import annotations

import unittest
from datetime import datetime, timezone
from pathlib import Path
from tempfile import TemporaryDirectory

import yaml

from app.dictionary.canonical_dictionary import CanonicalDictionary, bump_patch_version
from app.dictionary.dictionary_store import DictionaryStore, load_dictionary_file, write_dictionary_file
from app.dictionary.dictionary_updater import apply_suggestions
from app.errors import DictionaryError
from oracle.schema import FieldSuggestion

DICTIONARY_PATH = Path(__file__).resolve().parents[1] / "dictionaries" / "container_ontology.yml"
NOW = datetime(2026, 10, 19, tzinfo=timezone.utc)


def _suggestion(header: str, field: str, confidence: float, action: str = "ADD_SYNONYM") -> FieldSuggestion:
    return FieldSuggestion(unmapped_header=header, canonical_field=field, confidence=confidence, action=action)


class TestCanonicalDictionary(unittest.TestCase):
    def setUp(self) -> None:
        self.dictionary = load_dictionary_file(DICTIONARY_PATH)

    def test_required_fields(self) -> None:
        self.assertEqual(
            self.dictionary.required_fields,
            ("container_number", "carrier", "pol", "pod", "business_unit"),
        )
        self.assertIn("eta", self.dictionary.optional_fields)

    def test_lookup_header_normalizes(self) -> None:
        self.assertEqual(self.dictionary.lookup_header("  CNTR-No "), "container_number")
        self.assertEqual(self.dictionary.lookup_header("Port of Loading"), "pol")
        self.assertIsNone(self.dictionary.lookup_header("Box No"))

    def test_nested_synonym_groups_are_flattened(self) -> None:
        mbl = self.dictionary.get("mbl")
        self.assertIsNotNone(mbl)
        self.assertIn("BL Number", mbl.synonyms)
        self.assertEqual(self.dictionary.lookup_header("Ocean BL"), "mbl")

    def test_document_round_trip_keeps_groups(self) -> None:
        restored = CanonicalDictionary.from_document(self.dictionary.to_document())
        self.assertEqual(restored.version, self.dictionary.version)
        self.assertEqual(restored.get("mbl").synonym_groups, self.dictionary.get("mbl").synonym_groups)

    def test_rejects_document_without_identity(self) -> None:
        with self.assertRaises(DictionaryError):
            CanonicalDictionary.from_document({"version": "1.0.0", "required_fields": {"carrier": {}}})

    def test_rejects_non_semantic_version(self) -> None:
        with self.assertRaises(DictionaryError):
            CanonicalDictionary.from_document({"version": "v1", "required_fields": {"container_number": {}}})

    def test_bump_patch_version(self) -> None:
        self.assertEqual(bump_patch_version("1.0.9"), "1.0.10")


class TestApplySuggestions(unittest.TestCase):
    def setUp(self) -> None:
        self.dictionary = load_dictionary_file(DICTIONARY_PATH)

    def test_confident_synonym_is_added_and_version_bumped(self) -> None:
        update = apply_suggestions(self.dictionary, [_suggestion("Box No", "container_number", 0.97)], now=NOW)

        self.assertEqual(update.synonyms_added, 1)
        self.assertEqual(update.dictionary.version, "1.0.1")
        self.assertEqual(update.dictionary.lookup_header("Box No"), "container_number")
        self.assertEqual(update.dictionary.last_updated, "2026-10-19")
        # The input snapshot is untouched.
        self.assertIsNone(self.dictionary.lookup_header("Box No"))

    def test_identity_field_has_stricter_threshold(self) -> None:
        update = apply_suggestions(self.dictionary, [_suggestion("Box No", "container_number", 0.92)], now=NOW)

        self.assertEqual(update.synonyms_added, 0)
        self.assertEqual(update.pending_added, 1)
        self.assertEqual(update.dictionary.pending_fields[0].header, "Box No")

    def test_low_confidence_is_discarded(self) -> None:
        update = apply_suggestions(self.dictionary, [_suggestion("Whatever", "carrier", 0.4)], now=NOW)

        self.assertFalse(update.changed)
        self.assertEqual(update.discarded, 1)
        self.assertIs(update.dictionary, self.dictionary)

    def test_unknown_canonical_field_can_only_be_pending(self) -> None:
        update = apply_suggestions(self.dictionary, [_suggestion("Reefer Temp", "reefer_temperature", 0.99)], now=NOW)

        self.assertEqual(update.synonyms_added, 0)
        self.assertEqual(update.pending_added, 1)

    def test_new_field_action_goes_to_pending(self) -> None:
        update = apply_suggestions(
            self.dictionary,
            [_suggestion("Reefer Temp", "reefer_temperature", 0.8, action="NEW_FIELD")],
            now=NOW,
        )
        self.assertEqual(update.pending_added, 1)

    def test_existing_synonym_is_skipped(self) -> None:
        update = apply_suggestions(self.dictionary, [_suggestion("Shipping Line", "carrier", 0.99)], now=NOW)
        self.assertFalse(update.changed)

    def test_grouped_field_receives_learned_group(self) -> None:
        update = apply_suggestions(self.dictionary, [_suggestion("Ocean Bill", "mbl", 0.95)], now=NOW)

        groups = dict(update.dictionary.get("mbl").synonym_groups)
        self.assertEqual(groups["learned"], ("Ocean Bill",))
        self.assertIn("MBL", groups["mbl"])


class TestDictionaryStore(unittest.TestCase):
    def test_save_then_restore_snapshot(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "dictionary.yml"
            snapshot = Path(tmp) / "snapshot.yml"
            original = load_dictionary_file(DICTIONARY_PATH)
            write_dictionary_file(path, original)
            write_dictionary_file(snapshot, original)
            store = DictionaryStore(path)

            updated = apply_suggestions(original, [_suggestion("Box No", "container_number", 0.99)], now=NOW)
            store.save(updated.dictionary)
            self.assertEqual(store.load(refresh=True).version, "1.0.1")

            restored = store.restore(snapshot)
            self.assertEqual(restored.version, original.version)
            self.assertEqual(store.load(refresh=True).version, original.version)

    def test_written_document_is_plain_yaml(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "dictionary.yml"
            write_dictionary_file(path, load_dictionary_file(DICTIONARY_PATH))
            document = yaml.safe_load(path.read_text(encoding="utf-8"))

        self.assertEqual(document["version"], "1.0.0")
        self.assertIn("container_number", document["required_fields"])
        self.assertIsInstance(document["optional_fields"]["mbl"]["header_synonyms"], dict)

    def test_missing_file_raises(self) -> None:
        store = DictionaryStore(Path("/nonexistent/dictionary.yml"))
        with self.assertRaises(DictionaryError):
            store.load()


if __name__ == "__main__":
    unittest.main()
