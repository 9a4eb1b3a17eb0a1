"""Encrypted on-disk cache."""

from __future__ import annotations

from pathlib import Path
import tempfile
import unittest

from autosub.repositories.local_cache import EncryptedFileCache, generate_cache_key


class EncryptedFileCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.directory = Path(tmp.name) / "cache"
        self.key = generate_cache_key()
        self.cache = EncryptedFileCache(self.directory, self.key)

    def test_values_survive_a_new_instance_with_the_same_key(self) -> None:
        self.cache.set("ledger:user-1:balance", 42)
        self.cache.set("ledger:user-1:unsynced", [{"id": "t-1", "amount": 5}])

        reopened = EncryptedFileCache(self.directory, self.key)

        self.assertEqual(reopened.get("ledger:user-1:balance"), 42)
        self.assertEqual(reopened.get("ledger:user-1:unsynced"), [{"id": "t-1", "amount": 5}])

    def test_missing_and_deleted_keys_read_as_none(self) -> None:
        self.assertIsNone(self.cache.get("absent"))

        self.cache.set("settlement:user-1:processed", ["txn-1"])
        self.cache.delete("settlement:user-1:processed")
        self.cache.delete("settlement:user-1:processed")

        self.assertIsNone(self.cache.get("settlement:user-1:processed"))

    def test_files_reveal_neither_keys_nor_values(self) -> None:
        self.cache.set("ledger:user-1:balance", "very-recognisable-value")

        (entry,) = self.directory.iterdir()

        self.assertNotIn("ledger", entry.name)
        self.assertNotIn(b"very-recognisable-value", entry.read_bytes())

    def test_entry_written_with_another_key_reads_as_missing(self) -> None:
        self.cache.set("ledger:user-1:balance", 42)

        other = EncryptedFileCache(self.directory, generate_cache_key())

        with self.assertLogs("autosub.repositories.local_cache", level="WARNING"):
            self.assertIsNone(other.get("ledger:user-1:balance"))


if __name__ == "__main__":
    unittest.main()
