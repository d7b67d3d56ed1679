"""Unit tests for the local blob store."""
# pylint: disable=missing-function-docstring

import io
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi import UploadFile

from nanobanana_editor.api import storage


class StorageTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.env_patch = patch.dict(os.environ, {storage.STORAGE_DIR_ENV: self.tmp.name})
        self.env_patch.start()

    def tearDown(self):
        self.env_patch.stop()
        self.tmp.cleanup()

    def test_save_and_load(self):
        self.assertEqual(storage.save_bytes(b"abc", "a/b.png"), 3)
        self.assertEqual(storage.load_bytes("a/b.png"), b"abc")
        self.assertTrue(Path(storage.resolve_path("a/b.png")).is_file())

    def test_save_upload_keeps_known_extension(self):
        upload = UploadFile(file=io.BytesIO(b"x" * 10), filename="Photo.JPG")
        key, size = storage.save_upload(upload, prefix="uploads")
        self.assertTrue(key.startswith("uploads/"))
        self.assertTrue(key.endswith(".jpg"))
        self.assertEqual(size, 10)

    def test_save_upload_unknown_extension(self):
        upload = UploadFile(file=io.BytesIO(b"x"), filename="notes.txt")
        key, _ = storage.save_upload(upload, prefix="uploads")
        self.assertTrue(key.endswith(".bin"))

    def test_rejects_traversal(self):
        with self.assertRaises(ValueError):
            storage.save_bytes(b"x", "../escape.png")
        with self.assertRaises(ValueError):
            storage.load_bytes("/etc/passwd")

    def test_delete_key_ignores_missing(self):
        storage.save_bytes(b"x", "k.png")
        storage.delete_key("k.png")
        storage.delete_key("k.png")
        self.assertFalse(Path(storage.resolve_path("k.png")).exists())

    def test_delete_prefix(self):
        storage.save_bytes(b"x", "sessions/1/uploads/a.png")
        storage.save_bytes(b"y", "sessions/2/uploads/b.png")
        storage.delete_prefix("sessions/1")
        self.assertFalse(Path(storage.resolve_path("sessions/1")).exists())
        self.assertEqual(storage.load_bytes("sessions/2/uploads/b.png"), b"y")

    def test_delete_prefix_refuses_root(self):
        with self.assertRaises(ValueError):
            storage.delete_prefix(".")


if __name__ == "__main__":
    unittest.main()
