"""
Unit tests for the contact photo cache.
"""

import os
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from kestrel.core.cache_database import CacheDatabase
from kestrel.data.models.photos import PhotoBase
from kestrel.data.repositories.photo_store import PhotoStore


class TestPhotoStore:
    """Test cases for PhotoStore."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.db = CacheDatabase(root / "photos.db", PhotoBase.metadata, label="photos", check_key=False)
        self.store = PhotoStore(self.db, root / "photos", ttl=timedelta(days=7))

    def teardown_method(self):
        """Clean up test fixtures."""
        self.db.close()
        self.temp_dir.cleanup()

    def _put_at(self, when, contact_id, data=b"img"):
        with patch("kestrel.data.repositories.photo_store.utcnow", return_value=when):
            self.store.put(contact_id, "image/jpeg", data)

    def test_put_and_get(self):
        self.store.put("c1", "image/png", b"\x89PNG")

        assert self.store.get("c1") == ("image/png", b"\x89PNG")
        assert self.store.count() == 1
        assert self.store.total_size() == 4

    def test_get_missing(self):
        assert self.store.get("nobody") is None

    def test_put_replaces(self):
        self.store.put("c1", "image/png", b"old")
        self.store.put("c1", "image/jpeg", b"newer")

        assert self.store.get("c1") == ("image/jpeg", b"newer")
        assert self.store.count() == 1

    def test_file_names_do_not_leak_ids(self):
        self.store.put("../../etc/passwd", "image/png", b"x")

        files = list(self.store.photos_dir.iterdir())
        assert len(files) == 1
        assert files[0].parent == self.store.photos_dir

    def test_expired_photo_is_removed_on_read(self):
        """Test that a photo past its TTL reads as missing and is dropped."""
        self._put_at(datetime.now(timezone.utc) - timedelta(days=8), "c1")

        assert self.store.get("c1") is None
        assert self.store.count() == 0
        assert list(self.store.photos_dir.iterdir()) == []

    def test_missing_file_is_removed_on_read(self):
        self.store.put("c1", "image/png", b"x")
        for path in self.store.photos_dir.iterdir():
            path.unlink()

        assert self.store.get("c1") is None
        assert self.store.count() == 0

    def test_delete(self):
        self.store.put("c1", "image/png", b"x")

        assert self.store.delete("c1") is True
        assert self.store.delete("c1") is False
        assert list(self.store.photos_dir.iterdir()) == []

    def test_prune(self):
        self._put_at(datetime.now(timezone.utc) - timedelta(days=30), "old")
        self.store.put("fresh", "image/png", b"x")

        assert self.store.prune() == 1
        assert self.store.get("old") is None
        assert self.store.get("fresh") is not None

    def test_clear(self):
        self.store.put("c1", "image/png", b"x")
        self.store.put("c2", "image/png", b"y")

        assert self.store.clear() == 2
        assert self.store.count() == 0
        assert self.store.total_size() == 0
        assert list(self.store.photos_dir.iterdir()) == []

    def test_is_valid(self):
        self.store.put("fresh", "image/png", b"x")
        self._put_at(datetime.now(timezone.utc) - timedelta(days=8), "stale")

        assert self.store.is_valid("fresh") is True
        assert self.store.is_valid("stale") is False
        assert self.store.is_valid("nobody") is False

    def test_remove_orphaned(self):
        """Test that only old files without an index row are removed."""
        self.store.put("c1", "image/png", b"x")
        old = time.time() - 3600
        orphan = self.store.photos_dir / "leftover"
        orphan.write_bytes(b"junk")
        os.utime(orphan, (old, old))
        recent = self.store.photos_dir / "in-progress"
        recent.write_bytes(b"new")

        assert self.store.remove_orphaned() == 1
        assert not orphan.exists()
        assert recent.exists()
        assert self.store.get("c1") == ("image/png", b"x")

    def test_get_stats(self):
        first = datetime(2024, 6, 1, tzinfo=timezone.utc)
        last = datetime.now(timezone.utc)
        self._put_at(first, "c1", b"abc")
        self._put_at(last, "c2", b"de")

        stats = self.store.get_stats()

        assert stats.count == 2
        assert stats.total_size == 5
        assert stats.ttl_days == 7
        assert stats.oldest == first
        assert abs((stats.newest - last).total_seconds()) < 1

    def test_get_stats_empty(self):
        stats = self.store.get_stats()

        assert stats.count == 0
        assert stats.total_size == 0
        assert stats.oldest is None
