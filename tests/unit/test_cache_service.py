"""
Unit tests for CacheService wiring.
"""

import tempfile
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

from kestrel.config.app_config import AppConfig
from kestrel.core.cache_database import CacheError
from kestrel.core.cache_service import CacheService
from kestrel.data.models.cache import CachedEmail, CachedEvent, EventStatus
from kestrel.data.models.offline import ActionType, MovePayload
from kestrel.data.repositories.sync_store import RESOURCE_EMAILS

EMAIL = "user@example.com"
GRANT = "grant-1"


class TestCacheService:
    """Test cases for CacheService."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config = AppConfig(config_dir=root / "config")
        self.base_path = root / "accounts"
        self.remote = MagicMock()
        self.remote.get_messages.return_value = []
        self.remote.get_folders.return_value = []
        self.remote.get_calendars.return_value = []
        self.remote.get_contacts.return_value = []
        self.service = CacheService(self.config, self.remote, base_path=self.base_path)
        self.account = self.service.add_account(EMAIL, GRANT)

    def teardown_method(self):
        """Clean up test fixtures."""
        self.service.stop(timeout=5)
        self.temp_dir.cleanup()

    def test_start_requires_remote(self):
        service = CacheService(self.config, None, base_path=self.base_path)
        service.add_account(EMAIL, GRANT)

        assert service.start() is False
        assert service.scheduler.running is False
        service.stop()

    def test_start_respects_configuration(self):
        self.config.sync.background_enabled = False
        assert self.service.start() is False

        self.config.sync.background_enabled = True
        self.config.cache.enabled = False
        assert self.service.start() is False

    def test_start_and_stop(self):
        assert self.service.start() is True
        assert self.service.scheduler.running is True

        assert self.service.stop(timeout=10) is True
        assert self.service.cache_manager.is_open(EMAIL) is False

    def test_queue_action(self):
        action = self.service.queue_action(
            EMAIL, ActionType.MOVE, "e1", MovePayload(email_id="e1", folder_id="work")
        )

        assert action.id is not None
        assert self.service.cache_manager.offline_queue(EMAIL).count() == 1

    def test_queue_disabled(self):
        self.config.cache.offline_queue_enabled = False

        with pytest.raises(CacheError):
            self.service.queue_action(EMAIL, ActionType.STAR, "e1")

    def test_cancel_actions(self):
        self.service.queue_action(EMAIL, ActionType.STAR, "e1")
        self.service.queue_action(EMAIL, ActionType.ARCHIVE, "e1")
        self.service.queue_action(EMAIL, ActionType.STAR, "e2")

        assert self.service.cancel_actions(EMAIL, "e1") == 2

    def test_drain(self):
        self.service.queue_action(EMAIL, ActionType.DELETE, "e1")

        assert self.service.drain(EMAIL) == 1
        self.remote.delete_message.assert_called_once_with(GRANT, "e1")
        assert self.service.drain("unknown@example.com") == 0

    def test_coming_online_drains_queues(self):
        """Test that the offline queue is replayed as soon as connectivity returns."""
        self.service.connectivity.set_online(False)
        self.service.queue_action(EMAIL, ActionType.DELETE, "e1")
        self.remote.delete_message.assert_not_called()

        self.service.connectivity.set_online(True)

        self.remote.delete_message.assert_called_once_with(GRANT, "e1")
        assert self.service.cache_manager.offline_queue(EMAIL).count() == 0

    def test_remove_stale_actions(self):
        assert self.service.remove_stale_actions() == 0

        self.config.cache.stale_action_days = 7
        old = datetime.now(timezone.utc) - timedelta(days=8)
        with patch("kestrel.data.repositories.offline_queue.utcnow", return_value=old):
            self.service.queue_action(EMAIL, ActionType.STAR, "e1")
        self.service.queue_action(EMAIL, ActionType.STAR, "e2")

        assert self.service.remove_stale_actions() == 1

    def test_sync_runs_maintenance(self):
        self.config.cache.stale_action_days = 7
        old = datetime.now(timezone.utc) - timedelta(days=8)
        with patch("kestrel.data.repositories.offline_queue.utcnow", return_value=old):
            self.service.queue_action(EMAIL, ActionType.STAR, "e1")
        self.remote.update_message.side_effect = RuntimeError("rejected")

        assert self.service.scheduler.sync_account(self.account) is True

        assert self.service.cache_manager.offline_queue(EMAIL).count() == 0

    def test_search(self):
        self.service.cache_manager.emails(EMAIL).put(CachedEmail(id="e1", subject="Budget"))

        results = self.service.search(EMAIL, "budget")

        assert [r.id for r in results] == ["e1"]
        assert self.service.search(EMAIL, "") == []

    def test_conflicts(self):
        start = datetime(2024, 7, 1, 9, tzinfo=timezone.utc)
        self.service.cache_manager.events(EMAIL).put_batch([
            CachedEvent(id="a", start_time=start, end_time=start + timedelta(hours=1)),
            CachedEvent(id="b", start_time=start + timedelta(minutes=30), end_time=start + timedelta(hours=2)),
            CachedEvent(id="c", start_time=start, end_time=start + timedelta(hours=1),
                        status=EventStatus.CANCELLED),
        ])

        conflicts = self.service.conflicts(EMAIL, start - timedelta(days=1), start + timedelta(days=1))

        assert [(c.first.id, c.second.id) for c in conflicts] == [("a", "b")]

    def test_status(self):
        """Test the aggregated cache status."""
        synced = datetime(2024, 5, 1, tzinfo=timezone.utc)
        self.service.cache_manager.emails(EMAIL).put(CachedEmail(id="e1"))
        self.service.cache_manager.sync_state(EMAIL).mark_synced(RESOURCE_EMAILS, synced)
        self.service.queue_action(EMAIL, ActionType.STAR, "e1")

        status = self.service.status()

        assert status.enabled is True
        assert status.online is True
        assert [s.email for s in status.accounts] == [EMAIL]
        assert status.accounts[0].email_count == 1
        assert status.pending_actions == 1
        assert status.last_sync == synced
        assert status.total_size_bytes > 0
        assert status.sync_interval_minutes == 5

        data = status.to_dict()
        assert data["last_sync"] == synced.isoformat()
        assert data["accounts"][0]["email"] == EMAIL

    def test_status_when_disabled(self):
        self.config.cache.enabled = False

        status = self.service.status()

        assert status.enabled is False
        assert status.accounts == []

    def test_clear_cache(self):
        self.service.cache_manager.emails(EMAIL).put(CachedEmail(id="e1"))

        self.service.clear_cache(EMAIL)

        assert not self.service.cache_manager.db_path(EMAIL).exists()
