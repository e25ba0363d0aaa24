"""
Unit tests for offline action replay.
"""

import tempfile
from pathlib import Path
from unittest.mock import MagicMock, call

from kestrel.core.cache_database import CacheDatabase
from kestrel.core.sync.metrics import SyncMetrics
from kestrel.core.sync.replay import OfflineReplayer
from kestrel.data.models.offline import (
    ActionType, ArchivePayload, DeleteEventPayload, EventPayload, FlagPayload, MovePayload, SendEmailPayload
)
from kestrel.data.repositories.offline_queue import OfflineQueue

GRANT = "grant-1"


class TestOfflineReplayer:
    """Test cases for OfflineReplayer."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db = CacheDatabase(Path(self.temp_dir.name) / "replay.db")
        self.queue = OfflineQueue(self.db)
        self.remote = MagicMock()
        self.metrics = SyncMetrics()
        self.replayer = OfflineReplayer(self.remote, metrics=self.metrics)

    def teardown_method(self):
        """Clean up test fixtures."""
        self.db.close()
        self.temp_dir.cleanup()

    def test_empty_queue(self):
        assert self.replayer.drain(self.queue, GRANT) == 0
        self.remote.assert_not_called()

    def test_replays_in_order(self):
        """Test that queued actions reach the remote oldest first."""
        self.queue.enqueue(ActionType.MARK_READ, "e1")
        self.queue.enqueue(ActionType.STAR, "e1")
        self.queue.enqueue(ActionType.MOVE, "e1", MovePayload(email_id="e1", folder_id="work"))
        self.queue.enqueue(ActionType.DELETE, "e2")

        replayed = self.replayer.drain(self.queue, GRANT, "user@example.com")

        assert replayed == 4
        assert self.queue.count() == 0
        assert self.remote.method_calls == [
            call.update_message(GRANT, "e1", unread=False),
            call.update_message(GRANT, "e1", starred=True),
            call.update_message(GRANT, "e1", folders=["work"]),
            call.delete_message(GRANT, "e2"),
        ]
        assert self.metrics.account("user@example.com").actions_replayed == 4

    def test_failure_stops_drain_and_keeps_order(self):
        """Test that a failed action stays at the head with its error recorded."""
        first = self.queue.enqueue(ActionType.MARK_READ, "e1")
        second = self.queue.enqueue(ActionType.ARCHIVE, "e2")
        third = self.queue.enqueue(ActionType.DELETE, "e2")
        self.remote.update_message.side_effect = [None, RuntimeError("503 Service Unavailable")]

        replayed = self.replayer.drain(self.queue, GRANT, "user@example.com")

        assert replayed == 1
        pending = self.queue.list()
        assert [a.id for a in pending] == [second.id, third.id]
        assert pending[0].attempts == 1
        assert "503" in pending[0].last_error
        self.remote.delete_message.assert_not_called()
        assert first.id not in [a.id for a in pending]

        metrics = self.metrics.account("user@example.com")
        assert metrics.actions_replayed == 1
        assert metrics.replay_failures == 1

    def test_retry_after_failure(self):
        self.queue.enqueue(ActionType.DELETE, "e1")
        self.remote.delete_message.side_effect = [RuntimeError("offline"), None]

        assert self.replayer.drain(self.queue, GRANT) == 0
        assert self.queue.count() == 1

        assert self.replayer.drain(self.queue, GRANT) == 1
        assert self.queue.count() == 0

    def test_max_attempts_drops_action(self):
        """Test that an action is dropped after the configured number of failures."""
        replayer = OfflineReplayer(self.remote, max_attempts=2)
        doomed = self.queue.enqueue(ActionType.DELETE, "e1")
        self.queue.enqueue(ActionType.STAR, "e2")
        self.remote.delete_message.side_effect = RuntimeError("gone")

        assert replayer.drain(self.queue, GRANT) == 0
        assert self.queue.peek().id == doomed.id

        assert replayer.drain(self.queue, GRANT) == 1
        assert self.queue.count() == 0
        self.remote.update_message.assert_called_once_with(GRANT, "e2", starred=True)

    def test_cancel_during_failed_replay(self):
        """Test that cancelling a resource mid-replay keeps its action out of the queue."""
        self.queue.enqueue(ActionType.STAR, "m1")
        self.queue.enqueue(ActionType.STAR, "m2")

        def update_message(grant_id, message_id, **changes):
            if message_id == "m1":
                self.queue.remove_by_resource_id("m1")
                raise ConnectionError("connection reset")

        self.remote.update_message.side_effect = update_message

        replayed = self.replayer.drain(self.queue, GRANT)

        assert replayed == 1
        assert self.queue.count() == 0
        assert self.remote.update_message.call_args_list == [
            call(GRANT, "m1", starred=True),
            call(GRANT, "m2", starred=True),
        ]

    def test_missing_payload_fails(self):
        self.queue.enqueue(ActionType.MOVE, "e1")

        assert self.replayer.drain(self.queue, GRANT) == 0
        assert "no payload" in self.queue.peek().last_error
        self.remote.update_message.assert_not_called()

    def test_flag_payload_overrides_type(self):
        self.queue.enqueue(ActionType.MARK_READ, "e1", FlagPayload(email_id="e1", unread=True))

        self.replayer.drain(self.queue, GRANT)

        self.remote.update_message.assert_called_once_with(GRANT, "e1", unread=True)

    def test_archive_folder(self):
        self.queue.enqueue(ActionType.ARCHIVE, "e1")
        self.queue.enqueue(ActionType.ARCHIVE, "e2", ArchivePayload(email_id="e2", archive_folder_id="All Mail"))

        self.replayer.drain(self.queue, GRANT)

        assert self.remote.update_message.call_args_list == [
            call(GRANT, "e1", folders=["archive"]),
            call(GRANT, "e2", folders=["All Mail"]),
        ]

    def test_send_and_events(self):
        message = SendEmailPayload(to=["bob@example.com"], subject="Hi", body="Hello")
        event = EventPayload(calendar_id="cal", title="Sync")
        self.queue.enqueue(ActionType.SEND, "local-1", message)
        self.queue.enqueue(ActionType.CREATE_EVENT, "local-2", event)
        self.queue.enqueue(ActionType.UPDATE_EVENT, "ev1", event)
        self.queue.enqueue(ActionType.DELETE_EVENT, "ev1", DeleteEventPayload(calendar_id="cal", event_id="ev1"))

        assert self.replayer.drain(self.queue, GRANT) == 4

        self.remote.send_message.assert_called_once_with(GRANT, message)
        self.remote.create_event.assert_called_once_with(GRANT, event)
        self.remote.update_event.assert_called_once_with(GRANT, "ev1", event)
        self.remote.delete_event.assert_called_once_with(GRANT, "cal", "ev1")

    def test_contacts_and_drafts(self):
        self.queue.enqueue(ActionType.DELETE_CONTACT, "c1")
        self.queue.enqueue(ActionType.DELETE_DRAFT, "d1")

        assert self.replayer.drain(self.queue, GRANT) == 2

        self.remote.delete_contact.assert_called_once_with(GRANT, "c1")
        self.remote.delete_draft.assert_called_once_with(GRANT, "d1")
