"""
Unit tests for connectivity tracking, sync metrics and remote record conversion.
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import Mock

from kestrel.core.sync.connectivity import ConnectivityMonitor
from kestrel.core.sync.converters import (
    contact_to_cached, event_times, event_to_cached, folder_to_cached, format_participant, message_to_cached
)
from kestrel.core.sync.metrics import SyncMetrics
from kestrel.core.sync.remote import (
    EventWhen, Participant, RemoteContact, RemoteEvent, RemoteFolder, RemoteMessage
)
from kestrel.data.models.cache import EventStatus, FolderType


class TestConnectivityMonitor:
    """Test cases for ConnectivityMonitor."""

    def test_starts_online(self):
        monitor = ConnectivityMonitor()
        assert monitor.is_online is True
        assert monitor.changed_at is None

    def test_listeners_hear_transitions_only(self):
        monitor = ConnectivityMonitor()
        listener = Mock()
        monitor.add_listener(listener)

        assert monitor.set_online(True) is False
        assert monitor.set_online(False) is True
        assert monitor.set_online(False) is False
        assert monitor.set_online(True) is True

        assert [c.args for c in listener.call_args_list] == [(False,), (True,)]
        assert monitor.changed_at is not None

    def test_failing_listener_does_not_break_others(self):
        monitor = ConnectivityMonitor()
        broken = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        monitor.add_listener(broken)
        monitor.add_listener(healthy)

        monitor.set_online(False)

        healthy.assert_called_once_with(False)
        assert monitor.is_online is False

    def test_remove_listener(self):
        monitor = ConnectivityMonitor()
        listener = Mock()
        monitor.add_listener(listener)
        monitor.remove_listener(listener)

        monitor.set_online(False)

        listener.assert_not_called()


class TestSyncMetrics:
    """Test cases for SyncMetrics."""

    def test_counters(self):
        metrics = SyncMetrics()
        metrics.record_cycle("a@example.com")
        metrics.record_success("a@example.com", "emails", 10)
        metrics.record_success("a@example.com", "emails", 5)
        metrics.record_failure("a@example.com", "events", ValueError("bad calendar"))
        metrics.record_replay("a@example.com", replayed=3, failed=1)

        emails = metrics.resource("a@example.com", "emails")
        assert emails.items_synced == 15
        assert emails.successes == 2
        assert metrics.resource("a@example.com", "events").last_error == "bad calendar"

        account = metrics.account("a@example.com")
        assert account.cycles == 1
        assert account.actions_replayed == 3
        assert account.replay_failures == 1

    def test_snapshot(self):
        metrics = SyncMetrics()
        metrics.record_success("a@example.com", "contacts", 2)

        snapshot = metrics.snapshot()

        assert snapshot["a@example.com"]["resources"]["contacts"]["items_synced"] == 2
        assert snapshot["a@example.com"]["account"]["cycles"] == 0

    def test_unknown_account(self):
        assert SyncMetrics().account("nobody").cycles == 0


class TestConverters:
    """Test conversion of remote records."""

    def test_format_participant(self):
        assert format_participant(Participant("ann@example.com", "Ann")) == "Ann <ann@example.com>"
        assert format_participant(Participant("ann@example.com")) == "ann@example.com"

    def test_message(self):
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)
        email = message_to_cached(RemoteMessage(
            id="m1", thread_id="t1", subject="Hi", snippet="preview",
            senders=[Participant("ann@example.com", "Ann")],
            to=[Participant("bob@example.com", "Bob")], cc=[Participant("cat@example.com")],
            date=when, folders=["inbox", "important"], attachments=[{"id": "a1"}], body="<p>Hi</p>"
        ))

        assert email.folder_id == "inbox"
        assert email.from_name == "Ann"
        assert email.to_addrs == ["Bob <bob@example.com>"]
        assert email.cc_addrs == ["cat@example.com"]
        assert email.has_attachments is True
        assert email.body_text == "preview"

    def test_folder_type_mapping(self):
        assert folder_to_cached(RemoteFolder(id="f1", name="Inbox", system_folder="INBOX")).type == FolderType.INBOX
        assert folder_to_cached(RemoteFolder(id="f2", name="Junk Email", system_folder="junk")).type == FolderType.SPAM
        assert folder_to_cached(RemoteFolder(id="f3", name="Projects")).type == FolderType.OTHER

    def test_single_date_event(self):
        start, end, all_day = event_times(EventWhen(date=date(2024, 12, 25)))

        assert all_day is True
        assert start == datetime(2024, 12, 25, tzinfo=timezone.utc)
        assert end - start == timedelta(days=1)

    def test_date_span_event(self):
        start, end, all_day = event_times(EventWhen(start_date=date(2024, 12, 24), end_date=date(2024, 12, 27)))

        assert all_day is True
        assert end - start == timedelta(days=3)

    def test_timed_event(self):
        begin = datetime(2024, 3, 1, 9, tzinfo=timezone.utc)
        event = event_to_cached(RemoteEvent(
            id="ev1", calendar_id="work", when=EventWhen(start_time=begin, end_time=begin + timedelta(hours=1)),
            participants=[Participant("bob@example.com", "Bob")], status="Tentative",
            recurrence=["RRULE:FREQ=WEEKLY"]
        ))

        assert event.all_day is False
        assert event.status == EventStatus.TENTATIVE
        assert event.recurring is True
        assert event.rrule == "RRULE:FREQ=WEEKLY"
        assert event.participants == ["Bob <bob@example.com>"]

    def test_contact(self):
        contact = contact_to_cached(RemoteContact(
            id="c1", given_name="Ann", surname="Lee", emails=["ann@example.com", "ann@work.com"],
            phone_numbers=["555-0100"], company_name="Acme", groups=["Team"]
        ))

        assert contact.display_name == "Ann Lee"
        assert contact.email == "ann@example.com"
        assert contact.phone == "555-0100"
        assert contact.company == "Acme"
        assert contact.groups == ["Team"]
