"""Tests for the notification job in password_expiry_notifier.scheduler."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from unittest.mock import patch

import pytest

from password_expiry_notifier.audit import AuditLedger
from password_expiry_notifier.config import AppConfig, ConfigStore, MailConfig
from password_expiry_notifier.profiles import ALL_USERS, NotificationProfile, RecipientPolicy
from password_expiry_notifier.scheduler import ExpiryNotificationScheduler
from password_expiry_notifier.storage import PersistenceError
from password_expiry_notifier.worker import QueueWorker

from .conftest import NOW, FakeDirectory, FakeTransport, make_user

# Expires exactly at NOW with the default 90 day window -> 0 days remaining.
ALICE = make_user("u1", "Alice Smith", "alice@contoso.com")
BOB = make_user("u2", "Bob Jones", "bob@contoso.com")
DISABLED = make_user("u3", "Dan Disabled", "dan@contoso.com", enabled=False)
NOT_DUE = make_user("u4", "Nora Later", "nora@contoso.com", last_change=datetime(2024, 3, 1, tzinfo=timezone.utc))
CLOUD_NEVER = make_user("u5", "Carl Cloud", "carl@contoso.com", policies="DisablePasswordExpiration")
HYBRID_NEVER = make_user("u6", "Hana Hybrid", "hana@contoso.com", hybrid=True, policies="DisablePasswordExpiration")


def _profile(**kwargs) -> NotificationProfile:
    defaults = dict(
        id="p1",
        name="Standard",
        email_template="Hi {{user.displayName}}, your password expires in {{daysUntilExpiry}} days ({{expiryDate}}).",
        subject_template="Password expiry for {{user.userPrincipalName}}",
        cadence=frozenset({0}),
        recipients=RecipientPolicy(cc_addresses=frozenset({"helpdesk@contoso.com"})),
        assigned_groups=(ALL_USERS,),
    )
    defaults.update(kwargs)
    return NotificationProfile(**defaults)


@pytest.fixture
def directory():
    return FakeDirectory(users=[ALICE, BOB, DISABLED, NOT_DUE, CLOUD_NEVER, HYBRID_NEVER])


@pytest.fixture
def scheduler(config_store, ledger, queue, directory, transport):
    return ExpiryNotificationScheduler(
        config_store=config_store,
        ledger=ledger,
        queue=queue,
        directory_factory=lambda cfg: directory,
        transport_factory=lambda mail: transport,
        now_factory=lambda: NOW,
        local_tz=timezone.utc,
    )


def _levels(result):
    return [entry.level for entry in result.logs]


class TestPreviewMode:
    def test_lists_matches_without_side_effects(self, scheduler, transport, ledger, queue):
        result = scheduler.run_job(_profile(), "preview")

        assert result.success is True
        assert [row.principal_name for row in result.preview] == [
            "alice@contoso.com",
            "bob@contoso.com",
            "hana@contoso.com",
        ]
        row = result.preview[0]
        assert row.days_remaining == 0
        assert row.expiry == NOW
        assert row.group == ALL_USERS
        assert transport.sent == []
        assert ledger.history() == []
        assert queue.items() == []

    def test_does_not_look_up_managers(self, scheduler, directory):
        scheduler.run_job(_profile(recipients=RecipientPolicy(to_manager=True)), "preview")
        assert directory.manager_calls == []

    def test_preferred_time_is_ignored(self, scheduler, queue):
        result = scheduler.run_job(_profile(preferred_time=time(9, 0)), "preview")
        assert len(result.preview) == 3
        assert queue.items() == []


class TestLiveMode:
    def test_sends_and_records_audit(self, scheduler, transport, ledger):
        result = scheduler.run_job(_profile(), "live")

        assert result.success is True
        assert result.sent == 3
        by_to = {m.to: m for m in transport.sent}
        assert set(by_to) == {"alice@contoso.com", "bob@contoso.com", "hana@contoso.com"}
        alice = by_to["alice@contoso.com"]
        assert alice.subject == "Password expiry for alice@contoso.com"
        assert alice.body == "Hi Alice Smith, your password expires in 0 days (March 31, 2024)."
        assert alice.cc == ("helpdesk@contoso.com",)
        assert alice.sender == "it@contoso.com"
        assert ledger.was_already_sent("alice@contoso.com", "p1", NOW.date())

    def test_second_run_same_day_skips(self, scheduler, transport, ledger):
        scheduler.run_job(_profile(), "live")
        second = scheduler.run_job(_profile(), "live")

        assert second.sent == 0
        assert second.skipped == 3
        assert _levels(second).count("skip") == 3
        assert len(transport.sent) == 3
        sent_entries = [e for e in ledger.history() if e.outcome == "sent" and e.recipient == "alice@contoso.com"]
        assert len(sent_entries) == 1

    def test_disabled_accounts_are_never_notified(self, scheduler, transport, queue):
        for mode in ("live", "test"):
            scheduler.run_job(_profile(), mode, test_recipient="admin@contoso.com")
        scheduler.run_job(_profile(), "live", schedule_time=NOW + timedelta(hours=2))
        assert all("Dan" not in m.body for m in transport.sent)
        assert all("Dan" not in i.body for i in queue.items())

    def test_cloud_never_expires_is_not_matched_but_hybrid_is(self, scheduler, transport):
        scheduler.run_job(_profile(cadence=frozenset({0, 999})), "live")
        recipients = {m.to for m in transport.sent}
        assert "carl@contoso.com" not in recipients
        assert "hana@contoso.com" in recipients

    def test_send_failure_is_isolated(self, scheduler, transport, ledger):
        transport.fail_for = {"alice@contoso.com"}
        result = scheduler.run_job(_profile(), "live")

        assert result.success is True
        assert result.sent == 2
        assert "error" in _levels(result)
        assert not ledger.was_already_sent("alice@contoso.com", "p1", NOW.date())
        assert ledger.was_already_sent("bob@contoso.com", "p1", NOW.date())

    def test_unconfigured_mail_aborts_immediate_job(self, store, ledger, queue, directory, transport):
        scheduler = ExpiryNotificationScheduler(
            config_store=ConfigStore(store, base=AppConfig(mail=MailConfig())),
            ledger=ledger,
            queue=queue,
            directory_factory=lambda cfg: directory,
            transport_factory=lambda mail: transport,
            now_factory=lambda: NOW,
            local_tz=timezone.utc,
        )
        result = scheduler.run_job(_profile(), "live")
        assert result.success is False
        assert transport.sent == []

    def test_audit_write_failure_is_logged_and_send_still_counts(self, scheduler, transport):
        with patch.object(AuditLedger, "record_sent", side_effect=PersistenceError("disk full")):
            result = scheduler.run_job(_profile(), "live")

        assert result.success is True
        assert result.sent == 3
        assert len(transport.sent) == 3
        errors = [e for e in result.logs if e.level == "error"]
        assert [e.message for e in errors] == [
            "Audit write failed for alice@contoso.com",
            "Audit write failed for bob@contoso.com",
            "Audit write failed for hana@contoso.com",
        ]
        assert all(e.details == "disk full" for e in errors)

    def test_log_timestamps_come_from_the_job_clock(self, scheduler):
        result = scheduler.run_job(_profile(), "live")
        assert {entry.timestamp for entry in result.logs} == {NOW.isoformat()}


class TestTestMode:
    def test_recipient_is_always_the_test_address(self, scheduler, transport, ledger):
        result = scheduler.run_job(_profile(), "test", test_recipient="admin@contoso.com")

        assert result.sent == 3
        assert {m.to for m in transport.sent} == {"admin@contoso.com"}
        assert "Alice Smith" in transport.sent[0].body
        assert ledger.history() == []

    def test_queued_items_use_test_address(self, scheduler, queue):
        scheduler.run_job(
            _profile(),
            "test",
            test_recipient="admin@contoso.com",
            schedule_time=NOW + timedelta(hours=1),
        )
        assert {i.recipient for i in queue.items()} == {"admin@contoso.com"}

    def test_queued_test_delivery_does_not_suppress_live_send(self, scheduler, config_store, ledger, queue, transport):
        scheduler.run_job(
            _profile(),
            "test",
            test_recipient="alice@contoso.com",
            schedule_time=NOW + timedelta(hours=1),
        )
        assert {(i.live, i.audit_recipient) for i in queue.items()} == {
            (False, "alice@contoso.com"),
            (False, "bob@contoso.com"),
            (False, "hana@contoso.com"),
        }
        worker = QueueWorker(
            config_store,
            queue,
            ledger,
            transport_factory=lambda mail: transport,
            now_factory=lambda: NOW + timedelta(hours=2),
            local_tz=timezone.utc,
        )
        assert worker.tick().delivered == 3
        assert ledger.history() == []

        result = scheduler.run_job(_profile(), "live")

        assert result.sent == 3
        assert result.skipped == 0
        assert [m.to for m in transport.sent].count("alice@contoso.com") == 4

    def test_requires_recipient(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.run_job(_profile(), "test")

    def test_unknown_mode(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.run_job(_profile(), "dry-run")


class TestRecipients:
    def test_manager_is_copied(self, scheduler, directory, transport):
        directory.managers = {"u1": "boss@contoso.com"}
        result = scheduler.run_job(_profile(recipients=RecipientPolicy(to_manager=True)), "live")

        alice = next(m for m in transport.sent if m.to == "alice@contoso.com")
        bob = next(m for m in transport.sent if m.to == "bob@contoso.com")
        assert alice.cc == ("boss@contoso.com",)
        assert bob.cc == ()
        assert any(e.level == "warn" and "No manager found for bob@contoso.com" in e.message for e in result.logs)

    def test_manager_lookup_failure_is_a_warning(self, scheduler, directory, transport):
        directory.failing_manager_ids = {"u1"}
        result = scheduler.run_job(
            _profile(recipients=RecipientPolicy(to_manager=True, cc_addresses=frozenset({"helpdesk@contoso.com"}))),
            "live",
        )
        assert result.success is True
        alice = next(m for m in transport.sent if m.to == "alice@contoso.com")
        assert alice.cc == ("helpdesk@contoso.com",)
        assert any(e.level == "warn" and "Manager lookup failed" in e.message for e in result.logs)

    def test_manager_becomes_primary_when_user_is_not_notified(self, scheduler, directory, transport):
        directory.managers = {"u1": "boss@contoso.com"}
        result = scheduler.run_job(_profile(recipients=RecipientPolicy(to_user=False, to_manager=True)), "live")

        assert [m.to for m in transport.sent] == ["boss@contoso.com"]
        assert result.skipped == 2

    def test_read_receipt_is_requested(self, scheduler, transport):
        scheduler.run_job(_profile(recipients=RecipientPolicy(read_receipt=True)), "live")
        assert all(m.read_receipt for m in transport.sent)


class TestAudience:
    def test_group_members_are_deduplicated(self, scheduler, directory, transport):
        directory.groups = {"IT": [ALICE, BOB], "Admins": [ALICE, DISABLED]}
        result = scheduler.run_job(_profile(assigned_groups=("IT", "Admins")), "preview")

        assert [(r.principal_name, r.group) for r in result.preview] == [
            ("alice@contoso.com", "IT"),
            ("bob@contoso.com", "IT"),
        ]
        assert result.processed == 2

    def test_unknown_group_aborts_job(self, scheduler, directory, transport):
        directory.groups = {"IT": [ALICE]}
        result = scheduler.run_job(_profile(assigned_groups=("IT", "Ghosts")), "live")

        assert result.success is False
        assert _levels(result).count("error") == 1
        assert transport.sent == []

    def test_directory_auth_failure_aborts_job(self, scheduler, directory, ledger):
        directory.fail_users = True
        result = scheduler.run_job(_profile(), "live")

        assert result.success is False
        errors = [e for e in result.logs if e.level == "error"]
        assert len(errors) == 1
        assert "authentication" in errors[0].details
        assert ledger.history() == []

    def test_unknown_placeholder_aborts_job(self, scheduler, transport):
        result = scheduler.run_job(_profile(email_template="Hi {{user.nickname}}"), "live")
        assert result.success is False
        assert transport.sent == []


class TestScheduling:
    def test_future_schedule_enqueues_and_records_audit(self, scheduler, queue, ledger, transport):
        when = NOW + timedelta(hours=3)
        result = scheduler.run_job(_profile(), "live", schedule_time=when)

        assert result.queued == 3
        assert transport.sent == []
        items = queue.items()
        assert {i.scheduled_for for i in items} == {when}
        assert {i.profile_id for i in items} == {"p1"}
        assert _levels(result).count("queue") == 3
        assert ledger.was_already_sent("alice@contoso.com", "p1", NOW.date())

        again = scheduler.run_job(_profile(), "live", schedule_time=when)
        assert again.queued == 0
        assert len(queue.items()) == 3

    def test_queued_items_carry_live_flag_and_audit_recipient(self, scheduler, queue):
        scheduler.run_job(_profile(), "live", schedule_time=NOW + timedelta(hours=3))
        assert {(i.recipient, i.live, i.audit_recipient) for i in queue.items()} == {
            ("alice@contoso.com", True, "alice@contoso.com"),
            ("bob@contoso.com", True, "bob@contoso.com"),
            ("hana@contoso.com", True, "hana@contoso.com"),
        }

    def test_manager_addressed_item_is_audited_under_the_user(self, scheduler, config_store, directory, queue, ledger, transport):
        directory.managers = {"u1": "boss@contoso.com"}
        scheduler.run_job(
            _profile(recipients=RecipientPolicy(to_user=False, to_manager=True)),
            "live",
            schedule_time=NOW + timedelta(hours=1),
        )
        [item] = queue.items()
        assert (item.recipient, item.audit_recipient) == ("boss@contoso.com", "alice@contoso.com")

        QueueWorker(
            config_store,
            queue,
            ledger,
            transport_factory=lambda mail: transport,
            now_factory=lambda: NOW + timedelta(hours=2),
            local_tz=timezone.utc,
        ).tick()

        assert [m.to for m in transport.sent] == ["boss@contoso.com"]
        assert ledger.was_already_sent("alice@contoso.com", "p1", NOW.date())
        assert not ledger.was_already_sent("boss@contoso.com", "p1", NOW.date())

    def test_past_schedule_sends_now(self, scheduler, queue, transport):
        scheduler.run_job(_profile(), "live", schedule_time=NOW - timedelta(minutes=5))
        assert queue.items() == []
        assert len(transport.sent) == 3

    def test_preferred_time_later_today(self, scheduler, queue):
        scheduler.run_job(_profile(preferred_time=time(9, 0)), "live")
        assert {i.scheduled_for for i in queue.items()} == {datetime(2024, 3, 31, 9, 0, tzinfo=timezone.utc)}

    def test_preferred_time_already_passed_rolls_to_tomorrow(self, config_store, ledger, queue, directory, transport):
        later = NOW + timedelta(hours=10)
        scheduler = ExpiryNotificationScheduler(
            config_store=config_store,
            ledger=ledger,
            queue=queue,
            directory_factory=lambda cfg: directory,
            transport_factory=lambda mail: transport,
            now_factory=lambda: later,
            local_tz=timezone.utc,
        )
        # Ten hours past expiry still rounds up to day 0.
        result = scheduler.run_job(_profile(preferred_time=time(9, 0)), "live")

        assert result.queued == 3
        assert {i.scheduled_for for i in queue.items()} == {datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)}

    def test_preferred_time_only_applies_to_live_mode(self, scheduler, queue, transport):
        scheduler.run_job(_profile(preferred_time=time(9, 0)), "test", test_recipient="admin@contoso.com")
        assert queue.items() == []
        assert len(transport.sent) == 3

    def test_naive_schedule_time_uses_local_timezone(self, scheduler, queue):
        scheduler.run_job(_profile(), "live", schedule_time=datetime(2024, 3, 31, 6, 0))
        assert {i.scheduled_for for i in queue.items()} == {datetime(2024, 3, 31, 6, 0, tzinfo=timezone.utc)}


class TestExampleScenario:
    def test_day_zero_cadence_sends_once_per_day(self, scheduler, directory, transport, ledger):
        directory.users = [ALICE]
        first = scheduler.run_job(_profile(), "live")
        second = scheduler.run_job(_profile(), "live")

        assert first.sent == 1
        assert second.sent == 0
        assert second.skipped == 1
        assert len(transport.sent) == 1
        outcomes = sorted(e.outcome for e in ledger.history())
        assert outcomes == ["sent", "skipped"]
