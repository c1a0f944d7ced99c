"""Core notification job: match users to a profile and send, queue or preview."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .audit import AuditLedger
from .client import DirectoryError, GraphDirectoryClient
from .config import AppConfig, ConfigStore, DirectoryConfig, MailConfig
from .delivery_queue import DeliveryQueue, QueueItem
from .expiry import DirectoryUser, ExpiryState, compute_expiry
from .notification import MailDeliveryError, MailTransport, build_message, build_transport
from .profiles import ALL_USERS, NotificationProfile, matches
from .storage import PersistenceError
from .templating import TemplateError, placeholder_values, render_template

LOGGER = logging.getLogger("password_expiry_notifier.scheduler")

MODE_PREVIEW = "preview"
MODE_TEST = "test"
MODE_LIVE = "live"
MODES = (MODE_PREVIEW, MODE_TEST, MODE_LIVE)

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "skip": logging.INFO,
    "queue": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DirectoryClient(Protocol):
    def list_users(self) -> List[DirectoryUser]: ...

    def list_group_members(self, group_name: str) -> List[DirectoryUser]: ...

    def get_manager(self, user_id: str) -> Optional[str]: ...


@dataclass(frozen=True)
class JobLogEntry:
    timestamp: str
    level: str
    message: str
    details: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "level": self.level, "message": self.message, "details": self.details}


@dataclass(frozen=True)
class PreviewRow:
    display_name: str
    principal_name: str
    days_remaining: int
    expiry: Optional[datetime]
    group: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.display_name,
            "email": self.principal_name,
            "days_until_expiry": self.days_remaining,
            "expiry_date": self.expiry.isoformat() if self.expiry else None,
            "group": self.group,
        }


@dataclass
class JobResult:
    success: bool = True
    logs: List[JobLogEntry] = field(default_factory=list)
    preview: List[PreviewRow] = field(default_factory=list)
    processed: int = 0
    matched: int = 0
    sent: int = 0
    queued: int = 0
    skipped: int = 0
    clock: Callable[[], datetime] = field(default=_utc_now, repr=False, compare=False)

    def log(self, level: str, message: str, details: Optional[Any] = None) -> None:
        entry = JobLogEntry(
            timestamp=self.clock().isoformat(),
            level=level,
            message=message,
            details=details,
        )
        self.logs.append(entry)
        if details is None:
            LOGGER.log(_LOG_LEVELS.get(level, logging.INFO), "%s", message)
        else:
            LOGGER.log(_LOG_LEVELS.get(level, logging.INFO), "%s (%s)", message, details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "logs": [entry.to_dict() for entry in self.logs],
            "preview": [row.to_dict() for row in self.preview],
            "processed": self.processed,
            "matched": self.matched,
            "sent": self.sent,
            "queued": self.queued,
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class AudienceMember:
    user: DirectoryUser
    group: str


@dataclass
class _JobContext:
    profile: NotificationProfile
    mode: str
    test_recipient: Optional[str]
    schedule_at: Optional[datetime]
    config: AppConfig
    directory: DirectoryClient
    now: datetime
    today: date
    result: JobResult
    transport: Optional[MailTransport] = None


class ExpiryNotificationScheduler:
    """Evaluates directory users against a profile and dispatches notices."""

    def __init__(
        self,
        config_store: ConfigStore,
        ledger: AuditLedger,
        queue: DeliveryQueue,
        directory_factory: Callable[[DirectoryConfig], DirectoryClient] = GraphDirectoryClient,
        transport_factory: Callable[[MailConfig], MailTransport] = build_transport,
        now_factory: Callable[[], datetime] = _utc_now,
        local_tz: Optional[tzinfo] = None,
    ) -> None:
        self._config_store = config_store
        self._ledger = ledger
        self._queue = queue
        self._directory_factory = directory_factory
        self._transport_factory = transport_factory
        self._now_factory = now_factory
        self._local_tz = local_tz

    def run_job(
        self,
        profile: NotificationProfile,
        mode: str,
        test_recipient: Optional[str] = None,
        schedule_time: Optional[datetime] = None,
    ) -> JobResult:
        if mode not in MODES:
            raise ValueError(f"Unknown job mode {mode!r}; expected one of {', '.join(MODES)}")
        if mode == MODE_TEST and not test_recipient:
            raise ValueError("test mode requires a test recipient")

        result = JobResult(clock=self._now_factory)
        result.log("info", f"Job initiated: {profile.name} ({mode})")

        try:
            profile.validate()
        except TemplateError as exc:
            return self._fail(result, str(exc))

        config = self._config_store.load()
        now = self._now_factory()
        schedule_at = None if mode == MODE_PREVIEW else self._effective_schedule(profile, mode, schedule_time, now)
        if schedule_at is not None:
            result.log("info", f"Messages will be queued for {schedule_at.isoformat()}")
        elif mode != MODE_PREVIEW and not config.mail.is_configured:
            return self._fail(result, "Mail transport not configured")

        try:
            directory = self._directory_factory(config.directory)
            audience = self._resolve_audience(directory, profile, result)
        except DirectoryError as exc:
            return self._fail(result, str(exc))

        ctx = _JobContext(
            profile=profile,
            mode=mode,
            test_recipient=test_recipient,
            schedule_at=schedule_at,
            config=config,
            directory=directory,
            now=now,
            today=now.astimezone(self._local_tz).date(),
            result=result,
        )
        for member in audience:
            if not member.user.account_enabled:
                continue
            result.processed += 1
            self._process_member(ctx, member)

        if mode == MODE_PREVIEW:
            summary = f"{result.matched} user(s) would be notified"
        else:
            summary = f"sent {result.sent}, queued {result.queued}, skipped {result.skipped}"
        result.log(
            "success",
            f"Job finished. Processed {result.processed} user(s) of {len(audience)}; "
            f"matched {result.matched}; {summary}.",
        )
        return result

    def evaluate_users(self) -> List[Tuple[DirectoryUser, ExpiryState]]:
        """Expiry state of every directory user, for operator listings."""

        config = self._config_store.load()
        now = self._now_factory()
        directory = self._directory_factory(config.directory)
        return [(user, compute_expiry(user, config.default_expiry_days, now)) for user in directory.list_users()]

    # ---- helpers ----------------------------------------------------------------
    @staticmethod
    def _fail(result: JobResult, reason: str) -> JobResult:
        result.success = False
        result.log("error", "Job failed", reason)
        return result

    def _resolve_audience(
        self,
        directory: DirectoryClient,
        profile: NotificationProfile,
        result: JobResult,
    ) -> List[AudienceMember]:
        if profile.targets_all_users:
            users = directory.list_users()
            result.log("info", f"Fetched {len(users)} directory user(s)")
            members = {u.id: AudienceMember(u, ALL_USERS) for u in users}
            return list(members.values())

        members: Dict[str, AudienceMember] = {}
        for group in profile.assigned_groups:
            group_users = directory.list_group_members(group)
            result.log("info", f"Resolved group {group}: {len(group_users)} member(s)")
            for user in group_users:
                members.setdefault(user.id, AudienceMember(user, group))
        return list(members.values())

    def _effective_schedule(
        self,
        profile: NotificationProfile,
        mode: str,
        schedule_time: Optional[datetime],
        now: datetime,
    ) -> Optional[datetime]:
        """Future delivery time for queued sends, or ``None`` to send now."""

        if schedule_time is not None:
            if schedule_time.tzinfo is None:
                if self._local_tz is not None:
                    schedule_time = schedule_time.replace(tzinfo=self._local_tz)
                else:
                    schedule_time = schedule_time.astimezone()
            candidate: Optional[datetime] = schedule_time
        elif profile.preferred_time is not None and mode == MODE_LIVE:
            local_now = now.astimezone(self._local_tz)
            candidate = local_now.replace(
                hour=profile.preferred_time.hour,
                minute=profile.preferred_time.minute,
                second=0,
                microsecond=0,
            )
            if candidate <= local_now:
                candidate += timedelta(days=1)
        else:
            candidate = None

        if candidate is not None and candidate > now:
            return candidate
        return None

    def _process_member(self, ctx: _JobContext, member: AudienceMember) -> None:
        user = member.user
        profile = ctx.profile
        result = ctx.result

        state = compute_expiry(user, ctx.config.default_expiry_days, ctx.now)
        if not matches(state, profile):
            return
        result.matched += 1

        if ctx.mode == MODE_PREVIEW:
            result.preview.append(
                PreviewRow(
                    display_name=user.display_name,
                    principal_name=user.principal_name,
                    days_remaining=state.days_remaining,
                    expiry=state.expiry,
                    group=member.group,
                )
            )
            return

        if ctx.mode == MODE_LIVE and self._ledger.was_already_sent(user.principal_name, profile.id, ctx.today):
            result.skipped += 1
            result.log("skip", f"Skipping {user.principal_name}: already notified today")
            try:
                self._ledger.record_skipped(user.principal_name, profile.id, ctx.today, ctx.now)
            except PersistenceError:
                pass
            return

        manager = self._lookup_manager(ctx, user)
        if ctx.mode == MODE_TEST:
            to = ctx.test_recipient or ""
        elif profile.recipients.to_user:
            to = user.principal_name
        elif manager:
            to = manager
        else:
            result.skipped += 1
            result.log("warn", f"No recipient for {user.principal_name}; profile does not notify the user and no manager was found")
            return

        cc_set = set(profile.recipients.cc_addresses)
        if manager:
            cc_set.add(manager)
        cc = tuple(sorted(a for a in cc_set if a.lower() != to.lower()))

        try:
            values = placeholder_values(user, state)
            subject = render_template(profile.subject_template, values)
            body = render_template(profile.email_template, values)
        except TemplateError as exc:
            result.log("error", f"Could not render message for {user.principal_name}", str(exc))
            return

        if ctx.schedule_at is not None:
            self._enqueue(ctx, user, to, cc, subject, body)
        else:
            self._send_now(ctx, user, to, cc, subject, body)

    def _lookup_manager(self, ctx: _JobContext, user: DirectoryUser) -> Optional[str]:
        if not ctx.profile.recipients.to_manager:
            return None
        try:
            manager = ctx.directory.get_manager(user.id)
        except DirectoryError as exc:
            ctx.result.log("warn", f"Manager lookup failed for {user.principal_name}", str(exc))
            return None
        if not manager:
            ctx.result.log("warn", f"No manager found for {user.principal_name}")
        return manager

    def _enqueue(
        self,
        ctx: _JobContext,
        user: DirectoryUser,
        to: str,
        cc: Tuple[str, ...],
        subject: str,
        body: str,
    ) -> None:
        assert ctx.schedule_at is not None
        item = QueueItem(
            scheduled_for=ctx.schedule_at,
            recipient=to,
            cc=cc,
            subject=subject,
            body=body,
            profile_name=ctx.profile.name,
            profile_id=ctx.profile.id,
            read_receipt=ctx.profile.recipients.read_receipt,
            live=ctx.mode == MODE_LIVE,
            audit_recipient=user.principal_name,
        )
        try:
            self._queue.enqueue(item)
        except PersistenceError as exc:
            ctx.result.log("error", f"Could not queue notification for {to}", str(exc))
            return
        ctx.result.queued += 1
        ctx.result.log("queue", f"Queued notification for {to} at {ctx.schedule_at.isoformat()}")
        if ctx.mode == MODE_LIVE:
            # Recorded at enqueue time so a later run today does not queue it again.
            self._record_sent(ctx, user)

    def _send_now(
        self,
        ctx: _JobContext,
        user: DirectoryUser,
        to: str,
        cc: Tuple[str, ...],
        subject: str,
        body: str,
    ) -> None:
        try:
            if ctx.transport is None:
                ctx.transport = self._transport_factory(ctx.config.mail)
            message = build_message(
                ctx.config.mail,
                to=to,
                subject=subject,
                body=body,
                cc=cc,
                read_receipt=ctx.profile.recipients.read_receipt,
            )
            ctx.transport.send(message)
        except (MailDeliveryError, ValueError) as exc:
            ctx.result.log("error", f"Failed to notify {to}", str(exc))
            return
        ctx.result.sent += 1
        ctx.result.log("success", f"Notified {to} ({ctx.profile.name})")
        if ctx.mode == MODE_LIVE:
            self._record_sent(ctx, user)

    def _record_sent(self, ctx: _JobContext, user: DirectoryUser) -> None:
        try:
            self._ledger.record_sent(user.principal_name, ctx.profile.id, ctx.today, ctx.now)
        except PersistenceError as exc:
            ctx.result.log("error", f"Audit write failed for {user.principal_name}", str(exc))
