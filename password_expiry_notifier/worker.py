"""Background worker that delivers due items from the delivery queue."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional

from .audit import AuditLedger
from .config import ConfigStore, MailConfig
from .delivery_queue import STATUS_FAILED, STATUS_SENDING, DeliveryQueue
from .notification import MailDeliveryError, MailTransport, build_message, build_transport
from .storage import PersistenceError

LOGGER = logging.getLogger("password_expiry_notifier.worker")

DEFAULT_INTERVAL_SECONDS = 30


@dataclass
class WorkerTickResult:
    due: int = 0
    delivered: int = 0
    failed: int = 0


class QueueWorker:
    """Delivers queued messages one at a time on a fixed interval.

    Configuration is reloaded at the start of every tick so changed mail
    credentials take effect without a restart. :meth:`stop` lets the tick in
    progress finish before :meth:`run` returns.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        queue: DeliveryQueue,
        ledger: AuditLedger,
        transport_factory: Callable[[MailConfig], MailTransport] = build_transport,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        now_factory: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        local_tz: Optional[tzinfo] = None,
    ) -> None:
        self._config_store = config_store
        self._queue = queue
        self._ledger = ledger
        self._transport_factory = transport_factory
        self._interval = interval_seconds
        self._now_factory = now_factory
        self._local_tz = local_tz
        self._stop_event = threading.Event()

    def tick(self) -> WorkerTickResult:
        result = WorkerTickResult()
        config = self._config_store.load()
        now = self._now_factory()
        due = self._queue.dequeue_due(now)
        if not due:
            return result

        result.due = len(due)
        LOGGER.info("Found %d message(s) to deliver", len(due))
        if not config.mail.is_configured:
            LOGGER.error("Mail transport not configured; cannot process queue")
            return result
        try:
            transport = self._transport_factory(config.mail)
        except ValueError as exc:
            LOGGER.error("Cannot build mail transport: %s", exc)
            return result

        for item in due:
            claimed = self._queue.mark_sending(item.id)
            if claimed is None or claimed.status != STATUS_SENDING:
                # Cancelled or already picked up since dequeue.
                continue

            message = build_message(
                config.mail,
                to=item.recipient,
                subject=item.subject,
                body=item.body,
                cc=item.cc,
                read_receipt=item.read_receipt,
            )
            try:
                transport.send(message)
            except MailDeliveryError as exc:
                result.failed += 1
                updated = self._queue.mark_retry(item.id, str(exc))
                if updated is not None and updated.status == STATUS_FAILED:
                    LOGGER.error(
                        "Delivery to %s failed (%s); giving up after %d attempts",
                        item.recipient,
                        exc,
                        updated.retry_count,
                    )
                else:
                    LOGGER.error("Delivery to %s failed, will retry: %s", item.recipient, exc)
                continue

            result.delivered += 1
            LOGGER.info("Delivered queued message %s to %s", item.id, item.recipient)
            try:
                self._queue.mark_sent(item.id)
            except PersistenceError as exc:
                LOGGER.error("Delivered message %s could not be removed from the queue: %s", item.id, exc)
            if not (item.live and item.audit_recipient):
                continue
            delivered_at = self._now_factory()
            try:
                self._ledger.record_sent(
                    item.audit_recipient,
                    item.profile_id or item.profile_name,
                    delivered_at.astimezone(self._local_tz).date(),
                    delivered_at,
                )
            except PersistenceError as exc:
                LOGGER.error("Audit write failed for %s: %s", item.audit_recipient, exc)
        return result

    # ---- lifecycle -----------------------------------------------------------------
    def _execute_once(self) -> None:
        start = time.monotonic()
        try:
            outcome = self.tick()
            if outcome.due:
                LOGGER.info(
                    "Worker tick complete. Due=%s delivered=%s failed=%s",
                    outcome.due,
                    outcome.delivered,
                    outcome.failed,
                )
        except Exception:  # pragma: no cover - keep the loop alive
            LOGGER.exception("Queue worker tick failed")
        finally:
            LOGGER.debug("Tick duration %.2fs", time.monotonic() - start)

    def run(self) -> None:
        """Tick until :meth:`stop` is called. Blocks the calling thread."""

        stalled = self._queue.reset_stalled()
        if stalled:
            LOGGER.warning("Returned %d message(s) left in 'sending' state to pending", stalled)
        LOGGER.info("Queue worker started (interval %ss)", self._interval)
        while not self._stop_event.is_set():
            self._execute_once()
            self._stop_event.wait(self._interval)
        LOGGER.info("Queue worker stopped")

    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self.run, name="queue-worker", daemon=True)
        thread.start()
        return thread

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()
