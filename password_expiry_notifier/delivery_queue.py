"""Durable queue of scheduled notification emails."""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .expiry import parse_timestamp
from .storage import JsonCollectionStore

LOGGER = logging.getLogger("password_expiry_notifier.delivery_queue")

QUEUE_COLLECTION = "queue"
MAX_RETRIES = 3

STATUS_PENDING = "pending"
STATUS_SENDING = "sending"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class QueueItem:
    """A rendered message waiting for the worker to deliver it."""

    scheduled_for: datetime
    recipient: str
    subject: str
    body: str
    profile_name: str
    profile_id: str = ""
    cc: Tuple[str, ...] = ()
    read_receipt: bool = False
    live: bool = False
    audit_recipient: str = ""
    id: str = ""
    status: str = STATUS_PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_due(self, now: datetime) -> bool:
        return self.status == STATUS_PENDING and self.scheduled_for <= now

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "QueueItem":
        scheduled = parse_timestamp(payload.get("scheduled_for")) or datetime.now(timezone.utc)
        created = parse_timestamp(payload.get("created_at")) or scheduled
        return cls(
            id=str(payload.get("id") or ""),
            scheduled_for=scheduled,
            recipient=str(payload.get("recipient", "")),
            cc=tuple(payload.get("cc") or ()),
            subject=str(payload.get("subject", "")),
            body=str(payload.get("body", "")),
            profile_name=str(payload.get("profile_name", "")),
            profile_id=str(payload.get("profile_id", "")),
            status=str(payload.get("status", STATUS_PENDING)),
            retry_count=int(payload.get("retry_count", 0)),
            read_receipt=bool(payload.get("read_receipt", False)),
            live=bool(payload.get("live", False)),
            audit_recipient=str(payload.get("audit_recipient", "")),
            last_error=payload.get("last_error"),
            created_at=created,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["cc"] = list(self.cc)
        data["scheduled_for"] = self.scheduled_for.isoformat()
        data["created_at"] = self.created_at.isoformat()
        return data


class DeliveryQueue:
    """Queue backed by a single persisted collection.

    Each mutation reloads the collection, applies the change and writes the
    whole collection back while holding the collection lock.
    """

    def __init__(self, store: JsonCollectionStore) -> None:
        self._store = store

    def _load(self) -> List[QueueItem]:
        raw = self._store.load_collection(QUEUE_COLLECTION)
        if not isinstance(raw, list):
            LOGGER.error("Ignoring malformed %s collection (expected a list)", QUEUE_COLLECTION)
            return []
        items: List[QueueItem] = []
        for payload in raw:
            try:
                items.append(QueueItem.from_dict(payload))
            except (AttributeError, TypeError, ValueError) as exc:
                LOGGER.error("Dropping unreadable queue entry %r: %s", payload, exc)
        return items

    def _save(self, items: List[QueueItem]) -> None:
        self._store.save_collection(QUEUE_COLLECTION, [item.to_dict() for item in items])

    def _update(self, item_id: str, change: Callable[[QueueItem], Optional[QueueItem]]) -> Optional[QueueItem]:
        """Apply ``change`` to one item; a ``None`` result removes it."""

        with self._store.locked(QUEUE_COLLECTION):
            items = self._load()
            for index, item in enumerate(items):
                if item.id != item_id:
                    continue
                updated = change(item)
                if updated is None:
                    del items[index]
                else:
                    items[index] = updated
                self._save(items)
                return updated if updated is not None else item
        LOGGER.warning("Queue item %s not found", item_id)
        return None

    # ---- producer ---------------------------------------------------------------
    def enqueue(self, item: QueueItem) -> QueueItem:
        if not item.id:
            item = replace(item, id=str(uuid.uuid4()))
        with self._store.locked(QUEUE_COLLECTION):
            items = self._load()
            items.append(item)
            self._save(items)
        LOGGER.info("Queued message %s for %s at %s", item.id, item.recipient, item.scheduled_for.isoformat())
        return item

    # ---- consumer ---------------------------------------------------------------
    def items(self) -> List[QueueItem]:
        return self._load()

    def dequeue_due(self, now: datetime) -> List[QueueItem]:
        return [item for item in self._load() if item.is_due(now)]

    def mark_sending(self, item_id: str) -> Optional[QueueItem]:
        def change(item: QueueItem) -> QueueItem:
            if item.status != STATUS_PENDING:
                return item
            return replace(item, status=STATUS_SENDING)

        return self._update(item_id, change)

    def mark_sent(self, item_id: str) -> Optional[QueueItem]:
        return self._update(item_id, lambda item: None)

    def mark_retry(self, item_id: str, error: Optional[str] = None) -> Optional[QueueItem]:
        def change(item: QueueItem) -> QueueItem:
            if item.status == STATUS_FAILED:
                return item
            retries = item.retry_count + 1
            status = STATUS_FAILED if retries >= MAX_RETRIES else STATUS_PENDING
            return replace(item, retry_count=retries, status=status, last_error=error)

        return self._update(item_id, change)

    def reset_stalled(self) -> int:
        """Return items stuck in ``sending`` (worker died mid-send) to ``pending``."""

        with self._store.locked(QUEUE_COLLECTION):
            items = self._load()
            stalled = [item.id for item in items if item.status == STATUS_SENDING]
            if not stalled:
                return 0
            items = [replace(item, status=STATUS_PENDING) if item.id in stalled else item for item in items]
            self._save(items)
        return len(stalled)

    # ---- operator ---------------------------------------------------------------
    def remove(self, item_id: str) -> bool:
        return self._update(item_id, lambda item: None) is not None

    def clear(self) -> int:
        with self._store.locked(QUEUE_COLLECTION):
            count = len(self._load())
            self._save([])
        LOGGER.info("Cleared %d queued message(s)", count)
        return count
