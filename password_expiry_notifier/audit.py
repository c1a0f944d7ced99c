"""Audit ledger of delivered notifications, used to avoid duplicate sends."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Mapping

from .storage import JsonCollectionStore, PersistenceError

LOGGER = logging.getLogger("password_expiry_notifier.audit")

HISTORY_COLLECTION = "history"
RETENTION_DAYS = 60

OUTCOME_SENT = "sent"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class AuditEntry:
    date_key: str
    recipient: str
    profile_id: str
    outcome: str
    timestamp: str

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AuditEntry":
        return cls(
            date_key=str(payload.get("date_key", "")),
            recipient=str(payload.get("recipient", "")),
            profile_id=str(payload.get("profile_id", "")),
            outcome=str(payload.get("outcome", OUTCOME_SENT)),
            timestamp=str(payload.get("timestamp", "")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def same_key(self, recipient: str, profile_id: str, date_key: str) -> bool:
        return (
            self.date_key == date_key
            and self.recipient.lower() == recipient.lower()
            and self.profile_id == profile_id
        )


def _as_date(value: str) -> date:
    return date.fromisoformat(value)


class AuditLedger:
    """One entry per (recipient, profile, day); pruned to a rolling window on write."""

    def __init__(self, store: JsonCollectionStore, retention_days: int = RETENTION_DAYS) -> None:
        self._store = store
        self._retention_days = retention_days

    def _load(self) -> List[AuditEntry]:
        raw = self._store.load_collection(HISTORY_COLLECTION)
        if not isinstance(raw, list):
            LOGGER.error("Ignoring malformed %s collection (expected a list)", HISTORY_COLLECTION)
            return []
        entries = []
        for payload in raw:
            if isinstance(payload, Mapping):
                entries.append(AuditEntry.from_dict(payload))
        return entries

    def was_already_sent(self, recipient: str, profile_id: str, date_key: date) -> bool:
        key = date_key.isoformat()
        return any(
            entry.outcome == OUTCOME_SENT and entry.same_key(recipient, profile_id, key)
            for entry in self._load()
        )

    def history(self) -> List[AuditEntry]:
        return list(reversed(self._load()))

    def record_sent(self, recipient: str, profile_id: str, date_key: date, timestamp: datetime) -> bool:
        """Append a ``sent`` entry unless one already exists for this key.

        Returns ``True`` when an entry was appended. Raises
        :class:`PersistenceError` if the ledger could not be written.
        """

        return self._append(recipient, profile_id, date_key, timestamp, OUTCOME_SENT)

    def record_skipped(self, recipient: str, profile_id: str, date_key: date, timestamp: datetime) -> bool:
        return self._append(recipient, profile_id, date_key, timestamp, OUTCOME_SKIPPED)

    def _append(self, recipient: str, profile_id: str, date_key: date, timestamp: datetime, outcome: str) -> bool:
        key = date_key.isoformat()
        with self._store.locked(HISTORY_COLLECTION):
            entries = self._load()
            if outcome == OUTCOME_SENT and any(
                e.outcome == OUTCOME_SENT and e.same_key(recipient, profile_id, key) for e in entries
            ):
                return False
            entries.append(
                AuditEntry(
                    date_key=key,
                    recipient=recipient,
                    profile_id=profile_id,
                    outcome=outcome,
                    timestamp=timestamp.isoformat(),
                )
            )
            cutoff = date_key - timedelta(days=self._retention_days)
            kept = [e for e in entries if self._within_window(e, cutoff)]
            try:
                self._store.save_collection(HISTORY_COLLECTION, [e.to_dict() for e in kept])
            except PersistenceError:
                LOGGER.error(
                    "Audit write failed for %s (profile %s, %s); a duplicate send is possible on the next run",
                    recipient,
                    profile_id,
                    key,
                )
                raise
        return True

    @staticmethod
    def _within_window(entry: AuditEntry, cutoff: date) -> bool:
        try:
            return _as_date(entry.date_key) >= cutoff
        except ValueError:
            return False
