"""Notification profiles, cadence matching and the profile store."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import time
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .expiry import ExpiryState
from .storage import JsonCollectionStore
from .templating import validate_template

LOGGER = logging.getLogger("password_expiry_notifier.profiles")

ALL_USERS = "All Users"
PROFILES_COLLECTION = "profiles"

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_time_of_day(raw: Optional[str]) -> Optional[time]:
    if raw is None or not str(raw).strip():
        return None
    match = _TIME_RE.match(str(raw).strip())
    if not match:
        raise ValueError(f"Invalid time of day {raw!r}; expected HH:MM")
    return time(hour=int(match.group(1)), minute=int(match.group(2)))


@dataclass(frozen=True)
class RecipientPolicy:
    to_user: bool = True
    to_manager: bool = False
    cc_addresses: FrozenSet[str] = frozenset()
    read_receipt: bool = False


@dataclass(frozen=True)
class NotificationProfile:
    """Operator-owned rule set: who to notify, when, and with which message."""

    id: str
    name: str
    email_template: str
    subject_template: str
    cadence: FrozenSet[int] = frozenset()
    recipients: RecipientPolicy = field(default_factory=RecipientPolicy)
    assigned_groups: Tuple[str, ...] = (ALL_USERS,)
    preferred_time: Optional[time] = None
    description: str = ""

    @property
    def targets_all_users(self) -> bool:
        return any(group.strip().lower() == ALL_USERS.lower() for group in self.assigned_groups)

    def validate(self) -> None:
        validate_template(self.subject_template)
        validate_template(self.email_template)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "NotificationProfile":
        """Build a profile from a stored document.

        Accepts both the snake_case keys written by :meth:`to_dict` and the
        camelCase layout used by the web editor.
        """

        cadence_raw: Any = payload.get("cadence", ())
        if isinstance(cadence_raw, Mapping):
            cadence_raw = cadence_raw.get("daysBefore", ())
        recipients_raw: Mapping[str, Any] = payload.get("recipients") or {}
        cc: Iterable[str] = recipients_raw.get("cc_addresses", recipients_raw.get("toAdmins", ())) or ()
        recipients = RecipientPolicy(
            to_user=bool(recipients_raw.get("to_user", recipients_raw.get("toUser", True))),
            to_manager=bool(recipients_raw.get("to_manager", recipients_raw.get("toManager", False))),
            cc_addresses=frozenset(str(a).strip() for a in cc if str(a).strip()),
            read_receipt=bool(recipients_raw.get("read_receipt", recipients_raw.get("readReceipt", False))),
        )
        groups: Sequence[str] = payload.get("assigned_groups", payload.get("assignedGroups")) or (ALL_USERS,)
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            email_template=str(payload.get("email_template", payload.get("emailTemplate", "")) or ""),
            subject_template=str(payload.get("subject_template", payload.get("subjectLine", "")) or ""),
            cadence=frozenset(int(day) for day in cadence_raw),
            recipients=recipients,
            assigned_groups=tuple(str(g) for g in groups),
            preferred_time=parse_time_of_day(payload.get("preferred_time", payload.get("preferredTime"))),
            description=str(payload.get("description") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "email_template": self.email_template,
            "subject_template": self.subject_template,
            "cadence": sorted(self.cadence, reverse=True),
            "recipients": {
                "to_user": self.recipients.to_user,
                "to_manager": self.recipients.to_manager,
                "cc_addresses": sorted(self.recipients.cc_addresses),
                "read_receipt": self.recipients.read_receipt,
            },
            "assigned_groups": list(self.assigned_groups),
            "preferred_time": self.preferred_time.strftime("%H:%M") if self.preferred_time else None,
        }


def matches(state: ExpiryState, profile: NotificationProfile) -> bool:
    """True when today is one of the profile's trigger days for this state.

    Only an exact day count fires; a run that misses the trigger day does not
    catch up later.
    """

    return not state.never_expires and state.days_remaining in profile.cadence


class ProfileStore:
    """Persisted list of notification profiles. Saves replace whole profiles."""

    def __init__(self, store: JsonCollectionStore) -> None:
        self._store = store

    def list_profiles(self) -> List[NotificationProfile]:
        profiles: List[NotificationProfile] = []
        for payload in self._store.load_collection(PROFILES_COLLECTION):
            try:
                profiles.append(NotificationProfile.from_dict(payload))
            except (TypeError, ValueError) as exc:
                LOGGER.error("Skipping unreadable profile %r: %s", payload.get("id") if isinstance(payload, dict) else payload, exc)
        return profiles

    def get(self, profile_id: str) -> Optional[NotificationProfile]:
        for profile in self.list_profiles():
            if profile.id == profile_id:
                return profile
        return None

    def save(self, profile: NotificationProfile) -> NotificationProfile:
        profile.validate()
        if not profile.id:
            profile = replace(profile, id=str(uuid.uuid4()))
        with self._store.locked(PROFILES_COLLECTION):
            existing = self.list_profiles()
            documents = [profile.to_dict() if p.id == profile.id else p.to_dict() for p in existing]
            if not any(p.id == profile.id for p in existing):
                documents.append(profile.to_dict())
            self._store.save_collection(PROFILES_COLLECTION, documents)
        LOGGER.info("Saved profile %s (%s)", profile.id, profile.name)
        return profile

    def delete(self, profile_id: str) -> bool:
        with self._store.locked(PROFILES_COLLECTION):
            profiles = self.list_profiles()
            remaining = [p.to_dict() for p in profiles if p.id != profile_id]
            if len(remaining) == len(profiles):
                return False
            self._store.save_collection(PROFILES_COLLECTION, remaining)
        LOGGER.info("Deleted profile %s", profile_id)
        return True
