"""Password expiry calculation for directory users."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

NEVER_EXPIRES_DAYS = 999
NEVER_EXPIRES_POLICY = "DisablePasswordExpiration"


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    value = str(raw).strip()
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        parsed = None
    if parsed is None:
        formats = [
            "%Y-%m-%dT%H:%M:%S.%f",
            "%Y-%m-%dT%H:%M:%S",
            "%Y-%m-%d %H:%M:%S",
        ]
        for fmt in formats:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class DirectoryUser:
    """Snapshot of the directory attributes the expiry logic needs."""

    id: str
    display_name: str
    principal_name: str
    account_enabled: bool = True
    last_password_change: Optional[datetime] = None
    created: Optional[datetime] = None
    on_premises_sync_enabled: bool = False
    password_policies: str = ""

    @property
    def is_hybrid(self) -> bool:
        return self.on_premises_sync_enabled

    @classmethod
    def from_api(cls, payload: Dict[str, object]) -> "DirectoryUser":
        principal = str(payload.get("userPrincipalName") or payload.get("mail") or "")
        return cls(
            id=str(payload.get("id")),
            display_name=str(payload.get("displayName") or principal),
            principal_name=principal,
            # Graph omits accountEnabled when it was not selected; treat as enabled.
            account_enabled=payload.get("accountEnabled") is not False,
            last_password_change=parse_timestamp(payload.get("lastPasswordChangeDateTime")),  # type: ignore[arg-type]
            created=parse_timestamp(payload.get("createdDateTime")),  # type: ignore[arg-type]
            on_premises_sync_enabled=payload.get("onPremisesSyncEnabled") is True,
            password_policies=str(payload.get("passwordPolicies") or ""),
        )


@dataclass(frozen=True)
class ExpiryState:
    reference: Optional[datetime]
    never_expires: bool
    expiry: Optional[datetime]
    days_remaining: int

    @classmethod
    def never(cls, reference: Optional[datetime]) -> "ExpiryState":
        return cls(reference=reference, never_expires=True, expiry=None, days_remaining=NEVER_EXPIRES_DAYS)


def compute_expiry(user: DirectoryUser, default_window_days: int, now: datetime) -> ExpiryState:
    """Derive the password expiry of ``user`` as seen at ``now``.

    The baseline is the last password change, falling back to the account
    creation time. Without either the password is reported as never expiring
    rather than as already expired.

    ``DisablePasswordExpiration`` is honoured for cloud-only accounts only.
    For on-premises synced accounts the cloud flag does not reflect the
    on-prem policy, so the configured window always applies.
    """

    reference = user.last_password_change or user.created
    if reference is None:
        return ExpiryState.never(None)

    policy_never_expires = NEVER_EXPIRES_POLICY in (user.password_policies or "")
    if policy_never_expires and not user.on_premises_sync_enabled:
        return ExpiryState.never(reference)

    expiry = reference + timedelta(days=default_window_days)
    remaining = (expiry - now) / timedelta(days=1)
    return ExpiryState(
        reference=reference,
        never_expires=False,
        expiry=expiry,
        days_remaining=math.ceil(remaining),
    )
