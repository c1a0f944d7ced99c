"""Shared test fixtures: temp JSON store, fake directory and fake mail transport."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from password_expiry_notifier.audit import AuditLedger
from password_expiry_notifier.client import DirectoryError
from password_expiry_notifier.config import AppConfig, ConfigStore, DirectoryConfig, MailConfig
from password_expiry_notifier.delivery_queue import DeliveryQueue
from password_expiry_notifier.expiry import DirectoryUser
from password_expiry_notifier.notification import DeliveryReceipt, MailDeliveryError, MailMessage
from password_expiry_notifier.storage import JsonCollectionStore

NOW = datetime(2024, 3, 31, 0, 0, tzinfo=timezone.utc)


def make_user(
    user_id: str = "u1",
    name: str = "Alice Smith",
    upn: str = "alice@contoso.com",
    enabled: bool = True,
    last_change: Optional[datetime] = datetime(2024, 1, 1, tzinfo=timezone.utc),
    created: Optional[datetime] = None,
    hybrid: bool = False,
    policies: str = "",
) -> DirectoryUser:
    return DirectoryUser(
        id=user_id,
        display_name=name,
        principal_name=upn,
        account_enabled=enabled,
        last_password_change=last_change,
        created=created,
        on_premises_sync_enabled=hybrid,
        password_policies=policies,
    )


class FakeDirectory:
    def __init__(
        self,
        users: Optional[List[DirectoryUser]] = None,
        groups: Optional[Dict[str, List[DirectoryUser]]] = None,
        managers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.users = users or []
        self.groups = groups or {}
        self.managers = managers or {}
        self.fail_users = False
        self.failing_manager_ids: set = set()
        self.manager_calls: List[str] = []

    def list_users(self) -> List[DirectoryUser]:
        if self.fail_users:
            raise DirectoryError("Directory authentication failed: invalid_client")
        return list(self.users)

    def list_group_members(self, group_name: str) -> List[DirectoryUser]:
        if group_name not in self.groups:
            raise DirectoryError(f"Group {group_name!r} not found")
        return list(self.groups[group_name])

    def get_manager(self, user_id: str) -> Optional[str]:
        self.manager_calls.append(user_id)
        if user_id in self.failing_manager_ids:
            raise DirectoryError("manager lookup timed out")
        return self.managers.get(user_id)


class FakeTransport:
    def __init__(self, fail_for: Optional[set] = None) -> None:
        self.sent: List[MailMessage] = []
        self.fail_for = fail_for or set()
        self.fail_all = False

    def send(self, message: MailMessage) -> DeliveryReceipt:
        if self.fail_all or message.to in self.fail_for:
            raise MailDeliveryError(f"connection refused for {message.to}")
        self.sent.append(message)
        return DeliveryReceipt(recipient=message.to, message_id=f"<{len(self.sent)}@test>")

    def verify(self) -> None:
        return None


@pytest.fixture
def store(tmp_path):
    return JsonCollectionStore(tmp_path / "data")


@pytest.fixture
def app_config():
    return AppConfig(
        directory=DirectoryConfig(tenant_id="tenant", client_id="client", client_secret="secret"),
        mail=MailConfig(host="smtp.contoso.com", from_email="it@contoso.com"),
        default_expiry_days=90,
    )


@pytest.fixture
def config_store(store, app_config):
    return ConfigStore(store, base=app_config)


@pytest.fixture
def ledger(store):
    return AuditLedger(store)


@pytest.fixture
def queue(store):
    return DeliveryQueue(store)


@pytest.fixture
def transport():
    return FakeTransport()
