"""Configuration dataclasses and the on-disk configuration store."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from dotenv import find_dotenv, load_dotenv

from .storage import JsonCollectionStore

LOGGER = logging.getLogger("password_expiry_notifier.config")

MASKED_SECRET = "********"
SETTINGS_COLLECTION = "app-settings"


@dataclass(frozen=True)
class DirectoryConfig:
    """Connection details for the Microsoft Graph directory API."""

    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: int = 10
    authority_url: str = "https://login.microsoftonline.com"
    graph_url: str = "https://graph.microsoft.com/v1.0"

    @property
    def is_configured(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass(frozen=True)
class MailConfig:
    """Outbound mail settings. ``transport`` selects SMTP or AWS SES."""

    transport: str = "smtp"
    host: str = ""
    port: int = 587
    secure: bool = True
    username: str = ""
    password: str = ""
    from_email: str = ""
    region: str = ""
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    timeout_seconds: int = 10

    @property
    def is_configured(self) -> bool:
        if self.transport == "ses":
            return bool(self.region and self.from_email)
        return bool(self.host and self.from_email)


@dataclass(frozen=True)
class AppConfig:
    directory: DirectoryConfig = field(default_factory=DirectoryConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    default_expiry_days: int = 90


# ---- environment helpers ----------------------------------------------------------
def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring non-integer value for %s: %r", name, raw)
        return default


def config_from_env() -> AppConfig:
    """Build the base configuration from the process environment (and ``.env``)."""

    load_dotenv(find_dotenv(usecwd=True), override=False)
    directory = DirectoryConfig(
        tenant_id=os.getenv("AZURE_TENANT_ID", ""),
        client_id=os.getenv("AZURE_CLIENT_ID", ""),
        client_secret=os.getenv("AZURE_CLIENT_SECRET", ""),
        timeout_seconds=_int_env("DIRECTORY_TIMEOUT_SECONDS", 10),
    )
    mail = MailConfig(
        transport=os.getenv("MAIL_TRANSPORT", "smtp").lower(),
        host=os.getenv("SMTP_HOST", ""),
        port=_int_env("SMTP_PORT", 587),
        secure=_bool_env("SMTP_SECURE", default=True),
        username=os.getenv("SMTP_USERNAME", ""),
        password=os.getenv("SMTP_PASSWORD", ""),
        from_email=os.getenv("SMTP_FROM", ""),
        region=os.getenv("AWS_SES_REGION", ""),
        access_key=os.getenv("AWS_SES_ACCESS_KEY_ID"),
        secret_key=os.getenv("AWS_SES_SECRET_ACCESS_KEY"),
        timeout_seconds=_int_env("SMTP_TIMEOUT_SECONDS", 10),
    )
    return AppConfig(
        directory=directory,
        mail=mail,
        default_expiry_days=_int_env("DEFAULT_EXPIRY_DAYS", 90),
    )


# ---- merging ----------------------------------------------------------------------
def _keep_secret(update: Mapping[str, Any], key: str, current: Optional[str]) -> Optional[str]:
    if key not in update or update[key] == MASKED_SECRET:
        return current
    return update[key]


def merge_config(current: AppConfig, update: Mapping[str, Any]) -> AppConfig:
    """Apply a (possibly partial) settings document on top of ``current``.

    Absent keys keep the current value. Secret fields also keep the current
    value when the update carries the masked placeholder.
    """

    d_update: Mapping[str, Any] = update.get("directory") or {}
    m_update: Mapping[str, Any] = update.get("mail") or {}
    d, m = current.directory, current.mail

    directory = DirectoryConfig(
        tenant_id=str(d_update.get("tenant_id", d.tenant_id)),
        client_id=str(d_update.get("client_id", d.client_id)),
        client_secret=str(_keep_secret(d_update, "client_secret", d.client_secret) or ""),
        timeout_seconds=int(d_update.get("timeout_seconds", d.timeout_seconds)),
        authority_url=str(d_update.get("authority_url", d.authority_url)),
        graph_url=str(d_update.get("graph_url", d.graph_url)),
    )
    mail = MailConfig(
        transport=str(m_update.get("transport", m.transport)).lower(),
        host=str(m_update.get("host", m.host)),
        port=int(m_update.get("port", m.port)),
        secure=bool(m_update.get("secure", m.secure)),
        username=str(m_update.get("username", m.username)),
        password=str(_keep_secret(m_update, "password", m.password) or ""),
        from_email=str(m_update.get("from_email", m.from_email)),
        region=str(m_update.get("region", m.region)),
        access_key=m_update.get("access_key", m.access_key),
        secret_key=_keep_secret(m_update, "secret_key", m.secret_key),
        timeout_seconds=int(m_update.get("timeout_seconds", m.timeout_seconds)),
    )
    return AppConfig(
        directory=directory,
        mail=mail,
        default_expiry_days=int(update.get("default_expiry_days", current.default_expiry_days)),
    )


def config_to_dict(config: AppConfig, mask_secrets: bool = False) -> Dict[str, Any]:
    def secret(value: Optional[str]) -> Optional[str]:
        if mask_secrets and value:
            return MASKED_SECRET
        return value

    d, m = config.directory, config.mail
    return {
        "directory": {
            "tenant_id": d.tenant_id,
            "client_id": d.client_id,
            "client_secret": secret(d.client_secret),
            "timeout_seconds": d.timeout_seconds,
            "authority_url": d.authority_url,
            "graph_url": d.graph_url,
        },
        "mail": {
            "transport": m.transport,
            "host": m.host,
            "port": m.port,
            "secure": m.secure,
            "username": m.username,
            "password": secret(m.password),
            "from_email": m.from_email,
            "region": m.region,
            "access_key": m.access_key,
            "secret_key": secret(m.secret_key),
            "timeout_seconds": m.timeout_seconds,
        },
        "default_expiry_days": config.default_expiry_days,
    }


class ConfigStore:
    """Loads the effective configuration: environment first, saved settings on top."""

    def __init__(self, store: JsonCollectionStore, base: Optional[AppConfig] = None) -> None:
        self._store = store
        self._base = base

    def _base_config(self) -> AppConfig:
        return self._base if self._base is not None else config_from_env()

    def load(self) -> AppConfig:
        saved = self._store.load_collection(SETTINGS_COLLECTION, default={})
        if not isinstance(saved, dict):
            LOGGER.error("Ignoring malformed %s document (expected an object)", SETTINGS_COLLECTION)
            saved = {}
        return merge_config(self._base_config(), saved)

    def save(self, update: Mapping[str, Any]) -> AppConfig:
        with self._store.locked(SETTINGS_COLLECTION):
            merged = merge_config(self.load(), update)
            self._store.save_collection(SETTINGS_COLLECTION, config_to_dict(merged))
        LOGGER.info("Configuration saved")
        return merged

    def masked(self) -> Dict[str, Any]:
        return config_to_dict(self.load(), mask_secrets=True)
