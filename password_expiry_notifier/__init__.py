"""Password expiry notification utilities for Microsoft Entra ID directories."""

from .audit import AuditEntry, AuditLedger
from .client import DirectoryAuthError, DirectoryError, GraphDirectoryClient
from .config import AppConfig, ConfigStore, DirectoryConfig, MailConfig, merge_config
from .delivery_queue import DeliveryQueue, QueueItem
from .expiry import DirectoryUser, ExpiryState, compute_expiry
from .notification import MailDeliveryError, MailMessage, SESMailTransport, SMTPMailTransport
from .profiles import NotificationProfile, ProfileStore, RecipientPolicy, matches
from .scheduler import ExpiryNotificationScheduler, JobResult
from .storage import JsonCollectionStore, PersistenceError
from .worker import QueueWorker

__all__ = [
    "AuditEntry",
    "AuditLedger",
    "DirectoryAuthError",
    "DirectoryError",
    "GraphDirectoryClient",
    "AppConfig",
    "ConfigStore",
    "DirectoryConfig",
    "MailConfig",
    "merge_config",
    "DeliveryQueue",
    "QueueItem",
    "DirectoryUser",
    "ExpiryState",
    "compute_expiry",
    "MailDeliveryError",
    "MailMessage",
    "SESMailTransport",
    "SMTPMailTransport",
    "NotificationProfile",
    "ProfileStore",
    "RecipientPolicy",
    "matches",
    "ExpiryNotificationScheduler",
    "JobResult",
    "JsonCollectionStore",
    "PersistenceError",
    "QueueWorker",
]
