"""CLI entry point for the password expiry notifier."""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from dotenv import find_dotenv, load_dotenv

from .audit import AuditLedger
from .client import DirectoryError, GraphDirectoryClient
from .config import ConfigStore
from .delivery_queue import DeliveryQueue
from .notification import MailDeliveryError, build_transport
from .profiles import NotificationProfile, ProfileStore
from .scheduler import MODE_PREVIEW, MODES, ExpiryNotificationScheduler
from .storage import JsonCollectionStore
from .worker import DEFAULT_INTERVAL_SECONDS, QueueWorker

LOGGER = logging.getLogger("password_expiry_notifier.service")


@dataclass
class Services:
    store: JsonCollectionStore
    config_store: ConfigStore
    profiles: ProfileStore
    ledger: AuditLedger
    queue: DeliveryQueue
    scheduler: ExpiryNotificationScheduler


def build_services_from_env() -> Services:
    load_dotenv(find_dotenv(usecwd=True), override=False)
    store = JsonCollectionStore(os.getenv("NOTIFIER_DATA_DIR", "data"))
    config_store = ConfigStore(store)
    ledger = AuditLedger(store)
    queue = DeliveryQueue(store)
    scheduler = ExpiryNotificationScheduler(config_store=config_store, ledger=ledger, queue=queue)
    return Services(
        store=store,
        config_store=config_store,
        profiles=ProfileStore(store),
        ledger=ledger,
        queue=queue,
        scheduler=scheduler,
    )


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _load_json_file(path: str) -> Any:
    with open(path, encoding="utf-8") as handle:
        return json.load(handle)


# ---- commands --------------------------------------------------------------------
def cmd_worker(services: Services, args: argparse.Namespace) -> int:
    worker = QueueWorker(
        config_store=services.config_store,
        queue=services.queue,
        ledger=services.ledger,
        interval_seconds=args.interval,
    )

    def _shutdown(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s; finishing current tick", signum)
        worker.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    try:
        worker.run()
    except KeyboardInterrupt:
        LOGGER.info("Worker stopped via KeyboardInterrupt")
        worker.stop()
    return 0


def cmd_run_job(services: Services, args: argparse.Namespace) -> int:
    profile = services.profiles.get(args.profile_id)
    if profile is None:
        LOGGER.error("Profile %s not found", args.profile_id)
        return 2
    schedule_time = datetime.fromisoformat(args.schedule_time) if args.schedule_time else None
    result = services.scheduler.run_job(
        profile,
        args.mode,
        test_recipient=args.test_recipient,
        schedule_time=schedule_time,
    )
    _print_json(result.to_dict())
    return 0 if result.success else 1


def cmd_users(services: Services, args: argparse.Namespace) -> int:
    try:
        evaluated = services.scheduler.evaluate_users()
    except DirectoryError as exc:
        LOGGER.error("Fetching users failed: %s", exc)
        return 1
    _print_json(
        [
            {
                "id": user.id,
                "display_name": user.display_name,
                "principal_name": user.principal_name,
                "account_enabled": user.account_enabled,
                "hybrid": user.is_hybrid,
                "password_last_set": state.reference.isoformat() if state.reference else None,
                "never_expires": state.never_expires,
                "expiry_date": state.expiry.isoformat() if state.expiry else None,
                "days_until_expiry": state.days_remaining,
            }
            for user, state in evaluated
        ]
    )
    return 0


def cmd_queue(services: Services, args: argparse.Namespace) -> int:
    if args.queue_action == "list":
        _print_json([item.to_dict() for item in services.queue.items()])
    elif args.queue_action == "cancel":
        if not services.queue.remove(args.item_id):
            return 1
    elif args.queue_action == "clear":
        services.queue.clear()
    return 0


def cmd_history(services: Services, args: argparse.Namespace) -> int:
    _print_json([entry.to_dict() for entry in services.ledger.history()])
    return 0


def cmd_profiles(services: Services, args: argparse.Namespace) -> int:
    if args.profile_action == "list":
        _print_json([profile.to_dict() for profile in services.profiles.list_profiles()])
    elif args.profile_action == "import":
        payload = _load_json_file(args.path)
        documents = payload if isinstance(payload, list) else [payload]
        for document in documents:
            saved = services.profiles.save(NotificationProfile.from_dict(document))
            print(saved.id)
    elif args.profile_action == "delete":
        if not services.profiles.delete(args.profile_id):
            LOGGER.error("Profile %s not found", args.profile_id)
            return 1
    return 0


def cmd_config(services: Services, args: argparse.Namespace) -> int:
    if args.config_action == "set":
        services.config_store.save(_load_json_file(args.path))
    _print_json(services.config_store.masked())
    return 0


def cmd_verify(services: Services, args: argparse.Namespace) -> int:
    config = services.config_store.load()
    ok = True
    try:
        GraphDirectoryClient(config.directory).verify()
        LOGGER.info("Directory connection verified")
    except DirectoryError as exc:
        LOGGER.error("Directory check failed: %s", exc)
        ok = False
    try:
        build_transport(config.mail).verify()
        LOGGER.info("Mail transport connection verified")
    except (MailDeliveryError, ValueError) as exc:
        LOGGER.error("Mail transport check failed: %s", exc)
        ok = False
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="password-expiry-notifier", description=__doc__)
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="deliver queued messages until stopped")
    worker.add_argument(
        "--interval",
        type=float,
        default=float(os.getenv("NOTIFIER_POLL_SECONDS", DEFAULT_INTERVAL_SECONDS)),
    )
    worker.set_defaults(func=cmd_worker)

    run_job = sub.add_parser("run-job", help="evaluate a profile and notify matching users")
    run_job.add_argument("profile_id")
    run_job.add_argument("--mode", choices=MODES, default=MODE_PREVIEW)
    run_job.add_argument("--test-recipient")
    run_job.add_argument("--schedule-time", help="ISO 8601 delivery time; naive values are local time")
    run_job.set_defaults(func=cmd_run_job)

    sub.add_parser("users", help="list directory users with computed expiry").set_defaults(func=cmd_users)
    sub.add_parser("history", help="show the audit ledger, newest first").set_defaults(func=cmd_history)

    queue = sub.add_parser("queue", help="inspect or modify the delivery queue")
    queue_sub = queue.add_subparsers(dest="queue_action", required=True)
    queue_sub.add_parser("list")
    queue_sub.add_parser("cancel").add_argument("item_id")
    queue_sub.add_parser("clear")
    queue.set_defaults(func=cmd_queue)

    profiles = sub.add_parser("profiles", help="manage notification profiles")
    profiles_sub = profiles.add_subparsers(dest="profile_action", required=True)
    profiles_sub.add_parser("list")
    profiles_sub.add_parser("import").add_argument("path")
    profiles_sub.add_parser("delete").add_argument("profile_id")
    profiles.set_defaults(func=cmd_profiles)

    config = sub.add_parser("config", help="show or update saved settings")
    config_sub = config.add_subparsers(dest="config_action", required=True)
    config_sub.add_parser("show")
    config_sub.add_parser("set").add_argument("path")
    config.set_defaults(func=cmd_config)

    sub.add_parser("verify", help="check directory and mail connectivity").set_defaults(func=cmd_verify)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse ``argv``, dispatch the notifier subcommand and return its exit status."""

    logging.basicConfig(
        level=os.getenv("NOTIFIER_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    args = build_parser().parse_args(argv)
    services = build_services_from_env()
    try:
        return args.func(services, args)
    except ValueError as exc:
        LOGGER.error("%s", exc)
        return 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
