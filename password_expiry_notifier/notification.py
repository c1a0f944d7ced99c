"""Mail transports used to deliver password expiry notices."""

from __future__ import annotations

import logging
import os
import smtplib
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Optional, Protocol, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import MailConfig

LOGGER = logging.getLogger("password_expiry_notifier.notification")


class MailDeliveryError(RuntimeError):
    """Raised when a transport could not hand a message to the mail system."""


@dataclass(frozen=True)
class MailMessage:
    sender: str
    to: str
    subject: str
    body: str
    cc: Tuple[str, ...] = ()
    read_receipt: bool = False

    @property
    def recipients(self) -> Tuple[str, ...]:
        seen = set()
        ordered = []
        for address in (self.to, *self.cc):
            if address and address.lower() not in seen:
                seen.add(address.lower())
                ordered.append(address)
        return tuple(ordered)

    def to_email(self) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = self.to
        if self.cc:
            msg["Cc"] = ", ".join(self.cc)
        msg["Subject"] = self.subject
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid()
        if self.read_receipt:
            msg["Disposition-Notification-To"] = self.sender
            msg["Return-Receipt-To"] = self.sender
        msg.set_content(self.body)
        return msg


@dataclass(frozen=True)
class DeliveryReceipt:
    """Represents a message accepted by the transport."""

    recipient: str
    message_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class MailTransport(Protocol):
    def send(self, message: MailMessage) -> DeliveryReceipt: ...

    def verify(self) -> None: ...


class SMTPMailTransport:
    """Delivers through an SMTP relay. ``secure`` means TLS from connect time."""

    def __init__(self, config: MailConfig) -> None:
        self._config = config

    def _connect(self) -> smtplib.SMTP:
        cfg = self._config
        if cfg.secure:
            server: smtplib.SMTP = smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
        else:
            server = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls()
                server.ehlo()
        if cfg.username:
            server.login(cfg.username, cfg.password)
        return server

    def send(self, message: MailMessage) -> DeliveryReceipt:
        email_message = message.to_email()
        try:
            with self._connect() as server:
                server.send_message(email_message, from_addr=message.sender, to_addrs=list(message.recipients))
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"SMTP delivery to {message.to} failed: {exc}") from exc
        LOGGER.info("Delivered message to %s via SMTP", message.to)
        return DeliveryReceipt(recipient=message.to, message_id=str(email_message["Message-ID"]))

    def verify(self) -> None:
        try:
            with self._connect() as server:
                server.noop()
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"SMTP connection check failed: {exc}") from exc


class SESMailTransport:
    """Delivers through AWS SES ``send_raw_email``."""

    _RETRYABLE_CODES = {"Throttling", "ThrottlingException", "InternalError", "ServiceUnavailable"}

    def __init__(self, config: MailConfig, ses_client: Optional[object] = None, max_attempts: int = 3) -> None:
        self._config = config
        self._max_attempts = max_attempts
        if ses_client is not None:
            self._ses = ses_client
            return

        session_kwargs = {"region_name": config.region}
        if config.access_key and config.secret_key:
            session_kwargs.update(
                aws_access_key_id=config.access_key,
                aws_secret_access_key=config.secret_key,
            )
        endpoint_url = os.getenv("AWS_ENDPOINT_URL")  # e.g. http://localhost:4566 for LocalStack
        if endpoint_url:
            self._ses = boto3.client("ses", endpoint_url=endpoint_url, **session_kwargs)
        else:
            self._ses = boto3.client("ses", **session_kwargs)

    def send(self, message: MailMessage) -> DeliveryReceipt:
        raw = message.to_email().as_string()
        for attempt in range(self._max_attempts):
            try:
                response = self._ses.send_raw_email(  # type: ignore[attr-defined]
                    Source=message.sender,
                    Destinations=list(message.recipients),
                    RawMessage={"Data": raw},
                )
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code")
                if code in self._RETRYABLE_CODES and attempt < self._max_attempts - 1:
                    time.sleep(2 ** attempt)
                    continue
                raise MailDeliveryError(f"SES delivery to {message.to} failed: {exc}") from exc
            except BotoCoreError as exc:
                raise MailDeliveryError(f"SES delivery to {message.to} failed: {exc}") from exc
            LOGGER.info("Delivered message to %s via SES", message.to)
            return DeliveryReceipt(recipient=message.to, message_id=response.get("MessageId", ""))
        raise MailDeliveryError(f"SES delivery to {message.to} failed after {self._max_attempts} attempts")

    def verify(self) -> None:
        try:
            self._ses.get_send_quota()  # type: ignore[attr-defined]
        except (ClientError, BotoCoreError) as exc:
            raise MailDeliveryError(f"SES connection check failed: {exc}") from exc


def build_transport(config: MailConfig) -> MailTransport:
    if config.transport == "ses":
        return SESMailTransport(config)
    if config.transport == "smtp":
        return SMTPMailTransport(config)
    raise ValueError(f"Unknown mail transport {config.transport!r}")


def build_message(
    config: MailConfig,
    to: str,
    subject: str,
    body: str,
    cc: Sequence[str] = (),
    read_receipt: bool = False,
) -> MailMessage:
    return MailMessage(
        sender=config.from_email,
        to=to,
        subject=subject,
        body=body,
        cc=tuple(cc),
        read_receipt=read_receipt,
    )
