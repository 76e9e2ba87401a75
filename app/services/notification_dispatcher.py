import logging
import os
from dataclasses import dataclass, asdict
from typing import Iterable, Optional, Protocol

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client


logger = logging.getLogger(__name__)

DELIVERED = "delivered"
UNSUBSCRIBED = "unsubscribed"
INVALID_NUMBER = "invalid_number"
FAILED = "failed"

# Twilio error codes
_TWILIO_UNSUBSCRIBED = 21610
_TWILIO_INVALID_TO = 21211


@dataclass(frozen=True)
class NotificationIntent:
    kind: str  # WELCOME / PROGRESS / REWARD_ISSUED / IMPORT_WELCOME
    phone: str
    body: str
    business_id: Optional[str] = None
    sender: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


class SmsSender(Protocol):
    def send(self, to: str, body: str, sender: Optional[str] = None) -> str:
        ...


class TwilioSmsSender:
    """SMS sender backed by the Twilio REST API."""

    def __init__(self, account_sid: str | None = None, auth_token: str | None = None, from_number: str | None = None):
        self.account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = auth_token or os.getenv("TWILIO_AUTH_TOKEN")
        self.from_number = from_number or os.getenv("TWILIO_PHONE_NUMBER")

        if not all([self.account_sid, self.auth_token]):
            logger.warning("Twilio credentials not configured")
            self.client = None
        else:
            self.client = Client(self.account_sid, self.auth_token)

    def send(self, to: str, body: str, sender: Optional[str] = None) -> str:
        from_number = sender or self.from_number
        if not self.client or not from_number:
            logger.warning("SMS not sent: Twilio client or sender number missing", extra={"to": to})
            return FAILED

        try:
            message = self.client.messages.create(to=to, from_=from_number, body=body)
        except TwilioRestException as e:
            if e.code == _TWILIO_UNSUBSCRIBED:
                logger.info("recipient unsubscribed; SMS skipped", extra={"to": to})
                return UNSUBSCRIBED
            if e.code == _TWILIO_INVALID_TO:
                logger.info("invalid or non-SMS phone number", extra={"to": to})
                return INVALID_NUMBER
            logger.error("Twilio error sending SMS", extra={"to": to, "error_code": e.code, "error": e.msg})
            return FAILED

        logger.info("SMS sent", extra={"to": to, "sid": message.sid})
        return DELIVERED


class NotificationDispatcher:
    """
    Consumes notification intents. Every outcome is reported back as a status
    string; nothing here is allowed to fail the caller's unit of work.
    """

    def __init__(self, sender: SmsSender):
        self.sender = sender

    def dispatch(self, intent: NotificationIntent) -> str:
        try:
            outcome = self.sender.send(intent.phone, intent.body, sender=intent.sender)
        except Exception:
            logger.exception(
                "notification dispatch failed",
                extra={"kind": intent.kind, "phone": intent.phone, "business_id": intent.business_id},
            )
            return FAILED

        if outcome != DELIVERED:
            logger.warning(
                "notification not delivered",
                extra={"kind": intent.kind, "phone": intent.phone, "outcome": outcome},
            )
        return outcome

    def dispatch_all(self, intents: Iterable[NotificationIntent]) -> list[str]:
        return [self.dispatch(intent) for intent in intents]


_default_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _default_dispatcher
    if _default_dispatcher is None:
        _default_dispatcher = NotificationDispatcher(TwilioSmsSender())
    return _default_dispatcher
