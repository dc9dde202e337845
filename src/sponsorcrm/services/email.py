from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol

from sponsorcrm.domain.models import EmailTemplate, loads_json
from sponsorcrm.services.clock import Clock, SystemClock, now_iso
from sponsorcrm.services.retry import RetryPolicy
from sponsorcrm.services.templates import DEFAULT_EMAIL_TEMPLATES, RenderedEmail

logger = logging.getLogger(__name__)


class EmailDeliveryError(RuntimeError):
    pass


def _is_delivery_error(exc: BaseException) -> bool:
    return isinstance(exc, EmailDeliveryError)


@dataclass(frozen=True)
class EmailMessage:
    to: tuple[str, ...]
    subject: str
    body: str
    from_address: str
    reply_to: str | None = None
    # Deliveries sharing a key are sent once, so a retried send cannot duplicate.
    idempotency_key: str | None = None

    @classmethod
    def from_rendered(
        cls,
        rendered: RenderedEmail,
        to: str,
        from_address: str,
        reply_to: str | None = None,
        idempotency_key: str | None = None,
    ) -> EmailMessage:
        return cls(
            to=(to,),
            subject=rendered.subject,
            body=rendered.body,
            from_address=from_address,
            reply_to=reply_to,
            idempotency_key=idempotency_key,
        )


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> str: ...


@dataclass
class OutboxEmailSender:
    """Appends each outgoing message to a JSONL outbox picked up by the mail relay."""

    path: Path
    clock: Clock = field(default_factory=SystemClock)
    _sent_keys: set[str] | None = field(default=None, init=False, repr=False)

    def send(self, message: EmailMessage) -> str:
        if not message.to or not all(message.to):
            raise EmailDeliveryError("Email recipient is required.")
        sent = self._load_sent_keys()
        if message.idempotency_key and message.idempotency_key in sent:
            logger.info("Skipping duplicate email %s", message.idempotency_key)
            return message.idempotency_key

        payload = {
            "ts": now_iso(self.clock),
            "to": list(message.to),
            "from": message.from_address,
            "reply_to": message.reply_to,
            "subject": message.subject,
            "body": message.body,
            "idempotency_key": message.idempotency_key,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise EmailDeliveryError(f"Failed to write outbox {self.path}: {exc}") from exc
        if message.idempotency_key:
            sent.add(message.idempotency_key)
        return message.idempotency_key or payload["ts"]

    def _load_sent_keys(self) -> set[str]:
        if self._sent_keys is None:
            self._sent_keys = set()
            if self.path.exists():
                try:
                    lines = self.path.read_text(encoding="utf-8").splitlines()
                except OSError as exc:
                    raise EmailDeliveryError(f"Failed to read outbox {self.path}: {exc}") from exc
                for number, line in enumerate(lines, start=1):
                    if not line.strip():
                        continue
                    try:
                        key = json.loads(line).get("idempotency_key")
                    except (ValueError, AttributeError):
                        logger.warning("Skipping unreadable outbox line %d in %s", number, self.path)
                        continue
                    if key:
                        self._sent_keys.add(key)
        return self._sent_keys


class Mailer:
    """Sends through an EmailSender with bounded retries."""

    def __init__(self, sender: EmailSender, from_address: str, retry: RetryPolicy | None = None) -> None:
        self.sender = sender
        self.from_address = from_address
        self.retry = replace(retry or RetryPolicy(), retry_on=_is_delivery_error)

    def send(self, message: EmailMessage) -> str:
        try:
            return self.retry.call(self.sender.send, message)
        except (OSError, ValueError) as exc:
            raise EmailDeliveryError(f"Email to {', '.join(message.to)} failed: {exc}") from exc

    def send_rendered(
        self,
        rendered: RenderedEmail,
        to: str,
        reply_to: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        message = EmailMessage.from_rendered(
            rendered, to, self.from_address, reply_to=reply_to, idempotency_key=idempotency_key
        )
        return self.send(message)


def load_email_template(reader, slug: str, conference_id: str | None = None) -> EmailTemplate:
    """Conference-specific template first, then a global one, then the built-in default."""
    row = reader.fetch_one(
        "SELECT * FROM email_templates WHERE slug = ? AND (conference_id = ? OR conference_id IS NULL) "
        "ORDER BY conference_id IS NULL, created_at DESC LIMIT 1",
        (slug, conference_id),
    )
    if row is None:
        return DEFAULT_EMAIL_TEMPLATES[slug]
    return EmailTemplate(
        slug=row["slug"],
        subject=row["subject"],
        body=tuple(loads_json(row["body"], [])),
        conference_id=row["conference_id"],
    )
