import json
from pathlib import Path

import pytest

from sponsorcrm.services.email import EmailDeliveryError, EmailMessage, Mailer, OutboxEmailSender
from sponsorcrm.services.retry import RetryPolicy, is_transient


def _message(key: str | None = "sfc-1:reminder:1", to: str = "ada@acme.example") -> EmailMessage:
    return EmailMessage(
        to=(to,),
        subject="Reminder",
        body="Please sign.",
        from_address="sponsors@example.org",
        idempotency_key=key,
    )


def test_outbox_skips_duplicate_idempotency_keys(tmp_path: Path, clock) -> None:
    path = tmp_path / "outbox.jsonl"
    OutboxEmailSender(path, clock).send(_message())

    # A fresh sender, as after a restart, still sees the earlier delivery.
    OutboxEmailSender(path, clock).send(_message())
    OutboxEmailSender(path, clock).send(_message(key="sfc-1:reminder:2"))

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["idempotency_key"] for line in lines] == ["sfc-1:reminder:1", "sfc-1:reminder:2"]
    assert lines[0]["ts"] == "2026-03-10T12:00:00+00:00"


def test_outbox_requires_recipient(tmp_path: Path) -> None:
    with pytest.raises(EmailDeliveryError):
        OutboxEmailSender(tmp_path / "outbox.jsonl").send(_message(to=""))


def test_mailer_retries_delivery_errors() -> None:
    attempts = []

    class FlakySender:
        def send(self, message):
            attempts.append(message)
            if len(attempts) < 3:
                raise EmailDeliveryError("relay busy")
            return "ok"

    # A policy shared with the signing adapters still retries email failures.
    retry = RetryPolicy(attempts=3, sleep=lambda _: None, retry_on=is_transient)

    assert Mailer(FlakySender(), "sponsors@example.org", retry=retry).send(_message()) == "ok"
    assert len(attempts) == 3


def test_mailer_reports_sender_io_errors_as_delivery_errors() -> None:
    class DisconnectedSender:
        def send(self, message):
            raise ConnectionResetError("smtp connection reset")

    mailer = Mailer(DisconnectedSender(), "sponsors@example.org", retry=RetryPolicy(attempts=1))

    with pytest.raises(EmailDeliveryError, match="smtp connection reset"):
        mailer.send(_message())


def test_outbox_skips_unreadable_lines(tmp_path: Path, clock) -> None:
    path = tmp_path / "outbox.jsonl"
    path.write_text('{"idempotency_key": "sfc-1:reminder:1"}\n{not json\n', encoding="utf-8")

    sender = OutboxEmailSender(path, clock)
    sender.send(_message())
    sender.send(_message(key="sfc-1:reminder:2"))

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    assert json.loads(lines[-1])["idempotency_key"] == "sfc-1:reminder:2"
