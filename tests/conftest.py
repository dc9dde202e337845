from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from sponsorcrm.config import EmailConfig, ReminderConfig, SigningConfig, StoreConfig, WorkspaceConfig
from sponsorcrm.context import AppContext, build_context
from sponsorcrm.domain.models import ContactPerson
from sponsorcrm.services import sponsors
from sponsorcrm.services.clock import FixedClock
from sponsorcrm.services.email import EmailDeliveryError, EmailMessage
from sponsorcrm.services.retry import NO_RETRY
from sponsorcrm.services.templates import text_block
from sponsorcrm.store.sqlite import SqliteStore

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class FakeEmailSender:
    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []
        self.failing: set[str] = set()

    def send(self, message: EmailMessage) -> str:
        if set(message.to) & self.failing:
            raise EmailDeliveryError(f"Mailbox unavailable: {message.to[0]}")
        self.sent.append(message)
        return message.idempotency_key or str(len(self.sent))

    def to(self, address: str) -> list[EmailMessage]:
        return [message for message in self.sent if address in message.to]


@dataclass(frozen=True)
class Seed:
    conference_id: str
    tier_id: str
    sponsor_id: str
    template_id: str
    sfc_id: str


@pytest.fixture
def store(tmp_path: Path) -> SqliteStore:
    store = SqliteStore(tmp_path / "test.sqlite")
    store.apply_schema()
    return store


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def workspace(tmp_path: Path) -> WorkspaceConfig:
    return WorkspaceConfig(
        name="test",
        store=StoreConfig(sqlite_path=tmp_path / "ws.sqlite"),
        email=EmailConfig(
            from_address="sponsors@example.org",
            outbox_path=tmp_path / "outbox.jsonl",
            sender_name="Sponsor Team",
        ),
        path=tmp_path,
        signing=SigningConfig(portal_base_url="https://crm.example.org"),
        reminders=ReminderConfig(threshold_days=5, max_reminders=2),
    )


@pytest.fixture
def ctx(workspace: WorkspaceConfig, clock: FixedClock, email_sender: FakeEmailSender) -> AppContext:
    return build_context(workspace, clock=clock, email_sender=email_sender, retry=NO_RETRY)


def seed_record(
    store: SqliteStore,
    sponsor_name: str = "Acme Bio",
    signer_email: str = "ada@acme.example",
    signing_provider: str | None = None,
) -> Seed:
    conference_id = sponsors.create_conference(
        store,
        "Cloud Native Days",
        city="Bergen",
        start_date="2026-06-10",
        end_date="2026-06-11",
        organizer="Cloud Native Bergen",
        organizer_org_number="123456789",
        sponsor_email="sponsor@cnd.example",
        signing_provider=signing_provider,
    )
    tier_id = sponsors.create_tier(store, conference_id, "Gold", prices=[{"amount": 50000, "currency": "NOK"}])
    sponsor_id = sponsors.create_sponsor(
        store,
        sponsor_name,
        website="https://acme.example",
        contacts=[ContactPerson(name="Ada Lovelace", email=signer_email, is_primary=True)],
        org_number="987654321",
    )
    template_id = sponsors.create_contract_template(
        store,
        conference_id,
        "Sponsorship Agreement {{{CONFERENCE_TITLE}}}",
        [{"heading": "Scope", "body": [text_block("{{{SPONSOR_NAME}}} sponsors at {{{TIER_NAME}}} level.")]}],
        tier_id=tier_id,
        is_default=True,
    )
    sfc_id = sponsors.add_to_conference(
        store, sponsor_id, conference_id, tier_id=tier_id, contract_value=50000, contract_currency="NOK"
    )
    return Seed(conference_id, tier_id, sponsor_id, template_id, sfc_id)


def mark_pending(
    store: SqliteStore,
    sfc_id: str,
    sent_at: datetime,
    reminder_count: int = 0,
    signing_url: str | None = "https://crm.example.org/sponsor/portal/token",
    signer_email: str | None = "ada@acme.example",
) -> None:
    with store.session() as session:
        session.update(
            "sponsor_for_conference",
            "sfc_id",
            sfc_id,
            {
                "signature_status": "pending",
                "contract_status": "contract-sent",
                "contract_sent_at": sent_at.isoformat(),
                "reminder_count": reminder_count,
                "signing_url": signing_url,
                "signer_email": signer_email,
                "signer_name": "Ada Lovelace",
            },
        )


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)
