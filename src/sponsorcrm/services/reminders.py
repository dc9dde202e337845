from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sponsorcrm.domain import rules
from sponsorcrm.domain.models import ActivityDraft, Conference, SponsorForConference
from sponsorcrm.domain.stages import ActivityType, SignatureStatus
from sponsorcrm.services import sponsors as repo
from sponsorcrm.services.activity import ActivityLog
from sponsorcrm.services.clock import Clock, now_iso
from sponsorcrm.services.email import EmailDeliveryError, Mailer, load_email_template
from sponsorcrm.services.templates import CONTRACT_REMINDER, build_email_variables, render_email
from sponsorcrm.services.utils import from_iso
from sponsorcrm.store.sqlite import SqliteStore

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_DAYS = 5
DEFAULT_MAX_REMINDERS = rules.MAX_REMINDERS


@dataclass(frozen=True)
class SweepResult:
    total: int
    sent: int
    failed: int
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.message is not None:
            return {"success": True, "message": self.message, "total": 0, "sent": 0, "failed": 0}
        return {"success": True, "total": self.total, "sent": self.sent, "failed": self.failed}


class ReminderScheduler:
    """Batch sweep that re-sends signing links for contracts left unsigned.

    Records are processed one at a time. A failure on one record is counted
    and the sweep moves on.
    """

    def __init__(
        self,
        store: SqliteStore,
        activity_log: ActivityLog,
        clock: Clock,
        mailer: Mailer,
        threshold_days: int = DEFAULT_THRESHOLD_DAYS,
        max_reminders: int = DEFAULT_MAX_REMINDERS,
        sender_name: str | None = None,
    ) -> None:
        self.store = store
        self.activity_log = activity_log
        self.clock = clock
        self.mailer = mailer
        self.threshold_days = threshold_days
        self.max_reminders = min(max_reminders, rules.MAX_REMINDERS)
        self.sender_name = sender_name

    def candidates(self) -> list[SponsorForConference]:
        cutoff = self.clock.now() - timedelta(days=self.threshold_days)
        rows = self.store.fetch_all(
            "SELECT * FROM sponsor_for_conference "
            "WHERE signature_status = ? AND reminder_count < ? AND contract_sent_at IS NOT NULL "
            "ORDER BY contract_sent_at",
            (SignatureStatus.PENDING.value, self.max_reminders),
        )
        records = [SponsorForConference.from_row(row) for row in rows]
        # Strictly older than the threshold: a contract sent exactly N days ago waits.
        return [record for record in records if from_iso(record.contract_sent_at) < cutoff]

    def sweep(self) -> SweepResult:
        records = self.candidates()
        if not records:
            logger.info("No pending contracts need reminders")
            return SweepResult(total=0, sent=0, failed=0, message="No pending contracts need reminders.")

        sent = 0
        failed = 0
        for record in records:
            try:
                delivered = self.remind(record)
            except Exception:
                logger.exception("Reminder for %s failed", record.sfc_id)
                delivered = False
            if delivered:
                sent += 1
            else:
                failed += 1

        logger.info("Reminder sweep: %d sent, %d failed of %d", sent, failed, len(records))
        return SweepResult(total=len(records), sent=sent, failed=failed)

    def remind(self, record: SponsorForConference) -> bool:
        """Send one reminder. Returns True only when the email went out."""
        if not record.signing_url or not record.signer_email:
            logger.warning("Skipping reminder for %s: no signing link or signer email", record.sfc_id)
            return False

        sponsor = repo.get_sponsor(self.store, record.sponsor_id)
        conference = repo.get_conference(self.store, record.conference_id)
        new_count = record.reminder_count + 1
        delivered = self._send(record, sponsor.name, conference, new_count)

        # The count advances even when delivery failed so a broken address cannot loop forever.
        with self.store.transaction() as session:
            session.update(
                "sponsor_for_conference",
                "sfc_id",
                record.sfc_id,
                {"reminder_count": new_count, "updated_at": now_iso(self.clock)},
            )
            outcome = "sent to" if delivered else "could not be delivered to"
            self.activity_log.append(
                session,
                record.sfc_id,
                ActivityDraft(
                    ActivityType.CONTRACT_REMINDER_SENT.value,
                    f"Contract reminder #{new_count} {outcome} {record.signer_email}",
                    old_value=str(record.reminder_count),
                    new_value=str(new_count),
                    additional_data={"reminder_number": new_count, "delivered": delivered},
                ),
            )
        return delivered

    def _send(
        self, record: SponsorForConference, sponsor_name: str, conference: Conference, number: int
    ) -> bool:
        template = load_email_template(self.store, CONTRACT_REMINDER, conference.conference_id)
        variables = build_email_variables(
            sponsor_name,
            conference,
            contact_names=record.signer_name or sponsor_name,
            sender_name=self.sender_name,
            signing_url=record.signing_url,
        )
        try:
            self.mailer.send_rendered(
                render_email(template, variables),
                record.signer_email,
                reply_to=conference.sponsor_email,
                idempotency_key=f"{record.sfc_id}:reminder:{number}",
            )
        except EmailDeliveryError as exc:
            logger.warning("Reminder email for %s failed: %s", record.sfc_id, exc)
            return False
        return True
