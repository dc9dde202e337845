from dataclasses import replace

from conftest import FakeEmailSender, days_ago, mark_pending, seed_record

from sponsorcrm.config import ReminderConfig
from sponsorcrm.context import build_context
from sponsorcrm.services import sponsors
from sponsorcrm.services.retry import NO_RETRY
from sponsorcrm.services.templates import text_block


def _reminder_activities(ctx, sfc_id: str):
    return [a for a in ctx.activity_log.list_for(sfc_id) if a.activity_type == "contract_reminder_sent"]


def test_only_contracts_older_than_threshold_are_reminded(ctx, email_sender) -> None:
    old = seed_record(ctx.store, "Acme Bio")
    fresh = seed_record(ctx.store, "Globex", signer_email="hank@globex.example")
    mark_pending(ctx.store, old.sfc_id, days_ago(6))
    mark_pending(ctx.store, fresh.sfc_id, days_ago(4), signer_email="hank@globex.example")

    result = ctx.reminders.sweep()

    assert result.to_dict() == {"success": True, "total": 1, "sent": 1, "failed": 0}
    assert sponsors.get_record(ctx.store, old.sfc_id).reminder_count == 1
    assert sponsors.get_record(ctx.store, fresh.sfc_id).reminder_count == 0
    assert email_sender.to("hank@globex.example") == []
    message = email_sender.to("ada@acme.example")[0]
    assert message.idempotency_key == f"{old.sfc_id}:reminder:1"
    assert "https://crm.example.org/sponsor/portal/token" in message.body
    assert message.reply_to == "sponsor@cnd.example"


def test_contract_sent_exactly_at_threshold_waits(ctx) -> None:
    seed = seed_record(ctx.store)
    mark_pending(ctx.store, seed.sfc_id, days_ago(5))

    assert ctx.reminders.candidates() == []


def test_reminders_stop_at_maximum(ctx) -> None:
    seed = seed_record(ctx.store)
    mark_pending(ctx.store, seed.sfc_id, days_ago(6))

    ctx.reminders.sweep()
    ctx.reminders.sweep()
    third = ctx.reminders.sweep()

    assert sponsors.get_record(ctx.store, seed.sfc_id).reminder_count == 2
    assert third.to_dict() == {
        "success": True,
        "message": "No pending contracts need reminders.",
        "total": 0,
        "sent": 0,
        "failed": 0,
    }
    descriptions = [a.description for a in reversed(_reminder_activities(ctx, seed.sfc_id))]
    assert descriptions == [
        "Contract reminder #1 sent to ada@acme.example",
        "Contract reminder #2 sent to ada@acme.example",
    ]


def test_non_pending_records_are_untouched(ctx, email_sender) -> None:
    seed = seed_record(ctx.store)
    mark_pending(ctx.store, seed.sfc_id, days_ago(10))
    ctx.mutations.update_status(seed.sfc_id, "signature_status", "signed")

    result = ctx.reminders.sweep()

    assert result.total == 0
    assert email_sender.sent == []
    assert sponsors.get_record(ctx.store, seed.sfc_id).reminder_count == 0


def test_one_failure_does_not_stop_the_sweep(ctx, email_sender) -> None:
    broken = seed_record(ctx.store, "Acme Bio", signer_email="bounce@acme.example")
    healthy = seed_record(ctx.store, "Globex", signer_email="hank@globex.example")
    mark_pending(ctx.store, broken.sfc_id, days_ago(8), signer_email="bounce@acme.example")
    mark_pending(ctx.store, healthy.sfc_id, days_ago(7), signer_email="hank@globex.example")
    email_sender.failing.add("bounce@acme.example")

    result = ctx.reminders.sweep()

    assert (result.total, result.sent, result.failed) == (2, 1, 1)
    assert len(email_sender.to("hank@globex.example")) == 1
    # The failed attempt still counts so a dead address is not retried forever.
    assert sponsors.get_record(ctx.store, broken.sfc_id).reminder_count == 1
    activity = _reminder_activities(ctx, broken.sfc_id)[0]
    assert activity.description == "Contract reminder #1 could not be delivered to bounce@acme.example"
    assert activity.metadata["additional_data"] == {"reminder_number": 1, "delivered": False}


def test_record_without_signing_link_is_skipped(ctx, email_sender) -> None:
    seed = seed_record(ctx.store)
    mark_pending(ctx.store, seed.sfc_id, days_ago(6), signing_url=None)

    result = ctx.reminders.sweep()

    assert (result.total, result.sent, result.failed) == (1, 0, 1)
    assert email_sender.sent == []
    assert sponsors.get_record(ctx.store, seed.sfc_id).reminder_count == 0
    assert _reminder_activities(ctx, seed.sfc_id) == []


def test_conference_reminder_template_overrides_default(ctx, email_sender) -> None:
    seed = seed_record(ctx.store)
    sponsors.create_email_template(
        ctx.store,
        "contract-reminder",
        "Nudge for {{{SPONSOR_NAME}}}",
        [text_block("Please sign: {{{SIGNING_URL}}}")],
        conference_id=seed.conference_id,
    )
    mark_pending(ctx.store, seed.sfc_id, days_ago(6))

    ctx.reminders.sweep()

    message = email_sender.sent[0]
    assert message.subject == "Nudge for Acme Bio"
    assert message.body == "Please sign: https://crm.example.org/sponsor/portal/token"


class RaisingSender(FakeEmailSender):
    def __init__(self, address: str, error: Exception) -> None:
        super().__init__()
        self.address = address
        self.error = error

    def send(self, message):
        if self.address in message.to:
            raise self.error
        return super().send(message)


def _two_pending(ctx):
    broken = seed_record(ctx.store, "Acme Bio", signer_email="bounce@acme.example")
    healthy = seed_record(ctx.store, "Globex", signer_email="hank@globex.example")
    mark_pending(ctx.store, broken.sfc_id, days_ago(8), signer_email="bounce@acme.example")
    mark_pending(ctx.store, healthy.sfc_id, days_ago(7), signer_email="hank@globex.example")
    return broken, healthy


def test_sender_io_error_counts_as_failed_delivery(workspace, clock) -> None:
    sender = RaisingSender("bounce@acme.example", OSError("smtp connection reset"))
    ctx = build_context(workspace, clock=clock, email_sender=sender, retry=NO_RETRY)
    broken, healthy = _two_pending(ctx)

    result = ctx.reminders.sweep()

    assert (result.total, result.sent, result.failed) == (2, 1, 1)
    assert len(sender.to("hank@globex.example")) == 1
    assert sponsors.get_record(ctx.store, broken.sfc_id).reminder_count == 1
    assert sponsors.get_record(ctx.store, healthy.sfc_id).reminder_count == 1


def test_unexpected_error_still_completes_the_batch(workspace, clock) -> None:
    sender = RaisingSender("bounce@acme.example", RuntimeError("relay exploded"))
    ctx = build_context(workspace, clock=clock, email_sender=sender, retry=NO_RETRY)
    broken, healthy = _two_pending(ctx)

    result = ctx.reminders.sweep()

    assert (result.total, result.sent, result.failed) == (2, 1, 1)
    assert sponsors.get_record(ctx.store, broken.sfc_id).reminder_count == 0
    assert sponsors.get_record(ctx.store, healthy.sfc_id).reminder_count == 1


def test_reminder_cap_cannot_be_raised(workspace, clock, email_sender) -> None:
    generous = replace(workspace, reminders=ReminderConfig(threshold_days=5, max_reminders=5))
    ctx = build_context(generous, clock=clock, email_sender=email_sender, retry=NO_RETRY)
    seed = seed_record(ctx.store)
    mark_pending(ctx.store, seed.sfc_id, days_ago(6))

    for _ in range(5):
        ctx.reminders.sweep()

    assert sponsors.get_record(ctx.store, seed.sfc_id).reminder_count == 2
    assert len(email_sender.to("ada@acme.example")) == 2
