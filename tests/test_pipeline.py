import pytest
from conftest import seed_record

from sponsorcrm.domain.rules import ValidationError
from sponsorcrm.errors import NotFoundError
from sponsorcrm.services import sponsors
from sponsorcrm.services.pipeline import BulkUpdate


def test_update_status_writes_record_and_activity(ctx) -> None:
    seed = seed_record(ctx.store)

    result = ctx.mutations.update_status(seed.sfc_id, "status", "contacted", "ola")

    record = sponsors.get_record(ctx.store, seed.sfc_id)
    assert result.changed
    assert record.status == "contacted"
    assert record.contact_initiated_at == "2026-03-10T12:00:00+00:00"
    activities = ctx.activity_log.list_for(seed.sfc_id)
    assert len(activities) == 1
    assert activities[0].activity_type == "stage_change"
    assert activities[0].created_by == "ola"
    assert activities[0].metadata["old_value"] == "prospect"
    assert activities[0].metadata["new_value"] == "contacted"


def test_update_status_same_value_logs_nothing(ctx) -> None:
    seed = seed_record(ctx.store)

    result = ctx.mutations.update_status(seed.sfc_id, "status", "prospect")

    assert not result.changed
    assert ctx.activity_log.list_for(seed.sfc_id) == []


def test_update_status_rejects_invalid_value(ctx) -> None:
    seed = seed_record(ctx.store)

    with pytest.raises(ValidationError):
        ctx.mutations.update_status(seed.sfc_id, "invoice_status", "refunded")

    assert sponsors.get_record(ctx.store, seed.sfc_id).invoice_status == "not-sent"


def test_update_status_unknown_record(ctx) -> None:
    with pytest.raises(NotFoundError):
        ctx.mutations.update_status("missing", "status", "contacted")


def test_terminal_status_can_be_left(ctx) -> None:
    seed = seed_record(ctx.store)
    ctx.mutations.update_status(seed.sfc_id, "status", "closed-lost")

    result = ctx.mutations.update_status(seed.sfc_id, "status", "negotiating")

    assert result.old_value == "closed-lost"
    assert sponsors.get_record(ctx.store, seed.sfc_id).status == "negotiating"


def test_bulk_update_skips_unknown_and_unchanged(ctx) -> None:
    first = seed_record(ctx.store, "Acme Bio")
    second = seed_record(ctx.store, "Globex")
    ctx.mutations.update_status(second.sfc_id, "invoice_status", "sent")

    result = ctx.mutations.bulk_update(
        [first.sfc_id, second.sfc_id, "missing"],
        BulkUpdate(invoice_status="sent", add_tags=["gold"]),
        "ola",
    )

    assert result.total == 3
    assert result.updated == 2
    assert sponsors.get_record(ctx.store, first.sfc_id).invoice_status == "sent"
    assert sponsors.get_record(ctx.store, second.sfc_id).tags == ("gold",)
    second_types = [a.activity_type for a in ctx.activity_log.list_for(second.sfc_id)]
    assert second_types.count("invoice_status_change") == 1


def test_bulk_update_validates_before_writing(ctx) -> None:
    seed = seed_record(ctx.store)

    with pytest.raises(ValidationError):
        ctx.mutations.bulk_update([seed.sfc_id], BulkUpdate(status="contacted", invoice_status="bogus"))

    assert sponsors.get_record(ctx.store, seed.sfc_id).status == "prospect"
