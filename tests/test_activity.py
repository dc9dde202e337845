import pytest
from conftest import seed_record

from sponsorcrm.domain.models import ActivityDraft
from sponsorcrm.domain.rules import ValidationError


def test_record_and_list_newest_first(ctx, clock) -> None:
    seed = seed_record(ctx.store)
    ctx.activity_log.record(seed.sfc_id, ActivityDraft("note", "Intro call booked"), "ola")
    clock.advance(hours=1)
    ctx.activity_log.record(seed.sfc_id, ActivityDraft("call", "Discussed gold tier"), "kari")

    activities = ctx.activity_log.list_for(seed.sfc_id)

    assert [a.description for a in activities] == ["Discussed gold tier", "Intro call booked"]
    assert activities[0].created_by == "kari"
    assert activities[0].metadata["timestamp"] == "2026-03-10T13:00:00+00:00"


def test_unknown_activity_type_is_rejected(ctx) -> None:
    seed = seed_record(ctx.store)

    with pytest.raises(ValidationError):
        ctx.activity_log.record(seed.sfc_id, ActivityDraft("fax", "Sent a fax"))


def test_record_many_counts_failures(ctx) -> None:
    seed = seed_record(ctx.store)

    result = ctx.activity_log.record_many(
        [
            (seed.sfc_id, ActivityDraft("note", "First")),
            ("missing-record", ActivityDraft("note", "Orphan")),
            (seed.sfc_id, ActivityDraft("note", "")),
        ]
    )

    assert result.created == 1
    assert result.failed == 2
