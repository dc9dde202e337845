from dataclasses import replace

import pytest
from conftest import seed_record

from sponsorcrm.domain import transitions
from sponsorcrm.domain.rules import ValidationError
from sponsorcrm.domain.stages import Axis
from sponsorcrm.services.sponsors import get_record

NOW = "2026-03-10T12:00:00+00:00"


def test_parse_axis_accepts_column_and_short_name() -> None:
    assert transitions.parse_axis("status") is Axis.PIPELINE
    assert transitions.parse_axis("pipeline") is Axis.PIPELINE
    assert transitions.parse_axis("invoice_status") is Axis.INVOICE
    with pytest.raises(ValidationError):
        transitions.parse_axis("stage")


def test_validate_rejects_values_from_other_axes() -> None:
    with pytest.raises(ValidationError):
        transitions.validate(Axis.PIPELINE, "signed")
    assert transitions.validate(Axis.SIGNATURE, "signed") == "signed"


def test_terminal_pipeline_values() -> None:
    assert transitions.is_terminal("closed-won")
    assert transitions.is_terminal("closed-lost")
    assert not transitions.is_terminal("negotiating")


def test_transition_stamps_and_describes_change(store) -> None:
    record = get_record(store, seed_record(store).sfc_id)

    result = transitions.transition(record, Axis.CONTRACT, "contract-sent", NOW)

    assert result.changed
    assert result.updates["contract_status"] == "contract-sent"
    assert result.updates["contract_sent_at"] == NOW
    assert result.activity.activity_type == "contract_status_change"
    assert result.activity.description == "Contract status changed from None to Contract Sent"


def test_same_value_is_a_no_op(store) -> None:
    record = get_record(store, seed_record(store).sfc_id)

    result = transitions.transition(record, Axis.PIPELINE, "prospect", NOW)

    assert not result.changed
    assert result.updates == {}
    assert result.activity is None


def test_contact_initiated_is_stamped_once(store) -> None:
    record = get_record(store, seed_record(store).sfc_id)
    record = replace(record, status="negotiating", contact_initiated_at="2026-01-01T00:00:00+00:00")

    result = transitions.transition(record, Axis.PIPELINE, "contacted", NOW)

    assert "contact_initiated_at" not in result.updates
