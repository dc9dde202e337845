from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sponsorcrm.domain.models import ActivityDraft, SponsorForConference
from sponsorcrm.domain.rules import ValidationError
from sponsorcrm.domain.stages import (
    AXIS_ACTIVITY,
    AXIS_LABELS,
    AXIS_VALUES,
    TERMINAL_PIPELINE,
    Axis,
    ContractStatus,
    InvoiceStatus,
    PipelineStatus,
)

# (axis, value) -> timestamp column stamped when the axis reaches that value
_STAMPS: dict[tuple[Axis, str], str] = {
    (Axis.PIPELINE, PipelineStatus.CONTACTED.value): "contact_initiated_at",
    (Axis.CONTRACT, ContractStatus.CONTRACT_SENT.value): "contract_sent_at",
    (Axis.CONTRACT, ContractStatus.CONTRACT_SIGNED.value): "contract_signed_at",
    (Axis.INVOICE, InvoiceStatus.SENT.value): "invoice_sent_at",
    (Axis.INVOICE, InvoiceStatus.PAID.value): "invoice_paid_at",
}

# Stamped only the first time; later transitions keep the original timestamp.
_STAMP_ONCE = {"contact_initiated_at"}


@dataclass(frozen=True)
class TransitionResult:
    axis: Axis
    old_value: str | None
    new_value: str
    updates: dict[str, Any] = field(default_factory=dict)
    activity: ActivityDraft | None = None

    @property
    def changed(self) -> bool:
        return self.old_value != self.new_value


def parse_axis(axis: Axis | str) -> Axis:
    if isinstance(axis, Axis):
        return axis
    for candidate in Axis:
        if axis in (candidate.value, candidate.name.lower()):
            return candidate
    raise ValidationError(
        f"axis must be one of: {', '.join(a.name.lower() for a in Axis)}", "axis"
    )


def allowed_values(axis: Axis | str) -> list[str]:
    return [member.value for member in AXIS_VALUES[parse_axis(axis)]]


def is_valid(axis: Axis | str, candidate: str | None) -> bool:
    return candidate in allowed_values(axis)


def validate(axis: Axis | str, candidate: str | None) -> str:
    """Return the candidate if it belongs to the axis enumeration.

    No cross-axis ordering is enforced: a signature may be pending while the
    contract is still ``none``.
    """
    axis = parse_axis(axis)
    if not is_valid(axis, candidate):
        raise ValidationError(
            f"{axis.value} must be one of: {', '.join(allowed_values(axis))}", axis.value
        )
    return candidate


def is_terminal(value: str) -> bool:
    return value in {status.value for status in TERMINAL_PIPELINE}


def format_status_name(value: str | None) -> str:
    if not value:
        return "None"
    return " ".join(part.capitalize() for part in value.split("-"))


def transition(
    record: SponsorForConference,
    axis: Axis | str,
    candidate: str,
    now: str,
) -> TransitionResult:
    axis = parse_axis(axis)
    new_value = validate(axis, candidate)
    old_value = getattr(record, axis.value)
    if old_value == new_value:
        return TransitionResult(axis=axis, old_value=old_value, new_value=new_value)

    updates: dict[str, Any] = {axis.value: new_value, "updated_at": now}
    stamp = _STAMPS.get((axis, new_value))
    if stamp and not (stamp in _STAMP_ONCE and getattr(record, stamp)):
        updates[stamp] = now

    activity = ActivityDraft(
        activity_type=AXIS_ACTIVITY[axis].value,
        description=(
            f"{AXIS_LABELS[axis]} changed from {format_status_name(old_value)} "
            f"to {format_status_name(new_value)}"
        ),
        old_value=old_value,
        new_value=new_value,
        additional_data={"axis": axis.value},
    )
    return TransitionResult(
        axis=axis, old_value=old_value, new_value=new_value, updates=updates, activity=activity
    )
