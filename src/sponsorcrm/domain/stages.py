from __future__ import annotations

from enum import Enum


class Axis(str, Enum):
    PIPELINE = "status"
    CONTRACT = "contract_status"
    SIGNATURE = "signature_status"
    INVOICE = "invoice_status"


class PipelineStatus(str, Enum):
    PROSPECT = "prospect"
    CONTACTED = "contacted"
    NEGOTIATING = "negotiating"
    CLOSED_WON = "closed-won"
    CLOSED_LOST = "closed-lost"


class ContractStatus(str, Enum):
    NONE = "none"
    VERBAL_AGREEMENT = "verbal-agreement"
    CONTRACT_SENT = "contract-sent"
    CONTRACT_SIGNED = "contract-signed"


class SignatureStatus(str, Enum):
    NOT_STARTED = "not-started"
    PENDING = "pending"
    SIGNED = "signed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class InvoiceStatus(str, Enum):
    NOT_SENT = "not-sent"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class ActivityType(str, Enum):
    STAGE_CHANGE = "stage_change"
    CONTRACT_STATUS_CHANGE = "contract_status_change"
    SIGNATURE_STATUS_CHANGE = "signature_status_change"
    INVOICE_STATUS_CHANGE = "invoice_status_change"
    CONTRACT_REMINDER_SENT = "contract_reminder_sent"
    CONTRACT_SIGNED = "contract_signed"
    EMAIL = "email"
    NOTE = "note"
    CALL = "call"
    MEETING = "meeting"


class SigningProviderKind(str, Enum):
    SELF_HOSTED = "self-hosted"
    EXTERNAL = "external"


class AgreementState(str, Enum):
    OUT_FOR_SIGNATURE = "OUT_FOR_SIGNATURE"
    SIGNED = "SIGNED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


AXIS_VALUES: dict[Axis, type[Enum]] = {
    Axis.PIPELINE: PipelineStatus,
    Axis.CONTRACT: ContractStatus,
    Axis.SIGNATURE: SignatureStatus,
    Axis.INVOICE: InvoiceStatus,
}

AXIS_ACTIVITY: dict[Axis, ActivityType] = {
    Axis.PIPELINE: ActivityType.STAGE_CHANGE,
    Axis.CONTRACT: ActivityType.CONTRACT_STATUS_CHANGE,
    Axis.SIGNATURE: ActivityType.SIGNATURE_STATUS_CHANGE,
    Axis.INVOICE: ActivityType.INVOICE_STATUS_CHANGE,
}

AXIS_LABELS: dict[Axis, str] = {
    Axis.PIPELINE: "Status",
    Axis.CONTRACT: "Contract status",
    Axis.SIGNATURE: "Signature status",
    Axis.INVOICE: "Invoice status",
}

TERMINAL_PIPELINE = {PipelineStatus.CLOSED_WON, PipelineStatus.CLOSED_LOST}
