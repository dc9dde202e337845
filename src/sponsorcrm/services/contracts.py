"""Contract lifecycle: generate, dispatch for signing, and record the outcome.

Dispatch always happens before anything is persisted, so a provider failure
leaves the pipeline record exactly as it was. Successful sends and signature
events are committed in one transaction together with their activities.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any

from sponsorcrm.adapters.signing import (
    ProviderRegistry,
    SendResult,
    SigningProvider,
    SigningRequest,
    StatusResult,
)
from sponsorcrm.domain import rules, transitions
from sponsorcrm.domain.models import (
    ActivityDraft,
    Conference,
    ContactPerson,
    ContractTemplate,
    Sponsor,
    SponsorForConference,
    Tier,
)
from sponsorcrm.domain.stages import ActivityType, Axis, ContractStatus, SignatureStatus
from sponsorcrm.errors import ConfigurationError, NotFoundError, ProviderError, TransactionError
from sponsorcrm.pdf.attestation import Attestation, append_attestation_page
from sponsorcrm.pdf.contract import render_contract
from sponsorcrm.services import sponsors as repo
from sponsorcrm.services.activity import SYSTEM_AUTHOR, ActivityLog
from sponsorcrm.services.clock import Clock, now_iso
from sponsorcrm.services.deletion import CascadingDeleteExecutor
from sponsorcrm.services.email import EmailDeliveryError, Mailer, load_email_template
from sponsorcrm.services.pipeline import PipelineMutationService
from sponsorcrm.services.templates import (
    CONTRACT_SENT,
    CONTRACT_SIGNED,
    build_contract_variables,
    build_email_variables,
    find_best_contract_template,
    render_email,
)
from sponsorcrm.services.utils import sanitize_filename
from sponsorcrm.store.sqlite import SqliteSession, SqliteStore

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"

AGREEMENT_COMPLETED = "AGREEMENT_WORKFLOW_COMPLETED"
AGREEMENT_RECALLED = "AGREEMENT_RECALLED"
AGREEMENT_EXPIRED = "AGREEMENT_EXPIRED"


@dataclass(frozen=True)
class ContractSendResult:
    sfc_id: str
    agreement_id: str
    signing_url: str | None
    asset_id: str
    provider: str


@dataclass(frozen=True)
class SignatureEventResult:
    sfc_id: str
    signature_status: str
    asset_id: str | None
    changed: bool = True


@dataclass(frozen=True)
class _ContractContext:
    record: SponsorForConference
    sponsor: Sponsor
    conference: Conference
    tier: Tier | None
    addons: tuple[Tier, ...]


def agreement_name(sponsor_name: str) -> str:
    return f"Sponsorship Agreement - {sponsor_name}"


def contract_filename(sponsor_name: str) -> str:
    return f"contract-{sanitize_filename(sponsor_name) or 'sponsor'}.pdf"


class ContractLifecycleManager:
    def __init__(
        self,
        store: SqliteStore,
        activity_log: ActivityLog,
        clock: Clock,
        providers: ProviderRegistry,
        mailer: Mailer,
        deleter: CascadingDeleteExecutor,
        mutations: PipelineMutationService,
        sender_name: str | None = None,
    ) -> None:
        self.store = store
        self.activity_log = activity_log
        self.clock = clock
        self.providers = providers
        self.mailer = mailer
        self.deleter = deleter
        self.mutations = mutations
        self.sender_name = sender_name

    def generate_contract(
        self,
        sfc_id: str,
        template_id: str | None = None,
        signer_name: str | None = None,
        signer_email: str | None = None,
        language: str | None = None,
        author: str = SYSTEM_AUTHOR,
    ) -> ContractSendResult:
        """Render, attest and dispatch a contract, then persist the sent state.

        Raises NotFoundError for an unknown record, ConfigurationError when no
        template applies, ValidationError for missing signer details and
        ProviderError when dispatch fails. Nothing is written on failure.
        """
        with self.store.session() as session:
            ctx = self._load(session, sfc_id)
            template = self._pick_template(session, ctx, template_id, language)

        rules.require(ctx.sponsor.name, "sponsor.name")
        rules.require(ctx.conference.title, "conference.title")
        contact = ctx.sponsor.primary_contact() or next(iter(ctx.sponsor.contact_persons), None)
        signer_email = signer_email or ctx.record.signer_email or (contact.email if contact else None)
        signer_name = signer_name or ctx.record.signer_name or (contact.name if contact else None)
        rules.validate_email(signer_email, "signer_email")
        rules.require(signer_name, "signer_name")

        variables = build_contract_variables(
            ctx.sponsor,
            ctx.conference,
            today=self.clock.now().date(),
            contact=contact or ContactPerson(name=signer_name, email=signer_email),
            tier=ctx.tier,
            addons=ctx.addons,
            contract_value=ctx.record.contract_value,
            contract_currency=ctx.record.contract_currency or template.currency,
            sender_name=self.sender_name,
        )
        variables["SIGNER_NAME"] = signer_name
        variables["SIGNER_EMAIL"] = signer_email

        sent_at = now_iso(self.clock)
        name = agreement_name(ctx.sponsor.name)
        document = append_attestation_page(
            render_contract(template, variables),
            Attestation(
                agreement_name=name,
                transaction_id=sfc_id,
                signer_name=signer_name,
                signer_email=signer_email,
                organizer_name=ctx.conference.organizer,
                contract_sent_at=sent_at,
            ),
        )
        filename = contract_filename(ctx.sponsor.name)

        provider = self.providers.for_conference(ctx.conference)
        sent = provider.send_for_signing(
            SigningRequest(
                pdf=document,
                filename=filename,
                signer_email=signer_email,
                agreement_name=name,
                message=f"Please sign the sponsorship agreement for {ctx.conference.title}.",
                sfc_id=sfc_id,
            )
        )
        if not provider.notifies_signer:
            self._email_signing_link(provider, sent, ctx, signer_name, signer_email)

        try:
            asset_id, previous_agreement = self._persist_sent(
                sfc_id, sent, template, document, filename, signer_name, signer_email, sent_at, author
            )
        except (TransactionError, NotFoundError):
            logger.error("Contract for %s was dispatched but not saved; cancelling %s", sfc_id, sent.agreement_id)
            self._cancel_quietly(provider, sent.agreement_id)
            raise
        if previous_agreement and previous_agreement != sent.agreement_id:
            logger.info("Cancelling superseded agreement %s for %s", previous_agreement, sfc_id)
            self._cancel_quietly(provider, previous_agreement)

        logger.info("Contract for %s sent via %s (agreement %s)", sfc_id, provider.name, sent.agreement_id)
        return ContractSendResult(
            sfc_id=sfc_id,
            agreement_id=sent.agreement_id,
            signing_url=sent.signing_url,
            asset_id=asset_id,
            provider=provider.name,
        )

    def record_signature_event(
        self,
        sfc_id: str,
        signed_at: str,
        signer_name: str,
        organizer_signed_by: str | None = None,
        organizer_signed_at: str | None = None,
        document: bytes | None = None,
        author: str = SYSTEM_AUTHOR,
    ) -> SignatureEventResult:
        """Mark a contract signed and store the signed document.

        Without a provider ``document`` the stored contract gets a second
        attestation page. The replaced asset is deleted only when nothing else
        references it.
        """
        rules.parse_datetime(signed_at, "signed_at")
        rules.parse_datetime(organizer_signed_at, "organizer_signed_at")
        rules.require(signer_name, "signer_name")

        with self.store.session() as session:
            ctx = self._load(session, sfc_id)
            previous = repo.get_asset(session, ctx.record.contract_asset_id) if ctx.record.contract_asset_id else None

        if ctx.record.signature_status == SignatureStatus.SIGNED.value:
            logger.info("Contract for %s is already signed", sfc_id)
            return SignatureEventResult(
                sfc_id=sfc_id,
                signature_status=SignatureStatus.SIGNED.value,
                asset_id=ctx.record.contract_asset_id,
                changed=False,
            )

        if document is None and previous is not None:
            document = append_attestation_page(
                previous.data,
                Attestation(
                    agreement_name=agreement_name(ctx.sponsor.name),
                    transaction_id=sfc_id,
                    signer_name=signer_name,
                    signer_email=ctx.record.signer_email or "",
                    signed_at=signed_at,
                    organizer_name=ctx.conference.organizer,
                    organizer_signed_by=organizer_signed_by,
                    organizer_signed_at=organizer_signed_at,
                    contract_sent_at=ctx.record.contract_sent_at,
                ),
            )

        now = now_iso(self.clock)
        asset_id = None
        with self.store.transaction() as session:
            current = repo.get_record(session, sfc_id)
            updates, drafts = self._transitions(
                current,
                [(Axis.SIGNATURE, SignatureStatus.SIGNED.value), (Axis.CONTRACT, ContractStatus.CONTRACT_SIGNED.value)],
                now,
            )
            updates.update(
                {
                    "contract_signed_at": signed_at,
                    "contract_signed_by": signer_name,
                    "updated_at": now,
                }
            )
            if organizer_signed_by and organizer_signed_at:
                updates["organizer_signed_by"] = organizer_signed_by
                updates["organizer_signed_at"] = organizer_signed_at
            if document is not None:
                filename = previous.filename if previous else contract_filename(ctx.sponsor.name)
                asset_id = repo.store_asset(session, filename, PDF_CONTENT_TYPE, document, now)
                updates["contract_asset_id"] = asset_id
            session.update("sponsor_for_conference", "sfc_id", sfc_id, updates)
            if asset_id and current.contract_asset_id:
                self.deleter.release_asset(session, current.contract_asset_id)
            drafts.append(
                ActivityDraft(
                    ActivityType.CONTRACT_SIGNED.value,
                    f"Contract signed by {signer_name}",
                    additional_data={"signed_at": signed_at, "agreement_id": current.signature_id},
                )
            )
            for draft in drafts:
                self.activity_log.append(session, sfc_id, draft, author)

        self._notify_signed(ctx, signer_name)
        logger.info("Contract for %s signed by %s", sfc_id, signer_name)
        return SignatureEventResult(
            sfc_id=sfc_id,
            signature_status=SignatureStatus.SIGNED.value,
            asset_id=asset_id or ctx.record.contract_asset_id,
        )

    def complete_self_hosted_signing(
        self, token: str, signer_name: str, signed_at: str | None = None
    ) -> SignatureEventResult:
        """Portal callback: the signer accepted the agreement behind ``token``."""
        rules.require(signer_name, "signer_name")
        provider = self.providers.self_hosted
        record = repo.find_record_by_signature_id(self.store, token)
        provider.mark_signed(token)
        return self.record_signature_event(record.sfc_id, signed_at or now_iso(self.clock), signer_name)

    def describe_agreement(self, token: str) -> dict[str, Any]:
        provider = self.providers.self_hosted
        agreement = provider.get_agreement(provider.open_session(), token)
        with self.store.session() as session:
            record = repo.find_record_by_signature_id(session, token)
            sponsor = repo.get_sponsor(session, record.sponsor_id)
            conference = repo.get_conference(session, record.conference_id)
        return {
            "agreement_id": token,
            "name": agreement["name"],
            "state": agreement["status"],
            "signature_status": record.signature_status,
            "sponsor_name": sponsor.name,
            "conference_title": conference.title,
            "signer_name": record.signer_name,
            "signer_email": record.signer_email,
            "contract_sent_at": record.contract_sent_at,
            "onboarding_url": provider.onboarding_url(token),
        }

    def handle_provider_event(self, event: dict[str, Any]) -> str | None:
        """Apply an external provider webhook event; returns the new signature status."""
        agreement = event.get("agreement") or {}
        agreement_id = agreement.get("id")
        if not agreement_id:
            logger.info("Provider event %s has no agreement id", event.get("event"))
            return None
        try:
            record = repo.find_record_by_signature_id(self.store, agreement_id)
        except NotFoundError:
            logger.warning("No contract matches agreement %s", agreement_id)
            return None

        kind = event.get("event")
        if kind == AGREEMENT_COMPLETED:
            self.record_signature_event(
                record.sfc_id,
                now_iso(self.clock),
                record.signer_name or record.signer_email or "Signer",
                document=_inline_document(agreement),
            )
            return SignatureStatus.SIGNED.value
        if kind in (AGREEMENT_RECALLED, AGREEMENT_EXPIRED):
            status = SignatureStatus.EXPIRED if kind == AGREEMENT_EXPIRED else SignatureStatus.REJECTED
            self.mutations.update_status(record.sfc_id, Axis.SIGNATURE, status.value)
            return status.value
        logger.info("Ignoring provider event %s for %s", kind, agreement_id)
        return None

    def refresh_signature_status(self, sfc_id: str) -> StatusResult:
        """Poll the provider and bring the signature axis in line with it."""
        record = repo.get_record(self.store, sfc_id)
        if not record.signature_id:
            raise rules.ValidationError("No signing agreement has been sent for this contract.", "signature_id")
        conference = repo.get_conference(self.store, record.conference_id)
        provider = self.providers.for_conference(conference)
        status = provider.check_status(record.signature_id)
        if status.status == record.signature_status:
            return status
        if status.status == SignatureStatus.SIGNED.value:
            try:
                document = provider.signed_document(record.signature_id)
            except ProviderError as exc:
                logger.warning("Could not fetch signed document for %s: %s", sfc_id, exc)
                document = None
            self.record_signature_event(
                sfc_id,
                now_iso(self.clock),
                record.signer_name or record.signer_email or "Signer",
                document=document,
            )
        else:
            self.mutations.update_status(sfc_id, Axis.SIGNATURE, status.status)
        return status

    def cancel_contract(self, sfc_id: str, author: str = SYSTEM_AUTHOR) -> None:
        record = repo.get_record(self.store, sfc_id)
        if not record.signature_id:
            raise rules.ValidationError("No signing agreement has been sent for this contract.", "signature_id")
        conference = repo.get_conference(self.store, record.conference_id)
        self.providers.for_conference(conference).cancel(record.signature_id)
        self.mutations.update_status(sfc_id, Axis.SIGNATURE, SignatureStatus.REJECTED.value, author)

    def _load(self, session: SqliteSession, sfc_id: str) -> _ContractContext:
        record = repo.get_record(session, sfc_id)
        addons = tuple(
            tier for tier in (repo.get_tier(session, tier_id) for tier_id in record.addon_tier_ids) if tier
        )
        return _ContractContext(
            record=record,
            sponsor=repo.get_sponsor(session, record.sponsor_id),
            conference=repo.get_conference(session, record.conference_id),
            tier=repo.get_tier(session, record.tier_id),
            addons=addons,
        )

    def _pick_template(
        self,
        session: SqliteSession,
        ctx: _ContractContext,
        template_id: str | None,
        language: str | None,
    ) -> ContractTemplate:
        if template_id:
            return repo.get_contract_template(session, template_id)
        template = find_best_contract_template(
            repo.list_contract_templates(session, ctx.conference.conference_id),
            tier_id=ctx.record.tier_id,
            language=language,
        )
        if template is None:
            tier_title = ctx.tier.title if ctx.tier else "unknown"
            raise ConfigurationError(f'No contract template found for tier "{tier_title}".')
        return template

    def _transitions(
        self, record: SponsorForConference, changes: list[tuple[Axis, str]], now: str
    ) -> tuple[dict[str, Any], list[ActivityDraft]]:
        updates: dict[str, Any] = {}
        drafts: list[ActivityDraft] = []
        for axis, value in changes:
            result = transitions.transition(record, axis, value, now)
            if result.changed:
                updates.update(result.updates)
                drafts.append(result.activity)
        return updates, drafts

    def _persist_sent(
        self,
        sfc_id: str,
        sent: SendResult,
        template: ContractTemplate,
        document: bytes,
        filename: str,
        signer_name: str,
        signer_email: str,
        sent_at: str,
        author: str,
    ) -> tuple[str, str | None]:
        with self.store.transaction() as session:
            current = repo.get_record(session, sfc_id)
            updates, drafts = self._transitions(
                current,
                [(Axis.CONTRACT, ContractStatus.CONTRACT_SENT.value), (Axis.SIGNATURE, SignatureStatus.PENDING.value)],
                sent_at,
            )
            asset_id = repo.store_asset(session, filename, PDF_CONTENT_TYPE, document, sent_at)
            updates.update(
                {
                    "signature_id": sent.agreement_id,
                    "signing_url": sent.signing_url,
                    "signer_name": signer_name,
                    "signer_email": signer_email,
                    "contract_sent_at": sent_at,
                    "reminder_count": 0,
                    "contract_template_id": template.template_id,
                    "contract_asset_id": asset_id,
                    "updated_at": sent_at,
                }
            )
            session.update("sponsor_for_conference", "sfc_id", sfc_id, updates)
            if current.contract_asset_id:
                self.deleter.release_asset(session, current.contract_asset_id)
            if not drafts:
                drafts.append(ActivityDraft(ActivityType.EMAIL.value, f"Contract re-sent to {signer_email}"))
            for draft in drafts:
                self.activity_log.append(session, sfc_id, draft, author)
        superseded = current.signature_id if current.signature_status == SignatureStatus.PENDING.value else None
        return asset_id, superseded

    def _email_signing_link(
        self,
        provider: SigningProvider,
        sent: SendResult,
        ctx: _ContractContext,
        signer_name: str,
        signer_email: str,
    ) -> None:
        template = load_email_template(self.store, CONTRACT_SENT, ctx.conference.conference_id)
        variables = build_email_variables(
            ctx.sponsor.name,
            ctx.conference,
            contact_names=signer_name,
            sender_name=self.sender_name,
            tier_name=ctx.tier.title if ctx.tier else None,
            signing_url=sent.signing_url,
        )
        try:
            self.mailer.send_rendered(
                render_email(template, variables),
                signer_email,
                reply_to=ctx.conference.sponsor_email,
                idempotency_key=f"{sent.agreement_id}:sent",
            )
        except EmailDeliveryError as exc:
            self._cancel_quietly(provider, sent.agreement_id)
            raise ProviderError(f"Failed to email the signing link to {signer_email}: {exc}") from exc

    def _notify_signed(self, ctx: _ContractContext, signer_name: str) -> None:
        if not ctx.record.signer_email:
            return
        template = load_email_template(self.store, CONTRACT_SIGNED, ctx.conference.conference_id)
        variables = build_email_variables(
            ctx.sponsor.name,
            ctx.conference,
            contact_names=signer_name,
            sender_name=self.sender_name,
            tier_name=ctx.tier.title if ctx.tier else None,
        )
        try:
            self.mailer.send_rendered(
                render_email(template, variables),
                ctx.record.signer_email,
                reply_to=ctx.conference.sponsor_email,
                idempotency_key=f"{ctx.record.sfc_id}:signed",
            )
        except EmailDeliveryError as exc:
            logger.warning("Signed confirmation for %s was not sent: %s", ctx.record.sfc_id, exc)

    def _cancel_quietly(self, provider: SigningProvider, agreement_id: str) -> None:
        try:
            provider.cancel(agreement_id)
        except (ProviderError, ConfigurationError) as exc:
            logger.warning("Could not cancel agreement %s: %s", agreement_id, exc)


def _inline_document(agreement: dict[str, Any]) -> bytes | None:
    info = agreement.get("signedDocumentInfo") or {}
    encoded = info.get("document")
    if not encoded:
        return None
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.warning("Signed document in provider event could not be decoded: %s", exc)
        return None
