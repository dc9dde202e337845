from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from sponsorcrm.domain.stages import AgreementState, SignatureStatus, SigningProviderKind
from sponsorcrm.errors import ProviderError

logger = logging.getLogger(__name__)

# Remote agreement state -> signature axis value. Anything unknown stays pending.
AGREEMENT_STATUS_MAP: dict[str, str] = {
    AgreementState.SIGNED.value: SignatureStatus.SIGNED.value,
    AgreementState.OUT_FOR_SIGNATURE.value: SignatureStatus.PENDING.value,
    AgreementState.CANCELLED.value: SignatureStatus.REJECTED.value,
    AgreementState.EXPIRED.value: SignatureStatus.EXPIRED.value,
}


@dataclass(frozen=True)
class ProviderSession:
    access_token: str | None
    api_access_point: str | None = None


@dataclass(frozen=True)
class SigningRequest:
    pdf: bytes
    filename: str
    signer_email: str
    agreement_name: str
    message: str | None = None
    sfc_id: str | None = None


@dataclass(frozen=True)
class SendResult:
    agreement_id: str
    signing_url: str | None = None


@dataclass(frozen=True)
class StatusResult:
    status: str
    provider_status: str


def map_agreement_status(provider_status: str) -> str:
    return AGREEMENT_STATUS_MAP.get(provider_status, SignatureStatus.PENDING.value)


class SigningProvider(ABC):
    """Capability interface shared by the self-hosted and external signing backends.

    The five primitive operations mirror the external provider's REST surface.
    ``send_for_signing``, ``check_status``, ``remind`` and ``cancel`` compose them
    and are what the contract lifecycle uses.
    """

    name: str
    kind: SigningProviderKind
    # True when the provider emails the signer itself.
    notifies_signer: bool = True

    @abstractmethod
    def open_session(self) -> ProviderSession: ...

    @abstractmethod
    def upload_transient_document(
        self, session: ProviderSession, data: bytes, filename: str
    ) -> dict[str, Any]: ...

    @abstractmethod
    def create_agreement(self, session: ProviderSession, info: dict[str, Any]) -> dict[str, Any]: ...

    @abstractmethod
    def get_agreement(self, session: ProviderSession, agreement_id: str) -> dict[str, Any]: ...

    @abstractmethod
    def send_reminder(self, session: ProviderSession, agreement_id: str) -> dict[str, Any]: ...

    @abstractmethod
    def cancel_agreement(self, session: ProviderSession, agreement_id: str) -> None: ...

    def signing_url(self, session: ProviderSession, agreement_id: str, email: str) -> str | None:
        return None

    def signed_document(self, agreement_id: str) -> bytes | None:
        """The provider's final signed PDF, when it keeps one."""
        return None

    def send_for_signing(self, request: SigningRequest) -> SendResult:
        session = self.open_session()
        uploaded = self.upload_transient_document(session, request.pdf, request.filename)
        document_id = uploaded.get("transientDocumentId")
        if not document_id:
            raise ProviderError(f"{self.name} returned no transient document id")

        info: dict[str, Any] = {
            "name": request.agreement_name,
            "participantEmail": request.signer_email,
            "message": request.message,
            "fileInfos": [{"transientDocumentId": document_id}],
        }
        if request.sfc_id:
            info["sfcId"] = request.sfc_id
        created = self.create_agreement(session, info)
        agreement_id = created.get("id")
        if not agreement_id:
            raise ProviderError(f"{self.name} returned no agreement id")

        signing_url = self._lookup_signing_url(session, agreement_id, request.signer_email)
        return SendResult(agreement_id=agreement_id, signing_url=signing_url)

    def _lookup_signing_url(self, session: ProviderSession, agreement_id: str, email: str) -> str | None:
        # The agreement exists at this point, so a missing URL is not a send failure.
        try:
            return self.signing_url(session, agreement_id, email)
        except ProviderError as exc:
            logger.warning("No signing URL for agreement %s: %s", agreement_id, exc)
            return None

    def check_status(self, agreement_id: str) -> StatusResult:
        data = self.get_agreement(self.open_session(), agreement_id)
        provider_status = data.get("status")
        if not provider_status:
            raise ProviderError(f"{self.name} returned no status for agreement {agreement_id}")
        return StatusResult(status=map_agreement_status(provider_status), provider_status=provider_status)

    def remind(self, agreement_id: str) -> dict[str, Any]:
        return self.send_reminder(self.open_session(), agreement_id)

    def cancel(self, agreement_id: str) -> None:
        self.cancel_agreement(self.open_session(), agreement_id)
