from __future__ import annotations

import hashlib
import logging
import secrets
from typing import Any
from uuid import uuid4

from sponsorcrm.adapters.signing.base import ProviderSession, SigningProvider
from sponsorcrm.domain.stages import AgreementState, SigningProviderKind
from sponsorcrm.errors import ProviderError
from sponsorcrm.services.clock import Clock, SystemClock, now_iso
from sponsorcrm.store.sqlite import SqliteStore

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_NAME = "Verified Document Signing"
TOKEN_BYTES = 32


class SelfHostedSigningProvider(SigningProvider):
    """Token-link signing: the signer opens a portal URL and completes there.

    The token is the agreement id. There is no remote service, so status only
    changes through ``mark_signed`` and ``cancel_agreement``.
    """

    kind = SigningProviderKind.SELF_HOSTED
    notifies_signer = False

    def __init__(
        self,
        store: SqliteStore,
        portal_base_url: str,
        name: str = DEFAULT_PROVIDER_NAME,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.portal_base_url = portal_base_url.rstrip("/")
        self.name = name
        self.clock = clock or SystemClock()
        self._documents: dict[str, str] = {}

    def portal_url(self, token: str) -> str:
        return f"{self.portal_base_url}/sponsor/portal/{token}"

    def onboarding_url(self, token: str) -> str:
        return f"{self.portal_base_url}/sponsor/onboarding/{token}"

    def open_session(self) -> ProviderSession:
        return ProviderSession(access_token=None, api_access_point=self.portal_base_url)

    def upload_transient_document(
        self, session: ProviderSession, data: bytes, filename: str
    ) -> dict[str, Any]:
        document_id = str(uuid4())
        self._documents[document_id] = hashlib.sha256(data).hexdigest()
        return {"transientDocumentId": document_id}

    def create_agreement(self, session: ProviderSession, info: dict[str, Any]) -> dict[str, Any]:
        file_infos = info.get("fileInfos") or [{}]
        digest = self._documents.pop(file_infos[0].get("transientDocumentId"), None)
        token = secrets.token_urlsafe(TOKEN_BYTES)
        now = now_iso(self.clock)
        with self.store.session() as db:
            db.insert(
                "signing_agreements",
                {
                    "agreement_id": token,
                    "sfc_id": info.get("sfcId"),
                    "name": info["name"],
                    "participant_email": info["participantEmail"],
                    "message": info.get("message"),
                    "document_digest": digest,
                    "state": AgreementState.OUT_FOR_SIGNATURE.value,
                    "created_at": now,
                    "updated_at": now,
                },
            )
        return {"id": token}

    def get_agreement(self, session: ProviderSession, agreement_id: str) -> dict[str, Any]:
        row = self.store.fetch_one(
            "SELECT * FROM signing_agreements WHERE agreement_id = ?", (agreement_id,)
        )
        if row is None:
            raise ProviderError(f"{self.name} agreement not found", 404)
        return {
            "id": row["agreement_id"],
            "name": row["name"],
            "participantEmail": row["participant_email"],
            "status": row["state"],
            "sfcId": row["sfc_id"],
            "documentDigest": row["document_digest"],
        }

    def send_reminder(self, session: ProviderSession, agreement_id: str) -> dict[str, Any]:
        # Reminder emails are sent by the scheduler; nothing to do remotely.
        agreement = self.get_agreement(session, agreement_id)
        return {"id": agreement["id"], "status": agreement["status"]}

    def cancel_agreement(self, session: ProviderSession, agreement_id: str) -> None:
        self.get_agreement(session, agreement_id)
        self._set_state(agreement_id, AgreementState.CANCELLED)

    def signing_url(self, session: ProviderSession, agreement_id: str, email: str) -> str | None:
        return self.portal_url(agreement_id)

    def mark_signed(self, token: str) -> dict[str, Any]:
        agreement = self.get_agreement(self.open_session(), token)
        if agreement["status"] == AgreementState.SIGNED.value:
            return agreement
        if agreement["status"] != AgreementState.OUT_FOR_SIGNATURE.value:
            raise ProviderError(f"Agreement is {agreement['status'].lower()} and can no longer be signed", 409)
        self._set_state(token, AgreementState.SIGNED)
        return {**agreement, "status": AgreementState.SIGNED.value}

    def _set_state(self, agreement_id: str, state: AgreementState) -> None:
        with self.store.session() as db:
            db.update(
                "signing_agreements",
                "agreement_id",
                agreement_id,
                {"state": state.value, "updated_at": now_iso(self.clock)},
            )
        logger.info("Agreement %s is now %s", agreement_id, state.value)
