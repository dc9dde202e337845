from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

import requests

from sponsorcrm.adapters.signing.base import ProviderSession, SigningProvider
from sponsorcrm.domain.stages import AgreementState, SigningProviderKind
from sponsorcrm.errors import ConfigurationError, ProviderError
from sponsorcrm.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

API_PATH = "/api/rest/v6"
DEFAULT_PROVIDER_NAME = "Adobe Sign"


def _signing_url_not_ready(exc: BaseException) -> bool:
    # The signing URL endpoint answers 404 until the agreement finishes processing.
    return isinstance(exc, ProviderError) and (exc.transient or exc.status_code == 404)


class ExternalSigningProvider(SigningProvider):
    """REST client for the hosted e-signature service."""

    kind = SigningProviderKind.EXTERNAL
    notifies_signer = True

    def __init__(
        self,
        api_base_url: str,
        access_token: str | None,
        name: str = DEFAULT_PROVIDER_NAME,
        http: requests.Session | None = None,
        retry: RetryPolicy | None = None,
        timeout: float = 30,
    ) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.access_token = access_token
        self.name = name
        self.http = http or requests.Session()
        self.retry = retry or RetryPolicy()
        self.timeout = timeout

    def open_session(self) -> ProviderSession:
        if not self.access_token:
            raise ConfigurationError(f"{self.name} is not connected: no access token configured.")
        return ProviderSession(access_token=self.access_token, api_access_point=self.api_base_url)

    def upload_transient_document(
        self, session: ProviderSession, data: bytes, filename: str
    ) -> dict[str, Any]:
        return self._request(
            session,
            "POST",
            "/transientDocuments",
            files={"File": (filename, data, "application/pdf")},
            data={"File-Name": filename},
        )

    def create_agreement(self, session: ProviderSession, info: dict[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "fileInfos": info["fileInfos"],
            "name": info["name"],
            "participantSetsInfo": [
                {
                    "memberInfos": [{"email": info["participantEmail"]}],
                    "order": 1,
                    "role": "SIGNER",
                }
            ],
            "signatureType": "ESIGN",
            "state": "IN_PROCESS",
        }
        if info.get("message"):
            payload["message"] = info["message"]
        return self._request(session, "POST", "/agreements", json=payload)

    def get_agreement(self, session: ProviderSession, agreement_id: str) -> dict[str, Any]:
        return self._request(session, "GET", f"/agreements/{agreement_id}")

    def send_reminder(self, session: ProviderSession, agreement_id: str) -> dict[str, Any]:
        data = self._request(
            session, "POST", f"/agreements/{agreement_id}/reminders", json={"status": "ACTIVE"}
        )
        return {"id": data.get("id", agreement_id), "status": data.get("status", "ACTIVE")}

    def cancel_agreement(self, session: ProviderSession, agreement_id: str) -> None:
        try:
            self._request(
                session,
                "PUT",
                f"/agreements/{agreement_id}/state",
                json={"state": AgreementState.CANCELLED.value},
            )
        except ProviderError as exc:
            if exc.status_code not in (400, 409):
                raise
            # A second cancel is rejected remotely; it is fine if the agreement is already cancelled.
            current = self.get_agreement(session, agreement_id).get("status")
            if current != AgreementState.CANCELLED.value:
                raise
            logger.info("Agreement %s was already cancelled", agreement_id)

    def signing_url(self, session: ProviderSession, agreement_id: str, email: str) -> str | None:
        policy = replace(self.retry, retry_on=_signing_url_not_ready)
        data = policy.call(self._send, session, "GET", f"/agreements/{agreement_id}/signingUrls")
        urls: list[dict[str, Any]] = list(data.get("signingUrls") or [])
        for url_set in data.get("signingUrlSetInfos") or []:
            urls.extend(url_set.get("signingUrls") or [])
        for entry in urls:
            if entry.get("email", "").lower() == email.lower() and entry.get("esignUrl"):
                return entry["esignUrl"]
        return urls[0].get("esignUrl") if urls else None

    def signed_document(self, agreement_id: str) -> bytes | None:
        session = self.open_session()
        response = self.retry.call(
            self._raw, session, "GET", f"/agreements/{agreement_id}/combinedDocument"
        )
        return response.content

    def _request(self, session: ProviderSession, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        return self.retry.call(self._send, session, method, path, **kwargs)

    def _send(self, session: ProviderSession, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self._raw(session, method, path, **kwargs)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} returned invalid JSON", response.status_code) from exc

    def _raw(self, session: ProviderSession, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{session.api_access_point}{API_PATH}{path}"
        headers = {"Authorization": f"Bearer {session.access_token}"}
        try:
            response = self.http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            logger.warning("%s %s %s -> %s: %s", self.name, method, path, response.status_code, response.text)
            raise ProviderError(f"{self.name} API error {response.status_code}", response.status_code)
        return response
