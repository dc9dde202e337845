import json

import pytest
import requests

from sponsorcrm.adapters.signing import (
    ExternalSigningProvider,
    ProviderRegistry,
    SelfHostedSigningProvider,
    SigningRequest,
)
from sponsorcrm.domain.models import Conference
from sponsorcrm.errors import ConfigurationError, ProviderError
from sponsorcrm.services.retry import NO_RETRY, RetryPolicy

API = "https://api.esign.example"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, content: bytes | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        if content is not None:
            self.content = content
        else:
            self.content = json.dumps(payload).encode() if payload is not None else b""
        self.text = self.content.decode("latin-1")

    def json(self):
        return json.loads(self.content)


class FakeHttp:
    """Replays queued responses per (method, path) and records every call."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list] = {}
        self.calls: list[tuple[str, str, dict]] = []

    def add(self, method: str, path: str, *responses) -> None:
        self.routes.setdefault((method, path), []).extend(responses)

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        path = url.removeprefix(f"{API}/api/rest/v6")
        self.calls.append((method, path, {"headers": headers, **kwargs}))
        queue = self.routes.get((method, path))
        if not queue:
            return FakeResponse(404, {"code": "NOT_FOUND"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


def _provider(http: FakeHttp, retry=NO_RETRY, token: str | None = "secret-token") -> ExternalSigningProvider:
    return ExternalSigningProvider(API, token, http=http, retry=retry)


def _request() -> SigningRequest:
    return SigningRequest(
        pdf=b"%PDF-1.4",
        filename="contract-acme.pdf",
        signer_email="ada@acme.example",
        agreement_name="Sponsorship Agreement - Acme",
        message="Please sign.",
        sfc_id="sfc-1",
    )


def test_external_send_for_signing() -> None:
    http = FakeHttp()
    http.add("POST", "/transientDocuments", FakeResponse(201, {"transientDocumentId": "doc-1"}))
    http.add("POST", "/agreements", FakeResponse(201, {"id": "agr-1"}))
    http.add(
        "GET",
        "/agreements/agr-1/signingUrls",
        FakeResponse(
            200,
            {
                "signingUrlSetInfos": [
                    {"signingUrls": [{"email": "ADA@acme.example", "esignUrl": "https://sign.example/agr-1"}]}
                ]
            },
        ),
    )

    result = _provider(http).send_for_signing(_request())

    assert result.agreement_id == "agr-1"
    assert result.signing_url == "https://sign.example/agr-1"
    _, _, create_kwargs = http.calls[1]
    payload = create_kwargs["json"]
    assert payload["fileInfos"] == [{"transientDocumentId": "doc-1"}]
    assert payload["participantSetsInfo"][0]["memberInfos"] == [{"email": "ada@acme.example"}]
    assert payload["state"] == "IN_PROCESS"
    assert create_kwargs["headers"]["Authorization"] == "Bearer secret-token"


def test_external_missing_agreement_id_is_an_error() -> None:
    http = FakeHttp()
    http.add("POST", "/transientDocuments", FakeResponse(201, {"transientDocumentId": "doc-1"}))
    http.add("POST", "/agreements", FakeResponse(201, {}))

    with pytest.raises(ProviderError, match="no agreement id"):
        _provider(http).send_for_signing(_request())


def test_external_signing_url_failure_does_not_fail_send() -> None:
    http = FakeHttp()
    http.add("POST", "/transientDocuments", FakeResponse(201, {"transientDocumentId": "doc-1"}))
    http.add("POST", "/agreements", FakeResponse(201, {"id": "agr-1"}))

    result = _provider(http).send_for_signing(_request())

    assert result.agreement_id == "agr-1"
    assert result.signing_url is None


def test_external_retries_transient_errors() -> None:
    http = FakeHttp()
    http.add("GET", "/agreements/agr-1", FakeResponse(503, {"code": "BUSY"}), FakeResponse(200, {"status": "SIGNED"}))
    retry = RetryPolicy(attempts=3, sleep=lambda _: None)

    status = _provider(http, retry=retry).check_status("agr-1")

    assert status.status == "signed"
    assert status.provider_status == "SIGNED"
    assert len(http.calls) == 2


def test_external_client_errors_are_not_retried() -> None:
    http = FakeHttp()
    http.add("GET", "/agreements/agr-1", FakeResponse(403, {"code": "PERMISSION_DENIED"}))
    retry = RetryPolicy(attempts=3, sleep=lambda _: None)

    with pytest.raises(ProviderError) as excinfo:
        _provider(http, retry=retry).check_status("agr-1")

    assert excinfo.value.status_code == 403
    assert len(http.calls) == 1


def test_external_network_failure_becomes_provider_error() -> None:
    http = FakeHttp()
    http.add("GET", "/agreements/agr-1", requests.ConnectionError("connection reset"))

    with pytest.raises(ProviderError, match="request failed"):
        _provider(http).check_status("agr-1")


def test_external_status_mapping() -> None:
    http = FakeHttp()
    http.add("GET", "/agreements/agr-1", FakeResponse(200, {"status": "CANCELLED"}))
    http.add("GET", "/agreements/agr-2", FakeResponse(200, {"status": "WAITING_FOR_VERIFICATION"}))
    provider = _provider(http)

    assert provider.check_status("agr-1").status == "rejected"
    assert provider.check_status("agr-2").status == "pending"


def test_external_second_cancel_is_tolerated() -> None:
    http = FakeHttp()
    http.add("PUT", "/agreements/agr-1/state", FakeResponse(400, {"code": "INVALID_STATE"}))
    http.add("GET", "/agreements/agr-1", FakeResponse(200, {"status": "CANCELLED"}))

    _provider(http).cancel("agr-1")


def test_external_cancel_of_signed_agreement_fails() -> None:
    http = FakeHttp()
    http.add("PUT", "/agreements/agr-1/state", FakeResponse(409, {"code": "INVALID_STATE"}))
    http.add("GET", "/agreements/agr-1", FakeResponse(200, {"status": "SIGNED"}))

    with pytest.raises(ProviderError):
        _provider(http).cancel("agr-1")


def test_external_without_token_is_not_connected() -> None:
    with pytest.raises(ConfigurationError, match="not connected"):
        _provider(FakeHttp(), token=None).check_status("agr-1")


def test_external_signed_document_returns_pdf_bytes() -> None:
    http = FakeHttp()
    http.add("GET", "/agreements/agr-1/combinedDocument", FakeResponse(200, content=b"%PDF-signed"))

    assert _provider(http).signed_document("agr-1") == b"%PDF-signed"


def test_self_hosted_round_trip(store, clock) -> None:
    provider = SelfHostedSigningProvider(store, "https://crm.example.org/", clock=clock)

    sent = provider.send_for_signing(_request())

    assert sent.signing_url == f"https://crm.example.org/sponsor/portal/{sent.agreement_id}"
    assert len(sent.agreement_id) >= 40
    agreement = provider.get_agreement(provider.open_session(), sent.agreement_id)
    assert agreement["status"] == "OUT_FOR_SIGNATURE"
    assert agreement["sfcId"] == "sfc-1"
    assert agreement["documentDigest"]
    assert provider.check_status(sent.agreement_id).status == "pending"

    provider.mark_signed(sent.agreement_id)
    provider.mark_signed(sent.agreement_id)

    assert provider.check_status(sent.agreement_id).status == "signed"


def test_self_hosted_double_cancel_and_late_signature(store, clock) -> None:
    provider = SelfHostedSigningProvider(store, "https://crm.example.org", clock=clock)
    sent = provider.send_for_signing(_request())

    provider.cancel(sent.agreement_id)
    provider.cancel(sent.agreement_id)

    assert provider.check_status(sent.agreement_id).status == "rejected"
    with pytest.raises(ProviderError) as excinfo:
        provider.mark_signed(sent.agreement_id)
    assert excinfo.value.status_code == 409


def test_self_hosted_unknown_token(store) -> None:
    provider = SelfHostedSigningProvider(store, "https://crm.example.org")

    with pytest.raises(ProviderError) as excinfo:
        provider.check_status("nope")
    assert excinfo.value.status_code == 404


def test_registry_prefers_conference_provider(store) -> None:
    self_hosted = SelfHostedSigningProvider(store, "https://crm.example.org")
    external = _provider(FakeHttp())
    registry = ProviderRegistry({"self-hosted": self_hosted, "external": external}, default="self-hosted")
    conference = Conference("c-1", "Summit", None, None, None, None, None, None, "external")

    assert registry.for_conference(conference) is external
    assert registry.for_conference(None) is self_hosted
    assert registry.self_hosted is self_hosted


def test_registry_requires_configured_default(store) -> None:
    with pytest.raises(ConfigurationError):
        ProviderRegistry({"self-hosted": SelfHostedSigningProvider(store, "https://crm.example.org")}, "external")
