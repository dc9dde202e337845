from __future__ import annotations

from sponsorcrm.adapters.signing.base import (
    ProviderSession,
    SendResult,
    SigningProvider,
    SigningRequest,
    StatusResult,
    map_agreement_status,
)
from sponsorcrm.adapters.signing.external import ExternalSigningProvider
from sponsorcrm.adapters.signing.self_hosted import SelfHostedSigningProvider
from sponsorcrm.domain.models import Conference
from sponsorcrm.domain.stages import SigningProviderKind
from sponsorcrm.errors import ConfigurationError


class ProviderRegistry:
    """Picks the signing backend for a conference, falling back to a workspace default."""

    def __init__(self, providers: dict[str, SigningProvider], default: str) -> None:
        if default not in providers:
            raise ConfigurationError(f"Default signing provider is not configured: {default}")
        self.providers = providers
        self.default = default

    def for_conference(self, conference: Conference | None) -> SigningProvider:
        kind = (conference.signing_provider if conference else None) or self.default
        return self.get(kind)

    def get(self, kind: str) -> SigningProvider:
        provider = self.providers.get(kind)
        if provider is None:
            raise ConfigurationError(f"Signing provider is not configured: {kind}")
        return provider

    @property
    def self_hosted(self) -> SelfHostedSigningProvider:
        provider = self.get(SigningProviderKind.SELF_HOSTED.value)
        if not isinstance(provider, SelfHostedSigningProvider):
            raise ConfigurationError("Self-hosted signing is not configured.")
        return provider


__all__ = [
    "ExternalSigningProvider",
    "ProviderRegistry",
    "ProviderSession",
    "SelfHostedSigningProvider",
    "SendResult",
    "SigningProvider",
    "SigningRequest",
    "StatusResult",
    "map_agreement_status",
]
