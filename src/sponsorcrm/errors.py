from __future__ import annotations

from sponsorcrm.domain.rules import ValidationError


class ConfigurationError(RuntimeError):
    pass


class AuthenticationError(RuntimeError):
    pass


class NotFoundError(LookupError):
    pass


class ProviderError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


class TransactionError(RuntimeError):
    pass


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "NotFoundError",
    "ProviderError",
    "TransactionError",
    "ValidationError",
]
