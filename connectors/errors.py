"""
Exceptions raised by the OAuth token-lifecycle code.

Only ``ConfigurationError`` is meant to escape to the process level; the
others are caught at the flow boundaries and turned into typed results.
"""

from __future__ import annotations

from typing import Optional


class OAuthError(Exception):
    """Base class for every error raised by the connectors package."""


class ConfigurationError(OAuthError):
    """Required operator configuration is missing (fatal at startup)."""


class ProviderUnavailableError(OAuthError):
    """The requested provider or group has no credentials configured."""

    def __init__(self, target: str) -> None:
        super().__init__(f"Provider '{target}' not found or not configured")
        self.target = target


class StateValidationError(OAuthError):
    """The OAuth ``state`` blob is malformed, tampered with, or expired."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid or expired OAuth state: {reason}")
        self.reason = reason


class TokenDecryptionError(OAuthError):
    """Stored ciphertext could not be decrypted; the user must re-authorize."""


class TokenExchangeError(OAuthError):
    """The provider rejected or failed an authorization-code exchange."""

    def __init__(self, provider_id: str, status_code: Optional[int], detail: str = "") -> None:
        super().__init__(
            f"Token exchange failed for {provider_id}"
            + (f" (HTTP {status_code})" if status_code is not None else "")
        )
        self.provider_id = provider_id
        self.status_code = status_code
        self.detail = detail
