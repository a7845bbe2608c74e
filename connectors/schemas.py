"""
Pydantic schemas shared by the OAuth token-lifecycle components.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from connectors.providers import RevocationMethod


# ═══════════════════════════════════════════════════════════════════════════════
# Provider configuration
# ═══════════════════════════════════════════════════════════════════════════════


class ProviderConfig(BaseModel):
    """Resolved, credential-bearing configuration for one provider."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    client_id: str
    client_secret: str = Field(repr=False)
    redirect_uri: str
    authorization_url: str
    token_url: str
    scope: str
    group_id: Optional[str] = None
    group_redirect_uri: Optional[str] = None
    supports_pkce: bool = False
    revocation_url: Optional[str] = None
    revocation_method: RevocationMethod = RevocationMethod.NONE
    extra_auth_params: Dict[str, str] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# Tokens
# ═══════════════════════════════════════════════════════════════════════════════


class TokenResponse(BaseModel):
    """Body of a successful token-endpoint response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None


class TokenSet(BaseModel):
    """Plaintext tokens handed to the TokenStore for encryption + upsert."""

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None


class IntegrationRecord(BaseModel):
    """Immutable snapshot of one persisted integration row (tokens encrypted)."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    provider_id: str
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    is_active: bool = True
    is_connected: bool = True
    connected_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)


class IntegrationSummary(BaseModel):
    """Token-free view of an integration for listings and inspection."""

    provider_id: str
    is_active: bool
    is_connected: bool
    has_refresh_token: bool
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    last_error: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Refresh / validation outcomes
# ═══════════════════════════════════════════════════════════════════════════════


class RefreshClassification(str, Enum):
    SUCCESS = "success"
    TERMINAL = "terminal"        # dead / revoked refresh token, re-auth required
    TRANSIENT = "transient"      # retries exhausted, try again later
    NO_REFRESH_TOKEN = "no_refresh_token"
    INACTIVE = "inactive"        # integration disconnected, nothing to refresh


class RefreshOutcome(BaseModel):
    classification: RefreshClassification
    access_token: Optional[str] = Field(default=None, repr=False)
    attempts: int = 0
    status_code: Optional[int] = None


class IntegrationStatus(str, Enum):
    VALID = "valid"
    NEEDS_REAUTH = "needs_reauth"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    NOT_CONNECTED = "not_connected"


class TokenLookup(BaseModel):
    token: Optional[str] = Field(default=None, repr=False)
    status: IntegrationStatus


# ═══════════════════════════════════════════════════════════════════════════════
# Authorization flow
# ═══════════════════════════════════════════════════════════════════════════════


class AuthorizationStatus(str, Enum):
    INITIATED = "initiated"
    CALLBACK_RECEIVED = "callback_received"
    CONNECTED = "connected"
    REJECTED = "rejected"


class AuthorizationState(BaseModel):
    """Decoded CSRF state blob.  Never persisted."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    provider_ids: List[str]
    group_id: Optional[str] = None
    nonce: str
    issued_at_ms: int
    code_verifier: Optional[str] = Field(default=None, repr=False)


class AuthorizationRequest(BaseModel):
    url: str
    state: str
    provider_ids: List[str]
    group_id: Optional[str] = None
    status: AuthorizationStatus = AuthorizationStatus.INITIATED


class CallbackError(str, Enum):
    INVALID_STATE = "invalid_state"
    STATE_MISMATCH = "state_mismatch"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    EXCHANGE_FAILED = "exchange_failed"


class CallbackResult(BaseModel):
    success: bool
    status: AuthorizationStatus
    provider_ids: List[str] = Field(default_factory=list)
    user_id: Optional[str] = None
    error: Optional[CallbackError] = None
