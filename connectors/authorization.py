"""
AuthorizationFlow — redirect URL construction and callback handling.

    INITIATED ──callback──▶ CALLBACK_RECEIVED ──▶ CONNECTED | REJECTED

A grouped target (e.g. ``atlassian``) produces one consent screen with the
merged scopes of its configured members.  The callback performs a single code
exchange and stores the response under every provider id carried by the
state, all in one transaction: either every member row is written or none.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from urllib.parse import urlencode

from connectors.errors import (
    ProviderUnavailableError,
    StateValidationError,
    TokenExchangeError,
)
from connectors.oauth_client import OAuthHttpClient
from connectors.registry import ProviderRegistry
from connectors.schemas import (
    AuthorizationRequest,
    AuthorizationState,
    AuthorizationStatus,
    CallbackError,
    CallbackResult,
    ProviderConfig,
    TokenSet,
)
from connectors.state import StateCodec, pkce_challenge
from connectors.token_store import TokenStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_scopes(configs: List[ProviderConfig]) -> str:
    """Space-joined distinct scopes, in first-seen order."""
    seen: List[str] = []
    for cfg in configs:
        for scope in cfg.scope.split():
            if scope not in seen:
                seen.append(scope)
    return " ".join(seen)


def _rejected(error: CallbackError, state: Optional[AuthorizationState] = None) -> CallbackResult:
    return CallbackResult(
        success=False,
        status=AuthorizationStatus.REJECTED,
        user_id=state.user_id if state else None,
        error=error,
    )


class AuthorizationFlow:
    """Begins OAuth consent and completes it on callback."""

    def __init__(
        self,
        registry: ProviderRegistry,
        codec: StateCodec,
        store: TokenStore,
        http: OAuthHttpClient,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._codec = codec
        self._store = store
        self._http = http
        self._clock = clock

    # ── Step 1: redirect ────────────────────────────────────────────────

    def begin_authorization(self, user_id: str, target: str) -> AuthorizationRequest:
        """
        Build the provider consent URL for *target* (a provider or group id).

        Raises ``ProviderUnavailableError`` if nothing for *target* is configured.
        """
        if self._registry.is_group(target):
            members = self._registry.group_members(target)
            if not members:
                raise ProviderUnavailableError(target)
            group_id: Optional[str] = target
            lead = members[0]
            redirect_uri = lead.group_redirect_uri or lead.redirect_uri
            scope = merge_scopes(members)
        else:
            lead = self._registry.get(target)
            if lead is None:
                raise ProviderUnavailableError(target)
            members = [lead]
            group_id = None
            redirect_uri = lead.redirect_uri
            scope = lead.scope

        provider_ids = [m.id for m in members]
        state = self._codec.issue(user_id, provider_ids, group_id=group_id, pkce=lead.supports_pkce)
        opaque = self._codec.encode(state)

        params = {
            "client_id": lead.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": scope,
            "state": opaque,
        }
        if state.code_verifier:
            params["code_challenge"] = pkce_challenge(state.code_verifier)
            params["code_challenge_method"] = "S256"
        params.update(lead.extra_auth_params)

        url = f"{lead.authorization_url}?{urlencode(params)}"
        logger.info(
            "Authorization initiated target=%s providers=%s user=%s pkce=%s",
            target, ",".join(provider_ids), user_id, bool(state.code_verifier),
        )
        return AuthorizationRequest(url=url, state=opaque, provider_ids=provider_ids, group_id=group_id)

    # ── Step 2: callback ────────────────────────────────────────────────

    async def handle_callback(
        self,
        code: str,
        state: str,
        expected_target: Optional[str] = None,
    ) -> CallbackResult:
        """
        Validate *state*, exchange *code* once, and store the tokens.

        *expected_target* is the provider or group id from the callback
        route, when the routing layer has one; it must match the state.
        """
        try:
            decoded = self._codec.decode(state)
        except StateValidationError as exc:
            logger.warning("OAuth callback rejected: %s", exc.reason)
            return _rejected(CallbackError.INVALID_STATE)

        logger.info(
            "OAuth callback received providers=%s user=%s status=%s",
            ",".join(decoded.provider_ids), decoded.user_id, AuthorizationStatus.CALLBACK_RECEIVED.value,
        )

        if expected_target is not None and expected_target != (decoded.group_id or decoded.provider_ids[0]):
            logger.warning(
                "OAuth callback target mismatch expected=%s state_group=%s state_providers=%s",
                expected_target, decoded.group_id, ",".join(decoded.provider_ids),
            )
            return _rejected(CallbackError.STATE_MISMATCH, decoded)

        configs = [self._registry.get(pid) for pid in decoded.provider_ids]
        if any(c is None for c in configs):
            logger.error("OAuth callback for unconfigured provider(s): %s", decoded.provider_ids)
            return _rejected(CallbackError.PROVIDER_UNAVAILABLE, decoded)

        lead = configs[0]
        redirect_uri = lead.redirect_uri
        if decoded.group_id and lead.group_redirect_uri:
            redirect_uri = lead.group_redirect_uri

        try:
            tokens = await self._http.exchange_code(
                lead, code, redirect_uri, code_verifier=decoded.code_verifier
            )
        except TokenExchangeError as exc:
            logger.error(
                "OAuth code exchange failed provider=%s user=%s status=%s body=%s",
                exc.provider_id, decoded.user_id, exc.status_code, exc.detail,
            )
            return _rejected(CallbackError.EXCHANGE_FAILED, decoded)

        expires_at = (
            self._clock() + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
        )
        try:
            await self._store.store_tokens_for_providers(
                decoded.user_id,
                decoded.provider_ids,
                TokenSet(
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    expires_at=expires_at,
                    scope=tokens.scope,
                ),
            )
        except Exception as exc:
            logger.error(
                "Storing tokens failed providers=%s user=%s error=%s",
                ",".join(decoded.provider_ids), decoded.user_id, type(exc).__name__,
            )
            return _rejected(CallbackError.EXCHANGE_FAILED, decoded)

        logger.info(
            "OAuth connected providers=%s user=%s",
            ",".join(decoded.provider_ids), decoded.user_id,
        )
        return CallbackResult(
            success=True,
            status=AuthorizationStatus.CONNECTED,
            provider_ids=list(decoded.provider_ids),
            user_id=decoded.user_id,
        )
