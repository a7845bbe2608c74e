"""
RevocationService — best-effort provider-side revocation on disconnect.

A failed or unsupported revocation never blocks the disconnect itself; the
caller deactivates the integration regardless of what happens here.
"""

from __future__ import annotations

import logging

import httpx

from connectors.oauth_client import OAuthHttpClient
from connectors.providers import RevocationMethod
from connectors.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class RevocationService:
    def __init__(self, registry: ProviderRegistry, http: OAuthHttpClient) -> None:
        self._registry = registry
        self._http = http

    async def revoke(self, user_id: str, provider_id: str, access_token: str) -> bool:
        """
        Revoke *access_token* at the provider.

        Returns True only when the provider confirmed the revocation.
        """
        provider = self._registry.get(provider_id)
        if (
            provider is None
            or provider.revocation_method is RevocationMethod.NONE
            or not provider.revocation_url
        ):
            logger.info("No revocation endpoint provider=%s user=%s; skipping", provider_id, user_id)
            return False

        try:
            resp = await self._http.revoke(provider, access_token)
        except httpx.HTTPError as exc:
            logger.warning(
                "Token revocation failed provider=%s user=%s error=%s",
                provider_id, user_id, type(exc).__name__,
            )
            return False

        ok = resp.is_success
        if ok and provider.revocation_method is RevocationMethod.BEARER:
            # Slack answers 200 with {"ok": false} on failure
            try:
                ok = bool(resp.json().get("ok", False))
            except ValueError:
                ok = False

        if ok:
            logger.info("Token revoked provider=%s user=%s", provider_id, user_id)
        else:
            logger.warning(
                "Token revocation rejected provider=%s user=%s status=%d",
                provider_id, user_id, resp.status_code,
            )
        return ok
