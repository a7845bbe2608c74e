"""
Thin httpx wrapper for the three provider calls the lifecycle needs:
code exchange, refresh, and revocation.

Every call carries a timeout.  Refresh hands back the raw response so the
RefreshCoordinator can classify it; exchange raises ``TokenExchangeError``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from connectors.errors import TokenExchangeError
from connectors.providers import RevocationMethod
from connectors.schemas import ProviderConfig, TokenResponse

logger = logging.getLogger(__name__)

_TOKEN_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/x-www-form-urlencoded",
}


def parse_token_payload(payload: Any) -> TokenResponse:
    """
    Validate a token-endpoint JSON body.

    GitHub and Slack answer 200 with an ``error`` field (Slack also sets
    ``ok: false``), and Slack's user-scoped tokens live under ``authed_user``.
    """
    if not isinstance(payload, dict):
        raise ValueError("token response is not a JSON object")
    if "error" in payload or payload.get("ok") is False:
        raise ValueError(str(payload.get("error_description") or payload.get("error")))
    if "access_token" not in payload and isinstance(payload.get("authed_user"), dict):
        payload = payload["authed_user"]
    return TokenResponse.model_validate(payload)


class OAuthHttpClient:
    """Provider token/revocation endpoint calls."""

    def __init__(
        self,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def exchange_code(
        self,
        provider: ProviderConfig,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens."""
        data = {
            "grant_type": "authorization_code",
            "client_id": provider.client_id,
            "client_secret": provider.client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier

        try:
            async with self._client() as client:
                resp = await client.post(provider.token_url, data=data, headers=_TOKEN_HEADERS)
        except httpx.HTTPError as exc:
            raise TokenExchangeError(provider.id, None, type(exc).__name__) from exc

        if resp.status_code >= 400:
            raise TokenExchangeError(provider.id, resp.status_code, resp.text[:500])
        try:
            return parse_token_payload(resp.json())
        except (ValueError, ValidationError) as exc:
            raise TokenExchangeError(provider.id, resp.status_code, str(exc)[:500]) from exc

    async def request_refresh(self, provider: ProviderConfig, refresh_token: str) -> httpx.Response:
        """
        POST ``grant_type=refresh_token``.  Network errors and timeouts
        propagate as ``httpx.HTTPError`` for the caller to classify.
        """
        async with self._client() as client:
            return await client.post(
                provider.token_url,
                data={
                    "grant_type": "refresh_token",
                    "client_id": provider.client_id,
                    "client_secret": provider.client_secret,
                    "refresh_token": refresh_token,
                },
                headers=_TOKEN_HEADERS,
            )

    async def revoke(self, provider: ProviderConfig, access_token: str) -> httpx.Response:
        """Call the provider's revocation endpoint according to its method."""
        url = (provider.revocation_url or "").format(client_id=provider.client_id)
        async with self._client() as client:
            if provider.revocation_method is RevocationMethod.GITHUB_APP:
                return await client.request(
                    "DELETE",
                    url,
                    auth=(provider.client_id, provider.client_secret),
                    json={"access_token": access_token},
                    headers={"Accept": "application/vnd.github+json"},
                )
            if provider.revocation_method is RevocationMethod.BEARER:
                return await client.post(url, headers={"Authorization": f"Bearer {access_token}"})
            return await client.post(
                url,
                data={"token": access_token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
