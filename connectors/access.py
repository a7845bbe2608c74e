"""
AccessTokenService — the read path data fetchers use to get a usable token.

Tokens are refreshed proactively: anything expiring within the buffer
(5 minutes by default) goes through the RefreshCoordinator before it is
handed out.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from connectors.errors import TokenDecryptionError
from connectors.refresh import RefreshCoordinator
from connectors.schemas import (
    IntegrationStatus,
    RefreshClassification,
    TokenLookup,
)
from connectors.token_store import TokenStore

logger = logging.getLogger(__name__)

_REFRESH_BUFFER = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessTokenService:
    """Return a valid access token for a user + provider, refreshing if needed."""

    def __init__(
        self,
        store: TokenStore,
        coordinator: RefreshCoordinator,
        *,
        refresh_buffer: timedelta = _REFRESH_BUFFER,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._coordinator = coordinator
        self._buffer = refresh_buffer
        self._clock = clock

    async def get_access_token(self, user_id: str, provider_id: str) -> Optional[str]:
        lookup = await self.lookup(user_id, provider_id)
        return lookup.token

    async def lookup(self, user_id: str, provider_id: str) -> TokenLookup:
        """
        Resolve the token together with a status the UI can act on.

        1. Absent or inactive integration → not connected.
        2. No recorded expiry → the stored token is always valid.
        3. Within the buffer of expiry and a refresh token exists → refresh.
        4. Otherwise decrypt and return the stored token.
        """
        record = await self._store.read_integration(user_id, provider_id)
        if record is None or not record.is_active:
            return TokenLookup(status=IntegrationStatus.NOT_CONNECTED)

        now = self._clock()
        expired = record.expires_at is not None and now >= record.expires_at
        needs_refresh = record.expires_at is not None and now > record.expires_at - self._buffer

        if needs_refresh:
            if not record.has_refresh_token:
                if expired:
                    logger.info(
                        "Token expired and no refresh token available provider=%s user=%s",
                        provider_id, user_id,
                    )
                    return TokenLookup(status=IntegrationStatus.NEEDS_REAUTH)
            else:
                outcome = await self._coordinator.refresh_with_outcome(user_id, provider_id)
                if outcome.access_token:
                    return TokenLookup(token=outcome.access_token, status=IntegrationStatus.VALID)
                if outcome.classification is RefreshClassification.INACTIVE:
                    return TokenLookup(status=IntegrationStatus.NOT_CONNECTED)
                if expired:
                    return TokenLookup(status=_status_for(outcome.classification))
                # still inside the buffer: the stored token keeps working for now

        try:
            token = self._store.decrypt_access_token(record)
        except TokenDecryptionError:
            logger.warning("Stored access token unreadable provider=%s user=%s", provider_id, user_id)
            return TokenLookup(status=IntegrationStatus.NEEDS_REAUTH)
        return TokenLookup(token=token, status=IntegrationStatus.VALID)


def _status_for(classification: RefreshClassification) -> IntegrationStatus:
    if classification is RefreshClassification.TRANSIENT:
        return IntegrationStatus.TEMPORARILY_UNAVAILABLE
    return IntegrationStatus.NEEDS_REAUTH
