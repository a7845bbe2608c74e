"""
OAuthService — the public API the rest of the application consumes.

This module is also the composition root: ``get_oauth_service()`` builds
every component exactly once per process and hands the same instance to all
callers.  The RefreshCoordinator's in-flight map only deduplicates refreshes
if every caller shares it, so consumers must never construct their own
coordinator or service.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import Settings
from connectors.access import AccessTokenService
from connectors.authorization import AuthorizationFlow
from connectors.encryption import TokenCipher
from connectors.errors import TokenDecryptionError
from connectors.oauth_client import OAuthHttpClient
from connectors.refresh import RefreshCoordinator
from connectors.registry import ProviderRegistry
from connectors.revocation import RevocationService
from connectors.schemas import (
    AuthorizationRequest,
    CallbackResult,
    IntegrationStatus,
    IntegrationSummary,
)
from connectors.state import StateCodec
from connectors.token_store import TokenStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OAuthService:
    """Facade over the token-lifecycle components."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: TokenStore,
        coordinator: RefreshCoordinator,
        access: AccessTokenService,
        flow: AuthorizationFlow,
        revocation: RevocationService,
    ) -> None:
        self.registry = registry
        self.store = store
        self.coordinator = coordinator
        self.access = access
        self.flow = flow
        self.revocation = revocation

    # ── Providers ───────────────────────────────────────────────────────

    def is_available(self, provider_id: str) -> bool:
        return self.registry.is_available(provider_id)

    def list_available(self) -> List[str]:
        return self.registry.list_available()

    def list_providers(self) -> List[Dict[str, object]]:
        return self.registry.describe()

    # ── Tokens ──────────────────────────────────────────────────────────

    async def get_access_token(self, user_id: str, provider_id: str) -> Optional[str]:
        return await self.access.get_access_token(user_id, provider_id)

    async def force_refresh(self, user_id: str, provider_id: str) -> Optional[str]:
        """Refresh even if the current token has not expired yet."""
        return await self.coordinator.refresh(user_id, provider_id)

    # ── Authorization ───────────────────────────────────────────────────

    def begin_authorization(self, user_id: str, target: str) -> AuthorizationRequest:
        return self.flow.begin_authorization(user_id, target)

    async def handle_callback(
        self, code: str, state: str, expected_target: Optional[str] = None
    ) -> CallbackResult:
        return await self.flow.handle_callback(code, state, expected_target)

    # ── Disconnect ──────────────────────────────────────────────────────

    async def disconnect(self, user_id: str, provider_id: str) -> bool:
        """
        Revoke (best effort) and deactivate an integration.
        Returns False only if the user never connected this provider.
        """
        record = await self.store.read_integration(user_id, provider_id)
        if record is None:
            return False

        try:
            access_token = self.store.decrypt_access_token(record)
        except TokenDecryptionError:
            logger.warning("Skipping revocation, token unreadable provider=%s user=%s", provider_id, user_id)
        else:
            try:
                await self.revocation.revoke(user_id, provider_id, access_token)
            except Exception:
                logger.exception("Revocation raised provider=%s user=%s", provider_id, user_id)

        deactivated = await self.store.deactivate(user_id, provider_id)
        logger.info("Disconnected %s for user %s", provider_id, user_id)
        return deactivated

    # ── Validation / inspection ─────────────────────────────────────────

    async def validate_integration(self, user_id: str, provider_id: str) -> IntegrationStatus:
        lookup = await self.access.lookup(user_id, provider_id)
        return lookup.status

    async def validate_all_integrations(self, user_id: str) -> Dict[str, IntegrationStatus]:
        """Validate every active integration of *user_id* concurrently."""
        records = await self.store.list_integrations(user_id, active_only=True)
        provider_ids = [r.provider_id for r in records]
        statuses = await asyncio.gather(
            *(self.validate_integration(user_id, pid) for pid in provider_ids)
        )
        return dict(zip(provider_ids, statuses))

    async def list_integrations(self, user_id: str) -> List[IntegrationSummary]:
        """Integration metadata for *user_id*; never includes token values."""
        records = await self.store.list_integrations(user_id)
        return [
            IntegrationSummary(
                provider_id=r.provider_id,
                is_active=r.is_active,
                is_connected=r.is_connected,
                has_refresh_token=r.has_refresh_token,
                scope=r.scope,
                expires_at=r.expires_at,
                connected_at=r.connected_at,
                updated_at=r.updated_at,
                last_refreshed_at=r.last_refreshed_at,
                last_error=r.last_error,
            )
            for r in records
        ]


def build_oauth_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep=asyncio.sleep,
    clock: Callable[[], datetime] = _utcnow,
) -> OAuthService:
    """
    Wire every component from *settings*.

    Raises ``ConfigurationError`` when the encryption secret is missing.
    """
    cipher = TokenCipher(settings.encryption_key)
    registry = ProviderRegistry.from_settings(settings)
    http = OAuthHttpClient(timeout=settings.oauth_http_timeout_seconds, transport=transport)
    store = TokenStore(session_factory, cipher, clock=clock)
    coordinator = RefreshCoordinator(
        store,
        registry,
        http,
        max_attempts=settings.oauth_refresh_max_attempts,
        base_delay=settings.oauth_refresh_base_delay_seconds,
        retry_after_cap=settings.oauth_retry_after_cap_seconds,
        sleep=sleep,
        clock=clock,
    )
    access = AccessTokenService(
        store,
        coordinator,
        refresh_buffer=timedelta(seconds=settings.oauth_refresh_buffer_seconds),
        clock=clock,
    )
    codec = StateCodec(
        settings.state_secret(),
        ttl_seconds=settings.oauth_state_ttl_seconds,
        clock=lambda: clock().timestamp(),
    )
    flow = AuthorizationFlow(registry, codec, store, http, clock=clock)
    revocation = RevocationService(registry, http)
    return OAuthService(registry, store, coordinator, access, flow, revocation)


_service: Optional[OAuthService] = None


def get_oauth_service() -> OAuthService:
    """Return the process-wide OAuthService, building it on first use."""
    global _service
    if _service is None:
        from config.settings import config
        from database.session import get_session_factory

        _service = build_oauth_service(config, get_session_factory())
        logger.info("OAuth service ready with providers: %s", ", ".join(_service.list_available()) or "none")
    return _service


def reset_oauth_service() -> None:
    """Drop the singleton; used by test teardown."""
    global _service
    _service = None
