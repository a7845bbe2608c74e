"""
RefreshCoordinator — at most one in-flight token refresh per (user, provider).

Concurrent callers for the same pair share one ``asyncio.Task``; the task
removes itself from the in-flight map when it finishes.  The map lives on the
instance, so the process must hold exactly one coordinator (see
``connectors.service.get_oauth_service``).  Under asyncio the
check-then-insert and the removal run on the event loop without interleaving.

The lock is process-local.  Running several worker processes against one
database needs a durable lease (e.g. a row lock on the integration) to keep
the one-refresh guarantee across processes.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from connectors.errors import TokenDecryptionError
from connectors.oauth_client import OAuthHttpClient, parse_token_payload
from connectors.registry import ProviderRegistry
from connectors.schemas import (
    RefreshClassification,
    RefreshOutcome,
    TokenResponse,
    TokenSet,
)
from connectors.token_store import TokenStore

logger = logging.getLogger(__name__)

_RATE_LIMITED = 429


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _retry_after_seconds(response: httpx.Response, now: datetime) -> Optional[float]:
    """Parse ``Retry-After`` given either as delta-seconds or as an HTTP-date."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - now).total_seconds())


class RefreshCoordinator:
    """Deduplicating, retrying wrapper around a provider's refresh call."""

    def __init__(
        self,
        store: TokenStore,
        registry: ProviderRegistry,
        http: OAuthHttpClient,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        retry_after_cap: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._registry = registry
        self._http = http
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._retry_after_cap = retry_after_cap
        self._sleep = sleep
        self._clock = clock
        self._inflight: Dict[str, asyncio.Task] = {}

    # ── Public ──────────────────────────────────────────────────────────

    async def refresh(self, user_id: str, provider_id: str) -> Optional[str]:
        """Return a fresh access token, or None if none could be obtained."""
        outcome = await self.refresh_with_outcome(user_id, provider_id)
        return outcome.access_token

    async def refresh_with_outcome(self, user_id: str, provider_id: str) -> RefreshOutcome:
        key = f"{user_id}:{provider_id}"
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._do_refresh(user_id, provider_id))
            self._inflight[key] = task
            task.add_done_callback(lambda done, k=key: self._release(k, done))
        else:
            logger.debug("Joining in-flight refresh provider=%s user=%s", provider_id, user_id)
        # shield: a caller that stops waiting must not cancel the shared refresh
        return await asyncio.shield(task)

    def in_flight(self) -> int:
        return len(self._inflight)

    # ── Internals ───────────────────────────────────────────────────────

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _backoff(self, attempt: int) -> float:
        return self._base_delay * (2 ** (attempt - 1))

    async def _do_refresh(self, user_id: str, provider_id: str) -> RefreshOutcome:
        try:
            return await self._refresh_with_retries(user_id, provider_id)
        except Exception:
            logger.exception("Unexpected error refreshing provider=%s user=%s", provider_id, user_id)
            return RefreshOutcome(classification=RefreshClassification.TRANSIENT)

    async def _refresh_with_retries(self, user_id: str, provider_id: str) -> RefreshOutcome:
        record = await self._store.read_integration(user_id, provider_id)
        if record is not None and not record.is_active:
            logger.info("Skipping refresh of disconnected provider=%s user=%s", provider_id, user_id)
            return RefreshOutcome(classification=RefreshClassification.INACTIVE)
        if record is None or not record.has_refresh_token:
            return RefreshOutcome(classification=RefreshClassification.NO_REFRESH_TOKEN)

        provider = self._registry.get(provider_id)
        if provider is None:
            logger.error("No provider config for %s; cannot refresh user=%s", provider_id, user_id)
            return RefreshOutcome(classification=RefreshClassification.TRANSIENT)

        try:
            refresh_token = self._store.decrypt_refresh_token(record)
        except TokenDecryptionError:
            logger.warning("Stored refresh token unreadable provider=%s user=%s", provider_id, user_id)
            await self._store.mark_needs_reauth(user_id, provider_id, "refresh token unreadable")
            return RefreshOutcome(classification=RefreshClassification.TERMINAL)

        status: Optional[int] = None
        for attempt in range(1, self._max_attempts + 1):
            delay = self._backoff(attempt)
            try:
                response = await self._http.request_refresh(provider, refresh_token)
            except httpx.HTTPError as exc:
                status = None
                logger.warning(
                    "Token refresh network error provider=%s user=%s attempt=%d error=%s",
                    provider_id, user_id, attempt, type(exc).__name__,
                )
            else:
                status = response.status_code
                if response.is_success:
                    try:
                        tokens = parse_token_payload(response.json())
                    except (ValueError, ValidationError) as exc:
                        logger.warning(
                            "Terminal refresh error provider=%s user=%s attempt=%d status=%d error=%s",
                            provider_id, user_id, attempt, status, str(exc)[:200],
                        )
                        await self._store.mark_needs_reauth(user_id, provider_id, "refresh rejected")
                        return RefreshOutcome(
                            classification=RefreshClassification.TERMINAL,
                            attempts=attempt,
                            status_code=status,
                        )
                    if not await self._persist(user_id, provider_id, tokens, refresh_token):
                        return RefreshOutcome(
                            classification=RefreshClassification.INACTIVE,
                            attempts=attempt,
                            status_code=status,
                        )
                    logger.info(
                        "Token refresh successful provider=%s user=%s attempt=%d rotated=%s",
                        provider_id, user_id, attempt, bool(tokens.refresh_token),
                    )
                    return RefreshOutcome(
                        classification=RefreshClassification.SUCCESS,
                        access_token=tokens.access_token,
                        attempts=attempt,
                        status_code=status,
                    )

                if 400 <= status < 500 and status != _RATE_LIMITED:
                    logger.warning(
                        "Terminal refresh error provider=%s user=%s attempt=%d status=%d body=%s",
                        provider_id, user_id, attempt, status, response.text[:200],
                    )
                    await self._store.mark_needs_reauth(
                        user_id, provider_id, f"refresh rejected (HTTP {status})"
                    )
                    return RefreshOutcome(
                        classification=RefreshClassification.TERMINAL,
                        attempts=attempt,
                        status_code=status,
                    )

                if status == _RATE_LIMITED:
                    retry_after = _retry_after_seconds(response, self._clock())
                    if retry_after is not None:
                        delay = min(retry_after, self._retry_after_cap)

                logger.warning(
                    "Transient refresh error provider=%s user=%s attempt=%d status=%d",
                    provider_id, user_id, attempt, status,
                )

            if attempt < self._max_attempts:
                logger.info(
                    "Retrying token refresh provider=%s user=%s attempt=%d delay=%.1fs",
                    provider_id, user_id, attempt + 1, delay,
                )
                await self._sleep(delay)

        logger.error(
            "Token refresh gave up provider=%s user=%s attempts=%d last_status=%s",
            provider_id, user_id, self._max_attempts, status,
        )
        return RefreshOutcome(
            classification=RefreshClassification.TRANSIENT,
            attempts=self._max_attempts,
            status_code=status,
        )

    async def _persist(
        self, user_id: str, provider_id: str, tokens: TokenResponse, old_refresh_token: str
    ) -> bool:
        """Store the refreshed tokens; False if the integration was disconnected meanwhile."""
        expires_at = (
            self._clock() + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
        )
        record = await self._store.store_refreshed_tokens(
            user_id,
            provider_id,
            TokenSet(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or old_refresh_token,
                expires_at=expires_at,
                scope=tokens.scope,
            ),
        )
        return record is not None
