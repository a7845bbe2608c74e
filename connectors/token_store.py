"""
TokenStore — persisted integration records keyed by (user, provider).

Tokens are encrypted before they are written; plaintext never reaches the
database.  This module knows nothing about refresh policy and makes no
network calls.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import TokenCipher
from connectors.schemas import IntegrationRecord, TokenSet
from database.models import UserIntegration

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenStore:
    """CRUD over ``user_integrations`` with encryption at rest."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self._clock = clock

    # ── Writes ──────────────────────────────────────────────────────────

    async def store_tokens(
        self,
        user_id: str,
        provider_id: str,
        tokens: TokenSet,
    ) -> IntegrationRecord:
        """
        Insert or update the integration for ``(user_id, provider_id)``.

        A missing refresh token or scope keeps whatever is already stored,
        so providers that do not rotate refresh tokens keep working.
        """
        records = await self.store_tokens_for_providers(user_id, [provider_id], tokens)
        return records[0]

    async def store_tokens_for_providers(
        self,
        user_id: str,
        provider_ids: Sequence[str],
        tokens: TokenSet,
    ) -> List[IntegrationRecord]:
        """Upsert the same tokens under every id in one transaction."""
        access_ct = self._cipher.encrypt(tokens.access_token)
        refresh_ct = self._cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None

        # A concurrent first insert for the same pair trips the unique
        # constraint; the second pass then finds the row and updates it.
        for attempt in (1, 2):
            now = self._clock()
            async with self._session_factory() as session:
                try:
                    rows = []
                    for provider_id in provider_ids:
                        row = await self._get_row(session, user_id, provider_id)
                        if row is None:
                            row = UserIntegration(
                                user_id=user_id,
                                provider_id=provider_id,
                                access_token=access_ct,
                                refresh_token=refresh_ct,
                                expires_at=tokens.expires_at,
                                scope=tokens.scope,
                                is_active=True,
                                is_connected=True,
                                connected_at=now,
                                updated_at=now,
                            )
                            session.add(row)
                            logger.info("Created %s integration for user %s", provider_id, user_id)
                        else:
                            if not row.is_active:
                                row.connected_at = now
                            row.access_token = access_ct
                            if refresh_ct is not None:
                                row.refresh_token = refresh_ct
                            row.expires_at = tokens.expires_at
                            if tokens.scope is not None:
                                row.scope = tokens.scope
                            row.is_active = True
                            row.is_connected = True
                            row.last_error = None
                            row.updated_at = now
                            logger.info("Updated %s integration for user %s", provider_id, user_id)
                        rows.append(row)
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    if attempt == 2:
                        raise
                    logger.info("Concurrent insert for user %s, retrying as update", user_id)
                    continue
                except Exception as exc:
                    logger.error("store_tokens error for user %s: %s", user_id, type(exc).__name__)
                    await session.rollback()
                    raise
                return [self._to_record(r) for r in rows]
        raise AssertionError("unreachable")

    async def store_refreshed_tokens(
        self,
        user_id: str,
        provider_id: str,
        tokens: TokenSet,
    ) -> Optional[IntegrationRecord]:
        """
        Write the result of a token refresh onto an active integration.

        Only token, expiry, scope and refresh-stamp columns change; the row is
        never reactivated.  Returns None when the integration is missing or was
        disconnected while the refresh was in flight.
        """
        now = self._clock()
        values = {
            "access_token": self._cipher.encrypt(tokens.access_token),
            "expires_at": tokens.expires_at,
            "is_connected": True,
            "last_error": None,
            "last_refreshed_at": now,
            "updated_at": now,
        }
        if tokens.refresh_token:
            values["refresh_token"] = self._cipher.encrypt(tokens.refresh_token)
        if tokens.scope is not None:
            values["scope"] = tokens.scope

        stmt = (
            update(UserIntegration)
            .where(
                UserIntegration.user_id == user_id,
                UserIntegration.provider_id == provider_id,
                UserIntegration.is_active.is_(True),
            )
            .values(**values)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                logger.info(
                    "Discarded refreshed tokens for inactive %s integration of user %s",
                    provider_id, user_id,
                )
                return None
            row = await self._get_row(session, user_id, provider_id)
            return self._to_record(row)

    async def deactivate(self, user_id: str, provider_id: str) -> bool:
        """Soft-delete the integration.  Returns False if no row exists."""
        async with self._session_factory() as session:
            row = await self._get_row(session, user_id, provider_id)
            if row is None:
                return False
            row.is_active = False
            row.updated_at = self._clock()
            await session.commit()
        logger.info("Deactivated %s integration for user %s", provider_id, user_id)
        return True

    async def mark_needs_reauth(self, user_id: str, provider_id: str, reason: str) -> None:
        """Flag the integration as disconnected; the refresh token is kept."""
        async with self._session_factory() as session:
            row = await self._get_row(session, user_id, provider_id)
            if row is None:
                return
            row.is_connected = False
            row.last_error = reason
            row.updated_at = self._clock()
            await session.commit()

    # ── Reads ───────────────────────────────────────────────────────────

    async def read_integration(self, user_id: str, provider_id: str) -> Optional[IntegrationRecord]:
        async with self._session_factory() as session:
            row = await self._get_row(session, user_id, provider_id)
            return self._to_record(row) if row is not None else None

    async def list_integrations(self, user_id: str, *, active_only: bool = False) -> List[IntegrationRecord]:
        stmt = select(UserIntegration).where(UserIntegration.user_id == user_id)
        if active_only:
            stmt = stmt.where(UserIntegration.is_active.is_(True))
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(UserIntegration.provider_id))
            return [self._to_record(r) for r in result.scalars().all()]

    def decrypt_access_token(self, record: IntegrationRecord) -> str:
        """Raises ``TokenDecryptionError`` if the stored value is unreadable."""
        return self._cipher.decrypt(record.access_token)

    def decrypt_refresh_token(self, record: IntegrationRecord) -> Optional[str]:
        if not record.refresh_token:
            return None
        return self._cipher.decrypt(record.refresh_token)

    # ── Internals ───────────────────────────────────────────────────────

    @staticmethod
    async def _get_row(session: AsyncSession, user_id: str, provider_id: str) -> Optional[UserIntegration]:
        result = await session.execute(
            select(UserIntegration).where(
                UserIntegration.user_id == user_id,
                UserIntegration.provider_id == provider_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _to_record(row: UserIntegration) -> IntegrationRecord:
        return IntegrationRecord(
            user_id=row.user_id,
            provider_id=row.provider_id,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=_aware(row.expires_at),
            scope=row.scope,
            is_active=bool(row.is_active),
            is_connected=bool(row.is_connected),
            connected_at=_aware(row.connected_at),
            updated_at=_aware(row.updated_at),
            last_refreshed_at=_aware(row.last_refreshed_at),
            last_error=row.last_error,
        )
