"""
Tests for the encrypted integration store.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from connectors.schemas import TokenSet
from database.models import UserIntegration


async def _raw_row(session_factory, user_id, provider_id):
    async with session_factory() as session:
        result = await session.execute(
            select(UserIntegration).where(
                UserIntegration.user_id == user_id,
                UserIntegration.provider_id == provider_id,
            )
        )
        return result.scalar_one_or_none()


class TestStoreTokens:
    @pytest.mark.asyncio
    async def test_insert_sets_flags(self, store, clock):
        expires = clock() + timedelta(hours=1)
        record = await store.store_tokens(
            "user-1", "github", TokenSet(access_token="at-1", refresh_token="rt-1", expires_at=expires, scope="repo")
        )

        assert record.is_active and record.is_connected
        assert record.connected_at == clock()
        assert record.expires_at == expires
        assert record.scope == "repo"
        assert record.has_refresh_token
        assert store.decrypt_access_token(record) == "at-1"
        assert store.decrypt_refresh_token(record) == "rt-1"

    @pytest.mark.asyncio
    async def test_plaintext_never_reaches_the_database(self, store, session_factory):
        await store.store_tokens("user-1", "github", TokenSet(access_token="at-plain", refresh_token="rt-plain"))

        row = await _raw_row(session_factory, "user-1", "github")
        assert "at-plain" not in row.access_token
        assert "rt-plain" not in row.refresh_token
        assert ":" in row.access_token

    @pytest.mark.asyncio
    async def test_update_without_refresh_token_keeps_the_old_one(self, store, clock):
        await store.store_tokens("user-1", "github", TokenSet(access_token="at-1", refresh_token="rt-1", scope="repo"))
        clock.advance(minutes=30)
        record = await store.store_tokens("user-1", "github", TokenSet(access_token="at-2"))

        assert store.decrypt_access_token(record) == "at-2"
        assert store.decrypt_refresh_token(record) == "rt-1"
        assert record.scope == "repo"
        assert record.updated_at == clock()

    @pytest.mark.asyncio
    async def test_one_row_per_user_and_provider(self, store, session_factory):
        for n in range(3):
            await store.store_tokens("user-1", "github", TokenSet(access_token=f"at-{n}"))

        async with session_factory() as session:
            rows = (await session.execute(select(UserIntegration))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_refreshed_write_stamps_last_refreshed_at(self, store, clock):
        first = await store.store_tokens("user-1", "github", TokenSet(access_token="at-1"))
        assert first.last_refreshed_at is None

        connected_at = first.connected_at
        clock.advance(minutes=5)
        record = await store.store_refreshed_tokens("user-1", "github", TokenSet(access_token="at-2"))
        assert record.last_refreshed_at == clock()
        assert record.connected_at == connected_at
        assert store.decrypt_access_token(record) == "at-2"

    @pytest.mark.asyncio
    async def test_refreshed_write_keeps_refresh_token_when_absent(self, store):
        await store.store_tokens("user-1", "github", TokenSet(access_token="at-1", refresh_token="rt-1", scope="repo"))

        record = await store.store_refreshed_tokens("user-1", "github", TokenSet(access_token="at-2"))

        assert store.decrypt_refresh_token(record) == "rt-1"
        assert record.scope == "repo"

    @pytest.mark.asyncio
    async def test_refreshed_write_never_reactivates(self, store, clock):
        first = await store.store_tokens("user-1", "github", TokenSet(access_token="at-1"))
        await store.deactivate("user-1", "github")
        clock.advance(minutes=5)

        assert await store.store_refreshed_tokens("user-1", "github", TokenSet(access_token="at-2")) is None

        record = await store.read_integration("user-1", "github")
        assert record.is_active is False
        assert record.connected_at == first.connected_at
        assert record.last_refreshed_at is None
        assert store.decrypt_access_token(record) == "at-1"

    @pytest.mark.asyncio
    async def test_refreshed_write_for_unknown_integration(self, store):
        assert await store.store_refreshed_tokens("nobody", "github", TokenSet(access_token="x")) is None

    @pytest.mark.asyncio
    async def test_reconnect_reactivates(self, store, clock):
        await store.store_tokens("user-1", "github", TokenSet(access_token="at-1"))
        await store.deactivate("user-1", "github")
        clock.advance(days=1)

        record = await store.store_tokens("user-1", "github", TokenSet(access_token="at-2"))
        assert record.is_active
        assert record.connected_at == clock()

    @pytest.mark.asyncio
    async def test_group_write_stores_every_member(self, store):
        records = await store.store_tokens_for_providers(
            "user-1", ["jira", "confluence"], TokenSet(access_token="shared", refresh_token="rt")
        )

        assert [r.provider_id for r in records] == ["jira", "confluence"]
        for provider_id in ("jira", "confluence"):
            record = await store.read_integration("user-1", provider_id)
            assert store.decrypt_access_token(record) == "shared"


class TestDeactivateAndReauth:
    @pytest.mark.asyncio
    async def test_deactivate_keeps_the_row(self, store):
        await store.store_tokens("user-1", "github", TokenSet(access_token="at-1"))

        assert await store.deactivate("user-1", "github") is True
        record = await store.read_integration("user-1", "github")
        assert record is not None
        assert record.is_active is False

    @pytest.mark.asyncio
    async def test_deactivate_unknown_returns_false(self, store):
        assert await store.deactivate("user-1", "github") is False

    @pytest.mark.asyncio
    async def test_mark_needs_reauth_keeps_tokens(self, store):
        await store.store_tokens("user-1", "github", TokenSet(access_token="at-1", refresh_token="rt-1"))
        await store.mark_needs_reauth("user-1", "github", "refresh rejected (HTTP 400)")

        record = await store.read_integration("user-1", "github")
        assert record.is_active is True
        assert record.is_connected is False
        assert record.last_error == "refresh rejected (HTTP 400)"
        assert store.decrypt_refresh_token(record) == "rt-1"

    @pytest.mark.asyncio
    async def test_successful_store_clears_reauth_flag(self, store):
        await store.store_tokens("user-1", "github", TokenSet(access_token="at-1"))
        await store.mark_needs_reauth("user-1", "github", "boom")

        record = await store.store_tokens("user-1", "github", TokenSet(access_token="at-2"))
        assert record.is_connected is True
        assert record.last_error is None


class TestReads:
    @pytest.mark.asyncio
    async def test_read_unknown_returns_none(self, store):
        assert await store.read_integration("nobody", "github") is None

    @pytest.mark.asyncio
    async def test_list_is_per_user_and_filters_inactive(self, store):
        await store.store_tokens("user-1", "github", TokenSet(access_token="a"))
        await store.store_tokens("user-1", "jira", TokenSet(access_token="b"))
        await store.store_tokens("user-2", "github", TokenSet(access_token="c"))
        await store.deactivate("user-1", "jira")

        everything = await store.list_integrations("user-1")
        active = await store.list_integrations("user-1", active_only=True)

        assert [r.provider_id for r in everything] == ["github", "jira"]
        assert [r.provider_id for r in active] == ["github"]

    @pytest.mark.asyncio
    async def test_datetimes_come_back_timezone_aware(self, store, clock):
        await store.store_tokens(
            "user-1", "github", TokenSet(access_token="a", expires_at=clock() + timedelta(hours=1))
        )
        record = await store.read_integration("user-1", "github")
        assert record.expires_at.tzinfo is not None
        assert record.connected_at.tzinfo is not None
