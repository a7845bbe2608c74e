"""
Tests for the authorization flow: consent URL construction, state checks on
the callback, single-exchange group connects and PKCE.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest

from connectors.errors import ProviderUnavailableError
from connectors.schemas import AuthorizationStatus, CallbackError
from connectors.service import build_oauth_service
from connectors.state import pkce_challenge
from fakes import ATLASSIAN_TOKEN_URL, GITHUB_TOKEN_URL, GOOGLE_TOKEN_URL, form_of, json_response, raising

CALLBACK_BASE = "https://app.example.com/api/v1/mcp/callback"


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


class TestBeginAuthorization:
    @pytest.mark.asyncio
    async def test_single_provider_url(self, service):
        request = service.begin_authorization("user-1", "github")

        assert request.url.startswith("https://github.com/login/oauth/authorize?")
        params = _query(request.url)
        assert params["client_id"] == "gh-client"
        assert params["redirect_uri"] == f"{CALLBACK_BASE}/github"
        assert params["response_type"] == "code"
        assert params["scope"] == "repo read:user"
        assert params["state"] == request.state
        assert "code_challenge" not in params
        assert request.provider_ids == ["github"]
        assert request.group_id is None
        assert request.status is AuthorizationStatus.INITIATED

    @pytest.mark.asyncio
    async def test_every_request_gets_a_distinct_state(self, service):
        a = service.begin_authorization("user-1", "github")
        b = service.begin_authorization("user-1", "github")
        assert a.state != b.state

    @pytest.mark.asyncio
    async def test_pkce_provider_sends_s256_challenge_and_extras(self, service):
        params = _query(service.begin_authorization("user-1", "google_workspace").url)

        assert params["code_challenge_method"] == "S256"
        assert len(params["code_challenge"]) == 43
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"

    @pytest.mark.asyncio
    async def test_group_merges_member_scopes(self, service):
        request = service.begin_authorization("user-1", "atlassian")
        params = _query(request.url)

        assert request.provider_ids == ["jira", "confluence"]
        assert request.group_id == "atlassian"
        assert params["redirect_uri"] == f"{CALLBACK_BASE}/atlassian"
        assert params["audience"] == "api.atlassian.com"
        scopes = params["scope"].split()
        assert scopes.count("offline_access") == 1
        assert "read:jira-work" in scopes
        assert "read:confluence-content.all" in scopes

    @pytest.mark.parametrize("target", ["slack", "microsoft", "myspace"])
    @pytest.mark.asyncio
    async def test_unconfigured_target_raises(self, service, target):
        with pytest.raises(ProviderUnavailableError):
            service.begin_authorization("user-1", target)


class TestHandleCallback:
    @pytest.mark.asyncio
    async def test_single_provider_connects(self, service, provider, clock):
        provider.queue(
            GITHUB_TOKEN_URL,
            json_response(200, {"access_token": "gho_abc", "scope": "repo,read:user", "token_type": "bearer"}),
        )
        request = service.begin_authorization("user-1", "github")

        result = await service.handle_callback("the-code", request.state, "github")

        assert result.success is True
        assert result.status is AuthorizationStatus.CONNECTED
        assert result.provider_ids == ["github"]
        assert result.user_id == "user-1"

        form = form_of(provider.calls_to(GITHUB_TOKEN_URL)[0])
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "the-code"
        assert form["redirect_uri"] == f"{CALLBACK_BASE}/github"
        assert "code_verifier" not in form

        record = await service.store.read_integration("user-1", "github")
        assert service.store.decrypt_access_token(record) == "gho_abc"
        assert record.expires_at is None
        assert record.scope == "repo,read:user"

    @pytest.mark.asyncio
    async def test_group_exchanges_once_and_stores_every_member(self, service, provider, clock):
        provider.queue(
            ATLASSIAN_TOKEN_URL,
            json_response(200, {"access_token": "atl-at", "refresh_token": "atl-rt", "expires_in": 3600}),
        )
        request = service.begin_authorization("user-1", "atlassian")

        result = await service.handle_callback("code", request.state, "atlassian")

        assert result.success
        assert result.provider_ids == ["jira", "confluence"]
        calls = provider.calls_to(ATLASSIAN_TOKEN_URL)
        assert len(calls) == 1
        assert form_of(calls[0])["redirect_uri"] == f"{CALLBACK_BASE}/atlassian"

        for provider_id in ("jira", "confluence"):
            record = await service.store.read_integration("user-1", provider_id)
            assert service.store.decrypt_access_token(record) == "atl-at"
            assert service.store.decrypt_refresh_token(record) == "atl-rt"
            assert record.expires_at == clock() + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_failed_group_exchange_stores_nothing(self, service, provider):
        provider.queue(ATLASSIAN_TOKEN_URL, json_response(400, {"error": "invalid_grant"}))
        request = service.begin_authorization("user-1", "atlassian")

        result = await service.handle_callback("code", request.state)

        assert result.success is False
        assert result.status is AuthorizationStatus.REJECTED
        assert result.error is CallbackError.EXCHANGE_FAILED
        assert await service.store.list_integrations("user-1") == []

    @pytest.mark.asyncio
    async def test_pkce_verifier_is_sent_on_exchange(self, service, provider):
        provider.queue(
            GOOGLE_TOKEN_URL,
            json_response(200, {"access_token": "ya29", "refresh_token": "1//rt", "expires_in": 3599}),
        )
        request = service.begin_authorization("user-1", "google_workspace")
        challenge = _query(request.url)["code_challenge"]

        result = await service.handle_callback("code", request.state, "google_workspace")

        assert result.success
        verifier = form_of(provider.calls_to(GOOGLE_TOKEN_URL)[0])["code_verifier"]
        assert pkce_challenge(verifier) == challenge

    @pytest.mark.asyncio
    async def test_forged_state_is_rejected_without_exchange(self, service, provider):
        result = await service.handle_callback("code", "forged.state")

        assert result.error is CallbackError.INVALID_STATE
        assert result.user_id is None
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_expired_state_is_rejected(self, service, provider, clock):
        request = service.begin_authorization("user-1", "github")
        clock.advance(minutes=11)

        result = await service.handle_callback("code", request.state, "github")

        assert result.error is CallbackError.INVALID_STATE
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_state_within_window_is_accepted(self, service, provider, clock):
        provider.queue(GITHUB_TOKEN_URL, json_response(200, {"access_token": "gho_abc"}))
        request = service.begin_authorization("user-1", "github")
        clock.advance(minutes=9)

        result = await service.handle_callback("code", request.state, "github")
        assert result.success

    @pytest.mark.asyncio
    async def test_state_for_another_target_is_a_mismatch(self, service, provider):
        request = service.begin_authorization("user-1", "github")

        result = await service.handle_callback("code", request.state, "jira")

        assert result.error is CallbackError.STATE_MISMATCH
        assert result.user_id == "user-1"
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_provider_removed_after_redirect(self, service, settings, session_factory, provider, clock):
        request = service.begin_authorization("user-1", "github")
        trimmed = settings.model_copy(update={"github_client_id": ""})
        restarted = build_oauth_service(trimmed, session_factory, transport=provider.transport, clock=clock)

        result = await restarted.handle_callback("code", request.state)

        assert result.error is CallbackError.PROVIDER_UNAVAILABLE
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_error_body_with_200_fails_exchange(self, service, provider):
        provider.queue(GITHUB_TOKEN_URL, json_response(200, {"error": "bad_verification_code"}))
        request = service.begin_authorization("user-1", "github")

        result = await service.handle_callback("code", request.state)

        assert result.error is CallbackError.EXCHANGE_FAILED
        assert await service.store.read_integration("user-1", "github") is None

    @pytest.mark.asyncio
    async def test_non_object_body_fails_exchange(self, service, provider):
        provider.queue(GITHUB_TOKEN_URL, json_response(200, ["unexpected"]))
        request = service.begin_authorization("user-1", "github")

        result = await service.handle_callback("code", request.state, "github")

        assert result.success is False
        assert result.error is CallbackError.EXCHANGE_FAILED
        assert await service.store.read_integration("user-1", "github") is None

    @pytest.mark.asyncio
    async def test_non_ascii_signature_is_rejected(self, service, provider):
        request = service.begin_authorization("user-1", "github")
        payload = request.state.split(".")[0]

        result = await service.handle_callback("code", f"{payload}.é", "github")

        assert result.success is False
        assert result.error is CallbackError.INVALID_STATE
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_network_failure_fails_exchange(self, service, provider):
        provider.queue(GITHUB_TOKEN_URL, raising())
        request = service.begin_authorization("user-1", "github")

        result = await service.handle_callback("code", request.state)
        assert result.error is CallbackError.EXCHANGE_FAILED

    @pytest.mark.asyncio
    async def test_storage_failure_is_reported(self, service, provider):
        provider.queue(GITHUB_TOKEN_URL, json_response(200, {"access_token": "gho_abc"}))
        request = service.begin_authorization("user-1", "github")

        with patch.object(
            service.store,
            "store_tokens_for_providers",
            AsyncMock(side_effect=RuntimeError("db down")),
        ):
            result = await service.handle_callback("code", request.state)

        assert result.success is False
        assert result.error is CallbackError.EXCHANGE_FAILED
