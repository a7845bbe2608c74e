"""
Static table of every OAuth provider the aggregator knows about.

Provider-specific behaviour (PKCE, consent prompts, offline access,
revocation style) is data here rather than branches in the flow code, so a
new provider only needs a new ``ProviderSpec`` entry.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class RevocationMethod(str, Enum):
    NONE = "none"
    FORM_TOKEN = "form_token"      # RFC 7009 style: POST token=<access token>
    GITHUB_APP = "github_app"      # DELETE /applications/{client_id}/token
    BEARER = "bearer"              # POST with Authorization: Bearer <token>


class ProviderSpec(BaseModel):
    """Compile-time description of a provider; credentials come from settings."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    authorization_url: str
    token_url: str
    scope: str
    env_prefixes: Tuple[str, ...]   # checked in order for client id/secret
    group_id: Optional[str] = None
    supports_pkce: bool = False
    revocation_url: Optional[str] = None
    revocation_method: RevocationMethod = RevocationMethod.NONE
    extra_auth_params: Dict[str, str] = Field(default_factory=dict)


class GroupSpec(BaseModel):
    """Providers that share one OAuth app and one consent screen."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    env_prefix: str


_ATLASSIAN_AUTH = "https://auth.atlassian.com/authorize"
_ATLASSIAN_TOKEN = "https://auth.atlassian.com/oauth/token"
_MS_AUTH = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
_MS_TOKEN = "https://login.microsoftonline.com/common/oauth2/v2.0/token"

_ATLASSIAN_EXTRAS = {"audience": "api.atlassian.com", "prompt": "consent"}
_MS_EXTRAS = {"response_mode": "query", "prompt": "consent"}


GROUPS: Dict[str, GroupSpec] = {
    g.id: g
    for g in (
        GroupSpec(id="atlassian", display_name="Atlassian", env_prefix="atlassian"),
        GroupSpec(id="microsoft", display_name="Microsoft 365", env_prefix="microsoft"),
        GroupSpec(id="google", display_name="Google", env_prefix="google"),
    )
}


PROVIDERS: Dict[str, ProviderSpec] = {
    p.id: p
    for p in (
        ProviderSpec(
            id="github",
            display_name="GitHub",
            authorization_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",
            scope="repo read:user",
            env_prefixes=("github",),
            revocation_url="https://api.github.com/applications/{client_id}/token",
            revocation_method=RevocationMethod.GITHUB_APP,
        ),
        ProviderSpec(
            id="jira",
            display_name="Jira",
            authorization_url=_ATLASSIAN_AUTH,
            token_url=_ATLASSIAN_TOKEN,
            scope="read:jira-work read:jira-user offline_access",
            env_prefixes=("jira", "atlassian"),
            group_id="atlassian",
            extra_auth_params=_ATLASSIAN_EXTRAS,
        ),
        ProviderSpec(
            id="confluence",
            display_name="Confluence",
            authorization_url=_ATLASSIAN_AUTH,
            token_url=_ATLASSIAN_TOKEN,
            scope="read:confluence-content.all read:confluence-user offline_access",
            env_prefixes=("confluence", "atlassian"),
            group_id="atlassian",
            extra_auth_params=_ATLASSIAN_EXTRAS,
        ),
        ProviderSpec(
            id="figma",
            display_name="Figma",
            authorization_url="https://www.figma.com/oauth",
            token_url="https://api.figma.com/v1/oauth/token",
            scope="file_read",
            env_prefixes=("figma",),
        ),
        ProviderSpec(
            id="outlook",
            display_name="Outlook",
            authorization_url=_MS_AUTH,
            token_url=_MS_TOKEN,
            scope="User.Read Mail.Read Calendars.Read offline_access",
            env_prefixes=("outlook", "microsoft"),
            group_id="microsoft",
            supports_pkce=True,
            extra_auth_params=_MS_EXTRAS,
        ),
        ProviderSpec(
            id="teams",
            display_name="Microsoft Teams",
            authorization_url=_MS_AUTH,
            token_url=_MS_TOKEN,
            scope=(
                "User.Read Team.ReadBasic.All Channel.ReadBasic.All Chat.Read "
                "ChannelMessage.Read.All offline_access"
            ),
            env_prefixes=("teams", "microsoft", "outlook"),
            group_id="microsoft",
            supports_pkce=True,
            extra_auth_params=_MS_EXTRAS,
        ),
        ProviderSpec(
            id="onedrive",
            display_name="OneDrive",
            authorization_url=_MS_AUTH,
            token_url=_MS_TOKEN,
            scope="User.Read Files.Read.All offline_access",
            env_prefixes=("onedrive", "microsoft"),
            group_id="microsoft",
            supports_pkce=True,
            extra_auth_params=_MS_EXTRAS,
        ),
        ProviderSpec(
            id="onenote",
            display_name="OneNote",
            authorization_url=_MS_AUTH,
            token_url=_MS_TOKEN,
            scope="User.Read Notes.Read.All offline_access",
            env_prefixes=("onenote", "microsoft"),
            group_id="microsoft",
            supports_pkce=True,
            extra_auth_params=_MS_EXTRAS,
        ),
        ProviderSpec(
            id="slack",
            display_name="Slack",
            authorization_url="https://slack.com/oauth/v2/authorize",
            token_url="https://slack.com/api/oauth.v2.access",
            scope="channels:read users:read",
            env_prefixes=("slack",),
            revocation_url="https://slack.com/api/auth.revoke",
            revocation_method=RevocationMethod.BEARER,
            extra_auth_params={"user_scope": "channels:history channels:read users:read"},
        ),
        ProviderSpec(
            id="google_workspace",
            display_name="Google Workspace",
            authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",
            scope=(
                "https://www.googleapis.com/auth/calendar.readonly "
                "https://www.googleapis.com/auth/drive.readonly "
                "https://www.googleapis.com/auth/userinfo.email"
            ),
            env_prefixes=("google",),
            group_id="google",
            supports_pkce=True,
            revocation_url="https://oauth2.googleapis.com/revoke",
            revocation_method=RevocationMethod.FORM_TOKEN,
            extra_auth_params={"access_type": "offline", "prompt": "consent"},
        ),
    )
}

