"""
ProviderRegistry — the resolved, read-only table of configured providers.

Built once at startup from ``Settings``; a provider whose client id/secret
pair is missing is simply left out.  Grouped providers (one OAuth app, one
consent screen) keep distinct provider ids for storage.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from config.settings import Settings
from connectors.providers import GROUPS, PROVIDERS, ProviderSpec
from connectors.schemas import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Immutable lookup of ``provider id -> ProviderConfig``."""

    def __init__(self, configs: Mapping[str, ProviderConfig]) -> None:
        self._configs: Mapping[str, ProviderConfig] = MappingProxyType(dict(configs))

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        """Resolve every known provider against the configured credentials."""
        configs: Dict[str, ProviderConfig] = {}
        for spec in PROVIDERS.values():
            resolved = _resolve(spec, settings)
            if resolved is None:
                logger.warning(
                    "Provider %s skipped — not configured (missing client_id/secret)",
                    spec.id,
                )
                continue
            configs[spec.id] = resolved
            logger.info("Provider registered: %s (%s)", spec.display_name, spec.id)

        logger.info("Initialized %d OAuth provider configurations", len(configs))
        return cls(configs)

    # ── Lookups ─────────────────────────────────────────────────────────

    def get(self, provider_id: str) -> Optional[ProviderConfig]:
        return self._configs.get(provider_id)

    def is_available(self, provider_id: str) -> bool:
        return provider_id in self._configs

    def list_available(self) -> List[str]:
        return list(self._configs.keys())

    def is_group(self, target: str) -> bool:
        return target in GROUPS

    def group_members(self, group_id: str) -> List[ProviderConfig]:
        """Configured members of *group_id*, in table order."""
        return [c for c in self._configs.values() if c.group_id == group_id]

    def list_groups(self) -> List[str]:
        """Groups with at least one configured member."""
        return [g for g in GROUPS if self.group_members(g)]

    def describe(self) -> List[Dict[str, object]]:
        """Return info about every known provider, configured or not."""
        return [
            {
                "provider": spec.id,
                "display_name": spec.display_name,
                "group": spec.group_id,
                "configured": spec.id in self._configs,
            }
            for spec in PROVIDERS.values()
        ]


def _resolve(spec: ProviderSpec, settings: Settings) -> Optional[ProviderConfig]:
    client_id = client_secret = ""
    for prefix in spec.env_prefixes:
        cid, secret, _ = settings.credentials_for(prefix)
        if cid and secret:
            client_id, client_secret = cid, secret
            break
    if not (client_id and client_secret):
        return None

    own_redirect = settings.credentials_for(spec.id)[2]
    base = settings.oauth_redirect_base.rstrip("/") + settings.oauth_callback_path
    group_redirect = None
    if spec.group_id:
        group_redirect = (
            settings.credentials_for(GROUPS[spec.group_id].env_prefix)[2]
            or f"{base}/{spec.group_id}"
        )

    return ProviderConfig(
        id=spec.id,
        display_name=spec.display_name,
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=own_redirect or f"{base}/{spec.id}",
        authorization_url=spec.authorization_url,
        token_url=spec.token_url,
        scope=spec.scope,
        group_id=spec.group_id,
        group_redirect_uri=group_redirect,
        supports_pkce=spec.supports_pkce,
        revocation_url=spec.revocation_url,
        revocation_method=spec.revocation_method,
        extra_auth_params=dict(spec.extra_auth_params),
    )
