"""
OAuth ``state`` codec — CSRF protection for the authorization redirect.

The opaque state is ``base64url(json payload) + "." + hmac_sha256_hex``.
The payload carries the target user, one or many provider ids, a random
32-byte nonce, the issue time in milliseconds and, for PKCE providers, the
code verifier.  A state older than the freshness window is rejected, which
bounds how long a captured redirect URL stays replayable.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import time
from typing import Callable, List, Optional

from pydantic import ValidationError

from connectors.errors import ConfigurationError, StateValidationError
from connectors.schemas import AuthorizationState

_STATE_TTL = 600  # seconds
_CLOCK_SKEW_MS = 60_000
_NONCE_RE = re.compile(r"^[0-9a-f]{64}$")


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge for *verifier* (RFC 7636)."""
    return _b64encode(hashlib.sha256(verifier.encode("ascii")).digest())


class StateCodec:
    """Builds and validates opaque authorization state strings."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = _STATE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ConfigurationError("OAuth state secret is not configured")
        self._secret = secret.encode("utf-8")
        self._ttl_ms = ttl_seconds * 1000
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _sign(self, raw: bytes) -> str:
        return hmac.new(self._secret, raw, hashlib.sha256).hexdigest()

    # ── Building ────────────────────────────────────────────────────────

    def issue(
        self,
        user_id: str,
        provider_ids: List[str],
        group_id: Optional[str] = None,
        pkce: bool = False,
    ) -> AuthorizationState:
        """Create a fresh state for a new authorization attempt."""
        return AuthorizationState(
            user_id=user_id,
            provider_ids=list(provider_ids),
            group_id=group_id,
            nonce=secrets.token_hex(32),
            issued_at_ms=self._now_ms(),
            code_verifier=secrets.token_urlsafe(48) if pkce else None,
        )

    def encode(self, state: AuthorizationState) -> str:
        raw = json.dumps(state.model_dump(), separators=(",", ":"), sort_keys=True).encode()
        return _b64encode(raw) + "." + self._sign(raw)

    # ── Verification ────────────────────────────────────────────────────

    def decode(self, opaque: str) -> AuthorizationState:
        """
        Verify *opaque* and return its payload.

        Raises ``StateValidationError`` when the state is malformed, its
        signature does not match, it is not self-consistent, or it was
        issued outside the freshness window.
        """
        parts = (opaque or "").split(".")
        if len(parts) != 2:
            raise StateValidationError("bad format")
        try:
            raw = _b64decode(parts[0])
        except (ValueError, TypeError) as exc:
            raise StateValidationError("bad encoding") from exc
        if not hmac.compare_digest(parts[1].encode("utf-8", "replace"), self._sign(raw).encode("ascii")):
            raise StateValidationError("bad signature")

        try:
            state = AuthorizationState.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            raise StateValidationError("bad payload") from exc

        if not _NONCE_RE.match(state.nonce):
            raise StateValidationError("bad nonce")
        if not state.user_id or not state.provider_ids:
            raise StateValidationError("missing target")

        age_ms = self._now_ms() - state.issued_at_ms
        if age_ms > self._ttl_ms:
            raise StateValidationError("state expired")
        if age_ms < -_CLOCK_SKEW_MS:
            raise StateValidationError("state issued in the future")
        return state
