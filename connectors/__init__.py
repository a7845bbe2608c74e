"""
connectors — OAuth token lifecycle for third-party activity providers.

Handles:
  • OAuth2 auth-URL generation (single provider or provider group, PKCE)
  • Callback handling (code → token exchange) with signed, expiring state
  • Per-user token storage, encrypted at rest (AES-256-GCM)
  • Proactive refresh behind a process-wide per-(user, provider) mutex
  • Retry / backoff classification of refresh failures
  • Best-effort revocation on disconnect

Consumers go through ``connectors.service.get_oauth_service()``.
"""
