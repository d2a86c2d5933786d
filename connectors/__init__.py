"""
Provider integrations for the ingestion engine.

Provides:
  • one ``BaseConnector`` subclass per provider (OAuth, sync, webhooks)
  • the closed ``ProviderRegistry`` of those connectors
  • AES-256-GCM token vault and serialized token refresh
  • webhook signature / token / OIDC verification
"""
