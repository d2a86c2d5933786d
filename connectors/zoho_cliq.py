"""
ZohoCliqConnector — webhook-first messaging connector for Zoho Cliq.

Cliq has no activity feed suited to polling, so ``sync`` is a no-op that keeps
the cursor stable; all signals arrive through bearer-authenticated webhooks.
"""

from __future__ import annotations

import logging
from typing import Any, List

from connectors.base import TokenSet, expires_at_from
from connectors.zoho import ZohoOAuthConnector
from core.normalizer import parse_timestamp, zoho_cliq_kind
from utils.schemas import AuthType, Connection, SignalDraft, SyncResult, WebhookEnvelope

logger = logging.getLogger(__name__)


class ZohoCliqConnector(ZohoOAuthConnector):
    """Zoho Cliq: OAuth for identity, custom webhooks for activity."""

    @property
    def provider_name(self) -> str:
        return "zoho-cliq"

    @property
    def display_name(self) -> str:
        return "Zoho Cliq"

    @property
    def scopes(self) -> List[str]:
        return ["ZohoCliq.Webhooks.CREATE", "ZohoCliq.Channels.READ", "ZohoCliq.Messages.READ"]

    @property
    def auth_type(self) -> AuthType:
        return AuthType.CUSTOM_WEBHOOK

    @property
    def supports_webhooks(self) -> bool:
        return True

    async def exchange_code(self, code: str) -> TokenSet:
        data = await self._exchange(code)
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            refresh_token_rotated=bool(data.get("refresh_token")),
            expires_at=expires_at_from(data.get("expires_in")),
            scopes=data.get("scope", "").split(),
            # Cliq's token response does not identify the user; api_domain is per org
            account_id=data.get("api_domain", "zoho-cliq"),
            account_label=data.get("api_domain", ""),
            provider_meta={"api_domain": data.get("api_domain")},
        )

    async def sync(self, connection: Connection, access_token: str, cursor: Any = None) -> SyncResult:
        return SyncResult(signals=[], next_cursor=cursor, has_more=False)

    async def handle_webhook(self, envelope: WebhookEnvelope) -> list:
        payload = envelope.payload or {}
        kind = zoho_cliq_kind(payload.get("event_type", ""))
        message = payload.get("message") or {}
        if kind is None or not message.get("id"):
            logger.debug("Ignoring Zoho Cliq event %s", payload.get("event_type"))
            return []
        occurred = parse_timestamp(message.get("time") or payload.get("timestamp")) or envelope.received_at
        sender = message.get("sender") or {}
        return [
            SignalDraft(
                kind=kind.value,
                external_id=str(message["id"]),
                occurred_at=occurred,
                raw=payload,
                normalized={
                    "chat_id": message.get("chat_id") or payload.get("chat_id"),
                    "text": message.get("text"),
                    "sender": sender.get("name") or sender.get("id"),
                },
            )
        ]
