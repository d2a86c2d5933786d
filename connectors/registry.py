"""
ProviderRegistry — the closed catalog of provider connectors.

Built once at startup and read-only afterwards.  The provider set is
curated: adding a provider means adding it to ``_ALL_CONNECTORS``.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from connectors.base import BaseConnector
from connectors.errors import UnknownProvider
from connectors.github import GitHubConnector
from connectors.gmail import GmailConnector
from connectors.google_calendar import GoogleCalendarConnector
from connectors.google_drive import GoogleDriveConnector
from connectors.jira import JiraConnector
from connectors.slack import SlackConnector
from connectors.zoho_cliq import ZohoCliqConnector
from connectors.zoho_mail import ZohoMailConnector
from utils.schemas import ProviderMetadata

logger = logging.getLogger(__name__)


def default_connectors() -> List[BaseConnector]:
    """All known connectors; add new ones here."""
    return [
        GitHubConnector(),
        JiraConnector(),
        GoogleDriveConnector(),
        GoogleCalendarConnector(),
        GmailConnector(),
        ZohoCliqConnector(),
        SlackConnector(),
        ZohoMailConnector(),
    ]


class ProviderRegistry:
    """Immutable name → (connector, metadata) lookup."""

    def __init__(self, connectors: Optional[Iterable[BaseConnector]] = None) -> None:
        entries: Dict[str, Tuple[BaseConnector, ProviderMetadata]] = {}
        for conn in connectors if connectors is not None else default_connectors():
            name = conn.provider_name
            if name in entries:
                raise ValueError(f"duplicate provider registration: {name}")
            entries[name] = (conn, conn.metadata())
            if conn.is_configured():
                logger.info("Connector registered: %s (%s)", conn.display_name, name)
            else:
                logger.warning("Connector %s registered without OAuth client credentials", name)
        self._entries: Mapping[str, Tuple[BaseConnector, ProviderMetadata]] = MappingProxyType(entries)

    def get(self, name: str) -> BaseConnector:
        """
        Return the connector for ``name``.

        Raises
        ------
        UnknownProvider
            If ``name`` is not in the catalog.
        """
        try:
            return self._entries[name][0]
        except KeyError:
            raise UnknownProvider(name) from None

    def get_metadata(self, name: str) -> ProviderMetadata:
        try:
            return self._entries[name][1]
        except KeyError:
            raise UnknownProvider(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def names(self) -> List[str]:
        return sorted(self._entries)

    def list_metadata(self) -> List[ProviderMetadata]:
        """Provider metadata sorted by name, for deterministic API output."""
        return [self._entries[name][1] for name in sorted(self._entries)]

    def list_configured(self) -> List[str]:
        return [name for name in sorted(self._entries) if self._entries[name][0].is_configured()]
