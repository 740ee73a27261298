"""Connector interface for external sources (code hosts, video, social, mail)."""

import logging
from abc import ABC, abstractmethod

from ..models import ConnectorSyncResult

logger = logging.getLogger(__name__)


class ConnectorBase(ABC):
    """Fetches normalized documents for one provider."""

    provider: str = ""

    @abstractmethod
    async def sync(self, owner_id: str, connection_id: str, cursor: str | None = None) -> ConnectorSyncResult:
        """Return the documents fetched for a connection plus fetch counts."""


class ConnectorRegistry:
    """Connectors by provider name."""

    def __init__(self, connectors: list[ConnectorBase] | None = None):
        self._connectors: dict[str, ConnectorBase] = {}
        for connector in connectors or []:
            self.register(connector)

    def register(self, connector: ConnectorBase) -> None:
        if not connector.provider:
            raise ValueError(f"{type(connector).__name__} has no provider name")
        self._connectors[connector.provider] = connector
        logger.debug(f"Registered connector {connector.provider}")

    def get(self, provider: str) -> ConnectorBase:
        try:
            return self._connectors[provider]
        except KeyError:
            raise ValueError(f"No connector registered for provider: {provider}") from None

    def providers(self) -> list[str]:
        return sorted(self._connectors)
