"""
Issuer Provider Registry.

Holds configuration for every issuer instance and builds one cached
IssuerGateway per instance. Performs no network I/O itself.
"""

import logging
from typing import Dict, Iterable, List, Optional

from config import config
from models.issuer import IssuerProvider
from .issuer_gateway import IssuerGateway

logger = logging.getLogger(__name__)


class IssuerRegistry:
    """
    Registry of issuer instances for multi-issuer routing.

    Providers are loaded once at construction and are read-only afterwards.
    """

    def __init__(
        self,
        providers: Optional[Iterable[IssuerProvider]] = None,
        default_issuer_id: Optional[str] = None,
        gateway_factory=IssuerGateway
    ):
        """
        Initialize the registry.

        Args:
            providers: Issuer providers (loaded from config if omitted)
            default_issuer_id: Instance used for tokens with no routing hint
            gateway_factory: Callable building a gateway from a provider
        """
        if providers is None:
            providers = [IssuerProvider.from_config(p) for p in config.issuer.providers]

        self.default_issuer_id = default_issuer_id or config.issuer.default_issuer_id
        self._providers: Dict[str, IssuerProvider] = {}
        self._gateways: Dict[str, IssuerGateway] = {}
        self._gateway_factory = gateway_factory

        for provider in providers:
            self._providers[provider.issuer_id] = provider

        logger.info(
            f"Issuer registry initialized with {len(self._providers)} provider(s): "
            f"{', '.join(self._providers.keys())} (default: {self.default_issuer_id})"
        )

    def get_provider(self, issuer_id: str) -> Optional[IssuerProvider]:
        """Get an issuer provider by id."""
        return self._providers.get(issuer_id)

    def get_default_provider(self) -> Optional[IssuerProvider]:
        """Provider used for tokens without a routing hint."""
        return self._providers.get(self.default_issuer_id)

    def list_providers(self) -> List[IssuerProvider]:
        """List all registered providers."""
        return list(self._providers.values())

    def has_provider(self, issuer_id: str) -> bool:
        """Check if an issuer id is registered."""
        return issuer_id in self._providers

    @property
    def provider_count(self) -> int:
        return len(self._providers)

    def get_gateway(self, issuer_id: str) -> Optional[IssuerGateway]:
        """
        Get the cached gateway for an issuer instance.

        Args:
            issuer_id: Issuer instance id

        Returns:
            IssuerGateway, or None if the id is not registered
        """
        gateway = self._gateways.get(issuer_id)
        if gateway is not None:
            return gateway

        provider = self._providers.get(issuer_id)
        if provider is None:
            return None

        gateway = self._gateway_factory(provider)
        self._gateways[issuer_id] = gateway
        return gateway

    async def close(self) -> None:
        """Close every gateway's HTTP session."""
        for gateway in self._gateways.values():
            await gateway.close()
        self._gateways.clear()
