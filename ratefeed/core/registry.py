"""
Provider registry for client lookup.

Maps provider codes to their client classes so callers pick a protocol
adapter by code instead of branching on provider names.
"""

import logging
from typing import Dict, List, Optional, Type, Union

from .base_client import ProviderClient
from .schema import ProviderCode

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Registry of provider client classes.

    Usage:
        ProviderRegistry.register(ProviderCode.LEX, LexClient)

        client = ProviderRegistry.get_client('lex', session_store=store)
    """

    _instance: Optional['ProviderRegistry'] = None
    _clients: Dict[ProviderCode, Type[ProviderClient]] = {}

    def __new__(cls):
        """Singleton pattern - only one registry instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._clients = {}
        return cls._instance

    @classmethod
    def register(cls, provider: ProviderCode, client_class: Type[ProviderClient]) -> None:
        if not issubclass(client_class, ProviderClient):
            raise TypeError(f"{client_class} must be a subclass of ProviderClient")
        cls._clients[provider] = client_class
        logger.debug(f"Registered client for {provider.value}: {client_class.__name__}")

    @classmethod
    def _resolve(cls, provider: Union[ProviderCode, str]) -> Optional[ProviderCode]:
        if isinstance(provider, ProviderCode):
            return provider
        provider_lower = provider.lower().replace('-', '_')
        for p in ProviderCode:
            if p.value == provider_lower:
                return p
        logger.warning(f"Unknown provider: {provider}")
        return None

    @classmethod
    def get_client_class(cls, provider: Union[ProviderCode, str]) -> Optional[Type[ProviderClient]]:
        """
        Get client class for a provider.

        Args:
            provider: Provider enum or string name

        Returns:
            Client class or None if not registered
        """
        code = cls._resolve(provider)
        if code is None:
            return None
        return cls._clients.get(code)

    @classmethod
    def get_client(cls, provider: Union[ProviderCode, str], **kwargs) -> ProviderClient:
        """
        Instantiate the client for a provider.

        Raises:
            ValueError: no client registered for ``provider``
        """
        client_class = cls.get_client_class(provider)
        if client_class is None:
            raise ValueError(f"No client registered for provider: {provider}")
        return client_class(**kwargs)

    @classmethod
    def list_providers(cls) -> List[ProviderCode]:
        return list(cls._clients.keys())

    @classmethod
    def list_provider_names(cls) -> List[str]:
        return [p.value for p in cls._clients.keys()]

    @classmethod
    def is_registered(cls, provider: Union[ProviderCode, str]) -> bool:
        return cls.get_client_class(provider) is not None

    @classmethod
    def clear(cls) -> None:
        """Clear all registered clients (mainly for testing)."""
        cls._clients.clear()


def register_provider(provider: ProviderCode):
    """
    Decorator to register a client class.

    Usage:
        @register_provider(ProviderCode.LEX)
        class LexClient(ProviderClient):
            ...
    """
    def decorator(cls: Type[ProviderClient]) -> Type[ProviderClient]:
        ProviderRegistry.register(provider, cls)
        return cls
    return decorator


def get_client(provider: Union[ProviderCode, str], **kwargs) -> ProviderClient:
    """Get client instance by provider."""
    return ProviderRegistry.get_client(provider, **kwargs)


def list_providers() -> List[str]:
    """List all registered provider names."""
    return ProviderRegistry.list_provider_names()
