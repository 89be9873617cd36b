"""
Mail drivers for the supported providers.
"""

import logging
from types import MappingProxyType
from typing import Any, Mapping, Type

from ..errors import UnsupportedProviderError
from .base import DriverConfig, MailDriver, ProviderType
from .gmail import GmailDriver
from .microsoft import MicrosoftDriver

logger = logging.getLogger(__name__)

# Read-only so the provider table cannot be changed at runtime
SUPPORTED_PROVIDERS: Mapping[str, Type[MailDriver]] = MappingProxyType({
    ProviderType.GOOGLE.value: GmailDriver,
    ProviderType.MICROSOFT.value: MicrosoftDriver,
})


def create_driver(provider: str, config: DriverConfig, **kwargs: Any) -> MailDriver:
    """
    Factory function to create the driver for a provider.

    Args:
        provider: Provider id ("google" or "microsoft")
        config: Connection, settings and store for the driver
        **kwargs: Passed through to the driver constructor

    Returns:
        MailDriver instance

    Raises:
        UnsupportedProviderError: If the provider id is not supported
    """
    driver_class = SUPPORTED_PROVIDERS.get(provider)
    if driver_class is None:
        logger.error(f"Unsupported mail provider requested: {provider}")
        raise UnsupportedProviderError(provider)
    return driver_class(config, **kwargs)


__all__ = [
    'SUPPORTED_PROVIDERS',
    'create_driver',
    'DriverConfig',
    'MailDriver',
    'GmailDriver',
    'MicrosoftDriver',
]
