"""Cloud provider backends."""

from typing import Optional

from config import ProfileConfig
from providers.azcli import AzCliProvider
from providers.base import Provider, ProviderError
from providers.local import LocalProvider
from providers.types import RESOURCE_TYPES, ResourceType, get_resource_type

__all__ = [
    'AzCliProvider',
    'LocalProvider',
    'Provider',
    'ProviderError',
    'RESOURCE_TYPES',
    'ResourceType',
    'get_provider',
    'get_resource_type',
]


def get_provider(config: ProfileConfig, timeout: Optional[int] = None) -> Provider:
    """Instantiate the provider backend a profile selects.

    timeout, when given, replaces the profile's per-command timeout.
    """
    if config.provider == 'local':
        return LocalProvider(config)
    return AzCliProvider(config, timeout=timeout)
