"""Cloud providers.

Provider SDKs are imported lazily, through each provider config's
create_provider().
"""

from tsunami.providers.base import RUNNING, TERMINAL_STATES, ProviderClient, ProviderConfig

__all__ = [
    "RUNNING",
    "TERMINAL_STATES",
    "ProviderClient",
    "ProviderConfig",
]
