"""Name-to-factory registry of storage providers.

Adding a backend only requires implementing :class:`StorageProvider` and
registering a factory under the name tasks refer to.
"""

import logging
import threading
from typing import Callable, Dict, List

from ..auth.vault import Credential
from ..exceptions import UnsupportedProviderError
from .base import StorageProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Credential], StorageProvider]


class ProviderRegistry:
    """Builds storage providers by name."""

    def __init__(self):
        self._factories: Dict[str, ProviderFactory] = {}
        self._lock = threading.Lock()

    def register(self, name: str, factory: ProviderFactory):
        """Register (or replace) the factory for ``name``."""
        with self._lock:
            self._factories[name] = factory
        logger.debug(f"Registered storage provider {name}")

    def unregister(self, name: str):
        with self._lock:
            self._factories.pop(name, None)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._factories)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._factories

    def create(self, name: str, credential: Credential) -> StorageProvider:
        """Instantiate the provider registered under ``name``.

        Raises:
            UnsupportedProviderError: If nothing is registered under ``name``
        """
        with self._lock:
            factory = self._factories.get(name)
        if factory is None:
            raise UnsupportedProviderError(name)
        return factory(credential)


def default_registry() -> ProviderRegistry:
    """Registry with every provider shipped in this package."""
    # Imported here so the SDKs load only when a default registry is built
    from .aws_s3 import S3Provider
    from .azure_blob import AzureBlobProvider
    from .google_drive import GoogleDriveProvider
    from .local import LocalProvider
    from .onedrive import OneDriveProvider

    registry = ProviderRegistry()
    registry.register("local", LocalProvider)
    registry.register("s3", S3Provider)
    registry.register("azure_blob", AzureBlobProvider)
    registry.register("onedrive", OneDriveProvider)
    registry.register("gdrive", GoogleDriveProvider)
    return registry
