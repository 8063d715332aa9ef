"""Engine context wiring settings, vault, task store, providers and scheduler."""

import logging
from typing import Callable, Optional

from .auth.vault import CredentialVault
from .config.settings import EngineSettings
from .destinations.registry import ProviderRegistry, default_registry
from .exceptions import BackupError
from .tasks.manager import TaskManager
from .tasks.scheduler import TaskScheduler
from .tasks.storage import TaskStore

logger = logging.getLogger(__name__)


class EngineContext:
    """Everything a running engine needs, built once per process.

    Usage::

        with EngineContext(master_password, settings) as ctx:
            ctx.manager.create_task(task)
    """

    def __init__(
        self,
        master_password: str,
        settings: Optional[EngineSettings] = None,
        registry: Optional[ProviderRegistry] = None,
        observer_factory: Optional[Callable] = None,
    ):
        """Initialize engine context.

        Args:
            master_password: Passphrase unlocking the credential vault
            settings: Engine settings (defaults when omitted)
            registry: Provider registry (the shipped providers when omitted)
            observer_factory: Filesystem observer factory for sync tasks
        """
        self.settings = settings or EngineSettings()
        self._master_password = master_password
        self._registry = registry
        self._observer_factory = observer_factory
        self._vault: Optional[CredentialVault] = None
        self._store: Optional[TaskStore] = None
        self._manager: Optional[TaskManager] = None
        self._scheduler: Optional[TaskScheduler] = None

    @property
    def initialized(self) -> bool:
        return self._manager is not None

    def initialize(self) -> "EngineContext":
        """Unlock the vault and build the engine components.

        Raises:
            VaultLockedError: If the master password is empty
        """
        if self.initialized:
            return self

        self._vault = CredentialVault(
            self._master_password,
            vault_file=self.settings.resolved_vault_file,
            iterations=self.settings.kdf_iterations,
        )
        self._store = TaskStore(self.settings.task_file)
        if self._registry is None:
            self._registry = default_registry()
        self._manager = TaskManager(
            self._store,
            self._vault,
            self._registry,
            self.settings,
            observer_factory=self._observer_factory,
        )
        self._scheduler = TaskScheduler(self._manager, self.settings)
        logger.debug(f"Engine initialized (tasks: {self._store.task_file}, vault: {self._vault.vault_file})")
        return self

    def shutdown(self, wait: bool = True):
        """Cancel schedules, stop syncs and release the worker pool."""
        if not self.initialized:
            return
        self._scheduler.shutdown()
        self._manager.shutdown(wait=wait)
        self._manager = None
        self._scheduler = None
        logger.debug("Engine shut down")

    def _require(self, component):
        if component is None:
            raise BackupError("engine context is not initialized")
        return component

    @property
    def vault(self) -> CredentialVault:
        return self._require(self._vault)

    @property
    def store(self) -> TaskStore:
        return self._require(self._store)

    @property
    def registry(self) -> ProviderRegistry:
        return self._require(self._registry)

    @property
    def manager(self) -> TaskManager:
        return self._require(self._manager)

    @property
    def scheduler(self) -> TaskScheduler:
        return self._require(self._scheduler)

    def __enter__(self) -> "EngineContext":
        return self.initialize()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False
