"""Composition root: wires the backend, cache, monitor and factory together.

Usage:
    ```python
    async with RhelVmExtension() as extension:
        await extension.factory.create({"macadam.factory.machine.name": "rhel"})
    ```

activate() initializes the image cache and macadam; the reconciliation loop
starts once macadam reports ready. deactivate() stops the loop and waits for
it, so no poll outlives the extension.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Self

from rhel_vms._logging import get_logger
from rhel_vms.host import (
    EnvironmentAuthenticationProvider,
    InMemoryConfigurationStore,
    InMemoryContext,
    InMemoryProvider,
)
from rhel_vms.image_cache import ImageCache
from rhel_vms.machine_monitor import MachineMonitor
from rhel_vms.macadam import Macadam
from rhel_vms.macadam_init import MacadamInitializer
from rhel_vms.platform_utils import HostOS, detect_host_os
from rhel_vms.settings import Settings
from rhel_vms.system_probes import CapabilityProbe
from rhel_vms.vm_factory import VmFactory

if TYPE_CHECKING:
    from rhel_vms.host import AuthenticationProvider, ConfigurationStore, ContextSink, Provider

logger = get_logger(__name__)


class RhelVmExtension:
    """Owns one instance of every component; the host boundary is injectable."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        provider: Provider | None = None,
        config_store: ConfigurationStore | None = None,
        context: ContextSink | None = None,
        auth_provider: AuthenticationProvider | None = None,
        macadam: Macadam | None = None,
        probe: CapabilityProbe | None = None,
        host_os: HostOS | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.host_os = host_os or detect_host_os()
        self.provider = provider if provider is not None else InMemoryProvider()
        self.config_store = config_store if config_store is not None else InMemoryConfigurationStore()
        self.context = context if context is not None else InMemoryContext()
        self.auth_provider = auth_provider or EnvironmentAuthenticationProvider(self.settings)

        self.macadam = macadam or Macadam(self.settings, host_os=self.host_os)
        self.initializer = MacadamInitializer(self.macadam)
        self.image_cache = ImageCache(self.settings.storage_path, self.host_os)
        self.probe = probe or CapabilityProbe(self.host_os)
        self.monitor = MachineMonitor(
            self.macadam,
            self.provider,
            self.config_store,
            self.context,
            self.probe,
            self.settings,
            host_os=self.host_os,
        )
        self.factory = VmFactory(
            self.macadam,
            self.image_cache,
            self.auth_provider,
            self.probe,
            self.settings,
            monitor=self.monitor,
            host_os=self.host_os,
        )
        self._background_tasks: dict[asyncio.Task[None], str] = {}
        self._start_monitor = True

    def _track_task(self, task: asyncio.Task[None], *, name: str) -> None:
        """Keep a reference until done; failures are logged."""
        self._background_tasks[task] = name

        def _on_done(t: asyncio.Task[None]) -> None:
            task_name = self._background_tasks.pop(t, name)
            if not t.cancelled() and t.exception() is not None:
                logger.warning("Background task failed", extra={"task_name": task_name, "error": str(t.exception())})

        task.add_done_callback(_on_done)

    def _on_backend_ready(self) -> None:
        if self._start_monitor:
            self._track_task(asyncio.create_task(self.monitor.start()), name="start-monitor")

    async def activate(self, *, start_monitor: bool = True) -> None:
        """Prepare the cache and macadam; start the monitor once macadam is ready.

        Raises:
            BackendNotFoundError: macadam is missing or reports a malformed version
        """
        self._start_monitor = start_monitor
        await self.image_cache.init()
        self.initializer.on_initialized(self._on_backend_ready)
        info = await self.initializer.init()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks)
        logger.info("Extension activated", extra={"macadam": info.path, "version": info.version})

    async def deactivate(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        await self.monitor.stop()
        logger.info("Extension deactivated")

    async def __aenter__(self) -> Self:
        await self.activate()
        return self

    async def __aexit__(
        self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object
    ) -> None:
        await self.deactivate()
