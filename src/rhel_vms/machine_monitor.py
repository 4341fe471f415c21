"""Reconciliation loop between macadam's machine list and the host UI.

Every poll interval the monitor lists machines for each active provider,
derives a status per machine, notifies listeners of status changes, registers
a connection for each new machine and disposes connections of machines that
disappeared. All tables are owned by the MachineMonitor instance.

Status per machine (from the Running/Starting flags):
    Running and Starting  -> starting
    Running, not Starting -> started
    otherwise             -> stopped

Aggregate provider status (skipped on Linux, where machines are optional):
    no machines           -> installed (unless the provider is configuring)
    any running machine   -> ready
    any starting machine  -> starting
    otherwise             -> configured

Post-create registration:
    register_when_started() parks a request for a machine name. The first
    cycle that observes the machine started runs subscription-manager in it.
    The wait has no deadline of its own; it is dropped when the monitor
    stops or when the machine disappears after having been seen.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rhel_vms import constants
from rhel_vms._logging import get_logger
from rhel_vms.exceptions import BackendCommandError, RegistrationError
from rhel_vms.host import ConnectionLifecycle, VmProviderConnection
from rhel_vms.models import ConnectionStatus, ContainerProvider, MachineInfo, MachineListOutput, VmDetails
from rhel_vms.platform_utils import HostOS, detect_host_os
from rhel_vms.run_logger import LifecycleContext, LoggerDelegator, RunLogger
from rhel_vms.subprocess_utils import log_task_exception
from rhel_vms.utils import to_number, verify_container_provider

if TYPE_CHECKING:
    from rhel_vms.host import ConfigurationStore, ContextSink, Disposable, Provider
    from rhel_vms.macadam import Macadam
    from rhel_vms.settings import Settings
    from rhel_vms.system_probes import CapabilityProbe

logger = get_logger(__name__)

StatusListener = Callable[[str, ConnectionStatus], None]


def machine_status(machine: VmDetails) -> ConnectionStatus:
    if machine.running and machine.starting:
        return ConnectionStatus.STARTING
    if machine.running:
        return ConnectionStatus.STARTED
    return ConnectionStatus.STOPPED


def to_machine_info(machine: VmDetails) -> MachineInfo:
    return MachineInfo(
        name=machine.name,
        image=machine.image,
        cpus=to_number(machine.cpus),
        memory=to_number(machine.memory),
        disk_size=to_number(machine.disk_size),
        port=machine.port,
        remote_username=machine.remote_username,
        identity_path=machine.identity_path,
        vm_type=verify_container_provider(machine.vm_type),
    )


@dataclass
class _PendingRegistration:
    name: str
    organization_id: str
    future: asyncio.Future[None]
    seen: bool = False


class MachineMonitor:
    """Single writer of machine statuses and connection registrations.

    Usage:
        monitor = MachineMonitor(macadam, provider, config_store, context, probe, settings)
        await monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        macadam: Macadam,
        provider: Provider,
        config_store: ConfigurationStore,
        context: ContextSink,
        probe: CapabilityProbe,
        settings: Settings,
        *,
        host_os: HostOS | None = None,
    ) -> None:
        self.macadam = macadam
        self.provider = provider
        self.config_store = config_store
        self.context = context
        self.probe = probe
        self.settings = settings
        self.host_os = host_os or detect_host_os()
        self._interval = settings.poll_interval_seconds

        self.statuses: dict[str, ConnectionStatus] = {}
        self.machines: dict[str, MachineInfo] = {}
        self._shadowed: set[tuple[str, str]] = set()
        self.connections: dict[str, Disposable] = {}
        self._listeners: list[StatusListener] = []
        self._registrations: dict[str, _PendingRegistration] = {}
        self._registration_tasks: set[asyncio.Task[None]] = set()
        self._wsl_hyperv_enabled = False

        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Loop lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background reconciliation task (no-op when already running)."""
        if self._task is not None:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="machine-monitor")
        logger.info("Machine monitor started", extra={"interval_seconds": self._interval})

    async def stop(self) -> None:
        """Set the stop flag and wait for the loop to exit; pending registrations are dropped."""
        if self._task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

        for pending in self._registrations.values():
            pending.future.cancel()
        self._registrations.clear()
        for task in list(self._registration_tasks):
            task.cancel()
        if self._registration_tasks:
            await asyncio.gather(*self._registration_tasks, return_exceptions=True)
        logger.info("Machine monitor stopped")

    async def _run_loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.reconcile_once()
            except Exception:
                logger.exception("Machine reconciliation cycle failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)

    # ------------------------------------------------------------------
    # Listeners and queries
    # ------------------------------------------------------------------

    def add_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Subscribe to status changes; returns an unsubscribe function."""
        self._listeners.append(listener)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    def get_status(self, key: str) -> ConnectionStatus:
        return self.statuses.get(key, ConnectionStatus.UNKNOWN)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def active_providers(self) -> list[ContainerProvider | None]:
        """Providers to list this cycle; None stands for the native backend."""
        if self.host_os == HostOS.MACOS:
            return [ContainerProvider.APPLEHV]
        if self.host_os != HostOS.WINDOWS:
            return [None]

        wsl = await self.probe.is_wsl_enabled()
        hyperv = await self.probe.is_hyperv_enabled()
        self._update_wsl_hyperv_context(wsl and hyperv)

        providers: list[ContainerProvider | None] = []
        if wsl:
            providers.append(ContainerProvider.WSL)
        if hyperv:
            providers.append(ContainerProvider.HYPERV)
        return providers or [None]

    def _update_wsl_hyperv_context(self, enabled: bool) -> None:
        if enabled == self._wsl_hyperv_enabled:
            return
        self._wsl_hyperv_enabled = enabled
        self.context.set_value(constants.WSL_HYPERV_ENABLED_KEY, enabled)

    async def list_machines(self) -> MachineListOutput:
        """List every active provider in order; per-provider errors accumulate as text."""
        machines: list[VmDetails] = []
        error = ""
        for provider in await self.active_providers():
            output = await self.macadam.list_vms(provider)
            machines.extend(output.machines)
            if output.error.strip():
                error += output.error.rstrip("\n") + "\n"
        return MachineListOutput(machines=machines, error=error)

    async def reconcile_once(self) -> None:
        listing = await self.list_machines()
        if listing.error:
            logger.error("Listing machines failed", extra={"error": listing.error.strip()})

        machines = listing.machines
        current_keys: set[str] = set()
        shadowed: set[tuple[str, str]] = set()
        for machine in machines:
            key = machine.key
            if key in current_keys:
                # Same name under a later provider (WSL and Hyper-V); the first listing owns the key
                shadowed.add((key, machine.vm_type))
                continue
            current_keys.add(key)
            status = machine_status(machine)
            if self.statuses.get(key) != status:
                self._notify(key, status)
                self.statuses[key] = status
            self.machines[key] = to_machine_info(machine)

        for key, vm_type in shadowed - self._shadowed:
            logger.warning("Machine name listed by more than one provider", extra={"machine": key, "vm_type": vm_type})
        self._shadowed = shadowed

        removed = [key for key in self.statuses if key not in current_keys]
        for key in removed:
            del self.statuses[key]
            self.machines.pop(key, None)

        for key in [key for key in self.statuses if key not in self.connections]:
            await self._register_connection(self.machines[key])

        for key in removed:
            disposable = self.connections.pop(key, None)
            if disposable is not None:
                disposable.dispose()
                logger.info("Machine connection removed", extra={"machine": key})

        if self.host_os != HostOS.LINUX:
            self._update_provider_status(machines)

        self._process_registrations(current_keys)

    def _notify(self, key: str, status: ConnectionStatus) -> None:
        logger.debug("Machine status changed", extra={"machine": key, "status": status.value})
        for listener in list(self._listeners):
            try:
                listener(key, status)
            except Exception:
                logger.exception("Status listener failed", extra={"machine": key})

    def _update_provider_status(self, machines: list[VmDetails]) -> None:
        if not machines:
            if self.provider.status != ConnectionStatus.CONFIGURING:
                self.provider.update_status(ConnectionStatus.INSTALLED)
            return
        if any(m.running and not m.starting for m in machines):
            self.provider.update_status(ConnectionStatus.READY)
        elif any(m.starting for m in machines):
            self.provider.update_status(ConnectionStatus.STARTING)
        else:
            self.provider.update_status(ConnectionStatus.CONFIGURED)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _lifecycle(self, info: MachineInfo) -> ConnectionLifecycle:
        name = info.key

        async def start(context: LifecycleContext | None, run_logger: RunLogger | None) -> None:
            await self.macadam.start_vm(name, info.vm_type, _delegate(context, run_logger))
            self.provider.update_status(ConnectionStatus.STARTED)

        async def stop(context: LifecycleContext | None, run_logger: RunLogger | None) -> None:
            await self.macadam.stop_vm(name, info.vm_type, _delegate(context, run_logger))
            self.provider.update_status(ConnectionStatus.STOPPED)

        async def delete(run_logger: RunLogger | None) -> None:
            await self.macadam.remove_vm(name, info.vm_type, _delegate(None, run_logger))

        return ConnectionLifecycle(start=start, stop=stop, delete=delete)

    async def _register_connection(self, info: MachineInfo) -> None:
        key = info.key
        connection = VmProviderConnection(
            name=key,
            machine=info,
            status=lambda: self.get_status(key),
            lifecycle=self._lifecycle(info),
        )
        self.connections[key] = self.provider.register_vm_provider_connection(connection)
        self.provider.update_status(ConnectionStatus.READY)

        configuration = self.config_store.get_configuration(constants.CONFIGURATION_SECTION, connection)
        await configuration.update(constants.CONFIG_MACHINE_CPUS, info.cpus)
        await configuration.update(constants.CONFIG_MACHINE_MEMORY, info.memory)
        await configuration.update(constants.CONFIG_MACHINE_DISK_SIZE, info.disk_size)
        logger.info(
            "Machine connection registered",
            extra={"machine": key, "provider": info.vm_type.value if info.vm_type else None},
        )

    # ------------------------------------------------------------------
    # Subscription registration
    # ------------------------------------------------------------------

    def register_when_started(self, name: str, organization_id: str) -> asyncio.Future[None]:
        """Register machine `name` with the subscription service once it is observed started.

        Returns a future resolved when registration finished, failed with
        RegistrationError, or cancelled when the request was dropped.
        """
        previous = self._registrations.pop(name, None)
        if previous is not None:
            previous.future.cancel()
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_log_registration_outcome)
        self._registrations[name] = _PendingRegistration(name, organization_id, future)
        logger.debug("Registration pending until machine is started", extra={"machine": name})
        return future

    def _process_registrations(self, current_keys: set[str]) -> None:
        for name, pending in list(self._registrations.items()):
            if name not in current_keys:
                if pending.seen:
                    logger.warning("Machine disappeared before registration", extra={"machine": name})
                    pending.future.cancel()
                    del self._registrations[name]
                continue
            pending.seen = True
            if self.statuses.get(name) != ConnectionStatus.STARTED:
                continue
            del self._registrations[name]
            info = self.machines[name]
            task = asyncio.create_task(self._register(info, pending), name=f"register-{name}")
            self._registration_tasks.add(task)
            task.add_done_callback(self._registration_tasks.discard)
            task.add_done_callback(log_task_exception)

    async def _register(self, info: MachineInfo, pending: _PendingRegistration) -> None:
        args = [
            "subscription-manager",
            "register",
            "--org",
            pending.organization_id,
            "--activationkey",
            self.settings.activation_key,
        ]
        try:
            await self.macadam.execute_command(info.key, "sudo", args, provider=info.vm_type)
        except asyncio.CancelledError:
            pending.future.cancel()
            raise
        except BackendCommandError as e:
            error = RegistrationError(
                f"unable to register machine {info.key}: {e.composed_message().strip()}",
                {"machine": info.key, "organization_id": pending.organization_id},
            )
            error.__cause__ = e
            if not pending.future.done():
                pending.future.set_exception(error)
            return
        logger.info("Machine registered", extra={"machine": info.key})
        if not pending.future.done():
            pending.future.set_result(None)


def _log_registration_outcome(future: asyncio.Future[None]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Machine registration failed", extra={"error": str(exc)})


def _delegate(context: LifecycleContext | None, run_logger: RunLogger | None) -> LoggerDelegator:
    return LoggerDelegator.from_sources(loggers=[run_logger], contexts=[context])
