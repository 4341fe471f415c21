"""Tests for MachineMonitor: statuses, connections, provider status, registration.

Cycles are driven directly through reconcile_once() against FakeMacadam;
only TestLoop runs the background task.
"""

import asyncio
import logging

import pytest

from rhel_vms import constants
from rhel_vms.exceptions import BackendCommandError, RegistrationError
from rhel_vms.host import InMemoryConfigurationStore, InMemoryContext, InMemoryProvider
from rhel_vms.machine_monitor import MachineMonitor, machine_status, to_machine_info
from rhel_vms.models import ConnectionStatus, ContainerProvider, MachineListOutput
from rhel_vms.platform_utils import HostOS
from rhel_vms.run_logger import LifecycleContext
from rhel_vms.settings import Settings
from tests.fakes import FakeMacadam, FakeProbe, RecordingLogger, vm


@pytest.fixture
def make_monitor(
    fake_macadam: FakeMacadam,
    provider: InMemoryProvider,
    config_store: InMemoryConfigurationStore,
    context: InMemoryContext,
    fake_probe: FakeProbe,
    settings: Settings,
):
    def make(host_os: HostOS = HostOS.LINUX) -> MachineMonitor:
        return MachineMonitor(
            fake_macadam, provider, config_store, context, fake_probe, settings, host_os=host_os
        )

    return make


@pytest.fixture
def monitor(make_monitor) -> MachineMonitor:
    return make_monitor()


def _record(monitor: MachineMonitor) -> list[tuple[str, ConnectionStatus]]:
    events: list[tuple[str, ConnectionStatus]] = []
    monitor.add_listener(lambda key, status: events.append((key, status)))
    return events


# ============================================================================
# Pure helpers
# ============================================================================


class TestMachineStatus:
    @pytest.mark.parametrize(
        ("running", "starting", "expected"),
        [
            (True, True, ConnectionStatus.STARTING),
            (True, False, ConnectionStatus.STARTED),
            (False, False, ConnectionStatus.STOPPED),
            (False, True, ConnectionStatus.STOPPED),
        ],
    )
    def test_flags(self, running: bool, starting: bool, expected: ConnectionStatus) -> None:
        assert machine_status(vm("m", running=running, starting=starting)) == expected

    def test_machine_info_coerces_numbers_and_provider(self) -> None:
        info = to_machine_info(vm("m", cpus="4", memory="8192", disk_size="bogus", vm_type="wsl"))
        assert (info.cpus, info.memory, info.disk_size) == (4, 8192, 0)
        assert info.vm_type == ContainerProvider.WSL
        assert to_machine_info(vm("m", vm_type="qemu")).vm_type is None


# ============================================================================
# Status table and listeners
# ============================================================================


class TestStatuses:
    async def test_transitions_notify_once_per_change(self, monitor: MachineMonitor, fake_macadam: FakeMacadam) -> None:
        fake_macadam.script(
            None,
            [vm("m1")],
            [vm("m1")],
            [vm("m1", running=True, starting=True)],
            [vm("m1", running=True)],
            [vm("m1", running=True)],
        )
        events = _record(monitor)

        for _ in range(5):
            await monitor.reconcile_once()

        assert events == [
            ("m1", ConnectionStatus.STOPPED),
            ("m1", ConnectionStatus.STARTING),
            ("m1", ConnectionStatus.STARTED),
        ]
        assert monitor.get_status("m1") == ConnectionStatus.STARTED

    async def test_unknown_machine_status(self, monitor: MachineMonitor) -> None:
        assert monitor.get_status("nope") == ConnectionStatus.UNKNOWN

    async def test_unsubscribe(self, monitor: MachineMonitor, fake_macadam: FakeMacadam) -> None:
        fake_macadam.script(None, [vm("m1")], [vm("m1", running=True)])
        events: list[tuple[str, ConnectionStatus]] = []
        remove = monitor.add_listener(lambda key, status: events.append((key, status)))

        await monitor.reconcile_once()
        remove()
        await monitor.reconcile_once()

        assert events == [("m1", ConnectionStatus.STOPPED)]

    async def test_failing_listener_does_not_break_cycle(
        self, monitor: MachineMonitor, fake_macadam: FakeMacadam
    ) -> None:
        fake_macadam.script(None, [vm("m1")])

        def boom(key: str, status: ConnectionStatus) -> None:
            raise RuntimeError("listener bug")

        monitor.add_listener(boom)
        events = _record(monitor)

        await monitor.reconcile_once()

        assert events == [("m1", ConnectionStatus.STOPPED)]
        assert "m1" in monitor.connections

    async def test_machines_without_name_keyed_by_image(
        self, monitor: MachineMonitor, fake_macadam: FakeMacadam
    ) -> None:
        machine = vm("", running=True)
        fake_macadam.script(None, [machine])
        await monitor.reconcile_once()
        assert monitor.get_status(machine.image) == ConnectionStatus.STARTED


# ============================================================================
# Connections
# ============================================================================


class TestConnections:
    async def test_registered_once_and_disposed_once(
        self, monitor: MachineMonitor, fake_macadam: FakeMacadam, provider: InMemoryProvider
    ) -> None:
        fake_macadam.script(None, [vm("m1")], [vm("m1"), vm("m2")], [vm("m2")], [vm("m2")])

        await monitor.reconcile_once()
        assert [c.name for c in provider.connections] == ["m1"]

        await monitor.reconcile_once()
        assert [c.name for c in provider.connections] == ["m1", "m2"]

        await monitor.reconcile_once()
        assert [c.name for c in provider.connections] == ["m2"]
        assert "m1" not in monitor.statuses
        assert "m1" not in monitor.machines

        await monitor.reconcile_once()
        assert [c.name for c in provider.connections] == ["m2"]
        assert set(monitor.connections) == {"m2"}

    async def test_reappearing_machine_is_registered_again(
        self, monitor: MachineMonitor, fake_macadam: FakeMacadam, provider: InMemoryProvider
    ) -> None:
        fake_macadam.script(None, [vm("m1")], [], [vm("m1")])
        for _ in range(3):
            await monitor.reconcile_once()
        assert [c.name for c in provider.connections] == ["m1"]

    async def test_connection_carries_config_and_live_status(
        self,
        monitor: MachineMonitor,
        fake_macadam: FakeMacadam,
        provider: InMemoryProvider,
        config_store: InMemoryConfigurationStore,
    ) -> None:
        fake_macadam.script(None, [vm("m1", cpus="4", memory="8192", disk_size="40")], [vm("m1", running=True)])

        await monitor.reconcile_once()
        connection = provider.find("m1")
        assert connection is not None
        assert connection.status() == ConnectionStatus.STOPPED
        assert config_store.values[(constants.CONFIGURATION_SECTION, "m1")] == {
            "machine.cpus": 4,
            "machine.memory": 8192,
            "machine.diskSize": 40,
        }
        assert provider.status == ConnectionStatus.READY

        await monitor.reconcile_once()
        assert connection.status() == ConnectionStatus.STARTED

    async def test_machine_info_refreshed_every_cycle(
        self, monitor: MachineMonitor, fake_macadam: FakeMacadam
    ) -> None:
        fake_macadam.script(None, [vm("m1", cpus="2")], [vm("m1", cpus="6")])
        await monitor.reconcile_once()
        await monitor.reconcile_once()
        assert monitor.machines["m1"].cpus == 6


# ============================================================================
# Lifecycle actions
# ============================================================================


class TestLifecycle:
    async def test_start_stop_delete(
        self, monitor: MachineMonitor, fake_macadam: FakeMacadam, provider: InMemoryProvider
    ) -> None:
        fake_macadam.script(None, [vm("m1", vm_type="wsl")])
        await monitor.reconcile_once()
        connection = provider.find("m1")
        assert connection is not None

        context_logger = RecordingLogger()
        action_logger = RecordingLogger()
        await connection.lifecycle.start(LifecycleContext(log=context_logger), action_logger)
        assert provider.status == ConnectionStatus.STARTED

        await connection.lifecycle.stop(None, None)
        assert provider.status == ConnectionStatus.STOPPED

        await connection.lifecycle.delete(action_logger)

        name, provider_arg, delegator = fake_macadam.calls_named("start_vm")[0]
        assert (name, provider_arg) == ("m1", ContainerProvider.WSL)
        assert delegator.loggers == [context_logger, action_logger]
        assert fake_macadam.calls_named("stop_vm")[0][:2] == ("m1", ContainerProvider.WSL)
        assert fake_macadam.calls_named("remove_vm")[0][:2] == ("m1", ContainerProvider.WSL)

    async def test_backend_failure_propagates_without_status_change(
        self, monitor: MachineMonitor, fake_macadam: FakeMacadam, provider: InMemoryProvider
    ) -> None:
        fake_macadam.script(None, [vm("m1")])
        await monitor.reconcile_once()
        connection = provider.find("m1")
        assert connection is not None

        async def failing_start(*args, **kwargs):
            raise BackendCommandError("Command execution failed with exit code 1", name="macadam start")

        fake_macadam.start_vm = failing_start
        with pytest.raises(BackendCommandError):
            await connection.lifecycle.start(None, None)
        assert provider.status == ConnectionStatus.READY


# ============================================================================
# Providers, aggregate status and context
# ============================================================================


class TestProviders:
    async def test_linux_lists_native_and_skips_aggregate(
        self, monitor: MachineMonitor, fake_macadam: FakeMacadam, provider: InMemoryProvider
    ) -> None:
        fake_macadam.script(None, [])
        await monitor.reconcile_once()
        assert fake_macadam.calls_named("list_vms") == [None]
        assert provider.status == ConnectionStatus.UNKNOWN

    async def test_macos_lists_applehv(self, make_monitor, fake_macadam: FakeMacadam) -> None:
        monitor = make_monitor(HostOS.MACOS)
        await monitor.reconcile_once()
        assert fake_macadam.calls_named("list_vms") == [ContainerProvider.APPLEHV]

    @pytest.mark.parametrize(
        ("wsl", "hyperv", "expected"),
        [
            (True, True, [ContainerProvider.WSL, ContainerProvider.HYPERV]),
            (True, False, [ContainerProvider.WSL]),
            (False, True, [ContainerProvider.HYPERV]),
            (False, False, [None]),
        ],
    )
    async def test_windows_providers(
        self, make_monitor, fake_probe: FakeProbe, wsl: bool, hyperv: bool, expected: list
    ) -> None:
        fake_probe.wsl, fake_probe.hyperv = wsl, hyperv
        assert await make_monitor(HostOS.WINDOWS).active_providers() == expected

    async def test_same_name_on_wsl_and_hyperv_keeps_first(
        self,
        make_monitor,
        fake_macadam: FakeMacadam,
        fake_probe: FakeProbe,
        provider: InMemoryProvider,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        fake_probe.wsl = fake_probe.hyperv = True
        monitor = make_monitor(HostOS.WINDOWS)
        events: list[tuple[str, ConnectionStatus]] = []
        monitor.add_listener(lambda key, status: events.append((key, status)))
        fake_macadam.script(ContainerProvider.WSL, [vm("rhel", vm_type="wsl")])
        fake_macadam.script(ContainerProvider.HYPERV, [vm("rhel", running=True, vm_type="hyperv")])

        with caplog.at_level(logging.WARNING, logger="rhel_vms"):
            for _ in range(3):
                await monitor.reconcile_once()

        assert events == [("rhel", ConnectionStatus.STOPPED)]
        assert monitor.machines["rhel"].vm_type == ContainerProvider.WSL
        assert len(monitor.connections) == 1
        assert caplog.text.count("listed by more than one provider") == 1

    async def test_aggregate_status(self, make_monitor, fake_macadam: FakeMacadam, provider: InMemoryProvider) -> None:
        monitor = make_monitor(HostOS.MACOS)
        applehv = ContainerProvider.APPLEHV

        fake_macadam.script(applehv, [])
        await monitor.reconcile_once()
        assert provider.status == ConnectionStatus.INSTALLED

        fake_macadam.script(applehv, [vm("a"), vm("b")])
        await monitor.reconcile_once()
        assert provider.status == ConnectionStatus.CONFIGURED

        fake_macadam.script(applehv, [vm("a", running=True, starting=True), vm("b")])
        await monitor.reconcile_once()
        assert provider.status == ConnectionStatus.STARTING

        fake_macadam.script(applehv, [vm("a", running=True, starting=True), vm("b", running=True)])
        await monitor.reconcile_once()
        assert provider.status == ConnectionStatus.READY

    async def test_configuring_provider_not_downgraded_to_installed(
        self, make_monitor, provider: InMemoryProvider
    ) -> None:
        provider.update_status(ConnectionStatus.CONFIGURING)
        await make_monitor(HostOS.MACOS).reconcile_once()
        assert provider.status == ConnectionStatus.CONFIGURING

    async def test_wsl_hyperv_context_pushed_only_on_change(
        self, make_monitor, fake_probe: FakeProbe, context: InMemoryContext
    ) -> None:
        pushed: list[bool] = []
        context.set_value = lambda key, value: pushed.append(value)
        monitor = make_monitor(HostOS.WINDOWS)

        fake_probe.wsl, fake_probe.hyperv = True, False
        await monitor.reconcile_once()
        assert pushed == []

        fake_probe.hyperv = True
        await monitor.reconcile_once()
        await monitor.reconcile_once()
        assert pushed == [True]

        fake_probe.wsl = False
        await monitor.reconcile_once()
        assert pushed == [True, False]

    async def test_errors_accumulate_and_machines_still_processed(
        self, make_monitor, fake_macadam: FakeMacadam, fake_probe: FakeProbe, provider: InMemoryProvider
    ) -> None:
        fake_probe.wsl, fake_probe.hyperv = True, True
        fake_macadam.script(ContainerProvider.WSL, MachineListOutput(machines=[vm("w")], error="wsl broke\n"))
        fake_macadam.script(ContainerProvider.HYPERV, MachineListOutput(error="hyperv broke"))
        monitor = make_monitor(HostOS.WINDOWS)

        listing = await monitor.list_machines()
        assert listing.error == "wsl broke\nhyperv broke\n"
        assert [m.name for m in listing.machines] == ["w"]

        await monitor.reconcile_once()
        assert [c.name for c in provider.connections] == ["w"]


# ============================================================================
# Subscription registration
# ============================================================================


class TestRegistration:
    async def test_registers_once_machine_started(self, monitor: MachineMonitor, fake_macadam: FakeMacadam) -> None:
        fake_macadam.script(None, [], [vm("rhel")], [vm("rhel", running=True)])
        future = monitor.register_when_started("rhel", "org-42")

        await monitor.reconcile_once()
        await monitor.reconcile_once()
        assert fake_macadam.calls_named("execute_command") == []
        assert not future.done()

        await monitor.reconcile_once()
        await asyncio.wait_for(future, timeout=1)

        assert fake_macadam.calls_named("execute_command") == [
            (
                "rhel",
                "sudo",
                ["subscription-manager", "register", "--org", "org-42", "--activationkey", "rhel-vms"],
                None,
            )
        ]

        await monitor.reconcile_once()
        assert len(fake_macadam.calls_named("execute_command")) == 1

    async def test_failure_sets_registration_error(self, monitor: MachineMonitor, fake_macadam: FakeMacadam) -> None:
        fake_macadam.script(None, [vm("rhel", running=True)])
        fake_macadam.command_error = BackendCommandError(
            "Command execution failed with exit code 64", name="macadam ssh", stderr="invalid activation key"
        )
        future = monitor.register_when_started("rhel", "org-42")

        await monitor.reconcile_once()

        with pytest.raises(RegistrationError, match="invalid activation key"):
            await asyncio.wait_for(future, timeout=1)

    async def test_dropped_when_machine_disappears(self, monitor: MachineMonitor, fake_macadam: FakeMacadam) -> None:
        fake_macadam.script(None, [vm("rhel")], [])
        future = monitor.register_when_started("rhel", "org-42")

        await monitor.reconcile_once()
        assert not future.done()
        await monitor.reconcile_once()

        assert future.cancelled()
        assert fake_macadam.calls_named("execute_command") == []

    async def test_waits_while_machine_not_yet_listed(
        self, monitor: MachineMonitor, fake_macadam: FakeMacadam
    ) -> None:
        fake_macadam.script(None, [])
        future = monitor.register_when_started("rhel", "org-42")
        for _ in range(3):
            await monitor.reconcile_once()
        assert not future.done()

    async def test_stop_cancels_pending(self, monitor: MachineMonitor) -> None:
        future = monitor.register_when_started("rhel", "org-42")
        await monitor.start()
        await monitor.stop()
        assert future.cancelled()


# ============================================================================
# Background loop
# ============================================================================


class TestLoop:
    async def test_start_polls_until_stopped(self, monitor: MachineMonitor, fake_macadam: FakeMacadam) -> None:
        fake_macadam.script(None, [vm("m1", running=True)])
        await monitor.start()
        assert monitor.running
        for _ in range(100):
            if len(fake_macadam.calls_named("list_vms")) >= 3:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert not monitor.running
        count = len(fake_macadam.calls_named("list_vms"))
        assert count >= 3
        await asyncio.sleep(0.05)
        assert len(fake_macadam.calls_named("list_vms")) == count

    async def test_failing_cycle_is_logged_and_loop_continues(
        self, monitor: MachineMonitor, fake_macadam: FakeMacadam
    ) -> None:
        calls = 0
        original = fake_macadam.list_vms

        async def flaky(provider=None):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("unexpected")
            return await original(provider)

        fake_macadam.list_vms = flaky
        await monitor.start()
        for _ in range(100):
            if calls >= 2:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()
        assert calls >= 2

    async def test_start_and_stop_are_idempotent(self, monitor: MachineMonitor) -> None:
        await monitor.stop()
        await monitor.start()
        await monitor.start()
        await monitor.stop()
        await monitor.stop()
        assert not monitor.running
