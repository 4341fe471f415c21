"""Tests for VmFactory: provider selection, image acquisition, backend errors, registration."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from rhel_vms import constants
from rhel_vms.config import CreateVmParams
from rhel_vms.exceptions import (
    AuthenticationError,
    BackendCommandError,
    RegistrationError,
    UnsupportedProviderError,
    VmConfigError,
    VmCreationError,
)
from rhel_vms.host import AuthenticationSession, InMemoryConfigurationStore, InMemoryContext, InMemoryProvider
from rhel_vms.image_cache import ImageCache
from rhel_vms.machine_monitor import MachineMonitor
from rhel_vms.models import ContainerProvider, DownloadProgress
from rhel_vms.platform_utils import HostOS
from rhel_vms.settings import Settings
from rhel_vms.vm_factory import VmFactory, progress_reporter
from tests.fakes import FakeAuthProvider, FakeMacadam, FakeProbe, RecordingLogger, vm, write_file

APPLEHV_SHA = "24f35ffb80911f2687f0bcd4237f62e46c19a6f0445aacb951b77d1974130187"


@pytest.fixture
def make_factory(
    fake_macadam: FakeMacadam,
    auth_provider: FakeAuthProvider,
    fake_probe: FakeProbe,
    settings: Settings,
):
    def make(host_os: HostOS = HostOS.MACOS, monitor: MachineMonitor | None = None) -> VmFactory:
        cache = ImageCache(settings.storage_path, host_os)
        return VmFactory(fake_macadam, cache, auth_provider, fake_probe, settings, monitor=monitor, host_os=host_os)

    return make


@pytest.fixture
def factory(make_factory) -> VmFactory:
    return make_factory()


@pytest.fixture
def fake_pull():
    """pull_image replaced by a stub that writes the destination file."""

    async def pull(client, image_sha, destination, *, progress=None, token=None, chunk_size=0):
        write_file(destination, b"downloaded")
        if progress is not None:
            progress(DownloadProgress(10, 10))
        return destination

    with patch("rhel_vms.vm_factory.pull_image", new=AsyncMock(side_effect=pull)) as mock:
        yield mock


# ============================================================================
# Provider selection
# ============================================================================


class TestResolveProvider:
    async def test_override_wins(self, make_factory) -> None:
        factory = make_factory(HostOS.WINDOWS)
        params = CreateVmParams(win_provider=ContainerProvider.HYPERV)
        assert await factory.resolve_provider(params) == ContainerProvider.HYPERV

    async def test_windows_prefers_wsl(self, make_factory, fake_probe: FakeProbe) -> None:
        fake_probe.wsl = True
        assert await make_factory(HostOS.WINDOWS).resolve_provider(CreateVmParams()) == ContainerProvider.WSL

    async def test_windows_falls_back_to_hyperv(self, make_factory) -> None:
        assert await make_factory(HostOS.WINDOWS).resolve_provider(CreateVmParams()) == ContainerProvider.HYPERV

    async def test_macos_and_linux(self, make_factory) -> None:
        assert await make_factory(HostOS.MACOS).resolve_provider(CreateVmParams()) == ContainerProvider.APPLEHV
        assert await make_factory(HostOS.LINUX).resolve_provider(CreateVmParams()) is None


# ============================================================================
# Image acquisition
# ============================================================================


class TestImageAcquisition:
    async def test_local_image_skips_auth_and_download(
        self, factory: VmFactory, fake_macadam: FakeMacadam, auth_provider: FakeAuthProvider, fake_pull: AsyncMock
    ) -> None:
        await factory.create(
            {
                constants.PARAM_NAME: "dev",
                constants.PARAM_IMAGE: constants.IMAGE_LOCAL,
                constants.PARAM_IMAGE_PATH: "/data/custom.qcow2",
            }
        )

        assert auth_provider.requests == []
        fake_pull.assert_not_awaited()
        (call,) = fake_macadam.calls_named("create_vm")
        assert call["image_path"] == Path("/data/custom.qcow2")
        assert call["name"] == "dev"
        assert call["username"] == "core"
        assert call["provider"] == ContainerProvider.APPLEHV

    async def test_image_path_alone_is_local(self, factory: VmFactory, fake_macadam: FakeMacadam) -> None:
        await factory.create(CreateVmParams(image_path=Path("/data/only-path.qcow2")))
        assert fake_macadam.calls_named("create_vm")[0]["image_path"] == Path("/data/only-path.qcow2")

    async def test_absolute_selector_used_verbatim(
        self, factory: VmFactory, fake_macadam: FakeMacadam, auth_provider: FakeAuthProvider
    ) -> None:
        await factory.create({constants.PARAM_IMAGE: "/data/direct.qcow2"})
        assert fake_macadam.calls_named("create_vm")[0]["image_path"] == Path("/data/direct.qcow2")
        assert auth_provider.requests == []

    async def test_local_image_without_path(self, factory: VmFactory, fake_macadam: FakeMacadam) -> None:
        with pytest.raises(VmConfigError):
            await factory.create({constants.PARAM_IMAGE: constants.IMAGE_LOCAL})
        assert fake_macadam.calls_named("create_vm") == []

    async def test_cache_miss_authenticates_and_downloads_once(
        self,
        factory: VmFactory,
        fake_macadam: FakeMacadam,
        auth_provider: FakeAuthProvider,
        fake_pull: AsyncMock,
        settings: Settings,
    ) -> None:
        run_logger = RecordingLogger()
        await factory.create({constants.PARAM_IMAGE: "RHEL 10"}, run_logger)

        assert len(auth_provider.requests) == 1
        fake_pull.assert_awaited_once()
        args, kwargs = fake_pull.await_args
        expected_path = factory.image_cache.get_path("RHEL 10")
        assert args[1:] == (APPLEHV_SHA, expected_path)
        assert kwargs["chunk_size"] == settings.download_chunk_size
        assert fake_macadam.calls_named("create_vm")[0]["image_path"] == expected_path
        assert ("log", "Downloading RHEL 10") in run_logger.lines
        assert ("log", "Downloading image: 100%") in run_logger.lines

    async def test_cache_hit_skips_auth_and_download(
        self, factory: VmFactory, auth_provider: FakeAuthProvider, fake_pull: AsyncMock
    ) -> None:
        write_file(factory.image_cache.get_path("RHEL 10"))
        await factory.create({})
        assert auth_provider.requests == []
        fake_pull.assert_not_awaited()

    async def test_force_download_refreshes_cache(
        self, factory: VmFactory, auth_provider: FakeAuthProvider, fake_pull: AsyncMock
    ) -> None:
        cached = write_file(factory.image_cache.get_path("RHEL 10"), b"old")
        await factory.create(CreateVmParams(force_download=True))
        assert len(auth_provider.requests) == 1
        assert cached.read_bytes() == b"downloaded"

    async def test_no_session_fails_before_backend(
        self, make_factory, fake_macadam: FakeMacadam, auth_provider: FakeAuthProvider, fake_pull: AsyncMock
    ) -> None:
        auth_provider.session = None
        with pytest.raises(AuthenticationError):
            await make_factory().create({})
        fake_pull.assert_not_awaited()
        assert fake_macadam.calls_named("create_vm") == []

    async def test_hyperv_unsupported_before_any_io(
        self, make_factory, fake_macadam: FakeMacadam, auth_provider: FakeAuthProvider, fake_pull: AsyncMock
    ) -> None:
        factory = make_factory(HostOS.WINDOWS)
        with pytest.raises(UnsupportedProviderError, match="provider hyperv is not supported"):
            await factory.create({constants.PARAM_IMAGE: "RHEL 10"})
        assert auth_provider.requests == []
        fake_pull.assert_not_awaited()
        assert fake_macadam.calls_named("create_vm") == []

    async def test_unsupported_even_when_cached(self, make_factory, fake_macadam: FakeMacadam) -> None:
        factory = make_factory(HostOS.WINDOWS)
        write_file(factory.image_cache.get_path("RHEL 10"))
        with pytest.raises(UnsupportedProviderError):
            await factory.create({})
        assert fake_macadam.calls_named("create_vm") == []


# ============================================================================
# Parameters and backend errors
# ============================================================================


class TestCreateErrors:
    async def test_non_string_image_is_type_error(self, factory: VmFactory) -> None:
        with pytest.raises(TypeError):
            await factory.create({constants.PARAM_IMAGE: 10})

    async def test_backend_failure_composes_message(self, factory: VmFactory, fake_macadam: FakeMacadam) -> None:
        fake_macadam.create_error = BackendCommandError(
            "Command execution failed with exit code 125",
            name="macadam init",
            stderr="Error: machine dev already exists",
            exit_code=125,
        )
        with pytest.raises(VmCreationError) as exc_info:
            await factory.create(CreateVmParams(name="dev", image_path=Path("/data/disk.qcow2")))

        assert str(exc_info.value) == (
            "macadam init\nCommand execution failed with exit code 125\nError: machine dev already exists\n"
        )
        assert exc_info.value.__cause__ is fake_macadam.create_error

    async def test_ssh_identity_passed_through(self, factory: VmFactory, fake_macadam: FakeMacadam) -> None:
        await factory.create(
            CreateVmParams(image_path=Path("/data/disk.qcow2"), ssh_identity_path=Path("/keys/id_ed25519"))
        )
        assert fake_macadam.calls_named("create_vm")[0]["ssh_identity_path"] == Path("/keys/id_ed25519")

    async def test_no_registration_returns_none(self, factory: VmFactory) -> None:
        assert await factory.create(CreateVmParams(image_path=Path("/data/disk.qcow2"))) is None


# ============================================================================
# Registration
# ============================================================================


class TestRegistration:
    @pytest.fixture
    def monitor(
        self,
        fake_macadam: FakeMacadam,
        provider: InMemoryProvider,
        config_store: InMemoryConfigurationStore,
        context: InMemoryContext,
        fake_probe: FakeProbe,
        settings: Settings,
    ) -> MachineMonitor:
        return MachineMonitor(
            fake_macadam, provider, config_store, context, fake_probe, settings, host_os=HostOS.LINUX
        )

    async def test_requires_name(self, make_factory, monitor: MachineMonitor) -> None:
        with pytest.raises(VmConfigError, match="name is required"):
            await make_factory(monitor=monitor).create(CreateVmParams(register_subscription=True))

    async def test_requires_monitor(self, factory: VmFactory) -> None:
        with pytest.raises(VmConfigError, match="monitor"):
            await factory.create(CreateVmParams(name="dev", register_subscription=True))

    async def test_registers_after_download_with_session_org(
        self,
        make_factory,
        monitor: MachineMonitor,
        fake_macadam: FakeMacadam,
        auth_provider: FakeAuthProvider,
        fake_pull: AsyncMock,
    ) -> None:
        factory = make_factory(monitor=monitor)
        future = await factory.create(CreateVmParams(name="dev", register_subscription=True))
        assert future is not None
        assert len(auth_provider.requests) == 1

        fake_macadam.script(None, [vm("dev", running=True)])
        await monitor.reconcile_once()
        await future

        (call,) = fake_macadam.calls_named("execute_command")
        assert call[0] == "dev"
        assert call[2][3] == "org-42"

    async def test_local_image_authenticates_for_org(
        self, make_factory, monitor: MachineMonitor, auth_provider: FakeAuthProvider
    ) -> None:
        factory = make_factory(monitor=monitor)
        future = await factory.create(
            CreateVmParams(name="dev", image_path=Path("/data/disk.qcow2"), register_subscription=True)
        )
        assert future is not None
        assert len(auth_provider.requests) == 1
        future.cancel()

    async def test_session_without_org_fails_before_backend(
        self, make_factory, monitor: MachineMonitor, auth_provider: FakeAuthProvider, fake_macadam: FakeMacadam
    ) -> None:
        auth_provider.session = AuthenticationSession(access_token="token-123")
        factory = make_factory(monitor=monitor)
        with pytest.raises(RegistrationError, match="organization id"):
            await factory.create(
                CreateVmParams(name="dev", image_path=Path("/data/disk.qcow2"), register_subscription=True)
            )
        assert fake_macadam.calls_named("create_vm") == []

    async def test_local_image_without_session_fails_before_backend(
        self, make_factory, monitor: MachineMonitor, auth_provider: FakeAuthProvider, fake_macadam: FakeMacadam
    ) -> None:
        auth_provider.session = None
        factory = make_factory(monitor=monitor)
        with pytest.raises(AuthenticationError):
            await factory.create(
                CreateVmParams(name="dev", image_path=Path("/data/disk.qcow2"), register_subscription=True)
            )
        assert fake_macadam.calls_named("create_vm") == []

    async def test_cache_hit_without_session_fails_before_backend(
        self,
        make_factory,
        monitor: MachineMonitor,
        auth_provider: FakeAuthProvider,
        fake_macadam: FakeMacadam,
        fake_pull: AsyncMock,
    ) -> None:
        auth_provider.session = None
        factory = make_factory(monitor=monitor)
        write_file(factory.image_cache.get_path("RHEL 10"))
        with pytest.raises(AuthenticationError):
            await factory.create(CreateVmParams(name="dev", register_subscription=True))
        fake_pull.assert_not_awaited()
        assert fake_macadam.calls_named("create_vm") == []


# ============================================================================
# Progress reporting
# ============================================================================


class TestProgressReporter:
    def test_one_line_per_step(self) -> None:
        run_logger = RecordingLogger()
        report = progress_reporter(run_logger, step=50)
        for downloaded in (0, 10, 49, 50, 99, 100):
            report(DownloadProgress(downloaded, 100))
        assert [text for _, text in run_logger.lines] == [
            "Downloading image: 0%",
            "Downloading image: 50%",
            "Downloading image: 100%",
        ]

    def test_unknown_total_is_silent(self) -> None:
        run_logger = RecordingLogger()
        progress_reporter(run_logger)(DownloadProgress(123, None))
        assert run_logger.lines == []
