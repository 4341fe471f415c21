"""VM creation: provider selection, image acquisition and the macadam init call.

Flow:
    1. provider: explicit override, else WSL when usable and Hyper-V
       otherwise on Windows, applehv on macOS, native on Linux
    2. image:
       - "local image on disk" (or only an image path): the path verbatim
       - an absolute path as selector: that path verbatim
       - a catalog name: the cached file, downloaded first when missing or
         when a re-download is forced (authentication happens only then)
    3. macadam init with username "core"
    4. optionally, subscription registration once the machine runs

Unsupported provider/version combinations fail before any I/O. Backend
failures surface as VmCreationError whose message is the backend error's
name, message and stderr on separate lines.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles.os

from rhel_vms import constants
from rhel_vms._logging import get_logger
from rhel_vms.authentication import init_authentication
from rhel_vms.config import CreateVmParams
from rhel_vms.exceptions import BackendCommandError, RegistrationError, VmConfigError, VmCreationError
from rhel_vms.image_fetcher import ProgressSink, pull_image
from rhel_vms.images import get_image_sha
from rhel_vms.models import ContainerProvider, DownloadProgress
from rhel_vms.platform_utils import HostOS, detect_host_os

if TYPE_CHECKING:
    from rhel_vms.host import AuthenticationProvider, CancellationToken
    from rhel_vms.image_cache import ImageCache
    from rhel_vms.machine_monitor import MachineMonitor
    from rhel_vms.macadam import Macadam
    from rhel_vms.rh_api import SubscriptionManagerClient
    from rhel_vms.run_logger import RunLogger
    from rhel_vms.settings import Settings
    from rhel_vms.system_probes import CapabilityProbe

logger = get_logger(__name__)


def progress_reporter(run_logger: RunLogger | None, step: int = 10) -> ProgressSink:
    """Progress sink writing one line to run_logger per `step` percent."""
    last = -1

    def report(progress: DownloadProgress) -> None:
        nonlocal last
        percent = progress.percent
        if percent is None or run_logger is None:
            return
        bucket = int(percent) // step
        if bucket != last:
            last = bucket
            run_logger.log(f"Downloading image: {int(percent)}%")

    return report


class VmFactory:
    """Creates machines on behalf of the UI's creation form."""

    def __init__(
        self,
        macadam: Macadam,
        image_cache: ImageCache,
        auth_provider: AuthenticationProvider,
        probe: CapabilityProbe,
        settings: Settings,
        *,
        monitor: MachineMonitor | None = None,
        host_os: HostOS | None = None,
    ) -> None:
        self.macadam = macadam
        self.image_cache = image_cache
        self.auth_provider = auth_provider
        self.probe = probe
        self.settings = settings
        self.monitor = monitor
        self.host_os = host_os or detect_host_os()

    async def resolve_provider(self, params: CreateVmParams) -> ContainerProvider | None:
        if params.win_provider is not None:
            return params.win_provider
        if self.host_os == HostOS.WINDOWS:
            if await self.probe.is_wsl_enabled():
                return ContainerProvider.WSL
            return ContainerProvider.HYPERV
        if self.host_os == HostOS.MACOS:
            return ContainerProvider.APPLEHV
        return None

    async def _authenticate(self) -> SubscriptionManagerClient:
        return await init_authentication(self.auth_provider, self.settings)

    async def create(
        self,
        params: CreateVmParams | Mapping[str, Any],
        logger: RunLogger | None = None,
        token: CancellationToken | None = None,
    ) -> asyncio.Future[None] | None:
        """Create a machine.

        Returns:
            When registration was requested, a future that completes once the
            machine has been registered; otherwise None.

        Raises:
            TypeError: The image selector is not a string
            VmConfigError: Inconsistent parameters
            UnsupportedProviderError: No catalog image for the provider
            AuthenticationError: A download or registration needs a session and none exists
            RegistrationError: Registration was requested and the session has no organization id
            DownloadCancelledError: token was set during the download
            VmCreationError: macadam init failed
        """
        if not isinstance(params, CreateVmParams):
            params = CreateVmParams.from_params(params)
        if params.register_subscription and not params.name:
            raise VmConfigError("a machine name is required to register the machine")
        if params.register_subscription and self.monitor is None:
            raise VmConfigError("registration requires a running machine monitor")

        run_logger = logger
        provider = await self.resolve_provider(params)
        organization_id: str | None = None

        if params.uses_local_image:
            if params.image_path is None:
                raise VmConfigError("an image path is required for a local image")
            image_path = params.image_path
        elif params.raw_image_path is not None:
            image_path = params.raw_image_path
        else:
            image_path, organization_id = await self._cached_image(params, provider, run_logger, token)

        if params.register_subscription:
            # Resolved before any backend call
            if organization_id is None:
                async with await self._authenticate() as client:
                    organization_id = client.organization_id
            if not organization_id:
                raise RegistrationError("the SSO session carries no organization id", {"machine": params.name})

        await self._create_vm(params, image_path, provider, run_logger, token)

        if not params.register_subscription:
            return None
        assert self.monitor is not None and params.name is not None and organization_id
        return self.monitor.register_when_started(params.name, organization_id)

    async def _cached_image(
        self,
        params: CreateVmParams,
        provider: ContainerProvider | None,
        run_logger: RunLogger | None,
        token: CancellationToken | None,
    ) -> tuple[Path, str | None]:
        """Cache path of a catalog image, downloading it when needed.

        Returns the path and, when a download happened, the session's organization id.
        """
        image = params.catalog_image
        image_sha = get_image_sha(provider, image)
        cache_path = self.image_cache.get_path(image)

        if not params.force_download and await aiofiles.os.path.isfile(cache_path):
            logger.info("Using cached image", extra={"image": image, "path": str(cache_path)})
            return cache_path, None

        async with await self._authenticate() as client:
            if run_logger is not None:
                run_logger.log(f"Downloading {image}")
            await pull_image(
                client,
                image_sha,
                cache_path,
                progress=progress_reporter(run_logger),
                token=token,
                chunk_size=self.settings.download_chunk_size,
            )
            return cache_path, client.organization_id

    async def _create_vm(
        self,
        params: CreateVmParams,
        image_path: Path,
        provider: ContainerProvider | None,
        run_logger: RunLogger | None,
        token: CancellationToken | None,
    ) -> None:
        logger.info(
            "Creating machine",
            extra={
                "machine": params.name,
                "image_path": str(image_path),
                "provider": provider.value if provider else None,
            },
        )
        try:
            await self.macadam.create_vm(
                image_path=image_path,
                username=constants.DEFAULT_USERNAME,
                name=params.name,
                ssh_identity_path=params.ssh_identity_path,
                provider=provider,
                run_logger=run_logger,
                token=token,
            )
        except BackendCommandError as e:
            raise VmCreationError(
                e.composed_message(),
                {"machine": params.name, "provider": provider.value if provider else None},
            ) from e
