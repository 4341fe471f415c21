"""rhel-vms: create and track RHEL virtual machines through macadam.

Images are downloaded from the Red Hat registry by content hash and cached
on disk; machines are created with macadam on the host's hypervisor
(applehv on macOS, WSL2 or Hyper-V on Windows, native on Linux) and tracked
by a reconciliation loop that keeps the host UI's connections in sync.

Quick Start:
    ```python
    from rhel_vms import RhelVmExtension

    async with RhelVmExtension() as extension:
        await extension.factory.create({
            "macadam.factory.machine.name": "rhel",
            "macadam.factory.machine.image": "RHEL 10",
        })
    ```

Existing image file:
    ```python
    from rhel_vms import CreateVmParams

    params = CreateVmParams(image="local image on disk", image_path="/data/rhel.qcow2")
    await extension.factory.create(params)
    ```

Requirements:
    - macadam (macadam-<os>-<arch>) in the storage directory or on PATH
    - A Red Hat SSO session to download images
    - Python 3.12+
"""

from rhel_vms.config import CreateVmParams
from rhel_vms.exceptions import (
    AuthenticationError,
    BackendCommandError,
    BackendNotFoundError,
    DownloadCancelledError,
    PermanentError,
    RegistrationError,
    RhelVmError,
    TransientError,
    UnknownImageError,
    UnsupportedProviderError,
    VmConfigError,
    VmCreationError,
)
from rhel_vms.extension import RhelVmExtension
from rhel_vms.host import CancellationToken
from rhel_vms.models import ConnectionStatus, ContainerProvider, DownloadProgress, MachineInfo, VmDetails
from rhel_vms.run_logger import LifecycleContext, LoggerDelegator, RunLogger
from rhel_vms.settings import Settings

__all__ = [
    "AuthenticationError",
    "BackendCommandError",
    "BackendNotFoundError",
    "CancellationToken",
    "ConnectionStatus",
    "ContainerProvider",
    "CreateVmParams",
    "DownloadCancelledError",
    "DownloadProgress",
    "LifecycleContext",
    "LoggerDelegator",
    "MachineInfo",
    "PermanentError",
    "RegistrationError",
    "RhelVmError",
    "RhelVmExtension",
    "RunLogger",
    "Settings",
    "TransientError",
    "UnknownImageError",
    "UnsupportedProviderError",
    "VmConfigError",
    "VmCreationError",
    "VmDetails",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("rhel-vms")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
