"""Data models for rhel-vms."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ContainerProvider(str, Enum):
    """Hypervisor backends macadam can target. Absence (None) means native."""

    APPLEHV = "applehv"
    WSL = "wsl"
    HYPERV = "hyperv"


class ConnectionStatus(str, Enum):
    """Status of a machine connection, also used for the provider as a whole."""

    UNKNOWN = "unknown"
    INSTALLED = "installed"
    CONFIGURING = "configuring"
    CONFIGURED = "configured"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    READY = "ready"


class VmDetails(BaseModel):
    """One entry of ``macadam list --format json``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(default="", alias="Name")
    image: str = Field(default="", alias="Image")
    cpus: int | str = Field(default=0, alias="CPUs")
    memory: int | str = Field(default="0", alias="Memory")
    disk_size: int | str = Field(default="0", alias="DiskSize")
    running: bool = Field(default=False, alias="Running")
    starting: bool = Field(default=False, alias="Starting")
    port: int = Field(default=0, alias="Port")
    remote_username: str = Field(default="", alias="RemoteUsername")
    identity_path: str = Field(default="", alias="IdentityPath")
    vm_type: str = Field(default="", alias="VMType")

    @property
    def key(self) -> str:
        """Identity used for status/connection tables: the name when exposed, else the image.

        Not qualified by provider. When WSL and Hyper-V both list a machine with
        the same name, the monitor keeps the first listing (WSL).
        """
        return self.name or self.image


class MachineListOutput(BaseModel):
    """Machines from one or more providers plus accumulated, non-fatal error text."""

    machines: list[VmDetails] = Field(default_factory=list)
    error: str = ""


@dataclass(frozen=True)
class MachineInfo:
    """Numeric, provider-validated view of a machine, refreshed every cycle."""

    name: str
    image: str
    cpus: int
    memory: int
    disk_size: int
    port: int
    remote_username: str
    identity_path: str
    vm_type: ContainerProvider | None

    @property
    def key(self) -> str:
        return self.name or self.image


@dataclass(frozen=True)
class DownloadProgress:
    """Bytes written so far; total is None when the server sent no Content-Length."""

    downloaded: int
    total: int | None

    @property
    def percent(self) -> float | None:
        if not self.total:
            return None
        return min(100.0, self.downloaded * 100.0 / self.total)


@dataclass(frozen=True)
class BinaryInfo:
    """Where the macadam executable lives and which version it is."""

    path: str
    version: str
    installation_source: Literal["extension", "external"]
