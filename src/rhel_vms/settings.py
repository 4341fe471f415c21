"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from rhel_vms import constants
from rhel_vms.platform_utils import get_data_dir


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with the
    RHEL_VMS_ prefix. Example: RHEL_VMS_POLL_INTERVAL_SECONDS=2
    """

    model_config = SettingsConfigDict(
        env_prefix="RHEL_VMS_",
        extra="ignore",
    )

    # Storage: cached images live in <storage_path>/images
    storage_path: Path = Field(default_factory=get_data_dir)

    # Backend
    macadam_path: Path | None = None
    """Explicit macadam executable; otherwise looked up in storage_path, then PATH."""
    backend_command_timeout_seconds: float = constants.BACKEND_COMMAND_TIMEOUT_SECONDS
    list_command_timeout_seconds: float = constants.LIST_COMMAND_TIMEOUT_SECONDS

    # Registry
    registry_url: str = constants.REGISTRY_BASE_URL
    http_timeout_seconds: float = constants.HTTP_TIMEOUT_SECONDS
    download_chunk_size: int = Field(default=constants.DOWNLOAD_CHUNK_SIZE, gt=0)

    # Reconciliation (read once when the monitor is built)
    poll_interval_seconds: float = Field(default=constants.POLL_INTERVAL_SECONDS, gt=0)

    # Subscription registration run inside new VMs
    activation_key: str = "rhel-vms"

    # Environment-backed auth provider used by the CLI
    access_token: str | None = None
    organization_id: str | None = None
