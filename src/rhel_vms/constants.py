"""Constants for rhel-vms configuration and wire formats."""

from typing import Final

# ============================================================================
# Identity provider / registry
# ============================================================================

AUTHENTICATION_PROVIDER_ID: Final[str] = "redhat.authentication-provider"
"""Host authentication provider that issues Red Hat SSO sessions."""

AUTHENTICATION_SCOPES: Final[tuple[str, ...]] = ("api.iam.registry_service_accounts", "api.console")
"""Scopes requested for every session (createIfNone semantics)."""

REGISTRY_BASE_URL: Final[str] = "https://api.access.redhat.com/management/v1/"
"""Base URL of the subscription management API serving image downloads."""

IMAGE_DOWNLOAD_PATH: Final[str] = "images/{checksum}/download"
"""Download endpoint, relative to REGISTRY_BASE_URL."""

DOWNLOAD_CHUNK_SIZE: Final[int] = 1024 * 1024
"""Bytes requested per chunk when streaming an image to disk."""

HTTP_TIMEOUT_SECONDS: Final[float] = 30.0
"""Connect/read timeout for registry requests (no total timeout on streams)."""

# ============================================================================
# Images
# ============================================================================

IMAGE_RHEL_10: Final[str] = "RHEL 10"
"""Catalog name of the RHEL 10 image."""

IMAGE_LOCAL: Final[str] = "local image on disk"
"""Selector meaning: use the explicit image path, skip cache and download."""

DEFAULT_IMAGE: Final[str] = IMAGE_RHEL_10

LEGACY_CACHED_IMAGE_NAME: Final[str] = "image"
"""Single-file cache layout of earlier releases (``<storage>/images/image``)."""

IMAGES_DIR_NAME: Final[str] = "images"

# ============================================================================
# Backend (macadam)
# ============================================================================

MACADAM_CLI_NAME: Final[str] = "macadam"
MACADAM_DISPLAY_NAME: Final[str] = "Macadam"
DEFAULT_USERNAME: Final[str] = "core"
"""Remote user created in every VM."""

CONTAINER_PROVIDER_ENV: Final[str] = "CONTAINERS_MACHINE_PROVIDER"
"""Environment variable selecting the macadam hypervisor backend."""

BACKEND_COMMAND_TIMEOUT_SECONDS: Final[float] = 600.0
"""Upper bound for a single macadam invocation (init may copy a large disk)."""

LIST_COMMAND_TIMEOUT_SECONDS: Final[float] = 30.0

# ============================================================================
# Reconciliation
# ============================================================================

POLL_INTERVAL_SECONDS: Final[float] = 5.0
"""Delay between two reconciliation cycles."""

WSL_HYPERV_ENABLED_KEY: Final[str] = "macadam.wslHypervEnabled"
"""Host context key set when both WSL and Hyper-V are usable."""

CONFIGURATION_SECTION: Final[str] = "macadam"
CONFIG_MACHINE_CPUS: Final[str] = "machine.cpus"
CONFIG_MACHINE_MEMORY: Final[str] = "machine.memory"
CONFIG_MACHINE_DISK_SIZE: Final[str] = "machine.diskSize"

# ============================================================================
# Creation parameter keys (as sent by the UI form)
# ============================================================================

PARAM_NAME: Final[str] = "macadam.factory.machine.name"
PARAM_IMAGE: Final[str] = "macadam.factory.machine.image"
PARAM_IMAGE_PATH: Final[str] = "macadam.factory.machine.image-path"
PARAM_FORCE_DOWNLOAD: Final[str] = "macadam.factory.machine.force-download"
PARAM_REGISTER: Final[str] = "macadam.factory.machine.register"
PARAM_WIN_PROVIDER: Final[str] = "macadam.factory.machine.win.provider"
PARAM_SSH_IDENTITY_PATH: Final[str] = "macadam.factory.machine.ssh-identity-path"

# ============================================================================
# Windows capability probes
# ============================================================================

WSL_MIN_VERSION: Final[tuple[int, ...]] = (1, 2, 5)
PROBE_TIMEOUT_SECONDS: Final[float] = 15.0
WSL_REBOOT_REQUIRED_MARKER: Final[str] = "Wsl/WSL_E_WSL_OPTIONAL_COMPONENT_REQUIRED"
