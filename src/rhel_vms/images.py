"""Image catalog: content hash of each downloadable image per version and provider."""

from __future__ import annotations

from typing import Final

from rhel_vms import constants
from rhel_vms.exceptions import UnsupportedProviderError
from rhel_vms.models import ContainerProvider
from rhel_vms.platform_utils import HostArch, detect_host_arch

_NATIVE_X64: Final[str] = "linux_native_x64"

# version -> provider key -> sha256 of the image served by the registry
IMAGES: Final[dict[str, dict[str, str]]] = {
    constants.IMAGE_RHEL_10: {
        ContainerProvider.APPLEHV.value: "24f35ffb80911f2687f0bcd4237f62e46c19a6f0445aacb951b77d1974130187",
        ContainerProvider.WSL.value: "1351d19fddb169ed01dc8815e9318027d27d7fe8c80e1844559ccd9c041ad9ca",
        _NATIVE_X64: "9d11248599b91178a600202412ad3ffc6f1c75c050d7b3c5484dc3f46fc06582",
    },
}


def get_image_sha(provider: ContainerProvider | None, version: str) -> str:
    """Content hash for (provider, version).

    A None provider means the native Linux backend, which only has x86_64
    images.

    Raises:
        UnsupportedProviderError: No catalog entry for the combination
    """
    if version not in IMAGES:
        raise UnsupportedProviderError(f"version {version} is not supported", {"version": version})
    by_provider = IMAGES[version]

    if provider is None:
        if detect_host_arch() != HostArch.X86_64:
            raise UnsupportedProviderError("linux non-x64 is not supported", {"version": version})
        return by_provider[_NATIVE_X64]

    if provider.value in by_provider:
        return by_provider[provider.value]
    raise UnsupportedProviderError(
        f"provider {provider.value} is not supported",
        {"provider": provider.value, "version": version},
    )
