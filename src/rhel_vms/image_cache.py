"""On-disk cache of downloaded VM images.

Layout: ``<storage_path>/images/<mapped-name>[.ext]``. The mapped name is
fixed per catalog image; the extension depends on the host platform because
each hypervisor consumes a different image format (WSL imports a rootfs
tarball, applehv and the native backend boot a qcow2 disk).

Earlier releases cached a single image as ``images/image``; init() removes it
along with every other file whose name is not in the current table.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Final

import aiofiles.os

from rhel_vms import constants
from rhel_vms._logging import get_logger
from rhel_vms.exceptions import UnknownImageError
from rhel_vms.platform_utils import HostOS, detect_host_os
from rhel_vms.resource_cleanup import cleanup_file

logger = get_logger(__name__)

_CACHED_IMAGE_NAMES: Final[dict[str, str]] = {
    constants.IMAGE_RHEL_10: "rhel10",
}

_EXTENSIONS: Final[dict[HostOS, str]] = {
    HostOS.WINDOWS: ".tar.gz",
    HostOS.MACOS: ".qcow2",
    HostOS.LINUX: ".qcow2",
}


class ImageCache:
    """Maps catalog image names to stable paths under the cache directory.

    Usage:
        cache = ImageCache(settings.storage_path)
        await cache.init()
        path = cache.get_path("RHEL 10")
    """

    def __init__(self, storage_path: Path, host_os: HostOS | None = None) -> None:
        self.cache_dir = Path(storage_path).resolve() / constants.IMAGES_DIR_NAME
        ext = _EXTENSIONS.get(host_os or detect_host_os(), "")
        self._file_names: dict[str, str] = {image: f"{name}{ext}" for image, name in _CACHED_IMAGE_NAMES.items()}

    @property
    def known_images(self) -> list[str]:
        return list(self._file_names)

    @property
    def known_file_names(self) -> set[str]:
        return set(self._file_names.values())

    async def init(self) -> None:
        """Create the cache directory and drop everything the current table doesn't know.

        Idempotent. Not safe to run concurrently with itself or with a download.
        """
        await self._cleanup_legacy()
        await aiofiles.os.makedirs(self.cache_dir, exist_ok=True)
        removed = await self._collect_garbage()
        logger.info(
            "Image cache initialized",
            extra={"cache_dir": str(self.cache_dir), "removed": removed},
        )

    async def _cleanup_legacy(self) -> None:
        """Remove the single-image layout (``images/image``)."""
        legacy = self.cache_dir / constants.LEGACY_CACHED_IMAGE_NAME
        if legacy.name in self.known_file_names:
            return
        if await aiofiles.os.path.isfile(legacy):
            logger.info("Removing legacy cached image", extra={"path": str(legacy)})
            await cleanup_file(legacy, str(self.cache_dir), "legacy cached image")

    async def _collect_garbage(self) -> list[str]:
        known = self.known_file_names
        removed: list[str] = []
        for entry in await aiofiles.os.listdir(self.cache_dir):
            if entry in known:
                continue
            path = self.cache_dir / entry
            if await aiofiles.os.path.isdir(path) and not await aiofiles.os.path.islink(path):
                await asyncio.to_thread(shutil.rmtree, path, True)
                removed.append(entry)
            elif await cleanup_file(path, str(self.cache_dir), "stale cached image"):
                removed.append(entry)
        return removed

    def get_path(self, image: str) -> Path:
        """Deterministic cache path of a catalog image.

        Raises:
            UnknownImageError: The image is not in the known-name table
        """
        if image not in self._file_names:
            raise UnknownImageError(f"image {image} is unknown", {"image": image})
        return self.cache_dir / self._file_names[image]
