"""Streaming image download into the cache.

The registry answers ``GET /images/{sha}/download`` with the raw image. Bytes
are written as they arrive, nothing buffered beyond one chunk, to
``<destination>.part``; the complete file is renamed onto the destination, so
the destination never holds a truncated image.

Cancellation:
    The transfer runs in its own task, raced against the cancellation token.
    A token set mid-transfer cancels the task even when it is blocked waiting
    on the network, the file handle is closed, and both the partial file and
    the destination are removed before DownloadCancelledError is raised. The
    same cleanup runs when the calling task itself is cancelled.

Failures:
    Network, HTTP status and disk errors propagate unchanged. The partial file
    is removed on a best-effort basis; an existing destination (a forced
    re-download that fails) is left untouched. Leftover ``.part`` files are
    swept by ImageCache.init.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os
import httpx

from rhel_vms import constants
from rhel_vms._logging import get_logger
from rhel_vms.exceptions import DownloadCancelledError
from rhel_vms.models import DownloadProgress
from rhel_vms.resource_cleanup import cleanup_file

if TYPE_CHECKING:
    from rhel_vms.host import CancellationToken
    from rhel_vms.rh_api import SubscriptionManagerClient

logger = get_logger(__name__)

ProgressSink = Callable[[DownloadProgress], None]

PARTIAL_SUFFIX = ".part"


def _content_length(response: httpx.Response) -> int | None:
    value = response.headers.get("content-length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class _ImageTransfer:
    """One download, written to a ``.part`` sibling and renamed into place when complete."""

    def __init__(
        self,
        client: SubscriptionManagerClient,
        image_sha: str,
        destination: Path,
        progress: ProgressSink | None,
        token: CancellationToken | None,
        chunk_size: int,
    ) -> None:
        self.client = client
        self.image_sha = image_sha
        self.destination = destination
        self.partial = destination.with_name(destination.name + PARTIAL_SUFFIX)
        self.progress = progress
        self.token = token
        self.chunk_size = chunk_size
        self.downloaded = 0

    async def run(self) -> None:
        async with self.client.images.download_image_using_sha(self.image_sha) as response:
            total = _content_length(response)
            logger.info(
                "Downloading image",
                extra={"image_sha": self.image_sha, "path": str(self.destination), "total_bytes": total},
            )
            async with aiofiles.open(self.partial, "wb") as f:
                async for chunk in response.aiter_bytes(self.chunk_size):
                    if self.token is not None and self.token.is_cancellation_requested:
                        raise DownloadCancelledError("image download canceled", {"image_sha": self.image_sha})
                    await f.write(chunk)
                    self.downloaded += len(chunk)
                    if self.progress is not None:
                        self.progress(DownloadProgress(self.downloaded, total))
        await aiofiles.os.replace(self.partial, self.destination)

    async def discard(self, reason: str, *, drop_destination: bool) -> None:
        """Remove the partial file, and the destination too when the download was canceled.

        The partial file is removed whether or not the open was seen to
        complete: the executor thread may have created it after the task
        was cancelled.
        """
        logger.info(
            "Removing partial image",
            extra={"image_sha": self.image_sha, "path": str(self.partial), "reason": reason},
        )
        await cleanup_file(self.partial, self.image_sha, "partial image download")
        if drop_destination:
            await cleanup_file(self.destination, self.image_sha, "image download")


async def _stop(task: asyncio.Task[None]) -> None:
    """Cancel task and wait until it has released the file and the HTTP stream."""
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await task


async def pull_image(
    client: SubscriptionManagerClient,
    image_sha: str,
    destination: Path,
    *,
    progress: ProgressSink | None = None,
    token: CancellationToken | None = None,
    chunk_size: int = constants.DOWNLOAD_CHUNK_SIZE,
) -> Path:
    """Download the image identified by image_sha to destination.

    Args:
        client: Authenticated registry client
        image_sha: Content hash from the image catalog
        destination: Target file (parent directories are created)
        progress: Called after every chunk written
        token: Cancellation token observed during the whole transfer
        chunk_size: Bytes per read

    Returns:
        destination

    Raises:
        DownloadCancelledError: token was set; destination does not exist
        httpx.HTTPError: Network or HTTP status failure
        OSError: Disk failure
    """
    destination = Path(destination)
    if token is not None and token.is_cancellation_requested:
        raise DownloadCancelledError("image download canceled", {"image_sha": image_sha})

    await aiofiles.os.makedirs(destination.parent, exist_ok=True)
    transfer = _ImageTransfer(client, image_sha, destination, progress, token, chunk_size)
    task = asyncio.create_task(transfer.run(), name=f"pull-image-{image_sha[:12]}")
    cancel_waiter = asyncio.create_task(token.wait()) if token is not None else None

    try:
        if cancel_waiter is None:
            await task
        else:
            await asyncio.wait({task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if not task.done():
                await _stop(task)
                raise DownloadCancelledError("image download canceled", {"image_sha": image_sha})
            task.result()
    except DownloadCancelledError:
        await transfer.discard("canceled", drop_destination=True)
        raise
    except asyncio.CancelledError:
        await _stop(task)
        await transfer.discard("caller cancelled", drop_destination=True)
        raise
    except (httpx.HTTPError, OSError) as e:
        logger.warning(
            "Image download failed",
            extra={"image_sha": image_sha, "error": str(e), "downloaded_bytes": transfer.downloaded},
        )
        await transfer.discard("failed", drop_destination=False)
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    logger.info(
        "Image downloaded",
        extra={"image_sha": image_sha, "path": str(destination), "bytes": transfer.downloaded},
    )
    return destination
