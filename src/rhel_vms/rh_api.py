"""Client for the Red Hat subscription management API (image downloads)."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator
from typing import Self

import httpx

from rhel_vms import constants


class Images:
    """``/images`` endpoints."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @contextlib.asynccontextmanager
    async def download_image_using_sha(self, checksum: str) -> AsyncIterator[httpx.Response]:
        """Open the image download as a byte stream.

        The server answers with a redirect to the content store; the body is
        not read until the caller iterates it.

        Raises:
            httpx.HTTPStatusError: Non-2xx answer (after redirects)
            httpx.HTTPError: Network failure
        """
        url = constants.IMAGE_DOWNLOAD_PATH.format(checksum=checksum)
        async with self._client.stream("GET", url, follow_redirects=True) as response:
            response.raise_for_status()
            yield response


class SubscriptionManagerClient:
    """Authenticated API client bound to one session's bearer token.

    Usage:
        async with SubscriptionManagerClient(base_url, token) as client:
            async with client.images.download_image_using_sha(sha) as response:
                async for chunk in response.aiter_bytes():
                    ...
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        organization_id: str | None = None,
        timeout: float = constants.HTTP_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.organization_id = organization_id
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self.images = Images(self._client)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object
    ) -> None:
        await self.aclose()
