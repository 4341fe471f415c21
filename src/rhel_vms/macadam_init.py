"""One-shot backend initialization with completion callbacks."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from rhel_vms._logging import get_logger
from rhel_vms.macadam import Macadam
from rhel_vms.models import BinaryInfo

logger = get_logger(__name__)


class MacadamInitializer:
    """Runs Macadam.init() and tells interested parties when it has completed.

    Callbacks registered with on_initialized() run synchronously, in
    registration order, right after init() succeeds. A callback registered
    after that point runs immediately.
    """

    def __init__(self, macadam: Macadam) -> None:
        self.macadam = macadam
        self._initialized = False
        self._callbacks: list[Callable[[], None]] = []
        self._done: asyncio.Event | None = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _event(self) -> asyncio.Event:
        # Created lazily: asyncio.Event must belong to the running loop
        if self._done is None:
            self._done = asyncio.Event()
            if self._initialized:
                self._done.set()
        return self._done

    async def init(self) -> BinaryInfo:
        info = await self.macadam.init()
        self._initialized = True
        self._event().set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("macadam initialization callback failed")
        return info

    def on_initialized(self, callback: Callable[[], None]) -> None:
        if self._initialized:
            callback()
            return
        self._callbacks.append(callback)

    async def wait_initialized(self) -> None:
        await self._event().wait()
