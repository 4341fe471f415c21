"""Host detection and the subprocess handle used for macadam and probe commands."""

import asyncio
import contextlib
import os
import platform
import sys
from enum import Enum, auto
from functools import cache
from pathlib import Path

import psutil


class HostOS(Enum):
    """Host operating system; decides which providers macadam can use."""

    LINUX = auto()
    MACOS = auto()  # applehv
    WINDOWS = auto()  # wsl, hyperv
    UNKNOWN = auto()


class HostArch(Enum):
    X86_64 = auto()
    AARCH64 = auto()
    UNKNOWN = auto()


_ARCH_ALIASES = {
    "x86_64": HostArch.X86_64,
    "amd64": HostArch.X86_64,
    "arm64": HostArch.AARCH64,
    "aarch64": HostArch.AARCH64,
}


@cache
def detect_host_os() -> HostOS:
    if psutil.MACOS:
        return HostOS.MACOS
    if psutil.WINDOWS:
        return HostOS.WINDOWS
    return HostOS.LINUX if psutil.LINUX else HostOS.UNKNOWN


@cache
def detect_host_arch() -> HostArch:
    return _ARCH_ALIASES.get(platform.machine().lower(), HostArch.UNKNOWN)


def get_data_dir() -> Path:
    """Per-user directory holding the image cache and a bundled macadam.

    ``~/Library/Application Support/rhel-vms`` on macOS, ``%LOCALAPPDATA%\\rhel-vms``
    on Windows, and the XDG data directory elsewhere.
    """
    home = Path.home()
    if sys.platform == "darwin":
        base = home / "Library" / "Application Support"
    elif sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA") or home / "AppData" / "Local")
    else:
        base = Path(os.environ.get("XDG_DATA_HOME") or home / ".local" / "share")
    return base / "rhel-vms"


class ProcessWrapper:
    """An asyncio child process that is signalled through psutil.

    psutil checks the process creation time before signalling, so a macadam
    child abandoned after a timeout is never confused with an unrelated
    process that reused its PID. Blocking psutil calls run in a thread.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        return self.async_proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.async_proc.stderr

    async def is_running(self) -> bool:
        if self.psutil_proc is None:
            return self.returncode is None
        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except psutil.Error:
            return False

    async def _send(self, method: str) -> None:
        if self.psutil_proc is None or not await self.is_running():
            # Not tracked by psutil; asyncio raises ProcessLookupError if already gone
            getattr(self.async_proc, method)()
            return
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            await asyncio.to_thread(getattr(self.psutil_proc, method))

    async def terminate(self) -> None:
        await self._send("terminate")

    async def kill(self) -> None:
        await self._send("kill")

    async def wait(self) -> int:
        return await self.async_proc.wait()

    async def communicate(self, input: bytes | None = None) -> tuple[bytes, bytes]:
        return await self.async_proc.communicate(input)

    async def wait_with_timeout(self, timeout: float) -> int | None:
        """Wait up to ``timeout`` seconds for exit; raises TimeoutError.

        Pipes nobody else is reading are drained so a child blocked on a full
        pipe can still exit.
        """
        if self.stdout is None and self.stderr is None:
            await asyncio.wait_for(self.wait(), timeout=timeout)
            return self.returncode
        try:
            await asyncio.wait_for(self.communicate(), timeout=timeout)
        except RuntimeError:
            # A reader task already owns the pipes
            await asyncio.wait_for(self.wait(), timeout=timeout)
        return self.returncode
