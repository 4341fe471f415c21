"""Windows hypervisor capability probes.

macadam can run machines on WSL2 or Hyper-V on Windows. Which of the two is
usable decides the provider set the reconciliation loop lists and the
provider a new machine is created on. Off Windows both probes return False.

Results are cached for a short time so that a reconciliation cycle every few
seconds does not spawn PowerShell every time, while a user who enables WSL
still gets picked up without restarting.
"""

import asyncio
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from rhel_vms import constants
from rhel_vms._logging import get_logger
from rhel_vms.platform_utils import HostOS, ProcessWrapper, detect_host_os
from rhel_vms.resource_cleanup import cleanup_process

logger = get_logger(__name__)

# Label/value separators `wsl --version` uses depending on the system language
_COLONS = (":", "：", "﹕")

_PS_IS_USER_ADMIN = (
    "$null -ne (Get-LocalGroupMember -SID S-1-5-32-544 | "
    "Where-Object Name -eq \"$env:USERDOMAIN\\$env:USERNAME\")"
)
_PS_IS_ELEVATED = (
    "([Security.Principal.WindowsPrincipal][Security.Principal.WindowsIdentity]::GetCurrent())"
    ".IsInRole([Security.Principal.WindowsBuiltInRole]::Administrator)"
)
_PS_IS_HYPERV_INSTALLED = "(Get-WindowsOptionalFeature -Online -FeatureName Microsoft-Hyper-V).State -eq 'Enabled'"
_PS_IS_HYPERV_RUNNING = "(Get-Service vmms).Status -eq 'Running'"


@dataclass(frozen=True)
class ProbeResult:
    exit_code: int
    stdout: bytes
    stderr: bytes


# ============================================================================
# Output parsing
# ============================================================================


def normalize_wsl_output(data: bytes | str) -> str:
    """Decode wsl.exe output, which is UTF-16 unless WSL_UTF8 is honored, and drop NUL bytes."""
    if isinstance(data, bytes):
        text = data.decode("utf-16-le", errors="ignore") if b"\x00" in data else data.decode(errors="ignore")
    else:
        text = data
    return text.replace("\x00", "").lstrip("\ufeff")


def _index_of_colon(line: str) -> int:
    positions = [i for i in (line.find(colon) for colon in _COLONS) if i >= 0]
    return min(positions) if positions else -1


def parse_wsl_version(output: str) -> str | None:
    """WSL version from the first line of `wsl --version` (``WSL version: 1.2.5.0``).

    The label is localized, so only its "wsl" part is checked.
    """
    lines = output.splitlines()
    if not lines:
        return None
    line = lines[0]
    colon = _index_of_colon(line)
    if colon < 0 or "wsl" not in line[:colon].lower():
        return None
    return line[colon + 1 :].strip() or None


def version_at_least(version: str, minimum: tuple[int, ...]) -> bool:
    parts: list[int] = []
    for piece in version.split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        if not digits:
            break
        parts.append(int(digits))
    if not parts:
        return False
    return tuple(parts) >= minimum


# ============================================================================
# Probes
# ============================================================================


async def _run_probe(*args: str, env: dict[str, str] | None = None) -> ProbeResult | None:
    """Run a probe command; None when it cannot be spawned or does not finish in time."""
    try:
        proc = ProcessWrapper(
            await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **env} if env else None,
            )
        )
    except OSError as e:
        logger.debug("Probe command failed to run", extra={"command": args[0], "error": str(e)})
        return None
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=constants.PROBE_TIMEOUT_SECONDS)
    except TimeoutError:
        logger.debug("Probe command timed out", extra={"command": args[0]})
        await cleanup_process(proc, args[0], "probe")
        return None
    return ProbeResult(proc.returncode if proc.returncode is not None else -1, stdout, stderr)


async def _powershell_true(script: str) -> bool:
    result = await _run_probe("powershell.exe", "-NoProfile", "-NonInteractive", "-Command", script)
    if result is None or result.exit_code != 0:
        return False
    return result.stdout.decode(errors="ignore").strip().lower() == "true"


class CapabilityProbe:
    """WSL / Hyper-V availability with a per-instance time-bounded cache.

    Locks are created lazily so the probe can be built outside an event loop.
    """

    def __init__(self, host_os: HostOS | None = None, cache_seconds: float = 60.0) -> None:
        self.host_os = host_os or detect_host_os()
        self.cache_seconds = cache_seconds
        self._cache: dict[str, tuple[float, bool]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def _cached(self, name: str) -> bool | None:
        entry = self._cache.get(name)
        if entry is None or time.monotonic() - entry[0] > self.cache_seconds:
            return None
        return entry[1]

    def invalidate(self) -> None:
        self._cache.clear()

    async def _probe(self, name: str, check: Callable[[], Awaitable[bool]]) -> bool:
        if self.host_os != HostOS.WINDOWS:
            return False
        cached = self._cached(name)
        if cached is not None:
            return cached
        async with self._lock(name):
            cached = self._cached(name)
            if cached is not None:
                return cached
            try:
                value = await check()
            except Exception:
                logger.exception("Capability probe failed", extra={"probe": name})
                value = False
            self._cache[name] = (time.monotonic(), value)
            logger.debug("Capability probed", extra={"probe": name, "available": value})
            return value

    async def is_wsl_enabled(self) -> bool:
        """WSL >= 1.2.5 is installed, WSL2 is usable and no reboot is pending."""
        return await self._probe("wsl", self._check_wsl)

    async def is_hyperv_enabled(self) -> bool:
        """User is admin, process is elevated, Hyper-V is installed and vmms runs."""
        return await self._probe("hyperv", self._check_hyperv)

    async def _check_wsl(self) -> bool:
        result = await _run_probe("wsl", "--version")
        if result is None or result.exit_code != 0:
            return False
        version = parse_wsl_version(normalize_wsl_output(result.stdout))
        if version is None or not version_at_least(version, constants.WSL_MIN_VERSION):
            logger.debug("WSL version too old or unknown", extra={"version": version})
            return False

        present = await _run_probe("wsl", "--set-default-version", "2", env={"WSL_UTF8": "1"})
        if present is None or present.exit_code != 0 or not normalize_wsl_output(present.stdout).strip():
            return False

        return not await self._is_reboot_needed()

    async def _is_reboot_needed(self) -> bool:
        result = await _run_probe("wsl", "-l", env={"WSL_UTF8": "1"})
        if result is None or result.exit_code == 0:
            return False
        output = normalize_wsl_output(result.stdout)
        if constants.WSL_REBOOT_REQUIRED_MARKER in output:
            logger.info("WSL is installed but a reboot is required")
            return True
        return False

    async def _check_hyperv(self) -> bool:
        for script in (_PS_IS_USER_ADMIN, _PS_IS_ELEVATED, _PS_IS_HYPERV_INSTALLED, _PS_IS_HYPERV_RUNNING):
            if not await _powershell_true(script):
                return False
        return True
