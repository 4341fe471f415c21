"""Adapter over the macadam command line.

Every operation is one macadam invocation. The hypervisor backend is selected
per call through the CONTAINERS_MACHINE_PROVIDER environment variable; no
provider means the native Linux backend.

    macadam list --format json
    macadam init <image> [--name N] [--username U] [--ssh-identity-path P]
    macadam start <name>
    macadam stop <name>
    macadam rm -f <name>
    macadam ssh <name> <command> [args...]

Output of create/start/stop/rm/ssh is streamed line by line to the caller's
RunLogger while the command runs, and also kept so a failure can report it.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles.os
from pydantic import TypeAdapter, ValidationError

from rhel_vms import constants
from rhel_vms._logging import get_logger
from rhel_vms.exceptions import BackendCommandError, BackendNotFoundError
from rhel_vms.models import BinaryInfo, ContainerProvider, MachineListOutput, VmDetails
from rhel_vms.platform_utils import HostArch, HostOS, ProcessWrapper, detect_host_arch, detect_host_os
from rhel_vms.resource_cleanup import cleanup_process
from rhel_vms.subprocess_utils import drain_subprocess_output
from rhel_vms.utils import get_error_message

if TYPE_CHECKING:
    from rhel_vms.host import CancellationToken
    from rhel_vms.run_logger import RunLogger
    from rhel_vms.settings import Settings

logger = get_logger(__name__)

_VM_LIST = TypeAdapter(list[VmDetails])

_OS_NAMES = {HostOS.LINUX: "linux", HostOS.MACOS: "darwin", HostOS.WINDOWS: "windows"}
_ARCH_NAMES = {HostArch.X86_64: "amd64", HostArch.AARCH64: "arm64"}


@dataclass(frozen=True)
class CommandResult:
    """Captured output of a finished macadam invocation."""

    stdout: str
    stderr: str
    exit_code: int


class Macadam:
    """Runs macadam commands for one storage directory.

    Usage:
        macadam = Macadam(settings)
        await macadam.init()
        output = await macadam.list_vms(ContainerProvider.WSL)
    """

    def __init__(
        self,
        settings: Settings,
        *,
        host_os: HostOS | None = None,
        host_arch: HostArch | None = None,
    ) -> None:
        self._settings = settings
        self._host_os = host_os or detect_host_os()
        self._host_arch = host_arch or detect_host_arch()
        self._executable: Path | None = None

    # ------------------------------------------------------------------
    # Executable resolution
    # ------------------------------------------------------------------

    def get_executable_name(self) -> str:
        """Release asset name for this host, e.g. ``macadam-darwin-arm64``."""
        os_name = _OS_NAMES.get(self._host_os, "unknown")
        arch = _ARCH_NAMES.get(self._host_arch, "unknown")
        ext = ".exe" if self._host_os == HostOS.WINDOWS else ""
        return f"macadam-{os_name}-{arch}{ext}"

    @property
    def _bundled_path(self) -> Path:
        return Path(self._settings.storage_path) / self.get_executable_name()

    async def get_executable(self) -> Path:
        """Locate macadam: explicit setting, then the storage directory, then PATH.

        Raises:
            BackendNotFoundError: No candidate exists
        """
        explicit = self._settings.macadam_path
        if explicit is not None:
            if await aiofiles.os.path.isfile(explicit):
                return Path(explicit)
            raise BackendNotFoundError(
                f"macadam executable {explicit} does not exist",
                {"path": str(explicit)},
            )

        bundled = self._bundled_path
        if await aiofiles.os.path.isfile(bundled):
            return bundled

        found = shutil.which(self.get_executable_name())
        if found:
            return Path(found)

        raise BackendNotFoundError(
            f"{self.get_executable_name()} not found",
            {"storage_path": str(self._settings.storage_path)},
        )

    async def get_installed_version(self, executable: Path | None = None) -> str:
        """Version reported by ``<exe> --version`` (``"<exe-name> version X"``).

        Raises:
            BackendNotFoundError: Output does not have the expected prefix
            BackendCommandError: The executable could not be run
        """
        if executable is None:
            executable = await self.get_executable()
        result = await self._run(
            ["--version"],
            executable=executable,
            timeout=self._settings.list_command_timeout_seconds,
        )
        prefix = f"{self.get_executable_name()} version"
        if not result.stdout.startswith(prefix):
            raise BackendNotFoundError("malformed macadam output", {"stdout": result.stdout[:200]})
        return result.stdout[len(prefix) :].strip()

    async def get_binary_info(self) -> BinaryInfo:
        executable = await self.get_executable()
        version = await self.get_installed_version(executable)
        source = "extension" if executable.resolve() == self._bundled_path.resolve() else "external"
        return BinaryInfo(path=str(executable), version=version, installation_source=source)

    async def init(self) -> BinaryInfo:
        """Resolve and validate the executable once; later calls reuse it.

        Raises:
            BackendNotFoundError: macadam is missing or reports a malformed version
        """
        info = await self.get_binary_info()
        self._executable = Path(info.path)
        logger.info(
            "macadam ready",
            extra={"path": info.path, "version": info.version, "source": info.installation_source},
        )
        return info

    async def _require_executable(self) -> Path:
        if self._executable is None:
            self._executable = await self.get_executable()
        return self._executable

    # ------------------------------------------------------------------
    # Machine operations
    # ------------------------------------------------------------------

    async def list_vms(self, provider: ContainerProvider | None = None) -> MachineListOutput:
        """Machines of one provider. Failures come back as error text, never raised."""
        try:
            result = await self._run(
                ["list", "--format", "json"],
                provider=provider,
                timeout=self._settings.list_command_timeout_seconds,
            )
            machines = _VM_LIST.validate_json(result.stdout or "[]")
        except BackendCommandError as e:
            return MachineListOutput(error=e.composed_message())
        except (BackendNotFoundError, ValidationError) as e:
            return MachineListOutput(error=get_error_message(e))
        return MachineListOutput(machines=machines)

    async def create_vm(
        self,
        *,
        image_path: Path,
        username: str = constants.DEFAULT_USERNAME,
        name: str | None = None,
        ssh_identity_path: Path | None = None,
        provider: ContainerProvider | None = None,
        run_logger: RunLogger | None = None,
        token: CancellationToken | None = None,
    ) -> CommandResult:
        args = ["init", str(image_path)]
        if name:
            args += ["--name", name]
        if username:
            args += ["--username", username]
        if ssh_identity_path is not None:
            args += ["--ssh-identity-path", str(ssh_identity_path)]
        return await self._run(
            args,
            provider=provider,
            run_logger=run_logger,
            token=token,
            context_id=name or str(image_path),
        )

    async def start_vm(
        self,
        name: str,
        provider: ContainerProvider | None = None,
        run_logger: RunLogger | None = None,
    ) -> CommandResult:
        return await self._run(["start", name], provider=provider, run_logger=run_logger, context_id=name)

    async def stop_vm(
        self,
        name: str,
        provider: ContainerProvider | None = None,
        run_logger: RunLogger | None = None,
    ) -> CommandResult:
        return await self._run(["stop", name], provider=provider, run_logger=run_logger, context_id=name)

    async def remove_vm(
        self,
        name: str,
        provider: ContainerProvider | None = None,
        run_logger: RunLogger | None = None,
    ) -> CommandResult:
        return await self._run(["rm", "-f", name], provider=provider, run_logger=run_logger, context_id=name)

    async def execute_command(
        self,
        name: str,
        command: str,
        args: Sequence[str] = (),
        provider: ContainerProvider | None = None,
        run_logger: RunLogger | None = None,
    ) -> CommandResult:
        """Run command inside the machine over ssh."""
        return await self._run(
            ["ssh", name, command, *args],
            provider=provider,
            run_logger=run_logger,
            context_id=name,
        )

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    def _env(self, provider: ContainerProvider | None) -> dict[str, str]:
        env = os.environ.copy()
        if provider is not None:
            env[constants.CONTAINER_PROVIDER_ENV] = provider.value
        return env

    async def _run(
        self,
        args: Sequence[str],
        *,
        executable: Path | None = None,
        provider: ContainerProvider | None = None,
        run_logger: RunLogger | None = None,
        token: CancellationToken | None = None,
        timeout: float | None = None,
        context_id: str = "",
    ) -> CommandResult:
        """Run one macadam invocation to completion.

        Raises:
            BackendCommandError: Non-zero exit, timeout, cancellation, or spawn failure
            BackendNotFoundError: No executable could be located
        """
        if executable is None:
            executable = await self._require_executable()
        if timeout is None:
            timeout = self._settings.backend_command_timeout_seconds
        command = f"{constants.MACADAM_CLI_NAME} {args[0]}"
        context_id = context_id or (provider.value if provider else "native")

        if token is not None and token.is_cancellation_requested:
            raise BackendCommandError("command canceled", name=command, context={"context_id": context_id})

        logger.debug(
            "Running macadam",
            extra={"argv": list(args), "provider": provider.value if provider else None, "context_id": context_id},
        )
        try:
            proc = ProcessWrapper(
                await asyncio.create_subprocess_exec(
                    str(executable),
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=self._env(provider),
                )
            )
        except OSError as e:
            raise BackendCommandError(
                f"unable to run {executable}: {e}",
                name=command,
                context={"context_id": context_id},
            ) from e

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        def on_stdout(line: str) -> None:
            stdout_lines.append(line)
            if run_logger is not None:
                run_logger.log(line)

        def on_stderr(line: str) -> None:
            stderr_lines.append(line)
            if run_logger is not None:
                run_logger.warn(line)

        async def communicate() -> int:
            await drain_subprocess_output(
                proc,
                process_name=command,
                context_id=context_id,
                stdout_handler=on_stdout,
                stderr_handler=on_stderr,
            )
            return await proc.wait()

        def failure(message: str, exit_code: int | None = None) -> BackendCommandError:
            return BackendCommandError(
                message,
                name=command,
                stdout="\n".join(stdout_lines),
                stderr="\n".join(stderr_lines),
                exit_code=exit_code,
                context={"context_id": context_id},
            )

        task = asyncio.create_task(communicate(), name=f"macadam-{args[0]}-{context_id}")
        cancel_waiter = asyncio.create_task(token.wait()) if token is not None else None
        try:
            waiters = {task} if cancel_waiter is None else {task, cancel_waiter}
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if task not in done:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                await cleanup_process(proc, command, context_id)
                if cancel_waiter is not None and cancel_waiter in done:
                    raise failure("command canceled")
                raise failure(f"command timed out after {timeout}s")
            exit_code = task.result()
        except asyncio.CancelledError:
            task.cancel()
            await cleanup_process(proc, command, context_id)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if exit_code != 0:
            logger.debug(
                "macadam failed",
                extra={"command": command, "exit_code": exit_code, "context_id": context_id},
            )
            raise failure(f"Command execution failed with exit code {exit_code}", exit_code)
        return CommandResult(stdout="\n".join(stdout_lines), stderr="\n".join(stderr_lines), exit_code=exit_code)
