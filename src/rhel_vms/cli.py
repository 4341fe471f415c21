"""Command-line interface for rhel-vms.

Usage:
    rhel-vms list                          # Machines of every active provider
    rhel-vms create --name rhel            # RHEL 10 from the registry (cached)
    rhel-vms create --image-path disk.qcow2 --name dev
    rhel-vms start rhel
    rhel-vms monitor                       # Follow status changes until Ctrl-C

Images are downloaded with the session from RHEL_VMS_ACCESS_TOKEN and
RHEL_VMS_ORGANIZATION_ID.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, NoReturn

import click
import httpx

from rhel_vms import RhelVmError, Settings, __version__
from rhel_vms._logging import configure_logging
from rhel_vms.config import CreateVmParams
from rhel_vms.exceptions import (
    AuthenticationError,
    BackendNotFoundError,
    DownloadCancelledError,
    VmCreationError,
)
from rhel_vms.extension import RhelVmExtension
from rhel_vms.host import InMemoryProvider, VmProviderConnection
from rhel_vms.machine_monitor import machine_status
from rhel_vms.models import ConnectionStatus, ContainerProvider
from rhel_vms.utils import to_number

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CLI_ERROR = 2
EXIT_BACKEND_ERROR = 125
EXIT_CANCELED = 130  # Matches SIGINT


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        *(f"  {line}" for line in message.rstrip("\n").splitlines() or [""]),
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


class EchoLogger:
    """RunLogger printing backend output to the terminal."""

    def log(self, *data: Any) -> None:
        click.echo(" ".join(str(d) for d in data))

    def warn(self, *data: Any) -> None:
        click.echo(click.style(" ".join(str(d) for d in data), fg="yellow"), err=True)

    def error(self, *data: Any) -> None:
        click.echo(click.style(" ".join(str(d) for d in data), fg="red"), err=True)


async def _guarded(action: Callable[[], Awaitable[int]]) -> int:
    """Run an action and map project errors to exit codes."""
    try:
        return await action()
    except AuthenticationError as e:
        click.echo(
            format_error(
                "Authentication required",
                e.message,
                ["Set RHEL_VMS_ACCESS_TOKEN (and RHEL_VMS_ORGANIZATION_ID to register machines)"],
            ),
            err=True,
        )
        return EXIT_ERROR
    except BackendNotFoundError as e:
        click.echo(
            format_error(
                "macadam not available",
                e.message,
                ["Install macadam on PATH or set RHEL_VMS_MACADAM_PATH"],
            ),
            err=True,
        )
        return EXIT_BACKEND_ERROR
    except VmCreationError as e:
        click.echo(format_error("Machine creation failed", e.message), err=True)
        return EXIT_BACKEND_ERROR
    except DownloadCancelledError:
        click.echo(format_error("Download canceled", "The partial image has been removed."), err=True)
        return EXIT_CANCELED
    except RhelVmError as e:
        click.echo(format_error(type(e).__name__, e.message), err=True)
        return EXIT_ERROR
    except httpx.HTTPError as e:
        click.echo(
            format_error("Image download failed", str(e), ["Retry with --force-download"]),
            err=True,
        )
        return EXIT_ERROR


def _run(action: Callable[[], Awaitable[int]]) -> NoReturn:
    try:
        exit_code = asyncio.run(_guarded(action))
    except KeyboardInterrupt:
        exit_code = EXIT_CANCELED
    sys.exit(exit_code)


async def _find_connection(extension: RhelVmExtension, name: str) -> VmProviderConnection | None:
    await extension.monitor.reconcile_once()
    provider = extension.provider
    assert isinstance(provider, InMemoryProvider)
    return provider.find(name)


# ============================================================================
# Commands
# ============================================================================


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="rhel-vms")
@click.pass_context
def main(ctx: click.Context, verbose: bool, quiet: bool) -> None:
    """Create and manage RHEL virtual machines with macadam."""
    configure_logging(level="DEBUG" if verbose else "WARNING", quiet=quiet)
    ctx.obj = Settings()


@main.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def list_command(settings: Settings, json_output: bool) -> NoReturn:
    """List machines of every active provider."""

    async def action() -> int:
        extension = RhelVmExtension(settings)
        listing = await extension.monitor.list_machines()
        if listing.error:
            click.echo(click.style(listing.error.rstrip("\n"), fg="yellow"), err=True)

        if json_output:
            click.echo(json.dumps([m.model_dump(by_alias=True) for m in listing.machines], indent=2))
            return EXIT_SUCCESS

        click.echo(f"{'NAME':<24} {'STATUS':<10} {'PROVIDER':<9} {'CPUS':>4} {'MEMORY':>8} {'DISK':>8}")
        for machine in listing.machines:
            click.echo(
                f"{machine.key:<24} {machine_status(machine).value:<10} {machine.vm_type or 'native':<9} "
                f"{to_number(machine.cpus):>4} {to_number(machine.memory):>8} {to_number(machine.disk_size):>8}"
            )
        return EXIT_SUCCESS

    _run(action)


@main.command("create")
@click.option("-n", "--name", help="Machine name")
@click.option("-i", "--image", help="Catalog image (default: RHEL 10) or an absolute image path")
@click.option("--image-path", type=click.Path(path_type=Path), help="Existing image file to boot")
@click.option("--force-download", is_flag=True, help="Download the image even when cached")
@click.option("--register", is_flag=True, help="Register with subscription-manager once started")
@click.option(
    "--provider",
    type=click.Choice([p.value for p in ContainerProvider], case_sensitive=False),
    help="Hypervisor override",
)
@click.option("--ssh-identity-path", type=click.Path(path_type=Path), help="SSH key for the core user")
@click.pass_obj
def create_command(
    settings: Settings,
    name: str | None,
    image: str | None,
    image_path: Path | None,
    force_download: bool,
    register: bool,
    provider: str | None,
    ssh_identity_path: Path | None,
) -> NoReturn:
    """Create a machine, downloading its image when needed."""
    params = CreateVmParams(
        name=name,
        image=image,
        image_path=image_path,
        force_download=force_download,
        register_subscription=register,
        win_provider=provider,
        ssh_identity_path=ssh_identity_path,
    )

    async def action() -> int:
        extension = RhelVmExtension(settings)
        await extension.activate(start_monitor=register)
        try:
            registration = await extension.factory.create(params, logger=EchoLogger())
            if registration is not None:
                click.echo(f"Waiting for {name} to start before registering it...")
                await registration
                click.echo(f"{name} registered")
        finally:
            await extension.deactivate()
        return EXIT_SUCCESS

    _run(action)


def _run_lifecycle(settings: Settings, name: str, action_name: str) -> NoReturn:
    async def action() -> int:
        extension = RhelVmExtension(settings)
        await extension.activate(start_monitor=False)
        connection = await _find_connection(extension, name)
        if connection is None:
            click.echo(format_error("Unknown machine", f"No machine named {name}"), err=True)
            return EXIT_CLI_ERROR
        run_logger = EchoLogger()
        if action_name == "start":
            await connection.lifecycle.start(None, run_logger)
        elif action_name == "stop":
            await connection.lifecycle.stop(None, run_logger)
        else:
            await connection.lifecycle.delete(run_logger)
        return EXIT_SUCCESS

    _run(action)


@main.command("start")
@click.argument("name")
@click.pass_obj
def start_command(settings: Settings, name: str) -> NoReturn:
    """Start a machine."""
    _run_lifecycle(settings, name, "start")


@main.command("stop")
@click.argument("name")
@click.pass_obj
def stop_command(settings: Settings, name: str) -> NoReturn:
    """Stop a machine."""
    _run_lifecycle(settings, name, "stop")


@main.command("rm")
@click.argument("name")
@click.pass_obj
def rm_command(settings: Settings, name: str) -> NoReturn:
    """Remove a machine."""
    _run_lifecycle(settings, name, "delete")


@main.command("monitor")
@click.pass_obj
def monitor_command(settings: Settings) -> NoReturn:
    """Run the reconciliation loop in the foreground and print status changes."""

    def on_change(key: str, status: ConnectionStatus) -> None:
        click.echo(f"{key}: {status.value}")

    async def action() -> int:
        extension = RhelVmExtension(settings)
        extension.monitor.add_listener(on_change)
        await extension.activate()
        try:
            await asyncio.Event().wait()
        finally:
            await extension.deactivate()
        return EXIT_SUCCESS

    _run(action)


if __name__ == "__main__":
    main()
