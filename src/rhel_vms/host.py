"""Boundary with the host application.

The host owns the UI: it renders provider and connection status, stores
per-connection configuration, holds authentication sessions and passes
cancellation tokens to long actions. The protocols below are everything the
core calls into. In-memory implementations back the CLI and the tests.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel

from rhel_vms._logging import get_logger
from rhel_vms.models import ConnectionStatus

if TYPE_CHECKING:
    from rhel_vms.models import MachineInfo
    from rhel_vms.run_logger import LifecycleContext, RunLogger
    from rhel_vms.settings import Settings

logger = get_logger(__name__)


# ============================================================================
# Cancellation
# ============================================================================


class CancellationToken:
    """Cooperative cancellation signal set by the UI, observed by long operations."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_cancellation_requested(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        """Block until cancel() is called."""
        await self._event.wait()


# ============================================================================
# Connections
# ============================================================================


class Disposable(Protocol):
    def dispose(self) -> None: ...


@dataclass(frozen=True)
class ConnectionLifecycle:
    """Actions the UI may invoke on a registered machine."""

    start: Callable[[LifecycleContext | None, RunLogger | None], Awaitable[None]]
    stop: Callable[[LifecycleContext | None, RunLogger | None], Awaitable[None]]
    delete: Callable[[RunLogger | None], Awaitable[None]]


@dataclass(frozen=True)
class VmProviderConnection:
    """UI-facing object representing one manageable VM."""

    name: str
    machine: MachineInfo
    status: Callable[[], ConnectionStatus]
    lifecycle: ConnectionLifecycle


class Provider(Protocol):
    """Provider entry shown by the host (one per extension)."""

    @property
    def status(self) -> ConnectionStatus: ...

    def update_status(self, status: ConnectionStatus) -> None: ...

    def register_vm_provider_connection(self, connection: VmProviderConnection) -> Disposable: ...


class Configuration(Protocol):
    async def update(self, key: str, value: Any) -> None: ...


class ConfigurationStore(Protocol):
    def get_configuration(self, section: str, connection: VmProviderConnection) -> Configuration: ...


class ContextSink(Protocol):
    """Host context values, used by the UI to toggle form fields."""

    def set_value(self, key: str, value: Any) -> None: ...


# ============================================================================
# Authentication
# ============================================================================


class AuthenticationSession(BaseModel):
    """Session issued by the identity provider."""

    access_token: str
    organization_id: str | None = None
    account: str | None = None


class AuthenticationProvider(Protocol):
    async def get_session(
        self,
        provider_id: str,
        scopes: Sequence[str],
        *,
        create_if_none: bool,
    ) -> AuthenticationSession | None: ...


# ============================================================================
# In-memory implementations
# ============================================================================


@dataclass
class _Registration:
    provider: InMemoryProvider
    connection: VmProviderConnection
    disposed: bool = False

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self.provider.connections.remove(self.connection)


@dataclass
class InMemoryProvider:
    """Provider that keeps registered connections in a list."""

    current_status: ConnectionStatus = ConnectionStatus.UNKNOWN
    connections: list[VmProviderConnection] = field(default_factory=list)

    @property
    def status(self) -> ConnectionStatus:
        return self.current_status

    def update_status(self, status: ConnectionStatus) -> None:
        if status != self.current_status:
            logger.debug("Provider status changed", extra={"from": self.current_status.value, "to": status.value})
        self.current_status = status

    def register_vm_provider_connection(self, connection: VmProviderConnection) -> Disposable:
        self.connections.append(connection)
        return _Registration(self, connection)

    def find(self, name: str) -> VmProviderConnection | None:
        """Connection for a machine key, or None."""
        for connection in self.connections:
            if connection.machine.key == name:
                return connection
        return None


@dataclass
class _SectionConfiguration:
    values: dict[str, Any]

    async def update(self, key: str, value: Any) -> None:
        self.values[key] = value


@dataclass
class InMemoryConfigurationStore:
    """Configuration keyed by (section, machine key)."""

    values: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)

    def get_configuration(self, section: str, connection: VmProviderConnection) -> Configuration:
        return _SectionConfiguration(self.values.setdefault((section, connection.machine.key), {}))


@dataclass
class InMemoryContext:
    values: dict[str, Any] = field(default_factory=dict)

    def set_value(self, key: str, value: Any) -> None:
        self.values[key] = value


class EnvironmentAuthenticationProvider:
    """Returns a session built from RHEL_VMS_ACCESS_TOKEN / RHEL_VMS_ORGANIZATION_ID.

    There is no interactive login outside the host; without a token no
    session exists.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def get_session(
        self,
        provider_id: str,
        scopes: Sequence[str],
        *,
        create_if_none: bool,
    ) -> AuthenticationSession | None:
        if not self._settings.access_token:
            logger.debug("No access token configured", extra={"provider_id": provider_id, "scopes": list(scopes)})
            return None
        return AuthenticationSession(
            access_token=self._settings.access_token,
            organization_id=self._settings.organization_id,
        )
