"""User-facing loggers for backend operations.

The host hands us loggers in two shapes: a plain logger passed to an action,
and a lifecycle context that carries one. Backend calls accept a single
logger, so LoggerDelegator combines any number of both into one and forwards
every call to each of them.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class RunLogger(Protocol):
    """Logger interface the host UI understands."""

    def log(self, *data: Any) -> None: ...

    def warn(self, *data: Any) -> None: ...

    def error(self, *data: Any) -> None: ...


@dataclass(frozen=True)
class LifecycleContext:
    """Context the host passes to start/stop actions."""

    log: RunLogger


class LoggerDelegator:
    """RunLogger forwarding to every non-None source it was built from."""

    def __init__(self, loggers: Iterable[RunLogger] = ()) -> None:
        self._loggers: list[RunLogger] = list(loggers)

    @classmethod
    def from_sources(
        cls,
        *,
        loggers: Iterable[RunLogger | None] = (),
        contexts: Iterable[LifecycleContext | None] = (),
    ) -> LoggerDelegator:
        """Combine optional contexts and loggers; contexts come first."""
        combined = [context.log for context in contexts if context is not None]
        combined.extend(logger for logger in loggers if logger is not None)
        return cls(combined)

    @property
    def loggers(self) -> list[RunLogger]:
        return list(self._loggers)

    def log(self, *data: Any) -> None:
        for logger in self._loggers:
            logger.log(*data)

    def warn(self, *data: Any) -> None:
        for logger in self._loggers:
            logger.warn(*data)

    def error(self, *data: Any) -> None:
        for logger in self._loggers:
            logger.error(*data)
