"""Pipe draining for macadam children and a done-callback for background tasks."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from rhel_vms._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from rhel_vms.platform_utils import ProcessWrapper

logger = get_logger(__name__)


def _debug_sink(process_name: str, stream_name: str, context_id: str) -> Callable[[str], None]:
    def sink(line: str) -> None:
        logger.debug(f"{process_name} {stream_name}: {line}", extra={"context_id": context_id})

    return sink


async def _pump(stream: asyncio.StreamReader, handler: Callable[[str], None]) -> None:
    async for raw in stream:
        # macadam prints UTF-8; anything else is progress noise
        line = raw.decode(errors="ignore").rstrip()
        if line:
            handler(line)


async def drain_subprocess_output(
    process: ProcessWrapper,
    *,
    process_name: str,
    context_id: str,
    stdout_handler: Callable[[str], None] | None = None,
    stderr_handler: Callable[[str], None] | None = None,
) -> None:
    """Feed each non-empty output line of ``process`` to a handler until both pipes close.

    Both pipes are read at the same time: ``macadam init`` reports copy progress
    on stderr, and a full stderr pipe would stall it while stdout is being read.
    Lines without a handler are logged at debug level.
    """
    streams = (
        (process.stdout, stdout_handler or _debug_sink(process_name, "stdout", context_id)),
        (process.stderr, stderr_handler or _debug_sink(process_name, "stderr", context_id)),
    )
    async with asyncio.TaskGroup() as tg:
        for stream, handler in streams:
            if stream is not None:
                tg.create_task(_pump(stream, handler))


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Done-callback for fire-and-forget tasks: an exception is logged, not lost."""
    if task.cancelled() or task.exception() is None:
        return
    logger.error(f"Task {task.get_name()} failed", exc_info=task.exception())
