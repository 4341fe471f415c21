"""Best-effort teardown for abandoned macadam processes and throwaway files.

Nothing here raises: failures are logged and reported as ``False`` so callers
already handling another error are not masked by a cleanup problem.
"""

from pathlib import Path

import aiofiles.os

from rhel_vms._logging import get_logger
from rhel_vms.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def _signal_and_wait(proc: ProcessWrapper, signal_name: str, grace: float) -> bool:
    if signal_name == "SIGTERM":
        await proc.terminate()
    else:
        await proc.kill()
    try:
        await proc.wait_with_timeout(timeout=grace)
    except TimeoutError:
        return False
    return True


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Stop ``proc``, escalating from SIGTERM to SIGKILL.

    ``name`` is the command line shown in logs (``macadam init``), ``context_id``
    the machine it was acting on. Returns False only when the process survives
    SIGKILL or signalling it fails unexpectedly.
    """
    if proc is None or proc.returncode is not None:
        return True

    steps = (("SIGTERM", term_timeout), ("SIGKILL", kill_timeout))
    try:
        for signal_name, grace in steps:
            logger.debug(f"{signal_name} -> {name}", extra={"context_id": context_id, "pid": proc.pid})
            if await _signal_and_wait(proc, signal_name, grace):
                return True
            logger.warning(
                f"{name} still running {grace}s after {signal_name}",
                extra={"context_id": context_id, "pid": proc.pid},
            )
    except ProcessLookupError:
        # Exited between the returncode check and the signal
        return True
    except Exception as e:
        logger.error(
            f"Could not stop {name}: {e}",
            extra={"context_id": context_id, "error_type": type(e).__name__},
            exc_info=True,
        )
        return False

    logger.error(f"{name} left unreaped", extra={"context_id": context_id, "pid": proc.pid})
    return False


async def cleanup_file(file_path: Path | None, context_id: str, description: str = "file") -> bool:
    """Remove ``file_path``; True when it is gone afterwards (or never existed)."""
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(
            f"Could not remove {description} {file_path}: {e}",
            extra={"context_id": context_id},
        )
        return False

    logger.debug(f"Removed {description} {file_path}", extra={"context_id": context_id})
    return True
