"""Logging setup for rhel-vms.

As a library, rhel_vms only attaches a NullHandler to its root logger; the
level may be preset with RHEL_VMS_LOG_LEVEL. The CLI calls configure_logging()
to get records on stderr:

    WARNING [2026-02-25 10:02:54] rhel_vms.machine_monitor - Listing machines failed (error=...)

Structured fields passed through ``extra=`` (machine, provider, path, ...)
are appended to the message as ``key=value`` pairs.

The monitor logs from the event loop every few seconds, so emission must not
block on a slow terminal. Records go through a bounded queue drained by a
listener thread; when the queue is full the record is dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "rhel_vms"

_LINE_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_PENDING_RECORDS = 4096

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}


def _level_from_env() -> int | None:
    name = os.environ.get("RHEL_VMS_LOG_LEVEL", "").strip().upper()
    level = logging.getLevelNamesMapping().get(name)
    return level or None


_root = logging.getLogger(LIBRARY_LOGGER_NAME)
_root.addHandler(logging.NullHandler())
if (_env_level := _level_from_env()) is not None:
    _root.setLevel(_env_level)


class _ExtraFormatter(logging.Formatter):
    """Standard line format followed by the record's extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS and not k.startswith("_")}
        if not fields:
            return line
        rendered = " ".join(f"{key}={value}" for key, value in fields.items())
        return f"{line} ({rendered})"


class _StderrSink(logging.Handler):
    """Writes formatted records with click so color is dropped when stderr is not a terminal."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(_ExtraFormatter(_LINE_FORMAT, _DATE_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Hands records to a listener thread and never waits for room in the queue."""

    def __init__(self) -> None:
        pending: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_MAX_PENDING_RECORDS)
        super().__init__(pending)
        self.listener = logging.handlers.QueueListener(pending, _StderrSink())
        self.listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the sink formats the original record, extra fields included
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self.listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a rhel_vms module (pass ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send rhel_vms records to stderr. Safe to call more than once.

    Args:
        level: Level to set, overriding RHEL_VMS_LOG_LEVEL
        quiet: Only errors; wins over level
    """
    if not any(isinstance(handler, _DroppingQueueHandler) for handler in _root.handlers):
        _root.addHandler(_DroppingQueueHandler())

    if quiet:
        _root.setLevel(logging.ERROR)
    elif level is not None:
        _root.setLevel(level)
