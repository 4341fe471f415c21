"""Small helpers shared by the backend adapter, the monitor and the factory."""

from __future__ import annotations

from typing import Any

from rhel_vms.models import ContainerProvider


def get_error_message(err: Any) -> str:
    """Best-effort human readable message for anything raised or returned as an error.

    Objects with a ``message`` attribute win, then plain strings, then the
    str() of exceptions. Anything else yields an empty string.
    """
    message = getattr(err, "message", None)
    if message is not None:
        return str(message)
    if isinstance(err, str):
        return err
    if isinstance(err, BaseException):
        return str(err)
    return ""


def verify_container_provider(value: Any) -> ContainerProvider | None:
    """Normalize a provider tag; anything outside the known set becomes None (native)."""
    if isinstance(value, ContainerProvider):
        return value
    try:
        return ContainerProvider(value)
    except (ValueError, TypeError):
        return None


def to_number(value: int | str | None) -> int:
    """Coerce a numeric field reported as string by macadam. Unparseable values map to 0."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(float(value.strip()))
    except ValueError:
        return 0
