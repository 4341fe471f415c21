"""Exception hierarchy for rhel-vms.

All exceptions inherit from RhelVmError.

Hierarchy:
    RhelVmError (base)
    ├── TransientError (retryable marker base)
    │   └── DownloadCancelledError     ← image download canceled by the user
    ├── PermanentError (non-retryable marker base)
    │   ├── AuthenticationError        ← no SSO session available
    │   ├── UnsupportedProviderError   ← no catalog entry for provider/arch/version
    │   ├── UnknownImageError          ← image name not in the cache table
    │   ├── VmConfigError              ← invalid creation parameters
    │   ├── VmCreationError            ← macadam init failed (composed message)
    │   └── BackendNotFoundError       ← macadam executable missing/malformed
    ├── BackendCommandError            ← a macadam invocation failed
    └── RegistrationError              ← subscription registration in the VM failed

Transfer failures during an image download (network, HTTP status, disk) are
not wrapped: httpx.HTTPError and OSError reach the caller unchanged.
"""

from __future__ import annotations

from typing import Any


class RhelVmError(Exception):
    """Base exception for all rhel-vms errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(RhelVmError):
    """Base for errors where re-triggering the same action may succeed."""


class PermanentError(RhelVmError):
    """Base for errors that won't succeed without a configuration change."""


# =============================================================================
# Image acquisition
# =============================================================================


class AuthenticationError(PermanentError):
    """No identity session could be obtained (user declined or not configured)."""


class UnsupportedProviderError(PermanentError):
    """The requested provider/architecture/version has no image in the catalog."""


class UnknownImageError(PermanentError):
    """Cache lookup for an image name that is not in the known-name table."""


class DownloadCancelledError(TransientError):
    """Image download was canceled; the partial file has been removed."""


# =============================================================================
# Backend
# =============================================================================


class BackendNotFoundError(PermanentError):
    """The macadam executable could not be found or reported a malformed version."""


class BackendCommandError(RhelVmError):
    """A macadam invocation returned non-zero or could not be run.

    Attributes:
        name: Short error name (e.g. the failing command)
        stderr: Standard error captured from the process
        stdout: Standard output captured from the process
        exit_code: Process exit code (None if the process never ran)
    """

    def __init__(
        self,
        message: str,
        *,
        name: str = "",
        stderr: str = "",
        stdout: str = "",
        exit_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"command": name, "exit_code": exit_code})
        super().__init__(message, ctx)
        self.name = name
        self.stderr = stderr
        self.stdout = stdout
        self.exit_code = exit_code

    def composed_message(self) -> str:
        """Name, message and stderr, each present component on its own line."""
        return "".join(f"{part}\n" for part in (self.name, self.message, self.stderr) if part)


class VmConfigError(PermanentError):
    """Creation parameters are inconsistent (e.g. local image without a path)."""


class VmCreationError(PermanentError):
    """VM creation failed in the backend.

    The message is the composed name/message/stderr text of the underlying
    BackendCommandError, which is kept as __cause__.
    """


class RegistrationError(RhelVmError):
    """Registering a VM against the subscription service failed."""
