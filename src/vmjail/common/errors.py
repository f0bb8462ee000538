"""Error types raised by vmjail operations."""

from __future__ import annotations

from typing import Optional, Sequence


class VmJailError(RuntimeError):
    """Base class for every failure surfaced to callers."""


class MissingDependency(VmJailError):
    """Raised when a required external tool or directory is absent."""


class MissingInput(VmJailError):
    """Raised when an identity, template, config, or artifact is absent."""


class MissingNetwork(VmJailError):
    """Raised when no provisioned network matches an identity."""


class MissingTemplate(MissingInput):
    """Raised when the VM config template file does not exist."""


class AmbiguousIdentity(VmJailError):
    """Raised when an identity prefix matches more than one network descriptor."""

    def __init__(self, prefix: str, matches: Sequence[str]) -> None:
        super().__init__(
            f"identity prefix '{prefix}' matches {len(matches)} networks: {', '.join(sorted(matches))}"
        )
        self.prefix = prefix
        self.matches = list(matches)


class NamespaceCreateError(VmJailError):
    """Raised when the OS refuses to create a network namespace."""


class ExternalToolFailure(VmJailError):
    """Raised when cnitool or the jailer exits non-zero."""

    def __init__(self, tool: str, returncode: Optional[int], stderr: str = "") -> None:
        detail = stderr.strip() or "no output"
        super().__init__(f"{tool} exited with status {returncode}: {detail}")
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr


class ShutdownUnresponsive(VmJailError):
    """Raised when the VM control channel rejects or fails the shutdown request."""


class ShutdownTimeout(VmJailError):
    """Raised when the VM process outlives the shutdown wait."""


class ShutdownCancelled(VmJailError):
    """Raised when a shutdown wait is abandoned through its cancel event."""


class OperationInProgress(VmJailError):
    """Raised when another operation already holds the identity."""


class HostOperationError(VmJailError):
    """Raised when a filesystem or OS call on the host fails.

    The original exception is kept as ``__cause__`` and its errno on ``errno``.
    """

    def __init__(self, action: str, path: object, cause: Exception) -> None:
        detail = getattr(cause, "strerror", None) or cause
        super().__init__(f"{action} {path} failed: {detail}")
        self.action = action
        self.path = path
        self.errno = getattr(cause, "errno", None)
