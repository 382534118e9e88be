from typing import Optional


class LauncherError(Exception):
    """Base class for every error surfaced to the host."""


class InstallFailure(LauncherError):
    """
    The managed install could not be brought up to date.

    :param message: Human readable description.
    :param cause: The underlying network, proxy, registry or disk error.
    :param transient: True when an immediate retry has a chance of succeeding.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None, transient: bool = False) -> None:
        super().__init__(message)
        self.cause = cause
        self.transient = transient

    def __str__(self) -> str:
        base = super().__str__()
        if self.cause is not None:
            return f"{base} ({self.cause})"
        return base


class InstallCancelled(InstallFailure):
    """The install was abandoned because the session is shutting down or timed out."""


class VersionMismatch(LauncherError):
    """
    A pinned version is not installed and installing it failed.

    :param cause: The InstallFailure from the reinstall attempt.
    """

    def __init__(self, expected: str, installed: Optional[str], cause: Optional[InstallFailure] = None) -> None:
        message = f"Installed adapter version '{installed}' does not match pinned version '{expected}'."
        if cause is not None:
            message = f"{message} Reinstall failed: {cause}"
        super().__init__(message)
        self.expected = expected
        self.installed = installed
        self.cause = cause

    @property
    def transient(self) -> bool:
        return self.cause is not None and self.cause.transient


class BinaryNotFound(LauncherError):
    pass


class ProcessSpawnFailure(LauncherError):
    pass


class ProtocolStreamCorruption(LauncherError):
    """Non-protocol bytes were seen on the adapter's standard output."""


class ServerExitedFatally(LauncherError):
    def __init__(self, exit_code: Optional[int], restart_count: int) -> None:
        super().__init__(
            f"Adapter exited unexpectedly with code {exit_code} after {restart_count} restart(s)."
        )
        self.exit_code = exit_code
        self.restart_count = restart_count
