"""Error taxonomy for k3sctl.

Every failure raised by the provisioning code derives from ``K3sctlError``.
Whether an error is retried is decided by its class and ``retryable`` flag,
whether it ends the run is decided by ``fatal``.
"""
from typing import Optional

# Exit codes that mean the command itself is wrong, not the network
NON_TRANSIENT_EXIT_CODES = frozenset({2, 126, 127})


class K3sctlError(Exception):
    """Base class for all k3sctl errors."""
    retryable: bool = False
    fatal: bool = False


class ConfigurationError(K3sctlError):
    """Bad or missing settings, missing keys or tools, unmet preconditions."""
    fatal = True


class ConnectivityError(K3sctlError):
    """A node or the cluster API could not be reached."""

    def __init__(self, message: str, address: Optional[str] = None, retryable: bool = True):
        super().__init__(message)
        self.address = address
        self.retryable = retryable


class CommandError(K3sctlError):
    """A command exited non-zero."""

    def __init__(self, command: str, exit_code: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip().splitlines()
        tail = f": {detail[-1]}" if detail else ""
        super().__init__(f"Command exited with code {exit_code}{tail}")

    @property
    def retryable(self) -> bool:
        return self.exit_code not in NON_TRANSIENT_EXIT_CODES


class RemoteCommandError(CommandError):
    """A command run over SSH exited non-zero."""

    def __init__(self, command: str, exit_code: int, stdout: str = "", stderr: str = "",
                 address: Optional[str] = None):
        super().__init__(command, exit_code, stdout, stderr)
        self.address = address


class LocalCommandError(CommandError):
    """A command run on the operator machine exited non-zero."""


class CommandTimeout(RemoteCommandError):
    """A command did not finish within its timeout."""

    def __init__(self, command: str, timeout: float, address: Optional[str] = None):
        super().__init__(command, -1, stderr=f"timed out after {timeout}s", address=address)
        self.timeout = timeout

    @property
    def retryable(self) -> bool:
        return True


class PersistenceError(K3sctlError):
    """Progress could not be recorded durably."""
    fatal = True


class StateLockedError(PersistenceError):
    """Another k3sctl process holds the state directory."""


class VerificationTimeout(K3sctlError):
    """A bounded wait expired before its condition held."""

    def __init__(self, description: str, timeout: float):
        super().__init__(f"Timed out after {timeout:g}s waiting for {description}")
        self.description = description
        self.timeout = timeout


class PartialFailure(K3sctlError):
    """Some, but not all, units of a fan-out succeeded."""

    def __init__(self, failed: int, total: int):
        super().__init__(f"{failed} of {total} units failed")
        self.failed = failed
        self.total = total


class RetryExhausted(K3sctlError):
    """An operation kept failing after every allowed attempt."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class OperationCancelled(K3sctlError):
    """The operator interrupted the run."""
    fatal = True


class PreflightFailed(K3sctlError):
    """Preflight checks did not pass."""
    fatal = True

    def __init__(self, report):
        failed = ", ".join(c.name for c in report.failed_checks)
        super().__init__(f"Preflight failed: {failed}")
        self.report = report


class ClusterApiError(K3sctlError):
    """The Kubernetes API rejected a request."""


class SmokeTestFailed(K3sctlError):
    """A throwaway workload did not behave as a healthy cluster should."""
