"""Local command execution for operator-side tools (k3sup, brew, helm)."""
import logging
import shlex
import shutil
import subprocess
import time
from typing import Dict, List, Optional

from k3sctl.errors import CommandTimeout, ConfigurationError, LocalCommandError, OperationCancelled
from k3sctl.modules.k3s.models import CommandResult
from k3sctl.modules.k3s.retry import CancelToken

logger = logging.getLogger("k3sctl.shell")

_POLL_INTERVAL = 0.5


class LocalRunner:
    """Run commands on the operator machine."""

    def __init__(self, cancel: Optional[CancelToken] = None, default_timeout: float = 900):
        self.cancel = cancel or CancelToken()
        self.default_timeout = default_timeout

    @staticmethod
    def which(tool: str) -> Optional[str]:
        return shutil.which(tool)

    def require(self, tool: str) -> str:
        path = self.which(tool)
        if not path:
            raise ConfigurationError(f"Required command '{tool}' not found on PATH")
        return path

    def run(
        self,
        cmd: List[str],
        *,
        check: bool = True,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        sensitive: bool = False,
    ) -> CommandResult:
        """Run ``cmd`` and capture its output.

        Raises:
            ConfigurationError: The executable does not exist
            LocalCommandError: Non-zero exit with ``check`` set
            CommandTimeout: The command did not finish in time
            OperationCancelled: The run was cancelled
        """
        self.cancel.raise_if_cancelled()
        cmd_str = " ".join(shlex.quote(part) for part in cmd)
        timeout = timeout or self.default_timeout
        logger.debug(f"💻 Running: {cmd_str}")
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(f"Required command '{cmd[0]}' not found on PATH") from e

        deadline = time.monotonic() + timeout
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if self.cancel.cancelled:
                    proc.terminate()
                    proc.communicate()
                    logger.warning(f"⚠️ Terminated on cancel: {cmd_str}")
                    raise OperationCancelled(self.cancel.reason)
                if time.monotonic() > deadline:
                    proc.kill()
                    proc.communicate()
                    raise CommandTimeout(cmd_str, timeout)

        if not sensitive and stdout.strip():
            logger.debug(f"🟢 Output:\n{stdout.rstrip()}")
        if proc.returncode != 0:
            if check:
                logger.debug(f"❌ Command failed: {cmd_str} (exit code: {proc.returncode})")
                raise LocalCommandError(cmd_str, proc.returncode, stdout, stderr)
            logger.debug(f"Command exited {proc.returncode}: {cmd_str}")
        return CommandResult(exit_code=proc.returncode, stdout=stdout, stderr=stderr)
