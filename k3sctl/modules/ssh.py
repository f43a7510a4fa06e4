"""SSH command execution for cluster nodes.

Connections are opened with paramiko, cached per node address and reused
across commands. Every command runs on its own channel with a timeout and
observes the run's cancellation token.
"""
import logging
import socket
import threading
import time
from typing import Dict, Optional

import paramiko

from k3sctl.errors import (
    CommandTimeout,
    ConfigurationError,
    ConnectivityError,
    OperationCancelled,
    RemoteCommandError,
)
from k3sctl.modules.k3s.models import CommandResult, Node, SSHIdentity
from k3sctl.modules.k3s.registry import CredentialResolver
from k3sctl.modules.k3s.retry import CancelToken

logger = logging.getLogger("k3sctl.ssh")

HOST_KEY_POLICIES = {
    "accept-new": paramiko.AutoAddPolicy,
    "strict": paramiko.RejectPolicy,
    "warn": paramiko.WarningPolicy,
}

KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

_POLL_INTERVAL = 0.1
_READ_SIZE = 32768


def load_private_key(key_path: str) -> Optional[paramiko.PKey]:
    """Load an unencrypted private key, trying each supported key type.

    Raises:
        ConfigurationError: The key file cannot be read
    """
    for key_cls in KEY_CLASSES:
        try:
            return key_cls.from_private_key_file(key_path)
        except paramiko.PasswordRequiredException:
            # Leave encrypted keys to the agent
            return None
        except (paramiko.SSHException, ValueError):
            continue
        except OSError as e:
            raise ConfigurationError(f"Cannot read SSH key {key_path}: {e}") from e
    return None


class RemoteExecutor:
    """Run commands on cluster nodes over SSH."""

    def __init__(
        self,
        credentials: CredentialResolver,
        connect_timeout: float = 10,
        command_timeout: float = 300,
        host_key_policy: str = "accept-new",
        cancel: Optional[CancelToken] = None,
    ):
        if host_key_policy not in HOST_KEY_POLICIES:
            raise ConfigurationError(f"Unknown host key policy: {host_key_policy}")
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.host_key_policy = host_key_policy
        self.cancel = cancel or CancelToken()
        self._clients: Dict[str, paramiko.SSHClient] = {}
        self._lock = threading.Lock()
        self._connect_locks: Dict[str, threading.Lock] = {}

    def _connect(self, address: str, identity: SSHIdentity) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(HOST_KEY_POLICIES[self.host_key_policy]())

        pkey = None
        if identity.key_path:
            pkey = load_private_key(identity.key_path)

        logger.debug(f"🔌 Connecting to {identity.user}@{address}:{identity.port}")
        try:
            client.connect(
                hostname=address,
                port=identity.port,
                username=identity.user,
                pkey=pkey,
                key_filename=identity.key_path if pkey is None and identity.key_path else None,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=True,
                look_for_keys=identity.key_path is None,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise ConnectivityError(
                f"SSH authentication failed for {identity.user}@{address}: {e}",
                address=address,
                retryable=False,
            ) from e
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            client.close()
            raise ConnectivityError(f"Cannot connect to {address}: {e}", address=address) from e
        return client

    def _cached(self, address: str) -> Optional[paramiko.SSHClient]:
        with self._lock:
            client = self._clients.get(address)
            if client is None:
                return None
            transport = client.get_transport()
            if transport is not None and transport.is_active():
                return client
            del self._clients[address]
        client.close()
        return None

    def _client(self, node: Node) -> paramiko.SSHClient:
        address = node.address
        client = self._cached(address)
        if client is not None:
            return client
        with self._lock:
            connect_lock = self._connect_locks.setdefault(address, threading.Lock())
        # Only callers for the same address wait on a slow connect
        with connect_lock:
            client = self._cached(address)
            if client is None:
                client = self._connect(address, self.credentials.resolve(address))
                with self._lock:
                    self._clients[address] = client
            return client

    def _drop(self, address: str) -> None:
        with self._lock:
            client = self._clients.pop(address, None)
        if client is not None:
            client.close()

    def execute(
        self,
        node: Node,
        command: str,
        timeout: Optional[float] = None,
        capture_output: bool = True,
        check: bool = True,
        sensitive: bool = False,
    ) -> CommandResult:
        """Execute a command on a node.

        Args:
            node: Target node
            command: Shell command line
            timeout: Command timeout in seconds (defaults to the executor's)
            capture_output: Return output; otherwise stream it to the debug log
            check: Raise RemoteCommandError on a non-zero exit code
            sensitive: Never log the command's output

        Returns:
            CommandResult with exit code and output

        Raises:
            ConnectivityError: The node could not be reached
            RemoteCommandError: Non-zero exit with ``check`` set
            CommandTimeout: The command did not finish in time
            OperationCancelled: The run was cancelled
        """
        self.cancel.raise_if_cancelled()
        timeout = timeout or self.command_timeout
        client = self._client(node)
        logger.debug(f"💻 [{node.address}] {command}")

        try:
            channel = client.get_transport().open_session(timeout=self.connect_timeout)
            channel.exec_command(command)
        except (paramiko.SSHException, socket.timeout, OSError, AttributeError) as e:
            self._drop(node.address)
            raise ConnectivityError(f"SSH session to {node.address} failed: {e}",
                                    address=node.address) from e

        stdout, stderr = [], []
        deadline = time.monotonic() + timeout
        try:
            while True:
                while channel.recv_ready():
                    stdout.append(channel.recv(_READ_SIZE))
                while channel.recv_stderr_ready():
                    stderr.append(channel.recv_stderr(_READ_SIZE))
                if channel.exit_status_ready() and not channel.recv_ready() \
                        and not channel.recv_stderr_ready():
                    break
                if self.cancel.cancelled:
                    raise OperationCancelled(self.cancel.reason)
                if time.monotonic() > deadline:
                    raise CommandTimeout(command, timeout, address=node.address)
                time.sleep(_POLL_INTERVAL)
            exit_code = channel.recv_exit_status()
        except (OperationCancelled, CommandTimeout):
            logger.warning(f"⚠️ [{node.address}] aborted: {command}")
            raise
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            self._drop(node.address)
            raise ConnectivityError(f"SSH connection to {node.address} lost: {e}",
                                    address=node.address) from e
        finally:
            channel.close()

        out = b"".join(stdout).decode("utf-8", errors="replace")
        err = b"".join(stderr).decode("utf-8", errors="replace")
        if not sensitive:
            if capture_output:
                if out.strip():
                    logger.debug(f"🟢 [{node.address}] stdout:\n{out.rstrip()}")
            else:
                for line in out.splitlines():
                    logger.debug(f"[{node.address}] {line}")
            if err.strip():
                logger.debug(f"🟠 [{node.address}] stderr:\n{err.rstrip()}")

        if check and exit_code != 0:
            raise RemoteCommandError(
                command,
                exit_code,
                stdout="" if sensitive else out,
                stderr="" if sensitive else err,
                address=node.address,
            )
        return CommandResult(exit_code=exit_code, stdout=out if capture_output else "", stderr=err)

    def probe(self, node: Node) -> bool:
        """Check that a node accepts SSH commands."""
        result = self.execute(node, "true", timeout=self.connect_timeout, check=False)
        return result.exit_code == 0

    def close(self) -> None:
        """Close all cached connections."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()
