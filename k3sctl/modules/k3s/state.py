"""Persistent provisioning state.

The state directory holds the append-only milestone log, the join token,
run summaries, logs and file backups. The milestone log is a plain text
file with one ``<timestamp> <key>=<value>`` record per line so operators
can read it and append corrections by hand (a bare ``key=value`` line is
accepted too). The last record for a key wins.
"""
import fcntl
import json
import logging
import os
import re
import shutil
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from k3sctl.errors import ConfigurationError, PersistenceError, StateLockedError
from .models import Milestone, RunSummary, utcnow

logger = logging.getLogger("k3sctl.state")

STATE_FILE = ".cluster-state"
TOKEN_FILE = ".k3s-node-token"
LOCK_FILE = ".lock"
CLUSTER_INFO_FILE = "cluster-info.yaml"
SUMMARIES_DIR = "summaries"
LOGS_DIR = "logs"
BACKUPS_DIR = "backups"

_KEY_RE = re.compile(r"^[^\s=]+$")


def _parse_line(line: str) -> Optional[Milestone]:
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    recorded_at = None
    head, sep, rest = line.partition(" ")
    if sep and "=" not in head:
        try:
            recorded_at = datetime.fromisoformat(head)
        except ValueError:
            return None
        line = rest.strip()
    key, sep, value = line.partition("=")
    if not sep or not _KEY_RE.match(key):
        return None
    return Milestone(key=key, value=value, recorded_at=recorded_at)


class StateStore:
    """Append-only milestone log with last-write-wins reads."""

    def __init__(self, state_dir: Union[str, Path]):
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / STATE_FILE
        self._lock = threading.Lock()

    def record(self, key: str, value: str) -> Milestone:
        """Append a milestone and flush it to disk.

        Raises:
            ConfigurationError: Key or value cannot be represented in the log.
            PersistenceError: The log cannot be written.
        """
        value = str(value)
        if not _KEY_RE.match(key):
            raise ConfigurationError(f"Invalid milestone key '{key}'")
        if "\n" in value or "\r" in value:
            raise ConfigurationError(f"Milestone value for '{key}' must be a single line")

        milestone = Milestone(key=key, value=value, recorded_at=utcnow())
        line = f"{milestone.recorded_at.isoformat()} {key}={value}\n"
        with self._lock:
            try:
                self.state_dir.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a+b") as f:
                    # A torn record from an interrupted write must not absorb this one
                    if f.tell() > 0:
                        f.seek(-1, os.SEEK_END)
                        if f.read(1) != b"\n":
                            line = "\n" + line
                    f.write(line.encode("utf-8"))
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise PersistenceError(f"Cannot record milestone {key} in {self.path}: {e}") from e
        logger.debug(f"Recorded milestone {key}={value}")
        return milestone

    def entries(self) -> List[Milestone]:
        """All records in append order."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise PersistenceError(f"Cannot read state file {self.path}: {e}") from e

        milestones = []
        for number, line in enumerate(lines, 1):
            milestone = _parse_line(line)
            if milestone is None:
                if line.strip() and not line.strip().startswith("#"):
                    logger.warning(f"Ignoring malformed line {number} in {self.path}")
                continue
            milestones.append(milestone)
        return milestones

    def snapshot(self) -> Dict[str, Milestone]:
        """Effective milestone for every key."""
        effective: Dict[str, Milestone] = {}
        for milestone in self.entries():
            effective[milestone.key] = milestone
        return effective

    def current(self, key: str) -> Optional[str]:
        milestone = self.snapshot().get(key)
        return milestone.value if milestone else None

    def is_satisfied(self, key: str, expected: str = "true") -> bool:
        return self.current(key) == expected

    # -- join token --------------------------------------------------------

    @property
    def token_path(self) -> Path:
        return self.state_dir / TOKEN_FILE

    def write_join_token(self, token: str) -> Path:
        """Persist the join token with owner-only permissions."""
        token = token.strip()
        if not token:
            raise PersistenceError("Refusing to store an empty join token")
        tmp = self.token_path.with_suffix(".tmp")
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(token + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.token_path)
        except OSError as e:
            raise PersistenceError(f"Cannot write join token to {self.token_path}: {e}") from e
        logger.info(f"🔐 Join token saved to {self.token_path}")
        return self.token_path

    def read_join_token(self) -> Optional[str]:
        try:
            token = self.token_path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Cannot read join token {self.token_path}: {e}") from e
        return token or None

    # -- artifacts ---------------------------------------------------------

    def artifact_path(self, *parts: str) -> Path:
        return self.state_dir.joinpath(*parts)

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / LOGS_DIR

    def write_summary(self, summary: RunSummary) -> Path:
        """Write a run summary as a timestamped JSON file."""
        stamp = (summary.finished_at or utcnow()).astimezone().strftime("%Y%m%d-%H%M%S")
        path = self.state_dir / SUMMARIES_DIR / f"{summary.phase}-{stamp}.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(summary.to_dict(), f, indent=2)
        except OSError as e:
            raise PersistenceError(f"Cannot write run summary {path}: {e}") from e
        logger.info(f"✅ Summary exported to {path}")
        return path

    def backup_file(self, source: Union[str, Path]) -> Optional[Path]:
        """Copy ``source`` into the backups directory, if it exists."""
        source = Path(source)
        if not source.exists():
            return None
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        target = self.state_dir / BACKUPS_DIR / f"{source.name}.{stamp}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        except OSError as e:
            raise PersistenceError(f"Cannot back up {source}: {e}") from e
        logger.info(f"💾 Backed up {source} to {target}")
        return target

    @contextmanager
    def run_lock(self) -> Iterator[None]:
        """Hold an exclusive advisory lock on the state directory."""
        lock_path = self.state_dir / LOCK_FILE
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            handle = open(lock_path, "w")
        except OSError as e:
            raise PersistenceError(f"Cannot open lock file {lock_path}: {e}") from e
        try:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                raise StateLockedError(
                    f"Another k3sctl run is using {self.state_dir}"
                ) from e
            handle.write(f"{os.getpid()}\n")
            handle.flush()
            yield
        finally:
            handle.close()
