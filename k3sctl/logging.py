"""Logging configuration for the k3sctl package."""
import logging
import sys
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
NOISY_LOGGERS = ('paramiko', 'urllib3', 'kubernetes')

logger = logging.getLogger("k3sctl.logging")


def log_file_name(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"k3sctl-{now.strftime('%Y%m%d-%H%M%S')}.log"


def prune_logs(log_dir: Path, retention_days: int, now: Optional[float] = None) -> List[Path]:
    """
    Delete log files older than the retention window.

    Args:
        log_dir: Directory holding k3sctl log files
        retention_days: Files whose mtime is older than this many days are removed
        now: Reference time (epoch seconds), defaults to the current time

    Returns:
        The removed paths
    """
    if not log_dir.is_dir():
        return []
    cutoff = (now if now is not None else time.time()) - retention_days * 86400
    removed = []
    # Rotated backups end in .log.1, .log.2, ...
    for path in log_dir.glob("*.log*"):
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path)
        except OSError as e:
            logger.warning(f"Could not prune {path}: {e}")
    return removed


def setup_logging(
    debug_mode: bool = False,
    log_dir: Optional[Path] = None,
    level: str = "INFO",
    retention_days: int = 7,
    max_size_mb: int = 100,
    backup_count: int = 5,
) -> Optional[Path]:
    """
    Configure console and per-run file logging.

    Returns:
        Path of the run's log file, or None when no log directory is given
    """
    log_level = logging.DEBUG if debug_mode else getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in list(root.handlers):
        if getattr(handler, "_k3sctl", False):
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console._k3sctl = True
    root.addHandler(console)

    log_path = None
    if log_dir is not None:
        log_dir = Path(log_dir)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            pruned = prune_logs(log_dir, retention_days)
            log_path = log_dir / log_file_name()
            file_handler = RotatingFileHandler(
                log_path,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=backup_count,
            )
        except OSError as e:
            logger.warning(f"⚠️ File logging disabled, cannot write to {log_dir}: {e}")
            log_path = None
        else:
            file_handler.setFormatter(formatter)
            # The file always gets full detail
            file_handler.setLevel(logging.DEBUG)
            file_handler._k3sctl = True
            root.addHandler(file_handler)
            root.setLevel(logging.DEBUG)
            console.setLevel(log_level)
            if pruned:
                logger.debug(f"Pruned {len(pruned)} log file(s) older than {retention_days} days")

    # Disable debug logging for noisy libraries
    if not debug_mode:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return log_path
