import logging
import os
from datetime import datetime

import pytest

from k3sctl.logging import log_file_name, prune_logs, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def test_log_file_name():
    assert log_file_name(datetime(2024, 5, 1, 13, 4, 5)) == "k3sctl-20240501-130405.log"


def test_prune_logs_by_age(tmp_path):
    now = 1_700_000_000
    old = tmp_path / "k3sctl-20231101-000000.log"
    rotated = tmp_path / "k3sctl-20231101-000000.log.1"
    fresh = tmp_path / "k3sctl-20231114-000000.log"
    for path in (old, rotated, fresh):
        path.write_text("x")
    os.utime(old, (now - 10 * 86400, now - 10 * 86400))
    os.utime(rotated, (now - 8 * 86400, now - 8 * 86400))
    os.utime(fresh, (now - 3600, now - 3600))

    removed = prune_logs(tmp_path, 7, now=now)

    assert sorted(removed) == sorted([old, rotated])
    assert fresh.exists()


def test_prune_missing_dir(tmp_path):
    assert prune_logs(tmp_path / "absent", 7) == []


def test_setup_logging_writes_run_file(tmp_path):
    log_path = setup_logging(log_dir=tmp_path / "logs")

    logging.getLogger("k3sctl.test").debug("detail for the file")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_path.parent == tmp_path / "logs"
    assert log_path.name.startswith("k3sctl-")
    assert "detail for the file" in log_path.read_text()


def test_setup_logging_replaces_own_handlers():
    setup_logging()
    setup_logging(debug_mode=True)

    owned = [h for h in logging.getLogger().handlers if getattr(h, "_k3sctl", False)]
    assert len(owned) == 1
    assert logging.getLogger().level == logging.DEBUG
