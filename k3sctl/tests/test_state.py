import os
import stat
import threading

import pytest

from k3sctl.errors import ConfigurationError, PersistenceError, StateLockedError
from k3sctl.modules.k3s.models import NodeOutcome, NodeStatus, RunSummary
from k3sctl.modules.k3s.state import STATE_FILE, StateStore, _parse_line


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state")


def test_milestones_survive_a_new_instance(store):
    store.record("control_plane_initialized", "true")
    store.record("control_plane_ip", "10.0.0.1")

    reopened = StateStore(store.state_dir)
    assert reopened.is_satisfied("control_plane_initialized")
    assert reopened.current("control_plane_ip") == "10.0.0.1"


def test_last_write_wins(store):
    store.record("worker_10.0.0.11_joined", "true")
    store.record("worker_10.0.0.11_joined", "false")

    assert store.current("worker_10.0.0.11_joined") == "false"
    assert len(store.entries()) == 2


def test_unknown_key_is_not_satisfied(store):
    assert store.current("nothing") is None
    assert not store.is_satisfied("nothing")


def test_manual_lines_and_comments(store):
    store.state_dir.mkdir(parents=True)
    (store.state_dir / STATE_FILE).write_text(
        "# edited by hand\n"
        "k3sup_installed=true\n"
        "2024-05-01T10:00:00+00:00 kubectl_installed=true\n"
        "garbage line\n"
    )

    snapshot = store.snapshot()
    assert snapshot["k3sup_installed"].value == "true"
    assert snapshot["k3sup_installed"].recorded_at is None
    assert snapshot["kubectl_installed"].recorded_at.year == 2024
    assert len(snapshot) == 2


def test_torn_last_line_does_not_swallow_next_record(store):
    store.state_dir.mkdir(parents=True)
    (store.state_dir / STATE_FILE).write_text("2024-05-01T10:00:00+00:00 nfs_server_configured=tr")

    store.record("nfs_provisioner_deployed", "true")

    assert store.current("nfs_provisioner_deployed") == "true"
    assert store.current("nfs_server_configured") == "tr"


@pytest.mark.parametrize("key,value", [
    ("has space", "true"),
    ("has=equals", "true"),
    ("multi", "line\nvalue"),
])
def test_unrepresentable_records_are_rejected(store, key, value):
    with pytest.raises(ConfigurationError):
        store.record(key, value)


def test_unwritable_state_dir_is_a_persistence_error(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    store = StateStore(blocker / "state")

    with pytest.raises(PersistenceError):
        store.record("control_plane_initialized", "true")


def test_join_token_is_owner_only(store):
    path = store.write_join_token("K10abc::server:def\n")

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert store.read_join_token() == "K10abc::server:def"


def test_empty_join_token_is_refused(store):
    with pytest.raises(PersistenceError):
        store.write_join_token("  \n")
    assert store.read_join_token() is None


def test_summary_is_written_as_json(store):
    summary = RunSummary(phase="join")
    summary.add(NodeOutcome(target="10.0.0.11", status=NodeStatus.FAILED, reason="unreachable"))

    path = store.write_summary(summary.finish())

    assert path.parent.name == "summaries"
    assert path.name.startswith("join-")
    assert '"exit_code": 2' in path.read_text()


def test_backup_copies_existing_file(store, tmp_path):
    source = tmp_path / "config"
    source.write_text("kubeconfig")

    target = store.backup_file(source)

    assert target.read_text() == "kubeconfig"
    assert store.backup_file(tmp_path / "missing") is None


def test_second_run_lock_is_refused(store):
    other = StateStore(store.state_dir)
    with store.run_lock():
        with pytest.raises(StateLockedError):
            with other.run_lock():
                pass
    with other.run_lock():
        pass


def test_concurrent_records_are_serialized(store):
    threads, per_thread = 8, 25
    start = threading.Barrier(threads)

    def writer(index):
        start.wait()
        for step in range(per_thread):
            store.record(f"worker_10.0.1.{index}_step_{step}", f"{index}-{step}")

    workers = [threading.Thread(target=writer, args=(i,)) for i in range(threads)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    lines = [line for line in store.path.read_text().splitlines() if line.strip()]
    assert len(lines) == threads * per_thread
    assert all(_parse_line(line) is not None for line in lines)
    for index in range(threads):
        for step in range(per_thread):
            assert store.current(f"worker_10.0.1.{index}_step_{step}") == f"{index}-{step}"
