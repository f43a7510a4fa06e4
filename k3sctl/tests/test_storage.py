import pytest

from k3sctl.errors import ConfigurationError
from k3sctl.modules.k3s.models import (
    NFS_PROVISIONER_DEPLOYED,
    NFS_SERVER_CONFIGURED,
    CommandResult,
    NodeStatus,
)
from k3sctl.modules.k3s.registry import NodeRegistry
from k3sctl.modules.k3s.storage import EXPORTS_BACKUP, TEST_CLAIM, NfsStorage, export_line

from conftest import CONTROL_PLANE, WORKERS

A, B, C = WORKERS
EXPORT = "/Users/Shared/k3s-nfs"


def showmount(node):
    if node.address == C:
        return CommandResult(0, f"Exports list on {CONTROL_PLANE}:\n", "")
    return CommandResult(0, f"Exports list on {CONTROL_PLANE}:\n{EXPORT} {A} {B} localhost\n", "")


@pytest.fixture
def nfs_executor(executor):
    executor.responses.update({
        "grep -q": CommandResult(1, "", ""),
        "showmount -e": showmount,
    })
    return executor


def make_storage(config, executor, state, cluster, sleeps):
    return NfsStorage(
        config, NodeRegistry.from_config(config), executor, state, cluster, sleep=sleeps.append
    )


def test_export_line():
    assert export_line("/srv/nfs", 501, 20, ["10.0.0.11", "10.0.0.12"]) == \
        "/srv/nfs -alldirs -mapall=501:20 10.0.0.11 10.0.0.12 localhost"


def test_full_setup(make_config, nfs_executor, initialized, cluster, sleeps):
    config = make_config(workers=[A, B])

    summary = make_storage(config, nfs_executor, initialized, cluster, sleeps).setup()

    assert summary.exit_code == 0, summary.to_dict()
    assert {o.target: o.status for o in summary.outcomes} == {
        CONTROL_PLANE: NodeStatus.READY,
        A: NodeStatus.READY,
        B: NodeStatus.READY,
        "provisioner/nfs-storage": NodeStatus.READY,
    }
    server_commands = nfs_executor.commands_for(CONTROL_PLANE)
    assert "sudo -n nfsd checkexports" in server_commands
    assert server_commands[-1] == "sudo -n nfsd restart"
    assert any(export_line(EXPORT, 501, 20, [A, B]) in cmd for cmd in server_commands)
    assert initialized.is_satisfied(NFS_SERVER_CONFIGURED)
    assert initialized.is_satisfied(NFS_PROVISIONER_DEPLOYED)
    assert "StorageClass" in cluster.applied_kinds()
    assert "Deployment" in cluster.applied_kinds()
    assert cluster.deleted_pvcs == [f"nfs-provisioner/{TEST_CLAIM}"]


def test_rerun_is_already_done(make_config, nfs_executor, initialized, cluster, sleeps):
    config = make_config(workers=[A])
    nfs_executor.responses["grep -q"] = CommandResult(0, "", "")
    initialized.record(NFS_SERVER_CONFIGURED, "true")
    initialized.record(NFS_PROVISIONER_DEPLOYED, "true")
    cluster.storage_classes.append("nfs-storage")

    summary = make_storage(config, nfs_executor, initialized, cluster, sleeps).setup()

    statuses = {o.target: o.status for o in summary.outcomes}
    assert statuses[CONTROL_PLANE] == NodeStatus.ALREADY_DONE
    assert statuses["provisioner/nfs-storage"] == NodeStatus.ALREADY_DONE
    assert not any("nfsd restart" in cmd for cmd in nfs_executor.commands_for(CONTROL_PLANE))
    assert "Deployment" not in cluster.applied_kinds()


def test_bad_exports_restore_backup(make_config, nfs_executor, initialized, cluster, sleeps):
    nfs_executor.responses["nfsd checkexports"] = CommandResult(1, "", "bad export line")

    summary = make_storage(make_config(workers=[A]), nfs_executor, initialized, cluster, sleeps).setup()

    assert summary.fatal == "NFS server setup failed"
    assert f"sudo -n cp {EXPORTS_BACKUP} /etc/exports" in nfs_executor.commands_for(CONTROL_PLANE)
    assert not initialized.is_satisfied(NFS_SERVER_CONFIGURED)


def test_client_without_visible_export_fails_alone(make_config, nfs_executor, initialized, cluster, sleeps):
    summary = make_storage(make_config(workers=[A, C]), nfs_executor, initialized, cluster, sleeps).setup()

    statuses = {o.target: o for o in summary.outcomes}
    assert statuses[A].status == NodeStatus.READY
    assert statuses[C].status == NodeStatus.FAILED
    assert "not visible" in statuses[C].reason
    assert summary.fatal is None
    assert summary.exit_code == 2


def test_no_client_can_mount_is_fatal(make_config, nfs_executor, initialized, cluster, sleeps):
    nfs_executor.unreachable.add(C)

    summary = make_storage(make_config(workers=[C]), nfs_executor, initialized, cluster, sleeps).setup()

    assert summary.fatal == "No NFS client could mount the export"


def test_unbound_test_claim_is_an_issue(make_config, nfs_executor, initialized, cluster, sleeps):
    cluster.pvc_phases[f"nfs-provisioner/{TEST_CLAIM}"] = "Pending"

    summary = make_storage(make_config(workers=[A]), nfs_executor, initialized, cluster, sleeps).setup()

    assert summary.fatal is None
    assert any(TEST_CLAIM in issue for issue in summary.issues)
    assert cluster.deleted_pvcs == [f"nfs-provisioner/{TEST_CLAIM}"]


def test_disabled_storage_is_skipped(make_config, nfs_executor, initialized, cluster, sleeps):
    config = make_config(storage={"enabled": False})

    summary = make_storage(config, nfs_executor, initialized, cluster, sleeps).setup()

    assert summary.outcomes[0].status == NodeStatus.SKIPPED
    assert nfs_executor.commands == []


def test_storage_requires_control_plane(make_config, nfs_executor, state, cluster, sleeps):
    with pytest.raises(ConfigurationError):
        make_storage(make_config(), nfs_executor, state, cluster, sleeps).setup()
