import threading
from unittest.mock import Mock, patch

import paramiko
import pytest

from k3sctl.errors import ConfigurationError
from k3sctl.modules.k3s.models import Node, NodeRole
from k3sctl.modules.k3s.registry import NodeRegistry
from k3sctl.modules.ssh import RemoteExecutor, load_private_key

from conftest import WORKERS

A, B, _ = WORKERS


def live_client():
    client = Mock()
    client.get_transport.return_value.is_active.return_value = True
    return client


@pytest.fixture
def remote(config):
    return RemoteExecutor(NodeRegistry.from_config(config).credentials, connect_timeout=1)


def test_slow_connect_does_not_block_other_nodes(remote):
    slow_started, release = threading.Event(), threading.Event()

    def connect(address, identity):
        if address == B:
            slow_started.set()
            release.wait(5)
        return live_client()

    remote._connect = connect
    slow = threading.Thread(target=remote._client, args=(Node(B, NodeRole.WORKER),))
    slow.start()
    try:
        assert slow_started.wait(5)
        healthy_done = threading.Event()
        healthy = threading.Thread(
            target=lambda: (remote._client(Node(A, NodeRole.WORKER)), healthy_done.set())
        )
        healthy.start()

        assert healthy_done.wait(2)
    finally:
        release.set()
        slow.join(5)
    healthy.join(5)


def test_concurrent_callers_share_one_connection(remote):
    calls = []
    release = threading.Event()

    def connect(address, identity):
        calls.append(address)
        release.wait(5)
        return live_client()

    remote._connect = connect
    node = Node(B, NodeRole.WORKER)
    results = []
    threads = [threading.Thread(target=lambda: results.append(remote._client(node))) for _ in range(3)]
    for thread in threads:
        thread.start()
    release.set()
    for thread in threads:
        thread.join(5)

    assert calls == [B]
    assert len(results) == 3
    assert all(client is results[0] for client in results)


def test_dead_connection_is_replaced(remote):
    dead, fresh = live_client(), live_client()
    dead.get_transport.return_value.is_active.return_value = False
    remote._connect = Mock(side_effect=[dead, fresh])
    node = Node(A, NodeRole.WORKER)

    assert remote._client(node) is dead
    assert remote._client(node) is fresh
    dead.close.assert_called_once()


def test_unparseable_key_is_left_to_the_agent(ssh_key):
    assert load_private_key(str(ssh_key)) is None


def test_unreadable_key_is_configuration_error(ssh_key):
    with patch.object(paramiko.Ed25519Key, "from_private_key_file",
                      side_effect=PermissionError(13, "Permission denied")):
        with pytest.raises(ConfigurationError, match="Cannot read SSH key"):
            load_private_key(str(ssh_key))
