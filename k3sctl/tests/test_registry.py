import pytest

from k3sctl.config import K3sctlConfig
from k3sctl.errors import ConfigurationError
from k3sctl.modules.k3s.models import NodeRole, SSHIdentity
from k3sctl.modules.k3s.registry import CredentialResolver, NodeRegistry
from k3sctl.utils.net import is_valid_address


def make(**ssh):
    return K3sctlConfig(
        nodes={
            "control_plane": {"address": "10.0.0.1"},
            "workers": [
                {"address": "10.0.0.11"},
                {"address": "10.0.0.12", "user": "ops", "key_path": "/keys/ops"},
                {"address": "mini-3.local"},
            ],
        },
        ssh={"user": "admin", "key_path": "/keys/default", **ssh},
    )


def test_credentials_fall_back_to_default():
    resolver = CredentialResolver.from_config(make().ssh, [])

    assert resolver.resolve("10.0.0.99") == SSHIdentity(user="admin", key_path="/keys/default")


def test_node_entry_overrides_identity_map():
    config = make(identities={
        "10.0.0.12": {"user": "mapped"},
        "mini-3.local": {"key_path": "/keys/mini3"},
    })
    registry = NodeRegistry.from_config(config)

    assert registry.identity(registry.get("10.0.0.12")).user == "ops"
    mini = registry.identity(registry.get("mini-3.local"))
    assert mini.user == "admin"
    assert mini.key_path == "/keys/mini3"
    assert registry.identity(registry.get("10.0.0.11")).key_path == "/keys/default"


def test_distinct_identities_default_first():
    registry = NodeRegistry.from_config(make())

    identities = registry.credentials.identities()
    assert identities[0].key_path == "/keys/default"
    assert [i.user for i in identities] == ["admin", "ops"]


def test_registry_order_and_roles():
    registry = NodeRegistry.from_config(make())

    assert [n.address for n in registry] == ["10.0.0.1", "10.0.0.11", "10.0.0.12", "mini-3.local"]
    assert registry.control_plane.role == NodeRole.CONTROL_PLANE
    assert all(w.role == NodeRole.WORKER for w in registry.workers)
    assert len(registry) == 4


def test_duplicate_addresses_are_rejected():
    config = K3sctlConfig(nodes={
        "control_plane": {"address": "10.0.0.1"},
        "workers": [{"address": "10.0.0.1"}],
    })

    with pytest.raises(ConfigurationError, match="Duplicate"):
        NodeRegistry.from_config(config)


def test_unknown_node_lookup_fails():
    with pytest.raises(ConfigurationError):
        NodeRegistry.from_config(make()).get("10.9.9.9")


def test_invalid_addresses_are_listed():
    config = K3sctlConfig(nodes={
        "control_plane": {"address": "10.0.0.1"},
        "workers": [{"address": "999.1.1.1"}, {"address": "bad_host!"}],
    })

    assert NodeRegistry.from_config(config).invalid_addresses() == ["999.1.1.1", "bad_host!"]


@pytest.mark.parametrize("address,valid", [
    ("192.168.1.10", True),
    ("fd00::10", True),
    ("mac-mini-2.local", True),
    ("999.1.1.1", False),
    ("", False),
    (" 10.0.0.1", False),
    ("-bad.example", False),
])
def test_address_validation(address, valid):
    assert is_valid_address(address) is valid
