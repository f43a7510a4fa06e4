"""k3sctl - idempotent K3s cluster provisioning."""

__version__ = "0.1.0"
