"""Network helpers."""
import ipaddress
import re
import socket

_DOTTED_QUAD = re.compile(r"^\d+(\.\d+){3}$")
_HOST_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def is_valid_address(address: str) -> bool:
    """Accept IPv4/IPv6 literals and RFC 1123 host names.

    Anything shaped like a dotted quad must be a valid IPv4 address, so
    ``999.1.1.1`` is rejected rather than treated as a host name.
    """
    if not address or address != address.strip():
        return False
    if _DOTTED_QUAD.match(address):
        try:
            ipaddress.IPv4Address(address)
        except ValueError:
            return False
        return True
    try:
        ipaddress.ip_address(address)
        return True
    except ValueError:
        pass
    if len(address) > 253:
        return False
    return all(_HOST_LABEL.match(label) for label in address.rstrip(".").split("."))


def tcp_reachable(address: str, port: int, timeout: float = 5.0) -> bool:
    """True when a TCP connection to ``address:port`` succeeds."""
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False
