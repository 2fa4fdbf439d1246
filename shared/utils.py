from __future__ import annotations
from typing import Tuple

# ========================================
#           INPUT VALIDATION HELPERS
# ========================================
"""
Helpers the configuration layer calls to decide whether a user-supplied
endpoint is usable before the client ever opens a socket.
"""


def is_port(value: object) -> bool:
    """
    returns True for an integer TCP port between 1 and 65535.
    """
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= 65535


def parse_hostport(s: str) -> Tuple[str, int]:
    """
    Split 'host:port' into its parts.

    Accepts 'hostname:port', 'A.B.C.D:port' and '[v6addr]:port'.
    Examples: "localhost:9432", "192.168.1.5:8080", "[::1]:443"

    Raises:
        ValueError: if the string is not a usable host:port pair
    """
    if ':' not in s:
        raise ValueError(f"Expected host:port, got {s!r}")
    host, port_s = s.strip().rsplit(':', 1)  # last colon, v6 hosts keep theirs
    host = host.strip('[]')
    if not host:
        raise ValueError(f"Missing host in {s!r}")
    try:
        port = int(port_s)
    except ValueError:
        raise ValueError(f"Port must be a number in {s!r}") from None
    if not is_port(port):
        raise ValueError(f"Port out of range in {s!r}")
    return host, port
