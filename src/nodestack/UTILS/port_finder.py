"""
Utilities for finding ports and checking whether something listens on them.
"""
import socket
from typing import Tuple


def get_free_port() -> int:
    """
    Finds a free port on localhost.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('', 0))
        return s.getsockname()[1]


def parse_address(address: str) -> Tuple[str, int]:
    """
    Splits ``host:port`` into its parts.

    :raises ValueError: If the address is malformed or the port is out of range.
    """
    host, sep, port = address.rpartition(':')
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Malformed address {address!r}, expected host:port")
    number = int(port)
    if not 0 < number < 65536:
        raise ValueError(f"Port out of range in {address!r}")
    return host.strip('[]'), number


def can_connect(host: str, port: int, timeout: float = 1.0) -> bool:
    """
    Checks if a TCP connection to host:port is accepted.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
