"""
Process-local server registry.

Mini-cluster servers all live in the harness process; clients resolve the
``host:port`` names published in the coordination service to live server
objects through this registry instead of a network RPC layer.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import ServerNotRunningError

logger = logging.getLogger(__name__)

_registry: Dict[str, Any] = {}
_lock = threading.Lock()
_start_codes = itertools.count(int(time.time() * 1000))


@dataclass(frozen=True)
class ServerName:
    """host, port and start code identifying one server incarnation"""
    host: str
    port: int
    start_code: int = field(default_factory=lambda: next(_start_codes))

    @property
    def host_and_port(self) -> str:
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.host},{self.port},{self.start_code}"

    @classmethod
    def parse(cls, value: str) -> 'ServerName':
        host, port, start_code = value.split(",")
        return cls(host, int(port), int(start_code))


def bind(host: str, base_port: int, server: Any) -> ServerName:
    """Register server on the first free port at or above base_port"""
    with _lock:
        port = base_port
        while f"{host}:{port}" in _registry:
            port += 1
        server_name = ServerName(host, port)
        _registry[server_name.host_and_port] = server
    logger.debug(f"Registered {server_name}")
    return server_name


def unregister(server_name: ServerName, server: Any) -> bool:
    """Remove server_name only while it still resolves to this server"""
    with _lock:
        if _registry.get(server_name.host_and_port) is not server:
            return False
        del _registry[server_name.host_and_port]
    logger.debug(f"Unregistered {server_name}")
    return True


def lookup(address: str) -> Any:
    """Resolve a host:port (or full server name) to a running server"""
    if address.count(",") == 2:
        address = ServerName.parse(address).host_and_port
    with _lock:
        server = _registry.get(address)
    if server is None:
        raise ServerNotRunningError(f"No server running at {address}")
    return server


def registered_addresses() -> List[str]:
    with _lock:
        return sorted(_registry)
