"""TCP reachability probe used for devices without monitored interfaces."""

import logging
import socket
from typing import Callable, Iterable, List, Optional, Tuple

from models import Device

_LOGGER = logging.getLogger(__name__)

# connector(host, port, timeout) -> True if the port accepted a connection
Connector = Callable[[str, int, float], bool]


def candidate_ports(device: Device, extra_ports: Iterable[int] = ()) -> List[int]:
    """Configured API port, REST port if enabled, then the common management ports; no duplicates."""
    ports = [int(device.api_port)]
    if device.rest_enabled:
        ports.append(int(device.rest_port))
    ports.extend(int(p) for p in extra_ports)
    seen = set()
    out = []
    for p in ports:
        if p in seen or not (0 < p < 65536):
            continue
        seen.add(p)
        out.append(p)
    return out


def tcp_connect(host: str, port: int, timeout: float) -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        return sock.connect_ex((host, int(port))) == 0
    except OSError as exc:
        _LOGGER.debug("probe %s:%s failed: %s", host, port, exc)
        return False
    finally:
        sock.close()


def check_reachability(
    host: str,
    ports: Iterable[int],
    timeout: float = 2.0,
    connector: Optional[Connector] = None,
) -> Tuple[bool, Optional[int]]:
    """Probe ports in order; return (True, port) for the first one accepting a connection."""
    connect = connector or tcp_connect
    for port in ports:
        if connect(host, port, timeout):
            return True, port
    return False, None
