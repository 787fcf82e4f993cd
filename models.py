"""
RouterWatch data models.
Dataclasses for devices, monitored interfaces, samples, counters and alerts.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

METHOD_NATIVE = "native"
METHOD_REST = "rest"
METHOD_SNMP = "snmp"
CONNECTION_METHODS = (METHOD_NATIVE, METHOD_REST, METHOD_SNMP)

DISPLAY_NONE = "none"
DISPLAY_STATIC = "static"
DISPLAY_ALL = "all"
DISPLAY_MODES = (DISPLAY_NONE, DISPLAY_STATIC, DISPLAY_ALL)

KIND_DEVICE_UNREACHABLE = "device_unreachable"
KIND_INTERFACE_DOWN = "interface_down"
KIND_TRAFFIC_LOW = "traffic_low"

SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"

SYSTEM_ACTOR = "system"


@dataclass
class Device:
    """A monitored router and its per-protocol settings."""

    id: str
    name: str
    address: str
    owner_id: str = ""
    api_port: int = 8728
    rest_enabled: bool = False
    rest_port: int = 443
    alternate_hostname: str = ""
    snmp_enabled: bool = False
    snmp_community: str = "public"
    snmp_version: str = "2c"
    snmp_port: int = 161
    interface_display_mode: str = DISPLAY_STATIC
    sticky_method: Optional[str] = None
    reachable: bool = False
    connected: bool = False
    last_connected: str = ""


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str


@dataclass
class MonitoredInterface:
    """An interface with a minimum total-throughput floor (bytes/second)."""

    id: str
    device_id: str
    interface_name: str
    enabled: bool = True
    min_threshold_bps: float = 0.0
    email_notifications: bool = True


@dataclass
class InterfaceStats:
    """One interface row from a single protocol fetch."""

    name: str
    running: bool = False
    comment: str = ""
    mac_address: str = ""
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_bps: float = 0.0
    tx_bps: float = 0.0
    total_bps: float = 0.0


@dataclass(frozen=True)
class TrafficSample:
    """Immutable rate sample for one interface at one instant."""

    device_id: str
    interface_name: str
    timestamp: datetime
    rx_bps: float
    tx_bps: float
    total_bps: float
    running: Optional[bool] = None
    comment: str = ""

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "interfaceName": self.interface_name,
            "comment": self.comment,
            "timestamp": self.timestamp.isoformat(),
            "rxBytesPerSecond": self.rx_bps,
            "txBytesPerSecond": self.tx_bps,
            "totalBytesPerSecond": self.total_bps,
        }


@dataclass
class ViolationCounter:
    count: int = 0
    last_touch: float = 0.0


@dataclass
class Alert:
    """Durable alert record; at most one open alert per condition key."""

    condition_key: str
    kind: str
    device_id: str
    severity: str
    message: str
    owner_id: str = ""
    interface_id: Optional[str] = None
    interface_name: Optional[str] = None
    interface_comment: Optional[str] = None
    current_bps: Optional[float] = None
    threshold_bps: Optional[float] = None
    acknowledged: bool = False
    acknowledged_at: Optional[str] = None
    acknowledged_by: Optional[str] = None
    created_at: str = ""
    id: Optional[int] = None
