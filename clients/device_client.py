"""
Multi-protocol device client.
Discovers a working protocol (native API, then REST, then SNMP), fetches interface
counters with the remembered method, and probes plain TCP reachability.
"""

import logging
from typing import Callable, Dict, List, Optional

from clients.filters import filter_interfaces
from clients.native_api import NativeApiProtocol
from clients.protocol import DeviceProtocol, FetchResult, ProtocolResult
from clients.rates import CounterCache
from clients.reachability import Connector, candidate_ports, check_reachability
from clients.rest_api import RestApiProtocol
from config import Settings
from models import METHOD_NATIVE, METHOD_REST, METHOD_SNMP, Credentials, Device
from snmp.snmp_poller import SnmpProtocol

_LOGGER = logging.getLogger(__name__)

ProtocolFactory = Callable[[str, Device, Optional[Credentials], Settings], DeviceProtocol]


def build_protocol(method: str, device: Device, credentials: Optional[Credentials], settings: Settings) -> DeviceProtocol:
    if method == METHOD_NATIVE:
        return NativeApiProtocol(device.address, device.api_port, credentials, timeout=settings.native_timeout)
    if method == METHOD_REST:
        return RestApiProtocol(
            device.address,
            device.rest_port,
            credentials,
            alternate_hostname=device.alternate_hostname,
            timeout=settings.rest_timeout,
        )
    if method == METHOD_SNMP:
        return SnmpProtocol(
            device.address,
            community=device.snmp_community,
            version=device.snmp_version,
            port=device.snmp_port,
            timeout=settings.snmp_timeout,
            retries=settings.snmp_retries,
        )
    raise ValueError(f"unknown connection method {method!r}")


class DeviceClient:
    """Per-device facade over the protocol adapters. Never raises for network or parse errors."""

    def __init__(
        self,
        device: Device,
        credentials: Optional[Credentials],
        *,
        counters: CounterCache,
        settings: Optional[Settings] = None,
        protocol_factory: Optional[ProtocolFactory] = None,
        connector: Optional[Connector] = None,
    ):
        self.device = device
        self.credentials = credentials
        self.counters = counters
        self.settings = settings or Settings()
        self._factory = protocol_factory or build_protocol
        self._connector = connector
        self._protocols: Dict[str, DeviceProtocol] = {}

    def enabled_methods(self) -> List[str]:
        """Methods in discovery order; native and REST need credentials."""
        methods = []
        if self.credentials is not None:
            methods.append(METHOD_NATIVE)
            if self.device.rest_enabled:
                methods.append(METHOD_REST)
        if self.device.snmp_enabled:
            methods.append(METHOD_SNMP)
        return methods

    def protocol(self, method: str) -> DeviceProtocol:
        proto = self._protocols.get(method)
        if proto is None:
            proto = self._factory(method, self.device, self.credentials, self.settings)
            self._protocols[method] = proto
        return proto

    @property
    def discovered_hostname(self) -> Optional[str]:
        proto = self._protocols.get(METHOD_REST)
        return getattr(proto, "discovered_hostname", None) if proto is not None else None

    def discover_method(self) -> ProtocolResult:
        """First method whose identity call succeeds; value is the method name."""
        errors = []
        for method in self.enabled_methods():
            result = self.protocol(method).identity()
            if result.ok:
                _LOGGER.info("device %s answers via %s", self.device.id, method)
                return ProtocolResult.success(method, method)
            errors.append(f"{method}: {result.error}")
        if not errors:
            return ProtocolResult.failed("", "no connection method is configured")
        return ProtocolResult.failed("", "; ".join(errors))

    def fetch_stats(self, method: str) -> FetchResult:
        """One round trip with `method`; rates filled in, display policy applied."""
        if method not in self.enabled_methods():
            return FetchResult(ok=False, method=method, error=f"method {method!r} is not enabled for this device")
        result = self.protocol(method).get_counters()
        if not result.ok:
            return FetchResult(ok=False, method=method, error=result.error, discovered_hostname=self.discovered_hostname)
        visible = filter_interfaces(result.value or [], self.device.interface_display_mode)
        stats = self.counters.apply(self.device.id, method, visible)
        return FetchResult(ok=True, method=method, stats=stats, discovered_hostname=self.discovered_hostname)

    def check_reachability(self) -> bool:
        ports = candidate_ports(self.device, self.settings.extra_probe_ports)
        ok, port = check_reachability(self.device.address, ports, self.settings.probe_timeout, self._connector)
        if ok:
            _LOGGER.debug("device %s reachable on port %s", self.device.id, port)
        return ok
