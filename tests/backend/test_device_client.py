import pytest

from clients.device_client import DeviceClient, build_protocol
from clients.native_api import NativeApiProtocol
from clients.rates import CounterCache
from clients.reachability import candidate_ports
from clients.rest_api import RestApiProtocol
from models import Credentials, Device
from snmp.snmp_poller import SnmpProtocol

from conftest import stat

CREDS = Credentials("admin", "secret")


def device(**kw):
    kw.setdefault("id", "dev-1")
    kw.setdefault("name", "Core")
    kw.setdefault("address", "192.0.2.10")
    return Device(**kw)


def client(dev, protocols, clock, credentials=CREDS, connector=None):
    return DeviceClient(dev, credentials, counters=CounterCache(clock=clock), protocol_factory=protocols, connector=connector)


def test_discovery_tries_native_then_rest_then_snmp(protocols, clock):
    dev = device(rest_enabled=True, snmp_enabled=True)
    native = protocols.add("dev-1", "native", ok=False)
    rest = protocols.add("dev-1", "rest", ok=False)
    snmp = protocols.add("dev-1", "snmp", ok=True)

    result = client(dev, protocols, clock).discover_method()

    assert result.ok
    assert result.value == "snmp"
    assert native.calls == ["identity"]
    assert rest.calls == ["identity"]
    assert snmp.calls == ["identity"]


def test_discovery_stops_at_first_success(protocols, clock):
    dev = device(rest_enabled=True, snmp_enabled=True)
    protocols.add("dev-1", "native", ok=True)
    rest = protocols.add("dev-1", "rest", ok=True)

    result = client(dev, protocols, clock).discover_method()

    assert result.value == "native"
    assert rest.calls == []


def test_without_credentials_only_snmp_is_tried(protocols, clock):
    dev = device(rest_enabled=True, snmp_enabled=True)
    native = protocols.add("dev-1", "native", ok=True)
    protocols.add("dev-1", "snmp", ok=True)

    c = client(dev, protocols, clock, credentials=None)

    assert c.enabled_methods() == ["snmp"]
    assert c.discover_method().value == "snmp"
    assert native.calls == []


def test_discovery_failure_lists_every_attempt(protocols, clock):
    dev = device(snmp_enabled=True)

    result = client(dev, protocols, clock).discover_method()

    assert not result.ok
    assert "native:" in result.error
    assert "snmp:" in result.error


def test_nothing_configured(protocols, clock):
    result = client(device(), protocols, clock, credentials=None).discover_method()
    assert not result.ok
    assert "no connection method" in result.error


def test_fetch_uses_only_the_sticky_method(protocols, clock):
    dev = device(rest_enabled=True)
    native = protocols.add("dev-1", "native", ok=True)
    rest = protocols.add("dev-1", "rest", stats=[stat("ether1", 0, 0)])

    result = client(dev, protocols, clock).fetch_stats("rest")

    assert result.ok
    assert result.method == "rest"
    assert native.calls == []
    assert rest.calls == ["get_counters"]


def test_fetch_with_disabled_method_fails_without_network(protocols, clock):
    rest = protocols.add("dev-1", "rest", stats=[stat("ether1")])

    result = client(device(rest_enabled=False), protocols, clock).fetch_stats("rest")

    assert not result.ok
    assert rest.calls == []


def test_fetch_failure_is_reported(protocols, clock):
    protocols.add("dev-1", "native", ok=False)
    result = client(device(), protocols, clock).fetch_stats("native")
    assert not result.ok
    assert "unreachable" in result.error


def test_fetch_computes_rates_and_applies_display_policy(protocols, clock):
    proto = protocols.add("dev-1", "native", stats=[stat("ether1", 1000, 2000), stat("<pppoe-alice>", 10, 10)])
    c = client(device(), protocols, clock)

    first = c.fetch_stats("native")
    assert [s.name for s in first.stats] == ["ether1"]
    assert first.stats[0].total_bps == 0.0

    proto.stats = [stat("ether1", 61000, 122000), stat("<pppoe-alice>", 10, 10)]
    clock.advance(60)
    second = c.fetch_stats("native")

    ether1 = second.stats[0]
    assert ether1.rx_bps == pytest.approx(1000.0)
    assert ether1.tx_bps == pytest.approx(2000.0)
    assert ether1.total_bps == pytest.approx(3000.0)


def test_display_mode_none_hides_everything(protocols, clock):
    protocols.add("dev-1", "native", stats=[stat("ether1", 1, 1)])
    result = client(device(interface_display_mode="none"), protocols, clock).fetch_stats("native")
    assert result.ok
    assert result.stats == []


def test_discovered_hostname_comes_from_rest_adapter(protocols, clock):
    rest = protocols.add("dev-1", "rest", stats=[stat("ether1")])
    rest.discovered_hostname = "core-1.example.net"

    result = client(device(rest_enabled=True), protocols, clock).fetch_stats("rest")

    assert result.discovered_hostname == "core-1.example.net"


def test_reachability_probe_order(protocols, clock):
    probed = []

    def connector(host, port, timeout):
        probed.append((host, port))
        return False

    c = client(device(rest_enabled=True), protocols, clock, connector=connector)

    assert c.check_reachability() is False
    assert [port for _, port in probed] == [8728, 443, 8729, 80, 22, 8291]
    assert all(host == "192.0.2.10" for host, _ in probed)


def test_reachability_stops_at_first_open_port(protocols, clock):
    probed = []

    def connector(host, port, timeout):
        probed.append(port)
        return port == 8729

    assert client(device(), protocols, clock, connector=connector).check_reachability() is True
    assert probed == [8728, 8729]


def test_candidate_ports_custom_api_port():
    assert candidate_ports(device(api_port=18728), (8728, 22)) == [18728, 8728, 22]


def test_build_protocol_selects_adapter(settings):
    dev = device(snmp_community="monitor")
    assert isinstance(build_protocol("native", dev, CREDS, settings), NativeApiProtocol)
    assert isinstance(build_protocol("rest", dev, CREDS, settings), RestApiProtocol)
    snmp = build_protocol("snmp", dev, None, settings)
    assert isinstance(snmp, SnmpProtocol)
    assert snmp.community == "monitor"
    with pytest.raises(ValueError):
        build_protocol("telnet", dev, CREDS, settings)
