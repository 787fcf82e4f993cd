import os
import tempfile
import threading
from pathlib import Path

import pytest

# Keep the import-time server globals away from the repo's data/ directory.
os.environ.setdefault("ROUTERWATCH_DB", str(Path(tempfile.gettempdir()) / "routerwatch-import.db"))

import server  # noqa: E402
from clients.device_client import DeviceClient  # noqa: E402
from clients.protocol import DeviceProtocol, ProtocolError  # noqa: E402
from clients.rates import CounterCache  # noqa: E402
from config import Settings  # noqa: E402
from models import Credentials, Device, InterfaceStats, MonitoredInterface  # noqa: E402
from services.monitor import MonitorService  # noqa: E402
from store import DataStore  # noqa: E402


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class StubProtocol(DeviceProtocol):
    """Scripted protocol adapter; records every capability call."""

    def __init__(self, method: str, *, ok: bool = True, stats=None, identity: str = "router-1"):
        self.method = method
        self.ok = ok
        self.stats = list(stats or [])
        self.identity_name = identity
        self.calls = []
        self.gate = None
        self.discovered_hostname = None

    def _identity(self) -> dict:
        self.calls.append("identity")
        if not self.ok:
            raise ProtocolError(f"{self.method} unreachable")
        return {"identity": self.identity_name}

    def _list_interfaces(self):
        self.calls.append("list_interfaces")
        if not self.ok:
            raise ProtocolError(f"{self.method} unreachable")
        return [s.name for s in self.stats]

    def _get_counters(self):
        self.calls.append("get_counters")
        if self.gate is not None:
            self.gate.wait(5)
        if not self.ok:
            raise ProtocolError(f"{self.method} unreachable")
        return [
            InterfaceStats(
                name=s.name,
                running=s.running,
                comment=s.comment,
                mac_address=s.mac_address,
                rx_bytes=s.rx_bytes,
                tx_bytes=s.tx_bytes,
            )
            for s in self.stats
        ]


class StubProtocolFactory:
    """protocol_factory for DeviceClient: (device id, method) -> StubProtocol."""

    def __init__(self):
        self.protocols = {}

    def add(self, device_id: str, method: str, **kwargs) -> StubProtocol:
        proto = StubProtocol(method, **kwargs)
        self.protocols[(device_id, method)] = proto
        return proto

    def __call__(self, method, device, credentials, settings):
        proto = self.protocols.get((device.id, method))
        if proto is None:
            proto = self.add(device.id, method, ok=False)
        return proto


class FakeTask:
    """Thread-free RepeatingTask stand-in for the realtime poller."""

    created = []

    def __init__(self, name, interval, fn, run_immediately=False):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.started = False
        self.cancelled = False
        FakeTask.created.append(self)

    def start(self):
        self.started = True

    def cancel(self, wait=False):
        self.cancelled = True


def stat(name, rx=0, tx=0, running=True, comment="", mac=""):
    return InterfaceStats(name=name, running=running, comment=comment, mac_address=mac, rx_bytes=rx, tx_bytes=tx)


@pytest.fixture()
def settings(tmp_path):
    return Settings(db_path=Path(tmp_path) / "settings.db")


@pytest.fixture()
def isolated_store(tmp_path):
    """Fresh sqlite store per test."""
    return DataStore(Path(tmp_path) / "test_routerwatch.db")


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def protocols():
    return StubProtocolFactory()


@pytest.fixture()
def reachable_ports():
    """Ports the fake TCP connector accepts; tests add to it."""
    return set()


@pytest.fixture()
def client_factory(protocols, settings, clock, reachable_ports):
    counters = CounterCache(clock=clock)

    def build(device, credentials):
        return DeviceClient(
            device,
            credentials,
            counters=counters,
            settings=settings,
            protocol_factory=protocols,
            connector=lambda host, port, timeout: port in reachable_ports,
        )

    build.counters = counters
    return build


@pytest.fixture()
def make_device(isolated_store):
    def _make(device_id="dev-1", *, monitored=(), credentials=True, **kwargs):
        kwargs.setdefault("name", f"Router {device_id}")
        kwargs.setdefault("address", "192.0.2.10")
        kwargs.setdefault("owner_id", "owner-1")
        device = Device(id=device_id, **kwargs)
        creds = Credentials("admin", "secret") if credentials else None
        isolated_store.add_device(device, creds)
        if device.sticky_method:
            isolated_store.update_sticky_method(device_id, device.sticky_method)
        ifaces = []
        for i, (name, threshold) in enumerate(monitored):
            iface = MonitoredInterface(
                id=f"{device_id}-if{i}",
                device_id=device_id,
                interface_name=name,
                min_threshold_bps=threshold,
            )
            isolated_store.add_monitored_interface(iface)
            ifaces.append(iface)
        return isolated_store.get_device(device_id), ifaces

    return _make


@pytest.fixture()
def monitor(isolated_store, settings, client_factory):
    FakeTask.created = []
    svc = MonitorService(isolated_store, settings, events=server.event_bus, client_factory=client_factory)
    svc.poller.task_factory = FakeTask
    svc.set_push_handler(server.push_realtime)
    yield svc
    svc.stop()


@pytest.fixture()
def client_ctx(monkeypatch, isolated_store, monitor, settings):
    """
    Flask test client with isolated backend globals.
    No scheduler threads and no network: protocols are stubs, the store is a temp file.
    """
    monkeypatch.setattr(server, "datastore", isolated_store)
    monkeypatch.setattr(server, "monitor", monitor)
    monkeypatch.setattr(server, "settings", settings)
    monkeypatch.setattr(server, "API_KEY", "", raising=False)
    monkeypatch.setattr(server, "_sessions", {})
    monkeypatch.setattr(server, "_sessions_lock", threading.Lock())

    return {
        "client": server.app.test_client(),
        "store": isolated_store,
        "monitor": monitor,
    }


@pytest.fixture()
def socket_client(client_ctx):
    sock = server.socketio.test_client(server.app, flask_test_client=client_ctx["client"])
    yield sock
    if sock.is_connected():
        sock.disconnect()
