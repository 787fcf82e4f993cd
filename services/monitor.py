"""
RouterWatch monitor service.
Long-lived owner of the shared monitoring state: counter cache, real-time store,
violation counters, query cache, scheduler duties and the on-demand poller.
"""

import logging
from typing import Callable, Optional

from clients.device_client import DeviceClient
from clients.rates import CounterCache
from config import Settings
from models import Credentials, Device
from services.alerts import AlertEvaluator, ViolationTracker
from services.events import EventBus
from services.notifier import DeliverFn, Notifier
from services.realtime import RealtimePoller, RealtimeStore
from services.scheduler import Scheduler
from services.traffic_cache import TrafficQueryCache
from store import DataStore

_LOGGER = logging.getLogger(__name__)

PushHandler = Callable[[str, list], None]


class MonitorService:
    def __init__(
        self,
        store: DataStore,
        settings: Optional[Settings] = None,
        *,
        events: Optional[EventBus] = None,
        deliver: Optional[DeliverFn] = None,
        client_factory: Optional[Callable[[Device, Optional[Credentials]], DeviceClient]] = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.events = events or EventBus()
        self.counters = CounterCache()
        self.realtime = RealtimeStore(
            max_per_series=self.settings.realtime_max_per_series,
            max_series=self.settings.realtime_max_series,
        )
        self.tracker = ViolationTracker()
        self.notifier = Notifier(store, self.events, deliver)
        self.evaluator = AlertEvaluator(
            store,
            self.tracker,
            self.notifier,
            confirmation_threshold=self.settings.confirmation_threshold,
        )
        self.cache = TrafficQueryCache(
            store,
            ttl=self.settings.cache_ttl,
            max_entries=self.settings.cache_max_entries,
        )
        self.scheduler = Scheduler(
            store,
            self.settings,
            counters=self.counters,
            realtime=self.realtime,
            tracker=self.tracker,
            evaluator=self.evaluator,
            client_factory=client_factory or self._build_client,
        )
        self.poller = RealtimePoller(
            self.scheduler.poll_realtime,
            self._push,
            interval=self.settings.realtime_interval,
        )
        self._push_handler: Optional[PushHandler] = None
        self.running = False

    def _build_client(self, device: Device, credentials: Optional[Credentials]) -> DeviceClient:
        return DeviceClient(device, credentials, counters=self.counters, settings=self.settings)

    def set_push_handler(self, handler: Optional[PushHandler]) -> None:
        self._push_handler = handler

    def _push(self, device_id: str, payload: list) -> None:
        if self._push_handler is not None:
            self._push_handler(device_id, payload)

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.scheduler.start()
        _LOGGER.info("monitor service started")

    def stop(self) -> None:
        self.poller.stop_all()
        self.scheduler.stop()
        self.running = False
        _LOGGER.info("monitor service stopped")

    def test_connection(self, device_id: str) -> dict:
        """Discover a working method for a device and remember it; the manual 'test connection'."""
        device = self.store.get_device(device_id)
        if device is None:
            raise KeyError(device_id)
        client = self.scheduler.client_for(device)
        result = client.discover_method()
        if result.ok:
            self.store.update_sticky_method(device.id, result.value)
            self.store.update_device_reachability(device.id, True)
            self.store.update_device_connection(device.id, True)
            if client.discovered_hostname and client.discovered_hostname != device.alternate_hostname:
                self.store.update_alternate_hostname(device.id, client.discovered_hostname)
            self.events.publish(
                event_type="device.discovered",
                device_id=device.id,
                entity=device.id,
                summary=f"{device.name} answers via {result.value}",
                data={"method": result.value},
            )
        else:
            self.store.update_device_connection(device.id, False)
        self.store.add_observation(
            "discovery",
            device.id,
            f"method={result.value}" if result.ok else f"failed: {result.error}",
            {"ok": result.ok},
        )
        return {"deviceId": device.id, "ok": result.ok, "method": result.value, "error": result.error}

    def acknowledge_alert(self, alert_id: int, user_id: str) -> bool:
        """Human acknowledgement; also clears the violation counters behind the alert."""
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise KeyError(alert_id)
        if not self.store.acknowledge_alert(alert_id, user_id):
            return False
        self.tracker.reset(alert.condition_key)
        if alert.interface_id:
            self.evaluator.reset_interface_counters(alert.interface_id)
        self.notifier.notify_alert_cleared(alert, user_id)
        return True

    def status(self) -> dict:
        return {
            "running": self.running,
            "duties": self.scheduler.status(),
            "last_collection": self.scheduler.last_collection,
            "realtime": self.realtime.status(),
            "realtime_devices": self.poller.active_devices(),
            "violation_counters": len(self.tracker),
            "counter_cache": len(self.counters),
            "query_cache": len(self.cache),
        }
