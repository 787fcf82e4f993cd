"""
Monitoring duties.

collection   every 60s: one fetch per device with its remembered method, samples to
             the real-time store and the database; TCP probe for unmonitored devices
alerts       every 60s: confirmation protocol over reachability, link state and traffic
stale_sweep  every 5 min: drop violation counters nobody touched for 10 min
compaction   every 5 min: persist a few evenly spaced real-time samples per series
retention    daily: delete durable samples past the retention horizon

Every duty is a RepeatingTask, so a tick that is still running makes the next one skip.
"""

import logging
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from clients.device_client import DeviceClient
from clients.rates import CounterCache
from config import Settings
from models import METHOD_SNMP, Credentials, Device, InterfaceStats, MonitoredInterface, TrafficSample
from services.alerts import AlertEvaluator, ViolationTracker
from services.realtime import RealtimeStore
from services.tasks import RepeatingTask
from store import PERSISTENCE_ERRORS, DataStore
from toolkit.utils import utc_now

_LOGGER = logging.getLogger(__name__)

OUTCOME_POLLED = "polled"
OUTCOME_FAILED = "failed"
OUTCOME_PROBED = "probed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"

ClientFactory = Callable[[Device, Optional[Credentials]], DeviceClient]


def to_sample(device_id: str, stat: InterfaceStats, timestamp: datetime) -> TrafficSample:
    return TrafficSample(
        device_id=device_id,
        interface_name=stat.name,
        timestamp=timestamp,
        rx_bps=stat.rx_bps,
        tx_bps=stat.tx_bps,
        total_bps=stat.total_bps,
        running=stat.running,
        comment=stat.comment,
    )


def evenly_spaced(items: list, count: int) -> list:
    """About `count` items spread across the list, starting with the first."""
    if not items:
        return []
    step = len(items) // max(1, int(count)) or 1
    return items[::step]


class Scheduler:
    def __init__(
        self,
        store: DataStore,
        settings: Settings,
        *,
        counters: CounterCache,
        realtime: RealtimeStore,
        tracker: ViolationTracker,
        evaluator: AlertEvaluator,
        client_factory: Optional[ClientFactory] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings
        self.counters = counters
        self.realtime = realtime
        self.tracker = tracker
        self.evaluator = evaluator
        self._client_factory = client_factory or self._default_client
        self._now = clock
        self.last_collection: Dict[str, object] = {}
        self.tasks: Dict[str, RepeatingTask] = {
            "collection": RepeatingTask("collection", settings.collection_interval, self.run_collection, run_immediately=True),
            "alerts": RepeatingTask("alerts", settings.alert_interval, self.run_alert_check),
            "stale_sweep": RepeatingTask("stale_sweep", settings.stale_sweep_interval, self.run_stale_sweep),
            "compaction": RepeatingTask("compaction", settings.compaction_interval, self.run_compaction),
            "retention": RepeatingTask("retention", settings.retention_interval, self.run_retention),
        }

    def _default_client(self, device: Device, credentials: Optional[Credentials]) -> DeviceClient:
        return DeviceClient(device, credentials, counters=self.counters, settings=self.settings)

    def client_for(self, device: Device) -> DeviceClient:
        return self._client_factory(device, self.store.get_device_credentials(device.id))

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self) -> None:
        for task in self.tasks.values():
            task.start()
        _LOGGER.info(
            "scheduler started (collection %.0fs, alerts %.0fs, %d-check confirmation)",
            self.settings.collection_interval,
            self.settings.alert_interval,
            self.settings.confirmation_threshold,
        )

    def stop(self) -> None:
        for task in self.tasks.values():
            task.cancel()
        _LOGGER.info("scheduler stopped")

    def trigger(self, name: str) -> bool:
        """Run one tick of a duty now; False when its previous tick is still running."""
        return self.tasks[name].run_once()

    def status(self) -> dict:
        return {name: task.status() for name, task in self.tasks.items()}

    # -----------------------------
    # Collection
    # -----------------------------
    def run_collection(self) -> dict:
        devices = self.store.list_devices()
        by_device: Dict[str, List[MonitoredInterface]] = defaultdict(list)
        for iface in self.store.list_enabled_monitored_interfaces():
            by_device[iface.device_id].append(iface)

        outcomes: Dict[str, str] = {}
        workers = max(1, min(int(self.settings.fanout_workers), len(devices) or 1))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self._collect_safely, d, by_device.get(d.id, [])): d for d in devices}
            for fut, device in futures.items():
                try:
                    outcomes[device.id] = fut.result()
                except Exception:
                    _LOGGER.exception("collection for device %s failed", device.id)
                    outcomes[device.id] = OUTCOME_ERROR

        summary = dict(Counter(outcomes.values()))
        self.last_collection = {"at": self._now().isoformat(), "outcomes": outcomes, "summary": summary}
        _LOGGER.info("collection finished for %d device(s): %s", len(devices), summary)
        return outcomes

    def _collect_safely(self, device: Device, monitored: List[MonitoredInterface]) -> str:
        try:
            return self.collect_device(device, monitored)
        except PERSISTENCE_ERRORS as exc:
            _LOGGER.error("persistence error while collecting device %s: %s", device.id, exc)
            return OUTCOME_ERROR

    def collect_device(self, device: Device, monitored: List[MonitoredInterface]) -> str:
        if not monitored:
            return self._probe(device)

        credentials = self.store.get_device_credentials(device.id)
        method = device.sticky_method
        if not method or (method != METHOD_SNMP and credentials is None):
            # Nothing to retry until the device is re-tested; keep reachability honest meanwhile.
            _LOGGER.info("device %s skipped: %s", device.id, "no credentials" if method else "no working method yet")
            self._probe(device)
            return OUTCOME_SKIPPED

        client = self._client_factory(device, credentials)
        result = client.fetch_stats(method)
        if not result.ok:
            _LOGGER.warning("device %s fetch via %s failed: %s", device.id, method, result.error)
            self.store.update_device_reachability(device.id, False)
            self.store.update_device_connection(device.id, False)
            return OUTCOME_FAILED

        self.store.update_device_reachability(device.id, True)
        self.store.update_device_connection(device.id, True)
        if result.discovered_hostname and result.discovered_hostname != device.alternate_hostname:
            _LOGGER.info("device %s: storing discovered hostname %s", device.id, result.discovered_hostname)
            self.store.update_alternate_hostname(device.id, result.discovered_hostname)

        for stat in result.stats:
            self.store.upsert_interface_metadata(
                device.id,
                stat.name,
                comment=stat.comment,
                mac_address=stat.mac_address,
                running=stat.running,
            )

        stats_by_name = {s.name: s for s in result.stats}
        timestamp = self._now()
        samples = []
        interface_ids = {}
        for iface in monitored:
            stat = stats_by_name.get(iface.interface_name)
            if stat is None:
                _LOGGER.warning("monitored interface %s not reported by device %s", iface.interface_name, device.id)
                continue
            samples.append(to_sample(device.id, stat, timestamp))
            interface_ids[iface.interface_name] = iface.id
        self.realtime.extend(samples)
        self.store.insert_traffic_samples(samples, interface_ids)
        return OUTCOME_POLLED

    def _probe(self, device: Device) -> str:
        client = self.client_for(device)
        reachable = client.check_reachability()
        self.store.update_device_reachability(device.id, reachable)
        return OUTCOME_PROBED

    # -----------------------------
    # On-demand realtime poll
    # -----------------------------
    def poll_realtime(self, device_id: str) -> Optional[list]:
        """One 1s poll: all visible interfaces into the real-time store; returns the push payload."""
        device = self.store.get_device(device_id)
        if device is None or not device.sticky_method:
            return None
        client = self.client_for(device)
        result = client.fetch_stats(device.sticky_method)
        if not result.ok:
            _LOGGER.debug("realtime poll of %s failed: %s", device_id, result.error)
            return None
        timestamp = self._now()
        self.realtime.extend(to_sample(device_id, stat, timestamp) for stat in result.stats)
        return [s.to_dict() for s in self.realtime.last_n_per_interface(device_id, self.settings.realtime_push_points)]

    # -----------------------------
    # Alerts
    # -----------------------------
    def run_alert_check(self) -> dict:
        opened = 0
        checked = 0
        devices = {d.id: d for d in self.store.list_devices()}
        for device in devices.values():
            if self.evaluator.evaluate_device(device):
                opened += 1

        fresh_after = self._now() - timedelta(seconds=2 * self.settings.collection_interval)
        for iface in self.store.list_enabled_monitored_interfaces():
            device = devices.get(iface.device_id)
            if device is None:
                continue
            sample = self.realtime.latest(device.id, iface.interface_name)
            if sample is None or sample.timestamp <= fresh_after:
                continue
            checked += 1
            if self.evaluator.evaluate_interface(device, iface, sample):
                opened += 1

        summary = {"devices": len(devices), "interfaces_checked": checked, "alerts_opened": opened}
        _LOGGER.info("alert check finished: %s", summary)
        return summary

    def run_stale_sweep(self) -> int:
        removed = self.tracker.sweep_stale(self.settings.stale_counter_timeout)
        if removed:
            _LOGGER.info("dropped %d stale violation counter(s)", removed)

        # Cached counters and real-time series of devices that no longer exist.
        known = {d.id for d in self.store.list_devices()}
        cached = set(self.counters.device_ids()) | {dev for dev, _ in self.realtime.series_keys()}
        for device_id in sorted(cached - known):
            counters = self.counters.forget_device(device_id)
            series = self.realtime.forget_device(device_id)
            _LOGGER.info("forgot removed device %s (%d counter(s), %d series)", device_id, counters, series)
        return removed

    # -----------------------------
    # Compaction and retention
    # -----------------------------
    def run_compaction(self) -> int:
        """Persist ~N evenly spaced samples per real-time series from the last window.

        Monitored interfaces are skipped: collection already stores their samples.
        """
        monitored = {(i.device_id, i.interface_name) for i in self.store.list_enabled_monitored_interfaces()}
        start = self._now() - timedelta(seconds=self.settings.compaction_window)
        end = self._now()
        picked: List[TrafficSample] = []
        for device_id, interface_name in self.realtime.series_keys():
            if (device_id, interface_name) in monitored:
                continue
            recent = self.realtime.window(device_id, interface_name, start, end)
            picked.extend(evenly_spaced(recent, self.settings.compaction_samples))
        written = self.store.insert_traffic_samples(picked)
        _LOGGER.info("compaction persisted %d sample(s)", written)
        return written

    def run_retention(self) -> int:
        cutoff = self._now() - timedelta(days=self.settings.retention_days)
        deleted = self.store.delete_traffic_older_than(cutoff)
        _LOGGER.info("retention removed %d sample(s) older than %s", deleted, cutoff.isoformat())
        if deleted:
            self.store.add_observation("retention", "traffic_samples", f"deleted {deleted} samples", {"cutoff": cutoff.isoformat()})
        return deleted
