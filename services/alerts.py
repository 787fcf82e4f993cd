"""
Violation confirmation and alert lifecycle.

Each unfavorable observation bumps an in-memory counter for its condition key.
An alert opens once the count reaches the confirmation threshold and no open alert
exists for that key; the counter is kept so an ongoing condition never re-opens.
A favorable observation drops the counter and auto-acknowledges the open alert
as "system".
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from models import (
    KIND_DEVICE_UNREACHABLE,
    KIND_INTERFACE_DOWN,
    KIND_TRAFFIC_LOW,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    SYSTEM_ACTOR,
    Alert,
    Device,
    MonitoredInterface,
    TrafficSample,
    ViolationCounter,
)
from services.notifier import Notifier
from store import AlertAlreadyOpen, DataStore
from toolkit.utils import format_kbps

_LOGGER = logging.getLogger(__name__)


def device_key(device_id: str) -> str:
    return f"{KIND_DEVICE_UNREACHABLE}:{device_id}"


def interface_down_key(interface_id: str) -> str:
    return f"{KIND_INTERFACE_DOWN}:{interface_id}"


def traffic_key(interface_id: str) -> str:
    return f"{KIND_TRAFFIC_LOW}:{interface_id}"


def traffic_severity(current_bps: float, threshold_bps: float) -> str:
    """critical when more than 50% below the floor, warning above 25%, else info."""
    if threshold_bps <= 0:
        return SEVERITY_INFO
    percent_below = (threshold_bps - current_bps) / threshold_bps * 100.0
    if percent_below > 50:
        return SEVERITY_CRITICAL
    if percent_below > 25:
        return SEVERITY_WARNING
    return SEVERITY_INFO


class ViolationTracker:
    """Condition key -> ViolationCounter, safe for concurrent duties."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, ViolationCounter] = {}

    def increment(self, key: str) -> int:
        with self._lock:
            counter = self._counters.setdefault(key, ViolationCounter())
            counter.count += 1
            counter.last_touch = self._clock()
            return counter.count

    def reset(self, key: str) -> bool:
        with self._lock:
            return self._counters.pop(key, None) is not None

    def get(self, key: str) -> int:
        with self._lock:
            counter = self._counters.get(key)
            return counter.count if counter else 0

    def sweep_stale(self, max_age_seconds: float) -> int:
        """Drop counters untouched for longer than max_age_seconds."""
        cutoff = self._clock() - float(max_age_seconds)
        with self._lock:
            stale = [k for k, c in self._counters.items() if c.last_touch < cutoff]
            for k in stale:
                del self._counters[k]
        return len(stale)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {k: c.count for k, c in self._counters.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)


class AlertEvaluator:
    def __init__(
        self,
        store: DataStore,
        tracker: ViolationTracker,
        notifier: Notifier,
        *,
        confirmation_threshold: int = 5,
    ):
        self.store = store
        self.tracker = tracker
        self.notifier = notifier
        self.confirmation_threshold = max(1, int(confirmation_threshold))

    def observe(
        self,
        key: str,
        unfavorable: bool,
        build_alert: Callable[[], Alert],
        device: Device,
        *,
        email: bool = False,
    ) -> Optional[Alert]:
        """Apply one observation to a condition key; returns the alert if one was opened."""
        if not unfavorable:
            self.clear(key)
            return None

        count = self.tracker.increment(key)
        _LOGGER.debug("%s violation %d/%d", key, count, self.confirmation_threshold)
        if count < self.confirmation_threshold:
            return None
        existing = self.store.get_open_alert(key)
        if existing is not None:
            _LOGGER.debug("%s still violated, alert #%s already open", key, existing.id)
            return None
        try:
            alert = self.store.create_alert(build_alert())
        except AlertAlreadyOpen:
            _LOGGER.info("%s: alert opened concurrently, not duplicating", key)
            return None
        _LOGGER.warning("alert #%s opened: %s", alert.id, alert.message)
        self.store.add_observation("alert", key, f"opened: {alert.message}", {"alert_id": alert.id, "severity": alert.severity})
        self.notifier.notify_alert_opened(alert, device, email=email)
        return alert

    def clear(self, key: str) -> Optional[Alert]:
        """Favorable observation: drop the counter and auto-acknowledge any open alert."""
        self.tracker.reset(key)
        existing = self.store.get_open_alert(key)
        if existing is None:
            return None
        if self.store.acknowledge_alert(existing.id, SYSTEM_ACTOR):
            _LOGGER.info("alert #%s auto-acknowledged: condition %s cleared", existing.id, key)
            self.store.add_observation("alert", key, "cleared", {"alert_id": existing.id})
            self.notifier.notify_alert_cleared(existing, SYSTEM_ACTOR)
        return existing

    def evaluate_device(self, device: Device) -> Optional[Alert]:
        def build() -> Alert:
            return Alert(
                condition_key=device_key(device.id),
                kind=KIND_DEVICE_UNREACHABLE,
                device_id=device.id,
                owner_id=device.owner_id,
                severity=SEVERITY_CRITICAL,
                message=f"Router is UNREACHABLE - Cannot connect to {device.name} ({device.address})",
            )

        return self.observe(device_key(device.id), not device.reachable, build, device, email=True)

    def evaluate_interface(self, device: Device, iface: MonitoredInterface, sample: TrafficSample) -> Optional[Alert]:
        """Interface-down first; a down interface resets and skips the traffic check."""
        down_key = interface_down_key(iface.id)
        low_key = traffic_key(iface.id)
        comment = sample.comment or None

        if sample.running is False:
            opened = self.observe(
                down_key,
                True,
                lambda: Alert(
                    condition_key=down_key,
                    kind=KIND_INTERFACE_DOWN,
                    device_id=device.id,
                    owner_id=device.owner_id,
                    interface_id=iface.id,
                    interface_name=iface.interface_name,
                    interface_comment=comment,
                    severity=SEVERITY_CRITICAL,
                    message=f"Port {iface.interface_name} is DOWN",
                    current_bps=0.0,
                    threshold_bps=iface.min_threshold_bps,
                ),
                device,
                email=iface.email_notifications,
            )
            self.tracker.reset(low_key)
            return opened

        self.clear(down_key)

        current = float(sample.total_bps)
        threshold = float(iface.min_threshold_bps)
        return self.observe(
            low_key,
            current < threshold,
            lambda: Alert(
                condition_key=low_key,
                kind=KIND_TRAFFIC_LOW,
                device_id=device.id,
                owner_id=device.owner_id,
                interface_id=iface.id,
                interface_name=iface.interface_name,
                interface_comment=comment,
                severity=traffic_severity(current, threshold),
                message=(
                    f"Total traffic on {iface.interface_name} is below threshold: "
                    f"{format_kbps(current)} (RX+TX sum) < {format_kbps(threshold)}"
                ),
                current_bps=current,
                threshold_bps=threshold,
            ),
            device,
            email=iface.email_notifications,
        )

    def reset_interface_counters(self, interface_id: str) -> None:
        self.tracker.reset(interface_down_key(interface_id))
        self.tracker.reset(traffic_key(interface_id))
