"""
Bounded in-memory real-time sample store and the on-demand 1s poller.

The store keeps a capped deque per (device, interface) series and caps the number
of series, evicting the least recently written one. The poller runs one
RepeatingTask per device while that device has at least one subscriber.
"""

import logging
import threading
from collections import OrderedDict, deque
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from models import TrafficSample
from services.tasks import RepeatingTask

_LOGGER = logging.getLogger(__name__)

SeriesKey = Tuple[str, str]


class RealtimeStore:
    def __init__(self, *, max_per_series: int = 7200, max_series: int = 20000):
        self.max_per_series = max(1, int(max_per_series))
        self.max_series = max(1, int(max_series))
        self._series: "OrderedDict[SeriesKey, Deque[TrafficSample]]" = OrderedDict()
        self._lock = threading.Lock()
        self.evicted_series = 0

    def append(self, sample: TrafficSample) -> None:
        self.extend([sample])

    def extend(self, samples: Iterable[TrafficSample]) -> None:
        with self._lock:
            for s in samples:
                key = (s.device_id, s.interface_name)
                series = self._series.get(key)
                if series is None:
                    series = deque(maxlen=self.max_per_series)
                    self._series[key] = series
                self._series.move_to_end(key)
                series.append(s)
            while len(self._series) > self.max_series:
                old_key, _ = self._series.popitem(last=False)
                self.evicted_series += 1
                _LOGGER.debug("realtime store full, evicted series %s/%s", *old_key)

    def series_keys(self) -> List[SeriesKey]:
        with self._lock:
            return list(self._series.keys())

    def _device_series(self, device_id: str) -> Dict[str, List[TrafficSample]]:
        with self._lock:
            return {iface: list(dq) for (dev, iface), dq in self._series.items() if dev == device_id}

    def last_n_per_interface(self, device_id: str, n: int) -> List[TrafficSample]:
        n = max(1, int(n))
        out = []
        for samples in self._device_series(device_id).values():
            out.extend(samples[-n:])
        out.sort(key=lambda s: s.timestamp)
        return out

    def recent(self, device_id: str, interface_name: str, n: int) -> List[TrafficSample]:
        with self._lock:
            series = self._series.get((device_id, interface_name))
            return list(series)[-max(1, int(n)):] if series else []

    def latest(self, device_id: str, interface_name: str) -> Optional[TrafficSample]:
        with self._lock:
            series = self._series.get((device_id, interface_name))
            return series[-1] if series else None

    def window(self, device_id: str, interface_name: str, start: datetime, end: datetime) -> List[TrafficSample]:
        with self._lock:
            series = self._series.get((device_id, interface_name))
            items = list(series) if series else []
        return [s for s in items if start <= s.timestamp <= end]

    def forget_device(self, device_id: str) -> int:
        with self._lock:
            keys = [k for k in self._series if k[0] == device_id]
            for k in keys:
                del self._series[k]
        return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._series)

    def status(self) -> dict:
        with self._lock:
            return {
                "series": len(self._series),
                "samples": sum(len(dq) for dq in self._series.values()),
                "max_per_series": self.max_per_series,
                "max_series": self.max_series,
                "evicted_series": self.evicted_series,
            }


class RealtimePoller:
    """Subscriber registry + one repeating poll per subscribed device.

    poll_fn(device_id) performs one poll and returns the payload to push (or None);
    push_fn(device_id, payload) delivers it to that device's subscribers.
    """

    def __init__(
        self,
        poll_fn: Callable[[str], Optional[list]],
        push_fn: Callable[[str, list], None],
        *,
        interval: float = 1.0,
        task_factory: Callable[..., RepeatingTask] = RepeatingTask,
    ):
        self.poll_fn = poll_fn
        self.push_fn = push_fn
        self.interval = float(interval)
        self.task_factory = task_factory
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Set[str]] = {}
        self._tasks: Dict[str, RepeatingTask] = {}

    def subscribe(self, device_id: str, subscriber_id: str) -> int:
        """Add a subscriber; the first one starts polling. Returns the subscriber count."""
        with self._lock:
            subs = self._subscribers.setdefault(device_id, set())
            subs.add(subscriber_id)
            if device_id not in self._tasks:
                task = self.task_factory(
                    f"realtime-{device_id}",
                    self.interval,
                    lambda d=device_id: self._tick(d),
                    run_immediately=True,
                )
                self._tasks[device_id] = task
                task.start()
                _LOGGER.info("realtime polling started for %s", device_id)
            return len(subs)

    def unsubscribe(self, device_id: str, subscriber_id: str) -> int:
        """Remove a subscriber; the last one leaving cancels polling. Returns the remaining count."""
        with self._lock:
            subs = self._subscribers.get(device_id)
            if subs is None:
                return 0
            subs.discard(subscriber_id)
            remaining = len(subs)
            if remaining == 0:
                del self._subscribers[device_id]
                task = self._tasks.pop(device_id, None)
                if task is not None:
                    task.cancel()
                    _LOGGER.info("realtime polling stopped for %s", device_id)
            return remaining

    def unsubscribe_all(self, subscriber_id: str) -> List[str]:
        with self._lock:
            devices = [d for d, subs in self._subscribers.items() if subscriber_id in subs]
        for device_id in devices:
            self.unsubscribe(device_id, subscriber_id)
        return devices

    def subscriber_count(self, device_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(device_id, ()))

    def is_polling(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._tasks

    def active_devices(self) -> List[str]:
        with self._lock:
            return sorted(self._tasks)

    def stop_all(self) -> None:
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
            self._subscribers.clear()
        for task in tasks:
            task.cancel()

    def _tick(self, device_id: str) -> None:
        if self.subscriber_count(device_id) == 0:
            return
        payload = self.poll_fn(device_id)
        # The last subscriber may have left while the poll was in flight.
        if payload is None or self.subscriber_count(device_id) == 0:
            return
        self.push_fn(device_id, payload)
