"""
Historical traffic query cache.
Picks a bucket width from the requested range and memoizes results for a short TTL.
"""

import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Optional, Tuple

from store import DataStore
from toolkit.utils import utc_now

_LOGGER = logging.getLogger(__name__)

# (max range in days, bucket width in seconds); None width means raw rows.
BUCKET_STEPS = (
    (2, None),
    (6, 60),
    (25, 600),
    (300, 3600),
)
WIDEST_BUCKET = 6 * 3600

CacheKey = Tuple[str, str, str, str]


def choose_bucket(range_seconds: float) -> Optional[int]:
    """Bucket width (seconds) for a query range; None means return raw samples."""
    days = max(0.0, float(range_seconds)) / 86400.0
    for max_days, width in BUCKET_STEPS:
        if days <= max_days:
            return width
    return WIDEST_BUCKET


def bucket_label(width: Optional[int]) -> str:
    if width is None:
        return "raw"
    if width % 3600 == 0:
        return f"{width // 3600}h"
    return f"{width // 60}m"


class TrafficQueryCache:
    def __init__(
        self,
        store: DataStore,
        *,
        ttl: float = 120.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.ttl = float(ttl)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[CacheKey, Tuple[float, dict]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(device_id: str, interface_name: str, since: datetime, until: Optional[datetime]) -> CacheKey:
        return (
            device_id,
            interface_name or "all",
            since.isoformat(),
            until.isoformat() if until is not None else "now",
        )

    def get(
        self,
        device_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        interface_name: str = "",
    ) -> dict:
        key = self.make_key(device_id, interface_name, since, until)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now - entry[0] < self.ttl:
                self.hits += 1
                return entry[1]
        self.misses += 1

        result = self._query(device_id, since, until, interface_name)
        with self._lock:
            self._entries[key] = (now, result)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return result

    def _query(self, device_id: str, since: datetime, until: Optional[datetime], interface_name: str) -> dict:
        end = until or utc_now()
        width = choose_bucket((end - since).total_seconds())
        if width is None:
            rows = self.store.query_traffic(device_id, since=since, until=until, interface_name=interface_name)
        else:
            rows = self.store.query_traffic_buckets(
                device_id,
                since=since,
                until=until,
                width_seconds=width,
                interface_name=interface_name,
            )
        _LOGGER.debug("traffic query %s %s..%s -> %d rows (%s)", device_id, since, end, len(rows), bucket_label(width))
        return {
            "deviceId": device_id,
            "interface": interface_name or "all",
            "since": since.isoformat(),
            "until": until.isoformat() if until is not None else None,
            "bucket": bucket_label(width),
            "bucketSeconds": width,
            "data": rows,
        }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
