"""
Counter-to-rate conversion.
Keeps the last cumulative rx/tx byte counters per (device, interface, protocol).
"""

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from models import InterfaceStats

CounterKey = Tuple[str, str, str]


def compute_rate(old: Optional[int], new: int, elapsed_seconds: float) -> float:
    """Bytes/second between two counter readings, never negative.

    No previous reading, a non-positive interval, or a counter that went
    backwards (reset or wrap) all yield 0.
    """
    if old is None or elapsed_seconds <= 0:
        return 0.0
    return max(0.0, (float(new) - float(old)) / float(elapsed_seconds))


class CounterCache:
    """Last observed counters per series; updated unconditionally on every observation."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[CounterKey, Tuple[int, int, float]] = {}

    def observe(
        self,
        device_id: str,
        interface_name: str,
        method: str,
        rx_bytes: int,
        tx_bytes: int,
        now: Optional[float] = None,
    ) -> Tuple[float, float]:
        ts = self._clock() if now is None else now
        key = (device_id, interface_name, method)
        with self._lock:
            previous = self._entries.get(key)
            self._entries[key] = (int(rx_bytes), int(tx_bytes), ts)
        if previous is None:
            return 0.0, 0.0
        old_rx, old_tx, old_ts = previous
        elapsed = ts - old_ts
        return compute_rate(old_rx, rx_bytes, elapsed), compute_rate(old_tx, tx_bytes, elapsed)

    def apply(
        self,
        device_id: str,
        method: str,
        stats: Iterable[InterfaceStats],
        now: Optional[float] = None,
    ) -> List[InterfaceStats]:
        """Fill rx/tx/total rates on each stat from its counters; one timestamp for the whole fetch."""
        ts = self._clock() if now is None else now
        out = []
        for stat in stats:
            rx_bps, tx_bps = self.observe(device_id, stat.name, method, stat.rx_bytes, stat.tx_bytes, now=ts)
            stat.rx_bps = rx_bps
            stat.tx_bps = tx_bps
            stat.total_bps = rx_bps + tx_bps
            out.append(stat)
        return out

    def device_ids(self) -> List[str]:
        with self._lock:
            return sorted({k[0] for k in self._entries})

    def forget_device(self, device_id: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k[0] == device_id]
            for k in keys:
                del self._entries[k]
        return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
