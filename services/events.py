#!/usr/bin/env python3
"""Monitoring events: alert.opened, alert.cleared and device.discovered.

Subscribers (the push channel) see every event as it is published; the last
`max_events` are kept for GET /api/events, numbered so a dashboard can ask for
only what it has not seen yet.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from toolkit.utils import utc_now_iso

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorEvent:
    seq: int
    ts: str
    type: str
    device_id: str
    entity: str
    summary: str
    data: Dict[str, Any]


Subscriber = Callable[[MonitorEvent], None]


class EventBus:
    def __init__(self, *, max_events: int = 2000):
        self._events: Deque[MonitorEvent] = deque(maxlen=max(1, int(max_events)))
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._seq = 0

    def subscribe(self, fn: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(fn)

    def publish(
        self,
        *,
        event_type: str,
        device_id: str,
        entity: str,
        summary: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> MonitorEvent:
        with self._lock:
            self._seq += 1
            ev = MonitorEvent(
                seq=self._seq,
                ts=utc_now_iso(),
                type=str(event_type),
                device_id=str(device_id or ""),
                entity=str(entity or ""),
                summary=str(summary or ""),
                data=dict(data or {}),
            )
            self._events.append(ev)
            subs = list(self._subscribers)

        for fn in subs:
            try:
                fn(ev)
            except Exception:
                _LOGGER.exception("event subscriber failed for %s", ev.type)
        return ev

    def list_events(
        self,
        *,
        limit: int = 200,
        event_type: str = "",
        device_id: str = "",
        after_seq: int = 0,
    ) -> List[Dict[str, Any]]:
        """Most recent matching events, oldest first."""
        with self._lock:
            items = [
                ev
                for ev in self._events
                if ev.seq > after_seq
                and (not event_type or ev.type == event_type)
                and (not device_id or ev.device_id == device_id)
            ]
        return [asdict(ev) for ev in items[-max(1, int(limit)):]]
