#!/usr/bin/env python3
"""Common helpers for RouterWatch modules."""

from __future__ import annotations

import ipaddress
from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_ipv4_literal(host: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address(str(host or "").strip()), ipaddress.IPv4Address)
    except ValueError:
        return False


def format_uptime(ticks: int) -> str:
    """Format SNMP TimeTicks (hundredths of a second) as e.g. '3d 4h 5m'."""
    seconds = max(0, int(ticks)) // 100
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    minutes = (seconds % 3600) // 60
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_kbps(bps: float) -> str:
    return f"{float(bps) / 1024:.2f} KB/s"
