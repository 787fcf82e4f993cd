"""
Uniform protocol interface for device adapters.
Every capability returns a ProtocolResult; expected failures are values, not exceptions.
"""

import http.client
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from models import InterfaceStats

_LOGGER = logging.getLogger(__name__)


class ProtocolError(Exception):
    """Connect, auth, timeout or remote-side failure of a protocol call."""


class ParseError(ProtocolError):
    """A protocol response could not be understood."""


# Everything a protocol call may raise that counts as "this attempt failed".
EXPECTED_FAILURES = (ProtocolError, OSError, http.client.HTTPException, ValueError, KeyError, TypeError)


@dataclass(frozen=True)
class ProtocolResult:
    ok: bool
    method: str
    value: Any = None
    error: str = ""

    @classmethod
    def success(cls, method: str, value: Any = None) -> "ProtocolResult":
        return cls(ok=True, method=method, value=value)

    @classmethod
    def failed(cls, method: str, error: str) -> "ProtocolResult":
        return cls(ok=False, method=method, error=str(error or "unknown error"))


@dataclass
class FetchResult:
    """Outcome of one fetch_stats round trip for a device."""

    ok: bool
    method: str
    stats: List[InterfaceStats] = field(default_factory=list)
    error: str = ""
    discovered_hostname: Optional[str] = None


class DeviceProtocol:
    """Base adapter. Subclasses implement the _identity/_list_interfaces/_get_counters hooks."""

    method = ""

    def identity(self) -> ProtocolResult:
        return self._call("identity", self._identity)

    def list_interfaces(self) -> ProtocolResult:
        return self._call("list_interfaces", self._list_interfaces)

    def get_counters(self) -> ProtocolResult:
        return self._call("get_counters", self._get_counters)

    def _call(self, capability: str, fn) -> ProtocolResult:
        try:
            return ProtocolResult.success(self.method, fn())
        except EXPECTED_FAILURES as exc:
            _LOGGER.warning("%s %s failed: %s", self.method, capability, exc)
            return ProtocolResult.failed(self.method, f"{type(exc).__name__}: {exc}")

    def _identity(self) -> dict:
        raise NotImplementedError

    def _list_interfaces(self) -> List[str]:
        raise NotImplementedError

    def _get_counters(self) -> List[InterfaceStats]:
        raise NotImplementedError


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("true", "yes", "1", "up")


def parse_counter(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ParseError(f"invalid counter value {value!r}") from exc
