#!/usr/bin/env python3
"""SNMP v1/v2c interface polling via the net-snmp CLI (snmpwalk/snmpget).

Read-only. Output is requested with numeric OIDs and bare values
(-On -Oq -Ot -Oe) so lines look like:

    .1.3.6.1.2.1.2.2.1.2.1 "ether1"
    .1.3.6.1.2.1.2.2.1.8.1 1
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from clients.protocol import DeviceProtocol, ParseError, ProtocolError, parse_counter
from models import METHOD_SNMP, InterfaceStats
from toolkit.utils import format_uptime

_LOGGER = logging.getLogger(__name__)

OID_SYS_DESCR = "1.3.6.1.2.1.1.1.0"
OID_SYS_UPTIME = "1.3.6.1.2.1.1.3.0"
OID_SYS_NAME = "1.3.6.1.2.1.1.5.0"

OID_IF_DESCR = "1.3.6.1.2.1.2.2.1.2"
OID_IF_PHYS_ADDRESS = "1.3.6.1.2.1.2.2.1.6"
OID_IF_OPER_STATUS = "1.3.6.1.2.1.2.2.1.8"
OID_IF_IN_OCTETS = "1.3.6.1.2.1.2.2.1.10"  # 32-bit fallback
OID_IF_OUT_OCTETS = "1.3.6.1.2.1.2.2.1.16"
OID_IF_HC_IN_OCTETS = "1.3.6.1.2.1.31.1.1.1.6"
OID_IF_HC_OUT_OCTETS = "1.3.6.1.2.1.31.1.1.1.10"
OID_IF_ALIAS = "1.3.6.1.2.1.31.1.1.1.18"

_MISSING_MARKERS = ("No Such Object", "No Such Instance", "No more variables")

# runner(cmd) -> (returncode, stdout, stderr)
Runner = Callable[[List[str]], Tuple[int, str, str]]


def _run_cli(cmd: List[str], timeout: int = 5, retries: int = 1) -> Tuple[int, str, str]:
    if not shutil.which(cmd[0]):
        raise ProtocolError(f"{cmd[0]} is not available on this system.")
    try:
        res = subprocess.run(cmd, capture_output=True, text=True, timeout=int(timeout) * (int(retries) + 1) + 5)
    except subprocess.TimeoutExpired as exc:
        raise ProtocolError(f"{cmd[0]} timed out") from exc
    return int(res.returncode), res.stdout or "", (res.stderr or "").strip()


def _unquote(value: str) -> str:
    v = value.strip()
    if len(v) >= 2 and v[0] == '"' and v[-1] == '"':
        v = v[1:-1]
    return v


def parse_walk(stdout: str, base_oid: str) -> Dict[str, str]:
    """Map the index suffix under base_oid to its value; foreign or missing rows are skipped."""
    prefix = "." + base_oid.strip(".") + "."
    out: Dict[str, str] = {}
    for ln in (stdout or "").splitlines():
        ln = ln.strip()
        if not ln.startswith(prefix):
            continue
        oid, _, value = ln.partition(" ")
        if any(marker in value for marker in _MISSING_MARKERS):
            continue
        out[oid[len(prefix):]] = _unquote(value)
    return out


def parse_get(stdout: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for ln in (stdout or "").splitlines():
        ln = ln.strip()
        if not ln.startswith("."):
            continue
        oid, _, value = ln.partition(" ")
        if any(marker in value for marker in _MISSING_MARKERS):
            continue
        out[oid.lstrip(".")] = _unquote(value)
    return out


def normalize_mac(value: str) -> str:
    """'4c:5e:c:1:2:3' or '4C 5E 0C 01 02 03' -> '4C:5E:0C:01:02:03'."""
    parts = [p for p in re.split(r"[:\s-]+", (value or "").strip()) if p]
    if len(parts) != 6:
        return ""
    try:
        return ":".join(f"{int(p, 16):02X}" for p in parts)
    except ValueError:
        return ""


def parse_oper_status(value: str) -> bool:
    v = (value or "").strip().lower()
    return v == "1" or v.startswith("up")


def parse_sys_descr(descr: str) -> Tuple[str, str]:
    """Model and version from a RouterOS sysDescr such as 'RouterOS RB4011iGS+ version 7.12'."""
    model = re.search(r"RouterOS\s+(\S+)", descr or "")
    version = re.search(r"version\s+(\S+)", descr or "")
    return (model.group(1) if model else "MikroTik"), (version.group(1) if version else "Unknown")


class SnmpProtocol(DeviceProtocol):
    """Identity, interface list and counters over SNMP v1/v2c."""

    method = METHOD_SNMP

    def __init__(
        self,
        host: str,
        *,
        community: str = "public",
        version: str = "2c",
        port: int = 161,
        timeout: int = 5,
        retries: int = 1,
        runner: Optional[Runner] = None,
    ):
        self.host = host
        self.community = community or "public"
        # Only v1 and v2c; v3 needs auth/priv parameters.
        self.version = "1" if str(version).strip() == "1" else "2c"
        self.port = int(port)
        self.timeout = int(timeout)
        self.retries = int(retries)
        self._runner = runner or (lambda cmd: _run_cli(cmd, self.timeout, self.retries))

    def _base_cmd(self, tool: str) -> List[str]:
        return [
            tool,
            f"-v{self.version}",
            "-c",
            str(self.community),
            "-On",
            "-Oq",
            "-Ot",
            "-Oe",
            "-t",
            str(self.timeout),
            "-r",
            str(self.retries),
            f"{self.host}:{self.port}",
        ]

    def _walk(self, oid: str) -> Dict[str, str]:
        code, out, err = self._runner(self._base_cmd("snmpwalk") + [oid])
        if code != 0:
            raise ProtocolError(f"snmpwalk {oid} failed: {err or f'exit {code}'}")
        rows = parse_walk(out, oid)
        if not rows:
            raise ProtocolError(f"snmpwalk {oid} returned no rows")
        return rows

    def _walk_optional(self, oid: str) -> Dict[str, str]:
        try:
            return self._walk(oid)
        except ProtocolError as exc:
            _LOGGER.debug("optional walk %s on %s skipped: %s", oid, self.host, exc)
            return {}

    def _get(self, oids: Sequence[str]) -> Dict[str, str]:
        code, out, err = self._runner(self._base_cmd("snmpget") + list(oids))
        if code != 0:
            raise ProtocolError(f"snmpget failed: {err or f'exit {code}'}")
        return parse_get(out)

    def _identity(self) -> dict:
        values = self._get([OID_SYS_NAME, OID_SYS_DESCR, OID_SYS_UPTIME])
        if OID_SYS_NAME not in values:
            raise ParseError("sysName missing from reply")
        model, version = parse_sys_descr(values.get(OID_SYS_DESCR, ""))
        try:
            ticks = int(values.get(OID_SYS_UPTIME, "0") or 0)
        except ValueError:
            ticks = 0
        return {
            "identity": values.get(OID_SYS_NAME) or "Unknown",
            "model": model,
            "version": version,
            "uptime": format_uptime(ticks),
        }

    def _list_interfaces(self) -> List[str]:
        return [name for name in self._walk(OID_IF_DESCR).values() if name]

    def _counters(self) -> Tuple[Dict[str, str], Dict[str, str]]:
        try:
            return self._walk(OID_IF_HC_IN_OCTETS), self._walk(OID_IF_HC_OUT_OCTETS)
        except ProtocolError as exc:
            _LOGGER.info("64-bit counters unavailable on %s, using 32-bit: %s", self.host, exc)
        return self._walk(OID_IF_IN_OCTETS), self._walk(OID_IF_OUT_OCTETS)

    def _get_counters(self) -> List[InterfaceStats]:
        names = self._walk(OID_IF_DESCR)
        rx, tx = self._counters()
        status = self._walk_optional(OID_IF_OPER_STATUS)
        macs = self._walk_optional(OID_IF_PHYS_ADDRESS)
        aliases = self._walk_optional(OID_IF_ALIAS)
        stats = []
        for index, name in names.items():
            if not name:
                continue
            stats.append(
                InterfaceStats(
                    name=name,
                    running=parse_oper_status(status.get(index, "")),
                    comment=aliases.get(index, ""),
                    mac_address=normalize_mac(macs.get(index, "")),
                    rx_bytes=parse_counter(rx.get(index)),
                    tx_bytes=parse_counter(tx.get(index)),
                )
            )
        return stats
