#!/usr/bin/env python3
"""RouterOS HTTPS REST adapter (/rest/...), read-only.

Routers commonly present self-signed certificates, so verification is off.
The certificate subject CN is still read: when a numeric IPv4 address answers
with a CN naming a host, that name is reported as the discovered hostname.
"""

from __future__ import annotations

import base64
import http.client
import json
import logging
import ssl
from typing import Callable, List, Optional, Tuple

from cryptography import x509
from cryptography.x509.oid import NameOID

from clients.protocol import EXPECTED_FAILURES, DeviceProtocol, ParseError, ProtocolError, parse_bool, parse_counter
from models import METHOD_REST, Credentials, InterfaceStats
from toolkit.utils import is_ipv4_literal

_LOGGER = logging.getLogger(__name__)

# transport(host, path) -> (decoded JSON payload, certificate CN or "")
Transport = Callable[[str, str], Tuple[object, str]]


def common_name_from_der(der: Optional[bytes]) -> str:
    if not der:
        return ""
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError:
        return ""
    names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not names:
        return ""
    value = names[0].value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    return str(value).strip()


def _unverified_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


class HttpsTransport:
    """GET a JSON document over HTTPS with basic auth; also return the peer certificate CN."""

    def __init__(self, port: int, credentials: Credentials, timeout: float = 10.0):
        self.port = int(port)
        self.credentials = credentials
        self.timeout = float(timeout)

    def _auth_header(self) -> str:
        token = f"{self.credentials.username}:{self.credentials.password}".encode("utf-8")
        return "Basic " + base64.b64encode(token).decode("ascii")

    def __call__(self, host: str, path: str) -> Tuple[object, str]:
        conn = http.client.HTTPSConnection(host, self.port, timeout=self.timeout, context=_unverified_context())
        try:
            conn.request("GET", path, headers={"Authorization": self._auth_header(), "Accept": "application/json"})
            # getresponse() may drop the socket on Connection: close, so read the cert first.
            der = conn.sock.getpeercert(binary_form=True) if conn.sock is not None else None
            resp = conn.getresponse()
            body = resp.read()
        finally:
            conn.close()
        if resp.status in (401, 403):
            raise ProtocolError(f"authentication rejected by {host} (HTTP {resp.status})")
        if resp.status != 200:
            raise ProtocolError(f"{path} on {host} returned HTTP {resp.status}")
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ParseError(f"{path} on {host} returned invalid JSON") from exc
        return payload, common_name_from_der(der)


class RestApiProtocol(DeviceProtocol):
    method = METHOD_REST

    def __init__(
        self,
        address: str,
        port: int,
        credentials: Credentials,
        *,
        alternate_hostname: str = "",
        timeout: float = 10.0,
        transport: Optional[Transport] = None,
    ):
        self.address = address
        self.port = int(port)
        self.alternate_hostname = (alternate_hostname or "").strip()
        self._transport = transport or HttpsTransport(port, credentials, timeout)
        self.discovered_hostname: Optional[str] = None

    def candidate_hosts(self) -> List[str]:
        hosts = []
        if self.alternate_hostname and self.alternate_hostname != self.address:
            hosts.append(self.alternate_hostname)
        hosts.append(self.address)
        return hosts

    def _get(self, path: str) -> object:
        """Try the alternate hostname first, then the configured address."""
        last_exc: Optional[Exception] = None
        for host in self.candidate_hosts():
            try:
                payload, cn = self._transport(host, path)
            except EXPECTED_FAILURES as exc:
                _LOGGER.debug("REST %s via %s failed: %s", path, host, exc)
                last_exc = exc
                continue
            if host == self.address and is_ipv4_literal(host) and cn and cn != host:
                self.discovered_hostname = cn
            return payload
        raise ProtocolError(f"REST {path} failed on all hosts: {last_exc}")

    def _identity(self) -> dict:
        payload = self._get("/rest/system/identity")
        if not isinstance(payload, dict):
            raise ParseError("identity reply is not an object")
        return {"identity": str(payload.get("name", ""))}

    def _interface_rows(self) -> List[dict]:
        payload = self._get("/rest/interface")
        if not isinstance(payload, list):
            raise ParseError("interface reply is not a list")
        return [row for row in payload if isinstance(row, dict) and row.get("name")]

    def _list_interfaces(self) -> List[str]:
        return [str(row["name"]) for row in self._interface_rows()]

    def _get_counters(self) -> List[InterfaceStats]:
        return [
            InterfaceStats(
                name=str(row["name"]),
                running=parse_bool(row.get("running")),
                comment=str(row.get("comment", "") or ""),
                mac_address=str(row.get("mac-address", "") or ""),
                rx_bytes=parse_counter(row.get("rx-byte")),
                tx_bytes=parse_counter(row.get("tx-byte")),
            )
            for row in self._interface_rows()
        ]
