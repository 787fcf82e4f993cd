#!/usr/bin/env python3
"""RouterOS binary API (TCP 8728) sentence codec and device adapter.

Wire format: a sentence is a sequence of length-prefixed words terminated by an
empty word. Replies are '!re' rows, then '!done'; '!trap' and '!fatal' report
errors. Only read-only commands are issued.
"""

from __future__ import annotations

import hashlib
import socket
from binascii import unhexlify
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from clients.protocol import DeviceProtocol, ParseError, ProtocolError, parse_bool, parse_counter
from models import METHOD_NATIVE, Credentials, InterfaceStats


def encode_length(length: int) -> bytes:
    if length < 0:
        raise ValueError("negative word length")
    if length < 0x80:
        return bytes([length])
    if length < 0x4000:
        return (length | 0x8000).to_bytes(2, "big")
    if length < 0x200000:
        return (length | 0xC00000).to_bytes(3, "big")
    if length < 0x10000000:
        return (length | 0xE0000000).to_bytes(4, "big")
    return b"\xf0" + length.to_bytes(4, "big")


def decode_length(read: Callable[[int], bytes]) -> int:
    """Decode a word length, pulling continuation bytes through read(n)."""
    first = read(1)[0]
    if first & 0x80 == 0x00:
        return first
    if first & 0xC0 == 0x80:
        return ((first & 0x3F) << 8) | read(1)[0]
    if first & 0xE0 == 0xC0:
        return ((first & 0x1F) << 16) | int.from_bytes(read(2), "big")
    if first & 0xF0 == 0xE0:
        return ((first & 0x0F) << 24) | int.from_bytes(read(3), "big")
    if first == 0xF0:
        return int.from_bytes(read(4), "big")
    raise ParseError(f"reserved control byte 0x{first:02x} in length prefix")


def encode_sentence(words: List[str]) -> bytes:
    out = bytearray()
    for word in words:
        data = word.encode("utf-8")
        out += encode_length(len(data))
        out += data
    out += b"\x00"
    return bytes(out)


def parse_attributes(words: List[str]) -> Dict[str, str]:
    """'=name=ether1' -> {'name': 'ether1'}; '.tag' and other words are ignored."""
    attrs: Dict[str, str] = {}
    for word in words:
        if not word.startswith("="):
            continue
        key, sep, value = word[1:].partition("=")
        if not sep:
            raise ParseError(f"malformed attribute word {word!r}")
        attrs[key] = value
    return attrs


class ApiConnection:
    """One TCP session speaking the RouterOS API sentence protocol."""

    def __init__(self, host: str, port: int, timeout: float = 10.0):
        self.host = host
        self.port = int(port)
        self.timeout = float(timeout)
        self._sock: Optional[socket.socket] = None

    def open(self) -> None:
        self._sock = socket.create_connection((self.host, self.port), timeout=self.timeout)

    def close(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.close()
        finally:
            self._sock = None

    def _recv_exact(self, n: int) -> bytes:
        if self._sock is None:
            raise ProtocolError("connection is not open")
        buf = bytearray()
        while len(buf) < n:
            chunk = self._sock.recv(n - len(buf))
            if not chunk:
                raise ProtocolError("connection closed by device")
            buf += chunk
        return bytes(buf)

    def write_sentence(self, words: List[str]) -> None:
        if self._sock is None:
            raise ProtocolError("connection is not open")
        self._sock.sendall(encode_sentence(words))

    def read_sentence(self) -> List[str]:
        words = []
        while True:
            length = decode_length(self._recv_exact)
            if length == 0:
                return words
            try:
                words.append(self._recv_exact(length).decode("utf-8"))
            except UnicodeDecodeError as exc:
                raise ParseError("word is not valid UTF-8") from exc

    def talk(self, words: List[str]) -> Tuple[List[Dict[str, str]], Dict[str, str]]:
        """Send one command; return (!re rows, !done attributes)."""
        self.write_sentence(words)
        rows: List[Dict[str, str]] = []
        while True:
            sentence = self.read_sentence()
            if not sentence:
                continue
            reply, rest = sentence[0], sentence[1:]
            if reply == "!re":
                rows.append(parse_attributes(rest))
            elif reply == "!done":
                return rows, parse_attributes(rest)
            elif reply == "!trap":
                message = parse_attributes(rest).get("message", "command failed")
                self._drain_until_done()
                raise ProtocolError(f"{words[0]}: {message}")
            elif reply == "!fatal":
                raise ProtocolError(f"fatal: {' '.join(rest) or 'session terminated'}")
            else:
                raise ParseError(f"unexpected reply word {reply!r}")

    def _drain_until_done(self) -> None:
        while True:
            sentence = self.read_sentence()
            if sentence and sentence[0] in ("!done", "!fatal"):
                return

    def login(self, username: str, password: str) -> None:
        _, done = self.talk(["/login", f"=name={username}", f"=password={password}"])
        challenge = done.get("ret")
        if not challenge:
            return
        # Pre-6.43 firmware answers with an MD5 challenge instead of accepting the password.
        try:
            digest = hashlib.md5(b"\x00" + password.encode("utf-8") + unhexlify(challenge)).hexdigest()
        except ValueError as exc:
            raise ParseError("invalid login challenge") from exc
        self.talk(["/login", f"=name={username}", f"=response=00{digest}"])


class NativeApiProtocol(DeviceProtocol):
    """Interface inventory and counters through the RouterOS binary API."""

    method = METHOD_NATIVE

    def __init__(
        self,
        host: str,
        port: int,
        credentials: Credentials,
        *,
        timeout: float = 10.0,
        connection_factory: Callable[..., ApiConnection] = ApiConnection,
    ):
        self.host = host
        self.port = int(port)
        self.credentials = credentials
        self.timeout = timeout
        self._connection_factory = connection_factory

    @contextmanager
    def _session(self) -> Iterator[ApiConnection]:
        conn = self._connection_factory(self.host, self.port, self.timeout)
        conn.open()
        try:
            conn.login(self.credentials.username, self.credentials.password)
            yield conn
        finally:
            conn.close()

    def _identity(self) -> dict:
        with self._session() as conn:
            rows, _ = conn.talk(["/system/identity/print"])
        if not rows:
            raise ParseError("empty identity reply")
        return {"identity": rows[0].get("name", "")}

    def _list_interfaces(self) -> List[str]:
        with self._session() as conn:
            rows, _ = conn.talk(["/interface/print", "=.proplist=name"])
        return [r["name"] for r in rows if r.get("name")]

    def _get_counters(self) -> List[InterfaceStats]:
        with self._session() as conn:
            rows, _ = conn.talk(
                [
                    "/interface/print",
                    "=stats=",
                    "=.proplist=name,comment,mac-address,running,rx-byte,tx-byte",
                ]
            )
        stats = []
        for r in rows:
            name = r.get("name")
            if not name:
                continue
            stats.append(
                InterfaceStats(
                    name=name,
                    running=parse_bool(r.get("running")),
                    comment=r.get("comment", ""),
                    mac_address=r.get("mac-address", ""),
                    rx_bytes=parse_counter(r.get("rx-byte")),
                    tx_bytes=parse_counter(r.get("tx-byte")),
                )
            )
        return stats
