import subprocess
from types import SimpleNamespace

import pytest

from clients.protocol import ProtocolError
from snmp.snmp_poller import (
    OID_IF_ALIAS,
    OID_IF_DESCR,
    OID_IF_HC_IN_OCTETS,
    OID_IF_HC_OUT_OCTETS,
    OID_IF_IN_OCTETS,
    OID_IF_OPER_STATUS,
    OID_IF_OUT_OCTETS,
    OID_IF_PHYS_ADDRESS,
    OID_SYS_DESCR,
    OID_SYS_NAME,
    OID_SYS_UPTIME,
    SnmpProtocol,
    _run_cli,
    normalize_mac,
    parse_sys_descr,
    parse_walk,
)


def walk_output(base, rows):
    return "\n".join(f".{base}.{index} {value}" for index, value in rows.items()) + "\n"


class StubRunner:
    """runner(cmd) stand-in keyed by the walked OID; unknown OIDs exit with an error."""

    def __init__(self, walks=None, get_output=""):
        self.walks = dict(walks or {})
        self.get_output = get_output
        self.commands = []

    def __call__(self, cmd):
        self.commands.append(cmd)
        if cmd[0] == "snmpget":
            return 0, self.get_output, ""
        oid = cmd[-1]
        if oid not in self.walks:
            return 1, "", "Timeout: No Response"
        return 0, self.walks[oid], ""


BASE_WALKS = {
    OID_IF_DESCR: walk_output(OID_IF_DESCR, {1: '"ether1"', 2: '"ether2"'}),
    OID_IF_OPER_STATUS: walk_output(OID_IF_OPER_STATUS, {1: "1", 2: "2"}),
    OID_IF_PHYS_ADDRESS: walk_output(OID_IF_PHYS_ADDRESS, {1: '"4c:5e:c:1:2:3"', 2: '""'}),
    OID_IF_ALIAS: walk_output(OID_IF_ALIAS, {1: '"Uplink"', 2: '""'}),
}


def test_command_line_flags():
    runner = StubRunner(walks=BASE_WALKS)
    proto = SnmpProtocol("192.0.2.10", community="monitor", version="1", port=1161, timeout=3, retries=2, runner=runner)

    proto.list_interfaces()

    assert runner.commands[0] == [
        "snmpwalk", "-v1", "-c", "monitor", "-On", "-Oq", "-Ot", "-Oe",
        "-t", "3", "-r", "2", "192.0.2.10:1161", OID_IF_DESCR,
    ]


def test_unsupported_version_falls_back_to_v2c():
    assert SnmpProtocol("192.0.2.10", version="3").version == "2c"


def test_counters_prefer_64_bit_tables():
    walks = dict(BASE_WALKS)
    walks[OID_IF_HC_IN_OCTETS] = walk_output(OID_IF_HC_IN_OCTETS, {1: "5000000000", 2: "10"})
    walks[OID_IF_HC_OUT_OCTETS] = walk_output(OID_IF_HC_OUT_OCTETS, {1: "6000000000", 2: "20"})
    runner = StubRunner(walks=walks)

    result = SnmpProtocol("192.0.2.10", runner=runner).get_counters()

    assert result.ok
    ether1, ether2 = result.value
    assert (ether1.rx_bytes, ether1.tx_bytes) == (5000000000, 6000000000)
    assert ether1.running is True
    assert ether1.comment == "Uplink"
    assert ether1.mac_address == "4C:5E:0C:01:02:03"
    assert ether2.running is False
    assert ether2.mac_address == ""
    walked = [cmd[-1] for cmd in runner.commands]
    assert OID_IF_IN_OCTETS not in walked


def test_counters_fall_back_to_32_bit_tables():
    walks = dict(BASE_WALKS)
    walks[OID_IF_IN_OCTETS] = walk_output(OID_IF_IN_OCTETS, {1: "100", 2: "300"})
    walks[OID_IF_OUT_OCTETS] = walk_output(OID_IF_OUT_OCTETS, {1: "200", 2: "400"})

    result = SnmpProtocol("192.0.2.10", runner=StubRunner(walks=walks)).get_counters()

    assert result.ok
    assert [(s.name, s.rx_bytes, s.tx_bytes) for s in result.value] == [("ether1", 100, 200), ("ether2", 300, 400)]


def test_missing_interface_table_is_a_failure():
    result = SnmpProtocol("192.0.2.10", runner=StubRunner()).get_counters()
    assert not result.ok
    assert result.method == "snmp"


def test_identity_parses_system_group():
    get_output = (
        f'.{OID_SYS_NAME} "core-1"\n'
        f'.{OID_SYS_DESCR} "RouterOS RB4011iGS+ version 7.12 (stable)"\n'
        f".{OID_SYS_UPTIME} 8640000\n"
    )
    result = SnmpProtocol("192.0.2.10", runner=StubRunner(get_output=get_output)).identity()

    assert result.ok
    assert result.value == {"identity": "core-1", "model": "RB4011iGS+", "version": "7.12", "uptime": "1d 0h 0m"}


def test_identity_without_sysname_fails():
    result = SnmpProtocol("192.0.2.10", runner=StubRunner(get_output=f".{OID_SYS_NAME} No Such Object available\n")).identity()
    assert not result.ok


@pytest.mark.parametrize(
    "descr,expected",
    [
        ("RouterOS CCR2004-16G-2S+ version 7.14", ("CCR2004-16G-2S+", "7.14")),
        ("Linux box", ("MikroTik", "Unknown")),
        ("", ("MikroTik", "Unknown")),
    ],
)
def test_parse_sys_descr(descr, expected):
    assert parse_sys_descr(descr) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("4c:5e:c:1:2:3", "4C:5E:0C:01:02:03"),
        ("4C 5E 0C 01 02 03", "4C:5E:0C:01:02:03"),
        ("", ""),
        ("zz:zz:zz:zz:zz:zz", ""),
        ("01:02:03", ""),
    ],
)
def test_normalize_mac(raw, expected):
    assert normalize_mac(raw) == expected


def test_parse_walk_skips_foreign_and_missing_rows():
    out = (
        f'.{OID_IF_DESCR}.1 "ether1"\n'
        f".{OID_IF_DESCR}.2 No Such Instance currently exists at this OID\n"
        f'.{OID_IF_ALIAS}.1 "Uplink"\n'
    )
    assert parse_walk(out, OID_IF_DESCR) == {"1": "ether1"}


def test_cli_timeout_follows_snmp_timeout_and_retries(monkeypatch):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen.update(kwargs)
        return SimpleNamespace(returncode=0, stdout="", stderr="")

    monkeypatch.setattr("snmp.snmp_poller.shutil.which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr("snmp.snmp_poller.subprocess.run", fake_run)

    assert _run_cli(["snmpwalk", "192.0.2.10"], timeout=5, retries=1) == (0, "", "")
    assert seen["timeout"] == 15


def test_cli_timeout_is_a_protocol_error(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr("snmp.snmp_poller.shutil.which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr("snmp.snmp_poller.subprocess.run", fake_run)

    with pytest.raises(ProtocolError, match="timed out"):
        _run_cli(["snmpwalk", "192.0.2.10"])
