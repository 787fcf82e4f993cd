"""
RouterWatch persistence layer.
SQLite-backed DataStore for devices, monitored interfaces, traffic samples, alerts and notifications.
"""

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from models import Alert, Credentials, Device, MonitoredInterface, TrafficSample
from toolkit.utils import utc_now_iso


class StoreError(Exception):
    """Raised for repository-level failures that are not plain sqlite errors."""


class AlertAlreadyOpen(StoreError):
    """An unacknowledged alert already exists for the condition key."""


PERSISTENCE_ERRORS = (sqlite3.Error, StoreError)


def _row_to_device(r) -> Device:
    return Device(
        id=r["id"],
        name=r["name"] or "",
        address=r["address"] or "",
        owner_id=r["owner_id"] or "",
        api_port=int(r["api_port"] or 8728),
        rest_enabled=bool(r["rest_enabled"]),
        rest_port=int(r["rest_port"] or 443),
        alternate_hostname=r["alternate_hostname"] or "",
        snmp_enabled=bool(r["snmp_enabled"]),
        snmp_community=r["snmp_community"] or "public",
        snmp_version=r["snmp_version"] or "2c",
        snmp_port=int(r["snmp_port"] or 161),
        interface_display_mode=r["interface_display_mode"] or "static",
        sticky_method=r["sticky_method"] or None,
        reachable=bool(r["reachable"]),
        connected=bool(r["connected"]),
        last_connected=r["last_connected"] or "",
    )


def _row_to_monitored(r) -> MonitoredInterface:
    return MonitoredInterface(
        id=r["id"],
        device_id=r["device_id"],
        interface_name=r["interface_name"],
        enabled=bool(r["enabled"]),
        min_threshold_bps=float(r["min_threshold_bps"] or 0.0),
        email_notifications=bool(r["email_notifications"]),
    )


def _row_to_alert(r) -> Alert:
    return Alert(
        id=int(r["id"]),
        condition_key=r["condition_key"],
        kind=r["kind"],
        device_id=r["device_id"],
        severity=r["severity"],
        message=r["message"],
        owner_id=r["owner_id"] or "",
        interface_id=r["interface_id"],
        interface_name=r["interface_name"],
        interface_comment=r["interface_comment"],
        current_bps=r["current_bps"],
        threshold_bps=r["threshold_bps"],
        acknowledged=bool(r["acknowledged"]),
        acknowledged_at=r["acknowledged_at"],
        acknowledged_by=r["acknowledged_by"],
        created_at=r["created_at"] or "",
    )


class DataStore:
    """Repository for everything the monitoring core reads and writes."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.Lock()
        self._init_db()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    owner_id TEXT DEFAULT '',
                    address TEXT NOT NULL,
                    api_port INTEGER DEFAULT 8728,
                    rest_enabled INTEGER DEFAULT 0,
                    rest_port INTEGER DEFAULT 443,
                    alternate_hostname TEXT DEFAULT '',
                    snmp_enabled INTEGER DEFAULT 0,
                    snmp_community TEXT DEFAULT 'public',
                    snmp_version TEXT DEFAULT '2c',
                    snmp_port INTEGER DEFAULT 161,
                    interface_display_mode TEXT DEFAULT 'static',
                    sticky_method TEXT,
                    reachable INTEGER DEFAULT 0,
                    connected INTEGER DEFAULT 0,
                    last_connected TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );

                CREATE TABLE IF NOT EXISTS device_credentials (
                    device_id TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    password TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS device_users (
                    device_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    PRIMARY KEY (device_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS monitored_interfaces (
                    id TEXT PRIMARY KEY,
                    device_id TEXT NOT NULL,
                    interface_name TEXT NOT NULL,
                    enabled INTEGER DEFAULT 1,
                    min_threshold_bps REAL DEFAULT 0,
                    email_notifications INTEGER DEFAULT 1,
                    UNIQUE (device_id, interface_name)
                );

                CREATE TABLE IF NOT EXISTS device_interfaces (
                    device_id TEXT NOT NULL,
                    interface_name TEXT NOT NULL,
                    comment TEXT,
                    mac_address TEXT,
                    running INTEGER DEFAULT 0,
                    last_seen TEXT,
                    PRIMARY KEY (device_id, interface_name)
                );

                CREATE TABLE IF NOT EXISTS traffic_samples (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    interface_id TEXT,
                    interface_name TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    ts_epoch REAL NOT NULL,
                    rx_bps REAL DEFAULT 0,
                    tx_bps REAL DEFAULT 0,
                    total_bps REAL DEFAULT 0
                );
                CREATE INDEX IF NOT EXISTS idx_traffic_device_iface_ts
                    ON traffic_samples(device_id, interface_name, ts_epoch);
                CREATE INDEX IF NOT EXISTS idx_traffic_ts ON traffic_samples(ts_epoch);

                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    condition_key TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    interface_id TEXT,
                    interface_name TEXT,
                    interface_comment TEXT,
                    owner_id TEXT DEFAULT '',
                    severity TEXT NOT NULL,
                    message TEXT NOT NULL,
                    current_bps REAL,
                    threshold_bps REAL,
                    acknowledged INTEGER DEFAULT 0,
                    acknowledged_at TEXT,
                    acknowledged_by TEXT,
                    created_at TEXT
                );
                CREATE UNIQUE INDEX IF NOT EXISTS uniq_alert_open_condition
                    ON alerts(condition_key) WHERE acknowledged = 0;
                CREATE INDEX IF NOT EXISTS idx_alerts_device ON alerts(device_id);

                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    alert_id INTEGER,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    read INTEGER DEFAULT 0,
                    sent_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, sent_at);

                CREATE TABLE IF NOT EXISTS observations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT,
                    category TEXT,
                    entity TEXT,
                    summary TEXT,
                    payload_json TEXT
                );
                """
            )

    # -----------------------------
    # Devices and credentials
    # -----------------------------
    def add_device(self, device: Device, credentials: Optional[Credentials] = None):
        now = utc_now_iso()
        with self.lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO devices (
                    id, name, owner_id, address, api_port, rest_enabled, rest_port,
                    alternate_hostname, snmp_enabled, snmp_community, snmp_version, snmp_port,
                    interface_display_mode, sticky_method, reachable, connected, last_connected,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    owner_id=excluded.owner_id,
                    address=excluded.address,
                    api_port=excluded.api_port,
                    rest_enabled=excluded.rest_enabled,
                    rest_port=excluded.rest_port,
                    alternate_hostname=excluded.alternate_hostname,
                    snmp_enabled=excluded.snmp_enabled,
                    snmp_community=excluded.snmp_community,
                    snmp_version=excluded.snmp_version,
                    snmp_port=excluded.snmp_port,
                    interface_display_mode=excluded.interface_display_mode,
                    updated_at=excluded.updated_at
                """,
                (
                    device.id,
                    device.name,
                    device.owner_id,
                    device.address,
                    int(device.api_port),
                    int(device.rest_enabled),
                    int(device.rest_port),
                    device.alternate_hostname or "",
                    int(device.snmp_enabled),
                    device.snmp_community,
                    device.snmp_version,
                    int(device.snmp_port),
                    device.interface_display_mode,
                    device.sticky_method,
                    int(device.reachable),
                    int(device.connected),
                    device.last_connected or None,
                    now,
                    now,
                ),
            )
            if credentials is not None:
                conn.execute(
                    """
                    INSERT INTO device_credentials (device_id, username, password) VALUES (?, ?, ?)
                    ON CONFLICT(device_id) DO UPDATE SET
                        username=excluded.username,
                        password=excluded.password
                    """,
                    (device.id, credentials.username, credentials.password),
                )

    def get_device(self, device_id: str) -> Optional[Device]:
        with self.lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM devices WHERE id=?", (device_id,)).fetchone()
        return _row_to_device(row) if row else None

    def list_devices(self) -> List[Device]:
        with self.lock, self._connect() as conn:
            rows = conn.execute("SELECT * FROM devices ORDER BY name").fetchall()
        return [_row_to_device(r) for r in rows]

    def get_device_credentials(self, device_id: str) -> Optional[Credentials]:
        with self.lock, self._connect() as conn:
            row = conn.execute(
                "SELECT username, password FROM device_credentials WHERE device_id=?",
                (device_id,),
            ).fetchone()
        if not row:
            return None
        return Credentials(username=row["username"], password=row["password"])

    def set_device_credentials(self, device_id: str, credentials: Credentials):
        with self.lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO device_credentials (device_id, username, password) VALUES (?, ?, ?)
                ON CONFLICT(device_id) DO UPDATE SET
                    username=excluded.username,
                    password=excluded.password
                """,
                (device_id, credentials.username, credentials.password),
            )

    def update_device_reachability(self, device_id: str, reachable: bool):
        with self.lock, self._connect() as conn:
            conn.execute(
                "UPDATE devices SET reachable=?, updated_at=? WHERE id=?",
                (int(bool(reachable)), utc_now_iso(), device_id),
            )

    def update_device_connection(self, device_id: str, connected: bool):
        now = utc_now_iso()
        with self.lock, self._connect() as conn:
            if connected:
                conn.execute(
                    "UPDATE devices SET connected=1, last_connected=?, updated_at=? WHERE id=?",
                    (now, now, device_id),
                )
            else:
                conn.execute(
                    "UPDATE devices SET connected=0, updated_at=? WHERE id=?",
                    (now, device_id),
                )

    def update_sticky_method(self, device_id: str, method: Optional[str]):
        with self.lock, self._connect() as conn:
            conn.execute(
                "UPDATE devices SET sticky_method=?, updated_at=? WHERE id=?",
                (method, utc_now_iso(), device_id),
            )

    def update_alternate_hostname(self, device_id: str, hostname: str):
        with self.lock, self._connect() as conn:
            conn.execute(
                "UPDATE devices SET alternate_hostname=?, updated_at=? WHERE id=?",
                (hostname, utc_now_iso(), device_id),
            )

    def assign_user(self, device_id: str, user_id: str):
        with self.lock, self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO device_users (device_id, user_id) VALUES (?, ?)",
                (device_id, user_id),
            )

    def list_alert_recipients(self, device_id: str) -> List[str]:
        """Device owner first, then every assigned user, without duplicates."""
        with self.lock, self._connect() as conn:
            owner = conn.execute("SELECT owner_id FROM devices WHERE id=?", (device_id,)).fetchone()
            rows = conn.execute(
                "SELECT user_id FROM device_users WHERE device_id=? ORDER BY user_id",
                (device_id,),
            ).fetchall()
        out: List[str] = []
        if owner and owner["owner_id"]:
            out.append(owner["owner_id"])
        for r in rows:
            if r["user_id"] and r["user_id"] not in out:
                out.append(r["user_id"])
        return out

    # -----------------------------
    # Monitored interfaces and metadata cache
    # -----------------------------
    def add_monitored_interface(self, iface: MonitoredInterface):
        with self.lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO monitored_interfaces (
                    id, device_id, interface_name, enabled, min_threshold_bps, email_notifications
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    enabled=excluded.enabled,
                    min_threshold_bps=excluded.min_threshold_bps,
                    email_notifications=excluded.email_notifications
                """,
                (
                    iface.id,
                    iface.device_id,
                    iface.interface_name,
                    int(iface.enabled),
                    float(iface.min_threshold_bps),
                    int(iface.email_notifications),
                ),
            )

    def list_monitored_interfaces(self, device_id: str) -> List[MonitoredInterface]:
        with self.lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM monitored_interfaces WHERE device_id=? ORDER BY interface_name",
                (device_id,),
            ).fetchall()
        return [_row_to_monitored(r) for r in rows]

    def list_enabled_monitored_interfaces(self) -> List[MonitoredInterface]:
        with self.lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM monitored_interfaces WHERE enabled=1 ORDER BY device_id, interface_name"
            ).fetchall()
        return [_row_to_monitored(r) for r in rows]

    def upsert_interface_metadata(
        self,
        device_id: str,
        interface_name: str,
        *,
        comment: str = "",
        mac_address: str = "",
        running: bool = False,
    ):
        with self.lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO device_interfaces (device_id, interface_name, comment, mac_address, running, last_seen)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(device_id, interface_name) DO UPDATE SET
                    comment=excluded.comment,
                    mac_address=excluded.mac_address,
                    running=excluded.running,
                    last_seen=excluded.last_seen
                """,
                (device_id, interface_name, comment or None, mac_address or None, int(bool(running)), utc_now_iso()),
            )

    def list_interface_metadata(self, device_id: str) -> List[dict]:
        with self.lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM device_interfaces WHERE device_id=? ORDER BY interface_name",
                (device_id,),
            ).fetchall()
        return [
            {
                "interface_name": r["interface_name"],
                "comment": r["comment"] or "",
                "mac_address": r["mac_address"] or "",
                "running": bool(r["running"]),
                "last_seen": r["last_seen"] or "",
            }
            for r in rows
        ]

    # -----------------------------
    # Traffic samples
    # -----------------------------
    def insert_traffic_samples(self, samples: Iterable[TrafficSample], interface_ids: Optional[dict] = None) -> int:
        ids = interface_ids or {}
        rows = [
            (
                s.device_id,
                ids.get(s.interface_name),
                s.interface_name,
                s.timestamp.isoformat(),
                s.timestamp.timestamp(),
                float(s.rx_bps),
                float(s.tx_bps),
                float(s.total_bps),
            )
            for s in samples
        ]
        if not rows:
            return 0
        with self.lock, self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO traffic_samples (
                    device_id, interface_id, interface_name, timestamp, ts_epoch, rx_bps, tx_bps, total_bps
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def query_traffic(
        self,
        device_id: str,
        *,
        since: datetime,
        until: Optional[datetime] = None,
        interface_name: str = "",
        limit: int = 100000,
    ) -> List[dict]:
        clauses = ["device_id=?", "ts_epoch >= ?"]
        values: list = [device_id, since.timestamp()]
        if interface_name:
            clauses.append("interface_name=?")
            values.append(interface_name)
        if until is not None:
            clauses.append("ts_epoch < ?")
            values.append(until.timestamp())
        values.append(max(1, int(limit)))
        query = (
            "SELECT * FROM traffic_samples WHERE "
            + " AND ".join(clauses)
            + " ORDER BY ts_epoch DESC, id DESC LIMIT ?"
        )
        with self.lock, self._connect() as conn:
            rows = conn.execute(query, values).fetchall()
        # Newest rows win when the limit cuts the range; return them oldest first.
        rows.reverse()
        return [
            {
                "timestamp": r["timestamp"],
                "interfaceName": r["interface_name"],
                "rxBytesPerSecond": float(r["rx_bps"] or 0.0),
                "txBytesPerSecond": float(r["tx_bps"] or 0.0),
                "totalBytesPerSecond": float(r["total_bps"] or 0.0),
            }
            for r in rows
        ]

    def query_traffic_buckets(
        self,
        device_id: str,
        *,
        since: datetime,
        width_seconds: int,
        until: Optional[datetime] = None,
        interface_name: str = "",
    ) -> List[dict]:
        """Average rx/tx/total per fixed-width time bucket, oldest bucket first."""
        width = max(1, int(width_seconds))
        clauses = ["device_id=?", "ts_epoch >= ?"]
        values: list = [device_id, since.timestamp()]
        if interface_name:
            clauses.append("interface_name=?")
            values.append(interface_name)
        if until is not None:
            clauses.append("ts_epoch < ?")
            values.append(until.timestamp())
        query = f"""
            SELECT
                CAST(ts_epoch / {width} AS INTEGER) * {width} AS bucket,
                AVG(rx_bps) AS avg_rx,
                AVG(tx_bps) AS avg_tx,
                AVG(total_bps) AS avg_total
            FROM traffic_samples
            WHERE {' AND '.join(clauses)}
            GROUP BY bucket
            ORDER BY bucket ASC
        """
        with self.lock, self._connect() as conn:
            rows = conn.execute(query, values).fetchall()
        return [
            {
                "timestamp": datetime.fromtimestamp(int(r["bucket"]), tz=timezone.utc).isoformat(),
                "rxBytesPerSecond": float(r["avg_rx"] or 0.0),
                "txBytesPerSecond": float(r["avg_tx"] or 0.0),
                "totalBytesPerSecond": float(r["avg_total"] or 0.0),
            }
            for r in rows
        ]

    def delete_traffic_older_than(self, cutoff: datetime) -> int:
        with self.lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM traffic_samples WHERE ts_epoch < ?", (cutoff.timestamp(),))
            return int(cur.rowcount or 0)

    # -----------------------------
    # Alerts and notifications
    # -----------------------------
    def create_alert(self, alert: Alert) -> Alert:
        created_at = alert.created_at or utc_now_iso()
        try:
            with self.lock, self._connect() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO alerts (
                        condition_key, kind, device_id, interface_id, interface_name, interface_comment,
                        owner_id, severity, message, current_bps, threshold_bps, acknowledged, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        alert.condition_key,
                        alert.kind,
                        alert.device_id,
                        alert.interface_id,
                        alert.interface_name,
                        alert.interface_comment,
                        alert.owner_id,
                        alert.severity,
                        alert.message,
                        alert.current_bps,
                        alert.threshold_bps,
                        created_at,
                    ),
                )
                alert_id = int(cur.lastrowid)
        except sqlite3.IntegrityError as exc:
            raise AlertAlreadyOpen(alert.condition_key) from exc
        alert.id = alert_id
        alert.created_at = created_at
        alert.acknowledged = False
        return alert

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        with self.lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id=?", (int(alert_id),)).fetchone()
        return _row_to_alert(row) if row else None

    def get_open_alert(self, condition_key: str) -> Optional[Alert]:
        with self.lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM alerts WHERE condition_key=? AND acknowledged=0 ORDER BY id DESC LIMIT 1",
                (condition_key,),
            ).fetchone()
        return _row_to_alert(row) if row else None

    def list_alerts(self, *, open_only: bool = False, device_id: str = "", limit: int = 1000) -> List[Alert]:
        clauses = []
        values: list = []
        if open_only:
            clauses.append("acknowledged=0")
        if device_id:
            clauses.append("device_id=?")
            values.append(device_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        values.append(max(1, int(limit)))
        with self.lock, self._connect() as conn:
            rows = conn.execute(f"SELECT * FROM alerts {where} ORDER BY id DESC LIMIT ?", values).fetchall()
        return [_row_to_alert(r) for r in rows]

    def acknowledge_alert(self, alert_id: int, acknowledged_by: str) -> bool:
        with self.lock, self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE alerts SET acknowledged=1, acknowledged_at=?, acknowledged_by=?
                WHERE id=? AND acknowledged=0
                """,
                (utc_now_iso(), acknowledged_by, int(alert_id)),
            )
            return bool(cur.rowcount)

    def add_notification(self, user_id: str, alert_id: Optional[int], kind: str, title: str, message: str) -> int:
        with self.lock, self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO notifications (user_id, alert_id, type, title, message, read, sent_at)
                VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (user_id, alert_id, kind, title, message, utc_now_iso()),
            )
            return int(cur.lastrowid)

    def list_notifications(self, user_id: str, limit: int = 100) -> List[dict]:
        with self.lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE user_id=? ORDER BY id DESC LIMIT ?",
                (user_id, max(1, int(limit))),
            ).fetchall()
        return [dict(r) for r in rows]

    # -----------------------------
    # Observation timeline
    # -----------------------------
    def add_observation(self, category: str, entity: str, summary: str, payload: Optional[dict] = None):
        with self.lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO observations (timestamp, category, entity, summary, payload_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (utc_now_iso(), category, entity, summary, json.dumps(payload or {}, default=str)),
            )

    def get_recent_observations(self, limit: int = 100) -> List[dict]:
        with self.lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM observations ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            {
                "timestamp": r["timestamp"],
                "category": r["category"],
                "entity": r["entity"],
                "summary": r["summary"],
                "payload": json.loads(r["payload_json"] or "{}"),
            }
            for r in rows
        ]
