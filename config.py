"""
RouterWatch settings and optional tool flags.
Settings come from ROUTERWATCH_* environment variables; SNMP needs net-snmp CLI tools.
"""

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

SNMPWALK_AVAILABLE = bool(shutil.which("snmpwalk"))
SNMPGET_AVAILABLE = bool(shutil.which("snmpget"))

DEFAULT_DATA_DIR = Path(__file__).resolve().parent / "data"


def _env_str(name: str, default: str) -> str:
    return str(os.environ.get(name, default) or default).strip()


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name, "")
    try:
        value = int(str(raw).strip()) if str(raw).strip() else default
    except ValueError:
        value = default
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.environ.get(name, "")
    try:
        value = float(str(raw).strip()) if str(raw).strip() else default
    except ValueError:
        value = default
    return max(minimum, value)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the monitor, scheduler and server."""

    db_path: Path = DEFAULT_DATA_DIR / "routerwatch.db"
    api_key: str = ""
    debug: bool = False
    log_level: str = "INFO"

    # Duty cadences (seconds)
    collection_interval: float = 60.0
    alert_interval: float = 60.0
    stale_sweep_interval: float = 300.0
    realtime_interval: float = 1.0
    compaction_interval: float = 300.0
    retention_interval: float = 86400.0

    # Alert confirmation: 5 checks x 60s is roughly five minutes to confirm an outage.
    confirmation_threshold: int = 5
    stale_counter_timeout: float = 600.0

    # Stores and retention
    realtime_push_points: int = 100
    realtime_max_per_series: int = 7200
    realtime_max_series: int = 20000
    compaction_window: float = 300.0
    compaction_samples: int = 5
    retention_days: int = 730

    # Remote calls
    probe_timeout: float = 2.0
    native_timeout: float = 10.0
    rest_timeout: float = 10.0
    snmp_timeout: int = 5
    snmp_retries: int = 1
    fanout_workers: int = 16

    # Historical query cache
    cache_ttl: float = 120.0
    cache_max_entries: int = 100

    extra_probe_ports: Tuple[int, ...] = (8728, 8729, 443, 80, 22, 8291)


def load_settings() -> Settings:
    """Build Settings from the environment, falling back to defaults."""
    base = Settings()
    db_raw = os.environ.get("ROUTERWATCH_DB", "").strip()
    return Settings(
        db_path=Path(db_raw) if db_raw else base.db_path,
        api_key=_env_str("ROUTERWATCH_API_KEY", ""),
        debug=_env_bool("ROUTERWATCH_DEBUG", False),
        log_level=_env_str("ROUTERWATCH_LOG_LEVEL", base.log_level).upper(),
        collection_interval=_env_float("ROUTERWATCH_COLLECTION_INTERVAL", base.collection_interval, 1.0),
        alert_interval=_env_float("ROUTERWATCH_ALERT_INTERVAL", base.alert_interval, 1.0),
        stale_sweep_interval=_env_float("ROUTERWATCH_STALE_SWEEP_INTERVAL", base.stale_sweep_interval, 1.0),
        realtime_interval=_env_float("ROUTERWATCH_REALTIME_INTERVAL", base.realtime_interval, 0.2),
        compaction_interval=_env_float("ROUTERWATCH_COMPACTION_INTERVAL", base.compaction_interval, 1.0),
        retention_interval=_env_float("ROUTERWATCH_RETENTION_INTERVAL", base.retention_interval, 60.0),
        confirmation_threshold=_env_int("ROUTERWATCH_CONFIRMATION_THRESHOLD", base.confirmation_threshold, 1),
        stale_counter_timeout=_env_float("ROUTERWATCH_STALE_COUNTER_TIMEOUT", base.stale_counter_timeout, 1.0),
        realtime_push_points=_env_int("ROUTERWATCH_REALTIME_PUSH_POINTS", base.realtime_push_points, 1),
        realtime_max_per_series=_env_int("ROUTERWATCH_REALTIME_MAX_PER_SERIES", base.realtime_max_per_series, 1),
        realtime_max_series=_env_int("ROUTERWATCH_REALTIME_MAX_SERIES", base.realtime_max_series, 1),
        compaction_window=_env_float("ROUTERWATCH_COMPACTION_WINDOW", base.compaction_window, 1.0),
        compaction_samples=_env_int("ROUTERWATCH_COMPACTION_SAMPLES", base.compaction_samples, 1),
        retention_days=_env_int("ROUTERWATCH_RETENTION_DAYS", base.retention_days, 1),
        probe_timeout=_env_float("ROUTERWATCH_PROBE_TIMEOUT", base.probe_timeout, 0.1),
        native_timeout=_env_float("ROUTERWATCH_NATIVE_TIMEOUT", base.native_timeout, 0.5),
        rest_timeout=_env_float("ROUTERWATCH_REST_TIMEOUT", base.rest_timeout, 0.5),
        snmp_timeout=_env_int("ROUTERWATCH_SNMP_TIMEOUT", base.snmp_timeout, 1),
        snmp_retries=_env_int("ROUTERWATCH_SNMP_RETRIES", base.snmp_retries, 0),
        fanout_workers=_env_int("ROUTERWATCH_FANOUT_WORKERS", base.fanout_workers, 1),
        cache_ttl=_env_float("ROUTERWATCH_CACHE_TTL", base.cache_ttl, 0.0),
        cache_max_entries=_env_int("ROUTERWATCH_CACHE_MAX_ENTRIES", base.cache_max_entries, 1),
    )
