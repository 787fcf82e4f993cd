#!/usr/bin/env python3
"""
RouterWatch - router traffic monitoring
Entry point: builds the store and monitor service, wires them into the server and runs it.
"""

import argparse
import logging
from dataclasses import replace
from pathlib import Path

from config import SNMPWALK_AVAILABLE, load_settings
from services.monitor import MonitorService
from store import DataStore


def main() -> int:
    parser = argparse.ArgumentParser(description="RouterWatch - router traffic monitoring server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5001, help="Port to bind to")
    parser.add_argument("--db", default="", help="SQLite database path (overrides ROUTERWATCH_DB)")
    parser.add_argument("--no-scheduler", action="store_true", help="Serve the API without running monitoring duties")
    args = parser.parse_args()

    settings = load_settings()
    if args.db:
        settings = replace(settings, db_path=Path(args.db))

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log = logging.getLogger("routerwatch")

    # Import server (creates its own globals) then replace with our instances
    import server

    datastore = DataStore(settings.db_path)
    monitor = MonitorService(datastore, settings, events=server.event_bus)
    monitor.set_push_handler(server.push_realtime)
    server.settings = settings
    server.datastore = datastore
    server.monitor = monitor

    log.info("Starting RouterWatch server on %s:%s", args.host, args.port)
    log.info("Database: %s", settings.db_path)
    log.info("snmpwalk available: %s", SNMPWALK_AVAILABLE)
    if args.no_scheduler:
        log.info("Monitoring duties disabled (--no-scheduler)")
    else:
        monitor.start()

    try:
        server.socketio.run(
            server.app,
            host=args.host,
            port=args.port,
            debug=settings.debug,
            allow_unsafe_werkzeug=settings.debug,
        )
    finally:
        monitor.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
