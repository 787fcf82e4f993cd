#!/usr/bin/env python3
"""
RouterWatch - router traffic monitoring
Realtime push channel (Socket.IO) and a thin HTTP API over the monitor service.
"""

import logging
import threading
from dataclasses import asdict
from datetime import timedelta
from typing import Dict

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO, emit, join_room, leave_room

from config import SNMPGET_AVAILABLE, SNMPWALK_AVAILABLE, load_settings
from services.events import EventBus, MonitorEvent
from services.monitor import MonitorService
from store import DataStore
from toolkit.utils import parse_iso, utc_now

_LOGGER = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)
socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading')

settings = load_settings()
API_KEY = settings.api_key

# In-process event bus shared by the alert notifier and the push channel.
event_bus = EventBus(max_events=2000)
datastore = DataStore(settings.db_path)
monitor = MonitorService(datastore, settings, events=event_bus)

# Socket.IO sid -> authenticated user id
_sessions: Dict[str, str] = {}
_sessions_lock = threading.Lock()


@app.before_request
def enforce_optional_api_key():
    """Optional API key guard. Disabled when ROUTERWATCH_API_KEY is unset."""
    if not API_KEY:
        return None
    # Keep the status path readable without auth for local diagnostics.
    if request.path == "/api/status":
        return None
    provided = request.headers.get("X-API-Key", "")
    if provided != API_KEY:
        return jsonify({"error": "Unauthorized"}), 401
    return None


def _user_room(user_id: str) -> str:
    return f"user:{user_id}"


def _device_room(device_id: str) -> str:
    return f"device:{device_id}"


def push_realtime(device_id: str, payload: list) -> None:
    socketio.emit(
        "realtime_traffic",
        {"type": "realtime_traffic", "deviceId": device_id, "data": payload},
        to=_device_room(device_id),
    )


def _forward_event(ev: MonitorEvent) -> None:
    """Fan alert.opened notifications out to each recipient's room."""
    if ev.type != "alert.opened":
        return
    for user_id, notification in (ev.data.get("notifications") or {}).items():
        socketio.emit("notification", notification, to=_user_room(user_id))


event_bus.subscribe(_forward_event)
monitor.set_push_handler(push_realtime)


# -----------------------------
# HTTP API
# -----------------------------
@app.route('/api/status', methods=['GET'])
def get_status():
    return jsonify({
        'service': 'routerwatch',
        'monitor_running': bool(monitor.running),
        'device_count': len(datastore.list_devices()),
        'snmpwalk_available': SNMPWALK_AVAILABLE,
        'snmpget_available': SNMPGET_AVAILABLE,
        'api_key_enabled': bool(API_KEY),
        'db_path': str(datastore.db_path),
        'monitor': monitor.status(),
    })


@app.route('/api/devices', methods=['GET'])
def list_devices():
    return jsonify({"devices": [asdict(d) for d in datastore.list_devices()]})


@app.route('/api/devices/<device_id>/interfaces', methods=['GET'])
def list_device_interfaces(device_id: str):
    if datastore.get_device(device_id) is None:
        return jsonify({"error": "Device not found"}), 404
    return jsonify({
        "deviceId": device_id,
        "interfaces": datastore.list_interface_metadata(device_id),
        "monitored": [asdict(m) for m in datastore.list_monitored_interfaces(device_id)],
    })


@app.route('/api/devices/<device_id>/traffic', methods=['GET'])
def get_device_traffic(device_id: str):
    if datastore.get_device(device_id) is None:
        return jsonify({"error": "Device not found"}), 404

    since_raw = request.args.get("since", "")
    until_raw = request.args.get("until", "")
    since = parse_iso(since_raw) if since_raw else utc_now() - timedelta(hours=24)
    until = parse_iso(until_raw) if until_raw else None
    if since is None or (until_raw and until is None):
        return jsonify({"error": "since/until must be ISO-8601 timestamps"}), 400
    if until is not None and until <= since:
        return jsonify({"error": "until must be after since"}), 400

    interface_name = request.args.get("interface", "").strip()
    return jsonify(monitor.cache.get(device_id, since, until, interface_name))


@app.route('/api/devices/<device_id>/traffic/realtime', methods=['GET'])
def get_device_realtime(device_id: str):
    try:
        points = int(request.args.get("points", str(settings.realtime_push_points)))
    except ValueError:
        points = settings.realtime_push_points
    points = max(1, min(settings.realtime_max_per_series, points))

    interface_name = request.args.get("interface", "").strip()
    if interface_name:
        samples = monitor.realtime.recent(device_id, interface_name, points)
    else:
        samples = monitor.realtime.last_n_per_interface(device_id, points)
    return jsonify({
        "deviceId": device_id,
        "polling": monitor.poller.is_polling(device_id),
        "data": [s.to_dict() for s in samples],
    })


@app.route('/api/devices/<device_id>/test', methods=['POST'])
def test_device_connection(device_id: str):
    try:
        result = monitor.test_connection(device_id)
    except KeyError:
        return jsonify({"error": "Device not found"}), 404
    return jsonify(result)


@app.route('/api/alerts', methods=['GET'])
def list_alerts():
    open_only = str(request.args.get("open", "")).strip().lower() in ("1", "true", "yes")
    device_id = request.args.get("device", "").strip()
    try:
        limit = int(request.args.get("limit", "200"))
    except ValueError:
        limit = 200
    limit = max(1, min(1000, limit))
    alerts = datastore.list_alerts(open_only=open_only, device_id=device_id, limit=limit)
    return jsonify({"alerts": [asdict(a) for a in alerts]})


@app.route('/api/alerts/<int:alert_id>/acknowledge', methods=['POST'])
def acknowledge_alert(alert_id: int):
    payload = request.get_json(silent=True) or {}
    user_id = str(payload.get("userId", "")).strip()
    if not user_id:
        return jsonify({"error": "userId is required"}), 400
    try:
        acknowledged = monitor.acknowledge_alert(alert_id, user_id)
    except KeyError:
        return jsonify({"error": "Alert not found"}), 404
    if not acknowledged:
        return jsonify({"error": "Alert already acknowledged"}), 409
    return jsonify({"alert": asdict(datastore.get_alert(alert_id))})


@app.route('/api/notifications', methods=['GET'])
def list_notifications():
    user_id = request.args.get("userId", "").strip()
    if not user_id:
        return jsonify({"error": "userId is required"}), 400
    return jsonify({"notifications": datastore.list_notifications(user_id)})


@app.route('/api/events', methods=['GET'])
def list_events():
    try:
        limit = int(request.args.get("limit", "200"))
        after = int(request.args.get("after", "0"))
    except ValueError:
        return jsonify({"error": "limit/after must be integers"}), 400
    events = event_bus.list_events(
        limit=max(1, min(2000, limit)),
        event_type=request.args.get("type", "").strip(),
        device_id=request.args.get("device", "").strip(),
        after_seq=after,
    )
    return jsonify({"events": events})


@app.route('/api/observations', methods=['GET'])
def list_observations():
    try:
        limit = int(request.args.get("limit", "100"))
    except ValueError:
        limit = 100
    return jsonify({"observations": datastore.get_recent_observations(limit=max(1, min(1000, limit)))})


# -----------------------------
# Realtime push channel
# -----------------------------
def _current_user() -> str:
    with _sessions_lock:
        return _sessions.get(request.sid, "")


def _device_id_from(data) -> str:
    if not isinstance(data, dict):
        return ""
    return str(data.get("deviceId", "") or "").strip()


@socketio.on('connect')
def handle_connect():
    emit('auth_required', {'message': 'Send auth with your userId'})


@socketio.on('auth')
def handle_auth(data):
    data = data if isinstance(data, dict) else {}
    user_id = str(data.get("userId", "") or "").strip()
    if not user_id:
        emit('auth_error', {'message': 'userId is required'})
        return
    if API_KEY and str(data.get("apiKey", "")) != API_KEY:
        emit('auth_error', {'message': 'Unauthorized'})
        return
    with _sessions_lock:
        _sessions[request.sid] = user_id
    join_room(_user_room(user_id))
    _LOGGER.debug("socket %s authenticated as %s", request.sid, user_id)
    emit('auth_success', {'userId': user_id})


@socketio.on('start_realtime_polling')
def handle_start_realtime(data):
    if not _current_user():
        emit('error', {'message': 'Not authenticated'})
        return
    device_id = _device_id_from(data)
    if not device_id or datastore.get_device(device_id) is None:
        emit('error', {'message': 'Unknown deviceId'})
        return
    join_room(_device_room(device_id))
    count = monitor.poller.subscribe(device_id, request.sid)
    emit('realtime_status', {'status': 'started', 'deviceId': device_id, 'subscribers': count})


@socketio.on('stop_realtime_polling')
def handle_stop_realtime(data):
    if not _current_user():
        emit('error', {'message': 'Not authenticated'})
        return
    device_id = _device_id_from(data)
    if not device_id:
        emit('error', {'message': 'deviceId is required'})
        return
    leave_room(_device_room(device_id))
    count = monitor.poller.unsubscribe(device_id, request.sid)
    emit('realtime_status', {'status': 'stopped', 'deviceId': device_id, 'subscribers': count})


@socketio.on('disconnect')
def handle_disconnect(*args):
    left = monitor.poller.unsubscribe_all(request.sid)
    if left:
        _LOGGER.debug("socket %s disconnected, left realtime for %s", request.sid, left)
    with _sessions_lock:
        _sessions.pop(request.sid, None)
