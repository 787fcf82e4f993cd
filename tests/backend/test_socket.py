import server

from conftest import FakeTask, stat


def names(received):
    return [msg["name"] for msg in received]


def last(received, name):
    matches = [msg["args"][0] for msg in received if msg["name"] == name]
    assert matches, f"no {name} event in {names(received)}"
    return matches[-1]


def authenticate(sock, user_id="owner-1"):
    sock.emit("auth", {"userId": user_id})
    return sock.get_received()


def test_connect_asks_for_auth(socket_client):
    received = socket_client.get_received()
    assert "auth_required" in names(received)


def test_polling_requires_auth(socket_client, client_ctx, make_device):
    make_device()
    socket_client.get_received()

    socket_client.emit("start_realtime_polling", {"deviceId": "dev-1"})

    assert last(socket_client.get_received(), "error")["message"] == "Not authenticated"
    assert not client_ctx["monitor"].poller.is_polling("dev-1")


def test_auth_rejects_missing_user(socket_client):
    socket_client.get_received()
    socket_client.emit("auth", {})
    assert "auth_error" in names(socket_client.get_received())


def test_auth_checks_api_key_when_enabled(socket_client, monkeypatch):
    monkeypatch.setattr(server, "API_KEY", "k3y")
    socket_client.get_received()

    socket_client.emit("auth", {"userId": "owner-1", "apiKey": "wrong"})
    assert "auth_error" in names(socket_client.get_received())

    socket_client.emit("auth", {"userId": "owner-1", "apiKey": "k3y"})
    assert last(socket_client.get_received(), "auth_success") == {"userId": "owner-1"}


def test_start_and_stop_realtime_polling(socket_client, client_ctx, make_device):
    make_device()
    poller = client_ctx["monitor"].poller
    authenticate(socket_client)

    socket_client.emit("start_realtime_polling", {"deviceId": "dev-1"})
    started = last(socket_client.get_received(), "realtime_status")
    assert started == {"status": "started", "deviceId": "dev-1", "subscribers": 1}
    assert poller.is_polling("dev-1")
    assert FakeTask.created[-1].started

    socket_client.emit("stop_realtime_polling", {"deviceId": "dev-1"})
    stopped = last(socket_client.get_received(), "realtime_status")
    assert stopped == {"status": "stopped", "deviceId": "dev-1", "subscribers": 0}
    assert not poller.is_polling("dev-1")
    assert FakeTask.created[-1].cancelled


def test_unknown_device_is_rejected(socket_client, client_ctx):
    authenticate(socket_client)
    socket_client.emit("start_realtime_polling", {"deviceId": "ghost"})
    assert last(socket_client.get_received(), "error")["message"] == "Unknown deviceId"
    assert client_ctx["monitor"].poller.active_devices() == []


def test_second_subscriber_shares_the_poll(client_ctx, make_device):
    make_device()
    first = server.socketio.test_client(server.app, flask_test_client=client_ctx["client"])
    second = server.socketio.test_client(server.app, flask_test_client=client_ctx["client"])
    try:
        for sock, user in ((first, "owner-1"), (second, "tech-2")):
            authenticate(sock, user)
            sock.emit("start_realtime_polling", {"deviceId": "dev-1"})

        assert last(second.get_received(), "realtime_status")["subscribers"] == 2
        assert len(FakeTask.created) == 1

        first.disconnect()
        assert client_ctx["monitor"].poller.subscriber_count("dev-1") == 1
        assert client_ctx["monitor"].poller.is_polling("dev-1")
    finally:
        for sock in (first, second):
            if sock.is_connected():
                sock.disconnect()

    assert not client_ctx["monitor"].poller.is_polling("dev-1")


def test_disconnect_releases_subscriptions(socket_client, client_ctx, make_device):
    make_device()
    authenticate(socket_client)
    socket_client.emit("start_realtime_polling", {"deviceId": "dev-1"})

    socket_client.disconnect()

    assert not client_ctx["monitor"].poller.is_polling("dev-1")
    assert server._sessions == {}


def test_realtime_payload_reaches_device_room(socket_client, client_ctx, make_device, protocols):
    make_device(sticky_method="native")
    protocols.add("dev-1", "native", stats=[stat("ether1", 100, 100)])
    authenticate(socket_client)
    socket_client.emit("start_realtime_polling", {"deviceId": "dev-1"})
    socket_client.get_received()

    # One tick of the (fake) 1s task: poll the device and push to subscribers.
    FakeTask.created[-1].fn()

    pushed = last(socket_client.get_received(), "realtime_traffic")
    assert pushed["type"] == "realtime_traffic"
    assert pushed["deviceId"] == "dev-1"
    assert [p["interfaceName"] for p in pushed["data"]] == ["ether1"]


def test_alert_notification_reaches_user_room(socket_client, client_ctx):
    authenticate(socket_client, "owner-1")

    server.event_bus.publish(
        event_type="alert.opened",
        device_id="dev-1",
        entity="device_unreachable:dev-1",
        summary="Router is UNREACHABLE",
        data={
            "alertId": 1,
            "notifications": {
                "owner-1": {"id": 7, "title": "Router Down: Edge", "message": "Router is UNREACHABLE"},
                "someone-else": {"id": 8, "title": "Router Down: Edge", "message": "Router is UNREACHABLE"},
            },
        },
    )

    received = socket_client.get_received()
    notifications = [msg["args"][0] for msg in received if msg["name"] == "notification"]
    assert notifications == [{"id": 7, "title": "Router Down: Edge", "message": "Router is UNREACHABLE"}]
