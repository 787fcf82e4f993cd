import threading
import time
from datetime import timedelta

from models import TrafficSample
from services.realtime import RealtimePoller, RealtimeStore
from services.tasks import RepeatingTask
from toolkit.utils import utc_now

from conftest import FakeTask


def sample(device_id, name, ts, total=100.0):
    return TrafficSample(device_id, name, ts, total / 2, total / 2, total)


def test_series_are_capped():
    store = RealtimeStore(max_per_series=3)
    t0 = utc_now()
    store.extend(sample("d1", "ether1", t0 + timedelta(seconds=i), total=i) for i in range(5))

    assert [s.total_bps for s in store.recent("d1", "ether1", 10)] == [2, 3, 4]
    assert store.latest("d1", "ether1").total_bps == 4


def test_least_recently_written_series_is_evicted():
    store = RealtimeStore(max_series=2)
    t0 = utc_now()
    store.append(sample("d1", "ether1", t0))
    store.append(sample("d1", "ether2", t0))
    store.append(sample("d1", "ether1", t0 + timedelta(seconds=1)))
    store.append(sample("d2", "ether1", t0))

    assert set(store.series_keys()) == {("d1", "ether1"), ("d2", "ether1")}
    assert store.evicted_series == 1
    assert store.status()["series"] == 2


def test_queries():
    store = RealtimeStore()
    t0 = utc_now()
    for i in range(4):
        store.append(sample("d1", "ether1", t0 + timedelta(seconds=i), total=100 * (i + 1)))
        store.append(sample("d1", "ether2", t0 + timedelta(seconds=i), total=10))
    store.append(sample("d2", "ether1", t0))

    last = store.last_n_per_interface("d1", 2)
    assert len(last) == 4
    assert last == sorted(last, key=lambda s: s.timestamp)
    window = store.window("d1", "ether1", t0 + timedelta(seconds=1), t0 + timedelta(seconds=2))
    assert [s.total_bps for s in window] == [200, 300]

    assert store.forget_device("d1") == 2
    assert len(store) == 1


def test_first_subscriber_starts_and_last_stops_polling():
    FakeTask.created = []
    poller = RealtimePoller(lambda d: None, lambda d, p: None, task_factory=FakeTask)

    assert poller.subscribe("d1", "sid-a") == 1
    assert poller.subscribe("d1", "sid-b") == 2
    assert len(FakeTask.created) == 1
    task = FakeTask.created[0]
    assert task.started
    assert task.interval == 1.0

    assert poller.unsubscribe("d1", "sid-a") == 1
    assert not task.cancelled
    assert poller.unsubscribe("d1", "sid-b") == 0
    assert task.cancelled
    assert not poller.is_polling("d1")
    assert poller.unsubscribe("d1", "sid-b") == 0


def test_same_subscriber_twice_counts_once():
    FakeTask.created = []
    poller = RealtimePoller(lambda d: None, lambda d, p: None, task_factory=FakeTask)
    poller.subscribe("d1", "sid-a")
    assert poller.subscribe("d1", "sid-a") == 1
    assert len(FakeTask.created) == 1


def test_unsubscribe_all_releases_every_device():
    FakeTask.created = []
    poller = RealtimePoller(lambda d: None, lambda d, p: None, task_factory=FakeTask)
    poller.subscribe("d1", "sid-a")
    poller.subscribe("d2", "sid-a")
    poller.subscribe("d2", "sid-b")

    assert sorted(poller.unsubscribe_all("sid-a")) == ["d1", "d2"]
    assert poller.active_devices() == ["d2"]
    assert poller.subscriber_count("d2") == 1


def test_tick_polls_and_pushes():
    FakeTask.created = []
    pushed = []
    poller = RealtimePoller(lambda d: [{"deviceId": d}], lambda d, p: pushed.append((d, p)), task_factory=FakeTask)
    poller.subscribe("d1", "sid-a")

    FakeTask.created[0].fn()

    assert pushed == [("d1", [{"deviceId": "d1"}])]


def test_tick_without_payload_pushes_nothing():
    FakeTask.created = []
    pushed = []
    poller = RealtimePoller(lambda d: None, lambda d, p: pushed.append(p), task_factory=FakeTask)
    poller.subscribe("d1", "sid-a")
    FakeTask.created[0].fn()
    assert pushed == []


def test_tick_does_not_push_after_last_subscriber_left():
    FakeTask.created = []
    pushed = []
    holder = {}

    def poll(device_id):
        # Last subscriber leaves while this poll is in flight.
        holder["poller"].unsubscribe(device_id, "sid-a")
        return [{"deviceId": device_id}]

    poller = RealtimePoller(poll, lambda d, p: pushed.append(p), task_factory=FakeTask)
    holder["poller"] = poller
    poller.subscribe("d1", "sid-a")

    FakeTask.created[0].fn()

    assert pushed == []
    assert FakeTask.created[0].cancelled


def test_repeating_task_skips_overlapping_ticks():
    release = threading.Event()
    entered = threading.Event()

    def slow():
        entered.set()
        release.wait(5)

    task = RepeatingTask("slow", 60, slow)
    worker = threading.Thread(target=task.run_once)
    worker.start()
    assert entered.wait(5)

    assert task.busy
    assert task.run_once() is False
    assert task.skipped == 1

    release.set()
    worker.join(5)
    assert task.runs == 1
    assert not task.busy


def test_repeating_task_survives_failures():
    def boom():
        raise RuntimeError("tick failed")

    task = RepeatingTask("boom", 60, boom)
    assert task.run_once() is True
    assert task.failures == 1
    assert task.last_run_at


def test_repeating_task_runs_on_schedule():
    ticks = []
    task = RepeatingTask("fast", 0.05, lambda: ticks.append(1), run_immediately=True)
    task.start()
    deadline = time.monotonic() + 5
    while len(ticks) < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    task.cancel(wait=True)

    assert len(ticks) >= 3
    assert task.status()["name"] == "fast"
