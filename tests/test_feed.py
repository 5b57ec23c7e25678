import time
from queue import Queue

import pytest

from conftest import FakeDialer, wait_until
from zkillbot.errors import UpstreamRejected
from zkillbot.live.feed import FeedConnectionManager, FeedState, sub_frame, unsub_frame
from zkillbot.live.store import SubscriptionStore

PUBLIC = '{"action":"sub","channel":"public"}'


@pytest.fixture
def store():
    s = SubscriptionStore()
    s.add("chan-a", 98000001, "corporation", "Corp A", 0)
    s.add("chan-b", 98000001, "corporation", "Corp A", 10)
    s.add("chan-b", 2112000001, "character", "Pilot", 0)
    return s


@pytest.fixture
def managers():
    started = []
    yield started
    for manager in started:
        manager.stop(timeout=2)


def _manager(cfg, store, dialer, managers, raw_queue=None):
    manager = FeedConnectionManager(cfg, store, raw_queue=raw_queue, connect_fn=dialer)
    managers.append(manager)
    return manager


def _expected_replay(store):
    return {sub_frame(sub.entity.channel) for _, sub in store.all_tracked()}


def test_frames_match_wire_format():
    assert sub_frame("public") == PUBLIC
    assert sub_frame("corporation:98000001") == '{"action":"sub","channel":"corporation:98000001"}'
    assert unsub_frame("character:5") == '{"action":"unsub","channel":"character:5"}'


def test_connect_replays_tracked_entities_then_heartbeat(feed_cfg, store, managers):
    dialer = FakeDialer()
    manager = _manager(feed_cfg, store, dialer, managers)
    manager.start()
    assert manager.wait_for_state(FeedState.CONNECTED, timeout=2)
    conn = dialer.connections[0]
    assert wait_until(lambda: PUBLIC in conn.frames())

    frames = conn.frames()
    # one frame per entity, not per subscription
    assert len(frames) == 3
    assert set(frames[:-1]) == _expected_replay(store)
    assert frames[-1] == PUBLIC


def test_messages_are_forwarded_in_order(feed_cfg, store, managers):
    dialer = FakeDialer()
    raw_queue = Queue(maxsize=16)
    manager = _manager(feed_cfg, store, dialer, managers, raw_queue=raw_queue)
    manager.start()
    assert manager.wait_for_state(FeedState.CONNECTED, timeout=2)
    conn = dialer.connections[0]
    for i in range(5):
        conn.push(f'{{"n": {i}}}')
    got = [raw_queue.get(timeout=2) for _ in range(5)]
    assert got == [f'{{"n": {i}}}' for i in range(5)]
    assert manager.messages_received == 5


def test_read_error_reconnects_and_replays_current_set(feed_cfg, store, managers):
    dialer = FakeDialer()
    manager = _manager(feed_cfg, store, dialer, managers)
    manager.start()
    assert manager.wait_for_state(FeedState.CONNECTED, timeout=2)
    first = dialer.connections[0]

    # state changes while the socket is down must show up in the replay
    store.add("chan-c", 99000001, "alliance", "Alliance", 0)
    store.remove("chan-b", 2112000001)
    first.push(OSError("connection reset"))

    assert wait_until(lambda: len(dialer.connections) >= 2)
    second = dialer.connections[1]
    assert wait_until(lambda: PUBLIC in second.frames())
    assert first.closed
    assert set(second.frames()) - {PUBLIC} == _expected_replay(store)
    assert manager.reconnections >= 1


def test_silence_past_read_deadline_reconnects(feed_cfg, store, managers):
    feed_cfg["zkillboard"]["read_timeout_sec"] = 0.3
    dialer = FakeDialer()
    manager = _manager(feed_cfg, store, dialer, managers)
    manager.start()
    assert wait_until(lambda: len(dialer.connections) >= 2, timeout=3)
    assert dialer.connections[0].closed


def test_heartbeat_messages_keep_connection_alive(feed_cfg, store, managers):
    feed_cfg["zkillboard"]["read_timeout_sec"] = 0.3
    dialer = FakeDialer()
    manager = _manager(feed_cfg, store, dialer, managers)
    manager.start()
    assert manager.wait_for_state(FeedState.CONNECTED, timeout=2)
    conn = dialer.connections[0]
    for _ in range(8):
        conn.push('{"action":"tqStatus"}')
        time.sleep(0.1)
    assert len(dialer.connections) == 1
    assert manager.connected


def test_dial_failures_back_off_until_success(feed_cfg, store, managers):
    dialer = FakeDialer(failures=3)
    manager = _manager(feed_cfg, store, dialer, managers)
    manager.start()
    assert manager.wait_for_state(FeedState.CONNECTED, timeout=3)
    assert dialer.calls == 4
    # reset after a successful connect
    assert manager.backoff.attempts == 0


def test_failed_heartbeat_subscribe_reconnects(feed_cfg, store, managers):
    class FailingFirst(FakeDialer):
        def __call__(self, url):
            conn = super().__call__(url)
            if len(self.connections) == 1:
                conn.fail_send = True
            return conn

    dialer = FailingFirst()
    manager = _manager(feed_cfg, store, dialer, managers)
    manager.start()
    assert wait_until(lambda: len(dialer.connections) >= 2)
    assert wait_until(lambda: PUBLIC in dialer.connections[1].frames())


def test_subscribe_sends_when_connected(feed_cfg, store, managers):
    dialer = FakeDialer()
    manager = _manager(feed_cfg, store, dialer, managers)
    manager.start()
    assert manager.wait_for_state(FeedState.CONNECTED, timeout=2)
    conn = dialer.connections[0]
    assert manager.subscribe(30000142, "system") is True
    assert manager.unsubscribe(98000001, "corporation") is True
    frames = conn.frames()
    assert sub_frame("system:30000142") in frames
    assert unsub_frame("corporation:98000001") in frames


def test_subscribe_offline_is_deferred_to_replay(feed_cfg, store):
    manager = FeedConnectionManager(feed_cfg, store, connect_fn=FakeDialer())
    assert manager.state is FeedState.DISCONNECTED
    assert manager.subscribe(1, "character") is False
    assert manager.unsubscribe(1, "character") is False


def test_subscribe_send_failure_raises_and_reconnects(feed_cfg, store, managers):
    dialer = FakeDialer()
    manager = _manager(feed_cfg, store, dialer, managers)
    manager.start()
    assert manager.wait_for_state(FeedState.CONNECTED, timeout=2)
    first = dialer.connections[0]
    assert wait_until(lambda: PUBLIC in first.frames())
    first.fail_send = True
    with pytest.raises(UpstreamRejected):
        manager.subscribe(1, "character")
    assert first.closed
    assert wait_until(lambda: len(dialer.connections) >= 2)


def test_full_queue_applies_backpressure_without_dropping(feed_cfg, store, managers):
    dialer = FakeDialer()
    raw_queue = Queue(maxsize=1)
    manager = _manager(feed_cfg, store, dialer, managers, raw_queue=raw_queue)
    manager.start()
    assert manager.wait_for_state(FeedState.CONNECTED, timeout=2)
    conn = dialer.connections[0]
    for i in range(4):
        conn.push(str(i))
    assert wait_until(lambda: raw_queue.full())
    time.sleep(0.3)
    got = [raw_queue.get(timeout=2) for _ in range(4)]
    assert got == ["0", "1", "2", "3"]
    assert len(dialer.connections) == 1


def test_backlog_past_read_deadline_reconnects(feed_cfg, store, managers):
    feed_cfg["zkillboard"]["read_timeout_sec"] = 0.3
    dialer = FakeDialer()
    raw_queue = Queue(maxsize=1)
    manager = _manager(feed_cfg, store, dialer, managers, raw_queue=raw_queue)
    manager.start()
    assert manager.wait_for_state(FeedState.CONNECTED, timeout=2)
    conn = dialer.connections[0]
    conn.push("a")
    conn.push("b")
    assert wait_until(lambda: len(dialer.connections) >= 2, timeout=3)
    assert conn.closed


def test_stop_closes_connection_within_deadline(feed_cfg, store):
    feed_cfg["zkillboard"]["read_timeout_sec"] = 5
    dialer = FakeDialer()
    raw_queue = Queue()
    manager = FeedConnectionManager(feed_cfg, store, raw_queue=raw_queue, connect_fn=dialer)
    manager.start()
    assert manager.wait_for_state(FeedState.CONNECTED, timeout=2)
    raw_queue.put("left over")

    started = time.monotonic()
    manager.stop(timeout=5)
    assert time.monotonic() - started < 2
    assert dialer.connections[0].closed
    assert not manager.is_alive()
    assert manager.state is FeedState.STOPPED
    assert raw_queue.empty()


def test_stop_interrupts_backoff_sleep(feed_cfg, store):
    feed_cfg["zkillboard"]["backoff"] = {"min_sec": 30, "max_sec": 60, "factor": 2, "jitter": False}
    dialer = FakeDialer(always_fail=True)
    manager = FeedConnectionManager(feed_cfg, store, connect_fn=dialer)
    manager.start()
    assert wait_until(lambda: dialer.calls >= 1)
    started = time.monotonic()
    manager.stop(timeout=5)
    assert time.monotonic() - started < 2
    assert not manager.is_alive()
    assert dialer.calls == 1
