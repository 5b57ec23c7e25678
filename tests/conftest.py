import os
import tempfile
import threading
import time
from queue import Empty, Queue

import pytest

os.environ.setdefault("ZKILLBOT_LOG_DIR", tempfile.mkdtemp(prefix="zkillbot-logs-"))

from zkillbot.errors import NotFound, ServiceUnavailable, UpstreamRejected  # noqa: E402


def wait_until(predicate, timeout=3.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeConnection:
    """In-memory stand-in for a websockets sync ClientConnection."""

    def __init__(self):
        self.inbound = Queue()
        self.sent = []
        self.closed = False
        self.fail_send = False
        self._lock = threading.Lock()

    def push(self, item):
        self.inbound.put(item)

    def send(self, message):
        if self.closed or self.fail_send:
            raise OSError("send failed")
        with self._lock:
            self.sent.append(message)

    def recv(self, timeout=None):
        deadline = time.monotonic() + (timeout if timeout is not None else 3600)
        while True:
            if self.closed:
                raise OSError("connection closed")
            try:
                item = self.inbound.get(timeout=0.01)
            except Empty:
                if time.monotonic() >= deadline:
                    raise TimeoutError("timed out")
                continue
            if isinstance(item, BaseException):
                raise item
            return item

    def close(self):
        self.closed = True

    def frames(self):
        with self._lock:
            return list(self.sent)


class FakeDialer:
    def __init__(self, failures=0, always_fail=False):
        self.failures = failures
        self.always_fail = always_fail
        self.calls = 0
        self.connections = []

    def __call__(self, url):
        self.calls += 1
        if self.always_fail or self.failures > 0:
            self.failures -= 1
            raise OSError("dial failed")
        conn = FakeConnection()
        self.connections.append(conn)
        return conn


class RecordingSink:
    """Collects replies and notify actions instead of talking to Discord."""

    def __init__(self):
        self.messages = []
        self.rich = []
        self.actions = []

    def send(self, sink_id, text):
        self.messages.append((sink_id, text))

    def send_rich(self, sink_id, title, fields, description=""):
        self.rich.append((sink_id, title, list(fields), description))

    def deliver(self, action):
        self.actions.append(action)

    def start(self):
        pass

    def stop(self, timeout=5.0):
        pass

    def last_text(self):
        return self.messages[-1][1] if self.messages else None


class FakeResolver:
    def __init__(self, names=None, lookups=None, unavailable=False):
        self.names = names or {}
        self.lookups = lookups or {}
        self.unavailable = unavailable
        self.resolve_calls = []

    def resolve(self, entity_id):
        self.resolve_calls.append(entity_id)
        if self.unavailable:
            raise ServiceUnavailable("ESI down")
        if entity_id not in self.names:
            raise NotFound(f"no entity {entity_id}")
        return self.names[entity_id]

    def lookup(self, text):
        if self.unavailable:
            raise ServiceUnavailable("ESI down")
        return self.lookups.get(text, {"alliances": [], "corporations": [], "characters": []})


class FakeFeed:
    def __init__(self, reject=False, connected=True):
        self.reject = reject
        self.connected = connected
        self.subscribed = []
        self.unsubscribed = []

    def subscribe(self, entity_id, category):
        if self.reject:
            raise UpstreamRejected("socket gone")
        self.subscribed.append((entity_id, category))
        return self.connected

    def unsubscribe(self, entity_id, category):
        if self.reject:
            raise UpstreamRejected("socket gone")
        self.unsubscribed.append((entity_id, category))
        return self.connected


@pytest.fixture
def feed_cfg():
    return {
        "zkillboard": {
            "ws_url": "wss://example.invalid/websocket/",
            "read_timeout_sec": 3,
            "open_timeout_sec": 1,
            "raw_queue_size": 64,
            "backoff": {"min_sec": 0.01, "max_sec": 0.05, "factor": 2, "jitter": False},
        },
        "esi": {"max_search_results": 200, "max_search_results_soft": 10},
        "commands": {"queue_size": 8},
    }
