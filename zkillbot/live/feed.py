from __future__ import annotations

import json
import threading
import time
from enum import Enum
from queue import Empty, Full, Queue
from typing import Any, Callable, Optional, Protocol

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

from zkillbot.errors import TransientNetworkError, UpstreamRejected
from zkillbot.logging_utils import get_logger
from .backoff import Backoff
from .store import SubscriptionStore

HEARTBEAT_CHANNEL = "public"
ENQUEUE_SLICE_SEC = 0.25

NETWORK_ERRORS = (OSError, WebSocketException, TransientNetworkError)


class FeedConnection(Protocol):
    def send(self, message: str) -> None: ...

    def recv(self, timeout: Optional[float] = None) -> str | bytes: ...

    def close(self) -> None: ...


class FeedState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DRAINING = "draining"
    STOPPED = "stopped"


def sub_frame(channel: str) -> str:
    return json.dumps({"action": "sub", "channel": channel}, separators=(",", ":"))


def unsub_frame(channel: str) -> str:
    return json.dumps({"action": "unsub", "channel": channel}, separators=(",", ":"))


class FeedConnectionManager:
    """
    Keeps one websocket to zKillboard alive and pushes raw frames onto a
    bounded queue for the dispatcher.

    - Reconnects with exponential backoff; the backoff sleep is interruptible.
    - After every connect, replays all tracked entities and subscribes to the
      ``public`` channel, whose ~15s status messages act as the heartbeat.
    - A read that sees nothing within ``read_timeout_sec`` counts as a dead
      connection.
    - A full queue blocks the reader in short slices instead of dropping frames.
    """

    def __init__(
        self,
        cfg: dict,
        store: SubscriptionStore,
        raw_queue: Optional[Queue] = None,
        connect_fn: Optional[Callable[[str], FeedConnection]] = None,
        backoff: Optional[Backoff] = None,
    ) -> None:
        zcfg = cfg.get("zkillboard", {})
        self.ws_url = str(zcfg.get("ws_url", "wss://zkillboard.com/websocket/"))
        self.read_timeout = float(zcfg.get("read_timeout_sec", 30))
        self.open_timeout = float(zcfg.get("open_timeout_sec", 10))

        bcfg = zcfg.get("backoff", {})
        self.backoff = backoff or Backoff(
            min=float(bcfg.get("min_sec", 0.5)),
            max=float(bcfg.get("max_sec", 300)),
            factor=float(bcfg.get("factor", 2)),
            jitter=bool(bcfg.get("jitter", True)),
        )
        self.raw_queue: Queue = raw_queue if raw_queue is not None else Queue(
            maxsize=int(zcfg.get("raw_queue_size", 256))
        )

        self._store = store
        self._connect = connect_fn or self._dial
        self._logger = get_logger("zkill_feed")

        self._lock = threading.Lock()
        self._state_changed = threading.Condition(self._lock)
        self._conn: Optional[FeedConnection] = None
        self._state = FeedState.DISCONNECTED
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.messages_received = 0
        self.reconnections = 0

    # Public API ----------------------------------------------------------

    @property
    def state(self) -> FeedState:
        with self._lock:
            return self._state

    @property
    def connected(self) -> bool:
        return self.state is FeedState.CONNECTED

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="zkill-feed", daemon=True)
        self._thread.start()
        self._logger.info("zKillboard feed started for %s", self.ws_url)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            self._close_quietly(conn)
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        dropped = self._discard_pending()
        self._set_state(FeedState.STOPPED)
        self._logger.info("zKillboard feed stopped (discarded %d queued frames)", dropped)

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def wait_for_state(self, state: FeedState, timeout: float) -> bool:
        with self._state_changed:
            return self._state_changed.wait_for(lambda: self._state is state, timeout=timeout)

    def subscribe(self, entity_id: int, category: str) -> bool:
        """
        Send a subscribe frame now if connected. Returns False when offline;
        the post-reconnect replay covers it. Raises UpstreamRejected when the
        send fails (the connection is then dropped and re-dialed).
        """
        return self._send_frame(sub_frame(f"{category}:{entity_id}"))

    def unsubscribe(self, entity_id: int, category: str) -> bool:
        """Send an unsubscribe frame if connected; offline it is a no-op."""
        return self._send_frame(unsub_frame(f"{category}:{entity_id}"))

    # Internal ------------------------------------------------------------

    def _dial(self, url: str) -> FeedConnection:
        # zKillboard does not answer protocol pings; the public channel is the heartbeat.
        return connect(url, open_timeout=self.open_timeout, ping_interval=None)

    def _set_state(self, state: FeedState) -> None:
        with self._state_changed:
            self._state = state
            self._state_changed.notify_all()

    def _run(self) -> None:
        while not self._stop.is_set():
            conn = self._connect_with_backoff()
            if conn is None:
                break
            try:
                self._serve(conn)
            except NETWORK_ERRORS as exc:
                if not self._stop.is_set():
                    self._logger.error("Error while reading from zKillboard, reconnecting: %s", exc)
            except Exception as exc:  # pylint: disable=broad-except
                self._logger.exception("zKillboard feed error: %s", exc)
            self._drain(conn)
        self._set_state(FeedState.STOPPED)

    def _connect_with_backoff(self) -> Optional[FeedConnection]:
        self._set_state(FeedState.CONNECTING)
        while not self._stop.is_set():
            try:
                conn = self._connect(self.ws_url)
            except Exception as exc:  # pylint: disable=broad-except
                dur = self.backoff.duration()
                self._logger.warning(
                    "zkill reconnection %d failed: %s -> reconnecting in %.2fs",
                    self.backoff.attempts,
                    exc,
                    dur,
                )
                self._stop.wait(dur)
                continue

            with self._state_changed:
                published = not self._stop.is_set()
                if published:
                    # Publishing as CONNECTED before the replay snapshot means a
                    # concurrent add is either in the snapshot or sent directly.
                    self._conn = conn
                    self._state = FeedState.CONNECTED
                    self._state_changed.notify_all()
            if not published:
                self._close_quietly(conn)
                return None

            self.backoff.reset()
            self._logger.info("Connected to zKillboard websocket")
            return conn
        return None

    def _serve(self, conn: FeedConnection) -> None:
        self._replay(conn)
        try:
            conn.send(sub_frame(HEARTBEAT_CHANNEL))
        except NETWORK_ERRORS as exc:
            raise TransientNetworkError(f"failed to subscribe to {HEARTBEAT_CHANNEL}: {exc}") from exc
        self._read_loop(conn)

    def _replay(self, conn: FeedConnection) -> None:
        sent = 0
        for entity_id, sub in self._store.all_tracked():
            try:
                conn.send(sub_frame(sub.entity.channel))
            except NETWORK_ERRORS as exc:
                self._logger.error("Failed to subscribe to killstream for %s: %s", entity_id, exc)
                continue
            sent += 1
            self._logger.debug("subscribed to killstream for id: %s, name: %s", entity_id, sub.entity.name)
        self._logger.info("Replayed %d subscriptions", sent)

    def _read_loop(self, conn: FeedConnection) -> None:
        while not self._stop.is_set():
            try:
                message = conn.recv(timeout=self.read_timeout)
            except TimeoutError as exc:
                raise TransientNetworkError(
                    f"no message within {self.read_timeout:.0f}s read deadline"
                ) from exc
            self.messages_received += 1
            if not self._enqueue(message, time.monotonic() + self.read_timeout):
                return

    def _enqueue(self, message: Any, deadline: float) -> bool:
        while not self._stop.is_set():
            slice_sec = max(0.0, min(ENQUEUE_SLICE_SEC, deadline - time.monotonic()))
            try:
                self.raw_queue.put(message, timeout=slice_sec)
                return True
            except Full:
                if time.monotonic() >= deadline:
                    raise TransientNetworkError("dispatcher backlog exceeded the read deadline")
        return False

    def _send_frame(self, frame: str) -> bool:
        with self._lock:
            conn = self._conn if self._state is FeedState.CONNECTED else None
        if conn is None:
            self._logger.debug("Feed offline, deferring frame %s", frame)
            return False
        try:
            conn.send(frame)
        except NETWORK_ERRORS as exc:
            self._logger.error("Failed to send %s: %s", frame, exc)
            # Closing makes the reader fail and run the reconnect path.
            with self._lock:
                if self._conn is conn:
                    self._conn = None
            self._close_quietly(conn)
            raise UpstreamRejected(f"could not send {frame}: {exc}") from exc
        return True

    def _drain(self, conn: FeedConnection) -> None:
        if self._stop.is_set():
            self._close_quietly(conn)
            return
        self._set_state(FeedState.DRAINING)
        with self._lock:
            if self._conn is conn:
                self._conn = None
        self._close_quietly(conn)
        self.reconnections += 1

    def _close_quietly(self, conn: FeedConnection) -> None:
        try:
            conn.close()
        except Exception as exc:  # pylint: disable=broad-except
            self._logger.debug("Ignoring error while closing feed connection: %s", exc)

    def _discard_pending(self) -> int:
        dropped = 0
        while True:
            try:
                self.raw_queue.get_nowait()
            except Empty:
                return dropped
            dropped += 1
