from __future__ import annotations

import threading
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Dict, List, Optional, Protocol, Tuple

from zkillbot.errors import ProtocolDecodeError
from zkillbot.logging_utils import get_logger
from .killmail import Event, StatusFrame, decode_message
from .store import Subscription, SubscriptionStore


@dataclass
class NotifyAction:
    sink_id: str
    text: str
    title: Optional[str] = None
    fields: List[Tuple[str, str]] = field(default_factory=list)


class NotifySink(Protocol):
    def deliver(self, action: NotifyAction) -> None: ...


def render_kill(event: Event, subs: List[Subscription]) -> str:
    lines = []
    for sub in subs:
        verb = "lost a ship" if event.is_loss_for(sub.entity_id) else "got a kill"
        worth = f" worth {event.total_value:,.0f} ISK" if event.total_value > 0 else ""
        lines.append(f"**{sub.entity.name}** ({sub.entity.category.title()}) {verb}{worth}")
    lines.append(event.url)
    return "\n".join(lines)


class EventDispatcher:
    """
    Consume raw feed frames, match them against the subscription store and
    hand one NotifyAction per interested sink to the notifier queue.

    Malformed frames are logged and dropped. Delivery is never done inline so
    the feed reader is only ever blocked on the raw queue.
    """

    def __init__(self, store: SubscriptionStore, raw_queue: Queue, notifier: NotifySink) -> None:
        self._store = store
        self._raw_queue = raw_queue
        self._notifier = notifier
        self._logger = get_logger("dispatcher")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_status: Optional[StatusFrame] = None
        self.kills_seen = 0
        self.dropped_frames = 0

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="dispatcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self) -> None:
        self._logger.debug("Starting dispatcher thread")
        while not self._stop.is_set():
            try:
                raw = self._raw_queue.get(timeout=0.5)
            except Empty:
                continue
            try:
                for action in self.handle_message(raw):
                    self._notifier.deliver(action)
            except Exception as exc:  # pylint: disable=broad-except
                self._logger.exception("Failed to dispatch frame: %s", exc)
        self._logger.debug("Exited dispatcher thread")

    def handle_message(self, raw: str | bytes) -> List[NotifyAction]:
        try:
            decoded = decode_message(raw)
        except ProtocolDecodeError as exc:
            self.dropped_frames += 1
            self._logger.warning("Dropping malformed feed frame: %s", exc)
            return []

        if isinstance(decoded, StatusFrame):
            self.last_status = decoded
            self._logger.debug("Feed status frame: %s", decoded.action)
            return []

        self.kills_seen += 1
        return self.match(decoded)

    def match(self, event: Event) -> List[NotifyAction]:
        """One action per sink, not per subscription: a channel tracking several
        participants of the same kill gets a single combined message."""
        by_sink: Dict[str, List[Subscription]] = {}
        for entity_id in sorted(event.entity_ids()):
            for sub in self._store.subscribers(entity_id):
                if sub.accepts(event.total_value):
                    by_sink.setdefault(sub.sink_id, []).append(sub)

        actions = [
            NotifyAction(sink_id=sink_id, text=render_kill(event, subs))
            for sink_id, subs in by_sink.items()
        ]
        if actions:
            self._logger.info("Kill %s matched %d channel(s)", event.kill_id, len(actions))
        return actions
