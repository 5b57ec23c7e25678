from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import pandas as pd

from zkillbot.errors import AlreadyTracked, NotFound, NotTracked, ServiceUnavailable, UpstreamRejected
from zkillbot.logging_utils import get_logger
from .store import Subscription, SubscriptionStore

HELP_TEXT = """Valid commands:
!track <eve_id>              - Add a eve ID to tracking
!track <eve_id> <min_value>  - Add a eve ID to tracking with a minimum isk filter
!track remove <eve_id>       - Remove a eve ID from tracking
!track remove                - Removes all ID from tracking
!track list                  - List all tracked IDs and their names/types
!lookup <name>               - Find the eve ID of an alliance, corporation or character"""

_ADD = re.compile(r"^!track\s+(\d+)(?:\s+(\d+))?\s*$")
_REMOVE = re.compile(r"^!track\s+remove(?:\s+(\d+))?\s*$")
_LIST = re.compile(r"^!track\s+list\b")
_LOOKUP = re.compile(r"^!lookup(?:\s+(.*))?$", re.DOTALL)

COMMAND_PREFIXES = ("!track", "!lookup")


@dataclass
class CommandRecord:
    sink_id: str
    text: str


@dataclass
class Command:
    kind: str  # add | remove | remove_all | list | lookup | help
    entity_id: Optional[int] = None
    min_value: int = 0
    query: str = ""


def parse_command(text: str) -> Command:
    text = text.strip()
    m = _ADD.match(text)
    if m:
        return Command(kind="add", entity_id=int(m.group(1)), min_value=int(m.group(2) or 0))
    m = _REMOVE.match(text)
    if m:
        if m.group(1) is None:
            return Command(kind="remove_all")
        return Command(kind="remove", entity_id=int(m.group(1)))
    if _LIST.match(text):
        return Command(kind="list")
    m = _LOOKUP.match(text)
    if m:
        return Command(kind="lookup", query=(m.group(1) or "").strip())
    return Command(kind="help")


class ReplySink(Protocol):
    def send(self, sink_id: str, text: str) -> None: ...

    def send_rich(self, sink_id: str, title: str, fields: Sequence[Tuple[str, str]], description: str = "") -> None: ...


class NameResolver(Protocol):
    def resolve(self, entity_id: int) -> Tuple[str, str]: ...

    def lookup(self, text: str) -> Dict[str, List[Tuple[int, str]]]: ...


class FeedControl(Protocol):
    def subscribe(self, entity_id: int, category: str) -> bool: ...

    def unsubscribe(self, entity_id: int, category: str) -> bool: ...


def format_subscriptions(subs: List[Subscription]) -> str:
    df = pd.DataFrame(
        [
            {
                "Eve-ID": sub.entity_id,
                "Type": sub.entity.category.title(),
                "Name": sub.entity.name,
                "Min Amount": f"{sub.min_value:,}",
            }
            for sub in subs
        ],
        columns=["Eve-ID", "Type", "Name", "Min Amount"],
    )
    return df.to_string(index=False)


class CommandRouter:
    """
    Glue between chat commands and the subscription store / feed.

    Commands are processed one at a time from a bounded queue, so each
    channel sees its own requests applied in order.
    """

    def __init__(
        self,
        cfg: dict,
        store: SubscriptionStore,
        feed: FeedControl,
        resolver: NameResolver,
        replies: ReplySink,
        command_queue: Optional[Queue] = None,
        persist: Optional[Callable[[SubscriptionStore], None]] = None,
    ) -> None:
        ecfg = cfg.get("esi", {})
        self.max_search_results = int(ecfg.get("max_search_results", 200))
        self.max_search_results_soft = int(ecfg.get("max_search_results_soft", 10))
        self.command_queue: Queue = command_queue if command_queue is not None else Queue(
            maxsize=int(cfg.get("commands", {}).get("queue_size", 64))
        )
        self._store = store
        self._feed = feed
        self._resolver = resolver
        self._replies = replies
        self._persist = persist
        self._logger = get_logger("commands")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- Lifecycle -------------------------------------------------------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="command-router", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self) -> None:
        self._logger.debug("Starting command router thread")
        while not self._stop.is_set():
            try:
                record = self.command_queue.get(timeout=0.5)
            except Empty:
                continue
            try:
                self.handle(record)
            except Exception as exc:  # pylint: disable=broad-except
                self._logger.exception("Command %r failed: %s", record.text, exc)
                self._replies.send(record.sink_id, "Command failed due to an internal error")
        self._logger.debug("Exited command router thread")

    # --- Dispatch --------------------------------------------------------

    def handle(self, record: CommandRecord) -> Command:
        cmd = parse_command(record.text)
        self._logger.info("%s sub-command from %s", cmd.kind, record.sink_id)
        if cmd.kind == "add":
            self.add(record.sink_id, cmd.entity_id, cmd.min_value)
        elif cmd.kind == "remove":
            self.remove(record.sink_id, cmd.entity_id)
        elif cmd.kind == "remove_all":
            self.remove_all(record.sink_id)
        elif cmd.kind == "list":
            self.list(record.sink_id)
        elif cmd.kind == "lookup":
            self.lookup(record.sink_id, cmd.query)
        else:
            # ``` wrapper tells discord to use a code block
            self._replies.send(record.sink_id, "Invalid !track command, ```" + HELP_TEXT + "```")
        return cmd

    # --- Sub-commands ----------------------------------------------------

    def add(self, sink_id: str, entity_id: int, min_value: int = 0) -> Optional[Subscription]:
        if self._store.contains(sink_id, entity_id):
            self._replies.send(sink_id, f"EVE ID: {entity_id} has already been added for this channel")
            return None

        try:
            name, category = self._resolver.resolve(entity_id)
        except NotFound as exc:
            self._logger.info("Lookup for %s found nothing: %s", entity_id, exc)
            self._replies.send(sink_id, f"Unable to find a trackable EVE entity with ID {entity_id}")
            return None
        except ServiceUnavailable as exc:
            self._logger.error("Failed to perform ID lookup for %s: %s", entity_id, exc)
            self._replies.send(sink_id, "EVE ESI error, unable to find match for ID")
            return None

        try:
            sub = self._store.add(sink_id, entity_id, category, name, min_value)
        except AlreadyTracked:
            self._replies.send(sink_id, f"EVE ID: {entity_id} has already been added for this channel")
            return None

        try:
            self._feed.subscribe(entity_id, category)
        except UpstreamRejected as exc:
            self._logger.error("Failed to subscribe to killstream for %s: %s", entity_id, exc)
            try:
                self._store.remove(sink_id, entity_id)
            except NotTracked:
                pass
            self._replies.send(sink_id, "Unable to subscribe to killstream due to error, please try again")
            return None

        self._save(sink_id)
        self._logger.info("Eve ID: %s added to channel %s", entity_id, sink_id)
        self._replies.send(
            sink_id,
            f"Eve ID: {entity_id} ({category}: {name}) added to channel with minimum value filter of: {min_value:,}",
        )
        return sub

    def remove(self, sink_id: str, entity_id: int) -> Optional[Subscription]:
        try:
            sub = self._store.remove(sink_id, entity_id)
        except NotTracked:
            self._replies.send(sink_id, f"EVE ID: {entity_id} is not tracked in this channel")
            return None

        self._release(sub)
        self._save(sink_id)
        self._replies.send(sink_id, f"Eve ID: {entity_id} ({sub.entity.name}) removed from channel")
        return sub

    def remove_all(self, sink_id: str) -> List[Subscription]:
        subs = self._store.remove_sink(sink_id)
        if not subs:
            self._replies.send(sink_id, "Channel currently has no tracked ID, use the !track command to add")
            return subs
        for sub in subs:
            self._release(sub)
        self._save(sink_id)
        self._replies.send(sink_id, f"Removed {len(subs)} tracked ID(s) from channel")
        return subs

    def list(self, sink_id: str) -> List[Subscription]:
        subs = self._store.list(sink_id)
        if not subs:
            self._logger.info("List command for channel %s has no tracked IDs", sink_id)
            self._replies.send(sink_id, "Channel currently has no tracked ID, use the !track command to add")
            return subs
        self._replies.send(sink_id, "```\n" + format_subscriptions(subs) + "\n```")
        return subs

    def lookup(self, sink_id: str, query: str) -> None:
        # ESI requires at least 3 characters to search
        if len(query) < 3:
            self._replies.send(sink_id, "Lookup requires at least 3 characters")
            return
        try:
            found = self._resolver.lookup(query)
        except ServiceUnavailable as exc:
            self._logger.error("ESI lookup for %r failed: %s", query, exc)
            self._replies.send(sink_id, "EVE ESI error, unable to perform lookup at this time.")
            return

        total = sum(len(rows) for rows in found.values())
        if total == 0:
            self._replies.send(sink_id, "No results for lookup query")
            return
        if total > self.max_search_results:
            self._replies.send(sink_id, "Too many results returned, please use more specific search phrase")
            return

        # Discord limits message size, so cap the number of rows shown.
        shown = 0
        fields: List[Tuple[str, str]] = []
        for group in ("alliances", "corporations", "characters"):
            lines = []
            for entity_id, name in found.get(group, []):
                if shown >= self.max_search_results_soft:
                    break
                lines.append(f"{name} - {entity_id}")
                shown += 1
            if lines:
                fields.append((group.title(), "\n".join(lines)))

        desc = ""
        if shown < total:
            desc = f"Only {shown} of the {total} results shown, please use a more specific lookup phrase"
        self._replies.send_rich(sink_id, "Lookup Results", fields, description=desc)

    # --- Helpers ---------------------------------------------------------

    def _release(self, sub: Subscription) -> None:
        """Unsubscribe upstream once no channel tracks the entity any more."""
        if self._store.sink_count(sub.entity_id) > 0:
            return
        try:
            self._feed.unsubscribe(sub.entity_id, sub.entity.category)
        except UpstreamRejected as exc:
            # The reconnect replay no longer includes the entity.
            self._logger.warning("Unsubscribe for %s failed, relying on reconnect: %s", sub.entity_id, exc)

    def _save(self, sink_id: str) -> None:
        if self._persist is None:
            return
        try:
            self._persist(self._store)
        except OSError as exc:
            self._logger.error("Failed to write subscription file: %s", exc)
            self._replies.send(sink_id, "Warning: subscription change could not be saved and will be lost on restart")
