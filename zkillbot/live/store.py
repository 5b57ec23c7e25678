from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple

from zkillbot.errors import AlreadyTracked, NotTracked
from zkillbot.logging_utils import get_logger

CATEGORIES = frozenset(
    {
        "character",
        "corporation",
        "alliance",
        "faction",
        "ship",
        "group",
        "system",
        "constellation",
        "region",
    }
)


@dataclass(frozen=True)
class TrackedEntity:
    entity_id: int
    category: str
    name: str
    min_value: int = 0

    @property
    def channel(self) -> str:
        """Upstream feed channel, e.g. ``corporation:98000001``."""
        return f"{self.category}:{self.entity_id}"


@dataclass(frozen=True)
class Subscription:
    sink_id: str
    entity: TrackedEntity
    min_value: int = 0

    @property
    def entity_id(self) -> int:
        return self.entity.entity_id

    def accepts(self, value: float) -> bool:
        return self.min_value <= 0 or value >= self.min_value

    def to_record(self) -> Dict[str, Any]:
        return {
            "discord_channel_id": self.sink_id,
            "eve_id": self.entity.entity_id,
            "eve_name": self.entity.name,
            "eve_category": self.entity.category,
            "min_val": self.min_value,
        }

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Subscription":
        if not isinstance(rec, dict):
            raise TypeError(f"expected a mapping, got {type(rec).__name__}")
        min_value = int(rec.get("min_val", 0) or 0)
        entity = TrackedEntity(
            entity_id=int(rec["eve_id"]),
            category=str(rec["eve_category"]),
            name=str(rec.get("eve_name", "")),
            min_value=min_value,
        )
        return cls(sink_id=str(rec["discord_channel_id"]), entity=entity, min_value=min_value)


class SubscriptionStore:
    """
    Thread-safe bidirectional index between sinks (Discord channels) and
    tracked entities.

    Two dicts are kept in lockstep under one lock:
    - by_sink:   sink_id -> {entity_id -> Subscription}
    - by_entity: entity_id -> {sink_id -> Subscription}
    A pair exists in one iff it exists in the other.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_sink: Dict[str, Dict[int, Subscription]] = {}
        self._by_entity: Dict[int, Dict[str, Subscription]] = {}

    # --- Mutation --------------------------------------------------------

    def add(
        self,
        sink_id: str,
        entity_id: int,
        category: str,
        name: str,
        min_value: int = 0,
    ) -> Subscription:
        if category not in CATEGORIES:
            raise ValueError(f"Unsupported category {category!r}")
        entity = TrackedEntity(entity_id=int(entity_id), category=category, name=name, min_value=int(min_value))
        sub = Subscription(sink_id=str(sink_id), entity=entity, min_value=int(min_value))
        with self._lock:
            self._insert(sub)
        return sub

    def remove(self, sink_id: str, entity_id: int) -> Subscription:
        sink_id, entity_id = str(sink_id), int(entity_id)
        with self._lock:
            sub = self._by_sink.get(sink_id, {}).get(entity_id)
            if sub is None:
                raise NotTracked(sink_id, entity_id)
            self._delete(sink_id, entity_id)
        return sub

    def remove_sink(self, sink_id: str) -> List[Subscription]:
        """Drop every subscription of one sink. Returns what was removed."""
        sink_id = str(sink_id)
        with self._lock:
            subs = list(self._by_sink.get(sink_id, {}).values())
            for sub in subs:
                self._delete(sink_id, sub.entity_id)
        return sorted(subs, key=lambda s: s.entity_id)

    # --- Queries ---------------------------------------------------------

    def contains(self, sink_id: str, entity_id: int) -> bool:
        with self._lock:
            return int(entity_id) in self._by_sink.get(str(sink_id), {})

    def sink_count(self, entity_id: int) -> int:
        with self._lock:
            return len(self._by_entity.get(int(entity_id), {}))

    def list(self, sink_id: str) -> List[Subscription]:
        """Subscriptions of one sink ordered by entity id; empty when none."""
        with self._lock:
            subs = list(self._by_sink.get(str(sink_id), {}).values())
        return sorted(subs, key=lambda s: s.entity_id)

    def subscribers(self, entity_id: int) -> List[Subscription]:
        with self._lock:
            return list(self._by_entity.get(int(entity_id), {}).values())

    def all_tracked(self) -> Iterator[Tuple[int, Subscription]]:
        """
        Lazily yield (entity_id, representative subscription) for every tracked
        entity. The representative is the earliest-inserted subscriber. The
        snapshot is taken under the lock on first iteration.
        """
        with self._lock:
            snapshot = [
                (entity_id, next(iter(sinks.values())))
                for entity_id, sinks in self._by_entity.items()
                if sinks
            ]
        yield from snapshot

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._by_sink.values())

    def check_consistency(self) -> bool:
        """True when both indices hold exactly the same (sink, entity) pairs."""
        with self._lock:
            left = {(s, e): sub for s, subs in self._by_sink.items() for e, sub in subs.items()}
            right = {(s, e): sub for e, subs in self._by_entity.items() for s, sub in subs.items()}
            empty = any(not v for v in self._by_sink.values()) or any(not v for v in self._by_entity.values())
        return left == right and not empty

    # --- Persistence layout ---------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "channel_map": {
                    sink: {str(eid): sub.to_record() for eid, sub in subs.items()}
                    for sink, subs in self._by_sink.items()
                },
                "sub_map": {
                    str(eid): {sink: sub.to_record() for sink, sub in subs.items()}
                    for eid, subs in self._by_entity.items()
                },
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriptionStore":
        """
        Rebuild both indices from ``channel_map``. ``sub_map`` is only compared
        against the rebuilt index; disagreements are logged, not fatal.
        Entries with the wrong shape are skipped with a warning.
        """
        logger = get_logger("store")
        store = cls()
        channel_map = data.get("channel_map") or {}
        if not isinstance(channel_map, dict):
            logger.warning("Ignoring channel_map of type %s", type(channel_map).__name__)
            channel_map = {}
        for sink, subs in channel_map.items():
            if not isinstance(subs, dict):
                logger.warning("Skipping sink %s with subscriptions of type %s", sink, type(subs).__name__)
                continue
            for key, rec in subs.items():
                try:
                    sub = Subscription.from_record(rec)
                except (KeyError, TypeError, ValueError, OverflowError) as exc:
                    logger.warning("Skipping bad subscription %s/%s: %s", sink, key, exc)
                    continue
                if sub.sink_id != str(sink) or str(sub.entity_id) != str(key):
                    logger.warning("Subscription key mismatch at %s/%s; using record values", sink, key)
                if sub.entity.category not in CATEGORIES:
                    logger.warning("Skipping subscription %s/%s with category %r", sink, key, sub.entity.category)
                    continue
                with store._lock:
                    if sub.entity_id not in store._by_sink.get(sub.sink_id, {}):
                        store._insert(sub)

        sub_map = data.get("sub_map") or {}
        persisted_pairs = set()
        if isinstance(sub_map, dict):
            persisted_pairs = {
                (str(sink), str(eid))
                for eid, sinks in sub_map.items()
                if isinstance(sinks, dict)
                for sink in sinks
            }
        rebuilt_pairs = {(s, str(e)) for s, subs in store._by_sink.items() for e in subs}
        if persisted_pairs and persisted_pairs != rebuilt_pairs:
            logger.warning(
                "Persisted sub_map disagrees with channel_map (%d vs %d pairs); channel_map wins",
                len(persisted_pairs),
                len(rebuilt_pairs),
            )
        return store

    # --- Internal (caller holds the lock) -------------------------------

    def _insert(self, sub: Subscription) -> None:
        if sub.entity_id in self._by_sink.get(sub.sink_id, {}):
            raise AlreadyTracked(sub.sink_id, sub.entity_id)
        self._by_sink.setdefault(sub.sink_id, {})[sub.entity_id] = sub
        self._by_entity.setdefault(sub.entity_id, {})[sub.sink_id] = sub

    def _delete(self, sink_id: str, entity_id: int) -> None:
        sink_subs = self._by_sink[sink_id]
        del sink_subs[entity_id]
        if not sink_subs:
            del self._by_sink[sink_id]
        entity_subs = self._by_entity[entity_id]
        del entity_subs[sink_id]
        if not entity_subs:
            del self._by_entity[entity_id]


def save_store(store: SubscriptionStore, path: str | Path) -> None:
    """Write the store as JSON, replacing the previous file atomically."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = store.to_dict()
    fd, tmp = tempfile.mkstemp(prefix=p.name, suffix=".tmp", dir=p.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
        os.replace(tmp, p)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def load_store(path: str | Path) -> SubscriptionStore:
    """
    Load a persisted store. A missing file gives an empty store; an unreadable
    one is logged and also gives an empty store (the next save overwrites it).
    """
    p = Path(path)
    logger = get_logger("store")
    if not p.exists():
        logger.info("No subscription file at %s; starting empty", p)
        return SubscriptionStore()
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Failed to decode previous subscriptions, new requests will overwrite %s: %s", p, exc)
        return SubscriptionStore()
    if not isinstance(data, dict):
        logger.error("Subscription file %s is not a mapping; starting empty", p)
        return SubscriptionStore()
    store = SubscriptionStore.from_dict(data)
    logger.info("Loaded %d subscriptions from %s", len(store), p)
    return store
