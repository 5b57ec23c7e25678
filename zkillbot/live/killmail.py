from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional

import pandas as pd

from zkillbot.errors import ProtocolDecodeError

# Actions the public channel emits that carry no kill.
STATUS_ACTIONS = frozenset({"tqStatus", "tqstatus", "pong"})

_PARTICIPANT_KEYS = (
    "character_id",
    "corporation_id",
    "alliance_id",
    "faction_id",
    "ship_type_id",
)


@dataclass
class Event:
    """A decoded kill from the zKillboard feed."""
    action: str
    kill_id: int
    url: str
    total_value: float = 0.0
    victim_ids: FrozenSet[int] = field(default_factory=frozenset)
    attacker_ids: FrozenSet[int] = field(default_factory=frozenset)
    location_ids: FrozenSet[int] = field(default_factory=frozenset)
    killmail_time: Optional[pd.Timestamp] = None

    def entity_ids(self) -> FrozenSet[int]:
        return self.victim_ids | self.attacker_ids | self.location_ids

    def is_loss_for(self, entity_id: int) -> bool:
        return entity_id in self.victim_ids


@dataclass
class StatusFrame:
    """Heartbeat/status message from the ``public`` channel."""
    action: str
    payload: Dict[str, Any]


def _ids(record: Any) -> FrozenSet[int]:
    if not isinstance(record, dict):
        return frozenset()
    out = set()
    for key in _PARTICIPANT_KEYS:
        val = record.get(key)
        if isinstance(val, bool):
            continue
        try:
            num = int(val)
        except (TypeError, ValueError, OverflowError):
            continue
        if num > 0:
            out.add(num)
    return frozenset(out)


def _union(records: Iterable[Any]) -> FrozenSet[int]:
    out: FrozenSet[int] = frozenset()
    for rec in records:
        out = out | _ids(rec)
    return out


def _kill_url(kill_id: int) -> str:
    return f"https://zkillboard.com/kill/{kill_id}/"


def _parse_time(value: Any) -> Optional[pd.Timestamp]:
    # killmail_time is an ISO-8601 string; anything else is treated as unknown
    if not isinstance(value, str):
        return None
    try:
        ts = pd.to_datetime(value, utc=True, errors="coerce")
    except (TypeError, ValueError, OverflowError):
        return None
    return None if pd.isna(ts) else ts


def decode_message(raw: str | bytes) -> Event | StatusFrame:
    """
    Decode one feed frame.

    Accepts both the legacy ``littlekill`` summary (flat ``character_id`` /
    ``corporation_id`` / ... fields, attributed to the victim) and full
    killmails with ``victim`` / ``attackers`` / ``zkb``. Unknown fields are
    ignored. Raises ProtocolDecodeError for anything that is neither a kill nor
    a status frame.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolDecodeError(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ProtocolDecodeError(f"expected object, got {type(payload).__name__}")

    action = str(payload.get("action", ""))
    if action in STATUS_ACTIONS:
        return StatusFrame(action=action, payload=payload)

    raw_id = payload.get("killmail_id", payload.get("killID"))
    try:
        kill_id = int(raw_id)
    except (TypeError, ValueError, OverflowError):
        if action:
            return StatusFrame(action=action, payload=payload)
        raise ProtocolDecodeError("frame has neither a kill id nor an action")

    zkb = payload.get("zkb") if isinstance(payload.get("zkb"), dict) else {}
    url = str(zkb.get("url") or payload.get("url") or _kill_url(kill_id))
    try:
        total_value = float(zkb.get("totalValue", payload.get("total_value", 0.0)) or 0.0)
    except (TypeError, ValueError):
        total_value = 0.0
    if not math.isfinite(total_value):
        total_value = 0.0

    if "victim" in payload or "attackers" in payload:
        victim_ids = _ids(payload.get("victim"))
        attackers = payload.get("attackers")
        attacker_ids = _union(attackers if isinstance(attackers, list) else [])
    else:
        victim_ids = _ids(payload)
        attacker_ids = frozenset()

    location_ids: FrozenSet[int] = frozenset()
    try:
        system_id = int(payload.get("solar_system_id", 0) or 0)
        if system_id > 0:
            location_ids = frozenset({system_id})
    except (TypeError, ValueError, OverflowError):
        pass

    killmail_time = _parse_time(payload.get("killmail_time"))
    return Event(
        action=action or "killmail",
        kill_id=kill_id,
        url=url,
        total_value=total_value,
        victim_ids=victim_ids,
        attacker_ids=attacker_ids,
        location_ids=location_ids,
        killmail_time=killmail_time,
    )
