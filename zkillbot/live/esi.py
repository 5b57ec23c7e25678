from __future__ import annotations

import threading
from typing import Dict, List, Optional, Tuple

import requests

from zkillbot.errors import NotFound, ServiceUnavailable
from zkillbot.logging_utils import get_logger
from .store import CATEGORIES

# ESI category name -> zKillboard channel category
ESI_TO_FEED_CATEGORY = {
    "character": "character",
    "corporation": "corporation",
    "alliance": "alliance",
    "faction": "faction",
    "inventory_type": "ship",
    "solar_system": "system",
    "constellation": "constellation",
    "region": "region",
}

LOOKUP_GROUPS = ("alliances", "corporations", "characters")


class EsiClient:
    """
    Minimal EVE Swagger Interface client.

    - resolve(): id -> (name, feed category), cached for the process lifetime.
    - lookup(): exact name -> ids grouped by alliance/corporation/character.
    """

    def __init__(self, cfg: dict, session: Optional[requests.Session] = None) -> None:
        ecfg = cfg.get("esi", {})
        self.base_url = str(ecfg.get("base_url", "https://esi.evetech.net/latest")).rstrip("/")
        self.timeout_sec = float(ecfg.get("timeout_sec", 10))
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = str(ecfg.get("user_agent", "zkillbot"))
        self.logger = get_logger("esi")
        self._cache: Dict[int, Tuple[str, str]] = {}
        self._cache_lock = threading.Lock()

    def _post(self, path: str, body: list) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.post(url, json=body, params={"datasource": "tranquility"}, timeout=self.timeout_sec)
        except requests.RequestException as exc:
            self.logger.error("ESI request %s failed: %s", path, exc)
            raise ServiceUnavailable(str(exc)) from exc
        return resp

    def resolve(self, entity_id: int) -> Tuple[str, str]:
        with self._cache_lock:
            cached = self._cache.get(entity_id)
        if cached is not None:
            return cached

        resp = self._post("/universe/names/", [int(entity_id)])
        if resp.status_code == 404:
            raise NotFound(f"no EVE entity with id {entity_id}")
        if not resp.ok:
            self.logger.error("ESI names lookup failed code: %s, body: %s", resp.status_code, resp.text)
            raise ServiceUnavailable(f"ESI returned {resp.status_code}")
        try:
            rows = resp.json()
        except ValueError as exc:
            raise ServiceUnavailable("ESI returned invalid JSON") from exc

        row = next((r for r in rows or [] if isinstance(r, dict) and r.get("id") == int(entity_id)), None)
        if row is None or not row.get("category"):
            raise NotFound(f"no EVE entity with id {entity_id}")
        category = ESI_TO_FEED_CATEGORY.get(str(row["category"]))
        if category not in CATEGORIES:
            raise NotFound(f"id {entity_id} is a {row['category']}, which cannot be tracked")

        result = (str(row.get("name", "")), category)
        with self._cache_lock:
            self._cache[entity_id] = result
        return result

    def lookup(self, text: str) -> Dict[str, List[Tuple[int, str]]]:
        resp = self._post("/universe/ids/", [text])
        if resp.status_code == 404:
            return {group: [] for group in LOOKUP_GROUPS}
        if not resp.ok:
            self.logger.error("ESI ids lookup failed code: %s, body: %s", resp.status_code, resp.text)
            raise ServiceUnavailable(f"ESI returned {resp.status_code}")
        try:
            payload = resp.json() or {}
        except ValueError as exc:
            raise ServiceUnavailable("ESI returned invalid JSON") from exc

        out: Dict[str, List[Tuple[int, str]]] = {}
        for group in LOOKUP_GROUPS:
            rows = payload.get(group) or []
            out[group] = [(int(r["id"]), str(r.get("name", ""))) for r in rows if isinstance(r, dict) and "id" in r]
        return out
