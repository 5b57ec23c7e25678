from __future__ import annotations

import os
import threading
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from zkillbot.logging_utils import get_logger
from .dispatcher import NotifyAction

MAX_CONTENT_LEN = 2000
MAX_EMBED_FIELD_LEN = 1024
LOOKUP_COLOR = 0x6AA84F


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


class DiscordHUD:
    """
    Fire-and-forget Discord delivery over the REST API.

    send()/send_rich() only enqueue; a worker thread posts the payloads.
    Failures are logged, never raised.
    """

    def __init__(self, cfg: dict, session: Optional[requests.Session] = None) -> None:
        dcfg = cfg.get("discord", {})
        self.enabled = bool(dcfg.get("enabled", True))
        self.bot_token_env = str(dcfg.get("bot_token_env", "DISCORD_BOT_TOKEN"))
        self.api_base = str(dcfg.get("api_base", "https://discord.com/api/v10")).rstrip("/")
        self.timeout_sec = float(dcfg.get("timeout_sec", 5))

        self.bot_token = os.getenv(self.bot_token_env)
        self.session = session or requests.Session()
        self.logger = get_logger("discord_hud")

        self._queue: Queue[Tuple[str, Dict[str, Any]]] = Queue(maxsize=int(dcfg.get("queue_size", 256)))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- Lifecycle -------------------------------------------------------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="discord-hud", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                channel_id, payload = self._queue.get(timeout=0.5)
            except Empty:
                continue
            self.post_message(channel_id, payload)

    # --- Core send -------------------------------------------------------

    def post_message(self, channel_id: str, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            self.logger.info("Discord disabled; would send to %s: %s", channel_id, payload)
            return False
        if not self.bot_token:
            self.logger.warning("Discord credentials missing; skipping message")
            return False
        url = f"{self.api_base}/channels/{channel_id}/messages"
        headers = {"Authorization": f"Bot {self.bot_token}"}
        try:
            resp = self.session.post(url, json=payload, headers=headers, timeout=self.timeout_sec)
            if not resp.ok:
                self.logger.warning("Discord send failed: %s %s", resp.status_code, resp.text)
                return False
        except requests.RequestException as exc:
            self.logger.warning("Discord send exception: %s", exc)
            return False
        return True

    def _enqueue(self, channel_id: str, payload: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((str(channel_id), payload))
        except Full:
            self.logger.warning("Discord delivery queue full; dropping message for %s", channel_id)

    # --- Notification sink -----------------------------------------------

    def send(self, sink_id: str, text: str) -> None:
        self._enqueue(sink_id, {"content": _truncate(text, MAX_CONTENT_LEN)})

    def send_rich(
        self,
        sink_id: str,
        title: str,
        fields: Sequence[Tuple[str, str]],
        description: str = "",
        color: int = LOOKUP_COLOR,
    ) -> None:
        embed: Dict[str, Any] = {
            "title": title,
            "color": color,
            "fields": [
                {"name": name, "value": _truncate(value, MAX_EMBED_FIELD_LEN), "inline": False}
                for name, value in fields
            ],
        }
        if description:
            embed["description"] = description
        self._enqueue(sink_id, {"embeds": [embed]})

    def deliver(self, action: NotifyAction) -> None:
        if action.title or action.fields:
            self.send_rich(action.sink_id, action.title or "", action.fields, description=action.text)
        else:
            self.send(action.sink_id, action.text)

    def pending(self) -> List[Tuple[str, Dict[str, Any]]]:
        """Snapshot of undelivered payloads (used by tests and shutdown logs)."""
        with self._queue.mutex:
            return list(self._queue.queue)
