from __future__ import annotations

import argparse
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from queue import Queue
from typing import Callable, Optional

from zkillbot.config import load_config, require_discord_token
from zkillbot.errors import ConfigurationError
from zkillbot.logging_utils import configure_logging, get_logger
from .commands import CommandRouter
from .discord_gateway import DiscordCommandSource
from .discord_hud import DiscordHUD
from .dispatcher import EventDispatcher
from .esi import EsiClient
from .feed import FeedConnection, FeedConnectionManager
from .store import SubscriptionStore, load_store, save_store


@dataclass
class BotServices:
    """Everything the running bot owns. Built once, started and stopped together."""
    cfg: dict
    store: SubscriptionStore
    hud: DiscordHUD
    feed: FeedConnectionManager
    dispatcher: EventDispatcher
    router: CommandRouter

    def start(self) -> None:
        self.hud.start()
        self.dispatcher.start()
        self.router.start()
        self.feed.start()

    def stop(self, timeout: float = 5.0) -> None:
        # Stop producers before consumers.
        self.feed.stop(timeout=timeout)
        self.router.stop(timeout=timeout)
        self.dispatcher.stop(timeout=timeout)
        self.hud.stop(timeout=timeout)


def build_services(
    cfg: dict,
    store: Optional[SubscriptionStore] = None,
    connect_fn: Optional[Callable[[str], FeedConnection]] = None,
    hud: Optional[DiscordHUD] = None,
    resolver: Optional[EsiClient] = None,
) -> BotServices:
    storage_path = Path(cfg.get("storage", {}).get("path", "data/subscriptions.json"))
    store = store if store is not None else load_store(storage_path)
    hud = hud or DiscordHUD(cfg)

    feed = FeedConnectionManager(cfg, store, connect_fn=connect_fn)
    dispatcher = EventDispatcher(store, feed.raw_queue, hud)
    router = CommandRouter(
        cfg,
        store=store,
        feed=feed,
        resolver=resolver or EsiClient(cfg),
        replies=hud,
        persist=lambda s: save_store(s, storage_path),
    )
    return BotServices(cfg=cfg, store=store, hud=hud, feed=feed, dispatcher=dispatcher, router=router)


def run_bot(config_path: str | Path, log_level: Optional[str] = None) -> None:
    cfg = load_config(config_path)
    if log_level:
        cfg["logging"]["level"] = log_level
    configure_logging(cfg)
    logger = get_logger("zkillbot")

    token = require_discord_token(cfg)
    services = build_services(cfg)
    gateway = DiscordCommandSource(token, services.router.command_queue)

    services.start()
    logger.info("zkillbot running with config=%s (%d subscriptions)", config_path, len(services.store))
    started = time.monotonic()
    try:
        gateway.run()
    except KeyboardInterrupt:
        logger.info("Shutting down zkillbot")
    finally:
        services.stop()
        logger.info(
            "zkillbot stopped after %.0fs: %d frames, %d kills, %d reconnects",
            time.monotonic() - started,
            services.feed.messages_received,
            services.dispatcher.kills_seen,
            services.feed.reconnections,
        )


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="zKillboard to Discord kill notifications")
    parser.add_argument("--config", default="configs/zkillbot.yaml")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    args = parser.parse_args(argv)

    try:
        run_bot(args.config, log_level="DEBUG" if args.verbose else None)
    except ConfigurationError as exc:
        get_logger("zkillbot").error("Fatal configuration error: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
