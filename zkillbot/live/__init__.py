"""
Live zKillboard -> Discord engine.

This package provides:
- Feed connection manager (single websocket, backoff reconnect, replay)
- Subscription store (channel <-> tracked entity index)
- Event dispatcher that matches kills against subscriptions
- Command router for !track / !lookup
- Discord delivery (REST) and command intake (gateway)
- An entrypoint used via: python -m zkillbot.live.app
"""
from .backoff import Backoff
from .store import Subscription, SubscriptionStore, TrackedEntity, load_store, save_store
from .killmail import Event, decode_message
from .feed import FeedConnectionManager, FeedState
from .dispatcher import EventDispatcher, NotifyAction
from .commands import CommandRecord, CommandRouter, parse_command
from .discord_hud import DiscordHUD
from .esi import EsiClient

__all__ = [
    "Backoff",
    "Subscription",
    "SubscriptionStore",
    "TrackedEntity",
    "load_store",
    "save_store",
    "Event",
    "decode_message",
    "FeedConnectionManager",
    "FeedState",
    "EventDispatcher",
    "NotifyAction",
    "CommandRecord",
    "CommandRouter",
    "parse_command",
    "DiscordHUD",
    "EsiClient",
]
