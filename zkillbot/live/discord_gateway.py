from __future__ import annotations

import asyncio
from queue import Queue
from typing import Optional

import discord

from zkillbot.logging_utils import get_logger
from .commands import COMMAND_PREFIXES, CommandRecord

logger = get_logger("discord_gateway")


def command_record_for(channel_id: int | str, content: str) -> Optional[CommandRecord]:
    """Return a CommandRecord for bot commands, None for ordinary chat."""
    text = (content or "").strip()
    if not text.startswith(COMMAND_PREFIXES):
        return None
    return CommandRecord(sink_id=str(channel_id), text=text)


class DiscordCommandSource:
    """Listens on the Discord gateway and feeds bot commands to the router queue."""

    def __init__(self, token: str, command_queue: Queue) -> None:
        self._token = token
        self._queue = command_queue

        intents = discord.Intents.default()
        intents.message_content = True
        self.client = discord.Client(intents=intents)
        self._setup_events()

    def _setup_events(self) -> None:
        @self.client.event
        async def on_ready():
            logger.info("Discord gateway connected as %s", self.client.user)

        @self.client.event
        async def on_message(message: discord.Message):
            await self.handle_message(message)

    async def handle_message(self, message: discord.Message) -> None:
        # Ignore my own messages
        if self.client.user is not None and message.author.id == self.client.user.id:
            return
        record = command_record_for(message.channel.id, message.content)
        if record is None:
            return
        logger.debug("Command received: %s from %s", record.text, record.sink_id)
        # Block a worker thread, not the gateway loop, when the router is busy.
        await asyncio.to_thread(self._queue.put, record)

    def run(self) -> None:
        """Block until the gateway is closed or the process is interrupted."""
        self.client.run(self._token, log_handler=None)
