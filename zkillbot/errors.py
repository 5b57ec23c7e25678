"""
Error taxonomy for the bot.

Network and decode errors stay inside the live feed workers; only the
user-request errors travel back to the command router and become replies.
"""


class ZKillBotError(Exception):
    """Base class for every error raised by zkillbot."""


class TransientNetworkError(ZKillBotError):
    """Dial, read or write failure on the upstream feed. Retried with backoff."""


class ProtocolDecodeError(ZKillBotError):
    """An inbound feed frame could not be decoded. Dropped and logged."""


class DuplicateSubscription(ZKillBotError):
    def __init__(self, sink_id: str, entity_id: int) -> None:
        super().__init__(f"entity {entity_id} is already tracked in {sink_id}")
        self.sink_id = sink_id
        self.entity_id = entity_id


class UnknownSubscription(ZKillBotError):
    def __init__(self, sink_id: str, entity_id: int) -> None:
        super().__init__(f"entity {entity_id} is not tracked in {sink_id}")
        self.sink_id = sink_id
        self.entity_id = entity_id


AlreadyTracked = DuplicateSubscription
NotTracked = UnknownSubscription


class UpstreamRejected(ZKillBotError):
    """A subscribe/unsubscribe frame could not be sent to the feed."""


class NotFound(ZKillBotError):
    """Name resolution found nothing usable for the requested id."""


class ServiceUnavailable(ZKillBotError):
    """The name-resolution service failed or answered with an error."""


class ConfigurationError(ZKillBotError):
    """A required setting or credential is missing. Fatal."""
