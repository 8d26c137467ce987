from bulk_ingest.progress.channel import (
    ChannelConfig,
    ChannelStats,
    Connection,
    ProgressChannel,
    SessionStats,
    Subscriber,
)
from bulk_ingest.progress.messages import WireMessage, to_wire

__all__ = [
    "ChannelConfig",
    "ChannelStats",
    "Connection",
    "ProgressChannel",
    "SessionStats",
    "Subscriber",
    "WireMessage",
    "to_wire",
]
