"""Channel protocol: ordered senders, polling subscriptions and the ack handshake."""

from colony_stream.channels.handshake import (
    AckTimeoutPolicy,
    ConsumeResult,
    ConsumerHandshake,
    HandshakeResult,
    ProducerHandshake,
)
from colony_stream.channels.session import ChannelSession, OutboundMessage, SequenceCounter
from colony_stream.channels.subscriber import Consumer, subscribe

__all__ = [
    "AckTimeoutPolicy",
    "ChannelSession",
    "ConsumeResult",
    "Consumer",
    "ConsumerHandshake",
    "HandshakeResult",
    "OutboundMessage",
    "ProducerHandshake",
    "SequenceCounter",
    "subscribe",
]
