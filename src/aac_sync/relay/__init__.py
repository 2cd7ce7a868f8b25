"""
relay/__init__.py - Peer-to-peer context relay.
"""

from aac_sync.relay.context_relay import ContextRelay
from aac_sync.relay.messages import (
    ContextUpdate,
    CustomPhrases,
    PeerMessage,
    PhraseSpoken,
    RequestContext,
    parse_peer_message,
)
from aac_sync.relay.peer_link import (
    IMMEDIATE,
    QUEUED,
    PeerLink,
    WebSocketPeerChannel,
    WebSocketPeerServer,
    serve_peer_channel,
)

__all__ = [
    "IMMEDIATE",
    "QUEUED",
    "ContextRelay",
    "ContextUpdate",
    "CustomPhrases",
    "PeerLink",
    "PeerMessage",
    "PhraseSpoken",
    "RequestContext",
    "WebSocketPeerChannel",
    "WebSocketPeerServer",
    "parse_peer_message",
    "serve_peer_channel",
]
