"""
peer_link.py - Two-tier delivery between paired devices.

Messages go out immediately when the peer is live-reachable. Otherwise,
or when the immediate attempt fails, they are stored in the entity
store's outbox (msgpack-encoded) and delivered in order by
flush_outbox() once the peer reconnects.

The channel is a WebSocket: WebSocketPeerChannel dials out,
WebSocketPeerServer accepts the peer's connection.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed, WebSocketException

from aac_sync.errors import PeerUnreachable, ValidationError
from aac_sync.metrics import peer_messages_total
from aac_sync.relay.messages import PeerMessage, parse_peer_message
from aac_sync.store import EntityStore
from aac_sync.utils.msgpack_codec import pack_message, unpack_message

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]

IMMEDIATE = "immediate"
QUEUED = "queued"


class PeerChannel(Protocol):
    @property
    def is_connected(self) -> bool:
        ...

    async def send(self, payload: dict[str, Any]) -> None:
        """Deliver now or raise PeerUnreachable."""
        ...


async def _read_loop(ws, on_message: MessageHandler | None, peer: str) -> None:
    try:
        async for frame in ws:
            try:
                payload = json.loads(frame)
            except ValueError:
                logger.warning(f"Dropping non-JSON frame from {peer}")
                continue
            if on_message is not None:
                try:
                    await on_message(payload)
                except Exception:
                    logger.exception(f"Peer message handler failed for {peer}")
    except ConnectionClosed:
        pass


class WebSocketPeerChannel:
    """Client side of the peer channel."""

    def __init__(self, url: str, on_message: MessageHandler | None = None):
        self._url = url
        self._on_message = on_message
        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    def set_handler(self, on_message: MessageHandler) -> None:
        self._on_message = on_message

    async def connect(self) -> bool:
        try:
            self._ws = await connect(self._url)
        except (OSError, WebSocketException) as e:
            logger.info(f"Peer at {self._url} unreachable: {e}")
            self._ws = None
            return False
        self._reader = asyncio.create_task(_read_loop(self._ws, self._on_message, self._url))
        logger.info(f"Connected to peer at {self._url}")
        return True

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
        self._ws = None
        self._reader = None

    async def send(self, payload: dict[str, Any]) -> None:
        if not self.is_connected:
            raise PeerUnreachable("Peer channel is not connected", peer=self._url)
        try:
            await self._ws.send(json.dumps(payload))
        except (ConnectionClosed, OSError) as e:
            raise PeerUnreachable(f"Send failed: {e}", peer=self._url) from e


class WebSocketPeerServer:
    """
    Server side of the peer channel.

    Accepts peer connections and sends to every connected peer.
    """

    def __init__(self, on_message: MessageHandler | None = None):
        self._on_message = on_message
        self._clients: set[ServerConnection] = set()
        self._server: Server | None = None
        self.connected = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return bool(self._clients)

    @property
    def port(self) -> int | None:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    def set_handler(self, on_message: MessageHandler) -> None:
        self._on_message = on_message

    async def start(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self._server = await serve(self._handle, host, port)
        logger.info(f"Peer channel listening on {host}:{self.port}")

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def send(self, payload: dict[str, Any]) -> None:
        if not self._clients:
            raise PeerUnreachable("No peer connected")
        frame = json.dumps(payload)
        delivered = 0
        for ws in list(self._clients):
            try:
                await ws.send(frame)
                delivered += 1
            except ConnectionClosed:
                self._clients.discard(ws)
        if not delivered:
            raise PeerUnreachable("All peer connections closed")

    async def _handle(self, ws: ServerConnection) -> None:
        self._clients.add(ws)
        self.connected.set()
        try:
            await _read_loop(ws, self._on_message, str(ws.remote_address))
        finally:
            self._clients.discard(ws)
            if not self._clients:
                self.connected.clear()


async def serve_peer_channel(
    on_message: MessageHandler | None = None, host: str = "127.0.0.1", port: int = 0
) -> WebSocketPeerServer:
    """Start a peer server and return it; close() it when done."""
    server = WebSocketPeerServer(on_message)
    await server.start(host, port)
    return server


class PeerLink:
    """
    Send side of the relay with store-and-forward fallback.

    Usage:
        link = PeerLink(channel, store)
        tier = await link.send(PhraseSpoken(phrase="Yes"))
        ...
        await link.flush_outbox()   # after the peer reconnects
    """

    def __init__(self, channel: PeerChannel, store: EntityStore):
        self._channel = channel
        self._store = store

    @property
    def channel(self) -> PeerChannel:
        return self._channel

    def queued(self) -> int:
        return self._store.outbox_size()

    async def send(self, message: PeerMessage) -> str:
        """
        Deliver a message, immediately if possible.

        Returns:
            IMMEDIATE or QUEUED
        """
        payload = message.to_dict()
        if self._channel.is_connected:
            try:
                await self._channel.send(payload)
                peer_messages_total.inc(direction="out", tier=IMMEDIATE)
                return IMMEDIATE
            except PeerUnreachable as e:
                logger.info(f"Immediate delivery of {message.type_tag} failed: {e}; queueing")

        self._store.enqueue_peer_message(message.type_tag, pack_message(payload))
        peer_messages_total.inc(direction="out", tier=QUEUED)
        return QUEUED

    async def flush_outbox(self) -> int:
        """
        Deliver queued messages in order; stops at the first failure.

        Returns:
            Number of messages delivered
        """
        delivered = 0
        while self._channel.is_connected:
            batch = self._store.peek_peer_messages()
            if not batch:
                break
            for seq, message_type, blob in batch:
                try:
                    payload = unpack_message(blob)
                    parse_peer_message(payload)
                except ValidationError as e:
                    logger.error(f"Dropping undecodable queued {message_type} message: {e}")
                    self._store.remove_peer_message(seq)
                    continue
                try:
                    await self._channel.send(payload)
                except PeerUnreachable as e:
                    logger.info(f"Outbox flush interrupted: {e}")
                    return delivered
                self._store.remove_peer_message(seq)
                delivered += 1
                peer_messages_total.inc(direction="out", tier="forwarded")
        if delivered:
            logger.info(f"Delivered {delivered} queued peer messages")
        return delivered
