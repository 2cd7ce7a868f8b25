"""
reachability.py - Connectivity state and transition broadcast.

The ReachabilityMonitor holds the current state and fans transitions out
to independent subscribers, each with its own queue. HttpReachabilityProbe
is the production writer: it periodically probes the API host and feeds
the result into the monitor.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

import httpx
import psutil

from aac_sync.config import DEFAULT_WAIT_FOR_CONNECTION_SECONDS, REACHABILITY_PROBE_SECONDS

logger = logging.getLogger(__name__)


class ConnectionType(Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    WIRED = "wired"
    NONE = "none"
    UNKNOWN = "unknown"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @property
    def is_available(self) -> bool:
        return self is not ConnectionType.NONE


_DESCRIPTIONS = {
    ConnectionType.WIFI: "WiFi",
    ConnectionType.CELLULAR: "Cellular",
    ConnectionType.WIRED: "Wired",
    ConnectionType.NONE: "No Connection",
    ConnectionType.UNKNOWN: "Unknown",
}


@dataclass(frozen=True)
class ReachabilityState:
    connected: bool
    connection_type: ConnectionType


class Subscription:
    """
    One subscriber's view of reachability transitions.

    Iterate with `async for state in subscription`; iteration ends once
    the subscription is closed.
    """

    _CLOSED = object()

    def __init__(self, monitor: "ReachabilityMonitor"):
        self._monitor = monitor
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, state: ReachabilityState) -> None:
        if not self._closed:
            self._queue.put_nowait(state)

    async def get(self) -> ReachabilityState | None:
        """Next transition, or None once closed."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        return None if item is self._CLOSED else item

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._monitor._unsubscribe(self)
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ReachabilityState:
        state = await self.get()
        if state is None:
            raise StopAsyncIteration
        return state

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ReachabilityMonitor:
    """
    Current connectivity plus transition fan-out.

    update() is the single writer. Only real transitions are broadcast,
    so every subscriber sees each change exactly once, in order.
    """

    def __init__(
        self,
        connected: bool = False,
        connection_type: ConnectionType = ConnectionType.NONE,
    ):
        self._state = ReachabilityState(connected, connection_type)
        self._subscribers: list[Subscription] = []

    @property
    def is_connected(self) -> bool:
        return self._state.connected

    @property
    def connection_type(self) -> ConnectionType:
        return self._state.connection_type

    @property
    def state(self) -> ReachabilityState:
        return self._state

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def update(self, connected: bool, connection_type: ConnectionType | None = None) -> bool:
        """
        Record the latest observation.

        Returns:
            True if this was a transition and was broadcast
        """
        if connection_type is None:
            connection_type = ConnectionType.UNKNOWN if connected else ConnectionType.NONE
        new_state = ReachabilityState(connected, connection_type)
        if new_state == self._state:
            return False

        old_state, self._state = self._state, new_state
        logger.info(
            f"Reachability changed: {old_state.connection_type.description} -> "
            f"{new_state.connection_type.description} (connected={connected})"
        )
        for subscription in list(self._subscribers):
            subscription._deliver(new_state)
        return True

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            pass

    async def wait_for_connection(
        self, timeout: float = DEFAULT_WAIT_FOR_CONNECTION_SECONDS
    ) -> bool:
        """
        Suspend until connected or until the timeout elapses.

        Returns:
            True if connectivity arrived, False if the timeout fired
        """
        if self.is_connected:
            return True

        with self.subscribe() as subscription:
            async def until_connected() -> None:
                async for state in subscription:
                    if state.connected:
                        return

            try:
                await asyncio.wait_for(until_connected(), timeout=timeout)
            except asyncio.TimeoutError:
                return False
        return True


def detect_connection_type() -> ConnectionType:
    """Classify the active non-loopback interfaces by name."""
    try:
        stats = psutil.net_if_stats()
    except (OSError, RuntimeError) as e:
        logger.debug(f"Interface enumeration failed: {e}")
        return ConnectionType.UNKNOWN

    active = [name.lower() for name, s in stats.items() if s.isup and not _is_loopback(name)]
    if not active:
        return ConnectionType.NONE
    for prefixes, kind in _INTERFACE_PREFIXES:
        if any(name.startswith(prefixes) for name in active):
            return kind
    return ConnectionType.UNKNOWN


_INTERFACE_PREFIXES = (
    (("wl", "wifi", "wi-fi", "wlan"), ConnectionType.WIFI),
    (("wwan", "rmnet", "ccmni", "pdp_ip"), ConnectionType.CELLULAR),
    (("eth", "en", "ethernet"), ConnectionType.WIRED),
)


def _is_loopback(name: str) -> bool:
    return name.lower().startswith(("lo", "loopback"))


class HttpReachabilityProbe:
    """
    Periodically checks that the API host answers and feeds the monitor.

    Any HTTP answer, even an error status, counts as reachable; only
    transport failures count as offline.
    """

    def __init__(
        self,
        monitor: ReachabilityMonitor,
        url: str,
        interval: float = REACHABILITY_PROBE_SECONDS,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._monitor = monitor
        self._url = url
        self._interval = interval
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._task: asyncio.Task | None = None

    async def probe_once(self) -> bool:
        try:
            await self._client.head(self._url)
            connected = True
        except httpx.TransportError as e:
            logger.debug(f"Reachability probe failed: {e}")
            connected = False
        kind = detect_connection_type() if connected else ConnectionType.NONE
        if connected and kind is ConnectionType.NONE:
            kind = ConnectionType.UNKNOWN
        self._monitor.update(connected, kind)
        return connected

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._client.aclose()

    async def _run(self) -> None:
        while True:
            await self.probe_once()
            await asyncio.sleep(self._interval)
