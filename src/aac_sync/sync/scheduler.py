"""
scheduler.py - Sync triggers.

Turns the four entry conditions into sync passes:
- reachability false -> true, debounced so flapping links yield one pass
- manual "Sync Now"
- app foreground
- background refresh tick (also polls pending server instructions)
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from aac_sync.config import BACKGROUND_REFRESH_SECONDS, RECONNECT_DEBOUNCE_SECONDS
from aac_sync.reachability import ReachabilityMonitor, Subscription
from aac_sync.sync.engine import SyncEngine, SyncReport, SyncTrigger

if TYPE_CHECKING:
    from aac_sync.instructions.dispatcher import InstructionDispatcher

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Owns the background tasks that feed the SyncEngine.

    Usage:
        scheduler = SyncScheduler(engine, reachability, dispatcher)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: SyncEngine,
        reachability: ReachabilityMonitor,
        dispatcher: "InstructionDispatcher | None" = None,
        debounce_seconds: float = RECONNECT_DEBOUNCE_SECONDS,
        background_interval: float = BACKGROUND_REFRESH_SECONDS,
    ):
        self._engine = engine
        self._reachability = reachability
        self._dispatcher = dispatcher
        self._debounce = debounce_seconds
        self._background_interval = background_interval

        self._subscription: Subscription | None = None
        self._watch_task: asyncio.Task | None = None
        self._background_task: asyncio.Task | None = None
        self._debounce_task: asyncio.Task | None = None
        self._active_pass: asyncio.Task | None = None
        self._refreshing = False
        self.reconnect_passes = 0

    @property
    def running(self) -> bool:
        return self._watch_task is not None

    async def start(self) -> None:
        if self.running:
            return
        self._subscription = self._reachability.subscribe()
        self._watch_task = asyncio.create_task(self._watch_reachability(self._subscription))
        if self._background_interval > 0:
            self._background_task = asyncio.create_task(self._background_loop())
        logger.info("Sync scheduler started")

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        for task in (self._debounce_task, self._active_pass, self._background_task, self._watch_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._debounce_task = self._active_pass = None
        self._background_task = self._watch_task = None
        logger.info("Sync scheduler stopped")

    # =========================================================================
    # Triggers
    # =========================================================================

    async def sync_now(self) -> SyncReport:
        """User-initiated pass."""
        return await self._engine.sync_all(SyncTrigger.MANUAL)

    async def on_foreground(self) -> SyncReport:
        return await self._engine.sync_all(SyncTrigger.FOREGROUND)

    async def background_tick(self) -> SyncReport | None:
        """
        One background refresh: sync, then drain pending server instructions.

        Returns None when a previous tick is still running.
        """
        if self._refreshing:
            return None
        self._refreshing = True
        try:
            report = await self._engine.sync_all(SyncTrigger.BACKGROUND)
            if self._reachability.is_connected and self._dispatcher is not None:
                await self._dispatcher.poll_pending()
            return report
        finally:
            self._refreshing = False

    # =========================================================================
    # Tasks
    # =========================================================================

    async def _watch_reachability(self, subscription: Subscription) -> None:
        was_connected = self._reachability.is_connected
        async for state in subscription:
            if state.connected and not was_connected:
                self._schedule_reconnect_pass()
            elif not state.connected and self._debounce_task is not None:
                self._debounce_task.cancel()
                self._debounce_task = None
            was_connected = state.connected

    def _schedule_reconnect_pass(self) -> None:
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(self._debounced_reconnect())

    async def _debounced_reconnect(self) -> None:
        await asyncio.sleep(self._debounce)
        # Past the debounce window a disconnect no longer cancels the pass
        self._active_pass, self._debounce_task = self._debounce_task, None
        if not self._reachability.is_connected:
            return
        self.reconnect_passes += 1
        await self._engine.sync_all(SyncTrigger.RECONNECT)

    async def _background_loop(self) -> None:
        while True:
            await asyncio.sleep(self._background_interval)
            try:
                await self.background_tick()
            except Exception as e:
                logger.exception(f"Background refresh failed: {e}")
