"""Debounced persistence and GC triggers driven by history changes."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .config import SESSION_SAVE_DEBOUNCE_S
from .storage_gc import GcStateSnapshot

logger = logging.getLogger(__name__)


class Debouncer:
    """Coalesce bursts of triggers into one call after a quiet interval.

    A later trigger only restarts the timer; a call already running is never
    cancelled, and consecutive calls never overlap.
    """

    def __init__(self, fn: Callable[[], Awaitable[None]], delay: float, name: str = "debounced"):
        self.fn = fn
        self.delay = delay
        self.name = name
        self._timer: Optional[asyncio.TimerHandle] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._timer is not None or (self._inflight is not None and not self._inflight.done())

    def trigger(self) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        previous = self._inflight
        self._inflight = asyncio.get_running_loop().create_task(self._run(previous))

    async def _run(self, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await self.fn()
        except Exception:
            logger.exception("%s call failed", self.name)

    async def idle(self) -> None:
        """Wait for a running call (not a pending timer) to finish."""
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait([self._inflight])

    async def flush(self) -> None:
        """Run a pending call now and wait for it."""
        if self._timer is not None:
            self._timer.cancel()
            self._fire()
        await self.idle()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class AutosaveService:
    """Saves the project and reconciles blob storage after mutations settle.

    The GC pass first completes any pending or running save. The collector
    reads the live snapshot itself, after listing stored blobs.
    """

    def __init__(
        self,
        can_persist: Callable[[], bool],
        persist: Callable[[], Awaitable[None]],
        collect_garbage: Callable[[Callable[[], GcStateSnapshot]], Awaitable[object]],
        live_gc_state: Callable[[], GcStateSnapshot],
        debounce_s: float = SESSION_SAVE_DEBOUNCE_S,
    ):
        self.can_persist = can_persist
        self.persist = persist
        self.collect_garbage = collect_garbage
        self.live_gc_state = live_gc_state
        self._save = Debouncer(self._save_now, debounce_s, name="autosave")
        self._gc = Debouncer(self._gc_now, debounce_s, name="storage gc")

    @property
    def pending(self) -> bool:
        return self._save.pending or self._gc.pending

    def notify(self) -> None:
        try:
            self._save.trigger()
            self._gc.trigger()
        except RuntimeError:
            logger.debug("No running event loop; autosave not scheduled")

    async def _save_now(self) -> None:
        if not self.can_persist():
            return
        await self.persist()

    async def _gc_now(self) -> None:
        # A save still waiting on its timer runs now, so GC never sees older state
        await self._save.flush()
        await self.collect_garbage(self.live_gc_state)

    async def flush(self) -> None:
        await self._save.flush()
        await self._gc.flush()

    def stop(self) -> None:
        self._save.cancel()
        self._gc.cancel()
