"""
INFOLOOP v1.0: Cooperative Scheduler
One asyncio scheduler owns every stage timer. A stage never re-enters its
own tick: when the timer fires while the previous tick is still in flight,
the new tick is dropped and counted.
"""

import asyncio
from collections import Counter
from typing import Awaitable, Callable

from core import emit_receipt


class CancellationToken:
    """Handed out per schedule() call. Cancelling stops future ticks only."""

    def __init__(self, name: str):
        self.name = name
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class CooperativeScheduler:
    """Timer tasks plus at most one in-flight tick task per name."""

    def __init__(self):
        self._timers: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self.fired = Counter()
        self.dropped = Counter()
        self.errors = Counter()

    def schedule(
        self, name: str, interval: float, tick: Callable[[], Awaitable]
    ) -> CancellationToken:
        """Start (or restart) a repeating tick every `interval` seconds.

        Must be called with a running event loop. Rescheduling an existing
        name replaces its timer; a tick already in flight keeps running.
        """
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.cancel(name)
        token = CancellationToken(name)
        loop = asyncio.get_running_loop()
        self._tokens[name] = token
        self._timers[name] = loop.create_task(
            self._timer_loop(name, interval, tick, token)
        )
        return token

    async def _timer_loop(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable],
        token: CancellationToken,
    ) -> None:
        while not token.cancelled:
            await asyncio.sleep(interval)
            if token.cancelled:
                break
            self._fire(name, tick)

    def _fire(self, name: str, tick: Callable[[], Awaitable]) -> None:
        current = self._inflight.get(name)
        if current is not None and not current.done():
            self.dropped[name] += 1
            return
        self.fired[name] += 1
        self._inflight[name] = asyncio.get_running_loop().create_task(
            self._run_tick(name, tick)
        )

    async def _run_tick(self, name: str, tick: Callable[[], Awaitable]) -> None:
        try:
            await tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.errors[name] += 1
            emit_receipt(
                "tick_error",
                {"stage": name, "error_type": type(e).__name__, "error": str(e)},
            )

    def cancel(self, name: str) -> bool:
        """Stop future ticks for `name`. In-flight work is left to finish."""
        token = self._tokens.pop(name, None)
        timer = self._timers.pop(name, None)
        if token is not None:
            token.cancel()
        if timer is not None and not timer.done():
            timer.cancel()
        return token is not None

    def is_scheduled(self, name: str) -> bool:
        token = self._tokens.get(name)
        return token is not None and not token.cancelled

    def in_flight(self, name: str) -> bool:
        task = self._inflight.get(name)
        return task is not None and not task.done()

    async def wait_idle(self, name: str) -> None:
        """Wait for the in-flight tick of `name`, if any, to complete."""
        task = self._inflight.get(name)
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        """Cancel every timer and let in-flight ticks run to completion."""
        timers = list(self._timers.values())
        for name in list(self._tokens):
            self.cancel(name)
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        pending = [t for t in self._inflight.values() if not t.done()]
        if pending:
            await asyncio.wait(pending)
        self._inflight.clear()

    def stats(self) -> dict:
        return {
            "scheduled": sorted(n for n in self._tokens if self.is_scheduled(n)),
            "in_flight": sorted(n for n in self._inflight if self.in_flight(n)),
            "fired": dict(self.fired),
            "dropped": dict(self.dropped),
            "errors": dict(self.errors),
        }
