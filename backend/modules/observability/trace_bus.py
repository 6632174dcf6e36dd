"""
modules/observability/trace_bus.py
-----------------------------------
In-memory pub/sub + replay buffer for TraceEvents, keyed by run id.

  emit(event)                 append to the run's history, then notify every
                              current listener of that run in emission order
  subscribe(run_id, fn)       replay the run's history to `fn`, then deliver
                              live events until the returned callable is invoked
  get_history(run_id)         snapshot of everything emitted so far

A background sweep (started with `start()`, stopped with `shutdown()`)
forgets any run whose first event is older than the TTL.

Listener exceptions are logged and never reach the emitter.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Optional

import config
from schemas.trace import TraceEvent

logger = logging.getLogger(__name__)

TraceListener = Callable[[TraceEvent], None]


class TraceBus:
    """Thread-safe trace event bus; one instance per process."""

    def __init__(
        self,
        ttl_s: float = config.TRACE_TTL_S,
        sweep_interval_s: float = config.TRACE_SWEEP_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s
        self._sweep_interval_s = sweep_interval_s
        self._clock = clock
        # Re-entrant: a listener may emit from inside a delivery.
        self._lock = threading.RLock()
        self._history: dict[str, list[TraceEvent]] = {}
        self._listeners: dict[str, list[TraceListener]] = {}
        self._first_seen: dict[str, float] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        """Stop the sweep and drop all state."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        with self._lock:
            self._history.clear()
            self._listeners.clear()
            self._first_seen.clear()

    # ── Public API ────────────────────────────────────────────────────────────

    def emit(self, event: TraceEvent) -> None:
        run_id = event.trace_id
        with self._lock:
            if run_id not in self._history:
                self._history[run_id] = []
                self._first_seen[run_id] = self._clock()
            self._history[run_id].append(event)
            for listener in list(self._listeners.get(run_id, ())):
                self._deliver(listener, event)

    def subscribe(self, run_id: str, listener: TraceListener) -> Callable[[], None]:
        """Replay history to `listener`, then stream live events. Returns unsubscribe."""
        with self._lock:
            for event in list(self._history.get(run_id, ())):
                self._deliver(listener, event)
            self._listeners.setdefault(run_id, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(run_id)
                if listeners and listener in listeners:
                    listeners.remove(listener)
                    if not listeners:
                        del self._listeners[run_id]

        return unsubscribe

    def get_history(self, run_id: str) -> list[TraceEvent]:
        with self._lock:
            return list(self._history.get(run_id, ()))

    def sweep(self) -> int:
        """Forget runs whose first event is older than the TTL. Returns count removed."""
        now = self._clock()
        with self._lock:
            stale = [rid for rid, t0 in self._first_seen.items() if now - t0 > self._ttl_s]
            for rid in stale:
                self._history.pop(rid, None)
                self._listeners.pop(rid, None)
                self._first_seen.pop(rid, None)
        if stale:
            logger.debug("[trace-bus] swept %d stale run(s)", len(stale))
        return len(stale)

    # ── Internal ──────────────────────────────────────────────────────────────

    @staticmethod
    def _deliver(listener: TraceListener, event: TraceEvent) -> None:
        try:
            listener(event)
        except Exception:
            logger.exception("[trace-bus] listener error for run %s", event.trace_id)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            self.sweep()
