"""
modules/approval/registry.py
-----------------------------
Approval gate: the pipeline's single long-duration suspension point.

  wait_for_approval(run_id)       register a pending decision and return an
                                  awaitable that resolves to True/False
  resolve_approval(run_id, ok)    resolve it exactly once; returns whether a
                                  pending entry existed
  has_pending_approval(run_id)    existence check used to tell "not found"
                                  from "already resolved"

Pending entries older than the TTL are resolved as False by a periodic
sweep, which is indistinguishable downstream from an explicit rejection.
The waiting coroutine is parked on an asyncio.Future; no thread is held.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import config

logger = logging.getLogger(__name__)


@dataclass
class PendingApproval:
    run_id: str
    future: asyncio.Future
    created_at: float


class ApprovalRegistry:
    """Maps run ids to pending approval futures. All methods must be called
    from the event loop thread that owns the futures."""

    def __init__(
        self,
        ttl_s: float = config.APPROVAL_TTL_S,
        sweep_interval_s: float = config.APPROVAL_SWEEP_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s
        self._sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._pending: dict[str, PendingApproval] = {}
        # Runs whose decision has been delivered; lets callers report 409 vs 404.
        self._resolved: dict[str, bool] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        """Stop the sweep; any still-pending run is rejected."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for run_id in list(self._pending):
            self._settle(run_id, False)

    # ── Public API ────────────────────────────────────────────────────────────

    def wait_for_approval(self, run_id: str) -> asyncio.Future:
        """Register a pending decision for `run_id` and return its future.

        The future never completes synchronously. A second call for the same
        run returns the existing future.
        """
        entry = self._pending.get(run_id)
        if entry is not None:
            return entry.future
        future = asyncio.get_running_loop().create_future()
        self._pending[run_id] = PendingApproval(run_id, future, self._clock())
        self._resolved.pop(run_id, None)
        logger.info("[approval] run %s awaiting approval", run_id)
        return future

    def resolve_approval(self, run_id: str, approved: bool) -> bool:
        """Deliver the decision. Returns False when nothing was pending."""
        if run_id not in self._pending:
            return False
        self._settle(run_id, approved)
        logger.info("[approval] run %s %s", run_id, "approved" if approved else "rejected")
        return True

    def has_pending_approval(self, run_id: str) -> bool:
        return run_id in self._pending

    def was_resolved(self, run_id: str) -> bool:
        return run_id in self._resolved

    def forget(self, run_id: str) -> None:
        """Drop the resolved marker once the run's context is discarded."""
        self._resolved.pop(run_id, None)

    def sweep(self) -> int:
        """Auto-reject entries older than the TTL. Returns how many expired."""
        now = self._clock()
        expired = [rid for rid, p in self._pending.items() if now - p.created_at > self._ttl_s]
        for rid in expired:
            logger.warning("[approval] run %s timed out after %.0fs — auto-rejecting", rid, self._ttl_s)
            self._settle(rid, False)
        return len(expired)

    # ── Internal ──────────────────────────────────────────────────────────────

    def _settle(self, run_id: str, approved: bool) -> None:
        entry = self._pending.pop(run_id)
        self._resolved[run_id] = approved
        if not entry.future.done():
            entry.future.set_result(approved)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            self.sweep()
