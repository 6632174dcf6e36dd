"""
modules/context/run_context.py
--------------------------------
Run-scoped state threaded explicitly through every pipeline stage.

ContextStore owns the live RunContext objects. Its mutation helpers update
memory synchronously and then hand a copy of the changed fields to a
single background worker that mirrors them to Redis (`runstate:{run_id}`).
The mirror is best-effort: failures are logged, never raised, and the
pipeline never waits on them.
"""

from __future__ import annotations
import asyncio
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import config
from db.redis_client import set_run_state
from schemas.booking import UserProfile
from schemas.event import Event, RankedEvent
from schemas.itinerary import Itinerary

logger = logging.getLogger(__name__)


class WorkflowPhase(str, Enum):
    INTENT_PARSING     = "intent_parsing"
    EVENT_DISCOVERY    = "event_discovery"
    RECOMMENDATION     = "recommendation"
    ITINERARY_PLANNING = "itinerary_planning"
    PLAN_APPROVAL      = "plan_approval"
    BOOKING_EXECUTION  = "booking_execution"
    COMPLETED          = "completed"
    FAILED             = "failed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AgentState:
    agent_id: str
    status: str                 # idle | running | completed | failed
    timestamp: str = field(default_factory=_now)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"agentId": self.agent_id, "status": self.status,
                "timestamp": self.timestamp, "error": self.error}


@dataclass
class RunContext:
    run_id: str
    user_id: str
    user_profile: UserProfile
    started_at: str = field(default_factory=_now)
    phase: WorkflowPhase = WorkflowPhase.INTENT_PARSING
    agent_states: dict[str, AgentState] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    itinerary: Optional[Itinerary] = None
    discovered_events: list[Event] = field(default_factory=list)
    ranked_events: list[RankedEvent] = field(default_factory=list)
    custom: dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> dict:
        return {
            "user_id": self.user_id,
            "phase": self.phase.value,
            "started_at": self.started_at,
            "agent_states": {k: v.to_dict() for k, v in self.agent_states.items()},
            "errors": list(self.errors),
            "itinerary_id": self.itinerary.id if self.itinerary else None,
            "updated_at": _now(),
        }


class ContextStore:
    """
    Registry of live run contexts.

    `mirror` receives (run_id, fields) on a worker thread; pass None to keep
    everything in memory. By default Redis is used only when
    USE_REDIS_CONTEXT is set.
    """

    def __init__(
        self,
        mirror: Optional[Callable[[str, dict], None]] = None,
        retention_s: float = config.CONTEXT_RETENTION_S,
    ):
        if mirror is None and config.USE_REDIS_CONTEXT:
            mirror = set_run_state
        self._mirror = mirror
        self._retention_s = retention_s
        self._contexts: dict[str, RunContext] = {}
        self._executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="runstate") if mirror else None
        )

    # ── Registry ──────────────────────────────────────────────────────────────

    def create(self, run_id: str, user_id: str, profile: UserProfile) -> RunContext:
        ctx = RunContext(run_id=run_id, user_id=user_id, user_profile=profile)
        self._contexts[run_id] = ctx
        self._write(ctx)
        return ctx

    def get(self, run_id: str) -> Optional[RunContext]:
        return self._contexts.get(run_id)

    def discard(self, run_id: str) -> None:
        self._contexts.pop(run_id, None)

    def schedule_discard(
        self,
        run_id: str,
        delay_s: Optional[float] = None,
        on_discard: Optional[Callable[[str], None]] = None,
    ) -> None:
        """Drop the context after the retention window so late readers still see it.

        `on_discard(run_id)` runs right after the context is dropped.
        """
        delay = self._retention_s if delay_s is None else delay_s

        def expire() -> None:
            self.discard(run_id)
            if on_discard is not None:
                on_discard(run_id)

        try:
            asyncio.get_running_loop().call_later(delay, expire)
        except RuntimeError:
            expire()

    def __len__(self) -> int:
        return len(self._contexts)

    # ── Mutations ─────────────────────────────────────────────────────────────

    def set_phase(self, ctx: RunContext, phase: WorkflowPhase) -> None:
        ctx.phase = phase
        self._write(ctx)

    def update_agent(self, ctx: RunContext, agent_id: str, status: str,
                     error: Optional[str] = None) -> None:
        ctx.agent_states[agent_id] = AgentState(agent_id, status, error=error)
        self._write(ctx)

    def add_error(self, ctx: RunContext, message: str) -> None:
        ctx.errors.append(message)
        self._write(ctx)

    def set_itinerary(self, ctx: RunContext, itinerary: Optional[Itinerary]) -> None:
        ctx.itinerary = itinerary
        self._write(ctx)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    # ── Mirror ────────────────────────────────────────────────────────────────

    def _write(self, ctx: RunContext) -> None:
        if self._executor is None:
            return
        fields = ctx.snapshot()
        try:
            future = self._executor.submit(self._mirror, ctx.run_id, fields)
        except RuntimeError:
            return  # executor already shut down
        future.add_done_callback(lambda f, run_id=ctx.run_id: self._log_failure(run_id, f))

    @staticmethod
    def _log_failure(run_id: str, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("[context] run-state mirror failed for %s: %s", run_id, exc)
