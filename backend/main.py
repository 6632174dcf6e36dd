"""
main.py
--------
Outing planner composition root and CLI entry point.

  build_services()  — wires bus, approval registry, context store, discovery
                      channels, LLM, booking executor and (optionally) the
                      Postgres repository into one PipelineOrchestrator
  run_pipeline()    — runs one plan-form submission end to end

Run:
  python main.py                       # demo run, auto-approves the plan
  python main.py --reject              # demo run, rejects the plan
  python main.py --replay <run_id>     # print a recorded run's trace

Notes:
  - With no API keys set, discovery serves demo events and the LLM runs in
    stub mode, so the plan falls back to the top-ranked event.
  - USE_STUB_BROWSER=true (default) books against a scripted browser.
"""

from __future__ import annotations
import asyncio
import json
import logging
import sys
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

import config
from llm import get_llm_client
from modules.approval.registry import ApprovalRegistry
from modules.context.run_context import ContextStore
from modules.discovery.eventbrite import EventbriteChannel
from modules.discovery.eventfinda import EventfindaChannel
from modules.execution.booking_executor import BookingExecutor
from modules.observability.logger import StructuredLogger
from modules.observability.trace_bus import TraceBus
from modules.pipeline.orchestrator import PipelineOrchestrator
from modules.pipeline.stages import PipelineResult
from schemas.booking import UserProfile
from schemas.constraints import PlanFormData
from schemas.trace import TraceEvent, TraceEventType, TraceStatus

logger = logging.getLogger(__name__)


def configure_logging(level: str = config.LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s — %(message)s",
    )


@dataclass
class Services:
    bus: TraceBus
    approvals: ApprovalRegistry
    contexts: ContextStore
    trace_log: StructuredLogger
    orchestrator: PipelineOrchestrator

    def start(self) -> None:
        """Start the periodic sweeps; needs a running event loop."""
        self.bus.start()
        self.approvals.start()

    async def shutdown(self) -> None:
        await self.approvals.shutdown()
        await self.bus.shutdown()
        self.contexts.close()
        self.trace_log.close()


def build_services(llm=None, repository=None, booking_executor: Optional[BookingExecutor] = None) -> Services:
    bus = TraceBus()
    approvals = ApprovalRegistry()
    contexts = ContextStore()
    trace_log = StructuredLogger()
    if repository is None and config.USE_POSTGRES:
        from db.repositories.itinerary_repo import PostgresItineraryRepository
        repository = PostgresItineraryRepository()
    orchestrator = PipelineOrchestrator(
        bus=bus,
        approvals=approvals,
        contexts=contexts,
        channels=[EventbriteChannel(), EventfindaChannel()],
        llm=llm or get_llm_client(),
        booking_executor=booking_executor,
        repository=repository,
        trace_log=trace_log,
    )
    return Services(bus, approvals, contexts, trace_log, orchestrator)


async def run_pipeline(
    form: PlanFormData,
    services: Optional[Services] = None,
    user_id: str = "cli-user",
    profile: Optional[UserProfile] = None,
    approve: bool = True,
) -> PipelineResult:
    """
    End-to-end run without the HTTP layer. The approval gate is answered
    automatically with `approve` as soon as the plan is announced.
    """
    services = services or build_services()
    run_id = f"run-{uuid.uuid4().hex[:12]}"
    loop = asyncio.get_running_loop()

    def auto_approver(event: TraceEvent) -> None:
        if event.type is TraceEventType.PLAN_APPROVAL and event.status is TraceStatus.AWAITING_APPROVAL:
            loop.call_soon(services.approvals.resolve_approval, run_id, approve)

    unsubscribe = services.bus.subscribe(run_id, auto_approver)
    try:
        ctx = services.orchestrator.create_run(run_id, user_id, profile)
        return await services.orchestrator.run(ctx, form)
    finally:
        unsubscribe()


def _demo_form() -> PlanFormData:
    return PlanFormData(
        occasion="date_night",
        budget_range="30_to_80",
        party_size=2,
        date=date.today() + timedelta(days=1),
        time_of_day="evening",
        duration="2_3_hours",
        areas=["anywhere"],
        additional_notes="live music",
    )


def _print_result(result: PipelineResult) -> None:
    width = 52
    print()
    print("═" * width)
    print(f"  RUN {result.run_id}")
    print("═" * width)
    itinerary = result.itinerary
    if itinerary is None:
        print("  (no itinerary produced)")
    else:
        print(f"  {itinerary.name}  [{itinerary.status.value}]")
        print("  " + "─" * (width - 2))
        for item in itinerary.items:
            start = item.scheduled_time.start.strftime("%H:%M")
            end = item.scheduled_time.end.strftime("%H:%M")
            print(f"    {start} – {end}   {item.event.name[:30]}")
        print(f"\n  Total cost : ${itinerary.total_cost:,.2f}")
    for r in result.booking_results:
        print(f"  booking {r.event_name[:30]:30}  {r.status.value}")
    if result.error:
        print(f"  error: {result.error}")
    print("═" * width)
    print()


async def _main(approve: bool) -> PipelineResult:
    services = build_services()
    services.start()
    try:
        return await run_pipeline(_demo_form(), services, approve=approve)
    finally:
        await services.shutdown()


if __name__ == "__main__":
    configure_logging()

    if "--replay" in sys.argv:
        from modules.observability.replay import print_trace
        _replay_idx = sys.argv.index("--replay")
        if _replay_idx + 1 >= len(sys.argv):
            print("Usage: python main.py --replay <run_id>")
            sys.exit(1)
        print_trace(sys.argv[_replay_idx + 1])
        sys.exit(0)

    result = asyncio.run(_main(approve="--reject" not in sys.argv))
    _print_result(result)

    print("RUN SUMMARY (JSON):")
    print(json.dumps(result.to_dict(), indent=2, default=str))
