"""
modules/pipeline/orchestrator.py
----------------------------------
PipelineOrchestrator — the stage sequencer for one planning run.

  intent → [discovery channels in parallel] → merge + dedup → rank
         → plan + reconcile → approval gate (suspend) → booking

Architecture contract
─────────────────────
  • The orchestrator is the only component that knows about more than one
    stage, and the only one that emits trace events.
  • Each stage emits a "started" trace and a "completed"/"error" trace
    carrying human-readable digests, never raw payloads.
  • No usable plan → approval and booking are skipped.
  • Rejected (or timed-out) approval → booking is skipped, run completes.
  • Discovery, ranking, planning and booking failures are caught at the
    stage boundary and recorded. Anything else ends the run with a
    `workflow_run` error trace. Every run ends with exactly one
    `workflow_run` trace and has its context scheduled for discard.

Blocking collaborators (discovery channels, LLM, repository) run on worker
threads via asyncio.to_thread; the approval wait parks on a future.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from zoneinfo import ZoneInfo

import config
from modules.approval.registry import ApprovalRegistry
from modules.context.run_context import ContextStore, RunContext, WorkflowPhase
from modules.discovery.base import DiscoveryChannel, SearchQuery, SearchResult
from modules.errors import PlanParseError
from modules.execution.booking_executor import BookingExecutor
from modules.input.intent import IntentResolver, summarize_form
from modules.observability.logger import StructuredLogger
from modules.observability.trace_bus import TraceBus
from modules.pipeline.stages import (
    ApprovalOutput, DiscoveryOutput, ExecutionOutput, IntentOutput,
    PipelineResult, PlanningOutput, RankingOutput,
)
from modules.planning.prompts import (
    build_planning_prompt, build_recommendation_prompt, extract_json_object, parse_narrative,
)
from modules.planning.reconciler import ItineraryReconciler
from modules.recommendation.deduplicator import EventDeduplicator
from modules.recommendation.ranker import EventRanker, FilterStats
from schemas.booking import BookingResult, BookingStatus, UserProfile
from schemas.constraints import PlanFormData, UserConstraints
from schemas.event import Event, RankedEvent
from schemas.itinerary import BudgetStatus, Itinerary
from schemas.trace import (
    BookingData, Decision, PipelineStep, ReasoningStep,
    TraceEvent, TraceEventType, TraceMetadata, TraceStatus,
)

logger = logging.getLogger(__name__)

TOP_PICKS = 3
GUEST_PROFILE = UserProfile(name="Guest", email="")
REJECTED_WARNING = "Plan rejected by user"

_INTENT_AGENT         = "Intent Agent"
_DISCOVERY_AGENT      = "Discovery Agent"
_RECOMMENDATION_AGENT = "Recommendation Agent"
_PLANNING_AGENT       = "Planning Agent"
_EXECUTION_AGENT      = "Execution Agent"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _price_str(event: Event) -> str:
    p = event.price
    return f"${p.min:g}-{p.max:g} {p.currency}" if p else "free/unknown"


def _cats(values) -> str:
    return ", ".join(c.value for c in values)


def is_bookable(event: Event) -> bool:
    """Real discovered events with a booking URL; generated activities are not booked."""
    return event.source != "planned" and bool((event.source_url or "").strip())


def outdoor_signal(c: UserConstraints) -> Optional[bool]:
    """
    Weather signal for the ranker. No forecast is fetched, so weather stays
    unknown unless the user said it does not matter for this outing.
    """
    return None if c.weather_sensitive else True


class _Stage:
    """Start time of one traced stage."""

    def __init__(self) -> None:
        self.started_at = _now_iso()
        self._t0 = time.monotonic()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._t0) * 1000)


class PipelineOrchestrator:
    def __init__(
        self,
        bus: TraceBus,
        approvals: ApprovalRegistry,
        contexts: ContextStore,
        channels: Sequence[DiscoveryChannel],
        llm,
        deduplicator: Optional[EventDeduplicator] = None,
        ranker: Optional[EventRanker] = None,
        reconciler: Optional[ItineraryReconciler] = None,
        booking_executor: Optional[BookingExecutor] = None,
        repository=None,
        trace_log: Optional[StructuredLogger] = None,
        venue_tz: str = config.VENUE_TIMEZONE,
        max_results: int = config.DISCOVERY_MAX_RESULTS,
    ):
        self.bus = bus
        self.approvals = approvals
        self.contexts = contexts
        self.channels = list(channels)
        self.llm = llm
        self.intent_resolver = IntentResolver(llm)
        self.deduplicator = deduplicator or EventDeduplicator()
        self.ranker = ranker or EventRanker()
        self.reconciler = reconciler or ItineraryReconciler(venue_tz=venue_tz)
        self.booking_executor = booking_executor or BookingExecutor()
        self.repository = repository
        self.trace_log = trace_log
        self.tz = ZoneInfo(venue_tz)
        self.max_results = max_results

    # ── Public ────────────────────────────────────────────────────────────────

    def create_run(
        self,
        run_id: str,
        user_id: str = "anonymous",
        profile: Optional[UserProfile] = None,
    ) -> RunContext:
        """Register the run's context so it is visible before the pipeline starts."""
        return self.contexts.create(run_id, user_id, profile or GUEST_PROFILE)

    async def run(self, ctx: RunContext, form: PlanFormData) -> PipelineResult:
        """Drive every stage for one run. Never raises for a stage failure."""
        run_id = ctx.run_id
        unsubscribe = self.bus.subscribe(run_id, self.trace_log.record) if self.trace_log else None
        result = PipelineResult(run_id)
        stage = _Stage()
        logger.info("[pipeline] run %s started", run_id)
        try:
            await self._run_stages(ctx, form, result)
        except Exception as exc:
            logger.exception("[pipeline] run %s failed", run_id)
            result.error = str(exc) or type(exc).__name__
            self.contexts.add_error(ctx, result.error)
            self.contexts.set_phase(ctx, WorkflowPhase.FAILED)
            self._emit(ctx, TraceEventType.WORKFLOW_RUN, "pipeline-error", TraceStatus.ERROR,
                       stage=stage, error=result.error)
        else:
            self._emit(ctx, TraceEventType.WORKFLOW_RUN, "pipeline-result", TraceStatus.COMPLETED,
                       stage=stage, metadata=self._run_summary(result))
            logger.info("[pipeline] run %s completed in %d ms", run_id, stage.elapsed_ms())
        finally:
            if unsubscribe is not None:
                unsubscribe()
            self.contexts.schedule_discard(run_id, on_discard=self.approvals.forget)
        return result

    # ── Stage sequence ────────────────────────────────────────────────────────

    async def _run_stages(self, ctx: RunContext, form: PlanFormData, result: PipelineResult) -> None:
        result.intent = await self._intent(ctx, form)
        constraints = result.intent.resolved.constraints

        result.discovery = await self._discovery(ctx, constraints)
        result.ranking = await self._ranking(ctx, constraints, result.intent, result.discovery)
        result.planning = await self._planning(ctx, constraints, result.ranking)

        itinerary = result.planning.itinerary
        if itinerary is None:
            logger.info("[pipeline] no itinerary for %s — skipping approval", ctx.run_id)
            self.contexts.set_phase(ctx, WorkflowPhase.COMPLETED)
            return

        result.approval = await self._approval(ctx, form, constraints, result.planning)
        if not result.approval.approved:
            self.contexts.set_phase(ctx, WorkflowPhase.COMPLETED)
            return

        result.execution = await self._execution(ctx, constraints, itinerary)
        self.contexts.set_phase(ctx, WorkflowPhase.COMPLETED)

    # ── Intent ────────────────────────────────────────────────────────────────

    async def _intent(self, ctx: RunContext, form: PlanFormData) -> IntentOutput:
        stage = _Stage()
        self.contexts.set_phase(ctx, WorkflowPhase.INTENT_PARSING)
        self.contexts.update_agent(ctx, "intent-agent", "running")
        self._step(ctx, "Understanding your request…", TraceStatus.STARTED, stage,
                   PipelineStep.INTENT, _INTENT_AGENT,
                   input_summary=summarize_form(form),
                   output_summary="Analyzing your preferences…")

        resolved = await asyncio.to_thread(self.intent_resolver.resolve, form)
        cats = resolved.categories_label
        enrichment = resolved.enrichment

        self._step(ctx, "Intent understood", TraceStatus.COMPLETED, stage,
                   PipelineStep.INTENT, _INTENT_AGENT,
                   reasoning=(enrichment.reasoning if enrichment and enrichment.reasoning
                              else f"Mapped request to {resolved.intent_type.value} with categories: {cats}"),
                   confidence=enrichment.confidence if enrichment else None,
                   input_summary=resolved.summary,
                   output_summary=f"Type: {resolved.intent_type.value} | Categories: {cats}",
                   reasoning_steps=tuple(resolved.reasoning_steps))
        self.contexts.update_agent(ctx, "intent-agent", "completed")
        logger.info("[pipeline] intent resolved: %s", resolved.intent_type.value)
        return IntentOutput(resolved)

    # ── Discovery ─────────────────────────────────────────────────────────────

    async def _discovery(self, ctx: RunContext, c: UserConstraints) -> DiscoveryOutput:
        stage = _Stage()
        self.contexts.set_phase(ctx, WorkflowPhase.EVENT_DISCOVERY)
        self.contexts.update_agent(ctx, "discovery-agent", "running")
        query = SearchQuery(
            date=c.date,
            categories=c.preferred_categories,
            budget_max=c.budget_max,
            areas=c.areas,
            max_results=self.max_results,
        )
        budget = f"${c.budget_max:g}" if c.budget_max else "unlimited"
        self._step(ctx, "Searching for events…", TraceStatus.STARTED, stage,
                   PipelineStep.DISCOVERY, _DISCOVERY_AGENT,
                   input_summary=(f"Date: {c.date.isoformat()} | Budget: {budget} | "
                                  f"Categories: {_cats(c.preferred_categories) or 'all'} | "
                                  f"Areas: {', '.join(c.areas) or 'anywhere'}"),
                   output_summary=f"Searching {len(self.channels)} sources in parallel…")

        settled = await asyncio.gather(
            *(asyncio.to_thread(ch.search, query) for ch in self.channels),
            return_exceptions=True,
        )
        results: list[SearchResult] = []
        for channel, outcome in zip(self.channels, settled):
            if isinstance(outcome, BaseException):
                logger.error("[pipeline] %s search raised: %s", channel.name, outcome)
                results.append(SearchResult(channel.name, [], error=str(outcome)))
            else:
                results.append(outcome)

        raw = [e for r in results for e in r.events]
        dedup = None
        events = raw
        try:
            dedup = self.deduplicator.deduplicate(raw)
            events = dedup.events
        except Exception as exc:
            logger.warning("[pipeline] dedup failed (%s) — using merged events as is", exc)
            self.contexts.add_error(ctx, f"Deduplication failed: {exc}")

        steps = [self._channel_step(r) for r in results]
        steps.append(ReasoningStep("Merge", f"Combined {len(raw)} raw events from {len(results)} sources",
                                   "pass" if raw else "fail"))
        steps.append(ReasoningStep(
            "Deduplicate",
            f"{dedup.original_count} → {dedup.deduplicated_count} ({dedup.removed_count} duplicates removed)"
            if dedup else f"{len(events)} events (dedup skipped)",
            "pass" if dedup and dedup.removed_count > 0 else "info",
        ))
        top = events[:5]
        self._step(ctx, f"Found {len(events)} events", TraceStatus.COMPLETED, stage,
                   PipelineStep.DISCOVERY, _DISCOVERY_AGENT,
                   result_count=len(events),
                   reasoning=(f"Searched {' and '.join(f'{r.source} ({r.mode}: {len(r.events)} results)' for r in results)}"
                              f" in parallel. Merged {len(events)} total events."),
                   output_summary="\n".join(
                       f"{i}. {e.name} ({e.category.value}, {_price_str(e)})" for i, e in enumerate(top, 1)
                   ) or "No events found",
                   reasoning_steps=tuple(steps),
                   decisions=tuple(
                       Decision(e.name, f"{e.category.value} event from {e.source} — {_price_str(e)}",
                                score=e.rating / 5 if e.rating is not None else None,
                                data={"category": e.category.value, "source": e.source,
                                      "timeSlot": e.time_slot.to_dict()})
                       for e in top
                   ))

        ctx.discovered_events = list(events)
        self.contexts.update_agent(ctx, "discovery-agent", "completed")
        return DiscoveryOutput(tuple(events), tuple(results), len(raw), dedup)

    @staticmethod
    def _channel_step(r: SearchResult) -> ReasoningStep:
        label = f"{r.source.title()} search"
        if r.error and not r.events:
            return ReasoningStep(label, f"Failed: {r.error}", "fail")
        detail = f"{len(r.events)} events via {r.mode} mode"
        if r.error:
            detail += f" (live search failed: {r.error})"
        return ReasoningStep(label, detail, "pass" if r.events else "fail")

    # ── Ranking ───────────────────────────────────────────────────────────────

    async def _ranking(
        self,
        ctx: RunContext,
        c: UserConstraints,
        intent: IntentOutput,
        discovery: DiscoveryOutput,
    ) -> RankingOutput:
        stage = _Stage()
        self.contexts.set_phase(ctx, WorkflowPhase.RECOMMENDATION)
        self.contexts.update_agent(ctx, "recommendation-agent", "running")
        budget_min = c.budget.min if c.budget else 0
        budget_max = f"{c.budget_max:g}" if c.budget_max is not None else "∞"
        self._step(ctx, "Ranking events…", TraceStatus.STARTED, stage,
                   PipelineStep.RECOMMENDATION, _RECOMMENDATION_AGENT,
                   input_summary=(f"{len(discovery.events)} events | Budget: ${budget_min:g}-{budget_max} | "
                                  f"Categories: {_cats(c.preferred_categories) or 'all'}"),
                   output_summary="Scoring events by budget, category, and rating…")

        try:
            ranking = self.ranker.rank(
                list(discovery.events),
                budget_min=c.budget.min if c.budget else None,
                budget_max=c.budget_max,
                preferred_categories=c.preferred_categories,
                excluded_categories=c.excluded_categories,
                outdoor_friendly=outdoor_signal(c),
                prefer_free_events=c.prefer_free_events,
            )
        except Exception as exc:
            self._stage_failed(ctx, "recommendation-agent", "Ranking failed", stage,
                               PipelineStep.RECOMMENDATION, _RECOMMENDATION_AGENT, exc)
            return RankingOutput((), (), FilterStats(len(discovery.events), 0, 0))

        ranked = ranking.ranked_events
        stats = ranking.filter_stats
        top = ranked[:TOP_PICKS]
        narrative = await self._narrative(intent, c, top, stats.total_input, stats.passed_filters) if top else {}

        story = narrative.get("narrative") or None
        why = {
            str(p.get("eventName")): str(p.get("why"))
            for p in narrative.get("topPickReasoning") or []
            if isinstance(p, dict) and p.get("eventName") and p.get("why")
        }
        steps = [
            ReasoningStep("Hard-constraint filtering",
                          f"{stats.total_input} → {stats.passed_filters} events (removed "
                          f"{stats.total_input - stats.passed_filters} sold-out, excluded, or over-budget)",
                          "pass" if stats.passed_filters > 0 else "fail"),
            ReasoningStep("Multi-factor scoring",
                          f"Scored {stats.final_count} events on budget fit, category match, "
                          f"rating, availability, weather",
                          "pass" if stats.final_count > 0 else "fail"),
            ReasoningStep("Top pick",
                          f"{top[0].event.name} — score {top[0].score}/1.00" if top else "No events to rank",
                          "pass" if top else "info"),
            ReasoningStep("Agent reasoning",
                          story or "Agent reasoning unavailable — using deterministic scoring only",
                          "pass" if story else "info"),
        ]
        steps.extend(ReasoningStep("Trade-off", str(t)) for t in narrative.get("tradeoffs") or [])
        confidence = narrative.get("confidence")

        self._step(ctx, f"Top {len(top)} picks", TraceStatus.COMPLETED, stage,
                   PipelineStep.RECOMMENDATION, _RECOMMENDATION_AGENT,
                   result_count=len(top),
                   reasoning=story or (
                       f"Scored {stats.total_input} events: {stats.passed_filters} passed hard filters. "
                       f"Top {len(top)} picks selected by budget fit (30%), category match (25%), "
                       f"rating (20%), availability (15%), weather (10%)."),
                   confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
                   output_summary="\n".join(
                       f"{i}. {r.event.name} (score: {r.score})" for i, r in enumerate(top, 1)
                   ) or "No events passed filters",
                   reasoning_steps=tuple(steps),
                   decisions=tuple(
                       Decision(r.event.name, why.get(r.event.name, r.reasoning), score=r.score,
                                data={"category": r.event.category.value,
                                      "price": r.event.price.to_dict() if r.event.price else None,
                                      "timeSlot": r.event.time_slot.to_dict()})
                       for r in top
                   ))

        ctx.ranked_events = list(ranked[:1])
        self.contexts.update_agent(ctx, "recommendation-agent", "completed")
        return RankingOutput(tuple(ranked), tuple(top), stats, narrative)

    async def _narrative(
        self,
        intent: IntentOutput,
        c: UserConstraints,
        top: list[RankedEvent],
        total_input: int,
        passed: int,
    ) -> dict[str, Any]:
        prompt = build_recommendation_prompt(intent.resolved.summary, c, top, total_input, passed)
        try:
            text = await asyncio.to_thread(self.llm.complete, prompt)
        except Exception as exc:
            logger.warning("[pipeline] recommendation narrative failed: %s", exc)
            return {}
        return parse_narrative(text)

    # ── Planning ──────────────────────────────────────────────────────────────

    async def _planning(self, ctx: RunContext, c: UserConstraints, ranking: RankingOutput) -> PlanningOutput:
        anchor = ranking.anchor
        if anchor is None:
            logger.info("[pipeline] no ranked events — skipping itinerary planning")
            return PlanningOutput(None, warnings=("No ranked events — itinerary planning skipped",))

        stage = _Stage()
        self.contexts.set_phase(ctx, WorkflowPhase.ITINERARY_PLANNING)
        self.contexts.update_agent(ctx, "planning-agent", "running")
        budget = f"${c.budget_max:g}" if c.budget_max is not None else "$∞"
        self._step(ctx, "Planning your itinerary…", TraceStatus.STARTED, stage,
                   PipelineStep.PLANNING, _PLANNING_AGENT,
                   input_summary=(f"Top event: {anchor.event.name} | Budget: {budget}/person | "
                                  f"{c.time_of_day} {c.duration_choice.replace('_', ' ')}"),
                   output_summary="Designing your day plan…")

        try:
            return await self._plan(ctx, c, anchor, ranking, stage)
        except Exception as exc:
            self._stage_failed(ctx, "planning-agent", "Planning incomplete", stage,
                               PipelineStep.PLANNING, _PLANNING_AGENT, exc)
            return PlanningOutput(None, warnings=(f"Planning failed: {exc}",))

    async def _plan(
        self,
        ctx: RunContext,
        c: UserConstraints,
        anchor: RankedEvent,
        ranking: RankingOutput,
        stage: _Stage,
    ) -> PlanningOutput:
        narrative = ranking.narrative.get("narrative") or None
        prompt = build_planning_prompt(c, anchor, self.tz, narrative=narrative)

        raw_plan: Optional[dict] = None
        try:
            text = await asyncio.to_thread(self.llm.complete, prompt)
            raw_plan = extract_json_object(text)
        except PlanParseError:
            logger.warning("[pipeline] planning answer contained no JSON")
        except Exception as exc:
            logger.error("[pipeline] planning LLM call failed: %s", exc)

        warnings: list[str] = []
        itinerary: Optional[Itinerary] = None
        metadata = None
        used_fallback = False
        if raw_plan is None:
            warnings.append("Planning agent did not return a valid plan — itinerary unavailable")
        else:
            reconciled = self.reconciler.reconcile(
                raw_plan, [anchor], c.date, budget_max=c.budget_max, party_size=c.party_size,
            )
            warnings.extend(reconciled.warnings)
            used_fallback = reconciled.used_fallback
            if reconciled.itinerary.items:
                itinerary, metadata = reconciled.itinerary, reconciled.metadata
            else:
                warnings.append("Reconciled plan has no items — itinerary unavailable")

        self.contexts.set_itinerary(ctx, itinerary)
        self._emit_plan_trace(ctx, stage, raw_plan is not None, itinerary, metadata, warnings)
        self.contexts.update_agent(ctx, "planning-agent", "completed" if itinerary else "failed")
        return PlanningOutput(itinerary, metadata, tuple(warnings), used_fallback)

    def _emit_plan_trace(self, ctx, stage, had_plan, itinerary, metadata, warnings) -> None:
        count = metadata.item_count if metadata else 0
        main = metadata.main_event_count if metadata else 0
        generated = metadata.generated_count if metadata else 0
        if metadata is None:
            budget_state = "info"
        elif metadata.budget_status is BudgetStatus.WITHIN_BUDGET:
            budget_state = "pass"
        elif metadata.budget_status is BudgetStatus.SLIGHTLY_OVER:
            budget_state = "info"
        else:
            budget_state = "fail"
        steps = [
            ReasoningStep("LLM plan generation",
                          f'Generated plan: "{metadata.itinerary_name}"' if had_plan and metadata
                          else "Agent failed to produce valid plan",
                          "pass" if had_plan else "fail"),
            ReasoningStep("Schema validation",
                          f"Validated {count} items" if itinerary else "Validation failed or skipped",
                          "pass" if itinerary else "fail"),
            ReasoningStep("Budget check",
                          f"${metadata.total_estimated_cost_per_person:g}/person — "
                          f"{metadata.budget_status.value.replace('_', ' ')}" if metadata
                          else "Budget check skipped",
                          budget_state),
            ReasoningStep("Activity mix",
                          f"{main} main event(s) + {generated} complementary activities" if metadata
                          else "No activities planned",
                          "pass" if generated > 0 else "info"),
        ]
        steps.extend(ReasoningStep("Warning", w) for w in warnings)

        items = itinerary.items if itinerary else []
        self._step(ctx, f"{count}-stop itinerary ready" if itinerary else "Planning incomplete",
                   TraceStatus.COMPLETED if itinerary else TraceStatus.ERROR, stage,
                   PipelineStep.PLANNING, _PLANNING_AGENT,
                   result_count=count,
                   reasoning=(metadata.overall_vibe if metadata and metadata.overall_vibe
                              else f"Built {count}-activity itinerary ({main} main events, "
                                   f"{generated} complementary activities)"),
                   confidence=0.85 if itinerary else 0.2,
                   output_summary="\n".join(
                       f"{i}. {self._hhmm(it.scheduled_time.start)} — {it.event.name}"
                       for i, it in enumerate(items, 1)
                   ) or "No itinerary generated",
                   reasoning_steps=tuple(steps),
                   decisions=tuple(
                       Decision(it.event.name,
                                it.notes or f"{it.event.category.value} at {self._hhmm(it.scheduled_time.start)}",
                                data={"category": it.event.category.value,
                                      "price": it.event.price.to_dict() if it.event.price else None,
                                      "scheduledTime": it.scheduled_time.to_dict()})
                       for it in items
                   ))

    # ── Approval ──────────────────────────────────────────────────────────────

    async def _approval(
        self,
        ctx: RunContext,
        form: PlanFormData,
        c: UserConstraints,
        planning: PlanningOutput,
    ) -> ApprovalOutput:
        itinerary = planning.itinerary
        metadata = planning.metadata
        self.contexts.set_phase(ctx, WorkflowPhase.PLAN_APPROVAL)

        # Register before announcing so an observer can answer the trace immediately.
        decision = self.approvals.wait_for_approval(ctx.run_id)
        stage = _Stage()
        self._emit(ctx, TraceEventType.PLAN_APPROVAL, "Plan ready for approval",
                   TraceStatus.AWAITING_APPROVAL, metadata=TraceMetadata(
                       pipeline_step=PipelineStep.PLANNING,
                       agent_name=_PLANNING_AGENT,
                       output_summary="Waiting for your approval…",
                       approval_data={
                           "itinerary": itinerary.to_dict(),
                           "planMetadata": metadata.to_dict() if metadata else None,
                           "warnings": list(planning.warnings),
                           "occasion": form.occasion,
                           "partySize": c.party_size,
                           "budgetMax": c.budget_max,
                       },
                   ))
        logger.info("[pipeline] run %s awaiting approval for %r", ctx.run_id, itinerary.name)

        approved = bool(await decision)

        if not approved:
            itinerary.reject()
            self._emit(ctx, TraceEventType.PLAN_APPROVAL, "Plan rejected", TraceStatus.REJECTED,
                       stage=stage, metadata=TraceMetadata(
                           pipeline_step=PipelineStep.PLANNING, agent_name=_PLANNING_AGENT,
                           output_summary=REJECTED_WARNING))
            self.contexts.set_itinerary(ctx, None)
            return ApprovalOutput(False, warnings=(REJECTED_WARNING,))

        itinerary.approve()
        self._emit(ctx, TraceEventType.PLAN_APPROVAL, "Plan approved", TraceStatus.APPROVED,
                   stage=stage, metadata=TraceMetadata(
                       pipeline_step=PipelineStep.PLANNING, agent_name=_PLANNING_AGENT,
                       output_summary="Plan approved — proceeding to execution"))
        return await self._persist(ctx, itinerary)

    async def _persist(self, ctx: RunContext, itinerary: Itinerary) -> ApprovalOutput:
        if self.repository is None:
            return ApprovalOutput(True)
        try:
            persisted = await asyncio.to_thread(self.repository.persist, ctx.user_id, itinerary)
        except Exception as exc:
            logger.error("[pipeline] persisting %s failed: %s", itinerary.id, exc)
            self.contexts.add_error(ctx, f"Itinerary persistence failed: {exc}")
            return ApprovalOutput(True, persist_error=str(exc))
        ctx.custom["persisted_itinerary_id"] = persisted.itinerary_id
        if self.trace_log is not None:
            self.trace_log.log(ctx.run_id, "persisted", {
                "itineraryId": persisted.itinerary_id,
                "externalId": itinerary.id,
                "itemCount": persisted.item_count,
            })
        return ApprovalOutput(True, persisted=persisted)

    # ── Execution ─────────────────────────────────────────────────────────────

    async def _execution(self, ctx: RunContext, c: UserConstraints, itinerary: Itinerary) -> ExecutionOutput:
        bookable = [it for it in itinerary.items if is_bookable(it.event)]
        if not bookable:
            self._emit(ctx, TraceEventType.BOOKING_EXECUTION, "No bookable items",
                       TraceStatus.BOOKING_COMPLETED, stage=_Stage(), metadata=TraceMetadata(
                           pipeline_step=PipelineStep.EXECUTION, agent_name=_EXECUTION_AGENT,
                           output_summary="No items require booking — all are generated activities"))
            return ExecutionOutput()

        stage = _Stage()
        total = len(bookable)
        self.contexts.set_phase(ctx, WorkflowPhase.BOOKING_EXECUTION)
        self.contexts.update_agent(ctx, "execution-agent", "running")
        self._emit(ctx, TraceEventType.BOOKING_EXECUTION, f"Booking {total} items…",
                   TraceStatus.BOOKING_STARTED, metadata=TraceMetadata(
                       pipeline_step=PipelineStep.EXECUTION, agent_name=_EXECUTION_AGENT,
                       output_summary=f"Preparing to book {total} items",
                       booking_data=BookingData(0, total, bookable[0].event.name)))

        item_stages: dict[int, _Stage] = {}

        async def on_progress(i: int, event: Event, res: Optional[BookingResult]) -> None:
            if res is None:
                item_stages[i] = _Stage()
                self._emit(ctx, TraceEventType.BOOKING_EXECUTION, f"Booking: {event.name}",
                           TraceStatus.BOOKING_PROGRESS, metadata=TraceMetadata(
                               pipeline_step=PipelineStep.EXECUTION, agent_name=_EXECUTION_AGENT,
                               output_summary=f"Booking {i + 1} of {total}: {event.name}",
                               booking_data=BookingData(i + 1, total, event.name, event.source_url)))
                return
            ok = res.status is BookingStatus.SUCCESS
            if ok:
                bookable[i].booking_reference = res.confirmation_number
            self._emit(ctx, TraceEventType.BOOKING_EXECUTION, f"{'✅' if ok else '⚠️'} {event.name}",
                       TraceStatus.BOOKING_COMPLETED if ok else TraceStatus.BOOKING_FAILED,
                       stage=item_stages.get(i), metadata=TraceMetadata(
                           pipeline_step=PipelineStep.EXECUTION, agent_name=_EXECUTION_AGENT,
                           output_summary=f"{res.status.value}: {res.confirmation_number or res.error or 'done'}",
                           booking_data=BookingData(
                               i + 1, total, event.name, event.source_url,
                               confirmation_number=res.confirmation_number,
                               screenshot_path=res.screenshot_path,
                               booking_error=res.error,
                               action_manual_found=res.status is not BookingStatus.NO_ACTION_MANUAL,
                           )))

        try:
            results = await self.booking_executor.execute_all(
                [it.event for it in bookable], c.party_size, ctx.user_profile, on_progress,
            )
        except Exception as exc:
            self._stage_failed(ctx, "execution-agent", "Execution failed", stage,
                               PipelineStep.EXECUTION, _EXECUTION_AGENT, exc,
                               event_type=TraceEventType.BOOKING_EXECUTION,
                               status=TraceStatus.BOOKING_FAILED)
            return ExecutionOutput()

        out = ExecutionOutput(tuple(results))
        summary = f"{out.success_count} booked, {out.failed_count} failed, {out.skipped_count} skipped"
        logger.info("[pipeline] execution complete: %s", summary)
        self._emit(ctx, TraceEventType.BOOKING_EXECUTION, "Execution complete",
                   TraceStatus.BOOKING_COMPLETED, stage=stage, metadata=TraceMetadata(
                       pipeline_step=PipelineStep.EXECUTION, agent_name=_EXECUTION_AGENT,
                       output_summary=summary,
                       result_count=len(results),
                       reasoning=(f"Processed {total} bookable items: {out.success_count} successful, "
                                  f"{out.failed_count} failed, {out.skipped_count} skipped/info-only"),
                       reasoning_steps=tuple(self._booking_step(r) for r in results)))
        self.contexts.update_agent(ctx, "execution-agent", "completed")
        return out

    @staticmethod
    def _booking_step(r: BookingResult) -> ReasoningStep:
        if r.status is BookingStatus.SUCCESS:
            ref = f" (ref: {r.confirmation_number})" if r.confirmation_number else ""
            return ReasoningStep(r.event_name, f"Booked successfully{ref}", "pass")
        return ReasoningStep(r.event_name, r.error or r.status.value,
                             "fail" if r.status is BookingStatus.FAILED else "info")

    # ── Trace helpers ─────────────────────────────────────────────────────────

    def _emit(
        self,
        ctx: RunContext,
        type_: TraceEventType,
        name: str,
        status: TraceStatus,
        stage: Optional[_Stage] = None,
        metadata: Optional[TraceMetadata] = None,
        error: Optional[str] = None,
    ) -> None:
        done = stage is not None and status is not TraceStatus.STARTED
        self.bus.emit(TraceEvent(
            trace_id=ctx.run_id,
            type=type_,
            name=name,
            status=status,
            started_at=stage.started_at if stage else _now_iso(),
            completed_at=_now_iso() if done else None,
            duration_ms=stage.elapsed_ms() if done else None,
            metadata=metadata or TraceMetadata(),
            error=error,
        ))

    def _step(
        self,
        ctx: RunContext,
        name: str,
        status: TraceStatus,
        stage: _Stage,
        step: PipelineStep,
        agent: str,
        error: Optional[str] = None,
        **meta: Any,
    ) -> None:
        self._emit(ctx, TraceEventType.WORKFLOW_STEP, name, status, stage=stage, error=error,
                   metadata=TraceMetadata(pipeline_step=step, agent_name=agent, **meta))

    def _stage_failed(
        self,
        ctx: RunContext,
        agent_id: str,
        name: str,
        stage: _Stage,
        step: PipelineStep,
        agent: str,
        exc: Exception,
        event_type: TraceEventType = TraceEventType.WORKFLOW_STEP,
        status: TraceStatus = TraceStatus.ERROR,
    ) -> None:
        logger.exception("[pipeline] %s stage failed for run %s", step.value, ctx.run_id)
        message = str(exc) or type(exc).__name__
        self.contexts.add_error(ctx, f"{step.value}: {message}")
        self.contexts.update_agent(ctx, agent_id, "failed", error=message)
        self._emit(ctx, event_type, name, status, stage=stage, error=message,
                   metadata=TraceMetadata(pipeline_step=step, agent_name=agent,
                                          output_summary=f"Failed — {message}"))

    def _run_summary(self, result: PipelineResult) -> TraceMetadata:
        top = len(result.ranking.top_picks) if result.ranking else 0
        parts = [f"{top} top picks selected"]
        if result.approval is not None and not result.approval.approved:
            parts.append("plan rejected")
        elif result.itinerary is not None:
            parts.append(f"itinerary {result.itinerary.status.value}")
        if result.execution is not None:
            parts.append(f"{result.execution.success_count}/{len(result.execution.results)} booked")
        return TraceMetadata(output_summary=", ".join(parts), result_count=top)

    def _hhmm(self, dt: datetime) -> str:
        return dt.astimezone(self.tz).strftime("%H:%M")
