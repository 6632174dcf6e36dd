"""End-to-end tests for the pipeline orchestrator."""

import asyncio
import json
from dataclasses import replace

import pytest

from db.repositories.itinerary_repo import PersistedItinerary
from helpers import (
    JAZZ, NARRATIVE, PLAN, PLAN_DATE, BrokenChannel, FakeChannel, ScriptedLLM, make_event,
    make_services, plan_item,
)
from main import run_pipeline
from modules.approval.registry import ApprovalRegistry
from modules.context.run_context import ContextStore, WorkflowPhase
from modules.input.intent import map_plan_form
from modules.observability.replay import load_trace
from modules.pipeline.orchestrator import is_bookable, outdoor_signal
from modules.recommendation.ranker import EventRanker
from schemas.booking import BookingStatus
from schemas.constraints import UserConstraints
from schemas.event import Availability, EventCategory, PriceRange
from schemas.itinerary import ItineraryStatus
from schemas.trace import TraceEventType, TraceStatus


class RecordingRepository:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = []

    def persist(self, user_id, itinerary):
        self.calls.append((user_id, itinerary.id))
        if self.error is not None:
            raise self.error
        return PersistedItinerary("db-itinerary-1", len(itinerary.items))


class ExplodingResolver:
    def resolve(self, form):
        raise RuntimeError("intent resolver crashed")


class ExplodingRanker:
    def rank(self, events, **kwargs):
        raise ValueError("bad weights")


def trace_names(services, run_id) -> list[str]:
    return [e.name for e in services.bus.get_history(run_id)]


class TestPipelineHappyPath:
    """Test suite for a run that plans, is approved and books."""

    @pytest.mark.asyncio
    async def test_approved_run_books_main_event(self, tmp_path, plan_form, profile) -> None:
        llm = ScriptedLLM("not json", NARRATIVE, PLAN)
        repo = RecordingRepository()
        services = make_services(tmp_path, llm, repository=repo)

        result = await run_pipeline(plan_form(), services, user_id="user-7", profile=profile)

        assert result.error is None
        assert [s.stage for s in result.stages()] == [
            "intent", "discovery", "ranking", "planning", "approval", "execution",
        ]
        assert len(llm.prompts) == 3

        itinerary = result.itinerary
        assert itinerary.status is ItineraryStatus.APPROVED
        assert [i.event.name for i in itinerary.items] == ["Dinner at Lau Pa Sat", JAZZ]
        assert not result.planning.used_fallback

        assert result.approval.approved
        assert result.approval.persisted.itinerary_id == "db-itinerary-1"
        assert repo.calls == [("user-7", itinerary.id)]
        records = [
            json.loads(line)
            for line in services.trace_log.path_for(result.run_id).read_text(encoding="utf-8").splitlines()
        ]
        persisted = [r for r in records if r["event_type"] == "persisted"]
        assert [r["payload"]["itineraryId"] for r in persisted] == ["db-itinerary-1"]

        assert [r.status for r in result.booking_results] == [BookingStatus.SUCCESS]
        jazz = itinerary.items[1]
        assert jazz.booking_reference == "100200300"
        assert itinerary.items[0].booking_reference is None

        ctx = services.contexts.get(result.run_id)
        assert ctx.phase is WorkflowPhase.COMPLETED
        assert ctx.custom["persisted_itinerary_id"] == "db-itinerary-1"
        assert ctx.errors == []

    @pytest.mark.asyncio
    async def test_trace_sequence(self, tmp_path, plan_form, profile) -> None:
        """Test that every stage announces itself and the run ends with one terminal trace."""
        services = make_services(tmp_path, ScriptedLLM("not json", NARRATIVE, PLAN))

        result = await run_pipeline(plan_form(), services, profile=profile)

        history = services.bus.get_history(result.run_id)
        assert [e.name for e in history] == [
            "Understanding your request…", "Intent understood",
            "Searching for events…", "Found 1 events",
            "Ranking events…", "Top 1 picks",
            "Planning your itinerary…", "2-stop itinerary ready",
            "Plan ready for approval", "Plan approved",
            "Booking 1 items…", f"Booking: {JAZZ}", f"✅ {JAZZ}", "Execution complete",
            "pipeline-result",
        ]
        terminal = history[-1]
        assert terminal.type is TraceEventType.WORKFLOW_RUN
        assert terminal.status is TraceStatus.COMPLETED
        assert [e for e in history if e.is_terminal] == [terminal]

        awaiting = history[8]
        assert awaiting.status is TraceStatus.AWAITING_APPROVAL
        assert awaiting.metadata.approval_data["partySize"] == 2
        assert awaiting.metadata.approval_data["itinerary"]["name"] == "Jazz & Dinner"

    @pytest.mark.asyncio
    async def test_trace_log_replays_the_run(self, tmp_path, plan_form) -> None:
        services = make_services(tmp_path, ScriptedLLM("not json", NARRATIVE, PLAN))

        result = await run_pipeline(plan_form(), services)

        replayed = load_trace(result.run_id, logs_dir=tmp_path / "logs")
        assert [e.name for e in replayed] == trace_names(services, result.run_id)
        assert replayed[-1].status is TraceStatus.COMPLETED


class TestPipelineBranches:
    """Test suite for the skip and failure branches of a run."""

    @pytest.mark.asyncio
    async def test_rejected_plan_is_not_booked(self, tmp_path, plan_form) -> None:
        repo = RecordingRepository()
        services = make_services(tmp_path, ScriptedLLM("not json", NARRATIVE, PLAN), repository=repo)

        result = await run_pipeline(plan_form(), services, approve=False)

        assert result.itinerary is None
        assert result.planning.itinerary.status is ItineraryStatus.REJECTED
        assert not result.approval.approved
        assert result.warnings[-1] == "Plan rejected by user"
        assert result.to_dict()["itinerary"] is None
        assert services.contexts.get(result.run_id).itinerary is None
        assert result.execution is None
        assert repo.calls == []
        names = trace_names(services, result.run_id)
        assert "Plan rejected" in names
        assert not any(n.startswith("Booking") for n in names)
        assert names[-1] == "pipeline-result"

    @pytest.mark.asyncio
    async def test_stub_llm_yields_no_itinerary(self, tmp_path, plan_form) -> None:
        """Test that a planning answer without JSON skips approval entirely."""
        services = make_services(tmp_path, ScriptedLLM())

        result = await run_pipeline(plan_form(), services)

        assert result.itinerary is None
        assert result.approval is None
        assert result.execution is None
        assert any("did not return a valid plan" in w for w in result.planning.warnings)
        names = trace_names(services, result.run_id)
        assert "Planning incomplete" in names
        assert "Plan ready for approval" not in names
        assert services.approvals.was_resolved(result.run_id) is False

    @pytest.mark.asyncio
    async def test_invalid_plan_uses_fallback(self, tmp_path, plan_form) -> None:
        services = make_services(tmp_path, ScriptedLLM("not json", NARRATIVE, '{"itineraryName": "Broken"}'))

        result = await run_pipeline(plan_form(), services)

        assert result.planning.used_fallback
        assert result.itinerary.name == "Your Plan (simplified)"
        assert [i.event.name for i in result.itinerary.items] == [JAZZ]
        assert [r.status for r in result.booking_results] == [BookingStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_stop_discovery(self, tmp_path, plan_form) -> None:
        working = FakeChannel("eventfinda", [make_event()])
        services = make_services(tmp_path, ScriptedLLM("not json", NARRATIVE, PLAN),
                                 channels=[BrokenChannel(), working])

        result = await run_pipeline(plan_form(), services)

        broken, ok = result.discovery.channel_results
        assert (broken.source, broken.events, broken.error) == ("broken", [], "upstream exploded")
        assert len(ok.events) == 1
        assert result.discovery.raw_count == 1
        assert result.itinerary is not None
        assert len(working.queries) == 1

        found = services.bus.get_history(result.run_id)[3]
        steps = {s.label: s for s in found.metadata.reasoning_steps}
        assert steps["Broken search"].status == "fail"
        assert steps["Broken search"].detail == "Failed: upstream exploded"

    @pytest.mark.asyncio
    async def test_discovery_query_reflects_constraints(self, tmp_path, plan_form) -> None:
        channel = FakeChannel("eventbrite", [make_event()])
        services = make_services(tmp_path, ScriptedLLM(), channels=[channel])

        await run_pipeline(plan_form(areas=["Bugis"]), services)

        query = channel.queries[0]
        assert query.budget_max == 80
        assert tuple(query.areas) == ("Bugis",)

    @pytest.mark.asyncio
    async def test_no_events_skips_planning(self, tmp_path, plan_form) -> None:
        llm = ScriptedLLM()
        services = make_services(tmp_path, llm, channels=[FakeChannel("eventbrite", [])])

        result = await run_pipeline(plan_form(), services)

        assert result.ranking.ranked_events == ()
        assert result.itinerary is None
        assert result.planning.warnings == ("No ranked events — itinerary planning skipped",)
        assert len(llm.prompts) == 1
        assert trace_names(services, result.run_id)[-1] == "pipeline-result"

    @pytest.mark.asyncio
    async def test_ranking_failure_is_recorded(self, tmp_path, plan_form) -> None:
        services = make_services(tmp_path, ScriptedLLM(), ranker=ExplodingRanker())

        result = await run_pipeline(plan_form(), services)

        assert result.error is None
        assert result.ranking.ranked_events == ()
        failed = [e for e in services.bus.get_history(result.run_id) if e.name == "Ranking failed"]
        assert failed[0].status is TraceStatus.ERROR
        assert failed[0].error == "bad weights"
        assert services.contexts.get(result.run_id).errors == ["recommendation: bad weights"]

    @pytest.mark.asyncio
    async def test_persistence_failure_still_books(self, tmp_path, plan_form) -> None:
        repo = RecordingRepository(error=ConnectionError("database unavailable"))
        services = make_services(tmp_path, ScriptedLLM("not json", NARRATIVE, PLAN), repository=repo)

        result = await run_pipeline(plan_form(), services)

        assert result.approval.approved
        assert result.approval.persisted is None
        assert result.approval.persist_error == "database unavailable"
        assert [r.status for r in result.booking_results] == [BookingStatus.SUCCESS]
        ctx = services.contexts.get(result.run_id)
        assert "persisted_itinerary_id" not in ctx.custom
        assert ctx.errors == ["Itinerary persistence failed: database unavailable"]

    @pytest.mark.asyncio
    async def test_unexpected_failure_ends_with_error_trace(self, tmp_path, plan_form) -> None:
        services = make_services(tmp_path, ScriptedLLM())
        services.orchestrator.intent_resolver = ExplodingResolver()

        result = await run_pipeline(plan_form(), services)

        assert result.error == "intent resolver crashed"
        terminal = services.bus.get_history(result.run_id)[-1]
        assert terminal.name == "pipeline-error"
        assert terminal.status is TraceStatus.ERROR
        assert services.contexts.get(result.run_id).phase is WorkflowPhase.FAILED

    @pytest.mark.asyncio
    async def test_context_discarded_after_retention(self, tmp_path, plan_form) -> None:
        """Test that the context and the approval marker are dropped together."""
        contexts = ContextStore(mirror=None, retention_s=0.01)
        services = make_services(tmp_path, ScriptedLLM("not json", NARRATIVE, PLAN), contexts=contexts)

        result = await run_pipeline(plan_form(), services)

        assert services.approvals.was_resolved(result.run_id)
        await asyncio.sleep(0.05)
        assert services.contexts.get(result.run_id) is None
        assert not services.approvals.was_resolved(result.run_id)


def slot(k: int) -> tuple[str, str]:
    """Non-overlapping 30 minute slots, 40 minutes apart from 06:00."""
    start = 6 * 60 + 40 * k
    end = start + 30
    return f"{start // 60:02d}:{start % 60:02d}", f"{end // 60:02d}:{end % 60:02d}"


def show(k: int, channel: str = "a", **kwargs):
    start, end = slot(k)
    kwargs.setdefault("rating", 3.5)
    kwargs.setdefault("source_url", f"https://www.eventbrite.sg/e/show-{k}")
    return make_event(f"{channel}-{k:02d}", f"Show {k:02d}", start=start, end=end,
                      price=(10, 40), source=f"channel-{channel}", **kwargs)


class ConstraintResolver:
    """Deterministic intent: the form mapping with constraint overrides, no LLM call."""

    def __init__(self, **overrides):
        self.overrides = overrides

    def resolve(self, form):
        resolved = map_plan_form(form)
        resolved.constraints = replace(resolved.constraints, **self.overrides)
        return resolved


class CapturingRanker:
    def __init__(self):
        self.kwargs = None

    def rank(self, events, **kwargs):
        self.kwargs = kwargs
        return EventRanker().rank(events, **kwargs)


MORNING_PLAN = json.dumps({
    "itineraryName": "Morning Show",
    "items": [
        plan_item("Kaya Toast at Ya Kun", "08:30", "09:10", cost=5, category="dining", duration=40),
        plan_item("Show 05", "09:15", "09:45", main=True, cost=30, category="concert", duration=30),
        plan_item("Stroll at Fort Canning", "10:00", "11:00", category="outdoor"),
        plan_item("Lunch at Maxwell Food Centre", "11:10", "12:10", cost=8, category="dining"),
    ],
    "totalEstimatedCostPerPerson": 43,
    "budgetStatus": "within_budget",
    "overallVibe": "Easy morning",
})


class TestEndToEndScenario:
    """Test suite for a full run whose approval is never answered."""

    @pytest.mark.asyncio
    async def test_unanswered_approval_rejects_after_ttl(self, tmp_path, plan_form) -> None:
        channel_a = [show(k) for k in range(9)] + [show(9, availability=Availability.SOLD_OUT)]
        duplicates = [
            show(k, "b", rating=None, source_url=f"https://www.eventbrite.sg/e/show-{k}/?aff=b")
            for k in range(3)
        ]
        channel_b = duplicates + [show(k, "b") for k in range(10, 17)]
        channel_a[5] = show(5, rating=5.0, review_count=120)

        approvals = ApprovalRegistry(ttl_s=0.05, sweep_interval_s=0.02)
        services = make_services(
            tmp_path, ScriptedLLM(NARRATIVE, MORNING_PLAN),
            channels=[FakeChannel("channel-a", channel_a), FakeChannel("channel-b", channel_b)],
            approvals=approvals,
        )
        services.orchestrator.intent_resolver = ConstraintResolver(budget=PriceRange(0, 50, "SGD"))
        approvals.start()
        try:
            ctx = services.orchestrator.create_run("run-unanswered")
            result = await asyncio.wait_for(services.orchestrator.run(ctx, plan_form()), timeout=5)
        finally:
            await approvals.shutdown()

        assert result.discovery.raw_count == 20
        assert len(result.discovery.events) == 17
        assert result.discovery.dedup.removed_count == 3
        kept = {e.id for e in result.discovery.events}
        assert {"a-00", "a-01", "a-02"} <= kept
        assert not kept & {"b-00", "b-01", "b-02"}

        stats = result.ranking.filter_stats
        assert (stats.total_input, stats.passed_filters) == (17, 16)
        assert len(result.ranking.ranked_events) == 16
        assert "a-09" not in {r.event.id for r in result.ranking.ranked_events}
        anchor = result.ranking.anchor.event
        assert anchor.id == "a-05"

        planned = result.planning.itinerary
        assert len(planned.items) == 4
        main = planned.items[1]
        assert main.event.id == anchor.id
        assert main.scheduled_time == anchor.time_slot

        assert result.approval.approved is False
        assert approvals.was_resolved("run-unanswered")
        assert result.execution is None
        assert result.booking_results == []
        assert result.itinerary is None
        assert "Plan rejected" in trace_names(services, result.run_id)


class TestWeatherSignal:
    """Test suite for the weather signal handed to the ranker."""

    def test_outdoor_signal(self) -> None:
        assert outdoor_signal(UserConstraints(date=PLAN_DATE)) is None
        assert outdoor_signal(UserConstraints(date=PLAN_DATE, weather_sensitive=False)) is True

    @pytest.mark.asyncio
    async def test_ranker_receives_signal(self, tmp_path, plan_form) -> None:
        ranker = CapturingRanker()
        park = make_event("ev-park", "Picnic in the Park", category=EventCategory.OUTDOOR)
        services = make_services(
            tmp_path, ScriptedLLM(NARRATIVE, PLAN),
            channels=[FakeChannel("eventbrite", [make_event(), park])], ranker=ranker,
        )
        services.orchestrator.intent_resolver = ConstraintResolver(weather_sensitive=False)

        result = await run_pipeline(plan_form(), services, approve=False)

        assert ranker.kwargs["outdoor_friendly"] is True
        scored = {r.event.id: r.reasoning for r in result.ranking.ranked_events}
        assert "Outdoor event with good weather" in scored["ev-park"]


class TestIsBookable:
    """Test suite for is_bookable."""

    def test_discovered_event_with_url(self) -> None:
        assert is_bookable(make_event())

    def test_generated_activity(self) -> None:
        assert not is_bookable(make_event(source="planned"))

    def test_blank_url(self) -> None:
        assert not is_bookable(make_event(source_url=" "))
