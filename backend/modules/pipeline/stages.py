"""
modules/pipeline/stages.py
----------------------------
Typed outputs handed from one pipeline stage to the next.

Each output is frozen and carries a literal `stage` tag, so a StageOutput
can be told apart without isinstance chains. PipelineResult aggregates
whichever stages actually ran for one run.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from db.repositories.itinerary_repo import PersistedItinerary
from modules.discovery.base import SearchResult
from modules.input.intent import ResolvedIntent
from modules.recommendation.deduplicator import DedupResult
from modules.recommendation.ranker import FilterStats
from schemas.booking import BookingResult, BookingStatus
from schemas.event import Event, RankedEvent
from schemas.itinerary import Itinerary, PlanMetadata


@dataclass(frozen=True)
class IntentOutput:
    resolved: ResolvedIntent
    stage: Literal["intent"] = "intent"


@dataclass(frozen=True)
class DiscoveryOutput:
    events: tuple[Event, ...]
    channel_results: tuple[SearchResult, ...]
    raw_count: int
    dedup: Optional[DedupResult] = None
    stage: Literal["discovery"] = "discovery"


@dataclass(frozen=True)
class RankingOutput:
    ranked_events: tuple[RankedEvent, ...]
    top_picks: tuple[RankedEvent, ...]
    filter_stats: FilterStats
    narrative: dict[str, Any] = field(default_factory=dict)
    stage: Literal["ranking"] = "ranking"

    @property
    def anchor(self) -> Optional[RankedEvent]:
        """The single event the plan is built around."""
        return self.ranked_events[0] if self.ranked_events else None


@dataclass(frozen=True)
class PlanningOutput:
    itinerary: Optional[Itinerary]
    metadata: Optional[PlanMetadata] = None
    warnings: tuple[str, ...] = ()
    used_fallback: bool = False
    stage: Literal["planning"] = "planning"


@dataclass(frozen=True)
class ApprovalOutput:
    approved: bool
    persisted: Optional[PersistedItinerary] = None
    persist_error: Optional[str] = None
    warnings: tuple[str, ...] = ()
    stage: Literal["approval"] = "approval"


@dataclass(frozen=True)
class ExecutionOutput:
    results: tuple[BookingResult, ...] = ()
    stage: Literal["execution"] = "execution"

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.status is BookingStatus.SUCCESS)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if r.status is BookingStatus.FAILED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for r in self.results if r.status.is_skip)


StageOutput = Union[
    IntentOutput, DiscoveryOutput, RankingOutput,
    PlanningOutput, ApprovalOutput, ExecutionOutput,
]


@dataclass
class PipelineResult:
    run_id: str
    intent: Optional[IntentOutput] = None
    discovery: Optional[DiscoveryOutput] = None
    ranking: Optional[RankingOutput] = None
    planning: Optional[PlanningOutput] = None
    approval: Optional[ApprovalOutput] = None
    execution: Optional[ExecutionOutput] = None
    error: Optional[str] = None

    @property
    def itinerary(self) -> Optional[Itinerary]:
        """The planned itinerary; None when there is no plan or it was rejected."""
        if self.planning is None or (self.approval is not None and not self.approval.approved):
            return None
        return self.planning.itinerary

    @property
    def warnings(self) -> list[str]:
        planning = list(self.planning.warnings) if self.planning else []
        return planning + (list(self.approval.warnings) if self.approval else [])

    @property
    def booking_results(self) -> list[BookingResult]:
        return list(self.execution.results) if self.execution else []

    def stages(self) -> list[StageOutput]:
        """Outputs of the stages that ran, in pipeline order."""
        return [s for s in (self.intent, self.discovery, self.ranking,
                            self.planning, self.approval, self.execution) if s is not None]

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "stages": [s.stage for s in self.stages()],
            "eventCount": len(self.discovery.events) if self.discovery else 0,
            "topPicks": [r.to_dict() for r in self.ranking.top_picks] if self.ranking else [],
            "itinerary": self.itinerary.to_dict() if self.itinerary else None,
            "planMetadata": self.planning.metadata.to_dict()
            if self.planning and self.planning.metadata else None,
            "planWarnings": list(self.planning.warnings) if self.planning else [],
            "warnings": self.warnings,
            "approved": self.approval.approved if self.approval else None,
            "bookingResults": [r.to_dict() for r in self.booking_results],
            "error": self.error,
        }
