"""
schemas/trace.py
----------------
Append-only observability records published on the trace bus.

`TraceEvent.to_dict()` produces the camelCase wire form streamed to
observers; `from_dict()` reads it back (JSONL replay).
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class TraceEventType(str, Enum):
    AGENT_RUN         = "agent_run"
    TOOL_CALL         = "tool_call"
    WORKFLOW_RUN      = "workflow_run"
    WORKFLOW_STEP     = "workflow_step"
    WORKFLOW_PARALLEL = "workflow_parallel"
    MODEL_GENERATION  = "model_generation"
    MODEL_STEP        = "model_step"
    PLAN_APPROVAL     = "plan_approval"
    BOOKING_EXECUTION = "booking_execution"
    GENERIC           = "generic"


class TraceStatus(str, Enum):
    STARTED           = "started"
    RUNNING           = "running"
    COMPLETED         = "completed"
    ERROR             = "error"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED          = "approved"
    REJECTED          = "rejected"
    BOOKING_STARTED   = "booking_started"
    BOOKING_PROGRESS  = "booking_progress"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_FAILED    = "booking_failed"
    BOOKING_SKIPPED   = "booking_skipped"


class PipelineStep(str, Enum):
    INTENT         = "intent"
    DISCOVERY      = "discovery"
    RECOMMENDATION = "recommendation"
    PLANNING       = "planning"
    EXECUTION      = "execution"


@dataclass(frozen=True)
class ReasoningStep:
    label: str
    detail: str
    status: str = "info"     # pass | fail | info

    def to_dict(self) -> dict:
        return {"label": self.label, "detail": self.detail, "status": self.status}


@dataclass(frozen=True)
class Decision:
    title: str
    reason: str
    score: Optional[float] = None
    data: Optional[dict] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"title": self.title, "reason": self.reason}
        if self.score is not None:
            d["score"] = self.score
        if self.data is not None:
            d["data"] = self.data
        return d


@dataclass(frozen=True)
class BookingData:
    item_index: int
    total_items: int
    item_name: str
    source_url: Optional[str] = None
    confirmation_number: Optional[str] = None
    screenshot_path: Optional[str] = None
    booking_error: Optional[str] = None
    action_manual_found: Optional[bool] = None

    def to_dict(self) -> dict:
        d = {
            "itemIndex": self.item_index,
            "totalItems": self.total_items,
            "itemName": self.item_name,
            "sourceUrl": self.source_url,
            "confirmationNumber": self.confirmation_number,
            "screenshotPath": self.screenshot_path,
            "bookingError": self.booking_error,
            "actionManualFound": self.action_manual_found,
        }
        return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class TraceMetadata:
    """Stage digests only — never raw payloads."""
    pipeline_step: Optional[PipelineStep] = None
    agent_name: Optional[str] = None
    input_summary: Optional[str] = None
    output_summary: Optional[str] = None
    reasoning: Optional[str] = None
    confidence: Optional[float] = None
    result_count: Optional[int] = None
    reasoning_steps: tuple[ReasoningStep, ...] = ()
    decisions: tuple[Decision, ...] = ()
    approval_data: Optional[dict] = None
    booking_data: Optional[BookingData] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {}
        if self.pipeline_step is not None:
            d["pipelineStep"] = self.pipeline_step.value
        for key, val in (
            ("agentName", self.agent_name),
            ("inputSummary", self.input_summary),
            ("outputSummary", self.output_summary),
            ("reasoning", self.reasoning),
            ("confidence", self.confidence),
            ("resultCount", self.result_count),
            ("approvalData", self.approval_data),
        ):
            if val is not None:
                d[key] = val
        if self.reasoning_steps:
            d["reasoningSteps"] = [s.to_dict() for s in self.reasoning_steps]
        if self.decisions:
            d["decisions"] = [x.to_dict() for x in self.decisions]
        if self.booking_data is not None:
            d["bookingData"] = self.booking_data.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "TraceMetadata":
        booking = d.get("bookingData")
        step = d.get("pipelineStep")
        return cls(
            pipeline_step=PipelineStep(step) if step else None,
            agent_name=d.get("agentName"),
            input_summary=d.get("inputSummary"),
            output_summary=d.get("outputSummary"),
            reasoning=d.get("reasoning"),
            confidence=d.get("confidence"),
            result_count=d.get("resultCount"),
            reasoning_steps=tuple(
                ReasoningStep(s["label"], s["detail"], s.get("status", "info"))
                for s in d.get("reasoningSteps", [])
            ),
            decisions=tuple(
                Decision(x["title"], x["reason"], x.get("score"), x.get("data"))
                for x in d.get("decisions", [])
            ),
            approval_data=d.get("approvalData"),
            booking_data=BookingData(
                item_index=booking["itemIndex"],
                total_items=booking["totalItems"],
                item_name=booking["itemName"],
                source_url=booking.get("sourceUrl"),
                confirmation_number=booking.get("confirmationNumber"),
                screenshot_path=booking.get("screenshotPath"),
                booking_error=booking.get("bookingError"),
                action_manual_found=booking.get("actionManualFound"),
            ) if booking else None,
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TraceEvent:
    """One immutable observability record; `trace_id` is the run id."""
    trace_id: str
    type: TraceEventType
    name: str
    status: TraceStatus
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    parent_id: Optional[str] = None
    started_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    metadata: TraceMetadata = field(default_factory=TraceMetadata)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """True for the final workflow_run record of a run."""
        return self.type is TraceEventType.WORKFLOW_RUN and self.status in (
            TraceStatus.COMPLETED, TraceStatus.ERROR,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "traceId": self.trace_id,
            "type": self.type.value,
            "name": self.name,
            "status": self.status.value,
            "startedAt": self.started_at,
            "metadata": self.metadata.to_dict(),
        }
        for key, val in (
            ("parentId", self.parent_id),
            ("completedAt", self.completed_at),
            ("durationMs", self.duration_ms),
            ("error", self.error),
        ):
            if val is not None:
                d[key] = val
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "TraceEvent":
        return cls(
            id=d["id"],
            trace_id=d["traceId"],
            parent_id=d.get("parentId"),
            type=TraceEventType(d["type"]),
            name=d["name"],
            status=TraceStatus(d["status"]),
            started_at=d["startedAt"],
            completed_at=d.get("completedAt"),
            duration_ms=d.get("durationMs"),
            metadata=TraceMetadata.from_dict(d.get("metadata", {})),
            error=d.get("error"),
        )
