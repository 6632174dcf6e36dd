"""
api/routes/workflow.py
-----------------------
POST /v1/workflow                         start a planning run
POST /v1/workflow/{workflow_id}/approve   answer the run's approval gate

Starting a run returns immediately; the pipeline runs as an asyncio task
and reports progress on the trace stream (/v1/traces/stream/{id}).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, StrictBool
from pydantic.alias_generators import to_camel

from schemas.booking import UserProfile
from schemas.constraints import PlanFormData

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request / Response schemas ─────────────────────────────────────────────────

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProfileIn(_CamelModel):
    name: str = "Guest"
    email: str = ""
    phone: Optional[str] = None
    dietary_preferences: list[str] = Field(default_factory=list)
    special_requests: str = ""

    def to_profile(self) -> UserProfile:
        return UserProfile(
            name=self.name,
            email=self.email,
            phone=self.phone,
            dietary_preferences=list(self.dietary_preferences),
            special_requests=self.special_requests,
        )


class WorkflowRequest(_CamelModel):
    form_data: PlanFormData
    user_id: str = Field("anonymous", description="Owner of the run and of any persisted itinerary")
    profile: Optional[ProfileIn] = None


class WorkflowStarted(_CamelModel):
    workflow_id: str
    phase: str = "started"


class ApproveRequest(BaseModel):
    approved: StrictBool


class ApproveResponse(_CamelModel):
    workflow_id: str
    approved: bool


# ── Endpoints ─────────────────────────────────────────────────────────────────

@router.post("", response_model=WorkflowStarted, response_model_by_alias=True,
             summary="Start a planning run")
async def start_workflow(req: WorkflowRequest, request: Request) -> WorkflowStarted:
    services = request.app.state.services
    workflow_id = f"run-{uuid.uuid4().hex[:12]}"
    ctx = services.orchestrator.create_run(
        workflow_id, req.user_id, req.profile.to_profile() if req.profile else None,
    )
    task = asyncio.create_task(services.orchestrator.run(ctx, req.form_data))
    tasks: set = request.app.state.tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    logger.info("[workflow] started %s for user %s", workflow_id, req.user_id)
    return WorkflowStarted(workflow_id=workflow_id)


@router.post("/{workflow_id}/approve", response_model=ApproveResponse, response_model_by_alias=True,
             summary="Approve or reject the proposed plan")
async def approve_workflow(workflow_id: str, req: ApproveRequest, request: Request) -> ApproveResponse:
    approvals = request.app.state.services.approvals
    if not approvals.has_pending_approval(workflow_id):
        if approvals.was_resolved(workflow_id):
            raise HTTPException(status_code=409, detail="Approval already resolved")
        raise HTTPException(status_code=404, detail="No pending approval for this workflow")
    if not approvals.resolve_approval(workflow_id, req.approved):
        raise HTTPException(status_code=409, detail="Approval already resolved")
    logger.info("[workflow] %s %s", workflow_id, "approved" if req.approved else "rejected")
    return ApproveResponse(workflow_id=workflow_id, approved=req.approved)
