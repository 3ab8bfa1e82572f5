"""Pydantic models for the expert connect system."""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RequestStatus(str, enum.Enum):
    QUEUED = "queued"
    OFFERED = "offered"
    ASSIGNED = "assigned"
    CONNECTED = "connected"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    COMPLETED = "completed"


class ActorRole(str, enum.Enum):
    CLIENT = "client"
    EXPERT = "expert"
    ADMIN = "admin"


class DispatchOutcome(str, enum.Enum):
    OFFERED = "offered"
    QUEUE_EMPTY = "queue_empty"
    NO_EXPERT_AVAILABLE = "no_expert_available"


# ---------------------------------------------------------------------------
# Domain models
# ---------------------------------------------------------------------------

class ConnectionRequest(BaseModel):
    id: int
    client_id: int
    expert_id: int | None = None
    status: RequestStatus = RequestStatus.QUEUED
    position: int | None = None
    estimated_wait_seconds: int | None = None
    offered_at: datetime | None = None
    offer_expires_at: datetime | None = None
    assigned_at: datetime | None = None
    connected_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    timed_out_at: datetime | None = None
    rejected_at: datetime | None = None
    rejected_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ExpertAvailability(BaseModel):
    expert_id: int
    is_online: bool = True
    max_concurrent_clients: int = 1
    current_active_clients: int = 0
    last_assigned_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def free_slots(self) -> int:
        return max(self.max_concurrent_clients - self.current_active_clients, 0)


class UserSummary(BaseModel):
    id: int
    role: str | None = None
    display_name: str | None = None
    email: str | None = None


class Notification(BaseModel):
    """Payload handed to the notification collaborator."""

    title: str
    body: str
    data: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class RequestView(ConnectionRequest):
    """A request as returned to callers, with live queue figures and parties."""

    client: UserSummary | None = None
    expert: UserSummary | None = None
    can_start_connect_flow: bool = False


class ConnectionResult(BaseModel):
    is_existing: bool
    status: RequestStatus
    request: RequestView


class AcceptResult(BaseModel):
    request: RequestView
    expired: bool = False


class ActiveRequestResult(BaseModel):
    has_active_request: bool
    request: RequestView | None = None


class DispatchAttempt(BaseModel):
    outcome: DispatchOutcome
    request_id: int | None = None
    expert_id: int | None = None
    offer_expires_at: datetime | None = None

    @property
    def offered(self) -> bool:
        return self.outcome == DispatchOutcome.OFFERED


class BatchResult(BaseModel):
    attempts: int = 0
    offered_count: int = 0
    stopped_by: DispatchOutcome | None = None


class SweepResult(BaseModel):
    count: int = 0
    request_ids: list[int] = Field(default_factory=list)


class CycleResult(BaseModel):
    trigger: str
    expired: SweepResult
    timed_out: SweepResult
    dispatched: BatchResult


class LoadDrift(BaseModel):
    expert_id: int
    current_active_clients: int
    derived_active_clients: int


class RejectionReasonCount(BaseModel):
    reason: str
    count: int


class QueueOverview(BaseModel):
    """Operator dashboard aggregates (not persisted)."""

    queued_requests: int = 0
    offered_requests: int = 0
    assigned_requests: int = 0
    connected_requests: int = 0

    rejected_requests_total: int = 0
    rejected_requests_24h: int = 0
    rejected_requests_7d: int = 0
    top_rejection_reasons_7d: list[RejectionReasonCount] = Field(default_factory=list)

    total_experts: int = 0
    online_experts: int = 0
    total_capacity_online: int = 0
    active_load_online: int = 0
    available_slots_online: int = 0
    active_load_all: int = 0

    avg_assignment_wait_seconds: int | None = None
