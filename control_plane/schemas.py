"""
Pydantic Schemas for the Global Control Plane API.

Enum-valued fields are plain strings here. The engine parses
them so unknown values surface as 400 responses.
"""

from datetime import datetime
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field


# =============================================================
# SHARED
# =============================================================

class TargetSchema(BaseModel):
    """Control target reference."""
    scope: str = Field(..., description="STRATEGY, USER, BROKER or GLOBAL")
    id: str = Field(..., description="Target id (GLOBAL for the global target)")


class SignalCreate(BaseModel):
    """Risk signal submitted by a producer."""
    source: str
    severity: float
    reason: str
    timestamp: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SignalResponse(BaseModel):
    source: str
    severity: float
    reason: str
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================
# REQUESTS
# =============================================================

class EvaluateRequest(BaseModel):
    """Signals for one target."""
    target: TargetSchema
    signals: List[SignalCreate]


class ResetRequest(BaseModel):
    """Manual reset of one target to ACTIVE."""
    target: TargetSchema
    admin_id: str
    reason: str


class GlobalKillRequest(BaseModel):
    reason: str
    operator: Optional[str] = None


class ActionRequest(BaseModel):
    """
    Single-endpoint dispatcher request.

    ``action`` is one of evaluate, can_execute, manual_reset,
    get_state, get_status, get_audit. Remaining fields are the
    action's parameters.
    """
    action: str
    target: Optional[TargetSchema] = None
    signals: Optional[List[SignalCreate]] = None
    strategy_id: Optional[str] = None
    user_id: Optional[str] = None
    broker_id: Optional[str] = None
    admin_id: Optional[str] = None
    reason: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = None
    newest_first: bool = False


# =============================================================
# RESPONSES
# =============================================================

class DecisionResponse(BaseModel):
    """Committed control decision."""
    decision_id: str
    sequence: Optional[int] = None
    target: TargetSchema
    previous_state: str
    new_state: str
    reason: str
    signals: List[SignalResponse]
    decided_at: datetime
    requires_manual_reset: bool
    global_kill_override: bool
    admin_id: Optional[str] = None


class ExecutionCheckResponse(BaseModel):
    can_execute: bool
    reason: str
    governing_state: Optional[str] = None
    throttled: bool = False


class StateResponse(BaseModel):
    target: TargetSchema
    state: str


class GlobalKillStatusResponse(BaseModel):
    active: bool
    activated_at: Optional[datetime] = None
    activated_by_decision: Optional[str] = None
    reason: Optional[str] = None


class StatusResponse(BaseModel):
    """Aggregate dashboard view."""
    global_killed: bool
    total_targets: int
    by_state: Dict[str, int]
    by_scope: Dict[str, Dict[str, int]]
    last_updated: datetime
    global_kill: GlobalKillStatusResponse
    rules: Dict[str, Any] = Field(default_factory=dict)


class AuditResponse(BaseModel):
    decisions: List[DecisionResponse]
    count: int


class ActionResponse(BaseModel):
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
