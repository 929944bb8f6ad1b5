"""
Global Control Plane - Type Definitions.

============================================================
PURPOSE
============================================================
Closed vocabularies and immutable records of the control plane:

- Scopes, states and signal sources are CLOSED enums.
  Unknown values are rejected at every boundary.
- Decisions are immutable once written. They are the unit
  of the audit log.
- Status is derived, never authoritative.

============================================================
STATE ORDER
============================================================
    ACTIVE < THROTTLED < FROZEN < KILLED

Non-manual signals only ever move a target up this order.

============================================================
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple


GLOBAL_TARGET_ID = "GLOBAL"
"""Fixed id of the singleton GLOBAL target."""

GLOBAL_KILL_ACTION = "global_kill"
"""Metadata ``action`` value that marks a manual global kill."""

RESET_ACTION = "reset"
"""Metadata ``action`` value recorded on manual reset signals."""


# ============================================================
# SCOPES
# ============================================================

class ControlScope(str, Enum):
    """
    What a control target refers to.

    GLOBAL is a singleton with fixed id ``GLOBAL``.
    """

    STRATEGY = "STRATEGY"
    """A single trading strategy."""

    USER = "USER"
    """A user account."""

    BROKER = "BROKER"
    """A broker connection."""

    GLOBAL = "GLOBAL"
    """The whole system."""


# ============================================================
# CONTROL STATES
# ============================================================

class ControlState(str, Enum):
    """
    Control state of a target, totally ordered by severity.

    - ACTIVE: execution allowed
    - THROTTLED: execution allowed, caller should reduce size/frequency
    - FROZEN: execution denied, manual reset required
    - KILLED: execution denied, manual reset required
    """

    ACTIVE = "ACTIVE"
    THROTTLED = "THROTTLED"
    FROZEN = "FROZEN"
    KILLED = "KILLED"

    @property
    def severity_rank(self) -> int:
        """Position in the severity order (0 = least severe)."""
        return _STATE_ORDER.index(self)

    def allows_execution(self) -> bool:
        """Check if state allows order submission."""
        return self in (ControlState.ACTIVE, ControlState.THROTTLED)

    def requires_manual_reset(self) -> bool:
        """Check if only a manual reset can leave this state."""
        return self in (ControlState.FROZEN, ControlState.KILLED)

    def is_more_severe_than(self, other: "ControlState") -> bool:
        return self.severity_rank > other.severity_rank

    @staticmethod
    def most_severe(*states: "ControlState") -> "ControlState":
        """Return the most severe of the given states."""
        return max(states, key=lambda state: state.severity_rank)


_STATE_ORDER: Tuple[ControlState, ...] = (
    ControlState.ACTIVE,
    ControlState.THROTTLED,
    ControlState.FROZEN,
    ControlState.KILLED,
)


# ============================================================
# SIGNAL SOURCES
# ============================================================

class SignalSource(str, Enum):
    """Producers allowed to emit control signals."""

    RECONCILIATION = "RECONCILIATION"
    """Fill/position mismatches from the reconciliation engine."""

    STRATEGY_HEALTH = "STRATEGY_HEALTH"
    """Degradation reports from the strategy-health monitor."""

    BEHAVIOR = "BEHAVIOR"
    """Behavioral anomaly detector."""

    EXECUTION = "EXECUTION"
    """Observable execution failures."""

    RISK = "RISK"
    """Hard risk limits (drawdown, loss limits)."""

    MANUAL = "MANUAL"
    """Human operator."""


# ============================================================
# ERRORS
# ============================================================

class ControlPlaneError(Exception):
    """
    Base exception for the control plane.

    Carries a context dict for logging and API responses.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging/APIs."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


class ValidationError(ControlPlaneError):
    """Malformed target or signal. Raised before any mutation."""
    pass


class AuthorizationError(ControlPlaneError):
    """Manual reset attempted without a verified elevated role."""
    pass


class ConflictError(ControlPlaneError):
    """A concurrent write on the same target won the race. Retry evaluate."""
    pass


class PersistenceError(ControlPlaneError):
    """The durable store is unreachable or the write failed."""
    pass


class ExecutionDeniedError(ControlPlaneError):
    """Order submission blocked by the execution gate."""
    pass


# ============================================================
# PARSING (CLOSED ENUM BOUNDARY)
# ============================================================

def parse_scope(value: Any) -> ControlScope:
    """Coerce a value to ControlScope or raise ValidationError."""
    if isinstance(value, ControlScope):
        return value
    try:
        return ControlScope(str(value).upper())
    except ValueError:
        raise ValidationError(
            f"Unknown control scope: {value!r}",
            context={"allowed": [s.value for s in ControlScope]},
        )


def parse_state(value: Any) -> ControlState:
    """Coerce a value to ControlState or raise ValidationError."""
    if isinstance(value, ControlState):
        return value
    try:
        return ControlState(str(value).upper())
    except ValueError:
        raise ValidationError(
            f"Unknown control state: {value!r}",
            context={"allowed": [s.value for s in ControlState]},
        )


def parse_source(value: Any) -> SignalSource:
    """Coerce a value to SignalSource or raise ValidationError."""
    if isinstance(value, SignalSource):
        return value
    try:
        return SignalSource(str(value).upper())
    except ValueError:
        raise ValidationError(
            f"Unknown signal source: {value!r}",
            context={"allowed": [s.value for s in SignalSource]},
        )


def parse_timestamp(value: Any) -> datetime:
    """Accept datetimes or ISO strings; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}")
    else:
        raise ValidationError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================
# CONTROL TARGET
# ============================================================

@dataclass(frozen=True)
class ControlTarget:
    """
    Composite key of a gated entity.

    Construct through ``ControlTarget.of`` to validate input.
    """

    scope: ControlScope
    id: str

    @classmethod
    def of(cls, scope: Any, target_id: Any) -> "ControlTarget":
        """
        Build a validated target.

        Raises:
            ValidationError: unknown scope, empty id, or GLOBAL with
                an id other than ``GLOBAL``
        """
        parsed_scope = parse_scope(scope)

        if not isinstance(target_id, str) or not target_id.strip():
            raise ValidationError(
                f"Target id must be a non-empty string, got {target_id!r}",
                context={"scope": parsed_scope.value},
            )

        target_id = target_id.strip()

        if parsed_scope == ControlScope.GLOBAL and target_id != GLOBAL_TARGET_ID:
            raise ValidationError(
                f"GLOBAL target must have id {GLOBAL_TARGET_ID!r}, got {target_id!r}"
            )

        return cls(scope=parsed_scope, id=target_id)

    @classmethod
    def global_target(cls) -> "ControlTarget":
        return cls(scope=ControlScope.GLOBAL, id=GLOBAL_TARGET_ID)

    @classmethod
    def strategy(cls, strategy_id: str) -> "ControlTarget":
        return cls.of(ControlScope.STRATEGY, strategy_id)

    @classmethod
    def user(cls, user_id: str) -> "ControlTarget":
        return cls.of(ControlScope.USER, user_id)

    @classmethod
    def broker(cls, broker_id: str) -> "ControlTarget":
        return cls.of(ControlScope.BROKER, broker_id)

    @property
    def is_global(self) -> bool:
        return self.scope == ControlScope.GLOBAL

    @property
    def key(self) -> Tuple[str, str]:
        """Index key ``(scope, id)``."""
        return (self.scope.value, self.id)

    def to_dict(self) -> Dict[str, str]:
        return {"scope": self.scope.value, "id": self.id}

    def __str__(self) -> str:
        return f"{self.scope.value}:{self.id}"


# ============================================================
# CONTROL SIGNAL
# ============================================================

@dataclass(frozen=True)
class ControlSignal:
    """
    A single risk input.

    Always consumed within an evaluation call; persisted only
    as part of the decision that consumed it.
    """

    source: SignalSource
    """Producer of the signal."""

    severity: float
    """Normalized danger in [0, 1]."""

    reason: str
    """Human-readable cause."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    """When the producer observed the condition."""

    metadata: Dict[str, Any] = field(default_factory=dict)
    """Producer-specific context."""

    @classmethod
    def create(
        cls,
        source: Any,
        severity: Any,
        reason: Any,
        timestamp: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ControlSignal":
        """
        Build a validated signal from loosely typed input.

        Raises:
            ValidationError: on unknown source, out-of-range severity,
                non-string reason or malformed metadata
        """
        parsed_source = parse_source(source)

        if isinstance(severity, bool) or not isinstance(severity, (int, float)):
            raise ValidationError(
                f"Signal severity must be a number, got {severity!r}",
                context={"source": parsed_source.value},
            )
        severity = float(severity)
        if math.isnan(severity) or severity < 0.0 or severity > 1.0:
            raise ValidationError(
                f"Signal severity must be within [0, 1], got {severity}",
                context={"source": parsed_source.value},
            )

        if not isinstance(reason, str):
            raise ValidationError(f"Signal reason must be a string, got {reason!r}")

        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError(f"Signal metadata must be a mapping, got {metadata!r}")

        return cls(
            source=parsed_source,
            severity=severity,
            reason=reason,
            timestamp=parse_timestamp(timestamp) if timestamp is not None else datetime.now(timezone.utc),
            metadata=dict(metadata or {}),
        )

    @property
    def is_manual(self) -> bool:
        return self.source == SignalSource.MANUAL

    @property
    def is_global_kill(self) -> bool:
        """MANUAL signal carrying an explicit global-kill intent."""
        return self.is_manual and self.metadata.get("action") == GLOBAL_KILL_ACTION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "severity": self.severity,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControlSignal":
        if not isinstance(data, dict):
            raise ValidationError(f"Signal must be a mapping, got {data!r}")
        return cls.create(
            source=data.get("source"),
            severity=data.get("severity"),
            reason=data.get("reason", ""),
            timestamp=data.get("timestamp"),
            metadata=data.get("metadata"),
        )


# ============================================================
# CONTROL DECISION
# ============================================================

def generate_decision_id() -> str:
    """Globally unique decision identifier."""
    return f"dec_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class ControlDecision:
    """
    One evaluation or reset outcome for one target.

    Immutable once written. Decisions are appended to the
    audit log and never updated or deleted.
    """

    decision_id: str
    """Unique identifier, never reused."""

    target: ControlTarget
    """Target the decision applies to."""

    previous_state: ControlState
    """State before the decision."""

    new_state: ControlState
    """State after the decision (the target's current state)."""

    reason: str
    """Aggregated explanation."""

    signals: Tuple[ControlSignal, ...]
    """Signals consumed by this decision."""

    decided_at: datetime
    """When the decision was made."""

    requires_manual_reset: bool
    """Whether only a manual reset can leave ``new_state``."""

    global_kill_override: bool
    """Whether the fleet-wide kill override is in force after this decision."""

    admin_id: Optional[str] = None
    """Administrator identity (manual resets only)."""

    sequence: Optional[int] = None
    """Monotonic log position, assigned by the store on append."""

    @property
    def is_transition(self) -> bool:
        return self.previous_state != self.new_state

    @property
    def is_escalation(self) -> bool:
        return self.new_state.is_more_severe_than(self.previous_state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "sequence": self.sequence,
            "target": self.target.to_dict(),
            "previous_state": self.previous_state.value,
            "new_state": self.new_state.value,
            "reason": self.reason,
            "signals": [signal.to_dict() for signal in self.signals],
            "decided_at": self.decided_at.isoformat(),
            "requires_manual_reset": self.requires_manual_reset,
            "global_kill_override": self.global_kill_override,
            "admin_id": self.admin_id,
        }


# ============================================================
# EXECUTION CHECK
# ============================================================

@dataclass(frozen=True)
class ExecutionCheck:
    """Result of the execution gate."""

    can_execute: bool
    """Whether the order may be submitted."""

    reason: str
    """Why. For THROTTLED targets, names the throttle."""

    governing_state: Optional[ControlState] = None
    """Most severe state among checked targets (None when undetermined)."""

    throttled: bool = False
    """Execution allowed but the caller should reduce size/frequency."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_execute": self.can_execute,
            "reason": self.reason,
            "governing_state": self.governing_state.value if self.governing_state else None,
            "throttled": self.throttled,
        }


# ============================================================
# GLOBAL KILL STATUS
# ============================================================

@dataclass(frozen=True)
class GlobalKillStatus:
    """Snapshot of the fleet-wide kill override."""

    active: bool
    activated_at: Optional[datetime] = None
    activated_by_decision: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "activated_by_decision": self.activated_by_decision,
            "reason": self.reason,
        }


# ============================================================
# TARGET RECORD
# ============================================================

@dataclass(frozen=True)
class TargetStateRecord:
    """Materialized current state of one target (index entry)."""

    target: ControlTarget
    state: ControlState
    last_transition_at: datetime
    last_decision_id: str
    requires_manual_reset: bool = False
    version: int = 1


# ============================================================
# CONTROL STATUS
# ============================================================

@dataclass(frozen=True)
class ControlStatus:
    """
    Aggregate view for operational dashboards.

    Derived from the current-state index. Never authoritative.
    """

    global_killed: bool
    global_kill: GlobalKillStatus
    total_targets: int
    by_state: Dict[ControlState, int]
    by_scope: Dict[ControlScope, Dict[ControlState, int]]
    last_updated: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "global_killed": self.global_killed,
            "global_kill": self.global_kill.to_dict(),
            "total_targets": self.total_targets,
            "by_state": {state.value: count for state, count in self.by_state.items()},
            "by_scope": {
                scope.value: {state.value: count for state, count in counts.items()}
                for scope, counts in self.by_scope.items()
            },
            "last_updated": self.last_updated.isoformat(),
        }
